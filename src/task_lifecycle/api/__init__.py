"""HTTP layer: FastAPI app exposing the lifecycle service."""
