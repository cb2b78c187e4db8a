"""Task lifecycle and resumption scheduler for the advisor assistant backend."""

__version__ = "0.1.0"
