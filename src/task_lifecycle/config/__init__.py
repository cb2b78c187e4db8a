"""Runtime configuration."""

from task_lifecycle.config.log import configure_logging
from task_lifecycle.config.settings import Settings, get_settings

__all__ = ["Settings", "configure_logging", "get_settings"]
