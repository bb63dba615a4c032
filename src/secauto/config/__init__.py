"""Configuration module."""

from secauto.config.logging import configure_logging
from secauto.config.settings import LogFormat, Settings, StoreBackend, settings

__all__ = ["Settings", "settings", "StoreBackend", "LogFormat", "configure_logging"]
