"""Configuration package for printflow."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
