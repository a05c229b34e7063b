"""Promoter Configuration package.

Centralized configuration management using Pydantic Settings.
"""

from promoter.config.settings import Settings, get_settings, reload_settings

__all__: list[str] = ["Settings", "get_settings", "reload_settings"]
