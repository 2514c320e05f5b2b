"""Configuration management module."""

from perpsim.config.settings import Settings, UserSettings, load_settings

__all__ = ["Settings", "UserSettings", "load_settings"]
