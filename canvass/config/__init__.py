"""
Configuration package for the canvass sync core.

This package contains modules for managing application settings,
environment variables, and logging configuration.
"""

from canvass.config.settings import Settings

# Export settings singleton for app-wide use
settings = Settings()

__all__ = ["settings", "Settings"]
