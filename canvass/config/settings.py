"""
Application settings and configuration.

This module provides a centralized configuration management system using Pydantic.
It loads settings from environment variables, .env files, or falls back to defaults.
"""

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

# Load environment variables from .env file if present
load_dotenv()

# Base directories
ROOT_DIR = Path(__file__).parent.parent.parent
LOG_DIR = ROOT_DIR / "logs"
EXPORT_DIR = ROOT_DIR / "exports"


class StoreSettings(BaseModel):
    """Remote document store connection settings."""

    url: str = Field(
        default="ws://localhost:8765/store",
        description="WebSocket endpoint of the document store"
    )

    token: str = Field(
        default="",
        description="Bearer token sent with the connection handshake"
    )

    request_timeout: float = Field(
        default=10.0,
        description="Seconds to wait for a write or read acknowledgment"
    )

    max_reconnect_attempts: int = Field(
        default=5,
        description="Reconnection attempts before giving up"
    )

    reconnect_delay: float = Field(
        default=0.5,
        description="Initial reconnection delay in seconds (doubled per attempt)"
    )

    max_reconnect_delay: float = Field(
        default=30.0,
        description="Upper bound for the reconnection delay in seconds"
    )

    atomic_mark_visited: bool = Field(
        default=True,
        description="Write the apartment update and the visit row in one batch"
    )

    @field_validator("url")
    @classmethod
    def url_must_be_websocket(cls, v):
        """Validate that the store URL uses a WebSocket scheme."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("Store URL must start with ws:// or wss://")
        return v


class EditBufferSettings(BaseModel):
    """Local edit buffer settings."""

    strategy: str = Field(
        default="debounce",
        description="Draft commit strategy (debounce or explicit)"
    )

    debounce_ms: int = Field(
        default=500,
        description="Quiet period in ms before a draft is committed"
    )

    @field_validator("strategy")
    @classmethod
    def validate_strategy(cls, v):
        """Validate that the strategy is known."""
        valid = ["debounce", "explicit"]
        if v.lower() not in valid:
            raise ValueError(f"Edit buffer strategy must be one of {valid}")
        return v.lower()


class GeocodingSettings(BaseModel):
    """Address lookup settings."""

    enabled: bool = Field(
        default=True,
        description="Whether address lookups are performed"
    )

    base_url: str = Field(
        default="https://nominatim.openstreetmap.org/search",
        description="Search endpoint of the geocoding service"
    )

    country_codes: str = Field(
        default="fr",
        description="Comma-separated ISO country codes to restrict results to"
    )

    user_agent: str = Field(
        default="canvass/0.1",
        description="User-Agent header required by the geocoding service"
    )

    timeout: float = Field(
        default=5.0,
        description="HTTP timeout in seconds"
    )


class ExportSettings(BaseModel):
    """Visit export settings."""

    directory: Path = Field(
        default=EXPORT_DIR,
        description="Directory the CSV exports are written to"
    )

    filename_prefix: str = Field(
        default="visits",
        description="Prefix of the export file name"
    )


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )

    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )

    file_enabled: bool = Field(
        default=False,
        description="Whether to write logs to a file"
    )

    console_enabled: bool = Field(
        default=True,
        description="Whether to write logs to console"
    )

    directory: Path = Field(
        default=LOG_DIR,
        description="Directory for log files"
    )

    @field_validator("level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate that log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()


class Settings(BaseModel):
    """Main application settings."""

    # Application info
    app_name: str = Field(
        default="Canvass",
        description="Application name"
    )

    app_version: str = Field(
        default="0.1.0",
        description="Application version"
    )

    default_display_name: str = Field(
        default="Utilisateur",
        description="Display name given to profiles created without one"
    )

    default_floors_count: int = Field(
        default=5,
        description="Floors count proposed for new buildings"
    )

    # Sub-configurations
    store: StoreSettings = Field(default_factory=lambda: StoreSettings(
        url=os.environ.get("STORE_URL", "ws://localhost:8765/store"),
        token=os.environ.get("STORE_TOKEN", ""),
        request_timeout=float(os.environ.get("STORE_REQUEST_TIMEOUT", "10.0")),
        max_reconnect_attempts=int(os.environ.get("STORE_MAX_RECONNECT_ATTEMPTS", "5")),
        reconnect_delay=float(os.environ.get("STORE_RECONNECT_DELAY", "0.5")),
        max_reconnect_delay=float(os.environ.get("STORE_MAX_RECONNECT_DELAY", "30.0")),
        atomic_mark_visited=_parse_bool(os.environ.get("ATOMIC_MARK_VISITED", "True"))
    ))

    edit_buffer: EditBufferSettings = Field(default_factory=lambda: EditBufferSettings(
        strategy=os.environ.get("EDIT_BUFFER_STRATEGY", "debounce"),
        debounce_ms=int(os.environ.get("EDIT_BUFFER_DEBOUNCE_MS", "500"))
    ))

    geocoding: GeocodingSettings = Field(default_factory=lambda: GeocodingSettings(
        enabled=_parse_bool(os.environ.get("GEOCODING_ENABLED", "True")),
        base_url=os.environ.get("GEOCODING_URL", "https://nominatim.openstreetmap.org/search"),
        country_codes=os.environ.get("GEOCODING_COUNTRY_CODES", "fr"),
        user_agent=os.environ.get("GEOCODING_USER_AGENT", "canvass/0.1"),
        timeout=float(os.environ.get("GEOCODING_TIMEOUT", "5.0"))
    ))

    export: ExportSettings = Field(default_factory=lambda: ExportSettings(
        directory=Path(os.environ.get("EXPORT_DIR", str(EXPORT_DIR))),
        filename_prefix=os.environ.get("EXPORT_FILENAME_PREFIX", "visits")
    ))

    logging: LoggingSettings = Field(default_factory=lambda: LoggingSettings(
        level=os.environ.get("LOG_LEVEL", "INFO"),
        format=os.environ.get("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s"),
        file_enabled=_parse_bool(os.environ.get("LOG_FILE_ENABLED", "False")),
        console_enabled=_parse_bool(os.environ.get("LOG_CONSOLE_ENABLED", "True")),
        directory=Path(os.environ.get("LOG_DIR", str(LOG_DIR)))
    ))

    # Runtime configs
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    def __init__(self, **data: Any):
        """Initialize settings, allowing a debug mode override from the environment."""
        super().__init__(**data)
        self.debug_mode = _parse_bool(os.environ.get("DEBUG_MODE", str(self.debug_mode)))

    def ensure_directory(self, directory: Path) -> Path:
        """Create a directory on first use and warn when it is not writable."""
        directory.mkdir(parents=True, exist_ok=True)
        if not os.access(directory, os.W_OK):
            logging.warning(f"Directory {directory} is not writable")
        return directory


def _parse_bool(value: str) -> bool:
    """Parse string to boolean."""
    return value.lower() in ("true", "1", "t", "yes", "y")
