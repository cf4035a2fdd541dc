"""Mingle application configuration.

Loads settings from a single YAML file:
  * mingle.settings.yaml: non-secret configuration

The path can be overridden with the ``MINGLE_SETTINGS`` environment variable.
Relative database paths are resolved against the directory that holds the
settings file, so the service behaves the same regardless of the working
directory it is launched from.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("mingle.settings.yaml")
SETTINGS_ENV_VAR = "MINGLE_SETTINGS"

# DuckDB sentinel for a throwaway in-process database
MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _resolve_db_path(raw: str, base_dir: Path) -> str:
    if raw == MEMORY_DB:
        return raw
    path = Path(raw).expanduser()
    if path.is_absolute():
        return str(path)
    return str(base_dir / path)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 7000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StoreSettings(BaseModel):
    path: str = "mingle_chat.duckdb"


class AuthSettings(BaseModel):
    path:                str                 = "mingle_sessions.duckdb"
    session_ttl_seconds: Optional[int]       = None
    # token -> participant id, loaded at startup for local development
    seed_sessions:       Dict[str, str]      = Field(default_factory=dict)


class ChatSettings(BaseModel):
    max_message_length:        int   = 2000
    history_page_size:         int   = 50
    max_page_size:             int   = 200
    handshake_timeout_seconds: float = 10.0
    idle_timeout_seconds:      float = 300.0   # 0 disables
    send_timeout_seconds:      float = 10.0

    @field_validator("max_message_length", "history_page_size", "max_page_size")
    @classmethod
    def _positive(cls, value: int) -> int:
        if value < 1:
            raise ValueError("must be >= 1")
        return value


class ClientSettings(BaseModel):
    """Reconnection defaults for :class:`mingle.client.ChatSession`."""
    reconnect_attempts:   int   = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay:  float = 5.0
    connect_timeout:      float = 20.0


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    store:   StoreSettings   = Field(default_factory=StoreSettings)
    auth:    AuthSettings    = Field(default_factory=AuthSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    client:  ClientSettings  = Field(default_factory=ClientSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------

_config: Optional[AppConfig] = None


def load_config(settings_path: Optional[Path] = None) -> AppConfig:
    """Load settings into a single *AppConfig* object."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    settings_path = Path(settings_path)
    data = _load_yaml(settings_path)

    config = AppConfig(**data)

    base_dir = settings_path.resolve().parent
    config.store.path = _resolve_db_path(config.store.path, base_dir)
    config.auth.path = _resolve_db_path(config.auth.path, base_dir)

    logger.info(
        "Settings loaded (server=%s:%s, store=%s)",
        config.server.host,
        config.server.port,
        config.store.path,
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Drop the cached config so the next ``get_config()`` reloads it."""
    global _config
    _config = None
