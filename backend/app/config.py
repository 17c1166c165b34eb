"""Linkup application configuration.

Loads settings from two YAML files:
  * linkup.settings.yaml: non-secret configuration
  * linkup.secrets.yaml : secrets (never committed)

Both paths can be overridden with the LINKUP_SETTINGS / LINKUP_SECRETS
environment variables. Relative database paths resolve from the directory
holding the settings file.
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

SETTINGS_FILE = Path("linkup.settings.yaml")
SECRETS_FILE  = Path("linkup.secrets.yaml")

IN_MEMORY_DB = ":memory:"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class JWTSecrets(BaseModel):
    secret_key: str = "change-me-in-production"
    algorithm:  str = "HS256"


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 5000
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level: {value}")
        return value.lower()


class DatabaseSettings(BaseModel):
    path: str = "linkup.duckdb"


class ChatSettings(BaseModel):
    max_message_length: int = Field(default=2000, ge=1)
    history_limit:      int = Field(default=100, ge=1)


class AuthSettings(BaseModel):
    token_expire_minutes: int = Field(default=7 * 24 * 60, ge=1)


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(raw: str, settings_path: Path) -> str:
    if raw == IN_MEMORY_DB:
        return raw
    path = Path(raw)
    if path.is_absolute():
        return str(path)
    return str(settings_path.resolve().parent / path)


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = Path(
        settings_path or os.environ.get("LINKUP_SETTINGS") or SETTINGS_FILE
    )
    secrets_path = Path(
        secrets_path or os.environ.get("LINKUP_SECRETS") or SECRETS_FILE
    )

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    config.database.path = _resolve_db_path(config.database.path, settings_path)

    logger.info(
        "Settings loaded (server=%s:%s, database=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: AppConfig) -> None:
    """Replace the process-wide config (used by tests and embedding apps)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
