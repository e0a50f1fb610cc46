"""Messaging core configuration.

Loads settings from two YAML files:
  * marketchat.settings.yaml: non-secret configuration
  * marketchat.secrets.yaml: secrets (never committed)

The paths can be overridden with the MARKETCHAT_SETTINGS and
MARKETCHAT_SECRETS environment variables.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("marketchat.settings.yaml")
SECRETS_FILE  = Path("marketchat.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


# Shipped default; tokens are refused while it is in use.
PLACEHOLDER_JWT_SECRET = "change-me-in-production"


class JWTSecrets(BaseModel):
    secret_key: str = PLACEHOLDER_JWT_SECRET


class Secrets(BaseModel):
    jwt: JWTSecrets = Field(default_factory=JWTSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 8000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if value.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class AuthSettings(BaseModel):
    algorithm:              str = "HS256"
    user_id_claim:          str = "sub"
    leeway_seconds:         int = 0
    token_expire_minutes:   int = 60


class StorageSettings(BaseModel):
    db_path: str = "messages.duckdb"


class UploadSettings(BaseModel):
    upload_dir:      str           = "uploads"
    db_path:         str           = "file_metadata.duckdb"
    max_file_bytes:  int           = 20 * 1024 * 1024
    # Absolute base for fileUrl; falls back to the request's base URL.
    public_base_url: Optional[str] = None


class PresenceSettings(BaseModel):
    """Who hears about presence changes, and how long an idle socket lives.

    ``broadcast_scope="all"`` pushes user_online/user_offline to every open
    connection. ``"conversations"`` limits it to users that share at least
    one conversation with the affected user.
    """
    broadcast_scope:      Literal["all", "conversations"] = "all"
    idle_timeout_seconds: float                           = 300.0


class ChatSettings(BaseModel):
    max_content_length:   int   = 10_000
    echo_to_sender_tabs:  bool  = True
    thread_page_limit:    int   = 500
    # A connection that cannot take a frame within this is dropped.
    send_timeout_seconds: float = 5.0


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    auth:     AuthSettings     = Field(default_factory=AuthSettings)
    storage:  StorageSettings  = Field(default_factory=StorageSettings)
    uploads:  UploadSettings   = Field(default_factory=UploadSettings)
    presence: PresenceSettings = Field(default_factory=PresenceSettings)
    chat:     ChatSettings     = Field(default_factory=ChatSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    secrets_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_path = settings_path or Path(os.environ.get("MARKETCHAT_SETTINGS", SETTINGS_FILE))
    secrets_path = secrets_path or Path(os.environ.get("MARKETCHAT_SECRETS", SECRETS_FILE))

    settings_data = _load_yaml(settings_path)
    secrets_data  = _load_yaml(secrets_path)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, storage=%s, presence.scope=%s)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.presence.broadcast_scope,
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
    """Replace the process-wide config (tests, embedding applications)."""
    global _config
    _config = config


def reset_config() -> None:
    global _config
    _config = None
