"""Helpdesk application configuration.

Loads settings from two YAML files:
  * helpdesk.settings.yaml  - non-secret configuration
  * helpdesk.secrets.yaml   - secrets (never committed)

WhatsApp credentials may also come from the environment
(WHATSAPP_ACCESS_TOKEN, WHATSAPP_PHONE_NUMBER_ID, WHATSAPP_VERIFY_TOKEN);
environment values win over the YAML files.
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

SETTINGS_FILE = Path("helpdesk.settings.yaml")
SECRETS_FILE  = Path("helpdesk.secrets.yaml")


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Secrets models
# ---------------------------------------------------------------------------


class WhatsAppSecrets(BaseModel):
    access_token:    Optional[str] = None
    phone_number_id: Optional[str] = None


class Secrets(BaseModel):
    whatsapp: WhatsAppSecrets = Field(default_factory=WhatsAppSecrets)


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = 3000
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        if not isinstance(getattr(logging, value.upper(), None), int):
            raise ValueError(f"Unknown log level: {value}")
        return value.lower()


class DatabaseSettings(BaseModel):
    path: str = "helpdesk.duckdb"


class RealtimeSettings(BaseModel):
    """Limits of the WebSocket layer."""
    group_history_limit:      int = 100
    global_history_limit:     int = 100
    dm_history_limit:         int = 200
    max_connections_per_user: int = 10


class WhatsAppSettings(BaseModel):
    enabled:                  bool = True
    graph_version:            str  = "v19.0"
    survey_template:          str  = "satisfaction_survey"
    survey_language:          str  = "es_CO"
    verify_token:             str  = "whatsapp_verify_2026"


class AppConfig(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    whatsapp: WhatsAppSettings = Field(default_factory=WhatsAppSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------


def _apply_env_overrides(config: AppConfig) -> None:
    token = os.environ.get("WHATSAPP_ACCESS_TOKEN")
    phone_id = os.environ.get("WHATSAPP_PHONE_NUMBER_ID")
    verify = os.environ.get("WHATSAPP_VERIFY_TOKEN")

    if token:
        config.secrets.whatsapp.access_token = token
    if phone_id:
        config.secrets.whatsapp.phone_number_id = phone_id
    if verify:
        config.whatsapp.verify_token = verify
    if token or phone_id or verify:
        logger.info("Applied WhatsApp overrides from environment.")


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppConfig:
    """Load and merge settings + secrets into a single *AppConfig* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppConfig
    settings_data["secrets"] = secrets_data

    config = AppConfig(**settings_data)
    _apply_env_overrides(config)
    logger.info(
        "Settings loaded (server=%s:%s, database=%s, whatsapp.enabled=%s)",
        config.server.host,
        config.server.port,
        config.database.path,
        config.whatsapp.enabled,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Process-wide configuration, loaded on first use."""
    global _config
    if _config is None:
        _config = load_settings()
    return _config


def reset_config() -> None:
    global _config
    _config = None
