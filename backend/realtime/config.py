"""Real-time core configuration.

Loads settings from two YAML files:
  * realtime.settings.yaml  : non-secret configuration
  * realtime.secrets.yaml   : secrets (never committed)

Every timeout used by the server and the client library lives here so each
one can be tuned independently.
"""
from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("realtime.settings.yaml")
SECRETS_FILE  = Path("realtime.secrets.yaml")


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
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    debug:           bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StoreSettings(BaseModel):
    """Where the DuckDB message store lives. ``:memory:`` keeps it in-process."""
    db_path: str = "realtime.duckdb"


class RealtimeSettings(BaseModel):
    """Server-side connection timeouts."""
    handshake_timeout_seconds: float = 10.0
    delivery_timeout_seconds:  float = 5.0
    heartbeat_timeout_seconds: float = 90.0
    heartbeat_sweep_seconds:   float = 30.0
    max_rooms_per_session:     int   = 500

    @field_validator(
        "handshake_timeout_seconds",
        "delivery_timeout_seconds",
        "heartbeat_timeout_seconds",
        "heartbeat_sweep_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value


class ClientSettings(BaseModel):
    """Defaults for the client library (supervisor + reconciliation store)."""
    optimistic_timeout_seconds: float = 15.0
    orphan_timeout_seconds:     float = 5.0
    orphan_buffer_size:         int   = 100
    page_size:                  int   = 50
    backoff_base_seconds:       float = 1.0
    backoff_ceiling_seconds:    float = 30.0
    backoff_jitter:             float = 0.1
    max_retries:                int   = 5
    # Must stay below the server's heartbeat_timeout_seconds
    ping_interval_seconds:      float = 30.0

    @field_validator(
        "optimistic_timeout_seconds",
        "orphan_timeout_seconds",
        "backoff_base_seconds",
        "backoff_ceiling_seconds",
        "ping_interval_seconds",
    )
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("timeouts must be positive")
        return value

    @model_validator(mode="after")
    def _ceiling_above_base(self) -> "ClientSettings":
        if self.backoff_ceiling_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_ceiling_seconds must be >= backoff_base_seconds")
        if self.orphan_buffer_size < 1:
            raise ValueError("orphan_buffer_size must be at least 1")
        return self


class AppSettings(BaseModel):
    server:   ServerSettings   = Field(default_factory=ServerSettings)
    logging:  LoggingSettings  = Field(default_factory=LoggingSettings)
    store:    StoreSettings    = Field(default_factory=StoreSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)
    client:   ClientSettings   = Field(default_factory=ClientSettings)
    secrets:  Secrets          = Field(default_factory=Secrets)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_settings(
    settings_file: Optional[Path] = None,
    secrets_file: Optional[Path] = None,
) -> AppSettings:
    """Load and merge settings + secrets into a single *AppSettings* object."""
    settings_data = _load_yaml(settings_file or SETTINGS_FILE)
    secrets_data  = _load_yaml(secrets_file or SECRETS_FILE)

    # Merge: secrets live under the "secrets" key in AppSettings
    settings_data["secrets"] = secrets_data

    app_settings = AppSettings(**settings_data)
    logger.info(
        "Settings loaded (server=%s:%s, store=%s, handshake_timeout=%ss)",
        app_settings.server.host,
        app_settings.server.port,
        app_settings.store.db_path,
        app_settings.realtime.handshake_timeout_seconds,
    )
    return app_settings


@lru_cache(maxsize=1)
def get_config() -> AppSettings:
    """Return the process-wide settings, loading them on first use."""
    return load_settings()


def reset_config() -> None:
    """Forget cached settings (tests)."""
    get_config.cache_clear()
