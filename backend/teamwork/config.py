"""Teamwork application configuration.

Settings come from a single YAML file, ``teamwork.settings.yaml``, looked up
in the working directory unless ``TEAMWORK_SETTINGS`` points elsewhere. Every
section has defaults, so a missing file yields a working development setup.

Relative ``storage.db_path`` values are resolved against the directory of the
settings file, or the project root when that directory is ``config/``;
``:memory:`` is kept as-is.
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

SETTINGS_FILE = Path("teamwork.settings.yaml")
SETTINGS_ENV_VAR = "TEAMWORK_SETTINGS"


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str  = "0.0.0.0"
    port:            int  = 8000
    reload:          bool = False
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])


class LoggingSettings(BaseModel):
    level: str = "info"


class StorageSettings(BaseModel):
    db_path: str = "teamwork.duckdb"


class PresenceSettings(BaseModel):
    online_window_seconds:      float = 30.0
    offline_backdate_seconds:   float = 60.0
    heartbeat_interval_seconds: float = 10.0


class ChatSettings(BaseModel):
    default_history_limit: int = 100
    max_history_limit:     int = 1000
    memory_fallback_size:  int = 1000


class TransportSettings(BaseModel):
    """Push/poll transport tuning.

    poll_interval_seconds is what the server advertises to poll clients;
    the client clamps it into the 2-5 second band.
    """
    connect_timeout_seconds:   float = 5.0
    poll_interval_seconds:     float = 2.0
    poll_idle_timeout_seconds: float = 30.0
    poll_buffer_size:          int   = 500
    reap_interval_seconds:     float = 10.0


class SorterSettings(BaseModel):
    eligible_roles: List[str] = Field(default_factory=lambda: ["seller"])
    recent_limit:   int       = 20

    @field_validator("eligible_roles")
    @classmethod
    def _non_empty_roles(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("eligible_roles must name at least one role")
        return value


class TeamworkConfig(BaseModel):
    server:    ServerSettings    = Field(default_factory=ServerSettings)
    logging:   LoggingSettings   = Field(default_factory=LoggingSettings)
    storage:   StorageSettings   = Field(default_factory=StorageSettings)
    presence:  PresenceSettings  = Field(default_factory=PresenceSettings)
    chat:      ChatSettings      = Field(default_factory=ChatSettings)
    transport: TransportSettings = Field(default_factory=TransportSettings)
    sorter:    SorterSettings    = Field(default_factory=SorterSettings)


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def _resolve_db_path(db_path: str, settings_path: Path) -> str:
    if db_path == ":memory:" or Path(db_path).is_absolute():
        return db_path
    base = settings_path.resolve().parent
    # ./config/teamwork.settings.yaml: paths are relative to the project root
    if base.name == "config":
        base = base.parent
    return str(base / db_path)


def load_config(settings_path: Optional[Path] = None) -> TeamworkConfig:
    """Load the YAML settings file into a TeamworkConfig."""
    if settings_path is None:
        settings_path = Path(os.environ.get(SETTINGS_ENV_VAR, SETTINGS_FILE))
    data = _load_yaml(Path(settings_path))

    config = TeamworkConfig(**data)
    config.storage.db_path = _resolve_db_path(config.storage.db_path, Path(settings_path))
    logger.info(
        "Settings loaded (server=%s:%s, db=%s, eligible_roles=%s)",
        config.server.host,
        config.server.port,
        config.storage.db_path,
        config.sorter.eligible_roles,
    )
    return config


_config: Optional[TeamworkConfig] = None


def get_config() -> TeamworkConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def set_config(config: Optional[TeamworkConfig]) -> None:
    """Replace (or with None, forget) the process-wide config."""
    global _config
    _config = config
