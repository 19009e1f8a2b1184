"""Chat relay configuration.

Loads settings from a YAML file (``relay.settings.yaml`` by default, or the
path in ``RELAY_SETTINGS``) and applies environment variable overrides on
top, so a deployment can be tuned with nothing but env vars:

  * HOST / PORT: bind address
  * CLIENT_URL: allowed cross-origin client address(es)
  * DEFAULT_ROOM: room used when a client names none
  * CHAT_ROOMS: comma-separated preset room list
  * MESSAGE_HISTORY_LIMIT: per-room history cap
  * TYPING_TIMEOUT_SECONDS: server-side typing expiry (0 disables it)
  * LOG_LEVEL: root logger level
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

SETTINGS_FILE = Path("relay.settings.yaml")

DEFAULT_PRESET_ROOMS = ["general", "tech", "gaming", "support"]


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found: %s", path)
        return {}
    with path.open(encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",")]
    return value


# ---------------------------------------------------------------------------
# Settings models
# ---------------------------------------------------------------------------


class ServerSettings(BaseModel):
    host:            str       = "0.0.0.0"
    port:            int       = Field(default=5000, ge=1, le=65535)
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:5173"])

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, value: Any) -> Any:
        value = _split_csv(value)
        if isinstance(value, list):
            return [origin for origin in value if origin]
        return value


class ChatSettings(BaseModel):
    """Room, history and typing behaviour."""
    default_room:           str       = "general"
    preset_rooms:           List[str] = Field(default_factory=lambda: list(DEFAULT_PRESET_ROOMS))
    history_limit:          int       = Field(default=200, ge=1)
    page_size:              int       = Field(default=25, ge=1)
    max_page_size:          int       = Field(default=200, ge=1)
    typing_timeout_seconds: float     = Field(default=0.0, ge=0.0)

    @field_validator("default_room")
    @classmethod
    def strip_default_room(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("default_room must not be blank")
        return value

    @field_validator("preset_rooms", mode="before")
    @classmethod
    def parse_preset_rooms(cls, value: Any) -> Any:
        value = _split_csv(value)
        if isinstance(value, list):
            rooms: List[str] = []
            for room in value:
                room = str(room).strip()
                if room and room not in rooms:
                    rooms.append(room)
            return rooms or list(DEFAULT_PRESET_ROOMS)
        return value

    @model_validator(mode="after")
    def page_fits_cap(self) -> "ChatSettings":
        if self.page_size > self.max_page_size:
            raise ValueError("page_size must not exceed max_page_size")
        return self


# Names accepted by both the logging module and uvicorn
LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


class LoggingSettings(BaseModel):
    level: str = "info"

    @field_validator("level")
    @classmethod
    def known_level(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in LOG_LEVELS:
            raise ValueError(f"level must be one of: {', '.join(LOG_LEVELS)}")
        return value


class AppConfig(BaseModel):
    server:  ServerSettings  = Field(default_factory=ServerSettings)
    chat:    ChatSettings    = Field(default_factory=ChatSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# ---------------------------------------------------------------------------
# Environment overrides
# ---------------------------------------------------------------------------

# env var -> (section, key)
_ENV_OVERRIDES = {
    "HOST":                   ("server", "host"),
    "PORT":                   ("server", "port"),
    "CLIENT_URL":             ("server", "allowed_origins"),
    "DEFAULT_ROOM":           ("chat", "default_room"),
    "CHAT_ROOMS":             ("chat", "preset_rooms"),
    "MESSAGE_HISTORY_LIMIT":  ("chat", "history_limit"),
    "TYPING_TIMEOUT_SECONDS": ("chat", "typing_timeout_seconds"),
    "LOG_LEVEL":              ("logging", "level"),
}


def _apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        data.setdefault(section, {})
        if data[section] is None:
            data[section] = {}
        data[section][key] = value
        logger.debug("Config override from %s: %s.%s", env_name, section, key)
    return data


# ---------------------------------------------------------------------------
# Public loader
# ---------------------------------------------------------------------------


def load_config(
    settings_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> AppConfig:
    """Load the settings file, apply env overrides and validate.

    Args:
        settings_path: YAML file to read. Defaults to ``RELAY_SETTINGS`` or
            ``relay.settings.yaml`` in the working directory.
        environ: Environment mapping (defaults to ``os.environ``).

    Raises:
        pydantic.ValidationError: If a setting has an invalid value.
    """
    environ = os.environ if environ is None else environ
    if settings_path is None:
        settings_path = Path(environ.get("RELAY_SETTINGS", SETTINGS_FILE))

    data = _apply_env_overrides(_load_yaml(Path(settings_path)), environ)
    config = AppConfig(**data)
    logger.info(
        "Settings loaded (server=%s:%s, default_room=%s, presets=%s, history_limit=%d)",
        config.server.host,
        config.server.port,
        config.chat.default_room,
        ",".join(config.chat.preset_rooms),
        config.chat.history_limit,
    )
    return config


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reset_config() -> None:
    """Forget the cached config (next ``get_config`` reloads it)."""
    global _config
    _config = None
