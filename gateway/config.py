"""
Configuration for the Plugin Gateway

Two layers:
- ``Settings``: process settings read from the environment / .env (pydantic)
- ``ConfigSnapshot``: the static configuration document (configs/config.json)
  shared read-only with plugins and the discovery endpoint
"""

import copy
import json
import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Union

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from gateway.errors import ConfigLoadError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


class Settings(BaseSettings):
    """Application settings"""

    # Server configuration
    HOST: str = Field(default="0.0.0.0", validation_alias="HOST")
    PORT: Optional[int] = Field(
        default=None,
        validation_alias="PORT",
        description="Runtime port override; falls back to the static config, then 3000",
    )
    DEBUG: bool = Field(default=False, validation_alias="DEBUG")

    # Logging configuration (stdout always, file when set)
    LOG_FILE: str = Field(default="logs/gateway.log", validation_alias="LOG_FILE")

    # Static configuration documents
    STATIC_CONFIG_PATH: str = Field(
        default="configs/config.json", validation_alias="STATIC_CONFIG_PATH"
    )
    PLUGIN_CONFIG_PATH: str = Field(
        default="configs/plugins.yaml", validation_alias="PLUGIN_CONFIG_PATH"
    )

    # Plugin discovery
    SYSTEM_PLUGINS_DIR: str = Field(
        default=str(Path(__file__).parent / "plugins"),
        validation_alias="SYSTEM_PLUGINS_DIR",
    )
    USER_PLUGINS_DIR: str = Field(default="plugins", validation_alias="USER_PLUGINS_DIR")
    API_PREFIX: str = Field(default="/api", validation_alias="API_PREFIX")
    PLUGIN_TIMEOUT: Optional[float] = Field(
        default=None,
        validation_alias="PLUGIN_TIMEOUT",
        description="Per-request plugin timeout in seconds; unset means no timeout",
    )

    # Usage statistics
    STATS_FILE: str = Field(default="db.json", validation_alias="STATS_FILE")
    STATS_FLUSH_INTERVAL: float = Field(
        default=10.0,
        validation_alias="STATS_FLUSH_INTERVAL",
        description="Seconds between background flushes of the usage counters",
    )

    # HTTP client configuration (shared by plugins for upstream calls)
    REQUEST_TIMEOUT: float = Field(default=60.0, validation_alias="REQUEST_TIMEOUT")
    MAX_CONNECTIONS: int = Field(default=100, validation_alias="MAX_CONNECTIONS")
    MAX_KEEPALIVE_CONNECTIONS: int = Field(
        default=20, validation_alias="MAX_KEEPALIVE_CONNECTIONS"
    )

    # CORS configuration
    ALLOWED_ORIGINS: List[str] = Field(
        default=["*"], validation_alias="ALLOWED_ORIGINS"
    )

    class Config:
        # Find .env file relative to project root (one level up from gateway/)
        env_file = Path(__file__).parent.parent / ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"


class ConfigSnapshot(Mapping):
    """
    Read-only view of the static configuration document.

    Nested containers are handed out as copies so callers can never mutate
    the snapshot owned by the process.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(dict(data or {}))

    def __getitem__(self, key: str) -> Any:
        value = self._data[key]
        if isinstance(value, (dict, list)):
            return copy.deepcopy(value)
        return value

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"ConfigSnapshot({self._data!r})"

    def to_dict(self) -> Dict[str, Any]:
        """Deep copy suitable for serialization"""
        return copy.deepcopy(self._data)


def _read_config_file(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f) or {}
            else:
                data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigLoadError(f"Config file not found: {path}") from e
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise ConfigLoadError(f"Failed to parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigLoadError(f"Config file {path} must contain an object at the top level")
    return data


def load_static_config(path: Union[str, Path]) -> ConfigSnapshot:
    """Load the static configuration, falling back to an empty one on any error."""
    path = Path(path)
    try:
        data = _read_config_file(path)
    except ConfigLoadError as e:
        logger.error(f"Using empty static configuration: {e}")
        return ConfigSnapshot()

    logger.info(f"Loaded static configuration from {path}")
    logger.info(f"  Keys: {sorted(data.keys())}")
    return ConfigSnapshot(data)


def resolve_port(settings: Settings, config: Mapping) -> int:
    """
    Resolve the bind port: environment override, then static config, then default.

    Raises ConfigLoadError when the chosen value is not a usable port number.
    """
    if settings.PORT is not None:
        candidate: Any = settings.PORT
    else:
        candidate = config.get("port", DEFAULT_PORT)

    try:
        port = int(candidate)
    except (TypeError, ValueError) as e:
        raise ConfigLoadError(f"Invalid port: {candidate!r}") from e

    if not 0 < port < 65536:
        raise ConfigLoadError(f"Port out of range: {port}")
    return port


# Global settings instance
settings = Settings()
