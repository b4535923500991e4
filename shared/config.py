"""
Configuration for the quote server and client.

Values are layered, lowest precedence first:

    1. dataclass defaults
    2. YAML file (``server:`` / ``client:`` sections)
    3. QUOTESTREAM_* environment variables
    4. explicit keyword overrides (CLI options)

Example quotestream.yaml:

    server:
      host: 0.0.0.0
      port: 8080
      broadcast_interval: 1.0
      security_id: "100"
    client:
      server_url: ws://localhost:8080
      product_id: "100"
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from shared.errors import ConfigError
from shared.log import get_logger
from shared.utils import build_ws_url, is_hostport, parse_ws_url

logger = get_logger(__name__)

DEFAULT_HOST = "localhost"
DEFAULT_PORT = 8080
DEFAULT_PRODUCT_ID = "100"

# environment variable -> (section field, converter)
_SERVER_ENV = {
    "QUOTESTREAM_HOST": ("host", str),
    "QUOTESTREAM_PORT": ("port", int),
    "QUOTESTREAM_INTERVAL": ("broadcast_interval", float),
    "QUOTESTREAM_SECURITY_ID": ("security_id", str),
    "QUOTESTREAM_LOG_LEVEL": ("log_level", str),
}
_CLIENT_ENV = {
    "QUOTESTREAM_SERVER": ("server_url", str),
    "QUOTESTREAM_PRODUCT": ("product_id", str),
    "QUOTESTREAM_LOG_LEVEL": ("log_level", str),
}


@dataclass(frozen=True)
class ServerConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    broadcast_interval: float = 1.0
    security_id: str = DEFAULT_PRODUCT_ID
    ping_interval: float = 15.0
    ping_timeout: float = 45.0
    log_level: str = "INFO"

    def validate(self) -> ServerConfig:
        if not self.host:
            raise ConfigError("host must not be empty")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port {self.port} out of range")
        _require_positive("broadcast_interval", self.broadcast_interval)
        _require_positive("ping_interval", self.ping_interval)
        _require_positive("ping_timeout", self.ping_timeout)
        if not self.security_id:
            raise ConfigError("security_id must not be empty")
        return self


@dataclass(frozen=True)
class ClientConfig:
    server_url: str = build_ws_url(DEFAULT_HOST, DEFAULT_PORT)
    product_id: str = DEFAULT_PRODUCT_ID
    open_timeout: float = 10.0
    ping_interval: float = 15.0
    ping_timeout: float = 45.0
    log_level: str = "INFO"

    def validate(self) -> ClientConfig:
        try:
            parse_ws_url(self.server_url)
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if not self.product_id:
            raise ConfigError("product_id must not be empty")
        _require_positive("open_timeout", self.open_timeout)
        _require_positive("ping_interval", self.ping_interval)
        _require_positive("ping_timeout", self.ping_timeout)
        return self


def load_config_file(path: Optional[Union[str, Path]]) -> Dict[str, Any]:
    """Read a YAML config file. A missing path yields an empty mapping."""
    if path is None:
        return {}
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Config file {path} does not exist")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    logger.debug("Loaded configuration from %s", path)
    return data


def load_server_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> ServerConfig:
    section = _section(load_config_file(path), "server")
    config = _apply(ServerConfig(), section, _env_values(_SERVER_ENV), overrides)
    return config.validate()


def load_client_config(path: Optional[Union[str, Path]] = None, **overrides: Any) -> ClientConfig:
    section = _section(load_config_file(path), "client")
    env = _env_values(_CLIENT_ENV)
    # QUOTESTREAM_SERVER may be a full URL or a bare host:port
    if "server_url" in env and "://" not in env["server_url"] and is_hostport(env["server_url"]):
        host, port = env["server_url"].rsplit(":", 1)
        env["server_url"] = build_ws_url(host, int(port))
    config = _apply(ClientConfig(), section, env, overrides)
    return config.validate()


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    section = data.get(name, {}) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return section


def _env_values(mapping: Dict[str, Any]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for var, (field_name, convert) in mapping.items():
        raw = os.getenv(var)
        if raw is None or raw == "":
            continue
        try:
            values[field_name] = convert(raw)
        except ValueError as e:
            raise ConfigError(f"{var}={raw!r} is not a valid {convert.__name__}") from e
    return values


def _apply(config, *layers: Dict[str, Any]):
    known = {f.name for f in fields(config)}
    for layer in layers:
        updates = {}
        for key, value in layer.items():
            if value is None:
                continue
            if key not in known:
                logger.warning("Ignoring unknown config key %r", key)
                continue
            updates[key] = _coerce(key, value, type(getattr(config, key)))
        config = replace(config, **updates)
    return config


def _coerce(key: str, value: Any, kind: type) -> Any:
    if isinstance(value, bool) and kind is not bool:
        raise ConfigError(f"{key} must be a {kind.__name__}")
    # int(3.7) would truncate silently
    if kind is int and isinstance(value, float) and not value.is_integer():
        raise ConfigError(f"{key}={value!r} is not a valid int")
    try:
        return kind(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{key}={value!r} is not a valid {kind.__name__}") from e


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value}")
