"""Config loading: YAML file with an environment overlay."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from lockergw.core.errors import GatewayConfigurationError

# env var -> dotted config path
_ENV_KEYS = {
    "LOCKERGW_BROKER_MODE": "broker.mode",
    "LOCKERGW_MQTT_HOST": "broker.mqtt.host",
    "LOCKERGW_MQTT_PORT": "broker.mqtt.port",
    "LOCKERGW_MQTT_USERNAME": "broker.mqtt.username",
    "LOCKERGW_MQTT_PASSWORD": "broker.mqtt.password",
    "LOCKERGW_MQTT_CLIENT_ID": "broker.mqtt.client_id",
    "LOCKERGW_HEARTBEAT_TIMEOUT": "heartbeat_timeout",
    "LOCKERGW_UNLOCK_DELAY": "unlock_delay",
    "LOCKERGW_DIRECTORY_URL": "directory.url",
    "LOCKERGW_DIRECTORY_TOKEN": "directory.token",
}


def _deep_update(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_update(result[key], value)
        else:
            result[key] = value
    return result


def _env_overlay(environ: dict[str, str] | None = None) -> dict[str, Any]:
    """Nested dict built from LOCKERGW_* variables that are set and non-empty."""
    environ = dict(os.environ) if environ is None else environ
    overlay: dict[str, Any] = {}
    for env_key, path in _ENV_KEYS.items():
        value = environ.get(env_key)
        if not value:
            continue
        node = overlay
        *parents, leaf = path.split(".")
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return overlay


def load_config(path: str | Path) -> dict[str, Any]:
    """Load config from YAML file. Use SafeLoader. Returns raw dict.

    Raises GatewayConfigurationError (code "invalid_yaml") if the file does not parse.
    """
    path = Path(path)
    if not path.exists():
        logger.warning("Config file not found: {}", path)
        return {}

    try:
        with open(path) as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            if data is not None:
                logger.warning("Config file {} has invalid structure (expected dict)", path)
            return {}
        return data
    except yaml.YAMLError as exc:
        logger.error("Failed to parse config {}: {}", path, exc)
        raise GatewayConfigurationError(
            f"config file {path} is not valid YAML: {exc}",
            code="invalid_yaml",
            details={"path": str(path)},
            original_error=exc,
        ) from exc


def load_config_with_env(path: str | Path) -> dict[str, Any]:
    """Load config from YAML and overlay env-derived values (.env honoured via python-dotenv)."""
    from dotenv import load_dotenv

    load_dotenv()
    return _deep_update(load_config(path), _env_overlay())
