"""Config schema and accessor."""

from __future__ import annotations

from typing import Any

from loguru import logger

from lockergw.core.constants import (
    BROKER_MODES,
    DEFAULT_HEARTBEAT_TIMEOUT,
    DEFAULT_INBOUND_TOPIC,
    DEFAULT_LOOKUP_TIMEOUT,
    DEFAULT_OUTBOUND_TOPIC,
    DEFAULT_UNLOCK_DELAY,
)
from lockergw.core.errors import GatewayConfigurationError


def _parse_bool(val: Any, default: bool) -> bool:
    """Accept YAML booleans and the usual env strings."""
    if isinstance(val, bool):
        return val
    if val is None:
        return default
    v = str(val).lower()
    if v in ("1", "true", "yes"):
        return True
    if v in ("0", "false", "no"):
        return False
    return default


class Config:
    """Config accessor with attribute-style access for nested keys."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        self._data = data or {}

    def reload(self, data: dict[str, Any], *, validate: bool = True) -> None:
        """Replace config data (e.g. on SIGHUP reload)."""
        previous = self._data
        self._data = data or {}
        if validate:
            try:
                self._validate()
            except GatewayConfigurationError:
                self._data = previous
                raise
        logger.debug(
            "Config reloaded: mode={}, heartbeat_timeout={}s, unlock_delay={}s",
            self.broker_mode,
            self.heartbeat_timeout,
            self.unlock_delay,
        )

    def _validate(self) -> None:
        """Validate config structure; raise GatewayConfigurationError on failure."""
        if self.broker_mode not in BROKER_MODES:
            raise GatewayConfigurationError(
                f"broker.mode must be one of {', '.join(BROKER_MODES)}",
                code="invalid_broker_mode",
                details={"mode": self.broker_mode},
            )
        if self.broker_mode == "external" and not self.mqtt_host:
            raise GatewayConfigurationError(
                "broker.mqtt.host is required in external mode",
                code="missing_mqtt_host",
            )
        try:
            timeout = self.heartbeat_timeout
            delay = self.unlock_delay
            lookup_timeout = self.directory_lookup_timeout
        except (TypeError, ValueError) as exc:
            raise GatewayConfigurationError(
                "heartbeat_timeout, unlock_delay and directory.lookup_timeout_seconds must be numbers",
                code="invalid_number",
                original_error=exc,
            ) from exc
        if timeout <= 0:
            raise GatewayConfigurationError(
                "heartbeat_timeout must be positive",
                code="invalid_heartbeat_timeout",
                details={"value": timeout},
            )
        if delay < 0:
            raise GatewayConfigurationError(
                "unlock_delay must not be negative",
                code="invalid_unlock_delay",
                details={"value": delay},
            )
        if lookup_timeout <= 0:
            raise GatewayConfigurationError(
                "directory.lookup_timeout_seconds must be positive",
                code="invalid_lookup_timeout",
                details={"value": lookup_timeout},
            )
        users = self._data.get("users")
        if users is not None and not isinstance(users, list):
            raise GatewayConfigurationError(
                "users must be a list",
                code="invalid_users",
                details={"type": type(users).__name__},
            )
        for i, item in enumerate(self.users):
            if not isinstance(item, dict) or not item.get("uid"):
                raise GatewayConfigurationError(
                    f"users[{i}] must be a mapping with a uid",
                    code="invalid_user_entry",
                    details={"index": i},
                )

    @property
    def raw(self) -> dict[str, Any]:
        return self._data

    def get(self, key: str, default: Any = None) -> Any:
        """Get value by dot-separated path (e.g. 'broker.mqtt.host')."""
        parts = key.split(".")
        obj: Any = self._data
        for part in parts:
            if isinstance(obj, dict) and part in obj:
                obj = obj[part]
            else:
                return default
        return obj

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    @property
    def broker_mode(self) -> str:
        """built-in | external."""
        return str(self.get("broker.mode", "built-in"))

    @property
    def builtin_persistence(self) -> bool:
        return _parse_bool(self.get("broker.persistence"), True)

    @property
    def mqtt_host(self) -> str:
        return str(self.get("broker.mqtt.host") or "")

    @property
    def mqtt_port(self) -> int:
        return int(self.get("broker.mqtt.port", 1883))

    @property
    def mqtt_username(self) -> str | None:
        return self.get("broker.mqtt.username") or None

    @property
    def mqtt_password(self) -> str | None:
        return self.get("broker.mqtt.password") or None

    @property
    def mqtt_client_id(self) -> str:
        return str(self.get("broker.mqtt.client_id") or "locker-gateway")

    @property
    def mqtt_keepalive(self) -> int:
        return int(self.get("broker.mqtt.keepalive", 60))

    @property
    def mqtt_qos(self) -> int:
        return int(self.get("broker.mqtt.qos", 1))

    @property
    def publish_queue_size(self) -> int:
        """Outbound messages held while the broker is unreachable."""
        return int(self.get("broker.queue_size", 256))

    @property
    def reconnect_min_delay(self) -> float:
        return float(self.get("broker.reconnect.min_delay", 5))

    @property
    def reconnect_max_delay(self) -> float:
        return float(self.get("broker.reconnect.max_delay", 60))

    @property
    def heartbeat_timeout(self) -> float:
        """Seconds without a heartbeat before a controller counts as offline."""
        return float(self.get("heartbeat_timeout", DEFAULT_HEARTBEAT_TIMEOUT))

    @property
    def unlock_delay(self) -> float:
        """Seconds between an allowed scan and the openlock command."""
        return float(self.get("unlock_delay", DEFAULT_UNLOCK_DELAY))

    @property
    def inbound_topic(self) -> str:
        return str(self.get("topics.inbound") or DEFAULT_INBOUND_TOPIC)

    @property
    def outbound_topic(self) -> str:
        return str(self.get("topics.outbound") or DEFAULT_OUTBOUND_TOPIC)

    @property
    def events_topic(self) -> str | None:
        """Prefix for republished gateway events; None disables republishing."""
        return self.get("topics.events") or None

    @property
    def allowed_access_values(self) -> list[str]:
        """Wire 'access' values that permit an unlock."""
        values = self.get("access.allowed")
        if isinstance(values, list) and values:
            return [str(v) for v in values]
        return ["Always"]

    @property
    def users(self) -> list[dict[str, Any]]:
        """Static user directory entries."""
        u = self._data.get("users")
        return u if isinstance(u, list) else []

    @property
    def directory_url(self) -> str | None:
        return self.get("directory.url") or None

    @property
    def directory_token(self) -> str | None:
        return self.get("directory.token") or None

    @property
    def directory_cache_ttl_seconds(self) -> int:
        return int(self.get("directory.cache_ttl_seconds", 3600))

    @property
    def directory_lookup_timeout(self) -> float:
        """Seconds a scan waits for the directory before going on the controller's decision."""
        return float(self.get("directory.lookup_timeout_seconds", DEFAULT_LOOKUP_TIMEOUT))


# Global config instance (set by __main__)
cfg: Config = Config({})
