"""Broker adapters. Each implements BrokerAdapter (connect, disconnect, publish, subscribe)."""

from __future__ import annotations

from loguru import logger

from lockergw.adapters.base import BrokerAdapter, topic_matches
from lockergw.adapters.embedded import EmbeddedBroker, InProcessHub
from lockergw.adapters.mqtt import MqttBroker
from lockergw.config import Config
from lockergw.core.errors import GatewayConfigurationError

__all__ = ["BrokerAdapter", "EmbeddedBroker", "InProcessHub", "MqttBroker", "create_broker", "topic_matches"]


def create_broker(config: Config, *, hub: InProcessHub | None = None) -> BrokerAdapter:
    """Build the adapter selected by broker.mode. The gateway itself never looks at the mode."""
    common = {
        "queue_size": config.publish_queue_size,
        "reconnect_min_delay": config.reconnect_min_delay,
        "reconnect_max_delay": config.reconnect_max_delay,
    }
    mode = config.broker_mode
    if mode == "built-in":
        hub = hub or InProcessHub(persistence=config.builtin_persistence)
        logger.info("Using built-in broker (persistence={})", hub.persistence)
        return EmbeddedBroker(hub, **common)
    if mode == "external":
        if not config.mqtt_host:
            raise GatewayConfigurationError("external broker mode requires broker.mqtt.host", code="missing_mqtt_host")
        logger.info("Using external broker {}:{}", config.mqtt_host, config.mqtt_port)
        return MqttBroker(
            config.mqtt_host,
            config.mqtt_port,
            username=config.mqtt_username,
            password=config.mqtt_password,
            client_id=config.mqtt_client_id,
            keepalive=config.mqtt_keepalive,
            qos=config.mqtt_qos,
            **common,
        )
    raise GatewayConfigurationError(f"unknown broker mode: {mode}", code="invalid_broker_mode", details={"mode": mode})
