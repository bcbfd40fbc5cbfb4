"""Bus targets that take gateway events out of the process."""

from __future__ import annotations

import json
from dataclasses import asdict, is_dataclass

from loguru import logger

from lockergw.adapters.base import BrokerAdapter
from lockergw.core.errors import BrokerDisconnected
from lockergw.events import EVENT_NAMES, DeliveryFailed


def event_to_dict(evt: object) -> dict:
    """Wire form of an event: {"type": <name>, **fields}."""
    name = EVENT_NAMES[type(evt)]
    data = asdict(evt) if is_dataclass(evt) else {}
    return {"type": name, **data}


class EventPublisher:
    """Republishes every gateway event as JSON on <prefix>/<event name>.

    This is how a UI or a persistence layer follows the gateway without being
    coupled to it. Events are best-effort: while the broker is down they are
    skipped rather than queued.
    """

    def __init__(self, broker: BrokerAdapter, prefix: str) -> None:
        self._broker = broker
        self._prefix = prefix.rstrip("/")

    @property
    def prefix(self) -> str:
        return self._prefix

    def topic_for(self, evt: object) -> str:
        return f"{self._prefix}/{EVENT_NAMES[type(evt)]}"

    def accept_event(self, source: str, evt: object) -> bool:
        if type(evt) not in EVENT_NAMES:
            return False
        # Failures of our own republishing would feed back into us
        if isinstance(evt, DeliveryFailed) and evt.topic.startswith(self._prefix + "/"):
            return False
        return True

    def push_event(self, source: str, evt: object) -> None:
        topic = self.topic_for(evt)
        # Commands share the outbound queue; during an outage it is kept for them
        if not self._broker.connected:
            logger.debug("Broker disconnected; event {} not republished", topic)
            return
        try:
            self._broker.publish(topic, json.dumps(event_to_dict(evt)))
        except BrokerDisconnected as exc:
            logger.warning("Event {} not republished: {}", topic, exc)


class EventLogger:
    """Debug trail of every event on the bus."""

    def accept_event(self, source: str, evt: object) -> bool:
        return True

    def push_event(self, source: str, evt: object) -> None:
        logger.debug("[{}] {}", source, evt)
