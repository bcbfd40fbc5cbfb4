"""Built-in broker: an in-process hub shared by every adapter attached to it."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from lockergw.adapters.base import BrokerAdapter, topic_matches

if TYPE_CHECKING:
    from collections.abc import Iterable


class InProcessHub:
    """Routes messages between attached EmbeddedBroker clients.

    With persistence on, the last retained message per topic is kept and replayed
    to new subscribers.
    """

    def __init__(self, *, persistence: bool = True) -> None:
        self.persistence = persistence
        self._clients: dict[EmbeddedBroker, set[str]] = {}
        self._retained: dict[str, bytes] = {}

    @property
    def clients(self) -> list[EmbeddedBroker]:
        return list(self._clients)

    def attach(self, client: EmbeddedBroker) -> None:
        self._clients[client] = set()

    def detach(self, client: EmbeddedBroker) -> None:
        self._clients.pop(client, None)

    def is_attached(self, client: EmbeddedBroker) -> bool:
        return client in self._clients

    async def subscribe(self, client: EmbeddedBroker, topic_filter: str) -> None:
        filters = self._clients.get(client)
        if filters is None:
            raise ConnectionError("client is not attached to the hub")
        filters.add(topic_filter)
        for topic, payload in list(self._retained.items()):
            if topic_matches(topic, topic_filter):
                await client._deliver(topic, payload)

    async def route(self, topic: str, payload: bytes, *, retain: bool = False) -> int:
        """Deliver to every attached client with a matching filter. Returns the receiver count."""
        if retain and self.persistence:
            if payload:
                self._retained[topic] = payload
            else:
                self._retained.pop(topic, None)
        receivers = 0
        for client, filters in list(self._clients.items()):
            if any(topic_matches(topic, f) for f in filters):
                await client._deliver(topic, payload)
                receivers += 1
        return receivers

    def drop(self, clients: Iterable[EmbeddedBroker] | None = None) -> None:
        """Force-disconnect clients (all by default), as a restarting broker would."""
        for client in list(clients if clients is not None else self._clients):
            self.detach(client)
            client._connection_lost()


default_hub = InProcessHub()


class EmbeddedBroker(BrokerAdapter):
    """Broker adapter for the built-in mode."""

    def __init__(self, hub: InProcessHub | None = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self._hub = hub if hub is not None else default_hub
        self._lost = asyncio.Event()

    @property
    def name(self) -> str:
        return "embedded"

    @property
    def hub(self) -> InProcessHub:
        return self._hub

    def _connection_lost(self) -> None:
        self._lost.set()

    async def _open(self) -> None:
        self._lost.clear()
        self._hub.attach(self)

    async def _close(self) -> None:
        self._hub.detach(self)

    async def _listen(self) -> None:
        # Delivery is pushed by the hub; just hold the connection until it is dropped.
        await self._lost.wait()

    async def _send(self, topic: str, payload: bytes, retain: bool) -> None:
        if not self._hub.is_attached(self):
            raise ConnectionError("embedded broker connection is down")
        receivers = await self._hub.route(topic, payload, retain=retain)
        if not receivers:
            logger.debug("No subscribers for {}", topic)

    async def _subscribe(self, topic: str) -> None:
        await self._hub.subscribe(self, topic)
