"""External broker: aiomqtt client with reconnect handled by BrokerAdapter."""

from __future__ import annotations

import contextlib

import aiomqtt
from loguru import logger

from lockergw.adapters.base import BrokerAdapter


def _payload_bytes(payload: object) -> bytes:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if payload is None:
        return b""
    return str(payload).encode()


class MqttBroker(BrokerAdapter):
    """Broker adapter for an externally hosted MQTT broker."""

    def __init__(
        self,
        host: str,
        port: int = 1883,
        *,
        username: str | None = None,
        password: str | None = None,
        client_id: str | None = None,
        keepalive: int = 60,
        qos: int = 1,
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._client_id = client_id
        self._keepalive = keepalive
        self._qos = qos
        self._client: aiomqtt.Client | None = None
        self._stack: contextlib.AsyncExitStack | None = None

    @property
    def name(self) -> str:
        return "mqtt"

    async def _open(self) -> None:
        client = aiomqtt.Client(
            hostname=self._host,
            port=self._port,
            username=self._username or None,
            password=self._password or None,
            identifier=self._client_id or None,
            keepalive=self._keepalive,
        )
        stack = contextlib.AsyncExitStack()
        self._client = await stack.enter_async_context(client)
        self._stack = stack
        logger.info("MQTT session open to {}:{}", self._host, self._port)

    async def _close(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        if stack is not None:
            with contextlib.suppress(aiomqtt.MqttError):
                await stack.aclose()

    async def _listen(self) -> None:
        if self._client is None:
            raise aiomqtt.MqttError("not connected")
        async for message in self._client.messages:
            await self._deliver(str(message.topic), _payload_bytes(message.payload))

    async def _send(self, topic: str, payload: bytes, retain: bool) -> None:
        if self._client is None:
            raise aiomqtt.MqttError("not connected")
        await self._client.publish(topic, payload, qos=self._qos, retain=retain)

    async def _subscribe(self, topic: str) -> None:
        if self._client is None:
            raise aiomqtt.MqttError("not connected")
        await self._client.subscribe(topic, qos=self._qos)
