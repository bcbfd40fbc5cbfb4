"""Broker adapter base: publish/subscribe over a connection that may drop and come back."""

from __future__ import annotations

import asyncio
import contextlib
import random
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from aiomqtt import Topic
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from lockergw.core.errors import BrokerDisconnected

MessageHandler = Callable[[str, bytes], Awaitable[None]]
FailureListener = Callable[[str, bytes, BaseException], None]


def topic_matches(topic: str, topic_filter: str) -> bool:
    """MQTT filter matching (+ and # wildcards)."""
    return Topic(topic).matches(topic_filter)


def backoff_delay(attempt: int, min_delay: float, max_delay: float) -> float:
    """Exponential backoff with jitter, never above max_delay."""
    delay = min(max_delay, min_delay * (2 ** max(0, attempt - 1)))
    return min(max_delay, delay * random.uniform(0.5, 1.5))


@dataclass
class _Outbound:
    topic: str
    payload: bytes
    retain: bool = False


@dataclass
class Subscription:
    """One subscribed filter; messages are handled in arrival order by a dedicated worker."""

    topic: str
    handler: MessageHandler
    queue: asyncio.Queue[tuple[str, bytes]] = field(default_factory=asyncio.Queue)
    task: asyncio.Task | None = None


class BrokerAdapter(ABC):
    """Common plumbing for broker bindings.

    Subclasses implement _open/_close/_listen/_send/_subscribe. This class owns the
    bounded outbound queue, the reconnect supervisor and the per-subscription workers.
    """

    def __init__(
        self,
        *,
        queue_size: int = 256,
        reconnect_min_delay: float = 5.0,
        reconnect_max_delay: float = 60.0,
        send_attempts: int = 3,
        send_retry_wait: float = 0.5,
    ) -> None:
        self._outbound: asyncio.Queue[_Outbound] = asyncio.Queue(maxsize=queue_size)
        self._reconnect_min = reconnect_min_delay
        self._reconnect_max = reconnect_max_delay
        self._send_attempts = send_attempts
        self._send_retry_wait = send_retry_wait
        self._subscriptions: list[Subscription] = []
        self._failure_listeners: list[FailureListener] = []
        self._connected = asyncio.Event()
        self._stopping = False
        self._supervisor_task: asyncio.Task | None = None
        self._sender_task: asyncio.Task | None = None

    @property
    @abstractmethod
    def name(self) -> str:
        """Adapter identifier ("embedded", "mqtt")."""
        ...

    @property
    def connected(self) -> bool:
        return self._connected.is_set()

    async def wait_connected(self, timeout: float | None = None) -> bool:
        """Wait until the connection is up. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._connected.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def add_failure_listener(self, listener: FailureListener) -> None:
        """Called with (topic, payload, error) for every message that could not be delivered."""
        self._failure_listeners.append(listener)

    async def connect(self) -> None:
        """Start the connection supervisor and the sender. Returns immediately; see wait_connected()."""
        if self._supervisor_task is not None:
            return
        self._stopping = False
        for sub in self._subscriptions:
            if sub.task is None:
                sub.task = asyncio.create_task(self._consume(sub), name=f"{self.name}-sub-{sub.topic}")
        self._supervisor_task = asyncio.create_task(self._supervise(), name=f"{self.name}-supervisor")
        self._sender_task = asyncio.create_task(self._drain_outbound(), name=f"{self.name}-sender")
        logger.info("{} broker adapter started", self.name)

    async def disconnect(self) -> None:
        """Stop all tasks. Messages still queued are reported as failed, not dropped silently."""
        self._stopping = True
        tasks = [self._supervisor_task, self._sender_task, *(s.task for s in self._subscriptions)]
        for task in tasks:
            if task and not task.done():
                task.cancel()
        for task in tasks:
            if task:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._supervisor_task = None
        self._sender_task = None
        for sub in self._subscriptions:
            sub.task = None
        self._connected.clear()
        await self._safe_close()

        unsent = 0
        while not self._outbound.empty():
            item = self._outbound.get_nowait()
            unsent += 1
            self._report_failure(item, BrokerDisconnected("adapter stopped before delivery", code="stopped"))
        if unsent:
            logger.warning("{} adapter stopped with {} undelivered message(s)", self.name, unsent)
        logger.info("{} broker adapter stopped", self.name)

    def publish(self, topic: str, payload: bytes | str, *, retain: bool = False) -> None:
        """Queue a message for delivery. Never blocks.

        While disconnected, messages wait in the bounded queue. Raises BrokerDisconnected
        when the queue is full.
        """
        data = payload.encode() if isinstance(payload, str) else bytes(payload)
        try:
            self._outbound.put_nowait(_Outbound(topic, data, retain))
        except asyncio.QueueFull:
            logger.error(
                "{} outbound queue full ({} messages, connected={}); rejecting publish to {}",
                self.name,
                self._outbound.qsize(),
                self.connected,
                topic,
            )
            raise BrokerDisconnected(
                f"outbound queue full, message to {topic} rejected",
                code="queue_full",
                details={"topic": topic, "queued": self._outbound.qsize()},
            ) from None

    async def subscribe(self, topic: str, handler: MessageHandler) -> None:
        """Subscribe handler to a topic filter. Re-established automatically after reconnects."""
        sub = Subscription(topic=topic, handler=handler)
        sub.task = asyncio.create_task(self._consume(sub), name=f"{self.name}-sub-{topic}")
        self._subscriptions.append(sub)
        if self._connected.is_set():
            await self._subscribe(topic)
        logger.info("{} subscribed to {}", self.name, topic)

    async def _deliver(self, topic: str, payload: bytes) -> None:
        """Hand an inbound message to every matching subscription."""
        for sub in self._subscriptions:
            if topic_matches(topic, sub.topic):
                sub.queue.put_nowait((topic, payload))

    async def _consume(self, sub: Subscription) -> None:
        while True:
            topic, payload = await sub.queue.get()
            try:
                await sub.handler(topic, payload)
            except Exception as exc:
                logger.exception("Handler for {} failed on {}: {}", sub.topic, topic, exc)
            finally:
                sub.queue.task_done()

    async def join_inbound(self) -> None:
        """Wait until every received message has been handled."""
        for sub in list(self._subscriptions):
            await sub.queue.join()

    async def join_outbound(self) -> None:
        """Wait until every queued message has been sent or reported failed."""
        await self._outbound.join()

    async def _supervise(self) -> None:
        """Connect, listen, and reconnect with bounded exponential backoff."""
        attempt = 0
        while not self._stopping:
            try:
                await self._open()
                for sub in self._subscriptions:
                    await self._subscribe(sub.topic)
                self._connected.set()
                attempt = 0
                logger.info("{} broker connected ({} subscriptions)", self.name, len(self._subscriptions))
                await self._listen()
                logger.warning("{} broker connection lost", self.name)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("{} broker connection failed: {}", self.name, exc)
            finally:
                self._connected.clear()
                await self._safe_close()
            if self._stopping:
                break
            attempt += 1
            wait = backoff_delay(attempt, self._reconnect_min, self._reconnect_max)
            logger.info("{} reconnecting in {:.1f}s (attempt {})", self.name, wait, attempt)
            await asyncio.sleep(wait)

    async def _safe_close(self) -> None:
        try:
            await self._close()
        except Exception as exc:
            logger.debug("{} close failed: {}", self.name, exc)

    async def _drain_outbound(self) -> None:
        while True:
            item = await self._outbound.get()
            try:
                await self._send_with_retry(item)
                logger.debug("{} published to {}", self.name, item.topic)
            except asyncio.CancelledError:
                self._report_failure(item, BrokerDisconnected("adapter stopped during delivery", code="stopped"))
                raise
            except Exception as exc:
                logger.error("{} giving up on message to {}: {}", self.name, item.topic, exc)
                self._report_failure(item, exc)
            finally:
                self._outbound.task_done()

    async def _send_with_retry(self, item: _Outbound) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._send_attempts),
            wait=wait_exponential(multiplier=self._send_retry_wait, max=self._reconnect_max),
            retry=retry_if_exception_type(Exception),
            reraise=True,
        ):
            with attempt:
                await self._connected.wait()
                await self._send(item.topic, item.payload, item.retain)

    def _report_failure(self, item: _Outbound, error: BaseException) -> None:
        for listener in self._failure_listeners:
            try:
                listener(item.topic, item.payload, error)
            except Exception as exc:
                logger.exception("Delivery failure listener raised: {}", exc)

    @abstractmethod
    async def _open(self) -> None:
        """Establish the underlying connection."""
        ...

    @abstractmethod
    async def _close(self) -> None:
        """Tear down the underlying connection."""
        ...

    @abstractmethod
    async def _listen(self) -> None:
        """Feed inbound messages to _deliver(); return or raise when the connection is gone."""
        ...

    @abstractmethod
    async def _send(self, topic: str, payload: bytes, retain: bool) -> None:
        ...

    @abstractmethod
    async def _subscribe(self, topic: str) -> None:
        ...
