"""Locker gateway: wires codec, registry, evaluator, dispatcher and liveness to a broker adapter."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable

from loguru import logger

from lockergw.adapters.base import BrokerAdapter
from lockergw.codec import AccessLog, Ack, Heartbeat, decode
from lockergw.config import Config
from lockergw.core.errors import MalformedMessage, ProtocolViolation
from lockergw.directory import AccessPolicy, UserDirectory
from lockergw.events import command_acknowledged, device_online, message_dropped, protocol_violation
from lockergw.gateway.bus import Bus
from lockergw.gateway.dispatcher import CommandDispatcher
from lockergw.gateway.evaluator import AccessEvaluator
from lockergw.gateway.liveness import LivenessMonitor
from lockergw.gateway.publisher import EventPublisher
from lockergw.gateway.registry import DeviceRegistry
from lockergw.models import LockerDevice


class LockerGateway:
    """Owns the gateway components. The broker adapter is injected; its kind never matters here."""

    def __init__(
        self,
        broker: BrokerAdapter,
        bus: Bus,
        *,
        registry: DeviceRegistry,
        dispatcher: CommandDispatcher,
        evaluator: AccessEvaluator,
        monitor: LivenessMonitor,
        inbound_topic: str,
        clock: Callable[[], float] = time.time,
        drain_timeout: float = 2.0,
    ) -> None:
        self.broker = broker
        self.bus = bus
        self.registry = registry
        self.dispatcher = dispatcher
        self.evaluator = evaluator
        self.monitor = monitor
        self.inbound_topic = inbound_topic
        self._clock = clock
        self._drain_timeout = drain_timeout
        self._started = False
        self._scans: set[asyncio.Task] = set()
        broker.add_failure_listener(dispatcher.on_delivery_failure)

    @classmethod
    def create(
        cls,
        broker: BrokerAdapter,
        bus: Bus,
        config: Config,
        directory: UserDirectory | None = None,
        policy: Callable[[str], bool] | None = None,
        *,
        clock: Callable[[], float] = time.time,
        liveness_interval: float | None = None,
    ) -> LockerGateway:
        """Build every component from config."""
        registry = DeviceRegistry(bus, heartbeat_timeout=config.heartbeat_timeout, clock=clock)
        dispatcher = CommandDispatcher(registry, broker, bus, topic=config.outbound_topic, clock=clock)
        evaluator = AccessEvaluator(
            registry,
            dispatcher,
            bus,
            directory=directory,
            policy=policy or AccessPolicy(config.allowed_access_values),
            unlock_delay=config.unlock_delay,
            lookup_timeout=config.directory_lookup_timeout,
            clock=clock,
        )

        async def on_offline(device: LockerDevice) -> None:
            await dispatcher.cancel_device(device.name, "device_offline")

        monitor = LivenessMonitor(registry, bus, on_offline=on_offline, interval=liveness_interval, clock=clock)
        if config.events_topic:
            bus.register(EventPublisher(broker, config.events_topic))
            logger.info("Republishing gateway events under {}/", config.events_topic)
        return cls(
            broker,
            bus,
            registry=registry,
            dispatcher=dispatcher,
            evaluator=evaluator,
            monitor=monitor,
            inbound_topic=config.inbound_topic,
            clock=clock,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        await self.broker.subscribe(self.inbound_topic, self.handle_message)
        await self.broker.connect()
        await self.monitor.start()
        self._started = True
        logger.info("Locker gateway listening on {}", self.inbound_topic)

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.monitor.stop()
        await self._finish_scans()
        await self.dispatcher.close()
        if self.broker.connected:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.broker.join_outbound(), self._drain_timeout)
        await self.broker.disconnect()
        logger.info("Locker gateway stopped")

    @property
    def scans_in_flight(self) -> int:
        return len(self._scans)

    async def join_scans(self) -> None:
        """Wait until every scan received so far has been decided."""
        while self._scans:
            await asyncio.gather(*list(self._scans), return_exceptions=True)

    async def _finish_scans(self) -> None:
        if not self._scans:
            return
        _, pending = await asyncio.wait(list(self._scans), timeout=self._drain_timeout)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    def _scan_done(self, task: asyncio.Task) -> None:
        self._scans.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.opt(exception=exc).error("Access evaluation failed: {}", exc)

    def apply_settings(self, heartbeat_timeout: float, unlock_delay: float) -> None:
        """Runtime reload. Affects subsequent liveness checks and newly scheduled unlocks."""
        self.registry.heartbeat_timeout = heartbeat_timeout
        self.evaluator.unlock_delay = unlock_delay
        logger.info("Settings applied: heartbeat_timeout={}s, unlock_delay={}s", heartbeat_timeout, unlock_delay)

    async def handle_message(self, topic: str, payload: bytes) -> None:
        """Decode one inbound payload and route it. Bad input is dropped here, never raised."""
        observed_at = self._clock()
        try:
            message = decode(payload)
        except MalformedMessage as exc:
            self._drop(topic, payload, exc)
            return
        except ProtocolViolation as exc:
            self._violation(exc)
            return

        if isinstance(message, Heartbeat):
            await self._on_heartbeat(message, observed_at)
        elif isinstance(message, AccessLog):
            # Directory lookups must not hold up heartbeats queued behind this scan
            task = asyncio.create_task(self.evaluator.evaluate(message, observed_at), name=f"scan-{message.uid}")
            self._scans.add(task)
            task.add_done_callback(self._scan_done)
        elif isinstance(message, Ack):
            self._on_ack(message)

    async def _on_heartbeat(self, hb: Heartbeat, observed_at: float) -> None:
        async with self.registry.device_lock(hb.name):
            try:
                result = self.registry.upsert_from_heartbeat(
                    hb.hostname, hb.ip, hb.controller_type, hb.num_locks, hb.uptime, observed_at
                )
            except ProtocolViolation as exc:
                self._violation(exc)
                return
        device = result.device
        if result.came_online:
            if not result.created:
                logger.info("Controller {} back online", device.hostname)
            _, evt = device_online(device.name, device.hostname, device.ip_address, observed_at)
            self.bus.publish("gateway", evt)
        else:
            logger.debug("Heartbeat from {} (uptime {:.0f}s)", device.hostname, device.uptime_seconds)

    def _on_ack(self, ack: Ack) -> None:
        unit = self.registry.find_unit_by_door(ack.doorip, ack.lock)
        unit_id = unit.unit_id if unit is not None else None
        if unit is not None:
            self.registry.touch_unit(unit.unit_id)
            logger.info("Controller acknowledged {} for {}", ack.cmd, unit_id)
        else:
            logger.debug("Acknowledgement {} from {} lock {} matches no unit", ack.cmd, ack.doorip, ack.lock)
        _, evt = command_acknowledged(ack.cmd, unit_id, ack.doorip, ack.lock, ack.uid, raw=ack.raw)
        self.bus.publish("gateway", evt)

    def _drop(self, topic: str, payload: bytes, exc: MalformedMessage) -> None:
        text = payload.decode(errors="replace") if isinstance(payload, (bytes, bytearray)) else str(payload)
        logger.warning("Dropped message on {}: {} ({})", topic, exc, exc.code)
        _, evt = message_dropped(topic, exc.code or "malformed", text)
        self.bus.publish("gateway", evt)

    def _violation(self, exc: ProtocolViolation) -> None:
        name = str(exc.details.get("name", ""))
        logger.error("Protocol violation from {}: {}", name or "controller", exc)
        _, evt = protocol_violation(name, str(exc), details={"code": exc.code, **exc.details})
        self.bus.publish("gateway", evt)
