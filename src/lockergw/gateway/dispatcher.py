"""Command dispatcher: outbound commands and the pending-unlock timers.

Every mutation of a unit (status change, pending-unlock fire, cancel) runs under
that unit's lock from the registry, so "unlock about to fire" and "maintenance
just enabled" cannot interleave.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Callable

from loguru import logger

from lockergw.adapters.base import BrokerAdapter
from lockergw.codec import encode_command
from lockergw.core.constants import DEFAULT_OUTBOUND_TOPIC, CommandType
from lockergw.core.errors import BrokerDisconnected, UnitInMaintenance, UnknownTarget
from lockergw.events import command_published, delivery_failed, unlock_cancelled, unlock_scheduled
from lockergw.gateway.bus import Bus
from lockergw.gateway.registry import DeviceRegistry
from lockergw.models import Command, PendingUnlock

_STATUS_AFTER = {"maintenance": "maintenance", "normal": "available"}


class CommandDispatcher:
    """Publishes commands for units and owns every PendingUnlock until it fires or is cancelled."""

    def __init__(
        self,
        registry: DeviceRegistry,
        broker: BrokerAdapter,
        bus: Bus,
        *,
        topic: str = DEFAULT_OUTBOUND_TOPIC,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._broker = broker
        self._bus = bus
        self._topic = topic
        self._clock = clock
        self._pending: dict[str, PendingUnlock] = {}
        self._timers: dict[str, asyncio.Task] = {}

    @property
    def topic(self) -> str:
        return self._topic

    def pending(self, unit_id: str) -> PendingUnlock | None:
        return self._pending.get(unit_id)

    def pending_unlocks(self) -> list[PendingUnlock]:
        return list(self._pending.values())

    def build_command(self, cmd: CommandType, unit_id: str, uid: str = "") -> Command:
        """Address a command to a unit. Raises UnknownTarget if the unit is not registered."""
        unit = self._registry.lookup_unit(unit_id)
        device = self._registry.device_for_unit(unit_id)
        if unit is None or device is None:
            raise UnknownTarget(f"unknown unit {unit_id}", code="unknown_unit", details={"unit_id": unit_id})
        return Command(type=cmd, target_unit=unit_id, doorip=device.ip_address, lock=unit.lock_index, uid=uid)

    def schedule(self, pending: PendingUnlock) -> PendingUnlock:
        """Register a pending unlock. Caller holds the unit lock.

        At most one is active per unit: if one is already waiting, it is kept and returned.
        """
        current = self._pending.get(pending.unit_id)
        if current is not None and current.active:
            logger.info(
                "Unlock for {} already pending (fires in {:.1f}s); coalescing scan by {}",
                pending.unit_id,
                max(0.0, current.fire_at - self._clock()),
                pending.uid,
            )
            return current
        self._pending[pending.unit_id] = pending
        self._timers[pending.unit_id] = asyncio.create_task(
            self._fire_when_due(pending), name=f"unlock-{pending.unit_id}"
        )
        logger.info("Unlock for {} scheduled at +{:.1f}s", pending.unit_id, pending.fire_at - pending.scheduled_at)
        _, evt = unlock_scheduled(pending.unit_id, pending.uid, pending.scheduled_at, pending.fire_at)
        self._bus.publish("dispatcher", evt)
        return pending

    async def cancel(self, unit_id: str, reason: str = "cancelled") -> bool:
        """Cancel the unit's pending unlock. Returns False if none was active."""
        async with self._registry.unit_lock(unit_id):
            return self._cancel_locked(unit_id, reason)

    async def cancel_device(self, name: str, reason: str = "device_offline") -> int:
        """Cancel pending unlocks on every unit of a device."""
        device = self._registry.lookup_device(name)
        if device is None:
            return 0
        cancelled = 0
        for unit_id in device.unit_ids:
            if await self.cancel(unit_id, reason):
                cancelled += 1
        return cancelled

    def _cancel_locked(self, unit_id: str, reason: str) -> bool:
        pending = self._pending.pop(unit_id, None)
        timer = self._timers.pop(unit_id, None)
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()
        if pending is None or not pending.active:
            return False
        pending.cancelled = True
        logger.info("Pending unlock for {} cancelled ({})", unit_id, reason)
        _, evt = unlock_cancelled(unit_id, pending.uid, reason)
        self._bus.publish("dispatcher", evt)
        return True

    async def _fire_when_due(self, pending: PendingUnlock) -> None:
        delay = pending.fire_at - self._clock()
        if delay > 0:
            await asyncio.sleep(delay)
        async with self._registry.unit_lock(pending.unit_id):
            if self._pending.get(pending.unit_id) is not pending or not pending.active:
                return
            del self._pending[pending.unit_id]
            self._timers.pop(pending.unit_id, None)
            pending.fired = True
            try:
                command = self.build_command("openlock", pending.unit_id, pending.uid)
                self._dispatch_locked(command)
            except (UnknownTarget, UnitInMaintenance) as exc:
                logger.warning("Pending unlock for {} not sent: {}", pending.unit_id, exc)
                _, evt = unlock_cancelled(pending.unit_id, pending.uid, exc.code or "rejected")
                self._bus.publish("dispatcher", evt)
            except BrokerDisconnected:
                # already logged and surfaced as DeliveryFailed
                pass

    async def dispatch(self, command: Command) -> Command:
        """Validate and publish a command.

        Raises UnknownTarget / UnitInMaintenance without publishing, or
        BrokerDisconnected when the adapter cannot accept it.
        """
        async with self._registry.unit_lock(command.target_unit):
            return self._dispatch_locked(command)

    def _dispatch_locked(self, command: Command) -> Command:
        unit = self._registry.lookup_unit(command.target_unit)
        if unit is None:
            raise UnknownTarget(
                f"unknown unit {command.target_unit}",
                code="unknown_unit",
                details={"unit_id": command.target_unit},
            )
        if command.type == "openlock" and unit.status == "maintenance":
            raise UnitInMaintenance(
                f"unit {unit.unit_id} is in maintenance",
                code="unit_in_maintenance",
                details={"unit_id": unit.unit_id},
            )

        payload = encode_command(command)
        try:
            self._broker.publish(self._topic, payload)
        except BrokerDisconnected as exc:
            logger.error("{} for {} not published: {}", command.type, unit.unit_id, exc)
            _, evt = delivery_failed(self._topic, payload.decode(), str(exc))
            self._bus.publish("dispatcher", evt)
            raise

        now = self._clock()
        self._registry.touch_unit(unit.unit_id, now)
        status = _STATUS_AFTER.get(command.type)
        if status is not None:
            self._registry.set_unit_status(unit.unit_id, status)
        logger.info("Sent {} to {} (lock {} @ {})", command.type, unit.unit_id, command.lock, command.doorip)
        _, evt = command_published(command.type, unit.unit_id, command.doorip, command.lock, command.uid, self._topic)
        self._bus.publish("dispatcher", evt)
        return command

    async def open_lock(self, unit_id: str, uid: str = "") -> Command:
        """Immediate openlock, bypassing the delay (operator action)."""
        return await self.dispatch(self.build_command("openlock", unit_id, uid))

    async def toggle_maintenance(self, unit_id: str, enabled: bool, uid: str = "") -> Command:
        """Send maintenance/normal. Enabling maintenance cancels any pending unlock for the unit."""
        command = self.build_command("maintenance" if enabled else "normal", unit_id, uid)
        async with self._registry.unit_lock(unit_id):
            if enabled:
                self._cancel_locked(unit_id, "maintenance")
            return self._dispatch_locked(command)

    async def sync(self, unit_id: str, uid: str = "") -> Command:
        """Ask the controller to resend its current lock state."""
        return await self.dispatch(self.build_command("sync", unit_id, uid))

    def on_delivery_failure(self, topic: str, payload: bytes, error: BaseException) -> None:
        """Broker adapter failure listener: surface late delivery failures on the bus."""
        _, evt = delivery_failed(topic, payload.decode(errors="replace"), str(error))
        self._bus.publish("broker", evt)

    async def close(self) -> None:
        """Cancel every pending unlock (shutdown)."""
        timers = list(self._timers.values())
        for unit_id in list(self._pending):
            await self.cancel(unit_id, "shutdown")
        for timer in timers:
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer
        self._timers.clear()
