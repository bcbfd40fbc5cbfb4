"""Liveness monitor: flags controllers whose heartbeats went stale."""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable

from loguru import logger

from lockergw.core.constants import MIN_LIVENESS_INTERVAL
from lockergw.events import device_offline
from lockergw.gateway.bus import Bus
from lockergw.gateway.registry import DeviceRegistry
from lockergw.models import LockerDevice

OfflineCallback = Callable[[LockerDevice], Awaitable[None]]


class LivenessMonitor:
    """Periodic scan of the registry. Only reads devices and flips their announced state."""

    def __init__(
        self,
        registry: DeviceRegistry,
        bus: Bus,
        *,
        on_offline: OfflineCallback | None = None,
        interval: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._bus = bus
        self._on_offline = on_offline
        self._interval = interval
        self._clock = clock
        self._task: asyncio.Task | None = None

    @property
    def interval(self) -> float:
        """Explicit interval, else a third of the heartbeat timeout (at least 5s)."""
        if self._interval is not None:
            return self._interval
        return max(MIN_LIVENESS_INTERVAL, self._registry.heartbeat_timeout / 3)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check(self) -> list[LockerDevice]:
        """One scan. Returns devices that flipped to offline."""
        flipped: list[LockerDevice] = []
        for device in self._registry.devices():
            async with self._registry.device_lock(device.name):
                now = self._clock()
                if not device.announced_online or self._registry.is_online(device, now):
                    continue
                device.announced_online = False
            flipped.append(device)
            logger.warning(
                "Controller {} offline (last heartbeat {:.0f}s ago)",
                device.hostname,
                now - device.last_heartbeat_at,
            )
            _, evt = device_offline(device.name, device.hostname, device.last_heartbeat_at, now)
            self._bus.publish("liveness", evt)
            if self._on_offline is not None:
                try:
                    await self._on_offline(device)
                except Exception as exc:
                    logger.exception("Offline handler for {} failed: {}", device.name, exc)
        return flipped

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="liveness-monitor")
        logger.info("Liveness monitor started (every {:.0f}s)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("Liveness monitor stopped")

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.check()
            except Exception as exc:
                logger.exception("Liveness check failed: {}", exc)
