"""Access evaluator: turns RFID scans into delayed unlocks or denials."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

from loguru import logger

from lockergw.codec import AccessLog
from lockergw.core.constants import DEFAULT_LOOKUP_TIMEOUT, DEFAULT_UNLOCK_DELAY
from lockergw.directory import AccessPolicy, Identity, UserDirectory
from lockergw.events import AccessEvent, access_event
from lockergw.gateway.bus import Bus
from lockergw.gateway.dispatcher import CommandDispatcher
from lockergw.gateway.registry import DeviceRegistry
from lockergw.models import LockerUnit, PendingUnlock


class AccessEvaluator:
    """Decides every scan and emits one AccessEvent per scan. Holds no log of its own."""

    def __init__(
        self,
        registry: DeviceRegistry,
        dispatcher: CommandDispatcher,
        bus: Bus,
        *,
        directory: UserDirectory | None = None,
        policy: Callable[[str], bool] | None = None,
        unlock_delay: float = DEFAULT_UNLOCK_DELAY,
        lookup_timeout: float = DEFAULT_LOOKUP_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._registry = registry
        self._dispatcher = dispatcher
        self._bus = bus
        self._directory = directory
        self._policy = policy or AccessPolicy()
        self._clock = clock
        self._lookup_timeout = lookup_timeout
        self.unlock_delay = unlock_delay

    @property
    def unlock_delay(self) -> float:
        return self._unlock_delay

    @unlock_delay.setter
    def unlock_delay(self, value: float) -> None:
        if value < 0:
            raise ValueError("unlock_delay must not be negative")
        self._unlock_delay = float(value)

    @property
    def policy(self) -> Callable[[str], bool]:
        return self._policy

    @policy.setter
    def policy(self, value: Callable[[str], bool]) -> None:
        self._policy = value

    @property
    def directory(self) -> UserDirectory | None:
        return self._directory

    @directory.setter
    def directory(self, value: UserDirectory | None) -> None:
        self._directory = value

    async def evaluate(self, log: AccessLog, observed_at: float | None = None) -> AccessEvent:
        """Decide one scan. observed_at defaults to now (gateway clock)."""
        observed_at = self._clock() if observed_at is None else observed_at
        username = log.username

        if not log.is_known:
            return self._emit(log, observed_at, username, "denied", reason="unknown_tag")
        if not self._policy(log.access):
            return self._emit(log, observed_at, username, "denied", reason="policy")

        identity = await self._lookup(log.uid)
        if identity is not None and identity.username and not username:
            username = identity.username

        unit = self._resolve_unit(log.door, identity)
        if unit is None:
            return self._emit(log, observed_at, username, "denied", reason="unknown_door")
        if identity is not None and not identity.may_open(unit.unit_id, unit.device_name):
            return self._emit(log, observed_at, username, "denied", unit_id=unit.unit_id, reason="not_authorized")

        async with self._registry.unit_lock(unit.unit_id):
            if unit.status == "maintenance":
                return self._emit(log, observed_at, username, "denied", unit_id=unit.unit_id, reason="maintenance")
            self._dispatcher.schedule(
                PendingUnlock(
                    unit_id=unit.unit_id,
                    uid=log.uid,
                    scheduled_at=observed_at,
                    fire_at=observed_at + self._unlock_delay,
                )
            )
            return self._emit(log, observed_at, username, "allowed", unit_id=unit.unit_id)

    async def _lookup(self, uid: str) -> Identity | None:
        if self._directory is None:
            return None
        try:
            return await asyncio.wait_for(self._directory.lookup(uid), self._lookup_timeout)
        except asyncio.TimeoutError:
            logger.warning("Directory lookup for {} timed out after {:.1f}s", uid, self._lookup_timeout)
            return None
        except Exception as exc:
            # Controller already vouched for the tag; go on without directory details.
            logger.warning("Directory lookup for {} failed: {}", uid, exc)
            return None

    def _resolve_unit(self, door: str, identity: Identity | None) -> LockerUnit | None:
        """door is a unit id ("F1A") or a controller name/hostname ("F1", "F1-2")."""
        unit = self._registry.lookup_unit(door)
        if unit is not None:
            return unit
        device = self._registry.lookup_device(door)
        if device is None:
            return None
        if identity is not None:
            for candidate in device.units:
                if candidate.unit_id in identity.doors:
                    return candidate
        if len(device.units) == 1:
            return device.units[0]
        return None

    def _emit(
        self,
        log: AccessLog,
        observed_at: float,
        username: str,
        decision: str,
        *,
        unit_id: str | None = None,
        reason: str | None = None,
    ) -> AccessEvent:
        _, evt = access_event(
            log.uid,
            log.door,
            log.is_known,
            decision,
            username,
            observed_at,
            unit_id=unit_id,
            reason=reason,
        )
        if decision == "allowed":
            logger.info("Access allowed: {} ({}) at {}", log.uid, username or "-", unit_id)
        else:
            logger.info("Access denied: {} ({}) at {}: {}", log.uid, username or "-", log.door, reason)
        self._bus.publish("evaluator", evt)
        return evt
