"""Device registry: live state of every controller and its lock units."""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

from loguru import logger

from lockergw.codec import parse_hostname, unit_ids_for
from lockergw.core.constants import DEFAULT_HEARTBEAT_TIMEOUT, UNIT_STATUSES, UnitStatus
from lockergw.core.errors import ProtocolViolation
from lockergw.events import device_registered, unit_status_changed
from lockergw.gateway.bus import Bus
from lockergw.models import LockerDevice, LockerUnit


@dataclass
class HeartbeatResult:
    """Outcome of one heartbeat upsert."""

    device: LockerDevice
    created: bool
    came_online: bool


class DeviceRegistry:
    """Controllers keyed by name ("F1"), units keyed by unit id ("F1A").

    Mutating methods are synchronous; callers serialize per device with
    device_lock() and per unit with unit_lock().
    """

    def __init__(
        self,
        bus: Bus | None = None,
        *,
        heartbeat_timeout: float = DEFAULT_HEARTBEAT_TIMEOUT,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self._clock = clock
        self.heartbeat_timeout = heartbeat_timeout
        self._devices: dict[str, LockerDevice] = {}
        self._units: dict[str, LockerUnit] = {}
        self._device_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._unit_locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @property
    def heartbeat_timeout(self) -> float:
        return self._heartbeat_timeout

    @heartbeat_timeout.setter
    def heartbeat_timeout(self, value: float) -> None:
        if value <= 0:
            raise ValueError("heartbeat_timeout must be positive")
        self._heartbeat_timeout = float(value)

    def device_lock(self, name: str) -> asyncio.Lock:
        return self._device_locks[name]

    def unit_lock(self, unit_id: str) -> asyncio.Lock:
        return self._unit_locks[unit_id]

    def upsert_from_heartbeat(
        self,
        hostname: str,
        ip: str,
        controller_type: str,
        num_locks: int,
        uptime: float,
        observed_at: float,
    ) -> HeartbeatResult:
        """Create the device and its units on first sight; refresh liveness afterwards.

        Raises ProtocolViolation if the lock count differs from the first heartbeat.
        The device keeps its last-good state in that case.
        """
        name, _ = parse_hostname(hostname)
        device = self._devices.get(name)
        if device is None:
            device = LockerDevice(
                name=name,
                hostname=hostname,
                ip_address=ip,
                controller_type=controller_type,
                num_locks=num_locks,
                uptime_seconds=uptime,
                last_heartbeat_at=observed_at,
            )
            for index, unit_id in enumerate(unit_ids_for(name, num_locks), start=1):
                unit = LockerUnit(unit_id=unit_id, device_name=name, lock_index=index)
                device.units.append(unit)
                self._units[unit_id] = unit
            device.announced_online = True
            self._devices[name] = device
            logger.info("Registered controller {} ({}) with units {}", hostname, ip, device.unit_ids)
            if self._bus:
                _, evt = device_registered(name, hostname, ip, num_locks, device.unit_ids, observed_at)
                self._bus.publish("registry", evt)
            return HeartbeatResult(device=device, created=True, came_online=True)

        if num_locks != device.num_locks:
            raise ProtocolViolation(
                f"controller {name} reported {num_locks} locks, first seen with {device.num_locks}",
                code="numlocks_changed",
                details={
                    "name": name,
                    "hostname": hostname,
                    "expected": device.num_locks,
                    "received": num_locks,
                },
            )

        if ip != device.ip_address:
            logger.info("Controller {} moved from {} to {}", name, device.ip_address, ip)
            device.ip_address = ip
        device.uptime_seconds = uptime
        device.last_heartbeat_at = max(device.last_heartbeat_at, observed_at)
        came_online = not device.announced_online
        device.announced_online = True
        return HeartbeatResult(device=device, created=False, came_online=came_online)

    def lookup_device(self, key: str) -> LockerDevice | None:
        """Find a device by name ("F1") or raw hostname ("F1-2")."""
        device = self._devices.get(key)
        if device is not None:
            return device
        for candidate in self._devices.values():
            if candidate.hostname == key:
                return candidate
        return None

    def lookup_unit(self, unit_id: str) -> LockerUnit | None:
        return self._units.get(unit_id)

    def device_for_unit(self, unit_id: str) -> LockerDevice | None:
        unit = self._units.get(unit_id)
        if unit is None:
            return None
        return self._devices.get(unit.device_name)

    def find_unit_by_door(self, doorip: str, lock: int | None) -> LockerUnit | None:
        """Resolve a controller IP and 1-based lock index to a unit."""
        for device in self._devices.values():
            if device.ip_address != doorip:
                continue
            if lock is None:
                return device.units[0] if len(device.units) == 1 else None
            if 1 <= lock <= len(device.units):
                return device.units[lock - 1]
        return None

    def set_unit_status(self, unit_id: str, status: UnitStatus) -> bool:
        """Set unit status. Idempotent; returns False when nothing changed."""
        if status not in UNIT_STATUSES:
            raise ValueError(f"unknown unit status: {status}")
        unit = self._units.get(unit_id)
        if unit is None:
            raise KeyError(unit_id)
        if unit.status == status:
            return False
        previous = unit.status
        unit.status = status
        logger.info("Unit {} {} -> {}", unit_id, previous, status)
        if self._bus:
            _, evt = unit_status_changed(unit_id, previous, status, self._clock())
            self._bus.publish("registry", evt)
        return True

    def touch_unit(self, unit_id: str, at: float | None = None) -> None:
        unit = self._units.get(unit_id)
        if unit is not None:
            unit.last_command_at = self._clock() if at is None else at

    def remove_device(self, name: str) -> LockerDevice | None:
        """Drop a controller and, with it, all of its units."""
        device = self._devices.pop(name, None)
        if device is None:
            return None
        for unit in device.units:
            self._units.pop(unit.unit_id, None)
            self._unit_locks.pop(unit.unit_id, None)
        self._device_locks.pop(name, None)
        logger.info("Removed controller {} and units {}", name, device.unit_ids)
        return device

    def is_online(self, device: LockerDevice, now: float | None = None) -> bool:
        return device.is_online(self._clock() if now is None else now, self._heartbeat_timeout)

    def list_online_devices(self, now: float | None = None) -> list[LockerDevice]:
        now = self._clock() if now is None else now
        return [d for d in self._devices.values() if d.is_online(now, self._heartbeat_timeout)]

    def list_offline_devices(self, now: float | None = None) -> list[LockerDevice]:
        now = self._clock() if now is None else now
        return [d for d in self._devices.values() if not d.is_online(now, self._heartbeat_timeout)]

    def devices(self) -> list[LockerDevice]:
        return list(self._devices.values())

    def units(self) -> list[LockerUnit]:
        return list(self._units.values())
