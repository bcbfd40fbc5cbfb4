"""Gateway state: controllers, their lock units, pending unlocks and outbound commands."""

from __future__ import annotations

from dataclasses import dataclass, field

from lockergw.core.constants import CommandType, UnitStatus


@dataclass
class LockerUnit:
    """One lockable compartment. unit_id is the device name plus a letter (F1A, F1B, ...)."""

    unit_id: str
    device_name: str
    lock_index: int  # 1-based position on the controller, sent as "lock" on the wire
    status: UnitStatus = "available"
    last_command_at: float | None = None


@dataclass
class LockerDevice:
    """One physical controller as seen through its heartbeats."""

    name: str  # hostname without the "-<numlocks>" suffix, e.g. "F1"
    hostname: str  # raw heartbeat name, e.g. "F1-2"
    ip_address: str
    controller_type: str
    num_locks: int
    uptime_seconds: float
    last_heartbeat_at: float
    units: list[LockerUnit] = field(default_factory=list)
    # Last state announced on the bus; only used to detect flips
    announced_online: bool = False

    def is_online(self, now: float, heartbeat_timeout: float) -> bool:
        """Online means a heartbeat arrived less than heartbeat_timeout seconds ago."""
        return now - self.last_heartbeat_at < heartbeat_timeout

    @property
    def unit_ids(self) -> list[str]:
        return [u.unit_id for u in self.units]


@dataclass(eq=False)
class PendingUnlock:
    """Scheduled openlock for a unit. Compared by identity so a stale timer can't cancel a newer one."""

    unit_id: str
    uid: str
    scheduled_at: float
    fire_at: float
    cancelled: bool = False
    fired: bool = False

    @property
    def active(self) -> bool:
        return not (self.cancelled or self.fired)


@dataclass(frozen=True)
class Command:
    """Outbound command for one unit. Fire-and-forget; the controller's next report is the only ack."""

    type: CommandType
    target_unit: str
    doorip: str
    lock: int
    uid: str = ""
