"""Gateway event types and dispatcher (device state changes, access decisions, command traffic)."""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from typing import Any, Protocol

from lockergw.core.constants import AccessDecision, CommandType, UnitStatus


@dataclass
class DeviceRegistered:
    """First heartbeat seen for a controller; its units were created."""

    name: str
    hostname: str
    ip_address: str
    num_locks: int
    unit_ids: list[str]
    observed_at: float


@dataclass
class DeviceOnline:
    """Controller flipped to online (first sight or heartbeat after an offline period)."""

    name: str
    hostname: str
    ip_address: str
    observed_at: float


@dataclass
class DeviceOffline:
    """Controller heartbeat went stale."""

    name: str
    hostname: str
    last_heartbeat_at: float
    observed_at: float


@dataclass
class UnitStatusChanged:
    """Lock unit moved between available/occupied/maintenance."""

    unit_id: str
    previous: UnitStatus
    status: UnitStatus
    changed_at: float


@dataclass(frozen=True)
class AccessEvent:
    """One RFID scan and the decision taken for it. Emitted for every scan, allowed or denied."""

    uid: str
    door: str
    is_known: bool
    access_decision: AccessDecision
    username: str
    observed_at: float
    unit_id: str | None = None
    reason: str | None = None  # why it was denied; None when allowed


@dataclass
class UnlockScheduled:
    """A pending unlock was registered with the dispatcher."""

    unit_id: str
    uid: str
    scheduled_at: float
    fire_at: float


@dataclass
class UnlockCancelled:
    """A pending unlock was dropped before (or instead of) firing."""

    unit_id: str
    uid: str
    reason: str


@dataclass
class CommandPublished:
    """A command was handed to the broker adapter."""

    cmd: CommandType
    unit_id: str
    doorip: str
    lock: int
    uid: str
    topic: str


@dataclass
class CommandAcknowledged:
    """Controller echoed a command or reported a sync."""

    cmd: str
    unit_id: str | None
    doorip: str
    lock: int | None
    uid: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeliveryFailed:
    """Outbound message could not be queued or delivered by the broker adapter."""

    topic: str
    payload: str
    reason: str


@dataclass
class ProtocolViolationDetected:
    """Controller contradicted known state; device kept at last-good state."""

    name: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class MessageDropped:
    """Inbound payload rejected before reaching any state."""

    topic: str
    reason: str
    payload: str


@dataclass
class ConfigReload:
    """Config was reloaded (e.g. SIGHUP)."""

    pass


class EventTarget(Protocol):
    """Consumer interface: accept_event + push_event."""

    def accept_event(self, source: str, evt: object) -> bool:
        """Return True if this target wants the event."""
        ...

    def push_event(self, source: str, evt: object) -> None:
        """Handle the event (may be async via queue)."""
        ...


def event(type_name: str):
    """Decorator to mark a factory as producing an event with a given type."""

    def decorator(f: Any) -> Any:
        @functools.wraps(f)
        def wrapper(*args: Any, **kwargs: Any) -> tuple[str, object]:
            evt = f(*args, **kwargs)
            return (type_name, evt)

        wrapper.TYPE = type_name  # type: ignore[attr-defined]
        return wrapper

    return decorator


@event("device_registered")
def device_registered(
    name: str,
    hostname: str,
    ip_address: str,
    num_locks: int,
    unit_ids: list[str],
    observed_at: float,
) -> DeviceRegistered:
    return DeviceRegistered(
        name=name,
        hostname=hostname,
        ip_address=ip_address,
        num_locks=num_locks,
        unit_ids=list(unit_ids),
        observed_at=observed_at,
    )


@event("device_online")
def device_online(name: str, hostname: str, ip_address: str, observed_at: float) -> DeviceOnline:
    return DeviceOnline(name=name, hostname=hostname, ip_address=ip_address, observed_at=observed_at)


@event("device_offline")
def device_offline(name: str, hostname: str, last_heartbeat_at: float, observed_at: float) -> DeviceOffline:
    return DeviceOffline(
        name=name,
        hostname=hostname,
        last_heartbeat_at=last_heartbeat_at,
        observed_at=observed_at,
    )


@event("unit_status_changed")
def unit_status_changed(
    unit_id: str,
    previous: UnitStatus,
    status: UnitStatus,
    changed_at: float,
) -> UnitStatusChanged:
    return UnitStatusChanged(unit_id=unit_id, previous=previous, status=status, changed_at=changed_at)


@event("access")
def access_event(
    uid: str,
    door: str,
    is_known: bool,
    access_decision: AccessDecision,
    username: str,
    observed_at: float,
    *,
    unit_id: str | None = None,
    reason: str | None = None,
) -> AccessEvent:
    return AccessEvent(
        uid=uid,
        door=door,
        is_known=is_known,
        access_decision=access_decision,
        username=username,
        observed_at=observed_at,
        unit_id=unit_id,
        reason=reason,
    )


@event("unlock_scheduled")
def unlock_scheduled(unit_id: str, uid: str, scheduled_at: float, fire_at: float) -> UnlockScheduled:
    return UnlockScheduled(unit_id=unit_id, uid=uid, scheduled_at=scheduled_at, fire_at=fire_at)


@event("unlock_cancelled")
def unlock_cancelled(unit_id: str, uid: str, reason: str) -> UnlockCancelled:
    return UnlockCancelled(unit_id=unit_id, uid=uid, reason=reason)


@event("command_published")
def command_published(
    cmd: CommandType,
    unit_id: str,
    doorip: str,
    lock: int,
    uid: str,
    topic: str,
) -> CommandPublished:
    return CommandPublished(cmd=cmd, unit_id=unit_id, doorip=doorip, lock=lock, uid=uid, topic=topic)


@event("command_ack")
def command_acknowledged(
    cmd: str,
    unit_id: str | None,
    doorip: str,
    lock: int | None,
    uid: str,
    *,
    raw: dict[str, Any] | None = None,
) -> CommandAcknowledged:
    return CommandAcknowledged(cmd=cmd, unit_id=unit_id, doorip=doorip, lock=lock, uid=uid, raw=raw or {})


@event("delivery_failed")
def delivery_failed(topic: str, payload: str, reason: str) -> DeliveryFailed:
    return DeliveryFailed(topic=topic, payload=payload, reason=reason)


@event("protocol_violation")
def protocol_violation(name: str, message: str, *, details: dict[str, Any] | None = None) -> ProtocolViolationDetected:
    return ProtocolViolationDetected(name=name, message=message, details=details or {})


@event("message_dropped")
def message_dropped(topic: str, reason: str, payload: str) -> MessageDropped:
    return MessageDropped(topic=topic, reason=reason, payload=payload)


@event("config_reload")
def config_reload() -> ConfigReload:
    return ConfigReload()


# Wire names used when events leave the process (see gateway.publisher)
EVENT_NAMES: dict[type, str] = {
    DeviceRegistered: "device_registered",
    DeviceOnline: "device_online",
    DeviceOffline: "device_offline",
    UnitStatusChanged: "unit_status_changed",
    AccessEvent: "access",
    UnlockScheduled: "unlock_scheduled",
    UnlockCancelled: "unlock_cancelled",
    CommandPublished: "command_published",
    CommandAcknowledged: "command_ack",
    DeliveryFailed: "delivery_failed",
    ProtocolViolationDetected: "protocol_violation",
    MessageDropped: "message_dropped",
    ConfigReload: "config_reload",
}


class Dispatcher:
    """Central event dispatcher; targets filter by type and receive events."""

    def __init__(self) -> None:
        self._targets: list[EventTarget] = []

    def register(self, target: EventTarget) -> None:
        """Register an event target."""
        self._targets.append(target)

    def unregister(self, target: EventTarget) -> None:
        """Unregister an event target."""
        if target in self._targets:
            self._targets.remove(target)

    def dispatch(self, source: str, evt: object) -> None:
        """Dispatch event to all targets that accept it."""
        from loguru import logger

        for target in self._targets:
            try:
                if target.accept_event(source, evt):
                    target.push_event(source, evt)
            except Exception as exc:
                logger.exception("Failed to pass event to target {}: {}", target, exc)
