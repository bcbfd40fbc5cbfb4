"""Wire codec for controller messages.

Inbound (all on the report topic, discriminated by shape):
  heartbeat   { type: "heartbeat", hostname: "<NAME>-<N>", ip, controllertype, numlocks: N, uptime, time }
  access log  { cmd: "log", type: "access", time, isKnown: "true"|"false", access, username, uid, door }
  ack         { cmd: "openlock"|"maintenance"|"normal"|"sync"|..., doorip, lock, uid }

Outbound (command topic):
  { cmd: "openlock"|"maintenance"|"normal", lock, doorip, uid }
  { cmd: "sync", doorip, lock, uid }

Decoding fails closed: anything missing a required field raises MalformedMessage.
"""

from __future__ import annotations

import json
import string
from dataclasses import dataclass
from typing import Any, Union

from lockergw.core.errors import MalformedMessage, ProtocolViolation
from lockergw.models import Command

MAX_LOCKS = len(string.ascii_uppercase)

_HEARTBEAT_FIELDS = ("hostname", "ip", "controllertype", "numlocks", "uptime")
_ACCESS_FIELDS = ("uid", "door", "isKnown", "access")


@dataclass(frozen=True)
class Heartbeat:
    hostname: str
    name: str
    ip: str
    controller_type: str
    num_locks: int
    uptime: float
    time: float | None = None

    def unit_ids(self) -> list[str]:
        """Fan-out: one heartbeat stands for num_locks units, in lock order."""
        return unit_ids_for(self.name, self.num_locks)


@dataclass(frozen=True)
class AccessLog:
    uid: str
    door: str
    is_known: bool
    access: str
    username: str = ""
    time: float | None = None


@dataclass(frozen=True)
class Ack:
    cmd: str
    doorip: str
    lock: int | None = None
    uid: str = ""
    raw: dict[str, Any] | None = None


InboundMessage = Union[Heartbeat, AccessLog, Ack]


def unit_letter(lock_index: int) -> str:
    """1 -> "A", 2 -> "B", ..."""
    if not 1 <= lock_index <= MAX_LOCKS:
        raise ValueError(f"lock index out of range: {lock_index}")
    return string.ascii_uppercase[lock_index - 1]


def unit_ids_for(name: str, num_locks: int) -> list[str]:
    return [f"{name}{unit_letter(i)}" for i in range(1, num_locks + 1)]


def parse_hostname(hostname: str) -> tuple[str, int]:
    """Split "<NAME>-<N>" on the last dash. Returns (name, N)."""
    name, sep, suffix = hostname.rpartition("-")
    if not sep or not name:
        raise MalformedMessage(
            f"hostname {hostname!r} has no -<numlocks> suffix",
            code="bad_hostname",
            details={"hostname": hostname},
        )
    try:
        count = int(suffix)
    except ValueError:
        raise MalformedMessage(
            f"hostname {hostname!r} suffix is not a number",
            code="bad_hostname",
            details={"hostname": hostname},
        ) from None
    if count < 1:
        raise MalformedMessage(
            f"hostname {hostname!r} suffix must be positive",
            code="bad_hostname",
            details={"hostname": hostname},
        )
    return name, count


def _load(payload: bytes | str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    try:
        data = json.loads(payload)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedMessage("payload is not valid JSON", code="invalid_json", original_error=exc) from exc
    if not isinstance(data, dict):
        raise MalformedMessage("payload is not a JSON object", code="not_an_object")
    return data


def _require(data: dict[str, Any], fields: tuple[str, ...], shape: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise MalformedMessage(
            f"{shape} missing required field(s): {', '.join(missing)}",
            code="missing_fields",
            details={"shape": shape, "missing": missing},
        )


def _as_int(value: Any, name: str, shape: str) -> int:
    if isinstance(value, bool):
        raise MalformedMessage(f"{shape} field {name} is not an integer", code="bad_field", details={"field": name})
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise MalformedMessage(
            f"{shape} field {name} is not an integer",
            code="bad_field",
            details={"field": name, "value": value},
        ) from None


def _as_float(value: Any, name: str, shape: str) -> float:
    if isinstance(value, bool):
        raise MalformedMessage(f"{shape} field {name} is not a number", code="bad_field", details={"field": name})
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedMessage(
            f"{shape} field {name} is not a number",
            code="bad_field",
            details={"field": name, "value": value},
        ) from None


def _as_bool(value: Any, name: str, shape: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise MalformedMessage(
        f"{shape} field {name} must be \"true\" or \"false\"",
        code="bad_field",
        details={"field": name, "value": value},
    )


def _optional_time(data: dict[str, Any], shape: str) -> float | None:
    value = data.get("time")
    if value in (None, ""):
        return None
    return _as_float(value, "time", shape)


def decode_heartbeat(data: dict[str, Any]) -> Heartbeat:
    _require(data, _HEARTBEAT_FIELDS, "heartbeat")
    hostname = str(data["hostname"])
    name, suffix = parse_hostname(hostname)
    num_locks = _as_int(data["numlocks"], "numlocks", "heartbeat")
    if num_locks < 1:
        raise MalformedMessage("heartbeat numlocks must be >= 1", code="bad_field", details={"field": "numlocks"})
    if suffix != num_locks:
        raise ProtocolViolation(
            f"hostname {hostname!r} does not match numlocks={num_locks}",
            code="numlocks_mismatch",
            details={"name": name, "hostname": hostname, "numlocks": num_locks},
        )
    if num_locks > MAX_LOCKS:
        raise ProtocolViolation(
            f"controller {hostname!r} reports {num_locks} locks; at most {MAX_LOCKS} are addressable",
            code="too_many_locks",
            details={"name": name, "hostname": hostname, "numlocks": num_locks},
        )
    return Heartbeat(
        hostname=hostname,
        name=name,
        ip=str(data["ip"]),
        controller_type=str(data["controllertype"]),
        num_locks=num_locks,
        uptime=_as_float(data["uptime"], "uptime", "heartbeat"),
        time=_optional_time(data, "heartbeat"),
    )


def decode_access_log(data: dict[str, Any]) -> AccessLog:
    _require(data, _ACCESS_FIELDS, "access log")
    return AccessLog(
        uid=str(data["uid"]),
        door=str(data["door"]),
        is_known=_as_bool(data["isKnown"], "isKnown", "access log"),
        access=str(data["access"]),
        username=str(data.get("username") or ""),
        time=_optional_time(data, "access log"),
    )


def decode_ack(data: dict[str, Any]) -> Ack:
    _require(data, ("cmd", "doorip"), "ack")
    lock = data.get("lock")
    return Ack(
        cmd=str(data["cmd"]),
        doorip=str(data["doorip"]),
        lock=None if lock in (None, "") else _as_int(lock, "lock", "ack"),
        uid=str(data.get("uid") or ""),
        raw=dict(data),
    )


def decode(payload: bytes | str | dict[str, Any]) -> InboundMessage:
    """Decode one inbound payload. Raises MalformedMessage or ProtocolViolation."""
    data = _load(payload)
    if data.get("type") == "heartbeat":
        return decode_heartbeat(data)
    cmd = data.get("cmd")
    if cmd == "log" and data.get("type") == "access":
        return decode_access_log(data)
    if cmd:
        return decode_ack(data)
    raise MalformedMessage(
        "payload matches no known message shape",
        code="unknown_shape",
        details={"keys": sorted(data)},
    )


def command_to_dict(command: Command) -> dict[str, Any]:
    if command.type == "sync":
        return {"cmd": "sync", "doorip": command.doorip, "lock": command.lock, "uid": command.uid}
    return {"cmd": command.type, "lock": command.lock, "doorip": command.doorip, "uid": command.uid}


def encode_command(command: Command) -> bytes:
    return json.dumps(command_to_dict(command)).encode()
