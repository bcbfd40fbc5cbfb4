"""Protocol constants and defaults."""

from __future__ import annotations

from typing import Literal

UnitStatus = Literal["available", "occupied", "maintenance"]
UNIT_STATUSES: tuple[UnitStatus, ...] = ("available", "occupied", "maintenance")

CommandType = Literal["openlock", "maintenance", "normal", "sync"]

AccessDecision = Literal["allowed", "denied"]

BrokerMode = Literal["built-in", "external"]
BROKER_MODES: tuple[BrokerMode, ...] = ("built-in", "external")

DEFAULT_HEARTBEAT_TIMEOUT = 300.0
DEFAULT_UNLOCK_DELAY = 10.0
DEFAULT_LOOKUP_TIMEOUT = 2.0
MIN_LIVENESS_INTERVAL = 5.0

DEFAULT_INBOUND_TOPIC = "lockers/send"
DEFAULT_OUTBOUND_TOPIC = "lockers/cmd"
