"""Gateway core: registry, evaluator, dispatcher, liveness and the service that wires them."""

from lockergw.gateway.bus import Bus
from lockergw.gateway.dispatcher import CommandDispatcher
from lockergw.gateway.evaluator import AccessEvaluator
from lockergw.gateway.liveness import LivenessMonitor
from lockergw.gateway.publisher import EventLogger, EventPublisher
from lockergw.gateway.registry import DeviceRegistry, HeartbeatResult
from lockergw.gateway.service import LockerGateway

__all__ = [
    "AccessEvaluator",
    "Bus",
    "CommandDispatcher",
    "DeviceRegistry",
    "EventLogger",
    "EventPublisher",
    "HeartbeatResult",
    "LivenessMonitor",
    "LockerGateway",
]
