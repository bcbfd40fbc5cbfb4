"""Gateway domain exceptions."""

from __future__ import annotations


class GatewayError(Exception):
    """Base for gateway domain errors."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, object] | None = None,
        original_error: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or {}
        self.original_error = original_error


class GatewayConfigurationError(GatewayError):
    """Config validation or load failure."""


class MalformedMessage(GatewayError):
    """Inbound payload is missing required fields for its declared shape."""


class ProtocolViolation(GatewayError):
    """Controller sent data contradicting what the gateway already knows (hostname/numlocks)."""


class UnknownTarget(GatewayError):
    """Command addressed to a unit that is not in the registry."""


class UnitInMaintenance(GatewayError):
    """openlock attempted against a unit in maintenance."""


class BrokerDisconnected(GatewayError):
    """Publish could not be accepted or delivered by the broker adapter."""
