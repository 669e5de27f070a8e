from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class DeliveryRequest:
    channel: str
    destinations: list[str]
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)


@dataclass
class SendResult:
    ok: bool
    provider_message_id: str | None = None
    # Destinations the provider reported as permanently invalid
    invalid_destinations: list[str] = field(default_factory=list)


class TransportError(Exception):
    """Transport failure carrying the retry decision for the worker."""

    def __init__(
        self,
        code: str,
        message: str = "",
        *,
        retryable: bool = True,
        invalid_destinations: list[str] | None = None,
    ) -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message or code
        self.retryable = retryable
        self.invalid_destinations = list(invalid_destinations or [])

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message[:500], "retryable": self.retryable}


class Transport(Protocol):
    name: str

    def send(self, request: DeliveryRequest) -> SendResult: ...
