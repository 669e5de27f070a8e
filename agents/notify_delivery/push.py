"""Push gateway client.

The gateway fans a message out to device tokens and reports one result per
token. Only the HTTP contract is implemented here; provider credentials live
behind the gateway.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import httpx

from backend.core.config import settings

from .base import TransportError

# Token is gone for good; the device reference must be cleaned up
INVALID_TOKEN_CODES = frozenset(
    {
        "messaging/invalid-registration-token",
        "messaging/registration-token-not-registered",
        "messaging/invalid-argument",
        "UNREGISTERED",
        "INVALID_ARGUMENT",
        "NOT_FOUND",
    }
)

# Provider-side trouble; the same token may work later
RETRYABLE_CODES = frozenset(
    {
        "messaging/server-unavailable",
        "messaging/internal-error",
        "messaging/message-rate-exceeded",
        "UNAVAILABLE",
        "INTERNAL",
        "QUOTA_EXCEEDED",
    }
)


@dataclass(frozen=True)
class TokenResult:
    token: str
    ok: bool
    message_id: str | None = None
    error_code: str | None = None

    @property
    def invalid(self) -> bool:
        return not self.ok and self.error_code in INVALID_TOKEN_CODES


class PushGateway(Protocol):
    def send(self, tokens: Sequence[str], title: str, body: str, data: dict[str, str]) -> list[TokenResult]: ...


class HttpPushGateway:
    name = "push_gateway"

    def __init__(self, url: str | None = None, timeout_ms: int | None = None, client: httpx.Client | None = None) -> None:
        self.url = url or settings.PUSH_GATEWAY_URL
        timeout_s = (timeout_ms or settings.PUSH_GATEWAY_TIMEOUT_MS) / 1000.0
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(connect=timeout_s, read=timeout_s, write=timeout_s, pool=timeout_s),
            verify=True,
            follow_redirects=False,
        )

    def send(self, tokens: Sequence[str], title: str, body: str, data: dict[str, str]) -> list[TokenResult]:
        if not self.url:
            raise TransportError("PROVIDER_NOT_CONFIGURED", "push gateway URL missing", retryable=False)
        payload: dict[str, Any] = {
            "tokens": list(tokens),
            "notification": {"title": title, "body": body},
            "data": data,
        }
        try:
            resp = self.client.post(self.url, json=payload)
        except httpx.TimeoutException as e:
            raise TransportError("TIMEOUT", str(e), retryable=True) from e
        except httpx.HTTPError as e:
            raise TransportError("NETWORK_ERROR", str(e), retryable=True) from e

        if resp.status_code >= 500 or resp.status_code == 429:
            raise TransportError(f"HTTP_{resp.status_code}", "push gateway unavailable", retryable=True)
        if resp.status_code >= 400:
            raise TransportError(f"HTTP_{resp.status_code}", "push gateway rejected request", retryable=False)

        results = []
        for item in resp.json().get("results", []):
            error = item.get("error")
            results.append(
                TokenResult(
                    token=item.get("token", ""),
                    ok=not error,
                    message_id=item.get("message_id"),
                    error_code=error,
                )
            )
        return results
