from __future__ import annotations

import threading
from typing import Dict
from urllib.parse import urlparse
from uuid import uuid4

import httpx

from backend.core.config import settings
from backend.core.notifications.store import Channel

from .base import DeliveryRequest, SendResult, Transport, TransportError
from .push import HttpPushGateway, PushGateway, RETRYABLE_CODES


class InAppTransport:
    """The notification row itself is the in-app message; sending only acknowledges it."""

    name = "in_app"

    def send(self, request: DeliveryRequest) -> SendResult:
        return SendResult(ok=True, provider_message_id=f"inapp_{uuid4().hex}")


class PushTransport:
    name = "push"

    def __init__(self, gateway: PushGateway | None = None) -> None:
        self.gateway = gateway or HttpPushGateway()

    def send(self, request: DeliveryRequest) -> SendResult:
        if not request.destinations:
            raise TransportError("NO_DESTINATION", "no trusted device with a push token", retryable=False)

        results = self.gateway.send(request.destinations, request.title, request.body, request.data)
        delivered = [r for r in results if r.ok]
        invalid = [r.token for r in results if r.invalid]
        if delivered:
            return SendResult(ok=True, provider_message_id=delivered[0].message_id, invalid_destinations=invalid)

        retryable = [r for r in results if not r.ok and not r.invalid]
        if retryable or not results:
            codes = sorted({r.error_code or "UNKNOWN" for r in retryable}) or ["EMPTY_RESPONSE"]
            known = all(c in RETRYABLE_CODES for c in codes)
            raise TransportError(
                "PUSH_UNAVAILABLE" if known else "PUSH_FAILED",
                ",".join(codes),
                retryable=True,
                invalid_destinations=invalid,
            )
        raise TransportError(
            "INVALID_DESTINATION",
            f"{len(invalid)} push token(s) rejected",
            retryable=False,
            invalid_destinations=invalid,
        )


class WebhookTransport:
    """Customer-facing message relay (SMS or WhatsApp provider bridge) over HTTPS."""

    def __init__(self, channel: str, url: str, client: httpx.Client | None = None) -> None:
        self.name = f"{channel.lower()}_webhook"
        self.channel = channel
        self.url = url
        timeout_s = settings.WEBHOOK_TIMEOUT_MS / 1000.0
        self.success_codes = self._parse_success_codes(settings.WEBHOOK_SUCCESS_CODES)
        self.headers = self._sanitize_headers(self._parse_headers(settings.WEBHOOK_HEADERS_ALLOWLIST))
        self.domain_allow = [
            d.strip().lower() for d in (settings.WEBHOOK_DOMAIN_ALLOWLIST or "").split(",") if d.strip()
        ]
        self.client = client or httpx.Client(
            timeout=httpx.Timeout(connect=timeout_s, read=timeout_s, write=timeout_s, pool=timeout_s),
            verify=True,
            follow_redirects=False,
        )

    @staticmethod
    def _parse_success_codes(codes: str) -> set[int]:
        result: set[int] = set()
        for token in (codes or "").split(","):
            token = token.strip()
            if not token:
                continue
            try:
                if "-" in token:
                    lo, hi = (int(x) for x in token.split("-", 1))
                    result.update(range(lo, hi + 1))
                else:
                    result.add(int(token))
            except ValueError:
                continue
        return result or set(range(200, 300))

    @staticmethod
    def _parse_headers(csv: str) -> Dict[str, str]:
        hdrs: Dict[str, str] = {}
        for pair in (csv or "").split(","):
            pair = pair.strip()
            if "=" in pair:
                k, v = pair.split("=", 1)
                hdrs[k.strip()] = v.strip()
        return hdrs

    @staticmethod
    def _sanitize_headers(h: Dict[str, str]) -> Dict[str, str]:
        forbidden = {"authorization", "cookie", "set-cookie"}
        return {k: v for k, v in h.items() if k.lower() not in forbidden}

    def _host_allowed(self, host: str) -> bool:
        if not self.domain_allow:
            return True
        host_l = (host or "").lower()
        return any(host_l == d or host_l.endswith("." + d) for d in self.domain_allow)

    def send(self, request: DeliveryRequest) -> SendResult:
        if not request.destinations:
            raise TransportError("NO_DESTINATION", "customer has no phone number", retryable=False)
        p = urlparse(self.url)
        if p.scheme.lower() != "https":
            raise TransportError("UNSUPPORTED_SCHEME", p.scheme, retryable=False)
        if not self._host_allowed(p.hostname or ""):
            raise TransportError("FORBIDDEN_ADDRESS", p.hostname or "", retryable=False)

        payload = {
            "channel": self.channel,
            "to": request.destinations[0],
            "title": request.title,
            "body": request.body,
            "data": request.data,
        }
        try:
            resp = self.client.post(self.url, headers=self.headers, json=payload)
        except httpx.TimeoutException as e:
            raise TransportError("TIMEOUT", str(e), retryable=True) from e
        except httpx.HTTPError as e:
            raise TransportError("NETWORK_ERROR", str(e), retryable=True) from e

        if resp.status_code in self.success_codes:
            message_id = None
            try:
                message_id = (resp.json() or {}).get("message_id")
            except ValueError:
                pass
            return SendResult(ok=True, provider_message_id=message_id)
        if resp.status_code in (404, 410, 422):
            # Provider says the number cannot receive messages
            raise TransportError(
                f"HTTP_{resp.status_code}",
                "destination rejected",
                retryable=False,
                invalid_destinations=list(request.destinations[:1]),
            )
        retryable = resp.status_code >= 500 or resp.status_code in (408, 429)
        raise TransportError(f"HTTP_{resp.status_code}", "provider error", retryable=retryable)


class StubTransport:
    """Placeholder for a channel with no provider configured."""

    def __init__(self, channel: str) -> None:
        self.name = f"{channel.lower()}_stub"
        self.channel = channel

    def send(self, request: DeliveryRequest) -> SendResult:
        raise TransportError(
            "PROVIDER_NOT_CONFIGURED",
            f"{self.channel} provider not configured",
            retryable=False,
        )


_registry: dict[str, Transport] = {}
_registry_lock = threading.Lock()


def _default_transport(channel: str) -> Transport:
    if channel == Channel.IN_APP.value:
        return InAppTransport()
    if channel == Channel.PUSH.value:
        if not settings.PUSH_GATEWAY_URL:
            return StubTransport(channel)
        return PushTransport()
    if channel == Channel.SMS.value and settings.SMS_WEBHOOK_URL:
        return WebhookTransport(channel, settings.SMS_WEBHOOK_URL)
    if channel == Channel.WHATSAPP.value and settings.WHATSAPP_WEBHOOK_URL:
        return WebhookTransport(channel, settings.WHATSAPP_WEBHOOK_URL)
    return StubTransport(channel)


def get_transport(channel: str) -> Transport:
    channel = Channel(channel).value
    with _registry_lock:
        transport = _registry.get(channel)
        if transport is None:
            transport = _registry[channel] = _default_transport(channel)
        return transport


def register_transport(channel: str, transport: Transport) -> None:
    with _registry_lock:
        _registry[Channel(channel).value] = transport


def reset_transports() -> None:
    with _registry_lock:
        _registry.clear()
