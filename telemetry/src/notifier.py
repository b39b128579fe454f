"""
Notification collaborator: alert e-mails sent through the Resend HTTP API.

The evaluator depends only on the :class:`Notifier` protocol, so tests (or a
different channel) can substitute any object with an async ``send``. The
default :class:`EmailNotifier` renders a subject and plain-text body per
alert kind and POSTs them to ``https://api.resend.com/emails`` with Bearer
authentication. TLS verification is always enabled.

A send never raises for delivery problems: missing API key, network errors
and non-2xx responses all come back as ``SendResult(success=False, error=...)``
so the evaluator can log them with ``status=failed``.

Operations:
- render(template_kind, payload): Subject and body for one alert kind.
- EmailNotifier.send(to_address, template_kind, payload): Deliver one e-mail.

CHANGELOG:
- 2026-03-11: Add high-temperature template (STORY-115)
- 2026-03-08: Initial creation (STORY-110)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from telemetry.src.models import SendResult

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
DEFAULT_FROM_ADDRESS = "EcoFlow Monitor <alerts@example.com>"
DEFAULT_TIMEOUT_S = 10.0


class Notifier(Protocol):
    """Anything that can deliver one templated notification."""

    async def send(
        self, to_address: str, template_kind: str, payload: Mapping[str, Any]
    ) -> SendResult: ...


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------


def _fmt(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, float):
        return f"{value:.1f}"
    return str(value)


def render(template_kind: str, payload: Mapping[str, Any]) -> tuple[str, str]:
    """Return ``(subject, text)`` for an alert e-mail.

    Args:
        template_kind: One of ``low_battery``, ``overload``, ``offline``,
            ``high_temperature`` or ``test``.
        payload: ``device_name`` plus, where relevant, ``current_value``,
            ``threshold``, ``serial_number``, ``occurred_at`` and
            ``dashboard_url``.

    Raises:
        ValueError: If *template_kind* is unknown.
    """
    name = payload.get("device_name", "your device")
    value = _fmt(payload.get("current_value"))
    threshold = _fmt(payload.get("threshold"))

    if template_kind == "low_battery":
        subject = f"🔋 Low Battery Alert - {name}"
        lines = [
            f"Your device battery level has dropped to {value}%, which is below "
            f"your threshold of {threshold}%.",
            "Consider charging your device soon to avoid power loss.",
        ]
    elif template_kind == "overload":
        subject = f"⚡ Power Overload Alert - {name}"
        lines = [
            f"Device is drawing {value}W, which exceeds the safe limit of {threshold}W.",
            "Please reduce the load or disconnect some devices immediately.",
        ]
    elif template_kind == "offline":
        subject = f"📡 Device Offline - {name}"
        lines = [
            "Your device has gone offline and is no longer sending data.",
            "Please check your device connection and network status.",
        ]
    elif template_kind == "high_temperature":
        subject = f"🌡️ High Temperature Alert - {name}"
        lines = [
            f"Device temperature has reached {value}°C, exceeding the safe "
            f"threshold of {threshold}°C.",
            "Please ensure proper ventilation and check for any blockages.",
        ]
    elif template_kind == "test":
        subject = "✅ EcoFlow Monitor Email Test"
        lines = ["Email notifications are working."]
    else:
        raise ValueError(f"Unknown notification template: {template_kind!r}")

    if payload.get("serial_number"):
        lines.append(f"Device: {name} ({payload['serial_number']})")
    if payload.get("occurred_at"):
        lines.append(f"Time: {payload['occurred_at']}")
    if payload.get("dashboard_url"):
        lines.append(f"Dashboard: {payload['dashboard_url']}")
    return subject, "\n\n".join(lines)


# ---------------------------------------------------------------------------
# Resend e-mail notifier
# ---------------------------------------------------------------------------


class EmailNotifier:
    """Sends alert e-mails through Resend.

    Args:
        api_key: Resend API key. An empty key disables delivery; every send
            then reports a failure instead of raising.
        from_address: Sender, e.g. ``"EcoFlow Monitor <alerts@example.com>"``.
        api_url: Override for the Resend endpoint (tests).
        timeout_s: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use ``MockTransport``).
    """

    def __init__(
        self,
        api_key: str,
        from_address: str = DEFAULT_FROM_ADDRESS,
        api_url: str = RESEND_API_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_url.lower().startswith("https://"):
            raise ValueError(f"E-mail API URL must use HTTPS (got: '{api_url}').")
        self._api_key = api_key
        self._from_address = from_address
        self._api_url = api_url
        self._timeout_s = timeout_s
        self._transport = transport

    async def send(
        self, to_address: str, template_kind: str, payload: Mapping[str, Any]
    ) -> SendResult:
        """Render and deliver one e-mail; returns the outcome."""
        if not self._api_key:
            return SendResult(success=False, error="E-mail delivery is not configured")
        if not to_address:
            return SendResult(success=False, error="No recipient address")

        subject, text = render(template_kind, payload)
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout_s, transport=self._transport, verify=True
            ) as client:
                response = await client.post(
                    self._api_url,
                    json={
                        "from": self._from_address,
                        "to": [to_address],
                        "subject": subject,
                        "text": text,
                    },
                    headers={"Authorization": f"Bearer {self._api_key}"},
                )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            logger.warning("E-mail to %s failed (network error): %s", to_address, exc)
            return SendResult(success=False, error=f"Network error: {exc}")

        if not response.is_success:
            detail = _error_detail(response)
            logger.warning(
                "E-mail to %s rejected (HTTP %d): %s",
                to_address,
                response.status_code,
                detail,
            )
            return SendResult(success=False, error=f"HTTP {response.status_code}: {detail}")

        message_id = _message_id(response)
        logger.info("Sent %s e-mail to %s (id=%s)", template_kind, to_address, message_id)
        return SendResult(success=True, message_id=message_id)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return response.text[:200]


def _message_id(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict) and body.get("id") is not None:
        return str(body["id"])
    return None
