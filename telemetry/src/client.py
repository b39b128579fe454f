"""
Signed HTTPS client for the EcoFlow device-cloud API.

Every request carries four authentication headers: ``accessKey``, ``nonce``,
``timestamp`` (ms epoch) and ``sign``. The signature is the hex HMAC-SHA256,
keyed by the secret key, of the string formed by merging the call parameters
with ``accessKey``/``nonce``/``timestamp``, sorting keys lexicographically,
and joining ``key=value`` pairs with ``&``. Nested parameters flatten to
dotted keys (``params.cmdSet=11``) before signing.

A fresh nonce and timestamp are generated for every call. The client never
retries: retries belong to the collector so that failures stay attributed to
the device that caused them.

Operations:
- call(method, path, params, body): signed request, returns the envelope.
- get_quota(serial_number): full quota snapshot of one device.
- list_devices(): devices bound to the account (discovery).

CHANGELOG:
- 2026-03-13: Map credential rejections to AuthError (STORY-117)
- 2026-03-06: Add list_devices for device discovery (STORY-110)
- 2026-03-04: Flatten nested params before signing (STORY-105)
- 2026-03-03: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import httpx

from telemetry.src.config import Credentials
from telemetry.src.errors import APIError, AuthError, HTTPError, TransportError

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"
"""Envelope ``code`` value that marks a successful call."""

AUTH_FAILURE_CODES = frozenset({"8513", "8514", "8521", "8524"})
"""Envelope codes for a rejected access key, signature, nonce or timestamp."""

AUTH_FAILURE_STATUSES = frozenset({401, 403})

DEFAULT_BASE_URL = "https://api-e.ecoflow.com"
DEFAULT_TIMEOUT_S = 30.0

QUOTA_ALL_PATH = "/iot-open/sign/device/quota/all"
DEVICE_LIST_PATH = "/iot-open/sign/device/list"


@dataclass(frozen=True, slots=True)
class SignedRequest:
    """Ephemeral description of one signed call, discarded after the response."""

    method: str
    path: str
    query_params: dict[str, Any]
    timestamp: int
    nonce: str
    signature: str

    def headers(self, access_key: str) -> dict[str, str]:
        """Authentication headers for this request."""
        return {
            "Content-Type": "application/json;charset=UTF-8",
            "accessKey": access_key,
            "nonce": self.nonce,
            "timestamp": str(self.timestamp),
            "sign": self.signature,
        }


# ---------------------------------------------------------------------------
# Signing helpers
# ---------------------------------------------------------------------------


def _format_value(value: Any) -> str:
    """Render a parameter value the way the device cloud expects it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def flatten_params(params: Mapping[str, Any], prefix: str = "") -> dict[str, str]:
    """Flatten nested mappings/lists into dotted ``key=value`` pairs.

    ``{"params": {"cmdSet": 11}}`` becomes ``{"params.cmdSet": "11"}`` and
    ``{"ids": [1, 2]}`` becomes ``{"ids[0]": "1", "ids[1]": "2"}``.
    """
    flat: dict[str, str] = {}
    for key, value in params.items():
        name = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(flatten_params(value, name))
        elif isinstance(value, (list, tuple)):
            for idx, item in enumerate(value):
                item_name = f"{name}[{idx}]"
                if isinstance(item, Mapping):
                    flat.update(flatten_params(item, item_name))
                else:
                    flat[item_name] = _format_value(item)
        elif value is not None:
            flat[name] = _format_value(value)
    return flat


def signing_string(
    params: Mapping[str, Any],
    *,
    access_key: str,
    nonce: str,
    timestamp: int,
) -> str:
    """Build the canonical string that gets signed."""
    merged = flatten_params(params)
    merged.update(
        {
            "accessKey": access_key,
            "nonce": str(nonce),
            "timestamp": str(timestamp),
        }
    )
    return "&".join(f"{key}={merged[key]}" for key in sorted(merged))


def compute_signature(secret_key: str, message: str) -> str:
    """Return the hex HMAC-SHA256 of *message* keyed by *secret_key*."""
    return hmac.new(
        secret_key.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def _now_ms() -> int:
    return int(time.time() * 1000)


def _new_nonce() -> str:
    return str(100000 + secrets.randbelow(900000))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SignedRequestClient:
    """Authenticated client for the device-cloud REST API.

    Args:
        credentials: Immutable access/secret key pair.
        base_url: Device-cloud base URL.
        timeout_s: Bounded timeout per call; expiry raises TransportError.
        transport: Optional httpx transport (used by tests).

    Raises:
        AuthError: If either key is missing or empty.

    Usage::

        client = SignedRequestClient(settings.credentials)
        quota = await client.get_quota("R331ZEB4ZE123456")
    """

    def __init__(
        self,
        credentials: Credentials | None,
        base_url: str = DEFAULT_BASE_URL,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if (
            credentials is None
            or not credentials.access_key
            or not credentials.secret_key
        ):
            raise AuthError("Device-cloud credentials are not configured")
        self._credentials = credentials
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def sign(self, method: str, path: str, params: Mapping[str, Any]) -> SignedRequest:
        """Build a freshly signed request description for *params*."""
        timestamp = _now_ms()
        nonce = _new_nonce()
        message = signing_string(
            params,
            access_key=self._credentials.access_key,
            nonce=nonce,
            timestamp=timestamp,
        )
        return SignedRequest(
            method=method.upper(),
            path=path,
            query_params=dict(params),
            timestamp=timestamp,
            nonce=nonce,
            signature=compute_signature(self._credentials.secret_key, message),
        )

    async def call(
        self,
        method: str,
        path: str,
        params: Mapping[str, Any] | None = None,
        body: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Send a signed request and return the decoded envelope.

        For requests with a JSON *body*, the body fields are signed together
        with *params*.

        Returns:
            The envelope ``{"code": "0", "message": ..., "data": ...}``.

        Raises:
            TransportError: No response (connection failure or timeout).
            AuthError: Credentials or signature rejected (HTTP 401/403 or an
                envelope code in ``AUTH_FAILURE_CODES``).
            HTTPError: Non-2xx HTTP status.
            APIError: Envelope ``code`` is not ``"0"`` or the body is not
                a JSON envelope.
        """
        query = dict(params or {})
        signed_fields: dict[str, Any] = {**query, **(body or {})}
        request = self.sign(method, path, signed_fields)

        try:
            async with httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout_s,
                transport=self._transport,
                verify=True,
            ) as client:
                response = await client.request(
                    request.method,
                    path,
                    params={k: _format_value(v) for k, v in query.items()} or None,
                    json=dict(body) if body is not None else None,
                    headers=request.headers(self._credentials.access_key),
                )
        except httpx.TimeoutException as exc:
            raise TransportError(
                f"{request.method} {path} timed out after {self._timeout_s}s"
            ) from exc
        except httpx.TransportError as exc:
            raise TransportError(f"{request.method} {path} failed: {exc}") from exc

        if response.status_code in AUTH_FAILURE_STATUSES:
            logger.error(
                "Device cloud refused credentials for %s %s (HTTP %d)",
                request.method,
                path,
                response.status_code,
            )
            raise AuthError(f"Device cloud refused credentials (HTTP {response.status_code})")
        if not response.is_success:
            raise HTTPError(response.status_code, response.reason_phrase)

        try:
            envelope = response.json()
        except ValueError as exc:
            raise APIError("malformed", "Response body is not JSON") from exc
        if not isinstance(envelope, dict):
            raise APIError("malformed", "Response envelope is not an object")

        code = str(envelope.get("code"))
        if code != SUCCESS_CODE:
            message = str(envelope.get("message") or "unknown error")
            logger.warning(
                "Device cloud rejected %s %s: %s (code: %s)",
                request.method,
                path,
                message,
                code,
            )
            if code in AUTH_FAILURE_CODES:
                raise AuthError(f"Device cloud refused credentials: {message} (code: {code})")
            raise APIError(code, message)
        return envelope

    async def get_quota(self, serial_number: str) -> dict[str, Any]:
        """Return the full quota snapshot of one device.

        An empty dict means the cloud returned no data for the device.
        """
        envelope = await self.call("GET", QUOTA_ALL_PATH, {"sn": serial_number})
        data = envelope.get("data")
        return data if isinstance(data, dict) else {}

    async def list_devices(self) -> list[dict[str, Any]]:
        """Return the devices bound to the account.

        Each item carries ``sn``, ``productName``, ``online`` (``1``/``0``)
        and, depending on firmware, ``deviceName``/``productType``.
        """
        envelope = await self.call("GET", DEVICE_LIST_PATH)
        data = envelope.get("data")
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []
