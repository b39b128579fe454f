"""
Error taxonomy for the telemetry engine.

Every failure the engine can surface derives from :class:`EngineError` so
callers can decide per class whether to abort, skip, or retry:

- AuthError: missing/invalid credentials. Fatal, aborts the whole round.
- TransportError: no response from the device cloud (network, timeout).
  Retryable by the caller on the next round.
- HTTPError: non-2xx transport-level response.
- APIError: the envelope's ``code`` was not the success sentinel ``"0"``.
- PersistenceError: a reading or log row could not be written.
- NotificationError: an outbound notification could not be delivered.

Absence of data is not an error: the normalizer returns ``None``.

CHANGELOG:
- 2026-03-02: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations


class EngineError(Exception):
    """Base class for all telemetry engine errors."""


class AuthError(EngineError):
    """Credentials are absent or rejected."""


class TransportError(EngineError):
    """No response was received from the device cloud."""


class HTTPError(EngineError):
    """The device cloud answered with a non-2xx HTTP status.

    Attributes:
        status_code: The HTTP status code of the response.
    """

    def __init__(self, status_code: int, detail: str = "") -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class APIError(EngineError):
    """The device cloud rejected the request inside a 2xx envelope.

    Attributes:
        code: Vendor status code from the envelope (never ``"0"``).
        message: Vendor message from the envelope.
    """

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(f"{message} (code: {code})")


class PersistenceError(EngineError):
    """A storage write failed."""


class NotificationError(EngineError):
    """A notification could not be delivered."""
