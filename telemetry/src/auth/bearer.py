"""
Cron-secret authentication for the trigger API.

The external scheduler presents the shared ``CRON_SECRET`` either as
``Authorization: Bearer <secret>`` or in an ``x-cron-secret`` header.
Comparison is constant-time via secrets.compare_digest.

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)

TODO:
- None
"""

import logging
import secrets

from fastapi import HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

CRON_SECRET_HEADER = "x-cron-secret"


def verify_cron_secret(presented: str | None, expected: str) -> bool:
    """Return True if *presented* matches *expected*.

    An empty *expected* secret never matches, so a misconfigured server
    cannot be triggered anonymously.
    """
    if not presented or not expected:
        return False
    return secrets.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


class CronSecretAuth:
    """FastAPI dependency validating the cron secret.

    Args:
        secret: The configured ``CRON_SECRET``.
    """

    def __init__(self, secret: str) -> None:
        self._secret = secret
        self.scheme = HTTPBearer(auto_error=False)

    async def verify(self, request: Request) -> None:
        """Raise 401 unless the request carries the cron secret."""
        credentials: HTTPAuthorizationCredentials | None = await self.scheme(request)
        presented = credentials.credentials if credentials is not None else None
        if presented is None:
            presented = request.headers.get(CRON_SECRET_HEADER)

        if presented is None:
            raise HTTPException(
                status_code=401,
                detail="Missing cron secret.",
                headers={"WWW-Authenticate": "Bearer"},
            )
        if not verify_cron_secret(presented, self._secret):
            logger.warning("Rejected trigger request from %s", _client_host(request))
            raise HTTPException(
                status_code=401,
                detail="Invalid cron secret.",
                headers={"WWW-Authenticate": "Bearer"},
            )


def _client_host(request: Request) -> str:
    return request.client.host if request.client is not None else "unknown"
