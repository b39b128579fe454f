"""
Interval-aware collection gate.

Decides per user whether a collection round is due:

    due = force or (now - last_collection) >= interval

The boundary is inclusive. When a round is not due, the remaining wait is
returned in milliseconds so callers can report "next collection in Ns"
without re-deriving it. The last collection time is the user's
``last_collection_at`` stamp, falling back to the newest reading across the
user's devices. The scheduler only reads state; the collector stamps
``last_collection_at`` after a round with at least one success.

CHANGELOG:
- 2026-03-05: Fall back to newest reading when no stamp exists (STORY-107)
- 2026-03-04: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telemetry.src.models import DueCheck
from telemetry.src.services import storage

logger = logging.getLogger(__name__)

_ONE_MS = timedelta(milliseconds=1)


def check_due(
    *,
    last_collection_at: datetime | None,
    interval_minutes: int,
    now: datetime,
    force: bool = False,
) -> DueCheck:
    """Pure due-check on already loaded values.

    A ``last_collection_at`` in the future (clock skew) is treated as
    "just collected", so the wait never exceeds one interval.
    """
    if force or last_collection_at is None:
        return DueCheck(due=True)

    interval = timedelta(minutes=interval_minutes)
    elapsed = now - last_collection_at
    if elapsed < timedelta(0):
        logger.warning(
            "last_collection_at %s is after now %s; treating as just collected",
            last_collection_at.isoformat(),
            now.isoformat(),
        )
        elapsed = timedelta(0)

    if elapsed >= interval:
        return DueCheck(due=True)
    return DueCheck(due=False, retry_after_ms=math.ceil((interval - elapsed) / _ONE_MS))


class CollectionScheduler:
    """Per-user collection gate backed by the storage collaborator.

    Args:
        session_factory: Factory for storage sessions.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def is_due(self, user_id: str, now: datetime, force: bool = False) -> DueCheck:
        """Return whether a new round is due for *user_id* at *now*."""
        async with self._session_factory() as db:
            settings = await storage.get_retention_settings(db, user_id)
            last = settings.last_collection_at
            if last is None:
                last = await storage.latest_recorded_at_for_user(db, user_id)

        check = check_due(
            last_collection_at=last,
            interval_minutes=settings.collection_interval_minutes,
            now=now,
            force=force,
        )
        if not check.due:
            logger.debug(
                "Collection for user %s not due, next in %.1fs",
                user_id,
                (check.retry_after_ms or 0) / 1000,
            )
        return check
