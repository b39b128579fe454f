"""
Per-user data retention sweep.

For every user with auto cleanup enabled the sweeper computes
``cutoff = now - retention_period_days`` and deletes that user's readings,
in-app alerts and notification log rows strictly older than the cutoff,
then stamps ``last_cleanup_at = now``. The cutoff is always derived from the
``now`` passed in, never from the previous sweep, so running twice in one
day is harmless and a second run with no new data deletes nothing.

Users are swept concurrently; one user's failure is reported in its
``SweepResult.error`` and does not stop the others.

CHANGELOG:
- 2026-03-13: Unexpected per-user errors land in SweepResult.error (STORY-117)
- 2026-03-10: Add preview for the cleanup dialog (STORY-113)
- 2026-03-09: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from telemetry.src.errors import PersistenceError
from telemetry.src.models import RetentionSettings, SweepResult
from telemetry.src.services import storage

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def cutoff_for(settings: RetentionSettings, now: datetime) -> datetime:
    return now - timedelta(days=settings.retention_period_days)


class RetentionSweeper:
    """Deletes data older than each user's retention window."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def sweep(self, now: datetime) -> list[SweepResult]:
        """Sweep every user with auto cleanup enabled."""
        async with self._session_factory() as db:
            users = await storage.list_retention_settings(db, auto_cleanup_only=True)

        outcomes = await asyncio.gather(
            *(self.sweep_user(s, now) for s in users),
            return_exceptions=True,
        )
        results: list[SweepResult] = []
        for settings, outcome in zip(users, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(
                    "Retention sweep for user %s failed", settings.user_id, exc_info=outcome
                )
                outcome = SweepResult(
                    user_id=settings.user_id,
                    cutoff=cutoff_for(settings, now),
                    error=str(outcome),
                )
            results.append(outcome)
        logger.info(
            "Retention sweep: users=%d readings=%d alerts=%d notifications=%d errors=%d",
            len(results),
            sum(r.readings_deleted for r in results),
            sum(r.alerts_deleted for r in results),
            sum(r.notifications_deleted for r in results),
            sum(1 for r in results if r.error),
        )
        return results

    async def sweep_user(self, settings: RetentionSettings, now: datetime) -> SweepResult:
        """Sweep one user; persistence errors are captured in the result."""
        cutoff = cutoff_for(settings, now)
        result = SweepResult(user_id=settings.user_id, cutoff=cutoff)
        try:
            async with self._session_factory() as db:
                result.readings_deleted = await storage.delete_readings_before(
                    db, settings.user_id, cutoff
                )
                result.alerts_deleted = await storage.delete_alerts_before(
                    db, settings.user_id, cutoff
                )
                result.notifications_deleted = await storage.delete_notification_logs_before(
                    db, settings.user_id, cutoff
                )
                await storage.mark_cleaned(db, settings.user_id, now)
        except PersistenceError as exc:
            logger.error("Retention sweep for user %s failed: %s", settings.user_id, exc)
            result.error = str(exc)
            return result

        logger.debug(
            "Swept user %s before %s: %d readings, %d alerts, %d notifications",
            settings.user_id,
            cutoff.isoformat(),
            result.readings_deleted,
            result.alerts_deleted,
            result.notifications_deleted,
        )
        return result

    async def preview(self, user_id: str, now: datetime) -> SweepResult:
        """Count what a sweep at *now* would delete for *user_id*."""
        async with self._session_factory() as db:
            settings = await storage.get_retention_settings(db, user_id)
            cutoff = cutoff_for(settings, now)
            return SweepResult(
                user_id=user_id,
                cutoff=cutoff,
                readings_deleted=await storage.count_readings_before(db, user_id, cutoff),
                alerts_deleted=await storage.count_alerts_before(db, user_id, cutoff),
                notifications_deleted=await storage.count_notification_logs_before(
                    db, user_id, cutoff
                ),
            )
