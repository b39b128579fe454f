"""
Unit tests for the collection scheduler.

Tests verify:
- The interval boundary is inclusive; one millisecond earlier is not due.
- retry_after_ms reports the remaining wait.
- force and "never collected" are always due.
- A future last_collection_at is treated as just collected.
- is_due falls back to the newest reading when no stamp exists.

CHANGELOG:
- 2026-03-05: Cover newest-reading fallback (STORY-107)
- 2026-03-04: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from telemetry.src.normalizer import normalize
from telemetry.src.scheduler import CollectionScheduler, check_due
from telemetry.src.services import storage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

INTERVAL_MIN = 5


class TestCheckDue:
    """Pure due-check."""

    def test_boundary_is_inclusive(self) -> None:
        last = NOW - timedelta(minutes=INTERVAL_MIN)
        result = check_due(last_collection_at=last, interval_minutes=INTERVAL_MIN, now=NOW)
        assert result.due is True
        assert result.retry_after_ms is None

    def test_one_millisecond_early_is_not_due(self) -> None:
        last = NOW - timedelta(minutes=INTERVAL_MIN) + timedelta(milliseconds=1)
        result = check_due(last_collection_at=last, interval_minutes=INTERVAL_MIN, now=NOW)
        assert result.due is False
        assert result.retry_after_ms == 1

    def test_retry_after_reports_remaining_wait(self) -> None:
        last = NOW - timedelta(minutes=2)
        result = check_due(last_collection_at=last, interval_minutes=INTERVAL_MIN, now=NOW)
        assert result.due is False
        assert result.retry_after_ms == 3 * 60_000

    def test_never_collected_is_due(self) -> None:
        assert check_due(last_collection_at=None, interval_minutes=INTERVAL_MIN, now=NOW).due

    def test_force_overrides_interval(self) -> None:
        result = check_due(
            last_collection_at=NOW, interval_minutes=INTERVAL_MIN, now=NOW, force=True
        )
        assert result.due is True

    def test_future_stamp_waits_at_most_one_interval(self) -> None:
        last = NOW + timedelta(hours=3)
        result = check_due(last_collection_at=last, interval_minutes=INTERVAL_MIN, now=NOW)
        assert result.due is False
        assert result.retry_after_ms == INTERVAL_MIN * 60_000


class TestCollectionScheduler:
    """Storage-backed gate."""

    @pytest.mark.asyncio
    async def test_new_user_is_due(self, session_factory) -> None:
        scheduler = CollectionScheduler(session_factory)

        assert (await scheduler.is_due("user-new", NOW)).due is True

    @pytest.mark.asyncio
    async def test_uses_last_collection_stamp(self, session_factory) -> None:
        async with session_factory() as db:
            await storage.mark_collected(db, "user-1", NOW - timedelta(minutes=1))
        scheduler = CollectionScheduler(session_factory)

        result = await scheduler.is_due("user-1", NOW)

        assert result.due is False
        assert result.retry_after_ms == 4 * 60_000

    @pytest.mark.asyncio
    async def test_honours_user_interval(self, session_factory) -> None:
        async with session_factory() as db:
            await storage.update_retention_settings(db, "user-1", collection_interval_minutes=1)
            await storage.mark_collected(db, "user-1", NOW - timedelta(minutes=1))
        scheduler = CollectionScheduler(session_factory)

        assert (await scheduler.is_due("user-1", NOW)).due is True

    @pytest.mark.asyncio
    async def test_falls_back_to_newest_reading(
        self, session_factory, add_device, quota_factory
    ) -> None:
        device = await add_device("SN1")
        reading = normalize(quota_factory(), device_id=device.id, now=NOW - timedelta(minutes=2))
        async with session_factory() as db:
            await storage.insert_reading(db, reading)
        scheduler = CollectionScheduler(session_factory)

        result = await scheduler.is_due("user-1", NOW)

        assert result.due is False
        assert result.retry_after_ms == 3 * 60_000

    @pytest.mark.asyncio
    async def test_does_not_mutate_stamp(self, session_factory) -> None:
        scheduler = CollectionScheduler(session_factory)
        await scheduler.is_due("user-1", NOW)

        async with session_factory() as db:
            settings = await storage.get_retention_settings(db, "user-1")
        assert settings.last_collection_at is None
