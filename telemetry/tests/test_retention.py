"""
Unit tests for the retention sweeper.

Tests verify:
- A 90-day user keeps the 89-day reading and loses the 91-day one.
- Alerts and notification logs follow the same cutoff.
- Sweeps are idempotent and scoped to one user's data.
- Users with auto cleanup disabled are untouched.
- A database or unexpected error for one user never stops the others.
- preview counts without deleting.

CHANGELOG:
- 2026-03-13: Cover per-user isolation of database errors (STORY-117)
- 2026-03-10: Cover preview (STORY-113)
- 2026-03-09: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from telemetry.src.db.models import AlertRow, ReadingRow
from telemetry.src.errors import PersistenceError
from telemetry.src.normalizer import normalize
from telemetry.src.retention import RetentionSweeper
from telemetry.src.services import storage

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


async def _record(session_factory, device_id: str, quota: dict, at: datetime) -> None:
    async with session_factory() as db:
        await storage.insert_reading(db, normalize(quota, device_id=device_id, now=at))


async def _add_alert(session_factory, device_id: str, at: datetime) -> None:
    async with session_factory() as db:
        db.add(
            AlertRow(
                device_id=device_id,
                kind="low_battery",
                title="Low Battery Warning",
                message="Battery at 12%",
                severity="warning",
                created_at=at,
            )
        )
        await db.commit()


async def _count(session_factory, model) -> int:
    async with session_factory() as db:
        return int((await db.execute(select(func.count()).select_from(model))).scalar_one())


async def _readings(session_factory, device_id: str) -> list[datetime]:
    async with session_factory() as db:
        result = await db.execute(
            select(ReadingRow.recorded_at)
            .where(ReadingRow.device_id == device_id)
            .order_by(ReadingRow.recorded_at)
        )
        return list(result.scalars())


@pytest_asyncio.fixture()
async def seeded(session_factory, add_device, quota_factory):
    """user-1 with one reading at now-91d and one at now-89d."""
    device = await add_device("SN1")
    async with session_factory() as db:
        await storage.get_retention_settings(db, "user-1")
    for days in (91, 89):
        await _record(session_factory, device.id, quota_factory(), NOW - timedelta(days=days))
    return device


class TestSweep:
    """Deletes strictly older than now - retention_period_days."""

    @pytest.mark.asyncio
    async def test_91_day_reading_removed_89_day_kept(self, session_factory, seeded) -> None:
        results = await RetentionSweeper(session_factory).sweep(NOW)

        assert await _readings(session_factory, seeded.id) == [NOW - timedelta(days=89)]
        assert results[0].readings_deleted == 1
        assert results[0].cutoff == NOW - timedelta(days=90)

    @pytest.mark.asyncio
    async def test_second_sweep_deletes_nothing(self, session_factory, seeded) -> None:
        sweeper = RetentionSweeper(session_factory)
        await sweeper.sweep(NOW)

        second = await sweeper.sweep(NOW + timedelta(hours=6))

        assert second[0].readings_deleted == 0
        assert second[0].error is None

    @pytest.mark.asyncio
    async def test_alerts_and_logs_follow_cutoff(self, session_factory, seeded) -> None:
        await _add_alert(session_factory, seeded.id, NOW - timedelta(days=100))
        await _add_alert(session_factory, seeded.id, NOW - timedelta(days=1))
        async with session_factory() as db:
            for days in (120, 2):
                await storage.insert_notification_log(
                    db,
                    user_id="user-1",
                    device_id=seeded.id,
                    kind="low_battery",
                    status="sent",
                    sent_at=NOW - timedelta(days=days),
                )

        result = (await RetentionSweeper(session_factory).sweep(NOW))[0]

        assert result.alerts_deleted == 1
        assert result.notifications_deleted == 1
        assert await _count(session_factory, AlertRow) == 1

    @pytest.mark.asyncio
    async def test_stamps_last_cleanup(self, session_factory, seeded) -> None:
        await RetentionSweeper(session_factory).sweep(NOW)

        async with session_factory() as db:
            settings = await storage.get_retention_settings(db, "user-1")
        assert settings.last_cleanup_at == NOW

    @pytest.mark.asyncio
    async def test_scoped_to_user_retention(
        self, session_factory, seeded, add_device, quota_factory
    ) -> None:
        other = await add_device("SN9", user_id="user-2")
        async with session_factory() as db:
            await storage.update_retention_settings(db, "user-2", retention_period_days=365)
        await _record(session_factory, other.id, quota_factory(), NOW - timedelta(days=91))

        await RetentionSweeper(session_factory).sweep(NOW)

        assert await _readings(session_factory, other.id) == [NOW - timedelta(days=91)]
        assert await _readings(session_factory, seeded.id) == [NOW - timedelta(days=89)]

    @pytest.mark.asyncio
    async def test_auto_cleanup_disabled_is_skipped(self, session_factory, seeded) -> None:
        async with session_factory() as db:
            await storage.update_retention_settings(db, "user-1", auto_cleanup_enabled=False)

        results = await RetentionSweeper(session_factory).sweep(NOW)

        assert results == []
        assert await _count(session_factory, ReadingRow) == 2

    @pytest.mark.asyncio
    async def test_user_failure_is_reported(self, session_factory, seeded) -> None:
        with patch(
            "telemetry.src.retention.storage.delete_readings_before",
            AsyncMock(side_effect=PersistenceError("database locked")),
        ):
            results = await RetentionSweeper(session_factory).sweep(NOW)

        assert results[0].error == "database locked"
        assert await _count(session_factory, ReadingRow) == 2

    @pytest.mark.asyncio
    async def test_database_error_in_delete_spares_other_users(
        self, session_factory, seeded, add_device, quota_factory
    ) -> None:
        other = await add_device("SN9", user_id="user-2")
        async with session_factory() as db:
            await storage.get_retention_settings(db, "user-2")
        await _record(session_factory, other.id, quota_factory(), NOW - timedelta(days=91))
        real_delete = storage.delete_alerts_before

        async def failing_for_user_1(db, user_id, cutoff):
            if user_id != "user-1":
                return await real_delete(db, user_id, cutoff)
            error = OperationalError("DELETE FROM alerts", {}, Exception("disk I/O error"))
            with patch.object(db, "execute", AsyncMock(side_effect=error)):
                return await real_delete(db, user_id, cutoff)

        with patch(
            "telemetry.src.retention.storage.delete_alerts_before",
            side_effect=failing_for_user_1,
        ):
            results = await RetentionSweeper(session_factory).sweep(NOW)

        by_user = {r.user_id: r for r in results}
        assert "disk I/O error" in by_user["user-1"].error
        assert by_user["user-2"].error is None
        assert by_user["user-2"].readings_deleted == 1
        assert await _readings(session_factory, other.id) == []

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported_per_user(
        self, session_factory, seeded, add_device
    ) -> None:
        await add_device("SN9", user_id="user-2")
        async with session_factory() as db:
            await storage.get_retention_settings(db, "user-2")
        real_delete = storage.delete_readings_before

        async def broken_for_user_1(db, user_id, cutoff):
            if user_id == "user-1":
                raise RuntimeError("boom")
            return await real_delete(db, user_id, cutoff)

        with patch(
            "telemetry.src.retention.storage.delete_readings_before",
            side_effect=broken_for_user_1,
        ):
            results = await RetentionSweeper(session_factory).sweep(NOW)

        by_user = {r.user_id: r for r in results}
        assert by_user["user-1"].error == "boom"
        assert by_user["user-2"].error is None


class TestPreview:
    """Counts without deleting."""

    @pytest.mark.asyncio
    async def test_preview_counts_only(self, session_factory, seeded) -> None:
        preview = await RetentionSweeper(session_factory).preview("user-1", NOW)

        assert preview.readings_deleted == 1
        assert preview.alerts_deleted == 0
        assert await _count(session_factory, ReadingRow) == 2
