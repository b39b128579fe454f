"""
Storage service: async repository functions over the engine's tables.

Each function takes an explicit ``AsyncSession`` and commits its own writes,
so callers running concurrent per-device work simply open one session per
task. Database failures from reads, deletes and commits are re-raised as
:class:`PersistenceError` after a rollback. Settings rows are created lazily
with defaults on first access.

Operations:
- devices: add_device, list_active_devices, deactivate_device, delete_device
- readings: insert_reading, latest_reading, latest_readings,
  latest_recorded_at_for_user, find_offline_devices
- settings: get/update retention and notification settings, mark_collected,
  mark_cleaned, list_retention_settings, list_notification_settings
- notification log: insert_notification_log, last_notification_at,
  claim_alert_key
- retention: delete_*_before and count_*_before per user

CHANGELOG:
- 2026-03-13: Wrap read and delete failures in PersistenceError; delete_device
  also removes the device's notification log (STORY-117)
- 2026-03-10: Add count_*_before for retention preview (STORY-113)
- 2026-03-07: Add offline-device query (STORY-111)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

import datetime
import logging
from typing import Any, TypeVar

from sqlalchemy import Executable, Result, Select, delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from telemetry.src.db.models import (
    AlertClaimRow,
    AlertRow,
    Base,
    DeviceRow,
    NotificationLogRow,
    NotificationSettingRow,
    ReadingRow,
    RetentionSettingRow,
)
from telemetry.src.errors import PersistenceError
from telemetry.src.models import Device, NotificationSettings, Reading, RetentionSettings

logger = logging.getLogger(__name__)

MIN_RETENTION_DAYS = 1
MAX_RETENTION_DAYS = 365
MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 1440

_RowT = TypeVar("_RowT", bound=Base)


async def _commit(db: AsyncSession, what: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Failed to write {what}: {exc}") from exc


async def _execute(db: AsyncSession, statement: Executable) -> Result[Any]:
    try:
        return await db.execute(statement)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Failed to execute statement: {exc}") from exc


async def _get(db: AsyncSession, model: type[_RowT], key: str) -> _RowT | None:
    try:
        return await db.get(model, key)
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Failed to load {model.__tablename__} {key}: {exc}") from exc


# ---------------------------------------------------------------------------
# Devices
# ---------------------------------------------------------------------------


async def add_device(
    db: AsyncSession,
    *,
    user_id: str,
    serial_number: str,
    now: datetime.datetime,
    name: str | None = None,
    type: str = "",
) -> Device:
    """Register a device for a user and return it."""
    row = DeviceRow(
        user_id=user_id,
        serial_number=serial_number,
        name=name,
        type=type,
        is_active=True,
        created_at=now,
    )
    db.add(row)
    await _commit(db, f"device {serial_number}")
    return Device.model_validate(row)


async def list_active_devices(db: AsyncSession, user_id: str) -> list[Device]:
    """Return the user's active devices ordered by creation time."""
    result = await _execute(
        db,
        select(DeviceRow)
        .where(DeviceRow.user_id == user_id, DeviceRow.is_active.is_(True))
        .order_by(DeviceRow.created_at, DeviceRow.id)
    )
    return [Device.model_validate(row) for row in result.scalars()]


async def list_active_user_ids(db: AsyncSession) -> list[str]:
    """Return the ids of users owning at least one active device."""
    result = await _execute(
        db,
        select(DeviceRow.user_id)
        .where(DeviceRow.is_active.is_(True))
        .distinct()
        .order_by(DeviceRow.user_id)
    )
    return list(result.scalars())


async def deactivate_device(db: AsyncSession, device_id: str) -> bool:
    """Soft-disable a device; its history stays. Returns False if unknown."""
    row = await _get(db, DeviceRow, device_id)
    if row is None:
        return False
    row.is_active = False
    await _commit(db, f"device {device_id}")
    return True


async def delete_device(db: AsyncSession, device_id: str) -> bool:
    """Hard-delete a device and everything recorded for it."""
    row = await _get(db, DeviceRow, device_id)
    if row is None:
        return False
    await _execute(
        db,
        delete(ReadingRow)
        .where(ReadingRow.device_id == device_id)
        .execution_options(synchronize_session=False)
    )
    await _execute(
        db,
        delete(AlertRow)
        .where(AlertRow.device_id == device_id)
        .execution_options(synchronize_session=False)
    )
    await _execute(
        db,
        delete(NotificationLogRow)
        .where(NotificationLogRow.device_id == device_id)
        .execution_options(synchronize_session=False)
    )
    await _execute(
        db,
        delete(AlertClaimRow)
        .where(AlertClaimRow.device_id == device_id)
        .execution_options(synchronize_session=False)
    )
    await db.delete(row)
    await _commit(db, f"device {device_id}")
    return True


# ---------------------------------------------------------------------------
# Readings
# ---------------------------------------------------------------------------


async def insert_reading(db: AsyncSession, reading: Reading) -> None:
    """Append one reading.

    Raises:
        PersistenceError: If the row could not be written.
    """
    db.add(ReadingRow(**reading.model_dump()))
    await _commit(db, f"reading for device {reading.device_id}")


async def latest_reading(db: AsyncSession, device_id: str) -> Reading | None:
    """Return the newest reading of a device, or None."""
    result = await _execute(
        db,
        select(ReadingRow)
        .where(ReadingRow.device_id == device_id)
        .order_by(ReadingRow.recorded_at.desc(), ReadingRow.id.desc())
        .limit(1)
    )
    row = result.scalar_one_or_none()
    return Reading.model_validate(row) if row is not None else None


async def latest_readings(
    db: AsyncSession,
    since: datetime.datetime,
) -> list[tuple[Device, Reading]]:
    """Return the newest reading per active device, if recorded after *since*."""
    newest = (
        select(
            ReadingRow.device_id.label("device_id"),
            func.max(ReadingRow.recorded_at).label("recorded_at"),
        )
        .where(ReadingRow.recorded_at > since)
        .group_by(ReadingRow.device_id)
        .subquery()
    )
    result = await _execute(
        db,
        select(DeviceRow, ReadingRow)
        .join(newest, newest.c.device_id == DeviceRow.id)
        .join(
            ReadingRow,
            (ReadingRow.device_id == newest.c.device_id)
            & (ReadingRow.recorded_at == newest.c.recorded_at),
        )
        .where(DeviceRow.is_active.is_(True))
        .order_by(DeviceRow.id, ReadingRow.id.desc())
    )
    pairs: list[tuple[Device, Reading]] = []
    seen: set[str] = set()
    for device_row, reading_row in result:
        # Two rows can share the newest timestamp; keep the last inserted.
        if device_row.id in seen:
            continue
        seen.add(device_row.id)
        pairs.append((Device.model_validate(device_row), Reading.model_validate(reading_row)))
    return pairs


async def latest_recorded_at_for_user(
    db: AsyncSession, user_id: str
) -> datetime.datetime | None:
    """Return the newest reading timestamp across the user's devices."""
    result = await _execute(
        db,
        select(func.max(ReadingRow.recorded_at))
        .select_from(ReadingRow)
        .join(DeviceRow, DeviceRow.id == ReadingRow.device_id)
        .where(DeviceRow.user_id == user_id)
    )
    value = result.scalar_one_or_none()
    if value is not None and value.tzinfo is None:
        value = value.replace(tzinfo=datetime.UTC)
    return value


async def find_offline_devices(
    db: AsyncSession,
    since: datetime.datetime,
) -> list[Device]:
    """Active devices that have reported before but not after *since*."""
    recent = select(ReadingRow.device_id).where(ReadingRow.recorded_at > since)
    ever = select(ReadingRow.device_id)
    result = await _execute(
        db,
        select(DeviceRow)
        .where(
            DeviceRow.is_active.is_(True),
            DeviceRow.id.in_(ever),
            DeviceRow.id.not_in(recent),
        )
        .order_by(DeviceRow.id)
    )
    return [Device.model_validate(row) for row in result.scalars()]


# ---------------------------------------------------------------------------
# Retention settings
# ---------------------------------------------------------------------------


async def _retention_row(db: AsyncSession, user_id: str) -> RetentionSettingRow:
    row = await _get(db, RetentionSettingRow, user_id)
    if row is None:
        defaults = RetentionSettings(user_id=user_id)
        row = RetentionSettingRow(**defaults.model_dump())
        db.add(row)
        await _commit(db, f"retention settings for {user_id}")
        logger.info("Created default retention settings for user %s", user_id)
    return row


async def get_retention_settings(db: AsyncSession, user_id: str) -> RetentionSettings:
    """Return the user's retention settings, creating defaults if missing."""
    return RetentionSettings.model_validate(await _retention_row(db, user_id))


async def update_retention_settings(
    db: AsyncSession,
    user_id: str,
    *,
    retention_period_days: int | None = None,
    auto_cleanup_enabled: bool | None = None,
    collection_interval_minutes: int | None = None,
) -> RetentionSettings:
    """Apply a user preference update.

    Raises:
        ValueError: If retention is outside 1..365 days or the interval is
            outside 1..1440 minutes.
    """
    if retention_period_days is not None and not (
        MIN_RETENTION_DAYS <= retention_period_days <= MAX_RETENTION_DAYS
    ):
        raise ValueError(
            f"Retention period must be between {MIN_RETENTION_DAYS} and "
            f"{MAX_RETENTION_DAYS} days"
        )
    if collection_interval_minutes is not None and not (
        MIN_INTERVAL_MINUTES <= collection_interval_minutes <= MAX_INTERVAL_MINUTES
    ):
        raise ValueError(
            f"Collection interval must be between {MIN_INTERVAL_MINUTES} and "
            f"{MAX_INTERVAL_MINUTES} minutes"
        )

    row = await _retention_row(db, user_id)
    if retention_period_days is not None:
        row.retention_period_days = retention_period_days
    if auto_cleanup_enabled is not None:
        row.auto_cleanup_enabled = auto_cleanup_enabled
    if collection_interval_minutes is not None:
        row.collection_interval_minutes = collection_interval_minutes
    await _commit(db, f"retention settings for {user_id}")
    return RetentionSettings.model_validate(row)


async def list_retention_settings(
    db: AsyncSession, *, auto_cleanup_only: bool = False
) -> list[RetentionSettings]:
    """Return every user's retention settings."""
    stmt = select(RetentionSettingRow).order_by(RetentionSettingRow.user_id)
    if auto_cleanup_only:
        stmt = stmt.where(RetentionSettingRow.auto_cleanup_enabled.is_(True))
    result = await _execute(db, stmt)
    return [RetentionSettings.model_validate(row) for row in result.scalars()]


async def mark_collected(db: AsyncSession, user_id: str, now: datetime.datetime) -> None:
    """Stamp the start time of the user's last successful collection round."""
    row = await _retention_row(db, user_id)
    row.last_collection_at = now
    await _commit(db, f"last collection for {user_id}")


async def mark_cleaned(db: AsyncSession, user_id: str, now: datetime.datetime) -> None:
    """Stamp the time of the user's last retention sweep."""
    row = await _retention_row(db, user_id)
    row.last_cleanup_at = now
    await _commit(db, f"last cleanup for {user_id}")


# ---------------------------------------------------------------------------
# Notification settings and log
# ---------------------------------------------------------------------------


async def _notification_row(db: AsyncSession, user_id: str) -> NotificationSettingRow:
    row = await _get(db, NotificationSettingRow, user_id)
    if row is None:
        defaults = NotificationSettings(user_id=user_id)
        row = NotificationSettingRow(**defaults.model_dump())
        db.add(row)
        await _commit(db, f"notification settings for {user_id}")
    return row


async def get_notification_settings(
    db: AsyncSession, user_id: str
) -> NotificationSettings:
    """Return the user's alert thresholds, creating defaults if missing."""
    return NotificationSettings.model_validate(await _notification_row(db, user_id))


async def update_notification_settings(
    db: AsyncSession, user_id: str, **changes: Any
) -> NotificationSettings:
    """Apply a partial update of alert thresholds.

    Raises:
        ValueError: On an unknown field or a threshold outside its range.
    """
    allowed = set(NotificationSettings.model_fields) - {"user_id"}
    unknown = set(changes) - allowed
    if unknown:
        raise ValueError(f"Unknown notification settings: {', '.join(sorted(unknown))}")
    threshold = changes.get("low_battery_threshold_pct")
    if threshold is not None and not 0 <= threshold <= 100:
        raise ValueError("Low battery threshold must be between 0 and 100")
    watts = changes.get("power_threshold_watts")
    if watts is not None and watts <= 0:
        raise ValueError("Power threshold must be positive")

    row = await _notification_row(db, user_id)
    for field, value in changes.items():
        if value is not None:
            setattr(row, field, value)
    await _commit(db, f"notification settings for {user_id}")
    return NotificationSettings.model_validate(row)


async def list_notification_settings(db: AsyncSession) -> dict[str, NotificationSettings]:
    """Return every user's alert thresholds keyed by user id."""
    result = await _execute(db, select(NotificationSettingRow))
    return {
        row.user_id: NotificationSettings.model_validate(row) for row in result.scalars()
    }


async def insert_notification_log(
    db: AsyncSession,
    *,
    user_id: str,
    device_id: str | None,
    kind: str,
    status: str,
    sent_at: datetime.datetime,
    email: str | None = None,
    subject: str | None = None,
    message_id: str | None = None,
    error_message: str | None = None,
) -> None:
    """Record one notification attempt.

    Raises:
        PersistenceError: If the row could not be written.
    """
    db.add(
        NotificationLogRow(
            user_id=user_id,
            device_id=device_id,
            kind=kind,
            status=status,
            email=email,
            subject=subject,
            message_id=message_id,
            error_message=error_message,
            sent_at=sent_at,
        )
    )
    await _commit(db, f"{kind} notification log for {user_id}")


async def last_notification_at(
    db: AsyncSession,
    *,
    user_id: str,
    device_id: str | None,
    kind: str,
) -> datetime.datetime | None:
    """Return when the newest log entry for the key was recorded, or None."""
    result = await _execute(
        db,
        select(NotificationLogRow.sent_at)
        .where(
            NotificationLogRow.user_id == user_id,
            NotificationLogRow.device_id == device_id,
            NotificationLogRow.kind == kind,
        )
        .order_by(NotificationLogRow.sent_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def claim_alert_key(
    db: AsyncSession,
    *,
    user_id: str,
    device_id: str,
    kind: str,
    now: datetime.datetime,
    until: datetime.datetime,
) -> bool:
    """Reserve the key until *until* unless an unexpired claim exists.

    The first statement is a write, so on SQLite the transaction waits for
    the write lock instead of failing on a lock upgrade. Two evaluations
    racing for the same key get exactly one True.

    Raises:
        PersistenceError: On any database failure other than losing the race.
    """
    key = (
        AlertClaimRow.user_id == user_id,
        AlertClaimRow.device_id == device_id,
        AlertClaimRow.kind == kind,
    )
    result = await _execute(
        db,
        update(AlertClaimRow)
        .where(*key, AlertClaimRow.claimed_until <= now)
        .values(claimed_at=now, claimed_until=until)
        .execution_options(synchronize_session=False),
    )
    if result.rowcount:
        await _commit(db, f"{kind} claim for {user_id}")
        return True

    db.add(
        AlertClaimRow(
            user_id=user_id,
            device_id=device_id,
            kind=kind,
            claimed_at=now,
            claimed_until=until,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return False
    except SQLAlchemyError as exc:
        await db.rollback()
        raise PersistenceError(f"Failed to write {kind} claim for {user_id}: {exc}") from exc
    return True


# ---------------------------------------------------------------------------
# Retention deletes and previews
# ---------------------------------------------------------------------------


def _user_device_ids(user_id: str) -> Select:
    return select(DeviceRow.id).where(DeviceRow.user_id == user_id)


async def delete_readings_before(
    db: AsyncSession, user_id: str, cutoff: datetime.datetime
) -> int:
    """Delete the user's readings strictly older than *cutoff*."""
    result = await _execute(
        db,
        delete(ReadingRow)
        .where(
            ReadingRow.recorded_at < cutoff,
            ReadingRow.device_id.in_(_user_device_ids(user_id)),
        )
        .execution_options(synchronize_session=False)
    )
    await _commit(db, f"reading cleanup for {user_id}")
    return result.rowcount or 0


async def delete_alerts_before(
    db: AsyncSession, user_id: str, cutoff: datetime.datetime
) -> int:
    """Delete the user's in-app alerts strictly older than *cutoff*."""
    result = await _execute(
        db,
        delete(AlertRow)
        .where(
            AlertRow.created_at < cutoff,
            AlertRow.device_id.in_(_user_device_ids(user_id)),
        )
        .execution_options(synchronize_session=False)
    )
    await _commit(db, f"alert cleanup for {user_id}")
    return result.rowcount or 0


async def delete_notification_logs_before(
    db: AsyncSession, user_id: str, cutoff: datetime.datetime
) -> int:
    """Delete the user's notification log rows strictly older than *cutoff*."""
    result = await _execute(
        db,
        delete(NotificationLogRow)
        .where(
            NotificationLogRow.sent_at < cutoff,
            NotificationLogRow.user_id == user_id,
        )
        .execution_options(synchronize_session=False)
    )
    await _commit(db, f"notification log cleanup for {user_id}")
    return result.rowcount or 0


async def count_readings_before(
    db: AsyncSession, user_id: str, cutoff: datetime.datetime
) -> int:
    """Count the user's readings strictly older than *cutoff*."""
    result = await _execute(
        db,
        select(func.count())
        .select_from(ReadingRow)
        .where(
            ReadingRow.recorded_at < cutoff,
            ReadingRow.device_id.in_(_user_device_ids(user_id)),
        )
    )
    return int(result.scalar_one())


async def count_alerts_before(
    db: AsyncSession, user_id: str, cutoff: datetime.datetime
) -> int:
    """Count the user's in-app alerts strictly older than *cutoff*."""
    result = await _execute(
        db,
        select(func.count())
        .select_from(AlertRow)
        .where(
            AlertRow.created_at < cutoff,
            AlertRow.device_id.in_(_user_device_ids(user_id)),
        )
    )
    return int(result.scalar_one())


async def count_notification_logs_before(
    db: AsyncSession, user_id: str, cutoff: datetime.datetime
) -> int:
    """Count the user's notification log rows strictly older than *cutoff*."""
    result = await _execute(
        db,
        select(func.count())
        .select_from(NotificationLogRow)
        .where(
            NotificationLogRow.sent_at < cutoff,
            NotificationLogRow.user_id == user_id,
        )
    )
    return int(result.scalar_one())
