"""
SQLAlchemy ORM models for the engine's storage collaborator.

Tables:
- devices: power stations registered by users.
- device_readings: append-only normalized readings (raw quota kept verbatim).
- retention_settings: one row per user, cadence and retention preferences.
- notification_settings: one row per user, alert thresholds.
- notification_logs: one row per notification attempt; the durable state
  store for alert suppression.
- alert_claims: one row per alert key, reserved before each send so that
  concurrent evaluations cannot both notify.
- alerts: in-app alert feed owned by the dashboard; cleaned by retention.

All timestamps are stored in UTC and returned timezone-aware, also on
SQLite which has no native timezone support.

CHANGELOG:
- 2026-03-13: Add alert_claims (STORY-117)
- 2026-03-11: Add high-temperature threshold columns (STORY-115)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

import datetime
import uuid
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Double,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class UTCDateTime(TypeDecorator):
    """DateTime that always binds UTC and always loads timezone-aware values."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(
        self, value: datetime.datetime | None, dialect: Any
    ) -> datetime.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not accepted; pass a UTC-aware value")
        return value.astimezone(datetime.UTC)

    def process_result_value(
        self, value: datetime.datetime | None, dialect: Any
    ) -> datetime.datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=datetime.UTC)
        return value.astimezone(datetime.UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all engine ORM models."""

    pass


class DeviceRow(Base):
    """A power station registered by a user."""

    __tablename__ = "devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    serial_number: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return f"DeviceRow(id={self.id!r}, serial_number={self.serial_number!r})"


class ReadingRow(Base):
    """One normalized reading of a device (append-only)."""

    __tablename__ = "device_readings"
    __table_args__ = (
        Index("ix_device_readings_device_recorded", "device_id", "recorded_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False
    )
    battery_level_pct: Mapped[float | None] = mapped_column(Double, nullable=True)
    input_watts: Mapped[float] = mapped_column(Double, nullable=False)
    ac_input_watts: Mapped[float] = mapped_column(Double, nullable=False)
    dc_input_watts: Mapped[float] = mapped_column(Double, nullable=False)
    charging_type: Mapped[float | None] = mapped_column(Double, nullable=True)
    output_watts: Mapped[float] = mapped_column(Double, nullable=False)
    ac_output_watts: Mapped[float] = mapped_column(Double, nullable=False)
    dc_output_watts: Mapped[float] = mapped_column(Double, nullable=False)
    usb_output_watts: Mapped[float] = mapped_column(Double, nullable=False)
    remaining_time_min: Mapped[float | None] = mapped_column(Double, nullable=True)
    temperature_c: Mapped[float | None] = mapped_column(Double, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    raw_quota: Mapped[dict] = mapped_column(JSON, nullable=False)
    recorded_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)

    def __repr__(self) -> str:
        return (
            f"ReadingRow(device_id={self.device_id!r}, "
            f"recorded_at={self.recorded_at!r}, status={self.status!r})"
        )


class RetentionSettingRow(Base):
    """Per-user collection cadence and retention window."""

    __tablename__ = "retention_settings"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    retention_period_days: Mapped[int] = mapped_column(Integer, nullable=False, default=90)
    auto_cleanup_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    collection_interval_minutes: Mapped[int] = mapped_column(
        Integer, nullable=False, default=5
    )
    last_collection_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )
    last_cleanup_at: Mapped[datetime.datetime | None] = mapped_column(
        UTCDateTime, nullable=True
    )


class NotificationSettingRow(Base):
    """Per-user alert thresholds and delivery switches."""

    __tablename__ = "notification_settings"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    low_battery_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    low_battery_threshold_pct: Mapped[float] = mapped_column(
        Double, nullable=False, default=20.0
    )
    power_overload_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    power_threshold_watts: Mapped[float] = mapped_column(
        Double, nullable=False, default=2000.0
    )
    device_offline_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    high_temperature_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    high_temperature_threshold_c: Mapped[float] = mapped_column(
        Double, nullable=False, default=45.0
    )
    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class NotificationLogRow(Base):
    """One notification attempt (sent or failed) for a (user, device, kind)."""

    __tablename__ = "notification_logs"
    __table_args__ = (
        Index("ix_notification_logs_key_sent", "user_id", "device_id", "kind", "sent_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    device_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    email: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject: Mapped[str | None] = mapped_column(Text, nullable=True)
    message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)


class AlertClaimRow(Base):
    """Reservation of one (user, device, kind) key until its window ends.

    Claimed with a conditional UPDATE or a primary-key INSERT before a send,
    so only one evaluation per window wins even across processes.
    """

    __tablename__ = "alert_claims"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    device_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    kind: Mapped[str] = mapped_column(String(32), primary_key=True)
    claimed_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
    claimed_until: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)


class AlertRow(Base):
    """In-app alert feed entry shown by the dashboard."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("devices.id", ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime.datetime] = mapped_column(UTCDateTime, nullable=False)
