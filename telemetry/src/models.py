"""
Pydantic models for readings, devices, user settings, and round results.

Defines the canonical Reading that represents one normalized telemetry
snapshot of a portable power station, plus the small value types passed
between the scheduler, collector, alert evaluator, and retention sweeper.

CHANGELOG:
- 2026-03-11: Add high-temperature threshold fields (STORY-115)
- 2026-03-05: Add RoundResult / DeviceResult (STORY-107)
- 2026-03-03: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

ReadingStatus = Literal["charging", "discharging", "full", "low", "standby"]
AlertKind = Literal["low_battery", "overload", "offline", "high_temperature"]
NotificationStatus = Literal["sent", "failed"]


class Reading(BaseModel):
    """A single normalized telemetry reading from a power station.

    All power values are in watts after scaling. ``device_id`` and
    ``recorded_at`` are injected by the caller, keeping the normalizer a
    pure function. Instances are immutable.

    Attributes:
        device_id: Storage identifier of the device.
        battery_level_pct: State of charge (0-100), or None if unreported.
        input_watts: Headline total input power.
        ac_input_watts: AC (grid) input channel.
        dc_input_watts: DC (solar/car) input channel.
        charging_type: Vendor charging-type code, or None.
        output_watts: Headline total output power.
        ac_output_watts: AC inverter output channel.
        dc_output_watts: 12V DC output channel.
        usb_output_watts: Sum of all USB-A/USB-C output ports.
        remaining_time_min: Signed minutes; positive = until full,
            negative = until empty. None when unknown.
        temperature_c: Battery temperature in Celsius, or None.
        status: Derived state, see :mod:`telemetry.src.normalizer`.
        raw_quota: The vendor snapshot, stored verbatim.
        recorded_at: Timestamp supplied by the caller.
    """

    model_config = ConfigDict(frozen=True, from_attributes=True)

    device_id: str
    battery_level_pct: float | None
    input_watts: float
    ac_input_watts: float
    dc_input_watts: float
    charging_type: float | None
    output_watts: float
    ac_output_watts: float
    dc_output_watts: float
    usb_output_watts: float
    remaining_time_min: float | None
    temperature_c: float | None
    status: ReadingStatus
    raw_quota: dict[str, Any]
    recorded_at: datetime

    @property
    def combined_output_watts(self) -> float:
        """AC + DC + USB output, the figure compared against overload limits."""
        return self.ac_output_watts + self.dc_output_watts + self.usb_output_watts


class Device(BaseModel):
    """A registered power station owned by one user."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    serial_number: str
    name: str | None = None
    type: str = ""
    is_active: bool = True

    @property
    def display_name(self) -> str:
        """Name shown in notifications; falls back to the serial number."""
        return self.name or self.serial_number


class RetentionSettings(BaseModel):
    """Per-user collection cadence and data retention preferences."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    retention_period_days: int = 90
    auto_cleanup_enabled: bool = True
    collection_interval_minutes: int = 5
    last_collection_at: datetime | None = None
    last_cleanup_at: datetime | None = None


class NotificationSettings(BaseModel):
    """Per-user alert thresholds and channel switches."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str
    email: str | None = None
    low_battery_enabled: bool = True
    low_battery_threshold_pct: float = 20.0
    power_overload_enabled: bool = False
    power_threshold_watts: float = 2000.0
    device_offline_enabled: bool = True
    high_temperature_enabled: bool = False
    high_temperature_threshold_c: float = 45.0
    email_enabled: bool = True


class AlertEvent(BaseModel):
    """Transient alert produced by the evaluator; only its log row persists."""

    model_config = ConfigDict(frozen=True)

    device_id: str
    user_id: str
    kind: AlertKind
    current_value: float | None = None
    threshold: float | None = None
    occurred_at: datetime


class DueCheck(BaseModel):
    """Result of a scheduler gate check."""

    due: bool
    retry_after_ms: int | None = None


class DeviceResult(BaseModel):
    """Outcome of one device within a collection round."""

    device_id: str
    serial_number: str
    success: bool
    has_reading: bool = False
    error_type: str | None = None
    error: str | None = None


class RoundResult(BaseModel):
    """Aggregated outcome of one collection round for one user."""

    user_id: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    no_data: int = 0
    skipped: bool = False
    retry_after_ms: int | None = None
    error: str | None = None
    results: list[DeviceResult] = Field(default_factory=list)


class SendResult(BaseModel):
    """Outcome reported by a notifier."""

    success: bool
    message_id: str | None = None
    error: str | None = None


class EvaluationSummary(BaseModel):
    """Counts from one alert evaluation pass."""

    evaluated: int = 0
    notified: int = 0
    failed: int = 0
    suppressed: int = 0
    skipped: int = 0
    events: list[AlertEvent] = Field(default_factory=list)


class SweepResult(BaseModel):
    """Rows deleted for one user by the retention sweeper."""

    user_id: str
    cutoff: datetime
    readings_deleted: int = 0
    alerts_deleted: int = 0
    notifications_deleted: int = 0
    error: str | None = None
