"""
Pure normalizer that converts an EcoFlow quota snapshot into a Reading.

Takes the mapping returned by the ``quota/all`` endpoint (or a legacy
``{"quotaMap": {...}}`` wrapper), applies the scale rule from
:mod:`telemetry.src.quota`, aggregates channel power into headline totals,
derives the remaining time and a status, and returns a frozen
:class:`~telemetry.src.models.Reading`.

Headline values use tiered fallback, first non-zero source wins:

- output: ``pd.wattsOutSum`` -> ``pd.outputWatts`` -> AC + DC + USB channels
- input:  ``pd.wattsInSum``  -> AC + DC channels

after which each headline is raised so it is never below what its channels
prove (the vendor sometimes reports only one channel in the total). Channel
fields are always recorded on their own so nothing is lost when the headline
comes from a fallback source.

This is a pure function: no I/O, no clock. ``device_id`` and ``now`` are
injected by the caller.

CHANGELOG:
- 2026-03-08: Prefer EMS remaining-time fields over rounded pd.remainTime (STORY-109)
- 2026-03-05: Raise headline output to channel sum when vendor total lags (STORY-106)
- 2026-03-03: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any

from telemetry.src import quota
from telemetry.src.models import Reading, ReadingStatus

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Status thresholds
# ---------------------------------------------------------------------------

NOISE_FLOOR_W: float = 10.0
"""Net power (either direction) below this is treated as idle."""

FULL_BATTERY_PCT: float = 95.0
"""Battery at or above this level reports ``full`` when idle."""

LOW_BATTERY_PCT: float = 10.0
"""Battery below this level reports ``low`` when idle."""

OUTPUT_ROUNDING_SLACK_W: float = 1.0
"""Tolerated gap between a vendor total and the sum of its rounded channels."""


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _quota_map(raw_quota: Any) -> Mapping[str, Any] | None:
    """Return the metric mapping inside *raw_quota*, or None when absent."""
    if not isinstance(raw_quota, Mapping) or not raw_quota:
        return None
    if "quotaMap" in raw_quota:
        inner = raw_quota["quotaMap"]
        return inner if isinstance(inner, Mapping) and inner else None
    return raw_quota


def _first_nonzero(*values: float | None) -> float | None:
    for value in values:
        if value:
            return value
    return None


def _headline_output(data: Mapping[str, Any], ac: float, dc: float, usb: float) -> float:
    channel_sum = ac + dc + usb
    reported = _first_nonzero(
        quota.read(data, quota.PD_WATTS_OUT_SUM),
        quota.read(data, quota.PD_OUTPUT),
    )
    floor = max(ac, dc, usb, channel_sum - OUTPUT_ROUNDING_SLACK_W)
    if reported is None:
        return max(channel_sum, floor)
    if reported < floor:
        logger.debug(
            "Reported output %.1fW below channel floor %.1fW; using channel sum",
            reported,
            floor,
        )
        return max(channel_sum, floor)
    return reported


def _headline_input(data: Mapping[str, Any], ac: float, dc: float) -> float:
    channel_sum = ac + dc
    reported = quota.read(data, quota.PD_WATTS_IN_SUM) or 0.0
    return max(reported, channel_sum)


def _battery_level(data: Mapping[str, Any]) -> float | None:
    level = quota.read(data, quota.BMS_SOC)
    if level is None:
        level = quota.read(data, quota.PD_SOC)
    return level


def derive_status(
    input_watts: float,
    output_watts: float,
    battery_level_pct: float | None,
) -> ReadingStatus:
    """Derive the reading status from net power flow and battery level."""
    net = input_watts - output_watts
    if net > NOISE_FLOOR_W:
        return "charging"
    if -net > NOISE_FLOOR_W:
        return "discharging"
    if battery_level_pct is not None and battery_level_pct >= FULL_BATTERY_PCT:
        return "full"
    if battery_level_pct is not None and battery_level_pct < LOW_BATTERY_PCT:
        return "low"
    return "standby"


def _remaining_time(data: Mapping[str, Any], status: ReadingStatus) -> float | None:
    """Signed minutes: positive until full, negative until empty."""
    chg_remain = quota.read(data, quota.EMS_CHG_REMAIN)
    dsg_remain = quota.read(data, quota.EMS_DSG_REMAIN)
    pd_remain = quota.read(data, quota.PD_REMAIN)

    if status == "charging" and chg_remain and chg_remain > 0:
        return chg_remain
    if status == "discharging" and dsg_remain and dsg_remain > 0:
        return -dsg_remain
    if pd_remain:
        return pd_remain
    return quota.read(data, quota.BMS_REMAIN)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def normalize(
    raw_quota: Mapping[str, Any] | None,
    *,
    device_id: str,
    now: datetime,
) -> Reading | None:
    """Convert a raw quota snapshot into a Reading.

    This is a **pure function**: it performs no I/O, has no side effects,
    and does not access the system clock.

    Args:
        raw_quota: Quota snapshot as returned by the device cloud.
        device_id: Device identifier to embed in the reading.
        now: Timestamp to embed as ``recorded_at``.

    Returns:
        A frozen :class:`Reading`, or ``None`` when the snapshot is empty,
        has no quota map, or contains none of the recognized metrics.
    """
    data = _quota_map(raw_quota)
    if data is None:
        return None

    known, _passthrough = quota.split_known(data)
    if not known:
        logger.debug("Quota for device=%s has no recognized metrics", device_id)
        return None

    ac_in = quota.read_or_zero(data, quota.INV_INPUT)
    dc_in = quota.read_or_zero(data, quota.MPPT_INPUT)
    ac_out = quota.read_or_zero(data, quota.INV_OUTPUT)
    dc_out = quota.read_or_zero(data, quota.PD_CAR)
    usb_out = sum(quota.read_or_zero(data, key) for key in quota.USB_OUTPUT_KEYS)

    input_watts = _headline_input(data, ac_in, dc_in)
    output_watts = _headline_output(data, ac_out, dc_out, usb_out)
    battery = _battery_level(data)
    status = derive_status(input_watts, output_watts, battery)

    return Reading(
        device_id=device_id,
        battery_level_pct=battery,
        input_watts=input_watts,
        ac_input_watts=ac_in,
        dc_input_watts=dc_in,
        charging_type=quota.read(data, quota.MPPT_CHG_TYPE),
        output_watts=output_watts,
        ac_output_watts=ac_out,
        dc_output_watts=dc_out,
        usb_output_watts=usb_out,
        remaining_time_min=_remaining_time(data, status),
        temperature_c=quota.read(data, quota.BMS_TEMP),
        status=status,
        raw_quota=dict(data),
        recorded_at=now,
    )
