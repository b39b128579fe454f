"""
EcoFlow quota key map -- single source of truth for recognized metrics.

A quota snapshot is a bag of vendor-named metrics. Each entry is either a
scaled pair ``{"val": <int>, "scale": <int>}`` or, on the ``quota/all``
endpoint, a bare number (or numeric string). Only the keys declared here are
consumed by the normalizer; every other key is preserved verbatim in the
"unknown passthrough" bucket so future firmware fields survive storage.

Extraction rule: ``scale > 0 -> val / scale``, otherwise ``val``.

References:
    - EcoFlow IoT Developer Platform, quota/all response for DELTA/RIVER.

CHANGELOG:
- 2026-03-04: Accept bare-number and numeric-string entries (STORY-104)
- 2026-03-03: Initial creation (STORY-103)

TODO:
- None
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

# ---------------------------------------------------------------------------
# Data definitions
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class QuotaKey:
    """Definition of a single recognized quota metric.

    Attributes:
        name: Dotted vendor metric name, used as the dict key.
        unit: Engineering unit after scaling (e.g. ``"W"``, ``"%"``).
        description: Free-text description of the metric.
    """

    name: str
    unit: str
    description: str = ""


# ---------------------------------------------------------------------------
# Battery management
# ---------------------------------------------------------------------------

BMS_SOC = QuotaKey("bms_bmsStatus.soc", "%", "Battery state of charge")
PD_SOC = QuotaKey("pd.soc", "%", "State of charge as reported by the PD board")
BMS_TEMP = QuotaKey("bms_bmsStatus.temp", "C", "Battery pack temperature")
BMS_REMAIN = QuotaKey("bms_bmsStatus.remainTime", "min", "BMS remaining time")
EMS_CHG_REMAIN = QuotaKey(
    "bms_emsStatus.chgRemainTime", "min", "Minutes until fully charged"
)
EMS_DSG_REMAIN = QuotaKey(
    "bms_emsStatus.dsgRemainTime", "min", "Minutes until fully discharged"
)
PD_REMAIN = QuotaKey(
    "pd.remainTime",
    "min",
    "Firmware remaining time, positive when charging, negative when discharging",
)

# ---------------------------------------------------------------------------
# Input channels
# ---------------------------------------------------------------------------

PD_WATTS_IN_SUM = QuotaKey("pd.wattsInSum", "W", "Reported total input power")
INV_INPUT = QuotaKey("inv.inputWatts", "W", "AC (grid) input power")
MPPT_INPUT = QuotaKey("mppt.inWatts", "W", "DC (solar/car) input power")
MPPT_CHG_TYPE = QuotaKey("mppt.chgType", "", "Vendor charging-type code")

# ---------------------------------------------------------------------------
# Output channels
# ---------------------------------------------------------------------------

PD_WATTS_OUT_SUM = QuotaKey("pd.wattsOutSum", "W", "Reported total output power")
PD_OUTPUT = QuotaKey("pd.outputWatts", "W", "Alternate total output power")
INV_OUTPUT = QuotaKey("inv.outputWatts", "W", "AC inverter output power")
PD_CAR = QuotaKey("pd.carWatts", "W", "12V car-port (DC) output power")

USB_OUTPUT_KEYS: tuple[QuotaKey, ...] = (
    QuotaKey("pd.usb1Watts", "W", "USB-A port 1"),
    QuotaKey("pd.usb2Watts", "W", "USB-A port 2"),
    QuotaKey("pd.typec1Watts", "W", "USB-C port 1"),
    QuotaKey("pd.typec2Watts", "W", "USB-C port 2"),
    QuotaKey("pd.qcUsb1Watts", "W", "Fast-charge USB port 1"),
    QuotaKey("pd.qcUsb2Watts", "W", "Fast-charge USB port 2"),
)

# ---------------------------------------------------------------------------
# Combined lookup
# ---------------------------------------------------------------------------

ALL_KEYS: dict[str, QuotaKey] = {
    key.name: key
    for key in (
        BMS_SOC,
        PD_SOC,
        BMS_TEMP,
        BMS_REMAIN,
        EMS_CHG_REMAIN,
        EMS_DSG_REMAIN,
        PD_REMAIN,
        PD_WATTS_IN_SUM,
        INV_INPUT,
        MPPT_INPUT,
        MPPT_CHG_TYPE,
        PD_WATTS_OUT_SUM,
        PD_OUTPUT,
        INV_OUTPUT,
        PD_CAR,
        *USB_OUTPUT_KEYS,
    )
}
"""Maps metric name -> QuotaKey for every metric the normalizer consumes."""


# ---------------------------------------------------------------------------
# Value extraction
# ---------------------------------------------------------------------------


def _as_number(value: Any) -> float | None:
    """Coerce a raw JSON scalar to a finite float, or ``None``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        num = float(value)
    elif isinstance(value, str):
        try:
            num = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return num if math.isfinite(num) else None


def scaled_value(entry: Any) -> float | None:
    """Apply the scale rule to one quota entry.

    Args:
        entry: ``{"val": n, "scale": s}``, a bare number, or a numeric string.

    Returns:
        ``val / scale`` when ``scale > 0``, ``val`` otherwise, or ``None``
        when the entry carries no usable number.
    """
    if isinstance(entry, Mapping):
        val = _as_number(entry.get("val"))
        if val is None:
            return None
        scale = _as_number(entry.get("scale", 0)) or 0.0
        return val / scale if scale > 0 else val
    return _as_number(entry)


def read(raw: Mapping[str, Any], key: QuotaKey) -> float | None:
    """Return the scaled value of *key* in *raw*, or ``None`` when absent."""
    if key.name not in raw:
        return None
    return scaled_value(raw[key.name])


def read_or_zero(raw: Mapping[str, Any], key: QuotaKey) -> float:
    """Return the scaled value of *key*, defaulting to ``0.0`` for aggregates."""
    value = read(raw, key)
    return 0.0 if value is None else value


def split_known(raw: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    """Partition a snapshot into recognized and passthrough entries.

    Returns:
        ``(known, unknown)`` dicts. Together they hold every input key
        exactly once; values are not modified.
    """
    known: dict[str, Any] = {}
    unknown: dict[str, Any] = {}
    for name, entry in raw.items():
        (known if name in ALL_KEYS else unknown)[name] = entry
    return known, unknown
