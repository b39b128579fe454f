"""
Alert evaluation with log-backed suppression.

Each ``(user_id, device_id, kind)`` key runs its own small state machine::

    QUIET --threshold crossed--> TRIGGERED --send attempted--> SUPPRESSED(until)
      ^                                                              |
      +---------------------------- now >= until --------------------+

No state is held in memory between invocations. ``SUPPRESSED`` means the
notification log holds an entry for the key with ``sent_at > now - window``;
``until`` is that entry's ``sent_at + window``. Failed sends are logged too
and suppress just like successful ones; the error is kept in the log row.

The check-send-log sequence for one key runs under a per-key
``asyncio.Lock`` within one process. Across processes (a CLI round next to
the trigger API) the key is also reserved in storage with
``claim_alert_key`` before the send, so only one evaluation per window can
notify. Locks are dropped once no task holds or waits for them.

A storage or delivery failure for one key is counted as failed and never
aborts the other keys.

Kinds:
- low_battery: battery <= low_battery_threshold_pct
- overload: AC + DC + USB output > power_threshold_watts
- high_temperature: temperature > high_temperature_threshold_c
- offline: an active device with earlier readings but none in the lookback
  window

CHANGELOG:
- 2026-03-13: Storage claim per key; prune idle locks; isolate per-key
  failures (STORY-117)
- 2026-03-11: Add high_temperature kind (STORY-115)
- 2026-03-08: Per-key locks around check-send-log (STORY-110)
- 2026-03-07: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections import Counter
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, NamedTuple

from telemetry.src.errors import EngineError, NotificationError
from telemetry.src.models import (
    AlertEvent,
    AlertKind,
    Device,
    EvaluationSummary,
    NotificationSettings,
    Reading,
    SendResult,
)
from telemetry.src.notifier import render
from telemetry.src.services import storage

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from telemetry.src.notifier import Notifier

logger = logging.getLogger(__name__)

DEFAULT_SUPPRESSION_WINDOW = timedelta(minutes=30)
DEFAULT_OFFLINE_LOOKBACK = timedelta(minutes=60)


class AlertState(enum.Enum):
    QUIET = "quiet"
    TRIGGERED = "triggered"
    SUPPRESSED = "suppressed"


class AlertKey(NamedTuple):
    user_id: str
    device_id: str
    kind: AlertKind


@dataclass(frozen=True, slots=True)
class KeyState:
    """Derived state of one alert key at a point in time."""

    state: AlertState
    until: datetime | None = None


def derive_state(
    *,
    last_sent_at: datetime | None,
    now: datetime,
    window: timedelta,
    breached: bool,
) -> KeyState:
    """Map the newest log entry and the current condition to a state."""
    if last_sent_at is not None:
        until = last_sent_at + window
        if now < until:
            return KeyState(AlertState.SUPPRESSED, until)
    return KeyState(AlertState.TRIGGERED if breached else AlertState.QUIET)


def check_reading(
    device: Device,
    reading: Reading,
    settings: NotificationSettings,
    now: datetime,
) -> list[AlertEvent]:
    """Return the threshold breaches of one reading under *settings*."""
    events: list[AlertEvent] = []

    def emit(kind: AlertKind, value: float, threshold: float) -> None:
        events.append(
            AlertEvent(
                device_id=device.id,
                user_id=device.user_id,
                kind=kind,
                current_value=value,
                threshold=threshold,
                occurred_at=now,
            )
        )

    battery = reading.battery_level_pct
    if (
        settings.low_battery_enabled
        and battery is not None
        and battery <= settings.low_battery_threshold_pct
    ):
        emit("low_battery", battery, settings.low_battery_threshold_pct)

    output = reading.combined_output_watts
    if settings.power_overload_enabled and output > settings.power_threshold_watts:
        emit("overload", output, settings.power_threshold_watts)

    temperature = reading.temperature_c
    if (
        settings.high_temperature_enabled
        and temperature is not None
        and temperature > settings.high_temperature_threshold_c
    ):
        emit("high_temperature", temperature, settings.high_temperature_threshold_c)

    return events


class AlertEvaluator:
    """Evaluates thresholds and sends deduplicated notifications.

    Args:
        session_factory: Factory for storage sessions.
        notifier: Delivery channel.
        suppression_window: Minimum gap between two notifications per key.
        offline_lookback: A device without readings in this window is offline.
        dashboard_url: Link included in notification payloads.
    """

    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        notifier: Notifier,
        suppression_window: timedelta = DEFAULT_SUPPRESSION_WINDOW,
        offline_lookback: timedelta = DEFAULT_OFFLINE_LOOKBACK,
        dashboard_url: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier
        self._window = suppression_window
        self._lookback = offline_lookback
        self._dashboard_url = dashboard_url
        self._locks: dict[AlertKey, asyncio.Lock] = {}
        self._lock_users: Counter[AlertKey] = Counter()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def state_for(
        self,
        user_id: str,
        device_id: str,
        kind: AlertKind,
        now: datetime,
        breached: bool = False,
    ) -> KeyState:
        """Derive the current state of one key from the notification log."""
        async with self._session_factory() as db:
            last = await storage.last_notification_at(
                db, user_id=user_id, device_id=device_id, kind=kind
            )
        return derive_state(last_sent_at=last, now=now, window=self._window, breached=breached)

    async def evaluate_all(self, now: datetime) -> EvaluationSummary:
        """Evaluate every active device and notify on new breaches."""
        since = now - self._lookback
        async with self._session_factory() as db:
            latest = await storage.latest_readings(db, since)
            offline = await storage.find_offline_devices(db, since)
            settings = await storage.list_notification_settings(db)
            owners = {d.user_id for d, _ in latest} | {d.user_id for d in offline}
            for user_id in sorted(owners - settings.keys()):
                settings[user_id] = await storage.get_notification_settings(db, user_id)

        devices: dict[str, Device] = {}
        events: list[AlertEvent] = []
        for device, reading in latest:
            devices[device.id] = device
            events.extend(check_reading(device, reading, settings[device.user_id], now))
        for device in offline:
            devices[device.id] = device
            if settings[device.user_id].device_offline_enabled:
                events.append(
                    AlertEvent(
                        device_id=device.id,
                        user_id=device.user_id,
                        kind="offline",
                        occurred_at=now,
                    )
                )

        results = await asyncio.gather(
            *(
                self._process(event, devices[event.device_id], settings[event.user_id], now)
                for event in events
            ),
            return_exceptions=True,
        )
        outcomes: list[str] = []
        for event, result in zip(events, results, strict=True):
            if isinstance(result, BaseException):
                logger.error(
                    "Unexpected error processing %s for device %s",
                    event.kind,
                    devices[event.device_id].serial_number,
                    exc_info=result,
                )
                result = "failed"
            outcomes.append(result)

        summary = EvaluationSummary(
            evaluated=len(devices),
            notified=outcomes.count("sent"),
            failed=outcomes.count("failed"),
            suppressed=outcomes.count("suppressed"),
            skipped=outcomes.count("skipped"),
            events=events,
        )
        logger.info(
            "Alert check: evaluated=%d notified=%d failed=%d suppressed=%d skipped=%d",
            summary.evaluated,
            summary.notified,
            summary.failed,
            summary.suppressed,
            summary.skipped,
        )
        return summary

    # ------------------------------------------------------------------
    # Per-key pipeline
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _key_lock(self, key: AlertKey) -> AsyncIterator[None]:
        """Hold the in-process lock for *key*; forget it once nobody needs it."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._lock_users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _process(
        self,
        event: AlertEvent,
        device: Device,
        settings: NotificationSettings,
        now: datetime,
    ) -> str:
        """Check, send, and log one event; returns the outcome label."""
        if not settings.email_enabled or not settings.email:
            logger.debug(
                "E-mail disabled for user %s, not notifying %s", event.user_id, event.kind
            )
            return "skipped"

        key = AlertKey(event.user_id, event.device_id, event.kind)
        async with self._key_lock(key):
            try:
                state = await self.state_for(*key, now, breached=True)
                if state.state is AlertState.SUPPRESSED:
                    logger.debug("%s for device %s suppressed until %s", event.kind,
                                 device.serial_number, state.until)
                    return "suppressed"
                async with self._session_factory() as db:
                    claimed = await storage.claim_alert_key(
                        db,
                        user_id=event.user_id,
                        device_id=event.device_id,
                        kind=event.kind,
                        now=now,
                        until=now + self._window,
                    )
            except EngineError as exc:
                logger.error("Dedup check for %s on device %s failed: %s",
                             event.kind, device.serial_number, exc)
                return "failed"
            if not claimed:
                logger.debug("%s for device %s claimed by another evaluation",
                             event.kind, device.serial_number)
                return "suppressed"

            payload = self._payload(event, device)
            try:
                result = await self._notifier.send(settings.email, event.kind, payload)
            except NotificationError as exc:
                result = SendResult(success=False, error=str(exc))

            status = "sent" if result.success else "failed"
            if not result.success:
                logger.warning(
                    "%s notification for device %s failed: %s",
                    event.kind,
                    device.serial_number,
                    result.error,
                )

            try:
                async with self._session_factory() as db:
                    await storage.insert_notification_log(
                        db,
                        user_id=event.user_id,
                        device_id=event.device_id,
                        kind=event.kind,
                        status=status,
                        sent_at=now,
                        email=settings.email,
                        subject=render(event.kind, payload)[0],
                        message_id=result.message_id,
                        error_message=result.error,
                    )
            except EngineError as exc:
                logger.error("Could not log %s notification for device %s: %s",
                             event.kind, device.serial_number, exc)
                return "failed"
        return status

    def _payload(self, event: AlertEvent, device: Device) -> dict[str, Any]:
        return {
            "device_name": device.display_name,
            "serial_number": device.serial_number,
            "current_value": event.current_value,
            "threshold": event.threshold,
            "occurred_at": event.occurred_at.isoformat(),
            "dashboard_url": self._dashboard_url,
        }
