"""
Collection rounds: fetch, normalize, and persist readings per device.

One round covers one user's active devices. Each device runs the pipeline
``client.get_quota -> normalize -> storage.insert_reading`` as its own task.
Device-cloud calls share one ``asyncio.Semaphore`` sized to the vendor's
per-account rate limit; persistence happens outside the limiter so a slow
write never holds up another device's fetch.

Failure isolation:

- TransportError / HTTPError / APIError: that device fails, siblings continue.
- PersistenceError: the fetch succeeded but the device is reported failed.
- Normalizer returned None: counted as ``no_data``, not as a failure.
- AuthError: fatal, re-raised after in-flight tasks finish; nothing is
  stamped.

After a round with at least one success, ``last_collection_at`` is set to the
round's ``now`` (not the reading time). Completed per-device writes are never
rolled back.

CHANGELOG:
- 2026-03-09: Run users concurrently in run_due_rounds (STORY-112)
- 2026-03-05: Bounded concurrency with per-task error capture (STORY-107)
- 2026-03-04: Initial creation (STORY-106)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import TYPE_CHECKING

from telemetry.src.errors import AuthError, EngineError, PersistenceError
from telemetry.src.models import Device, DeviceResult, RoundResult
from telemetry.src.normalizer import normalize
from telemetry.src.services import storage

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from telemetry.src.client import SignedRequestClient
    from telemetry.src.scheduler import CollectionScheduler

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENCY = 4


class Collector:
    """Orchestrates collection rounds.

    Args:
        client: Signed device-cloud client.
        session_factory: Factory for storage sessions.
        scheduler: Gate consulted by :meth:`collect_user`.
        max_concurrency: Maximum concurrent device-cloud calls.
    """

    def __init__(
        self,
        *,
        client: SignedRequestClient,
        session_factory: async_sessionmaker[AsyncSession],
        scheduler: CollectionScheduler,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
    ) -> None:
        self._client = client
        self._session_factory = session_factory
        self._scheduler = scheduler
        self._limiter = asyncio.Semaphore(max_concurrency)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def collect_round(
        self,
        user_id: str,
        devices: Sequence[Device],
        now: datetime,
    ) -> RoundResult:
        """Collect one reading per device and return the round summary.

        Raises:
            AuthError: Credentials were rejected; the round is abandoned.
        """
        outcomes = await asyncio.gather(
            *(self._collect_device(device, now) for device in devices),
            return_exceptions=True,
        )

        results: list[DeviceResult] = []
        auth_error: AuthError | None = None
        for device, outcome in zip(devices, outcomes, strict=True):
            if isinstance(outcome, AuthError):
                auth_error = auth_error or outcome
                continue
            if isinstance(outcome, BaseException):
                logger.error(
                    "Unexpected error collecting device %s",
                    device.serial_number,
                    exc_info=outcome,
                )
                outcome = DeviceResult(
                    device_id=device.id,
                    serial_number=device.serial_number,
                    success=False,
                    error_type=type(outcome).__name__,
                    error=str(outcome),
                )
            results.append(outcome)

        if auth_error is not None:
            logger.error("Collection round for user %s aborted: %s", user_id, auth_error)
            raise auth_error

        summary = RoundResult(
            user_id=user_id,
            attempted=len(results),
            succeeded=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
            no_data=sum(1 for r in results if r.success and not r.has_reading),
            results=results,
        )

        if summary.succeeded > 0:
            async with self._session_factory() as db:
                await storage.mark_collected(db, user_id, now)

        logger.info(
            "Collection round for user %s: attempted=%d succeeded=%d failed=%d no_data=%d",
            user_id,
            summary.attempted,
            summary.succeeded,
            summary.failed,
            summary.no_data,
        )
        return summary

    async def collect_user(
        self,
        user_id: str,
        now: datetime,
        force: bool = False,
    ) -> RoundResult:
        """Run a round for *user_id* if the scheduler says it is due."""
        check = await self._scheduler.is_due(user_id, now, force)
        if not check.due:
            return RoundResult(
                user_id=user_id,
                skipped=True,
                retry_after_ms=check.retry_after_ms,
            )

        async with self._session_factory() as db:
            devices = await storage.list_active_devices(db, user_id)
        return await self.collect_round(user_id, devices, now)

    async def run_due_rounds(self, now: datetime, force: bool = False) -> list[RoundResult]:
        """Run due rounds for every known user concurrently.

        Users with retention settings or active devices are considered.
        A failing user never aborts the others, except on AuthError.
        """
        async with self._session_factory() as db:
            user_ids = {s.user_id for s in await storage.list_retention_settings(db)}
            user_ids.update(await storage.list_active_user_ids(db))
        ordered = sorted(user_ids)

        outcomes = await asyncio.gather(
            *(self.collect_user(user_id, now, force) for user_id in ordered),
            return_exceptions=True,
        )

        rounds: list[RoundResult] = []
        for user_id, outcome in zip(ordered, outcomes, strict=True):
            if isinstance(outcome, AuthError):
                raise outcome
            if isinstance(outcome, BaseException):
                logger.error(
                    "Collection for user %s failed", user_id, exc_info=outcome
                )
                rounds.append(RoundResult(user_id=user_id, error=str(outcome)))
                continue
            rounds.append(outcome)
        return rounds

    # ------------------------------------------------------------------
    # Per-device pipeline
    # ------------------------------------------------------------------

    async def _collect_device(self, device: Device, now: datetime) -> DeviceResult:
        """Fetch, normalize, and persist one device; never raises EngineError
        other than AuthError."""
        try:
            async with self._limiter:
                raw = await self._client.get_quota(device.serial_number)
        except AuthError:
            raise
        except EngineError as exc:
            logger.warning(
                "Fetch failed for device %s: %s: %s",
                device.serial_number,
                type(exc).__name__,
                exc,
            )
            return DeviceResult(
                device_id=device.id,
                serial_number=device.serial_number,
                success=False,
                error_type=type(exc).__name__,
                error=str(exc),
            )

        reading = normalize(raw, device_id=device.id, now=now)
        if reading is None:
            logger.info("No quota data for device %s", device.serial_number)
            return DeviceResult(
                device_id=device.id,
                serial_number=device.serial_number,
                success=True,
                has_reading=False,
            )

        try:
            async with self._session_factory() as db:
                await storage.insert_reading(db, reading)
        except PersistenceError as exc:
            logger.warning("Could not save reading for device %s: %s", device.serial_number, exc)
            return DeviceResult(
                device_id=device.id,
                serial_number=device.serial_number,
                success=False,
                error_type=type(exc).__name__,
                error=str(exc),
            )

        logger.debug(
            "Saved reading for device %s: battery=%s%% in=%.0fW out=%.0fW status=%s",
            device.serial_number,
            reading.battery_level_pct,
            reading.input_watts,
            reading.output_watts,
            reading.status,
        )
        return DeviceResult(
            device_id=device.id,
            serial_number=device.serial_number,
            success=True,
            has_reading=True,
        )
