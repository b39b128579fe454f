"""
Trigger endpoints for the external scheduler.

All routes require the cron secret (see :mod:`telemetry.src.auth.bearer`).

Routes:
- POST /v1/cron/collect: collection round for due users, then an alert check.
  ``force=true`` ignores collection intervals; ``alerts=false`` skips the
  alert check.
- POST /v1/cron/alerts: alert check only.
- POST /v1/cron/cleanup: retention sweep.
- GET /v1/cleanup/preview/{user_id}: counts a sweep would delete now.

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)

TODO:
- None
"""

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from telemetry.src.api.deps import CronGuard, EngineComponents
from telemetry.src.errors import AuthError
from telemetry.src.main import (
    run_alert_check,
    run_collection_round,
    run_retention_sweep,
    utcnow,
)
from telemetry.src.models import EvaluationSummary, RoundResult, SweepResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["cron"])


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class CollectResponse(BaseModel):
    """Result of a collect trigger."""

    rounds: list[RoundResult]
    alerts: EvaluationSummary | None = None


class CleanupResponse(BaseModel):
    """Result of a cleanup trigger."""

    sweeps: list[SweepResult]


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("/cron/collect", response_model=CollectResponse)
async def collect(
    components: EngineComponents,
    _: CronGuard,
    force: bool = False,
    alerts: bool = True,
) -> CollectResponse:
    """Run a collection round and, unless disabled, an alert check.

    Raises:
        HTTPException: 502 if the device cloud rejected the credentials.
    """
    try:
        rounds = await run_collection_round(components, force=force)
    except AuthError as exc:
        logger.error("Collection aborted: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    summary = await run_alert_check(components) if alerts else None
    return CollectResponse(rounds=rounds, alerts=summary)


@router.post("/cron/alerts", response_model=EvaluationSummary)
async def alerts(components: EngineComponents, _: CronGuard) -> EvaluationSummary:
    """Evaluate alert thresholds for every user."""
    return await run_alert_check(components)


@router.post("/cron/cleanup", response_model=CleanupResponse)
async def cleanup(components: EngineComponents, _: CronGuard) -> CleanupResponse:
    """Apply every user's retention window."""
    return CleanupResponse(sweeps=await run_retention_sweep(components))


@router.get("/cleanup/preview/{user_id}", response_model=SweepResult)
async def cleanup_preview(
    user_id: str,
    components: EngineComponents,
    _: CronGuard,
) -> SweepResult:
    """Count what a sweep would delete for *user_id* right now."""
    return await components.sweeper.preview(user_id, utcnow())
