"""
Entry points for the telemetry engine.

The engine runs per invocation: an external trigger (cron, a systemd timer,
or the trigger API in :mod:`telemetry.src.api.main`) calls one of

- run_collection_round(): gate each user, collect due devices, persist.
- run_alert_check(): evaluate thresholds and send deduplicated alerts.
- run_retention_sweep(): delete data older than each user's retention.

All three take a :class:`Components` bundle built once from
:class:`~telemetry.src.config.EngineSettings` by :func:`build_components`.
There is no module-level client or session; everything is passed in.

CLI::

    telemetry-engine collect [--force]   # collection round, then alert check
    telemetry-engine alerts
    telemetry-engine sweep

Each command prints a JSON summary on stdout. Logs go to stderr as JSON.

CHANGELOG:
- 2026-03-10: Add sweep command (STORY-113)
- 2026-03-09: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from telemetry.src.alerts import AlertEvaluator
from telemetry.src.client import SignedRequestClient
from telemetry.src.collector import Collector
from telemetry.src.config import EngineSettings
from telemetry.src.db.session import create_engine, create_session_factory, init_models
from telemetry.src.errors import AuthError
from telemetry.src.models import EvaluationSummary, RoundResult, SweepResult
from telemetry.src.notifier import EmailNotifier
from telemetry.src.retention import RetentionSweeper
from telemetry.src.scheduler import CollectionScheduler

if TYPE_CHECKING:
    import httpx
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from telemetry.src.notifier import Notifier

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def configure_logging(level: int = logging.INFO) -> None:
    """Install the JSON formatter on the root logger, writing to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def _masked(secret: str) -> str:
    """Fingerprint of a secret that is safe to log."""
    if not secret:
        return "<unset>"
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}***"


def log_config_summary(settings: EngineSettings) -> None:
    """Log the effective configuration with secrets masked."""
    logger.info(
        "Telemetry engine config: base_url=%s, access_key=%s, secret_key=%s, "
        "database_url=%s, request_timeout_s=%s, max_concurrent_requests=%s, "
        "suppression_window_min=%s, offline_lookback_min=%s, resend_api_key=%s, "
        "cron_secret=%s",
        settings.ecoflow_base_url,
        _masked(settings.ecoflow_access_key),
        _masked(settings.ecoflow_secret_key),
        settings.database_url.split("@")[-1],
        settings.request_timeout_s,
        settings.max_concurrent_requests,
        settings.suppression_window_min,
        settings.offline_lookback_min,
        _masked(settings.resend_api_key),
        _masked(settings.cron_secret),
    )


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class Components:
    """Everything one invocation needs, built from settings."""

    settings: EngineSettings
    db_engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    client: SignedRequestClient
    collector: Collector
    evaluator: AlertEvaluator
    sweeper: RetentionSweeper

    async def aclose(self) -> None:
        await self.db_engine.dispose()


async def build_components(
    settings: EngineSettings,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    notifier: Notifier | None = None,
    create_tables: bool = True,
) -> Components:
    """Construct the engine from settings.

    Args:
        settings: Validated settings.
        transport: Optional httpx transport for the device-cloud client.
        notifier: Delivery channel; defaults to :class:`EmailNotifier`.
        create_tables: Create missing tables on the database.

    Raises:
        AuthError: If the device-cloud credentials are empty.
    """
    client = SignedRequestClient(
        settings.credentials,
        base_url=settings.ecoflow_base_url,
        timeout_s=settings.request_timeout_s,
        transport=transport,
    )
    db_engine = create_engine(settings.database_url)
    if create_tables:
        await init_models(db_engine)
    session_factory = create_session_factory(db_engine)

    if notifier is None:
        notifier = EmailNotifier(
            api_key=settings.resend_api_key,
            from_address=settings.alert_from_address,
        )

    return Components(
        settings=settings,
        db_engine=db_engine,
        session_factory=session_factory,
        client=client,
        collector=Collector(
            client=client,
            session_factory=session_factory,
            scheduler=CollectionScheduler(session_factory),
            max_concurrency=settings.max_concurrent_requests,
        ),
        evaluator=AlertEvaluator(
            session_factory=session_factory,
            notifier=notifier,
            suppression_window=timedelta(minutes=settings.suppression_window_min),
            offline_lookback=timedelta(minutes=settings.offline_lookback_min),
            dashboard_url=settings.dashboard_url,
        ),
        sweeper=RetentionSweeper(session_factory),
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(tz=UTC)


async def run_collection_round(
    components: Components,
    *,
    force: bool = False,
    now: datetime | None = None,
) -> list[RoundResult]:
    """Collect every due user once."""
    return await components.collector.run_due_rounds(now or utcnow(), force)


async def run_alert_check(
    components: Components,
    *,
    now: datetime | None = None,
) -> EvaluationSummary:
    """Evaluate the latest readings against every user's thresholds."""
    return await components.evaluator.evaluate_all(now or utcnow())


async def run_retention_sweep(
    components: Components,
    *,
    now: datetime | None = None,
) -> list[SweepResult]:
    """Apply every user's retention window."""
    return await components.sweeper.sweep(now or utcnow())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="telemetry-engine",
        description="Power-station telemetry collection and alerting.",
    )
    parser.add_argument("--debug", action="store_true", help="log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    collect = sub.add_parser("collect", help="run a collection round, then an alert check")
    collect.add_argument(
        "--force", action="store_true", help="ignore each user's collection interval"
    )
    collect.add_argument(
        "--no-alerts", action="store_true", help="skip the alert check after collecting"
    )
    sub.add_parser("alerts", help="evaluate alert thresholds")
    sub.add_parser("sweep", help="delete data older than each user's retention window")
    return parser


async def _run_command(args: argparse.Namespace, settings: EngineSettings) -> dict[str, Any]:
    components = await build_components(settings)
    try:
        if args.command == "collect":
            rounds = await run_collection_round(components, force=args.force)
            output: dict[str, Any] = {"rounds": [r.model_dump(mode="json") for r in rounds]}
            if not args.no_alerts:
                summary = await run_alert_check(components)
                output["alerts"] = summary.model_dump(mode="json", exclude={"events"})
            return output
        if args.command == "alerts":
            summary = await run_alert_check(components)
            return {"alerts": summary.model_dump(mode="json", exclude={"events"})}
        sweeps = await run_retention_sweep(components)
        return {"sweeps": [s.model_dump(mode="json") for s in sweeps]}
    finally:
        await components.aclose()


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint; returns the process exit code."""
    args = _build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.debug else logging.INFO)

    try:
        settings = EngineSettings()  # type: ignore[call-arg]
    except ValidationError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2
    log_config_summary(settings)

    try:
        output = asyncio.run(_run_command(args, settings))
    except AuthError as exc:
        logger.error("Aborted: %s", exc)
        return 1

    print(json.dumps(output, indent=2, ensure_ascii=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
