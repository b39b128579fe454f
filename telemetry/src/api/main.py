"""
FastAPI application for the telemetry engine trigger API.

An external scheduler (cron, a hosting platform's scheduled jobs) calls the
routes in :mod:`telemetry.src.api.cron` instead of the CLI. Settings are
loaded and validated at startup; the API refuses to start without a
``CRON_SECRET``. The engine components are built once and stored on
app.state for route handlers.

Run with::

    uvicorn telemetry.src.api.main:app

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)

TODO:
- None
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from telemetry.src.api.cron import router as cron_router
from telemetry.src.api.health import router as health_router
from telemetry.src.auth.bearer import CronSecretAuth
from telemetry.src.config import EngineSettings
from telemetry.src.main import build_components, log_config_summary
from telemetry.src.notifier import Notifier

logger = logging.getLogger(__name__)


def create_app(
    settings: EngineSettings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    notifier: Notifier | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Pre-built settings; loaded from the environment at
            startup when omitted.
        transport: Optional httpx transport for the device-cloud client.
        notifier: Optional delivery channel replacing the e-mail notifier.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        resolved = settings if settings is not None else EngineSettings()  # type: ignore[call-arg]
        if not resolved.cron_secret:
            raise RuntimeError("CRON_SECRET must be set to serve the trigger API")
        log_config_summary(resolved)

        components = await build_components(resolved, transport=transport, notifier=notifier)
        app.state.components = components
        app.state.auth = CronSecretAuth(resolved.cron_secret)
        logger.info("Telemetry trigger API ready")
        yield
        await components.aclose()
        logger.info("Telemetry trigger API shutting down")

    app = FastAPI(
        title="Telemetry Engine",
        description="Trigger API for power-station telemetry collection and alerting.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(cron_router)
    return app


app = create_app()
