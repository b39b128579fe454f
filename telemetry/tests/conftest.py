"""
Shared test fixtures for the telemetry engine tests.

Provides environment isolation for EngineSettings, a fresh SQLite
database file per test, and small factories for devices and quota snapshots.

CHANGELOG:
- 2026-03-05: Add session_factory and device factory fixtures (STORY-107)
- 2026-03-02: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from telemetry.src.db.session import create_engine, create_session_factory, init_models
from telemetry.src.models import Device
from telemetry.src.services import storage

# All EngineSettings environment variable names, used for cleanup.
_ALL_ENGINE_ENV_VARS = (
    "ECOFLOW_ACCESS_KEY",
    "ECOFLOW_SECRET_KEY",
    "ECOFLOW_BASE_URL",
    "DATABASE_URL",
    "REQUEST_TIMEOUT_S",
    "MAX_CONCURRENT_REQUESTS",
    "SUPPRESSION_WINDOW_MIN",
    "OFFLINE_LOOKBACK_MIN",
    "RESEND_API_KEY",
    "ALERT_FROM_ADDRESS",
    "DASHBOARD_URL",
    "CRON_SECRET",
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
"""Fixed clock used across the suite."""


@pytest.fixture(autouse=True)
def _clean_engine_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all engine env vars and isolate from .env files before each test."""
    for var in _ALL_ENGINE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def env_vars_required_only(monkeypatch: pytest.MonkeyPatch) -> dict[str, str]:
    """Set only the required environment variables."""
    env = {
        "ECOFLOW_ACCESS_KEY": "Fp4SvIprYSDPXtYJidEtUAd1o",
        "ECOFLOW_SECRET_KEY": "WIbFEKre0s6sLnh4ei7SPUeYnptHG6V",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return env


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture()
async def session_factory(
    tmp_path: Path,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Fresh SQLite database file with all tables created.

    A file rather than :memory: so concurrent sessions get their own
    connections, as they would against a server database.
    """
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'telemetry-test.db'}")
    await init_models(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture()
def add_device(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[Device]]:
    """Factory registering a device; returns the stored Device."""

    async def _add(
        serial_number: str,
        user_id: str = "user-1",
        name: str | None = None,
        created_at: datetime = NOW,
    ) -> Device:
        async with session_factory() as db:
            return await storage.add_device(
                db,
                user_id=user_id,
                serial_number=serial_number,
                now=created_at,
                name=name,
            )

    return _add


def make_quota(
    soc: float = 85,
    ac_in: float = 0,
    ac_out: float = 0,
    usb: float = 0,
    temp: float = 25,
) -> dict[str, Any]:
    """Quota snapshot in the bare-number shape of the quota/all endpoint."""
    return {
        "bms_bmsStatus.soc": soc,
        "bms_bmsStatus.temp": temp,
        "inv.inputWatts": ac_in,
        "inv.outputWatts": ac_out,
        "pd.usb1Watts": usb,
        "pd.wattsOutSum": ac_out + usb,
        "pd.wattsInSum": ac_in,
    }


@pytest.fixture()
def quota_factory() -> Callable[..., dict[str, Any]]:
    return make_quota
