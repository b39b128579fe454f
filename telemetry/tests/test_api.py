"""
Integration tests for the trigger API.

Runs the real application (lifespan included) against a SQLite file, with
the device cloud replaced by httpx.MockTransport and the notifier by a mock.

CHANGELOG:
- 2026-03-12: Initial creation (STORY-116)

TODO:
- None
"""

from __future__ import annotations

import asyncio
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from telemetry.src.api.main import create_app
from telemetry.src.config import EngineSettings
from telemetry.src.db.session import create_engine, create_session_factory, init_models
from telemetry.src.errors import AuthError
from telemetry.src.models import SendResult
from telemetry.src.services import storage

SECRET = "cron-secret-abc"
AUTH = {"Authorization": f"Bearer {SECRET}"}


def _settings(tmp_path: Path, cron_secret: str = SECRET) -> EngineSettings:
    return EngineSettings(
        ecoflow_access_key="access",
        ecoflow_secret_key="secret",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'api.db'}",
        cron_secret=cron_secret,
    )


def _seed_device(database_url: str) -> None:
    """Register one device for user-1 before the app starts."""

    async def _seed() -> None:
        engine = create_engine(database_url)
        await init_models(engine)
        async with create_session_factory(engine)() as db:
            await storage.add_device(
                db,
                user_id="user-1",
                serial_number="SN1",
                now=datetime.now(tz=UTC),
            )
            await storage.update_notification_settings(db, "user-1", email="owner@example.com")
        await engine.dispose()

    asyncio.run(_seed())


def _quota_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "code": "0",
            "message": "Success",
            "data": {"bms_bmsStatus.soc": 8, "inv.outputWatts": 120},
        },
    )


@pytest.fixture()
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.send = AsyncMock(return_value=SendResult(success=True, message_id="m-1"))
    return mock


@pytest.fixture()
def client(tmp_path: Path, notifier: AsyncMock) -> Generator[TestClient, None, None]:
    settings = _settings(tmp_path)
    _seed_device(settings.database_url)
    app = create_app(
        settings, transport=httpx.MockTransport(_quota_handler), notifier=notifier
    )
    with TestClient(app) as test_client:
        yield test_client


class TestStartup:
    """Lifespan validation."""

    def test_refuses_to_start_without_cron_secret(self, tmp_path: Path) -> None:
        app = create_app(_settings(tmp_path, cron_secret=""))

        with pytest.raises(RuntimeError, match="CRON_SECRET"), TestClient(app):
            pass

    def test_health_needs_no_auth(self, client: TestClient) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestCronRoutes:
    """Trigger endpoints."""

    @pytest.mark.parametrize(
        ("method", "path"),
        [
            ("post", "/v1/cron/collect"),
            ("post", "/v1/cron/alerts"),
            ("post", "/v1/cron/cleanup"),
            ("get", "/v1/cleanup/preview/user-1"),
        ],
    )
    def test_routes_require_secret(self, client: TestClient, method: str, path: str) -> None:
        response = getattr(client, method)(path)
        assert response.status_code == 401

    def test_collect_then_alert(self, client: TestClient, notifier: AsyncMock) -> None:
        response = client.post("/v1/cron/collect", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["rounds"][0]["user_id"] == "user-1"
        assert body["rounds"][0]["succeeded"] == 1
        assert body["alerts"]["notified"] == 1
        assert notifier.send.await_args.args[1] == "low_battery"

    def test_second_collect_is_skipped(self, client: TestClient) -> None:
        client.post("/v1/cron/collect?alerts=false", headers={"x-cron-secret": SECRET})

        response = client.post("/v1/cron/collect?alerts=false", headers=AUTH)

        body = response.json()
        assert body["rounds"][0]["skipped"] is True
        assert body["rounds"][0]["retry_after_ms"] > 0
        assert body["alerts"] is None

    def test_force_collect(self, client: TestClient) -> None:
        client.post("/v1/cron/collect?alerts=false", headers=AUTH)

        response = client.post("/v1/cron/collect?alerts=false&force=true", headers=AUTH)

        assert response.json()["rounds"][0]["succeeded"] == 1

    def test_auth_error_is_bad_gateway(self, client: TestClient) -> None:
        with patch(
            "telemetry.src.api.cron.run_collection_round",
            AsyncMock(side_effect=AuthError("credentials rejected")),
        ):
            response = client.post("/v1/cron/collect", headers=AUTH)

        assert response.status_code == 502

    def test_rejected_credentials_are_bad_gateway(
        self, tmp_path: Path, notifier: AsyncMock
    ) -> None:
        settings = _settings(tmp_path)
        _seed_device(settings.database_url)

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": "8513", "message": "accessKey is invalid"})

        app = create_app(settings, transport=httpx.MockTransport(handler), notifier=notifier)
        with TestClient(app) as test_client:
            response = test_client.post("/v1/cron/collect", headers=AUTH)

        assert response.status_code == 502
        assert "accessKey is invalid" in response.json()["detail"]
        notifier.send.assert_not_awaited()

    def test_cleanup(self, client: TestClient) -> None:
        client.post("/v1/cron/collect?alerts=false", headers=AUTH)

        response = client.post("/v1/cron/cleanup", headers=AUTH)

        assert response.status_code == 200
        assert response.json()["sweeps"][0]["user_id"] == "user-1"

    def test_cleanup_preview(self, client: TestClient) -> None:
        response = client.get("/v1/cleanup/preview/user-1", headers=AUTH)

        assert response.status_code == 200
        body = response.json()
        assert body["user_id"] == "user-1"
        assert body["readings_deleted"] == 0
