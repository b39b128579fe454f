"""
Tests for engine wiring, logging setup and the CLI.

CHANGELOG:
- 2026-03-10: Add sweep command tests (STORY-113)
- 2026-03-09: Initial creation (STORY-112)

TODO:
- None
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from telemetry.src.alerts import AlertEvaluator
from telemetry.src.config import EngineSettings
from telemetry.src.main import (
    JsonFormatter,
    _build_parser,
    _masked,
    build_components,
    main,
    run_alert_check,
    run_retention_sweep,
)
from telemetry.src.notifier import EmailNotifier


class TestJsonFormatter:
    """Log line formatting."""

    def test_emits_one_json_object(self) -> None:
        record = logging.LogRecord(
            "telemetry.src.collector", logging.INFO, __file__, 1, "saved %d", (3,), None
        )

        entry = json.loads(JsonFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "telemetry.src.collector"
        assert entry["msg"] == "saved 3"
        assert "ts" in entry
        assert "exception" not in entry

    def test_includes_exception(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )

        entry = json.loads(JsonFormatter().format(record))

        assert "RuntimeError: boom" in entry["exception"]


class TestMasked:
    """Secret fingerprints for the config summary."""

    @pytest.mark.parametrize(
        ("secret", "expected"),
        [("", "<unset>"), ("short", "***"), ("WIbFEKre0s6sLnh4", "WIbF***")],
    )
    def test_masking(self, secret: str, expected: str) -> None:
        assert _masked(secret) == expected


class TestBuildComponents:
    """Wiring from settings."""

    @pytest.mark.asyncio
    async def test_defaults_to_email_notifier(self, tmp_path: Path) -> None:
        settings = EngineSettings(
            ecoflow_access_key="a",
            ecoflow_secret_key="s",
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'wiring.db'}",
        )

        components = await build_components(settings)
        try:
            assert isinstance(components.evaluator, AlertEvaluator)
            assert isinstance(components.evaluator._notifier, EmailNotifier)
            assert components.settings is settings
        finally:
            await components.aclose()

    @pytest.mark.asyncio
    async def test_empty_database_runs_cleanly(self, tmp_path: Path) -> None:
        settings = EngineSettings(
            ecoflow_access_key="a",
            ecoflow_secret_key="s",
            database_url=f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}",
        )
        notifier = AsyncMock()

        components = await build_components(settings, notifier=notifier)
        try:
            summary = await run_alert_check(components)
            sweeps = await run_retention_sweep(components)
        finally:
            await components.aclose()

        assert summary.evaluated == 0
        assert sweeps == []
        notifier.send.assert_not_called()


class TestParser:
    """Command-line parsing."""

    def test_collect_flags(self) -> None:
        args = _build_parser().parse_args(["--debug", "collect", "--force", "--no-alerts"])

        assert args.debug is True
        assert args.command == "collect"
        assert args.force is True
        assert args.no_alerts is True

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            _build_parser().parse_args([])


class TestMain:
    """CLI entrypoint."""

    @pytest.fixture(autouse=True)
    def _keep_test_logging(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Leave pytest's log handlers in place."""
        monkeypatch.setattr("telemetry.src.main.configure_logging", lambda level: None)

    def test_missing_credentials_exit_code(self) -> None:
        assert main(["alerts"]) == 2

    def test_sweep_prints_summary(
        self,
        env_vars_required_only: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

        code = main(["sweep"])

        assert code == 0
        assert json.loads(capsys.readouterr().out) == {"sweeps": []}

    def test_alerts_prints_summary(
        self,
        env_vars_required_only: dict[str, str],
        monkeypatch: pytest.MonkeyPatch,
        tmp_path: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}")

        code = main(["alerts"])

        output = json.loads(capsys.readouterr().out)
        assert code == 0
        assert output["alerts"]["evaluated"] == 0
        assert "events" not in output["alerts"]
