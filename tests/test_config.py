"""Tests for pydantic-settings configuration and structlog setup."""

import json
import logging
from decimal import Decimal
from pathlib import Path
from uuid import UUID

import pytest
import structlog
from pydantic import ValidationError

from brokerage_ledger.config import Environment, LogLevel, Settings, get_settings
from brokerage_ledger.logging_config import LogContext, build_processors, configure_logging


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.balance_tolerance == Decimal("0.01")
        assert settings.ingestion_window_size == 30
        assert settings.fix_acceptance_threshold == 0.95
        assert settings.reconciliation_max_iterations == 3
        assert settings.default_institution == "fidelity"
        assert settings.environment == Environment.DEVELOPMENT

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BKL_INGESTION_WINDOW_SIZE", "12")
        monkeypatch.setenv("BKL_BALANCE_TOLERANCE", "0.05")
        monkeypatch.setenv("BKL_SQLITE_PATH", "/tmp/ledger.db")
        monkeypatch.setenv("BKL_ENVIRONMENT", "testing")

        settings = Settings(_env_file=None)

        assert settings.ingestion_window_size == 12
        assert settings.balance_tolerance == Decimal("0.05")
        assert settings.sqlite_path == Path("/tmp/ledger.db")
        assert settings.environment == Environment.TESTING

    @pytest.mark.parametrize(
        "overrides",
        [
            {"balance_tolerance": Decimal("0")},
            {"fix_acceptance_threshold": 1.5},
            {"ingestion_window_size": 0},
            {"collaborator_timeout": 0},
        ],
    )
    def test_invalid_values_are_rejected(self, overrides):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **overrides)

    def test_get_settings_is_cached(self):
        get_settings.cache_clear()
        try:
            assert get_settings() is get_settings()
        finally:
            get_settings.cache_clear()


class TestLogging:
    def test_configure_json_logging(self, tmp_path):
        log_file = tmp_path / "logs" / "ledger.log"
        settings = Settings(
            _env_file=None, log_format="json", log_level=LogLevel.DEBUG, log_file=log_file
        )
        root = logging.getLogger()
        handlers = list(root.handlers)

        try:
            configure_logging(settings)

            assert log_file.parent.exists()
            assert logging.getLogger("httpx").level == logging.INFO
        finally:
            for handler in root.handlers[:]:
                if handler not in handlers:
                    root.removeHandler(handler)
                    handler.close()

    def test_log_context_binds_and_clears(self):
        with LogContext(session_id="abc", cursor=3):
            bound = structlog.contextvars.get_contextvars()
            assert bound["session_id"] == "abc"
            assert bound["cursor"] == 3

        assert "session_id" not in structlog.contextvars.get_contextvars()

    def test_json_output_renders_ids_and_amounts_as_strings(self):
        stdlib_logger = logging.getLogger("brokerage_ledger.services.reconciliation")
        event: object = {
            "event": "fix_applied",
            "fix_id": UUID(int=1),
            "balance_change": Decimal("10000.00"),
            "rows": [1, 2],
        }

        for processor in build_processors(json_output=True):
            event = processor(stdlib_logger, "info", event)

        payload = json.loads(event)
        assert payload["fix_id"] == "00000000-0000-0000-0000-000000000001"
        assert payload["balance_change"] == "10000.00"
        assert payload["rows"] == [1, 2]
        assert payload["level"] == "info"
        assert payload["logger"] == "brokerage_ledger.services.reconciliation"
