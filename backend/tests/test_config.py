"""
Test suite for settings and logging helpers.
"""

from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError

from orderflow.core.config import Settings
from orderflow.core.logging import (
    add_correlation,
    bind_order_context,
    clear_context,
    get_request_id,
    log_performance,
    set_actor_id,
    set_request_id,
)


# ============================================================================
# Settings Tests
# ============================================================================


class TestSettings:
    def test_async_database_url(self) -> None:
        settings = Settings(database_url="postgresql://u:p@db:5432/orders")

        assert settings.async_database_url == "postgresql+asyncpg://u:p@db:5432/orders"

    def test_async_url_kept_when_driver_given(self) -> None:
        settings = Settings(database_url="postgresql+asyncpg://u:p@db/orders")

        assert settings.async_database_url == "postgresql+asyncpg://u:p@db/orders"

    def test_rejects_non_postgres_url(self) -> None:
        with pytest.raises(ValidationError):
            Settings(database_url="mysql://db/orders")

    def test_rejects_non_redis_url(self) -> None:
        with pytest.raises(ValidationError):
            Settings(redis_url="http://cache:6379")

    def test_phase_lists_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("APP_EARLY_PHASES", " ALMOX_SSM , purchases ")

        settings = Settings()

        assert settings.early_phases == ["almox_ssm", "purchases"]

    def test_unknown_phase_is_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Settings(time_sensitive_phases=["warp_drive"])

    def test_lifecycle_defaults(self) -> None:
        settings = Settings()

        assert settings.autosave_quiet_window_seconds == 1.0
        assert settings.autosave_max_text_length == 2000
        assert settings.default_sla_days == 10
        assert settings.time_sensitive_phases == ["order_generation"]
        assert settings.early_phases == ["almox_ssm", "order_generation", "purchases"]


# ============================================================================
# Logging Tests
# ============================================================================


class TestCorrelation:
    def teardown_method(self) -> None:
        clear_context()

    def test_blank_request_id_is_generated(self) -> None:
        request_id = set_request_id("  ")

        assert len(request_id) == 36
        assert get_request_id() == request_id

    def test_context_values_are_added(self) -> None:
        set_request_id("req-1")
        set_actor_id("alice")
        bind_order_context("order-1")

        event = add_correlation(MagicMock(), "info", {"event": "saved"})

        assert event == {"event": "saved", "request_id": "req-1", "actor_id": "alice", "order_id": "order-1"}

    def test_explicit_order_id_wins(self) -> None:
        bind_order_context("order-1")

        event = add_correlation(MagicMock(), "info", {"event": "saved", "order_id": "order-2"})

        assert event["order_id"] == "order-2"

    def test_clear_context(self) -> None:
        set_request_id("req-1")
        set_actor_id("alice")

        clear_context()

        assert add_correlation(MagicMock(), "info", {}) == {}


class TestLogPerformance:
    def test_completion_is_logged(self) -> None:
        logger = MagicMock()

        with log_performance(logger, "board", phase="purchases"):
            pass

        kwargs = logger.info.call_args.kwargs
        assert kwargs["operation"] == "board"
        assert kwargs["phase"] == "purchases"
        logger.error.assert_not_called()

    def test_failure_is_logged_and_reraised(self) -> None:
        logger = MagicMock()

        with pytest.raises(KeyError):
            with log_performance(logger, "board"):
                raise KeyError("status")

        assert logger.error.call_args.kwargs["error_type"] == "KeyError"
        logger.info.assert_not_called()
