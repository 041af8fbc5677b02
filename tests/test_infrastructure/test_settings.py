"""Tests for settings validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from intent_exchange.config import Settings


class TestSettings:
    def test_sqlite_url_detected(self) -> None:
        settings = Settings(_env_file=None, database_url="sqlite+aiosqlite:///x.db")
        assert settings.uses_sqlite
        assert settings.is_development

    def test_backoff_window_must_be_ordered(self) -> None:
        with pytest.raises(ValidationError, match="backoff"):
            Settings(
                _env_file=None,
                gateway_backoff_min_seconds=5,
                gateway_backoff_max_seconds=1,
            )

    def test_fee_must_stay_below_whole_amount(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, platform_fee_bps=10_000)

    def test_at_least_one_gateway_attempt(self) -> None:
        with pytest.raises(ValidationError):
            Settings(_env_file=None, gateway_max_attempts=0)
