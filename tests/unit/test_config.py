"""
Unit tests for the settings module.
"""

import pytest
from pydantic import ValidationError

from shared.config import (
    ComposerSettings,
    DrainerSettings,
    LogLevel,
    QueueSettings,
    ReviewSettings,
    Settings,
)
from shared.config.settings import PostgresSettings


class TestPolicySettings:
    """Tests for pipeline policy settings."""

    def test_review_defaults(self) -> None:
        """Test default review policy values."""
        review = ReviewSettings()

        assert review.auto_approve_confidence == 0.90
        assert review.grace_period_hours == 24.0
        assert review.sla_critical_hours < review.sla_low_hours

    def test_review_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that review policy is tunable through the environment."""
        monkeypatch.setenv("REVIEW_AUTO_APPROVE_CONFIDENCE", "0.8")
        monkeypatch.setenv("REVIEW_GRACE_PERIOD_HOURS", "12")

        review = ReviewSettings()

        assert review.auto_approve_confidence == 0.8
        assert review.grace_period_hours == 12.0

    def test_confidence_threshold_bounded(self) -> None:
        """Test that the threshold must lie in [0, 1]."""
        with pytest.raises(ValidationError):
            ReviewSettings(auto_approve_confidence=1.5)

    def test_composer_blocklist_parsing(self) -> None:
        """Test that the blocklist string becomes a set of domains."""
        composer = ComposerSettings(blocklisted_domains=" test, heartbeat ,,synthetic")

        assert composer.blocklist == frozenset({"test", "heartbeat", "synthetic"})

    def test_queue_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test queue settings load with the QUEUE_ prefix."""
        monkeypatch.setenv("QUEUE_MAX_ATTEMPTS", "5")

        assert QueueSettings().max_attempts == 5

    def test_review_sweep_interval(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test the drainer's review sweep cadence default and override."""
        assert DrainerSettings().review_sweep_interval_seconds == 300.0

        monkeypatch.setenv("DRAINER_REVIEW_SWEEP_INTERVAL_SECONDS", "60")

        assert DrainerSettings().review_sweep_interval_seconds == 60.0


class TestSettings:
    """Tests for the main settings object."""

    def test_testing_environment(self) -> None:
        """Test that the test run is detected as the testing environment."""
        settings = Settings()

        assert settings.is_testing
        assert not settings.is_production

    def test_log_level_uppercased(self) -> None:
        """Test that lowercase log levels are accepted."""
        assert Settings(log_level="debug").log_level == LogLevel.DEBUG

    def test_postgres_async_url(self) -> None:
        """Test the asyncpg connection URL."""
        postgres = PostgresSettings(host="db", port=5433, user="u", password="p", db="rules")

        assert postgres.async_url == "postgresql+asyncpg://u:p@db:5433/rules"
