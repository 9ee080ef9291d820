"""
Unit tests for the logging module.
"""

import structlog

from shared.logging import bind_context, clear_context, get_logger
from shared.logging.logger import _censor_secrets, _service_context


class TestProcessors:
    """Tests for custom structlog processors."""

    def test_censor_secrets(self) -> None:
        """Test that secret-looking keys are redacted, nested ones too."""
        event = {
            "event": "llm_call",
            "api_key": "sk-live",
            "provider": {"name": "claude", "auth_token": "abc"},
            "model": "claude-sonnet",
        }

        censored = _censor_secrets(None, "info", event)

        assert censored["api_key"] == "***REDACTED***"
        assert censored["provider"] == {"name": "claude", "auth_token": "***REDACTED***"}
        assert censored["model"] == "claude-sonnet"

    def test_service_context(self) -> None:
        """Test that the service name is added without overriding an explicit one."""
        processor = _service_context("rule-pipeline")

        assert processor(None, "info", {"event": "x"})["service"] == "rule-pipeline"
        assert processor(None, "info", {"event": "x", "service": "other"})["service"] == "other"


class TestContext:
    """Tests for context binding."""

    def test_bind_and_clear(self) -> None:
        """Test that bound job context is visible until cleared."""
        bind_context(queue="compose", job_id="job-1")
        assert structlog.contextvars.get_contextvars() == {"queue": "compose", "job_id": "job-1"}

        clear_context()
        assert structlog.contextvars.get_contextvars() == {}

    def test_get_logger(self) -> None:
        """Test that get_logger returns a usable logger."""
        logger = get_logger("tests.logging")

        assert hasattr(logger, "info")
        assert hasattr(logger, "critical")
