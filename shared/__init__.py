"""
Rule Pipeline Shared Library
============================

Common configuration, logging, models and client abstractions used by the
rule pipeline service.

Modules:
    - config: Configuration management with Pydantic Settings
    - logging: Structured logging with structlog
    - models: Shared Pydantic models (facts, rules, releases, reviews)
    - database: PostgreSQL, Redis and Kafka clients
    - llm: LLM provider abstraction (Claude, OpenAI)

Version: 0.1.0
"""

__version__ = "0.1.0"

from shared.config import settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "setup_logging",
    "__version__",
]
