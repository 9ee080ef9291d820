"""
Logging Module
==============

Structured logging using structlog with JSON output for production
and colored console output for development.

Usage:
    from shared.logging import get_logger, setup_logging

    # Setup at process start
    setup_logging()

    # Get logger for a module
    logger = get_logger(__name__)

    # Log with context
    logger.info("release_published", version="1.4.2", rule_count=3)
    logger.critical("evidence_integrity_violation", pointer_id=pointer_id)
"""

from shared.logging.logger import bind_context, clear_context, get_logger, setup_logging


__all__ = [
    "bind_context",
    "clear_context",
    "get_logger",
    "setup_logging",
]
