"""
Configuration Module
====================

Centralized configuration management using Pydantic Settings.
Loads from environment variables with type validation and defaults.

Usage:
    from shared.config import settings

    print(settings.environment)
    print(settings.review.auto_approve_confidence)
"""

from shared.config.settings import (
    ComposerSettings,
    DrainerSettings,
    Environment,
    LLMProvider,
    LogLevel,
    QueueSettings,
    ReviewSettings,
    Settings,
    get_settings,
)


# Global settings instance (singleton)
settings = get_settings()

__all__ = [
    "Settings",
    "get_settings",
    "settings",
    "Environment",
    "LogLevel",
    "LLMProvider",
    "ReviewSettings",
    "ComposerSettings",
    "QueueSettings",
    "DrainerSettings",
]
