"""
Settings Module
===============

Pydantic-based configuration with environment variable loading.

Policy values (confidence threshold, grace period, SLA hours) are tunable
configuration, not invariants of the pipeline.

Version: 0.1.0
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LLMProvider(str, Enum):
    """Supported LLM providers."""

    CLAUDE = "claude"
    OPENAI = "openai"


class PostgresSettings(BaseSettings):
    """PostgreSQL database configuration."""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = "localhost"
    port: int = 5432
    user: str = "rulepipe"
    password: SecretStr = SecretStr("rulepipe_dev_password")
    db: str = "rulepipe"

    @property
    def async_url(self) -> str:
        """Generate async SQLAlchemy connection URL."""
        pwd = self.password.get_secret_value()
        return f"postgresql+asyncpg://{self.user}:{pwd}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis configuration (rate-limit counters, job locks)."""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = "localhost"
    port: int = 6379
    password: SecretStr = SecretStr("rulepipe_redis_password")
    db: int = 0

    @property
    def url(self) -> str:
        """Generate Redis connection URL."""
        pwd = self.password.get_secret_value()
        return f"redis://:{pwd}@{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka event streaming configuration."""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = "localhost:9092"
    security_protocol: str = "PLAINTEXT"


class ClaudeSettings(BaseSettings):
    """Anthropic Claude API configuration."""

    model_config = SettingsConfigDict(env_prefix="CLAUDE_")

    api_key: SecretStr = Field(
        default=SecretStr(""),
        alias="ANTHROPIC_API_KEY",
    )
    model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096


class OpenAISettings(BaseSettings):
    """OpenAI API configuration."""

    model_config = SettingsConfigDict(env_prefix="OPENAI_")

    api_key: SecretStr = SecretStr("")
    model: str = "gpt-4o"
    max_tokens: int = 4096


class LLMSettings(BaseSettings):
    """LLM provider configuration for the reasoning step."""

    model_config = SettingsConfigDict(env_prefix="LLM_")

    provider: LLMProvider = LLMProvider.CLAUDE
    temperature: float = 0.1
    max_retries: int = 3
    timeout_seconds: int = 300

    # Provider-specific settings
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)


class ReviewSettings(BaseSettings):
    """Tiered review gate policy."""

    model_config = SettingsConfigDict(env_prefix="REVIEW_")

    auto_approve_confidence: float = Field(default=0.90, ge=0.0, le=1.0)
    grace_period_hours: float = 24.0

    # SLA per review priority, critical shortest
    sla_critical_hours: float = 4.0
    sla_high_hours: float = 24.0
    sla_normal_hours: float = 48.0
    sla_low_hours: float = 168.0


class ComposerSettings(BaseSettings):
    """Rule composer configuration."""

    model_config = SettingsConfigDict(env_prefix="COMPOSER_")

    # Synthetic/test domains that must never become rules
    blocklisted_domains: str = "test,synthetic,heartbeat,e2e-canary"
    timeout_seconds: float = 600.0
    enforce_field_schema: bool = True

    @property
    def blocklist(self) -> frozenset[str]:
        """Parse blocklisted domains into a set."""
        return frozenset(d.strip() for d in self.blocklisted_domains.split(",") if d.strip())


class QueueSettings(BaseSettings):
    """Job orchestration defaults, shared by every stage queue."""

    model_config = SettingsConfigDict(env_prefix="QUEUE_")

    rate_limit_jobs: int = 10
    rate_limit_window_seconds: float = 60.0
    concurrency: int = 2
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 300.0
    lock_duration_seconds: float = 900.0
    job_timeout_seconds: float = 120.0
    dead_letter_alert_threshold: int = 10


class DrainerSettings(BaseSettings):
    """Continuous drainer backoff and review sweep cadence."""

    model_config = SettingsConfigDict(env_prefix="DRAINER_")

    min_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    multiplier: float = 2.0
    review_sweep_interval_seconds: float = 300.0


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables with sensible defaults.
    Use the global `settings` singleton or call `get_settings()`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # General
    environment: Environment = Environment.DEVELOPMENT
    debug: bool = False
    log_level: LogLevel = LogLevel.INFO
    service_name: str = "rule-pipeline"

    # Project paths
    project_root: Path = Field(default_factory=lambda: Path(__file__).parent.parent.parent)

    # Data stores
    postgres: PostgresSettings = Field(default_factory=PostgresSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)

    # LLM configuration
    llm: LLMSettings = Field(default_factory=LLMSettings)

    # Pipeline policy
    review: ReviewSettings = Field(default_factory=ReviewSettings)
    composer: ComposerSettings = Field(default_factory=ComposerSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    drainer: DrainerSettings = Field(default_factory=DrainerSettings)

    @field_validator("log_level", mode="before")
    @classmethod
    def uppercase_log_level(cls, v: str | LogLevel) -> LogLevel:
        """Ensure log level is uppercase."""
        if isinstance(v, str):
            return LogLevel(v.upper())
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.environment == Environment.TESTING


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Returns:
        Settings: Application settings singleton.
    """
    return Settings()
