"""
LLM Provider Base
=================

Abstract provider and message/response models used by the reasoning
function. Providers are swappable; the composer only ever sees text.

Version: 0.1.0
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from shared.config import LLMProvider as LLMProviderEnum
from shared.config import settings
from shared.logging import get_logger

logger = get_logger(__name__)


class MessageRole(str, Enum):
    """Message role in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LLMMessage(BaseModel):
    """A message in the conversation."""

    role: MessageRole | Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        role = self.role.value if isinstance(self.role, MessageRole) else self.role
        return {"role": role, "content": self.content}


class LLMUsage(BaseModel):
    """Token usage and estimated cost (USD)."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0

    @classmethod
    def priced(cls, prompt_tokens: int, completion_tokens: int, pricing: dict[str, float]) -> "LLMUsage":
        """Usage with cost from per-1M-token ``input``/``output`` prices."""
        cost = (prompt_tokens * pricing["input"] + completion_tokens * pricing["output"]) / 1_000_000
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
            total_cost=cost,
        )


class LLMResponse(BaseModel):
    """Response from an LLM provider."""

    content: str = Field(..., description="Generated text content")
    model: str = Field(..., description="Model used for generation")
    provider: str = Field(..., description="Provider name")
    usage: LLMUsage = Field(default_factory=LLMUsage)
    finish_reason: str | None = None
    latency_ms: float = 0.0


class LLMProvider(ABC):
    """Strategy interface for LLM backends."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @property
    @abstractmethod
    def model(self) -> str: ...

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion for the given messages.

        Args:
            messages: Conversation messages (system message first, if any)
            temperature: Sampling temperature (default from settings)
            max_tokens: Maximum tokens to generate (default from settings)

        Returns:
            LLMResponse with generated content
        """
        ...


_provider: LLMProvider | None = None


def get_llm_provider() -> LLMProvider:
    """
    Get the configured provider, creating it on first use.

    Uses ``settings.llm.provider``.
    """
    global _provider

    if _provider is None:
        provider_type = settings.llm.provider
        if provider_type == LLMProviderEnum.CLAUDE:
            from shared.llm.claude import ClaudeProvider

            _provider = ClaudeProvider()
        elif provider_type == LLMProviderEnum.OPENAI:
            from shared.llm.openai import OpenAIProvider

            _provider = OpenAIProvider()
        else:
            raise ValueError(f"Unknown LLM provider: {provider_type}")

        logger.info("llm_provider_initialized", provider=_provider.name, model=_provider.model)

    return _provider


def set_llm_provider(provider: LLMProvider) -> None:
    """Install a custom provider (tests, alternative backends)."""
    global _provider
    _provider = provider
    logger.info("llm_provider_set", provider=provider.name, model=provider.model)


def reset_llm_provider() -> None:
    """Drop the cached provider so the next call re-reads settings."""
    global _provider
    _provider = None
