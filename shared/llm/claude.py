"""
Claude Provider
===============

Anthropic Claude implementation (primary reasoning backend).

Version: 0.1.0
"""

import time
from typing import Any

import anthropic
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import settings
from shared.llm.provider import LLMMessage, LLMProvider, LLMResponse, LLMUsage
from shared.logging import get_logger

logger = get_logger(__name__)

# Per 1M tokens
CLAUDE_PRICING = {
    "claude-sonnet-4-20250514": {"input": 3.00, "output": 15.00},
    "claude-opus-4-20250514": {"input": 15.00, "output": 75.00},
    "claude-3-5-haiku-20241022": {"input": 0.80, "output": 4.00},
}
DEFAULT_PRICING = {"input": 3.00, "output": 15.00}


class ClaudeProvider(LLMProvider):
    """
    Anthropic Claude provider.

    SDK-level retries are disabled; rate limits and connection errors are
    retried here with exponential backoff.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        self._api_key = api_key or settings.llm.claude.api_key.get_secret_value()
        self._model = model or settings.llm.claude.model
        self._max_tokens = settings.llm.claude.max_tokens

        if not self._api_key:
            raise ValueError("Anthropic API key not configured")

        self._client = anthropic.AsyncAnthropic(
            api_key=self._api_key,
            timeout=settings.llm.timeout_seconds,
            max_retries=0,
        )
        logger.debug("claude_provider_initialized", model=self._model)

    @property
    def name(self) -> str:
        return "claude"

    @property
    def model(self) -> str:
        return self._model

    @retry(
        retry=retry_if_exception_type(
            (anthropic.RateLimitError, anthropic.APIConnectionError, anthropic.InternalServerError)
        ),
        stop=stop_after_attempt(settings.llm.max_retries),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "claude_retry",
            attempt=retry_state.attempt_number,
            wait=retry_state.next_action.sleep,  # type: ignore[union-attr]
        ),
    )
    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        start_time = time.perf_counter()

        # Claude takes the system prompt separately
        system_parts = [m.content for m in messages if m.to_dict()["role"] == "system"]
        api_messages = [m.to_dict() for m in messages if m.to_dict()["role"] != "system"]

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": api_messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": temperature if temperature is not None else settings.llm.temperature,
        }
        if system_parts:
            kwargs["system"] = "\n\n".join(system_parts)

        try:
            response = await self._client.messages.create(**kwargs)
        except (anthropic.BadRequestError, anthropic.AuthenticationError) as e:
            logger.error("claude_request_rejected", error=str(e), error_type=type(e).__name__)
            raise

        latency_ms = (time.perf_counter() - start_time) * 1000
        content = "".join(block.text for block in response.content if hasattr(block, "text"))
        usage = LLMUsage.priced(
            response.usage.input_tokens,
            response.usage.output_tokens,
            CLAUDE_PRICING.get(self._model, DEFAULT_PRICING),
        )

        logger.debug(
            "claude_completion",
            model=self._model,
            tokens=usage.total_tokens,
            cost=round(usage.total_cost, 6),
            latency_ms=round(latency_ms, 2),
        )
        return LLMResponse(
            content=content,
            model=response.model,
            provider=self.name,
            usage=usage,
            finish_reason=response.stop_reason,
            latency_ms=latency_ms,
        )
