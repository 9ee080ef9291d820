"""
OpenAI Provider
===============

OpenAI chat completions implementation (backup reasoning backend).

Version: 0.1.0
"""

import time
from typing import Any

import openai
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
OPENAI_PRICING = {
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4.1": {"input": 2.00, "output": 8.00},
}
DEFAULT_PRICING = {"input": 2.50, "output": 10.00}


class OpenAIProvider(LLMProvider):
    """OpenAI provider; JSON mode is requested so drafts come back as one object."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        self._api_key = api_key or settings.llm.openai.api_key.get_secret_value()
        self._model = model or settings.llm.openai.model
        self._max_tokens = settings.llm.openai.max_tokens

        if not self._api_key:
            raise ValueError("OpenAI API key not configured")

        self._client = openai.AsyncOpenAI(
            api_key=self._api_key,
            timeout=settings.llm.timeout_seconds,
            max_retries=0,
        )
        logger.debug("openai_provider_initialized", model=self._model)

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    @retry(
        retry=retry_if_exception_type(
            (openai.RateLimitError, openai.APIConnectionError, openai.InternalServerError)
        ),
        stop=stop_after_attempt(settings.llm.max_retries),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "openai_retry",
            attempt=retry_state.attempt_number,
        ),
    )
    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        start_time = time.perf_counter()

        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": [m.to_dict() for m in messages],
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": temperature if temperature is not None else settings.llm.temperature,
            "response_format": {"type": "json_object"},
        }

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except (openai.BadRequestError, openai.AuthenticationError) as e:
            logger.error("openai_request_rejected", error=str(e), error_type=type(e).__name__)
            raise

        latency_ms = (time.perf_counter() - start_time) * 1000
        choice = response.choices[0]
        prompt_tokens = response.usage.prompt_tokens if response.usage else 0
        completion_tokens = response.usage.completion_tokens if response.usage else 0
        usage = LLMUsage.priced(
            prompt_tokens,
            completion_tokens,
            OPENAI_PRICING.get(self._model, DEFAULT_PRICING),
        )

        logger.debug(
            "openai_completion",
            model=self._model,
            tokens=usage.total_tokens,
            latency_ms=round(latency_ms, 2),
        )
        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            provider=self.name,
            usage=usage,
            finish_reason=choice.finish_reason,
            latency_ms=latency_ms,
        )
