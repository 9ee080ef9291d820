"""
LLM Provider Module
===================

Provider abstraction behind the default reasoning function.

Supported providers:
- Anthropic Claude (primary)
- OpenAI (backup)

Usage:
    from shared.llm import get_llm_provider, LLMMessage

    provider = get_llm_provider()
    response = await provider.complete(
        [
            LLMMessage(role="system", content="You compose regulatory rules."),
            LLMMessage(role="user", content=prompt),
        ],
        temperature=0.1,
    )
"""

from shared.llm.provider import (
    LLMMessage,
    LLMProvider,
    LLMResponse,
    LLMUsage,
    MessageRole,
    get_llm_provider,
    reset_llm_provider,
    set_llm_provider,
)

__all__ = [
    "LLMMessage",
    "LLMProvider",
    "LLMResponse",
    "LLMUsage",
    "MessageRole",
    "get_llm_provider",
    "reset_llm_provider",
    "set_llm_provider",
]
