"""
LLM Provider Module
===================

Abstraction layer for multiple LLM providers.

Supported providers:
- Anthropic Claude (primary)
- OpenAI GPT (backup)
- Ollama (local)

Usage:
    from shared.llm import get_llm_provider

    provider = get_llm_provider()
    items = await provider.generate_json(prompt, system_prompt=EXTRACTION_PROMPT)
"""

from shared.llm.provider import (
    LLMError,
    LLMMessage,
    LLMOutputError,
    LLMProvider,
    LLMRateLimitError,
    LLMResponse,
    LLMUsage,
    get_llm_provider,
    reset_llm_provider,
    set_llm_provider,
)


__all__ = [
    "LLMProvider",
    "LLMMessage",
    "LLMResponse",
    "LLMUsage",
    "LLMError",
    "LLMRateLimitError",
    "LLMOutputError",
    "get_llm_provider",
    "set_llm_provider",
    "reset_llm_provider",
]
