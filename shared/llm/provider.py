"""
LLM Provider Base
=================

Abstract base class, common models and error types for LLM providers.

Pipeline agents only depend on this module: concrete providers are
selected from settings and translate their SDK-specific failures into
the ``LLMError`` family so callers can apply one retry policy.

Version: 0.1.0
"""

import json
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from shared.config import LLMProvider as LLMProviderEnum
from shared.config import settings
from shared.logging import get_logger


logger = get_logger(__name__)


class LLMError(Exception):
    """Base error raised by LLM providers."""

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.provider = provider


class LLMRateLimitError(LLMError):
    """Upstream throttled the request (HTTP 429 or equivalent)."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, provider)
        self.retry_after = retry_after


class LLMOutputError(LLMError):
    """Model output could not be parsed into the requested shape."""

    def __init__(self, message: str, raw_output: str = "", provider: str | None = None) -> None:
        super().__init__(message, provider)
        self.raw_output = raw_output


class MessageRole(str, Enum):
    """Message role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LLMMessage(BaseModel):
    """A message in the conversation."""

    role: MessageRole | Literal["system", "user", "assistant"]
    content: str

    def to_dict(self) -> dict[str, str]:
        """Convert to dict for API calls."""
        role_str = self.role.value if isinstance(self.role, MessageRole) else self.role
        return {"role": role_str, "content": self.content}


class LLMUsage(BaseModel):
    """Token usage information."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    # Cost tracking (in USD)
    input_cost: float = 0.0
    output_cost: float = 0.0
    total_cost: float = 0.0


class LLMResponse(BaseModel):
    """Response from LLM provider."""

    content: str = Field(..., description="Generated text content")
    model: str = Field(..., description="Model used for generation")
    provider: str = Field(..., description="Provider name")
    usage: LLMUsage = Field(default_factory=LLMUsage)
    finish_reason: str | None = None

    latency_ms: float = 0.0
    raw_response: dict[str, Any] | None = None


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences a model may wrap around JSON."""
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


class LLMProvider(ABC):
    """
    Abstract base class for LLM providers.

    Implements the Strategy pattern for swappable LLM backends.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name."""
        ...

    @property
    @abstractmethod
    def model(self) -> str:
        """Model identifier."""
        ...

    @abstractmethod
    async def complete(
        self,
        messages: list[LLMMessage],
        temperature: float | None = None,
        max_tokens: int | None = None,
        stop_sequences: list[str] | None = None,
    ) -> LLMResponse:
        """
        Generate a completion for the given messages.

        Args:
            messages: Conversation messages
            temperature: Sampling temperature (0.0-1.0)
            max_tokens: Maximum tokens to generate
            stop_sequences: Stop generation at these sequences

        Returns:
            LLMResponse with generated content

        Raises:
            LLMRateLimitError: upstream throttled the call
            LLMError: any other provider failure
        """
        ...

    @abstractmethod
    async def health_check(self) -> dict[str, Any]:
        """
        Check provider health.

        Returns:
            dict with status and provider info
        """
        ...

    async def generate_text(
        self,
        prompt: str,
        system_prompt: str | None = None,
        **kwargs: Any,
    ) -> str:
        """Simple text generation helper."""
        messages = []
        if system_prompt:
            messages.append(LLMMessage(role="system", content=system_prompt))
        messages.append(LLMMessage(role="user", content=prompt))

        response = await self.complete(messages, **kwargs)
        return response.content

    async def generate_json(
        self,
        prompt: str,
        system_prompt: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """
        Generate JSON output.

        Args:
            prompt: User prompt requesting JSON
            system_prompt: Optional system prompt
            **kwargs: Additional arguments for complete()

        Returns:
            Parsed JSON value (object or array)

        Raises:
            LLMOutputError: the response is not valid JSON
        """
        json_system = (system_prompt or "") + (
            "\n\nRespond ONLY with valid JSON. No markdown, no explanation."
        )

        text = await self.generate_text(prompt, system_prompt=json_system.strip(), **kwargs)
        text = strip_code_fences(text)

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning("llm_invalid_json", provider=self.name, error=str(e))
            raise LLMOutputError(f"Invalid JSON from model: {e}", raw_output=text, provider=self.name) from e


# Global provider instance
_provider: LLMProvider | None = None


def get_llm_provider() -> LLMProvider:
    """
    Get the configured LLM provider instance.

    Uses the provider specified in settings.llm.provider.
    Creates and caches the instance on first call.
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
        elif provider_type == LLMProviderEnum.OLLAMA:
            from shared.llm.ollama import OllamaProvider

            _provider = OllamaProvider()
        else:
            raise ValueError(f"Unknown LLM provider: {provider_type}")

        logger.info(
            "llm_provider_initialized",
            provider=_provider.name,
            model=_provider.model,
        )

    return _provider


def set_llm_provider(provider: LLMProvider) -> None:
    """
    Set a custom LLM provider.

    Useful for testing or custom implementations.
    """
    global _provider
    _provider = provider
    logger.info(
        "llm_provider_set",
        provider=provider.name,
        model=provider.model,
    )


def reset_llm_provider() -> None:
    """Reset the provider to be re-initialized on next access."""
    global _provider
    _provider = None
