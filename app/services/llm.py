# =============================================================================
# Multi-Provider LLM Abstraction — Pluggable AI Backend
# =============================================================================
#
# Provides a common interface for LLM completions, whole or streamed, with
# concrete implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (OpenAI, DeepSeek, Qwen, GLM-5, ...).
#
# DESIGN DECISION: Protocol (structural typing) over ABC.
# Matches the Retriever pattern in retriever.py. Any class with the right
# `complete()` method works, including AsyncMock in tests.
#
# DESIGN DECISION: Native SDKs over LangChain wrappers.
# Using the anthropic and openai SDKs directly keeps request parameters
# under our control and avoids wrapper translation when debugging.
#
# DESIGN DECISION: Structured output as JSON + Pydantic validation.
# The classifier and the merger need output constrained to a schema (e.g.
# the closed Intent enum). Rather than relying on provider-specific tool
# calling, `generate_structured()` asks for JSON matching the schema's JSON
# Schema and validates the reply with `model_validate()`. A reply that does
# not validate raises StructuredOutputError; callers decide what that means.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider        — Claude via native Anthropic SDK
#   ├── OpenAICompatibleProvider — Any OpenAI-compatible API
#   ├── create_llm_provider()    — builds the configured provider, wrapped
#   │                              in CachedLLMProvider when caching is on
#   └── generate_structured()    — JSON-constrained completion → model
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from collections.abc import AsyncIterator
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from app.config import Settings, settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


class StructuredOutputError(ValueError):
    """The model reply could not be parsed into the requested schema."""


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both Anthropic and OpenAI-compatible implementations provide
    the `complete()` method.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system" — use the system param).
            system: System prompt for the LLM. Handled differently per provider:
                - Anthropic: top-level `system=` kwarg
                - OpenAI: prepended as {"role": "system", ...} message
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str | LLMResponse]:
        """
        Stream a completion.

        Yields text deltas as they arrive, then exactly one LLMResponse
        carrying the full text, the model and the token usage.
        """
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        config: Settings | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        config = config or settings
        resolved_key = api_key or config.llm_api_key or config.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    @property
    def model_name(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        response = await self._client.messages.create(**kwargs)

        content = ""
        for block in response.content:
            if block.type == "text":
                content = block.text
                break

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str | LLMResponse]:
        """Stream a completion using Claude's message stream helper."""
        kwargs = self._request_kwargs(messages, system, temperature, max_tokens)
        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                yield text
            message = await stream.get_final_message()

        yield LLMResponse(
            content="".join(
                block.text for block in message.content if block.type == "text"
            ),
            model=message.model,
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
        )

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": (
                temperature if temperature is not None else self._temperature
            ),
        }

        # Anthropic: system prompt is a top-level kwarg, not a message
        if system:
            kwargs["system"] = system
        return kwargs


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that follows the OpenAI spec.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        config: Settings | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        config = config or settings
        resolved_key = api_key or config.llm_api_key or config.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or config.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or config.llm_model
        self._temperature = config.llm_temperature
        self._max_tokens = config.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    @property
    def model_name(self) -> str:
        return self._model

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=(
                temperature if temperature is not None else self._temperature
            ),
        )

        content = response.choices[0].message.content or ""

        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[str | LLMResponse]:
        """Stream a completion; usage arrives on the final chunk."""
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)

        stream = await self._client.chat.completions.create(
            model=self._model,
            messages=all_messages,
            max_tokens=max_tokens or self._max_tokens,
            temperature=(
                temperature if temperature is not None else self._temperature
            ),
            stream=True,
            stream_options={"include_usage": True},
        )

        parts: list[str] = []
        model = self._model
        input_tokens = output_tokens = 0
        async for chunk in stream:
            model = chunk.model or model
            if chunk.usage:
                input_tokens = chunk.usage.prompt_tokens
                output_tokens = chunk.usage.completion_tokens
            if chunk.choices and chunk.choices[0].delta.content:
                parts.append(chunk.choices[0].delta.content)
                yield chunk.choices[0].delta.content

        yield LLMResponse(
            content="".join(parts),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------


def create_llm_provider(config: Settings | None = None) -> LLMProvider:
    """
    Build the configured LLM provider.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider

    With `cache_enabled`, the provider is wrapped in a CachedLLMProvider
    holding completions for `cache_ttl_seconds`.

    DESIGN DECISION: No module-level singleton. The orchestrator builder
    creates one provider at startup and injects it into every component
    that needs it, so tests can pass a mock instead of patching globals.

    Raises:
        ValueError: If the selected provider has no API key configured.
    """
    config = config or settings
    provider: LLMProvider
    if config.llm_provider == "openai_compatible":
        provider = OpenAICompatibleProvider(config=config)
    else:
        provider = AnthropicProvider(config=config)

    if not config.cache_enabled:
        return provider

    from app.services.cache import CachedLLMProvider, ResponseCache

    logger.info("LLM response cache enabled (ttl=%ss)", config.cache_ttl_seconds)
    return CachedLLMProvider(provider, ResponseCache(ttl_seconds=config.cache_ttl_seconds))


# ---------------------------------------------------------------------------
# Structured Output
# ---------------------------------------------------------------------------

_STRUCTURED_SUFFIX = """

Respond with ONLY valid JSON (no markdown, no explanation) matching this \
JSON Schema:
{schema}"""

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)


async def generate_structured(
    llm: LLMProvider,
    schema: type[ModelT],
    system: str,
    messages: list[dict[str, str]],
    temperature: float | None = None,
    max_tokens: int | None = None,
) -> ModelT:
    """
    Run a completion whose reply must validate against `schema`.

    The schema's JSON Schema is appended to the system prompt, the reply
    is stripped of any markdown code fence and validated with Pydantic.

    Raises:
        StructuredOutputError: The reply is not JSON or fails validation.
        Exception: Whatever the provider raises for transport errors.
    """
    schema_json = json.dumps(schema.model_json_schema(), indent=2)
    response = await llm.complete(
        messages=messages,
        system=system + _STRUCTURED_SUFFIX.format(schema=schema_json),
        temperature=temperature,
        max_tokens=max_tokens,
    )

    raw = _strip_code_fence(response.content)
    try:
        return schema.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning(
            "Structured output did not match %s: %s (reply: '%s')",
            schema.__name__, e, raw[:200],
        )
        raise StructuredOutputError(
            f"Model reply is not a valid {schema.__name__}: {e}"
        ) from e


def _strip_code_fence(text: str) -> str:
    """Remove a surrounding ```json ... ``` fence if the model added one."""
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group(1) if match else stripped
