"""LLM abstraction layer — model-agnostic reasoning engine.

Every pipeline stage talks to the completion service through ReasoningEngine.
Providers (Anthropic, OpenAI) implement it and plug in without touching the
stages. Two call shapes are supported:

  complete() — one request, one response (optionally JSON-constrained)
  stream()   — async iterator of text deltas followed by one final usage event

SDK exceptions never leak out of this module: transient transport failures
become CompletionServiceError (retried by the pipeline), auth and request
failures become CollaboratorUnavailableError.

Also owns ReasoningSettings so that provider keys and model tiers are read
from the environment in one place.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from workflow_builder_agent.errors import CollaboratorUnavailableError, CompletionServiceError

logger = logging.getLogger("workflow_builder_agent.reasoning")

_JSON_ONLY_SUFFIX = (
    "\n\nRespond with a single valid JSON object and nothing else. "
    "Do not wrap it in markdown fences."
)


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single conversation turn.

    role values:
      "user"      — prompt turn
      "assistant" — prior LLM turn (used for the custom-code retry)
    """

    role: str
    content: str


@dataclass
class EngineResponse:
    """Response from a non-streaming completion."""

    content: str | None
    input_tokens: int = 0
    output_tokens: int = 0
    stop_reason: str = "end_turn"  # "end_turn" | "max_tokens"
    model: str = ""


@dataclass
class StreamEvent:
    """One event from ReasoningEngine.stream().

    Text events carry a non-empty ``text`` delta and ``done=False``. The final
    event has ``done=True``, an empty ``text`` and the usage totals.
    """

    text: str = ""
    done: bool = False
    input_tokens: int = 0
    output_tokens: int = 0


def estimate_tokens(text: str) -> int:
    """Rough token count (4 chars per token) for providers that report no usage."""
    return math.ceil(len(text) / 4) if text else 0


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM provider.

    The pipeline calls complete() / stream() without knowing which provider is
    underneath. ``model`` overrides the engine default for a single call so
    that cheap stages can run on a faster model tier.
    """

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        json_mode: bool = False,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> EngineResponse:
        """Send a conversation to the LLM and return its response.

        Args:
            messages:    Conversation history (user/assistant turns).
            system:      Optional system prompt injected before the conversation.
            temperature: Sampling temperature (0.0–1.0). Lower = more focused.
            json_mode:   Constrain the reply to a single JSON object.
            model:       Per-call model override.
            max_tokens:  Per-call output cap; engine default when None.
        """
        ...

    @abstractmethod
    def stream(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion as text deltas followed by one final usage event."""
        ...

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Provider/model string for logging, e.g. 'openai/gpt-4o'."""
        ...

    @property
    def default_model(self) -> str:
        """Bare model name used when a call passes no override."""
        return self.model_id.split("/", 1)[-1]


def _translate_sdk_error(sdk: Any, exc: Exception, provider: str) -> Exception:
    """Map an anthropic/openai SDK exception onto the pipeline error taxonomy.

    Both SDKs expose the same exception class names, so one table serves both.
    Returns the original exception when it is not an SDK error.
    """
    transient = tuple(
        getattr(sdk, name)
        for name in ("APIConnectionError", "APITimeoutError", "RateLimitError", "InternalServerError")
        if hasattr(sdk, name)
    )
    if transient and isinstance(exc, transient):
        return CompletionServiceError(f"{provider} completion service error: {exc}")
    api_error = getattr(sdk, "APIError", None)
    if api_error is not None and isinstance(exc, api_error):
        return CollaboratorUnavailableError(f"{provider} rejected the request: {exc}")
    return exc


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Reasoning engine backed by Anthropic's Claude API.

    Requires the anthropic SDK (a core dependency of this package).
    """

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6", max_tokens: int = 8192) -> None:
        try:
            import anthropic as _anthropic
            self._anthropic = _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install anthropic"
            )
        if not api_key:
            raise CollaboratorUnavailableError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    def _request_kwargs(
        self,
        messages: list[Message],
        system: str | None,
        temperature: float,
        model: str | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": model or self._model,
            "messages": [{"role": m.role, "content": m.content} for m in messages],
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        json_mode: bool = False,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> EngineResponse:
        # Anthropic has no JSON response format; constrain through the system prompt.
        if json_mode:
            system = (system or "") + _JSON_ONLY_SUFFIX
        kwargs = self._request_kwargs(messages, system, temperature, model, max_tokens)
        logger.debug("ClaudeEngine.complete: %d messages, model=%s", len(messages), kwargs["model"])
        try:
            response = await self._client.messages.create(**kwargs)
        except Exception as exc:
            raise _translate_sdk_error(self._anthropic, exc, "anthropic") from exc

        text = "".join(block.text for block in response.content if block.type == "text")
        return EngineResponse(
            content=text or None,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            stop_reason=response.stop_reason or "end_turn",
            model=kwargs["model"],
        )

    async def stream(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(messages, system, temperature, model, max_tokens)
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield StreamEvent(text=text)
                final = await stream.get_final_message()
        except Exception as exc:
            raise _translate_sdk_error(self._anthropic, exc, "anthropic") from exc
        yield StreamEvent(
            done=True,
            input_tokens=final.usage.input_tokens,
            output_tokens=final.usage.output_tokens,
        )


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Reasoning engine backed by the OpenAI API (GPT-4o, etc.).

    Requires the openai SDK (a core dependency of this package).
    """

    def __init__(self, api_key: str, model: str = "gpt-4o", max_tokens: int = 8192) -> None:
        try:
            import openai as _openai
            self._openai = _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install openai"
            )
        if not api_key:
            raise CollaboratorUnavailableError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment or .env file."
            )
        self._client = self._openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    def _request_kwargs(
        self,
        messages: list[Message],
        system: str | None,
        temperature: float,
        model: str | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        oai_messages: list[dict[str, Any]] = []
        if system:
            oai_messages.append({"role": "system", "content": system})
        oai_messages.extend({"role": m.role, "content": m.content} for m in messages)
        return {
            "model": model or self._model,
            "messages": oai_messages,
            "temperature": temperature,
            "max_tokens": max_tokens or self._max_tokens,
        }

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        json_mode: bool = False,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> EngineResponse:
        kwargs = self._request_kwargs(messages, system, temperature, model, max_tokens)
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}

        logger.debug("OpenAIEngine.complete: %d messages, model=%s", len(messages), kwargs["model"])
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except Exception as exc:
            raise _translate_sdk_error(self._openai, exc, "openai") from exc

        choice = response.choices[0]
        usage = response.usage
        return EngineResponse(
            content=choice.message.content,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            stop_reason="max_tokens" if choice.finish_reason == "length" else "end_turn",
            model=kwargs["model"],
        )

    async def stream(
        self,
        messages: list[Message],
        system: str | None = None,
        temperature: float = 0.2,
        model: str | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[StreamEvent]:
        kwargs = self._request_kwargs(messages, system, temperature, model, max_tokens)
        kwargs["stream"] = True
        kwargs["stream_options"] = {"include_usage": True}

        prompt_chars = sum(len(m["content"] or "") for m in kwargs["messages"])
        output_chars = 0
        input_tokens = output_tokens = 0
        try:
            stream = await self._client.chat.completions.create(**kwargs)
            async for chunk in stream:
                if chunk.usage:
                    input_tokens = chunk.usage.prompt_tokens
                    output_tokens = chunk.usage.completion_tokens
                if chunk.choices:
                    delta = chunk.choices[0].delta.content
                    if delta:
                        output_chars += len(delta)
                        yield StreamEvent(text=delta)
        except Exception as exc:
            raise _translate_sdk_error(self._openai, exc, "openai") from exc

        if not input_tokens and not output_tokens:
            input_tokens = math.ceil(prompt_chars / 4)
            output_tokens = math.ceil(output_chars / 4)
        yield StreamEvent(done=True, input_tokens=input_tokens, output_tokens=output_tokens)


# ---------------------------------------------------------------------------
# Reasoning engine settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the swappable reasoning engine.

    Automatically reads from environment variables (or a .env file).

    Environment variables:
      REASONING_ENGINE      — LLM provider: "claude" | "openai" (default: "openai")
      REASONING_MODEL       — Main model; leave unset for provider default
      REASONING_FAST_MODEL  — Cheaper model for intent, matching and the
                              advisory validation pass; unset = provider default
      ANTHROPIC_API_KEY     — Required when provider is "claude"
      OPENAI_API_KEY        — Required when provider is "openai"
      REASONING_MAX_TOKENS  — Output cap per call (default: 8192)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="openai", validation_alias="REASONING_ENGINE")
    model: str | None = Field(default=None, validation_alias="REASONING_MODEL")
    fast_model: str | None = Field(default=None, validation_alias="REASONING_FAST_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    max_tokens: int = Field(default=8192, validation_alias="REASONING_MAX_TOKENS")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower()

    @field_validator("model", "fast_model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        """Treat empty strings as unset (use provider default)."""
        if not v:
            return None
        return str(v)

    def resolved_fast_model(self) -> str:
        """Fast-tier model name, falling back to the provider's small model."""
        if self.fast_model:
            return self.fast_model
        if self.provider in ("claude", "anthropic"):
            return "claude-haiku-4-5"
        return "gpt-4o-mini"


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine from ReasoningSettings."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or "claude-sonnet-4-6",
                max_tokens=settings.max_tokens,
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or "gpt-4o",
                max_tokens=settings.max_tokens,
            )
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai'"
            )
