# =============================================================================
# Chat Model Clients: Anthropic and OpenAI-Compatible
# =============================================================================
#
# Every model call in the system goes through `complete()`:
#   - field extraction for a conversation turn    (services/extraction.py)
#   - the agent reply and ready-to-quote decision (agents/responder.py)
#   - document classification in the worker       (services/classifier.py)
#
# All three ask for a single JSON object back and read it with
# `parse_json_response()`, which tolerates code fences and stray prose.
#
# Transport failures from either SDK surface as ExternalServiceError, so
# callers handle one exception type and the job queue can retry it.
#
# The composition root builds two clients from the same Settings: one for
# the API event loop and one for the worker's private loop. An async SDK
# client must not be shared across loops.
# =============================================================================

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol

from freight_agent.config import Settings
from freight_agent.errors import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Text and token usage of one completion, independent of provider."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int
    stop_reason: str | None = None  # "end_turn", "max_tokens", "stop", ...


@dataclass
class TokenUsage:
    """Running totals for one client since it was built."""

    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    truncated: int = 0  # Completions cut off by the max_tokens limit


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Run one chat completion.

        Args:
            messages: {"role": "user" | "assistant", "content": ...} dicts,
                oldest first. The system prompt goes in `system`.
            system: Instructions for the model.
            temperature: Overrides the configured temperature.
            max_tokens: Overrides the configured output limit.

        Raises:
            ExternalServiceError: The provider could not be reached or
                rejected the request.
        """
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Shared Client Behaviour
# ---------------------------------------------------------------------------


class _ChatClient:
    """Holds the per-deployment defaults and usage accounting."""

    provider_name = "llm"

    def __init__(self, settings: Settings, model: str | None) -> None:
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens
        self._timeout = settings.llm_timeout_seconds
        self._max_retries = settings.llm_max_retries
        self.usage = TokenUsage()

    @property
    def model(self) -> str:
        return self._model

    def _limits(
        self, temperature: float | None, max_tokens: int | None,
    ) -> tuple[float, int]:
        return (
            self._temperature if temperature is None else temperature,
            max_tokens or self._max_tokens,
        )

    def _record(self, response: LLMResponse, truncated: bool) -> LLMResponse:
        self.usage.calls += 1
        self.usage.input_tokens += response.input_tokens
        self.usage.output_tokens += response.output_tokens
        if truncated:
            self.usage.truncated += 1
            logger.warning(
                "%s completion hit max_tokens (model=%s, output_tokens=%d)",
                self.provider_name, response.model, response.output_tokens,
            )
        logger.debug(
            "%s completion: model=%s in=%d out=%d stop=%s",
            self.provider_name, response.model, response.input_tokens,
            response.output_tokens, response.stop_reason,
        )
        return response


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------


class AnthropicProvider(_ChatClient):
    """Claude through the native SDK; the system prompt is a top-level argument."""

    provider_name = "anthropic"

    def __init__(
        self,
        settings: Settings,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        super().__init__(settings, model)
        key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )
        self._client = AsyncAnthropic(
            api_key=key, timeout=self._timeout, max_retries=self._max_retries,
        )
        logger.info("Anthropic client ready (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        import anthropic

        temp, limit = self._limits(temperature, max_tokens)
        request: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "max_tokens": limit,
            "temperature": temp,
        }
        if system:
            request["system"] = system

        try:
            response = await self._client.messages.create(**request)
        except anthropic.APIError as e:
            raise ExternalServiceError(f"Anthropic request failed: {e}") from e

        text = "".join(
            block.text for block in response.content if block.type == "text"
        )
        return self._record(
            LLMResponse(
                content=text,
                model=response.model,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                stop_reason=response.stop_reason,
            ),
            truncated=response.stop_reason == "max_tokens",
        )

    async def close(self) -> None:
        await self._client.close()


# ---------------------------------------------------------------------------
# OpenAI-Compatible (OpenAI, DeepSeek, Qwen, local gateways)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider(_ChatClient):
    """
    Chat Completions client; works against any endpoint speaking that API.

    Select it with:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_MODEL=deepseek-chat
    """

    provider_name = "openai_compatible"

    def __init__(
        self,
        settings: Settings,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        super().__init__(settings, model)
        key = api_key or settings.llm_api_key or settings.openai_api_key
        if not key:
            raise ValueError(
                "No API key configured for the OpenAI-compatible client. "
                "Set LLM_API_KEY or OPENAI_API_KEY in .env"
            )
        self._base_url = base_url or settings.llm_base_url
        self._client = AsyncOpenAI(
            api_key=key,
            base_url=self._base_url,
            timeout=self._timeout,
            max_retries=self._max_retries,
        )
        logger.info(
            "OpenAI-compatible client ready (model=%s, base_url=%s)",
            self._model, self._base_url or "default",
        )

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        import openai

        temp, limit = self._limits(temperature, max_tokens)
        prompt = [{"role": "system", "content": system}] if system else []

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=prompt + list(messages),
                max_tokens=limit,
                temperature=temp,
            )
        except openai.APIError as e:
            raise ExternalServiceError(f"Chat completion request failed: {e}") from e

        if not response.choices:
            raise ExternalServiceError("Chat completion returned no choices")
        choice = response.choices[0]
        usage = response.usage
        return self._record(
            LLMResponse(
                content=choice.message.content or "",
                model=response.model or self._model,
                input_tokens=usage.prompt_tokens if usage else 0,
                output_tokens=usage.completion_tokens if usage else 0,
                stop_reason=choice.finish_reason,
            ),
            truncated=choice.finish_reason == "length",
        )

    async def close(self) -> None:
        await self._client.close()


_PROVIDERS = {
    "anthropic": AnthropicProvider,
    "openai_compatible": OpenAICompatibleProvider,
}


def create_llm_provider(settings: Settings) -> AnthropicProvider | OpenAICompatibleProvider:
    """Build the client named by `settings.llm_provider`."""
    try:
        provider_cls = _PROVIDERS[settings.llm_provider]
    except KeyError:
        raise ValueError(
            f"Unknown LLM_PROVIDER {settings.llm_provider!r}; "
            f"expected one of {sorted(_PROVIDERS)}"
        ) from None
    return provider_cls(settings)


# ---------------------------------------------------------------------------
# Response Parsing
# ---------------------------------------------------------------------------

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_json_response(text: str) -> dict[str, Any]:
    """
    Read the single JSON object a model was asked to return.

    Code fences are stripped; if prose surrounds the object, the outermost
    braces are used.

    Raises:
        json.JSONDecodeError: No JSON object could be parsed.
    """
    cleaned = _FENCE.sub("", text.strip()).strip()
    try:
        value = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise
        value = json.loads(cleaned[start:end + 1])

    if not isinstance(value, dict):
        raise json.JSONDecodeError("Expected a JSON object", cleaned, 0)
    return value
