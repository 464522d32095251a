"""Language model backends.

Every backend implements :class:`LLMBackend` (``generate`` and
``stream_generate``). The gateway is polymorphic over that interface and
only looks at :attr:`LLMBackend.name` for logging and pricing.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable, Sequence
from typing import Any, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from e2e_agent.core.config import Settings, get_settings

# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================


class ChatMessage(BaseModel):
    """One prior turn of a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


class LLMContext(BaseModel):
    """Per-call generation options."""

    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, ge=1)
    system_prompt: str | None = None
    conversation_history: list[ChatMessage] = Field(default_factory=list)
    enable_cache: bool = True
    cache_key: str | None = None
    max_cost: float | None = Field(default=None, ge=0.0)
    tags: list[str] = Field(default_factory=list)


class TokenUsage(BaseModel):
    """Token accounting reported by a backend."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = 0
    completion_tokens: int = 0
    cached_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class LLMResponse(BaseModel):
    """A completion returned by a backend or the gateway."""

    content: str
    usage: TokenUsage = Field(default_factory=TokenUsage)
    model: str
    finish_reason: Literal["stop", "length", "error"] = "stop"
    provider: str | None = None
    estimated_cost: float | None = None
    cached: bool = False
    latency_ms: float | None = None


def build_messages(prompt: str, context: LLMContext | None) -> list[dict[str, str]]:
    """Conversation history followed by the current user prompt."""
    messages = [m.model_dump() for m in context.conversation_history] if context else []
    messages.append({"role": "user", "content": prompt})
    return messages


# =============================================================================
# BACKEND INTERFACE
# =============================================================================


class LLMBackend(ABC):
    """Capability set every model backend provides."""

    name: str = "backend"

    @abstractmethod
    async def generate(self, prompt: str, context: LLMContext | None = None) -> LLMResponse:
        """Produce one completion for ``prompt``."""

    @abstractmethod
    def stream_generate(
        self, prompt: str, context: LLMContext | None = None
    ) -> AsyncIterator[str]:
        """Yield the completion incrementally as text chunks."""


# =============================================================================
# ANTHROPIC
# =============================================================================


_STOP_REASONS = {"end_turn": "stop", "stop_sequence": "stop", "max_tokens": "length"}


class AnthropicBackend(LLMBackend):
    """
    Claude models through the official ``anthropic`` async client.

    The client is created lazily on first use so constructing the backend
    never requires credentials.

    Example:
        >>> backend = AnthropicBackend(model="claude-3-haiku-20240307")
        >>> response = await backend.generate("Say hello")
        >>> response.content
        'Hello!'
    """

    name = "anthropic"

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        client: Any | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings
        self.model = model
        self._api_key = api_key
        self._client: Any = client

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _ensure_client(self) -> Any:
        if self._client is None:
            from anthropic import AsyncAnthropic

            api_key = self._api_key
            if api_key is None and self.settings.anthropic_api_key is not None:
                api_key = self.settings.anthropic_api_key.get_secret_value()
            self._client = AsyncAnthropic(api_key=api_key)
        return self._client

    def _request_kwargs(self, prompt: str, context: LLMContext | None) -> dict[str, Any]:
        context = context or LLMContext()
        kwargs: dict[str, Any] = {
            "model": context.model or self.model or self.settings.e2e_llm_model,
            "max_tokens": context.max_tokens or self.settings.e2e_llm_max_tokens,
            "temperature": (
                context.temperature
                if context.temperature is not None
                else self.settings.e2e_llm_temperature
            ),
            "messages": build_messages(prompt, context),
        }
        if context.system_prompt:
            kwargs["system"] = context.system_prompt
        return kwargs

    async def generate(self, prompt: str, context: LLMContext | None = None) -> LLMResponse:
        client = self._ensure_client()
        kwargs = self._request_kwargs(prompt, context)
        logger.debug(f"Anthropic request: model={kwargs['model']}")

        response = await client.messages.create(**kwargs)

        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = response.usage
        return LLMResponse(
            content=text,
            usage=TokenUsage(
                prompt_tokens=usage.input_tokens,
                completion_tokens=usage.output_tokens,
                cached_tokens=getattr(usage, "cache_read_input_tokens", None) or 0,
            ),
            model=response.model,
            finish_reason=_STOP_REASONS.get(response.stop_reason or "", "stop"),
            provider=self.name,
        )

    async def stream_generate(
        self, prompt: str, context: LLMContext | None = None
    ) -> AsyncIterator[str]:
        client = self._ensure_client()
        kwargs = self._request_kwargs(prompt, context)

        stream = await client.messages.create(stream=True, **kwargs)
        async for event in stream:
            if getattr(event, "type", "") != "content_block_delta":
                continue
            delta = event.delta
            if getattr(delta, "type", "") == "text_delta" and delta.text:
                yield delta.text


# =============================================================================
# OPENAI-COMPATIBLE
# =============================================================================


_FINISH_REASONS = {"stop": "stop", "length": "length", "content_filter": "error"}


class OpenAIBackend(LLMBackend):
    """
    GPT models, or any OpenAI-compatible API, through the ``openai`` async client.

    Set ``base_url`` to reach compatible vendors such as DeepSeek. Like the
    Anthropic backend, the client is created on first use.

    Example:
        >>> backend = OpenAIBackend(model="deepseek-chat", base_url="https://api.deepseek.com")
        >>> response = await backend.generate("Say hello")
        >>> response.model
        'deepseek-chat'
    """

    name = "openai"

    def __init__(
        self,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        client: Any | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings
        self.model = model
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = client

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    def _ensure_client(self) -> Any:
        if self._client is None:
            from openai import AsyncOpenAI

            api_key = self._api_key
            if api_key is None and self.settings.openai_api_key is not None:
                api_key = self.settings.openai_api_key.get_secret_value()
            self._client = AsyncOpenAI(
                api_key=api_key,
                base_url=self._base_url or self.settings.openai_base_url,
            )
        return self._client

    def _request_kwargs(self, prompt: str, context: LLMContext | None) -> dict[str, Any]:
        context = context or LLMContext()
        messages = build_messages(prompt, context)
        if context.system_prompt:
            messages.insert(0, {"role": "system", "content": context.system_prompt})
        return {
            "model": context.model or self.model or self.settings.e2e_openai_model,
            "max_tokens": context.max_tokens or self.settings.e2e_llm_max_tokens,
            "temperature": (
                context.temperature
                if context.temperature is not None
                else self.settings.e2e_llm_temperature
            ),
            "messages": messages,
        }

    async def generate(self, prompt: str, context: LLMContext | None = None) -> LLMResponse:
        client = self._ensure_client()
        kwargs = self._request_kwargs(prompt, context)
        logger.debug(f"OpenAI request: model={kwargs['model']}")

        response = await client.chat.completions.create(**kwargs)
        if not response.choices:
            raise RuntimeError("No response from OpenAI")

        choice = response.choices[0]
        usage = response.usage
        details = getattr(usage, "prompt_tokens_details", None) if usage else None
        return LLMResponse(
            content=choice.message.content or "",
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
                cached_tokens=getattr(details, "cached_tokens", None) or 0,
            ),
            model=response.model,
            finish_reason=_FINISH_REASONS.get(choice.finish_reason or "", "stop"),
            provider=self.name,
        )

    async def stream_generate(
        self, prompt: str, context: LLMContext | None = None
    ) -> AsyncIterator[str]:
        client = self._ensure_client()
        kwargs = self._request_kwargs(prompt, context)

        stream = await client.chat.completions.create(stream=True, **kwargs)
        async for chunk in stream:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content


def create_backend(name: str, settings: Settings | None = None) -> LLMBackend:
    """
    Build a real backend by provider name.

    Raises:
        ValueError: If ``name`` is not ``anthropic`` or ``openai``.
    """
    if name == AnthropicBackend.name:
        return AnthropicBackend(settings=settings)
    if name == OpenAIBackend.name:
        return OpenAIBackend(settings=settings)
    raise ValueError(f"Unknown LLM provider: {name}")


# =============================================================================
# SCRIPTED BACKEND
# =============================================================================


Responder = Callable[[str, LLMContext | None], str]


class StaticBackend(LLMBackend):
    """
    Offline backend that replays scripted responses.

    Useful for dry runs and tests. ``responses`` may be a list (consumed in
    order, the last one repeating) or a callable ``(prompt, context) -> str``.
    ``failures`` makes the first N calls raise, and ``delay`` simulates latency.
    """

    def __init__(
        self,
        responses: Sequence[str] | Responder = ("COMPLETE",),
        name: str = "static",
        model: str = "static-model",
        failures: int = 0,
        delay: float = 0.0,
        error: str = "Scripted backend failure",
        usage: TokenUsage | None = None,
    ) -> None:
        self.name = name
        self.model = model
        self._responses = responses
        self._failures_left = failures
        self._delay = delay
        self._error = error
        self._usage = usage or TokenUsage(prompt_tokens=100, completion_tokens=20)
        self._served = 0
        self.calls: list[str] = []
        self.contexts: list[LLMContext | None] = []

    def _next_content(self, prompt: str, context: LLMContext | None) -> str:
        if callable(self._responses):
            return self._responses(prompt, context)
        index = min(self._served, len(self._responses) - 1)
        self._served += 1
        return self._responses[index]

    async def generate(self, prompt: str, context: LLMContext | None = None) -> LLMResponse:
        self.calls.append(prompt)
        self.contexts.append(context)
        if self._delay:
            await asyncio.sleep(self._delay)
        if self._failures_left > 0:
            self._failures_left -= 1
            raise RuntimeError(self._error)
        return LLMResponse(
            content=self._next_content(prompt, context),
            usage=self._usage,
            model=(context.model if context and context.model else self.model),
            provider=self.name,
        )

    async def stream_generate(
        self, prompt: str, context: LLMContext | None = None
    ) -> AsyncIterator[str]:
        response = await self.generate(prompt, context)
        words = response.content.split(" ")
        for i, word in enumerate(words):
            yield word if i == len(words) - 1 else word + " "
