"""Model gateway - prioritized backends with retry, fallback, cache, and cost.

One ``generate`` call:

1. Returns a cached response when caching is on and the key is present.
2. Fails fast with ``BudgetExceeded`` when the declared ``max_cost`` is more
   than the tracker has left.
3. Tries backends in ascending priority, each up to its retry policy, with
   every attempt raced against a timeout.
4. Charges cost, records latency, and caches the first success.
5. Raises ``AllProvidersFailed`` when every backend is exhausted.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from e2e_agent.core.config import Settings, get_settings
from e2e_agent.core.exceptions import AllProvidersFailed, BudgetExceeded, E2EAgentError
from e2e_agent.core.retry import CancellationToken, RetryPolicy, check_cancelled
from e2e_agent.llm.backends import LLMBackend, LLMContext, LLMResponse, create_backend
from e2e_agent.llm.cache import PromptCache
from e2e_agent.llm.cost import LLMCostTracker

# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass
class ProviderConfig:
    """A backend registered with the gateway."""

    backend: LLMBackend
    name: str
    priority: int = 0
    retry_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(max_attempts=2))
    timeout_ms: int = 30000


@dataclass
class GatewayStats:
    """Request counters."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    fallbacks: int = 0
    cache_hits: int = 0

    @property
    def success_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.successful_requests / self.total_requests

    @property
    def cache_hit_rate(self) -> float:
        if not self.total_requests:
            return 0.0
        return self.cache_hits / self.total_requests

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "fallbacks": self.fallbacks,
            "cache_hits": self.cache_hits,
            "success_rate": self.success_rate,
            "cache_hit_rate": self.cache_hit_rate,
        }


# =============================================================================
# GATEWAY
# =============================================================================


class ModelGateway(LLMBackend):
    """
    Fallback-aware facade over several model backends.

    The cache and cost tracker are injected so separate gateways never share
    state unless the caller wires them together.

    Example:
        >>> gateway = ModelGateway(cache=PromptCache(), cost_tracker=LLMCostTracker(5.0))
        >>> gateway.add_provider(AnthropicBackend(), name="claude", priority=0)
        >>> gateway.add_provider(OpenAIBackend(), name="gpt", priority=1)
        >>> response = await gateway.generate("Click the login button")
        >>> response.provider
        'claude'
    """

    name = "gateway"

    def __init__(
        self,
        cache: PromptCache | None = None,
        cost_tracker: LLMCostTracker | None = None,
        max_total_attempts: int | None = None,
    ) -> None:
        self.cache = cache
        self.cost_tracker = cost_tracker
        self.max_total_attempts = max_total_attempts
        self._providers: list[ProviderConfig] = []
        self._stats = GatewayStats()

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        backends: list[LLMBackend] | None = None,
    ) -> "ModelGateway":
        """Build a gateway configured from application settings.

        Args:
            settings: Optional settings override.
            backends: Backends in priority order. Defaults to the chain named by
                ``E2E_LLM_PROVIDERS``.
        """
        settings = settings or get_settings()
        cache = None
        if settings.e2e_cache_enabled:
            cache = PromptCache(
                max_bytes=settings.e2e_cache_max_bytes,
                ttl_seconds=settings.e2e_cache_ttl_seconds,
            )
        gateway = cls(cache=cache, cost_tracker=LLMCostTracker(settings.e2e_budget_limit))
        policy = RetryPolicy(
            max_attempts=settings.e2e_provider_max_retries,
            base_delay_ms=settings.e2e_backoff_base_ms,
            max_delay_ms=settings.e2e_backoff_cap_ms,
        )
        if backends is None:
            backends = [create_backend(name, settings) for name in settings.llm_provider_chain]
        for priority, backend in enumerate(backends):
            gateway.add_provider(
                backend,
                priority=priority,
                retry_policy=policy,
                timeout_ms=settings.e2e_provider_timeout_ms,
            )
        return gateway

    # =========================================================================
    # PROVIDER MANAGEMENT
    # =========================================================================

    def add_provider(
        self,
        backend: LLMBackend,
        name: str | None = None,
        priority: int = 0,
        max_retries: int = 2,
        timeout_ms: int = 30000,
        retry_policy: RetryPolicy | None = None,
    ) -> ProviderConfig:
        """Register a backend; lower ``priority`` is tried first."""
        config = ProviderConfig(
            backend=backend,
            name=name or backend.name,
            priority=priority,
            retry_policy=retry_policy or RetryPolicy(max_attempts=max_retries),
            timeout_ms=timeout_ms,
        )
        self._providers.append(config)
        self._providers.sort(key=lambda p: p.priority)
        logger.debug(f"Registered provider {config.name} (priority {priority})")
        return config

    def remove_provider(self, name: str) -> bool:
        for i, config in enumerate(self._providers):
            if config.name == name:
                del self._providers[i]
                return True
        return False

    @property
    def providers(self) -> list[ProviderConfig]:
        return list(self._providers)

    # =========================================================================
    # GENERATION
    # =========================================================================

    def _cache_key(self, prompt: str, context: LLMContext | None) -> str | None:
        if self.cache is None or (context is not None and not context.enable_cache):
            return None
        if context is not None and context.cache_key:
            return context.cache_key
        return PromptCache.make_key(prompt, context)

    async def _attempt(
        self,
        config: ProviderConfig,
        prompt: str,
        context: LLMContext | None,
        token: CancellationToken | None,
    ) -> LLMResponse:
        """Race one backend call against its timeout and the cancel token."""
        timeout = config.timeout_ms / 1000
        call = asyncio.ensure_future(config.backend.generate(prompt, context))
        waiters: set[asyncio.Future[Any]] = {call}
        cancel_waiter = None
        if token is not None:
            cancel_waiter = asyncio.ensure_future(token.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()

        if call in done:
            return call.result()

        call.cancel()
        check_cancelled(token)
        raise TimeoutError(f"Request timeout after {config.timeout_ms}ms")

    async def generate(
        self,
        prompt: str,
        context: LLMContext | None = None,
        token: CancellationToken | None = None,
    ) -> LLMResponse:
        """
        Generate a completion through the provider chain.

        Args:
            prompt: User prompt.
            context: Optional generation options.
            token: Optional cancellation token checked at each suspension point.

        Returns:
            The first successful response, flagged ``cached`` on a cache hit.

        Raises:
            BudgetExceeded: The declared ``max_cost`` exceeds the remaining budget,
                or the charge for a successful call would overflow it.
            AllProvidersFailed: Every backend exhausted its retries.
            OperationCancelled: The token fired.
        """
        self._stats.total_requests += 1
        if not self._providers:
            self._stats.failed_requests += 1
            raise AllProvidersFailed(0, None, ["No providers configured"])

        cache_key = self._cache_key(prompt, context)
        if cache_key is not None:
            cached = await self.cache.get(cache_key)
            if cached is not None:
                self._stats.cache_hits += 1
                self._stats.successful_requests += 1
                logger.debug(f"Cache hit for {cache_key[:12]}")
                return cached.model_copy(update={"cached": True})

        if context is not None and context.max_cost is not None and self.cost_tracker:
            try:
                self.cost_tracker.ensure_budget(context.max_cost)
            except BudgetExceeded:
                self._stats.failed_requests += 1
                raise

        attempts = 0
        capped = False
        errors: list[str] = []
        last_error: BaseException | None = None

        for index, config in enumerate(self._providers):
            policy = config.retry_policy
            for retry in policy.attempts():
                if self.max_total_attempts is not None and attempts >= self.max_total_attempts:
                    capped = True
                    break
                check_cancelled(token)
                if retry == 0 and index > 0:
                    self._stats.fallbacks += 1
                    logger.info(f"Falling back to provider {config.name}")
                attempts += 1
                started = time.monotonic()
                try:
                    response = await self._attempt(config, prompt, context, token)
                except (asyncio.CancelledError, E2EAgentError):
                    raise
                except Exception as e:
                    last_error = e
                    errors.append(f"{config.name}: {e}")
                    logger.warning(
                        f"Provider {config.name} attempt {retry + 1}/{policy.max_attempts} "
                        f"failed: {e}"
                    )
                    if not policy.is_last(retry):
                        await policy.sleep(retry, token)
                    continue

                return await self._finish(config, response, started, context, cache_key)

            if capped:
                logger.info(f"Stopping after {attempts} attempts (max_total_attempts)")
                break

        self._stats.failed_requests += 1
        error = AllProvidersFailed(attempts, last_error, errors)
        logger.error(str(error))
        raise error

    async def _finish(
        self,
        config: ProviderConfig,
        response: LLMResponse,
        started: float,
        context: LLMContext | None,
        cache_key: str | None,
    ) -> LLMResponse:
        latency_ms = (time.monotonic() - started) * 1000
        update: dict[str, Any] = {"latency_ms": latency_ms, "provider": config.name}

        if self.cost_tracker is not None:
            try:
                update["estimated_cost"] = await self.cost_tracker.track_request(
                    model=response.model,
                    provider=config.name,
                    input_tokens=response.usage.prompt_tokens,
                    output_tokens=response.usage.completion_tokens,
                    cached_tokens=response.usage.cached_tokens,
                    tags=context.tags if context else None,
                    latency_ms=latency_ms,
                )
            except BudgetExceeded:
                self._stats.failed_requests += 1
                raise

        response = response.model_copy(update=update)
        if cache_key is not None:
            await self.cache.set(cache_key, response)

        self._stats.successful_requests += 1
        logger.debug(f"Provider {config.name} answered in {latency_ms:.0f}ms")
        return response

    async def stream_generate(
        self, prompt: str, context: LLMContext | None = None
    ) -> AsyncIterator[str]:
        """Stream from the highest-priority backend only; errors propagate."""
        if not self._providers:
            raise AllProvidersFailed(0, None, ["No providers configured"])
        config = self._providers[0]
        logger.debug(f"Streaming from {config.name}")
        async for chunk in config.backend.stream_generate(prompt, context):
            yield chunk

    # =========================================================================
    # STATS
    # =========================================================================

    def stats(self) -> GatewayStats:
        return self._stats

    def get_stats(self) -> dict[str, Any]:
        """Counters plus cost and cache summaries."""
        data = self._stats.to_dict()
        if self.cost_tracker is not None:
            data["cost_summary"] = self.cost_tracker.get_summary().model_dump()
        if self.cache is not None:
            data["cache_stats"] = self.cache.stats().to_dict()
        return data

    def reset_stats(self) -> None:
        self._stats = GatewayStats()
