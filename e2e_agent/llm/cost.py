"""Cost accounting and budget enforcement for model calls."""

import asyncio
import json
from collections import defaultdict
from datetime import datetime
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from e2e_agent.core.exceptions import BudgetExceeded


class ModelPricing(BaseModel):
    """USD per million tokens."""

    model_config = ConfigDict(frozen=True)

    input_per_1m: float
    output_per_1m: float
    cached_input_per_1m: float | None = None


MODEL_PRICING: dict[str, ModelPricing] = {
    # OpenAI
    "gpt-4": ModelPricing(input_per_1m=30.0, output_per_1m=60.0),
    "gpt-4-turbo": ModelPricing(input_per_1m=10.0, output_per_1m=30.0),
    "gpt-3.5-turbo": ModelPricing(input_per_1m=0.5, output_per_1m=1.5),
    # Anthropic
    "claude-3-opus": ModelPricing(input_per_1m=15.0, output_per_1m=75.0, cached_input_per_1m=1.5),
    "claude-3-sonnet": ModelPricing(input_per_1m=3.0, output_per_1m=15.0, cached_input_per_1m=0.3),
    "claude-3-haiku": ModelPricing(
        input_per_1m=0.25, output_per_1m=1.25, cached_input_per_1m=0.025
    ),
    # DeepSeek
    "deepseek-chat": ModelPricing(input_per_1m=0.14, output_per_1m=0.28),
    "deepseek-coder": ModelPricing(input_per_1m=0.14, output_per_1m=0.28),
}

# Unknown models are priced like the most expensive common model.
DEFAULT_PRICING_MODEL = "gpt-4"


def get_pricing(model: str) -> ModelPricing:
    """Look up pricing by exact name, then by the longest matching prefix.

    Dated releases such as ``claude-3-haiku-20240307`` resolve to their family.
    Unknown models fall back to ``gpt-4`` pricing rather than raising.
    """
    if model in MODEL_PRICING:
        return MODEL_PRICING[model]
    matches = [name for name in MODEL_PRICING if model.startswith(name)]
    if matches:
        return MODEL_PRICING[max(matches, key=len)]
    logger.debug(f"No pricing for {model}, using {DEFAULT_PRICING_MODEL} rates")
    return MODEL_PRICING[DEFAULT_PRICING_MODEL]


def calculate_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    cached_tokens: int = 0,
) -> float:
    """Monetary cost of one call in USD."""
    pricing = get_pricing(model)
    cost = (input_tokens / 1_000_000) * pricing.input_per_1m
    cost += (output_tokens / 1_000_000) * pricing.output_per_1m
    if cached_tokens and pricing.cached_input_per_1m is not None:
        cost += (cached_tokens / 1_000_000) * pricing.cached_input_per_1m
    return cost


class CostRecord(BaseModel):
    """One charged model call. Append-only."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    model: str
    provider: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_tokens: int = 0
    cost: float = 0.0
    tags: list[str] = Field(default_factory=list)
    latency_ms: float | None = None


class CostSummary(BaseModel):
    """Aggregated spend."""

    total_cost: float = 0.0
    total_requests: int = 0
    total_tokens: int = 0
    avg_cost_per_request: float = 0.0
    avg_tokens_per_request: float = 0.0
    by_model: dict[str, float] = Field(default_factory=dict)
    by_provider: dict[str, float] = Field(default_factory=dict)
    by_tag: dict[str, float] = Field(default_factory=dict)
    cached_tokens_saved: int = 0
    cache_savings: float = 0.0


class LLMCostTracker:
    """
    Track spend per call and enforce an optional budget.

    ``track_request`` checks and charges under one lock so concurrent callers
    cannot jointly overshoot the budget.

    Example:
        >>> tracker = LLMCostTracker(budget_limit=1.0)
        >>> await tracker.track_request("claude-3-haiku", "anthropic", 1000, 200)
        0.0005
        >>> tracker.get_remaining_budget()
        0.9995
    """

    def __init__(self, budget_limit: float | None = None) -> None:
        self.budget_limit = budget_limit
        self._records: list[CostRecord] = []
        self._total = 0.0
        self._lock = asyncio.Lock()

    def set_budget(self, budget_limit: float | None) -> None:
        self.budget_limit = budget_limit

    def get_total_cost(self) -> float:
        return self._total

    def get_remaining_budget(self) -> float | None:
        """Remaining USD, or ``None`` when no budget is set."""
        if self.budget_limit is None:
            return None
        return max(0.0, self.budget_limit - self._total)

    def ensure_budget(self, required: float) -> None:
        """Fail fast if less than ``required`` USD remains.

        Raises:
            BudgetExceeded: If the remaining budget is below ``required``.
        """
        remaining = self.get_remaining_budget()
        if remaining is not None and remaining < required:
            raise BudgetExceeded(remaining, required)

    async def track_request(
        self,
        model: str,
        provider: str,
        input_tokens: int,
        output_tokens: int,
        cached_tokens: int = 0,
        tags: list[str] | None = None,
        latency_ms: float | None = None,
    ) -> float:
        """
        Charge one call.

        Returns:
            The cost of the call in USD.

        Raises:
            BudgetExceeded: If the charge would exceed the budget. Nothing is
                recorded in that case.
        """
        cost = calculate_cost(model, input_tokens, output_tokens, cached_tokens)

        async with self._lock:
            if self.budget_limit is not None and self._total + cost > self.budget_limit:
                logger.error(
                    f"Budget limit exceeded: current ${self._total:.4f} + "
                    f"request ${cost:.4f} > limit ${self.budget_limit:.4f}"
                )
                raise BudgetExceeded(self.budget_limit - self._total, cost)

            self._records.append(
                CostRecord(
                    model=model,
                    provider=provider,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                    cached_tokens=cached_tokens,
                    cost=cost,
                    tags=list(tags or []),
                    latency_ms=latency_ms,
                )
            )
            self._total += cost

        logger.debug(f"Charged ${cost:.6f} for {provider}/{model}")
        return cost

    def get_summary(self) -> CostSummary:
        """Aggregate spend by model, provider, and tag."""
        if not self._records:
            return CostSummary()

        by_model: dict[str, float] = defaultdict(float)
        by_provider: dict[str, float] = defaultdict(float)
        by_tag: dict[str, float] = defaultdict(float)
        cached_saved = 0
        savings = 0.0

        for record in self._records:
            by_model[record.model] += record.cost
            by_provider[record.provider] += record.cost
            for tag in record.tags:
                by_tag[tag] += record.cost
            if record.cached_tokens:
                cached_saved += record.cached_tokens
                pricing = get_pricing(record.model)
                if pricing.cached_input_per_1m is not None:
                    savings += (record.cached_tokens / 1_000_000) * (
                        pricing.input_per_1m - pricing.cached_input_per_1m
                    )

        count = len(self._records)
        tokens = sum(r.input_tokens + r.output_tokens for r in self._records)
        return CostSummary(
            total_cost=self._total,
            total_requests=count,
            total_tokens=tokens,
            avg_cost_per_request=self._total / count,
            avg_tokens_per_request=tokens / count,
            by_model=dict(by_model),
            by_provider=dict(by_provider),
            by_tag=dict(by_tag),
            cached_tokens_saved=cached_saved,
            cache_savings=savings,
        )

    def get_records(
        self,
        model: str | None = None,
        provider: str | None = None,
        tags: list[str] | None = None,
        since: datetime | None = None,
    ) -> list[CostRecord]:
        """Records matching every given filter."""
        records = self._records
        if model:
            records = [r for r in records if r.model == model]
        if provider:
            records = [r for r in records if r.provider == provider]
        if tags:
            records = [r for r in records if any(t in r.tags for t in tags)]
        if since:
            records = [r for r in records if r.timestamp >= since]
        return list(records)

    def export_json(self) -> str:
        """Serialize summary and records."""
        payload: dict[str, Any] = {
            "summary": self.get_summary().model_dump(),
            "records": [r.model_dump(mode="json") for r in self._records],
            "budget_limit": self.budget_limit,
            "remaining_budget": self.get_remaining_budget(),
        }
        return json.dumps(payload, indent=2)

    def reset(self) -> None:
        self._records.clear()
        self._total = 0.0
