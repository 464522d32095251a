"""Model gateway - backends, prompt cache, and cost tracking."""

from e2e_agent.llm.backends import (
    AnthropicBackend,
    ChatMessage,
    LLMBackend,
    LLMContext,
    LLMResponse,
    StaticBackend,
    TokenUsage,
)
from e2e_agent.llm.cache import CacheEntry, CacheStats, PromptCache
from e2e_agent.llm.cost import (
    MODEL_PRICING,
    CostRecord,
    CostSummary,
    LLMCostTracker,
    calculate_cost,
    get_pricing,
)
from e2e_agent.llm.gateway import GatewayStats, ModelGateway, ProviderConfig

__all__ = [
    # Backends
    "LLMBackend",
    "AnthropicBackend",
    "StaticBackend",
    "ChatMessage",
    "LLMContext",
    "LLMResponse",
    "TokenUsage",
    # Cache
    "PromptCache",
    "CacheEntry",
    "CacheStats",
    # Cost
    "LLMCostTracker",
    "CostRecord",
    "CostSummary",
    "MODEL_PRICING",
    "calculate_cost",
    "get_pricing",
    # Gateway
    "ModelGateway",
    "ProviderConfig",
    "GatewayStats",
]
