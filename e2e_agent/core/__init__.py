"""Core module - configuration, errors, logging, retry primitives, and page context."""

from e2e_agent.core.config import Settings, clear_settings_cache, get_settings
from e2e_agent.core.exceptions import (
    AllProvidersFailed,
    BudgetExceeded,
    CycleDetected,
    DecompositionFailed,
    DuplicateNode,
    E2EAgentError,
    InvalidTransition,
    MalformedCommand,
    NodeNotFound,
    OperationCancelled,
    RefinementFailed,
    SelfHealExhausted,
)
from e2e_agent.core.logging import configure_logging
from e2e_agent.core.page import (
    TRUNCATION_MARKER,
    PageContextProvider,
    StaticPageContext,
    simplify_html,
    truncate_html,
)
from e2e_agent.core.retry import AttemptBudget, CancellationToken, RetryPolicy

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "clear_settings_cache",
    "configure_logging",
    # Page context
    "PageContextProvider",
    "StaticPageContext",
    "TRUNCATION_MARKER",
    "simplify_html",
    "truncate_html",
    # Retry
    "AttemptBudget",
    "CancellationToken",
    "RetryPolicy",
    # Errors
    "E2EAgentError",
    "MalformedCommand",
    "InvalidTransition",
    "CycleDetected",
    "NodeNotFound",
    "DuplicateNode",
    "BudgetExceeded",
    "AllProvidersFailed",
    "OperationCancelled",
    "DecompositionFailed",
    "RefinementFailed",
    "SelfHealExhausted",
]
