"""Self-healing - failure analysis, refinement, and the retry loop."""

from e2e_agent.healing.failure_analyzer import FailureAnalyzer, FailureCategory, FailureContext
from e2e_agent.healing.orchestrator import SelfHealingOrchestrator, SelfHealingResult
from e2e_agent.healing.refinement import RefinementEngine
from e2e_agent.healing.selector_refinement import (
    SelectorCorrection,
    SelectorRefinementService,
    extract_page_html,
)

__all__ = [
    # Analysis
    "FailureAnalyzer",
    "FailureCategory",
    "FailureContext",
    # Refinement
    "RefinementEngine",
    "SelectorRefinementService",
    "SelectorCorrection",
    "extract_page_html",
    # Loop
    "SelfHealingOrchestrator",
    "SelfHealingResult",
]
