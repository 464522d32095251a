"""
Selector refinement - replace a single failing selector.

Narrower than whole-sequence refinement: the model sees the failing
selector, every alternative already tried, and a simplified page snapshot,
and answers with JSON describing one primary selector plus fallbacks.
"""

import json
from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from e2e_agent.core.exceptions import E2EAgentError, OperationCancelled, RefinementFailed
from e2e_agent.core.page import simplify_html
from e2e_agent.core.retry import AttemptBudget, CancellationToken
from e2e_agent.dsl.models import FallbackSelector, Selector, SelectorStrategy
from e2e_agent.dsl.tokenizer import strip_code_fences
from e2e_agent.llm.backends import LLMContext
from e2e_agent.llm.gateway import ModelGateway
from e2e_agent.prompts.builder import PromptBuilder


class SelectorCorrection(BaseModel):
    """A validated replacement selector."""

    model_config = ConfigDict(frozen=True)

    selector: Selector
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    reasoning: str = "No reasoning provided"


def extract_page_html(html: str) -> str:
    """Markup with scripts, styles, and inline styling removed."""
    return simplify_html(html, strip_inline_styles=True)


class SelectorRefinementService:
    """
    Ask the model for a better selector.

    Example:
        >>> service = SelectorRefinementService(gateway)
        >>> correction = await service.refine_selector(
        ...     Selector(strategy="css", value=".btn"), "Element not found", html
        ... )
        >>> correction.selector.to_dsl()
        'testid=checkout fallback=text=Checkout'
    """

    def __init__(
        self,
        gateway: ModelGateway,
        prompt_builder: PromptBuilder | None = None,
        temperature: float = 0.2,
        max_tokens: int = 500,
        model: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.model = model

    async def refine_selector(
        self,
        selector: Selector,
        error: str,
        html: str,
        page_url: str = "",
        action: str = "",
        element_description: str = "",
        budget: AttemptBudget | None = None,
        token: CancellationToken | None = None,
    ) -> SelectorCorrection:
        """
        Request and validate a replacement for ``selector``.

        Args:
            selector: The failing selector, fallbacks included.
            error: Execution error text.
            html: Raw page markup; simplified before prompting.
            page_url: URL at failure time.
            action: Command type that failed, e.g. ``click``.
            element_description: What the element is supposed to be.
            budget: Shared per-failure correction budget; one unit per call.
            token: Optional cancellation token.

        Raises:
            RefinementFailed: Budget spent, model call failed, or the
                response was unusable.
        """
        if budget is not None and not budget.consume("selector refinement"):
            raise RefinementFailed(
                f"Refinement failed: attempt budget of {budget.limit} calls exhausted"
            )

        prompt = self.prompt_builder.build_selector_refinement_prompt(
            selector,
            error,
            extract_page_html(html),
            page_url=page_url,
            action=action,
            element_description=element_description,
        )
        context = LLMContext(
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            system_prompt=self.prompt_builder.build_selector_refinement_system_prompt(),
            enable_cache=False,
            tags=["selector-refinement"],
        )

        try:
            response = await self.gateway.generate(prompt, context, token)
        except OperationCancelled:
            raise
        except E2EAgentError as e:
            raise RefinementFailed(f"Refinement failed: {e}") from e

        correction = self.parse_response(response.content)
        logger.info(
            f"Selector {selector} refined to {correction.selector} "
            f"(confidence {correction.confidence:.2f})"
        )
        return correction

    def parse_response(self, content: str) -> SelectorCorrection:
        """
        Parse and validate the model's JSON answer.

        An unrecognized primary strategy rejects the whole correction; an
        unrecognized fallback strategy drops just that fallback.

        Raises:
            RefinementFailed: Invalid JSON, missing fields, or invalid primary.
        """
        try:
            data = json.loads(strip_code_fences(content))
        except json.JSONDecodeError as e:
            raise RefinementFailed(f"Failed to parse LLM response: {e}") from e
        if not isinstance(data, dict):
            raise RefinementFailed("Failed to parse LLM response: expected a JSON object")

        primary = data.get("primary")
        if not isinstance(primary, dict) or not primary.get("strategy") or not primary.get("value"):
            raise RefinementFailed("Missing required fields: primary.strategy and primary.value")

        if not SelectorStrategy.is_valid(primary["strategy"]):
            raise RefinementFailed(f"Invalid primary selector strategy: {primary['strategy']}")

        fallbacks = [
            FallbackSelector(strategy=fb["strategy"], value=fb["value"])
            for fb in self._valid_fallbacks(data.get("fallbacks") or [])
        ]

        return SelectorCorrection(
            selector=Selector(
                strategy=primary["strategy"],
                value=str(primary["value"]),
                fallbacks=tuple(fallbacks),
                metadata={"source": "refinement"},
            ),
            confidence=self._clamp(data.get("confidence", 0.5)),
            reasoning=self._reasoning(data.get("reasoning")),
        )

    @staticmethod
    def _valid_fallbacks(raw: Any) -> list[dict[str, Any]]:
        valid: list[dict[str, Any]] = []
        if not isinstance(raw, list):
            logger.warning("Ignoring non-list fallbacks in selector refinement response")
            return valid
        for entry in raw:
            if not isinstance(entry, dict) or not entry.get("value"):
                logger.warning(f"Dropping malformed fallback: {entry!r}")
                continue
            if not SelectorStrategy.is_valid(entry.get("strategy")):
                logger.warning(f"Dropping fallback with invalid strategy: {entry.get('strategy')}")
                continue
            valid.append({"strategy": entry["strategy"], "value": str(entry["value"])})
        return valid

    @staticmethod
    def _reasoning(value: Any) -> str:
        if isinstance(value, str) and value.strip():
            return value
        return "No reasoning provided"

    @staticmethod
    def _clamp(value: Any) -> float:
        try:
            confidence = float(value)
        except (TypeError, ValueError):
            return 0.5
        return min(1.0, max(0.0, confidence))
