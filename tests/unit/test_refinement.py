"""Unit tests for whole-sequence and selector refinement."""

import json

import pytest

from e2e_agent.core.exceptions import RefinementFailed
from e2e_agent.core.retry import AttemptBudget
from e2e_agent.dsl.models import CommandType, Selector, SelectorStrategy
from e2e_agent.healing.failure_analyzer import FailureCategory, FailureContext
from e2e_agent.healing.refinement import RefinementEngine
from e2e_agent.healing.selector_refinement import (
    SelectorRefinementService,
    extract_page_html,
)


@pytest.fixture
def failure():
    return FailureContext(
        error='Text selector "Buy" matches multiple elements (3 found)',
        failed_command="click text=Buy",
        command_index=0,
        failure_category=FailureCategory.SELECTOR_NOT_FOUND,
    )


def correction(**overrides) -> str:
    data = {
        "primary": {"strategy": "testid", "value": "buy-lamp"},
        "fallbacks": [{"strategy": "css", "value": ".product:first-child button"}],
        "confidence": 0.9,
        "reasoning": "The lamp row has a unique test id",
    }
    data.update(overrides)
    return json.dumps(data)


class TestRefinementEngine:
    """Tests for RefinementEngine."""

    @pytest.mark.asyncio
    async def test_refine_returns_commands(self, make_gateway, failure):
        gateway, backend = make_gateway(
            ["```\nnavigate url=https://shop.test/products\nclick testid=buy-lamp\n```"]
        )
        engine = RefinementEngine(gateway)

        commands = await engine.refine("checkout", "click text=Buy", failure)

        assert [c.type for c in commands] == [CommandType.NAVIGATE, CommandType.CLICK]
        assert commands[1].selector.value == "buy-lamp"
        context = backend.contexts[0]
        assert context.enable_cache is False
        assert context.tags == ["healing", "checkout"]
        assert "click text=Buy" in backend.calls[0]

    @pytest.mark.asyncio
    async def test_unparseable_lines_are_dropped(self, make_gateway, failure):
        gateway, _ = make_gateway(["Here you go:\nclick testid=buy-lamp\nHope that helps"])

        commands = await RefinementEngine(gateway).refine("checkout", "click text=Buy", failure)

        assert len(commands) == 1

    @pytest.mark.asyncio
    async def test_no_valid_commands(self, make_gateway, failure):
        gateway, _ = make_gateway(["I am unable to help with that."])

        with pytest.raises(RefinementFailed, match="contained no valid commands"):
            await RefinementEngine(gateway).refine("checkout", "click text=Buy", failure)

    @pytest.mark.asyncio
    async def test_gateway_failure(self, make_gateway, failure):
        gateway, _ = make_gateway(["unused"], failures=3, error="service unavailable")

        with pytest.raises(RefinementFailed, match="Refinement failed: .*service unavailable"):
            await RefinementEngine(gateway).refine("checkout", "click text=Buy", failure)

    @pytest.mark.asyncio
    async def test_previous_attempts_in_prompt(self, make_gateway, failure):
        gateway, backend = make_gateway(["click testid=buy-lamp"])
        earlier = failure.model_copy(update={"error": "Element not found: .buy"})

        await RefinementEngine(gateway).refine(
            "checkout", "click text=Buy", failure, previous_attempts=[earlier]
        )

        assert "Element not found: .buy" in backend.calls[0]


class TestSelectorRefinementService:
    """Tests for SelectorRefinementService."""

    @pytest.fixture
    def selector(self):
        return Selector(strategy="text", value="Buy")

    @pytest.mark.asyncio
    async def test_refine_selector(self, make_gateway, selector, products_html):
        gateway, backend = make_gateway([correction()])
        service = SelectorRefinementService(gateway)

        result = await service.refine_selector(
            selector,
            "matches multiple elements",
            products_html,
            page_url="https://shop.test/products",
            action="click",
        )

        assert result.selector.strategy == SelectorStrategy.TESTID
        assert result.selector.value == "buy-lamp"
        assert result.selector.fallbacks[0].value == ".product:first-child button"
        assert result.selector.metadata == {"source": "refinement"}
        assert result.confidence == 0.9
        assert backend.contexts[0].temperature == 0.2
        assert backend.contexts[0].enable_cache is False

    def test_invalid_fallback_is_dropped(self, make_gateway):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)
        content = correction(
            fallbacks=[
                {"strategy": "shadow", "value": "#buy"},
                {"strategy": "text", "value": "Buy lamp"},
                {"strategy": "css"},
            ]
        )

        result = service.parse_response(content)

        assert [f.value for f in result.selector.fallbacks] == ["Buy lamp"]

    def test_invalid_primary_rejected(self, make_gateway):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)

        with pytest.raises(RefinementFailed, match="Invalid primary selector strategy: shadow"):
            service.parse_response(correction(primary={"strategy": "shadow", "value": "#buy"}))

    def test_missing_primary(self, make_gateway):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)

        with pytest.raises(RefinementFailed, match="Missing required fields"):
            service.parse_response(json.dumps({"confidence": 0.4}))

    @pytest.mark.parametrize("strategy", [["css"], {"kind": "css"}, 3])
    def test_non_string_primary_strategy_rejected(self, make_gateway, strategy):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)

        with pytest.raises(RefinementFailed, match="Invalid primary selector strategy"):
            service.parse_response(correction(primary={"strategy": strategy, "value": "#x"}))

    def test_non_string_fallback_strategy_dropped(self, make_gateway):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)
        content = correction(
            fallbacks=[
                {"strategy": {"a": 1}, "value": "#buy"},
                {"strategy": ["css"], "value": "#buy"},
                {"strategy": "css", "value": "#buy"},
            ],
            reasoning={"why": "unique"},
        )

        result = service.parse_response(content)

        assert [f.value for f in result.selector.fallbacks] == ["#buy"]
        assert result.reasoning == "No reasoning provided"

    def test_invalid_json(self, make_gateway):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)

        with pytest.raises(RefinementFailed, match="Failed to parse LLM response"):
            service.parse_response("testid=buy-lamp")

    def test_defaults_and_clamping(self, make_gateway):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)

        clamped = service.parse_response(correction(confidence=7, reasoning=""))
        missing = service.parse_response(
            json.dumps({"primary": {"strategy": "css", "value": "#buy"}})
        )

        assert clamped.confidence == 1.0
        assert clamped.reasoning == "No reasoning provided"
        assert missing.confidence == 0.5
        assert missing.selector.fallbacks == ()

    def test_fenced_json(self, make_gateway):
        gateway, _ = make_gateway([])
        service = SelectorRefinementService(gateway)

        result = service.parse_response(f"```json\n{correction()}\n```")

        assert result.selector.value == "buy-lamp"

    @pytest.mark.asyncio
    async def test_budget_exhausted(self, make_gateway, selector, products_html):
        """Test that a spent budget stops the call before reaching the model."""
        gateway, backend = make_gateway([correction()])
        service = SelectorRefinementService(gateway)
        budget = AttemptBudget(1)

        await service.refine_selector(selector, "error", products_html, budget=budget)
        with pytest.raises(RefinementFailed, match="attempt budget of 1 calls exhausted"):
            await service.refine_selector(selector, "error", products_html, budget=budget)
        assert len(backend.calls) == 1

    def test_extract_page_html(self):
        html = '<html><head><script>x()</script></head><body><p style="a">Hi</p></body></html>'

        assert extract_page_html(html) == "<body><p>Hi</p></body>"
