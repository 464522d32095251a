"""
Integration tests for the decompose, execute, and heal flow.

Everything runs offline: a scripted backend stands in for the model and a
static page snapshot stands in for the browser.
"""

import pytest

from e2e_agent.core.page import StaticPageContext
from e2e_agent.core.retry import AttemptBudget, RetryPolicy
from e2e_agent.decomposition.engine import DecompositionEngine
from e2e_agent.decomposition.task_decomposer import (
    PredicateType,
    TaskDecomposer,
    ValidationPredicate,
)
from e2e_agent.dsl.models import CommandType, Selector, Task
from e2e_agent.execution.executor import (
    GraphExecutor,
    StaticPageExecutor,
    TestOrchestrator,
)
from e2e_agent.healing.orchestrator import SelfHealingOrchestrator
from e2e_agent.healing.refinement import RefinementEngine
from e2e_agent.healing.selector_refinement import SelectorRefinementService
from e2e_agent.llm.backends import StaticBackend
from e2e_agent.llm.cache import PromptCache
from e2e_agent.llm.cost import LLMCostTracker
from e2e_agent.llm.gateway import ModelGateway

# =============================================================================
# TEST FIXTURES
# =============================================================================


def shop_responder(prompt: str, context) -> str:
    """Answer like a model that knows the products page."""
    if prompt.startswith("Break down this test instruction"):
        return "1. Open the products page\n2. Buy the lamp"
    if "STEP: Open the products page" in prompt:
        return "navigate url=https://shop.test/products"
    if "STEP: Buy the lamp" in prompt:
        return "click text=Buy"
    if prompt.startswith("REFINE the following command"):
        return "click testid=buy-lamp"
    return "COMPLETE"


@pytest.fixture
def products_page(products_html):
    return StaticPageContext(products_html, url="https://shop.test/products")


@pytest.fixture
def gateway():
    gateway = ModelGateway(cache=PromptCache(), cost_tracker=LLMCostTracker(budget_limit=5.0))
    gateway.add_provider(
        StaticBackend(name="flaky", failures=100, error="overloaded"),
        name="flaky",
        priority=0,
        retry_policy=RetryPolicy.no_backoff(1),
    )
    gateway.add_provider(
        StaticBackend(shop_responder, name="scripted", model="claude-3-haiku"),
        name="scripted",
        priority=1,
        retry_policy=RetryPolicy.no_backoff(1),
    )
    return gateway


# =============================================================================
# FLOW TESTS
# =============================================================================


@pytest.mark.integration
class TestDecomposeExecuteFlow:
    """Decomposition feeding graph execution."""

    @pytest.mark.asyncio
    async def test_decomposed_task_executes(self, gateway, products_page):
        """Test that validation refinement yields commands that run cleanly."""
        engine = DecompositionEngine(gateway, page=products_page)
        decomposer = TaskDecomposer(engine)
        task = Task(id="buy-lamp", description="Buy the lamp")

        subtasks = await decomposer.decompose_task(task)
        validation = decomposer.decompose_into_validation_subtask(
            task,
            [ValidationPredicate(type=PredicateType.ELEMENT_EXISTS, value=".product")],
        )
        validation.dependencies.add(subtasks[0].id)
        graph = decomposer.build_graph([*subtasks, validation])

        executor = GraphExecutor(TestOrchestrator(StaticPageExecutor(products_page)))
        result = await executor.execute_graph(graph)

        commands = subtasks[0].commands
        assert [c.type for c in commands] == [CommandType.NAVIGATE, CommandType.CLICK]
        assert commands[1].selector.value == "buy-lamp"
        # ".product" matches three rows, so the validation subtask fails
        assert result.completed == ["buy-lamp-subtask-1"]
        assert result.failed == ["buy-lamp-validation"]

        stats = gateway.get_stats()
        assert stats["fallbacks"] >= 1
        assert stats["cost_summary"]["total_cost"] > 0

    @pytest.mark.asyncio
    async def test_repeated_decomposition_hits_cache(self, gateway, products_page):
        engine = DecompositionEngine(gateway, page=products_page, temperature=0.0)

        first = await engine.decompose("Buy the lamp", subtask_id="first")
        second = await engine.decompose("Buy the lamp", subtask_id="second")

        assert first.to_dsl() == second.to_dsl()
        assert gateway.get_stats()["cache_hits"] >= 3


@pytest.mark.integration
class TestHealFlow:
    """Execution failures repaired by self-healing."""

    @pytest.mark.asyncio
    async def test_ambiguous_command_is_healed(self, products_page):
        refinement_gateway = ModelGateway()
        refinement_gateway.add_provider(
            StaticBackend(["navigate url=https://shop.test/products\nclick testid=buy-lamp"]),
            name="static",
        )
        healer = SelfHealingOrchestrator(
            RefinementEngine(refinement_gateway),
            StaticPageExecutor(products_page),
            page=products_page,
        )

        result = await healer.refine_test(
            "navigate url=https://shop.test/products\nclick text=Buy", "buy lamp"
        )

        assert result.success
        assert result.attempts == 2
        assert result.final_content.endswith("click testid=buy-lamp")
        assert result.failure_history[0].command_index == 1

    @pytest.mark.asyncio
    async def test_selector_refinement_shares_budget(self, products_page, products_html):
        """Test that selector corrections and the heal loop draw on one budget."""
        backend = StaticBackend(
            [
                '{"primary": {"strategy": "testid", "value": "buy-lamp"}, "confidence": 0.8}',
            ]
        )
        selector_gateway = ModelGateway()
        selector_gateway.add_provider(backend, name="static")
        service = SelectorRefinementService(selector_gateway)
        budget = AttemptBudget(1)

        correction = await service.refine_selector(
            Selector(strategy="text", value="Buy"),
            'Text selector "Buy" matches multiple elements (3 found)',
            products_html,
            action="click",
            budget=budget,
        )
        healer = SelfHealingOrchestrator(
            RefinementEngine(selector_gateway),
            StaticPageExecutor(products_page),
            page=products_page,
        )
        result = await healer.refine_test("click text=Buy", "buy lamp", budget=budget)

        assert correction.selector.to_dsl() == "testid=buy-lamp"
        assert not result.success
        assert result.budget_exhausted
        assert len(backend.calls) == 1
