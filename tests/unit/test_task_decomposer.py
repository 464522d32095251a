"""Unit tests for TaskDecomposer and predicate mapping."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from e2e_agent.core.exceptions import CycleDetected, DecompositionFailed, NodeNotFound
from e2e_agent.decomposition.task_decomposer import (
    PredicateType,
    TaskDecomposer,
    ValidationPredicate,
    predicate_to_command,
)
from e2e_agent.dsl.models import Command, CommandType, Subtask, Task


def make_subtask(subtask_id: str, dependencies: set[str] | None = None) -> Subtask:
    return Subtask(
        id=subtask_id,
        description=f"Subtask {subtask_id}",
        commands=[Command(type="navigate", params={"url": "/"})],
        dependencies=dependencies or set(),
    )


@pytest.fixture
def task():
    return Task(id="checkout", description="Buy a lamp")


@pytest.fixture
def engine():
    engine = MagicMock()

    async def decompose(instruction, subtask_id=None, token=None):
        return Subtask(
            id=subtask_id,
            description=instruction,
            commands=[Command(type="navigate", params={"url": "/"})],
        )

    engine.decompose = AsyncMock(side_effect=decompose)
    return engine


class TestPredicateMapping:
    """Tests for predicate_to_command."""

    def test_url_contains_is_escaped(self):
        command = predicate_to_command(
            ValidationPredicate(type=PredicateType.URL_CONTAINS, value="/orders?id=1")
        )

        assert command.type == CommandType.ASSERT_URL
        assert command.params == {"pattern": r"/orders\?id=1"}

    @pytest.mark.parametrize(
        "kind,expected",
        [
            (PredicateType.ELEMENT_EXISTS, CommandType.ASSERT_VISIBLE),
            (PredicateType.ELEMENT_VISIBLE, CommandType.ASSERT_VISIBLE),
            (PredicateType.ELEMENT_NOT_EXISTS, CommandType.ASSERT_HIDDEN),
            (PredicateType.ELEMENT_HIDDEN, CommandType.ASSERT_HIDDEN),
        ],
    )
    def test_element_predicates(self, kind, expected):
        command = predicate_to_command(ValidationPredicate(type=kind, value="#cart"))

        assert command.type == expected
        assert command.selector.to_dsl() == "css=#cart"

    def test_text_predicates(self):
        contains = predicate_to_command(
            ValidationPredicate(type=PredicateType.TEXT_CONTAINS, value="Thank you")
        )
        equals = predicate_to_command(
            ValidationPredicate(type=PredicateType.TEXT_EQUALS, value="Thank you")
        )

        assert contains.type == CommandType.ASSERT_TEXT
        assert contains.selector.value == "body"
        assert contains.params == {"value": "Thank you"}
        assert equals.params == {"value": "Thank you", "exact": "true"}


class TestTaskDecomposer:
    """Tests for TaskDecomposer."""

    @pytest.mark.asyncio
    async def test_decompose_task(self, engine, task):
        subtasks = await TaskDecomposer(engine).decompose_task(task)

        assert [s.id for s in subtasks] == ["checkout-subtask-1"]
        engine.decompose.assert_awaited_once_with(
            "Buy a lamp", subtask_id="checkout-subtask-1", token=None
        )

    @pytest.mark.asyncio
    async def test_steps_are_chained(self, engine, task):
        """Test that every step depends on the step before it."""
        subtasks = await TaskDecomposer(engine).decompose_task_with_steps(
            task, ["Open the cart", "Check out", "Confirm"]
        )

        assert [s.id for s in subtasks] == [
            "checkout-step-1",
            "checkout-step-2",
            "checkout-step-3",
        ]
        assert subtasks[0].dependencies == set()
        assert subtasks[1].dependencies == {"checkout-step-1"}
        assert subtasks[2].dependencies == {"checkout-step-2"}

    @pytest.mark.asyncio
    async def test_step_failure_raises(self, engine, task):
        engine.decompose.side_effect = DecompositionFailed("Planning failed: boom")

        with pytest.raises(DecompositionFailed):
            await TaskDecomposer(engine).decompose_task_with_steps(task, ["Open the cart"])

    @pytest.mark.asyncio
    async def test_continue_on_error_skips_step(self, task):
        engine = MagicMock()
        engine.decompose = AsyncMock(
            side_effect=[
                make_subtask("checkout-step-1"),
                DecompositionFailed("Planning failed: boom"),
                make_subtask("checkout-step-3"),
            ]
        )

        subtasks = await TaskDecomposer(engine).decompose_task_with_steps(
            task, ["Open the cart", "Check out", "Confirm"], continue_on_error=True
        )

        assert [s.id for s in subtasks] == ["checkout-step-1", "checkout-step-3"]
        assert subtasks[1].dependencies == {"checkout-step-1"}

    def test_validation_subtask(self, engine, task):
        predicates = [
            ValidationPredicate(type=PredicateType.URL_CONTAINS, value="/thanks"),
            ValidationPredicate(type=PredicateType.ELEMENT_VISIBLE, value=".receipt"),
        ]

        subtask = TaskDecomposer(engine).decompose_into_validation_subtask(task, predicates)

        assert subtask.id == "checkout-validation"
        assert subtask.description == "Validate: Buy a lamp"
        assert [c.type for c in subtask.commands] == [
            CommandType.ASSERT_URL,
            CommandType.ASSERT_VISIBLE,
        ]

    def test_validation_subtask_without_predicates(self, engine, task):
        subtask = TaskDecomposer(engine).decompose_into_validation_subtask(task, [])

        assert subtask.commands[0].type == CommandType.WAIT


class TestBuildGraph:
    """Tests for TaskDecomposer.build_graph."""

    def test_dependencies_become_edges(self):
        subtasks = [
            make_subtask("login"),
            make_subtask("search", {"login"}),
            make_subtask("profile", {"login"}),
            make_subtask("checkout", {"search", "profile"}),
        ]

        graph = TaskDecomposer.build_graph(subtasks)

        assert graph.get_waves() == [["login"], ["search", "profile"], ["checkout"]]
        assert graph.get_node("checkout").data.id == "checkout"

    def test_unknown_dependency(self):
        with pytest.raises(NodeNotFound):
            TaskDecomposer.build_graph([make_subtask("a", {"ghost"})])

    def test_cycle(self):
        with pytest.raises(CycleDetected):
            TaskDecomposer.build_graph([make_subtask("a", {"b"}), make_subtask("b", {"a"})])
