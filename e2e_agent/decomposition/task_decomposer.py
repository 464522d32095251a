"""
Task-level decomposition.

Splits a :class:`Task` into subtasks through the decomposition engine,
turns declarative success predicates into assertion subtasks, and builds the
dependency graph the executors run.
"""

import re
from enum import Enum

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from e2e_agent.core.exceptions import DecompositionFailed
from e2e_agent.core.retry import CancellationToken
from e2e_agent.decomposition.engine import DecompositionEngine
from e2e_agent.dsl.models import (
    Command,
    CommandType,
    Selector,
    SelectorStrategy,
    Subtask,
    Task,
    noop_command,
)
from e2e_agent.graph.dag import DirectedAcyclicGraph


class PredicateType(str, Enum):
    """Declarative checks a task can require after its steps run."""

    URL_CONTAINS = "url_contains"
    ELEMENT_EXISTS = "element_exists"
    ELEMENT_VISIBLE = "element_visible"
    ELEMENT_NOT_EXISTS = "element_not_exists"
    ELEMENT_HIDDEN = "element_hidden"
    TEXT_CONTAINS = "text_contains"
    TEXT_EQUALS = "text_equals"


class ValidationPredicate(BaseModel):
    """One success condition, e.g. ``url_contains /dashboard``."""

    model_config = ConfigDict(frozen=True)

    type: PredicateType
    value: str = Field(..., min_length=1, description="URL fragment, CSS selector, or text")
    description: str | None = None


def predicate_to_command(predicate: ValidationPredicate) -> Command:
    """Map a predicate to the assertion that checks it."""
    kind = predicate.type
    value = predicate.value

    if kind == PredicateType.URL_CONTAINS:
        return Command(type=CommandType.ASSERT_URL, params={"pattern": re.escape(value)})
    if kind in (PredicateType.ELEMENT_EXISTS, PredicateType.ELEMENT_VISIBLE):
        return Command(
            type=CommandType.ASSERT_VISIBLE,
            selector=Selector(strategy=SelectorStrategy.CSS, value=value),
        )
    if kind in (PredicateType.ELEMENT_NOT_EXISTS, PredicateType.ELEMENT_HIDDEN):
        return Command(
            type=CommandType.ASSERT_HIDDEN,
            selector=Selector(strategy=SelectorStrategy.CSS, value=value),
        )

    params: dict[str, str] = {"value": value}
    if kind == PredicateType.TEXT_EQUALS:
        params["exact"] = "true"
    return Command(
        type=CommandType.ASSERT_TEXT,
        selector=Selector(strategy=SelectorStrategy.CSS, value="body"),
        params=params,
    )


class TaskDecomposer:
    """
    Decompose tasks into subtasks and dependency graphs.

    Example:
        >>> decomposer = TaskDecomposer(engine)
        >>> subtasks = await decomposer.decompose_task_with_steps(
        ...     task, ["Open the cart", "Check out"]
        ... )
        >>> graph = decomposer.build_graph(subtasks)
        >>> graph.topological_sort()
        ['checkout-step-1', 'checkout-step-2']
    """

    def __init__(self, engine: DecompositionEngine) -> None:
        self.engine = engine

    async def decompose_task(
        self,
        task: Task,
        token: CancellationToken | None = None,
    ) -> list[Subtask]:
        """Decompose the whole task description into one subtask."""
        subtask = await self.engine.decompose(
            task.description, subtask_id=f"{task.id}-subtask-1", token=token
        )
        return [subtask]

    async def decompose_task_with_steps(
        self,
        task: Task,
        steps: list[str],
        continue_on_error: bool = False,
        token: CancellationToken | None = None,
    ) -> list[Subtask]:
        """
        Decompose each step into its own subtask, chained in order.

        Args:
            task: Parent task; subtask ids are ``{task.id}-step-{n}``.
            steps: Step instructions in execution order.
            continue_on_error: Skip steps that fail to decompose instead of raising.
            token: Optional cancellation token.

        Raises:
            DecompositionFailed: A step failed and ``continue_on_error`` is False.
        """
        subtasks: list[Subtask] = []
        for number, step in enumerate(steps, start=1):
            subtask_id = f"{task.id}-step-{number}"
            try:
                subtask = await self.engine.decompose(step, subtask_id=subtask_id, token=token)
            except DecompositionFailed as e:
                if not continue_on_error:
                    raise
                logger.warning(f"Skipping step {number} of {task.id}: {e}")
                continue

            if subtasks:
                subtask.dependencies.add(subtasks[-1].id)
            subtasks.append(subtask)

        logger.info(f"Decomposed {task.id} into {len(subtasks)}/{len(steps)} subtasks")
        return subtasks

    def decompose_into_validation_subtask(
        self,
        task: Task,
        predicates: list[ValidationPredicate],
    ) -> Subtask:
        """Build ``{task.id}-validation`` with one assertion per predicate."""
        commands = [predicate_to_command(p) for p in predicates]
        return Subtask(
            id=f"{task.id}-validation",
            description=f"Validate: {task.description}",
            commands=commands or [noop_command()],
        )

    @staticmethod
    def build_graph(subtasks: list[Subtask]) -> DirectedAcyclicGraph[Subtask]:
        """
        Build the dependency graph from each subtask's ``dependencies``.

        Raises:
            DuplicateNode: Two subtasks share an id.
            NodeNotFound: A dependency names an unknown subtask.
            CycleDetected: The dependencies form a cycle.
        """
        graph: DirectedAcyclicGraph[Subtask] = DirectedAcyclicGraph()
        for subtask in subtasks:
            graph.add_node(subtask.id, subtask)
        for subtask in subtasks:
            for dependency in sorted(subtask.dependencies):
                graph.add_edge(dependency, subtask.id)
        return graph
