"""
Subtask execution - drive commands through an execution collaborator.

The browser driver lives outside this package. It plugs in by implementing
:class:`CommandExecutor`. On top of it:

- :class:`TestOrchestrator` runs one subtask through its lifecycle, and a
  whole task with setup, ordered subtasks, and teardown.
- :class:`GraphExecutor` runs a dependency graph of subtasks, sequentially
  in topological order or with bounded parallelism.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from loguru import logger

from e2e_agent.core.config import Settings, get_settings
from e2e_agent.core.page import PageContextProvider
from e2e_agent.core.retry import CancellationToken, check_cancelled
from e2e_agent.decomposition.validation import CommandValidator
from e2e_agent.dsl.models import Command, CommandType, ExecutionResult, Subtask, Task
from e2e_agent.graph.dag import DirectedAcyclicGraph

# =============================================================================
# EXECUTION COLLABORATOR
# =============================================================================


class CommandExecutor(ABC):
    """Runs commands against a page."""

    @abstractmethod
    async def execute(self, command: Command) -> ExecutionResult:
        """Execute one command."""

    async def execute_all(self, commands: list[Command]) -> list[ExecutionResult]:
        """Execute commands in order, stopping after the first failure."""
        results: list[ExecutionResult] = []
        for command in commands:
            result = await self.execute(command)
            results.append(result)
            if not result.success:
                break
        return results


class StaticPageExecutor(CommandExecutor):
    """
    Offline executor that checks commands against a page snapshot.

    A command succeeds when it has no selector or its selector resolves to
    exactly one element of the current snapshot. Useful for dry runs and
    for exercising self-healing without a browser.
    """

    def __init__(
        self,
        page: PageContextProvider,
        validator: CommandValidator | None = None,
    ) -> None:
        self.page = page
        self.validator = validator or CommandValidator()

    async def execute(self, command: Command) -> ExecutionResult:
        started = time.monotonic()
        html = await self.page.get_html()
        report = self.validator.validate(command, html)
        duration = (time.monotonic() - started) * 1000

        if report.valid:
            return ExecutionResult(success=True, output=command.to_dsl(), duration=duration)
        return ExecutionResult(
            success=False,
            error="; ".join(report.issues),
            duration=duration,
            metadata={"match_count": report.match_count},
        )


# =============================================================================
# RESULT MODELS
# =============================================================================


class TaskExecutionResult:
    """Result of running a task's setup, subtasks, and teardown."""

    def __init__(
        self,
        task_id: str,
        success: bool,
        subtask_results: dict[str, ExecutionResult] | None = None,
        setup_error: str | None = None,
        teardown_error: str | None = None,
        duration_ms: float = 0.0,
    ):
        self.task_id = task_id
        self.success = success
        self.subtask_results = subtask_results or {}
        self.setup_error = setup_error
        self.teardown_error = teardown_error
        self.duration_ms = duration_ms
        self.completed_at = datetime.now().isoformat()

    @property
    def completed_subtasks(self) -> list[str]:
        return [sid for sid, r in self.subtask_results.items() if r.success]

    @property
    def failed_subtasks(self) -> list[str]:
        return [sid for sid, r in self.subtask_results.items() if not r.success]

    @property
    def error(self) -> str | None:
        """First error in run order."""
        if self.setup_error:
            return self.setup_error
        for result in self.subtask_results.values():
            if not result.success:
                return result.error
        return self.teardown_error

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "success": self.success,
            "subtask_results": {
                sid: r.model_dump(mode="json") for sid, r in self.subtask_results.items()
            },
            "completed_subtasks": self.completed_subtasks,
            "failed_subtasks": self.failed_subtasks,
            "setup_error": self.setup_error,
            "teardown_error": self.teardown_error,
            "duration_ms": self.duration_ms,
            "completed_at": self.completed_at,
        }


class GraphExecutionResult:
    """Result of running a dependency graph of subtasks."""

    def __init__(self, subtasks: list[Subtask], duration_ms: float = 0.0):
        self.subtasks = subtasks
        self.duration_ms = duration_ms

    @property
    def completed(self) -> list[str]:
        return [s.id for s in self.subtasks if s.is_completed()]

    @property
    def failed(self) -> list[str]:
        return [s.id for s in self.subtasks if s.is_failed()]

    @property
    def blocked(self) -> list[str]:
        return [s.id for s in self.subtasks if s.is_blocked()]

    @property
    def success(self) -> bool:
        return bool(self.subtasks) and len(self.completed) == len(self.subtasks)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "success": self.success,
            "completed": self.completed,
            "failed": self.failed,
            "blocked": self.blocked,
            "subtasks": [s.to_dict() for s in self.subtasks],
            "duration_ms": self.duration_ms,
        }


# =============================================================================
# TEST ORCHESTRATOR
# =============================================================================


class TestOrchestrator:
    """
    Run subtasks and tasks through the execution collaborator.

    Keeps a small context dict across commands: ``last_url`` after each
    navigation and ``typed:<selector>`` for values entered with fill/type.

    Example:
        >>> orchestrator = TestOrchestrator(executor)
        >>> result = await orchestrator.execute_subtask(subtask)
        >>> subtask.status
        <TaskStatus.COMPLETED: 'completed'>
    """

    __test__ = False

    def __init__(self, executor: CommandExecutor) -> None:
        self.executor = executor
        self.context: dict[str, Any] = {}

    def _record(self, command: Command) -> None:
        if command.type == CommandType.NAVIGATE:
            self.context["last_url"] = command.params.get("url")
        elif command.type in (CommandType.FILL, CommandType.TYPE) and command.selector:
            self.context[f"typed:{command.selector}"] = command.params.get("value")

    async def _run_commands(self, commands: list[Command]) -> tuple[ExecutionResult | None, int]:
        """Run commands until one fails; returns the failure and its index."""
        for index, command in enumerate(commands):
            try:
                result = await self.executor.execute(command)
            except Exception as e:
                logger.error(f"Executor raised on {command.type.value}: {e}")
                result = ExecutionResult(success=False, error=str(e))
            if not result.success:
                return result, index
            self._record(command)
        return None, -1

    async def execute_subtask(
        self,
        subtask: Subtask,
        token: CancellationToken | None = None,
    ) -> ExecutionResult:
        """
        Execute a pending subtask's commands in order.

        The subtask ends Completed, or Failed with the index of the failing
        command. Returns the subtask's final result.
        """
        check_cancelled(token)
        subtask.mark_in_progress()
        logger.info(f"Executing subtask {subtask.id} ({len(subtask.commands)} commands)")

        failure, index = await self._run_commands(subtask.commands)
        if failure is not None:
            command = subtask.commands[index]
            error = failure.error or f"Command failed: {command.type.value}"
            subtask.mark_failed(error, failed_command_index=index)
            logger.warning(f"Subtask {subtask.id} failed at command {index}: {error}")
        else:
            subtask.mark_completed(
                output=f"Executed {len(subtask.commands)} commands",
                metadata={"commands": len(subtask.commands)},
            )
            logger.info(f"Subtask {subtask.id} completed")
        return subtask.result

    async def execute_task(
        self,
        task: Task,
        subtasks: dict[str, Subtask],
        token: CancellationToken | None = None,
    ) -> TaskExecutionResult:
        """
        Run setup, then each subtask in ``task.subtask_ids`` order, then teardown.

        A setup failure blocks every subtask. After a subtask fails, the rest
        are blocked. Teardown always runs.
        """
        started = time.monotonic()
        results: dict[str, ExecutionResult] = {}
        setup_error = None
        teardown_error = None

        if task.has_setup():
            failure, _ = await self._run_commands(task.setup)
            if failure is not None:
                setup_error = f"Setup failed: {failure.error}"
                logger.error(f"Task {task.id}: {setup_error}")

        blocked_by: str | None = setup_error
        for subtask_id in task.subtask_ids:
            subtask = subtasks.get(subtask_id)
            if subtask is None:
                results[subtask_id] = ExecutionResult(
                    success=False, error=f"Subtask not found: {subtask_id}"
                )
                blocked_by = blocked_by or f"Subtask not found: {subtask_id}"
                continue
            if blocked_by is not None:
                subtask.mark_blocked(blocked_by)
                results[subtask_id] = subtask.result
                continue

            results[subtask_id] = await self.execute_subtask(subtask, token)
            if subtask.is_failed():
                blocked_by = f"Previous subtask failed: {subtask_id}"

        if task.has_teardown():
            failure, _ = await self._run_commands(task.teardown)
            if failure is not None:
                teardown_error = f"Teardown failed: {failure.error}"
                logger.error(f"Task {task.id}: {teardown_error}")

        success = (
            setup_error is None
            and teardown_error is None
            and all(r.success for r in results.values())
        )
        logger.info(f"Task {task.id} {'passed' if success else 'failed'}")
        return TaskExecutionResult(
            task_id=task.id,
            success=success,
            subtask_results=results,
            setup_error=setup_error,
            teardown_error=teardown_error,
            duration_ms=(time.monotonic() - started) * 1000,
        )


# =============================================================================
# GRAPH EXECUTOR
# =============================================================================


class GraphExecutor:
    """
    Execute a dependency graph of subtasks.

    With ``max_parallel == 1`` subtasks run one at a time in topological
    order. Larger values dispatch every ready subtask under a semaphore,
    polling ``get_executable_nodes`` as subtasks finish. Either way,
    dependents of a failed subtask are blocked.

    Example:
        >>> executor = GraphExecutor(TestOrchestrator(driver), max_parallel=4)
        >>> result = await executor.execute_graph(graph)
        >>> result.completed
        ['login', 'search', 'checkout']
    """

    def __init__(self, orchestrator: TestOrchestrator, max_parallel: int = 1) -> None:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.orchestrator = orchestrator
        self.max_parallel = max_parallel

    async def execute_graph(
        self,
        graph: DirectedAcyclicGraph[Subtask],
        token: CancellationToken | None = None,
    ) -> GraphExecutionResult:
        started = time.monotonic()
        if self.max_parallel == 1:
            await self._execute_sequential(graph, token)
        else:
            await self._execute_parallel(graph, token)

        subtasks = [graph.get_node(node_id).data for node_id in graph.node_ids()]
        result = GraphExecutionResult(subtasks, duration_ms=(time.monotonic() - started) * 1000)
        logger.info(
            f"Graph finished: {len(result.completed)} completed, "
            f"{len(result.failed)} failed, {len(result.blocked)} blocked"
        )
        return result

    def _settle_finished(self, graph: DirectedAcyclicGraph[Subtask]) -> set[str]:
        """Collect subtasks completed before this run and block dependents of the rest."""
        completed: set[str] = set()
        for node_id in graph.node_ids():
            subtask = graph.get_node(node_id).data
            if subtask.is_completed():
                completed.add(node_id)
            elif not subtask.is_pending():
                self._block_dependents(graph, node_id)
        return completed

    def _block_dependents(self, graph: DirectedAcyclicGraph[Subtask], failed_id: str) -> None:
        pending = list(graph.get_dependents(failed_id))
        while pending:
            node_id = pending.pop()
            subtask = graph.get_node(node_id).data
            if subtask.is_pending():
                subtask.mark_blocked(f"Dependency did not complete: {failed_id}")
                logger.debug(f"Blocked {node_id} (depends on {failed_id})")
                pending.extend(graph.get_dependents(node_id))

    async def _execute_sequential(
        self,
        graph: DirectedAcyclicGraph[Subtask],
        token: CancellationToken | None,
    ) -> None:
        for node_id in graph.topological_sort():
            subtask = graph.get_node(node_id).data
            if subtask.is_pending():
                await self.orchestrator.execute_subtask(subtask, token)
            if not subtask.is_completed():
                self._block_dependents(graph, node_id)

    async def _execute_parallel(
        self,
        graph: DirectedAcyclicGraph[Subtask],
        token: CancellationToken | None,
    ) -> None:
        semaphore = asyncio.Semaphore(self.max_parallel)
        completed = self._settle_finished(graph)
        dispatched: set[str] = set()
        running: dict[asyncio.Task[ExecutionResult], str] = {}

        async def run(subtask: Subtask) -> ExecutionResult:
            async with semaphore:
                return await self.orchestrator.execute_subtask(subtask, token)

        while True:
            for node_id in graph.get_executable_nodes(completed):
                subtask = graph.get_node(node_id).data
                if node_id in dispatched or not subtask.is_pending():
                    continue
                dispatched.add(node_id)
                running[asyncio.ensure_future(run(subtask))] = node_id

            if not running:
                break

            done, _ = await asyncio.wait(running.keys(), return_when=asyncio.FIRST_COMPLETED)
            for future in done:
                node_id = running.pop(future)
                if future.exception() is not None:
                    for other in running:
                        other.cancel()
                    await asyncio.gather(*running, return_exceptions=True)
                    raise future.exception()
                if graph.get_node(node_id).data.is_completed():
                    completed.add(node_id)
                else:
                    self._block_dependents(graph, node_id)


# =============================================================================
# FACTORY
# =============================================================================


def create_graph_executor(
    executor: CommandExecutor,
    settings: Settings | None = None,
) -> GraphExecutor:
    """
    Build a graph executor configured from settings.

    Args:
        executor: Execution collaborator.
        settings: Optional settings override.

    Returns:
        GraphExecutor with ``max_parallel`` from ``E2E_MAX_PARALLEL_SUBTASKS``.
    """
    settings = settings or get_settings()
    return GraphExecutor(
        TestOrchestrator(executor),
        max_parallel=settings.e2e_max_parallel_subtasks,
    )
