"""Execution - run subtasks, tasks, and dependency graphs."""

from e2e_agent.execution.executor import (
    CommandExecutor,
    GraphExecutionResult,
    GraphExecutor,
    StaticPageExecutor,
    TaskExecutionResult,
    TestOrchestrator,
    create_graph_executor,
)

__all__ = [
    "CommandExecutor",
    "StaticPageExecutor",
    "TestOrchestrator",
    "GraphExecutor",
    "TaskExecutionResult",
    "GraphExecutionResult",
    "create_graph_executor",
]
