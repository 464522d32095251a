"""Instruction decomposition - planning, command generation, and validation.

This module provides the decomposition pipeline:
- Planning (instruction -> ordered atomic steps)
- Generation (step -> one DSL command)
- Validation (command selector vs. page snapshot, with bounded refinement)
- Task decomposition (task -> subtasks -> dependency graph)
"""

from e2e_agent.decomposition.engine import (
    DecompositionEngine,
    is_completion_signal,
    parse_plan_steps,
)
from e2e_agent.decomposition.task_decomposer import (
    PredicateType,
    TaskDecomposer,
    ValidationPredicate,
    predicate_to_command,
)
from e2e_agent.decomposition.validation import CommandValidator, ValidationReport

__all__ = [
    # Engine
    "DecompositionEngine",
    "parse_plan_steps",
    "is_completion_signal",
    # Validation
    "CommandValidator",
    "ValidationReport",
    # Tasks
    "TaskDecomposer",
    "PredicateType",
    "ValidationPredicate",
    "predicate_to_command",
]
