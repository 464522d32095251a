"""
E2E Agent - AI-assisted end-to-end test generation.

Decomposes plain-language test instructions into browser test commands,
validates them against page snapshots, and repairs failing tests.
"""

__version__ = "0.1.0"
__author__ = "E2E Agent Team"

from e2e_agent.decomposition.engine import DecompositionEngine
from e2e_agent.dsl.models import Command, Selector, Subtask, Task
from e2e_agent.dsl.parser import DSLParser
from e2e_agent.healing.orchestrator import SelfHealingOrchestrator
from e2e_agent.llm.gateway import ModelGateway

__all__ = [
    "Command",
    "DSLParser",
    "DecompositionEngine",
    "ModelGateway",
    "Selector",
    "SelfHealingOrchestrator",
    "Subtask",
    "Task",
    "__version__",
]
