"""Exception hierarchy for the e2e agent.

Every failure surfaced by the agent derives from :class:`E2EAgentError` so
callers can catch the whole family at a single seam. Messages always carry
the underlying cause text.
"""

from typing import Any


class E2EAgentError(Exception):
    """Base exception for e2e agent errors."""

    pass


# =============================================================================
# DSL / STATE MACHINE
# =============================================================================


class MalformedCommand(E2EAgentError):
    """A command or selector is missing required fields or is unparseable."""

    pass


class InvalidTransition(E2EAgentError):
    """Illegal subtask lifecycle transition."""

    def __init__(self, from_status: Any, to_status: Any, valid: list[Any] | None = None) -> None:
        self.from_status = from_status
        self.to_status = to_status
        allowed = ", ".join(str(getattr(s, "value", s)) for s in valid or []) or "none"
        from_value = getattr(from_status, "value", from_status)
        to_value = getattr(to_status, "value", to_status)
        super().__init__(
            f"Invalid state transition: {from_value} → {to_value}. "
            f"Valid transitions from {from_value}: {allowed}"
        )


# =============================================================================
# TASK GRAPH
# =============================================================================


class GraphError(E2EAgentError):
    """Base for task graph construction errors."""

    pass


class CycleDetected(GraphError):
    """Adding an edge would close a cycle."""

    def __init__(self, from_id: str, to_id: str) -> None:
        self.from_id = from_id
        self.to_id = to_id
        if from_id == to_id:
            message = f"Cycle detected: self-loop on node {from_id}"
        else:
            message = (
                f"Cycle detected: adding edge {from_id} -> {to_id} "
                f"would create a cycle"
            )
        super().__init__(message)


class NodeNotFound(GraphError):
    """Referenced node does not exist in the graph."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class DuplicateNode(GraphError):
    """Node id already present in the graph."""

    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node already exists: {node_id}")


# =============================================================================
# MODEL GATEWAY
# =============================================================================


class BudgetExceeded(E2EAgentError):
    """Running cost would exceed the configured budget."""

    def __init__(self, remaining: float, required: float) -> None:
        self.remaining = remaining
        self.required = required
        super().__init__(
            f"Budget exceeded: ${remaining:.4f} remaining, "
            f"${required:.4f} required"
        )


class AllProvidersFailed(E2EAgentError):
    """Every backend exhausted every retry."""

    def __init__(
        self,
        attempts: int,
        last_error: BaseException | None,
        errors: list[str] | None = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.errors = errors or []
        if last_error is not None:
            detail = str(last_error)
        else:
            detail = self.errors[-1] if self.errors else "unknown error"
        super().__init__(
            f"All providers failed after {attempts} attempts. Last error: {detail}"
        )


class OperationCancelled(E2EAgentError):
    """The caller cancelled the operation through its cancellation token."""

    pass


# =============================================================================
# DECOMPOSITION / SELF-HEALING
# =============================================================================


class DecompositionFailed(E2EAgentError):
    """Planning or generation failed while decomposing an instruction."""

    pass


class RefinementFailed(E2EAgentError):
    """The model could not produce a usable correction."""

    pass


class SelfHealExhausted(E2EAgentError):
    """Self-healing used every attempt without a passing run."""

    def __init__(
        self,
        attempts: int,
        last_error: str | None,
        history: list[Any] | None = None,
    ) -> None:
        self.attempts = attempts
        self.last_error = last_error
        self.history = history or []
        categories = [
            str(getattr(getattr(h, "failure_category", None), "value", ""))
            for h in self.history
        ]
        category = categories[-1] if categories else "UNKNOWN"
        super().__init__(
            f"Self-healing exhausted after {attempts} attempts "
            f"(last category: {category}). Last error: {last_error or 'unknown error'}"
        )
