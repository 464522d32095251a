"""Task graph - dependency ordering over subtask identifiers."""

from e2e_agent.graph.dag import DirectedAcyclicGraph, GraphNode

__all__ = [
    "DirectedAcyclicGraph",
    "GraphNode",
]
