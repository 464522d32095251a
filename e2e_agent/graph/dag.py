"""Directed acyclic graph over subtask identifiers.

Edges point from a dependency to its dependent (``from`` must run before
``to``). Acyclicity is enforced when an edge is inserted, so a graph is never
observed in a cyclic state.
"""

from collections import deque
from collections.abc import Iterable, Mapping
from typing import Generic, TypeVar

from loguru import logger

from e2e_agent.core.exceptions import CycleDetected, DuplicateNode, NodeNotFound

T = TypeVar("T")


class GraphNode(Generic[T]):
    """A graph vertex with its incoming and outgoing edge sets."""

    def __init__(self, node_id: str, data: T) -> None:
        if not node_id or not node_id.strip():
            raise ValueError("Node id cannot be empty")
        self.id = node_id
        self.data = data
        self.incoming: set[str] = set()
        self.outgoing: set[str] = set()

    @property
    def in_degree(self) -> int:
        return len(self.incoming)

    @property
    def out_degree(self) -> int:
        return len(self.outgoing)

    def __repr__(self) -> str:
        return f"GraphNode({self.id!r}, in={sorted(self.incoming)}, out={sorted(self.outgoing)})"


class DirectedAcyclicGraph(Generic[T]):
    """
    Dependency graph with insertion-time cycle prevention.

    Mutations (``add_node``/``add_edge``) must not be interleaved with reads
    from other tasks; reads are safe to share once construction is done.

    Example:
        >>> dag = DirectedAcyclicGraph()
        >>> dag.add_node("login", subtask_a)
        >>> dag.add_node("checkout", subtask_b)
        >>> dag.add_edge("login", "checkout")
        >>> dag.topological_sort()
        ['login', 'checkout']
        >>> dag.get_executable_nodes({"login"})
        ['checkout']
    """

    def __init__(self) -> None:
        self._nodes: dict[str, GraphNode[T]] = {}

    # =========================================================================
    # CONSTRUCTION
    # =========================================================================

    def add_node(self, node_id: str, data: T) -> GraphNode[T]:
        """
        Add a node.

        Raises:
            DuplicateNode: If the id is already present.
        """
        if node_id in self._nodes:
            raise DuplicateNode(node_id)
        node = GraphNode(node_id, data)
        self._nodes[node_id] = node
        return node

    def add_edge(self, from_id: str, to_id: str) -> None:
        """
        Add a dependency edge ``from_id -> to_id``.

        Args:
            from_id: The node that must complete first.
            to_id: The node that depends on it.

        Raises:
            NodeNotFound: If either endpoint is missing.
            CycleDetected: If the edge is a self-loop or ``to_id`` already
                reaches ``from_id``. The graph is left unchanged.
        """
        if from_id not in self._nodes:
            raise NodeNotFound(from_id)
        if to_id not in self._nodes:
            raise NodeNotFound(to_id)
        if from_id == to_id or self._has_path(to_id, from_id):
            raise CycleDetected(from_id, to_id)

        self._nodes[from_id].outgoing.add(to_id)
        self._nodes[to_id].incoming.add(from_id)

    def _has_path(self, start: str, target: str) -> bool:
        """Breadth-first reachability check."""
        visited = {start}
        queue: deque[str] = deque([start])
        while queue:
            current = queue.popleft()
            if current == target:
                return True
            for neighbor in self._nodes[current].outgoing:
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append(neighbor)
        return False

    @classmethod
    def from_dependencies(
        cls,
        nodes: Mapping[str, T],
        dependencies: Mapping[str, Iterable[str]],
    ) -> "DirectedAcyclicGraph[T]":
        """
        Build a graph from externally supplied dependency data.

        Args:
            nodes: Node id -> payload.
            dependencies: Node id -> ids it depends on.

        Returns:
            A validated graph.

        Raises:
            NodeNotFound: If a dependency names an unknown node.
            CycleDetected: If the dependency data contains a cycle.
        """
        graph: DirectedAcyclicGraph[T] = cls()
        for node_id, data in nodes.items():
            graph.add_node(node_id, data)

        for node_id, deps in dependencies.items():
            if node_id not in graph._nodes:
                raise NodeNotFound(node_id)
            for dep in deps:
                graph.add_edge(dep, node_id)

        logger.debug(f"Built dependency graph with {graph.size()} nodes")
        return graph

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_node(self, node_id: str) -> GraphNode[T]:
        if node_id not in self._nodes:
            raise NodeNotFound(node_id)
        return self._nodes[node_id]

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def get_dependencies(self, node_id: str) -> set[str]:
        """Ids the node depends on."""
        return set(self.get_node(node_id).incoming)

    def get_dependents(self, node_id: str) -> set[str]:
        """Ids that depend on the node."""
        return set(self.get_node(node_id).outgoing)

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def size(self) -> int:
        return len(self._nodes)

    def is_empty(self) -> bool:
        return not self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    # =========================================================================
    # ORDERING
    # =========================================================================

    def topological_sort(self) -> list[str]:
        """
        Order nodes so every dependency precedes its dependents (Kahn).

        Ties between ready nodes are broken by insertion order, but callers
        must not rely on any particular tie-break.

        Raises:
            CycleDetected: If the graph contains a cycle.
        """
        in_degree = {node_id: node.in_degree for node_id, node in self._nodes.items()}
        queue: deque[str] = deque(n for n, d in in_degree.items() if d == 0)
        order: list[str] = []

        while queue:
            current = queue.popleft()
            order.append(current)
            for dependent in self._nodes[current].outgoing:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(self._nodes):
            remaining = [n for n in self._nodes if n not in set(order)]
            logger.error(f"Cannot order remaining nodes: {remaining}")
            raise CycleDetected(remaining[0], remaining[-1])
        return order

    def get_executable_nodes(self, completed: Iterable[str]) -> list[str]:
        """
        Nodes ready to run given the completed set.

        Recomputed from scratch on every call so callers can poll statelessly.
        """
        done = set(completed)
        return [
            node_id
            for node_id, node in self._nodes.items()
            if node_id not in done and node.incoming <= done
        ]

    def get_waves(self) -> list[list[str]]:
        """Group nodes into levels that can run concurrently."""
        waves: list[list[str]] = []
        completed: set[str] = set()
        while len(completed) < len(self._nodes):
            wave = self.get_executable_nodes(completed)
            if not wave:
                remaining = sorted(set(self._nodes) - completed)
                raise CycleDetected(remaining[0], remaining[-1])
            waves.append(wave)
            completed.update(wave)
        return waves

    def has_cycle(self) -> bool:
        """Depth-first cycle diagnostic with an explicit stack."""
        WHITE, GRAY, BLACK = 0, 1, 2
        colors = {node_id: WHITE for node_id in self._nodes}

        for root in self._nodes:
            if colors[root] != WHITE:
                continue
            colors[root] = GRAY
            stack = [(root, iter(self._nodes[root].outgoing))]
            while stack:
                node_id, neighbors = stack[-1]
                for neighbor in neighbors:
                    if colors[neighbor] == GRAY:
                        return True
                    if colors[neighbor] == WHITE:
                        colors[neighbor] = GRAY
                        stack.append((neighbor, iter(self._nodes[neighbor].outgoing)))
                        break
                else:
                    colors[node_id] = BLACK
                    stack.pop()
        return False
