"""Graph store protocol for CodeGraph Lite.

Defines the interface every graph store implements (Memgraph/Neo4j over
Bolt, embedded rustworkx) together with the shared value types: property
filters, paths and traversal directions.

Every write method owns its transactional scope: the scope is opened at
the start of the call and committed or rolled back on every exit path.
``open_transactions`` exposes the number of live scopes so callers and
tests can check that nothing leaks between calls.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, runtime_checkable

import numpy as np

from codegraph_lite.errors import InvalidArgumentError, NodeNotFoundError
from codegraph_lite.schema import BaseNode, NodeType, Relationship, RelationType

Direction = Literal["incoming", "outgoing", "both"]
DIRECTIONS: tuple[str, ...] = ("incoming", "outgoing", "both")

FILTER_OPERATORS: tuple[str, ...] = ("eq", "neq", "gt", "lt", "contains", "startsWith", "endsWith")

_PROPERTY_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_CYPHER_OPERATORS: dict[str, str] = {
    "eq": "=",
    "neq": "<>",
    "gt": ">",
    "lt": "<",
    "contains": "CONTAINS",
    "startsWith": "STARTS WITH",
    "endsWith": "ENDS WITH",
}


@dataclass
class PropertyFilter:
    """Predicate over a single node property.

    Attributes:
        property: Property name (identifier characters only)
        operator: One of eq, neq, gt, lt, contains, startsWith, endsWith
        value: Value compared against
    """
    property: str
    operator: str
    value: Any

    def validate(self) -> None:
        if self.operator not in FILTER_OPERATORS:
            raise InvalidArgumentError(
                f"Unknown filter operator '{self.operator}' (expected one of {', '.join(FILTER_OPERATORS)})"
            )
        if not isinstance(self.property, str) or not _PROPERTY_NAME.match(self.property):
            raise InvalidArgumentError(f"Invalid filter property name: {self.property!r}")

    def matches(self, props: dict[str, Any]) -> bool:
        """Evaluate the filter against a property map."""
        actual = props.get(self.property)
        op = self.operator
        if op == "eq":
            return actual == self.value
        if op == "neq":
            return actual != self.value
        if actual is None:
            return False
        try:
            if op == "gt":
                return actual > self.value
            if op == "lt":
                return actual < self.value
        except TypeError:
            return False
        if op == "contains":
            if isinstance(actual, (list, tuple)):
                return self.value in actual
            return str(self.value) in str(actual)
        if op == "startsWith":
            return isinstance(actual, str) and actual.startswith(str(self.value))
        if op == "endsWith":
            return isinstance(actual, str) and actual.endswith(str(self.value))
        return False

    def to_cypher(self, alias: str, param: str) -> str:
        """Compile to a parameterised Cypher predicate."""
        return f"{alias}.{self.property} {_CYPHER_OPERATORS[self.operator]} ${param}"


def validate_filters(filters: list[PropertyFilter] | None) -> list[PropertyFilter]:
    """Validate filters before any database call.

    Accepts PropertyFilter objects or plain dicts with property/operator/value.

    Raises:
        InvalidArgumentError: On unknown operators or malformed filters
    """
    validated: list[PropertyFilter] = []
    for f in filters or []:
        if isinstance(f, dict):
            try:
                f = PropertyFilter(f["property"], f["operator"], f.get("value"))
            except KeyError as e:
                raise InvalidArgumentError(f"Filter missing key: {e}") from e
        if not isinstance(f, PropertyFilter):
            raise InvalidArgumentError(f"Invalid filter: {f!r}")
        f.validate()
        validated.append(f)
    return validated


def validate_direction(direction: str) -> str:
    if direction not in DIRECTIONS:
        raise InvalidArgumentError(f"Invalid direction '{direction}' (expected incoming, outgoing or both)")
    return direction


def type_values(types: list[NodeType] | list[RelationType] | list[str] | None) -> list[str]:
    """Enum members or strings to plain label strings."""
    return [t.value if hasattr(t, "value") else str(t) for t in (types or [])]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors (0.0 if either is zero or lengths differ)."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        return 0.0
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


@dataclass
class GraphPath:
    """Ordered walk through the graph.

    Attributes:
        nodes: Node ids from start to end
        edges: Relationships between consecutive nodes
    """
    nodes: list[str] = field(default_factory=list)
    edges: list[Relationship] = field(default_factory=list)

    @property
    def length(self) -> int:
        """Number of edges."""
        return len(self.edges)


@runtime_checkable
class GraphStore(Protocol):
    """Protocol for knowledge graph stores."""

    @property
    def backend_name(self) -> str:
        ...

    @property
    def open_transactions(self) -> int:
        """Number of transactional scopes currently open."""
        ...

    def init_schema(self) -> None:
        ...

    def health_check(self) -> bool:
        ...

    def close(self) -> None:
        ...

    def create_node(self, node: BaseNode) -> str:
        ...

    def create_nodes(self, nodes: list[BaseNode]) -> list[str]:
        ...

    def create_subgraph(self, nodes: list[BaseNode], relationships: list[Relationship]) -> list[str]:
        ...

    def update_node(self, node_id: str, updates: dict[str, Any]) -> None:
        ...

    def delete_node(self, node_id: str) -> None:
        ...

    def delete_nodes(self, node_ids: list[str]) -> int:
        ...

    def get_node(self, node_id: str) -> BaseNode | None:
        ...

    def require_node(self, node_id: str) -> BaseNode:
        ...

    def create_relationship(self, rel: Relationship) -> None:
        ...

    def create_relationships(self, rels: list[Relationship]) -> None:
        ...

    def find_nodes_by_type(self, node_type: NodeType, limit: int = 100) -> list[BaseNode]:
        ...

    def find_nodes_by_property(self, node_type: NodeType | None, prop: str, value: Any, limit: int = 100) -> list[BaseNode]:
        ...

    def find_related_nodes(
        self,
        node_id: str,
        relation_types: list[RelationType] | None = None,
        depth: int = 1,
        limit: int = 50,
    ) -> list[BaseNode]:
        ...

    def search_nodes(self, query: str, types: list[NodeType] | None = None, limit: int = 20) -> list[BaseNode]:
        ...

    def find_similar_by_embedding(
        self,
        embedding: list[float],
        node_type: NodeType | None = None,
        threshold: float = 0.8,
        limit: int = 10,
    ) -> list[tuple[BaseNode, float]]:
        ...

    def neighbors(
        self,
        node_id: str,
        relation_types: list[RelationType] | None = None,
        direction: Direction = "both",
        node_types: list[NodeType] | None = None,
        filters: list[PropertyFilter] | None = None,
        limit: int = 50,
    ) -> list[tuple[BaseNode, Relationship]]:
        ...

    def shortest_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 10,
    ) -> GraphPath | None:
        ...

    def all_paths(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 5,
        limit: int = 10,
    ) -> list[GraphPath]:
        ...

    def get_edges(self, node_type: NodeType | None = None) -> list[Relationship]:
        ...

    def relationship_triples(self, node_types: list[NodeType] | None = None) -> list[tuple[str, str, str, int]]:
        ...

    def detect_communities(self, node_type: NodeType | None = None) -> list[list[str]]:
        ...

    def pagerank(self, node_type: NodeType | None = None) -> dict[str, float]:
        ...

    def get_graph_statistics(self) -> dict[str, Any]:
        ...

    def clear_graph(self) -> None:
        ...


class BaseGraphStore(ABC):
    """Abstract base class for graph stores with common functionality.

    Single-item writes delegate to the batch forms so that one code path
    owns transaction handling per backend.
    """

    GRAPH_NAME = "codegraph"
    NODE_LABEL = "Node"

    @property
    @abstractmethod
    def backend_name(self) -> str:
        pass

    @property
    @abstractmethod
    def open_transactions(self) -> int:
        pass

    @abstractmethod
    def init_schema(self) -> None:
        pass

    @abstractmethod
    def health_check(self) -> bool:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @abstractmethod
    def create_subgraph(self, nodes: list[BaseNode], relationships: list[Relationship]) -> list[str]:
        """Create nodes then relationships in one transaction."""
        pass

    @abstractmethod
    def update_node(self, node_id: str, updates: dict[str, Any]) -> None:
        pass

    @abstractmethod
    def delete_nodes(self, node_ids: list[str]) -> int:
        pass

    @abstractmethod
    def get_node(self, node_id: str) -> BaseNode | None:
        pass

    @abstractmethod
    def find_nodes_by_type(self, node_type: NodeType, limit: int = 100) -> list[BaseNode]:
        pass

    @abstractmethod
    def find_nodes_by_property(self, node_type: NodeType | None, prop: str, value: Any, limit: int = 100) -> list[BaseNode]:
        pass

    @abstractmethod
    def find_related_nodes(self, node_id, relation_types=None, depth=1, limit=50) -> list[BaseNode]:
        pass

    @abstractmethod
    def search_nodes(self, query: str, types: list[NodeType] | None = None, limit: int = 20) -> list[BaseNode]:
        pass

    @abstractmethod
    def find_similar_by_embedding(self, embedding, node_type=None, threshold=0.8, limit=10) -> list[tuple[BaseNode, float]]:
        pass

    @abstractmethod
    def neighbors(self, node_id, relation_types=None, direction="both", node_types=None, filters=None, limit=50):
        pass

    @abstractmethod
    def shortest_path(self, start_id, end_id, relation_types=None, max_depth=10) -> GraphPath | None:
        pass

    @abstractmethod
    def all_paths(self, start_id, end_id, relation_types=None, max_depth=5, limit=10) -> list[GraphPath]:
        pass

    @abstractmethod
    def get_edges(self, node_type: NodeType | None = None) -> list[Relationship]:
        pass

    @abstractmethod
    def relationship_triples(self, node_types: list[NodeType] | None = None) -> list[tuple[str, str, str, int]]:
        pass

    @abstractmethod
    def detect_communities(self, node_type: NodeType | None = None) -> list[list[str]]:
        pass

    @abstractmethod
    def pagerank(self, node_type: NodeType | None = None) -> dict[str, float]:
        pass

    @abstractmethod
    def get_graph_statistics(self) -> dict[str, Any]:
        pass

    @abstractmethod
    def clear_graph(self) -> None:
        pass

    def create_node(self, node: BaseNode) -> str:
        """Create a single node.

        Raises:
            DuplicateNodeError: If a node with the same id exists
        """
        return self.create_subgraph([node], [])[0]

    def create_nodes(self, nodes: list[BaseNode]) -> list[str]:
        """Create nodes atomically: all or none are committed."""
        if not nodes:
            return []
        return self.create_subgraph(nodes, [])

    def create_relationship(self, rel: Relationship) -> None:
        """Create a relationship.

        Raises:
            MissingEndpointError: If either endpoint does not exist
        """
        self.create_subgraph([], [rel])

    def create_relationships(self, rels: list[Relationship]) -> None:
        """Create relationships atomically: all or none are committed."""
        if rels:
            self.create_subgraph([], rels)

    def delete_node(self, node_id: str) -> None:
        """Detach-delete a node.

        Raises:
            NodeNotFoundError: If the node does not exist
        """
        if self.delete_nodes([node_id]) == 0:
            raise NodeNotFoundError(node_id)

    def require_node(self, node_id: str) -> BaseNode:
        """Get a node or raise NodeNotFoundError."""
        node = self.get_node(node_id)
        if node is None:
            raise NodeNotFoundError(node_id)
        return node


__all__ = [
    "Direction",
    "DIRECTIONS",
    "FILTER_OPERATORS",
    "PropertyFilter",
    "GraphPath",
    "GraphStore",
    "BaseGraphStore",
    "validate_filters",
    "validate_direction",
    "type_values",
    "cosine_similarity",
]
