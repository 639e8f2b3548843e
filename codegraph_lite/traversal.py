"""Graph traversal and analysis for CodeGraph Lite.

Bounded breadth-first traversal over the graph store, path queries that
defer to the store's native primitives, community detection with a
connected-components fallback, frequent relationship-triple mining and
node ranking.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Literal

from codegraph_lite.db.graph_protocol import (
    BaseGraphStore,
    Direction,
    GraphPath,
    PropertyFilter,
    validate_direction,
    validate_filters,
)
from codegraph_lite.embeddings import EmbeddingService
from codegraph_lite.errors import AlgorithmUnavailable, InvalidArgumentError
from codegraph_lite.log_config import get_logger, log_timing
from codegraph_lite.schema import BaseNode, NodeType, PatternNode, Relationship, RelationType

log = get_logger("traversal")

# Upper bound on frequent triples reported by find_patterns
_MAX_PATTERNS = 50


@dataclass
class TraversalOptions:
    """Parameters of a bounded traversal.

    Attributes:
        start_nodes: Node ids to start from (missing ids are skipped)
        relation_types: Relationship types to follow (all if empty)
        node_types: Node types to admit (all if empty)
        max_depth: Maximum number of edges from a start node
        max_nodes: Hard cap on the number of nodes returned
        direction: incoming, outgoing or both
        filters: Property predicates every admitted node must satisfy
        timeout: Optional wall-clock limit in seconds
    """
    start_nodes: list[str]
    relation_types: list[RelationType] | None = None
    node_types: list[NodeType] | None = None
    max_depth: int = 3
    max_nodes: int = 100
    direction: Direction = "both"
    filters: list[PropertyFilter] | None = None
    timeout: float | None = None


@dataclass
class TraversalResult:
    nodes: dict[str, BaseNode] = field(default_factory=dict)
    edges: list[Relationship] = field(default_factory=list)
    paths: list[GraphPath] = field(default_factory=list)
    statistics: dict[str, Any] = field(default_factory=dict)


@dataclass
class Community:
    """Group of densely connected nodes.

    Attributes:
        nodes: Member nodes
        centrality: Node id -> degree within the community / (size - 1)
    """
    nodes: list[BaseNode]
    centrality: dict[str, float]


def degree_centrality(members: list[str], edges: list[Relationship]) -> dict[str, float]:
    """Degree centrality of each member within the member set.

    Counts distinct neighbours inside the set, ignoring direction and
    self-loops, normalised by ``len(members) - 1``.
    """
    member_set = set(members)
    adjacency: dict[str, set[str]] = {m: set() for m in members}
    for edge in edges:
        if edge.from_id == edge.to_id:
            continue
        if edge.from_id in member_set and edge.to_id in member_set:
            adjacency[edge.from_id].add(edge.to_id)
            adjacency[edge.to_id].add(edge.from_id)
    denominator = max(len(members) - 1, 1)
    return {m: len(adjacency[m]) / denominator for m in members}


def connected_components(edges: list[Relationship]) -> list[list[str]]:
    """Weakly connected components of the edge list (union-find)."""
    parent: dict[str, str] = {}

    def find(x: str) -> str:
        parent.setdefault(x, x)
        while parent[x] != x:
            parent[x] = parent[parent[x]]
            x = parent[x]
        return x

    for edge in edges:
        a, b = find(edge.from_id), find(edge.to_id)
        if a != b:
            parent[b] = a

    groups: dict[str, list[str]] = {}
    for node_id in parent:
        groups.setdefault(find(node_id), []).append(node_id)
    return list(groups.values())


class GraphTraversal:
    """Traversal and analysis over a graph store.

    Example:
        traversal = GraphTraversal(store)
        result = traversal.traverse(TraversalOptions(start_nodes=[file_id], max_depth=2))
        print(result.statistics["nodes_visited"])
    """

    def __init__(self, store: BaseGraphStore, embeddings: EmbeddingService | None = None):
        self.store = store
        self.embeddings = embeddings

    def traverse(self, options: TraversalOptions) -> TraversalResult:
        """Breadth-first traversal bounded by depth, node count and time.

        A path is recorded whenever a branch ends at ``max_depth`` or when
        the node cap is reached.

        Raises:
            InvalidArgumentError: On an invalid direction, filter or bound
        """
        validate_direction(options.direction)
        filters = validate_filters(options.filters)
        if options.max_depth < 0 or options.max_nodes < 0:
            raise InvalidArgumentError("max_depth and max_nodes must be non-negative")

        deadline = time.perf_counter() + options.timeout if options.timeout else None
        result = TraversalResult()
        visited: set[str] = set()
        queue: deque[tuple[str, int, GraphPath]] = deque()
        max_depth_reached = 0
        timed_out = False

        for node_id in options.start_nodes:
            if len(result.nodes) >= options.max_nodes:
                break
            if node_id in visited:
                continue
            node = self.store.get_node(node_id)
            if node is None:
                log.debug(f"Start node not found, skipped: {node_id}")
                continue
            visited.add(node_id)
            result.nodes[node_id] = node
            queue.append((node_id, 0, GraphPath(nodes=[node_id])))

        while queue and len(result.nodes) < options.max_nodes:
            if deadline is not None and time.perf_counter() > deadline:
                timed_out = True
                log.warning(f"Traversal timed out after {options.timeout}s with {len(result.nodes)} nodes")
                break

            node_id, depth, path = queue.popleft()
            max_depth_reached = max(max_depth_reached, depth)
            if depth >= options.max_depth:
                continue

            related = self.store.neighbors(
                node_id,
                options.relation_types,
                options.direction,
                options.node_types,
                filters,
            )
            for node, rel in related:
                if node.id in visited or len(result.nodes) >= options.max_nodes:
                    continue
                visited.add(node.id)
                result.nodes[node.id] = node
                result.edges.append(rel)

                new_path = GraphPath(nodes=[*path.nodes, node.id], edges=[*path.edges, rel])
                queue.append((node.id, depth + 1, new_path))
                max_depth_reached = max(max_depth_reached, depth + 1)

                if depth + 1 == options.max_depth or len(result.nodes) >= options.max_nodes:
                    result.paths.append(new_path)

        lengths = [p.length for p in result.paths]
        result.statistics = {
            "nodes_visited": len(result.nodes),
            "edges_traversed": len(result.edges),
            "max_depth_reached": max_depth_reached,
            "average_path_length": sum(lengths) / len(lengths) if lengths else 0.0,
            "timed_out": timed_out,
        }
        log.debug(f"Traversal complete: {result.statistics}")
        return result

    # =========================================================================
    # Paths
    # =========================================================================

    def find_shortest_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 10,
    ) -> GraphPath | None:
        return self.store.shortest_path(start_id, end_id, relation_types, max_depth)

    def find_all_paths(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 5,
        limit: int = 10,
    ) -> list[GraphPath]:
        return self.store.all_paths(start_id, end_id, relation_types, max_depth, limit)

    # =========================================================================
    # Analysis
    # =========================================================================

    def find_communities(self, node_type: NodeType | None = None, min_size: int = 3) -> list[Community]:
        """Group nodes into communities of at least ``min_size`` members.

        Uses the store's native community detection when available and
        falls back to connected components otherwise.
        """
        edges = self.store.get_edges(node_type)
        try:
            with log_timing("Native community detection", log):
                groups = self.store.detect_communities(node_type)
        except AlgorithmUnavailable as e:
            log.info(f"{e}; falling back to connected components")
            groups = connected_components(edges)

        communities = []
        for group in groups:
            if len(group) < min_size:
                continue
            nodes = [n for n in (self.store.get_node(node_id) for node_id in group) if n is not None]
            members = [n.id for n in nodes]
            communities.append(Community(nodes=nodes, centrality=degree_centrality(members, edges)))

        communities.sort(key=lambda c: len(c.nodes), reverse=True)
        log.debug(f"Found {len(communities)} communities (min_size={min_size})")
        return communities

    def find_patterns(self, min_support: int = 2, node_types: list[NodeType] | None = None) -> list[PatternNode]:
        """Frequent (source type, relation, target type) triples as patterns."""
        patterns = []
        for source, relation, target, count in self.store.relationship_triples(node_types):
            if count < min_support:
                continue
            patterns.append(PatternNode(
                name=f"{source}-{relation}-{target}",
                pattern_type="structural",
                description=f"Frequent pattern: {source} {relation} {target}",
                usage_count=count,
                confidence=min(1.0, count / 100),
            ))
            if len(patterns) >= _MAX_PATTERNS:
                break
        return patterns

    def rank_nodes(self, node_type: NodeType | None = None) -> dict[str, float]:
        """Importance ranking: native PageRank, else normalised degree."""
        try:
            return self.store.pagerank(node_type)
        except AlgorithmUnavailable as e:
            log.info(f"{e}; ranking by degree")

        if node_type is not None:
            members = [n.id for n in self.store.find_nodes_by_type(node_type, limit=100000)]
        else:
            members = list(dict.fromkeys(
                node_id for edge in self.store.get_edges() for node_id in (edge.from_id, edge.to_id)
            ))
        return degree_centrality(members, self.store.get_edges(node_type))

    # =========================================================================
    # Pre-configured traversals
    # =========================================================================

    def get_subgraph(self, center_id: str, radius: int = 2, max_nodes: int = 50) -> TraversalResult:
        return self.traverse(TraversalOptions(
            start_nodes=[center_id], max_depth=radius, max_nodes=max_nodes, direction="both",
        ))

    def get_call_graph(self, function_id: str, max_depth: int = 3) -> TraversalResult:
        return self.traverse(TraversalOptions(
            start_nodes=[function_id],
            relation_types=[RelationType.CALLS],
            node_types=[NodeType.FUNCTION, NodeType.METHOD],
            max_depth=max_depth,
            max_nodes=100,
            direction="outgoing",
        ))

    def get_dependency_graph(
        self,
        node_id: str,
        direction: Literal["upstream", "downstream", "both"] = "both",
    ) -> TraversalResult:
        """Dependencies of a file or function.

        upstream follows incoming edges (what depends on the node),
        downstream follows outgoing edges (what the node depends on).
        """
        mapping = {"upstream": "incoming", "downstream": "outgoing", "both": "both"}
        if direction not in mapping:
            raise InvalidArgumentError(f"Invalid dependency direction '{direction}'")
        return self.traverse(TraversalOptions(
            start_nodes=[node_id],
            relation_types=[
                RelationType.IMPORTS,
                RelationType.CALLS,
                RelationType.DEPENDS_ON,
                RelationType.REFERENCES,
            ],
            max_depth=5,
            max_nodes=100,
            direction=mapping[direction],
        ))

    def get_inheritance_hierarchy(self, class_id: str) -> TraversalResult:
        return self.traverse(TraversalOptions(
            start_nodes=[class_id],
            relation_types=[RelationType.EXTENDS, RelationType.IMPLEMENTS],
            node_types=[NodeType.CLASS],
            max_depth=10,
            max_nodes=50,
            direction="both",
        ))


__all__ = [
    "GraphTraversal",
    "TraversalOptions",
    "TraversalResult",
    "Community",
    "degree_centrality",
    "connected_components",
]
