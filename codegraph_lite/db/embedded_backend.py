"""Embedded graph store for CodeGraph Lite.

In-process knowledge graph backed by a rustworkx ``PyDiGraph``. Used when
no Memgraph/Neo4j server is reachable and as the store under test.

Node payloads are flat property maps (see ``BaseNode.to_properties``) and
an id -> index map gives O(1) lookup by business id. Writes run inside a
snapshot transaction: the graph and the index map are copied on entry and
restored if the body raises, so batch writes are all-or-nothing.

Optionally persists to a JSON file (orjson) on close and reloads it on start.
"""

import time
from collections import Counter, deque
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

import numpy as np
import orjson
import rustworkx as rx

from codegraph_lite.db.graph_protocol import (
    BaseGraphStore,
    GraphPath,
    PropertyFilter,
    type_values,
    validate_direction,
    validate_filters,
)
from codegraph_lite.errors import (
    CommunityDetectionUnavailable,
    DuplicateNodeError,
    MissingEndpointError,
    NodeNotFoundError,
)
from codegraph_lite.log_config import get_logger
from codegraph_lite.schema import (
    BaseNode,
    NodeType,
    Relationship,
    RelationType,
    node_from_properties,
    update_properties,
)

log = get_logger("db.embedded")

_SEARCH_FIELDS = ("name", "content", "description")


class EmbeddedGraphStore(BaseGraphStore):
    """rustworkx-backed graph store.

    Example:
        store = EmbeddedGraphStore()
        file_id = store.create_node(FileNode(name="a.py", path="a.py"))
        store.get_node(file_id)
    """

    def __init__(self, path: str | Path | None = None):
        """Initialize the embedded store.

        Args:
            path: Optional JSON file to load from and persist to on close
        """
        self._graph: rx.PyDiGraph = rx.PyDiGraph(multigraph=True)
        self._node_map: dict[str, int] = {}
        self._open_transactions = 0
        self._path = Path(path) if path else None

        if self._path and self._path.exists():
            self._load()
        log.info(f"Embedded graph store ready (nodes={len(self._node_map)}, persist={self._path or 'off'})")

    @property
    def backend_name(self) -> str:
        return "embedded"

    @property
    def open_transactions(self) -> int:
        return self._open_transactions

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init_schema(self) -> None:
        """Uniqueness of ids is enforced by the index map; nothing to create."""
        log.trace("init_schema: no-op for embedded store")

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        if self._path:
            self.save()
        log.debug("Embedded graph store closed")

    def save(self) -> None:
        """Write the graph to the persistence file."""
        if not self._path:
            return
        nodes = [self._graph[idx] for idx in self._node_map.values()]
        edges = [
            {
                "from": self._graph[src]["id"],
                "to": self._graph[dst]["id"],
                "type": payload["type"],
                "props": payload["props"],
            }
            for src, dst, payload in self._graph.weighted_edge_list()
        ]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_bytes(orjson.dumps({"nodes": nodes, "edges": edges}))
        log.info(f"Saved embedded graph to {self._path}: {len(nodes)} nodes, {len(edges)} edges")

    def _load(self) -> None:
        data = orjson.loads(self._path.read_bytes())
        for props in data.get("nodes", []):
            self._node_map[props["id"]] = self._graph.add_node(props)
        for edge in data.get("edges", []):
            src = self._node_map.get(edge["from"])
            dst = self._node_map.get(edge["to"])
            if src is None or dst is None:
                log.warning(f"Skipping edge with missing endpoint in {self._path}: {edge['from']} -> {edge['to']}")
                continue
            self._graph.add_edge(src, dst, {"type": edge["type"], "props": edge.get("props", {})})
        log.info(f"Loaded embedded graph from {self._path}: {len(self._node_map)} nodes")

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Snapshot transaction; nested scopes join the outer one."""
        outer = self._open_transactions == 0
        snapshot = (self._graph.copy(), dict(self._node_map)) if outer else None
        self._open_transactions += 1
        try:
            yield
        except Exception:
            if snapshot is not None:
                self._graph, self._node_map = snapshot
                log.warning("Embedded transaction rolled back")
            raise
        finally:
            self._open_transactions -= 1

    # =========================================================================
    # Writes
    # =========================================================================

    def create_subgraph(self, nodes: list[BaseNode], relationships: list[Relationship]) -> list[str]:
        """Create nodes then relationships in one transaction.

        Raises:
            DuplicateNodeError: If a node id already exists (or repeats in the batch)
            MissingEndpointError: If a relationship endpoint does not exist
        """
        with self._transaction():
            seen: set[str] = set()
            for node in nodes:
                if node.id in self._node_map or node.id in seen:
                    raise DuplicateNodeError(node.id)
                seen.add(node.id)

            indices = self._graph.add_nodes_from([node.to_properties() for node in nodes])
            for node, idx in zip(nodes, indices):
                self._node_map[node.id] = idx

            for rel in relationships:
                self._add_edge(rel)

        log.trace(f"Created {len(nodes)} nodes, {len(relationships)} relationships")
        return [node.id for node in nodes]

    def _add_edge(self, rel: Relationship) -> None:
        src = self._node_map.get(rel.from_id)
        dst = self._node_map.get(rel.to_id)
        if src is None or dst is None:
            missing = [i for i, idx in ((rel.from_id, src), (rel.to_id, dst)) if idx is None]
            raise MissingEndpointError(rel.from_id, rel.to_id, missing)
        self._graph.add_edge(src, dst, {"type": rel.type.value, "props": rel.to_properties()})

    def update_node(self, node_id: str, updates: dict[str, Any]) -> None:
        """Apply a partial update and bump updated_at.

        Raises:
            NodeNotFoundError: If the node does not exist
        """
        with self._transaction():
            idx = self._node_map.get(node_id)
            if idx is None:
                raise NodeNotFoundError(node_id)
            props = dict(self._graph[idx])
            props.update(update_properties(updates))
            props["updated_at"] = max(time.time(), props.get("updated_at", 0.0) + 1e-6)
            # Replace rather than mutate so snapshots stay untouched
            self._graph[idx] = props

    def delete_nodes(self, node_ids: list[str]) -> int:
        """Detach-delete nodes; unknown ids are ignored.

        Returns:
            Number of nodes deleted
        """
        deleted = 0
        with self._transaction():
            for node_id in node_ids:
                idx = self._node_map.pop(node_id, None)
                if idx is None:
                    continue
                self._graph.remove_node(idx)
                deleted += 1
        log.trace(f"Deleted {deleted}/{len(node_ids)} nodes")
        return deleted

    def clear_graph(self) -> None:
        with self._transaction():
            self._graph = rx.PyDiGraph(multigraph=True)
            self._node_map = {}
        log.info("Embedded graph cleared")

    # =========================================================================
    # Reads
    # =========================================================================

    def _props(self, idx: int) -> dict[str, Any]:
        return self._graph[idx]

    def _iter_props(self, node_types: list[str] | None = None) -> Iterator[dict[str, Any]]:
        for idx in self._node_map.values():
            props = self._graph[idx]
            if node_types and props.get("type") not in node_types:
                continue
            yield props

    def _relationship(self, src: int, dst: int, payload: dict[str, Any]) -> Relationship:
        return Relationship.from_properties(
            self._graph[src]["id"], self._graph[dst]["id"], payload["type"], payload["props"]
        )

    def _incident(self, idx: int, direction: str) -> list[tuple[int, int, int, dict[str, Any]]]:
        """Incident edges as (other, src, dst, payload)."""
        edges = []
        if direction in ("outgoing", "both"):
            edges.extend((dst, src, dst, data) for src, dst, data in self._graph.out_edges(idx))
        if direction in ("incoming", "both"):
            edges.extend(
                (src, src, dst, data)
                for src, dst, data in self._graph.in_edges(idx)
                if not (direction == "both" and src == dst)
            )
        return edges

    def get_node(self, node_id: str) -> BaseNode | None:
        idx = self._node_map.get(node_id)
        if idx is None:
            return None
        return node_from_properties(self._graph[idx])

    def find_nodes_by_type(self, node_type: NodeType, limit: int = 100) -> list[BaseNode]:
        wanted = type_values([node_type])
        results = []
        for props in self._iter_props(wanted):
            results.append(node_from_properties(props))
            if len(results) >= limit:
                break
        return results

    def find_nodes_by_property(self, node_type: NodeType | None, prop: str, value: Any, limit: int = 100) -> list[BaseNode]:
        wanted = type_values([node_type]) if node_type else None
        results = []
        for props in self._iter_props(wanted):
            if props.get(prop) == value:
                results.append(node_from_properties(props))
                if len(results) >= limit:
                    break
        return results

    def find_related_nodes(
        self,
        node_id: str,
        relation_types: list[RelationType] | None = None,
        depth: int = 1,
        limit: int = 50,
    ) -> list[BaseNode]:
        """Nodes within ``depth`` hops in either direction (start excluded)."""
        start = self._node_map.get(node_id)
        if start is None:
            return []
        rel_filter = set(type_values(relation_types))
        seen = {start}
        frontier = [start]
        related: list[BaseNode] = []
        for _ in range(max(depth, 0)):
            next_frontier = []
            for idx in frontier:
                for other, _src, _dst, payload in self._incident(idx, "both"):
                    if rel_filter and payload["type"] not in rel_filter:
                        continue
                    if other in seen:
                        continue
                    seen.add(other)
                    next_frontier.append(other)
                    related.append(node_from_properties(self._graph[other]))
                    if len(related) >= limit:
                        return related
            frontier = next_frontier
        return related

    def search_nodes(self, query: str, types: list[NodeType] | None = None, limit: int = 20) -> list[BaseNode]:
        """Case-insensitive substring search over name/content/description, newest first."""
        needle = query.lower()
        matches = [
            props
            for props in self._iter_props(type_values(types) or None)
            if any(needle in str(props.get(f) or "").lower() for f in _SEARCH_FIELDS)
        ]
        matches.sort(key=lambda p: p.get("updated_at", 0.0), reverse=True)
        return [node_from_properties(p) for p in matches[:limit]]

    def find_similar_by_embedding(
        self,
        embedding: list[float],
        node_type: NodeType | None = None,
        threshold: float = 0.8,
        limit: int = 10,
    ) -> list[tuple[BaseNode, float]]:
        """Cosine similarity over all stored vectors of the same dimension."""
        query = np.asarray(embedding, dtype=np.float64)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []

        candidates = [
            props
            for props in self._iter_props(type_values([node_type]) if node_type else None)
            if props.get("embedding") and len(props["embedding"]) == len(query)
        ]
        if not candidates:
            return []

        matrix = np.asarray([c["embedding"] for c in candidates], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = np.inf
        scores = matrix @ query / (norms * query_norm)

        order = np.argsort(-scores)
        results = []
        for i in order:
            score = float(scores[i])
            if score < threshold:
                break
            results.append((node_from_properties(candidates[i]), score))
            if len(results) >= limit:
                break
        return results

    def neighbors(
        self,
        node_id: str,
        relation_types: list[RelationType] | None = None,
        direction: str = "both",
        node_types: list[NodeType] | None = None,
        filters: list[PropertyFilter] | None = None,
        limit: int = 50,
    ) -> list[tuple[BaseNode, Relationship]]:
        validate_direction(direction)
        filters = validate_filters(filters)
        idx = self._node_map.get(node_id)
        if idx is None:
            return []

        rel_filter = set(type_values(relation_types))
        type_filter = set(type_values(node_types))
        results = []
        for other, src, dst, payload in self._incident(idx, direction):
            if rel_filter and payload["type"] not in rel_filter:
                continue
            props = self._graph[other]
            if type_filter and props.get("type") not in type_filter:
                continue
            if not all(f.matches(props) for f in filters):
                continue
            results.append((node_from_properties(props), self._relationship(src, dst, payload)))
            if len(results) >= limit:
                break
        return results

    # =========================================================================
    # Paths and analytics
    # =========================================================================

    def _path_steps(self, idx: int, rel_filter: set[str]) -> list[tuple[int, int, int, dict[str, Any]]]:
        return [
            step for step in self._incident(idx, "both")
            if not rel_filter or step[3]["type"] in rel_filter
        ]

    def shortest_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 10,
    ) -> GraphPath | None:
        """Undirected BFS shortest path bounded by max_depth edges."""
        start = self._node_map.get(start_id)
        end = self._node_map.get(end_id)
        if start is None or end is None:
            return None
        if start == end:
            return GraphPath(nodes=[start_id])

        rel_filter = set(type_values(relation_types))
        parents: dict[int, tuple[int, tuple[int, int, dict[str, Any]]]] = {}
        queue = deque([(start, 0)])
        seen = {start}
        while queue:
            idx, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for other, src, dst, payload in self._path_steps(idx, rel_filter):
                if other in seen:
                    continue
                seen.add(other)
                parents[other] = (idx, (src, dst, payload))
                if other == end:
                    return self._build_path(end, parents)
                queue.append((other, depth + 1))
        return None

    def _build_path(self, end: int, parents: dict) -> GraphPath:
        nodes = [end]
        edges = []
        current = end
        while current in parents:
            prev, (src, dst, payload) = parents[current]
            edges.append(self._relationship(src, dst, payload))
            nodes.append(prev)
            current = prev
        nodes.reverse()
        edges.reverse()
        return GraphPath(nodes=[self._graph[i]["id"] for i in nodes], edges=edges)

    def all_paths(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 5,
        limit: int = 10,
    ) -> list[GraphPath]:
        """Simple undirected paths up to max_depth edges, shortest first."""
        start = self._node_map.get(start_id)
        end = self._node_map.get(end_id)
        if start is None or end is None or limit <= 0:
            return []

        rel_filter = set(type_values(relation_types))
        paths: list[GraphPath] = []
        queue = deque([([start], [])])
        while queue and len(paths) < limit:
            nodes, edges = queue.popleft()
            if len(edges) >= max_depth:
                continue
            for other, src, dst, payload in self._path_steps(nodes[-1], rel_filter):
                if other in nodes:
                    continue
                new_nodes = nodes + [other]
                new_edges = edges + [self._relationship(src, dst, payload)]
                if other == end:
                    paths.append(GraphPath(nodes=[self._graph[i]["id"] for i in new_nodes], edges=new_edges))
                    if len(paths) >= limit:
                        break
                else:
                    queue.append((new_nodes, new_edges))
        return paths

    def get_edges(self, node_type: NodeType | None = None) -> list[Relationship]:
        """All relationships, optionally only those between nodes of one type."""
        wanted = node_type.value if node_type else None
        edges = []
        for src, dst, payload in self._graph.weighted_edge_list():
            if wanted and (self._graph[src]["type"] != wanted or self._graph[dst]["type"] != wanted):
                continue
            edges.append(self._relationship(src, dst, payload))
        return edges

    def relationship_triples(self, node_types: list[NodeType] | None = None) -> list[tuple[str, str, str, int]]:
        """Count (source type, relation, target type) triples, most frequent first."""
        wanted = set(type_values(node_types))
        counts: Counter = Counter()
        for src, dst, payload in self._graph.weighted_edge_list():
            src_type = self._graph[src]["type"]
            dst_type = self._graph[dst]["type"]
            if wanted and src_type not in wanted and dst_type not in wanted:
                continue
            counts[(src_type, payload["type"], dst_type)] += 1
        return [(s, r, t, c) for (s, r, t), c in counts.most_common()]

    def detect_communities(self, node_type: NodeType | None = None) -> list[list[str]]:
        raise CommunityDetectionUnavailable(self.backend_name)

    def pagerank(self, node_type: NodeType | None = None) -> dict[str, float]:
        """PageRank via rustworkx."""
        if not self._node_map:
            return {}
        scores = rx.pagerank(self._graph)
        wanted = node_type.value if node_type else None
        ranks = {}
        for idx, score in scores.items():
            props = self._graph[idx]
            if wanted and props["type"] != wanted:
                continue
            ranks[props["id"]] = float(score)
        return ranks

    def get_graph_statistics(self) -> dict[str, Any]:
        nodes_by_type = Counter(props["type"] for props in self._iter_props())
        rels_by_type = Counter(payload["type"] for _s, _d, payload in self._graph.weighted_edge_list())
        return {
            "backend": self.backend_name,
            "total_nodes": sum(nodes_by_type.values()),
            "total_relationships": sum(rels_by_type.values()),
            "nodes_by_type": dict(nodes_by_type),
            "relationships_by_type": dict(rels_by_type),
        }


__all__ = ["EmbeddedGraphStore"]
