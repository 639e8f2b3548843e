"""Memgraph / Neo4j graph store for CodeGraph Lite.

Both engines speak Bolt and Cypher and are reached through the neo4j
Python driver. The ``dialect`` selects the few places where they differ:

- Schema: ``CREATE CONSTRAINT ON (n:Node) ASSERT ...`` (Memgraph) vs
  ``CREATE CONSTRAINT ... FOR (n:Node) REQUIRE ...`` (Neo4j)
- Shortest path: ``*BFS ..N`` expansion (Memgraph) vs ``shortestPath()`` (Neo4j)
- Community detection / PageRank: MAGE procedures on Memgraph only

Every node carries the common ``Node`` label plus its kind label
(``:Node:File``), with a uniqueness constraint on ``Node.id``.

Every write runs in an explicit transaction: session -> begin_transaction ->
commit, with rollback on any exception and the session closed in all cases.
"""

import time
from collections import defaultdict
from contextlib import contextmanager
from typing import Any, Iterator, Literal

from codegraph_lite.db.graph_protocol import (
    BaseGraphStore,
    GraphPath,
    PropertyFilter,
    type_values,
    validate_direction,
    validate_filters,
)
from codegraph_lite.errors import (
    AlgorithmUnavailable,
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

log = get_logger("db.memgraph")

Dialect = Literal["memgraph", "neo4j"]

_PATH_RETURN = """
RETURN [x IN nodes(p) | x.id] AS node_ids,
       [r IN relationships(p) | {type: type(r), from_id: startNode(r).id, to_id: endNode(r).id, props: properties(r)}] AS rels
"""


def _rel_pattern(relation_types: list[RelationType] | None) -> str:
    """Relationship type alternation for inline patterns (enum values only)."""
    values = type_values(relation_types)
    return ":" + "|".join(values) if values else ""


class MemgraphStore(BaseGraphStore):
    """Cypher graph store over the Bolt protocol.

    Wraps the neo4j Python driver. Works against Memgraph (default) and
    Neo4j (``dialect="neo4j"``).
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 7687,
        username: str = "",
        password: str = "",
        database: str | None = None,
        dialect: Dialect = "memgraph",
        connection_timeout: float = 30.0,
        driver: Any = None,
    ):
        """Initialize the Bolt connection.

        Args:
            host: Server host address
            port: Bolt port (default: 7687)
            username: Optional username for authentication
            password: Optional password for authentication
            database: Database name (Neo4j only)
            dialect: "memgraph" or "neo4j"
            connection_timeout: Connection timeout in seconds (default: 30.0)
            driver: Pre-built driver (skips connection setup)
        """
        self.host = host
        self.port = port
        self.dialect = dialect
        self.database = database if dialect == "neo4j" else None
        self._uri = f"bolt://{host}:{port}"
        self._open_transactions = 0

        if driver is not None:
            self._driver = driver
            return

        from neo4j import GraphDatabase

        log.info(f"Connecting to {dialect} at {self._uri} (auth={'yes' if password else 'no'})")
        if username or password:
            self._driver = GraphDatabase.driver(
                self._uri,
                auth=(username, password),
                connection_timeout=connection_timeout,
            )
        else:
            self._driver = GraphDatabase.driver(
                self._uri,
                connection_timeout=connection_timeout,
            )

        self._driver.verify_connectivity()
        log.info(f"{dialect} connected: {self._uri}")

    @property
    def backend_name(self) -> str:
        return self.dialect

    @property
    def open_transactions(self) -> int:
        return self._open_transactions

    # =========================================================================
    # Sessions and transactions
    # =========================================================================

    def _session(self):
        if self.database:
            return self._driver.session(database=self.database)
        return self._driver.session()

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Explicit write transaction released on every exit path."""
        session = self._session()
        self._open_transactions += 1
        tx = None
        committed = False
        try:
            tx = session.begin_transaction()
            yield tx
            tx.commit()
            committed = True
        except Exception:
            if tx is not None and not committed:
                try:
                    tx.rollback()
                except Exception as rollback_error:
                    log.warning(f"Rollback failed: {rollback_error}")
            raise
        finally:
            session.close()
            self._open_transactions -= 1

    def _read(self, cypher: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        """Run a read query and materialize its records."""
        log.trace(f"{self.dialect} read: {cypher.strip()[:100]}...")
        session = self._session()
        try:
            result = session.run(cypher, params or {})
            return [record.data() for record in result]
        except Exception as e:
            log.error(f"{self.dialect} query failed: {e}")
            log.debug(f"Query was: {cypher}")
            raise
        finally:
            session.close()

    @staticmethod
    def _tx_rows(tx, cypher: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        return [record.data() for record in tx.run(cypher, params or {})]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def health_check(self) -> bool:
        try:
            self._read("RETURN 1 AS ok")
            return True
        except Exception as e:
            log.warning(f"{self.dialect} health check failed: {e}")
            return False

    def close(self) -> None:
        log.info(f"Closing {self.dialect} connection")
        if self._driver:
            self._driver.close()

    def init_schema(self) -> None:
        """Create the id uniqueness constraint and lookup indexes.

        Schema statements run in auto-commit mode; Memgraph rejects them
        inside explicit transactions.
        """
        if self.dialect == "memgraph":
            statements = [
                "CREATE CONSTRAINT ON (n:Node) ASSERT n.id IS UNIQUE",
                "CREATE INDEX ON :Node(id)",
                "CREATE INDEX ON :Node(type)",
                "CREATE INDEX ON :File(path)",
            ]
        else:
            statements = [
                "CREATE CONSTRAINT node_id_unique IF NOT EXISTS FOR (n:Node) REQUIRE n.id IS UNIQUE",
                "CREATE INDEX node_type IF NOT EXISTS FOR (n:Node) ON (n.type)",
                "CREATE INDEX file_path IF NOT EXISTS FOR (n:File) ON (n.path)",
            ]

        log.info(f"Creating {self.dialect} schema")
        for statement in statements:
            try:
                self._read(statement)
            except Exception as e:
                error_msg = str(e).lower()
                if "already exists" in error_msg or "index already" in error_msg:
                    log.trace(f"Schema item already exists: {statement}")
                else:
                    log.warning(f"Schema creation issue: {e}")

    # =========================================================================
    # Writes
    # =========================================================================

    def create_subgraph(self, nodes: list[BaseNode], relationships: list[Relationship]) -> list[str]:
        """Create nodes then relationships in one transaction.

        Raises:
            DuplicateNodeError: If a node id already exists (or repeats in the batch)
            MissingEndpointError: If a relationship endpoint does not exist
        """
        ids = [node.id for node in nodes]
        seen: set[str] = set()
        for node_id in ids:
            if node_id in seen:
                raise DuplicateNodeError(node_id)
            seen.add(node_id)

        with self._transaction() as tx:
            if ids:
                existing = self._tx_rows(
                    tx, "MATCH (n:Node) WHERE n.id IN $ids RETURN n.id AS id LIMIT 1", {"ids": ids}
                )
                if existing:
                    raise DuplicateNodeError(existing[0]["id"])

                by_label: dict[str, list[dict[str, Any]]] = defaultdict(list)
                for node in nodes:
                    by_label[node.type.value].append(node.to_properties())
                for label, rows in by_label.items():
                    tx.run(f"UNWIND $rows AS props CREATE (n:Node:{label}) SET n = props", {"rows": rows})

            if relationships:
                self._create_relationships_tx(tx, relationships)

        log.trace(f"Created {len(nodes)} nodes, {len(relationships)} relationships")
        return ids

    def _create_relationships_tx(self, tx, relationships: list[Relationship]) -> None:
        endpoint_ids = sorted({r.from_id for r in relationships} | {r.to_id for r in relationships})
        found = {
            row["id"]
            for row in self._tx_rows(tx, "MATCH (n:Node) WHERE n.id IN $ids RETURN n.id AS id", {"ids": endpoint_ids})
        }
        for rel in relationships:
            missing = [i for i in (rel.from_id, rel.to_id) if i not in found]
            if missing:
                raise MissingEndpointError(rel.from_id, rel.to_id, missing)

        by_type: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for rel in relationships:
            by_type[rel.type.value].append({"from_id": rel.from_id, "to_id": rel.to_id, "props": rel.to_properties()})
        for rel_type, rows in by_type.items():
            tx.run(
                f"""
                UNWIND $rows AS row
                MATCH (a:Node {{id: row.from_id}})
                MATCH (b:Node {{id: row.to_id}})
                CREATE (a)-[r:{rel_type}]->(b)
                SET r = row.props
                """,
                {"rows": rows},
            )

    def update_node(self, node_id: str, updates: dict[str, Any]) -> None:
        """Apply a partial update and bump updated_at.

        Raises:
            NodeNotFoundError: If the node does not exist
        """
        props = update_properties(updates)
        props.pop("updated_at", None)
        with self._transaction() as tx:
            rows = self._tx_rows(
                tx,
                """
                MATCH (n:Node {id: $id})
                SET n += $updates,
                    n.updated_at = CASE WHEN $now > coalesce(n.updated_at, 0.0)
                                        THEN $now ELSE n.updated_at + 0.000001 END
                RETURN n.id AS id
                """,
                {"id": node_id, "updates": props, "now": time.time()},
            )
            if not rows:
                raise NodeNotFoundError(node_id)

    def delete_nodes(self, node_ids: list[str]) -> int:
        """Detach-delete nodes; unknown ids are ignored."""
        if not node_ids:
            return 0
        with self._transaction() as tx:
            rows = self._tx_rows(
                tx,
                """
                MATCH (n:Node) WHERE n.id IN $ids
                WITH collect(n) AS doomed, count(n) AS deleted
                FOREACH (x IN doomed | DETACH DELETE x)
                RETURN deleted
                """,
                {"ids": list(node_ids)},
            )
        deleted = rows[0]["deleted"] if rows else 0
        log.trace(f"Deleted {deleted}/{len(node_ids)} nodes")
        return deleted

    def clear_graph(self) -> None:
        with self._transaction() as tx:
            tx.run("MATCH (n:Node) DETACH DELETE n")
        log.info(f"{self.dialect} graph cleared")

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    def _nodes(rows: list[dict[str, Any]]) -> list[BaseNode]:
        return [node_from_properties(row["props"]) for row in rows]

    @staticmethod
    def _relationship(data: dict[str, Any]) -> Relationship:
        return Relationship.from_properties(data["from_id"], data["to_id"], data["type"], data.get("props") or {})

    def get_node(self, node_id: str) -> BaseNode | None:
        rows = self._read("MATCH (n:Node {id: $id}) RETURN properties(n) AS props", {"id": node_id})
        return node_from_properties(rows[0]["props"]) if rows else None

    def find_nodes_by_type(self, node_type: NodeType, limit: int = 100) -> list[BaseNode]:
        rows = self._read(
            f"MATCH (n:{node_type.value}) RETURN properties(n) AS props LIMIT $limit",
            {"limit": limit},
        )
        return self._nodes(rows)

    def find_nodes_by_property(self, node_type: NodeType | None, prop: str, value: Any, limit: int = 100) -> list[BaseNode]:
        PropertyFilter(prop, "eq", value).validate()
        label = node_type.value if node_type else "Node"
        rows = self._read(
            f"MATCH (n:{label}) WHERE n.{prop} = $value RETURN properties(n) AS props LIMIT $limit",
            {"value": value, "limit": limit},
        )
        return self._nodes(rows)

    def find_related_nodes(
        self,
        node_id: str,
        relation_types: list[RelationType] | None = None,
        depth: int = 1,
        limit: int = 50,
    ) -> list[BaseNode]:
        depth = max(int(depth), 1)
        rows = self._read(
            f"""
            MATCH (n:Node {{id: $id}})-[r{_rel_pattern(relation_types)}*1..{depth}]-(m:Node)
            WHERE m.id <> $id
            RETURN DISTINCT properties(m) AS props
            LIMIT $limit
            """,
            {"id": node_id, "limit": limit},
        )
        return self._nodes(rows)

    def search_nodes(self, query: str, types: list[NodeType] | None = None, limit: int = 20) -> list[BaseNode]:
        rows = self._read(
            """
            MATCH (n:Node)
            WHERE (size($types) = 0 OR n.type IN $types)
              AND (toLower(coalesce(n.name, '')) CONTAINS $q
                   OR toLower(coalesce(n.content, '')) CONTAINS $q
                   OR toLower(coalesce(n.description, '')) CONTAINS $q)
            RETURN properties(n) AS props
            ORDER BY n.updated_at DESC
            LIMIT $limit
            """,
            {"q": query.lower(), "types": type_values(types), "limit": limit},
        )
        return self._nodes(rows)

    def find_similar_by_embedding(
        self,
        embedding: list[float],
        node_type: NodeType | None = None,
        threshold: float = 0.8,
        limit: int = 10,
    ) -> list[tuple[BaseNode, float]]:
        """Cosine similarity evaluated by the engine."""
        if not embedding:
            return []
        rows = self._read(
            """
            MATCH (n:Node)
            WHERE n.embedding IS NOT NULL
              AND ($type IS NULL OR n.type = $type)
              AND size(n.embedding) = size($embedding)
            WITH n,
                 reduce(dot = 0.0, i IN range(0, size($embedding) - 1) | dot + n.embedding[i] * $embedding[i]) AS dot,
                 sqrt(reduce(a = 0.0, x IN n.embedding | a + x * x)) AS norm_n,
                 sqrt(reduce(b = 0.0, x IN $embedding | b + x * x)) AS norm_q
            WITH n, CASE WHEN norm_n = 0 OR norm_q = 0 THEN 0.0 ELSE dot / (norm_n * norm_q) END AS similarity
            WHERE similarity >= $threshold
            RETURN properties(n) AS props, similarity
            ORDER BY similarity DESC
            LIMIT $limit
            """,
            {
                "embedding": list(embedding),
                "type": node_type.value if node_type else None,
                "threshold": threshold,
                "limit": limit,
            },
        )
        return [(node_from_properties(row["props"]), float(row["similarity"])) for row in rows]

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

        pattern = {
            "outgoing": "(n)-[r]->(m:Node)",
            "incoming": "(n)<-[r]-(m:Node)",
            "both": "(n)-[r]-(m:Node)",
        }[direction]
        params: dict[str, Any] = {
            "id": node_id,
            "rel_types": type_values(relation_types),
            "node_types": type_values(node_types),
            "limit": limit,
        }
        conditions = ["(size($rel_types) = 0 OR type(r) IN $rel_types)", "(size($node_types) = 0 OR m.type IN $node_types)"]
        for i, f in enumerate(filters):
            params[f"f{i}"] = f.value
            conditions.append(f.to_cypher("m", f"f{i}"))

        rows = self._read(
            f"""
            MATCH (n:Node {{id: $id}})
            MATCH {pattern}
            WHERE {' AND '.join(conditions)}
            RETURN properties(m) AS props, type(r) AS type, properties(r) AS rel_props,
                   startNode(r).id AS from_id, endNode(r).id AS to_id
            LIMIT $limit
            """,
            params,
        )
        return [
            (
                node_from_properties(row["props"]),
                Relationship.from_properties(row["from_id"], row["to_id"], row["type"], row["rel_props"]),
            )
            for row in rows
        ]

    # =========================================================================
    # Paths and analytics
    # =========================================================================

    def _paths(self, rows: list[dict[str, Any]]) -> list[GraphPath]:
        return [
            GraphPath(nodes=list(row["node_ids"]), edges=[self._relationship(r) for r in row["rels"]])
            for row in rows
        ]

    def shortest_path(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 10,
    ) -> GraphPath | None:
        max_depth = max(int(max_depth), 1)
        rel = _rel_pattern(relation_types)
        if self.dialect == "memgraph":
            cypher = f"""
            MATCH p = (a:Node {{id: $start}})-[{rel} *BFS ..{max_depth}]-(b:Node {{id: $end}})
            {_PATH_RETURN}
            LIMIT 1
            """
        else:
            cypher = f"""
            MATCH (a:Node {{id: $start}}), (b:Node {{id: $end}})
            MATCH p = shortestPath((a)-[{rel}*..{max_depth}]-(b))
            {_PATH_RETURN}
            LIMIT 1
            """
        paths = self._paths(self._read(cypher, {"start": start_id, "end": end_id}))
        return paths[0] if paths else None

    def all_paths(
        self,
        start_id: str,
        end_id: str,
        relation_types: list[RelationType] | None = None,
        max_depth: int = 5,
        limit: int = 10,
    ) -> list[GraphPath]:
        max_depth = max(int(max_depth), 1)
        rows = self._read(
            f"""
            MATCH p = (a:Node {{id: $start}})-[{_rel_pattern(relation_types)}*1..{max_depth}]-(b:Node {{id: $end}})
            WITH p ORDER BY size(relationships(p))
            {_PATH_RETURN}
            LIMIT $limit
            """,
            {"start": start_id, "end": end_id, "limit": limit},
        )
        return self._paths(rows)

    def get_edges(self, node_type: NodeType | None = None) -> list[Relationship]:
        rows = self._read(
            """
            MATCH (a:Node)-[r]->(b:Node)
            WHERE $type IS NULL OR (a.type = $type AND b.type = $type)
            RETURN a.id AS from_id, b.id AS to_id, type(r) AS type, properties(r) AS props
            """,
            {"type": node_type.value if node_type else None},
        )
        return [self._relationship(row) for row in rows]

    def relationship_triples(self, node_types: list[NodeType] | None = None) -> list[tuple[str, str, str, int]]:
        rows = self._read(
            """
            MATCH (a:Node)-[r]->(b:Node)
            WHERE size($types) = 0 OR a.type IN $types OR b.type IN $types
            RETURN a.type AS source, type(r) AS rel, b.type AS target, count(*) AS frequency
            ORDER BY frequency DESC
            """,
            {"types": type_values(node_types)},
        )
        return [(row["source"], row["rel"], row["target"], int(row["frequency"])) for row in rows]

    def detect_communities(self, node_type: NodeType | None = None) -> list[list[str]]:
        """Louvain communities via MAGE ``community_detection.get()``.

        Raises:
            CommunityDetectionUnavailable: On Neo4j or when MAGE is not loaded
        """
        if self.dialect != "memgraph":
            raise CommunityDetectionUnavailable(self.backend_name)
        try:
            rows = self._read(
                """
                CALL community_detection.get()
                YIELD node, community_id
                RETURN node.id AS id, node.type AS type, community_id
                """
            )
        except Exception as e:
            log.warning(f"Native community detection failed: {e}")
            raise CommunityDetectionUnavailable(self.backend_name) from e

        groups: dict[Any, list[str]] = defaultdict(list)
        for row in rows:
            if row["id"] is None or (node_type and row["type"] != node_type.value):
                continue
            groups[row["community_id"]].append(row["id"])
        return list(groups.values())

    def pagerank(self, node_type: NodeType | None = None) -> dict[str, float]:
        """PageRank via MAGE ``pagerank.get()``.

        Raises:
            AlgorithmUnavailable: On Neo4j or when MAGE is not loaded
        """
        if self.dialect != "memgraph":
            raise AlgorithmUnavailable("pagerank", self.backend_name)
        try:
            rows = self._read(
                """
                CALL pagerank.get()
                YIELD node, rank
                RETURN node.id AS id, node.type AS type, rank
                """
            )
        except Exception as e:
            log.warning(f"PageRank computation failed: {e}")
            raise AlgorithmUnavailable("pagerank", self.backend_name) from e

        return {
            row["id"]: float(row["rank"])
            for row in rows
            if row["id"] is not None and (not node_type or row["type"] == node_type.value)
        }

    def get_graph_statistics(self) -> dict[str, Any]:
        node_rows = self._read("MATCH (n:Node) RETURN n.type AS type, count(*) AS count")
        rel_rows = self._read("MATCH (:Node)-[r]->(:Node) RETURN type(r) AS type, count(*) AS count")
        nodes_by_type = {row["type"]: int(row["count"]) for row in node_rows}
        rels_by_type = {row["type"]: int(row["count"]) for row in rel_rows}
        return {
            "backend": self.backend_name,
            "total_nodes": sum(nodes_by_type.values()),
            "total_relationships": sum(rels_by_type.values()),
            "nodes_by_type": nodes_by_type,
            "relationships_by_type": rels_by_type,
        }


def create_memgraph_store(
    host: str = "localhost",
    port: int = 7687,
    username: str = "",
    password: str = "",
    database: str | None = None,
    dialect: Dialect = "memgraph",
) -> MemgraphStore:
    """Create a Bolt store and initialize its schema.

    Raises:
        neo4j.exceptions.ServiceUnavailable: If the server is not reachable
    """
    store = MemgraphStore(host, port, username, password, database=database, dialect=dialect)
    store.init_schema()
    return store


def is_memgraph_available(
    host: str = "localhost",
    port: int = 7687,
    username: str = "",
    password: str = "",
    timeout: float = 2.0,
) -> bool:
    """Check if a Bolt server is available at the given address.

    Uses socket-level pre-check before neo4j driver to avoid long hangs.
    """
    import socket

    # Quick socket-level check first (avoids neo4j driver's long timeout)
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
        sock.close()
    except OSError as e:
        log.debug(f"Bolt socket check failed at {host}:{port}: {e}")
        return False

    try:
        from neo4j import GraphDatabase

        uri = f"bolt://{host}:{port}"
        auth = (username, password) if (username or password) else None
        driver = GraphDatabase.driver(uri, auth=auth, connection_timeout=timeout)
        try:
            driver.verify_connectivity()
        finally:
            driver.close()
        return True

    except Exception as e:
        log.debug(f"Bolt server not available at {host}:{port}: {e}")
        return False


__all__ = ["MemgraphStore", "create_memgraph_store", "is_memgraph_available"]
