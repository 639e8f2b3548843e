"""Memgraph/Neo4j store tests for CodeGraph Lite.

Runs against a mocked neo4j driver:
- Transaction discipline (commit, rollback, session close)
- Duplicate and missing-endpoint detection
- Filter compilation to parameterised Cypher
- Dialect differences (database, shortest path, MAGE algorithms)
"""

from unittest.mock import MagicMock

import pytest

from codegraph_lite.db.graph_protocol import PropertyFilter
from codegraph_lite.db.memgraph_backend import MemgraphStore
from codegraph_lite.errors import (
    AlgorithmUnavailable,
    CommunityDetectionUnavailable,
    DuplicateNodeError,
    InvalidArgumentError,
    MissingEndpointError,
    NodeNotFoundError,
)
from codegraph_lite.schema import ConceptNode, FunctionNode, NodeType, Relationship, RelationType


def _records(*rows):
    return [MagicMock(data=MagicMock(return_value=row)) for row in rows]


@pytest.fixture
def driver():
    driver = MagicMock()
    session = driver.session.return_value
    session.run.return_value = []
    session.begin_transaction.return_value.run.return_value = []
    return driver


@pytest.fixture
def session(driver):
    return driver.session.return_value


@pytest.fixture
def tx(session):
    return session.begin_transaction.return_value


@pytest.fixture
def mg(driver):
    return MemgraphStore(driver=driver)


def _run_queries(mock_run):
    return [c.args[0] for c in mock_run.call_args_list]


class TestTransactions:
    def test_create_subgraph_commits_and_closes(self, mg, session, tx):
        a, b = ConceptNode(name="a"), ConceptNode(name="b")

        def run(cypher, params=None):
            if "LIMIT 1" in cypher:
                return []
            if "RETURN n.id AS id" in cypher:
                return _records({"id": a.id}, {"id": b.id})
            return []

        tx.run.side_effect = run
        ids = mg.create_subgraph([a, b], [Relationship(a.id, b.id, RelationType.RELATES_TO)])

        assert ids == [a.id, b.id]
        tx.commit.assert_called_once()
        tx.rollback.assert_not_called()
        session.close.assert_called_once()
        assert mg.open_transactions == 0
        queries = _run_queries(tx.run)
        assert any("CREATE (n:Node:Concept)" in q for q in queries)
        assert any("CREATE (a)-[r:RELATES_TO]->(b)" in q for q in queries)

    def test_missing_endpoint_rolls_back(self, mg, session, tx):
        a = ConceptNode(name="a")
        tx.run.side_effect = lambda cypher, params=None: (
            _records({"id": a.id}) if "RETURN n.id AS id" in cypher and "LIMIT 1" not in cypher else []
        )

        with pytest.raises(MissingEndpointError) as exc:
            mg.create_subgraph([a], [Relationship(a.id, "ghost", RelationType.RELATES_TO)])

        assert exc.value.missing == ["ghost"]
        tx.commit.assert_not_called()
        tx.rollback.assert_called_once()
        session.close.assert_called_once()
        assert mg.open_transactions == 0

    def test_existing_id_rolls_back(self, mg, tx):
        a = ConceptNode(name="a")
        tx.run.return_value = _records({"id": a.id})

        with pytest.raises(DuplicateNodeError):
            mg.create_node(a)
        tx.rollback.assert_called_once()
        tx.commit.assert_not_called()

    def test_duplicate_in_batch_rejected_before_connecting(self, mg, driver):
        a = ConceptNode(name="a")
        with pytest.raises(DuplicateNodeError):
            mg.create_nodes([a, ConceptNode(id=a.id, name="b")])
        driver.session.assert_not_called()

    def test_update_missing_node(self, mg, tx):
        with pytest.raises(NodeNotFoundError):
            mg.update_node("missing", {"name": "x"})
        tx.rollback.assert_called_once()

    def test_update_sends_flat_properties(self, mg, tx):
        tx.run.return_value = _records({"id": "n1"})
        mg.update_node("n1", {"metadata": {"k": 1}, "id": "ignored"})

        params = tx.run.call_args.args[1]
        assert params["updates"] == {"metadata_json": '{"k":1}'}
        tx.commit.assert_called_once()

    def test_delete_nodes_returns_count(self, mg, tx):
        tx.run.return_value = _records({"deleted": 2})
        assert mg.delete_nodes(["a", "b", "c"]) == 2
        assert mg.delete_nodes([]) == 0


class TestReads:
    def test_get_node(self, mg, session):
        node = FunctionNode(name="f", signature="def f()")
        session.run.return_value = _records({"props": node.to_properties()})
        assert mg.get_node(node.id) == node

    def test_neighbors_compiles_filters(self, mg, session):
        mg.neighbors("n1", [RelationType.CALLS], "outgoing", filters=[PropertyFilter("complexity", "gt", 5)])

        cypher, params = session.run.call_args.args
        assert "(n)-[r]->(m:Node)" in cypher
        assert "m.complexity > $f0" in cypher
        assert params["f0"] == 5
        assert params["rel_types"] == ["CALLS"]

    def test_invalid_filter_rejected_before_query(self, mg, driver):
        with pytest.raises(InvalidArgumentError):
            mg.neighbors("n1", filters=[PropertyFilter("complexity", "between", 5)])
        driver.session.assert_not_called()

    def test_statistics(self, mg, session):
        session.run.side_effect = [
            _records({"type": "File", "count": 2}, {"type": "Function", "count": 3}),
            _records({"type": "CONTAINS", "count": 3}),
        ]
        stats = mg.get_graph_statistics()
        assert stats["total_nodes"] == 5
        assert stats["total_relationships"] == 3
        assert stats["nodes_by_type"]["Function"] == 3

    def test_health_check_failure(self, mg, session):
        session.run.side_effect = RuntimeError("connection refused")
        assert mg.health_check() is False
        session.close.assert_called_once()


class TestDialects:
    def test_memgraph_shortest_path_uses_bfs(self, mg, session):
        session.run.return_value = _records(
            {
                "node_ids": ["a", "b"],
                "rels": [{"type": "CALLS", "from_id": "a", "to_id": "b", "props": {}}],
            }
        )
        path = mg.shortest_path("a", "b", max_depth=4)

        assert "*BFS ..4" in session.run.call_args.args[0]
        assert path.nodes == ["a", "b"]
        assert path.edges[0].type is RelationType.CALLS

    def test_neo4j_uses_database_and_shortest_path(self, driver, session):
        store = MemgraphStore(driver=driver, dialect="neo4j", database="graph")
        store.shortest_path("a", "b")

        driver.session.assert_called_with(database="graph")
        assert "shortestPath(" in session.run.call_args.args[0]

    def test_neo4j_has_no_native_algorithms(self, driver):
        store = MemgraphStore(driver=driver, dialect="neo4j")
        with pytest.raises(CommunityDetectionUnavailable):
            store.detect_communities()
        with pytest.raises(AlgorithmUnavailable):
            store.pagerank()

    def test_memgraph_communities_grouped(self, mg, session):
        session.run.return_value = _records(
            {"id": "a", "type": "Function", "community_id": 0},
            {"id": "b", "type": "Function", "community_id": 0},
            {"id": "c", "type": "Class", "community_id": 1},
        )
        assert mg.detect_communities(NodeType.FUNCTION) == [["a", "b"]]

    def test_missing_mage_reported_as_unavailable(self, mg, session):
        session.run.side_effect = RuntimeError("There is no procedure named 'community_detection.get'")
        with pytest.raises(CommunityDetectionUnavailable):
            mg.detect_communities()

    def test_init_schema_tolerates_existing(self, mg, session):
        session.run.side_effect = RuntimeError("Constraint already exists")
        mg.init_schema()
        assert session.run.call_count == 4
