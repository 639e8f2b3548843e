"""Graph stores for CodeGraph Lite.

Store Selection:
- Memgraph: Preferred when a server is reachable (Cypher, MAGE algorithms)
- Neo4j: Same Bolt driver with the neo4j dialect
- Embedded: rustworkx in-process graph, fallback everywhere else

Environment Variables:
- CODEGRAPH_GRAPH_BACKEND: Force "memgraph", "neo4j" or "embedded"

Module Structure:
- graph_protocol.py: Store protocol, filters, paths
- graph_factory.py: Store selection and auto-detection
- memgraph_backend.py: Memgraph/Neo4j implementation
- embedded_backend.py: rustworkx implementation

Example:
    from codegraph_lite.db import create_graph_store

    store = create_graph_store("embedded")
    print(store.get_graph_statistics())
"""

from codegraph_lite.db.embedded_backend import EmbeddedGraphStore
from codegraph_lite.db.graph_factory import create_graph_store, get_backend_info
from codegraph_lite.db.graph_protocol import (
    BaseGraphStore,
    GraphPath,
    GraphStore,
    PropertyFilter,
)

__all__ = [
    "BaseGraphStore",
    "EmbeddedGraphStore",
    "GraphPath",
    "GraphStore",
    "PropertyFilter",
    "create_graph_store",
    "get_backend_info",
]
