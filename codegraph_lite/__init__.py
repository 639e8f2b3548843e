"""CodeGraph Lite - Code knowledge graph with conversational memory.

A lightweight code knowledge graph with:
- Memgraph/Neo4j or an embedded rustworkx graph for storage
- tree-sitter parsing of Python and JavaScript/TypeScript sources
- LiteLLM or sentence-transformers embeddings for semantic search
- Token-budgeted conversation memory over the graph
"""

__version__ = "0.1.0"

from codegraph_lite.config import Config
from codegraph_lite.knowledge_graph import KnowledgeGraph, ProjectIndexReport
from codegraph_lite.schema import NodeType, RelationType

__all__ = [
    "Config",
    "KnowledgeGraph",
    "ProjectIndexReport",
    "NodeType",
    "RelationType",
]
