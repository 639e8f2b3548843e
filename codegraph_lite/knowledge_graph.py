"""High-level facade over the CodeGraph Lite components.

Wires the graph store, indexer, embedding gateway, memory manager,
traversal, pattern detector and link manager together for one project.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from codegraph_lite.ast_parser import SourceParser
from codegraph_lite.code_index import CodeIndexer, IndexingResult
from codegraph_lite.config import Config
from codegraph_lite.db.graph_factory import create_graph_store
from codegraph_lite.db.graph_protocol import BaseGraphStore
from codegraph_lite.embeddings import EmbedFn, EmbeddingService, SearchHit
from codegraph_lite.errors import CodeGraphError
from codegraph_lite.links import Backlink, LinkManager
from codegraph_lite.log_config import get_logger, log_timing
from codegraph_lite.memory import MemoryManager, Role
from codegraph_lite.patterns import PatternDetector, PatternMatch
from codegraph_lite.schema import BaseNode, ConversationNode, MessageNode, NodeType
from codegraph_lite.tokens import TiktokenEncoder, TokenEncoder
from codegraph_lite.traversal import GraphTraversal

log = get_logger("knowledge_graph")


@dataclass
class ProjectIndexReport:
    """Outcome of a full project index run."""
    indexing: IndexingResult
    embedded: int
    patterns: int
    insights: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "indexing": self.indexing.to_dict(),
            "embedded": self.embedded,
            "patterns": self.patterns,
            "insights": self.insights,
        }


class KnowledgeGraph:
    """Code knowledge graph for one project.

    Example:
        kg = KnowledgeGraph("/path/to/project")
        kg.initialize()
        report = kg.index_project()
        for node in kg.search("config loader"):
            print(node.name)
        kg.close()
    """

    def __init__(
        self,
        project_path: str | Path,
        config: Config | None = None,
        store: BaseGraphStore | None = None,
        encoder: TokenEncoder | None = None,
        embed_fn: EmbedFn | None = None,
        parser: SourceParser | None = None,
    ):
        """Initialize the facade; no store connection is made until initialize().

        Args:
            project_path: Project root directory
            config: Settings shared by every component
            store: Pre-built graph store (default: create_graph_store())
            encoder: Token encoder shared by memory and embeddings
            embed_fn: Embedding provider override
            parser: Declaration parser override for the indexer
        """
        self.project_path = Path(project_path).resolve()
        self.config = config or Config()
        self.store = store
        self._encoder = encoder
        self._embed_fn = embed_fn
        self._parser = parser

        self.embeddings: EmbeddingService | None = None
        self.indexer: CodeIndexer | None = None
        self.memory: MemoryManager | None = None
        self.traversal: GraphTraversal | None = None
        self.patterns: PatternDetector | None = None
        self.links: LinkManager | None = None
        self._initialized = False

    def initialize(self) -> None:
        """Open the store and build the components."""
        if self._initialized:
            return
        log.info(f"Initializing knowledge graph for {self.project_path}")
        if self.store is None:
            self.store = create_graph_store(config=self.config)
        else:
            self.store.init_schema()

        encoder = self._encoder or TiktokenEncoder(self.config.token_encoding)
        if self.config.embeddings_enabled:
            self.embeddings = EmbeddingService(self.store, self.config, encoder, self._embed_fn)

        self.indexer = CodeIndexer(self.store, self.project_path, self.config, self._parser)
        self.memory = MemoryManager(self.store, self.config, encoder, self.embeddings)
        self.traversal = GraphTraversal(self.store, self.embeddings)
        self.patterns = PatternDetector(self.store, self.embeddings)
        self.links = LinkManager(self.store, self.embeddings)
        self._initialized = True
        log.info(f"Knowledge graph ready (backend={self.store.backend_name}, embeddings={self.embeddings is not None})")

    def _require_initialized(self) -> None:
        if not self._initialized:
            raise CodeGraphError("KnowledgeGraph is not initialized; call initialize() first")

    def _require_embeddings(self) -> EmbeddingService:
        self._require_initialized()
        if self.embeddings is None:
            raise CodeGraphError("Embeddings are disabled (CODEGRAPH_EMBEDDINGS_ENABLED=false)")
        return self.embeddings

    # =========================================================================
    # Indexing
    # =========================================================================

    def index_project(self, timeout: float | None = None) -> ProjectIndexReport:
        """Index files, then embed, detect patterns and generate insights."""
        self._require_initialized()
        with log_timing(f"Project index of {self.project_path}", log, level="info"):
            indexing = self.indexer.index_project(timeout=timeout)

            embedded = 0
            if self.embeddings is not None:
                log.info("Generating embeddings...")
                embedded = self.embeddings.update_project_embeddings()

            log.info("Detecting patterns...")
            matches = self.patterns.detect_patterns()
            insights = self.patterns.generate_insights(matches)

        return ProjectIndexReport(indexing=indexing, embedded=embedded, patterns=len(matches), insights=len(insights))

    def update_file(self, file_path: str | Path) -> IndexingResult:
        self._require_initialized()
        return self.indexer.update_file(file_path)

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: str,
        types: list[NodeType] | None = None,
        limit: int = 10,
        include_related: bool = False,
        threshold: float = 0.7,
    ) -> list[BaseNode]:
        """Hybrid search: semantic hits first, keyword hits after."""
        self._require_initialized()
        return self.memory.search(query, types=types, limit=limit, include_related=include_related, threshold=threshold)

    def semantic_search(
        self,
        query: str,
        types: list[NodeType] | None = None,
        limit: int = 10,
        threshold: float = 0.7,
        include_context: bool = False,
    ) -> list[SearchHit]:
        embeddings = self._require_embeddings()
        return embeddings.semantic_search(query, types, limit, threshold, include_context)

    def find_similar_code(self, snippet: str, limit: int = 10, threshold: float = 0.7) -> list[tuple[BaseNode, float]]:
        embeddings = self._require_embeddings()
        return embeddings.find_similar(snippet, None, limit, threshold)

    # =========================================================================
    # Conversation memory
    # =========================================================================

    def start_conversation(self, session_id: str) -> ConversationNode:
        self._require_initialized()
        return self.memory.start_conversation(session_id)

    def add_message(self, role: Role, content: str) -> MessageNode:
        self._require_initialized()
        return self.memory.add_message(role, content)

    def get_context(self) -> str:
        """Prompt-ready memory context text."""
        self._require_initialized()
        return self.memory.get_context_as_text()

    # =========================================================================
    # Links and patterns
    # =========================================================================

    def get_backlinks(self, node_id: str) -> list[Backlink]:
        self._require_initialized()
        return self.links.get_backlinks(node_id)

    def export_to_markdown(self, node_id: str) -> str:
        self._require_initialized()
        return self.links.export_to_markdown(node_id)

    def detect_patterns(self) -> list[PatternMatch]:
        self._require_initialized()
        return self.patterns.detect_patterns()

    # =========================================================================
    # Maintenance
    # =========================================================================

    def get_statistics(self) -> dict[str, Any]:
        self._require_initialized()
        return {
            "database": self.store.get_graph_statistics(),
            "memory": self.memory.get_statistics(),
            "patterns": self.patterns.get_pattern_statistics(),
        }

    def clear_graph(self) -> None:
        self._require_initialized()
        self.store.clear_graph()
        log.info("Knowledge graph cleared")

    def close(self) -> None:
        """Release the store, the encoder and the embedding client."""
        if not self._initialized:
            if self.store is not None:
                self.store.close()
            return
        self.memory.cleanup()
        self.store.close()
        self._initialized = False
        log.info("Knowledge graph closed")


__all__ = ["KnowledgeGraph", "ProjectIndexReport"]
