"""Embedding gateway for CodeGraph Lite.

Generates embeddings via LiteLLM, or a local sentence-transformers model
when ``use_local_embeddings`` is set, and writes vectors back onto graph
nodes. Inputs are truncated to ``embedding_max_tokens`` with the shared
token encoder before every provider call.
"""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

from codegraph_lite.config import Config
from codegraph_lite.db.graph_protocol import BaseGraphStore
from codegraph_lite.log_config import get_logger, log_timing
from codegraph_lite.schema import BaseNode, NodeType
from codegraph_lite.tokens import TiktokenEncoder, TokenEncoder, truncate_to_tokens

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

log = get_logger("embeddings")

EmbedFn = Callable[[list[str]], list[list[float]]]

# Global model cache for local embeddings (avoids 2-3s reload per call)
_local_model: "SentenceTransformer | None" = None  # type: ignore
_local_model_name: str | None = None

# Character limits of the per-kind text projections
_FILE_CHARS = 4000
_BODY_CHARS = 2000


@dataclass
class EmbeddingResult:
    """Embedding of one text.

    Attributes:
        text: Text actually sent to the provider (after truncation)
        embedding: Embedding vector
        tokens: Token count of the original input
    """
    text: str
    embedding: list[float]
    tokens: int


@dataclass
class SearchHit:
    """Semantic search result with optional one-hop context."""
    node: BaseNode
    similarity: float
    context: list[BaseNode] = field(default_factory=list)


def _get_local_model(model_name: str) -> "SentenceTransformer":
    """Get or create cached SentenceTransformer model."""
    global _local_model, _local_model_name
    if _local_model is None or _local_model_name != model_name:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers not installed. "
                "Install with: pip install 'codegraph-lite[local]'"
            )
        log.info(f"Loading SentenceTransformer model {model_name} (cached for session)")
        _local_model = SentenceTransformer(model_name)
        _local_model_name = model_name
    return _local_model


def _embed_litellm(texts: list[str], model: str) -> list[list[float]]:
    """Generate embeddings via LiteLLM."""
    from litellm import embedding

    response = embedding(model=model, input=texts)
    return [d["embedding"] for d in response.data]


def _embed_local(texts: list[str], model_name: str) -> list[list[float]]:
    """Generate embeddings via local sentence-transformers."""
    model = _get_local_model(model_name)
    embeddings = model.encode(texts, convert_to_numpy=True)
    return [e.tolist() for e in embeddings]


def _clip(text: str, max_chars: int) -> str:
    return text if len(text) <= max_chars else text[:max_chars] + "..."


def embedding_text(node: BaseNode) -> str:
    """Per-kind text projection used as embedding input."""
    kind = node.type
    if kind == NodeType.FILE:
        return f"File: {node.name}\nPath: {getattr(node, 'path', '')}\n{_clip(getattr(node, 'content', '') or '', _FILE_CHARS)}"
    if kind in (NodeType.FUNCTION, NodeType.METHOD):
        return f"Function: {node.name}\n{getattr(node, 'signature', '')}\n{_clip(getattr(node, 'body', '') or '', _BODY_CHARS)}"
    if kind == NodeType.CLASS:
        return (
            f"Class: {node.name}\n"
            f"Methods: {', '.join(getattr(node, 'methods', []))}\n"
            f"Properties: {', '.join(getattr(node, 'properties', []))}"
        )
    if kind == NodeType.PATTERN:
        return f"Pattern: {node.name}\n{getattr(node, 'description', '')}\n{getattr(node, 'template', None) or ''}"
    if kind == NodeType.CONVERSATION:
        return f"Conversation: {getattr(node, 'summary', None) or node.name}"
    if kind == NodeType.MESSAGE:
        return _clip(getattr(node, "content", "") or "", _FILE_CHARS)
    if kind == NodeType.INSIGHT:
        return f"Insight: {getattr(node, 'insight_type', '')}\n{getattr(node, 'description', '')}"
    if kind == NodeType.CONCEPT:
        return f"Concept: {node.name}\n{getattr(node, 'description', '')}"
    return node.name or ""


class EmbeddingService:
    """Embedding gateway bound to a graph store.

    Example:
        service = EmbeddingService(store, config)
        service.embed_node(node)
        hits = service.semantic_search("parse config", types=[NodeType.FUNCTION])
    """

    def __init__(
        self,
        store: BaseGraphStore,
        config: Config | None = None,
        encoder: TokenEncoder | None = None,
        embed_fn: EmbedFn | None = None,
    ):
        """Initialize the embedding service.

        Args:
            store: Graph store vectors are written to and searched in
            config: Model and batching settings
            encoder: Token encoder used for truncation (default: tiktoken)
            embed_fn: Provider override mapping a batch of texts to vectors
        """
        self.store = store
        self.config = config or Config()
        self.encoder = encoder or TiktokenEncoder(self.config.token_encoding)
        self._embed_fn = embed_fn
        log.debug(
            f"EmbeddingService initialized: model={self.config.embedding_model}, "
            f"local={self.config.use_local_embeddings}, custom_fn={embed_fn is not None}"
        )

    def _provider(self, texts: list[str]) -> list[list[float]]:
        if self._embed_fn is not None:
            return self._embed_fn(texts)
        if self.config.use_local_embeddings:
            return _embed_local(texts, self.config.local_model)
        return _embed_litellm(texts, self.config.embedding_model)

    def _prepare(self, text: str) -> tuple[str, int]:
        """Truncate to the provider limit; returns (text, original token count)."""
        original = len(self.encoder.encode(text))
        if original <= self.config.embedding_max_tokens:
            return text, original
        truncated, _ = truncate_to_tokens(self.encoder, text, self.config.embedding_max_tokens)
        log.debug(f"Embedding input truncated: {original} -> {self.config.embedding_max_tokens} tokens")
        return truncated, original

    def generate_embedding(self, text: str) -> EmbeddingResult:
        """Embed one text.

        Raises:
            Exception: Provider errors propagate to the caller
        """
        processed, tokens = self._prepare(text)
        log.trace(f"Embedding text: {len(processed)} chars, {tokens} tokens")
        vectors = self._provider([processed])
        return EmbeddingResult(text=processed, embedding=list(vectors[0]), tokens=tokens)

    def generate_embeddings(self, texts: list[str]) -> list[EmbeddingResult]:
        """Embed texts in batches of ``embedding_batch_size``.

        Returns:
            Results in input order
        """
        results: list[EmbeddingResult] = []
        batch_size = self.config.embedding_batch_size
        for i in range(0, len(texts), batch_size):
            prepared = [self._prepare(text) for text in texts[i:i + batch_size]]
            log.debug(f"Embedding batch {i // batch_size + 1}: {len(prepared)} texts")
            vectors = self._provider([text for text, _ in prepared])
            if len(vectors) != len(prepared):
                raise ValueError(f"Provider returned {len(vectors)} vectors for {len(prepared)} texts")
            results.extend(
                EmbeddingResult(text=text, embedding=list(vector), tokens=tokens)
                for (text, tokens), vector in zip(prepared, vectors)
            )
        return results

    def embed_node(self, node: BaseNode) -> None:
        """Embed a node and write the vector back to the store."""
        text = embedding_text(node)
        if not text:
            log.debug(f"Nothing to embed for node {node.id}")
            return
        result = self.generate_embedding(text)
        node.embedding = result.embedding
        self.store.update_node(node.id, {"embedding": result.embedding})

    def embed_nodes(self, nodes: list[BaseNode]) -> int:
        """Embed nodes one by one; failures are logged and skipped.

        Returns:
            Number of nodes embedded
        """
        embedded = 0
        with log_timing(f"Embedding {len(nodes)} nodes", log, level="info"):
            for node in nodes:
                try:
                    self.embed_node(node)
                    embedded += 1
                except Exception as e:
                    log.warning(f"Failed to embed node {node.id}: {e}")
        return embedded

    def find_similar(
        self,
        query: str,
        node_type: NodeType | None = None,
        limit: int = 10,
        threshold: float = 0.7,
    ) -> list[tuple[BaseNode, float]]:
        """Nodes whose embeddings are similar to the query text."""
        query_embedding = self.generate_embedding(query)
        return self.store.find_similar_by_embedding(query_embedding.embedding, node_type, threshold, limit)

    def semantic_search(
        self,
        query: str,
        types: list[NodeType] | None = None,
        limit: int = 10,
        threshold: float = 0.7,
        include_context: bool = False,
    ) -> list[SearchHit]:
        """Search by meaning across one or more node types.

        With several types, each contributes up to ``ceil(limit / len(types))``
        candidates before the merged list is sorted and cut to ``limit``.

        Args:
            query: Natural language query
            types: Node types to search (all types if empty)
            limit: Maximum results
            threshold: Minimum cosine similarity
            include_context: Attach up to five one-hop neighbours to each hit

        Returns:
            Hits sorted by similarity, highest first
        """
        query_embedding = self.generate_embedding(query).embedding

        candidates: list[tuple[BaseNode, float]] = []
        if types:
            per_type = -(-limit // len(types))
            for node_type in types:
                candidates.extend(self.store.find_similar_by_embedding(query_embedding, node_type, threshold, per_type))
        else:
            candidates.extend(self.store.find_similar_by_embedding(query_embedding, None, threshold, limit))

        candidates.sort(key=lambda pair: pair[1], reverse=True)
        hits = [SearchHit(node=node, similarity=score) for node, score in candidates[:limit]]

        if include_context:
            for hit in hits:
                hit.context = self.store.find_related_nodes(hit.node.id, [], depth=1, limit=5)

        log.debug(f"Semantic search '{query[:50]}': {len(hits)} hits")
        return hits

    def update_project_embeddings(self, limit_per_type: int = 1000) -> int:
        """Embed File, Function and Class nodes that have no vector yet.

        Returns:
            Number of nodes embedded
        """
        nodes: list[BaseNode] = []
        for node_type in (NodeType.FILE, NodeType.FUNCTION, NodeType.CLASS):
            nodes.extend(self.store.find_nodes_by_type(node_type, limit_per_type))
        missing = [node for node in nodes if not node.embedding]
        log.info(f"Found {len(missing)} nodes without embeddings")
        return self.embed_nodes(missing)

    def close(self) -> None:
        """Release the token encoder."""
        self.encoder.close()


__all__ = ["EmbeddingService", "EmbeddingResult", "SearchHit", "EmbedFn", "embedding_text"]
