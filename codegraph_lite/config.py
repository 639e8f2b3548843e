"""Configuration for CodeGraph Lite.

Simple dataclass-based configuration with sensible defaults.
Override via environment variables with CODEGRAPH_ prefix.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from codegraph_lite.log_config import get_logger

log = get_logger("config")

# Look for .env in the working directory and the package parent
_pkg_dir = Path(__file__).parent.parent
_env_loaded = load_dotenv(Path.cwd() / ".env") or load_dotenv(_pkg_dir / ".env")
log.debug(f"Loaded .env file: {_env_loaded}")


DEFAULT_EXTENSIONS = (
    ".py", ".pyi",
    ".js", ".jsx", ".mjs", ".cjs",
    ".ts", ".tsx",
    ".json", ".md",
)

DEFAULT_IGNORE_PATHS = (
    "node_modules/",
    ".git/",
    "dist/",
    "build/",
    "coverage/",
    ".next/",
    "__pycache__/",
    ".venv/",
    "venv/",
    "*.min.js",
    "*.map",
)


def _get_env(key: str, default: str) -> str:
    """Get environment variable with CODEGRAPH_ prefix."""
    return os.getenv(f"CODEGRAPH_{key}", default)


def _get_env_bool(key: str, default: bool) -> bool:
    """Get boolean environment variable."""
    val = os.getenv(f"CODEGRAPH_{key}")
    if val is None:
        return default
    return val.lower() in ("true", "1", "yes")


def _get_env_list(key: str, default: tuple[str, ...]) -> list[str]:
    """Get comma-separated list environment variable."""
    val = os.getenv(f"CODEGRAPH_{key}")
    if not val:
        return list(default)
    return [item.strip() for item in val.split(",") if item.strip()]


@dataclass
class Config:
    """CodeGraph Lite configuration.

    Attributes:
        data_dir: Directory for local state (default: ~/.codegraph_lite)
        graph_backend: Store selection - auto, memgraph, neo4j or embedded
        memgraph_host: Bolt host for Memgraph/Neo4j (default: localhost)
        memgraph_port: Bolt port (default: 7687)
        memgraph_username: Optional Bolt username
        memgraph_password: Optional Bolt password
        graph_database: Neo4j database name (ignored by Memgraph)
        embedded_graph_file: JSON file the embedded store persists to ("" disables)
        embeddings_enabled: Generate embeddings during indexing and messaging
        embedding_model: LiteLLM model for embeddings (default: text-embedding-3-small)
        use_local_embeddings: Use sentence-transformers instead of API (default: False)
        local_model: sentence-transformers model name
        embedding_max_tokens: Input truncation limit before the provider call
        embedding_batch_size: Texts per provider call
        token_encoding: tiktoken encoding name (default: cl100k_base)
        active_memory_tokens: Token budget of the Active tier
        working_memory_tokens: Token budget of the Working tier
        max_graph_nodes: Upper bound for graph expansion in memory search
        history_limit: Messages reloaded by load_previous_conversation
        initial_importance: Starting importance of Working entries
        importance_step: Importance added when a Working entry is re-encountered
        batch_size: Files per indexing transaction
        extensions: File extensions the indexer accepts
        ignore_paths: Gitignore-style patterns the indexer prunes
        max_file_content: Characters of file content stored on File nodes
    """

    data_dir: Path = field(
        default_factory=lambda: Path(_get_env("DATA_DIR", str(Path.home() / ".codegraph_lite")))
    )

    # Graph store
    graph_backend: str = field(
        default_factory=lambda: _get_env("GRAPH_BACKEND", "auto").lower()
    )
    memgraph_host: str = field(
        default_factory=lambda: _get_env("MEMGRAPH_HOST", "localhost")
    )
    memgraph_port: int = field(
        default_factory=lambda: int(_get_env("MEMGRAPH_PORT", "7687"))
    )
    memgraph_username: str = field(
        default_factory=lambda: _get_env("MEMGRAPH_USERNAME", "")
    )
    memgraph_password: str = field(
        default_factory=lambda: _get_env("MEMGRAPH_PASSWORD", "")
    )
    graph_database: str = field(
        default_factory=lambda: _get_env("GRAPH_DATABASE", "neo4j")
    )
    embedded_graph_file: str = field(
        default_factory=lambda: _get_env("EMBEDDED_GRAPH_FILE", "")
    )

    # Embeddings
    embeddings_enabled: bool = field(
        default_factory=lambda: _get_env_bool("EMBEDDINGS_ENABLED", True)
    )
    embedding_model: str = field(
        default_factory=lambda: _get_env("EMBEDDING_MODEL", "text-embedding-3-small")
    )
    use_local_embeddings: bool = field(
        default_factory=lambda: _get_env_bool("USE_LOCAL_EMBEDDINGS", False)
    )
    local_model: str = field(
        default_factory=lambda: _get_env("LOCAL_MODEL", "all-MiniLM-L6-v2")
    )
    embedding_max_tokens: int = field(
        default_factory=lambda: int(_get_env("EMBEDDING_MAX_TOKENS", "8000"))
    )
    embedding_batch_size: int = field(
        default_factory=lambda: int(_get_env("EMBEDDING_BATCH_SIZE", "20"))
    )
    token_encoding: str = field(
        default_factory=lambda: _get_env("TOKEN_ENCODING", "cl100k_base")
    )

    # Memory tiers
    active_memory_tokens: int = field(
        default_factory=lambda: int(_get_env("ACTIVE_MEMORY_TOKENS", "4000"))
    )
    working_memory_tokens: int = field(
        default_factory=lambda: int(_get_env("WORKING_MEMORY_TOKENS", "16000"))
    )
    max_graph_nodes: int = field(
        default_factory=lambda: int(_get_env("MAX_GRAPH_NODES", "1000"))
    )
    history_limit: int = 10
    initial_importance: float = 0.5
    importance_step: float = 0.1

    # Indexing
    batch_size: int = field(
        default_factory=lambda: int(_get_env("BATCH_SIZE", "50"))
    )
    extensions: list[str] = field(
        default_factory=lambda: _get_env_list("EXTENSIONS", DEFAULT_EXTENSIONS)
    )
    ignore_paths: list[str] = field(
        default_factory=lambda: _get_env_list("IGNORE_PATHS", DEFAULT_IGNORE_PATHS)
    )
    max_file_content: int = 10000

    @property
    def embedding_dim(self) -> int:
        """Get embedding dimension based on model."""
        if self.use_local_embeddings:
            # all-MiniLM-L6-v2 produces 384-dim vectors
            return 384
        # OpenAI text-embedding-3-small produces 1536-dim vectors
        return 1536

    def __post_init__(self):
        """Ensure paths are Path objects and validate budgets."""
        log.trace("Initializing Config")

        if isinstance(self.data_dir, str):
            self.data_dir = Path(self.data_dir)

        if self.graph_backend not in ("auto", "memgraph", "neo4j", "embedded"):
            log.warning(f"Unknown graph_backend '{self.graph_backend}', using auto")
            self.graph_backend = "auto"

        if self.active_memory_tokens <= 0 or self.working_memory_tokens <= 0:
            raise ValueError("Memory token budgets must be positive")
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")

        self.extensions = [ext if ext.startswith(".") else f".{ext}" for ext in self.extensions]

        log.debug(f"data_dir={self.data_dir}")
        log.debug(f"graph_backend={self.graph_backend}, memgraph={self.memgraph_host}:{self.memgraph_port}")
        log.debug(f"embedding_model={self.embedding_model}, use_local_embeddings={self.use_local_embeddings}")
        log.debug(
            f"memory budgets: active={self.active_memory_tokens}, "
            f"working={self.working_memory_tokens}, max_graph_nodes={self.max_graph_nodes}"
        )
        log.debug(f"indexing: batch_size={self.batch_size}, extensions={len(self.extensions)}")

    @property
    def graph_file(self) -> Path | None:
        """Path of the embedded store's persistence file, if enabled."""
        if not self.embedded_graph_file:
            return None
        path = Path(self.embedded_graph_file)
        return path if path.is_absolute() else self.data_dir / path
