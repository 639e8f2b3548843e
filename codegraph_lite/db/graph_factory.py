"""Graph store factory with auto-detection and fallback.

Provides store selection:
1. Memgraph (preferred - full Cypher, MAGE community detection and PageRank)
2. Neo4j when explicitly requested (same driver, neo4j dialect)
3. Embedded rustworkx store (in-process, works everywhere)

Environment variables for override:
- CODEGRAPH_GRAPH_BACKEND: Force a specific store ('memgraph', 'neo4j', 'embedded')
- CODEGRAPH_MEMGRAPH_HOST / CODEGRAPH_MEMGRAPH_PORT: Bolt address
- CODEGRAPH_MEMGRAPH_USERNAME / CODEGRAPH_MEMGRAPH_PASSWORD: Bolt credentials
- CODEGRAPH_EMBEDDED_GRAPH_FILE: Persistence file for the embedded store
"""

import os
from pathlib import Path
from typing import Literal

from codegraph_lite.config import Config
from codegraph_lite.db.graph_protocol import BaseGraphStore
from codegraph_lite.errors import StoreUnavailableError
from codegraph_lite.log_config import get_logger

log = get_logger("graph_factory")

BackendType = Literal["memgraph", "neo4j", "embedded", "auto"]


def create_graph_store(
    backend: BackendType | None = None,
    config: Config | None = None,
    embedded_path: str | Path | None = None,
) -> BaseGraphStore:
    """Create a graph store with auto-detection and fallback.

    Selection order:
    1. Environment variable CODEGRAPH_GRAPH_BACKEND if set
    2. Explicit backend parameter (or config.graph_backend) if not "auto"
    3. Auto-detection: Memgraph if reachable, else the embedded store

    Args:
        backend: Store type - "memgraph", "neo4j", "embedded", or "auto"
        config: Configuration (connection settings); defaults to Config()
        embedded_path: Persistence file for the embedded store (overrides config)

    Returns:
        Initialized graph store with schema created

    Raises:
        StoreUnavailableError: If an explicitly requested server store cannot be initialized
    """
    config = config or Config()
    backend = backend or config.graph_backend

    env_backend = os.environ.get("CODEGRAPH_GRAPH_BACKEND", "").lower()
    if env_backend in ("memgraph", "neo4j", "embedded"):
        backend = env_backend
        log.info(f"Using backend from environment: {backend}")

    if embedded_path is None:
        embedded_path = config.graph_file

    if backend in ("memgraph", "neo4j"):
        return _create_bolt_store(config, backend)

    if backend == "embedded":
        return _create_embedded(embedded_path)

    # Auto-detection mode
    log.info("Auto-detecting graph backend...")
    from codegraph_lite.db.memgraph_backend import is_memgraph_available

    if is_memgraph_available(
        config.memgraph_host,
        config.memgraph_port,
        config.memgraph_username,
        config.memgraph_password,
    ):
        log.info("Memgraph detected and healthy, using Memgraph store")
        return _create_bolt_store(config, "memgraph")

    log.info("Memgraph not available, falling back to embedded store")
    return _create_embedded(embedded_path)


def _create_bolt_store(config: Config, dialect: str) -> BaseGraphStore:
    """Create and verify a Memgraph/Neo4j store.

    Raises:
        StoreUnavailableError: If connection or health check fails
    """
    from codegraph_lite.db.memgraph_backend import create_memgraph_store

    try:
        store = create_memgraph_store(
            host=config.memgraph_host,
            port=config.memgraph_port,
            username=config.memgraph_username,
            password=config.memgraph_password,
            database=config.graph_database,
            dialect=dialect,
        )
    except Exception as e:
        raise StoreUnavailableError(f"{dialect} initialization failed: {e}") from e

    if not store.health_check():
        store.close()
        raise StoreUnavailableError(f"{dialect} health check failed after store creation")

    log.info(f"{dialect} store initialized at {config.memgraph_host}:{config.memgraph_port}")
    return store


def _create_embedded(path: str | Path | None) -> BaseGraphStore:
    from codegraph_lite.db.embedded_backend import EmbeddedGraphStore

    store = EmbeddedGraphStore(path)
    store.init_schema()
    return store


def get_backend_info(config: Config | None = None) -> dict:
    """Report which stores are available.

    Returns:
        Dict with availability flags, the env override and the store auto mode would pick
    """
    config = config or Config()
    from codegraph_lite.db.memgraph_backend import is_memgraph_available

    memgraph_ok = is_memgraph_available(
        config.memgraph_host,
        config.memgraph_port,
        config.memgraph_username,
        config.memgraph_password,
    )
    return {
        "memgraph": {"available": memgraph_ok, "address": f"{config.memgraph_host}:{config.memgraph_port}"},
        "embedded": {"available": True, "path": str(config.graph_file) if config.graph_file else None},
        "env_override": os.environ.get("CODEGRAPH_GRAPH_BACKEND") or None,
        "configured": config.graph_backend,
        "auto_choice": "memgraph" if memgraph_ok else "embedded",
    }


__all__ = ["create_graph_store", "get_backend_info", "BackendType"]
