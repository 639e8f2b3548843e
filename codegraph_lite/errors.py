"""Exception hierarchy for CodeGraph Lite.

Every error raised by the graph store, indexer, memory manager, traversal
and pattern detector derives from CodeGraphError so callers can catch the
whole family at one seam.
"""


class CodeGraphError(Exception):
    """Base exception for knowledge graph operations."""
    pass


class NodeNotFoundError(CodeGraphError):
    """Raised when a node id is not in the graph."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class MissingEndpointError(CodeGraphError):
    """Raised when a relationship refers to a node that does not exist."""

    def __init__(self, from_id: str, to_id: str, missing: list[str] | None = None):
        self.from_id = from_id
        self.to_id = to_id
        self.missing = missing or []
        super().__init__(
            f"Relationship endpoint missing: {from_id} -> {to_id} (missing: {', '.join(self.missing) or 'unknown'})"
        )


class DuplicateNodeError(CodeGraphError):
    """Raised when attempting to add a node with an existing id."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node already exists: {node_id}")


class InvalidArgumentError(CodeGraphError, ValueError):
    """Raised when caller input is rejected before touching the database."""
    pass


class TemplateNotFoundError(CodeGraphError):
    """Raised when applying a pattern template that was never registered."""

    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class InsightNotFoundError(CodeGraphError):
    """Raised when an insight id does not resolve to an Insight node."""

    def __init__(self, insight_id: str):
        self.insight_id = insight_id
        super().__init__(f"Insight not found: {insight_id}")


class AlgorithmUnavailable(CodeGraphError):
    """Raised when the graph engine lacks a native algorithm."""

    def __init__(self, algorithm: str, backend: str):
        self.algorithm = algorithm
        self.backend = backend
        super().__init__(f"{algorithm} is not available on backend '{backend}'")


class CommunityDetectionUnavailable(AlgorithmUnavailable):
    """Raised when native community detection is not installed."""

    def __init__(self, backend: str):
        super().__init__("community_detection", backend)


class StoreUnavailableError(CodeGraphError, RuntimeError):
    """Raised when no graph store could be initialized."""
    pass


__all__ = [
    "CodeGraphError",
    "NodeNotFoundError",
    "MissingEndpointError",
    "DuplicateNodeError",
    "InvalidArgumentError",
    "TemplateNotFoundError",
    "InsightNotFoundError",
    "AlgorithmUnavailable",
    "CommunityDetectionUnavailable",
    "StoreUnavailableError",
]
