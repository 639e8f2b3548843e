"""Graph schema for CodeGraph Lite.

Defines node kinds, relationship kinds, the typed node variants and the
conversion between node objects and flat property maps. Property graph
engines only store primitives and lists of primitives, so the free-form
``metadata`` map travels as a JSON string (``metadata_json``).
"""

import secrets
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

import orjson


class NodeType(str, Enum):
    """Labels of the knowledge graph."""

    FILE = "File"
    FUNCTION = "Function"
    CLASS = "Class"
    METHOD = "Method"
    VARIABLE = "Variable"
    IMPORT = "Import"
    EXPORT = "Export"
    PATTERN = "Pattern"
    CONVERSATION = "Conversation"
    MESSAGE = "Message"
    INSIGHT = "Insight"
    TODO = "Todo"
    ERROR = "Error"
    COMMIT = "Commit"
    DEPENDENCY = "Dependency"
    CONCEPT = "Concept"
    TAG = "Tag"


class RelationType(str, Enum):
    """Relationship types of the knowledge graph."""

    CONTAINS = "CONTAINS"
    IMPORTS = "IMPORTS"
    EXPORTS = "EXPORTS"
    CALLS = "CALLS"
    EXTENDS = "EXTENDS"
    IMPLEMENTS = "IMPLEMENTS"
    REFERENCES = "REFERENCES"
    DEPENDS_ON = "DEPENDS_ON"
    SIMILAR_TO = "SIMILAR_TO"
    RELATES_TO = "RELATES_TO"
    HAS_MESSAGE = "HAS_MESSAGE"
    MODIFIED = "MODIFIED"
    DISCOVERED = "DISCOVERED"
    FOUND_IN = "FOUND_IN"
    TAGGED_WITH = "TAGGED_WITH"
    BELONGS_TO = "BELONGS_TO"
    INSTANTIATES = "INSTANTIATES"
    RETURNS = "RETURNS"
    THROWS = "THROWS"
    NEXT = "NEXT"
    PREVIOUS = "PREVIOUS"


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_id(prefix: str = "") -> str:
    """Generate a graph-wide unique node id.

    Format: ``{prefix}_{base36 millisecond timestamp}_{16 hex chars}``.

    Args:
        prefix: Short kind marker (e.g. "file", "func")

    Returns:
        New id string
    """
    timestamp = _to_base36(int(time.time() * 1000))
    random_part = secrets.token_hex(8)
    return f"{prefix}_{timestamp}_{random_part}" if prefix else f"{timestamp}_{random_part}"


def _now() -> float:
    return time.time()


_ID_PREFIXES: dict[NodeType, str] = {
    NodeType.FILE: "file",
    NodeType.FUNCTION: "func",
    NodeType.CLASS: "class",
    NodeType.METHOD: "method",
    NodeType.PATTERN: "pattern",
    NodeType.CONVERSATION: "conv",
    NodeType.MESSAGE: "msg",
    NodeType.INSIGHT: "insight",
    NodeType.CONCEPT: "concept",
    NodeType.TAG: "tag",
}


@dataclass
class BaseNode:
    """Common attributes of every node.

    Attributes:
        name: Human readable name
        type: Node kind (graph label)
        id: Graph-wide unique id, generated when empty
        created_at: Creation time (epoch seconds)
        updated_at: Last modification time (epoch seconds)
        embedding: Optional semantic vector
        metadata: Free-form extension data, never read by engine logic
    """
    name: str = ""
    type: NodeType = NodeType.CONCEPT
    id: str = ""
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)
    embedding: list[float] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, NodeType):
            self.type = NodeType(self.type)
        if not self.id:
            self.id = generate_id(_ID_PREFIXES.get(self.type, self.type.value.lower()))

    def to_properties(self, include_embedding: bool = True) -> dict[str, Any]:
        """Flatten the node into primitive property values."""
        props: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if f.name == "metadata":
                props["metadata_json"] = orjson.dumps(value or {}).decode()
                continue
            if f.name == "embedding" and not include_embedding:
                continue
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, (list, tuple)):
                value = list(value)
            props[f.name] = value
        return props


@dataclass
class FileNode(BaseNode):
    type: NodeType = NodeType.FILE
    path: str = ""
    content: str = ""
    hash: str = ""
    language: str = ""
    size: int = 0
    lines: int = 0
    last_modified: float = 0.0


@dataclass
class FunctionNode(BaseNode):
    type: NodeType = NodeType.FUNCTION
    signature: str = ""
    body: str = ""
    parameters: list[str] = field(default_factory=list)
    return_type: str | None = None
    is_async: bool = False
    is_generator: bool = False
    complexity: int = 1
    line_start: int = 0
    line_end: int = 0
    file_path: str = ""


@dataclass
class ClassNode(BaseNode):
    """Class declaration.

    The shape flags are filled by the indexer from the parsed declaration
    and consumed by the pattern detector.
    """
    type: NodeType = NodeType.CLASS
    extends: str | None = None
    implements: list[str] = field(default_factory=list)
    abstract: bool = False
    methods: list[str] = field(default_factory=list)
    properties: list[str] = field(default_factory=list)
    line_start: int = 0
    line_end: int = 0
    file_path: str = ""
    has_private_constructor: bool = False
    has_static_instance: bool = False
    returns_objects: bool = False


@dataclass
class PatternNode(BaseNode):
    type: NodeType = NodeType.PATTERN
    pattern_type: str = "structural"
    description: str = ""
    template: str | None = None
    usage_count: int = 0
    confidence: float = 0.0
    examples: list[str] = field(default_factory=list)


@dataclass
class InsightNode(BaseNode):
    type: NodeType = NodeType.INSIGHT
    insight_type: str = "pattern"
    description: str = ""
    confidence: float = 0.0
    discovered_at: float = field(default_factory=_now)
    source: str = ""
    actionable: bool = False
    priority: str = "low"


@dataclass
class ConversationNode(BaseNode):
    type: NodeType = NodeType.CONVERSATION
    session_id: str = ""
    summary: str | None = None
    token_count: int = 0
    model: str = ""


@dataclass
class MessageNode(BaseNode):
    type: NodeType = NodeType.MESSAGE
    role: str = "user"
    content: str = ""
    token_count: int = 0
    conversation_id: str = ""
    sequence: int = 0


@dataclass
class ConceptNode(BaseNode):
    type: NodeType = NodeType.CONCEPT
    description: str = ""
    domain: str = ""
    importance: float = 0.5


@dataclass
class TagNode(BaseNode):
    type: NodeType = NodeType.TAG
    usage_count: int = 0


NODE_CLASSES: dict[NodeType, type[BaseNode]] = {
    NodeType.FILE: FileNode,
    NodeType.FUNCTION: FunctionNode,
    NodeType.METHOD: FunctionNode,
    NodeType.CLASS: ClassNode,
    NodeType.PATTERN: PatternNode,
    NodeType.INSIGHT: InsightNode,
    NodeType.CONVERSATION: ConversationNode,
    NodeType.MESSAGE: MessageNode,
    NodeType.CONCEPT: ConceptNode,
    NodeType.TAG: TagNode,
}


def node_from_properties(props: dict[str, Any]) -> BaseNode:
    """Rebuild a typed node from a flat property map.

    Dispatches on ``type``. Properties without a matching attribute are
    folded into ``metadata`` so nothing stored is lost.

    Args:
        props: Property map as stored by a graph engine

    Returns:
        Node instance of the variant matching ``props["type"]``
    """
    data = dict(props)
    node_type = NodeType(data.get("type", NodeType.CONCEPT.value))
    cls = NODE_CLASSES.get(node_type, BaseNode)

    metadata: dict[str, Any] = {}
    raw_meta = data.pop("metadata_json", None)
    if raw_meta:
        metadata = orjson.loads(raw_meta)
    elif isinstance(data.get("metadata"), dict):
        metadata = data.pop("metadata")

    known = {f.name for f in fields(cls)}
    kwargs: dict[str, Any] = {}
    for key, value in data.items():
        if key in known:
            kwargs[key] = value
        elif key != "metadata":
            metadata.setdefault(key, value)

    kwargs["type"] = node_type
    kwargs["metadata"] = metadata
    if kwargs.get("embedding") is not None:
        kwargs["embedding"] = list(kwargs["embedding"])
    for f in fields(cls):
        if f.name in kwargs and kwargs[f.name] is None and f.name in ("parameters", "implements", "methods", "properties", "examples"):
            kwargs[f.name] = []
    return cls(**kwargs)


def update_properties(updates: dict[str, Any]) -> dict[str, Any]:
    """Normalize a partial update into storable property values.

    ``metadata`` becomes ``metadata_json``; enums become their values.
    Identity, kind and creation time are not updatable and are dropped.
    """
    props: dict[str, Any] = {}
    for key, value in updates.items():
        if key in ("id", "type", "created_at"):
            continue
        if key == "metadata":
            props["metadata_json"] = orjson.dumps(value or {}).decode()
        elif isinstance(value, Enum):
            props[key] = value.value
        elif isinstance(value, tuple):
            props[key] = list(value)
        else:
            props[key] = value
    return props


@dataclass
class Relationship:
    """Directed typed edge between two nodes.

    Attributes:
        from_id: Source node id
        to_id: Target node id
        type: Relationship type
        properties: Primitive-valued edge properties
        created_at: Creation time (epoch seconds)
        confidence: Optional confidence score
    """
    from_id: str
    to_id: str
    type: RelationType
    properties: dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=_now)
    confidence: float | None = None

    def __post_init__(self):
        if isinstance(self.type, str) and not isinstance(self.type, RelationType):
            self.type = RelationType(self.type)

    def to_properties(self) -> dict[str, Any]:
        """Edge properties as stored by a graph engine."""
        props = dict(self.properties)
        props["created_at"] = self.created_at
        if self.confidence is not None:
            props["confidence"] = self.confidence
        return props

    @classmethod
    def from_properties(cls, from_id: str, to_id: str, rel_type: str, props: dict[str, Any]) -> "Relationship":
        data = dict(props or {})
        created_at = data.pop("created_at", None) or _now()
        confidence = data.pop("confidence", None)
        return cls(
            from_id=from_id,
            to_id=to_id,
            type=RelationType(rel_type),
            properties=data,
            created_at=created_at,
            confidence=confidence,
        )


def node_text(node: BaseNode) -> str:
    """Searchable text of a node: name plus content-like attributes."""
    parts = [node.name]
    for attr in ("content", "description", "signature", "body", "path", "summary"):
        value = getattr(node, attr, None)
        if value:
            parts.append(str(value))
    return "\n".join(parts)


__all__ = [
    "NodeType",
    "RelationType",
    "BaseNode",
    "FileNode",
    "FunctionNode",
    "ClassNode",
    "PatternNode",
    "InsightNode",
    "ConversationNode",
    "MessageNode",
    "ConceptNode",
    "TagNode",
    "Relationship",
    "NODE_CLASSES",
    "generate_id",
    "node_from_properties",
    "update_properties",
    "node_text",
]
