"""Design-pattern and anti-pattern detection for CodeGraph Lite.

Runs name/shape heuristics over indexed Function and Class nodes, persists
each detected pattern as a Pattern node with INSTANTIATES edges from the
matched code, and turns anti-pattern matches into Insight nodes with
FOUND_IN edges. Also manages reusable structural templates.
"""

import re
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Literal

from codegraph_lite.db.graph_protocol import BaseGraphStore
from codegraph_lite.embeddings import EmbeddingService
from codegraph_lite.errors import InsightNotFoundError, InvalidArgumentError, TemplateNotFoundError
from codegraph_lite.log_config import get_logger, log_timing
from codegraph_lite.schema import (
    BaseNode,
    ClassNode,
    FunctionNode,
    InsightNode,
    NodeType,
    PatternNode,
    Relationship,
    RelationType,
    node_from_properties,
)

log = get_logger("patterns")

PatternCategory = Literal["structural", "behavioral", "creational", "anti-pattern", "performance", "security"]

# Nodes of each kind examined per detection run
_SCAN_LIMIT = 1000

GOD_OBJECT_MAX_METHODS = 20
GOD_OBJECT_MAX_PROPERTIES = 15
CALLBACK_MAX_DEPTH = 5
CALLBACK_MAX_KEYWORDS = 3
_CALLBACK_KEYWORDS = re.compile(r"callback|then|catch", re.IGNORECASE)


@dataclass
class CodePattern:
    """Catalogue entry describing a pattern.

    Attributes:
        id: Stable catalogue key (e.g. "singleton")
        name: Display name
        category: structural, behavioral, creational, anti-pattern, performance or security
        description: Human readable description
        template: Illustrative code
        confidence: Catalogue-level confidence stored on Pattern nodes
        recommendations: Remediation advice (anti-patterns)
    """
    id: str
    name: str
    category: PatternCategory
    description: str
    template: str = ""
    confidence: float = 0.9
    recommendations: list[str] = field(default_factory=list)
    frequency: int = 0


@dataclass
class MatchGroup:
    """Code nodes that together instantiate a pattern."""
    nodes: list[BaseNode]
    confidence: float
    location: str


@dataclass
class PatternMatch:
    pattern: CodePattern
    matches: list[MatchGroup]
    node_id: str | None = None


@dataclass
class InsightSuggestion:
    type: Literal["bug", "optimization", "refactor", "security", "documentation"]
    title: str
    description: str
    affected_nodes: list[str]
    priority: Literal["low", "medium", "high", "critical"]
    suggested_fix: str | None = None
    related_patterns: list[str] = field(default_factory=list)
    node_id: str | None = None


@dataclass
class TemplateNodeSpec:
    type: NodeType
    properties: dict[str, Any] = field(default_factory=dict)
    required: bool = True


@dataclass
class TemplateRelationSpec:
    """Relationship between two template nodes, by position."""
    type: RelationType
    from_index: int
    to_index: int
    required: bool = True


@dataclass
class TemplateDefinition:
    """Reusable subgraph shape that can be stamped under a target node."""
    id: str
    name: str
    description: str
    applicable_to: list[NodeType] = field(default_factory=list)
    nodes: list[TemplateNodeSpec] = field(default_factory=list)
    relationships: list[TemplateRelationSpec] = field(default_factory=list)
    code: str | None = None

    def structure(self) -> dict[str, Any]:
        """Primitive representation stored on the template's Pattern node."""
        return {
            "applicable_to": [t.value for t in self.applicable_to],
            "nodes": [
                {"type": n.type.value, "properties": n.properties, "required": n.required}
                for n in self.nodes
            ],
            "relationships": [
                {"type": r.type.value, "from": r.from_index, "to": r.to_index, "required": r.required}
                for r in self.relationships
            ],
        }

    @classmethod
    def from_structure(cls, node: PatternNode) -> "TemplateDefinition":
        structure = node.metadata.get("structure", {})
        return cls(
            id=node.id,
            name=node.name,
            description=node.description,
            applicable_to=[NodeType(t) for t in structure.get("applicable_to", [])],
            nodes=[
                TemplateNodeSpec(NodeType(n["type"]), n.get("properties", {}), n.get("required", True))
                for n in structure.get("nodes", [])
            ],
            relationships=[
                TemplateRelationSpec(RelationType(r["type"]), r["from"], r["to"], r.get("required", True))
                for r in structure.get("relationships", [])
            ],
            code=node.template,
        )


Matcher = Callable[[list[FunctionNode], list[ClassNode]], list[MatchGroup]]


# =============================================================================
# Built-in catalogue
# =============================================================================

BUILTIN_PATTERNS: tuple[CodePattern, ...] = (
    CodePattern(
        id="singleton",
        name="Singleton Pattern",
        category="creational",
        description="Ensures a class has only one instance and provides global access to it",
        template=(
            "class Singleton:\n"
            "    _instance = None\n\n"
            "    def __new__(cls):\n"
            "        raise TypeError('use get_instance()')\n\n"
            "    @classmethod\n"
            "    def get_instance(cls):\n"
            "        if cls._instance is None:\n"
            "            cls._instance = super().__new__(cls)\n"
            "        return cls._instance\n"
        ),
        confidence=0.9,
        recommendations=["Consider using dependency injection instead", "Be careful with thread safety"],
    ),
    CodePattern(
        id="factory",
        name="Factory Pattern",
        category="creational",
        description="Creates objects without specifying their exact class",
        template=(
            "class ShapeFactory:\n"
            "    def create_shape(self, kind: str) -> Shape:\n"
            "        if kind == 'circle':\n"
            "            return Circle()\n"
            "        return Square()\n"
        ),
        confidence=0.9,
    ),
    CodePattern(
        id="observer",
        name="Observer Pattern",
        category="behavioral",
        description="Defines a one-to-many dependency between objects",
        template=(
            "class Subject:\n"
            "    def __init__(self):\n"
            "        self._observers = []\n\n"
            "    def attach(self, observer):\n"
            "        self._observers.append(observer)\n\n"
            "    def notify(self, data):\n"
            "        for observer in self._observers:\n"
            "            observer.update(data)\n"
        ),
        confidence=0.9,
    ),
    CodePattern(
        id="god-object",
        name="God Object Anti-pattern",
        category="anti-pattern",
        description="A class that knows too much or does too much",
        confidence=0.8,
        recommendations=["Break down into smaller, focused classes", "Apply Single Responsibility Principle"],
    ),
    CodePattern(
        id="callback-hell",
        name="Callback Hell",
        category="anti-pattern",
        description="Deeply nested callbacks making code hard to read and maintain",
        confidence=0.85,
        recommendations=["Use async/await", "Consider using Promises", "Extract functions"],
    ),
)


# =============================================================================
# Heuristics
# =============================================================================

def _lower(names: list[str]) -> list[str]:
    return [n.lower() for n in names]


def is_singleton(cls: ClassNode) -> bool:
    """Private constructor, getInstance-like method and a static instance property."""
    has_get_instance = any("getinstance" in m or "instance" in m for m in _lower(cls.methods))
    has_instance_property = any("instance" in p for p in _lower(cls.properties))
    return cls.has_private_constructor and has_get_instance and cls.has_static_instance and has_instance_property


def is_factory(cls: ClassNode) -> bool:
    has_create = any(word in m for m in _lower(cls.methods) for word in ("create", "make", "build"))
    return has_create and cls.returns_objects


def has_observer_pattern(functions: list[FunctionNode]) -> bool:
    names = _lower([f.name for f in functions])
    has_attach = any(word in n for n in names for word in ("attach", "subscribe", "addobserver"))
    has_notify = any(word in n for n in names for word in ("notify", "emit", "trigger"))
    return has_attach and has_notify


def god_object_confidence(cls: ClassNode) -> float | None:
    """Confidence for a God Object, or None below the thresholds.

    Scales from 0.5 at the threshold to 1.0 at twice the threshold.
    """
    methods, properties = len(cls.methods), len(cls.properties)
    if methods <= GOD_OBJECT_MAX_METHODS and properties <= GOD_OBJECT_MAX_PROPERTIES:
        return None
    ratio = max(methods / GOD_OBJECT_MAX_METHODS, properties / GOD_OBJECT_MAX_PROPERTIES)
    return min(1.0, 0.5 + 0.5 * (ratio - 1))


def brace_depth(body: str) -> int:
    depth = max_depth = 0
    for char in body:
        if char == "{":
            depth += 1
            max_depth = max(max_depth, depth)
        elif char == "}":
            depth -= 1
    return max_depth


def has_callback_hell(fn: FunctionNode) -> bool:
    body = fn.body or ""
    return brace_depth(body) > CALLBACK_MAX_DEPTH and len(_CALLBACK_KEYWORDS.findall(body)) > CALLBACK_MAX_KEYWORDS


class PatternDetector:
    """Detects patterns in indexed code and records them in the graph.

    Example:
        detector = PatternDetector(store)
        matches = detector.detect_patterns()
        insights = detector.generate_insights(matches)
    """

    def __init__(self, store: BaseGraphStore, embeddings: EmbeddingService | None = None):
        self.store = store
        self.embeddings = embeddings
        self.patterns: dict[str, CodePattern] = {p.id: CodePattern(**asdict(p)) for p in BUILTIN_PATTERNS}
        self._matchers: dict[str, Matcher] = {}
        self.templates: dict[str, TemplateDefinition] = {}

    def register_pattern(self, pattern: CodePattern, matcher: Matcher | None = None) -> None:
        """Add or replace a catalogue entry, optionally with its own matcher.

        The matcher receives the scanned functions and classes and returns
        the match groups it found.
        """
        self.patterns[pattern.id] = pattern
        if matcher is not None:
            self._matchers[pattern.id] = matcher
        log.debug(f"Registered pattern {pattern.id} (matcher={matcher is not None})")

    # =========================================================================
    # Detection
    # =========================================================================

    def detect_patterns(self, path_prefix: str | None = None) -> list[PatternMatch]:
        """Run all matchers and persist one Pattern node per match.

        Args:
            path_prefix: Only consider code whose file path starts with this

        Returns:
            Matches, each carrying the id of its persisted Pattern node
        """
        functions = [n for n in self.store.find_nodes_by_type(NodeType.FUNCTION, _SCAN_LIMIT) if isinstance(n, FunctionNode)]
        classes = [n for n in self.store.find_nodes_by_type(NodeType.CLASS, _SCAN_LIMIT) if isinstance(n, ClassNode)]
        if path_prefix:
            functions = [f for f in functions if f.file_path.startswith(path_prefix)]
            classes = [c for c in classes if c.file_path.startswith(path_prefix)]

        with log_timing(f"Pattern detection over {len(functions)} functions, {len(classes)} classes", log):
            matches = [
                *self._detect_structural(classes),
                *self._detect_behavioral(functions),
                *self._detect_anti_patterns(classes, functions),
            ]
            for pattern_id, matcher in self._matchers.items():
                groups = matcher(functions, classes)
                if groups:
                    matches.append(PatternMatch(self.patterns[pattern_id], groups))

        self._save_detected_patterns(matches)
        log.info(f"Detected {len(matches)} pattern matches")
        return matches

    def _detect_structural(self, classes: list[ClassNode]) -> list[PatternMatch]:
        grouped: dict[str, list[MatchGroup]] = {}
        for cls in classes:
            if is_singleton(cls):
                grouped.setdefault("singleton", []).append(MatchGroup([cls], 0.9, cls.file_path))
            if is_factory(cls):
                grouped.setdefault("factory", []).append(MatchGroup([cls], 0.85, cls.file_path))
        return [PatternMatch(self.patterns[pid], groups) for pid, groups in grouped.items()]

    def _detect_behavioral(self, functions: list[FunctionNode]) -> list[PatternMatch]:
        by_file: dict[str, list[FunctionNode]] = {}
        for fn in functions:
            by_file.setdefault(fn.file_path, []).append(fn)

        matches = []
        for file_path, funcs in by_file.items():
            if has_observer_pattern(funcs):
                matches.append(PatternMatch(self.patterns["observer"], [MatchGroup(list(funcs), 0.8, file_path)]))
        return matches

    def _detect_anti_patterns(self, classes: list[ClassNode], functions: list[FunctionNode]) -> list[PatternMatch]:
        matches = []
        for cls in classes:
            confidence = god_object_confidence(cls)
            if confidence is not None:
                matches.append(PatternMatch(self.patterns["god-object"], [MatchGroup([cls], confidence, cls.file_path)]))
        for fn in functions:
            if has_callback_hell(fn):
                matches.append(PatternMatch(self.patterns["callback-hell"], [MatchGroup([fn], 0.75, fn.file_path)]))
        return matches

    def _save_detected_patterns(self, matches: list[PatternMatch]) -> None:
        for match in matches:
            pattern = match.pattern
            node = PatternNode(
                name=pattern.name,
                pattern_type=pattern.category,
                description=pattern.description,
                template=pattern.template,
                usage_count=len(match.matches),
                confidence=pattern.confidence,
                examples=[group.location for group in match.matches],
            )
            rels = [
                Relationship(code.id, node.id, RelationType.INSTANTIATES, confidence=group.confidence)
                for group in match.matches
                for code in group.nodes
            ]
            self.store.create_subgraph([node], rels)
            match.node_id = node.id
            pattern.frequency += len(match.matches)

    # =========================================================================
    # Insights
    # =========================================================================

    def generate_insights(self, matches: list[PatternMatch]) -> list[InsightSuggestion]:
        """Turn anti-pattern, performance and security matches into insights.

        Each insight is persisted as an Insight node with FOUND_IN edges to
        the affected code.
        """
        insights: list[InsightSuggestion] = []
        for match in matches:
            pattern = match.pattern
            for group in match.matches:
                affected = [n.id for n in group.nodes]
                if pattern.category == "anti-pattern":
                    insights.append(InsightSuggestion(
                        type="refactor",
                        title=f"Refactor {pattern.name}",
                        description=pattern.description,
                        affected_nodes=affected,
                        priority="high" if group.confidence > 0.8 else "medium",
                        suggested_fix="\n".join(pattern.recommendations) or None,
                        related_patterns=[pattern.id],
                    ))
                elif pattern.category == "performance":
                    insights.append(InsightSuggestion(
                        type="optimization",
                        title=f"Optimize {pattern.name}",
                        description=f"Performance issue detected: {pattern.description}",
                        affected_nodes=affected,
                        priority="medium",
                        related_patterns=[pattern.id],
                    ))
                elif pattern.category == "security":
                    insights.append(InsightSuggestion(
                        type="security",
                        title=f"Security Issue: {pattern.name}",
                        description=pattern.description,
                        affected_nodes=affected,
                        priority="critical",
                        related_patterns=[pattern.id],
                    ))

        self._save_insights(insights)
        log.info(f"Generated {len(insights)} insights from {len(matches)} matches")
        return insights

    def _save_insights(self, insights: list[InsightSuggestion]) -> None:
        for insight in insights:
            node = InsightNode(
                name=insight.title,
                insight_type=insight.type,
                description=insight.description,
                confidence=0.8,
                source="pattern-detector",
                actionable=True,
                priority=insight.priority,
                metadata={"suggested_fix": insight.suggested_fix, "related_patterns": insight.related_patterns},
            )
            rels = [Relationship(node.id, node_id, RelationType.FOUND_IN) for node_id in insight.affected_nodes]
            self.store.create_subgraph([node], rels)
            insight.node_id = node.id

    def get_insight(self, insight_id: str) -> InsightNode:
        """Load a persisted insight.

        Raises:
            InsightNotFoundError: If no Insight node has this id
        """
        node = self.store.get_node(insight_id)
        if node is None or node.type != NodeType.INSIGHT:
            raise InsightNotFoundError(insight_id)
        return node

    # =========================================================================
    # Templates
    # =========================================================================

    def create_template(self, template: TemplateDefinition) -> str:
        """Register a template and persist it as a Pattern node."""
        for spec in template.relationships:
            if not (0 <= spec.from_index < len(template.nodes) and 0 <= spec.to_index < len(template.nodes)):
                raise InvalidArgumentError(
                    f"Template {template.id}: relationship {spec.type.value} refers to a missing node index"
                )
        node = PatternNode(
            id=template.id,
            name=template.name,
            pattern_type="template",
            description=template.description,
            template=template.code,
            metadata={"structure": template.structure()},
        )
        self.store.create_node(node)
        self.templates[template.id] = template
        log.info(f"Created template {template.id} ({len(template.nodes)} nodes)")
        return node.id

    def get_template(self, template_id: str) -> TemplateDefinition:
        """Look up a template in the registry, then in the graph.

        Raises:
            TemplateNotFoundError: If the template is unknown
        """
        if template_id in self.templates:
            return self.templates[template_id]
        node = self.store.get_node(template_id)
        if not isinstance(node, PatternNode) or node.pattern_type != "template":
            raise TemplateNotFoundError(template_id)
        template = TemplateDefinition.from_structure(node)
        self.templates[template_id] = template
        return template

    def apply_template(
        self,
        template_id: str,
        target_node_id: str,
        parameters: dict[str, Any] | None = None,
    ) -> list[BaseNode]:
        """Instantiate a template under a target node in one transaction.

        Node ``i`` is named ``parameters["node_{i}_name"]`` when given. The
        target CONTAINS the first created node.

        Raises:
            TemplateNotFoundError: If the template is unknown
            NodeNotFoundError: If the target node does not exist
        """
        template = self.get_template(template_id)
        self.store.require_node(target_node_id)
        parameters = parameters or {}

        created: list[BaseNode] = []
        for i, spec in enumerate(template.nodes):
            props = dict(spec.properties)
            metadata = dict(props.pop("metadata", None) or {})
            metadata.update({"from_template": template_id, "parent_node": target_node_id})
            props.update({
                "type": spec.type.value,
                "name": parameters.get(f"node_{i}_name") or f"Generated_{spec.type.value}",
                "metadata": metadata,
            })
            props.pop("id", None)
            created.append(node_from_properties(props))

        rels = [
            Relationship(created[spec.from_index].id, created[spec.to_index].id, spec.type)
            for spec in template.relationships
            if spec.from_index < len(created) and spec.to_index < len(created)
        ]
        if created:
            rels.append(Relationship(target_node_id, created[0].id, RelationType.CONTAINS))

        self.store.create_subgraph(created, rels)
        log.info(f"Applied template {template_id} to {target_node_id}: {len(created)} nodes")
        return created

    # =========================================================================
    # Queries
    # =========================================================================

    def find_similar_patterns(self, node_id: str, threshold: float = 0.7) -> list[CodePattern]:
        """Pattern nodes whose embeddings resemble the given node's."""
        node = self.store.get_node(node_id)
        if node is None:
            return []
        if not node.embedding:
            if self.embeddings is None:
                log.debug(f"Node {node_id} has no embedding and no embedding service is configured")
                return []
            self.embeddings.embed_node(node)

        similar = self.store.find_similar_by_embedding(node.embedding, NodeType.PATTERN, threshold, 10)
        return [
            CodePattern(
                id=pattern.id,
                name=pattern.name,
                category=getattr(pattern, "pattern_type", "structural"),
                description=getattr(pattern, "description", ""),
                template=getattr(pattern, "template", None) or "",
                confidence=score,
                frequency=getattr(pattern, "usage_count", 0),
            )
            for pattern, score in similar
        ]

    def get_pattern_statistics(self) -> dict[str, Any]:
        patterns = self.store.find_nodes_by_type(NodeType.PATTERN, _SCAN_LIMIT)
        insights = self.store.find_nodes_by_type(NodeType.INSIGHT, _SCAN_LIMIT)

        top = sorted(patterns, key=lambda p: getattr(p, "usage_count", 0), reverse=True)[:5]
        recent = sorted(insights, key=lambda i: getattr(i, "discovered_at", 0.0), reverse=True)[:5]
        return {
            "total_patterns": len(patterns),
            "total_insights": len(insights),
            "patterns_by_type": dict(Counter(getattr(p, "pattern_type", "unknown") for p in patterns)),
            "insights_by_type": dict(Counter(getattr(i, "insight_type", "unknown") for i in insights)),
            "top_patterns": [{"name": p.name, "count": getattr(p, "usage_count", 0)} for p in top],
            "recent_insights": [
                {"title": i.name, "type": getattr(i, "insight_type", ""), "priority": getattr(i, "priority", "")}
                for i in recent
            ],
        }


__all__ = [
    "PatternDetector",
    "CodePattern",
    "PatternMatch",
    "MatchGroup",
    "InsightSuggestion",
    "TemplateDefinition",
    "TemplateNodeSpec",
    "TemplateRelationSpec",
    "BUILTIN_PATTERNS",
    "god_object_confidence",
    "is_singleton",
    "is_factory",
    "has_observer_pattern",
    "has_callback_hell",
]
