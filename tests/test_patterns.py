"""Pattern detector tests for CodeGraph Lite.

Tests:
- Heuristics (singleton, factory, observer, god object, callback hell)
- Persisting Pattern nodes with INSTANTIATES edges
- Insight generation with FOUND_IN edges and priorities
- Template registration, lookup and application
- Pattern statistics
"""

import pytest

from codegraph_lite.errors import (
    InsightNotFoundError,
    InvalidArgumentError,
    NodeNotFoundError,
    TemplateNotFoundError,
)
from codegraph_lite.patterns import (
    CodePattern,
    MatchGroup,
    PatternDetector,
    TemplateDefinition,
    TemplateNodeSpec,
    TemplateRelationSpec,
    god_object_confidence,
    has_callback_hell,
    is_factory,
    is_singleton,
)
from codegraph_lite.schema import (
    ClassNode,
    FileNode,
    FunctionNode,
    NodeType,
    PatternNode,
    RelationType,
)

CALLBACK_BODY = (
    "a.then(function () { b.then(function () { c.then(function () { "
    "d.then(function () { e(function callback() { f(() => { g(); }); }); }); }); }); });"
)


def _god_class(methods: int, name: str = "Everything") -> ClassNode:
    return ClassNode(name=name, methods=[f"m{i}" for i in range(methods)], file_path="src/god.py")


@pytest.fixture
def detector(store):
    return PatternDetector(store)


@pytest.fixture
def codebase(store):
    nodes = {
        "god": _god_class(21),
        "factory": ClassNode(name="WidgetFactory", methods=["create_widget"], returns_objects=True, file_path="src/widgets.py"),
        "singleton": ClassNode(
            name="Registry",
            methods=["__new__", "get_instance"],
            properties=["_instance"],
            has_private_constructor=True,
            has_static_instance=True,
            file_path="src/registry.py",
        ),
        "subscribe": FunctionNode(name="subscribe", file_path="web/events.js"),
        "emit": FunctionNode(name="emit_event", file_path="web/events.js"),
        "callbacks": FunctionNode(name="loadAll", body=CALLBACK_BODY, file_path="web/load.js"),
        "plain": FunctionNode(name="helper", body="return 1", file_path="src/util.py"),
    }
    store.create_nodes(list(nodes.values()))
    return nodes


class TestHeuristics:
    def test_god_object_threshold(self):
        assert god_object_confidence(_god_class(20)) is None
        assert god_object_confidence(_god_class(21)) == pytest.approx(0.525)
        assert god_object_confidence(_god_class(25)) == pytest.approx(0.625)
        assert god_object_confidence(_god_class(60)) == 1.0
        many_props = ClassNode(name="Bag", properties=[f"p{i}" for i in range(16)])
        assert god_object_confidence(many_props) is not None

    def test_singleton_needs_all_signals(self, codebase):
        assert is_singleton(codebase["singleton"]) is True
        public = ClassNode(name="R", methods=["get_instance"], properties=["_instance"], has_static_instance=True)
        assert is_singleton(public) is False

    def test_factory(self, codebase):
        assert is_factory(codebase["factory"]) is True
        assert is_factory(ClassNode(name="Builder", methods=["build"])) is False

    def test_callback_hell(self, codebase):
        assert has_callback_hell(codebase["callbacks"]) is True
        assert has_callback_hell(codebase["plain"]) is False


class TestDetection:
    def test_all_builtins_detected(self, detector, codebase):
        matches = detector.detect_patterns()
        found = {m.pattern.id: m for m in matches}

        assert set(found) == {"singleton", "factory", "observer", "god-object", "callback-hell"}
        assert [n.id for n in found["singleton"].matches[0].nodes] == [codebase["singleton"].id]
        assert {n.name for n in found["observer"].matches[0].nodes} == {"subscribe", "emit_event"}
        assert found["observer"].matches[0].location == "web/events.js"

    def test_single_god_object_match(self, detector, codebase):
        matches = [m for m in detector.detect_patterns() if m.pattern.id == "god-object"]
        assert len(matches) == 1
        (group,) = matches[0].matches
        assert group.confidence == pytest.approx(0.525)

    def test_pattern_nodes_persisted(self, detector, codebase, store):
        matches = detector.detect_patterns()

        patterns = store.find_nodes_by_type(NodeType.PATTERN)
        assert len(patterns) == len(matches)
        singleton = next(m for m in matches if m.pattern.id == "singleton")
        node = store.get_node(singleton.node_id)
        assert node.pattern_type == "creational"
        assert node.examples == ["src/registry.py"]
        incoming = store.neighbors(node.id, [RelationType.INSTANTIATES], "incoming")
        assert [n.id for n, _ in incoming] == [codebase["singleton"].id]
        assert detector.patterns["singleton"].frequency == 1

    def test_path_prefix(self, detector, codebase):
        matches = detector.detect_patterns(path_prefix="web/")
        assert {m.pattern.id for m in matches} == {"observer", "callback-hell"}

    def test_custom_matcher(self, detector, codebase):
        def eval_calls(functions, classes):
            return [MatchGroup([f], 0.9, f.file_path) for f in functions if "eval(" in f.body]

        risky = FunctionNode(name="run_user_code", body="return eval(source)", file_path="src/run.py")
        detector.store.create_node(risky)
        detector.register_pattern(
            CodePattern(id="eval", name="Eval Usage", category="security", description="Dynamic code execution"),
            eval_calls,
        )

        matches = detector.detect_patterns()
        (security,) = [m for m in matches if m.pattern.id == "eval"]
        assert security.matches[0].nodes[0].id == risky.id

        insights = detector.generate_insights([security])
        assert insights[0].type == "security"
        assert insights[0].priority == "critical"


class TestInsights:
    def test_insights_from_anti_patterns(self, detector, codebase, store):
        insights = detector.generate_insights(detector.detect_patterns())

        assert {i.related_patterns[0] for i in insights} == {"god-object", "callback-hell"}
        god = next(i for i in insights if i.related_patterns == ["god-object"])
        assert god.type == "refactor"
        assert god.priority == "medium"
        assert "Single Responsibility" in god.suggested_fix

        node = detector.get_insight(god.node_id)
        assert node.insight_type == "refactor"
        assert node.metadata["related_patterns"] == ["god-object"]
        found_in = store.neighbors(node.id, [RelationType.FOUND_IN], "outgoing")
        assert [n.id for n, _ in found_in] == [codebase["god"].id]

    def test_high_confidence_is_high_priority(self, detector, store):
        store.create_node(_god_class(40))
        insights = detector.generate_insights(detector.detect_patterns())
        assert insights[0].priority == "high"

    def test_unknown_insight(self, detector, codebase):
        with pytest.raises(InsightNotFoundError):
            detector.get_insight("missing")
        with pytest.raises(InsightNotFoundError):
            detector.get_insight(codebase["god"].id)


class TestTemplates:
    @pytest.fixture
    def template(self):
        return TemplateDefinition(
            id="pattern_service_template",
            name="Service",
            description="Service class with a handler",
            applicable_to=[NodeType.FILE],
            nodes=[
                TemplateNodeSpec(NodeType.CLASS, {"abstract": False}),
                TemplateNodeSpec(NodeType.FUNCTION, {"is_async": True}),
            ],
            relationships=[TemplateRelationSpec(RelationType.CONTAINS, 0, 1)],
            code="class Service: ...",
        )

    def test_apply_template(self, detector, store, template):
        target = FileNode(name="service.py", path="service.py")
        store.create_node(target)
        detector.create_template(template)

        created = detector.apply_template(template.id, target.id, {"node_0_name": "UserService"})

        cls, fn = created
        assert cls.name == "UserService"
        assert fn.name == "Generated_Function"
        assert fn.is_async is True
        assert cls.metadata == {"from_template": template.id, "parent_node": target.id}
        assert [n.id for n, _ in store.neighbors(target.id, [RelationType.CONTAINS], "outgoing")] == [cls.id]
        assert [n.id for n, _ in store.neighbors(cls.id, [RelationType.CONTAINS], "outgoing")] == [fn.id]

    def test_template_loaded_from_graph(self, store, template):
        PatternDetector(store).create_template(template)

        loaded = PatternDetector(store).get_template(template.id)
        assert loaded.name == "Service"
        assert [n.type for n in loaded.nodes] == [NodeType.CLASS, NodeType.FUNCTION]
        assert loaded.relationships[0].type is RelationType.CONTAINS
        assert loaded.code == "class Service: ..."

    def test_errors(self, detector, store, template):
        with pytest.raises(TemplateNotFoundError):
            detector.apply_template("nope", "whatever")

        detector.create_template(template)
        with pytest.raises(NodeNotFoundError):
            detector.apply_template(template.id, "missing-target")

        broken = TemplateDefinition(
            id="broken", name="Broken", description="",
            nodes=[TemplateNodeSpec(NodeType.CLASS)],
            relationships=[TemplateRelationSpec(RelationType.CONTAINS, 0, 3)],
        )
        with pytest.raises(InvalidArgumentError):
            detector.create_template(broken)


class TestQueries:
    def test_similar_patterns(self, detector, store):
        fn = FunctionNode(name="f", embedding=[1.0, 0.0])
        close = PatternNode(name="Close", pattern_type="behavioral", usage_count=3, embedding=[0.9, 0.1])
        far = PatternNode(name="Far", embedding=[0.0, 1.0])
        store.create_nodes([fn, close, far])

        (similar,) = detector.find_similar_patterns(fn.id)
        assert similar.name == "Close"
        assert similar.category == "behavioral"
        assert similar.frequency == 3
        assert detector.find_similar_patterns("missing") == []

    def test_statistics(self, detector, codebase):
        detector.generate_insights(detector.detect_patterns())
        stats = detector.get_pattern_statistics()

        assert stats["total_patterns"] == 5
        assert stats["total_insights"] == 2
        assert stats["patterns_by_type"]["creational"] == 2
        assert stats["insights_by_type"] == {"refactor": 2}
        assert len(stats["top_patterns"]) == 5
        assert {i["priority"] for i in stats["recent_insights"]} == {"medium"}
