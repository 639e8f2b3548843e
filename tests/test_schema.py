"""Schema tests for CodeGraph Lite.

Tests node/property conversion:
- Round trip of typed nodes through flat property maps
- Metadata travelling as a JSON string
- Unknown properties folded into metadata
"""

from codegraph_lite.schema import (
    ClassNode,
    FileNode,
    FunctionNode,
    MessageNode,
    NodeType,
    Relationship,
    RelationType,
    generate_id,
    node_from_properties,
    node_text,
    update_properties,
)


class TestGenerateId:
    def test_prefix_and_uniqueness(self):
        ids = {generate_id("file") for _ in range(100)}
        assert len(ids) == 100
        assert all(i.startswith("file_") for i in ids)

    def test_nodes_get_kind_prefix(self):
        assert FileNode(name="a.py").id.startswith("file_")
        assert FunctionNode(name="f").id.startswith("func_")
        assert MessageNode(content="hi").id.startswith("msg_")

    def test_explicit_id_kept(self):
        assert FileNode(id="custom").id == "custom"


class TestPropertyRoundTrip:
    def test_file_node_round_trip(self):
        node = FileNode(
            name="main.py",
            path="src/main.py",
            content="print('hi')",
            language="Python",
            size=11,
            lines=1,
            metadata={"owner": "core"},
        )
        props = node.to_properties()

        assert props["type"] == "File"
        assert "metadata" not in props
        assert props["metadata_json"] == '{"owner":"core"}'

        restored = node_from_properties(props)
        assert isinstance(restored, FileNode)
        assert restored == node

    def test_class_node_lists_survive(self):
        node = ClassNode(name="Service", methods=["a", "b"], properties=["x"], implements=["Runnable"])
        restored = node_from_properties(node.to_properties())
        assert restored.methods == ["a", "b"]
        assert restored.properties == ["x"]
        assert restored.implements == ["Runnable"]

    def test_embedding_excluded_on_request(self):
        node = FunctionNode(name="f", embedding=[0.1, 0.2])
        assert "embedding" not in node.to_properties(include_embedding=False)
        assert node_from_properties(node.to_properties()).embedding == [0.1, 0.2]

    def test_unknown_properties_go_to_metadata(self):
        props = FunctionNode(name="f").to_properties()
        props["legacy_flag"] = True
        restored = node_from_properties(props)
        assert restored.metadata["legacy_flag"] is True

    def test_null_lists_become_empty(self):
        props = ClassNode(name="C").to_properties()
        props["methods"] = None
        assert node_from_properties(props).methods == []


class TestUpdateProperties:
    def test_identity_fields_dropped(self):
        props = update_properties({"id": "x", "type": "File", "created_at": 1.0, "name": "new"})
        assert props == {"name": "new"}

    def test_metadata_and_enums_normalized(self):
        props = update_properties({"metadata": {"a": 1}, "kind": NodeType.CLASS})
        assert props["metadata_json"] == '{"a":1}'
        assert props["kind"] == "Class"


class TestRelationship:
    def test_string_type_coerced(self):
        rel = Relationship("a", "b", "CALLS")
        assert rel.type is RelationType.CALLS

    def test_properties_round_trip(self):
        rel = Relationship("a", "b", RelationType.INSTANTIATES, properties={"line": 3}, confidence=0.9)
        restored = Relationship.from_properties("a", "b", "INSTANTIATES", rel.to_properties())
        assert restored.properties == {"line": 3}
        assert restored.confidence == 0.9
        assert restored.created_at == rel.created_at


def test_node_text_includes_content_fields():
    fn = FunctionNode(name="load", signature="def load(path)", body="return open(path)")
    text = node_text(fn)
    assert "load" in text
    assert "def load(path)" in text
    assert "return open(path)" in text
