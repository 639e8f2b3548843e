"""Code indexer tests for CodeGraph Lite.

Tests indexing a small project with a scripted parser:
- File discovery with ignore patterns and .gitignore
- File/Function/Class nodes and CONTAINS edges
- EXTENDS, CALLS and IMPORTS linking
- Per-file errors, write failures and timeouts
- Idempotent single-file re-indexing
"""

import pytest

from codegraph_lite.ast_parser import ClassDeclaration, FunctionDeclaration, ImportDeclaration
from codegraph_lite.code_index import CodeIndexer, estimate_complexity
from codegraph_lite.schema import NodeType, RelationType

MODELS = "class Base: ...\nclass User(Base): ...\n"
SERVICE = "from .models import User\ndef load_user(): return helper()\ndef helper(): ...\n"


@pytest.fixture
def project(tmp_path, fake_parser):
    root = tmp_path / "project"
    (root / "src").mkdir(parents=True)
    (root / "node_modules" / "lib").mkdir(parents=True)
    (root / "generated").mkdir()

    fake_parser.register(MODELS, [
        ClassDeclaration("Base", methods=["save"]),
        ClassDeclaration("User", superclass="Base", properties=["name"]),
    ])
    fake_parser.register(SERVICE, [
        ImportDeclaration(".models", names=["User"], line=1),
        FunctionDeclaration("load_user", signature="def load_user()", calls=["helper"], branch_count=2),
        FunctionDeclaration("helper", signature="def helper()"),
    ])

    (root / "src" / "models.py").write_text(MODELS)
    (root / "src" / "service.py").write_text(SERVICE)
    (root / "README.md").write_text("# Project\n")
    (root / "broken.py").write_text("SYNTAX ERROR here\n")
    (root / "node_modules" / "lib" / "index.js").write_text("module.exports = {}\n")
    (root / "generated" / "out.py").write_text("x = 1\n")
    (root / ".gitignore").write_text("# build output\ngenerated/\n")
    return root


@pytest.fixture
def indexer(store, project, config, fake_parser):
    return CodeIndexer(store, project, config, parser=fake_parser)


def _edges(store, rel_type):
    return [r for r in store.get_edges() if r.type is rel_type]


class TestDiscovery:
    def test_ignored_trees_pruned(self, indexer, project):
        files = [p.relative_to(project).as_posix() for p in indexer.discover_files()]
        assert files == ["README.md", "broken.py", "src/models.py", "src/service.py"]

    def test_extension_filter(self, store, project, config, fake_parser):
        config.extensions = [".md"]
        indexer = CodeIndexer(store, project, config, parser=fake_parser)
        assert [p.name for p in indexer.discover_files()] == ["README.md"]


class TestIndexProject:
    def test_counts_and_errors(self, indexer):
        result = indexer.index_project()

        assert result.files_indexed == 3
        assert result.functions_found == 2
        assert result.classes_found == 2
        assert result.relationships_created == 7
        assert result.errors == ["broken.py: unexpected token"]
        assert result.timed_out is False
        assert result.to_dict()["files_indexed"] == 3

    def test_nodes_written(self, indexer, store):
        indexer.index_project()

        files = {f.path: f for f in store.find_nodes_by_type(NodeType.FILE)}
        assert set(files) == {"README.md", "src/models.py", "src/service.py"}
        service = files["src/service.py"]
        assert service.language == "Python"
        assert service.content == SERVICE
        assert service.lines == 3
        assert len(service.hash) == 64
        assert files["README.md"].language == "Markdown"

        (load_user,) = store.find_nodes_by_property(NodeType.FUNCTION, "name", "load_user")
        assert load_user.complexity == 3
        assert load_user.file_path == "src/service.py"

        (user,) = store.find_nodes_by_property(NodeType.CLASS, "name", "User")
        assert user.extends == "Base"
        assert user.properties == ["name"]

    def test_relationships_linked(self, indexer, store):
        indexer.index_project()
        names = {n.id: n.name for n in store.find_nodes_by_type(NodeType.FUNCTION)}
        names.update({n.id: n.name for n in store.find_nodes_by_type(NodeType.CLASS)})
        names.update({n.id: n.path for n in store.find_nodes_by_type(NodeType.FILE)})

        def pairs(rel_type):
            return {(names[r.from_id], names[r.to_id]) for r in _edges(store, rel_type)}

        assert pairs(RelationType.EXTENDS) == {("User", "Base")}
        assert pairs(RelationType.CALLS) == {("load_user", "helper")}
        assert pairs(RelationType.IMPORTS) == {("src/service.py", "src/models.py")}
        assert len(_edges(store, RelationType.CONTAINS)) == 4

    def test_large_content_truncated(self, store, project, config, fake_parser):
        config.max_file_content = 5
        CodeIndexer(store, project, config, parser=fake_parser).index_project()
        (readme,) = store.find_nodes_by_property(NodeType.FILE, "path", "README.md")
        assert readme.content == "# Pro"

    def test_batch_write_failure_recorded(self, indexer, store, monkeypatch):
        def fail(nodes, relationships):
            raise RuntimeError("disk full")

        monkeypatch.setattr(store, "create_subgraph", fail)
        result = indexer.index_project()

        assert result.files_indexed == 0
        assert any("batch write failed" in e for e in result.errors)

    def test_timeout_stops_between_batches(self, indexer):
        result = indexer.index_project(timeout=1e-9)
        assert result.timed_out is True
        assert result.files_indexed == 0
        assert "timed out" in result.errors[0]


class TestUpdateFile:
    def test_reindex_is_idempotent(self, indexer, store):
        indexer.index_project()
        before = store.get_graph_statistics()

        indexer.update_file("src/service.py")
        result = indexer.update_file("src/service.py")

        after = store.get_graph_statistics()
        assert after["nodes_by_type"] == before["nodes_by_type"]
        assert after["relationships_by_type"] == before["relationships_by_type"]
        assert result.files_indexed == 1
        assert result.functions_found == 2

    def test_inbound_edges_reattached(self, indexer, store):
        indexer.index_project()
        (service,) = store.find_nodes_by_property(NodeType.FILE, "path", "src/service.py")

        result = indexer.update_file("src/models.py")

        (models,) = store.find_nodes_by_property(NodeType.FILE, "path", "src/models.py")
        imports = _edges(store, RelationType.IMPORTS)
        assert [(r.from_id, r.to_id) for r in imports] == [(service.id, models.id)]
        assert len(_edges(store, RelationType.EXTENDS)) == 1
        assert result.relationships_created == 4
        assert result.errors == []

    def test_deleted_file_removed(self, indexer, store, project):
        indexer.index_project()
        (project / "src" / "service.py").unlink()

        result = indexer.update_file(project / "src" / "service.py")

        assert result.files_indexed == 0
        assert store.find_nodes_by_property(NodeType.FILE, "path", "src/service.py") == []
        assert store.find_nodes_by_type(NodeType.FUNCTION) == []
        assert len(store.find_nodes_by_type(NodeType.CLASS)) == 2


class TestComplexity:
    def test_uses_parser_branch_count(self):
        assert estimate_complexity(FunctionDeclaration("f", branch_count=2)) == 3

    def test_falls_back_to_keywords(self):
        body = "if a:\n    for x in y:\n        while z: pass"
        assert estimate_complexity(FunctionDeclaration("f", body=body)) == 4
