"""Memory manager tests for CodeGraph Lite.

Tests the tiered conversation memory:
- Conversation and message persistence (HAS_MESSAGE, NEXT/PREVIOUS)
- Active tier FIFO eviction and truncation of oversized messages
- Working tier eviction by importance with insertion-order tie-break
- Hybrid search and context rendering
"""

from unittest.mock import MagicMock

import pytest

from codegraph_lite.embeddings import EmbeddingService
from codegraph_lite.errors import InvalidArgumentError, NodeNotFoundError
from codegraph_lite.memory import MemoryManager
from codegraph_lite.schema import (
    ConceptNode,
    FileNode,
    FunctionNode,
    NodeType,
    Relationship,
    RelationType,
)


def _words(n: int, word: str = "w") -> str:
    return " ".join([word] * n)


def _code_function(name: str, tokens: int = 40) -> FunctionNode:
    # signature + body concatenate to exactly ``tokens`` words
    return FunctionNode(name=name, signature="def ", body=_words(tokens - 1), file_path="src/cache.py")


@pytest.fixture
def memory(store, config, encoder):
    return MemoryManager(store, config, encoder=encoder)


class TestConversations:
    def test_start_conversation_persists(self, memory, store):
        conversation = memory.start_conversation("session-1", summary="Refactoring")
        stored = store.get_node(conversation.id)
        assert stored.type is NodeType.CONVERSATION
        assert stored.session_id == "session-1"
        assert stored.summary == "Refactoring"

    def test_add_message_starts_conversation(self, memory):
        message = memory.add_message("user", "hello")
        assert memory.current_conversation is not None
        assert message.conversation_id == memory.current_conversation.id

    def test_messages_linked(self, memory, store):
        conversation = memory.start_conversation("s")
        first = memory.add_message("user", "hello there")
        second = memory.add_message("assistant", "hi")

        contained = store.neighbors(conversation.id, [RelationType.HAS_MESSAGE], "outgoing")
        assert {n.id for n, _ in contained} == {first.id, second.id}
        assert [n.id for n, _ in store.neighbors(first.id, [RelationType.NEXT], "outgoing")] == [second.id]
        assert [n.id for n, _ in store.neighbors(second.id, [RelationType.PREVIOUS], "outgoing")] == [first.id]
        assert (first.sequence, second.sequence) == (0, 1)
        assert store.get_node(conversation.id).token_count == 3

    def test_invalid_role(self, memory):
        with pytest.raises(InvalidArgumentError):
            memory.add_message("robot", "beep")

    def test_save_summary(self, memory, store):
        conversation = memory.start_conversation("s")
        memory.save_conversation_summary("Talked about caching")
        assert store.get_node(conversation.id).summary == "Talked about caching"

    def test_load_previous_conversation(self, memory, store, config, encoder):
        conversation = memory.start_conversation("s")
        for text in ("one", "two", "three"):
            memory.add_message("assistant", text)

        other = MemoryManager(store, config, encoder=encoder)
        other.load_previous_conversation(conversation.id, limit=2)

        assert [m.content for m in other.active.nodes] == ["two", "three"]
        assert len(other.message_history) == 3
        assert other.current_conversation.id == conversation.id

    def test_load_unknown_conversation(self, memory, store):
        with pytest.raises(NodeNotFoundError):
            memory.load_previous_conversation("missing")
        concept = ConceptNode(name="not a conversation")
        store.create_node(concept)
        with pytest.raises(NodeNotFoundError):
            memory.load_previous_conversation(concept.id)


class TestActiveMemory:
    def test_fifo_eviction(self, memory):
        first = memory.add_message("assistant", _words(20, "a"))
        memory.add_message("assistant", _words(20, "b"))
        memory.add_message("assistant", _words(20, "c"))

        assert first.id not in memory.active
        assert len(memory.active) == 2
        assert memory.active.tokens == 40
        assert memory.active.tokens <= memory.active.max_tokens

    def test_oversized_message_truncated(self, memory, store):
        message = memory.add_message("assistant", _words(80))

        (active,) = memory.active.nodes
        assert memory.active.tokens == 50
        assert len(active.content.split()) == 50
        assert len(store.get_node(message.id).content.split()) == 80


class TestWorkingMemory:
    @pytest.fixture
    def functions(self, store):
        nodes = [_code_function(f"cache_{x}") for x in "abcd"]
        store.create_nodes(nodes)
        return {n.name: n for n in nodes}

    def _working_names(self, memory):
        return [n.name for n in memory.working.nodes]

    def test_user_query_pulls_context(self, memory, functions):
        memory.add_message("user", "cache_a")
        assert self._working_names(memory) == ["cache_a"]
        assert memory.working.importance[functions["cache_a"].id] == 0.5

    def test_assistant_message_does_not_pull_context(self, memory, functions):
        memory.add_message("assistant", "cache_a")
        assert len(memory.working) == 0

    def test_eviction_ties_broken_by_age(self, memory, functions):
        for name in ("cache_a", "cache_b", "cache_c"):
            memory.add_message("user", name)

        assert self._working_names(memory) == ["cache_b", "cache_c"]
        assert memory.working.tokens == 80

    def test_reinforced_node_survives(self, memory, functions):
        memory.add_message("user", "cache_a")
        memory.add_message("user", "cache_b")
        memory.add_message("user", "cache_a")
        memory.add_message("user", "cache_c")

        assert self._working_names(memory) == ["cache_a", "cache_c"]
        assert memory.working.importance[functions["cache_a"].id] == pytest.approx(0.6)

    def test_reinforcement_is_unbounded(self, memory, functions):
        memory.add_message("user", "cache_a")
        memory.add_message("user", "cache_b")
        for _ in range(8):
            memory.add_message("user", "cache_a")
        for _ in range(7):
            memory.add_message("user", "cache_b")
        memory.add_message("user", "cache_c")

        assert self._working_names(memory) == ["cache_a", "cache_c"]
        assert memory.working.importance[functions["cache_a"].id] == pytest.approx(1.3)

    def test_update_node_importance_clamped(self, memory, functions):
        memory.add_message("user", "cache_a")
        node_id = functions["cache_a"].id
        memory.update_node_importance(node_id, "working", 5.0)
        assert memory.working.importance[node_id] == 1.0
        memory.update_node_importance(node_id, "working", -5.0)
        assert memory.working.importance[node_id] == 0.0
        with pytest.raises(InvalidArgumentError):
            memory.update_node_importance(node_id, "graph", 0.1)


class TestSearch:
    def test_keyword_results_with_related(self, memory, store):
        file = FileNode(name="cache.py", path="src/cache.py")
        fn = FunctionNode(name="cache_lookup", file_path="src/cache.py")
        store.create_subgraph([file, fn], [Relationship(file.id, fn.id, RelationType.CONTAINS)])

        results = memory.search("cache_lookup", types=[NodeType.FUNCTION], include_related=True)
        assert [n.id for n in results] == [fn.id, file.id]

    def test_semantic_hits_come_first(self, store, config, encoder, embed_fn):
        embeddings = EmbeddingService(store, config, encoder=encoder, embed_fn=embed_fn)
        memory = MemoryManager(store, config, encoder=encoder, embeddings=embeddings)
        semantic = FunctionNode(name="load_settings", signature="def load_settings()", body="return parse(config)")
        keyword = FunctionNode(name="parse config helper")
        store.create_nodes([semantic, keyword])
        embeddings.embed_node(semantic)

        results = memory.search("parse config", types=[NodeType.FUNCTION], threshold=0.5)
        assert [n.id for n in results][:2] == [semantic.id, keyword.id]

    def test_semantic_failure_falls_back(self, store, config, encoder):
        embeddings = MagicMock()
        embeddings.semantic_search.side_effect = RuntimeError("provider down")
        memory = MemoryManager(store, config, encoder=encoder, embeddings=embeddings)
        fn = FunctionNode(name="cache_lookup")
        store.create_node(fn)

        assert [n.id for n in memory.search("cache")] == [fn.id]


class TestContext:
    def test_two_message_context(self, memory):
        memory.add_message("user", "hello")
        memory.add_message("assistant", "hi there")

        assert memory.get_context_as_text() == "=== Recent Conversation ===\nuser: hello\nassistant: hi there"

    def test_working_summaries_rendered(self, memory, store):
        store.create_node(_code_function("cache_a"))
        memory.add_message("user", "cache_a")

        text = memory.get_context_as_text()
        assert "=== Relevant Context ===" in text
        assert "Function: cache_a in src/cache.py" in text

    def test_statistics(self, memory):
        memory.add_message("user", "hello world")
        stats = memory.get_statistics()
        assert stats["active_memory"] == {"nodes": 1, "tokens": 2, "max_tokens": 50}
        assert stats["working_memory"]["nodes"] == 0
        assert stats["message_history"] == 1

    def test_cleanup_releases_resources(self, store, config, encoder):
        embeddings = MagicMock()
        memory = MemoryManager(store, config, encoder=encoder, embeddings=embeddings)
        memory.cleanup()
        assert encoder.closed is True
        embeddings.close.assert_called_once()
