"""Tiered conversation memory for CodeGraph Lite.

Three layers feed the chat prompt:
- Active: recent messages, FIFO-evicted under a token budget
- Working: context nodes pulled in by relevance, evicted by ascending importance
- Graph: the persisted knowledge graph itself (unbounded)

Token costs come from the shared token encoder applied to each node's
canonical text projection (see ``tokens.node_token_text``).
"""

import dataclasses
import math
import time
from dataclasses import dataclass, field
from typing import Any, Literal

from codegraph_lite.config import Config
from codegraph_lite.db.graph_protocol import BaseGraphStore
from codegraph_lite.embeddings import EmbeddingService
from codegraph_lite.errors import InvalidArgumentError, NodeNotFoundError
from codegraph_lite.log_config import get_logger
from codegraph_lite.schema import (
    BaseNode,
    ConversationNode,
    MessageNode,
    NodeType,
    Relationship,
    RelationType,
    generate_id,
)
from codegraph_lite.tokens import TiktokenEncoder, TokenEncoder, count_tokens, node_tokens, truncate_to_tokens

log = get_logger("memory")

Role = Literal["user", "assistant", "system"]
_ROLES = ("user", "assistant", "system")

# Node kinds a user query pulls into Working memory
_CONTEXT_TYPES = [NodeType.FILE, NodeType.FUNCTION, NodeType.CLASS, NodeType.PATTERN]
_CONTEXT_PER_QUERY = 5
_RELATED_PER_NODE = 5


@dataclass
class MemoryLayer:
    """Ordered, token-counted collection of nodes.

    Attributes:
        max_tokens: Token budget (``math.inf`` for the unbounded graph layer)
        nodes: Nodes in insertion order
        tokens: Sum of the token costs of ``nodes``
        importance: Node id -> importance score
        costs: Node id -> token cost charged on insert
        order: Node id -> insertion sequence number
    """
    max_tokens: float
    nodes: list[BaseNode] = field(default_factory=list)
    tokens: int = 0
    importance: dict[str, float] = field(default_factory=dict)
    costs: dict[str, int] = field(default_factory=dict)
    order: dict[str, int] = field(default_factory=dict)
    _sequence: int = field(default=0, repr=False)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self.costs

    def __len__(self) -> int:
        return len(self.nodes)

    def add(self, node: BaseNode, cost: int, importance: float) -> None:
        self.nodes.append(node)
        self.tokens += cost
        self.costs[node.id] = cost
        self.importance[node.id] = importance
        self.order[node.id] = self._sequence
        self._sequence += 1

    def remove(self, node_id: str) -> BaseNode | None:
        for i, node in enumerate(self.nodes):
            if node.id == node_id:
                del self.nodes[i]
                self.tokens -= self.costs.pop(node_id, 0)
                self.importance.pop(node_id, None)
                self.order.pop(node_id, None)
                return node
        return None

    def clear(self) -> None:
        self.nodes = []
        self.tokens = 0
        self.importance = {}
        self.costs = {}
        self.order = {}


@dataclass
class MemoryContext:
    active: MemoryLayer
    working: MemoryLayer
    graph: MemoryLayer


def _summarize(node: BaseNode) -> str:
    """One-line summary of a context node."""
    if node.type == NodeType.FILE:
        return f"File: {getattr(node, 'path', node.name)}"
    if node.type in (NodeType.FUNCTION, NodeType.METHOD):
        return f"Function: {node.name} in {getattr(node, 'file_path', '')}"
    if node.type == NodeType.CLASS:
        return f"Class: {node.name} in {getattr(node, 'file_path', '')}"
    if node.type == NodeType.PATTERN:
        return f"Pattern: {node.name} - {getattr(node, 'description', '')}"
    if node.type == NodeType.INSIGHT:
        return f"Insight: {getattr(node, 'description', '')}"
    return f"{node.type.value}: {node.name}"


class MemoryManager:
    """Conversation memory for one session.

    One manager per session; tier state is not shared between managers.

    Example:
        memory = MemoryManager(store, config, embeddings=service)
        memory.start_conversation("session-1")
        memory.add_message("user", "Where is the config loaded?")
        prompt_context = memory.get_context_as_text()
    """

    def __init__(
        self,
        store: BaseGraphStore,
        config: Config | None = None,
        encoder: TokenEncoder | None = None,
        embeddings: EmbeddingService | None = None,
    ):
        """Initialize the memory manager.

        Args:
            store: Graph store holding conversations and code nodes
            config: Budgets and importance settings
            encoder: Token encoder (default: tiktoken)
            embeddings: Optional embedding service for semantic search
        """
        self.store = store
        self.config = config or Config()
        self.encoder = encoder or TiktokenEncoder(self.config.token_encoding)
        self.embeddings = embeddings

        self.active = MemoryLayer(max_tokens=self.config.active_memory_tokens)
        self.working = MemoryLayer(max_tokens=self.config.working_memory_tokens)
        self.graph = MemoryLayer(max_tokens=math.inf)

        self.current_conversation: ConversationNode | None = None
        self.message_history: list[MessageNode] = []
        log.debug(
            f"MemoryManager initialized: active={self.active.max_tokens}, "
            f"working={self.working.max_tokens}, semantic={embeddings is not None}"
        )

    # =========================================================================
    # Conversations
    # =========================================================================

    def start_conversation(self, session_id: str, summary: str | None = None) -> ConversationNode:
        """Create and persist a new conversation; clears Active memory."""
        conversation = ConversationNode(
            name=f"Conversation {time.strftime('%Y-%m-%dT%H:%M:%S')}",
            session_id=session_id,
            summary=summary or "New conversation",
            model=self.config.embedding_model,
        )
        self.store.create_node(conversation)
        self.current_conversation = conversation
        self.active.clear()
        self.message_history = []
        log.info(f"Started conversation {conversation.id} (session={session_id})")
        return conversation

    def add_message(self, role: Role, content: str) -> MessageNode:
        """Persist a message and fold it into memory.

        Writes the Message node with its HAS_MESSAGE and NEXT/PREVIOUS links
        in one transaction, inserts it into Active, embeds it (failures are
        logged) and, for user messages, pulls relevant context into Working.

        Raises:
            InvalidArgumentError: If role is not user, assistant or system
        """
        if role not in _ROLES:
            raise InvalidArgumentError(f"Invalid message role '{role}' (expected user, assistant or system)")
        if self.current_conversation is None:
            self.start_conversation(generate_id("session"))
        conversation = self.current_conversation

        message = MessageNode(
            name=f"{role} message",
            role=role,
            content=content,
            token_count=count_tokens(self.encoder, content),
            conversation_id=conversation.id,
            sequence=len(self.message_history),
        )
        rels = [Relationship(conversation.id, message.id, RelationType.HAS_MESSAGE)]
        if self.message_history:
            previous = self.message_history[-1]
            rels.append(Relationship(previous.id, message.id, RelationType.NEXT))
            rels.append(Relationship(message.id, previous.id, RelationType.PREVIOUS))
        self.store.create_subgraph([message], rels)

        conversation.token_count += message.token_count
        self.store.update_node(conversation.id, {"token_count": conversation.token_count})

        self.message_history.append(message)
        self._add_to_active(message)

        if self.embeddings is not None:
            try:
                self.embeddings.embed_node(message)
            except Exception as e:
                log.warning(f"Failed to embed message {message.id}: {e}")

        if role == "user":
            self._process_user_query(content)
        return message

    def _process_user_query(self, query: str) -> None:
        results = self.search(query, types=_CONTEXT_TYPES, limit=10, include_related=True, threshold=0.7)
        for node in results[:_CONTEXT_PER_QUERY]:
            self._add_to_working(node)

    def load_previous_conversation(self, conversation_id: str, limit: int | None = None) -> None:
        """Switch to a persisted conversation.

        Rebuilds Active from its most recent messages; Working and the
        graph are left untouched.

        Raises:
            NodeNotFoundError: If the conversation does not exist
        """
        conversation = self.store.require_node(conversation_id)
        if conversation.type != NodeType.CONVERSATION:
            raise NodeNotFoundError(conversation_id)

        limit = limit or self.config.history_limit
        pairs = self.store.neighbors(
            conversation_id,
            [RelationType.HAS_MESSAGE],
            direction="outgoing",
            node_types=[NodeType.MESSAGE],
            limit=self.config.max_graph_nodes,
        )
        messages = sorted((node for node, _ in pairs), key=lambda m: (getattr(m, "sequence", 0), m.created_at))

        self.current_conversation = conversation
        self.message_history = messages
        self.active.clear()
        for message in messages[-limit:]:
            self._add_to_active(message)
        log.info(f"Loaded conversation {conversation_id}: {len(messages)} messages, {len(self.active)} active")

    def save_conversation_summary(self, summary: str) -> None:
        if self.current_conversation is None:
            log.debug("No current conversation, summary not saved")
            return
        self.current_conversation.summary = summary
        self.store.update_node(self.current_conversation.id, {"summary": summary or ""})

    # =========================================================================
    # Tiers
    # =========================================================================

    def _truncate_to_budget(self, node: BaseNode) -> tuple[BaseNode, int]:
        """Shrink a message's content until its cost fits the Active budget."""
        budget = int(self.active.max_tokens)
        limit = budget
        cost = node_tokens(self.encoder, node)
        while cost > budget and limit > 0:
            content, _ = truncate_to_tokens(self.encoder, getattr(node, "content", ""), limit)
            node = dataclasses.replace(node, content=content)
            limit -= max(cost - budget, 1)
            cost = node_tokens(self.encoder, node)
        if cost > budget:
            node = dataclasses.replace(node, content="")
            cost = node_tokens(self.encoder, node)
        return node, cost

    def _add_to_active(self, node: BaseNode) -> None:
        cost = node_tokens(self.encoder, node)
        if cost > self.active.max_tokens:
            if not hasattr(node, "content"):
                log.warning(f"Node {node.id} ({cost} tokens) exceeds the active budget, skipped")
                return
            node, truncated = self._truncate_to_budget(node)
            log.info(f"Message {node.id} truncated from {cost} to {truncated} tokens to fit active memory")
            cost = truncated

        while self.active.tokens + cost > self.active.max_tokens and self.active.nodes:
            evicted = self.active.remove(self.active.nodes[0].id)
            log.debug(f"Evicted {evicted.id} from active memory")

        self.active.add(node, cost, 1.0)

    def _add_to_working(self, node: BaseNode) -> None:
        if node.id in self.working:
            current = self.working.importance.get(node.id, 0.0)
            self.working.importance[node.id] = current + self.config.importance_step
            log.trace(f"Reinforced {node.id} in working memory: {self.working.importance[node.id]:.2f}")
            return

        cost = node_tokens(self.encoder, node)
        if cost > self.working.max_tokens:
            log.debug(f"Node {node.id} ({cost} tokens) exceeds the working budget, skipped")
            return

        while self.working.tokens + cost > self.working.max_tokens and self.working.nodes:
            victim = min(
                self.working.nodes,
                key=lambda n: (self.working.importance.get(n.id, 0.0), self.working.order.get(n.id, 0)),
            )
            self.working.remove(victim.id)
            log.debug(f"Evicted {victim.id} from working memory")

        self.working.add(node, cost, self.config.initial_importance)

    def update_node_importance(self, node_id: str, layer: Literal["active", "working"], delta: float) -> None:
        """Adjust a node's importance, clamped to [0, 1]."""
        if layer not in ("active", "working"):
            raise InvalidArgumentError(f"Invalid memory layer '{layer}' (expected active or working)")
        memory = self.active if layer == "active" else self.working
        current = memory.importance.get(node_id, 0.0)
        memory.importance[node_id] = max(0.0, min(1.0, current + delta))

    # =========================================================================
    # Retrieval
    # =========================================================================

    def search(
        self,
        query: str,
        types: list[NodeType] | None = None,
        limit: int = 10,
        depth: int = 2,
        include_related: bool = False,
        threshold: float = 0.7,
    ) -> list[BaseNode]:
        """Hybrid search: semantic results first, then keyword matches.

        Results are deduplicated by id; on collision the semantic hit wins.
        If semantic search fails the keyword results are returned alone.

        Args:
            query: Search text
            types: Node types to search
            limit: Maximum direct results
            depth: Expansion depth when include_related is set
            include_related: Append nodes related to the direct results
            threshold: Minimum semantic similarity

        Returns:
            Direct results followed by related nodes
        """
        results: dict[str, BaseNode] = {}

        if self.embeddings is not None:
            try:
                for hit in self.embeddings.semantic_search(query, types=types, limit=limit * 2, threshold=threshold):
                    results.setdefault(hit.node.id, hit.node)
            except Exception as e:
                log.warning(f"Semantic search failed, using keyword results only: {e}")

        for node in self.store.search_nodes(query, types, limit):
            results.setdefault(node.id, node)

        combined = list(results.values())[:limit]

        if include_related and depth > 0:
            seen = {node.id for node in combined}
            related: list[BaseNode] = []
            for node in list(combined):
                for other in self.store.find_related_nodes(node.id, [], depth, _RELATED_PER_NODE):
                    if other.id not in seen and len(seen) < self.config.max_graph_nodes:
                        seen.add(other.id)
                        related.append(other)
            combined.extend(related)

        log.debug(f"Memory search '{query[:50]}': {len(combined)} results")
        return combined

    def get_context(self) -> MemoryContext:
        return MemoryContext(active=self.active, working=self.working, graph=self.graph)

    def get_context_as_text(self) -> str:
        """Active messages in order, then one-line Working summaries."""
        parts: list[str] = []
        if self.active.nodes:
            parts.append("=== Recent Conversation ===")
            for node in self.active.nodes:
                if node.type == NodeType.MESSAGE:
                    parts.append(f"{node.role}: {node.content}")
        if self.working.nodes:
            parts.append("\n=== Relevant Context ===")
            parts.extend(_summarize(node) for node in self.working.nodes)
        return "\n".join(parts)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "active_memory": {
                "nodes": len(self.active),
                "tokens": self.active.tokens,
                "max_tokens": self.active.max_tokens,
            },
            "working_memory": {
                "nodes": len(self.working),
                "tokens": self.working.tokens,
                "max_tokens": self.working.max_tokens,
            },
            "current_conversation": self.current_conversation.id if self.current_conversation else None,
            "message_history": len(self.message_history),
        }

    def cleanup(self) -> None:
        """Release the encoder and the embedding client."""
        self.encoder.close()
        if self.embeddings is not None:
            self.embeddings.close()
        log.debug("MemoryManager resources released")


__all__ = ["MemoryManager", "MemoryLayer", "MemoryContext", "Role"]
