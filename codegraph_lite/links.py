"""Wiki-links, tags and backlinks for CodeGraph Lite.

Notes and messages can reference code with ``[[file#section]]`` links and
carry ``#tags``. Links become REFERENCES edges (creating a Concept node
when the target is unknown); tags become shared Tag nodes reached through
TAGGED_WITH edges.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

import orjson

from codegraph_lite.db.graph_protocol import BaseGraphStore
from codegraph_lite.embeddings import EmbeddingService
from codegraph_lite.log_config import get_logger
from codegraph_lite.schema import BaseNode, ConceptNode, NodeType, Relationship, RelationType, TagNode

log = get_logger("links")

_WIKI_LINK = re.compile(r"\[\[([^\]]+)\]\]")
_TAG = re.compile(r"(?<![\w&#])#(\w+)")

_BACKLINK_TYPES = [RelationType.REFERENCES, RelationType.RELATES_TO, RelationType.CALLS, RelationType.IMPORTS]
_FORWARD_TYPES = [RelationType.REFERENCES, RelationType.RELATES_TO]
_CONTEXT_CHARS = 200
_LINK_LIMIT = 1000


@dataclass
class WikiLink:
    """Parsed ``[[file#section]]`` link."""
    link: str
    file: str | None = None
    section: str | None = None
    target: str | None = None


@dataclass
class Tag:
    name: str
    count: int
    nodes: list[str] = field(default_factory=list)


@dataclass
class Backlink:
    source: BaseNode
    relation: RelationType
    context: str
    line: int | None = None


def extract_wiki_links(content: str) -> list[WikiLink]:
    links = []
    for match in _WIKI_LINK.finditer(content):
        link = match.group(1)
        file_part, _, section = link.partition("#")
        links.append(WikiLink(link=link, file=file_part.strip() or None, section=section.strip() or None))
    return links


def extract_tags(content: str) -> list[str]:
    """Unique ``#tag`` names in order of first appearance."""
    return list(dict.fromkeys(_TAG.findall(content)))


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def _context(node: BaseNode) -> str:
    if node.type == NodeType.FILE:
        return (getattr(node, "content", "") or "")[:_CONTEXT_CHARS] or getattr(node, "path", "")
    if node.type in (NodeType.FUNCTION, NodeType.METHOD):
        return getattr(node, "signature", "") or node.name
    return node.name or node.id


class LinkManager:
    """Wiki-link, tag and backlink operations over the graph store."""

    def __init__(self, store: BaseGraphStore, embeddings: EmbeddingService | None = None):
        self.store = store
        self.embeddings = embeddings

    def _resolve(self, link: WikiLink) -> BaseNode | None:
        if link.file:
            exact = self.store.find_nodes_by_property(NodeType.FILE, "path", link.file, limit=1)
            if exact:
                return exact[0]
            found = self.store.search_nodes(link.file, [NodeType.FILE], 1)
            if found:
                return found[0]
        if link.section:
            found = self.store.search_nodes(link.section, [NodeType.FUNCTION, NodeType.CLASS, NodeType.CONCEPT], 1)
            if found:
                return found[0]
        return None

    def process_wiki_links(self, node_id: str, content: str) -> list[WikiLink]:
        """Create REFERENCES edges for every ``[[link]]`` in content.

        Unresolvable targets become Concept nodes.

        Raises:
            NodeNotFoundError: If the source node does not exist
        """
        self.store.require_node(node_id)
        links = extract_wiki_links(content)
        for link in links:
            target = self._resolve(link)
            concept = None
            if target is None:
                concept = target = ConceptNode(
                    name=link.link,
                    description=f"Concept referenced in wiki link: {link.link}",
                    domain="user-defined",
                    metadata={"related_files": [node_id]},
                )

            rel = Relationship(
                node_id,
                target.id,
                RelationType.REFERENCES,
                properties={"link_type": "wiki", "original_text": f"[[{link.link}]]"},
            )
            if concept is None:
                self.store.create_relationship(rel)
            else:
                # Concept and its edge land together or not at all
                self.store.create_subgraph([concept], [rel])
                log.debug(f"Created concept {concept.id} for [[{link.link}]]")
                if self.embeddings is not None:
                    try:
                        self.embeddings.embed_node(concept)
                    except Exception as e:
                        log.warning(f"Failed to embed concept {concept.id}: {e}")
            link.target = target.id
        return links

    def _find_or_create_tag(self, name: str) -> TagNode:
        existing = self.store.find_nodes_by_property(NodeType.TAG, "name", name, limit=1)
        if existing:
            tag = existing[0]
            tag.usage_count = getattr(tag, "usage_count", 0) + 1
            self.store.update_node(tag.id, {"usage_count": tag.usage_count})
            return tag
        tag = TagNode(name=name, usage_count=1)
        self.store.create_node(tag)
        return tag

    def process_tags(self, node_id: str, content: str) -> list[str]:
        """Attach ``#tags`` in content to the node via TAGGED_WITH."""
        self.store.require_node(node_id)
        tags = extract_tags(content)
        for name in tags:
            tag = self._find_or_create_tag(name)
            self.store.create_relationship(Relationship(node_id, tag.id, RelationType.TAGGED_WITH))
        log.debug(f"Tagged {node_id} with {len(tags)} tags")
        return tags

    def get_backlinks(self, node_id: str) -> list[Backlink]:
        """Nodes that reference, relate to, call or import the node.

        Raises:
            NodeNotFoundError: If the node does not exist
        """
        self.store.require_node(node_id)
        pairs = self.store.neighbors(node_id, _BACKLINK_TYPES, direction="incoming", limit=_LINK_LIMIT)
        return [
            Backlink(source=node, relation=rel.type, context=_context(node), line=rel.properties.get("line"))
            for node, rel in pairs
        ]

    def get_forward_links(self, node_id: str) -> list[BaseNode]:
        pairs = self.store.neighbors(node_id, _FORWARD_TYPES, direction="outgoing", limit=_LINK_LIMIT)
        return [node for node, _ in pairs]

    def get_all_tags(self) -> list[Tag]:
        tags = []
        for tag_node in self.store.find_nodes_by_type(NodeType.TAG, _LINK_LIMIT):
            tagged = self.store.neighbors(tag_node.id, [RelationType.TAGGED_WITH], direction="incoming", limit=_LINK_LIMIT)
            tags.append(Tag(name=tag_node.name, count=len(tagged), nodes=[node.id for node, _ in tagged]))
        return sorted(tags, key=lambda t: t.count, reverse=True)

    def get_nodes_by_tag(self, tag_name: str) -> list[BaseNode]:
        found = self.store.find_nodes_by_property(NodeType.TAG, "name", tag_name.lstrip("#"), limit=1)
        if not found:
            return []
        pairs = self.store.neighbors(found[0].id, [RelationType.TAGGED_WITH], direction="incoming", limit=_LINK_LIMIT)
        return [node for node, _ in pairs]

    def export_to_markdown(self, node_id: str) -> str:
        """Render a node, its backlinks and forward links as Markdown.

        Raises:
            NodeNotFoundError: If the node does not exist
        """
        node = self.store.require_node(node_id)
        lines = [
            f"# {node.name}",
            "",
            f"Type: {node.type.value}",
            f"Created: {_iso(node.created_at)}",
            f"Updated: {_iso(node.updated_at)}",
            "",
        ]
        if node.metadata:
            lines += ["## Metadata", "", "```json", orjson.dumps(node.metadata, option=orjson.OPT_INDENT_2).decode(), "```", ""]

        if node.type == NodeType.FILE:
            lines += [
                "## File Information",
                "",
                f"- Path: {node.path}",
                f"- Language: {node.language}",
                f"- Size: {node.size} bytes",
                f"- Lines: {node.lines}",
                "",
            ]
            if node.content:
                lines += ["## Content", "", f"```{node.language.lower()}", node.content, "```", ""]
        elif node.type in (NodeType.FUNCTION, NodeType.METHOD):
            lines += ["## Function Signature", "", "```", node.signature, "```", ""]
            lines += ["## Implementation", "", "```", node.body, "```", ""]
        elif node.type == NodeType.CLASS:
            lines += ["## Class Information", "", f"- Abstract: {node.abstract}"]
            if node.extends:
                lines.append(f"- Extends: {node.extends}")
            if node.implements:
                lines.append(f"- Implements: {', '.join(node.implements)}")
            lines += ["", "### Methods", ""] + [f"- {m}" for m in node.methods]
            lines += ["", "### Properties", ""] + [f"- {p}" for p in node.properties] + [""]

        backlinks = self.get_backlinks(node_id)
        if backlinks:
            lines += ["## Backlinks", ""] + [f"- [[{b.source.name}]]: {b.context}" for b in backlinks] + [""]

        forward = self.get_forward_links(node_id)
        if forward:
            lines += ["## Links", ""] + [f"- [[{n.name}]]" for n in forward] + [""]

        return "\n".join(lines)


__all__ = ["LinkManager", "WikiLink", "Tag", "Backlink", "extract_tags", "extract_wiki_links"]
