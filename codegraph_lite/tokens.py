"""Token accounting for CodeGraph Lite.

Wraps tiktoken behind a small encoder protocol so the memory manager and
the embedding gateway share a single, deterministic truncation algorithm.
"""

from typing import TYPE_CHECKING, Protocol, runtime_checkable

import orjson

from codegraph_lite.log_config import get_logger
from codegraph_lite.schema import BaseNode, NodeType

if TYPE_CHECKING:
    import tiktoken

log = get_logger("tokens")


@runtime_checkable
class TokenEncoder(Protocol):
    """Text to token-id encoder."""

    def encode(self, text: str) -> list[int]:
        ...

    def decode(self, tokens: list[int]) -> str:
        ...

    def close(self) -> None:
        """Release encoder buffers."""
        ...


class TiktokenEncoder:
    """TokenEncoder backed by tiktoken.

    The encoding is loaded lazily on first use and dropped by close(),
    after which the next call loads it again.
    """

    def __init__(self, encoding_name: str = "cl100k_base"):
        self.encoding_name = encoding_name
        self._encoding: "tiktoken.Encoding | None" = None

    def _get_encoding(self) -> "tiktoken.Encoding":
        if self._encoding is None:
            import tiktoken

            log.debug(f"Loading tiktoken encoding: {self.encoding_name}")
            self._encoding = tiktoken.get_encoding(self.encoding_name)
        return self._encoding

    def encode(self, text: str) -> list[int]:
        # disallowed_special=() so literal "<|endoftext|>" in source files encodes as text
        return self._get_encoding().encode(text, disallowed_special=())

    def decode(self, tokens: list[int]) -> str:
        return self._get_encoding().decode(tokens)

    def close(self) -> None:
        if self._encoding is not None:
            log.debug(f"Releasing tiktoken encoding: {self.encoding_name}")
        self._encoding = None


def count_tokens(encoder: TokenEncoder, text: str) -> int:
    """Number of tokens in text."""
    if not text:
        return 0
    return len(encoder.encode(text))


def truncate_to_tokens(encoder: TokenEncoder, text: str, max_tokens: int) -> tuple[str, int]:
    """Truncate text to at most max_tokens tokens.

    Encodes, keeps the first max_tokens ids and decodes them back.

    Args:
        encoder: Token encoder
        text: Input text
        max_tokens: Token limit

    Returns:
        (possibly truncated text, token count of the returned text)
    """
    tokens = encoder.encode(text)
    if len(tokens) <= max_tokens:
        return text, len(tokens)
    kept = tokens[:max(max_tokens, 0)]
    log.debug(f"Truncating text from {len(tokens)} to {len(kept)} tokens")
    return encoder.decode(kept), len(kept)


def node_token_text(node: BaseNode) -> str:
    """Canonical text projection of a node for token accounting.

    File: content. Function/Method: signature followed by body.
    Message: content. Anything else: compact JSON of its properties
    without the embedding.
    """
    if node.type == NodeType.FILE:
        return getattr(node, "content", "") or ""
    if node.type in (NodeType.FUNCTION, NodeType.METHOD):
        return f"{getattr(node, 'signature', '')}{getattr(node, 'body', '')}"
    if node.type == NodeType.MESSAGE:
        return getattr(node, "content", "") or ""
    return orjson.dumps(node.to_properties(include_embedding=False)).decode()


def node_tokens(encoder: TokenEncoder, node: BaseNode) -> int:
    """Token cost of a node."""
    return count_tokens(encoder, node_token_text(node))


__all__ = [
    "TokenEncoder",
    "TiktokenEncoder",
    "count_tokens",
    "truncate_to_tokens",
    "node_token_text",
    "node_tokens",
]
