"""Shared pytest fixtures for CodeGraph Lite tests."""

from __future__ import annotations

import copy

import pytest

from codegraph_lite.ast_parser import Declaration
from codegraph_lite.config import Config
from codegraph_lite.db.embedded_backend import EmbeddedGraphStore


class WordEncoder:
    """Deterministic token encoder: one token per whitespace-separated word."""

    def __init__(self):
        self._ids: dict[str, int] = {}
        self._words: list[str] = []
        self.closed = False

    def encode(self, text: str) -> list[int]:
        tokens = []
        for word in text.split():
            if word not in self._ids:
                self._ids[word] = len(self._words)
                self._words.append(word)
            tokens.append(self._ids[word])
        return tokens

    def decode(self, tokens: list[int]) -> str:
        return " ".join(self._words[t] for t in tokens)

    def close(self) -> None:
        self.closed = True


# Keyword axes of the fake embedding space
EMBED_VOCAB = ("config", "parse", "database", "render", "user", "cache", "auth", "graph")


def keyword_vector(text: str) -> list[float]:
    """Bag-of-keyword vector plus a small constant axis."""
    lowered = text.lower()
    return [float(lowered.count(word)) for word in EMBED_VOCAB] + [0.01]


class FakeParser:
    """SourceParser returning declarations registered per file content."""

    def __init__(self, languages: tuple[str, ...] = ("python", "javascript", "typescript", "tsx")):
        self.languages = set(languages)
        self.declarations: dict[str, list[Declaration]] = {}
        self.calls: list[tuple[str, str]] = []

    def register(self, content: str, declarations: list[Declaration]) -> str:
        self.declarations[content] = declarations
        return content

    def supports(self, language: str) -> bool:
        return language in self.languages

    def parse(self, content: str, language: str) -> list[Declaration]:
        self.calls.append((content, language))
        if content.startswith("SYNTAX ERROR"):
            raise SyntaxError("unexpected token")
        return copy.deepcopy(self.declarations.get(content, []))


@pytest.fixture
def store():
    """Fresh in-memory embedded graph store."""
    graph_store = EmbeddedGraphStore()
    yield graph_store
    graph_store.close()


@pytest.fixture
def encoder():
    return WordEncoder()


@pytest.fixture
def embed_fn():
    """Fake embedding provider recording every batch it receives."""
    batches: list[list[str]] = []

    def _embed(texts: list[str]) -> list[list[float]]:
        batches.append(list(texts))
        return [keyword_vector(text) for text in texts]

    _embed.batches = batches
    return _embed


@pytest.fixture
def fake_parser():
    return FakeParser()


@pytest.fixture
def config(tmp_path):
    """Config isolated from the environment's data dir and persistence file."""
    return Config(
        data_dir=tmp_path / "data",
        graph_backend="embedded",
        embedded_graph_file="",
        active_memory_tokens=50,
        working_memory_tokens=100,
        batch_size=2,
    )
