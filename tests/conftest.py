"""Shared fixtures: an offline hashing embedder and a temporary knowledge base."""

from __future__ import annotations

import hashlib
import threading
from pathlib import Path
from typing import Dict, List, Sequence

import numpy as np
import pytest

from opencontext.config import AppConfig
from opencontext.content.store import FileContentStore
from opencontext.embedding.client import EmbeddingClient, EmbeddingConfig
from opencontext.index.indexer import Indexer
from opencontext.index.search import Searcher
from opencontext.index.service import IndexService
from opencontext.index.storage import IndexStore
from opencontext.ingestion.markdown import MarkdownChunker
from opencontext.utils.text import tokenize

DIMENSION = 64


class HashingBackend:
    """Deterministic bag-of-words embedder; texts sharing words get similar vectors."""

    def __init__(self, model_id: str = "hash-64", dimension: int = DIMENSION) -> None:
        self.model_id = model_id
        self.dimension = dimension
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        with self._lock:
            self.calls.append(list(texts))
        rows = []
        for text in texts:
            vector = np.zeros(self.dimension, dtype="float32")
            for token in tokenize(text) or ["empty"]:
                digest = hashlib.md5(token.encode("utf-8")).digest()
                vector[digest[0] % self.dimension] += 1.0
            rows.append(vector / np.linalg.norm(vector))
        return np.vstack(rows)

    @property
    def embedded_texts(self) -> List[str]:
        return [text for batch in self.calls for text in batch]

    def close(self) -> None:
        return None


class TableBackend:
    """Returns preset vectors keyed by exact input text."""

    def __init__(self, vectors: Dict[str, Sequence[float]], model_id: str = "table") -> None:
        self.model_id = model_id
        self.vectors = vectors

    def embed_batch(self, texts: Sequence[str]) -> np.ndarray:
        return np.asarray([self.vectors[text] for text in texts], dtype="float32")

    def close(self) -> None:
        return None


@pytest.fixture
def backend() -> HashingBackend:
    return HashingBackend()


@pytest.fixture
def embedder(backend: HashingBackend) -> EmbeddingClient:
    return EmbeddingClient(EmbeddingConfig(batch_size=4, concurrency=2), backend=backend, sleep=lambda _: None)


@pytest.fixture
def content_store(tmp_path: Path) -> FileContentStore:
    store = FileContentStore(tmp_path / "contexts", tmp_path / "registry.db")
    yield store
    store.close()


@pytest.fixture
def index_store(tmp_path: Path) -> IndexStore:
    return IndexStore(tmp_path / "index")


@pytest.fixture
def indexer(content_store: FileContentStore, embedder: EmbeddingClient, index_store: IndexStore) -> Indexer:
    return Indexer(content_store, embedder, index_store, MarkdownChunker(max_chars=400, overlap=50))


@pytest.fixture
def searcher(index_store: IndexStore, embedder: EmbeddingClient, content_store: FileContentStore) -> Searcher:
    return Searcher(index_store, embedder, resolver=content_store.resolve_by_stable_id)


@pytest.fixture
def service(
    tmp_path: Path,
    content_store: FileContentStore,
    embedder: EmbeddingClient,
    index_store: IndexStore,
) -> IndexService:
    config = AppConfig(home=tmp_path)
    return IndexService(
        content_store,
        embedder,
        index_store,
        chunker=MarkdownChunker(max_chars=400, overlap=50),
        config=config,
    )


@pytest.fixture
def sample_docs(content_store: FileContentStore) -> Dict[str, str]:
    """A small corpus; returns rel_path -> stable_id."""
    docs = {
        "notes/plan.md": (
            "# Plan\n\n## Goals\n\nShip the search feature this quarter.\n\n"
            "## Risks\n\nThe main risk is embedding cost and the risk of API outages.\n"
        ),
        "notes/meeting.md": "# Meeting\n\nWe talked about lunch options and the office move.\n",
        "guide.md": "# Guide\n\n## Install\n\nRun the installer and restart.\n",
        "projects/alpha/readme.md": "# Alpha\n\nAlpha project tracks the quarterly roadmap.\n",
    }
    return {
        rel_path: content_store.create_document(rel_path, text).stable_id
        for rel_path, text in docs.items()
    }
