"""Document indexing pipeline: chunk, diff, embed, store."""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

import numpy as np

from opencontext.content.store import ContentStore, in_scope
from opencontext.embedding.client import EmbeddingClient
from opencontext.errors import BuildCancelled, DocumentVanished
from opencontext.index.storage import Generation, IndexStore
from opencontext.ingestion.markdown import MarkdownChunker, embedding_input
from opencontext.models import Chunk, DocumentRecord, ProgressEvent

LOGGER = logging.getLogger(__name__)

ProgressObserver = Callable[[ProgressEvent], None]


@dataclass(slots=True)
class IndexStats:
    documents: int = 0
    chunks: int = 0
    embedded: int = 0
    reused: int = 0
    dropped: int = 0
    vanished: int = 0
    failed: int = 0
    committed: bool = False
    total_chunks: int = 0
    last_updated: str | None = None


class Indexer:
    """Coordinates incremental indexing of the content store."""

    def __init__(
        self,
        content_store: ContentStore,
        embedder: EmbeddingClient,
        store: IndexStore,
        chunker: MarkdownChunker | None = None,
    ) -> None:
        self.content_store = content_store
        self.embedder = embedder
        self.store = store
        self.chunker = chunker or MarkdownChunker()

    def build(
        self,
        scope: str | None = None,
        *,
        force: bool = False,
        observer: ProgressObserver | None = None,
        cancel: threading.Event | None = None,
    ) -> IndexStats:
        """Build or update the index; raises ``ConcurrentBuildRejected`` if one is running."""
        with self.store.acquire_build_lock():
            return self.run(scope, force=force, observer=observer, cancel=cancel)

    def run(
        self,
        scope: str | None = None,
        *,
        force: bool = False,
        observer: ProgressObserver | None = None,
        cancel: threading.Event | None = None,
    ) -> IndexStats:
        """Run a build; the caller must already hold the build lock."""

        def emit(phase: str, current: int, total: int, message: str = "", **extra) -> None:
            if observer is not None:
                observer(ProgressEvent(phase, current, total, message, **extra))

        def check_cancel() -> None:
            if cancel is not None and cancel.is_set():
                raise BuildCancelled()

        stats = IndexStats()
        previous = self.store.load_or_none()
        model = self.embedder.model_id
        if previous is not None and previous.model != model and not force:
            LOGGER.info("Embedding model changed (%s -> %s); forcing full rebuild", previous.model, model)
            force = True

        corpus = {doc.stable_id: doc for doc in self.content_store.list_documents()}
        targets = sorted(
            (doc for doc in corpus.values() if in_scope(doc.rel_path, scope)),
            key=lambda doc: doc.rel_path,
        )
        stats.documents = len(targets)
        check_cancel()

        # chunking
        LOGGER.info("Chunking %d document(s)", len(targets))
        chunked: Dict[str, List[Chunk]] = {}
        for position, document in enumerate(targets, start=1):
            try:
                text = self.content_store.get_content(document.rel_path)
            except DocumentVanished:
                LOGGER.warning("Document %s vanished before chunking; dropping it", document.rel_path)
                stats.vanished += 1
                continue
            except (UnicodeDecodeError, OSError) as exc:
                LOGGER.error("Failed to read %s: %s; skipping it", document.rel_path, exc)
                stats.failed += 1
                continue
            chunked[document.stable_id] = list(self.chunker.chunk(document, text))
            emit("chunking", position, len(targets), document.rel_path)
        if not targets:
            emit("chunking", 0, 0, "No documents in scope")

        reusable: Dict[Tuple[str, str], np.ndarray] = {}
        if previous is not None and not force:
            for chunk in previous.chunks:
                reusable[(chunk.stable_id, chunk.content_hash)] = chunk.vector

        final: Dict[str, List[Chunk]] = {}
        queue: List[Tuple[str, int]] = []
        for stable_id, chunks in chunked.items():
            resolved: List[Chunk] = []
            for chunk in chunks:
                vector = reusable.get((stable_id, chunk.content_hash))
                if vector is None:
                    queue.append((stable_id, len(resolved)))
                else:
                    chunk = dataclasses.replace(chunk, vector=vector)
                    stats.reused += 1
                resolved.append(chunk)
            final[stable_id] = resolved

        if previous is not None:
            for stable_id in sorted(previous.documents):
                if stable_id in chunked:
                    continue
                if stable_id not in corpus:
                    stats.dropped += 1
                    LOGGER.info(
                        "Dropping %d chunk(s) of deleted document %s",
                        len(previous.chunks_for(stable_id)),
                        previous.documents[stable_id].rel_path,
                    )
                    continue
                if in_scope(corpus[stable_id].rel_path, scope):
                    # vanished or unreadable during chunking
                    continue
                if force:
                    # a forced rebuild cannot carry vectors from another model
                    final[stable_id] = []
                    for chunk in previous.chunks_for(stable_id):
                        queue.append((stable_id, len(final[stable_id])))
                        final[stable_id].append(dataclasses.replace(chunk, vector=None))
                    continue
                final[stable_id] = previous.chunks_for(stable_id)

        documents = {stable_id: corpus[stable_id] for stable_id in final}
        stats.chunks = sum(len(chunks) for chunks in final.values())
        check_cancel()

        if not queue and previous is not None and self._unchanged(previous, documents, final):
            LOGGER.info("Index is up to date; nothing to commit")
            emit("embedding", 0, 0, "Nothing to embed")
            emit("storing", 0, 0, "Index unchanged")
            stats.total_chunks = previous.total_chunks
            stats.last_updated = previous.last_updated
            emit(
                "done",
                previous.total_chunks,
                previous.total_chunks,
                "Index unchanged",
                total_chunks=previous.total_chunks,
                last_updated=previous.last_updated,
            )
            return stats

        # embedding
        ordered = sorted(queue, key=lambda item: (documents[item[0]].rel_path, item[1]))
        texts = [
            embedding_input(final[stable_id][pos].heading_path, final[stable_id][pos].text)
            for stable_id, pos in ordered
        ]
        LOGGER.info("Embedding %d chunk(s) (%d reused)", len(texts), stats.reused)
        emit("embedding", 0, len(texts), f"Embedding {len(texts)} chunk(s)")
        if texts:
            vectors = self.embedder.embed(
                texts,
                on_progress=lambda done, total: emit("embedding", done, total),
                cancel=cancel,
            )
            self._assign(final, ordered, vectors)
            stats.embedded = len(texts)
            resized = previous is not None and previous.dimension and vectors.shape[1] != previous.dimension
            if resized and not force:
                LOGGER.info(
                    "Embedding dimension changed (%d -> %d); re-embedding reused chunks",
                    previous.dimension,
                    vectors.shape[1],
                )
                force = True
                stats.embedded += self._reembed_stale(final, documents, vectors.shape[1], len(texts), emit, cancel)
                stats.reused = 0
        check_cancel()

        # storing
        live = sorted(final, key=lambda sid: documents[sid].rel_path)
        vanished = [stable_id for stable_id in live if not self.content_store.exists(stable_id)]
        for stable_id in vanished:
            LOGGER.warning("Document %s vanished during the build; dropping it", documents[stable_id].rel_path)
            stats.vanished += 1
            live.remove(stable_id)

        total = sum(len(final[stable_id]) for stable_id in live)
        dimension = previous.dimension if previous is not None and not force else 0
        emit("storing", 0, total, f"Writing {total} chunk(s)")
        with self.store.begin_build(model=model, dimension=dimension) as handle:
            for stable_id in live:
                handle.put_document(documents[stable_id])
                for chunk in final[stable_id]:
                    handle.put_chunk(chunk)
                emit("storing", handle.chunk_count, total, documents[stable_id].rel_path)
                check_cancel()
            generation = handle.commit()

        stats.committed = True
        stats.chunks = total
        stats.total_chunks = generation.total_chunks
        stats.last_updated = generation.last_updated
        emit(
            "done",
            generation.total_chunks,
            generation.total_chunks,
            "Index updated",
            total_chunks=generation.total_chunks,
            last_updated=generation.last_updated,
        )
        return stats

    @staticmethod
    def _assign(
        final: Dict[str, List[Chunk]],
        positions: List[Tuple[str, int]],
        vectors: np.ndarray,
    ) -> None:
        for (stable_id, pos), vector in zip(positions, vectors):
            final[stable_id][pos] = dataclasses.replace(final[stable_id][pos], vector=vector)

    def _reembed_stale(
        self,
        final: Dict[str, List[Chunk]],
        documents: Dict[str, DocumentRecord],
        dimension: int,
        offset: int,
        emit: Callable[..., None],
        cancel: threading.Event | None,
    ) -> int:
        """Re-embed reused chunks whose vectors no longer match ``dimension``."""
        stale = [
            (stable_id, pos)
            for stable_id in sorted(final, key=lambda sid: documents[sid].rel_path)
            for pos, chunk in enumerate(final[stable_id])
            if chunk.vector is not None and np.asarray(chunk.vector).shape[0] != dimension
        ]
        if not stale:
            return 0
        texts = [embedding_input(final[sid][pos].heading_path, final[sid][pos].text) for sid, pos in stale]
        vectors = self.embedder.embed(
            texts,
            on_progress=lambda done, total: emit("embedding", offset + done, offset + total),
            cancel=cancel,
        )
        self._assign(final, stale, vectors)
        return len(stale)

    @staticmethod
    def _unchanged(
        previous: Generation,
        documents: Dict[str, DocumentRecord],
        final: Dict[str, List[Chunk]],
    ) -> bool:
        if documents != previous.documents:
            return False
        current = sorted((chunk for chunks in final.values() for chunk in chunks), key=lambda c: c.chunk_id)
        return current == sorted(previous.chunks, key=lambda c: c.chunk_id)
