"""Narrow entry points used by the CLI and the web API."""

from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator, List

from opencontext.citation import build_citation, markdown_link
from opencontext.config import AppConfig
from opencontext.content.store import FileContentStore
from opencontext.embedding.client import EmbeddingClient
from opencontext.errors import DocumentVanished
from opencontext.index.indexer import Indexer
from opencontext.index.search import Searcher
from opencontext.index.storage import IndexStore
from opencontext.ingestion.markdown import MarkdownChunker
from opencontext.models import DocumentRecord, IndexStatus, ProgressEvent, SearchResult

LOGGER = logging.getLogger(__name__)

_FINISHED = object()


class IndexService:
    """Wires content store, embedder, index store, indexer and searcher together."""

    def __init__(
        self,
        content_store: FileContentStore,
        embedder: EmbeddingClient,
        store: IndexStore,
        *,
        chunker: MarkdownChunker | None = None,
        config: AppConfig | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.content_store = content_store
        self.embedder = embedder
        self.store = store
        self.indexer = Indexer(content_store, embedder, store, chunker)
        self.searcher = Searcher(
            store,
            embedder,
            self.config.search,
            resolver=content_store.resolve_by_stable_id,
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> "IndexService":
        return cls(
            FileContentStore(config.contexts_root, config.registry_path),
            EmbeddingClient(config.embedding),
            IndexStore(config.index_dir),
            chunker=MarkdownChunker(max_chars=config.chunk_chars, overlap=config.overlap),
            config=config,
        )

    def close(self) -> None:
        self.embedder.close()
        self.content_store.close()

    def build_index(self, scope: str | None = None, force: bool = False) -> Iterator[ProgressEvent]:
        """Start a build and return an iterator over its progress events.

        The build lock is taken before this returns, so a concurrent build
        fails here rather than on first iteration. Closing the iterator
        early cancels the build.
        """
        lock = self.store.acquire_build_lock()
        events: "queue.Queue[object]" = queue.Queue()
        cancel = threading.Event()

        def worker() -> None:
            try:
                self.indexer.run(scope, force=force, observer=events.put, cancel=cancel)
            except Exception as exc:
                events.put(exc)
            finally:
                lock.release()
                events.put(_FINISHED)

        thread = threading.Thread(target=worker, name="oc-index-build", daemon=True)
        thread.start()
        return self._relay(events, cancel, thread)

    @staticmethod
    def _relay(
        events: "queue.Queue[object]",
        cancel: threading.Event,
        thread: threading.Thread,
    ) -> Iterator[ProgressEvent]:
        try:
            while True:
                item = events.get()
                if item is _FINISHED:
                    return
                if isinstance(item, BaseException):
                    raise item
                yield item  # type: ignore[misc]
        finally:
            if thread.is_alive():
                LOGGER.info("Build consumer went away; cancelling build")
                cancel.set()
                thread.join()

    def clean_index(self) -> None:
        with self.store.acquire_build_lock():
            self.store.remove()

    def get_index_status(self) -> IndexStatus:
        return self.store.stats()

    def search(
        self,
        query: str,
        *,
        limit: int | None = None,
        mode: str = "hybrid",
        aggregate_by: str = "content",
        doc_type: str | None = None,
    ) -> List[SearchResult]:
        return self.searcher.search(query, limit=limit, mode=mode, aggregate_by=aggregate_by, doc_type=doc_type)

    def manifest(self, folder: str | None = None, limit: int | None = None) -> List[dict]:
        """List the documents under ``folder``, most recently updated first.

        Reads the content store directly, so it works before any index has
        been built.
        """
        if limit is not None and limit <= 0:
            raise ValueError("limit must be positive")
        scope = None if folder is None or folder.strip("/") in ("", ".") else folder
        documents = sorted(
            self.content_store.list_documents(scope),
            key=lambda document: (-document.updated_at, document.rel_path),
        )
        if limit is not None:
            documents = documents[:limit]
        return [
            {
                "stable_id": document.stable_id,
                "rel_path": document.rel_path,
                "abs_path": str(self.content_store.root / document.rel_path),
                "description": document.description,
                "doc_type": document.doc_type,
                "updated_at": document.updated_at,
                "citation": build_citation(document.stable_id),
            }
            for document in documents
        ]

    def resolve(self, stable_id: str) -> DocumentRecord:
        self.content_store.sync()
        return self.content_store.get_document(stable_id)

    def get_link(self, rel_path: str, label: str | None = None) -> dict:
        try:
            document = self.content_store.get_document_by_path(rel_path)
        except ValueError as exc:
            raise DocumentVanished(str(exc), rel_path=rel_path) from exc
        label = label or document.display_name
        return {
            "stable_id": document.stable_id,
            "file_path": document.rel_path,
            "citation": build_citation(document.stable_id),
            "markdown": markdown_link(label, document.stable_id),
        }
