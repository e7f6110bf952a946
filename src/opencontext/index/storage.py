"""Generation-based SQLite index store.

Each build writes a complete SQLite file under ``generations/``. Readers find
the current one through ``manifest.json``, which is replaced atomically only
after the new file is fully written, so a reader sees either the previous
generation or the next one, never a partial one.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Sequence

import numpy as np

from opencontext.errors import ConcurrentBuildRejected, IndexNotAvailable
from opencontext.models import Chunk, DocumentRecord, IndexStatus

LOGGER = logging.getLogger(__name__)

MANIFEST = "manifest.json"
GENERATIONS_DIR = "generations"
LOCK_FILE = "build.lock"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass(slots=True)
class Generation:
    """One committed, read-only snapshot of the index."""

    generation_id: str
    model: str
    dimension: int
    last_updated: str
    documents: Dict[str, DocumentRecord]
    chunks: List[Chunk]
    matrix: np.ndarray = field(repr=False)

    @property
    def total_chunks(self) -> int:
        return len(self.chunks)

    def chunks_for(self, stable_id: str) -> List[Chunk]:
        return [chunk for chunk in self.chunks if chunk.stable_id == stable_id]


def _connect(path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS documents (
            stable_id TEXT PRIMARY KEY,
            rel_path TEXT NOT NULL,
            description TEXT,
            doc_type TEXT NOT NULL,
            updated_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS chunks (
            chunk_id TEXT PRIMARY KEY,
            stable_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            heading_path TEXT NOT NULL,
            text TEXT NOT NULL,
            content_hash TEXT NOT NULL,
            tokens TEXT NOT NULL,
            line_start INTEGER,
            line_end INTEGER,
            entry_id TEXT,
            entry_date TEXT,
            entry_created_at TEXT,
            embedding BLOB NOT NULL,
            FOREIGN KEY(stable_id) REFERENCES documents(stable_id)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_chunks_stable_id ON chunks(stable_id)")


def _read_generation(path: Path, manifest: dict) -> Generation:
    conn = sqlite3.connect(path.resolve().as_uri() + "?mode=ro", uri=True)
    conn.row_factory = sqlite3.Row
    try:
        documents = {
            row["stable_id"]: DocumentRecord(
                stable_id=row["stable_id"],
                rel_path=row["rel_path"],
                description=row["description"] or "",
                doc_type=row["doc_type"],
                updated_at=row["updated_at"],
            )
            for row in conn.execute("SELECT * FROM documents")
        }
        chunks: List[Chunk] = []
        vectors: List[np.ndarray] = []
        for row in conn.execute("SELECT * FROM chunks ORDER BY stable_id, seq"):
            vector = np.frombuffer(row["embedding"], dtype="float32")
            vectors.append(vector)
            chunks.append(
                Chunk(
                    chunk_id=row["chunk_id"],
                    stable_id=row["stable_id"],
                    seq=row["seq"],
                    heading_path=tuple(json.loads(row["heading_path"])),
                    text=row["text"],
                    content_hash=row["content_hash"],
                    tokens=tuple(json.loads(row["tokens"])),
                    line_start=row["line_start"] or 0,
                    line_end=row["line_end"] or 0,
                    entry_id=row["entry_id"],
                    entry_date=row["entry_date"],
                    entry_created_at=row["entry_created_at"],
                    vector=vector,
                )
            )
    finally:
        conn.close()

    dimension = int(manifest.get("dimension") or 0)
    matrix = np.vstack(vectors) if vectors else np.zeros((0, dimension), dtype="float32")
    return Generation(
        generation_id=manifest["generation"],
        model=manifest.get("model", ""),
        dimension=dimension,
        last_updated=manifest["last_updated"],
        documents=documents,
        chunks=chunks,
        matrix=matrix,
    )


class WriteHandle:
    """Writes one new generation; invisible to readers until ``commit``."""

    def __init__(self, store: "IndexStore", *, model: str, dimension: int) -> None:
        self._store = store
        self.generation_id = uuid.uuid4().hex
        self.model = model
        self.dimension = dimension
        self.path = store.generations_dir / f"{self.generation_id}.db"
        store.generations_dir.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = _connect(self.path)
        self._conn.execute("PRAGMA journal_mode=DELETE;")
        _ensure_schema(self._conn)
        self._chunk_count = 0
        self._closed = False

    @property
    def chunk_count(self) -> int:
        return self._chunk_count

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Write handle is already closed")
        return self._conn

    def put_document(self, document: DocumentRecord) -> None:
        self._connection().execute(
            """
            INSERT OR REPLACE INTO documents(stable_id, rel_path, description, doc_type, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                document.stable_id,
                document.rel_path,
                document.description,
                document.doc_type,
                document.updated_at,
            ),
        )

    def put_chunk(self, chunk: Chunk) -> None:
        if chunk.vector is None:
            raise ValueError(f"Chunk {chunk.chunk_id} has no vector")
        vector = np.asarray(chunk.vector, dtype="float32")
        if self.dimension and vector.shape[0] != self.dimension:
            raise ValueError(
                f"Chunk {chunk.chunk_id} has dimension {vector.shape[0]}, expected {self.dimension}"
            )
        self.dimension = self.dimension or int(vector.shape[0])
        self._connection().execute(
            """
            INSERT INTO chunks(
                chunk_id, stable_id, seq, heading_path, text, content_hash, tokens,
                line_start, line_end, entry_id, entry_date, entry_created_at, embedding
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.chunk_id,
                chunk.stable_id,
                chunk.seq,
                json.dumps(list(chunk.heading_path), ensure_ascii=False),
                chunk.text,
                chunk.content_hash,
                json.dumps(list(chunk.tokens), ensure_ascii=False),
                chunk.line_start,
                chunk.line_end,
                chunk.entry_id,
                chunk.entry_date,
                chunk.entry_created_at,
                sqlite3.Binary(vector.tobytes()),
            ),
        )
        self._chunk_count += 1

    def commit(self) -> Generation:
        conn = self._connection()
        last_updated = _utcnow()
        conn.executemany(
            "INSERT OR REPLACE INTO meta(key, value) VALUES (?, ?)",
            [
                ("generation", self.generation_id),
                ("model", self.model),
                ("dimension", str(self.dimension)),
                ("last_updated", last_updated),
            ],
        )
        conn.commit()
        conn.close()
        self._conn = None
        manifest = {
            "generation": self.generation_id,
            "file": self.path.name,
            "model": self.model,
            "dimension": self.dimension,
            "total_chunks": self._chunk_count,
            "last_updated": last_updated,
        }
        self._store._swap_manifest(manifest)
        self._closed = True
        LOGGER.info("Committed index generation %s (%d chunks)", self.generation_id, self._chunk_count)
        return self._store.load()

    def abort(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._conn is not None:
            self._conn.close()
            self._conn = None
        try:
            self.path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Could not remove aborted generation %s: %s", self.path, exc)
        LOGGER.info("Aborted index generation %s", self.generation_id)

    def __enter__(self) -> "WriteHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self._closed:
            self.abort()


class BuildLock:
    """Exclusive, cross-process build lock backed by an ``O_EXCL`` lock file."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    def acquire(self) -> "BuildLock":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
            except FileExistsError:
                if self._reclaim_stale():
                    continue
                raise ConcurrentBuildRejected()
            with os.fdopen(fd, "w") as handle:
                handle.write(str(os.getpid()))
            self._held = True
            return self
        raise ConcurrentBuildRejected()

    def _reclaim_stale(self) -> bool:
        try:
            pid = int(self.path.read_text().strip() or "0")
        except (OSError, ValueError):
            return False
        if pid <= 0 or pid == os.getpid():
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            LOGGER.warning("Removing stale build lock held by dead process %d", pid)
            self.path.unlink(missing_ok=True)
            return True
        except OSError:
            return False
        return False

    def release(self) -> None:
        if self._held:
            self._held = False
            self.path.unlink(missing_ok=True)

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> "BuildLock":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class IndexStore:
    """Persistence layer for index generations."""

    def __init__(self, index_dir: Path) -> None:
        self.index_dir = Path(index_dir)
        self.generations_dir = self.index_dir / GENERATIONS_DIR
        self.manifest_path = self.index_dir / MANIFEST
        self._cache: Generation | None = None
        self._cache_lock = threading.Lock()

    def _read_manifest(self) -> dict | None:
        try:
            return json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None

    def exists(self) -> bool:
        return self._read_manifest() is not None

    def load(self) -> Generation:
        """Return the current generation, or raise ``IndexNotAvailable``."""
        # A commit may prune the file named by the manifest we just read;
        # re-reading the manifest then points at the newer generation.
        for _ in range(3):
            manifest = self._read_manifest()
            if manifest is None:
                raise IndexNotAvailable()
            with self._cache_lock:
                if self._cache is not None and self._cache.generation_id == manifest["generation"]:
                    return self._cache
                path = self.generations_dir / manifest["file"]
                try:
                    generation = _read_generation(path, manifest)
                except sqlite3.Error as exc:
                    LOGGER.debug("Generation %s unreadable (%s); re-reading manifest", path, exc)
                    continue
                self._cache = generation
                return generation
        raise IndexNotAvailable("Index generation file is missing or unreadable; rebuild the index.")

    def load_or_none(self) -> Generation | None:
        try:
            return self.load()
        except IndexNotAvailable:
            return None

    def stats(self) -> IndexStatus:
        manifest = self._read_manifest()
        if manifest is None:
            return IndexStatus(exists=False)
        return IndexStatus(
            exists=True,
            total_chunks=int(manifest.get("total_chunks", 0)),
            last_updated=manifest.get("last_updated"),
        )

    def begin_build(self, *, model: str, dimension: int = 0) -> WriteHandle:
        return WriteHandle(self, model=model, dimension=dimension)

    def acquire_build_lock(self) -> BuildLock:
        return BuildLock(self.index_dir / LOCK_FILE).acquire()

    def _swap_manifest(self, manifest: dict) -> None:
        self.index_dir.mkdir(parents=True, exist_ok=True)
        tmp = self.manifest_path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as handle:
            json.dump(manifest, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(self.manifest_path)
        self._prune(keep={manifest["file"]})

    def _prune(self, keep: Sequence[str]) -> None:
        if not self.generations_dir.exists():
            return
        for path in self.generations_dir.glob("*.db"):
            if path.name in keep:
                continue
            try:
                path.unlink()
            except OSError as exc:
                LOGGER.warning("Could not prune old generation %s: %s", path, exc)

    def remove(self) -> None:
        """Delete the current generation and every generation file."""
        self.manifest_path.unlink(missing_ok=True)
        self._prune(keep=())
        with self._cache_lock:
            self._cache = None
        LOGGER.info("Removed search index at %s", self.index_dir)
