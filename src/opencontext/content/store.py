"""Content store: the registry of documents and their stable ids.

The indexer only depends on the small :class:`ContentStore` protocol.
:class:`FileContentStore` implements it over a directory of Markdown files
plus a SQLite registry that maps each immutable stable id to the document's
current relative path.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Protocol

from opencontext.errors import DocumentVanished
from opencontext.models import DocumentRecord
from opencontext.utils.files import IDEAS_DIR, compute_sha256, iter_markdown_paths, to_rel_path

LOGGER = logging.getLogger(__name__)


class ContentStore(Protocol):
    def list_documents(self, scope: str | None = None) -> List[DocumentRecord]: ...

    def get_content(self, rel_path: str) -> str: ...

    def resolve_by_stable_id(self, stable_id: str) -> str: ...

    def exists(self, stable_id: str) -> bool: ...


def normalize_rel_path(rel_path: str) -> str:
    path = PurePosixPath(rel_path.replace("\\", "/").strip("/"))
    if not path.parts or any(part in ("", ".", "..") for part in path.parts):
        raise ValueError(f"Invalid document path: {rel_path!r}")
    return path.as_posix()


def doc_type_for(rel_path: str) -> str:
    return "idea" if rel_path.split("/", 1)[0] == IDEAS_DIR else "doc"


def in_scope(rel_path: str, scope: str | None) -> bool:
    if not scope:
        return True
    folder = scope.strip("/")
    return not folder or rel_path == folder or rel_path.startswith(folder + "/")


class FileContentStore:
    """Markdown files under ``root`` with a stable-id registry."""

    def __init__(self, root: Path, registry_path: Path) -> None:
        self.root = Path(root)
        self.registry_path = Path(registry_path)
        self.root.mkdir(parents=True, exist_ok=True)
        self.registry_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(self.registry_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    stable_id TEXT PRIMARY KEY,
                    rel_path TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    sha256 TEXT NOT NULL,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )

    def _abs(self, rel_path: str) -> Path:
        return self.root / normalize_rel_path(rel_path)

    def _record(self, row: sqlite3.Row) -> DocumentRecord:
        path = self._abs(row["rel_path"])
        return DocumentRecord(
            stable_id=row["stable_id"],
            rel_path=row["rel_path"],
            description=row["description"] or "",
            doc_type=doc_type_for(row["rel_path"]),
            updated_at=path.stat().st_mtime,
        )

    def sync(self) -> None:
        """Reconcile the registry with the files on disk.

        New files get a fresh stable id; a file that was moved outside this
        API keeps its id when its content hash matches a registered document
        whose file disappeared; registry rows for deleted files are dropped.
        """
        on_disk = {to_rel_path(self.root, path): path for path in iter_markdown_paths(self.root)}
        with self.transaction() as conn:
            rows = {row["rel_path"]: row for row in conn.execute("SELECT * FROM documents")}
            missing = {rel: row for rel, row in rows.items() if rel not in on_disk}
            by_hash: Dict[str, sqlite3.Row] = {row["sha256"]: row for row in missing.values()}

            for rel_path, path in on_disk.items():
                sha256 = compute_sha256(path)
                row = rows.get(rel_path)
                if row is not None:
                    if row["sha256"] != sha256:
                        conn.execute("UPDATE documents SET sha256 = ? WHERE stable_id = ?", (sha256, row["stable_id"]))
                    continue
                moved = by_hash.pop(sha256, None)
                if moved is not None:
                    LOGGER.info("Detected move %s -> %s", moved["rel_path"], rel_path)
                    conn.execute(
                        "UPDATE documents SET rel_path = ? WHERE stable_id = ?",
                        (rel_path, moved["stable_id"]),
                    )
                    missing.pop(moved["rel_path"], None)
                    continue
                conn.execute(
                    "INSERT INTO documents(stable_id, rel_path, sha256) VALUES (?, ?, ?)",
                    (str(uuid.uuid4()), rel_path, sha256),
                )

            for rel_path, row in missing.items():
                LOGGER.info("Forgetting deleted document %s", rel_path)
                conn.execute("DELETE FROM documents WHERE stable_id = ?", (row["stable_id"],))

    def list_documents(self, scope: str | None = None) -> List[DocumentRecord]:
        self.sync()
        with self._lock:
            rows = self._conn.execute("SELECT * FROM documents ORDER BY rel_path").fetchall()
        documents = []
        for row in rows:
            if not in_scope(row["rel_path"], scope):
                continue
            try:
                documents.append(self._record(row))
            except FileNotFoundError:
                LOGGER.warning("Document %s vanished while listing", row["rel_path"])
        return documents

    def get_document(self, stable_id: str) -> DocumentRecord:
        with self._lock:
            row = self._conn.execute("SELECT * FROM documents WHERE stable_id = ?", (stable_id,)).fetchone()
        if row is None:
            raise DocumentVanished(f"Unknown stable_id: {stable_id}", stable_id=stable_id)
        try:
            return self._record(row)
        except FileNotFoundError as exc:
            raise DocumentVanished(
                f"Document {row['rel_path']} no longer exists", stable_id=stable_id, rel_path=row["rel_path"]
            ) from exc

    def get_document_by_path(self, rel_path: str) -> DocumentRecord:
        self.sync()
        rel_path = normalize_rel_path(rel_path)
        with self._lock:
            row = self._conn.execute("SELECT * FROM documents WHERE rel_path = ?", (rel_path,)).fetchone()
        if row is None:
            raise DocumentVanished(f"Document not found: {rel_path}", rel_path=rel_path)
        return self._record(row)

    def get_content(self, rel_path: str) -> str:
        try:
            return self._abs(rel_path).read_text(encoding="utf-8")
        except FileNotFoundError as exc:
            raise DocumentVanished(f"Document {rel_path} no longer exists", rel_path=rel_path) from exc

    def resolve_by_stable_id(self, stable_id: str) -> str:
        return self.get_document(stable_id).rel_path

    def exists(self, stable_id: str) -> bool:
        try:
            self.get_document(stable_id)
        except DocumentVanished:
            return False
        return True

    def create_document(
        self,
        rel_path: str,
        content: str = "",
        *,
        description: str = "",
    ) -> DocumentRecord:
        rel_path = normalize_rel_path(rel_path)
        if not rel_path.lower().endswith(".md"):
            rel_path += ".md"
        path = self._abs(rel_path)
        if path.exists():
            raise FileExistsError(f"Document already exists: {rel_path}")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        stable_id = str(uuid.uuid4())
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO documents(stable_id, rel_path, description, sha256) VALUES (?, ?, ?, ?)",
                (stable_id, rel_path, description, compute_sha256(path)),
            )
        return self.get_document(stable_id)

    def write_content(self, rel_path: str, content: str) -> DocumentRecord:
        record = self.get_document_by_path(rel_path)
        path = self._abs(record.rel_path)
        path.write_text(content, encoding="utf-8")
        with self.transaction() as conn:
            conn.execute(
                "UPDATE documents SET sha256 = ? WHERE stable_id = ?",
                (compute_sha256(path), record.stable_id),
            )
        return self.get_document(record.stable_id)

    def rename_document(self, rel_path: str, new_rel_path: str) -> DocumentRecord:
        """Move a document; its stable id is preserved."""
        record = self.get_document_by_path(rel_path)
        new_rel_path = normalize_rel_path(new_rel_path)
        target = self._abs(new_rel_path)
        if target.exists():
            raise FileExistsError(f"Document already exists: {new_rel_path}")
        target.parent.mkdir(parents=True, exist_ok=True)
        self._abs(record.rel_path).rename(target)
        with self.transaction() as conn:
            conn.execute(
                "UPDATE documents SET rel_path = ? WHERE stable_id = ?",
                (new_rel_path, record.stable_id),
            )
        return self.get_document(record.stable_id)

    def delete_document(self, rel_path: str) -> None:
        record = self.get_document_by_path(rel_path)
        self._abs(record.rel_path).unlink(missing_ok=True)
        with self.transaction() as conn:
            conn.execute("DELETE FROM documents WHERE stable_id = ?", (record.stable_id,))

    def set_description(self, rel_path: str, description: str) -> DocumentRecord:
        record = self.get_document_by_path(rel_path)
        with self.transaction() as conn:
            conn.execute(
                "UPDATE documents SET description = ? WHERE stable_id = ?",
                (description, record.stable_id),
            )
        return self.get_document(record.stable_id)
