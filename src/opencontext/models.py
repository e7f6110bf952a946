"""Core OpenContext data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Tuple

import numpy as np

DocType = Literal["doc", "idea"]
MatchType = Literal["vector", "keyword", "vector+keyword"]

HEADING_SEPARATOR = " / "


@dataclass(slots=True, frozen=True)
class DocumentRecord:
    """Metadata describing one document owned by the content store."""

    stable_id: str
    rel_path: str
    description: str = ""
    doc_type: DocType = "doc"
    updated_at: float = 0.0

    @property
    def display_name(self) -> str:
        name = self.rel_path.rsplit("/", 1)[-1]
        return name[:-3] if name.lower().endswith(".md") else name

    @property
    def top_folder(self) -> str:
        head, sep, _ = self.rel_path.partition("/")
        return head if sep else "."


@dataclass(slots=True, frozen=True)
class Chunk:
    """Smallest retrievable unit of document text."""

    chunk_id: str
    stable_id: str
    seq: int
    heading_path: Tuple[str, ...]
    text: str
    content_hash: str
    tokens: Tuple[str, ...] = ()
    line_start: int = 0
    line_end: int = 0
    entry_id: str | None = None
    entry_date: str | None = None
    entry_created_at: str | None = None
    vector: np.ndarray | None = field(default=None, compare=False, repr=False)

    @property
    def token_set(self) -> frozenset[str]:
        return frozenset(self.tokens)

    @property
    def heading(self) -> str:
        return HEADING_SEPARATOR.join(self.heading_path)


@dataclass(slots=True)
class ProgressEvent:
    phase: str
    current: int
    total: int
    message: str = ""
    total_chunks: int | None = None
    last_updated: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "phase": self.phase,
            "current": self.current,
            "total": self.total,
            "message": self.message,
        }
        if self.phase == "done":
            data["total_chunks"] = self.total_chunks
            data["last_updated"] = self.last_updated
        return data


@dataclass(slots=True)
class IndexStatus:
    exists: bool
    total_chunks: int = 0
    last_updated: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exists": self.exists,
            "total_chunks": self.total_chunks,
            "last_updated": self.last_updated,
        }


@dataclass(slots=True)
class SearchResult:
    """One ranked hit, either a raw chunk or an aggregated doc/folder."""

    stable_id: str
    file_path: str
    display_name: str
    citation: str
    chunk_id: str
    heading_path: Tuple[str, ...]
    content: str
    score: float
    matched_by: MatchType
    doc_type: DocType = "doc"
    line_start: int = 0
    line_end: int = 0
    entry_id: str | None = None
    entry_date: str | None = None
    entry_created_at: str | None = None
    aggregate_type: str | None = None
    hit_count: int | None = None
    doc_count: int | None = None
    folder_path: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "file_path": self.file_path,
            "display_name": self.display_name,
            "stable_id": self.stable_id,
            "citation": self.citation,
            "heading_path": HEADING_SEPARATOR.join(self.heading_path),
            "content": self.content,
            "score": round(float(self.score), 6),
            "matched_by": self.matched_by,
            "doc_type": self.doc_type,
            "chunk_id": self.chunk_id,
            "line_start": self.line_start,
            "line_end": self.line_end,
        }
        if self.doc_type == "idea":
            data["entry_id"] = self.entry_id
            data["entry_date"] = self.entry_date
            data["entry_created_at"] = self.entry_created_at
        if self.aggregate_type is not None:
            data["aggregate_type"] = self.aggregate_type
            data["hit_count"] = self.hit_count
        if self.aggregate_type == "folder":
            data["folder_path"] = self.folder_path
            data["doc_count"] = self.doc_count
        return data
