"""Tests for core data models."""

from __future__ import annotations

import dataclasses

import numpy as np
import pytest

from opencontext.models import Chunk, DocumentRecord, IndexStatus, ProgressEvent, SearchResult


class TestDocumentRecord:
    """Test DocumentRecord dataclass."""

    def test_display_name_strips_extension(self) -> None:
        doc = DocumentRecord(stable_id="id", rel_path="notes/plan.md")
        assert doc.display_name == "plan"

    def test_top_folder(self) -> None:
        assert DocumentRecord(stable_id="a", rel_path="notes/deep/plan.md").top_folder == "notes"
        assert DocumentRecord(stable_id="b", rel_path="plan.md").top_folder == "."

    def test_frozen(self) -> None:
        """Records are immutable."""
        doc = DocumentRecord(stable_id="id", rel_path="a.md")
        with pytest.raises(dataclasses.FrozenInstanceError):
            doc.rel_path = "b.md"  # type: ignore[misc]


class TestChunk:
    """Test Chunk dataclass."""

    def test_equality_ignores_vector(self) -> None:
        """Two chunks with the same content compare equal whatever their vectors."""
        base = Chunk(chunk_id="d:0", stable_id="d", seq=0, heading_path=("A",), text="t", content_hash="h")
        with_vector = dataclasses.replace(base, vector=np.ones(3, dtype="float32"))

        assert base == with_vector

    def test_heading_and_token_set(self) -> None:
        chunk = Chunk(
            chunk_id="d:0",
            stable_id="d",
            seq=0,
            heading_path=("Plan", "Risks"),
            text="t",
            content_hash="h",
            tokens=("risk", "risk", "cost"),
        )

        assert chunk.heading == "Plan / Risks"
        assert chunk.token_set == frozenset({"risk", "cost"})


class TestProgressEvent:
    """Test ProgressEvent serialization."""

    def test_intermediate_event(self) -> None:
        data = ProgressEvent("embedding", 3, 10).to_dict()
        assert data == {"phase": "embedding", "current": 3, "total": 10, "message": ""}

    def test_done_event_carries_totals(self) -> None:
        data = ProgressEvent("done", 5, 5, total_chunks=5, last_updated="2025-01-01T00:00:00+00:00").to_dict()
        assert data["total_chunks"] == 5
        assert data["last_updated"] == "2025-01-01T00:00:00+00:00"


class TestIndexStatus:
    def test_to_dict(self) -> None:
        assert IndexStatus(exists=False).to_dict() == {"exists": False, "total_chunks": 0, "last_updated": None}


class TestSearchResult:
    """Test SearchResult serialization."""

    def _result(self, **overrides) -> SearchResult:
        values = dict(
            stable_id="id",
            file_path="notes/plan.md",
            display_name="plan",
            citation="oc://doc/id",
            chunk_id="id:1",
            heading_path=("Plan", "Risks"),
            content="text",
            score=0.123456789,
            matched_by="vector+keyword",
        )
        values.update(overrides)
        return SearchResult(**values)

    def test_plain_chunk(self) -> None:
        data = self._result().to_dict()

        assert data["heading_path"] == "Plan / Risks"
        assert data["score"] == 0.123457
        assert "entry_id" not in data
        assert "aggregate_type" not in data

    def test_idea_entry_fields(self) -> None:
        data = self._result(doc_type="idea", entry_id="e1", entry_date="2025-12-23").to_dict()

        assert data["entry_id"] == "e1"
        assert data["entry_date"] == "2025-12-23"

    def test_folder_aggregate_fields(self) -> None:
        data = self._result(aggregate_type="folder", hit_count=3, doc_count=2, folder_path="notes").to_dict()

        assert data["aggregate_type"] == "folder"
        assert data["hit_count"] == 3
        assert data["doc_count"] == 2
        assert data["folder_path"] == "notes"
