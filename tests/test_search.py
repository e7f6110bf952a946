"""Tests for hybrid search, aggregation and citations."""

from __future__ import annotations

import math
from typing import Dict, List, Sequence, Tuple

import numpy as np
import pytest

from conftest import TableBackend
from opencontext.content.store import FileContentStore
from opencontext.embedding.client import EmbeddingClient
from opencontext.errors import DocumentVanished, EmbeddingMismatch, IndexNotAvailable
from opencontext.index.indexer import Indexer
from opencontext.index.search import KeywordIndex, SearchConfig, Searcher
from opencontext.index.storage import IndexStore
from opencontext.models import Chunk, DocumentRecord
from opencontext.utils.text import tokenize


def _unit(cos: float) -> List[float]:
    """A 2-d unit vector whose cosine with (1, 0) is ``cos``."""
    return [cos, math.sqrt(max(1.0 - cos * cos, 0.0))]


def _write_generation(
    store: IndexStore,
    docs: Sequence[DocumentRecord],
    chunks: Sequence[Tuple[str, int, float, str]],
) -> None:
    """Commit a generation from ``(stable_id, seq, cosine, text)`` rows."""
    with store.begin_build(model="table") as handle:
        for doc in docs:
            handle.put_document(doc)
        for stable_id, seq, cos, text in chunks:
            handle.put_chunk(
                Chunk(
                    chunk_id=f"{stable_id}:{seq}",
                    stable_id=stable_id,
                    seq=seq,
                    heading_path=("Section",),
                    text=text,
                    content_hash=f"{stable_id}-{seq}",
                    tokens=tuple(tokenize(text)),
                    vector=np.asarray(_unit(cos), dtype="float32"),
                )
            )
        handle.commit()


def _table_searcher(store: IndexStore, **kwargs) -> Searcher:
    embedder = EmbeddingClient(backend=TableBackend({"query": [1.0, 0.0], "risk": [1.0, 0.0]}))
    return Searcher(store, embedder, **kwargs)


class TestKeywordIndex:
    """BM25 scoring."""

    def _chunk(self, chunk_id: str, text: str) -> Chunk:
        return Chunk(chunk_id=chunk_id, stable_id=chunk_id, seq=0, heading_path=(), text=text,
                     content_hash=chunk_id, tokens=tuple(tokenize(text)))

    def test_idf_formula(self) -> None:
        index = KeywordIndex([self._chunk("a", "risk alpha"), self._chunk("b", "beta gamma")])
        assert index.idf("risk") == pytest.approx(math.log((2 - 1 + 0.5) / (1 + 0.5) + 1))

    def test_term_frequency_raises_score(self) -> None:
        index = KeywordIndex(
            [self._chunk("a", "risk risk risk other"), self._chunk("b", "risk other words here"), self._chunk("c", "none")]
        )
        scores = index.score("risk")

        assert scores[0] > scores[1] > 0
        assert scores[2] == 0

    def test_unknown_terms(self) -> None:
        index = KeywordIndex([self._chunk("a", "alpha")])
        assert index.score("zzz").tolist() == [0.0]


class TestSearchEndToEnd:
    """Search over a real build of the sample corpus."""

    def test_requires_index(self, searcher: Searcher) -> None:
        """No generation: IndexNotAvailable, even for an empty query."""
        with pytest.raises(IndexNotAvailable):
            searcher.search("anything")
        with pytest.raises(IndexNotAvailable):
            searcher.search("   ")

    def test_hybrid_finds_risks_section(
        self, indexer: Indexer, searcher: Searcher, sample_docs: Dict[str, str]
    ) -> None:
        indexer.build()

        results = searcher.search("risk", limit=5)

        top = results[0]
        stable_id = sample_docs["notes/plan.md"]
        assert top.stable_id == stable_id
        assert top.heading_path == ("Plan", "Risks")
        assert top.citation == f"oc://doc/{stable_id}"
        assert top.file_path == "notes/plan.md"
        assert top.matched_by == "vector+keyword"
        assert "risk" in top.content
        assert [r.score for r in results] == sorted((r.score for r in results), reverse=True)

    def test_keyword_mode_only_lexical_matches(
        self, indexer: Indexer, searcher: Searcher, sample_docs: Dict[str, str]
    ) -> None:
        indexer.build()

        results = searcher.search("risk", mode="keyword")

        assert len(results) == 1
        assert results[0].matched_by == "keyword"
        assert results[0].score == pytest.approx(1.0)

    def test_keyword_mode_needs_no_embedder(
        self, indexer: Indexer, index_store: IndexStore, sample_docs: Dict[str, str]
    ) -> None:
        indexer.build()
        results = Searcher(index_store, None).search("installer", mode="keyword")

        assert [r.file_path for r in results] == ["guide.md"]

    def test_vector_mode(self, indexer: Indexer, searcher: Searcher, sample_docs: Dict[str, str]) -> None:
        indexer.build()

        results = searcher.search("quarterly roadmap", mode="vector", limit=2)

        assert len(results) == 2
        assert all(r.matched_by == "vector" for r in results)

    def test_empty_query(self, indexer: Indexer, searcher: Searcher, sample_docs: Dict[str, str]) -> None:
        indexer.build()
        assert searcher.search("  ") == []

    @pytest.mark.parametrize(
        "kwargs",
        [{"mode": "fuzzy"}, {"aggregate_by": "section"}, {"doc_type": "pdf"}, {"limit": 0}],
    )
    def test_invalid_options(
        self, indexer: Indexer, searcher: Searcher, sample_docs: Dict[str, str], kwargs: dict
    ) -> None:
        indexer.build()
        with pytest.raises(ValueError):
            searcher.search("risk", **kwargs)

    def test_doc_type_filter(
        self, indexer: Indexer, searcher: Searcher, content_store: FileContentStore, sample_docs: Dict[str, str]
    ) -> None:
        content_store.create_document(
            ".ideas/search.md",
            "# Search ideas\n\n## 2025-12-23T14:30:00Z\n<!-- entry: e1 -->\nMitigate the risk with caching.\n",
        )
        indexer.build()

        ideas = searcher.search("risk", doc_type="idea")
        docs = searcher.search("risk", doc_type="doc")

        assert [r.doc_type for r in ideas] == ["idea"]
        assert ideas[0].entry_id == "e1"
        assert ideas[0].entry_date == "2025-12-23"
        assert all(r.doc_type == "doc" for r in docs)

    def test_citation_survives_rename(
        self,
        indexer: Indexer,
        searcher: Searcher,
        content_store: FileContentStore,
        sample_docs: Dict[str, str],
    ) -> None:
        """Renamed documents keep their citation and show the current path."""
        indexer.build()
        before = searcher.search("risk", mode="keyword")[0]
        content_store.rename_document("notes/plan.md", "archive/plan.md")

        stale = searcher.search("risk", mode="keyword")[0]
        indexer.build()
        rebuilt = searcher.search("risk", mode="keyword")[0]

        assert stale.citation == before.citation == rebuilt.citation
        assert stale.file_path == "archive/plan.md"
        assert rebuilt.file_path == "archive/plan.md"

    def test_unresolvable_document_gets_path_fallback(
        self, indexer: Indexer, index_store: IndexStore, embedder: EmbeddingClient, sample_docs: Dict[str, str]
    ) -> None:
        indexer.build()

        def resolver(stable_id: str) -> str:
            raise DocumentVanished("gone", stable_id=stable_id)

        result = Searcher(index_store, embedder, resolver=resolver).search("risk", mode="keyword")[0]

        assert result.file_path == "notes/plan.md"
        assert result.citation == f"oc://doc/{result.stable_id}?path=notes/plan.md"


class TestRanking:
    """Fusion, ordering and aggregation over crafted vectors."""

    def test_doc_aggregation_keeps_best_chunk(self, index_store: IndexStore) -> None:
        """Three chunks scoring 0.9/0.7/0.5 aggregate to one result scored 0.9."""
        docs = [DocumentRecord("A", "notes/a.md"), DocumentRecord("B", "notes/b.md")]
        _write_generation(
            index_store,
            docs,
            [("A", 0, 0.7, "seven"), ("A", 1, 0.9, "nine"), ("A", 2, 0.5, "five"), ("B", 0, 0.6, "six")],
        )

        results = _table_searcher(index_store).search("query", limit=1, mode="vector", aggregate_by="doc")

        assert len(results) == 1
        assert results[0].stable_id == "A"
        assert results[0].chunk_id == "A:1"
        assert results[0].score == pytest.approx(0.9, abs=1e-5)
        assert results[0].hit_count == 3
        assert results[0].aggregate_type == "doc"

    def test_doc_aggregation_distinct_documents(self, index_store: IndexStore) -> None:
        docs = [DocumentRecord("A", "a.md"), DocumentRecord("B", "b.md")]
        _write_generation(index_store, docs, [("A", 0, 0.9, "x"), ("A", 1, 0.8, "y"), ("B", 0, 0.6, "z")])

        results = _table_searcher(index_store).search("query", limit=5, mode="vector", aggregate_by="doc")

        assert [r.stable_id for r in results] == ["A", "B"]

    def test_folder_aggregation(self, index_store: IndexStore) -> None:
        docs = [
            DocumentRecord("A", "notes/a.md"),
            DocumentRecord("B", "notes/deep/b.md"),
            DocumentRecord("R", "root.md"),
        ]
        _write_generation(index_store, docs, [("A", 0, 0.9, "a"), ("B", 0, 0.8, "b"), ("R", 0, 0.85, "r")])

        results = _table_searcher(index_store).search("query", mode="vector", aggregate_by="folder")

        assert [r.folder_path for r in results] == ["notes", "."]
        assert results[0].doc_count == 2
        assert results[0].hit_count == 2
        assert results[1].display_name == "(root)"
        assert results[0].to_dict()["folder_path"] == "notes"

    def test_ties_prefer_recent_documents(self, index_store: IndexStore) -> None:
        docs = [
            DocumentRecord("old", "old.md", updated_at=100.0),
            DocumentRecord("new", "new.md", updated_at=200.0),
            DocumentRecord("abc", "abc.md", updated_at=100.0),
        ]
        _write_generation(index_store, docs, [("old", 0, 1.0, "x"), ("new", 0, 1.0, "x"), ("abc", 0, 1.0, "x")])

        results = _table_searcher(index_store).search("query", mode="vector")

        assert [r.stable_id for r in results] == ["new", "abc", "old"]

    def test_hybrid_fusion_and_labels(self, index_store: IndexStore) -> None:
        """Score is 0.7 * cosine + 0.3 * normalized BM25."""
        docs = [DocumentRecord("A", "a.md"), DocumentRecord("B", "b.md")]
        _write_generation(index_store, docs, [("A", 0, 0.5, "risk register"), ("B", 0, 0.8, "unrelated text")])

        results = _table_searcher(index_store).search("risk", mode="hybrid")
        by_id = {r.stable_id: r for r in results}

        assert by_id["A"].score == pytest.approx(0.7 * 0.5 + 0.3 * 1.0, abs=1e-5)
        assert by_id["A"].matched_by == "vector+keyword"
        assert by_id["B"].score == pytest.approx(0.7 * 0.8, abs=1e-5)
        assert by_id["B"].matched_by == "vector"
        assert [r.stable_id for r in results] == ["A", "B"]

    def test_keyword_only_candidates_outside_vector_pool(self, index_store: IndexStore) -> None:
        """A lexical hit that misses the vector candidate pool is labeled keyword."""
        docs = [DocumentRecord(f"d{i}", f"d{i}.md") for i in range(4)]
        rows = [(f"d{i}", 0, 0.9 - i * 0.1, "filler words") for i in range(3)]
        rows.append(("d3", 0, -0.2, "risk appears here"))
        _write_generation(index_store, docs, rows)
        config = SearchConfig(min_candidates=1, candidate_multiplier=1)

        results = _table_searcher(index_store, config=config).search("risk", limit=1, mode="hybrid")
        everything = _table_searcher(index_store, config=config).search("risk", limit=3, mode="hybrid")

        assert results[0].stable_id == "d0"
        labels = {r.stable_id: r.matched_by for r in everything}
        assert labels["d3"] == "keyword"

    def test_limit_capped_by_config(self, index_store: IndexStore) -> None:
        docs = [DocumentRecord(f"d{i}", f"d{i}.md") for i in range(6)]
        _write_generation(index_store, docs, [(f"d{i}", 0, 0.5, "x") for i in range(6)])

        results = _table_searcher(index_store, config=SearchConfig(max_limit=3)).search("query", limit=50, mode="vector")

        assert len(results) == 3

    def test_query_dimension_mismatch(self, index_store: IndexStore) -> None:
        """A query embedded at another size fails with a structured error."""
        _write_generation(index_store, [DocumentRecord("A", "a.md")], [("A", 0, 0.9, "risk")])
        embedder = EmbeddingClient(backend=TableBackend({"risk": [1.0, 0.0, 0.0]}))

        with pytest.raises(EmbeddingMismatch) as excinfo:
            Searcher(index_store, embedder).search("risk", mode="hybrid")

        assert excinfo.value.to_payload()["expected"] == 2
        assert excinfo.value.to_payload()["actual"] == 3
        assert Searcher(index_store, embedder).search("risk", mode="keyword")[0].stable_id == "A"
