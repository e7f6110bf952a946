"""Hybrid search over the current index generation.

Vector scores are cosine similarities against the query embedding. Keyword
scores are BM25 over the chunk tokens, normalized by the best match so both
signals live in ``[0, 1]`` before they are fused.
"""

from __future__ import annotations

import logging
import math
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Tuple

import numpy as np

from opencontext.citation import build_citation
from opencontext.embedding.client import EmbeddingClient
from opencontext.errors import DocumentVanished, EmbeddingMismatch
from opencontext.index.storage import Generation, IndexStore
from opencontext.models import Chunk, DocumentRecord, MatchType, SearchResult
from opencontext.utils.text import excerpt, tokenize

LOGGER = logging.getLogger(__name__)

SEARCH_MODES = ("hybrid", "vector", "keyword")
AGGREGATIONS = ("content", "doc", "folder")
DOC_TYPES = ("doc", "idea")
ROOT_FOLDER_LABEL = "(root)"

Resolver = Callable[[str], str]


@dataclass(slots=True)
class SearchConfig:
    vector_weight: float = 0.7
    keyword_weight: float = 0.3
    keyword_threshold: float = 0.1
    candidate_multiplier: int = 3
    min_candidates: int = 20
    default_limit: int = 5
    max_limit: int = 50
    excerpt_chars: int = 500


class KeywordIndex:
    """Okapi BM25 over pre-tokenized chunks."""

    def __init__(self, chunks: Sequence[Chunk], *, k1: float = 1.2, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self.size = len(chunks)
        self.lengths = np.asarray([len(chunk.tokens) for chunk in chunks], dtype="float64")
        self.avg_length = float(self.lengths.mean()) if self.size else 0.0
        self.postings: Dict[str, List[Tuple[int, int]]] = defaultdict(list)
        for position, chunk in enumerate(chunks):
            counts: Dict[str, int] = defaultdict(int)
            for token in chunk.tokens:
                counts[token] += 1
            for token, tf in counts.items():
                self.postings[token].append((position, tf))

    def idf(self, token: str) -> float:
        df = len(self.postings.get(token, ()))
        return math.log((self.size - df + 0.5) / (df + 0.5) + 1.0)

    def score(self, query: str) -> np.ndarray:
        """Raw BM25 score for every chunk; zero where no query term occurs."""
        scores = np.zeros(self.size, dtype="float64")
        if not self.size or self.avg_length <= 0:
            return scores
        for token in dict.fromkeys(tokenize(query)):
            postings = self.postings.get(token)
            if not postings:
                continue
            idf = self.idf(token)
            for position, tf in postings:
                norm = self.k1 * (1 - self.b + self.b * self.lengths[position] / self.avg_length)
                scores[position] += idf * tf * (self.k1 + 1) / (tf + norm)
        return scores


def _unit_rows(matrix: np.ndarray) -> np.ndarray:
    if matrix.size == 0:
        return matrix.astype("float32")
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).astype("float32")


@dataclass(slots=True)
class _Scored:
    chunk: Chunk
    document: DocumentRecord
    score: float
    matched_by: MatchType

    def sort_key(self) -> Tuple[float, float, str]:
        return (-self.score, -self.document.updated_at, self.chunk.chunk_id)


class Searcher:
    """High-level API to query the current index generation."""

    def __init__(
        self,
        store: IndexStore,
        embedder: EmbeddingClient | None,
        config: SearchConfig | None = None,
        resolver: Resolver | None = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.config = config or SearchConfig()
        self.resolver = resolver
        self._prepared: Tuple[str, np.ndarray, KeywordIndex] | None = None
        self._prepared_lock = threading.Lock()

    def _prepare(self, generation: Generation) -> Tuple[np.ndarray, KeywordIndex]:
        with self._prepared_lock:
            if self._prepared is None or self._prepared[0] != generation.generation_id:
                LOGGER.debug("Preparing search structures for generation %s", generation.generation_id)
                self._prepared = (
                    generation.generation_id,
                    _unit_rows(generation.matrix),
                    KeywordIndex(generation.chunks),
                )
            return self._prepared[1], self._prepared[2]

    def search(
        self,
        query: str,
        *,
        limit: int | None = None,
        mode: str = "hybrid",
        aggregate_by: str = "content",
        doc_type: str | None = None,
    ) -> List[SearchResult]:
        generation = self.store.load()
        if mode not in SEARCH_MODES:
            raise ValueError(f"Invalid search mode {mode!r}; expected one of {', '.join(SEARCH_MODES)}")
        if aggregate_by not in AGGREGATIONS:
            raise ValueError(f"Invalid aggregation {aggregate_by!r}; expected one of {', '.join(AGGREGATIONS)}")
        if doc_type is not None and doc_type not in DOC_TYPES:
            raise ValueError(f"Invalid doc_type {doc_type!r}; expected one of {', '.join(DOC_TYPES)}")
        limit = self.config.default_limit if limit is None else limit
        if limit <= 0:
            raise ValueError("limit must be positive")
        limit = min(limit, self.config.max_limit)
        if not query or not query.strip():
            return []

        positions = np.asarray(
            [
                position
                for position, chunk in enumerate(generation.chunks)
                if doc_type is None or self._document(generation, chunk).doc_type == doc_type
            ],
            dtype="int64",
        )
        if positions.size == 0:
            return []

        unit, keyword_index = self._prepare(generation)
        scored = self._score(generation, query, positions, unit, keyword_index, limit, mode)
        scored.sort(key=_Scored.sort_key)

        if aggregate_by == "content":
            results = [self._to_result(item) for item in scored[:limit]]
        else:
            results = self._aggregate(scored, aggregate_by, limit)
        LOGGER.debug("Query %r (%s, %s) returned %d result(s)", query, mode, aggregate_by, len(results))
        return results

    @staticmethod
    def _document(generation: Generation, chunk: Chunk) -> DocumentRecord:
        document = generation.documents.get(chunk.stable_id)
        if document is None:
            return DocumentRecord(stable_id=chunk.stable_id, rel_path=chunk.stable_id)
        return document

    def _score(
        self,
        generation: Generation,
        query: str,
        positions: np.ndarray,
        unit: np.ndarray,
        keyword_index: KeywordIndex,
        limit: int,
        mode: str,
    ) -> List[_Scored]:
        cfg = self.config
        keyword = np.zeros(positions.size, dtype="float64")
        if mode in ("hybrid", "keyword"):
            raw = keyword_index.score(query)[positions]
            best = float(raw.max()) if raw.size else 0.0
            if best > 0:
                keyword = raw / best

        cosine = np.zeros(positions.size, dtype="float64")
        vector_pool = np.zeros(positions.size, dtype=bool)
        if mode in ("hybrid", "vector"):
            if self.embedder is None:
                raise ValueError(f"{mode} search requires an embedding client")
            query_vector = np.asarray(self.embedder.embed_query(query), dtype="float32")
            if generation.dimension and query_vector.shape[0] != generation.dimension:
                raise EmbeddingMismatch(expected=generation.dimension, actual=int(query_vector.shape[0]))
            norm = float(np.linalg.norm(query_vector))
            if norm > 0:
                query_vector = query_vector / norm
            cosine = (unit[positions] @ query_vector).astype("float64")
            pool_size = min(max(limit * cfg.candidate_multiplier, cfg.min_candidates), positions.size)
            top = np.argsort(-cosine, kind="stable")[:pool_size]
            vector_pool[top] = True

        scored: List[_Scored] = []
        for offset, position in enumerate(positions):
            in_vector = bool(vector_pool[offset])
            kw = float(keyword[offset])
            if mode == "vector":
                if not in_vector:
                    continue
                score, matched_by = float(cosine[offset]), "vector"
            elif mode == "keyword":
                if kw <= 0:
                    continue
                score, matched_by = kw, "keyword"
            else:
                if not in_vector and kw <= 0:
                    continue
                score = cfg.vector_weight * max(float(cosine[offset]), 0.0) + cfg.keyword_weight * kw
                if not in_vector:
                    matched_by = "keyword"
                elif kw >= cfg.keyword_threshold:
                    matched_by = "vector+keyword"
                else:
                    matched_by = "vector"
            chunk = generation.chunks[int(position)]
            scored.append(_Scored(chunk, self._document(generation, chunk), score, matched_by))
        return scored

    def _aggregate(self, scored: List[_Scored], aggregate_by: str, limit: int) -> List[SearchResult]:
        groups: Dict[str, List[_Scored]] = {}
        for item in scored:
            key = item.chunk.stable_id if aggregate_by == "doc" else item.document.top_folder
            groups.setdefault(key, []).append(item)

        # scored is already ordered, so the first member of each group is its best hit
        ranked = sorted(groups.items(), key=lambda entry: entry[1][0].sort_key())[:limit]
        results: List[SearchResult] = []
        for key, members in ranked:
            result = self._to_result(members[0])
            result.aggregate_type = aggregate_by
            result.hit_count = len(members)
            if aggregate_by == "folder":
                result.folder_path = key
                result.doc_count = len({member.chunk.stable_id for member in members})
                result.display_name = ROOT_FOLDER_LABEL if key == "." else key
            results.append(result)
        return results

    def _to_result(self, item: _Scored) -> SearchResult:
        """Build the public result for one scored chunk.

        Ranking only ever touches the cached index metadata. The resolver is
        consulted here, once per returned result (at most ``max_limit``
        registry lookups), so that citations follow renames made after the
        last build.
        """
        chunk, document = item.chunk, item.document
        rel_path = document.rel_path
        citation = build_citation(chunk.stable_id)
        if self.resolver is not None:
            try:
                rel_path = self.resolver(chunk.stable_id)
            except DocumentVanished:
                LOGGER.warning("Could not resolve %s; citing cached path %s", chunk.stable_id, rel_path)
                citation = build_citation(chunk.stable_id, rel_path)
        display = DocumentRecord(stable_id=document.stable_id, rel_path=rel_path).display_name
        return SearchResult(
            stable_id=chunk.stable_id,
            file_path=rel_path,
            display_name=display,
            citation=citation,
            chunk_id=chunk.chunk_id,
            heading_path=chunk.heading_path,
            content=excerpt(chunk.text, self.config.excerpt_chars),
            score=item.score,
            matched_by=item.matched_by,
            doc_type=document.doc_type,
            line_start=chunk.line_start,
            line_end=chunk.line_end,
            entry_id=chunk.entry_id,
            entry_date=chunk.entry_date,
            entry_created_at=chunk.entry_created_at,
        )
