"""BM25 index for tool discovery."""

from __future__ import annotations

import asyncio
import logging
import math
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from functools import cmp_to_key
from threading import RLock

from .scoring import to_search_result, tokenize
from .types import CatalogEntry, SearchResult

logger = logging.getLogger("mcp-toolbox.discovery")

DEFAULT_K1 = 1.2
DEFAULT_B = 0.75

# Scores closer than this are treated as equal and ordered by id
TIE_EPSILON = 0.0001


@dataclass
class _IndexedDocument:
    tokens: list[str]
    entry: CatalogEntry
    term_counts: Counter[str]


def _compare_ranked(a: tuple[str, float], b: tuple[str, float]) -> int:
    a_id, a_score = a
    b_id, b_score = b
    if abs(a_score - b_score) < TIE_EPSILON:
        return (a_id > b_id) - (a_id < b_id)
    return -1 if a_score > b_score else 1


class BM25Index:
    """Okapi BM25 index over catalog entries.

    The index can be rebuilt wholesale or extended one tool at a time while
    it is being queried. Mutations and queries are serialized by a lock, so
    term statistics and aggregate counts are always observed together.

    Uses:
    - k1=1.2 (term frequency saturation)
    - b=0.75 (document length normalization)
    """

    def __init__(self, k1: float = DEFAULT_K1, b: float = DEFAULT_B) -> None:
        self.k1 = k1
        self.b = b
        self._documents: dict[str, _IndexedDocument] = {}
        self._doc_freqs: dict[str, int] = {}
        self._doc_lengths: dict[str, int] = {}
        self._total_tokens = 0
        self._total_docs = 0
        self._avg_doc_length = 0.0
        self._lock = RLock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def size(self) -> int:
        """Number of indexed tools."""
        return self._total_docs

    def __len__(self) -> int:
        return self._total_docs

    def __contains__(self, id_string: object) -> bool:
        return id_string in self._documents

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def average_document_length(self) -> float:
        return self._avg_doc_length

    def document_frequencies(self) -> dict[str, int]:
        """Copy of the term to document-frequency map."""
        with self._lock:
            return dict(self._doc_freqs)

    def document_frequency(self, term: str) -> int:
        return self._doc_freqs.get(term, 0)

    def get_entry(self, id_string: str) -> CatalogEntry | None:
        doc = self._documents.get(id_string)
        return doc.entry if doc else None

    def get_all_entries(self) -> list[CatalogEntry]:
        """Snapshot of indexed entries in insertion order."""
        with self._lock:
            return [doc.entry for doc in self._documents.values()]

    def clear(self) -> None:
        """Drop every document and statistic."""
        with self._lock:
            self._documents.clear()
            self._doc_freqs.clear()
            self._doc_lengths.clear()
            self._total_tokens = 0
            self._total_docs = 0
            self._avg_doc_length = 0.0

    def _recompute_average(self) -> None:
        self._avg_doc_length = (
            self._total_tokens / self._total_docs if self._total_docs else 0.0
        )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def _add(self, entry: CatalogEntry) -> bool:
        """Add one entry without touching the average. Caller holds the lock."""
        if entry.id_string in self._documents:
            return False

        tokens = tokenize(entry.searchable_text)
        term_counts = Counter(tokens)
        self._documents[entry.id_string] = _IndexedDocument(
            tokens=tokens, entry=entry, term_counts=term_counts
        )
        self._doc_lengths[entry.id_string] = len(tokens)

        for term in term_counts:
            self._doc_freqs[term] = self._doc_freqs.get(term, 0) + 1

        self._total_docs += 1
        self._total_tokens += len(tokens)
        return True

    def index_tools(self, entries: Sequence[CatalogEntry]) -> None:
        """Replace the whole index with the given entries."""
        with self._lock:
            self.clear()
            self.add_tools_batch(entries)
        logger.info(f"BM25 index built with {self._total_docs} tools")

    def add_tool(self, entry: CatalogEntry) -> None:
        """Add a single tool. Adding an already indexed id is a no-op."""
        with self._lock:
            if self._add(entry):
                self._recompute_average()
            else:
                logger.debug(f"Skipping duplicate tool {entry.id_string}")

    def add_tools_batch(self, entries: Sequence[CatalogEntry]) -> None:
        """Add several tools, recomputing the average length once."""
        with self._lock:
            for entry in entries:
                self._add(entry)
            self._recompute_average()

    async def add_tools_async(
        self, entries: Sequence[CatalogEntry], chunk_size: int = 50
    ) -> None:
        """Add tools in chunks, yielding to the event loop between chunks.

        The final state is identical to ``add_tools_batch`` for the same
        input. Searches that run between chunks see the tools added so far.

        Args:
            entries: Entries to add, in order
            chunk_size: Number of entries processed before yielding
        """
        await self._add_in_chunks(entries, chunk_size, replace=False)

    async def index_tools_async(
        self, entries: Sequence[CatalogEntry], chunk_size: int = 50
    ) -> None:
        """Clear the index, then add entries in chunks.

        Clearing and adding the first chunk happen under one lock hold.
        Writers on other threads may still interleave between later chunks.
        """
        await self._add_in_chunks(entries, chunk_size, replace=True)
        logger.info(f"BM25 index built with {self._total_docs} tools")

    async def _add_in_chunks(
        self, entries: Sequence[CatalogEntry], chunk_size: int, replace: bool
    ) -> None:
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {chunk_size}")

        if replace and not entries:
            self.clear()
            return

        for start in range(0, len(entries), chunk_size):
            if start:
                await asyncio.sleep(0)
            with self._lock:
                if replace and not start:
                    self.clear()
                self.add_tools_batch(entries[start : start + chunk_size])

    def remove_tool(self, id_string: str) -> bool:
        """Remove a tool from the index.

        Returns:
            True if the tool was indexed, False otherwise.
        """
        with self._lock:
            doc = self._documents.pop(id_string, None)
            if doc is None:
                return False

            for term in doc.term_counts:
                freq = self._doc_freqs.get(term, 0)
                if freq <= 1:
                    self._doc_freqs.pop(term, None)
                else:
                    self._doc_freqs[term] = freq - 1

            self._total_tokens -= self._doc_lengths.pop(id_string)
            self._total_docs -= 1
            self._recompute_average()
            return True

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    def _idf(self, term: str) -> float:
        df = self._doc_freqs.get(term, 0)
        return math.log((self._total_docs - df + 0.5) / (df + 0.5) + 1)

    def search(self, query: str, limit: int) -> list[SearchResult]:
        """Rank indexed tools against a natural language query.

        Args:
            query: Free text query
            limit: Maximum results to return

        Returns:
            Results with a positive score, best first. Near-equal scores are
            ordered by ascending id.
        """
        query_tokens = tokenize(query)

        with self._lock:
            if not query_tokens or self._total_docs == 0:
                return []

            idfs = {
                token: self._idf(token)
                for token in set(query_tokens)
                if self._doc_freqs.get(token, 0) > 0
            }

            scores: list[tuple[str, float]] = []
            for id_string, doc in self._documents.items():
                doc_length = self._doc_lengths[id_string]
                length_norm = 1 - self.b + self.b * (doc_length / self._avg_doc_length)
                score = 0.0
                for token in query_tokens:
                    idf = idfs.get(token)
                    if idf is None:
                        continue
                    tf = doc.term_counts.get(token, 0)
                    numerator = tf * (self.k1 + 1)
                    denominator = tf + self.k1 * length_norm
                    score += idf * (numerator / denominator)

                if score > 0:
                    scores.append((id_string, score))

            ranked = sorted(scores, key=cmp_to_key(_compare_ranked))[:limit]
            return [
                to_search_result(self._documents[id_string].entry, score)
                for id_string, score in ranked
            ]
