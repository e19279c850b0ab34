"""Lexical (FTS5) and semantic (embedding) product search, and their merge.

Both indexes return ``ScoredCandidate`` rows tagged with their match type;
``merge_results`` folds them into one ranked list.
"""

import functools
import logging
import sqlite3
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Iterable, List, Optional

import numpy as np

from nwcart.config import BATCH_WORKERS, DB_PATH, SEARCH_LIMIT, SEMANTIC_TIMEOUT
from nwcart.db import get_connection, get_products_by_ids
from nwcart.embeddings import blob_to_vector
from nwcart.models import MATCH_BOTH, MATCH_FTS, MATCH_VEC, Product, ScoredCandidate

__all__ = [
    "sanitize_query",
    "build_prefix_query",
    "LexicalIndex",
    "SemanticIndex",
    "merge_results",
    "HybridSearcher",
]

logger = logging.getLogger(__name__)

# Characters with meaning in FTS5 query syntax
_FTS_SPECIAL = str.maketrans("", "", "'\"*()")


def sanitize_query(query: Optional[str]) -> str:
    """Strip FTS5 syntax characters (quotes, ``*``, parens) and surrounding space."""
    return (query or "").translate(_FTS_SPECIAL).strip()


def build_prefix_query(sanitized: str) -> str:
    """Quote each token and add a prefix wildcard: ``chick breast`` -> ``"chick"* "breast"*``."""
    return " ".join(f'"{token}"*' for token in sanitized.split())


class LexicalIndex:
    """Full-text search over name, brand, generic name and categories."""

    _QUERY = """
        SELECT p.*, products_fts.rank AS fts_rank
        FROM products_fts
        JOIN products p ON p.id = products_fts.rowid
        WHERE products_fts MATCH ?
        ORDER BY products_fts.rank
        LIMIT ?
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    def search(self, query: str, limit: int = SEARCH_LIMIT) -> List[ScoredCandidate]:
        """Prefix search, best match first (lower rank is better).

        Falls back to a literal phrase query if the prefix query does not
        parse, and to an empty list if that fails too.
        """
        sanitized = sanitize_query(query)
        if not sanitized:
            return []

        with get_connection(self.db_path) as conn:
            try:
                rows = conn.execute(self._QUERY, (build_prefix_query(sanitized), limit)).fetchall()
            except sqlite3.OperationalError as e:
                logger.debug(f"Prefix query failed for {sanitized!r} ({e}), retrying as phrase")
                try:
                    rows = conn.execute(self._QUERY, (f'"{sanitized}"', limit)).fetchall()
                except sqlite3.OperationalError as e2:
                    logger.warning(f"Full-text search failed for {sanitized!r}: {e2}")
                    return []

        return [
            ScoredCandidate.from_product(
                Product.from_row(row), match_type=MATCH_FTS, fts_rank=row["fts_rank"]
            )
            for row in rows
        ]


class SemanticIndex:
    """Nearest-neighbour search over stored product embeddings.

    Distances are cosine distances in [0, 2]. Any failure here (embedder
    unavailable, bad vectors) is raised; callers decide how to degrade.
    """

    def __init__(self, db_path: str = DB_PATH, embedder: Any = None):
        self.db_path = db_path
        self.embedder = embedder

    def _load_matrix(self, dimensions: int):
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                "SELECT product_id, embedding FROM product_embeddings WHERE dimensions = ?",
                (dimensions,),
            ).fetchall()
        if not rows:
            return [], None
        ids = [row["product_id"] for row in rows]
        matrix = np.vstack([blob_to_vector(row["embedding"]) for row in rows]).astype(np.float64)
        return ids, matrix

    def search(self, query: str, limit: int = SEARCH_LIMIT) -> List[ScoredCandidate]:
        if not query or not query.strip() or self.embedder is None:
            return []

        query_vec = np.asarray(self.embedder.embed(query), dtype=np.float64)
        query_norm = np.linalg.norm(query_vec)
        if query_norm == 0:
            return []

        ids, matrix = self._load_matrix(len(query_vec))
        if matrix is None:
            return []

        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        similarity = (matrix @ query_vec) / (norms * query_norm)
        distances = np.clip(1.0 - similarity, 0.0, 2.0)

        # Stable sort keeps ties in storage order
        order = np.argsort(distances, kind="stable")[:limit]
        top_ids = [ids[i] for i in order]
        distance_by_id = {ids[i]: float(distances[i]) for i in order}

        return [
            ScoredCandidate.from_product(
                product, match_type=MATCH_VEC, vec_distance=distance_by_id[product.id]
            )
            for product in get_products_by_ids(self.db_path, top_ids)
        ]


def _compare_merged(a: ScoredCandidate, b: ScoredCandidate) -> int:
    if a.match_type == MATCH_BOTH and b.match_type != MATCH_BOTH:
        return -1
    if b.match_type == MATCH_BOTH and a.match_type != MATCH_BOTH:
        return 1
    if a.vec_distance is not None and b.vec_distance is not None:
        return (a.vec_distance > b.vec_distance) - (a.vec_distance < b.vec_distance)
    if a.fts_rank is not None and b.fts_rank is not None:
        return (a.fts_rank > b.fts_rank) - (a.fts_rank < b.fts_rank)
    return 0


def merge_results(
    lexical: Iterable[ScoredCandidate],
    semantic: Iterable[ScoredCandidate],
) -> List[ScoredCandidate]:
    """Merge lexical and semantic hits keyed on product id.

    Ordering: BOTH before single-source hits, then ascending distance when
    both rows have one, then ascending rank when both have one, otherwise
    insertion order (the sort is stable).
    """
    merged = {}

    for hit in lexical:
        merged[hit.id] = ScoredCandidate.from_product(
            hit, match_type=MATCH_FTS, fts_rank=hit.fts_rank, vec_distance=None
        )

    for hit in semantic:
        existing = merged.get(hit.id)
        if existing is not None:
            existing.match_type = MATCH_BOTH
            existing.vec_distance = hit.vec_distance
        else:
            merged[hit.id] = ScoredCandidate.from_product(
                hit, match_type=MATCH_VEC, fts_rank=None, vec_distance=hit.vec_distance
            )

    return sorted(merged.values(), key=functools.cmp_to_key(_compare_merged))


class HybridSearcher:
    """Runs both indexes for one query and merges them.

    The lexical lookup runs on the calling thread while the semantic one
    runs on ``executor``; the merge waits for the semantic result up to
    ``timeout`` seconds and substitutes an empty list on error or timeout.
    """

    def __init__(
        self,
        lexical: LexicalIndex,
        semantic: Optional[SemanticIndex] = None,
        executor: Optional[Executor] = None,
        timeout: float = SEMANTIC_TIMEOUT,
    ):
        self.lexical = lexical
        self.semantic = semantic
        self.timeout = timeout
        self._executor = executor
        self._owns_executor = executor is None
        self._executor_lock = threading.Lock()

    @property
    def executor(self) -> Executor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=max(2, BATCH_WORKERS), thread_name_prefix="semantic"
                )
            return self._executor

    def close(self) -> None:
        with self._executor_lock:
            if self._owns_executor and self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None

    def _join_semantic(self, future: Future, text: str, timeout: Optional[float]) -> List[ScoredCandidate]:
        """Wait for the semantic lookup; errors and timeouts mean no results."""
        wait = self.timeout if timeout is None else timeout
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            future.cancel()
            logger.warning(f"Semantic search timed out after {wait}s for {text!r}")
        except Exception as e:
            logger.warning(f"Semantic search unavailable for {text!r}: {e}")
        return []

    def search(
        self,
        query: str,
        limit: int = SEARCH_LIMIT,
        semantic_query: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[ScoredCandidate]:
        """Merged lexical + semantic candidates for ``query``.

        Args:
            query: Text for the lexical index.
            limit: Per-index result limit.
            semantic_query: Text to embed, if different from ``query``.
            timeout: Override for the semantic join timeout.
        """
        future = None
        vec_text = semantic_query if semantic_query is not None else query
        if self.semantic is not None and query and query.strip():
            future = self.executor.submit(self.semantic.search, vec_text, limit)

        lexical_hits = self.lexical.search(query, limit)

        semantic_hits: List[ScoredCandidate] = []
        if future is not None:
            semantic_hits = self._join_semantic(future, vec_text, timeout)

        return merge_results(lexical_hits, semantic_hits)
