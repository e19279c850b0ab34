"""Resolve free-text grocery item names to catalog products.

Pipeline, in trust order, each stage short-circuiting the rest:

1. Preference for the generic name (if confident and relevant)
2. Product the user has bought before whose name contains every word
3. Lexical + semantic search, merged and scored

A result with ``resolved=False`` carries up to five candidates for a human
to choose from.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from nwcart.config import (
    AUTO_CONFIRM_THRESHOLD,
    BATCH_WORKERS,
    DB_PATH,
    DEFAULT_CONTEXT,
    DEFAULT_WEIGHTS,
    MAX_CANDIDATES,
    SEARCH_LIMIT,
    SEMANTIC_TIMEOUT,
    ScoringWeights,
)
from nwcart.db import query_products_by_name_words
from nwcart.history import PurchaseCountCache, find_best_purchased_match
from nwcart.logging_config import log_resolution_event
from nwcart.models import (
    MATCH_BOTH,
    MATCH_FTS,
    SOURCE_NONE,
    SOURCE_PREFERENCE,
    SOURCE_PURCHASE_HISTORY,
    SOURCE_SEARCH,
    STRATEGY_FIXED,
    STRATEGY_LOWEST_PRICE,
    Preference,
    ResolutionError,
    ResolutionResult,
    ScoredCandidate,
)
from nwcart.preferences import PreferenceStore
from nwcart.search import HybridSearcher, LexicalIndex, SemanticIndex
from nwcart.text import is_relevant, significant_words

__all__ = [
    "ResolutionEngine",
    "item_name",
    "triage_resolution",
    "checkout_alternatives",
    "build_checkout_items",
]

logger = logging.getLogger(__name__)

Item = Union[str, Mapping[str, Any]]


def item_name(item: Item) -> str:
    """Generic name of a batch item: a string, or a mapping with a name key."""
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        for key in ("generic_name", "genericName", "name"):
            if item.get(key) is not None:
                return item[key]
    raise ResolutionError(f"Cannot find a generic name in item: {item!r}")


class ResolutionEngine:
    """Resolves item names against one catalog database.

    Semantic search is enabled by passing an ``embedder``; without one the
    engine is lexical-only. The purchase-count cache belongs to the current
    batch and is replaced by ``start_batch()``.
    """

    def __init__(
        self,
        db_path: str = DB_PATH,
        embedder: Any = None,
        preferences: Optional[PreferenceStore] = None,
        searcher: Optional[HybridSearcher] = None,
        weights: ScoringWeights = DEFAULT_WEIGHTS,
        semantic_timeout: float = SEMANTIC_TIMEOUT,
    ):
        self.db_path = db_path
        self.weights = weights
        self.preferences = preferences or PreferenceStore(db_path)
        if searcher is None:
            semantic = SemanticIndex(db_path, embedder) if embedder is not None else None
            searcher = HybridSearcher(LexicalIndex(db_path), semantic, timeout=semantic_timeout)
        self.searcher = searcher
        self.purchase_counts = PurchaseCountCache(db_path)

    def start_batch(self) -> None:
        """Drop cached purchase counts; call at the start of each cart/list/checkout build."""
        self.purchase_counts = PurchaseCountCache(self.db_path)

    def close(self) -> None:
        self.searcher.close()

    def __enter__(self) -> "ResolutionEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # -- stages -----------------------------------------------------------

    def _from_preference(self, pref: Preference) -> ResolutionResult:
        if pref.is_dynamic:
            product = self.preferences.resolve_dynamic(pref)
            if product is not None:
                return ResolutionResult(
                    resolved=True,
                    source=SOURCE_PREFERENCE,
                    confidence=pref.confidence,
                    product_id=product.id,
                    product_name=product.name,
                    brand=product.brand,
                    price=product.price,
                    strategy=pref.strategy,
                )
            logger.info(
                f"Dynamic preference {pref.generic_name!r} ({pref.strategy}) fell back to its anchor product"
            )

        return ResolutionResult(
            resolved=True,
            source=SOURCE_PREFERENCE,
            confidence=pref.confidence,
            product_id=pref.product_id,
            product_name=pref.product_name,
            brand=pref.brand,
            price=pref.price,
            strategy=pref.strategy or STRATEGY_FIXED,
        )

    def _from_history(self, name: str) -> Optional[ResolutionResult]:
        match = find_best_purchased_match(self.db_path, name)
        if match is None:
            return None
        w = self.weights
        confidence = min(
            w.history_confidence_cap,
            w.history_confidence_base + match.buy_count * w.history_confidence_step,
        )
        return ResolutionResult(
            resolved=True,
            source=SOURCE_PURCHASE_HISTORY,
            confidence=confidence,
            product_id=match.product.id,
            product_name=match.product.name,
            brand=match.product.brand,
            price=match.product.price,
        )

    def score_candidate(self, candidate: ScoredCandidate, generic_name: str) -> float:
        """Score one merged candidate in [0, 1]."""
        w = self.weights
        term = generic_name.lower()
        relevant = is_relevant(candidate.name, generic_name)
        candidate_generic = (candidate.generic_name or "").lower()

        score = 0.0
        if candidate_generic and candidate_generic == term:
            score += w.exact_generic
        elif candidate_generic and term in candidate_generic and relevant:
            score += w.partial_generic

        if candidate.match_type == MATCH_BOTH:
            score += w.match_both
        elif candidate.match_type == MATCH_FTS:
            score += w.match_fts
        else:
            score += w.match_vec

        if not candidate.in_stock:
            score -= w.out_of_stock_penalty
        if candidate.on_special:
            score += w.on_special_bonus

        if candidate.vec_distance is not None:
            score += max(0.0, w.distance_ramp_base - candidate.vec_distance * w.distance_ramp_slope)

        buy_count = self.purchase_counts.get(candidate.id)
        if buy_count > 0 and relevant:
            score += min(w.history_boost_cap, w.history_boost_base + buy_count * w.history_boost_step)

        return min(1.0, max(0.0, score))

    def score_candidates(self, generic_name: str, merged: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
        """Score and sort descending; equal scores keep merge order."""
        scored = [c.with_score(self.score_candidate(c, generic_name)) for c in merged]
        return sorted(scored, key=lambda c: c.score, reverse=True)

    # -- public API -------------------------------------------------------

    def resolve(
        self,
        generic_name: str,
        context: str = DEFAULT_CONTEXT,
        recipe_context: Optional[str] = None,
    ) -> ResolutionResult:
        """Resolve one item name.

        Args:
            generic_name: Free-text item, e.g. "coconut milk".
            context: Preference scope; falls back to "default".
            recipe_context: Recipe names used to steer the semantic query.

        Raises:
            ResolutionError: if ``generic_name`` is not a string.
        """
        if not isinstance(generic_name, str):
            raise ResolutionError(f"generic_name must be a string, got {generic_name!r}")

        name = generic_name.strip()
        if not name:
            return ResolutionResult.unresolved(SOURCE_NONE)

        threshold = self.weights.auto_resolve_threshold

        pref = self.preferences.get(name, context)
        if pref is not None and pref.confidence >= threshold:
            if is_relevant(pref.product_name, name):
                result = self._from_preference(pref)
                self._log(name, result)
                return result
            log_resolution_event(
                "preference_vetoed",
                {
                    "message": f"Preference for {pref.generic_name!r} skipped: {pref.product_name!r} not relevant to {name!r}",
                    "generic_name": name,
                    "product_id": pref.product_id,
                },
                level=logging.DEBUG,
            )

        result = self._from_history(name)
        if result is not None:
            self._log(name, result)
            return result

        semantic_query = f"{name} for {recipe_context}" if recipe_context else name
        merged = self.searcher.search(name, SEARCH_LIMIT, semantic_query=semantic_query)
        if not merged:
            result = ResolutionResult.unresolved(SOURCE_NONE)
            self._log(name, result)
            return result

        scored = self.score_candidates(name, merged)
        top = scored[:MAX_CANDIDATES]
        best = scored[0]

        if best.score >= threshold:
            result = ResolutionResult(
                resolved=True,
                source=SOURCE_SEARCH,
                confidence=best.score,
                product_id=best.id,
                product_name=best.name,
                brand=best.brand,
                price=best.price,
                candidates=top,
            )
        else:
            result = ResolutionResult.unresolved(SOURCE_SEARCH, top)

        self._log(name, result)
        return result

    def resolve_batch(
        self,
        items: Iterable[Item],
        recipe_context: Optional[str] = None,
        context: str = DEFAULT_CONTEXT,
        workers: int = BATCH_WORKERS,
    ) -> List[Tuple[Item, ResolutionResult]]:
        """Resolve many items, returning ``(item, result)`` pairs in input order.

        Starts a new batch (fresh purchase counts). Items are independent so
        they may be resolved on ``workers`` threads.
        """
        items = list(items)
        names = [item_name(item) for item in items]
        self.start_batch()

        def _resolve(name: str) -> ResolutionResult:
            return self.resolve(name, context=context, recipe_context=recipe_context)

        if workers <= 1 or len(names) <= 1:
            results = [_resolve(name) for name in names]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolve") as pool:
                results = list(pool.map(_resolve, names))

        resolved = sum(1 for r in results if r.resolved)
        logger.info(f"Resolved {resolved}/{len(results)} items")
        return list(zip(items, results))

    def _log(self, name: str, result: ResolutionResult) -> None:
        log_resolution_event(
            "resolved" if result.resolved else "unresolved",
            {
                "message": f"{name!r} -> {result.product_name or '(none)'} [{result.source}]",
                "generic_name": name,
                "source": result.source,
                "product_id": result.product_id,
                "confidence": round(result.confidence, 4),
                "candidate_count": len(result.candidates or []),
            },
            level=logging.DEBUG,
        )


def triage_resolution(result: ResolutionResult) -> Dict[str, Any]:
    """Decide whether a checkout item can be confirmed without asking.

    Returns ``auto_confirmed``, ``selected_product_id`` and a short label.
    """
    selected = result.product_id if result.resolved else None
    auto = False
    label = "Low confidence"

    if result.resolved:
        if result.source == SOURCE_PREFERENCE:
            if (result.strategy or STRATEGY_FIXED) == STRATEGY_FIXED:
                auto, label = True, "Preference"
            elif result.strategy == STRATEGY_LOWEST_PRICE:
                label = "Lowest price"
            else:
                label = "On special"
        elif result.source == SOURCE_PURCHASE_HISTORY:
            if result.confidence >= AUTO_CONFIRM_THRESHOLD:
                auto, label = True, "Previously bought"
            else:
                label = "History match"
        elif result.source == SOURCE_SEARCH and result.confidence >= AUTO_CONFIRM_THRESHOLD:
            auto, label = True, "Best match"

    return {"auto_confirmed": auto, "selected_product_id": selected, "label": label}


def checkout_alternatives(
    engine: ResolutionEngine,
    name: str,
    candidates: Optional[List[ScoredCandidate]] = None,
    limit: int = SEARCH_LIMIT,
) -> List[ScoredCandidate]:
    """Products to offer when swapping a checkout item.

    Starts from the resolution's candidates, or a lexical search when the
    item was resolved without one (preference and history hits), then adds
    previously bought products whose name contains every significant word.
    """
    pool = list(candidates) if candidates else engine.searcher.lexical.search(name, limit)
    seen = {c.id for c in pool}

    words = significant_words(name)
    purchased = query_products_by_name_words(engine.db_path, words, limit=limit) if words else []
    for product, _buy_count in purchased:
        if product.id not in seen:
            pool.append(ScoredCandidate.from_product(product))
            seen.add(product.id)
    return pool


def build_checkout_items(engine: ResolutionEngine, items: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Resolve and triage the items of a new checkout session.

    Each item is a mapping with ``name`` and optional ``qty`` (default 1).
    """
    items = list(items)
    checkout = []
    for item, result in engine.resolve_batch(items):
        name = item_name(item)
        checkout.append(
            {
                "name": name,
                "qty": item.get("qty") or 1,
                "resolution": result,
                "candidates": checkout_alternatives(engine, name, result.candidates),
                **triage_resolution(result),
            }
        )
    return checkout
