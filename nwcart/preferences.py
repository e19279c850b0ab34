"""Preference store: which product to use for a generic item name.

Preferences are keyed on (lowercased generic name, context). A lookup in a
named context falls back to the ``default`` context.
"""

import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional

from nwcart.config import DB_PATH, DEFAULT_CONTEXT, EXPLICIT_CONFIDENCE
from nwcart.db import get_connection, get_product, get_products_by_ids
from nwcart.models import (
    PREFERENCE_SOURCES,
    STRATEGIES,
    STRATEGY_FIXED,
    STRATEGY_ON_SPECIAL,
    Preference,
    PreferenceError,
    Product,
)
from nwcart.text import normalize_name

__all__ = ["PreferenceStore", "decode_candidate_notes", "pick_by_strategy"]

logger = logging.getLogger(__name__)

_SELECT = """
    SELECT bp.*, p.name AS product_name, p.brand, p.price
    FROM brand_preferences bp
    JOIN products p ON p.id = bp.preferred_product_id
"""


def decode_candidate_notes(notes: Optional[str]) -> Optional[List[int]]:
    """Read ``{"candidates": [ids...]}`` from a notes blob.

    Returns None when the notes are missing, not JSON, or the wrong shape.
    """
    if not notes:
        return None
    try:
        parsed = json.loads(notes)
    except (TypeError, json.JSONDecodeError):
        return None
    candidates = parsed.get("candidates") if isinstance(parsed, dict) else None
    if not isinstance(candidates, list) or not candidates:
        return None
    try:
        return [int(c) for c in candidates]
    except (TypeError, ValueError):
        return None


def _price_key(product: Product) -> float:
    # Unpriced products sort after priced ones
    return product.price if product.price is not None else float("inf")


def pick_by_strategy(products: List[Product], strategy: str) -> Optional[Product]:
    """Choose one product for a dynamic strategy.

    In-stock products are preferred whenever at least one is in stock.
    ``on_special`` ranks specials first, then price; ``lowest_price`` ranks
    by price only. Ties keep the candidate order.
    """
    if not products:
        return None
    in_stock = [p for p in products if p.in_stock]
    pool = in_stock or list(products)

    if strategy == STRATEGY_ON_SPECIAL:
        pool.sort(key=lambda p: (not p.on_special, _price_key(p)))
    else:
        pool.sort(key=_price_key)
    return pool[0]


class PreferenceStore:
    """SQLite-backed preference storage."""

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path

    def _row_to_preference(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Preference:
        candidate_rows = conn.execute(
            "SELECT product_id FROM preference_candidates WHERE preference_id = ? ORDER BY position",
            (row["id"],),
        ).fetchall()
        return Preference(
            generic_name=row["generic_name"],
            context=row["context"],
            product_id=row["preferred_product_id"],
            confidence=row["confidence"],
            source=row["source"],
            strategy=row["strategy"] or STRATEGY_FIXED,
            notes=row["notes"],
            candidate_ids=[r["product_id"] for r in candidate_rows],
            product_name=row["product_name"],
            brand=row["brand"],
            price=row["price"],
            updated_at=row["updated_at"],
        )

    def get(self, generic_name: str, context: str = DEFAULT_CONTEXT) -> Optional[Preference]:
        """Look up a preference, case-insensitively, falling back to ``default``."""
        key = normalize_name(generic_name)
        if not key:
            return None

        with get_connection(self.db_path) as conn:
            row = conn.execute(
                _SELECT + " WHERE LOWER(bp.generic_name) = ? AND bp.context = ?",
                (key, context),
            ).fetchone()
            if row is None and context != DEFAULT_CONTEXT:
                row = conn.execute(
                    _SELECT + " WHERE LOWER(bp.generic_name) = ? AND bp.context = ?",
                    (key, DEFAULT_CONTEXT),
                ).fetchone()
            if row is None:
                return None
            return self._row_to_preference(conn, row)

    def get_all(self, generic_name: str) -> List[Preference]:
        """Every context's preference for one generic name."""
        with get_connection(self.db_path) as conn:
            rows = conn.execute(
                _SELECT + " WHERE LOWER(bp.generic_name) = ? ORDER BY bp.context",
                (normalize_name(generic_name),),
            ).fetchall()
            return [self._row_to_preference(conn, row) for row in rows]

    def list_all(self) -> List[Preference]:
        with get_connection(self.db_path) as conn:
            rows = conn.execute(_SELECT + " ORDER BY bp.generic_name, bp.context").fetchall()
            return [self._row_to_preference(conn, row) for row in rows]

    def set(
        self,
        generic_name: str,
        product_id: int,
        context: str = DEFAULT_CONTEXT,
        source: str = "explicit",
        confidence: float = EXPLICIT_CONFIDENCE,
        strategy: str = STRATEGY_FIXED,
        notes: Optional[str] = None,
        candidate_ids: Optional[Iterable[int]] = None,
    ) -> Preference:
        """Insert or overwrite the preference for (generic_name, context).

        Dynamic strategies keep their candidate product ids in
        ``preference_candidates``; the ids are also written to ``notes`` as
        ``{"candidates": [...]}`` when no notes are given.

        Raises:
            PreferenceError: empty name, unknown product, strategy or source,
                or confidence outside [0, 1].
        """
        key = normalize_name(generic_name)
        if not key:
            raise PreferenceError("generic_name is required")
        if strategy not in STRATEGIES:
            raise PreferenceError(f"Unknown strategy: {strategy!r}. Must be one of {STRATEGIES}")
        if source not in PREFERENCE_SOURCES:
            raise PreferenceError(f"Unknown source: {source!r}. Must be one of {PREFERENCE_SOURCES}")
        if not 0.0 <= confidence <= 1.0:
            raise PreferenceError(f"confidence must be between 0 and 1, got {confidence}")
        if get_product(self.db_path, product_id) is None:
            raise PreferenceError(f"Product {product_id} not found")

        candidates = [int(c) for c in candidate_ids] if candidate_ids else []
        if candidates and notes is None:
            notes = json.dumps({"candidates": candidates})

        with get_connection(self.db_path) as conn:
            with conn:
                conn.execute(
                    """
                    INSERT INTO brand_preferences
                        (generic_name, context, preferred_product_id, confidence, source, notes, strategy)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(generic_name, context) DO UPDATE SET
                        preferred_product_id = excluded.preferred_product_id,
                        confidence = excluded.confidence,
                        source = excluded.source,
                        notes = excluded.notes,
                        strategy = excluded.strategy,
                        updated_at = datetime('now')
                    """,
                    (key, context, product_id, confidence, source, notes, strategy),
                )
                pref_id = conn.execute(
                    "SELECT id FROM brand_preferences WHERE generic_name = ? AND context = ?",
                    (key, context),
                ).fetchone()["id"]
                conn.execute("DELETE FROM preference_candidates WHERE preference_id = ?", (pref_id,))
                conn.executemany(
                    "INSERT INTO preference_candidates (preference_id, product_id, position) VALUES (?, ?, ?)",
                    [(pref_id, cid, pos) for pos, cid in enumerate(dict.fromkeys(candidates))],
                )

        logger.info(f"Preference set: {key!r} [{context}] -> product {product_id} ({source}, {strategy})")
        return self.get(key, context)

    def swap(self, generic_name: str, product_id: int, context: str = DEFAULT_CONTEXT) -> Preference:
        """Record a user's swap at checkout as a fixed preference."""
        return self.set(
            generic_name,
            product_id,
            context=context,
            source="swap",
            confidence=EXPLICIT_CONFIDENCE,
            strategy=STRATEGY_FIXED,
        )

    def candidate_ids(self, preference: Preference) -> Optional[List[int]]:
        """Candidate ids for a dynamic preference: relation rows, else notes."""
        if preference.candidate_ids:
            return list(preference.candidate_ids)
        return decode_candidate_notes(preference.notes)

    def resolve_dynamic(self, preference: Preference) -> Optional[Product]:
        """Pick today's product for a dynamic preference.

        Returns None when candidates cannot be decoded or none of them are in
        the catalog; the caller then uses the anchor product.
        """
        ids = self.candidate_ids(preference)
        if not ids:
            logger.debug(f"No usable candidates for dynamic preference {preference.generic_name!r}")
            return None
        products = get_products_by_ids(self.db_path, ids)
        return pick_by_strategy(products, preference.strategy)

    def to_rows(self) -> List[Dict[str, Any]]:
        """Preferences as plain dicts, for CLI/JSON output."""
        return [
            {
                "generic_name": p.generic_name,
                "context": p.context,
                "product_id": p.product_id,
                "product_name": p.product_name,
                "brand": p.brand,
                "price": p.price,
                "confidence": p.confidence,
                "source": p.source,
                "strategy": p.strategy,
                "candidates": self.candidate_ids(p) or [],
            }
            for p in self.list_all()
        ]
