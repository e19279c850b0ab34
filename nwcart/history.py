"""Purchase history: counts, direct matches, and what we learn from them.

The resolver only reads history. ``record_purchase`` and
``match_purchase_items`` are the import side; anything that writes here
should be followed by a fresh ``PurchaseCountCache``.
"""

import logging
import threading
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

import pandas as pd

from nwcart.config import DB_PATH, DEFAULT_CONTEXT, MATCH_CONFIRM_THRESHOLD
from nwcart.db import get_connection, get_purchase_counts, query_products_by_name_words
from nwcart.models import MATCH_BOTH, Product
from nwcart.text import name_overlaps, significant_words

__all__ = [
    "PurchasedMatch",
    "PurchaseCountCache",
    "find_best_purchased_match",
    "record_purchase",
    "suggest_preferences",
    "apply_suggestions",
    "update_frequency",
    "match_purchase_items",
]

logger = logging.getLogger(__name__)


class PurchasedMatch(NamedTuple):
    product: Product
    buy_count: int


class PurchaseCountCache:
    """product_id -> buy_count, loaded once on first use.

    Owned by one batch of resolutions (a cart build, a checkout session);
    create a new one, or call ``invalidate()``, when history may have changed.
    """

    def __init__(self, db_path: str = DB_PATH):
        self.db_path = db_path
        self._counts: Optional[Dict[int, int]] = None
        self._lock = threading.Lock()

    def counts(self) -> Dict[int, int]:
        if self._counts is None:
            with self._lock:
                if self._counts is None:
                    self._counts = get_purchase_counts(self.db_path)
        return self._counts

    def get(self, product_id: int) -> int:
        return self.counts().get(product_id, 0)

    def invalidate(self) -> None:
        with self._lock:
            self._counts = None


def find_best_purchased_match(db_path: str, search_term: str) -> Optional[PurchasedMatch]:
    """Most-bought product whose name contains every significant search word.

    Only product names are matched (not generic names), so a category like
    "beef steaks & schnitzel" cannot pull in a steak for "schnitzel".
    Returns None when the term has no significant words.
    """
    words = significant_words(search_term)
    if not words:
        return None
    rows = query_products_by_name_words(db_path, words, limit=1)
    if not rows:
        return None
    product, buy_count = rows[0]
    return PurchasedMatch(product, buy_count)


def record_purchase(
    db_path: str,
    order_date: str,
    items: Iterable[Dict[str, Any]],
    order_ref: Optional[str] = None,
    total: Optional[float] = None,
) -> int:
    """Store one order and its lines, returning the purchase id.

    Re-importing an ``order_ref`` that already exists is a no-op that returns
    the existing id.

    Args:
        db_path: Path to SQLite database.
        order_date: ISO date of the order (YYYY-MM-DD).
        items: Dicts with ``raw_name`` and optional ``product_id``,
            ``quantity``, ``price``, ``match_confidence``.
        order_ref: Store order number, used for de-duplication.
        total: Order total.
    """
    with get_connection(db_path) as conn:
        if order_ref is not None:
            existing = conn.execute(
                "SELECT id FROM purchases WHERE order_ref = ?", (order_ref,)
            ).fetchone()
            if existing:
                logger.info(f"Order {order_ref} already imported as purchase #{existing['id']}")
                return existing["id"]

        with conn:
            cursor = conn.execute(
                "INSERT INTO purchases (order_ref, order_date, total) VALUES (?, ?, ?)",
                (order_ref, order_date, total),
            )
            purchase_id = cursor.lastrowid
            lines = []
            for item in items:
                if not item.get("raw_name"):
                    raise ValueError(f"Purchase item without raw_name: {item}")
                lines.append(
                    (
                        purchase_id,
                        item["raw_name"],
                        item.get("product_id"),
                        item.get("quantity", 1),
                        item.get("price"),
                        item.get("match_confidence"),
                    )
                )
            conn.executemany(
                """
                INSERT INTO purchase_items
                    (purchase_id, raw_name, product_id, quantity, price, match_confidence)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                lines,
            )

    logger.info(f"Recorded purchase #{purchase_id} ({len(lines)} items, {order_date})")
    return purchase_id


def suggest_preferences(db_path: str = DB_PATH) -> List[Dict[str, Any]]:
    """Suggest default preferences from dominant purchases per generic name.

    A generic name qualifies when it has no default preference yet, is not a
    compound catalog category (``&``/``,`` or more than three words), has at
    least 3 purchases, its top product has at least 70% share and a name that
    overlaps the generic name, and no runner-up was bought 3+ times.

    Suggestions are returned for confirmation, never applied here.
    """
    with get_connection(db_path) as conn:
        df = pd.read_sql_query(
            """
            SELECT
                p.generic_name,
                pi.product_id,
                p.name AS product_name,
                p.brand,
                p.price,
                COUNT(*) AS buy_count
            FROM purchase_items pi
            JOIN products p ON p.id = pi.product_id
            WHERE pi.product_id IS NOT NULL
              AND p.generic_name IS NOT NULL
            GROUP BY p.generic_name, pi.product_id
            ORDER BY p.generic_name, buy_count DESC, pi.product_id
            """,
            conn,
        )
        existing = {
            row["generic_name"].lower()
            for row in conn.execute(
                "SELECT generic_name FROM brand_preferences WHERE context = ?", (DEFAULT_CONTEXT,)
            ).fetchall()
        }

    if df.empty:
        return []

    df["key"] = df["generic_name"].str.lower()
    suggestions = []

    for key, group in df.groupby("key", sort=True):
        if key in existing:
            continue

        generic_name = group["generic_name"].iloc[0]
        if "&" in generic_name or "," in generic_name:
            continue
        if len(generic_name.split()) > 3:
            continue

        group = group.sort_values("buy_count", ascending=False, kind="stable")
        total_buys = int(group["buy_count"].sum())
        if total_buys < 3:
            continue

        top = group.iloc[0]
        top_count = int(top["buy_count"])
        share = top_count / total_buys
        if share < 0.7:
            continue
        if not name_overlaps(top["product_name"], generic_name):
            continue
        if len(group) > 1 and int(group["buy_count"].iloc[1]) >= 3:
            continue

        suggestions.append(
            {
                "generic_name": generic_name,
                "product_id": int(top["product_id"]),
                "product_name": top["product_name"],
                "brand": None if pd.isna(top["brand"]) else top["brand"],
                "price": None if pd.isna(top["price"]) else float(top["price"]),
                "buy_count": top_count,
                "total_buys": total_buys,
                "share": round(share * 100),
                "confidence": min(0.85, 0.5 + share * 0.3 + min(top_count / 10, 0.2)),
            }
        )

    suggestions.sort(key=lambda s: s["share"], reverse=True)
    return suggestions


def apply_suggestions(preference_store, suggestions: Iterable[Dict[str, Any]]) -> int:
    """Write confirmed suggestions as ``history`` preferences."""
    applied = 0
    for s in suggestions:
        preference_store.set(
            s["generic_name"],
            s["product_id"],
            source="history",
            confidence=s["confidence"],
        )
        applied += 1
    return applied


def update_frequency(db_path: str = DB_PATH) -> int:
    """Rebuild ``purchase_frequency`` from all matched purchase lines.

    Per generic name: distinct order dates, mean days between consecutive
    dates (None for a single date), last purchase date, and the (upper)
    median quantity.

    Returns:
        Number of generic names written.
    """
    with get_connection(db_path) as conn:
        df = pd.read_sql_query(
            """
            SELECT p.generic_name, pu.order_date, pi.quantity
            FROM purchase_items pi
            JOIN products p ON p.id = pi.product_id
            JOIN purchases pu ON pu.id = pi.purchase_id
            WHERE pi.product_id IS NOT NULL
              AND p.generic_name IS NOT NULL
              AND pu.order_date IS NOT NULL
            ORDER BY p.generic_name, pu.order_date
            """,
            conn,
        )

        rows = []
        if not df.empty:
            df["key"] = df["generic_name"].str.lower()
            df["quantity"] = df["quantity"].fillna(1).replace(0, 1)

            for _, group in df.groupby("key", sort=True):
                dates = sorted(set(group["order_date"]))
                avg_days = None
                if len(dates) >= 2:
                    gaps = pd.Series(pd.to_datetime(dates)).diff().dropna()
                    avg_days = float(gaps.dt.total_seconds().mean() / 86400)

                quantities = sorted(group["quantity"].tolist())
                rows.append(
                    (
                        group["generic_name"].iloc[0],
                        avg_days,
                        dates[-1],
                        len(dates),
                        float(quantities[len(quantities) // 2]),
                    )
                )

        with conn:
            conn.execute("DELETE FROM purchase_frequency")
            conn.executemany(
                """
                INSERT INTO purchase_frequency
                    (generic_name, avg_days_between, last_purchased, purchase_count, typical_quantity, updated_at)
                VALUES (?, ?, ?, ?, ?, datetime('now'))
                """,
                rows,
            )

    logger.info(f"Purchase frequency updated for {len(rows)} item(s)")
    return len(rows)


def _match_confidence(raw_name: str, best) -> float:
    raw = raw_name.lower()
    name = best.name.lower()
    if name == raw:
        return 0.95
    if raw in name or name in raw:
        return 0.8
    if best.match_type == MATCH_BOTH:
        return 0.7
    return 0.5


def match_purchase_items(db_path: str, purchase_id: int, searcher, limit: int = 5) -> Dict[str, Any]:
    """Link a purchase's unmatched lines to catalog products.

    The top hybrid-search hit is stored with a rule-based confidence; lines
    under ``MATCH_CONFIRM_THRESHOLD`` are flagged along with the top three
    candidates.
    """
    with get_connection(db_path) as conn:
        items = conn.execute(
            "SELECT * FROM purchase_items WHERE purchase_id = ? AND product_id IS NULL ORDER BY id",
            (purchase_id,),
        ).fetchall()

    if not items:
        return {"matched": 0, "flagged": 0, "total": 0, "results": []}

    matched = 0
    flagged = 0
    results = []
    updates = []

    for item in items:
        raw_name = item["raw_name"]
        merged = searcher.search(raw_name, limit)

        if not merged:
            flagged += 1
            results.append({"item": raw_name, "status": "no_match", "candidates": []})
            continue

        best = merged[0]
        confidence = _match_confidence(raw_name, best)
        updates.append((best.id, confidence, item["id"]))

        if confidence < MATCH_CONFIRM_THRESHOLD:
            flagged += 1
            results.append(
                {
                    "item": raw_name,
                    "status": "low_confidence",
                    "matched_to": best.name,
                    "confidence": confidence,
                    "candidates": [
                        {"id": c.id, "name": c.name, "brand": c.brand} for c in merged[:3]
                    ],
                }
            )
        else:
            matched += 1
            results.append(
                {"item": raw_name, "status": "matched", "matched_to": best.name, "confidence": confidence}
            )

    with get_connection(db_path) as conn:
        with conn:
            conn.executemany(
                "UPDATE purchase_items SET product_id = ?, match_confidence = ? WHERE id = ?",
                updates,
            )

    return {"matched": matched, "flagged": flagged, "total": len(items), "results": results}
