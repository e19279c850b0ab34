"""Data models for catalog products, preferences and resolution results."""

from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Dict, List, Mapping, Optional

__all__ = [
    "MATCH_FTS",
    "MATCH_VEC",
    "MATCH_BOTH",
    "SOURCE_PREFERENCE",
    "SOURCE_PURCHASE_HISTORY",
    "SOURCE_SEARCH",
    "SOURCE_NONE",
    "STRATEGY_FIXED",
    "STRATEGY_LOWEST_PRICE",
    "STRATEGY_ON_SPECIAL",
    "STRATEGIES",
    "PREFERENCE_SOURCES",
    "NwcartError",
    "PreferenceError",
    "ResolutionError",
    "Product",
    "Preference",
    "ScoredCandidate",
    "ResolutionResult",
]

# Which search index surfaced a candidate
MATCH_FTS = "FTS"
MATCH_VEC = "VEC"
MATCH_BOTH = "BOTH"

# Which pipeline stage produced a result
SOURCE_PREFERENCE = "preference"
SOURCE_PURCHASE_HISTORY = "purchase_history"
SOURCE_SEARCH = "search"
SOURCE_NONE = "none"

# How a preference turns into a concrete product
STRATEGY_FIXED = "fixed"
STRATEGY_LOWEST_PRICE = "lowest_price"
STRATEGY_ON_SPECIAL = "on_special"
STRATEGIES = (STRATEGY_FIXED, STRATEGY_LOWEST_PRICE, STRATEGY_ON_SPECIAL)

# Who wrote a preference row
PREFERENCE_SOURCES = ("explicit", "history", "wizard", "swap")


class NwcartError(ValueError):
    """Base class for contract errors raised by the resolver."""


class PreferenceError(NwcartError):
    """Invalid preference write (unknown product, unknown strategy)."""


class ResolutionError(NwcartError):
    """Invalid resolution request (missing generic name)."""


@dataclass
class Product:
    """A catalog product as stored in the ``products`` table.

    Read-only from the resolver's point of view; the catalog ingester owns
    inserts and updates.
    """

    id: int
    name: str
    external_id: Optional[str] = None
    brand: Optional[str] = None
    generic_name: Optional[str] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    price: Optional[float] = None
    unit_size: Optional[str] = None
    in_stock: bool = True
    on_special: bool = False
    special_price: Optional[float] = None
    embedding: Optional[List[float]] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Product":
        """Build a product from a ``sqlite3.Row`` or dict of product columns."""
        data = dict(row)
        return cls(
            id=int(data["id"]),
            name=data["name"],
            external_id=data.get("nw_product_id", data.get("external_id")),
            brand=data.get("brand"),
            generic_name=data.get("generic_name"),
            category=data.get("category"),
            subcategory=data.get("subcategory"),
            price=data.get("price"),
            unit_size=data.get("unit_size"),
            in_stock=bool(data.get("in_stock", 1)),
            on_special=bool(data.get("on_special", 0)),
            special_price=data.get("special_price"),
        )


@dataclass
class Preference:
    """A preferred product for one (generic_name, context) pair."""

    generic_name: str
    context: str
    product_id: int
    confidence: float = 0.9
    source: str = "explicit"
    strategy: str = STRATEGY_FIXED
    notes: Optional[str] = None
    candidate_ids: List[int] = field(default_factory=list)

    # Joined from the anchor product
    product_name: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = None

    updated_at: Optional[str] = None

    @property
    def is_dynamic(self) -> bool:
        return bool(self.strategy) and self.strategy != STRATEGY_FIXED


@dataclass
class ScoredCandidate(Product):
    """A product surfaced by search, tagged with where it came from."""

    match_type: str = MATCH_FTS
    fts_rank: Optional[float] = None
    vec_distance: Optional[float] = None
    score: float = 0.0

    @classmethod
    def from_product(cls, product: Product, **extra: Any) -> "ScoredCandidate":
        values = {f.name: getattr(product, f.name) for f in fields(Product)}
        values.update(extra)
        return cls(**values)

    def with_score(self, score: float) -> "ScoredCandidate":
        return replace(self, score=score)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("embedding", None)
        data["matchType"] = data.pop("match_type")
        data["ftsRank"] = data.pop("fts_rank")
        data["vecDistance"] = data.pop("vec_distance")
        return data


@dataclass
class ResolutionResult:
    """Outcome of resolving one free-text item name.

    ``resolved=False`` with candidates is the normal "needs a human to pick"
    outcome, not an error.
    """

    resolved: bool
    source: str = SOURCE_NONE
    confidence: float = 0.0
    product_id: Optional[int] = None
    product_name: Optional[str] = None
    brand: Optional[str] = None
    price: Optional[float] = None
    strategy: Optional[str] = None
    candidates: Optional[List[ScoredCandidate]] = None

    @classmethod
    def unresolved(
        cls, source: str = SOURCE_NONE, candidates: Optional[List[ScoredCandidate]] = None
    ) -> "ResolutionResult":
        return cls(resolved=False, source=source, candidates=list(candidates or []))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase record handed to list/cart/checkout callers."""
        data: Dict[str, Any] = {
            "resolved": self.resolved,
            "confidence": self.confidence,
            "source": self.source,
        }
        if self.resolved:
            data.update(
                {
                    "productId": self.product_id,
                    "productName": self.product_name,
                    "brand": self.brand,
                    "price": self.price,
                }
            )
        if self.strategy:
            data["strategy"] = self.strategy
        if self.candidates is not None:
            data["candidates"] = [c.to_dict() for c in self.candidates]
        return data
