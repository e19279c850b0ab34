"""New World grocery item resolver package."""

__version__ = "0.1.0"

# Re-export main components for convenient imports
from nwcart.config import DB_PATH, DEFAULT_CONTEXT, DEFAULT_WEIGHTS, ScoringWeights
from nwcart.db import init_db, upsert_product
from nwcart.embeddings import OpenAIEmbedder, embed_products
from nwcart.history import (
    PurchaseCountCache,
    find_best_purchased_match,
    record_purchase,
    suggest_preferences,
    update_frequency,
)
from nwcart.lists import build_list
from nwcart.models import (
    NwcartError,
    Preference,
    PreferenceError,
    Product,
    ResolutionError,
    ResolutionResult,
    ScoredCandidate,
)
from nwcart.preferences import PreferenceStore
from nwcart.resolve import ResolutionEngine, triage_resolution
from nwcart.search import HybridSearcher, LexicalIndex, SemanticIndex, merge_results
from nwcart.text import is_relevant, significant_words

__all__ = [
    # Version
    "__version__",
    # Config
    "DB_PATH",
    "DEFAULT_CONTEXT",
    "DEFAULT_WEIGHTS",
    "ScoringWeights",
    # Models
    "Product",
    "Preference",
    "ScoredCandidate",
    "ResolutionResult",
    "NwcartError",
    "PreferenceError",
    "ResolutionError",
    # Storage
    "init_db",
    "upsert_product",
    # Search
    "LexicalIndex",
    "SemanticIndex",
    "HybridSearcher",
    "merge_results",
    "OpenAIEmbedder",
    "embed_products",
    # Preferences and history
    "PreferenceStore",
    "PurchaseCountCache",
    "find_best_purchased_match",
    "record_purchase",
    "suggest_preferences",
    "update_frequency",
    # Resolution
    "ResolutionEngine",
    "triage_resolution",
    "build_list",
    "is_relevant",
    "significant_words",
]
