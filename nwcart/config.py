"""Configuration and constants for the shopping resolver."""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

# Pick up OPENAI_API_KEY and NWCART_* overrides from a local .env file
load_dotenv()

__all__ = [
    "DB_PATH",
    "DEFAULT_CONTEXT",
    "EMBEDDING_MODEL",
    "EMBEDDING_DIMENSIONS",
    "EMBEDDING_BATCH_SIZE",
    "SEMANTIC_TIMEOUT",
    "SEARCH_LIMIT",
    "MAX_CANDIDATES",
    "MIN_WORD_LENGTH",
    "EXPLICIT_CONFIDENCE",
    "AUTO_CONFIRM_THRESHOLD",
    "MATCH_CONFIRM_THRESHOLD",
    "BATCH_WORKERS",
    "ScoringWeights",
    "DEFAULT_WEIGHTS",
]

# Storage
DB_PATH = os.getenv("NWCART_DB_PATH", "data/nwcart.db")

# Preference scope used when a caller does not name one
DEFAULT_CONTEXT = "default"

# Embeddings (query vectors must share the model and size of stored vectors)
EMBEDDING_MODEL = os.getenv("NWCART_EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSIONS = int(os.getenv("NWCART_EMBEDDING_DIMENSIONS", "1536"))
EMBEDDING_BATCH_SIZE = int(os.getenv("NWCART_EMBEDDING_BATCH_SIZE", "100"))

# Seconds to wait on the semantic lookup before treating it as absent
SEMANTIC_TIMEOUT = float(os.getenv("NWCART_SEMANTIC_TIMEOUT", "10"))

# Search sizes
SEARCH_LIMIT = 10
MAX_CANDIDATES = 5

# Words shorter than this are ignored by the relevance and history matchers
MIN_WORD_LENGTH = 3

# Preference defaults
EXPLICIT_CONFIDENCE = 0.9

# Checkout triage: results at or above this are auto-confirmed
AUTO_CONFIRM_THRESHOLD = 0.7

# Purchase-item matching: matches below this are flagged for review
MATCH_CONFIRM_THRESHOLD = 0.7

# Worker threads for batch resolution (1 = sequential)
BATCH_WORKERS = int(os.getenv("NWCART_BATCH_WORKERS", "4"))


@dataclass(frozen=True)
class ScoringWeights:
    """Tunable constants for the resolution pipeline.

    The defaults reproduce the empirically chosen weights; pass a different
    instance to ``ResolutionEngine`` to experiment without touching the code.
    """

    auto_resolve_threshold: float = 0.5

    # Candidate scoring
    exact_generic: float = 0.4
    partial_generic: float = 0.2
    match_both: float = 0.3
    match_fts: float = 0.15
    match_vec: float = 0.1
    out_of_stock_penalty: float = 0.2
    on_special_bonus: float = 0.05
    distance_ramp_base: float = 0.2
    distance_ramp_slope: float = 0.1
    history_boost_base: float = 0.1
    history_boost_step: float = 0.04
    history_boost_cap: float = 0.3

    # Purchase-history direct match confidence
    history_confidence_base: float = 0.6
    history_confidence_step: float = 0.04
    history_confidence_cap: float = 0.9


DEFAULT_WEIGHTS = ScoringWeights()
