"""Word helpers shared by the relevance gate, history matcher and scorer.

All three must agree on what a "significant word" is, so they all go
through ``significant_words``.
"""

import re
from typing import List, Optional

from nwcart.config import MIN_WORD_LENGTH

__all__ = ["significant_words", "is_relevant", "normalize_name", "name_overlaps"]

_WHITESPACE = re.compile(r"\s+")


def normalize_name(text: Optional[str]) -> str:
    """Lowercase and trim a generic name for use as a lookup key."""
    return (text or "").strip().lower()


def significant_words(text: Optional[str], min_length: int = MIN_WORD_LENGTH) -> List[str]:
    """Split on whitespace and keep lowercased words of at least ``min_length``.

    >>> significant_words("Chicken of the sea")
    ['chicken', 'the', 'sea']
    """
    if not text:
        return []
    return [w for w in _WHITESPACE.split(text.lower()) if len(w) >= min_length]


def is_relevant(product_name: Optional[str], search_term: Optional[str]) -> bool:
    """True if any significant word of ``search_term`` occurs in ``product_name``.

    Any-word, substring match. Used to veto boosts and broad preferences,
    never as a primary matcher.
    """
    if not product_name:
        return False
    name = product_name.lower()
    return any(word in name for word in significant_words(search_term))


def name_overlaps(product_name: str, generic_name: str) -> bool:
    """Looser two-way overlap used when learning preferences from history.

    Generic names from the catalog look like "beef steaks & schnitzel", so
    they are also split on ``&`` and commas.
    """
    name_words = _WHITESPACE.split(product_name.lower())
    generic_words = [
        w for w in re.split(r"[\s&,]+", generic_name.lower()) if len(w) >= MIN_WORD_LENGTH
    ]
    return any(gw in nw or nw in gw for gw in generic_words for nw in name_words if nw)
