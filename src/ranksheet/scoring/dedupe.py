"""
Variation Dedupe
================

Collapses product variants (colors, sizes, pack counts) so a rank sheet
lists each product once.

Grouping keys:
    - Strong: the catalog's parent ASIN or variation group id
    - Weak: normalized brand plus the first title tokens, used only when
      no strong id exists and the title is long enough to be distinctive

The first row seen for a key is kept; later rows with the same key are
removed. Rows without a card or without a derivable key always survive.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..data.models import CandidateRow
from ..data.product_card import ProductCard


COLOR_WORDS = frozenset({
    "black", "white", "gray", "grey", "red", "blue", "green", "pink",
    "purple", "gold", "silver", "yellow", "orange", "beige", "brown",
    "navy", "ivory",
})

# Empirical weak-key constants
WEAK_MIN_TOKENS = 4
WEAK_TOKEN_WINDOW = 10

_PARENS_RE = re.compile(r"\([^)]*\)")
_BRACKETS_RE = re.compile(r"\[[^\]]*\]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")


@dataclass
class DedupeResult:
    """Partition of candidate rows into kept and removed."""
    kept: List[CandidateRow] = field(default_factory=list)
    removed: List[CandidateRow] = field(default_factory=list)
    group_count_by_key: Dict[str, int] = field(default_factory=dict)
    group_key_by_asin: Dict[str, str] = field(default_factory=dict)

    def multiple_options_asins(self) -> set:
        """Kept ASINs whose group had more than one member."""
        result = set()
        for row in self.kept:
            key = self.group_key_by_asin.get(row.asin)
            if key and self.group_count_by_key.get(key, 0) > 1:
                result.add(row.asin)
        return result


def normalize_text(value: str) -> str:
    """Lowercase, drop (...) and [...] segments, collapse non-alphanumerics."""
    text = value.lower()
    text = _PARENS_RE.sub(" ", text)
    text = _BRACKETS_RE.sub(" ", text)
    text = _NON_ALNUM_RE.sub(" ", text)
    return text.strip()


def title_tokens(title: str) -> List[str]:
    return [t for t in normalize_text(title).split() if t not in COLOR_WORDS]


def weak_group_key(card: ProductCard) -> Optional[str]:
    if not card.brand or not card.title:
        return None
    brand = normalize_text(card.brand)
    if not brand:
        return None
    tokens = title_tokens(card.title)
    if len(tokens) < WEAK_MIN_TOKENS:
        return None
    return f"weak|{brand}|{' '.join(tokens[:WEAK_TOKEN_WINDOW])}"


def group_key(card: ProductCard) -> Optional[str]:
    strong = card.parent_asin or card.variation_group
    if strong:
        return f"strong|{strong}"
    return weak_group_key(card)


def dedupe_variations(rows: List[CandidateRow]) -> DedupeResult:
    """
    Keep the first row per variation group, preserving input order.

    Applying this to its own ``kept`` output returns the same rows.
    """
    result = DedupeResult()

    for row in rows:
        if row.card is None:
            continue
        key = group_key(row.card)
        if key is None:
            continue
        result.group_key_by_asin[row.asin] = key
        result.group_count_by_key[key] = result.group_count_by_key.get(key, 0) + 1

    seen = set()
    for row in rows:
        key = result.group_key_by_asin.get(row.asin)
        if key is None:
            result.kept.append(row)
            continue
        if key in seen:
            result.removed.append(row)
            continue
        seen.add(key)
        result.kept.append(row)

    return result
