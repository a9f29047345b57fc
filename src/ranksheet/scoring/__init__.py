"""
RankSheet Scoring Module
========================

Pure functions over candidate rows:
    - dedupe_variations: collapse variations of the same product
    - compute_readiness: share of top rows with complete product cards
    - compute_sanitized_rows: market share index, trend and badges
"""

from .dedupe import DedupeResult, dedupe_variations
from .rank_scorer import RankScorer, compute_sanitized_rows
from .readiness import Readiness, compute_readiness

__all__ = [
    "DedupeResult",
    "dedupe_variations",
    "RankScorer",
    "compute_sanitized_rows",
    "Readiness",
    "compute_readiness",
]
