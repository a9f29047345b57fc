"""
RankSheet Scorer
================

Turns raw ranking signals into bounded, publishable indices.

Indices (all integers):
    - market_share_index (0-100): click share relative to the leader
    - buyer_trust_index (0-100): conversion/click ratio, min-max normalized
    - trend_delta: previous rank minus current rank (positive = climbing)
    - score (1-100): 0.55 * popularity + 0.30 * trust + 0.15 * trend
      where popularity = 0.7 * market share + 0.3 * rank position

Every arithmetic step is guarded: non-finite inputs never leak into the
output. Raw click and conversion shares are not part of the result.

Usage:
    from ranksheet.scoring.rank_scorer import compute_sanitized_rows

    rows = compute_sanitized_rows(candidates, prev_rank_by_asin, multi_variant_asins)
"""

import logging
import math
from typing import Dict, Iterable, List, Optional, Set

from ..data.models import CandidateRow, SanitizedRow, TrendLabel

logger = logging.getLogger(__name__)


# =============================================================================
# SAFE ARITHMETIC
# =============================================================================

def is_finite(value) -> bool:
    """True for real, finite numbers (bools and None excluded)."""
    if value is None or isinstance(value, bool):
        return False
    if not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def clamp(value, lo: float, hi: float):
    """Clamp to [lo, hi]; non-finite input yields ``lo``."""
    if not (is_finite(value) and is_finite(lo) and is_finite(hi)):
        logger.warning(f"clamp received non-finite value: value={value} lo={lo} hi={hi}")
        return lo
    return max(lo, min(hi, value))


def round_half_up(value) -> int:
    """Round half toward +infinity; non-finite input yields 0."""
    if not is_finite(value):
        logger.warning(f"round received non-finite value: {value}")
        return 0
    return int(math.floor(value + 0.5))


def safe_divide(numerator, denominator, fallback: float = 0.0) -> float:
    """Division that returns ``fallback`` instead of raising or producing inf/NaN."""
    if not (is_finite(numerator) and is_finite(denominator)):
        return fallback
    if denominator == 0:
        return fallback
    result = numerator / denominator
    if not math.isfinite(result):
        return fallback
    return result


# =============================================================================
# SCORER
# =============================================================================

class RankScorer:
    """Computes SanitizedRows for the final candidates of a refresh."""

    # Floor used when no usable click share exists
    MIN_CLICK_SHARE = 0.0001

    # Trust ratio cap (conversion share / click share)
    MAX_TRUST_RATIO = 2.0

    # Composite weights
    POPULARITY_MARKET_SHARE_WEIGHT = 0.7
    POPULARITY_RANK_WEIGHT = 0.3
    SCORE_POPULARITY_WEIGHT = 0.55
    SCORE_TRUST_WEIGHT = 0.3
    SCORE_TREND_WEIGHT = 0.15

    # Trend
    TREND_LABEL_THRESHOLD = 3
    TREND_POINTS_PER_RANK = 5

    # Badges
    BADGE_CATEGORY_KING = "Category King"
    BADGE_TRENDING = "Trending"
    BADGE_HIGH_INTENT = "High Intent"
    BADGE_MULTIPLE_OPTIONS = "Multiple Options"

    CATEGORY_KING_MIN_MSI = 90
    TRENDING_MIN_DELTA = 5
    HIGH_INTENT_MIN_BTI = 85
    HIGH_INTENT_MAX_MSI = 60

    def trust_ratio(self, row: CandidateRow) -> float:
        click = row.click_share if is_finite(row.click_share) and row.click_share > 0 else self.MIN_CLICK_SHARE
        conv = row.conversion_share if is_finite(row.conversion_share) and row.conversion_share > 0 else 0.0
        return clamp(safe_divide(conv, click, 0.0), 0.0, self.MAX_TRUST_RATIO)

    def trend_delta(self, row: CandidateRow, prev_rank: Optional[float]) -> int:
        # A previous rank of 0 is treated as absent
        if prev_rank and is_finite(prev_rank):
            return int(prev_rank - row.rank)
        return 0

    def trend_label(self, delta: int) -> TrendLabel:
        if delta >= self.TREND_LABEL_THRESHOLD:
            return TrendLabel.RISING
        if delta <= -self.TREND_LABEL_THRESHOLD:
            return TrendLabel.FALLING
        return TrendLabel.STABLE

    def badges(self, rank: int, msi: int, bti: int, delta: int, multi_variant: bool) -> List[str]:
        badges = []
        if rank == 1 and msi >= self.CATEGORY_KING_MIN_MSI:
            badges.append(self.BADGE_CATEGORY_KING)
        if delta >= self.TRENDING_MIN_DELTA:
            badges.append(self.BADGE_TRENDING)
        if bti >= self.HIGH_INTENT_MIN_BTI and msi <= self.HIGH_INTENT_MAX_MSI:
            badges.append(self.BADGE_HIGH_INTENT)
        if multi_variant:
            badges.append(self.BADGE_MULTIPLE_OPTIONS)
        return badges

    def score_rows(
        self,
        rows: Iterable[CandidateRow],
        prev_rank_by_asin: Optional[Dict[str, float]] = None,
        multiple_options_asins: Optional[Set[str]] = None,
    ) -> List[SanitizedRow]:
        """
        Score rows that carry a complete card (title, brand, image).

        Args:
            rows: Final candidates, in rank order
            prev_rank_by_asin: Previous-period rank per ASIN
            multiple_options_asins: ASINs whose variation group had several members

        Returns:
            One SanitizedRow per scorable input row, in input order
        """
        prev_rank_by_asin = prev_rank_by_asin or {}
        multiple_options_asins = multiple_options_asins or set()

        scorable = [r for r in rows if r.has_complete_card]
        if not scorable:
            return []

        positive_clicks = [r.click_share for r in scorable if is_finite(r.click_share) and r.click_share > 0]
        max_click = max(positive_clicks) if positive_clicks else self.MIN_CLICK_SHARE

        ratios = [self.trust_ratio(r) for r in scorable]
        min_ratio = min(ratios)
        ratio_range = max(ratios) - min_ratio

        n = len(scorable)
        result = []

        for row, ratio in zip(scorable, ratios):
            click = row.click_share if is_finite(row.click_share) else 0.0
            msi = clamp(round_half_up(safe_divide(100 * click, max_click, 0.0)), 0, 100)

            if ratio_range == 0:
                bti_raw = 50.0
            else:
                bti_raw = safe_divide(100 * (ratio - min_ratio), ratio_range, 50.0)
            bti = clamp(round_half_up(bti_raw), 0, 100)

            delta = self.trend_delta(row, prev_rank_by_asin.get(row.asin))
            trend_score = clamp(50 + delta * self.TREND_POINTS_PER_RANK, 0, 100)

            rank_score = clamp(round_half_up(safe_divide(100 * (n - row.rank + 1), n, 0.0)), 0, 100)

            popularity = (
                self.POPULARITY_MARKET_SHARE_WEIGHT * msi
                + self.POPULARITY_RANK_WEIGHT * rank_score
            )
            score = clamp(
                round_half_up(
                    self.SCORE_POPULARITY_WEIGHT * popularity
                    + self.SCORE_TRUST_WEIGHT * bti
                    + self.SCORE_TREND_WEIGHT * trend_score
                ),
                1,
                100,
            )

            result.append(SanitizedRow(
                rank=row.rank,
                asin=row.asin,
                title=row.card.title,
                brand=row.card.brand,
                image=row.card.image,
                score=int(score),
                market_share_index=int(msi),
                buyer_trust_index=int(bti),
                trend_delta=delta,
                trend_label=self.trend_label(delta),
                badges=self.badges(row.rank, msi, bti, delta, row.asin in multiple_options_asins),
            ))

        return result


_default_scorer = RankScorer()


def compute_sanitized_rows(
    rows: Iterable[CandidateRow],
    prev_rank_by_asin: Optional[Dict[str, float]] = None,
    multiple_options_asins: Optional[Set[str]] = None,
) -> List[SanitizedRow]:
    """Score rows with the default RankScorer."""
    return _default_scorer.score_rows(rows, prev_rank_by_asin, multiple_options_asins)
