"""
Tests for readiness evaluation.
"""

import pytest

from ranksheet.data.models import CandidateRow, ReadinessLevel
from ranksheet.data.product_card import ProductCard
from ranksheet.scoring.readiness import compute_readiness, level_for_ratio


def make_row(rank, ready):
    asin = f"B{rank:09d}"
    card = ProductCard(
        asin=asin,
        title=f"Product {rank}",
        image=f"https://img.example.com/{asin}.jpg" if ready else None,
    )
    return CandidateRow(rank=rank, asin=asin, click_share=0.1, conversion_share=0.1, card=card)


class TestLevelForRatio:
    """Tests for threshold mapping."""

    @pytest.mark.parametrize("ratio,level", [
        (1.0, ReadinessLevel.FULL),
        (0.9, ReadinessLevel.FULL),
        (0.89, ReadinessLevel.PARTIAL),
        (0.7, ReadinessLevel.PARTIAL),
        (0.69, ReadinessLevel.LOW),
        (0.5, ReadinessLevel.LOW),
        (0.49, ReadinessLevel.CRITICAL),
        (0.0, ReadinessLevel.CRITICAL),
    ])
    def test_boundaries_are_inclusive(self, ratio, level):
        """Lower bounds belong to the higher level."""
        assert level_for_ratio(ratio) == level

    def test_monotonic(self):
        """A higher ratio never yields a lower level."""
        order = [ReadinessLevel.CRITICAL, ReadinessLevel.LOW, ReadinessLevel.PARTIAL, ReadinessLevel.FULL]
        levels = [order.index(level_for_ratio(i / 100)) for i in range(101)]
        assert levels == sorted(levels)


class TestComputeReadiness:
    """Tests for compute_readiness."""

    def test_seven_of_ten_is_partial(self):
        """10 rows with 7 complete cards -> PARTIAL at 0.7."""
        rows = [make_row(i, ready=i <= 7) for i in range(1, 11)]
        readiness = compute_readiness(rows, top_k=10)

        assert readiness.level == ReadinessLevel.PARTIAL
        assert readiness.ratio == pytest.approx(0.7)
        assert readiness.ready == 7
        assert readiness.total == 10
        assert len(readiness.missing_asins) == 3

    def test_only_top_k_considered(self):
        """Rows beyond top_k do not count."""
        rows = [make_row(i, ready=i <= 5) for i in range(1, 21)]
        readiness = compute_readiness(rows, top_k=5)

        assert readiness.level == ReadinessLevel.FULL
        assert readiness.total == 5

    def test_empty_rows_are_critical(self):
        """No rows -> total 1, ratio 0, CRITICAL."""
        readiness = compute_readiness([], top_k=10)

        assert readiness.level == ReadinessLevel.CRITICAL
        assert readiness.total == 1
        assert readiness.ratio == 0

    def test_row_without_card_is_missing(self):
        """Rows without a card count as not ready."""
        rows = [CandidateRow(rank=1, asin="B000000001", click_share=0.1, conversion_share=0.1)]
        readiness = compute_readiness(rows)

        assert readiness.missing_asins == ["B000000001"]
        assert readiness.to_dict()["level"] == "CRITICAL"
