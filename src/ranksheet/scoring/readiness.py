"""
Readiness Evaluation
====================

Measures how many of the top rows can actually be displayed (title and
image present) and maps the share to a ReadinessLevel.

Thresholds (lower bounds inclusive):
    FULL     >= 0.90
    PARTIAL  >= 0.70
    LOW      >= 0.50
    CRITICAL  < 0.50
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..data.models import CandidateRow, ReadinessLevel


FULL_THRESHOLD = 0.9
PARTIAL_THRESHOLD = 0.7
LOW_THRESHOLD = 0.5


@dataclass
class Readiness:
    """Readiness of the top rows of a refresh."""
    level: ReadinessLevel
    ready: int
    total: int
    ratio: float
    missing_asins: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "ready": self.ready,
            "total": self.total,
            "ratio": self.ratio,
            "missing_asins": list(self.missing_asins),
        }


def level_for_ratio(ratio: float) -> ReadinessLevel:
    if ratio >= FULL_THRESHOLD:
        return ReadinessLevel.FULL
    if ratio >= PARTIAL_THRESHOLD:
        return ReadinessLevel.PARTIAL
    if ratio >= LOW_THRESHOLD:
        return ReadinessLevel.LOW
    return ReadinessLevel.CRITICAL


def is_row_ready(row: CandidateRow) -> bool:
    return bool(row.card and row.card.title and row.card.image)


def compute_readiness(rows: List[CandidateRow], top_k: int = 10) -> Readiness:
    """
    Evaluate the first ``top_k`` rows.

    An empty input yields total=1, ratio=0 and CRITICAL.
    """
    total = max(1, min(top_k, len(rows)))
    considered = rows[:total]

    ready = 0
    missing: List[str] = []
    for row in considered:
        if is_row_ready(row):
            ready += 1
        else:
            missing.append(row.asin)

    ratio = ready / total
    return Readiness(
        level=level_for_ratio(ratio),
        ready=ready,
        total=total,
        ratio=ratio,
        missing_asins=missing,
    )
