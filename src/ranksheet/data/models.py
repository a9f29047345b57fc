"""
RankSheet Data Models
=====================

Dataclasses representing the core data structures of a keyword refresh.
These models sit between the upstream provider payloads and the PostgreSQL
schema in ``db/schema.sql``.

Models:
    - Keyword: Tracked search keyword and its publication state
    - CandidateRow: Ranked ASIN for one refresh, optionally with a ProductCard
    - SanitizedRow: Scored, publishable row of a rank sheet
    - RankSheet: Immutable snapshot per (keyword, data period)
    - AsinCacheEntry: Cached catalog facts for one ASIN
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, date, timezone
from enum import Enum
from typing import Optional, List, Dict, Any

from .product_card import ProductCard


class KeywordStatus(Enum):
    """Keyword publication status."""
    PENDING = "PENDING"
    WARMING_UP = "WARMING_UP"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ERROR = "ERROR"


class RankSheetMode(Enum):
    """Rank sheet data sufficiency mode."""
    NORMAL = "NORMAL"
    LOW_DATA = "LOW_DATA"


class ReadinessLevel(Enum):
    """Share of top rows carrying a title and an image."""
    FULL = "FULL"           # >= 90%
    PARTIAL = "PARTIAL"     # >= 70%
    LOW = "LOW"             # >= 50%
    CRITICAL = "CRITICAL"   # < 50%


class TrendLabel(Enum):
    """Rank movement versus the previous period."""
    RISING = "Rising"
    FALLING = "Falling"
    STABLE = "Stable"


class CacheStatus(Enum):
    """ASIN cache entry kind."""
    EXISTS = "EXISTS"
    NOT_FOUND = "NOT_FOUND"


@dataclass
class Keyword:
    """Tracked keyword row."""
    id: int
    slug: str
    keyword: str
    category: Optional[str] = None
    marketplace: str = "US"
    top_n: int = 20
    is_active: bool = True
    status: KeywordStatus = KeywordStatus.PENDING
    status_reason: Optional[str] = None
    indexable: bool = False
    priority: int = 0
    last_refreshed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Keyword":
        """Build from a RealDictCursor row."""
        return cls(
            id=row["id"],
            slug=row["slug"],
            keyword=row["keyword"],
            category=row.get("category"),
            marketplace=row.get("marketplace") or "US",
            top_n=row.get("top_n") or 20,
            is_active=bool(row.get("is_active", True)),
            status=KeywordStatus(row.get("status") or "PENDING"),
            status_reason=row.get("status_reason"),
            indexable=bool(row.get("indexable", False)),
            priority=row.get("priority") or 0,
            last_refreshed_at=row.get("last_refreshed_at"),
        )

    @property
    def is_refreshable(self) -> bool:
        """Inactive and paused keywords are never refreshed."""
        return self.is_active and self.status != KeywordStatus.PAUSED


@dataclass
class KeywordState:
    """Pipeline-owned keyword fields, captured for compensation."""
    status: KeywordStatus
    status_reason: Optional[str]
    indexable: bool
    last_refreshed_at: Optional[datetime]

    @classmethod
    def of(cls, keyword: Keyword) -> "KeywordState":
        return cls(
            status=keyword.status,
            status_reason=keyword.status_reason,
            indexable=keyword.indexable,
            last_refreshed_at=keyword.last_refreshed_at,
        )


@dataclass
class SignalItem:
    """One ranked ASIN from the signals provider."""
    asin: str
    rank: int
    click_share: Optional[float]
    conversion_share: Optional[float]
    report_date: Optional[str] = None


@dataclass
class CandidateRow:
    """Ranked ASIN under evaluation during one refresh."""
    rank: int
    asin: str
    click_share: Optional[float]
    conversion_share: Optional[float]
    card: Optional[ProductCard] = None

    @property
    def has_complete_card(self) -> bool:
        """Title, brand and image are all present."""
        return bool(self.card and self.card.title and self.card.brand and self.card.image)


@dataclass
class SanitizedRow:
    """Publishable rank sheet row. Raw shares are never stored."""
    rank: int
    asin: str
    title: str
    brand: str
    image: str
    score: int
    market_share_index: int
    buyer_trust_index: int
    trend_delta: int
    trend_label: TrendLabel
    badges: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-ready dictionary."""
        data = asdict(self)
        data["trend_label"] = self.trend_label.value
        return data


@dataclass
class RankSheetHistoryEntry:
    """Summary of a prior period's sheet."""
    data_period: str
    updated_at: Optional[datetime]
    valid_count: int
    readiness_level: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_period": self.data_period,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "valid_count": self.valid_count,
            "readiness_level": self.readiness_level,
        }


@dataclass
class RankSheet:
    """Snapshot of a keyword's ranking for one data period."""
    keyword_id: int
    data_period: str
    report_date: datetime
    mode: RankSheetMode
    valid_count: int
    readiness_level: ReadinessLevel
    rows: List[SanitizedRow] = field(default_factory=list)
    history: List[RankSheetHistoryEntry] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AsinCacheEntry:
    """
    Cached catalog facts for one ASIN.

    NOT_FOUND entries are negative cache hits: the catalog had nothing
    for the ASIN, so it is not re-fetched until the entry expires.
    """
    asin: str
    status: CacheStatus = CacheStatus.EXISTS
    title: Optional[str] = None
    brand: Optional[str] = None
    image_url: Optional[str] = None
    parent_asin: Optional[str] = None
    price_cents: Optional[int] = None
    price_currency: str = "USD"
    is_prime: Optional[bool] = None
    source: str = "catalog"
    fetched_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    ttl_days: Optional[int] = None  # write-side override

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AsinCacheEntry":
        """Build from a RealDictCursor row."""
        return cls(
            asin=row["asin"],
            status=CacheStatus(row["status"]),
            title=row.get("title"),
            brand=row.get("brand"),
            image_url=row.get("image_url"),
            parent_asin=row.get("parent_asin"),
            price_cents=row.get("price_cents"),
            price_currency=row.get("price_currency") or "USD",
            is_prime=row.get("is_prime"),
            source=row.get("source") or "catalog",
            fetched_at=row.get("fetched_at"),
            expires_at=row.get("expires_at"),
        )

    @classmethod
    def from_card(cls, card: ProductCard, ttl_days: Optional[int] = None) -> "AsinCacheEntry":
        """Positive entry from an extracted product card."""
        return cls(
            asin=card.asin,
            status=CacheStatus.EXISTS,
            title=card.title,
            brand=card.brand,
            image_url=card.image,
            parent_asin=card.parent_asin,
            ttl_days=ttl_days,
        )

    @classmethod
    def not_found(cls, asin: str, ttl_days: Optional[int] = None) -> "AsinCacheEntry":
        """Negative entry for an ASIN the catalog does not know."""
        return cls(asin=asin, status=CacheStatus.NOT_FOUND, ttl_days=ttl_days)


@dataclass
class RefreshResult:
    """Outcome of one keyword refresh."""
    ok: bool
    slug: str
    keyword: Optional[str] = None
    data_period: Optional[str] = None
    mode: Optional[RankSheetMode] = None
    readiness_level: Optional[ReadinessLevel] = None
    valid_count: int = 0
    updated: bool = False
    stats: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def failure(cls, slug: str, error: str, detail: Optional[str] = None) -> "RefreshResult":
        return cls(ok=False, slug=slug, error=error, detail=detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-ready dictionary."""
        if not self.ok:
            data: Dict[str, Any] = {"ok": False, "slug": self.slug, "error": self.error}
            if self.detail:
                data["detail"] = self.detail
            return data
        return {
            "ok": True,
            "slug": self.slug,
            "keyword": self.keyword,
            "data_period": self.data_period,
            "mode": self.mode.value if self.mode else None,
            "readiness_level": self.readiness_level.value if self.readiness_level else None,
            "valid_count": self.valid_count,
            "updated": self.updated,
            "stats": self.stats,
        }


@dataclass
class BatchResult:
    """Outcome of a batch refresh over many keywords."""
    total: int
    success: int
    failed: int
    results: List[RefreshResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def get_summary(self, max_errors: int = 20) -> Dict[str, Any]:
        """Counts plus a bounded sample of failures."""
        sample_errors = [
            {"slug": r.slug, "error": r.error, "detail": r.detail}
            for r in self.results if not r.ok
        ][:max_errors]
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "sample_errors": sample_errors,
        }


def iso_date_to_utc_midnight(value: str) -> datetime:
    """Parse ``YYYY-MM-DD`` as midnight UTC."""
    parsed = date.fromisoformat(value)
    return datetime(parsed.year, parsed.month, parsed.day, tzinfo=timezone.utc)
