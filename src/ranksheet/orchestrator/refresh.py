"""
RankSheet Keyword Refresh
=========================

Recomputes the rank sheet of one keyword.

Pipeline (single pass, under an advisory lock per keyword):
1. Resolve current and previous weekly report dates
2. Fetch ranked ASINs for both periods
3. Resolve product cards: ASIN cache first, catalog for misses
4. Cache fresh results (including NOT_FOUND negatives)
5. Evaluate readiness; warm up the catalog for incomplete top rows
6. Dedupe variations, keep the first top_n complete rows, score them
7. Apply the publish gate and persist keyword state + rank sheet

Features:
    - Never raises for refresh failures: every outcome is a RefreshResult
    - Compensating revert of the keyword if the rank sheet write fails
    - Failed refreshes leave the keyword in ERROR with the reason
    - Dry-run mode computes everything and persists nothing

Usage:
    from ranksheet.orchestrator.refresh import RefreshOrchestrator

    orchestrator = RefreshOrchestrator.from_database(db)
    result = orchestrator.refresh_keyword_by_slug("wireless-mouse")
"""

import logging
import re
import time
from datetime import date, datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..cache.asin_cache import AsinCache
from ..data.catalog_client import CatalogClient
from ..data.config import RefreshConfig, Settings, get_settings
from ..data.models import (
    AsinCacheEntry,
    CacheStatus,
    CandidateRow,
    Keyword,
    KeywordState,
    KeywordStatus,
    RankSheet,
    RankSheetMode,
    ReadinessLevel,
    RefreshResult,
    iso_date_to_utc_midnight,
)
from ..data.product_card import ProductCard, extract_product_card
from ..data.signals_client import SignalsClient
from ..db.locks import AdvisoryLockManager
from ..db.pool import Database
from ..db.repositories import KeywordRepository, RankSheetRepository
from ..scoring.dedupe import dedupe_variations
from ..scoring.rank_scorer import compute_sanitized_rows
from ..scoring.readiness import Readiness, compute_readiness

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Rank sheet write failed after the keyword state was updated."""
    pass


# Result error codes
ERROR_IN_PROGRESS = "refresh_in_progress"
ERROR_NOT_FOUND = "keyword_not_found"
ERROR_INACTIVE = "keyword_inactive"
ERROR_NO_REPORT_DATE = "no_report_date"
ERROR_INVALID_REPORT_DATE = "invalid_report_date"
ERROR_FAILED = "refresh_failed"

MIN_TOP_N = 5
MAX_TOP_N = 50
DEFAULT_TOP_N = 20
MIN_BUFFER = 10
MAX_BUFFER = 40

# Publish gate
MIN_INDEXABLE_ROWS = 3
MIN_NORMAL_ROWS = 5
PUBLISHABLE_LEVELS = (ReadinessLevel.FULL, ReadinessLevel.PARTIAL)

REPORT_DATE_LOOKBACK = 10

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")


def clamp_int(value: Optional[int], lo: int, hi: int) -> int:
    return max(lo, min(hi, int(value)))


def is_valid_report_date(value: str) -> bool:
    """True for a real calendar date written exactly as YYYY-MM-DD."""
    if not _DATE_RE.fullmatch(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def lock_key_for(slug: str) -> str:
    return f"refresh:keyword:{slug}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshOrchestrator:
    """
    Refreshes single keywords.

    All collaborators are injected; ``from_database`` wires the production
    ones from settings.
    """

    def __init__(
        self,
        keywords: KeywordRepository,
        sheets: RankSheetRepository,
        asin_cache: AsinCache,
        signals: SignalsClient,
        catalog: CatalogClient,
        locks: AdvisoryLockManager,
        config: Optional[RefreshConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        now: Callable[[], datetime] = _utcnow,
    ):
        self.keywords = keywords
        self.sheets = sheets
        self.asin_cache = asin_cache
        self.signals = signals
        self.catalog = catalog
        self.locks = locks
        self.config = config or RefreshConfig()
        self._sleep = sleep
        self._now = now

    @classmethod
    def from_database(cls, db: Database, settings: Optional[Settings] = None) -> "RefreshOrchestrator":
        """Wire production collaborators around a Database."""
        settings = settings or get_settings()
        return cls(
            keywords=KeywordRepository(db),
            sheets=RankSheetRepository(db),
            asin_cache=AsinCache(
                db,
                ttl_days=settings.cache.ttl_days,
                negative_ttl_days=settings.cache.negative_ttl_days,
            ),
            signals=SignalsClient(settings.upstream),
            catalog=CatalogClient(settings.upstream),
            locks=AdvisoryLockManager(
                db,
                acquire_timeout=settings.refresh.lock_acquire_timeout,
                statement_timeout=settings.refresh.lock_statement_timeout,
            ),
            config=settings.refresh,
        )

    # =========================================================================
    # ENTRY POINT
    # =========================================================================

    def refresh_keyword_by_slug(
        self,
        slug: str,
        report_date: Optional[str] = None,
        dry_run: bool = False,
    ) -> RefreshResult:
        """
        Refresh one keyword.

        Args:
            slug: Keyword slug
            report_date: Explicit weekly period (YYYY-MM-DD); newest if None
            dry_run: Compute without persisting anything

        Returns:
            RefreshResult; ``ok=False`` with an error code on any failure
        """
        if report_date is not None and not is_valid_report_date(report_date):
            return RefreshResult.failure(slug, ERROR_INVALID_REPORT_DATE, report_date)

        started = time.monotonic()
        outcome = self.locks.with_lock(
            lock_key_for(slug),
            lambda: self._refresh_locked(slug, report_date, dry_run),
        )

        if not outcome.acquired:
            logger.info(f"Refresh already in progress: {slug}", extra={"slug": slug})
            return RefreshResult.failure(slug, ERROR_IN_PROGRESS)

        result = outcome.result
        duration_ms = int((time.monotonic() - started) * 1000)
        if result.ok:
            logger.info(
                f"Refreshed '{slug}': {result.valid_count} rows, "
                f"readiness={result.readiness_level.value}, updated={result.updated}",
                extra={"slug": slug, "duration_ms": duration_ms},
            )
        else:
            logger.warning(
                f"Refresh of '{slug}' failed: {result.error}",
                extra={"slug": slug, "duration_ms": duration_ms},
            )
        return result

    def _refresh_locked(self, slug: str, report_date: Optional[str], dry_run: bool) -> RefreshResult:
        keyword = self.keywords.get_by_slug(slug)
        if keyword is None:
            return RefreshResult.failure(slug, ERROR_NOT_FOUND)
        if not keyword.is_refreshable:
            return RefreshResult.failure(slug, ERROR_INACTIVE)

        try:
            return self._run(keyword, report_date, dry_run)
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.exception(f"Refresh of '{slug}' raised: {message}", extra={"slug": slug})
            if not dry_run:
                self._mark_error(keyword, message)
            return RefreshResult.failure(slug, ERROR_FAILED, message)

    def _mark_error(self, keyword: Keyword, message: str) -> None:
        state = KeywordState(
            status=KeywordStatus.ERROR,
            status_reason=message,
            indexable=False,
            last_refreshed_at=self._now(),
        )
        try:
            self.keywords.update_state(keyword.id, state)
        except Exception as e:
            logger.error(
                f"Failed to record ERROR status for '{keyword.slug}': {e}",
                extra={"slug": keyword.slug},
            )

    # =========================================================================
    # PIPELINE
    # =========================================================================

    def _run(self, keyword: Keyword, report_date: Optional[str], dry_run: bool) -> RefreshResult:
        slug = keyword.slug
        top_n = clamp_int(keyword.top_n or DEFAULT_TOP_N, MIN_TOP_N, MAX_TOP_N)
        buffer = clamp_int(top_n, MIN_BUFFER, MAX_BUFFER)
        limit = top_n + buffer

        current_date, prev_date = self._resolve_report_dates(report_date)
        if current_date is None:
            return RefreshResult.failure(slug, ERROR_NO_REPORT_DATE)

        current_items = sorted(
            self.signals.get_keyword_asins(keyword.keyword, current_date, limit),
            key=lambda item: item.rank,
        )
        prev_rank_by_asin: Dict[str, float] = {}
        if prev_date:
            for item in self.signals.get_keyword_asins(keyword.keyword, prev_date, limit):
                prev_rank_by_asin[item.asin] = item.rank

        asins = list(dict.fromkeys(item.asin for item in current_items))
        cards, cache_stats = self._resolve_cards(slug, asins)

        rows = [
            CandidateRow(
                rank=item.rank,
                asin=item.asin,
                click_share=item.click_share,
                conversion_share=item.conversion_share,
                card=cards.get(item.asin),
            )
            for item in current_items
        ]

        readiness = compute_readiness(rows, self.config.readiness_top_k)
        warmup_jobs: List[str] = []
        if readiness.missing_asins:
            warmup_jobs, readiness = self._warm_up(slug, rows, readiness)

        deduped = dedupe_variations(rows)
        multiple_options = deduped.multiple_options_asins()

        final_candidates = [row for row in deduped.kept if row.has_complete_card][:top_n]
        sanitized = compute_sanitized_rows(final_candidates, prev_rank_by_asin, multiple_options)

        valid_count = len(sanitized)
        mode = RankSheetMode.LOW_DATA if valid_count < MIN_NORMAL_ROWS else RankSheetMode.NORMAL
        ready_to_publish = readiness.level in PUBLISHABLE_LEVELS
        indexable = ready_to_publish and valid_count >= MIN_INDEXABLE_ROWS

        if not ready_to_publish:
            status_reason = (
                f"Readiness={readiness.level.value} "
                f"({readiness.ready}/{readiness.total} with image+title)."
            )
        elif valid_count < MIN_INDEXABLE_ROWS:
            status_reason = f"Low data ({valid_count} valid items)."
        else:
            status_reason = ""

        stats = {
            "top_n": top_n,
            "buffer": buffer,
            "fetched_count": len(rows),
            "deduped_removed": len(deduped.removed),
            "valid_count": valid_count,
            "readiness": readiness.to_dict(),
            "warmup_jobs": len(warmup_jobs),
            "report_date": current_date,
            "prev_report_date": prev_date,
            **cache_stats,
        }

        if not dry_run:
            new_state = KeywordState(
                status=KeywordStatus.ACTIVE if indexable else KeywordStatus.WARMING_UP,
                status_reason=status_reason or None,
                indexable=indexable,
                last_refreshed_at=self._now(),
            )
            sheet = None
            if indexable:
                sheet = RankSheet(
                    keyword_id=keyword.id,
                    data_period=current_date,
                    report_date=iso_date_to_utc_midnight(current_date),
                    mode=mode,
                    valid_count=valid_count,
                    readiness_level=readiness.level,
                    rows=sanitized,
                    metadata=stats,
                )
            self._persist(keyword, new_state, sheet)

        return RefreshResult(
            ok=True,
            slug=slug,
            keyword=keyword.keyword,
            data_period=current_date,
            mode=mode,
            readiness_level=readiness.level,
            valid_count=valid_count,
            updated=not dry_run and indexable,
            stats=stats,
        )

    def _resolve_report_dates(self, report_date: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
        """Current period and the newest period strictly before it."""
        dates = self.signals.get_weekly_report_dates(limit=REPORT_DATE_LOOKBACK)
        current = report_date or (dates[0] if dates else None)
        if current is None:
            return None, None
        older = [d for d in dates if d < current]
        return current, (max(older) if older else None)

    def _resolve_cards(self, slug: str, asins: List[str]) -> Tuple[Dict[str, ProductCard], Dict[str, int]]:
        """Merge cached and freshly fetched cards; cache what was fetched."""
        cached = self.asin_cache.get(asins)
        missing = [asin for asin in asins if asin not in cached]
        fresh = self.catalog.get_products_by_asins(missing) if missing else {}

        cards: Dict[str, ProductCard] = {}
        corrupted = 0
        not_found_cached = 0
        for asin, entry in cached.items():
            if entry.status == CacheStatus.NOT_FOUND:
                not_found_cached += 1
                continue
            try:
                cards[asin] = ProductCard(
                    asin=entry.asin,
                    title=entry.title,
                    brand=entry.brand,
                    image=entry.image_url,
                    parent_asin=entry.parent_asin,
                )
            except ValidationError as e:
                corrupted += 1
                logger.warning(
                    f"Dropping corrupted cache entry {asin}: {e.error_count()} errors",
                    extra={"slug": slug, "asin": asin},
                )

        if corrupted:
            logger.warning(
                f"Skipped {corrupted}/{len(cached)} corrupted cache entries",
                extra={"slug": slug},
            )

        for asin, product in fresh.items():
            cards[asin] = extract_product_card(product)

        if missing:
            entries = [
                AsinCacheEntry.from_card(cards[asin], self.asin_cache.ttl_days)
                if asin in fresh
                else AsinCacheEntry.not_found(asin, self.asin_cache.negative_ttl_days)
                for asin in missing
            ]
            self.asin_cache.upsert(entries)
            not_found = len(missing) - len(fresh)
            if not_found:
                logger.info(
                    f"Cached {not_found} NOT_FOUND ASINs of {len(missing)} fetched",
                    extra={"slug": slug},
                )

        return cards, {
            "cache_hits": len(cached),
            "cache_corrupted": corrupted,
            "not_found_cached": not_found_cached,
        }

    def _warm_up(
        self,
        slug: str,
        rows: List[CandidateRow],
        readiness: Readiness,
    ) -> Tuple[List[str], Readiness]:
        """Ask the catalog to refresh incomplete top rows, then re-fetch them."""
        missing = list(readiness.missing_asins)
        try:
            job_ids = self.catalog.warm_paapi5(missing[:self.config.warmup_max_asins])
            self._sleep(self.config.warmup_delay)

            warmed = self.catalog.get_products_by_asins(missing)
            warmed_cards = {asin: extract_product_card(p) for asin, p in warmed.items()}
            if warmed_cards:
                self.asin_cache.upsert([
                    AsinCacheEntry.from_card(card, self.asin_cache.ttl_days)
                    for card in warmed_cards.values()
                ])

            missing_set = set(missing)
            for row in rows:
                if row.asin in missing_set and row.asin in warmed_cards:
                    row.card = warmed_cards[row.asin]

            return job_ids, compute_readiness(rows, self.config.readiness_top_k)
        except Exception as e:
            logger.warning(f"Warm-up failed for '{slug}': {e}", extra={"slug": slug})
            return [], readiness

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _persist(self, keyword: Keyword, new_state: KeywordState, sheet: Optional[RankSheet]) -> None:
        """
        Write keyword state, then the rank sheet.

        If the sheet write fails the keyword is reverted to its pre-refresh
        state and PersistenceError is raised.
        """
        original_state = KeywordState.of(keyword)
        self.keywords.update_state(keyword.id, new_state)
        if sheet is None:
            return

        try:
            sheet.history = self.sheets.get_history(keyword.id, exclude_period=sheet.data_period)
            self.sheets.upsert(sheet)
        except Exception as e:
            logger.error(
                f"Rank sheet write failed for '{keyword.slug}', reverting keyword: {e}",
                extra={"slug": keyword.slug},
            )
            try:
                self.keywords.update_state(keyword.id, original_state)
            except Exception as rollback_error:
                logger.error(
                    f"Keyword rollback failed for '{keyword.slug}', manual intervention required: "
                    f"{rollback_error}",
                    extra={"slug": keyword.slug},
                )
            raise PersistenceError(f"Rank sheet write failed: {e}") from e
