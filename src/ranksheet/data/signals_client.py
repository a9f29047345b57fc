"""
Ranking Signals Client
======================

Client for the ranking signals provider (weekly search-term reports).

Endpoints:
    GET /reports/?period_type=WEEK&limit=N
        -> {"items": [{"reportDate": "YYYY-MM-DD", "periodType": "WEEK"}]}
    GET /keywords/<keyword>/asins?period_type=weekly&start_date=D&end_date=D&limit=N&offset=0
        -> {"items": [{"asin", "top3_rank", "click_share", "conversion_share", "report_date"}]}

Weekly report dates are cached in Redis (in-memory fallback) for six hours.

Usage:
    client = SignalsClient()
    dates = client.get_weekly_report_dates(limit=10)
    items = client.get_keyword_asins("wireless mouse", dates[0], limit=40)
"""

import logging
from typing import List, Optional
from urllib.parse import quote

from pydantic import BaseModel, Field, ValidationError

from ..cache.redis_cache import RedisCache, get_cache
from .config import UpstreamConfig, get_settings
from .http import ResilientHttpClient, RetryPolicy, UpstreamResponseError, get_breaker
from .models import SignalItem

logger = logging.getLogger(__name__)

DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}$"


class ReportModel(BaseModel):
    reportDate: str = Field(pattern=DATE_PATTERN)
    periodType: str

    class Config:
        extra = "allow"


class ReportsResponse(BaseModel):
    items: List[ReportModel]
    total: Optional[int] = None

    class Config:
        extra = "allow"


class KeywordAsinModel(BaseModel):
    asin: str = Field(min_length=1)
    top3_rank: int = Field(ge=1)
    click_share: float
    conversion_share: float
    report_date: str = Field(pattern=DATE_PATTERN)

    class Config:
        extra = "allow"


class KeywordAsinsResponse(BaseModel):
    items: List[KeywordAsinModel]
    total: Optional[int] = None

    class Config:
        extra = "allow"


def _clamp_int(value: int, lo: int, hi: int) -> int:
    return max(lo, min(hi, int(value)))


class SignalsClient:
    """Reads weekly report dates and per-keyword ranked ASINs."""

    def __init__(
        self,
        config: Optional[UpstreamConfig] = None,
        http: Optional[ResilientHttpClient] = None,
        cache: Optional[RedisCache] = None,
    ):
        self.config = config or get_settings().upstream
        self.http = http or ResilientHttpClient(
            base_url=self.config.signals_url,
            breaker=get_breaker("signals"),
            headers={"X-API-Key": self.config.signals_api_key or ""},
            timeout=self.config.signals_timeout,
            retry_policy=RetryPolicy(
                max_retries=self.config.max_retries,
                initial_delay=self.config.retry_initial_delay,
                max_delay=self.config.retry_max_delay,
            ),
        )
        self._cache = cache

    @property
    def cache(self) -> RedisCache:
        if self._cache is None:
            self._cache = get_cache()
        return self._cache

    def get_weekly_report_dates(self, limit: int = 10) -> List[str]:
        """
        Newest-first weekly report dates.

        Raises:
            UpstreamResponseError: If the payload does not match the contract
        """
        limit = _clamp_int(limit, 1, 50)
        cache_key = f"signals:reports:weekly:{limit}"

        cached = self.cache.get(cache_key)
        if isinstance(cached, list) and cached and all(isinstance(d, str) for d in cached):
            return cached

        payload = self.http.get_json("/reports/", params={"period_type": "WEEK", "limit": limit})
        try:
            parsed = ReportsResponse.model_validate(payload)
        except ValidationError as e:
            raise UpstreamResponseError(f"Invalid reports response: {e.error_count()} errors") from e

        dates = sorted({item.reportDate for item in parsed.items}, reverse=True)
        if dates:
            self.cache.set(cache_key, dates, ttl_seconds=self.config.report_dates_cache_ttl)
        logger.debug(f"Fetched {len(dates)} weekly report dates")
        return dates

    def get_keyword_asins(self, keyword: str, report_date: str, limit: int) -> List[SignalItem]:
        """
        Ranked ASINs for one keyword and weekly period.

        Raises:
            UpstreamResponseError: If the payload does not match the contract
        """
        keyword = keyword.strip()
        if not keyword:
            return []
        limit = _clamp_int(limit, 1, 10_000)

        payload = self.http.get_json(
            f"/keywords/{quote(keyword, safe='')}/asins",
            params={
                "period_type": "weekly",
                "start_date": report_date,
                "end_date": report_date,
                "limit": limit,
                "offset": 0,
            },
        )
        try:
            parsed = KeywordAsinsResponse.model_validate(payload)
        except ValidationError as e:
            raise UpstreamResponseError(f"Invalid keyword asins response: {e.error_count()} errors") from e

        return [
            SignalItem(
                asin=item.asin,
                rank=item.top3_rank,
                click_share=item.click_share,
                conversion_share=item.conversion_share,
                report_date=item.report_date,
            )
            for item in parsed.items
        ]
