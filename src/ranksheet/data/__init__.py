"""
RankSheet Data Module
=====================

Configuration, upstream provider clients and domain models.

This module provides:
    - SignalsClient: weekly report dates and ranked ASINs per keyword
    - CatalogClient: product metadata and warm-up jobs
    - ResilientHttpClient: retry with backoff behind a circuit breaker
    - Data models: Keyword, SignalItem, ProductCard, RankSheet, RefreshResult

Required Environment Variables:
    DATABASE_PASSWORD: PostgreSQL password
"""

from .config import Settings, get_settings
from .models import (
    BatchResult,
    Keyword,
    KeywordStatus,
    RankSheet,
    RankSheetMode,
    ReadinessLevel,
    RefreshResult,
    SignalItem,
)
from .product_card import ProductCard, extract_product_card

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Models
    "BatchResult",
    "Keyword",
    "KeywordStatus",
    "RankSheet",
    "RankSheetMode",
    "ReadinessLevel",
    "RefreshResult",
    "SignalItem",
    "ProductCard",
    "extract_product_card",
]
