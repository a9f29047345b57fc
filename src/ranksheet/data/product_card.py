"""
Product Card
============

Pydantic models for catalog provider products and the normalized
ProductCard used for ranking.

A ProductCard keeps only the stable, display-level fields of a product
(title, brand, image, variation parentage). Cached cards are re-validated
against this model before they are trusted.
"""

from typing import Any, List, Optional, Sequence, Union

from pydantic import BaseModel, Field, field_validator


class CatalogBrand(BaseModel):
    """Brand object embedded in a catalog product."""
    name: Optional[str] = None

    class Config:
        extra = "allow"


class CatalogProduct(BaseModel):
    """Product as returned by the catalog provider."""
    asin: str = Field(min_length=1)
    title: Optional[str] = None
    featuredImage: Optional[str] = None
    parentAsin: Optional[str] = None
    variationGroup: Optional[str] = None
    metadata: Optional[Any] = None
    brand: Optional[CatalogBrand] = None

    class Config:
        extra = "allow"


class ProductCard(BaseModel):
    """Normalized product display facts."""
    asin: str = Field(min_length=1)
    title: Optional[str] = None
    brand: Optional[str] = None
    image: Optional[str] = None
    parent_asin: Optional[str] = None
    variation_group: Optional[str] = None

    @field_validator("asin")
    @classmethod
    def asin_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("asin must not be blank")
        return value


def _get_path(obj: Any, path: Sequence[Union[str, int]]) -> Any:
    cur = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(cur, list) or key >= len(cur):
                return None
            cur = cur[key]
            continue
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _get_string(obj: Any, path: Sequence[Union[str, int]]) -> Optional[str]:
    value = _get_path(obj, path)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _clean(value: Optional[str]) -> Optional[str]:
    if value and value.strip():
        return value.strip()
    return None


# Fallback locations inside the raw PA-API metadata blob, in priority order
TITLE_PATHS: List[List[Union[str, int]]] = [
    ["ItemInfo", "Title", "DisplayValue"],
    ["ItemInfo", "Title", "DisplayValues", 0],
]
BRAND_PATHS: List[List[Union[str, int]]] = [
    ["ItemInfo", "ByLineInfo", "Brand", "DisplayValue"],
    ["ItemInfo", "ByLineInfo", "Manufacturer", "DisplayValue"],
]
IMAGE_PATHS: List[List[Union[str, int]]] = [
    ["Images", "Primary", "Large", "URL"],
    ["Images", "Primary", "Medium", "URL"],
    ["Images", "Primary", "Small", "URL"],
]


def _first(metadata: Any, paths: List[List[Union[str, int]]]) -> Optional[str]:
    for path in paths:
        value = _get_string(metadata, path)
        if value:
            return value
    return None


def extract_product_card(product: CatalogProduct) -> ProductCard:
    """
    Build a ProductCard from a catalog product.

    Top-level fields win; the raw metadata blob is consulted only when a
    top-level field is missing or blank.
    """
    metadata = product.metadata
    brand_name = product.brand.name if product.brand else None

    return ProductCard(
        asin=product.asin,
        title=_clean(product.title) or _first(metadata, TITLE_PATHS),
        brand=_clean(brand_name) or _first(metadata, BRAND_PATHS),
        image=_clean(product.featuredImage) or _first(metadata, IMAGE_PATHS),
        parent_asin=_clean(product.parentAsin),
        variation_group=_clean(product.variationGroup),
    )
