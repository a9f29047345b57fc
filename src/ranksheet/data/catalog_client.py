"""
Product Catalog Client
======================

Client for the product catalog provider.

Endpoints:
    GET  /products?asins=a,b,c&limit=n      (batches of 50 ASINs)
    POST /paapi5 {"asins": [...]}            (create warm-up jobs)
    PUT  /paapi5/<job id>                    (run one warm-up job)

Warm-up asks the catalog to pull fresh product data from Amazon for
ASINs that are missing a title or image; the products can then be
re-fetched a moment later.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ValidationError

from .config import UpstreamConfig, get_settings
from .http import ResilientHttpClient, RetryPolicy, UpstreamResponseError, get_breaker
from .product_card import CatalogProduct

logger = logging.getLogger(__name__)


class ProductsData(BaseModel):
    items: List[CatalogProduct]


class ProductsResponse(BaseModel):
    status: str
    data: ProductsData


class Paapi5Job(BaseModel):
    id: str
    status: str
    asins: Optional[List[str]] = None


class Paapi5CreateResponse(BaseModel):
    status: str
    data: List[Paapi5Job]


class Paapi5RunData(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None


class Paapi5RunResponse(BaseModel):
    status: str
    data: Paapi5RunData


def _unique(asins: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(a.strip() for a in asins if a and a.strip()))


def _chunks(items: List[str], size: int) -> List[List[str]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


class CatalogClient:
    """Fetches product metadata and triggers catalog warm-up."""

    BATCH_SIZE = 50
    WARMUP_CONCURRENCY = 3

    def __init__(
        self,
        config: Optional[UpstreamConfig] = None,
        http: Optional[ResilientHttpClient] = None,
    ):
        self.config = config or get_settings().upstream
        self.http = http or ResilientHttpClient(
            base_url=self.config.catalog_url,
            breaker=get_breaker("catalog"),
            headers={"x-api-key": self.config.catalog_api_key or ""},
            timeout=self.config.catalog_timeout,
            retry_policy=RetryPolicy(
                max_retries=self.config.max_retries,
                initial_delay=self.config.retry_initial_delay,
                max_delay=self.config.retry_max_delay,
            ),
        )

    def get_products_by_asins(self, asins: Iterable[str]) -> Dict[str, CatalogProduct]:
        """
        Fetch products in batches of 50.

        Returns:
            Mapping asin -> product for every ASIN the catalog knows

        Raises:
            UpstreamResponseError: If a payload does not match the contract
        """
        unique = _unique(asins)
        products: Dict[str, CatalogProduct] = {}

        for batch in _chunks(unique, self.BATCH_SIZE):
            payload = self.http.get_json(
                "/products",
                params={"asins": ",".join(batch), "limit": len(batch)},
            )
            try:
                parsed = ProductsResponse.model_validate(payload)
            except ValidationError as e:
                raise UpstreamResponseError(f"Invalid products response: {e.error_count()} errors") from e
            for product in parsed.data.items:
                products[product.asin] = product

        logger.debug(f"Catalog returned {len(products)}/{len(unique)} products")
        return products

    def warm_paapi5(self, asins: Iterable[str]) -> List[str]:
        """
        Create and run warm-up jobs for ``asins``.

        Returns:
            Ids of the created jobs
        """
        unique = _unique(asins)
        if not unique:
            return []

        payload = self.http.post_json("/paapi5", {"asins": unique})
        try:
            created = Paapi5CreateResponse.model_validate(payload)
        except ValidationError as e:
            raise UpstreamResponseError(f"Invalid paapi5 create response: {e.error_count()} errors") from e

        job_ids = [job.id for job in created.data]
        if job_ids:
            with ThreadPoolExecutor(max_workers=self.WARMUP_CONCURRENCY) as executor:
                # list() re-raises the first job failure
                list(executor.map(self._run_warmup_job, job_ids))

        logger.info(f"Warm-up ran {len(job_ids)} jobs for {len(unique)} ASINs")
        return job_ids

    def _run_warmup_job(self, job_id: str) -> Paapi5RunData:
        payload = self.http.put_json(f"/paapi5/{job_id}")
        try:
            return Paapi5RunResponse.model_validate(payload).data
        except ValidationError as e:
            raise UpstreamResponseError(f"Invalid paapi5 run response: {e.error_count()} errors") from e
