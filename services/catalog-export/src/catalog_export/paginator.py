"""
Product pagination over the Commerce products endpoint.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from catalog_export.config import PaginationSettings
from catalog_export.endpoints import PRODUCTS_PATH, products_query
from catalog_export.exceptions import AuthError, ExportError, FetchError
from catalog_export.http_client import CommerceHttpClient
from catalog_export.logging_config import log_execution_time
from catalog_export.models import RawProduct

logger = logging.getLogger(__name__)


@dataclass
class PageResult:
    """Outcome of a full pagination pass."""
    products: list[RawProduct] = field(default_factory=list)
    total_count: int = 0
    pages_fetched: int = 0
    truncated: bool = False
    skipped: int = 0

    def to_dict(self) -> dict:
        return {
            "product_count": len(self.products),
            "total_count": self.total_count,
            "pages_fetched": self.pages_fetched,
            "truncated": self.truncated,
            "skipped": self.skipped,
        }


class Paginator:
    """Fetches every product page up to the configured page ceiling."""

    def __init__(self, http_client: CommerceHttpClient, settings: PaginationSettings):
        self.http_client = http_client
        self.settings = settings

    @log_execution_time(logger)
    async def fetch_all_products(
        self,
        search_term: Optional[str] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
    ) -> PageResult:
        """
        Fetch all products, page by page.

        Stops when the accumulated item count reaches ``total_count``, when a
        page is short or empty, or when ``max_pages`` pages have been read.
        Hitting the ceiling with items remaining sets ``truncated``.

        Raises:
            FetchError: A page failed after retries; nothing partial is returned
            AuthError: The admin token could not be obtained
        """
        page_size = page_size or self.settings.page_size
        max_pages = max_pages or self.settings.max_pages

        result = PageResult()
        seen_skus: set[str] = set()
        items_seen = 0
        page = 0

        while page < max_pages:
            page += 1
            items, total_count = await self._fetch_page(page, page_size, search_term, result)
            result.pages_fetched = page
            result.total_count = total_count
            items_seen += len(items)

            for item in items:
                sku = item.get("sku") if isinstance(item, dict) else None
                if not sku or str(sku) in seen_skus:
                    result.skipped += 1
                    continue
                seen_skus.add(str(sku))
                result.products.append(RawProduct.from_api(item))

            logger.info(
                f"Fetched products page {page}",
                extra={
                    "page": page,
                    "metrics": {"items": len(items), "accumulated": len(result.products), "total_count": total_count},
                },
            )

            if items_seen >= total_count or not items or len(items) < page_size:
                break

        result.truncated = page >= max_pages and result.total_count > items_seen
        if result.truncated:
            logger.warning(
                f"Page ceiling of {max_pages} reached: fetched {items_seen} of "
                f"{result.total_count} products"
            )
        if result.skipped:
            logger.warning(f"Skipped {result.skipped} product items without a usable sku")

        return result

    async def _fetch_page(
        self,
        page: int,
        page_size: int,
        search_term: Optional[str],
        result: PageResult,
    ) -> tuple[list, int]:
        try:
            data = await self.http_client.request(
                "GET",
                PRODUCTS_PATH,
                source="products",
                query=products_query(page_size, page, search_term),
            )
        except AuthError:
            raise
        except ExportError as e:
            raise FetchError(
                f"Failed to fetch products page {page}: {e.message}",
                fetched_count=len(result.products),
                page=page,
                original_exception=e,
            ) from e

        if not isinstance(data, dict):
            raise FetchError(
                f"Unexpected products response on page {page}: expected a JSON object",
                fetched_count=len(result.products),
                page=page,
            )

        items = data.get("items") or []
        try:
            total_count = int(data.get("total_count") or 0)
        except (TypeError, ValueError):
            total_count = 0
        return items, total_count
