"""Tests for product pagination."""

import math

import pytest

from catalog_export.config import PaginationSettings
from catalog_export.exceptions import AuthError, FetchError
from catalog_export.http_client import CommerceHttpClient
from catalog_export.paginator import Paginator

from conftest import FakeCommerce, make_product


async def _fetch(config, auth_client, commerce, **settings):
    async with CommerceHttpClient(config, auth_client, transport=commerce.transport()) as client:
        paginator = Paginator(client, PaginationSettings(**settings))
        return await paginator.fetch_all_products()


class TestPaginator:
    """Tests for Paginator.fetch_all_products."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "total,page_size,max_pages",
        [(119, 100, 25), (100, 100, 25), (0, 100, 25), (7, 3, 25), (10, 3, 2), (250, 100, 2), (1, 1, 1)],
    )
    async def test_page_and_product_counts(self, config, auth_client, total, page_size, max_pages):
        commerce = FakeCommerce([make_product(i) for i in range(1, total + 1)])

        result = await _fetch(config, auth_client, commerce, page_size=page_size, max_pages=max_pages)

        expected_pages = max(1, min(math.ceil(total / page_size), max_pages))
        assert result.pages_fetched == expected_pages
        assert commerce.count("/products") == expected_pages
        assert len(result.products) == min(total, max_pages * page_size)
        assert result.truncated is (total > max_pages * page_size)
        assert result.total_count == total

    @pytest.mark.asyncio
    async def test_order_preserved_and_parsed(self, config, auth_client):
        commerce = FakeCommerce([make_product(i) for i in range(1, 6)])

        result = await _fetch(config, auth_client, commerce, page_size=2)

        assert [p.sku for p in result.products] == ["SKU-001", "SKU-002", "SKU-003", "SKU-004", "SKU-005"]
        first = result.products[0]
        assert first.category_ids == [10, 11]
        assert first.price == 11.0
        assert first.custom_attribute("url_key") == "product-1"

    @pytest.mark.asyncio
    async def test_items_without_sku_are_skipped(self, config, auth_client):
        items = [make_product(1), {"id": 99, "name": "No sku"}, make_product(2)]
        commerce = FakeCommerce(items)

        result = await _fetch(config, auth_client, commerce)

        assert [p.sku for p in result.products] == ["SKU-001", "SKU-002"]
        assert result.skipped == 1

    @pytest.mark.asyncio
    async def test_short_page_stops_even_if_total_claims_more(self, config, auth_client):
        commerce = FakeCommerce([make_product(i) for i in range(1, 4)])
        original = commerce._products

        def inflated(params):
            response = original(params)
            data = response.json()
            data["total_count"] = 500
            return type(response)(200, json=data)

        commerce._products = inflated

        result = await _fetch(config, auth_client, commerce, page_size=10)

        assert result.pages_fetched == 1
        assert len(result.products) == 3

    @pytest.mark.asyncio
    async def test_failure_on_second_page_raises_fetch_error(self, config, auth_client):
        commerce = FakeCommerce([make_product(i) for i in range(1, 120)])
        commerce.fail_pages.add(2)

        with pytest.raises(FetchError) as exc_info:
            await _fetch(config, auth_client, commerce, page_size=100)

        error = exc_info.value
        assert error.fetched_count == 100
        assert error.page == 2
        assert error.status_code == 502
        assert "page 2" in error.message
        # one attempt for page 1 plus three for page 2
        assert commerce.count("/products") == 4

    @pytest.mark.asyncio
    async def test_auth_failure_is_not_wrapped(self, config, auth_client, commerce):
        commerce.token_status = 401

        with pytest.raises(AuthError):
            await _fetch(config, auth_client, commerce)

    @pytest.mark.asyncio
    async def test_search_term_filter_sent(self, config, auth_client, commerce):
        async with CommerceHttpClient(config, auth_client, transport=commerce.transport()) as client:
            await Paginator(client, PaginationSettings()).fetch_all_products(search_term="dress")

        params = commerce.requests[-1].url.params
        assert params["searchCriteria[filter_groups][0][filters][0][field]"] == "name"
        assert params["searchCriteria[filter_groups][0][filters][0][condition_type]"] == "like"
