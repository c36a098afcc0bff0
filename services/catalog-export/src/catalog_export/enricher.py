"""
Batch enrichment of fetched products with inventory and category data.

Keys (skus, category ids) are grouped into fixed-size batches that are
dispatched concurrently under a semaphore, with a short delay between
dispatches. A batch that still fails after retries only produces warnings;
the affected products keep going with empty enrichment. Authentication
failures are not absorbed and end the run.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar, Union

from catalog_export.cache import CategoryMapCache, category_cache
from catalog_export.config import ExportConfig
from catalog_export.endpoints import (
    CATEGORY_LIST_PATH,
    SOURCE_ITEMS_PATH,
    category_list_query,
    source_items_query,
)
from catalog_export.exceptions import AuthError, EnrichmentWarning, ExportError
from catalog_export.http_client import CommerceHttpClient
from catalog_export.logging_config import log_execution_time
from catalog_export.models import (
    CategoryMap,
    CategoryNode,
    EnrichedProduct,
    InventoryRecord,
    RawProduct,
)

logger = logging.getLogger(__name__)

K = TypeVar("K")
R = TypeVar("R")

# Category paths deeper than this are not followed further.
MAX_ANCESTOR_ROUNDS = 10

# Source-items pages followed per inventory batch.
MAX_SOURCE_ITEM_PAGES = 20


def chunked(keys: Sequence[K], size: int) -> list[list[K]]:
    return [list(keys[i:i + size]) for i in range(0, len(keys), size)]


@dataclass
class EnrichmentResult:
    """Enriched products in input order plus the soft failures met on the way."""
    products: list[EnrichedProduct] = field(default_factory=list)
    warnings: list[EnrichmentWarning] = field(default_factory=list)
    inventory_batches: int = 0
    category_batches: int = 0
    category_count: int = 0
    cache_hit: bool = False

    @property
    def warning_count(self) -> int:
        return len(self.warnings)

    def to_dict(self) -> dict:
        return {
            "product_count": len(self.products),
            "warning_count": self.warning_count,
            "inventory_batches": self.inventory_batches,
            "category_batches": self.category_batches,
            "category_count": self.category_count,
            "cache_hit": self.cache_hit,
        }


class BatchEnricher:
    """Attaches stock and category breadcrumbs to RawProducts."""

    def __init__(
        self,
        http_client: CommerceHttpClient,
        config: ExportConfig,
        cache: Optional[CategoryMapCache] = None,
    ):
        self.http_client = http_client
        self.config = config
        self.batching = config.batching
        self.cache = cache if cache is not None else category_cache

    @log_execution_time(logger)
    async def enrich(
        self,
        products: list[RawProduct],
        include_inventory: Optional[bool] = None,
        include_categories: Optional[bool] = None,
    ) -> EnrichmentResult:
        """
        Enrich ``products`` in place order.

        Only ExportErrors raised by a batch are absorbed as warnings; any other
        exception propagates.
        """
        if include_inventory is None:
            include_inventory = self.config.export.include_inventory
        if include_categories is None:
            include_categories = self.config.export.include_categories

        result = EnrichmentResult()

        inventory: dict[str, InventoryRecord] = {}
        if include_inventory and products:
            inventory = await self._enrich_inventory(products, result)

        category_map: CategoryMap = {}
        if include_categories and products:
            category_map = await self._build_category_map(products, result)
            result.category_count = len(category_map)

        for product in products:
            record = inventory.get(product.sku)
            paths: list[str] = []
            unresolved: list[int] = []
            if include_categories:
                for cid in product.category_ids:
                    node = category_map.get(cid)
                    if node is None:
                        unresolved.append(cid)
                        continue
                    breadcrumb = node.breadcrumb()
                    if breadcrumb not in paths:
                        paths.append(breadcrumb)

            result.products.append(
                EnrichedProduct(
                    product=product,
                    quantity=record.quantity if record else None,
                    is_in_stock=record.is_in_stock if record else None,
                    category_paths=paths,
                    unresolved_category_ids=unresolved,
                )
            )

        if result.warnings:
            logger.warning(
                f"Enrichment finished with {result.warning_count} warnings",
                extra={"metrics": result.to_dict()},
            )
        return result

    # Inventory

    async def _enrich_inventory(
        self,
        products: list[RawProduct],
        result: EnrichmentResult,
    ) -> dict[str, InventoryRecord]:
        skus = list(dict.fromkeys(p.sku for p in products))
        batches = chunked(skus, self.batching.inventory_batch_size)
        result.inventory_batches = len(batches)

        outcomes = await self._dispatch(batches, self._fetch_inventory_batch, "inventory")

        inventory: dict[str, InventoryRecord] = {}
        for batch, outcome in zip(batches, outcomes):
            if isinstance(outcome, ExportError):
                result.warnings.extend(
                    EnrichmentWarning(kind="inventory", key=sku, reason=outcome.message)
                    for sku in batch
                )
                continue
            for sku in batch:
                record = outcome.get(sku)
                if record is None:
                    result.warnings.append(
                        EnrichmentWarning(
                            kind="inventory",
                            key=sku,
                            reason="sku not present in source-items response",
                        )
                    )
                else:
                    inventory[sku] = record
        return inventory

    async def _fetch_source_items(self, skus: list[str]) -> list[dict]:
        """Collect every source-items row for ``skus``, following pages until total_count."""
        collected: list[dict] = []
        page = 1
        while True:
            data = await self.http_client.request(
                "GET",
                SOURCE_ITEMS_PATH,
                source="inventory",
                query=source_items_query(skus, page),
            )
            items = _items(data)
            collected.extend(items)
            total = _int_or_none(data.get("total_count")) if isinstance(data, dict) else None
            if total is None or not items or len(collected) >= total:
                return collected
            if page >= MAX_SOURCE_ITEM_PAGES:
                logger.warning(
                    f"Source items truncated at {len(collected)} of {total} rows",
                    extra={"source": "inventory", "page": page},
                )
                return collected
            page += 1

    async def _fetch_inventory_batch(self, skus: list[str]) -> dict[str, InventoryRecord]:
        wanted = set(skus)
        totals: dict[str, dict[str, Any]] = {}
        for item in await self._fetch_source_items(skus):
            sku = str(item.get("sku") or "")
            if sku not in wanted:
                continue
            entry = totals.setdefault(sku, {"quantity": 0.0, "in_stock": False, "sources": []})
            try:
                entry["quantity"] += float(item.get("quantity") or 0)
            except (TypeError, ValueError):
                pass
            if str(item.get("status")) == "1":
                entry["in_stock"] = True
            if item.get("source_code"):
                entry["sources"].append(str(item["source_code"]))

        return {
            sku: InventoryRecord(
                sku=sku,
                quantity=entry["quantity"],
                is_in_stock=entry["in_stock"],
                source_codes=entry["sources"],
            )
            for sku, entry in totals.items()
        }

    # Categories

    async def _build_category_map(
        self,
        products: list[RawProduct],
        result: EnrichmentResult,
    ) -> CategoryMap:
        referenced = list(dict.fromkeys(cid for p in products for cid in p.category_ids))
        if not referenced:
            return {}

        use_cache = self.config.cache.categories_enabled
        fingerprint = self.config.commerce.fingerprint()
        cached = self.cache.get(fingerprint) if use_cache else None
        result.cache_hit = cached is not None
        known: CategoryMap = cached or {}

        missing = [cid for cid in referenced if cid not in known]
        if not missing:
            logger.info(
                "Category map served from cache",
                extra={"metrics": {"categories": len(known)}},
            )
            return known

        raw: dict[int, dict] = {}
        failed: set[int] = set()
        pending = missing
        rounds = 0
        while pending and rounds < MAX_ANCESTOR_ROUNDS:
            rounds += 1
            batches = chunked(pending, self.batching.category_batch_size)
            result.category_batches += len(batches)
            outcomes = await self._dispatch(batches, self._fetch_category_batch, "categories")

            for batch, outcome in zip(batches, outcomes):
                if isinstance(outcome, ExportError):
                    failed.update(batch)
                    result.warnings.extend(
                        EnrichmentWarning(kind="category", key=str(cid), reason=outcome.message)
                        for cid in batch
                    )
                    continue
                for cid in batch:
                    if cid in outcome:
                        raw[cid] = outcome[cid]
                    else:
                        failed.add(cid)
                        result.warnings.append(
                            EnrichmentWarning(
                                kind="category",
                                key=str(cid),
                                reason="category not present in categories response",
                            )
                        )

            pending = [
                aid
                for entry in raw.values()
                for aid in _ancestor_ids(entry)
                if aid not in raw and aid not in known and aid not in failed
            ]
            pending = list(dict.fromkeys(pending))

        new_nodes = {cid: _build_node(cid, raw, known) for cid in raw}
        merged: CategoryMap = {**known, **new_nodes}

        if use_cache and new_nodes:
            merged = self.cache.replace(fingerprint, merged, ttl=self.config.cache.category_ttl)

        logger.info(
            "Category map built",
            extra={
                "metrics": {
                    "categories": len(merged),
                    "fetched": len(new_nodes),
                    "unresolved": len(failed),
                    "rounds": rounds,
                }
            },
        )
        return merged

    async def _fetch_category_batch(self, category_ids: list[int]) -> dict[int, dict]:
        data = await self.http_client.request(
            "GET",
            CATEGORY_LIST_PATH,
            source="categories",
            query=category_list_query(category_ids),
        )
        found: dict[int, dict] = {}
        for item in _items(data):
            try:
                cid = int(item.get("id"))
            except (TypeError, ValueError):
                continue
            found[cid] = item
        return found

    # Dispatch

    async def _dispatch(
        self,
        batches: list[list[K]],
        worker: Callable[[list[K]], Awaitable[R]],
        source: str,
    ) -> list[Union[R, ExportError]]:
        """
        Run ``worker`` over every batch with bounded concurrency.
        Returns results in batch order; failed batches yield their ExportError.
        An AuthError is fatal for the run and cancels the remaining batches.
        """
        semaphore = asyncio.Semaphore(self.batching.max_concurrent)
        delay = self.batching.request_delay

        async def run(index: int, batch: list[K]) -> Union[R, ExportError]:
            async with semaphore:
                try:
                    return await worker(batch)
                except AuthError:
                    raise
                except ExportError as e:
                    logger.warning(
                        f"{source} batch {index + 1}/{len(batches)} failed: {e.message}",
                        extra={"source": source, "metrics": {"batch_size": len(batch)}},
                    )
                    return e

        tasks: list[asyncio.Task] = []
        try:
            for index, batch in enumerate(batches):
                if index and delay:
                    await asyncio.sleep(delay)
                tasks.append(asyncio.create_task(run(index, batch)))
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            raise


def _items(data: Any) -> list[dict]:
    if not isinstance(data, dict):
        return []
    return [item for item in data.get("items") or [] if isinstance(item, dict)]


def _path_ids(entry: dict) -> list[int]:
    ids = []
    for part in str(entry.get("path") or "").split("/"):
        try:
            ids.append(int(part))
        except ValueError:
            continue
    return ids


def _ancestor_ids(entry: dict) -> list[int]:
    """Ids on the path below the level-0 tree root, excluding the node itself."""
    return _path_ids(entry)[1:-1]


def _build_node(cid: int, raw: dict[int, dict], known: CategoryMap) -> CategoryNode:
    entry = raw[cid]
    name = str(entry.get("name") or "")

    path_ids = _path_ids(entry)[1:]
    names: list[str] = []
    for aid in path_ids:
        if aid == cid:
            names.append(name)
        elif aid in raw:
            names.append(str(raw[aid].get("name") or ""))
        elif aid in known:
            names.append(known[aid].name)
    if not names or path_ids[-1:] != [cid]:
        names.append(name)

    return CategoryNode(
        id=cid,
        name=name,
        parent_id=_int_or_none(entry.get("parent_id")) or None,
        level=_int_or_none(entry.get("level")) or 0,
        path=tuple(n for n in names if n),
    )


def _int_or_none(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
