"""
Transformer module for flattening enriched products into export records.
Handles field selection, image URL resolution and data quality checks.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from catalog_export.config import DEFAULT_EXPORT_FIELDS, FIELD_ALIASES
from catalog_export.exceptions import ErrorContext, TransformError
from catalog_export.logging_config import get_correlation_id, log_execution_time
from catalog_export.models import EnrichedProduct, ExportRecord, MediaGalleryEntry, join_list_cell

logger = logging.getLogger(__name__)

CORE_FIELDS = ("sku", "name", "price", "quantity", "categories", "images")

# Optional columns read straight off the product or its enrichment.
EXTRA_FIELDS = (
    "type_id",
    "status",
    "weight",
    "is_in_stock",
    "created_at",
    "updated_at",
    "attribute_set_id",
)


@dataclass
class TransformationResult:
    """Result of a batch transformation operation."""
    records: list[ExportRecord] = field(default_factory=list)
    warnings: list[dict] = field(default_factory=list)

    @property
    def record_count(self) -> int:
        return len(self.records)

    def to_dict(self) -> dict:
        return {
            "record_count": self.record_count,
            "warning_count": len(self.warnings),
            "skus_with_warnings": [w["sku"] for w in self.warnings],
        }


class ProductTransformer:
    """
    Flattens EnrichedProducts into ExportRecords.

    The transformation is total: missing or malformed values become empty
    strings or lists instead of failing the record.
    """

    def __init__(self, media_base_url: str, correlation_id: Optional[str] = None):
        self.media_base_url = media_base_url.rstrip("/")
        self.correlation_id = correlation_id or get_correlation_id()
        self.result = TransformationResult()

    @log_execution_time(logger)
    def transform_batch(
        self,
        products: list[EnrichedProduct],
        fields: Optional[list[str]] = None,
    ) -> TransformationResult:
        """
        Transform a batch of enriched products, one record per product.

        Args:
            products: Enriched products in export order
            fields: Selected export columns, defaults to DEFAULT_EXPORT_FIELDS

        Returns:
            TransformationResult with records and data quality warnings
        """
        fields = normalize_fields(fields)
        self.result = TransformationResult()

        logger.info(
            f"Starting batch transformation of {len(products)} products",
            extra={"metrics": {"input_count": len(products), "fields": fields}},
        )

        for product in products:
            record = self.transform(product, fields)
            self.result.records.append(record)

            issues = self._check_data_quality(record, product)
            if issues:
                self.result.warnings.append({"sku": record.sku, "issues": issues})

        logger.info(
            "Batch transformation complete",
            extra={
                "metrics": {
                    "record_count": self.result.record_count,
                    "warning_count": len(self.result.warnings),
                }
            },
        )
        return self.result

    def transform(self, enriched: EnrichedProduct, fields: Optional[list[str]] = None) -> ExportRecord:
        """
        Transform a single enriched product.

        Raises:
            TransformError: Only on an internal bug; malformed input degrades
        """
        fields = normalize_fields(fields)
        product = enriched.product

        try:
            extra = {
                name: self._extract_extra(enriched, name)
                for name in fields
                if name not in CORE_FIELDS
            }
            return ExportRecord(
                sku=product.sku,
                name=product.name,
                price=product.price,
                quantity=enriched.quantity,
                categories=list(enriched.category_paths),
                images=self._extract_images(product.media_gallery_entries),
                extra=extra,
            )
        except (TypeError, ValueError, AttributeError) as e:
            raise TransformError(
                f"Failed to transform product {product.sku}: {e}",
                sku=product.sku,
                context=ErrorContext(correlation_id=self.correlation_id, stage="transform"),
                original_exception=e,
            ) from e

    def _extract_images(self, entries: list[MediaGalleryEntry]) -> list[str]:
        """Resolve enabled gallery entries to URLs, primary image first."""
        enabled = [e for e in entries if not e.disabled and (e.url or e.file)]
        if not enabled:
            return []

        ordered = sorted(enabled, key=lambda e: e.position)
        primary = next((e for e in ordered if "image" in e.types), ordered[0])
        ordered.remove(primary)
        ordered.insert(0, primary)

        urls: list[str] = []
        for entry in ordered:
            url = self._image_url(entry)
            if url and url not in urls:
                urls.append(url)
        return urls

    def _image_url(self, entry: MediaGalleryEntry) -> str:
        if entry.url:
            return entry.url
        file = entry.file.strip()
        if not file:
            return ""
        if file.startswith(("http://", "https://")):
            return file
        if not file.startswith("/"):
            file = f"/{file}"
        return f"{self.media_base_url}/catalog/product{file}"

    def _extract_extra(self, enriched: EnrichedProduct, name: str) -> str:
        product = enriched.product
        if name == "is_in_stock":
            value: Any = enriched.is_in_stock
        elif name in EXTRA_FIELDS:
            value = getattr(product, name)
        else:
            value = product.custom_attribute(name)
        return _stringify(value)

    def _check_data_quality(self, record: ExportRecord, enriched: EnrichedProduct) -> list[str]:
        issues = []
        if not record.name:
            issues.append("Missing product name")
        if record.price is None or record.price <= 0:
            issues.append("Price is zero or missing")
        if not record.images:
            issues.append("No images")
        if enriched.unresolved_category_ids:
            issues.append(
                f"{len(enriched.unresolved_category_ids)} category ids could not be resolved"
            )
        return issues


def normalize_fields(fields: Optional[list[str]]) -> list[str]:
    """Apply column aliases and drop duplicates, keeping the first occurrence."""
    if not fields:
        return list(DEFAULT_EXPORT_FIELDS)
    selected: list[str] = []
    for name in fields:
        name = FIELD_ALIASES.get(name.strip(), name.strip())
        if name and name not in selected:
            selected.append(name)
    return selected or list(DEFAULT_EXPORT_FIELDS)


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return join_list_cell([_stringify(v) for v in value])
    if isinstance(value, dict):
        return ""
    return str(value)
