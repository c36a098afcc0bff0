"""Commerce REST endpoint paths and searchCriteria query builders."""

from typing import Any, Iterable, Optional

ADMIN_TOKEN_PATH = "/integration/admin/token"
PRODUCTS_PATH = "/products"
SOURCE_ITEMS_PATH = "/inventory/source-items"
CATEGORY_LIST_PATH = "/categories/list"

# Source-items page size is this many rows per requested sku.
SOURCE_ITEMS_PER_SKU = 10

PRODUCT_FIELDS = (
    "items[id,sku,name,price,status,type_id,attribute_set_id,created_at,updated_at,"
    "weight,extension_attributes,media_gallery_entries[file,url,position,types,disabled],"
    "custom_attributes],total_count"
)


def flatten_query(query: Optional[dict], prefix: str = "") -> list[tuple[str, str]]:
    """
    Flatten nested dict/list query structures into Commerce bracket notation.

    {"searchCriteria": {"pageSize": 10}} -> [("searchCriteria[pageSize]", "10")]
    """
    pairs: list[tuple[str, str]] = []
    if not query:
        return pairs

    items: Iterable[tuple[Any, Any]]
    if isinstance(query, dict):
        items = query.items()
    else:
        items = enumerate(query)

    for key, value in items:
        name = f"{prefix}[{key}]" if prefix else str(key)
        if isinstance(value, (dict, list, tuple)):
            pairs.extend(flatten_query(value, name))
        elif value is not None:
            pairs.append((name, _stringify(value)))
    return pairs


def products_query(
    page_size: int,
    current_page: int,
    search_term: Optional[str] = None,
) -> dict:
    criteria: dict[str, Any] = {
        "pageSize": page_size,
        "currentPage": current_page,
    }
    if search_term:
        criteria["filter_groups"] = [
            {"filters": [{"field": "name", "value": f"%{search_term}%", "condition_type": "like"}]}
        ]
    return {"searchCriteria": criteria, "fields": PRODUCT_FIELDS}


def source_items_query(skus: list[str], page: int = 1) -> dict:
    return {
        "searchCriteria": {
            "filter_groups": [
                {"filters": [{"field": "sku", "value": ",".join(skus), "condition_type": "in"}]}
            ],
            "pageSize": len(skus) * SOURCE_ITEMS_PER_SKU,
            "currentPage": page,
        }
    }


def category_list_query(category_ids: list[int]) -> dict:
    return {
        "searchCriteria": {
            "filter_groups": [
                {
                    "filters": [
                        {
                            "field": "entity_id",
                            "value": ",".join(str(cid) for cid in category_ids),
                            "condition_type": "in",
                        }
                    ]
                }
            ],
            "pageSize": len(category_ids),
        }
    }


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)
