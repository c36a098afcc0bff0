"""
Data models for the catalog export pipeline.
These models represent the structures passed between pipeline stages.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class MediaGalleryEntry(BaseModel):
    """Media gallery entry as returned by the Commerce products endpoint."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    file: str = ""
    url: Optional[str] = None
    position: int = 0
    types: list[str] = Field(default_factory=list)
    disabled: bool = False

    @field_validator("file", mode="before")
    @classmethod
    def coerce_file(cls, v: Any) -> str:
        return v if isinstance(v, str) else ""

    @field_validator("position", mode="before")
    @classmethod
    def coerce_position(cls, v: Any) -> int:
        try:
            return int(v)
        except (TypeError, ValueError):
            return 0

    @field_validator("types", mode="before")
    @classmethod
    def coerce_types(cls, v: Any) -> list[str]:
        if not isinstance(v, list):
            return []
        return [str(t) for t in v]


class CustomAttribute(BaseModel):
    """Commerce custom attribute (attribute_code / value pair)."""
    model_config = ConfigDict(extra="ignore", frozen=True)

    attribute_code: str
    value: Any = None


class RawProduct(BaseModel):
    """
    Product as fetched from Commerce. Immutable once built; the category ids are
    gathered from every place Commerce reports them.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: Optional[int] = None
    sku: str
    name: str = ""
    price: Optional[float] = None
    status: Optional[int] = None
    type_id: str = ""
    attribute_set_id: Optional[int] = None
    weight: Optional[float] = None
    created_at: str = ""
    updated_at: str = ""
    category_ids: list[int] = Field(default_factory=list)
    media_gallery_entries: list[MediaGalleryEntry] = Field(default_factory=list)
    custom_attributes: list[CustomAttribute] = Field(default_factory=list)

    @classmethod
    def from_api(cls, item: dict) -> "RawProduct":
        """Build from a products-endpoint item, tolerating malformed optional fields."""
        return cls(
            id=_as_int(item.get("id")),
            sku=str(item["sku"]),
            name=str(item.get("name") or ""),
            price=_as_float(item.get("price")),
            status=_as_int(item.get("status")),
            type_id=str(item.get("type_id") or ""),
            attribute_set_id=_as_int(item.get("attribute_set_id")),
            weight=_as_float(item.get("weight")),
            created_at=str(item.get("created_at") or ""),
            updated_at=str(item.get("updated_at") or ""),
            category_ids=extract_category_ids(item),
            media_gallery_entries=[
                MediaGalleryEntry.model_validate(entry)
                for entry in item.get("media_gallery_entries") or []
                if isinstance(entry, dict)
            ],
            custom_attributes=[
                CustomAttribute.model_validate(attr)
                for attr in item.get("custom_attributes") or []
                if isinstance(attr, dict) and attr.get("attribute_code")
            ],
        )

    def custom_attribute(self, code: str) -> Any:
        for attr in self.custom_attributes:
            if attr.attribute_code == code:
                return attr.value
        return None


class InventoryRecord(BaseModel):
    """Stock for one sku, summed across inventory sources."""
    sku: str
    quantity: float = 0.0
    is_in_stock: bool = False
    source_codes: list[str] = Field(default_factory=list)


class CategoryNode(BaseModel):
    """Category with its breadcrumb of ancestor names (ending with its own name)."""
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    parent_id: Optional[int] = None
    level: int = 0
    path: tuple[str, ...] = ()

    def breadcrumb(self, separator: str = "/") -> str:
        return separator.join(self.path) if self.path else self.name


CategoryMap = dict[int, CategoryNode]


class EnrichedProduct(BaseModel):
    """RawProduct plus resolved inventory and category paths."""
    model_config = ConfigDict(frozen=True)

    product: RawProduct
    quantity: Optional[float] = None
    is_in_stock: Optional[bool] = None
    category_paths: list[str] = Field(default_factory=list)
    unresolved_category_ids: list[int] = Field(default_factory=list)

    @property
    def sku(self) -> str:
        return self.product.sku


class ExportRecord(BaseModel):
    """Flat output row; one per EnrichedProduct."""
    sku: str = ""
    name: str = ""
    price: Optional[float] = None
    quantity: Optional[float] = None
    categories: list[str] = Field(default_factory=list)
    images: list[str] = Field(default_factory=list)
    extra: dict[str, str] = Field(default_factory=dict)

    def value(self, field_name: str) -> Any:
        if field_name in self.extra:
            return self.extra[field_name]
        return getattr(self, field_name, "")

    @classmethod
    def from_cells(cls, fields: list[str], cells: list[str]) -> "ExportRecord":
        """Rebuild a record from one CSV row written with ``fields`` as header."""
        data: dict[str, Any] = {"extra": {}}
        for name, cell in zip(fields, cells):
            if name in ("price", "quantity"):
                data[name] = _as_float(cell) if cell != "" else None
            elif name in ("categories", "images"):
                data[name] = split_list_cell(cell)
            elif name in ("sku", "name"):
                data[name] = cell
            else:
                data["extra"][name] = cell
        return cls(**data)


LIST_SEPARATOR = "|"
_ESCAPE = "\\"


def join_list_cell(values: list[str]) -> str:
    """
    Join list items into one cell. Backslashes and separators inside an item
    are backslash-escaped so split_list_cell can recover the items.
    """
    return LIST_SEPARATOR.join(
        v.replace(_ESCAPE, _ESCAPE * 2).replace(LIST_SEPARATOR, _ESCAPE + LIST_SEPARATOR)
        for v in values
    )


def split_list_cell(cell: str) -> list[str]:
    """Inverse of join_list_cell. An empty cell is an empty list."""
    if not cell:
        return []
    items: list[str] = []
    current: list[str] = []
    escaped = False
    for ch in cell:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == _ESCAPE:
            escaped = True
        elif ch == LIST_SEPARATOR:
            items.append("".join(current))
            current = []
        else:
            current.append(ch)
    if escaped:
        current.append(_ESCAPE)
    items.append("".join(current))
    return items


def extract_category_ids(item: dict) -> list[int]:
    """
    Collect category ids from category_links, the category_ids custom attribute
    and a plain categories list, preserving first-seen order.
    """
    found: list[int] = []

    def add(value: Any) -> None:
        cid = _as_int(value)
        if cid is not None and cid not in found:
            found.append(cid)

    extension = item.get("extension_attributes") or {}
    if isinstance(extension, dict):
        for link in extension.get("category_links") or []:
            if isinstance(link, dict):
                add(link.get("category_id"))

    for attr in item.get("custom_attributes") or []:
        if not isinstance(attr, dict) or attr.get("attribute_code") != "category_ids":
            continue
        value = attr.get("value")
        if isinstance(value, str):
            values = value.split(",")
        elif isinstance(value, list):
            values = value
        else:
            values = [value]
        for v in values:
            add(str(v).strip() if v is not None else None)

    for cat in item.get("categories") or []:
        add(cat.get("id") if isinstance(cat, dict) else cat)

    return found


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
