"""
Export configuration assembled once per run.

Defaults are overridden by environment variables, which are overridden by the
action call parameters. The resulting ExportConfig is validated at construction
and handed explicitly to every component; nothing reads the environment
mid-pipeline.
"""

import hashlib
import os
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, Field, SecretStr, ValidationError, field_validator

from catalog_export.exceptions import ConfigurationError
from catalog_export.retry import RetryPolicy

DEFAULT_EXPORT_FIELDS = ["sku", "name", "price", "quantity", "categories", "images"]

# Legacy column names accepted in the fields parameter.
FIELD_ALIASES = {"qty": "quantity", "category": "categories", "image": "images"}

SOURCES = ("products", "categories", "inventory")


class CommerceSettings(BaseModel):
    """Connection details for the Commerce REST API."""
    base_url: str
    username: Optional[str] = None
    password: Optional[SecretStr] = None
    api_version: str = "V1"
    store_code: str = "default"
    media_base_url: Optional[str] = None
    token_ttl: int = Field(default=4 * 3600, gt=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("base_url must be an absolute http(s) URL")
        return v

    @property
    def rest_url(self) -> str:
        return f"{self.base_url}/rest/{self.api_version}"

    @property
    def media_url(self) -> str:
        return (self.media_base_url or f"{self.base_url}/media").rstrip("/")

    def fingerprint(self) -> str:
        """Cache partition key for data that depends only on the target instance."""
        raw = f"{self.base_url}|{self.store_code}|{self.api_version}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


class PaginationSettings(BaseModel):
    page_size: int = Field(default=100, gt=0, le=1000)
    max_pages: int = Field(default=25, gt=0)


class BatchingSettings(BaseModel):
    inventory_batch_size: int = Field(default=50, gt=0)
    category_batch_size: int = Field(default=20, gt=0)
    max_concurrent: int = Field(default=15, gt=0)
    request_delay: float = Field(default=0.075, ge=0)


class SourceSettings(BaseModel):
    """Retry, pool and timeout settings for one logical Commerce source."""
    max_attempts: int = Field(default=3, ge=1)
    retry_delay: float = Field(default=1.0, ge=0)
    exponential_backoff: bool = True
    max_connections: int = Field(default=10, gt=0)
    max_keepalive_connections: int = Field(default=5, ge=0)
    timeout: float = Field(default=30.0, gt=0)

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.retry_delay,
            exponential_base=2.0 if self.exponential_backoff else 1.0,
        )


def _default_sources() -> dict[str, SourceSettings]:
    return {
        "products": SourceSettings(),
        "categories": SourceSettings(),
        "inventory": SourceSettings(
            max_attempts=5,
            retry_delay=0.5,
            max_connections=15,
            max_keepalive_connections=8,
            timeout=15.0,
        ),
    }


class CacheSettings(BaseModel):
    categories_enabled: bool = True
    category_ttl: int = Field(default=1800, ge=0)


class StorageSettings(BaseModel):
    provider: Literal["s3", "files"] = "s3"
    bucket: Optional[str] = None
    region: str = "us-east-1"
    prefix: str = "public/"
    endpoint_url: Optional[str] = None
    files_root: str = "/tmp/catalog-export-files"
    file_name: str = "products.csv"
    action_base_url: Optional[str] = None

    @field_validator("provider", mode="before")
    @classmethod
    def normalize_provider(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v == "app-builder":
                return "files"
        return v

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        v = v.strip()
        if not v or "/" in v or v.startswith("."):
            raise ValueError("file_name must be a plain file name")
        return v


class ExportSettings(BaseModel):
    fields: list[str] = Field(default_factory=lambda: list(DEFAULT_EXPORT_FIELDS))
    include_inventory: bool = True
    include_categories: bool = True
    env: Literal["dev", "prod"] = "prod"

    @field_validator("fields", mode="before")
    @classmethod
    def parse_fields(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [part for part in v.split(",")]
        if isinstance(v, (list, tuple)):
            cleaned = []
            for name in v:
                name = FIELD_ALIASES.get(str(name).strip(), str(name).strip())
                if name and name not in cleaned:
                    cleaned.append(name)
            if not cleaned:
                raise ValueError("at least one export field is required")
            return cleaned
        return v

    @field_validator("env", mode="before")
    @classmethod
    def normalize_env(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return {"development": "dev", "production": "prod"}.get(v, v)
        return v

    @property
    def is_production(self) -> bool:
        return self.env == "prod"


class ExportConfig(BaseModel):
    """Complete configuration for one export run."""
    commerce: CommerceSettings
    pagination: PaginationSettings = Field(default_factory=PaginationSettings)
    batching: BatchingSettings = Field(default_factory=BatchingSettings)
    sources: dict[str, SourceSettings] = Field(default_factory=_default_sources)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    export: ExportSettings = Field(default_factory=ExportSettings)
    log_level: str = "INFO"

    @field_validator("sources")
    @classmethod
    def ensure_all_sources(cls, v: dict[str, SourceSettings]) -> dict[str, SourceSettings]:
        merged = _default_sources()
        merged.update(v)
        unknown = set(merged) - set(SOURCES)
        if unknown:
            raise ValueError(f"unknown sources: {sorted(unknown)}")
        return merged

    def source(self, name: str) -> SourceSettings:
        return self.sources[name]


def parse_bool(value: Any) -> bool:
    """Interpret action/env flags such as 'true', '1', 'no'."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    return str(value).strip().lower() in ("1", "true", "yes", "on")


# (env var / param name) -> (section, key)
_ENV_MAP = {
    "COMMERCE_BASE_URL": ("commerce", "base_url"),
    "COMMERCE_ADMIN_USERNAME": ("commerce", "username"),
    "COMMERCE_ADMIN_PASSWORD": ("commerce", "password"),
    "COMMERCE_STORE_CODE": ("commerce", "store_code"),
    "COMMERCE_MEDIA_URL": ("commerce", "media_base_url"),
    "PRODUCT_PAGE_SIZE": ("pagination", "page_size"),
    "PRODUCT_MAX_PAGES": ("pagination", "max_pages"),
    "INVENTORY_BATCH_SIZE": ("batching", "inventory_batch_size"),
    "CATEGORY_BATCH_SIZE": ("batching", "category_batch_size"),
    "MAX_CONCURRENT_REQUESTS": ("batching", "max_concurrent"),
    "CATEGORY_CACHE_TTL": ("cache", "category_ttl"),
    "STORAGE_PROVIDER": ("storage", "provider"),
    "S3_BUCKET_NAME": ("storage", "bucket"),
    "S3_PREFIX": ("storage", "prefix"),
    "AWS_REGION": ("storage", "region"),
    "LOCALSTACK_ENDPOINT": ("storage", "endpoint_url"),
    "FILES_ROOT": ("storage", "files_root"),
    "EXPORT_FILE_NAME": ("storage", "file_name"),
    "ACTION_BASE_URL": ("storage", "action_base_url"),
    "EXPORT_ENV": ("export", "env"),
}

# Call parameters recognised by the export action.
_PARAM_MAP = {
    **_ENV_MAP,
    "COMMERCE_URL": ("commerce", "base_url"),
    "fields": ("export", "fields"),
    "include_inventory": ("export", "include_inventory"),
    "include_categories": ("export", "include_categories"),
    "env": ("export", "env"),
    "fileName": ("storage", "file_name"),
}


def _apply(sections: dict, mapping: Mapping[str, tuple], source: Mapping[str, Any]) -> None:
    for key, (section, name) in mapping.items():
        value = source.get(key)
        if value is None or value == "":
            continue
        sections.setdefault(section, {})[name] = value


def load_config(
    params: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> ExportConfig:
    """
    Build the ExportConfig for one run.

    Args:
        params: Action parameters (query, body and header values already merged)
        environ: Environment mapping, defaults to ``os.environ``

    Raises:
        ConfigurationError: If a required value is missing or a value is invalid
    """
    params = params or {}
    environ = os.environ if environ is None else environ

    sections: dict[str, dict] = {}
    _apply(sections, _ENV_MAP, environ)
    _apply(sections, _PARAM_MAP, params)

    if "REQUEST_DELAY_MS" in environ:
        sections.setdefault("batching", {})["request_delay"] = _ms(environ["REQUEST_DELAY_MS"])

    export = sections.get("export", {})
    for flag in ("include_inventory", "include_categories"):
        if flag in export:
            export[flag] = parse_bool(export[flag])

    if not sections.get("commerce", {}).get("base_url"):
        raise ConfigurationError(
            message="COMMERCE_BASE_URL is required for product export",
            config_key="COMMERCE_BASE_URL",
        )

    try:
        config = ExportConfig(
            log_level=environ.get("LOG_LEVEL", "INFO"),
            **sections,
        )
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            message=f"Invalid configuration for {location}: {first.get('msg')}",
            config_key=location,
        ) from e

    if config.storage.provider == "s3" and not config.storage.bucket and config.export.is_production:
        raise ConfigurationError(
            message="S3_BUCKET_NAME is required when STORAGE_PROVIDER is s3",
            config_key="S3_BUCKET_NAME",
        )

    return config


def load_storage_settings(
    params: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> StorageSettings:
    """
    Build only the storage section, for the file actions that never talk to Commerce.

    Raises:
        ConfigurationError: If a storage value is invalid
    """
    environ = os.environ if environ is None else environ
    sections: dict[str, dict] = {}
    _apply(sections, _ENV_MAP, environ)
    _apply(sections, _PARAM_MAP, params or {})

    try:
        return StorageSettings(**sections.get("storage", {}))
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigurationError(
            message=f"Invalid storage configuration for {location}: {first.get('msg')}",
            config_key=f"storage.{location}",
        ) from e


def _ms(value: Any) -> float:
    try:
        return float(value) / 1000.0
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            message=f"REQUEST_DELAY_MS must be numeric, got {value!r}",
            config_key="REQUEST_DELAY_MS",
        ) from e
