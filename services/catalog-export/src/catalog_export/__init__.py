"""
Catalog Export - Adobe Commerce product catalog to CSV.

This package fetches products from a Commerce instance, enriches them with
inventory and category data, flattens them into CSV and stores the file in
S3 or the managed files store.
"""

from catalog_export.config import ExportConfig, load_config
from catalog_export.exceptions import (
    AuthError,
    ConfigurationError,
    EnrichmentWarning,
    ExportError,
    FetchError,
    FileNotFoundInStorageError,
    HttpError,
    RequestTimeoutError,
    StorageError,
    TransformError,
)
from catalog_export.handler import (
    browse_files_handler,
    delete_file_handler,
    download_file_handler,
    handler,
)
from catalog_export.orchestrator import PipelineOrchestrator, PipelineState

__all__ = [
    "handler",
    "browse_files_handler",
    "download_file_handler",
    "delete_file_handler",
    "PipelineOrchestrator",
    "PipelineState",
    "ExportConfig",
    "load_config",
    "ExportError",
    "ConfigurationError",
    "AuthError",
    "HttpError",
    "RequestTimeoutError",
    "FetchError",
    "TransformError",
    "StorageError",
    "FileNotFoundInStorageError",
    "EnrichmentWarning",
]

__version__ = "1.0.0"
