"""
Custom exceptions for the catalog export pipeline.
Provides structured error handling with rich context for debugging and monitoring.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


class ErrorSeverity(Enum):
    """Severity levels for errors."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for routing and handling."""
    AUTHENTICATION = "authentication"
    NETWORK = "network"
    COMMERCE_API = "commerce_api"
    TRANSFORMATION = "transformation"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    DATA_QUALITY = "data_quality"


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ErrorContext:
    """Rich context for error tracking and debugging."""
    correlation_id: Optional[str] = None
    run_id: Optional[str] = None
    sku: Optional[str] = None
    stage: Optional[str] = None
    url: Optional[str] = None
    file_name: Optional[str] = None
    timestamp: str = field(default_factory=_utcnow)
    additional_data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert context to dictionary for logging."""
        return {
            "correlation_id": self.correlation_id,
            "run_id": self.run_id,
            "sku": self.sku,
            "stage": self.stage,
            "url": self.url,
            "file_name": self.file_name,
            "timestamp": self.timestamp,
            **self.additional_data,
        }


class ExportError(Exception):
    """Base exception for all catalog export errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        context: Optional[ErrorContext] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.COMMERCE_API,
        retryable: bool = False,
        status_code: Optional[int] = None,
        original_exception: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()
        self.severity = severity
        self.category = category
        self.retryable = retryable
        if status_code is not None:
            self.status_code = status_code
        self.original_exception = original_exception

    def to_dict(self) -> dict:
        """Serialize exception for logging and monitoring."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "retryable": self.retryable,
            "status_code": self.status_code,
            "context": self.context.to_dict(),
            "original_exception": str(self.original_exception) if self.original_exception else None,
        }


class ConfigurationError(ExportError):
    """Raised when configuration is invalid or missing."""

    status_code = 400

    def __init__(
        self,
        message: str,
        config_key: str,
        context: Optional[ErrorContext] = None,
    ):
        ctx = context or ErrorContext()
        ctx.additional_data["config_key"] = config_key

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.CONFIGURATION,
            retryable=False,
        )
        self.config_key = config_key


class AuthError(ExportError):
    """Raised when admin credentials are missing or the token exchange fails."""

    status_code = 401

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        if upstream_status is not None:
            ctx.additional_data["upstream_status"] = upstream_status

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.AUTHENTICATION,
            retryable=False,
            original_exception=original_exception,
        )
        self.upstream_status = upstream_status


class RequestTimeoutError(ExportError):
    """Raised when a Commerce request exceeds its deadline."""

    status_code = 504

    def __init__(
        self,
        message: str,
        url: str,
        timeout: float,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.url = url
        ctx.additional_data["timeout_seconds"] = timeout

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            retryable=True,
            original_exception=original_exception,
        )
        self.timeout = timeout


class NetworkError(ExportError):
    """Raised when the connection to Commerce fails before a response arrives."""

    status_code = 502

    def __init__(
        self,
        message: str,
        url: str,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.url = url

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.NETWORK,
            retryable=True,
            original_exception=original_exception,
        )


class HttpError(ExportError):
    """Raised for non-2xx Commerce responses."""

    def __init__(
        self,
        status: int,
        body: Any,
        url: Optional[str] = None,
        context: Optional[ErrorContext] = None,
    ):
        ctx = context or ErrorContext()
        ctx.url = url
        ctx.additional_data["status"] = status

        super().__init__(
            message=f"Commerce request failed with HTTP {status}: {_summarize_body(body)}",
            context=ctx,
            severity=ErrorSeverity.HIGH if status >= 500 else ErrorSeverity.MEDIUM,
            category=ErrorCategory.COMMERCE_API,
            retryable=status >= 500 or status == 429,
            status_code=status if 400 <= status < 600 else 502,
        )
        self.status = status
        self.body = body


class FetchError(ExportError):
    """Raised when product pagination is aborted after retries are exhausted."""

    status_code = 502

    def __init__(
        self,
        message: str,
        fetched_count: int,
        page: int,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.stage = "fetch"
        ctx.additional_data["fetched_count"] = fetched_count
        ctx.additional_data["page"] = page

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.COMMERCE_API,
            retryable=False,
            original_exception=original_exception,
        )
        self.fetched_count = fetched_count
        self.page = page


class TransformError(ExportError):
    """Raised when a record cannot be transformed. The transformer is total, so this marks a bug."""

    def __init__(
        self,
        message: str,
        sku: Optional[str] = None,
        field_name: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.sku = sku
        if field_name:
            ctx.additional_data["field_name"] = field_name

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.TRANSFORMATION,
            retryable=False,
            original_exception=original_exception,
        )


class StorageError(ExportError):
    """Raised when a storage backend operation fails."""

    def __init__(
        self,
        message: str,
        provider: str,
        operation: str,
        file_name: Optional[str] = None,
        context: Optional[ErrorContext] = None,
        original_exception: Optional[Exception] = None,
    ):
        ctx = context or ErrorContext()
        ctx.file_name = file_name
        ctx.additional_data["provider"] = provider
        ctx.additional_data["operation"] = operation

        super().__init__(
            message=message,
            context=ctx,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            retryable=True,
            original_exception=original_exception,
        )
        self.provider = provider
        self.operation = operation


class FileNotFoundInStorageError(StorageError):
    """Raised when the requested file does not exist in the backend."""

    status_code = 404

    def __init__(self, file_name: str, provider: str, operation: str = "read"):
        super().__init__(
            message=f"File not found: {file_name}",
            provider=provider,
            operation=operation,
            file_name=file_name,
        )
        self.retryable = False
        self.severity = ErrorSeverity.LOW


@dataclass
class EnrichmentWarning:
    """Soft failure recorded while enriching; accumulated, never raised."""
    kind: str
    key: str
    reason: str

    def to_dict(self) -> dict:
        return {"kind": self.kind, "key": self.key, "reason": self.reason}


def _summarize_body(body: Any, limit: int = 200) -> str:
    if isinstance(body, dict):
        text = str(body.get("message") or body)
    else:
        text = str(body)
    return text if len(text) <= limit else text[:limit] + "..."
