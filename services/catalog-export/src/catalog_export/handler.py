"""
Action entrypoints for the catalog export service.

The export action runs the full pipeline; the file actions browse, download
and delete previously exported files. Every handler returns
``{"statusCode", "headers", "body"}`` and never raises.
"""

import asyncio
import base64
import binascii
import gzip
import json
import os
import time
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl

import httpx

from catalog_export.config import load_config, load_storage_settings
from catalog_export.exceptions import ConfigurationError, ExportError
from catalog_export.logging_config import configure_logging, set_correlation_id
from catalog_export.orchestrator import PipelineOrchestrator
from catalog_export.storage import StorageGateway, create_storage

logger = configure_logging(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    service_name="catalog-export",
)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, DELETE, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}

_GZIP_MAGIC = b"\x1f\x8b"


def request_method(event: Mapping[str, Any]) -> str:
    method = event.get("httpMethod") or event.get("__ow_method")
    if not method:
        method = event.get("requestContext", {}).get("http", {}).get("method")
    return str(method or "GET").upper()


def parse_params(event: Mapping[str, Any]) -> dict:
    """
    Merge action parameters. Later sources win: query string, then body.

    Accepts API Gateway style events (``queryStringParameters`` + ``body``)
    as well as flat parameter dictionaries.

    Raises:
        ConfigurationError: If the body cannot be decoded
    """
    if not isinstance(event, Mapping):
        return {}

    gateway_keys = ("queryStringParameters", "body", "headers", "httpMethod", "requestContext")
    if not any(key in event for key in gateway_keys):
        return {k: v for k, v in event.items() if not k.startswith("__ow_")}

    params: dict[str, Any] = {}
    params.update(event.get("queryStringParameters") or {})

    body = event.get("body")
    if body:
        params.update(_parse_body(body, event))
    return params


def _parse_body(body: Any, event: Mapping[str, Any]) -> dict:
    if isinstance(body, Mapping):
        return dict(body)

    try:
        if event.get("isBase64Encoded"):
            body = base64.b64decode(body).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ConfigurationError(message=f"Request body is not valid base64: {e}", config_key="body") from e

    headers = {str(k).lower(): v for k, v in (event.get("headers") or {}).items()}
    content_type = str(headers.get("content-type", "application/json"))

    if "application/x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(body, keep_blank_values=True))

    try:
        parsed = json.loads(body)
    except json.JSONDecodeError as e:
        raise ConfigurationError(message=f"Invalid JSON in request body: {e}", config_key="body") from e
    if not isinstance(parsed, dict):
        raise ConfigurationError(message="Request body must be a JSON object", config_key="body")
    return parsed


def build_response(
    status_code: int,
    body: Any,
    start_time: float,
    headers: Optional[dict] = None,
    is_base64: bool = False,
) -> dict:
    """Build the action response with timing metadata."""
    duration_ms = (time.perf_counter() - start_time) * 1000

    if isinstance(body, dict):
        body["durationMs"] = round(duration_ms, 2)

    logger.info(
        "Action invocation complete",
        extra={
            "status_code": status_code,
            "duration_ms": round(duration_ms, 2),
        },
    )

    response = {
        "statusCode": status_code,
        "headers": {**CORS_HEADERS, "Content-Type": "application/json", **(headers or {})},
        "body": body,
    }
    if is_base64:
        response["isBase64Encoded"] = True
    return response


def _error_response(error: ExportError, start_time: float, production: bool = True) -> dict:
    body: dict[str, Any] = {"success": False, "error": error.message, "steps": []}
    if not production:
        body["details"] = error.to_dict()
    logger.error(f"Action failed: {error.message}", extra={"error": error.to_dict()})
    return build_response(error.status_code, body, start_time)


def _unexpected_response(error: Exception, start_time: float, steps: Optional[list] = None) -> dict:
    logger.error(f"Unexpected error: {error}", exc_info=True)
    return build_response(
        500,
        {
            "success": False,
            "error": f"{type(error).__name__}: {error}",
            "steps": list(steps or []),
        },
        start_time,
    )


def handler(
    event: dict,
    context: Any,
    environ: Optional[Mapping[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    storage: Optional[StorageGateway] = None,
) -> dict:
    """
    Export action: fetch the catalog from Commerce and store it as CSV.

    Args:
        event: Action event (query string and/or body parameters)
        context: Lambda context
        environ: Environment override, defaults to ``os.environ``
        transport: Optional httpx transport for the Commerce connection
        storage: Optional pre-built storage backend

    Returns:
        Response with the success or error envelope
    """
    start_time = time.perf_counter()
    correlation_id = set_correlation_id()

    logger.info(
        "Export action started",
        extra={
            "metrics": {
                "correlation_id": correlation_id,
                "aws_request_id": getattr(context, "aws_request_id", None) if context else None,
            }
        },
    )

    if request_method(event) == "OPTIONS":
        return build_response(200, {}, start_time)

    orchestrator: Optional[PipelineOrchestrator] = None
    try:
        params = parse_params(event)
        config = load_config(params, environ)
        orchestrator = PipelineOrchestrator(config, storage=storage, transport=transport)
        status_code, body = asyncio.run(orchestrator.run())
        return build_response(status_code, body, start_time)

    except ExportError as e:
        return _error_response(e, start_time)

    except Exception as e:
        steps = orchestrator.run_state.steps if orchestrator and orchestrator.run_state else []
        return _unexpected_response(e, start_time, steps)


def _file_action(event: dict, environ: Optional[Mapping[str, str]], require_name: bool):
    params = parse_params(event)
    file_name = params.pop("fileName", None)
    if require_name and not file_name:
        raise ConfigurationError(message="fileName parameter is required", config_key="fileName")
    settings = load_storage_settings(params, environ)
    return file_name, settings


def browse_files_handler(
    event: dict,
    context: Any,
    environ: Optional[Mapping[str, str]] = None,
    storage: Optional[StorageGateway] = None,
) -> dict:
    """List exported files with size, modification time and download link."""
    start_time = time.perf_counter()
    set_correlation_id()

    if request_method(event) == "OPTIONS":
        return build_response(200, {}, start_time)

    try:
        _, settings = _file_action(event, environ, require_name=False)
        storage = storage or create_storage(settings)
        files = asyncio.run(storage.list())
        return build_response(
            200,
            {"success": True, "files": [f.to_dict() for f in files]},
            start_time,
        )
    except ExportError as e:
        return _error_response(e, start_time)
    except Exception as e:
        return _unexpected_response(e, start_time)


def download_file_handler(
    event: dict,
    context: Any,
    environ: Optional[Mapping[str, str]] = None,
    storage: Optional[StorageGateway] = None,
) -> dict:
    """Return a stored file as a base64 CSV attachment."""
    start_time = time.perf_counter()
    set_correlation_id()

    if request_method(event) == "OPTIONS":
        return build_response(200, {}, start_time)

    try:
        file_name, settings = _file_action(event, environ, require_name=True)
        storage = storage or create_storage(settings)
        content = asyncio.run(storage.read(file_name))
        if content[:2] == _GZIP_MAGIC:
            content = gzip.decompress(content)

        return build_response(
            200,
            base64.b64encode(content).decode("ascii"),
            start_time,
            headers={
                "Content-Type": "text/csv",
                "Content-Disposition": f'attachment; filename="{file_name}"',
            },
            is_base64=True,
        )
    except ExportError as e:
        return _error_response(e, start_time)
    except Exception as e:
        return _unexpected_response(e, start_time)


def delete_file_handler(
    event: dict,
    context: Any,
    environ: Optional[Mapping[str, str]] = None,
    storage: Optional[StorageGateway] = None,
) -> dict:
    """Delete a stored file."""
    start_time = time.perf_counter()
    set_correlation_id()

    if request_method(event) == "OPTIONS":
        return build_response(200, {}, start_time)

    try:
        file_name, settings = _file_action(event, environ, require_name=True)
        storage = storage or create_storage(settings)
        asyncio.run(storage.delete(file_name))
        return build_response(
            200,
            {"success": True, "message": f"File {file_name} deleted successfully"},
            start_time,
        )
    except ExportError as e:
        return _error_response(e, start_time)
    except Exception as e:
        return _unexpected_response(e, start_time)
