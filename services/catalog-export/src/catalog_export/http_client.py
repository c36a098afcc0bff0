"""
Authenticated HTTP access to the Commerce REST API.

Each logical source (products, categories, inventory) gets its own connection
pool and retry policy. Pools live for one pipeline run and are closed with it.
"""

import logging
import time
from typing import Any, Optional

import httpx

from catalog_export.auth import AdminCredentials, AuthClient
from catalog_export.config import SOURCES, ExportConfig
from catalog_export.endpoints import flatten_query
from catalog_export.exceptions import (
    AuthError,
    HttpError,
    NetworkError,
    RequestTimeoutError,
)
from catalog_export.retry import RetryPolicy

logger = logging.getLogger(__name__)


class CommerceHttpClient:
    """
    Issues authenticated requests against ``{base_url}/rest/{api_version}``.

    Usage:
        async with CommerceHttpClient(config, auth_client) as client:
            data = await client.request("GET", "/products", source="products", query=...)
    """

    def __init__(
        self,
        config: ExportConfig,
        auth_client: AuthClient,
        credentials: Optional[AdminCredentials] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_policies: Optional[dict[str, RetryPolicy]] = None,
    ):
        self.config = config
        self.auth_client = auth_client
        self.credentials = credentials or AdminCredentials.from_settings(config.commerce)
        self.transport = transport
        self.retry_policies = {name: config.source(name).retry_policy() for name in SOURCES}
        if retry_policies:
            self.retry_policies.update(retry_policies)
        self._clients: dict[str, httpx.AsyncClient] = {}
        self.api_calls = 0

    async def __aenter__(self) -> "CommerceHttpClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        clients, self._clients = self._clients, {}
        for client in clients.values():
            await client.aclose()

    def _client(self, source: str) -> httpx.AsyncClient:
        client = self._clients.get(source)
        if client is None:
            settings = self.config.source(source)
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.timeout),
                limits=httpx.Limits(
                    max_connections=settings.max_connections,
                    max_keepalive_connections=settings.max_keepalive_connections,
                ),
                transport=self.transport,
            )
            self._clients[source] = client
        return client

    async def request(
        self,
        method: str,
        path: str,
        *,
        source: str = "products",
        query: Optional[dict] = None,
        body: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        """
        Send a request and return the parsed body.

        Transient failures are retried with the source's policy. A 401 triggers
        one re-authentication and one replay.

        Raises:
            HttpError: Non-2xx response after retries
            RequestTimeoutError: Request exceeded the source timeout
            NetworkError: Transport failure after retries
            AuthError: Token could not be obtained or was rejected twice
        """
        if source not in SOURCES:
            raise ValueError(f"Unknown Commerce source: {source}")

        url = f"{self.config.commerce.rest_url}{path}"
        params = flatten_query(query)
        policy = self.retry_policies[source]

        return await policy.execute(
            lambda: self._send_authenticated(method, url, source, params, body, headers),
            description=f"{method} {path}",
        )

    async def _send_authenticated(
        self,
        method: str,
        url: str,
        source: str,
        params: list[tuple[str, str]],
        body: Any,
        headers: Optional[dict[str, str]],
    ) -> Any:
        token = await self.auth_client.get_token(self.credentials)
        response = await self._send(method, url, source, params, body, headers, token)

        if response.status_code == 401:
            logger.warning(f"Commerce returned 401 for {method} {url}, refreshing admin token")
            self.auth_client.invalidate(self.credentials)
            token = await self.auth_client.get_token(self.credentials)
            response = await self._send(method, url, source, params, body, headers, token)
            if response.status_code == 401:
                raise AuthError(
                    "Commerce rejected a freshly issued admin token",
                    upstream_status=401,
                )

        return self._parse(response, url)

    async def _send(
        self,
        method: str,
        url: str,
        source: str,
        params: list[tuple[str, str]],
        body: Any,
        headers: Optional[dict[str, str]],
        token: str,
    ) -> httpx.Response:
        request_headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if headers:
            request_headers.update(headers)

        client = self._client(source)
        self.api_calls += 1
        start = time.perf_counter()
        try:
            response = await client.request(
                method,
                url,
                params=params or None,
                json=body,
                headers=request_headers,
            )
        except httpx.TimeoutException as e:
            timeout = self.config.source(source).timeout
            raise RequestTimeoutError(
                f"Request timed out after {timeout}s: {method} {url}",
                url=url,
                timeout=timeout,
                original_exception=e,
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(
                f"{type(e).__name__} calling {method} {url}: {e}",
                url=url,
                original_exception=e,
            ) from e

        logger.debug(
            f"{method} {url} -> {response.status_code}",
            extra={
                "source": source,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return response

    @staticmethod
    def _parse(response: httpx.Response, url: str) -> Any:
        content_type = response.headers.get("content-type", "")
        body: Any = response.text
        if "json" in content_type:
            try:
                body = response.json()
            except ValueError:
                body = response.text

        if not response.is_success:
            raise HttpError(status=response.status_code, body=body, url=url)
        return body
