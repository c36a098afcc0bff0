"""
Commerce admin token exchange with process-local caching.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from catalog_export.cache import TTLCache, token_cache
from catalog_export.config import CommerceSettings
from catalog_export.endpoints import ADMIN_TOKEN_PATH
from catalog_export.exceptions import AuthError, ExportError
from catalog_export.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Tokens are refreshed this long before their declared lifetime runs out.
EXPIRY_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class AdminCredentials:
    username: Optional[str]
    password: Optional[str]

    @classmethod
    def from_settings(cls, settings: CommerceSettings) -> "AdminCredentials":
        password = settings.password.get_secret_value() if settings.password else None
        return cls(username=settings.username, password=password)

    @property
    def complete(self) -> bool:
        return bool(self.username and self.password)

    def fingerprint(self, base_url: str) -> str:
        raw = f"{base_url}|{self.username}|{self.password}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def __repr__(self) -> str:
        return f"AdminCredentials(username={self.username!r}, password=***)"


class _ExchangeFailed(ExportError):
    """Internal marker so a failed exchange is retried exactly once."""

    def __init__(self, message: str, status: Optional[int] = None, original: Optional[Exception] = None):
        super().__init__(message, retryable=True, original_exception=original)
        self.status = status


class AuthClient:
    """Obtains and caches admin bearer tokens for one Commerce instance."""

    def __init__(
        self,
        settings: CommerceSettings,
        cache: Optional[TTLCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        retry_delay: float = 0.5,
    ):
        self.settings = settings
        self.cache = cache if cache is not None else token_cache
        self.transport = transport
        self.timeout = timeout
        self.retry_policy = RetryPolicy.fixed(max_attempts=2, delay=retry_delay)
        self.exchanges = 0

    async def get_token(self, credentials: AdminCredentials) -> str:
        """
        Return a bearer token for ``credentials``, exchanging them if no valid
        cached token exists.

        Raises:
            AuthError: If credentials are missing or the exchange fails twice
        """
        if not credentials.complete:
            raise AuthError(
                "Missing admin credentials: COMMERCE_ADMIN_USERNAME and "
                "COMMERCE_ADMIN_PASSWORD required"
            )

        key = credentials.fingerprint(self.settings.base_url)
        cached = self.cache.get(key)
        if cached:
            logger.debug("Using cached Commerce admin token")
            return cached

        try:
            token = await self.retry_policy.execute(
                lambda: self._exchange(credentials),
                description="admin token exchange",
            )
        except _ExchangeFailed as e:
            raise AuthError(
                f"Commerce admin token request failed: {e.message}",
                upstream_status=e.status,
                original_exception=e.original_exception,
            ) from e

        ttl = max(self.settings.token_ttl - EXPIRY_MARGIN_SECONDS, 1)
        self.cache.set(key, token, ttl=ttl)
        logger.info("Commerce admin token retrieved", extra={"metrics": {"ttl": ttl}})
        return token

    def invalidate(self, credentials: AdminCredentials) -> None:
        """Drop the cached token, e.g. after Commerce answered 401."""
        self.cache.invalidate(credentials.fingerprint(self.settings.base_url))
        logger.warning("Admin token invalidated")

    async def _exchange(self, credentials: AdminCredentials) -> str:
        url = f"{self.settings.rest_url}{ADMIN_TOKEN_PATH}"
        self.exchanges += 1
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    json={"username": credentials.username, "password": credentials.password},
                    headers={"Content-Type": "application/json", "Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise _ExchangeFailed(f"{type(e).__name__}: {e}", original=e) from e

        if not response.is_success:
            raise _ExchangeFailed(
                f"{response.status_code} {response.reason_phrase} - {response.text[:200]}",
                status=response.status_code,
            )

        try:
            token = response.json()
        except ValueError:
            token = response.text
        token = str(token).strip().strip('"')
        if not token:
            raise _ExchangeFailed("identity endpoint returned an empty token", status=response.status_code)
        return token
