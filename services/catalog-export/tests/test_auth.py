"""Tests for the admin token client."""

import httpx
import pytest

from catalog_export.auth import AdminCredentials, AuthClient
from catalog_export.cache import TTLCache
from catalog_export.exceptions import AuthError

CREDENTIALS = AdminCredentials(username="admin", password="secret")


class TestAuthClient:
    """Tests for AuthClient token exchange and caching."""

    @pytest.mark.asyncio
    async def test_exchange_strips_quotes(self, auth_client, commerce):
        token = await auth_client.get_token(CREDENTIALS)

        assert token == "token-1"
        assert commerce.count("/integration/admin/token") == 1
        request = commerce.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://commerce.example.com/rest/V1/integration/admin/token"

    @pytest.mark.asyncio
    async def test_token_is_cached(self, auth_client, commerce):
        first = await auth_client.get_token(CREDENTIALS)
        second = await auth_client.get_token(CREDENTIALS)

        assert first == second
        assert commerce.count("/integration/admin/token") == 1

    @pytest.mark.asyncio
    async def test_invalidate_forces_new_exchange(self, auth_client, commerce):
        await auth_client.get_token(CREDENTIALS)
        auth_client.invalidate(CREDENTIALS)

        token = await auth_client.get_token(CREDENTIALS)

        assert token == "token-2"
        assert commerce.count("/integration/admin/token") == 2

    @pytest.mark.asyncio
    async def test_cache_expires(self, config, transport, commerce):
        now = [0.0]
        cache = TTLCache("tokens", default_ttl=3600, clock=lambda: now[0])
        client = AuthClient(config.commerce, cache=cache, transport=transport, retry_delay=0)

        await client.get_token(CREDENTIALS)
        now[0] = config.commerce.token_ttl - 30
        await client.get_token(CREDENTIALS)

        assert commerce.count("/integration/admin/token") == 2

    @pytest.mark.asyncio
    async def test_missing_credentials_make_no_request(self, auth_client, commerce):
        with pytest.raises(AuthError, match="Missing admin credentials"):
            await auth_client.get_token(AdminCredentials(username="admin", password=None))

        assert commerce.requests == []

    @pytest.mark.asyncio
    async def test_failed_exchange_retried_once(self, auth_client, commerce):
        commerce.token_status = 500

        with pytest.raises(AuthError) as exc_info:
            await auth_client.get_token(CREDENTIALS)

        assert exc_info.value.upstream_status == 500
        assert exc_info.value.status_code == 401
        assert commerce.count("/integration/admin/token") == 2

    @pytest.mark.asyncio
    async def test_wrong_password(self, auth_client, commerce):
        with pytest.raises(AuthError) as exc_info:
            await auth_client.get_token(AdminCredentials(username="admin", password="wrong"))

        assert exc_info.value.upstream_status == 401

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_auth_error(self, config, token_cache):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = AuthClient(
            config.commerce,
            cache=token_cache,
            transport=httpx.MockTransport(refuse),
            retry_delay=0,
        )

        with pytest.raises(AuthError, match="ConnectError"):
            await client.get_token(CREDENTIALS)
        assert client.exchanges == 2


def test_credentials_repr_hides_password():
    assert "secret" not in repr(CREDENTIALS)


def test_fingerprint_changes_with_credentials():
    other = AdminCredentials(username="admin", password="other")
    assert CREDENTIALS.fingerprint("https://a") != other.fingerprint("https://a")
    assert CREDENTIALS.fingerprint("https://a") != CREDENTIALS.fingerprint("https://b")
