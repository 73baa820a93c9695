"""
Tests for the provider token client.

The provider is scripted behind httpx.MockTransport (see conftest.FakeProvider).
"""

from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from conftest import PROVIDER_AUTHORIZE_URL
from provider_client import (
    Claims,
    ProviderTokenClient,
    TokenError,
    TokenErrorReason,
    TokenExpired,
    TokenInvalid,
    TokenSet,
    UpstreamUnavailable,
)


@pytest.fixture
def client(provider_config, fake_provider, clock):
    return ProviderTokenClient(provider_config, http_client=fake_provider.http_client(), clock=clock)


class TestAuthorizationUrl:
    """Test provider authorization URL construction."""

    def test_contains_pkce_and_state(self, client):
        url = client.build_authorization_url("nonce-1", "challenge-1")
        parsed = urlparse(url)
        params = {k: v[0] for k, v in parse_qs(parsed.query).items()}

        assert url.startswith(PROVIDER_AUTHORIZE_URL + "?")
        assert params == {
            "response_type": "code",
            "client_id": "provider-client-id",
            "redirect_uri": "https://proxy.example.com/callback",
            "scope": "boards:read boards:write",
            "state": "nonce-1",
            "code_challenge": "challenge-1",
            "code_challenge_method": "S256",
        }

    def test_explicit_scope(self, client):
        params = parse_qs(urlparse(client.build_authorization_url("s", "c", scope="boards:read")).query)
        assert params["scope"] == ["boards:read"]


class TestExchangeCode:
    """Test authorization code exchange."""

    @pytest.mark.asyncio
    async def test_success(self, client, fake_provider, clock):
        token_set = await client.exchange_code("provider-code", "verifier-1")

        assert token_set.access_token == "provider-access-token"
        assert token_set.refresh_token == "provider-refresh-token"
        assert token_set.expires_in(clock()) == 3600
        assert token_set.scopes == frozenset({"boards:read", "boards:write"})

        sent = fake_provider.token_requests[0]
        assert sent["grant_type"] == "authorization_code"
        assert sent["code"] == "provider-code"
        assert sent["code_verifier"] == "verifier-1"
        assert sent["client_id"] == "provider-client-id"
        assert sent["client_secret"] == "provider-client-secret"
        assert sent["redirect_uri"] == "https://proxy.example.com/callback"

    @pytest.mark.asyncio
    async def test_missing_expires_in_defaults_to_one_hour(self, client, fake_provider, clock):
        fake_provider.token_response = (200, {"access_token": "at", "token_type": "Bearer"})
        token_set = await client.exchange_code("code", "verifier")
        assert token_set.expires_in(clock()) == 3600
        assert token_set.refresh_token is None
        # Provider omitted scope: configured scopes apply
        assert token_set.scope == "boards:read boards:write"

    @pytest.mark.asyncio
    async def test_zero_expires_in_kept(self, client, fake_provider, clock):
        fake_provider.token_response = (200, {"access_token": "at", "token_type": "Bearer", "expires_in": 0})
        token_set = await client.exchange_code("code", "verifier")
        assert token_set.expires_at == int(clock())
        assert token_set.expires_in(clock()) == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,body,reason", [
        (400, {"error": "invalid_grant"}, TokenErrorReason.INVALID_GRANT),
        (400, {"error": "invalid_client"}, TokenErrorReason.INVALID_CLIENT),
        (401, {"error": "unauthorized"}, TokenErrorReason.INVALID_CLIENT),
        (403, "", TokenErrorReason.INVALID_GRANT),
        (429, {"error": "slow_down"}, TokenErrorReason.UPSTREAM_UNAVAILABLE),
        (500, "oops", TokenErrorReason.UPSTREAM_UNAVAILABLE),
        (503, "", TokenErrorReason.UPSTREAM_UNAVAILABLE),
    ])
    async def test_error_classification(self, client, fake_provider, status, body, reason):
        fake_provider.token_response = (status, body)
        with pytest.raises(TokenError) as exc_info:
            await client.exchange_code("code", "verifier")
        assert exc_info.value.reason == reason

    @pytest.mark.asyncio
    async def test_network_error(self, client, fake_provider):
        fake_provider.token_response = httpx.ConnectError("connection refused")
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await client.exchange_code("code", "verifier")
        assert exc_info.value.reason == TokenErrorReason.NETWORK_ERROR
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        "not json",
        ["a", "list"],
        {"token_type": "bearer"},
        {"access_token": "at", "token_type": "mac"},
        {"access_token": "at", "expires_in": "soon"},
    ])
    async def test_malformed_response(self, client, fake_provider, body):
        fake_provider.token_response = (200, body)
        with pytest.raises(TokenError) as exc_info:
            await client.exchange_code("code", "verifier")
        assert exc_info.value.reason == TokenErrorReason.MALFORMED_RESPONSE
        assert not exc_info.value.retryable


class TestRefresh:
    """Test refresh token grant."""

    @pytest.mark.asyncio
    async def test_rotated_refresh_token_kept(self, client, fake_provider):
        fake_provider.token_response = (200, {"access_token": "at-2", "refresh_token": "rt-2", "expires_in": 60})
        token_set = await client.refresh("rt-1")

        assert token_set.access_token == "at-2"
        assert token_set.refresh_token == "rt-2"
        assert fake_provider.token_requests[0]["grant_type"] == "refresh_token"
        assert fake_provider.token_requests[0]["refresh_token"] == "rt-1"

    @pytest.mark.asyncio
    async def test_unrotated_refresh_token_carried_forward(self, client, fake_provider):
        fake_provider.token_response = (200, {"access_token": "at-2", "expires_in": 60})
        token_set = await client.refresh("rt-1")
        assert token_set.refresh_token == "rt-1"

    @pytest.mark.asyncio
    async def test_revoked_refresh_token(self, client, fake_provider):
        fake_provider.token_response = (400, {"error": "invalid_grant"})
        with pytest.raises(TokenError) as exc_info:
            await client.refresh("rt-1")
        assert exc_info.value.reason == TokenErrorReason.INVALID_GRANT


class TestValidate:
    """Test bearer token validation."""

    @pytest.mark.asyncio
    async def test_success(self, client, fake_provider):
        claims = await client.validate("bearer-1")

        assert claims == Claims(
            subject="3074457345618265000",
            scopes=frozenset({"boards:read", "boards:write"}),
            team_id="3074457345618265111",
        )
        assert fake_provider.validation_requests == ["Bearer bearer-1"]

    @pytest.mark.asyncio
    async def test_nested_user_and_team(self, client, fake_provider):
        fake_provider.validation_response = (200, {
            "user": {"id": "u-1"}, "team": {"id": 42}, "scope": ["boards:read"],
        })
        claims = await client.validate("bearer-1")
        assert claims.subject == "u-1"
        assert claims.team_id == "42"
        assert claims.scopes == frozenset({"boards:read"})

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 403])
    async def test_rejected(self, client, fake_provider, status):
        fake_provider.validation_response = (status, {"message": "invalid token"})
        with pytest.raises(TokenInvalid):
            await client.validate("bearer-1")

    @pytest.mark.asyncio
    async def test_inactive(self, client, fake_provider):
        fake_provider.validation_response = (200, {"active": False})
        with pytest.raises(TokenInvalid):
            await client.validate("bearer-1")

    @pytest.mark.asyncio
    async def test_expired(self, client, fake_provider, clock):
        fake_provider.validation_response = (200, {"sub": "u-1", "exp": int(clock())})
        with pytest.raises(TokenExpired):
            await client.validate("bearer-1")

    @pytest.mark.asyncio
    async def test_not_yet_expired(self, client, fake_provider, clock):
        fake_provider.validation_response = (200, {"sub": "u-1", "exp": int(clock()) + 60})
        claims = await client.validate("bearer-1")
        assert claims.expires_at == int(clock()) + 60

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 502])
    async def test_upstream_unavailable(self, client, fake_provider, status):
        fake_provider.validation_response = (status, "")
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await client.validate("bearer-1")
        assert exc_info.value.reason == TokenErrorReason.UPSTREAM_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_timeout(self, client, fake_provider):
        fake_provider.validation_response = httpx.ReadTimeout("timed out")
        with pytest.raises(UpstreamUnavailable) as exc_info:
            await client.validate("bearer-1")
        assert exc_info.value.reason == TokenErrorReason.NETWORK_ERROR

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,body", [
        (404, {"error": "not_found"}),
        (200, {"team_id": "t"}),
        (200, "not json"),
    ])
    async def test_malformed(self, client, fake_provider, status, body):
        fake_provider.validation_response = (status, body)
        with pytest.raises(TokenError) as exc_info:
            await client.validate("bearer-1")
        assert exc_info.value.reason == TokenErrorReason.MALFORMED_RESPONSE


class TestTokenSet:
    """Test TokenSet helpers."""

    def test_token_response(self):
        token_set = TokenSet("at", "rt", expires_at=1000, scopes=frozenset({"b", "a"}))
        assert token_set.to_token_response(now=400) == {
            "access_token": "at",
            "token_type": "Bearer",
            "expires_in": 600,
            "scope": "a b",
            "refresh_token": "rt",
        }

    def test_token_response_without_refresh(self):
        token_set = TokenSet("at", None, expires_at=1000, scopes=frozenset())
        assert "refresh_token" not in token_set.to_token_response(now=2000)
        assert token_set.expires_in(now=2000) == 0

    def test_dict_round_trip(self):
        token_set = TokenSet("at", "rt", expires_at=1000, scopes=frozenset({"a"}))
        assert TokenSet.from_dict(token_set.to_dict()) == token_set


class TestClientLifecycle:
    @pytest.mark.asyncio
    async def test_shared_client_not_closed(self, provider_config, fake_provider):
        http = fake_provider.http_client()
        client = ProviderTokenClient(provider_config, http_client=http)
        await client.aclose()
        assert not http.is_closed

    @pytest.mark.asyncio
    async def test_owned_client_closed(self, provider_config):
        client = ProviderTokenClient(provider_config)
        await client.aclose()
        assert client.http.is_closed
