"""
Shared pytest fixtures for the OAuth proxy tests.

The upstream provider is scripted behind httpx.MockTransport so no test talks
to the network.
"""

import base64
from urllib.parse import parse_qs

import httpx
import pytest

from proxy_config import ProviderConfig, ProviderKind, ProxyConfig

TEST_KEY = bytes(range(32))
TEST_KEY_B64 = base64.b64encode(TEST_KEY).decode("ascii")

SERVER_URL = "https://proxy.example.com"
CLIENT_ID = "mcp_test_client"
CLIENT_REDIRECT = "https://client.example.com/oauth/callback"
LOCAL_REDIRECT = "http://localhost:3000/callback"

PROVIDER_AUTHORIZE_URL = "https://provider.example.com/oauth/authorize"
PROVIDER_TOKEN_URL = "https://provider.example.com/oauth/token"
PROVIDER_VALIDATION_URL = "https://provider.example.com/v1/oauth-token"


class FakeClock:
    """Controllable wall clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """
    Scripted upstream OAuth provider.

    token_response / validation_response are (status, json_body) tuples, or an
    exception instance to raise from the transport.
    """

    def __init__(self):
        self.token_requests = []
        self.validation_requests = []
        self.token_response = (200, {
            "access_token": "provider-access-token",
            "token_type": "bearer",
            "expires_in": 3600,
            "refresh_token": "provider-refresh-token",
            "scope": "boards:read boards:write",
        })
        self.validation_response = (200, {
            "user_id": "3074457345618265000",
            "team_id": "3074457345618265111",
            "scopes": "boards:read boards:write",
        })

    def handler(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == PROVIDER_TOKEN_URL:
            form = {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}
            self.token_requests.append(form)
            return self._respond(self.token_response, request)

        if str(request.url) == PROVIDER_VALIDATION_URL:
            self.validation_requests.append(request.headers.get("Authorization"))
            return self._respond(self.validation_response, request)

        return httpx.Response(404, json={"error": "not_found"})

    @staticmethod
    def _respond(scripted, request: httpx.Request) -> httpx.Response:
        if isinstance(scripted, Exception):
            raise scripted
        status, body = scripted
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body or "")

    def http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def provider_config():
    return ProviderConfig.for_kind(
        ProviderKind.GENERIC,
        name="Test Provider",
        authorization_endpoint=PROVIDER_AUTHORIZE_URL,
        token_endpoint=PROVIDER_TOKEN_URL,
        validation_endpoint=PROVIDER_VALIDATION_URL,
        client_id="provider-client-id",
        client_secret="provider-client-secret",
        redirect_uri=f"{SERVER_URL}/callback",
        scopes=("boards:read", "boards:write"),
    )


@pytest.fixture
def proxy_config(provider_config):
    return ProxyConfig(
        server_url=SERVER_URL,
        provider=provider_config,
        capsule_key=TEST_KEY_B64,
        preset_clients={CLIENT_ID: [CLIENT_REDIRECT, LOCAL_REDIRECT]},
    )
