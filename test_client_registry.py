"""
Tests for the client registry and its stores.
"""

import json
from unittest.mock import MagicMock

import pytest
import redis

from client_registry import (
    ClientRegistration,
    ClientRegistry,
    InMemoryClientStore,
    RedisClientStore,
    is_acceptable_redirect_uri,
)


class TestRedirectUriRules:
    @pytest.mark.parametrize("uri", [
        "https://client.example.com/callback",
        "https://client.example.com:8443/oauth/cb?x=1",
        "http://localhost:3000/callback",
        "http://127.0.0.1:33418/callback",
    ])
    def test_acceptable(self, uri):
        assert is_acceptable_redirect_uri(uri)

    @pytest.mark.parametrize("uri", [
        "",
        None,
        "http://client.example.com/callback",
        "https://client.example.com/callback#frag",
        "javascript:alert(1)",
        "ftp://localhost/callback",
        "https:///no-host",
    ])
    def test_rejected(self, uri):
        assert not is_acceptable_redirect_uri(uri)


class TestClientRegistry:
    """Test registration and redirect URI checks."""

    def test_register_generates_id(self):
        registry = ClientRegistry()
        registration = registry.register("My Client", ["https://a.example.com/cb"])

        assert registration.client_id.startswith("mcp_")
        assert registry.get(registration.client_id) == registration

    def test_duplicate_uris_collapsed(self):
        registry = ClientRegistry()
        registration = registry.register("c", ["https://a.example.com/cb", "https://a.example.com/cb"])
        assert registration.redirect_uris == ["https://a.example.com/cb"]

    @pytest.mark.parametrize("uris", [[], ["http://evil.example.com/cb"], ["https://a.example.com/cb", "nope"]])
    def test_register_rejects_bad_uris(self, uris):
        with pytest.raises(ValueError):
            ClientRegistry().register("c", uris)

    def test_exact_match_only(self):
        registry = ClientRegistry()
        registry.preload({"client-a": ["https://a.example.com/cb"]})

        assert registry.validate_redirect_uri("client-a", "https://a.example.com/cb")
        assert not registry.validate_redirect_uri("client-a", "https://a.example.com/cb/evil")
        assert not registry.validate_redirect_uri("client-a", "https://a.example.com/cb?x=1")
        assert not registry.validate_redirect_uri("client-a", "https://a.example.com/")

    def test_unknown_client(self):
        registry = ClientRegistry()
        assert registry.get("") is None
        assert not registry.validate_redirect_uri("missing", "https://a.example.com/cb")

    def test_preload_keeps_fixed_ids(self):
        registry = ClientRegistry()
        registry.preload({"fixed-id": ["http://localhost:8000/cb"]})
        assert registry.get("fixed-id").redirect_uris == ["http://localhost:8000/cb"]

    def test_ping_in_memory(self):
        assert ClientRegistry(InMemoryClientStore()).ping()


class TestRedisClientStore:
    """Test the Redis-backed store against a mocked client."""

    @pytest.fixture
    def redis_client(self):
        backing = {}
        client = MagicMock()
        client.set.side_effect = lambda key, value: backing.__setitem__(key, value)
        client.get.side_effect = lambda key: backing.get(key)
        client.ping.return_value = True
        client.backing = backing
        return client

    def test_save_and_load(self, redis_client):
        store = RedisClientStore(redis_client=redis_client)
        registry = ClientRegistry(store)
        registration = registry.register("c", ["https://a.example.com/cb"])

        key = f"oauth:client:{registration.client_id}"
        assert json.loads(redis_client.backing[key])["client_name"] == "c"
        assert store.load(registration.client_id) == registration

    def test_load_missing(self, redis_client):
        assert RedisClientStore(redis_client=redis_client).load("missing") is None

    def test_load_corrupt(self, redis_client):
        redis_client.backing["oauth:client:bad"] = "{not json"
        assert RedisClientStore(redis_client=redis_client).load("bad") is None

    def test_ping_failure(self, redis_client):
        redis_client.ping.side_effect = redis.ConnectionError("down")
        assert RedisClientStore(redis_client=redis_client).ping() is False

    def test_from_url(self, monkeypatch):
        from_url = MagicMock()
        monkeypatch.setattr(redis, "from_url", from_url)
        RedisClientStore(redis_url="redis://cache:6379/1")
        assert from_url.call_args[0][0] == "redis://cache:6379/1"
        assert from_url.call_args[1]["decode_responses"] is True


class TestClientRegistration:
    def test_from_dict_accepts_json_uris(self):
        registration = ClientRegistration.from_dict({
            "client_id": "c", "client_name": "n",
            "redirect_uris": json.dumps(["https://a.example.com/cb"]), "created_at": 1,
        })
        assert registration.redirect_uris == ["https://a.example.com/cb"]
