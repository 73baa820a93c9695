"""
Tests for environment-driven proxy configuration.
"""

import pytest

from conftest import TEST_KEY_B64
from proxy_config import (
    ConfigError,
    ProviderConfig,
    ProviderKind,
    ProxyConfig,
    get_secret,
    parse_preset_clients,
)

CONFIG_ENV_VARS = [
    "MCP_SERVER_URL", "OAUTH_PROVIDER", "PROVIDER_CLIENT_ID", "PROVIDER_CLIENT_SECRET",
    "PROVIDER_CLIENT_SECRET_FILE", "PROVIDER_AUTHORIZATION_URL", "PROVIDER_TOKEN_URL",
    "PROVIDER_VALIDATION_URL", "PROVIDER_SCOPES", "PROVIDER_REDIRECT_URI",
    "CAPSULE_ENCRYPTION_KEY", "CAPSULE_ENCRYPTION_KEY_FILE", "CAPSULE_TTL", "GRANT_TTL",
    "TOKEN_CACHE_TTL", "TOKEN_CACHE_SIZE", "PROVIDER_TIMEOUT", "COOKIE_SECURE",
    "SINGLE_USE_GRANTS", "REDIS_URL", "RATE_LIMIT_ENABLED", "PRESET_CLIENTS",
    "PROTECTED_PATH_PREFIXES",
]


@pytest.fixture
def env(monkeypatch):
    """Clean environment with the minimum Miro configuration."""
    for name in CONFIG_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("PROVIDER_CLIENT_ID", "miro-client")
    monkeypatch.setenv("PROVIDER_CLIENT_SECRET", "miro-secret")
    monkeypatch.setenv("CAPSULE_ENCRYPTION_KEY", TEST_KEY_B64)
    return monkeypatch


class TestFromEnv:
    """Test ProxyConfig.from_env()."""

    def test_miro_defaults(self, env):
        config = ProxyConfig.from_env()

        assert config.server_url == "http://localhost:8080"
        assert config.provider.kind == ProviderKind.MIRO
        assert config.provider.token_endpoint == "https://api.miro.com/v1/oauth/token"
        assert config.provider.redirect_uri == "http://localhost:8080/callback"
        assert config.provider.scopes == ("boards:read", "boards:write")
        assert config.capsule_ttl == 300
        assert config.token_cache_size == 100
        assert config.cookie_secure is True
        assert config.single_use_grants is True
        assert config.redis_url is None
        assert config.protected_path_prefixes == ("/mcp",)

    def test_overrides(self, env):
        env.setenv("MCP_SERVER_URL", "https://proxy.example.com/")
        env.setenv("PROVIDER_SCOPES", "boards:read")
        env.setenv("CAPSULE_TTL", "120")
        env.setenv("TOKEN_CACHE_SIZE", "500")
        env.setenv("PROVIDER_TIMEOUT", "2.5")
        env.setenv("COOKIE_SECURE", "false")
        env.setenv("REDIS_URL", "redis://cache:6379")
        env.setenv("PRESET_CLIENTS", "desktop=http://localhost:3000/cb")
        env.setenv("PROTECTED_PATH_PREFIXES", "/mcp, /api")

        config = ProxyConfig.from_env()

        assert config.server_url == "https://proxy.example.com"
        assert config.callback_url == "https://proxy.example.com/callback"
        assert config.provider.redirect_uri == "https://proxy.example.com/callback"
        assert config.provider.scopes == ("boards:read",)
        assert config.capsule_ttl == 120
        assert config.token_cache_size == 500
        assert config.provider_timeout == 2.5
        assert config.cookie_secure is False
        assert config.redis_url == "redis://cache:6379"
        assert config.preset_clients == {"desktop": ["http://localhost:3000/cb"]}
        assert config.protected_path_prefixes == ("/mcp", "/api")

    def test_capsule_ttl_capped(self, env):
        env.setenv("CAPSULE_TTL", "3600")
        assert ProxyConfig.from_env().capsule_ttl == 600

    def test_missing_capsule_key(self, env):
        env.delenv("CAPSULE_ENCRYPTION_KEY")
        with pytest.raises(ConfigError, match="CAPSULE_ENCRYPTION_KEY"):
            ProxyConfig.from_env()

    def test_missing_client_credentials(self, env):
        env.delenv("PROVIDER_CLIENT_SECRET")
        with pytest.raises(ConfigError, match="client_secret"):
            ProxyConfig.from_env()

    def test_unknown_provider(self, env):
        env.setenv("OAUTH_PROVIDER", "myspace")
        with pytest.raises(ConfigError, match="Unknown OAUTH_PROVIDER"):
            ProxyConfig.from_env()

    def test_generic_provider_requires_endpoints(self, env):
        env.setenv("OAUTH_PROVIDER", "generic")
        with pytest.raises(ConfigError, match="authorization_endpoint"):
            ProxyConfig.from_env()

    def test_generic_provider(self, env):
        env.setenv("OAUTH_PROVIDER", "generic")
        env.setenv("PROVIDER_AUTHORIZATION_URL", "https://idp.example.com/authorize")
        env.setenv("PROVIDER_TOKEN_URL", "https://idp.example.com/token")
        env.setenv("PROVIDER_VALIDATION_URL", "https://idp.example.com/userinfo")
        env.setenv("PROVIDER_SCOPES", "openid profile")

        provider = ProxyConfig.from_env().provider
        assert provider.kind == ProviderKind.GENERIC
        assert provider.default_scope == "openid profile"

    @pytest.mark.parametrize("name,value", [("CAPSULE_TTL", "abc"), ("PROVIDER_TIMEOUT", "fast"),
                                            ("TOKEN_CACHE_SIZE", "0"), ("CAPSULE_TTL", "-1"),
                                            ("GRANT_TTL", "-5"), ("GRANT_TTL", "0"),
                                            ("TOKEN_CACHE_TTL", "0")])
    def test_invalid_numbers(self, env, name, value):
        env.setenv(name, value)
        with pytest.raises(ConfigError):
            ProxyConfig.from_env()

    def test_explicit_provider_redirect_kept(self, env):
        env.setenv("PROVIDER_REDIRECT_URI", "https://edge.example.com/oauth/callback")
        config = ProxyConfig.from_env()
        assert config.provider.redirect_uri == "https://edge.example.com/oauth/callback"
        assert config.callback_url == "http://localhost:8080/callback"

    def test_config_error_is_value_error(self):
        assert issubclass(ConfigError, ValueError)


class TestGetSecret:
    def test_env_value(self, monkeypatch):
        monkeypatch.setenv("MY_SECRET", "s3cret")
        assert get_secret("MY_SECRET") == "s3cret"

    def test_file_value(self, monkeypatch, tmp_path):
        secret_file = tmp_path / "secret"
        secret_file.write_text("from-file\n")
        monkeypatch.delenv("MY_SECRET", raising=False)
        monkeypatch.setenv("MY_SECRET_FILE", str(secret_file))
        assert get_secret("MY_SECRET") == "from-file"

    def test_unreadable_file(self, monkeypatch, tmp_path):
        monkeypatch.delenv("MY_SECRET", raising=False)
        monkeypatch.setenv("MY_SECRET_FILE", str(tmp_path / "missing"))
        with pytest.raises(ConfigError):
            get_secret("MY_SECRET")

    def test_default(self, monkeypatch):
        monkeypatch.delenv("MY_SECRET", raising=False)
        monkeypatch.delenv("MY_SECRET_FILE", raising=False)
        assert get_secret("MY_SECRET", "fallback") == "fallback"


class TestPresetClients:
    def test_parse(self):
        assert parse_preset_clients("a=https://a.example/cb, https://a.example/cb2; b=http://localhost/cb") == {
            "a": ["https://a.example/cb", "https://a.example/cb2"],
            "b": ["http://localhost/cb"],
        }

    def test_empty(self):
        assert parse_preset_clients(None) == {}
        assert parse_preset_clients(" ; ") == {}

    @pytest.mark.parametrize("value", ["no-equals", "=https://a.example/cb", "a="])
    def test_invalid(self, value):
        with pytest.raises(ConfigError):
            parse_preset_clients(value)


class TestProxyConfig:
    def test_redirect_defaults_to_callback_url(self):
        provider = ProviderConfig.for_kind(ProviderKind.MIRO, client_id="c", client_secret="s")
        config = ProxyConfig(server_url="https://proxy.example.com/", provider=provider, capsule_key=TEST_KEY_B64)
        assert config.provider.redirect_uri == "https://proxy.example.com/callback"

    def test_negative_grant_ttl_rejected(self, provider_config):
        with pytest.raises(ConfigError, match="GRANT_TTL"):
            ProxyConfig(server_url="https://proxy.example.com", provider=provider_config,
                        capsule_key=TEST_KEY_B64, grant_ttl=-1)


class TestProviderConfig:
    def test_for_kind_ignores_empty_overrides(self):
        provider = ProviderConfig.for_kind(ProviderKind.MIRO, token_endpoint=None, client_id="c")
        assert provider.token_endpoint == "https://api.miro.com/v1/oauth/token"
        assert provider.client_id == "c"

    def test_validate_lists_missing_fields(self):
        problems = ProviderConfig.for_kind(ProviderKind.MIRO).validate()
        assert any("client_id" in p for p in problems)
        assert any("redirect_uri" in p for p in problems)
