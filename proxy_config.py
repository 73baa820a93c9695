"""
Proxy Configuration

Environment-driven configuration for the OAuth authorization proxy.

Provides:
- get_secret(): the single get-secret-by-name entry point (env var or *_FILE)
- ProviderKind / ProviderConfig: known upstream OAuth providers as plain records
- ProxyConfig: everything the server needs, loaded once at startup
"""

import os
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Dict, List, Tuple


class ConfigError(ValueError):
    """Raised when required configuration is missing or invalid."""


def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Look up a secret by name.

    The value is read from the environment variable ``name``. If that is not
    set, ``name + "_FILE"`` may point to a file holding the value (the usual
    container secret mount).

    Args:
        name: Secret name, e.g. "PROVIDER_CLIENT_SECRET"
        default: Value returned when the secret is not configured

    Returns:
        Secret value or default
    """
    value = os.getenv(name)
    if value:
        return value

    path = os.getenv(f"{name}_FILE")
    if path:
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read().strip()
        except OSError as e:
            raise ConfigError(f"Cannot read secret file for {name}: {e}")

    return default


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got {value!r})")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number (got {value!r})")


class ProviderKind(Enum):
    """Upstream OAuth providers with built-in endpoint presets."""
    MIRO = "miro"
    GENERIC = "generic"


# Endpoint presets per provider kind. GENERIC has none; every URL must be configured.
PROVIDER_PRESETS: Dict[ProviderKind, Dict[str, object]] = {
    ProviderKind.MIRO: {
        "name": "Miro",
        "authorization_endpoint": "https://miro.com/oauth/authorize",
        "token_endpoint": "https://api.miro.com/v1/oauth/token",
        "validation_endpoint": "https://api.miro.com/v1/oauth-token",
        "scopes": ("boards:read", "boards:write"),
    },
    ProviderKind.GENERIC: {
        "name": "OAuth provider",
        "authorization_endpoint": "",
        "token_endpoint": "",
        "validation_endpoint": "",
        "scopes": (),
    },
}


@dataclass(frozen=True)
class ProviderConfig:
    """Upstream OAuth provider endpoints and client credentials."""
    kind: ProviderKind
    name: str
    authorization_endpoint: str
    token_endpoint: str
    validation_endpoint: str
    client_id: str
    client_secret: str
    redirect_uri: str
    scopes: Tuple[str, ...] = ()

    @classmethod
    def for_kind(cls, kind: ProviderKind, **overrides) -> "ProviderConfig":
        """
        Build a provider record from a preset, applying non-empty overrides.

        Args:
            kind: Provider preset to start from
            **overrides: Field values replacing the preset's

        Returns:
            ProviderConfig instance
        """
        values = dict(PROVIDER_PRESETS[kind])
        values.update({k: v for k, v in overrides.items() if v})
        values.setdefault("client_id", "")
        values.setdefault("client_secret", "")
        values.setdefault("redirect_uri", "")
        values["scopes"] = tuple(values.get("scopes") or ())
        return cls(kind=kind, **values)

    @property
    def default_scope(self) -> str:
        return " ".join(self.scopes)

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when usable)."""
        errors = []
        for attr in ("authorization_endpoint", "token_endpoint", "validation_endpoint",
                     "client_id", "client_secret", "redirect_uri"):
            if not getattr(self, attr):
                errors.append(f"{self.name}: {attr} is not configured")
        return errors


def parse_preset_clients(value: Optional[str]) -> Dict[str, List[str]]:
    """
    Parse statically registered clients.

    Format: ``client_a=https://a.example/cb,https://a.example/cb2;client_b=http://localhost:3000/cb``

    Args:
        value: Raw PRESET_CLIENTS value

    Returns:
        Mapping of client_id to redirect URIs
    """
    clients: Dict[str, List[str]] = {}
    if not value:
        return clients

    for entry in value.split(";"):
        entry = entry.strip()
        if not entry:
            continue
        if "=" not in entry:
            raise ConfigError(f"Invalid PRESET_CLIENTS entry (expected client_id=uri[,uri]): {entry!r}")
        client_id, uris = entry.split("=", 1)
        redirect_uris = [u.strip() for u in uris.split(",") if u.strip()]
        if not client_id.strip() or not redirect_uris:
            raise ConfigError(f"Invalid PRESET_CLIENTS entry: {entry!r}")
        clients[client_id.strip()] = redirect_uris
    return clients


# Upper bound for the state capsule lifetime (seconds)
MAX_CAPSULE_TTL = 600


@dataclass
class ProxyConfig:
    """Complete runtime configuration for the proxy."""
    server_url: str
    provider: ProviderConfig
    capsule_key: str
    capsule_ttl: int = 300
    grant_ttl: int = 300
    token_cache_ttl: int = 300
    token_cache_size: int = 100
    provider_timeout: float = 10.0
    cookie_secure: bool = True
    single_use_grants: bool = True
    redis_url: Optional[str] = None
    rate_limit_enabled: bool = True
    preset_clients: Dict[str, List[str]] = field(default_factory=dict)
    protected_path_prefixes: Tuple[str, ...] = ("/mcp",)

    def __post_init__(self):
        self.server_url = self.server_url.rstrip("/")
        if not self.provider.redirect_uri:
            self.provider = replace(self.provider, redirect_uri=self.callback_url)
        problems = self.provider.validate()
        if problems:
            raise ConfigError("; ".join(problems))
        if not self.capsule_key:
            raise ConfigError(
                "CAPSULE_ENCRYPTION_KEY is required. "
                "Generate a key with: python -c 'import os,base64; print(base64.b64encode(os.urandom(32)).decode())'"
            )
        if self.capsule_ttl <= 0:
            raise ConfigError("CAPSULE_TTL must be positive")
        if self.capsule_ttl > MAX_CAPSULE_TTL:
            logging.warning(f"CAPSULE_TTL {self.capsule_ttl}s exceeds {MAX_CAPSULE_TTL}s, capping")
            self.capsule_ttl = MAX_CAPSULE_TTL
        if self.grant_ttl <= 0:
            raise ConfigError("GRANT_TTL must be positive")
        if self.token_cache_ttl <= 0:
            raise ConfigError("TOKEN_CACHE_TTL must be positive")
        if self.token_cache_size <= 0:
            raise ConfigError("TOKEN_CACHE_SIZE must be positive")
        if self.provider_timeout <= 0:
            raise ConfigError("PROVIDER_TIMEOUT must be positive")

    @property
    def callback_url(self) -> str:
        return f"{self.server_url}/callback"

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        """
        Load configuration from environment variables.

        Returns:
            ProxyConfig instance

        Raises:
            ConfigError: If configuration is missing or invalid
        """
        server_url = os.getenv("MCP_SERVER_URL", "http://localhost:8080")

        kind_name = os.getenv("OAUTH_PROVIDER", ProviderKind.MIRO.value).strip().lower()
        try:
            kind = ProviderKind(kind_name)
        except ValueError:
            raise ConfigError(
                f"Unknown OAUTH_PROVIDER {kind_name!r} "
                f"(expected one of: {', '.join(k.value for k in ProviderKind)})"
            )

        scopes = os.getenv("PROVIDER_SCOPES")
        provider = ProviderConfig.for_kind(
            kind,
            authorization_endpoint=os.getenv("PROVIDER_AUTHORIZATION_URL"),
            token_endpoint=os.getenv("PROVIDER_TOKEN_URL"),
            validation_endpoint=os.getenv("PROVIDER_VALIDATION_URL"),
            client_id=os.getenv("PROVIDER_CLIENT_ID"),
            client_secret=get_secret("PROVIDER_CLIENT_SECRET"),
            redirect_uri=os.getenv("PROVIDER_REDIRECT_URI"),
            scopes=tuple(scopes.split()) if scopes else None,
        )

        prefixes = os.getenv("PROTECTED_PATH_PREFIXES", "/mcp")

        return cls(
            server_url=server_url,
            provider=provider,
            capsule_key=get_secret("CAPSULE_ENCRYPTION_KEY", ""),
            capsule_ttl=_env_int("CAPSULE_TTL", 300),
            grant_ttl=_env_int("GRANT_TTL", 300),
            token_cache_ttl=_env_int("TOKEN_CACHE_TTL", 300),
            token_cache_size=_env_int("TOKEN_CACHE_SIZE", 100),
            provider_timeout=_env_float("PROVIDER_TIMEOUT", 10.0),
            cookie_secure=_env_bool("COOKIE_SECURE", True),
            single_use_grants=_env_bool("SINGLE_USE_GRANTS", True),
            redis_url=os.getenv("REDIS_URL") or None,
            rate_limit_enabled=_env_bool("RATE_LIMIT_ENABLED", True),
            preset_clients=parse_preset_clients(os.getenv("PRESET_CLIENTS")),
            protected_path_prefixes=tuple(p.strip() for p in prefixes.split(",") if p.strip()),
        )
