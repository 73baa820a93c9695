"""
Client Registry

Minimal registry of client platforms allowed to start authorization flows.
Each registration records the exact redirect URIs the client may use; every
authorization request is checked against that set (exact membership, never
prefix matching).

Storage is in-memory by default, or Redis when REDIS_URL is configured so that
dynamically registered clients are visible to every proxy instance.
"""

import json
import logging
import secrets
import threading
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List, Iterable
from urllib.parse import urlparse

import redis


LOOPBACK_HOSTS = ("localhost", "127.0.0.1")


@dataclass
class ClientRegistration:
    """Registered client platform."""
    client_id: str
    client_name: str
    redirect_uris: List[str]
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClientRegistration":
        if isinstance(data.get('redirect_uris'), str):
            data['redirect_uris'] = json.loads(data['redirect_uris'])
        return cls(**data)


def is_acceptable_redirect_uri(uri: str) -> bool:
    """
    Check that a redirect URI may be registered.

    Accepts https URLs and plain http only on loopback hosts. Fragments are
    not allowed (RFC 6749 section 3.1.2).

    Args:
        uri: Candidate redirect URI

    Returns:
        True if acceptable
    """
    if not isinstance(uri, str) or not uri:
        return False
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False

    if parsed.fragment or not parsed.hostname:
        return False
    if parsed.scheme == "https":
        return True
    return parsed.scheme == "http" and parsed.hostname in LOOPBACK_HOSTS


class InMemoryClientStore:
    """Process-local client store."""

    def __init__(self):
        self._clients: Dict[str, ClientRegistration] = {}
        self._lock = threading.Lock()

    def save(self, registration: ClientRegistration) -> None:
        with self._lock:
            self._clients[registration.client_id] = registration

    def load(self, client_id: str) -> Optional[ClientRegistration]:
        with self._lock:
            return self._clients.get(client_id)

    def ping(self) -> bool:
        return True


class RedisClientStore:
    """Redis-backed client store. Registrations do not expire."""

    CLIENT_PREFIX = "oauth:client:"

    def __init__(self, redis_url: Optional[str] = None, redis_client=None):
        """
        Initialize Redis client store.

        Args:
            redis_url: Redis connection URL
            redis_client: Existing Redis client (takes precedence over redis_url)
        """
        self.redis_client = redis_client or redis.from_url(
            redis_url or "redis://localhost:6379",
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True
        )

    def save(self, registration: ClientRegistration) -> None:
        key = f"{self.CLIENT_PREFIX}{registration.client_id}"
        self.redis_client.set(key, json.dumps(registration.to_dict()))

    def load(self, client_id: str) -> Optional[ClientRegistration]:
        data = self.redis_client.get(f"{self.CLIENT_PREFIX}{client_id}")
        if not data:
            return None

        try:
            return ClientRegistration.from_dict(json.loads(data))
        except (ValueError, TypeError) as e:
            logging.error(f"Failed to deserialize client registration {client_id}: {e}")
            return None

    def ping(self) -> bool:
        try:
            return bool(self.redis_client.ping())
        except redis.RedisError as e:
            logging.error(f"Redis ping failed: {e}")
            return False


class ClientRegistry:
    """Registers client platforms and checks their redirect URIs."""

    def __init__(self, store=None):
        self.store = store or InMemoryClientStore()

    @staticmethod
    def generate_client_id() -> str:
        return f"mcp_{secrets.token_urlsafe(16)}"

    def register(
        self,
        client_name: str,
        redirect_uris: Iterable[str],
        client_id: Optional[str] = None
    ) -> ClientRegistration:
        """
        Register a client platform.

        Args:
            client_name: Human-readable client name
            redirect_uris: Allowed redirect URIs (https, or http on loopback)
            client_id: Fixed client ID (generated if omitted)

        Returns:
            ClientRegistration

        Raises:
            ValueError: If no redirect URI is given or one is not acceptable
        """
        uris = list(dict.fromkeys(redirect_uris))
        if not uris:
            raise ValueError("At least one redirect_uri is required")
        for uri in uris:
            if not is_acceptable_redirect_uri(uri):
                raise ValueError(f"Invalid redirect_uri: {uri} (must be localhost or HTTPS)")

        registration = ClientRegistration(
            client_id=client_id or self.generate_client_id(),
            client_name=client_name,
            redirect_uris=uris,
            created_at=int(time.time())
        )
        self.store.save(registration)
        logging.info(f"Registered client: {registration.client_id} ({client_name})")
        return registration

    def preload(self, clients: Dict[str, List[str]]) -> None:
        """Register statically configured clients under fixed IDs."""
        for client_id, redirect_uris in clients.items():
            self.register(client_name=client_id, redirect_uris=redirect_uris, client_id=client_id)

    def get(self, client_id: str) -> Optional[ClientRegistration]:
        if not client_id:
            return None
        return self.store.load(client_id)

    def validate_redirect_uri(self, client_id: str, redirect_uri: str) -> bool:
        """
        Check that redirect_uri is registered for the client.

        Args:
            client_id: Client ID
            redirect_uri: Redirect URI from the authorization request

        Returns:
            True only on exact match with a registered URI
        """
        client = self.get(client_id)
        if not client:
            logging.warning(f"Unknown client_id: {client_id}")
            return False

        return redirect_uri in client.redirect_uris

    def ping(self) -> bool:
        return self.store.ping()
