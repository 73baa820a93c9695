"""
State Capsule Codec

Seals in-flight OAuth flow state into an opaque, caller-held capsule so that no
server-side session storage is needed between /authorize and /callback.

Uses AES-256-GCM authenticated encryption. The wire format is
base64url(nonce || ciphertext || tag) without padding, which is safe to use as a
cookie value or a URL query parameter.

SECURITY: Any modification of the capsule (bit flip, truncation, re-encoding) is
detected and rejected. Expired capsules are rejected. Decoding never returns
partial state.
"""

import base64
import binascii
import json
import logging
import os
import re
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


# Associated data binding a capsule to what it carries. A capsule sealed for
# one purpose never opens for another.
FLOW_STATE_PURPOSE = "oauth-flow-state/v1"
AUTHORIZATION_GRANT_PURPOSE = "oauth-authorization-grant/v1"

_B64URL_RE = re.compile(r"[A-Za-z0-9_-]+")


class CapsuleError(Exception):
    """Base class for capsule decoding failures."""


class CapsuleTampered(CapsuleError):
    """Capsule failed authentication, was truncated, or is malformed."""


class CapsuleExpired(CapsuleError):
    """Capsule authenticated correctly but its lifetime has elapsed."""


@dataclass
class FlowState:
    """
    Plaintext carried inside a state capsule between /authorize and /callback.

    csrf_nonce is echoed by the provider as the OAuth `state` parameter.
    pkce_verifier is the secret half of the upstream PKCE pair.
    The client_* fields describe the client platform's own authorization
    request so the callback can complete it.
    """
    csrf_nonce: str
    pkce_verifier: str
    requested_redirect: str
    created_at: int
    ttl: int
    client_id: str = ""
    client_state: Optional[str] = None
    client_code_challenge: Optional[str] = None
    client_code_challenge_method: Optional[str] = None
    scope: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FlowState":
        return cls(**data)


def load_capsule_key(value: str) -> bytes:
    """
    Parse the capsule encryption key.

    Accepts 64 hex characters or base64 (standard or url-safe alphabet).

    Args:
        value: Encoded key

    Returns:
        32 raw key bytes

    Raises:
        ValueError: If the key is missing or does not decode to 32 bytes
    """
    if not value:
        raise ValueError("Capsule encryption key is empty")

    value = value.strip()
    if len(value) == 64 and re.fullmatch(r"[0-9a-fA-F]+", value):
        key = bytes.fromhex(value)
    else:
        try:
            key = base64.b64decode(value.replace("-", "+").replace("_", "/") + "=" * (-len(value) % 4), validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"Invalid capsule encryption key encoding: {e}")

    if len(key) != StateCapsuleCodec.KEY_SIZE:
        raise ValueError(f"Capsule key must be {StateCapsuleCodec.KEY_SIZE} bytes (got {len(key)})")
    return key


class StateCapsuleCodec:
    """
    Encrypts/decrypts flow state capsules using AES-256-GCM.

    Features:
    - Fresh random nonce per capsule
    - Purpose-bound associated data
    - Canonical encoding check (one capsule, one textual form)
    - Lifetime enforcement from created_at/ttl inside the sealed payload
    """

    KEY_SIZE = 32  # 256 bits for AES-256
    NONCE_SIZE = 12  # 96 bits recommended for GCM
    TAG_SIZE = 16  # 128 bits authentication tag

    def __init__(self, key: bytes, clock: Callable[[], float] = time.time):
        """
        Initialize capsule codec.

        Args:
            key: 32-byte server key (see load_capsule_key)
            clock: Wall-clock source in epoch seconds

        Raises:
            ValueError: If the key has the wrong size
        """
        if len(key) != self.KEY_SIZE:
            raise ValueError(f"Capsule key must be {self.KEY_SIZE} bytes (got {len(key)})")

        self.cipher = AESGCM(key)
        self.clock = clock
        logging.info("State capsule codec initialized with AES-256-GCM")

    def now(self) -> int:
        return int(self.clock())

    def seal(self, payload: Dict[str, Any], purpose: str) -> str:
        """
        Encrypt a JSON payload into a capsule.

        Args:
            payload: JSON-serializable dict; must hold created_at and ttl
            purpose: Associated data naming what the capsule carries

        Returns:
            base64url(nonce || ciphertext || tag) without padding
        """
        plaintext = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        nonce = os.urandom(self.NONCE_SIZE)
        ciphertext_and_tag = self.cipher.encrypt(nonce, plaintext, purpose.encode("ascii"))
        return base64.urlsafe_b64encode(nonce + ciphertext_and_tag).decode("ascii").rstrip("=")

    def unseal(self, capsule: str, purpose: str) -> Dict[str, Any]:
        """
        Decrypt and authenticate a capsule, then enforce its lifetime.

        Args:
            capsule: Encoded capsule
            purpose: Associated data the capsule must have been sealed with

        Returns:
            Decrypted payload dict

        Raises:
            CapsuleTampered: Malformed, truncated, or failed authentication
            CapsuleExpired: now - created_at > ttl
        """
        raw = self._decode(capsule)

        if len(raw) < self.NONCE_SIZE + self.TAG_SIZE:
            raise CapsuleTampered("Capsule too short")

        nonce = raw[:self.NONCE_SIZE]
        ciphertext_and_tag = raw[self.NONCE_SIZE:]

        try:
            plaintext = self.cipher.decrypt(nonce, ciphertext_and_tag, purpose.encode("ascii"))
        except InvalidTag:
            raise CapsuleTampered("Capsule authentication failed")

        try:
            payload = json.loads(plaintext.decode("utf-8"))
            created_at = int(payload["created_at"])
            ttl = int(payload["ttl"])
        except (ValueError, KeyError, TypeError) as e:
            raise CapsuleTampered(f"Capsule payload malformed: {type(e).__name__}")

        age = self.now() - created_at
        if age > ttl:
            raise CapsuleExpired(f"Capsule expired {age - ttl}s ago")

        return payload

    def encrypt(self, flow_state: FlowState) -> str:
        """Seal a FlowState into a capsule."""
        return self.seal(flow_state.to_dict(), FLOW_STATE_PURPOSE)

    def decrypt(self, capsule: str) -> FlowState:
        """
        Open a flow state capsule.

        Raises:
            CapsuleTampered: Malformed, truncated, or failed authentication
            CapsuleExpired: Capsule lifetime elapsed
        """
        payload = self.unseal(capsule, FLOW_STATE_PURPOSE)
        try:
            return FlowState.from_dict(payload)
        except TypeError as e:
            raise CapsuleTampered(f"Flow state schema mismatch: {e}")

    def _decode(self, capsule: str) -> bytes:
        if not capsule or not isinstance(capsule, str) or not _B64URL_RE.fullmatch(capsule):
            raise CapsuleTampered("Capsule is not base64url")

        try:
            raw = base64.urlsafe_b64decode(capsule + "=" * (-len(capsule) % 4))
        except (binascii.Error, ValueError):
            raise CapsuleTampered("Capsule is not base64url")

        # Reject non-canonical encodings (e.g. altered trailing bits)
        if base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=") != capsule:
            raise CapsuleTampered("Capsule encoding is not canonical")

        return raw
