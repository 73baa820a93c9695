"""
PKCE (Proof Key for Code Exchange, RFC 7636)

Generates verifier/challenge pairs for the upstream authorization request and
verifies code_verifier proofs presented at our own token endpoint.
Only the S256 method is supported.
"""

import base64
import hashlib
import hmac
import re
import secrets
from typing import NamedTuple

CHALLENGE_METHOD = "S256"

MIN_VERIFIER_LENGTH = 43
MAX_VERIFIER_LENGTH = 128
DEFAULT_VERIFIER_LENGTH = 86  # 64 random bytes, base64url without padding

# RFC 7636 section 4.1: ALPHA / DIGIT / "-" / "." / "_" / "~"
_VERIFIER_RE = re.compile(r"^[A-Za-z0-9\-._~]+$")


class PkcePair(NamedTuple):
    verifier: str
    challenge: str


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def is_valid_verifier(verifier: str) -> bool:
    """Check verifier length and character set."""
    if not isinstance(verifier, str):
        return False
    if not MIN_VERIFIER_LENGTH <= len(verifier) <= MAX_VERIFIER_LENGTH:
        return False
    return bool(_VERIFIER_RE.match(verifier))


def generate_pair(length: int = DEFAULT_VERIFIER_LENGTH) -> PkcePair:
    """
    Generate a PKCE verifier and its S256 challenge.

    Args:
        length: Verifier length in characters (43-128)

    Returns:
        PkcePair(verifier, challenge)

    Raises:
        ValueError: If length is outside 43-128
    """
    if not MIN_VERIFIER_LENGTH <= length <= MAX_VERIFIER_LENGTH:
        raise ValueError(
            f"PKCE verifier length must be between {MIN_VERIFIER_LENGTH} "
            f"and {MAX_VERIFIER_LENGTH} (got {length})"
        )

    # Every 3 random bytes yield 4 base64url characters
    verifier = _b64url(secrets.token_bytes((length * 3) // 4 + 3))[:length]
    return PkcePair(verifier, compute_challenge(verifier))


def compute_challenge(verifier: str) -> str:
    """
    Compute the S256 challenge: base64url(SHA-256(verifier)) without padding.

    Args:
        verifier: PKCE code verifier

    Returns:
        43-character challenge string
    """
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return _b64url(digest)


def verify(verifier: str, challenge: str) -> bool:
    """
    Verify a code_verifier against a stored S256 challenge.

    Comparison is constant-time. Malformed verifiers never verify.

    Args:
        verifier: code_verifier presented by the client
        challenge: code_challenge recorded at authorization time

    Returns:
        True if the verifier matches the challenge
    """
    if not challenge or not is_valid_verifier(verifier):
        return False
    return hmac.compare_digest(compute_challenge(verifier).encode("ascii"), challenge.encode("utf-8"))
