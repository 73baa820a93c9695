"""
Resource-Server Token Validator

Validates bearer tokens presented to the proxy's protected endpoints, using the
provider as the source of truth and the validation cache to bound how often it
is asked.

Behavior:
- Cached validations are served until their TTL elapses, even while the
  provider is unreachable
- A provider 401 evicts the token from the cache immediately
- Provider outages on a cache miss surface as a retryable 503
"""

import asyncio
import json
import logging
import re
from typing import Optional, Sequence, Tuple

from starlette.requests import Request
from starlette.responses import Response

from audit_logger import AuditEvent, audit
from oauth_metadata import OAuthMetadataProvider
from provider_client import (
    Claims,
    ProviderTokenClient,
    TokenError,
    TokenErrorReason,
    TokenInvalid,
    UpstreamUnavailable,
)
from token_cache import TokenValidationCache, token_fingerprint

# RFC 6750 b64token
BEARER_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9\-._~+/]+=*$")


class MissingBearerToken(Exception):
    """No Authorization header was sent."""


class MalformedBearerToken(Exception):
    """Authorization header is not `Bearer <token>`."""


def extract_bearer_token(auth_header: Optional[str]) -> str:
    """
    Extract the token from an Authorization header.

    Args:
        auth_header: Raw Authorization header value

    Returns:
        The bearer token

    Raises:
        MissingBearerToken: Header absent or empty
        MalformedBearerToken: Wrong scheme, empty token or characters outside b64token
    """
    if not auth_header:
        raise MissingBearerToken("Authorization header required")

    scheme, _, token = auth_header.strip().partition(" ")
    if scheme.lower() != "bearer":
        raise MalformedBearerToken("Authorization scheme must be Bearer")

    token = token.strip()
    if not token or not BEARER_TOKEN_PATTERN.fullmatch(token):
        raise MalformedBearerToken("Malformed bearer token")

    return token


class ResourceServerValidator:
    """
    Validates bearer tokens through the cache and the provider.

    Responsibilities:
    - Serve cached validations within TTL
    - Validate upstream on miss and populate the cache
    - Evict tokens the provider reports as revoked
    """

    def __init__(
        self,
        cache: TokenValidationCache,
        provider_client: ProviderTokenClient,
        request_timeout: float = 10.0
    ):
        self.cache = cache
        self.provider_client = provider_client
        self.request_timeout = request_timeout
        logging.info(f"Resource server validator initialized (cache capacity {cache.capacity}, ttl {cache.ttl}s)")

    async def validate(self, raw_token: str) -> Claims:
        """
        Validate a bearer token.

        Args:
            raw_token: Token as presented by the caller

        Returns:
            Claims

        Raises:
            TokenInvalid: Token rejected (evicted from the cache)
            UpstreamUnavailable: Cache miss while the provider is unreachable
            TokenError: Any other classified provider failure
        """
        try:
            return await self.cache.get_or_validate(raw_token, self._validate_upstream)
        except TokenInvalid:
            self.report_revoked(raw_token)
            raise

    async def _validate_upstream(self, raw_token: str) -> Claims:
        try:
            return await asyncio.wait_for(
                self.provider_client.validate(raw_token),
                timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            logging.warning(
                f"Validation of {token_fingerprint(raw_token)[:12]} timed out after {self.request_timeout}s"
            )
            raise UpstreamUnavailable("Validation request timed out", TokenErrorReason.NETWORK_ERROR)

    def report_revoked(self, raw_token: str) -> None:
        """Drop a token from the cache after the provider reported it invalid."""
        self.cache.invalidate(raw_token)

    def stats(self) -> Tuple[int, int]:
        return self.cache.stats()


class BearerAuthMiddleware:
    """
    ASGI middleware guarding protected path prefixes with bearer validation.

    Validated claims are stored in request.state.claims for the handler.
    """

    def __init__(
        self,
        app,
        validator: ResourceServerValidator,
        metadata_provider: OAuthMetadataProvider,
        protected_prefixes: Sequence[str] = ("/mcp",)
    ):
        self.app = app
        self.validator = validator
        self.metadata_provider = metadata_provider
        self.protected_prefixes = tuple(protected_prefixes)

    def is_protected(self, path: str) -> bool:
        for prefix in self.protected_prefixes:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                return True
        return False

    def _challenge(self, error: Optional[str] = None, error_description: Optional[str] = None) -> Response:
        """401 response with WWW-Authenticate pointing at the resource metadata."""
        www_authenticate = self.metadata_provider.generate_www_authenticate_header(
            error=error,
            error_description=error_description
        )
        return Response(
            content=json.dumps({
                "error": error or "unauthorized",
                "error_description": error_description or "Authentication required"
            }),
            status_code=401,
            media_type="application/json",
            headers={"WWW-Authenticate": www_authenticate}
        )

    @staticmethod
    def _error(status_code: int, error: str, error_description: str, retry_after: Optional[int] = None) -> Response:
        headers = {"Retry-After": str(retry_after)} if retry_after else None
        return Response(
            content=json.dumps({"error": error, "error_description": error_description}),
            status_code=status_code,
            media_type="application/json",
            headers=headers
        )

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not self.is_protected(scope["path"]):
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        response = None

        try:
            raw_token = extract_bearer_token(request.headers.get("Authorization"))
        except MissingBearerToken:
            response = self._challenge()
        except MalformedBearerToken as e:
            response = self._challenge(error="invalid_request", error_description=str(e))

        if response is not None:
            await response(scope, receive, send)
            return

        fingerprint = token_fingerprint(raw_token)[:12]
        try:
            claims = await self.validator.validate(raw_token)
        except TokenInvalid as e:
            audit(AuditEvent.TOKEN_REJECTED, "failure", token_fingerprint=fingerprint,
                  status_code=401, reason=type(e).__name__)
            response = self._challenge(error="invalid_token", error_description="The access token is invalid or expired")
        except UpstreamUnavailable as e:
            logging.warning(f"Cannot validate token {fingerprint}: provider unavailable ({e.reason.value})")
            audit(AuditEvent.UPSTREAM_UNAVAILABLE, "failure", token_fingerprint=fingerprint,
                  status_code=503, reason=e.reason.value)
            response = self._error(503, "temporarily_unavailable",
                                   "Token validation is temporarily unavailable", retry_after=5)
        except TokenError as e:
            logging.error(f"Token validation for {fingerprint} failed: {e.reason.value}")
            response = self._error(502, "server_error", "Token validation failed upstream")

        if response is not None:
            await response(scope, receive, send)
            return

        # Starlette's Request.state reads scope["state"]
        scope.setdefault("state", {})
        scope["state"]["claims"] = claims
        await self.app(scope, receive, send)
