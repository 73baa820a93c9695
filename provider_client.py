"""
Provider Token Client

Talks to the upstream OAuth provider's token and validation endpoints:
- exchange_code: authorization_code grant with the PKCE verifier
- refresh: refresh_token grant
- validate: bearer token introspection / token-info lookup

All failures are classified into TokenError reasons. Raw HTTP status codes and
provider response bodies never leave this module.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Dict, Any, FrozenSet, Callable
from urllib.parse import urlencode

import httpx

from oauth_pkce import CHALLENGE_METHOD
from proxy_config import ProviderConfig
from token_cache import token_fingerprint


# Lifetime assumed when the provider omits expires_in (seconds)
DEFAULT_EXPIRES_IN = 3600


class TokenErrorReason(Enum):
    INVALID_GRANT = "invalid_grant"
    INVALID_CLIENT = "invalid_client"
    NETWORK_ERROR = "network_error"
    MALFORMED_RESPONSE = "malformed_response"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    INVALID_TOKEN = "invalid_token"


class TokenError(Exception):
    """Classified failure talking to the provider."""

    def __init__(self, reason: TokenErrorReason, message: str = ""):
        self.reason = reason
        super().__init__(message or reason.value)

    @property
    def retryable(self) -> bool:
        """True for transient failures the caller may retry."""
        return self.reason in (TokenErrorReason.NETWORK_ERROR, TokenErrorReason.UPSTREAM_UNAVAILABLE)


class UpstreamUnavailable(TokenError):
    """Provider unreachable, timed out, or answered with a server error."""

    def __init__(self, message: str = "", reason: TokenErrorReason = TokenErrorReason.UPSTREAM_UNAVAILABLE):
        super().__init__(reason, message)


class TokenInvalid(TokenError):
    """Provider rejected the bearer token."""

    def __init__(self, message: str = ""):
        super().__init__(TokenErrorReason.INVALID_TOKEN, message)


class TokenExpired(TokenInvalid):
    """Provider reports the bearer token past its expiry."""


def _scopes_from(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        return frozenset(value.split())
    if isinstance(value, (list, tuple, set, frozenset)):
        return frozenset(str(s) for s in value if s)
    raise ValueError(f"Unsupported scope value type: {type(value).__name__}")


@dataclass(frozen=True)
class TokenSet:
    """Provider tokens. Replaced wholesale on refresh."""
    access_token: str
    refresh_token: Optional[str]
    expires_at: int
    scopes: FrozenSet[str]

    @property
    def scope(self) -> str:
        return " ".join(sorted(self.scopes))

    def expires_in(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        return max(0, int(self.expires_at - now))

    def to_token_response(self, now: Optional[float] = None) -> Dict[str, Any]:
        """Standard OAuth token endpoint response body."""
        response = {
            "access_token": self.access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in(now),
            "scope": self.scope,
        }
        if self.refresh_token:
            response["refresh_token"] = self.refresh_token
        return response

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scopes": sorted(self.scopes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenSet":
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=int(data["expires_at"]),
            scopes=frozenset(data.get("scopes") or ()),
        )


@dataclass(frozen=True)
class Claims:
    """Validated identity behind a bearer token."""
    subject: str
    scopes: FrozenSet[str]
    team_id: Optional[str] = None
    expires_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sub": self.subject,
            "scope": " ".join(sorted(self.scopes)),
            "team_id": self.team_id,
            "exp": self.expires_at,
        }


class ProviderTokenClient:
    """
    Async client for the provider's OAuth endpoints.

    The provider is a configuration record, not a subclass: endpoints,
    credentials and scopes come from ProviderConfig.
    """

    def __init__(
        self,
        provider: ProviderConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize provider client.

        Args:
            provider: Provider endpoints and client credentials
            http_client: Shared httpx client (created and owned here if omitted)
            timeout: Per-request timeout in seconds
            clock: Wall-clock source used to compute token expiry
        """
        self.provider = provider
        self.clock = clock
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        logging.info(f"Provider token client initialized for {provider.name} (client_id: {provider.client_id[:8]}...)")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    def build_authorization_url(self, state: str, code_challenge: str, scope: Optional[str] = None) -> str:
        """
        Build the provider authorization URL for a new flow.

        Args:
            state: CSRF nonce the provider will echo back
            code_challenge: S256 PKCE challenge
            scope: Space-separated scopes (provider defaults if omitted)

        Returns:
            Absolute URL to redirect the user agent to
        """
        params = {
            "response_type": "code",
            "client_id": self.provider.client_id,
            "redirect_uri": self.provider.redirect_uri,
            "scope": scope or self.provider.default_scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": CHALLENGE_METHOD,
        }
        separator = "&" if "?" in self.provider.authorization_endpoint else "?"
        return f"{self.provider.authorization_endpoint}{separator}{urlencode(params)}"

    async def exchange_code(self, code: str, verifier: str, redirect_uri: Optional[str] = None) -> TokenSet:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the provider callback
            verifier: PKCE verifier matching the challenge sent at authorization
            redirect_uri: Redirect URI used at authorization (provider default if omitted)

        Returns:
            TokenSet

        Raises:
            TokenError: Classified failure (invalid_grant, invalid_client, ...)
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.provider.redirect_uri,
            "client_id": self.provider.client_id,
            "client_secret": self.provider.client_secret,
            "code_verifier": verifier,
        }
        body = await self._post_token_endpoint(data, "code exchange")
        token_set = self._parse_token_response(body)
        logging.info(f"Exchanged authorization code for token {token_fingerprint(token_set.access_token)[:12]}")
        return token_set

    async def refresh(self, refresh_token: str) -> TokenSet:
        """
        Obtain a fresh token set with a refresh token.

        The newest refresh token is kept. If the provider does not rotate it,
        the presented refresh token is carried forward.

        Args:
            refresh_token: Current refresh token

        Returns:
            Complete TokenSet

        Raises:
            TokenError: Classified failure; invalid_grant means re-authorize
        """
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.provider.client_id,
            "client_secret": self.provider.client_secret,
        }
        body = await self._post_token_endpoint(data, "token refresh")
        token_set = self._parse_token_response(body, fallback_refresh_token=refresh_token)
        logging.info(f"Refreshed token {token_fingerprint(refresh_token)[:12]} -> {token_fingerprint(token_set.access_token)[:12]}")
        return token_set

    async def validate(self, raw_token: str) -> Claims:
        """
        Validate a bearer token with the provider.

        Args:
            raw_token: Bearer token as presented by the caller

        Returns:
            Claims

        Raises:
            TokenInvalid: Provider rejected the token
            TokenExpired: Provider reports the token expired
            UpstreamUnavailable: Provider unreachable or failing
            TokenError: Malformed provider response
        """
        fingerprint = token_fingerprint(raw_token)[:12]
        try:
            response = await self.http.get(
                self.provider.validation_endpoint,
                headers={"Authorization": f"Bearer {raw_token}", "Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logging.warning(f"Token validation request failed for {fingerprint}: {type(e).__name__}")
            raise UpstreamUnavailable(f"Validation request failed: {type(e).__name__}", TokenErrorReason.NETWORK_ERROR)

        if response.status_code in (401, 403):
            logging.info(f"Provider rejected token {fingerprint} ({response.status_code})")
            raise TokenInvalid("Token rejected by provider")
        if response.status_code == 429 or response.status_code >= 500:
            logging.warning(f"Provider validation unavailable ({response.status_code}) for {fingerprint}")
            raise UpstreamUnavailable("Provider validation endpoint unavailable")
        if response.status_code != 200:
            logging.error(f"Unexpected validation status {response.status_code} for {fingerprint}")
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, "Unexpected validation response")

        body = self._json_body(response)
        return self._parse_claims(body, fingerprint)

    async def _post_token_endpoint(self, data: Dict[str, str], operation: str) -> Dict[str, Any]:
        try:
            response = await self.http.post(
                self.provider.token_endpoint,
                data=data,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logging.warning(f"Provider {operation} request failed: {type(e).__name__}")
            raise UpstreamUnavailable(f"{operation} request failed: {type(e).__name__}", TokenErrorReason.NETWORK_ERROR)

        if response.status_code == 429 or response.status_code >= 500:
            logging.warning(f"Provider {operation} unavailable ({response.status_code})")
            raise UpstreamUnavailable(f"Provider {operation} unavailable")

        if response.status_code >= 400:
            error_code = self._error_code(response)
            logging.error(f"Provider {operation} failed with status {response.status_code} ({error_code or 'no error code'})")
            if response.status_code == 401 or error_code == "invalid_client":
                raise TokenError(TokenErrorReason.INVALID_CLIENT, f"Provider rejected client credentials during {operation}")
            raise TokenError(TokenErrorReason.INVALID_GRANT, f"Provider rejected grant during {operation}")

        return self._json_body(response)

    def _parse_token_response(self, body: Dict[str, Any], fallback_refresh_token: Optional[str] = None) -> TokenSet:
        access_token = body.get("access_token")
        if not access_token or not isinstance(access_token, str):
            logging.error(f"Token response missing access_token. Present fields: {', '.join(sorted(body))}")
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, "Token response missing access_token")

        token_type = body.get("token_type")
        if token_type and str(token_type).lower() != "bearer":
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, f"Unsupported token_type: {token_type}")

        try:
            expires_in = body.get("expires_in")
            expires_in = DEFAULT_EXPIRES_IN if expires_in is None else int(expires_in)
            scopes = _scopes_from(body.get("scope", body.get("scopes")))
        except (TypeError, ValueError) as e:
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, f"Token response malformed: {e}")

        return TokenSet(
            access_token=access_token,
            refresh_token=body.get("refresh_token") or fallback_refresh_token,
            expires_at=int(self.clock()) + expires_in,
            scopes=scopes or frozenset(self.provider.scopes),
        )

    def _parse_claims(self, body: Dict[str, Any], fingerprint: str) -> Claims:
        if body.get("active") is False:
            logging.info(f"Provider reports token {fingerprint} inactive")
            raise TokenInvalid("Token inactive")

        user = body.get("user") if isinstance(body.get("user"), dict) else {}
        team = body.get("team") if isinstance(body.get("team"), dict) else {}
        subject = body.get("user_id") or user.get("id") or body.get("sub")
        team_id = body.get("team_id") or team.get("id")

        if not subject:
            logging.error(f"Validation response missing subject. Present fields: {', '.join(sorted(body))}")
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, "Validation response missing subject")

        try:
            scopes = _scopes_from(body.get("scopes", body.get("scope")))
            expires_at = int(body["exp"]) if body.get("exp") is not None else None
        except (TypeError, ValueError) as e:
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, f"Validation response malformed: {e}")

        if expires_at is not None and expires_at <= int(self.clock()):
            logging.info(f"Provider reports token {fingerprint} expired")
            raise TokenExpired("Token expired")

        return Claims(
            subject=str(subject),
            scopes=scopes,
            team_id=str(team_id) if team_id is not None else None,
            expires_at=expires_at,
        )

    @staticmethod
    def _json_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, "Provider response is not JSON")
        if not isinstance(body, dict):
            raise TokenError(TokenErrorReason.MALFORMED_RESPONSE, "Provider response is not a JSON object")
        return body

    @staticmethod
    def _error_code(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return None
        if isinstance(body, dict) and isinstance(body.get("error"), str):
            return body["error"]
        return None
