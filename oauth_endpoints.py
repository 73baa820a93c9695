"""
OAuth 2.1 Authorization Proxy Endpoints

Runs the Authorization Code flow with PKCE between a client platform and the
upstream provider without any server-side session storage:
- GET /authorize: validate the client request, seal flow state into a capsule,
  redirect to the provider
- GET /callback: open the capsule, check CSRF, exchange the code, hand an
  authorization code back to the client platform
- POST /token: redeem that authorization code, or refresh provider tokens
- POST /register: dynamic client registration (RFC 7591)

The authorization code handed to the client platform is itself a sealed
capsule carrying the provider tokens, so any proxy instance sharing the
capsule key can redeem it.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional
from urllib.parse import urlencode

from jinja2 import Environment, FileSystemLoader, select_autoescape

import oauth_pkce
from audit_logger import AuditEvent, audit
from client_registry import ClientRegistry
from oauth_metadata import OAuthMetadataProvider
from provider_client import ProviderTokenClient, TokenSet, TokenError, TokenErrorReason
from state_capsule import (
    StateCapsuleCodec, FlowState, CapsuleError, CapsuleExpired,
    AUTHORIZATION_GRANT_PURPOSE,
)
from token_cache import CapsuleReplayGuard, token_fingerprint

# Generic message shown to the user agent for every failed callback
GENERIC_CALLBACK_ERROR = "Authorization could not be completed. Please start again from your application."


class OAuthError(Exception):
    """OAuth protocol error."""

    def __init__(
        self,
        error: str,
        error_description: str,
        status_code: int = 400,
        retry_after: Optional[int] = None
    ):
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        self.retry_after = retry_after
        super().__init__(f"{error}: {error_description}")


class CsrfMismatch(Exception):
    """Callback `state` does not match the nonce sealed in the capsule."""


class CodeExchangeFailed(Exception):
    """Provider code exchange failed. The reason is for internal logs only."""

    def __init__(self, reason: TokenErrorReason):
        self.reason = reason
        super().__init__(f"Code exchange failed: {reason.value}")


class FlowStage(Enum):
    INIT = "init"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETE = "complete"
    FAILED = "failed"


_ALLOWED_TRANSITIONS = {
    FlowStage.INIT: {FlowStage.AWAITING_CALLBACK, FlowStage.FAILED},
    FlowStage.AWAITING_CALLBACK: {FlowStage.EXCHANGING, FlowStage.FAILED},
    FlowStage.EXCHANGING: {FlowStage.COMPLETE, FlowStage.FAILED},
    FlowStage.COMPLETE: set(),
    FlowStage.FAILED: set(),
}


class FlowTransitionError(RuntimeError):
    """Illegal authorization flow stage transition."""


class AuthorizationFlow:
    """
    One authorization attempt.

    The flow's state lives in the capsule, not here; this object only tracks
    the stage of the current leg and refuses illegal transitions.
    """

    def __init__(self, flow_id: str, stage: FlowStage = FlowStage.INIT):
        self.flow_id = flow_id
        self.stage = stage
        self.failure_reason: Optional[str] = None

    def advance(self, stage: FlowStage) -> None:
        if stage not in _ALLOWED_TRANSITIONS[self.stage]:
            raise FlowTransitionError(f"Flow {self.flow_id}: {self.stage.value} -> {stage.value} not allowed")
        logging.debug(f"Flow {self.flow_id}: {self.stage.value} -> {stage.value}")
        self.stage = stage

    def fail(self, reason: str) -> None:
        self.advance(FlowStage.FAILED)
        self.failure_reason = reason


@dataclass
class AuthorizeRequest:
    """OAuth authorization request parameters."""
    response_type: str
    client_id: str
    redirect_uri: str
    scope: str
    state: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None


@dataclass
class TokenRequest:
    """OAuth token request parameters."""
    grant_type: str
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    client_id: Optional[str] = None
    code_verifier: Optional[str] = None
    refresh_token: Optional[str] = None


@dataclass
class AuthorizationGrant:
    """Authorization code issued to the client platform (sealed as a capsule)."""
    grant_id: str
    client_id: str
    redirect_uri: str
    token_set: TokenSet
    created_at: int
    ttl: int
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grant_id": self.grant_id,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "token_set": self.token_set.to_dict(),
            "created_at": self.created_at,
            "ttl": self.ttl,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthorizationGrant":
        data = dict(data)
        data["token_set"] = TokenSet.from_dict(data["token_set"])
        return cls(**data)


@dataclass
class AuthorizationStart:
    """Result of a successful /authorize: where to send the user agent, and the capsule to set."""
    redirect_url: str
    capsule: str
    flow: AuthorizationFlow


@dataclass
class CallbackOutcome:
    """
    Result of /callback.

    Either redirect_url is set (to the client platform) or error_description
    holds the generic message for the error page. The capsule cookie is
    cleared in every case.
    """
    flow: AuthorizationFlow
    redirect_url: Optional[str] = None
    error_description: Optional[str] = None
    status_code: int = 302

    @property
    def succeeded(self) -> bool:
        return self.flow.stage == FlowStage.COMPLETE


def _append_query(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


class AuthorizationFlowOrchestrator:
    """
    OAuth 2.1 endpoint handlers for the proxy.

    Implements the authorization code flow with PKCE toward the provider, and
    the client-facing authorization server toward the client platform.
    """

    def __init__(
        self,
        codec: StateCapsuleCodec,
        provider_client: ProviderTokenClient,
        registry: ClientRegistry,
        metadata_provider: OAuthMetadataProvider,
        capsule_ttl: int = 300,
        grant_ttl: int = 300,
        request_timeout: float = 10.0,
        replay_guard: Optional[CapsuleReplayGuard] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            codec: Capsule codec holding the server key
            provider_client: Upstream provider client
            registry: Registered client platforms
            metadata_provider: Discovery metadata and supported scopes
            capsule_ttl: Lifetime of the flow state capsule (seconds)
            grant_ttl: Lifetime of the issued authorization code (seconds)
            request_timeout: Upper bound on each provider call (seconds)
            replay_guard: Single-use ledger for authorization codes (optional)
        """
        self.codec = codec
        self.provider_client = provider_client
        self.registry = registry
        self.metadata_provider = metadata_provider
        self.capsule_ttl = capsule_ttl
        self.grant_ttl = grant_ttl
        self.request_timeout = request_timeout
        self.replay_guard = replay_guard

        template_dir = Path(__file__).parent / "templates"
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(['html', 'xml'])
        )

        logging.info("Authorization flow orchestrator initialized")

    # ===== Authorization Endpoint =====

    def validate_authorize_request(self, params: Dict[str, Any]) -> AuthorizeRequest:
        """
        Validate OAuth authorization request parameters.

        Args:
            params: Request parameters from query string

        Returns:
            Validated AuthorizeRequest

        Raises:
            OAuthError: If validation fails
        """
        response_type = params.get('response_type')
        client_id = params.get('client_id')
        redirect_uri = params.get('redirect_uri')
        code_challenge = params.get('code_challenge')
        code_challenge_method = params.get('code_challenge_method')

        if response_type != 'code':
            raise OAuthError(
                'unsupported_response_type',
                f'Only "code" response type is supported, got "{response_type}"'
            )

        if not client_id:
            raise OAuthError('invalid_request', 'Missing client_id parameter')
        if not redirect_uri:
            raise OAuthError('invalid_request', 'Missing redirect_uri parameter')

        if code_challenge or code_challenge_method:
            if not code_challenge:
                raise OAuthError('invalid_request', 'Missing code_challenge parameter')
            if code_challenge_method != oauth_pkce.CHALLENGE_METHOD:
                raise OAuthError(
                    'invalid_request',
                    f'Only S256 code_challenge_method is supported, got "{code_challenge_method}"'
                )

        # Exact membership in the registered set, never prefix matching
        if not self.registry.validate_redirect_uri(client_id, redirect_uri):
            logging.warning(f"Rejected authorization request: redirect_uri not registered for client {client_id}")
            raise OAuthError('invalid_request', 'redirect_uri is not registered for this client')

        scope = self.metadata_provider.filter_scope_to_supported(params.get('scope', ''))

        return AuthorizeRequest(
            response_type=response_type,
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=scope,
            state=params.get('state') or None,
            code_challenge=code_challenge or None,
            code_challenge_method=code_challenge_method or None
        )

    async def start_authorization(self, params: Dict[str, Any]) -> AuthorizationStart:
        """
        Handle GET /authorize.

        Generates a PKCE pair and a CSRF nonce, seals them with the client's
        request into a capsule, and builds the provider authorization URL.

        Args:
            params: Query parameters from the authorization request

        Returns:
            AuthorizationStart with the provider URL and the capsule

        Raises:
            OAuthError: If the request is invalid
        """
        csrf_nonce = secrets.token_urlsafe(32)
        flow = AuthorizationFlow(flow_id=token_fingerprint(csrf_nonce)[:12])

        try:
            auth_req = self.validate_authorize_request(params)
        except OAuthError as e:
            flow.fail(e.error)
            raise

        pkce = oauth_pkce.generate_pair()
        flow_state = FlowState(
            csrf_nonce=csrf_nonce,
            pkce_verifier=pkce.verifier,
            requested_redirect=auth_req.redirect_uri,
            created_at=self.codec.now(),
            ttl=self.capsule_ttl,
            client_id=auth_req.client_id,
            client_state=auth_req.state,
            client_code_challenge=auth_req.code_challenge,
            client_code_challenge_method=auth_req.code_challenge_method,
            scope=auth_req.scope
        )
        capsule = self.codec.encrypt(flow_state)
        redirect_url = self.provider_client.build_authorization_url(
            state=csrf_nonce,
            code_challenge=pkce.challenge,
            scope=auth_req.scope
        )

        flow.advance(FlowStage.AWAITING_CALLBACK)
        logging.info(f"Flow {flow.flow_id}: authorization started for client {auth_req.client_id}")
        audit(AuditEvent.AUTHORIZATION_STARTED, "success", client_id=auth_req.client_id,
              additional_safe_fields={"flow_id": flow.flow_id})

        return AuthorizationStart(redirect_url=redirect_url, capsule=capsule, flow=flow)

    # ===== Callback Endpoint =====

    async def handle_callback(self, params: Dict[str, Any], capsule: Optional[str]) -> CallbackOutcome:
        """
        Handle GET /callback from the provider.

        Opens the capsule, checks the CSRF nonce, exchanges the code with the
        recovered PKCE verifier, and redirects to the client platform with a
        newly issued authorization code.

        Args:
            params: Callback query parameters (code, state, or error)
            capsule: Capsule from the flow cookie

        Returns:
            CallbackOutcome (never raises for flow failures)
        """
        returned_state = params.get('state') or ""
        flow = AuthorizationFlow(
            flow_id=token_fingerprint(returned_state)[:12],
            stage=FlowStage.AWAITING_CALLBACK
        )

        try:
            flow_state = self._open_flow_capsule(capsule, returned_state, flow)
        except (CapsuleError, CsrfMismatch) as e:
            flow.fail(type(e).__name__)
            return self._failed_outcome(flow)

        provider_error = params.get('error')
        if provider_error:
            # Verified flow: let the client platform know the user did not authorize
            logging.warning(f"Flow {flow.flow_id}: provider returned error {provider_error!r}")
            flow.fail(f"provider_error:{provider_error}")
            error_params = {'error': 'access_denied', 'error_description': 'Authorization was not granted'}
            if flow_state.client_state:
                error_params['state'] = flow_state.client_state
            audit(AuditEvent.CODE_EXCHANGE_FAILED, "failure", client_id=flow_state.client_id,
                  reason="provider_error", additional_safe_fields={"flow_id": flow.flow_id})
            return CallbackOutcome(flow=flow, redirect_url=_append_query(flow_state.requested_redirect, error_params))

        code = params.get('code')
        if not code:
            logging.warning(f"Flow {flow.flow_id}: callback without code")
            flow.fail("missing_code")
            return self._failed_outcome(flow)

        flow.advance(FlowStage.EXCHANGING)
        try:
            token_set = await self._exchange_code(code, flow_state, flow)
        except CodeExchangeFailed as e:
            flow.fail(e.reason.value)
            return self._failed_outcome(flow)

        grant = AuthorizationGrant(
            grant_id=secrets.token_urlsafe(16),
            client_id=flow_state.client_id,
            redirect_uri=flow_state.requested_redirect,
            token_set=token_set,
            created_at=self.codec.now(),
            ttl=self.grant_ttl,
            code_challenge=flow_state.client_code_challenge,
            code_challenge_method=flow_state.client_code_challenge_method
        )
        redirect_params = {'code': self.codec.seal(grant.to_dict(), AUTHORIZATION_GRANT_PURPOSE)}
        if flow_state.client_state:
            redirect_params['state'] = flow_state.client_state

        flow.advance(FlowStage.COMPLETE)
        logging.info(f"Flow {flow.flow_id}: authorization complete, redirecting to client {flow_state.client_id}")
        audit(AuditEvent.AUTHORIZATION_COMPLETED, "success", client_id=flow_state.client_id,
              token_fingerprint=token_fingerprint(token_set.access_token)[:12],
              additional_safe_fields={"flow_id": flow.flow_id})

        return CallbackOutcome(flow=flow, redirect_url=_append_query(flow_state.requested_redirect, redirect_params))

    def _open_flow_capsule(self, capsule: Optional[str], returned_state: str, flow: AuthorizationFlow) -> FlowState:
        if not capsule:
            logging.warning(f"Flow {flow.flow_id}: callback without flow capsule")
            audit(AuditEvent.CAPSULE_REJECTED, "failure", reason="missing",
                  additional_safe_fields={"flow_id": flow.flow_id})
            raise CapsuleError("Missing flow capsule")

        try:
            flow_state = self.codec.decrypt(capsule)
        except CapsuleError as e:
            reason = "expired" if isinstance(e, CapsuleExpired) else "tampered"
            logging.warning(f"Flow {flow.flow_id}: capsule rejected ({reason}): {e}")
            audit(AuditEvent.CAPSULE_REJECTED, "failure", reason=reason,
                  additional_safe_fields={"flow_id": flow.flow_id})
            raise

        # Timing-safe exact comparison
        if not returned_state or not secrets.compare_digest(
            returned_state.encode("utf-8"), flow_state.csrf_nonce.encode("utf-8")
        ):
            logging.error(f"Flow {flow.flow_id}: CSRF state mismatch on callback (possible attack)")
            audit(AuditEvent.CSRF_MISMATCH, "failure", client_id=flow_state.client_id,
                  additional_safe_fields={"flow_id": flow.flow_id})
            raise CsrfMismatch("Callback state does not match flow nonce")

        return flow_state

    async def _exchange_code(self, code: str, flow_state: FlowState, flow: AuthorizationFlow) -> TokenSet:
        try:
            return await asyncio.wait_for(
                self.provider_client.exchange_code(code, flow_state.pkce_verifier),
                timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            reason = TokenErrorReason.NETWORK_ERROR
            logging.error(f"Flow {flow.flow_id}: code exchange timed out after {self.request_timeout}s")
        except TokenError as e:
            reason = e.reason
            # Full reason stays in internal logs; the user agent sees a generic page
            logging.error(f"Flow {flow.flow_id}: code exchange failed ({reason.value}): {e}")

        audit(AuditEvent.CODE_EXCHANGE_FAILED, "failure", client_id=flow_state.client_id,
              reason=reason.value, additional_safe_fields={"flow_id": flow.flow_id})
        raise CodeExchangeFailed(reason)

    def _failed_outcome(self, flow: AuthorizationFlow) -> CallbackOutcome:
        return CallbackOutcome(flow=flow, error_description=GENERIC_CALLBACK_ERROR, status_code=400)

    def render_error_page(self, error_description: str) -> str:
        """Render the generic HTML error page shown for failed callbacks."""
        template = self.jinja_env.get_template('flow_error.html')
        return template.render(
            title="Authorization failed",
            error_description=error_description,
            provider_name=self.provider_client.provider.name
        )

    # ===== Token Endpoint =====

    def validate_token_request(self, params: Dict[str, Any]) -> TokenRequest:
        """
        Validate OAuth token request parameters.

        Args:
            params: Request body parameters

        Returns:
            Validated TokenRequest

        Raises:
            OAuthError: If validation fails
        """
        grant_type = params.get('grant_type')

        if not grant_type:
            raise OAuthError('invalid_request', 'Missing grant_type parameter')

        if grant_type == 'authorization_code':
            code = params.get('code')
            redirect_uri = params.get('redirect_uri')

            if not code:
                raise OAuthError('invalid_request', 'Missing code parameter')
            if not redirect_uri:
                raise OAuthError('invalid_request', 'Missing redirect_uri parameter')

            return TokenRequest(
                grant_type=grant_type,
                code=code,
                redirect_uri=redirect_uri,
                client_id=params.get('client_id'),
                code_verifier=params.get('code_verifier')
            )

        elif grant_type == 'refresh_token':
            refresh_token = params.get('refresh_token')

            if not refresh_token:
                raise OAuthError('invalid_request', 'Missing refresh_token parameter')

            return TokenRequest(
                grant_type=grant_type,
                refresh_token=refresh_token,
                client_id=params.get('client_id')
            )

        raise OAuthError(
            'unsupported_grant_type',
            f'Grant type "{grant_type}" is not supported'
        )

    async def handle_token(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle POST /token request.

        Supports:
        - authorization_code grant (PKCE-checked when the client sent a challenge)
        - refresh_token grant (forwarded to the provider)

        Args:
            params: Request body parameters

        Returns:
            OAuth token response

        Raises:
            OAuthError: If request is invalid or the provider refuses it
        """
        token_req = self.validate_token_request(params)

        if token_req.grant_type == 'authorization_code':
            return await self.handle_authorization_code_grant(token_req)
        return await self.handle_refresh_token_grant(token_req)

    def open_grant(self, code: str) -> AuthorizationGrant:
        """
        Open an authorization code issued by handle_callback.

        Raises:
            OAuthError: invalid_grant if the code is expired, forged or malformed
        """
        try:
            payload = self.codec.unseal(code, AUTHORIZATION_GRANT_PURPOSE)
            return AuthorizationGrant.from_dict(payload)
        except CapsuleExpired:
            raise OAuthError('invalid_grant', 'Authorization code expired')
        except CapsuleError:
            raise OAuthError('invalid_grant', 'Invalid authorization code')
        except (KeyError, TypeError, ValueError):
            raise OAuthError('invalid_grant', 'Invalid authorization code')

    async def handle_authorization_code_grant(self, token_req: TokenRequest) -> Dict[str, Any]:
        """
        Handle authorization_code grant type.

        Args:
            token_req: Validated token request

        Returns:
            Token response dict

        Raises:
            OAuthError: If code is invalid or PKCE fails
        """
        grant = self.open_grant(token_req.code)

        if token_req.client_id and token_req.client_id != grant.client_id:
            raise OAuthError('invalid_grant', 'Authorization code was not issued to this client')

        if token_req.redirect_uri != grant.redirect_uri:
            raise OAuthError('invalid_grant', 'redirect_uri does not match authorization request')

        if grant.code_challenge:
            if not token_req.code_verifier:
                raise OAuthError('invalid_grant', 'Missing code_verifier (PKCE required)')
            if not oauth_pkce.verify(token_req.code_verifier, grant.code_challenge):
                raise OAuthError('invalid_grant', 'PKCE verification failed')
        elif token_req.code_verifier:
            raise OAuthError('invalid_grant', 'code_verifier sent but no code_challenge was registered')

        if self.replay_guard is not None and not self.replay_guard.claim(grant.grant_id):
            logging.error(f"Authorization code replay for client {grant.client_id}")
            audit(AuditEvent.GRANT_REPLAYED, "failure", client_id=grant.client_id)
            raise OAuthError('invalid_grant', 'Authorization code already used')

        fingerprint = token_fingerprint(grant.token_set.access_token)[:12]
        logging.info(f"Issued access token {fingerprint} to client {grant.client_id}")
        audit(AuditEvent.TOKEN_ISSUED, "success", client_id=grant.client_id, token_fingerprint=fingerprint)

        return grant.token_set.to_token_response(self.codec.now())

    async def handle_refresh_token_grant(self, token_req: TokenRequest) -> Dict[str, Any]:
        """
        Handle refresh_token grant type.

        Args:
            token_req: Validated token request

        Returns:
            Token response dict

        Raises:
            OAuthError: invalid_grant (re-authorize), temporarily_unavailable
                (retry later) or server_error
        """
        fingerprint = token_fingerprint(token_req.refresh_token)[:12]
        try:
            token_set = await asyncio.wait_for(
                self.provider_client.refresh(token_req.refresh_token),
                timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            logging.error(f"Refresh of {fingerprint} timed out after {self.request_timeout}s")
            audit(AuditEvent.TOKEN_REFRESH_FAILED, "failure", client_id=token_req.client_id,
                  token_fingerprint=fingerprint, reason=TokenErrorReason.NETWORK_ERROR.value)
            raise OAuthError('temporarily_unavailable', 'Authorization server is temporarily unavailable',
                             status_code=503, retry_after=5)
        except TokenError as e:
            audit(AuditEvent.TOKEN_REFRESH_FAILED, "failure", client_id=token_req.client_id,
                  token_fingerprint=fingerprint, reason=e.reason.value)
            if e.reason == TokenErrorReason.INVALID_GRANT:
                raise OAuthError('invalid_grant', 'Refresh token is invalid or expired')
            if e.retryable:
                raise OAuthError('temporarily_unavailable', 'Authorization server is temporarily unavailable',
                                 status_code=503, retry_after=5)
            logging.error(f"Refresh of {fingerprint} failed: {e.reason.value}")
            raise OAuthError('server_error', 'Upstream authorization server error', status_code=502)

        logging.info(f"Issued new access token via refresh grant ({fingerprint})")
        audit(AuditEvent.TOKEN_REFRESHED, "success", client_id=token_req.client_id,
              token_fingerprint=token_fingerprint(token_set.access_token)[:12])
        return token_set.to_token_response(self.codec.now())

    # ===== Client Registration Endpoint =====

    async def handle_register(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """
        Handle POST /register request (Dynamic Client Registration).

        Args:
            params: Registration request parameters

        Returns:
            Client registration response

        Raises:
            OAuthError: If registration fails
        """
        client_name = params.get('client_name')
        redirect_uris = params.get('redirect_uris', [])

        if not client_name:
            raise OAuthError('invalid_request', 'Missing client_name parameter')

        if not redirect_uris or not isinstance(redirect_uris, list):
            raise OAuthError('invalid_request', 'Missing redirect_uris parameter')

        if not all(isinstance(uri, str) for uri in redirect_uris):
            raise OAuthError('invalid_redirect_uri', 'redirect_uris must be a list of strings')

        try:
            registration = self.registry.register(client_name=client_name, redirect_uris=redirect_uris)
        except ValueError as e:
            raise OAuthError('invalid_redirect_uri', str(e))

        audit(AuditEvent.CLIENT_REGISTERED, "success", client_id=registration.client_id)

        return {
            'client_id': registration.client_id,
            'client_name': registration.client_name,
            'redirect_uris': registration.redirect_uris,
            'client_id_issued_at': registration.created_at,
            'grant_types': ['authorization_code', 'refresh_token'],
            'response_types': ['code'],
            'token_endpoint_auth_method': 'none'  # Public client
        }
