"""
OAuth Authorization Proxy Server

Starlette application exposing the proxy's HTTP surface:
- GET  /authorize                                client platform starts a flow
- GET  /callback                                 provider redirects back
- POST /token                                    code redemption and refresh
- POST /register                                 dynamic client registration
- GET  /.well-known/oauth-protected-resource     RFC 9728 metadata
- GET  /.well-known/oauth-authorization-server   RFC 8414 metadata
- GET  /mcp/whoami                               bearer-protected example resource
- GET  /, /health                                health check

Run with: uvicorn server:create_app --factory  (or python server.py)
"""

import contextlib
import logging
import os
import re
import sys
import time
import uuid
from typing import Callable, Optional
from urllib.parse import parse_qsl

import httpx
import redis
import uvicorn
from starlette.applications import Starlette
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from audit_logger import request_id_var, source_ip_var, user_agent_var
from client_registry import ClientRegistry, InMemoryClientStore, RedisClientStore
from oauth_endpoints import AuthorizationFlowOrchestrator, OAuthError, GENERIC_CALLBACK_ERROR
from oauth_metadata import OAuthMetadataProvider
from provider_client import ProviderTokenClient
from proxy_config import ProxyConfig
from rate_limiter import RedisRateLimiter, get_client_ip
from state_capsule import StateCapsuleCodec, load_capsule_key
from token_cache import TokenValidationCache, CapsuleReplayGuard
from token_validator import BearerAuthMiddleware, ResourceServerValidator

# Cookie carrying the flow state capsule between /authorize and /callback
CAPSULE_COOKIE_NAME = "oauth_flow_state"

_REQUEST_ID_RE = re.compile(r"[A-Za-z0-9._-]{1,128}")


def configure_logging() -> None:
    """Configure root logging from LOG_LEVEL (default INFO)."""
    level_name = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stderr)]
    )


class RequestContextMiddleware:
    """Middleware that stores request correlation data in contextvars and echoes X-Request-ID."""

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        request_id = request.headers.get("X-Request-ID", "")
        if not _REQUEST_ID_RE.fullmatch(request_id):
            request_id = uuid.uuid4().hex

        request_token = request_id_var.set(request_id)
        ip_token = source_ip_var.set(get_client_ip(request))
        agent_token = user_agent_var.set(request.headers.get("User-Agent"))

        async def send_with_request_id(message):
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message).append("X-Request-ID", request_id)
            await send(message)

        try:
            await self.app(scope, receive, send_with_request_id)
        finally:
            request_id_var.reset(request_token)
            source_ip_var.reset(ip_token)
            user_agent_var.reset(agent_token)


def _oauth_error_response(e: OAuthError) -> JSONResponse:
    headers = {"Cache-Control": "no-store"}
    if e.retry_after:
        headers["Retry-After"] = str(e.retry_after)
    return JSONResponse(
        {"error": e.error, "error_description": e.error_description},
        status_code=e.status_code,
        headers=headers
    )


def _server_error_response() -> JSONResponse:
    return JSONResponse(
        {"error": "server_error", "error_description": "Internal server error"},
        status_code=500
    )


def create_app(
    config: Optional[ProxyConfig] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    redis_client=None,
    clock: Callable[[], float] = time.time
) -> Starlette:
    """
    Build the proxy application.

    Args:
        config: Proxy configuration (loaded from the environment if omitted)
        http_client: httpx client used for provider calls
        redis_client: Redis client (created from config.redis_url if omitted)
        clock: Wall-clock source for capsule and token lifetimes

    Returns:
        Starlette application
    """
    config = config or ProxyConfig.from_env()

    if redis_client is None and config.redis_url:
        redis_client = redis.from_url(
            config.redis_url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_keepalive=True
        )

    codec = StateCapsuleCodec(load_capsule_key(config.capsule_key), clock=clock)
    provider_client = ProviderTokenClient(
        config.provider,
        http_client=http_client,
        timeout=config.provider_timeout,
        clock=clock
    )

    store = RedisClientStore(redis_client=redis_client) if redis_client is not None else InMemoryClientStore()
    registry = ClientRegistry(store)
    registry.preload(config.preset_clients)

    resource_path = config.protected_path_prefixes[0] if config.protected_path_prefixes else "/mcp"
    metadata_provider = OAuthMetadataProvider(config.server_url, config.provider.scopes, resource_path=resource_path)
    consistency = metadata_provider.validate_metadata_consistency()
    for warning in consistency["warnings"]:
        logging.warning(f"OAuth metadata: {warning}")
    for error in consistency["errors"]:
        logging.error(f"OAuth metadata: {error}")

    orchestrator = AuthorizationFlowOrchestrator(
        codec=codec,
        provider_client=provider_client,
        registry=registry,
        metadata_provider=metadata_provider,
        capsule_ttl=config.capsule_ttl,
        grant_ttl=config.grant_ttl,
        request_timeout=config.provider_timeout,
        replay_guard=CapsuleReplayGuard(ttl=config.grant_ttl) if config.single_use_grants else None
    )
    validator = ResourceServerValidator(
        TokenValidationCache(capacity=config.token_cache_size, ttl=config.token_cache_ttl),
        provider_client,
        request_timeout=config.provider_timeout
    )

    rate_limiter = None
    if redis_client is not None and config.rate_limit_enabled:
        rate_limiter = RedisRateLimiter(redis_client)

    def check_rate_limit(request: Request, endpoint_name: str):
        """Return (decision, 429 response or None)."""
        if rate_limiter is None:
            return None, None
        decision = rate_limiter.check(request, endpoint_name)
        if not decision.allowed:
            return decision, rate_limiter.create_rate_limit_response(decision)
        return decision, None

    def finish(response: Response, decision) -> Response:
        if decision is not None:
            rate_limiter.apply_headers(response, decision)
        return response

    def clear_capsule_cookie(response: Response) -> None:
        response.delete_cookie(
            CAPSULE_COOKIE_NAME,
            path="/",
            secure=config.cookie_secure,
            httponly=True,
            samesite="lax"
        )

    async def handle_authorize_endpoint(request: Request):
        """GET /authorize - Start a flow (rate limited)"""
        decision, limited = check_rate_limit(request, "authorize")
        if limited:
            return limited

        try:
            start = await orchestrator.start_authorization(dict(request.query_params))
        except OAuthError as e:
            return finish(_oauth_error_response(e), decision)
        except Exception as e:
            logging.exception(f"Authorization endpoint error: {type(e).__name__}")
            return _server_error_response()

        response = RedirectResponse(url=start.redirect_url, status_code=302)
        response.set_cookie(
            CAPSULE_COOKIE_NAME,
            start.capsule,
            max_age=config.capsule_ttl,
            path="/",
            secure=config.cookie_secure,
            httponly=True,
            samesite="lax"
        )
        return finish(response, decision)

    async def handle_callback_endpoint(request: Request):
        """GET /callback - Provider redirect back (rate limited)"""
        decision, limited = check_rate_limit(request, "callback")
        if limited:
            return limited

        try:
            outcome = await orchestrator.handle_callback(
                dict(request.query_params),
                request.cookies.get(CAPSULE_COOKIE_NAME)
            )
            if not outcome.succeeded:
                logging.info(f"Flow {outcome.flow.flow_id} ended {outcome.flow.stage.value} ({outcome.flow.failure_reason})")
            if outcome.redirect_url:
                response = RedirectResponse(url=outcome.redirect_url, status_code=302)
            else:
                response = HTMLResponse(
                    orchestrator.render_error_page(outcome.error_description),
                    status_code=outcome.status_code
                )
        except Exception as e:
            # SECURITY: Log internally, show only the generic page
            logging.exception(f"OAuth callback error: {type(e).__name__}")
            response = HTMLResponse(orchestrator.render_error_page(GENERIC_CALLBACK_ERROR), status_code=500)

        # The capsule is single-use on the happy path and useless after a failure
        clear_capsule_cookie(response)
        return finish(response, decision)

    async def handle_token_endpoint(request: Request):
        """POST /token - Token endpoint (rate limited)"""
        decision, limited = check_rate_limit(request, "token")
        if limited:
            return limited

        try:
            body = await request.body()
            params = dict(parse_qsl(body.decode('utf-8')))
            result = await orchestrator.handle_token(params)
        except OAuthError as e:
            return finish(_oauth_error_response(e), decision)
        except UnicodeDecodeError:
            return finish(_oauth_error_response(OAuthError('invalid_request', 'Request body must be form-encoded')), decision)
        except Exception as e:
            logging.exception(f"Token endpoint error: {type(e).__name__}")
            return _server_error_response()

        response = JSONResponse(result, headers={"Cache-Control": "no-store", "Pragma": "no-cache"})
        return finish(response, decision)

    async def handle_register_endpoint(request: Request):
        """POST /register - Dynamic client registration (rate limited)"""
        decision, limited = check_rate_limit(request, "register")
        if limited:
            return limited

        try:
            try:
                params = await request.json()
            except (ValueError, UnicodeDecodeError):
                raise OAuthError('invalid_request', 'Request body must be JSON')
            if not isinstance(params, dict):
                raise OAuthError('invalid_request', 'Request body must be a JSON object')
            result = await orchestrator.handle_register(params)
        except OAuthError as e:
            return finish(_oauth_error_response(e), decision)
        except Exception as e:
            logging.exception(f"Registration endpoint error: {type(e).__name__}")
            return _server_error_response()

        return finish(JSONResponse(result, status_code=201), decision)

    async def handle_protected_resource_metadata(request: Request):
        """GET /.well-known/oauth-protected-resource"""
        return JSONResponse(metadata_provider.get_protected_resource_metadata())

    async def handle_authorization_server_metadata(request: Request):
        """GET /.well-known/oauth-authorization-server"""
        return JSONResponse(metadata_provider.get_authorization_server_metadata())

    async def handle_whoami(request: Request):
        """GET <resource>/whoami - Claims of the validated bearer token"""
        return JSONResponse(request.state.claims.to_dict())

    async def health(request: Request):
        size, capacity = validator.stats()
        return JSONResponse({
            "status": "ok",
            "type": "oauth-proxy",
            "provider": config.provider.name,
            "client_store": "ok" if registry.ping() else "unavailable",
            "token_cache": {
                "size": size,
                "capacity": capacity,
                "hits": validator.cache.hits,
                "misses": validator.cache.misses,
            },
        })

    routes = [
        Route("/", health, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
        Route("/authorize", handle_authorize_endpoint, methods=["GET"]),
        Route("/callback", handle_callback_endpoint, methods=["GET"]),
        Route("/token", handle_token_endpoint, methods=["POST"]),
        Route("/register", handle_register_endpoint, methods=["POST"]),
        Route("/.well-known/oauth-protected-resource", handle_protected_resource_metadata, methods=["GET"]),
        Route("/.well-known/oauth-authorization-server", handle_authorization_server_metadata, methods=["GET"]),
        Route(f"{resource_path.rstrip('/')}/whoami", handle_whoami, methods=["GET"]),
    ]

    @contextlib.asynccontextmanager
    async def lifespan(app):
        yield
        await provider_client.aclose()

    app = Starlette(routes=routes, lifespan=lifespan)
    app.add_middleware(
        BearerAuthMiddleware,
        validator=validator,
        metadata_provider=metadata_provider,
        protected_prefixes=config.protected_path_prefixes
    )
    # Added last so it wraps everything, including bearer rejections
    app.add_middleware(RequestContextMiddleware)

    app.state.config = config
    app.state.orchestrator = orchestrator
    app.state.validator = validator
    app.state.registry = registry

    logging.info(f"OAuth proxy for {config.provider.name} ready at {config.server_url}")
    return app


if __name__ == "__main__":
    configure_logging()
    try:
        application = create_app()
    except ValueError as e:
        logging.error(f"Invalid configuration: {e}")
        sys.exit(1)

    uvicorn.run(
        application,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8080")),
        log_level=os.getenv("LOG_LEVEL", "info").lower()
    )
