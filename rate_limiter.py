"""
Rate Limiter for OAuth Endpoints

Redis-backed sliding-window rate limiting for the proxy's OAuth endpoints.
Limits are applied per client IP and endpoint to blunt:
- Flood of /authorize requests minting capsules
- Callback and authorization code guessing
- Token endpoint abuse against the provider

Active only when Redis is configured. Fails open on Redis errors.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from audit_logger import AuditEvent, audit


@dataclass(frozen=True)
class RateLimit:
    requests_per_minute: int
    window_size: int = 60


# Per-endpoint limits
OAUTH_RATE_LIMITS: Dict[str, RateLimit] = {
    # Users clicking "connect"
    "authorize": RateLimit(requests_per_minute=10),
    # Redirects back from the provider
    "callback": RateLimit(requests_per_minute=10),
    # Code redemption and refresh
    "token": RateLimit(requests_per_minute=20),
    # Rare operation
    "register": RateLimit(requests_per_minute=5),
}


# Sorted set of request timestamps per key; returns {allowed, remaining}
_SLIDING_WINDOW_SCRIPT = """
    local key = KEYS[1]
    local limit = tonumber(ARGV[1])
    local window = tonumber(ARGV[2])
    local now = tonumber(ARGV[3])
    local member = ARGV[4]

    redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)

    local count = redis.call('ZCARD', key)
    if count < limit then
        redis.call('ZADD', key, now, member)
        redis.call('EXPIRE', key, window)
        return {1, limit - count - 1}
    end
    return {0, 0}
"""


def get_client_ip(request: Request) -> str:
    """
    Extract client IP from request.

    Checks X-Forwarded-For first (reverse proxy deployments), then the
    direct peer address.

    Args:
        request: Starlette Request object

    Returns:
        Client IP address string
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()

    if request.client:
        return request.client.host

    return "unknown"


@dataclass
class RateLimitDecision:
    allowed: bool
    remaining: int
    limit: RateLimit


class RedisRateLimiter:
    """
    Redis-backed rate limiter with sliding window algorithm.

    SECURITY: Protects OAuth endpoints from abuse by limiting requests per IP.
    """

    KEY_PREFIX = "rate_limit:"

    def __init__(self, redis_client, limits: Optional[Dict[str, RateLimit]] = None):
        """
        Initialize rate limiter.

        Args:
            redis_client: Redis client instance
            limits: Per-endpoint limits (defaults to OAUTH_RATE_LIMITS)
        """
        self.redis_client = redis_client
        self.limits = dict(limits or OAUTH_RATE_LIMITS)
        self.enabled = True
        self._counter = 0

        # Atomic check-and-add on the Redis side
        self.rate_limit_script = self.redis_client.register_script(_SLIDING_WINDOW_SCRIPT)

        summary = ", ".join(f"{name}={limit.requests_per_minute}/{limit.window_size}s"
                            for name, limit in self.limits.items())
        logging.info(f"Rate limiter initialized: {summary}")

    def check(self, request: Request, endpoint_name: str) -> RateLimitDecision:
        """
        Check if request is within the endpoint's rate limit.

        Args:
            request: Starlette Request object
            endpoint_name: Key into the configured limits

        Returns:
            RateLimitDecision
        """
        limit = self.limits.get(endpoint_name)
        if limit is None:
            logging.warning(f"No rate limit config for endpoint: {endpoint_name}")
            return RateLimitDecision(True, 0, RateLimit(0))

        if not self.enabled:
            return RateLimitDecision(True, limit.requests_per_minute, limit)

        client_ip = get_client_ip(request)
        key = f"{self.KEY_PREFIX}{endpoint_name}:{client_ip}"
        now = time.time()
        # Unique member so two requests in the same instant both count
        self._counter += 1
        member = f"{now:.6f}:{self._counter}"

        try:
            result = self.rate_limit_script(
                keys=[key],
                args=[limit.requests_per_minute, limit.window_size, now, member]
            )
        except Exception as e:
            # SECURITY: Fail open on Redis errors; rate limiting must not take the service down
            logging.error(f"Rate limit check failed: {e}, allowing request")
            return RateLimitDecision(True, limit.requests_per_minute, limit)

        decision = RateLimitDecision(bool(result[0]), int(result[1]), limit)
        if not decision.allowed:
            logging.warning(
                f"Rate limit exceeded for {client_ip} on {endpoint_name}: "
                f"{limit.requests_per_minute} requests/{limit.window_size}s"
            )
            audit(AuditEvent.RATE_LIMIT_EXCEEDED, "failure", status_code=429,
                  additional_safe_fields={"endpoint": endpoint_name})
        return decision

    @staticmethod
    def create_rate_limit_response(decision: RateLimitDecision) -> JSONResponse:
        """
        Create 429 Too Many Requests response.

        Args:
            decision: The denying decision

        Returns:
            JSONResponse with 429 status
        """
        retry_after = decision.limit.window_size
        return JSONResponse(
            status_code=429,
            content={
                "error": "too_many_requests",
                "error_description": f"Rate limit exceeded. Please retry after {retry_after} seconds."
            },
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(decision.limit.requests_per_minute),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(int(time.time()) + retry_after)
            }
        )

    @staticmethod
    def apply_headers(response: Response, decision: RateLimitDecision) -> Response:
        """Add X-RateLimit-* headers to an allowed response."""
        response.headers["X-RateLimit-Limit"] = str(decision.limit.requests_per_minute)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        response.headers["X-RateLimit-Reset"] = str(int(time.time()) + decision.limit.window_size)
        return response
