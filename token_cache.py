"""
Token Validation Cache

Bounded, TTL-limited LRU cache of successful bearer token validations, keyed by
a SHA-256 fingerprint of the raw token. Raw tokens are never stored.

Also provides CapsuleReplayGuard, a bounded single-use ledger used to reject
replays of authorization artifacts within their lifetime.

Concurrency: a threading.Lock guards only dictionary mutations and is never held
across an await. Concurrent misses for the same token may share a single
upstream validation call (coalescing).
"""

import asyncio
import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple


def token_fingerprint(raw_token: str) -> str:
    """SHA-256 hex digest of a raw token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


@dataclass
class CachedValidation:
    token_fingerprint: str
    claims: Any
    cached_at: float


class TokenValidationCache:
    """
    LRU cache of validated token claims.

    A hit counts only while now - cached_at < ttl. Failed validations are never
    cached.
    """

    def __init__(
        self,
        capacity: int = 100,
        ttl: float = 300,
        clock: Callable[[], float] = time.monotonic,
        coalesce: bool = True
    ):
        """
        Initialize validation cache.

        Args:
            capacity: Maximum number of cached validations
            ttl: Seconds a validation stays usable
            clock: Monotonic time source
            coalesce: Share one upstream call between concurrent misses
        """
        if capacity <= 0:
            raise ValueError("Cache capacity must be positive")

        self.capacity = capacity
        self.ttl = ttl
        self.clock = clock
        self.coalesce = coalesce

        self._entries: "OrderedDict[str, CachedValidation]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0

    def get(self, raw_token: str) -> Optional[Any]:
        """
        Return cached claims for a token, or None on miss or stale entry.

        Args:
            raw_token: Bearer token as presented

        Returns:
            Cached claims or None
        """
        return self._lookup(token_fingerprint(raw_token))

    def put(self, raw_token: str, claims: Any) -> None:
        """Insert or refresh a validation, evicting the least recently used entry at capacity."""
        self._store(token_fingerprint(raw_token), claims)

    async def get_or_validate(
        self,
        raw_token: str,
        validator_fn: Callable[[str], Awaitable[Any]]
    ) -> Any:
        """
        Return claims for a token, validating upstream on miss.

        Args:
            raw_token: Bearer token as presented
            validator_fn: Coroutine function performing the upstream validation

        Returns:
            Claims from cache or from validator_fn

        Raises:
            Whatever validator_fn raises; nothing is cached in that case
        """
        fingerprint = token_fingerprint(raw_token)

        while True:
            claims = self._lookup(fingerprint)
            if claims is not None:
                return claims

            if not self.coalesce:
                return await self._validate_and_store(fingerprint, raw_token, validator_fn)

            loop = asyncio.get_running_loop()
            with self._lock:
                pending = self._inflight.get(fingerprint)
                if pending is None or pending.get_loop() is not loop:
                    future = loop.create_future()
                    self._inflight[fingerprint] = future
                    pending = None

            if pending is not None:
                try:
                    return await asyncio.shield(pending)
                except asyncio.CancelledError:
                    if pending.cancelled():
                        # Leading caller was cancelled; try again on our own
                        continue
                    raise

            return await self._lead_validation(fingerprint, raw_token, validator_fn, future)

    def invalidate(self, raw_token: str) -> bool:
        """
        Remove a token's validation immediately.

        Args:
            raw_token: Bearer token as presented

        Returns:
            True if an entry was removed
        """
        fingerprint = token_fingerprint(raw_token)
        with self._lock:
            removed = self._entries.pop(fingerprint, None) is not None

        if removed:
            logging.info(f"Invalidated cached validation {fingerprint[:12]}")
        return removed

    def stats(self) -> Tuple[int, int]:
        """Return (size, capacity)."""
        with self._lock:
            return len(self._entries), self.capacity

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    async def _lead_validation(self, fingerprint, raw_token, validator_fn, future):
        try:
            claims = await self._validate_and_store(fingerprint, raw_token, validator_fn)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure does not warn
            future.exception()
            raise
        else:
            future.set_result(claims)
            return claims
        finally:
            with self._lock:
                if self._inflight.get(fingerprint) is future:
                    del self._inflight[fingerprint]

    async def _validate_and_store(self, fingerprint, raw_token, validator_fn):
        claims = await validator_fn(raw_token)
        self._store(fingerprint, claims)
        return claims

    def _lookup(self, fingerprint: str) -> Optional[Any]:
        now = self.clock()
        with self._lock:
            entry = self._entries.get(fingerprint)
            if entry is None:
                self.misses += 1
                return None

            if now - entry.cached_at >= self.ttl:
                del self._entries[fingerprint]
                self.misses += 1
                return None

            self._entries.move_to_end(fingerprint)
            self.hits += 1
            return entry.claims

    def _store(self, fingerprint: str, claims: Any) -> None:
        entry = CachedValidation(token_fingerprint=fingerprint, claims=claims, cached_at=self.clock())
        with self._lock:
            if fingerprint in self._entries:
                self._entries.move_to_end(fingerprint)
            elif len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logging.debug(f"Evicted cached validation {evicted[:12]}")
            self._entries[fingerprint] = entry


class CapsuleReplayGuard:
    """
    Bounded single-use ledger for authorization artifacts.

    Remembers each claimed marker for ttl seconds. Per process only: instances
    behind a load balancer do not share it.
    """

    def __init__(self, capacity: int = 1024, ttl: float = 600, clock: Callable[[], float] = time.monotonic):
        self.capacity = capacity
        self.ttl = ttl
        self.clock = clock
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def claim(self, marker: str) -> bool:
        """
        Record a marker as used.

        Args:
            marker: Unique identifier of the artifact being redeemed

        Returns:
            False if the marker was already claimed within ttl
        """
        now = self.clock()
        with self._lock:
            # Entries share one ttl, so the oldest expire first
            while self._seen:
                oldest, expires_at = next(iter(self._seen.items()))
                if expires_at > now:
                    break
                del self._seen[oldest]

            if marker in self._seen:
                return False

            if len(self._seen) >= self.capacity:
                self._seen.popitem(last=False)
                logging.warning("Replay guard at capacity, forgetting oldest marker")

            self._seen[marker] = now + self.ttl
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
