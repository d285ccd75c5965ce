"""
Broker Sync - Request Governor.

============================================================
PURPOSE
============================================================
Wraps every outbound provider call with pacing, caching and
bounded retry.

FEATURES:
- Per-provider minimum gap between consecutive calls
- Rolling per-minute and per-hour request budgets
- TTL cache for idempotent reads keyed by endpoint + parameters
- Up to N attempts with exponential backoff (base ** attempt)
- Hard rejects are never retried

OWNERSHIP:
One governor instance is constructed by the caller and injected
into every adapter. State is scoped per provider name, so all
adapters of the same provider share one budget.

============================================================
"""

import asyncio
import json
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from .config import CacheConfig, RateLimitConfig, RetryConfig
from .errors import BrokerError


logger = logging.getLogger(__name__)


MINUTE_SECONDS = 60.0
HOUR_SECONDS = 3600.0


# ============================================================
# PROVIDER STATE
# ============================================================

@dataclass
class ProviderState:
    """Pacing state for a single provider."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    """Held only while reserving a call slot."""

    last_call_at: Optional[float] = None
    minute_window: Deque[float] = field(default_factory=deque)
    hour_window: Deque[float] = field(default_factory=deque)

    total_calls: int = 0
    total_retries: int = 0
    total_wait_seconds: float = 0.0


@dataclass
class CacheEntry:
    expires_at: float
    value: Any


# ============================================================
# REQUEST GOVERNOR
# ============================================================

class RequestGovernor:
    """
    Pacing, caching and retry for provider calls.

    Example:
        governor = RequestGovernor(rate_limits=config.rate_limit_for)
        data = await governor.execute(
            "ANGEL_ONE",
            "/order/v1/getTradeBook",
            lambda: adapter._send("GET", path),
            cacheable=True,
        )
    """

    def __init__(
        self,
        rate_limits: Optional[Callable[[str], RateLimitConfig]] = None,
        cache_config: Optional[CacheConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        """
        Initialize governor.

        Args:
            rate_limits: Resolves pacing limits for a provider name
            cache_config: Cache settings
            retry_config: Retry settings
            clock: Monotonic clock, injectable for tests
            sleep: Async sleep, injectable for tests
        """
        self._rate_limits = rate_limits or (lambda provider: RateLimitConfig())
        self._cache_config = cache_config or CacheConfig()
        self._retry_config = retry_config or RetryConfig()
        self._clock = clock
        self._sleep = sleep

        self._providers: Dict[str, ProviderState] = {}
        self._cache: "OrderedDict[Tuple[str, str, str], CacheEntry]" = OrderedDict()

        self._cache_hits = 0
        self._cache_misses = 0

    # --------------------------------------------------------
    # PUBLIC API
    # --------------------------------------------------------

    async def execute(
        self,
        provider: str,
        endpoint: str,
        call: Callable[[], Awaitable[Any]],
        params: Optional[Dict[str, Any]] = None,
        cacheable: bool = False,
        bypass_cache: bool = False,
        cache_if: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """
        Run a provider call under pacing, cache and retry policy.

        Args:
            provider: Provider name (budget scope)
            endpoint: Endpoint path, part of the cache key
            call: Zero-argument coroutine factory performing the request
            params: Request parameters, part of the cache key
            cacheable: Whether the call is an idempotent read
            bypass_cache: Skip cache lookup (force refresh)
            cache_if: Predicate deciding whether a result may be cached

        Returns:
            Call result

        Raises:
            BrokerError: Last error once attempts are exhausted, or
                immediately for non-retryable errors
        """
        key = self._cache_key(provider, endpoint, params)
        use_cache = cacheable and self._cache_config.enabled

        if use_cache and not bypass_cache:
            cached = self._cache_get(key)
            if cached is not None:
                self._cache_hits += 1
                logger.debug(f"Cache hit for {provider} {endpoint}")
                return cached.value
            self._cache_misses += 1

        result = await self._call_with_retry(provider, endpoint, call)

        if use_cache and (cache_if is None or cache_if(result)):
            self._cache_put(key, result)

        return result

    def get_rate_limit_status(self, provider: str) -> Dict[str, Any]:
        """Get current pacing status for a provider."""
        state = self._state(provider)
        limits = self._rate_limits(provider)
        now = self._clock()
        self._prune(state, now)
        return {
            "provider": provider,
            "minute_used": len(state.minute_window),
            "minute_limit": limits.requests_per_minute,
            "hour_used": len(state.hour_window),
            "hour_limit": limits.requests_per_hour,
            "min_interval_seconds": limits.min_interval_seconds,
            "total_calls": state.total_calls,
            "total_retries": state.total_retries,
            "total_wait_seconds": round(state.total_wait_seconds, 3),
        }

    def get_cache_status(self) -> Dict[str, Any]:
        """Get cache statistics."""
        return {
            "entries": len(self._cache),
            "hits": self._cache_hits,
            "misses": self._cache_misses,
            "ttl_seconds": self._cache_config.ttl_seconds,
        }

    def clear_cache(self, provider: Optional[str] = None) -> int:
        """
        Drop cached responses.

        Args:
            provider: Only drop this provider's entries

        Returns:
            Number of entries removed
        """
        if provider is None:
            removed = len(self._cache)
            self._cache.clear()
            return removed

        keys = [key for key in self._cache if key[0] == provider]
        for key in keys:
            del self._cache[key]
        return len(keys)

    # --------------------------------------------------------
    # PACING
    # --------------------------------------------------------

    def _state(self, provider: str) -> ProviderState:
        if provider not in self._providers:
            self._providers[provider] = ProviderState()
        return self._providers[provider]

    def _prune(self, state: ProviderState, now: float) -> None:
        while state.minute_window and now - state.minute_window[0] >= MINUTE_SECONDS:
            state.minute_window.popleft()
        while state.hour_window and now - state.hour_window[0] >= HOUR_SECONDS:
            state.hour_window.popleft()

    async def acquire(self, provider: str) -> None:
        """Wait until a call slot is available for the provider, then reserve it."""
        state = self._state(provider)
        limits = self._rate_limits(provider)

        async with state.lock:
            while True:
                now = self._clock()
                self._prune(state, now)

                wait = 0.0
                if state.last_call_at is not None:
                    wait = max(wait, state.last_call_at + limits.min_interval_seconds - now)
                if len(state.minute_window) >= limits.requests_per_minute:
                    wait = max(wait, state.minute_window[0] + MINUTE_SECONDS - now)
                if len(state.hour_window) >= limits.requests_per_hour:
                    wait = max(wait, state.hour_window[0] + HOUR_SECONDS - now)

                if wait <= 0:
                    break

                if wait > 1.0:
                    logger.warning(f"Rate limit reached for {provider}, waiting {wait:.1f}s")
                state.total_wait_seconds += wait
                await self._sleep(wait)

            state.last_call_at = now
            state.minute_window.append(now)
            state.hour_window.append(now)
            state.total_calls += 1

    # --------------------------------------------------------
    # RETRY
    # --------------------------------------------------------

    async def _call_with_retry(
        self,
        provider: str,
        endpoint: str,
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        max_attempts = max(1, self._retry_config.max_attempts)
        attempt = 1

        while True:
            await self.acquire(provider)
            try:
                return await call()
            except BrokerError as e:
                if not e.is_retryable() or attempt >= max_attempts:
                    raise

                delay = min(
                    self._retry_config.backoff_base_seconds ** attempt,
                    self._retry_config.max_delay_seconds,
                )
                logger.warning(
                    f"{provider} {endpoint} failed ({e.code.value}: {e.message}), "
                    f"retry {attempt}/{max_attempts - 1} in {delay:.1f}s"
                )
                self._state(provider).total_retries += 1
                await self._sleep(delay)
                attempt += 1

    # --------------------------------------------------------
    # CACHE
    # --------------------------------------------------------

    @staticmethod
    def _cache_key(provider: str, endpoint: str, params: Optional[Dict[str, Any]]) -> Tuple[str, str, str]:
        canonical = json.dumps(params or {}, sort_keys=True, default=str)
        return (provider, endpoint, canonical)

    def _cache_get(self, key: Tuple[str, str, str]) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            del self._cache[key]
            return None
        return entry

    def _cache_put(self, key: Tuple[str, str, str], value: Any) -> None:
        self._cache[key] = CacheEntry(
            expires_at=self._clock() + self._cache_config.ttl_seconds,
            value=value,
        )
        self._cache.move_to_end(key)
        while len(self._cache) > self._cache_config.max_entries:
            self._cache.popitem(last=False)
