"""Bucket state stores.

A store owns the atomicity boundary: ``apply`` must run the whole
read-refill-decide-write cycle for one key as a single indivisible unit.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from redis import exceptions as redis_exceptions

from ratekeeper.app.core.logging import get_logger
from ratekeeper.app.exceptions import StoreUnavailableError

from .models import BucketState, apply_check
from .redis_lua import TOKEN_BUCKET_SCRIPT

logger = get_logger(__name__)


class BucketStore(ABC):
    """Abstract base class for bucket state stores."""

    name: str = "abstract"

    @abstractmethod
    async def apply(
        self,
        key: str,
        burst: float,
        refill_rate: float,
        now_ms: int,
        ttl_seconds: int,
    ) -> tuple[float, bool, int]:
        """Atomically refill and try to consume one token.

        Returns:
            (tokens_after, allowed, retry_after_ms)

        Raises:
            StoreUnavailableError: If the store cannot complete the unit
        """

    @abstractmethod
    async def ping(self) -> None:
        """Round-trip to the store without touching bucket state.

        Raises:
            StoreUnavailableError: If the store is unreachable
        """

    async def close(self) -> None:
        """Release connections held by the store."""


class RedisBucketStore(BucketStore):
    """Redis-backed store using a Lua script for the atomic unit.

    The client owns a connection pool shared by every in-flight check;
    each check holds a connection only for its own script call.
    """

    name = "redis"

    def __init__(
        self,
        redis_client: Optional[Any] = None,
        redis_url: str = "redis://127.0.0.1:6379",
        max_connections: int = 50,
        timeout_seconds: float = 1.0,
    ) -> None:
        """Initialize Redis bucket store.

        Args:
            redis_client: Optional pre-built redis.asyncio client
            redis_url: Redis connection URL
            max_connections: Size of the shared connection pool
            timeout_seconds: Upper bound for one store call
        """
        self._redis = redis_client
        self._redis_url = redis_url
        self._max_connections = max_connections
        self._timeout = timeout_seconds

    def _get_redis(self) -> Any:
        """Get or create Redis client."""
        if self._redis is None:
            import redis.asyncio as aioredis
            self._redis = aioredis.from_url(
                self._redis_url,
                max_connections=self._max_connections,
                socket_timeout=self._timeout,
                socket_connect_timeout=self._timeout,
                decode_responses=True,
            )
        return self._redis

    async def _call(self, coro: Any, operation: str) -> Any:
        """Await a Redis call, mapping every failure to StoreUnavailableError."""
        try:
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except redis_exceptions.TimeoutError as e:
            logger.warning(f"Redis timeout during {operation}: {e}")
            raise StoreUnavailableError("timeout") from e
        except redis_exceptions.ConnectionError as e:
            logger.error(f"Redis connection failed during {operation}: {e}")
            raise StoreUnavailableError("connection_error") from e
        except redis_exceptions.RedisError as e:
            logger.error(f"Redis error during {operation}: {e}")
            raise StoreUnavailableError("redis_error") from e
        except asyncio.TimeoutError as e:
            logger.warning(f"Redis {operation} exceeded {self._timeout}s")
            raise StoreUnavailableError("timeout") from e
        except OSError as e:
            logger.error(f"Redis socket error during {operation}: {e}")
            raise StoreUnavailableError("connection_error") from e

    async def apply(
        self,
        key: str,
        burst: float,
        refill_rate: float,
        now_ms: int,
        ttl_seconds: int,
    ) -> tuple[float, bool, int]:
        redis = self._get_redis()
        result = await self._call(
            redis.eval(
                TOKEN_BUCKET_SCRIPT,
                1,  # Number of keys
                key,  # KEYS[1]
                float(burst),  # ARGV[1]
                float(refill_rate),  # ARGV[2]
                int(now_ms),  # ARGV[3]
                int(ttl_seconds),  # ARGV[4]
            ),
            "token bucket script",
        )
        try:
            allowed = int(result[0]) == 1
            raw_tokens = result[1]
            if isinstance(raw_tokens, bytes):
                raw_tokens = raw_tokens.decode()
            tokens = float(raw_tokens)
            retry_after_ms = int(result[2])
        except (TypeError, ValueError, IndexError) as e:
            logger.error(f"Unexpected token bucket script reply {result!r}: {e}")
            raise StoreUnavailableError("bad_reply") from e
        return tokens, allowed, retry_after_ms

    async def ping(self) -> None:
        redis = self._get_redis()
        await self._call(redis.ping(), "ping")

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.aclose()
            except Exception as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._redis = None


class InMemoryBucketStore(BucketStore):
    """Single-process store for local development and tests.

    Buckets live in a dict guarded by one asyncio.Lock. Not shared between
    processes, so it gives no admission guarantee across instances.
    """

    name = "memory"
    CLEANUP_EVERY = 1000  # Applies between sweeps of expired buckets

    def __init__(self) -> None:
        self._buckets: Dict[str, tuple[BucketState, int]] = {}
        self._lock = asyncio.Lock()
        self._applies = 0

    async def apply(
        self,
        key: str,
        burst: float,
        refill_rate: float,
        now_ms: int,
        ttl_seconds: int,
    ) -> tuple[float, bool, int]:
        async with self._lock:
            self._applies += 1
            if self._applies % self.CLEANUP_EVERY == 0:
                self._purge_expired(now_ms)

            state = None
            entry = self._buckets.get(key)
            if entry is not None:
                state, expires_at_ms = entry
                if expires_at_ms <= now_ms:
                    state = None

            new_state, allowed, retry_after_ms = apply_check(
                state, burst, refill_rate, now_ms
            )
            self._buckets[key] = (new_state, now_ms + ttl_seconds * 1000)
            return new_state.tokens, allowed, retry_after_ms

    def _purge_expired(self, now_ms: int) -> int:
        expired = [
            key for key, (_, expires_at_ms) in self._buckets.items()
            if expires_at_ms <= now_ms
        ]
        for key in expired:
            del self._buckets[key]
        return len(expired)

    def get_state(self, key: str) -> Optional[BucketState]:
        """Return the stored bucket for inspection, ignoring expiry."""
        entry = self._buckets.get(key)
        return entry[0] if entry is not None else None

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        async with self._lock:
            self._buckets.clear()
