"""Token bucket admission controller.

Stateless and reentrant: every check is one atomic unit against the
bucket store, which is the only place bucket state lives.
"""

import math
import time
from typing import Callable, Optional

from ratekeeper.app.core.config import Settings
from ratekeeper.app.core.logging import get_log_context, get_logger
from ratekeeper.app.exceptions import InvalidRateConfigError, StoreUnavailableError

from .models import CheckResult, RateConfig
from .store import BucketStore, InMemoryBucketStore, RedisBucketStore

logger = get_logger(__name__)


class TokenBucketLimiter:
    """Decides per identity whether a request may proceed right now.

    Redis key format:
    - {key_prefix}{identity} - hash with ``tokens`` and ``last_refill`` (epoch ms)
    """

    def __init__(
        self,
        store: BucketStore,
        ttl_seconds: int = 120,
        key_prefix: str = "ratelimit:",
        max_identity_length: int = 512,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the limiter.

        Args:
            store: Bucket state store providing the atomic unit
            ttl_seconds: Idle window after which a bucket is reclaimed
            key_prefix: Prefix for store keys
            max_identity_length: Longest accepted identity string
            clock: Wall clock in epoch seconds
        """
        self._store = store
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix
        self._max_identity_length = max_identity_length
        self._clock = clock

    @property
    def store(self) -> BucketStore:
        return self._store

    def _make_key(self, identity: str) -> str:
        return f"{self._key_prefix}{identity}"

    def _validate_identity(self, identity: str) -> None:
        if not isinstance(identity, str) or not identity:
            raise InvalidRateConfigError("identity", "must be a non-empty string")
        if len(identity) > self._max_identity_length:
            raise InvalidRateConfigError(
                "identity", f"too long (max {self._max_identity_length} characters)"
            )

    async def check(
        self,
        identity: str,
        limit: float,
        burst: Optional[float] = None,
    ) -> CheckResult:
        """Check and consume one token for ``identity``.

        Args:
            identity: Opaque client key
            limit: Requests per minute
            burst: Bucket capacity, defaults to ``limit``

        Returns:
            CheckResult with the decision, floored remaining tokens and the
            wait in milliseconds until one token is available

        Raises:
            InvalidRateConfigError: Bad identity, limit or burst (no store access)
            StoreUnavailableError: Store unreachable, timed out or failed
        """
        self._validate_identity(identity)
        config = RateConfig(limit=limit, burst=burst)
        now_ms = int(self._clock() * 1000)

        tokens, allowed, retry_after_ms = await self._store.apply(
            self._make_key(identity),
            config.capacity,
            config.refill_rate,
            now_ms,
            self._ttl_seconds,
        )

        result = CheckResult(
            allowed=allowed,
            remaining=max(0, math.floor(tokens)),
            retry_after_ms=0 if allowed else max(0, retry_after_ms),
            limit=config.limit,
            burst=config.capacity,
        )
        logger.debug(
            "Token bucket decision",
            extra=get_log_context(
                client_id=identity,
                allowed=result.allowed,
                remaining=result.remaining,
                retry_after_ms=result.retry_after_ms,
            ),
        )
        return result

    async def ping(self) -> bool:
        """Liveness check against the store. Does not touch bucket state."""
        try:
            await self._store.ping()
        except StoreUnavailableError as e:
            logger.warning(f"Bucket store health check failed: {e}")
            return False
        return True

    async def close(self) -> None:
        await self._store.close()


def build_store(settings: Settings) -> BucketStore:
    """Create the bucket store selected by settings."""
    if settings.store_backend == "memory":
        logger.warning("Using in-memory bucket store; limits are per process")
        return InMemoryBucketStore()
    return RedisBucketStore(
        redis_url=settings.redis_url,
        max_connections=settings.redis_max_connections,
        timeout_seconds=settings.store_timeout_seconds,
    )


def build_limiter(
    settings: Settings,
    store: Optional[BucketStore] = None,
    clock: Callable[[], float] = time.time,
) -> TokenBucketLimiter:
    """Create a limiter wired from settings."""
    return TokenBucketLimiter(
        store=store if store is not None else build_store(settings),
        ttl_seconds=settings.bucket_ttl_seconds,
        key_prefix=settings.key_prefix,
        max_identity_length=settings.max_identity_length,
        clock=clock,
    )
