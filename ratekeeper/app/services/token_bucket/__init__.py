"""Distributed token bucket admission control.

State lives in a shared store and is refilled and consumed by one atomic
unit per check (a Redis Lua script in production).
"""

from .models import BucketState, CheckResult, RateConfig, apply_check
from .redis_lua import TOKEN_BUCKET_SCRIPT
from .service import TokenBucketLimiter, build_limiter, build_store
from .store import BucketStore, InMemoryBucketStore, RedisBucketStore

__all__ = [
    "BucketState",
    "CheckResult",
    "RateConfig",
    "apply_check",
    "TOKEN_BUCKET_SCRIPT",
    "TokenBucketLimiter",
    "build_limiter",
    "build_store",
    "BucketStore",
    "InMemoryBucketStore",
    "RedisBucketStore",
]
