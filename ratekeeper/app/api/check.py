"""Admission check endpoint.

POST /check decides whether the calling client may proceed. The client is
identified by its X-API-Key header, or by its address when no key is sent.
"""

import hashlib
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ratekeeper.app.core.logging import get_log_context, get_logger
from ratekeeper.app.exceptions import InvalidRateConfigError
from ratekeeper.app.services.token_bucket import TokenBucketLimiter

logger = get_logger(__name__)
router = APIRouter(tags=["rate-limit"])

API_KEY_HEADER = "X-API-Key"
MAX_API_KEY_LENGTH = 512


class CheckRequest(BaseModel):
    """Rate configuration for one check."""
    limit: float = Field(strict=True, description="Requests per minute; must be > 0")
    burst: Optional[float] = Field(
        default=None, strict=True, description="Bucket capacity; defaults to limit"
    )


class CheckResponse(BaseModel):
    """Admission decision."""
    allowed: bool
    remaining: int
    retry_after_ms: int


def _hash(value: str) -> str:
    # 32 hex chars (128 bits) keeps collisions out of reach
    return hashlib.sha256(value.encode()).hexdigest()[:32]


def extract_client_id(request: Request) -> str:
    """Derive the rate limit identity for the request.

    Uses the X-API-Key header if present, otherwise the client address
    (first X-Forwarded-For hop, then the socket peer). Both are hashed so
    raw keys and addresses never reach the store.
    """
    api_key = request.headers.get(API_KEY_HEADER, "").strip()
    if api_key:
        if len(api_key) > MAX_API_KEY_LENGTH:
            raise InvalidRateConfigError(
                "identity", f"API key too long (max {MAX_API_KEY_LENGTH} characters)"
            )
        return f"apikey:{_hash(api_key)}"

    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and forwarded.split(",")[0].strip():
        client_ip = forwarded.split(",")[0].strip()
    else:
        client_ip = request.client.host if request.client else "unknown"
    return f"ip:{_hash(client_ip)}"


def get_limiter(request: Request) -> TokenBucketLimiter:
    return request.app.state.limiter


@router.post(
    "/check",
    response_model=CheckResponse,
    responses={429: {"model": CheckResponse, "description": "Rate limited"}},
)
async def check_rate_limit(body: CheckRequest, request: Request) -> JSONResponse:
    """Consume one token for the calling client, or report how long to wait."""
    client_id = extract_client_id(request)
    limiter = get_limiter(request)

    logger.info(
        "Rate limit check",
        extra=get_log_context(client_id=client_id, limit=body.limit, burst=body.burst),
    )

    result = await limiter.check(client_id, body.limit, body.burst)

    headers = {
        "X-RateLimit-Limit": f"{result.burst:g}",
        "X-RateLimit-Remaining": str(result.remaining),
    }
    if not result.allowed:
        headers["Retry-After"] = str(result.retry_after_seconds)

    return JSONResponse(
        status_code=200 if result.allowed else 429,
        content=CheckResponse(**result.to_dict()).model_dump(),
        headers=headers,
    )
