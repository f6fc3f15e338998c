from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ratekeeper.app.api.check import router as check_router
from ratekeeper.app.core.config import Settings, get_settings
from ratekeeper.app.core.logging import get_logger, setup_logging
from ratekeeper.app.exceptions import InvalidRateConfigError, StoreUnavailableError
from ratekeeper.app.middleware.request_id import RequestIdMiddleware, get_request_id
from ratekeeper.app.services.token_bucket import TokenBucketLimiter, build_limiter


def create_app(
    settings: Optional[Settings] = None,
    limiter: Optional[TokenBucketLimiter] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Immutable settings; loaded from the environment if omitted
        limiter: Pre-built limiter; built from settings on startup if omitted

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()
    setup_logging(settings)
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Build the limiter on startup and release the store on shutdown."""
        owned = limiter is None
        app.state.limiter = build_limiter(settings) if owned else limiter

        if not await app.state.limiter.ping():
            logger.error("Bucket store is unreachable!")
            if owned:
                await app.state.limiter.close()
            raise RuntimeError("Cannot connect to bucket store")

        logger.info(
            f"Starting server at http://{settings.host}:{settings.port}",
            extra={"store_backend": app.state.limiter.store.name},
        )

        yield

        if owned:
            await app.state.limiter.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="RateKeeper",
        description="Distributed token bucket rate limiting backed by Redis",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(RequestIdMiddleware)
    app.include_router(check_router)

    @app.get("/health")
    async def health(request: Request) -> JSONResponse:
        """Store liveness check. Does not touch bucket state."""
        limiter: TokenBucketLimiter = request.app.state.limiter
        store_ok = await limiter.ping()
        component = {"status": "ok" if store_ok else "error", "backend": limiter.store.name}
        return JSONResponse(
            status_code=200 if store_ok else 503,
            content={
                "status": "ok" if store_ok else "unhealthy",
                "components": {"store": component},
            },
        )

    @app.exception_handler(InvalidRateConfigError)
    async def invalid_config_handler(request: Request, exc: InvalidRateConfigError) -> JSONResponse:
        """Handle InvalidRateConfigError and return HTTP 400 response."""
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.error_code, "message": exc.message, "field": exc.field},
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        """Handle StoreUnavailableError and return HTTP 503 response.

        Admission state is unknown, so the caller gets neither an allow nor
        a deny and chooses its own fallback.
        """
        logger.error(f"Bucket store error: {exc.message}", extra={"reason": exc.reason})
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": exc.error_code,
                "message": "Rate limit state unavailable",
                "request_id": get_request_id(request),
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Never returns a traceback to the client; full details go to the log.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={"exception_type": type(exc).__name__},
        )

        content = {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": request_id,
        }
        if settings.debug:
            content["message"] = str(exc)
            content["exception_type"] = type(exc).__name__
        return JSONResponse(status_code=500, content=content)

    return app


# Create the application instance
app = create_app()
