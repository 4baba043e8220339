"""
FastAPI application entry point.
Configures middleware, routers, exception handlers and lifecycle events.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from mylab.core.config import get_settings
from mylab.core.logging import configure_logging, get_logger
from mylab.core.middleware import SecurityHeadersMiddleware
from mylab.core.rate_limit import close_redis, get_redis
from mylab.db.session import close_db, get_db_session, init_db
from mylab.modules.access.errors import (
    GrantNotFoundError,
    InsufficientRoleError,
    InvalidGrantError,
    NotOwnerError,
    TokenInvalidError,
)
from mylab.modules.access.janitor import TokenCleanupScheduler
from mylab.modules.access.router import router as access_router

# Configure logging before anything else
configure_logging()
logger = get_logger(__name__)

ACCESS_DENIED = {"detail": "Access denied"}


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Opens the database pool, starts the token janitor schedule, and tears
    both down (with the rate limit Redis connection) on shutdown.
    """
    settings = get_settings()
    logger.info(
        "starting_application",
        environment=settings.environment,
        version=settings.version,
    )

    await init_db()
    logger.info("database_initialized")

    scheduler: TokenCleanupScheduler | None = None
    if settings.token_cleanup_enabled:
        scheduler = TokenCleanupScheduler(settings.token_cleanup_interval_seconds)
        scheduler.start()

    yield

    if scheduler is not None:
        await scheduler.stop()
    await close_redis()
    await close_db()
    logger.info("application_shutdown_complete")


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map access-control errors onto HTTP responses.

    Every denial (not owner, insufficient role, bad token) becomes the same
    403 body; the distinguishing reason is logged only.
    """

    async def _denied(request: Request, exc: Exception) -> JSONResponse:
        logger.info(
            "access_denied_response",
            path=request.url.path,
            error_type=type(exc).__name__,
            reason=getattr(exc, "reason", None) or str(exc),
        )
        return JSONResponse(status_code=status.HTTP_403_FORBIDDEN, content=ACCESS_DENIED)

    async def _grant_not_found(_request: Request, _exc: Exception) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={"detail": "Grant not found"},
        )

    async def _bad_request(_request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    app.add_exception_handler(NotOwnerError, _denied)
    app.add_exception_handler(InsufficientRoleError, _denied)
    app.add_exception_handler(TokenInvalidError, _denied)
    app.add_exception_handler(GrantNotFoundError, _grant_not_found)
    app.add_exception_handler(InvalidGrantError, _bad_request)


def create_application() -> FastAPI:
    """
    Application factory function.

    Creates and configures the FastAPI application with all middleware,
    routers, and settings applied.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.project_name,
        version=settings.version,
        openapi_url=f"{settings.api_v1_prefix}/openapi.json",
        docs_url=f"{settings.api_v1_prefix}/docs",
        redoc_url=f"{settings.api_v1_prefix}/redoc",
        lifespan=lifespan,
    )

    # ==========================================================================
    # Middleware Configuration
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "Accept", "Origin", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )

    # Security headers on every response
    app.add_middleware(SecurityHeadersMiddleware)

    # Gzip compression for responses
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    register_exception_handlers(app)

    # ==========================================================================
    # Router Registration
    # ==========================================================================

    # Health check endpoint (no auth required)
    @app.get("/health", tags=["Health"])
    async def health_check() -> dict[str, object]:
        checks: dict[str, str] = {}

        # Probe PostgreSQL
        try:
            async for session in get_db_session():
                await session.execute(text("SELECT 1"))
            checks["db"] = "ok"
        except Exception:
            checks["db"] = "unavailable"

        # Redis only matters when it backs the rate limiter
        if settings.rate_limit_backend == "redis":
            try:
                r = await get_redis()
                if r is not None:
                    await r.ping()  # type: ignore[misc,unused-ignore]
                    checks["redis"] = "ok"
                else:
                    checks["redis"] = "unavailable"
            except Exception:
                checks["redis"] = "unavailable"

        overall = "healthy" if all(v == "ok" for v in checks.values()) else "degraded"
        return {"status": overall, "version": settings.version, "checks": checks}

    app.include_router(
        access_router,
        prefix=f"{settings.api_v1_prefix}/access",
        tags=["Access Control"],
    )

    # Prometheus metrics endpoint
    from prometheus_fastapi_instrumentator import Instrumentator

    instrumentator = Instrumentator().instrument(app)

    if settings.environment == "development" and not settings.metrics_auth_token:
        # Development: expose metrics without auth for convenience
        instrumentator.expose(app, endpoint="/metrics")
    else:
        import hmac as _hmac

        from fastapi import Header, Response

        @app.get("/metrics", include_in_schema=False)
        async def metrics_endpoint(
            authorization: str | None = Header(default=None),
        ) -> Response:
            if not settings.metrics_auth_token:
                # No token configured outside development: hide the endpoint
                return Response(status_code=404)

            if not authorization or not authorization.startswith("Bearer "):
                return Response(status_code=401)

            provided = authorization.removeprefix("Bearer ")
            if not _hmac.compare_digest(provided, settings.metrics_auth_token):
                return Response(status_code=401)

            from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

            return Response(
                content=generate_latest(),
                media_type=CONTENT_TYPE_LATEST,
            )

    return app


# Application instance
app = create_application()
