"""FastAPI application entry point."""

import logging
from collections.abc import AsyncGenerator
from contextlib import AsyncExitStack, asynccontextmanager
from datetime import UTC, datetime

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from hostelhub.api.v1.router import api_router
from hostelhub.config import settings
from hostelhub.core.background_tasks import HoldSweeper
from hostelhub.core.exceptions import AppException
from hostelhub.core.middleware import (
    RateLimitMiddleware,
    RequestLoggingMiddleware,
    SecurityHeadersMiddleware,
)
from hostelhub.database import close_db, init_db
from hostelhub.services.change_feed import RedisFeedBridge, change_feed
from hostelhub.services.hold_service import hold_service
from hostelhub.services.notification_service import notification_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


async def _start_feed_bridge(stack: AsyncExitStack) -> None:
    """Fan change-feed events out across API processes through Redis."""
    bridge = RedisFeedBridge(change_feed)
    change_feed.attach_bridge(bridge)
    await bridge.start()

    async def _detach() -> None:
        change_feed.attach_bridge(None)
        await bridge.stop()

    stack.push_async_callback(_detach)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Start the feed bridge and hold sweeper; tear down in reverse order."""
    async with AsyncExitStack() as stack:
        stack.push_async_callback(close_db)
        stack.push_async_callback(notification_service.close)

        if settings.debug:
            await init_db()

        if settings.feed_backend == "redis":
            await _start_feed_bridge(stack)

        stack.callback(hold_service.disarm_all)
        sweeper = HoldSweeper(hold_service)
        await sweeper.start()
        stack.push_async_callback(sweeper.stop)

        logger.info(f"{settings.app_name} {settings.app_version} started ({settings.environment})")
        yield


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="HostelHub - Student Hostel Reservation Engine",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=exc.headers,
        )

    # Added innermost first: gzip, CORS, logging, rate limit, security headers
    app.add_middleware(GZipMiddleware, minimum_size=1000)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    if settings.environment != "development":
        app.add_middleware(RateLimitMiddleware, requests_per_minute=settings.rate_limit_per_minute)
    app.add_middleware(SecurityHeadersMiddleware)

    app.include_router(api_router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check() -> dict:
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
            "armed_hold_timers": hold_service.armed_count,
            "timestamp": datetime.now(UTC).isoformat(),
        }

    return app


app = create_application()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "hostelhub.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
