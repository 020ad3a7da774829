from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from matchguard.app.api.metrics import router as metrics_router
from matchguard.app.api.subscriptions import router as subscriptions_router
from matchguard.app.api.webhooks import router as webhooks_router
from matchguard.app.core.config import settings
from matchguard.app.core.logging import get_logger, setup_logging
from matchguard.app.core.store import PeriodicSweeper
from matchguard.app.errors import register_exception_handlers
from matchguard.app.middleware.idempotency import get_idempotency_store
from matchguard.app.middleware.rate_limit import get_rate_limit_store
from matchguard.app.middleware.rate_limit.middleware import RateLimitMiddleware
from matchguard.app.middleware.request_id import RequestIdMiddleware
from matchguard.app.middleware.request_size import RequestSizeLimitMiddleware


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Start the store sweepers on startup; stop them and close stores on shutdown."""
        sweepers = [
            PeriodicSweeper(
                get_rate_limit_store(),
                settings.rate_limit_sweep_interval_seconds,
                name="rate_limit",
            ),
            PeriodicSweeper(
                get_idempotency_store(),
                settings.idempotency_sweep_interval_seconds,
                name="idempotency",
            ),
        ]
        for sweeper in sweepers:
            await sweeper.start()

        logger.info(
            "Application startup complete",
            extra={
                "environment": settings.environment,
                "store_backend": settings.store_backend,
                "rate_limit_enabled": settings.rate_limit_enabled,
                "idempotency_enabled": settings.idempotency_enabled,
            },
        )

        yield

        for sweeper in sweepers:
            await sweeper.stop()
        for store in (get_rate_limit_store(), get_idempotency_store()):
            if hasattr(store, "close"):
                await store.close()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="matchguard",
        description="Rate limiting, idempotency and validation for the subscription and webhook APIs",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Middleware: last added = first executed
    # Subscription and webhook routes carry their own endpoint-class limiter
    app.add_middleware(
        RateLimitMiddleware,
        path_prefix="/api",
        exclude_prefixes=("/api/subscriptions", "/api/webhooks"),
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        RequestSizeLimitMiddleware, max_body_size=settings.max_request_body_bytes
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
            "X-Idempotent-Replay",
        ],
        max_age=600,
    )

    register_exception_handlers(app)

    app.include_router(subscriptions_router, prefix="/api/subscriptions")
    app.include_router(webhooks_router, prefix="/api/webhooks")
    app.include_router(metrics_router, prefix="/api/metrics")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with store connectivity."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        for name, store in (
            ("rate_limit_store", get_rate_limit_store()),
            ("idempotency_store", get_idempotency_store()),
        ):
            try:
                test_key = "_health_check_test"
                await store.set(test_key, {"ping": True}, ttl=5)
                value = await store.get(test_key)
                await store.delete(test_key)
                if value == {"ping": True}:
                    health_status["components"][name] = {
                        "status": "ok",
                        "type": settings.store_backend,
                    }
                else:
                    health_status["status"] = "degraded"
                    health_status["components"][name] = {
                        "status": "error",
                        "error": "Unexpected value",
                    }
            except Exception as e:
                health_status["status"] = "degraded"
                health_status["components"][name] = {
                    "status": "error",
                    "error": str(e)[:100],
                }

        return health_status

    return app


# Create the application instance
app = create_app()
