"""FastAPI application factories for the payment and subscription services."""

from typing import Literal

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from billing.api.routes.health import router as health_router
from billing.api.routes.payments import router as payments_router
from billing.api.routes.webhooks import router as webhooks_router
from billing.core.config import settings
from billing.core.db import get_engine
from billing.core.deps import get_payment_processor
from billing.core.errors import register_exception_handlers
from billing.core.middleware import RequestContextLogMiddleware

ServiceName = Literal["payments", "subscriptions"]


def _cors_origins() -> list[str]:
    if settings.ENV == "prod":
        if not settings.CORS_ALLOWED_ORIGINS:
            raise RuntimeError("CORS_ALLOWED_ORIGINS must be configured for prod")
        return settings.CORS_ALLOWED_ORIGINS
    return settings.CORS_ALLOWED_ORIGINS or ["http://localhost:3000", "http://localhost:3001"]


def create_app(service: ServiceName) -> FastAPI:
    """Build the app for one service; both share the core middleware and errors."""

    title = "Payment Service" if service == "payments" else "Subscription Service"
    app = FastAPI(title=f"{settings.APP_NAME} - {title}", debug=settings.DEBUG)

    app.add_middleware(RequestContextLogMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Idempotency-Key",
            "X-API-Key",
            "X-Request-ID",
            "X-Webhook-Signature",
        ],
    )
    register_exception_handlers(app)

    app.include_router(health_router)
    if service == "payments":
        app.include_router(payments_router)

        @app.on_event("shutdown")
        async def drain_payments() -> None:
            """Let in-flight processing and webhook deliveries finish."""
            if get_payment_processor.cache_info().currsize:
                await get_payment_processor().drain()

    else:
        app.include_router(webhooks_router)

    @app.on_event("shutdown")
    async def dispose_engine() -> None:
        if get_engine.cache_info().currsize:
            await get_engine().dispose()

    return app
