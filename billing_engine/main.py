"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_engine.errors import (
    CurrencyMismatchError,
    DomainError,
    NoEligibleSubscriptionError,
    OfferAlreadyUsedError,
    OfferNotAvailableError,
    PaymentMethodNotFoundError,
    SubscriptionAlreadyExistsError,
)
from billing_engine.logging_config import configure_logging, get_logger
from billing_engine.middleware import ContextMiddleware, RequestLoggingMiddleware
from billing_engine.repositories.subscription_store import (
    PersistenceError,
    SubscriptionNotFoundError,
    SubscriptionStore,
    get_subscription_store,
)
from billing_engine.services.notification_dispatcher import NotificationDispatcher, get_notification_dispatcher
from billing_engine.services.payment_gateway import GatewayError

logger = get_logger(__name__)

VERSION = "0.1.0"

# Most specific class first
DOMAIN_ERROR_STATUS = (
    (NoEligibleSubscriptionError, 404),
    (PaymentMethodNotFoundError, 404),
    (SubscriptionAlreadyExistsError, 409),
    (OfferAlreadyUsedError, 409),
    (CurrencyMismatchError, 422),
    (OfferNotAvailableError, 422),
)


def status_for_domain_error(exc: DomainError) -> int:
    for error_class, status_code in DOMAIN_ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Handles startup and shutdown events.
    """
    logger.info("billing_engine_starting", version=VERSION)

    try:
        dispatcher = get_notification_dispatcher()
        if dispatcher.is_enabled():
            logger.info("notifications_enabled", message="Notification dispatcher initialized and ready")
        else:
            logger.info("notifications_disabled", message="Notification dispatcher is disabled or failed to initialize")

        logger.info("billing_engine_started", status="ready")
        yield
    finally:
        logger.info("billing_engine_shutting_down")
        get_notification_dispatcher().shutdown()
        logger.info("billing_engine_stopped")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(DomainError)
    async def domain_error_handler(request: Request, exc: DomainError) -> JSONResponse:
        """Expected precondition failures: 4xx, logged at info."""
        status_code = status_for_domain_error(exc)
        logger.info(
            "domain_error",
            error=exc.code,
            message=exc.message,
            status_code=status_code,
            path=request.url.path,
        )
        content = {"error": exc.code, "message": exc.message}
        if isinstance(exc, CurrencyMismatchError):
            content["details"] = {
                "requested_currency": exc.requested_currency,
                "conflicting_currency": exc.conflicting_currency,
                "conflicting_resource": exc.conflicting_resource,
            }
        return JSONResponse(status_code=status_code, content=content)

    @app.exception_handler(SubscriptionNotFoundError)
    async def not_found_handler(request: Request, exc: SubscriptionNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"error": "subscription_not_found", "message": str(exc)})

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        logger.error(
            "gateway_error",
            operation=exc.operation,
            code=exc.code,
            http_status=exc.http_status,
            retryable=exc.retryable,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=502,
            content={
                "error": "gateway_error",
                "message": exc.user_message or "The payment provider could not process the request",
                "details": {"code": exc.code, "retryable": exc.retryable},
            },
        )

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.critical("persistence_error", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "persistence_error", "message": "Billing state could not be saved"},
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )


def create_app(admin_api_enabled: Optional[bool] = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        admin_api_enabled: Mount the admin router; defaults to the configured setting

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Subscription Billing Engine",
        description="Subscription lifecycle, special offers and webhook reconciliation on top of Stripe",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    register_exception_handlers(app)

    from billing_engine.api.subscriptions import router as subscriptions_router
    from billing_engine.api.webhooks import router as webhooks_router
    from billing_engine.config import get_config

    app.include_router(subscriptions_router)
    app.include_router(webhooks_router)

    if admin_api_enabled is None:
        admin_api_enabled = get_config().settings.admin_api_enabled
    if admin_api_enabled:
        from billing_engine.api.admin import router as admin_router

        app.include_router(admin_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        return {
            "service": "subscription-billing-engine",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    async def health(
        store: SubscriptionStore = Depends(get_subscription_store),
        dispatcher: NotificationDispatcher = Depends(get_notification_dispatcher),
    ) -> dict:
        """Detailed health check with store statistics."""
        return {
            "status": "healthy",
            "notifications": "connected" if dispatcher.is_enabled() else "disabled",
            "store": store.get_statistics(),
        }

    logger.info("app_created", endpoints=len(app.routes))
    return app


app = create_app()
