"""
Main FastAPI application.

WHY: This is the entry point for the application. It configures middleware,
routes, exception handlers and the process-wide collaborators (entitlement
cache, payment gateway, identity client) shared by every request.
"""

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from billing_sync.api import (
    admin,
    bookings,
    entitlements,
    plans,
    provider_accounts,
    subscriptions,
    users,
    webhooks,
)
from billing_sync.core.config import (
    build_entitlement_config,
    build_oauth_config,
    build_provider_config,
    settings,
)
from billing_sync.core.exception_handlers import (
    app_exception_handler,
    generic_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from billing_sync.core.exceptions import AppException
from billing_sync.middleware import RequestContextMiddleware
from billing_sync.services.entitlement_cache import EntitlementCache
from billing_sync.services.identity_client import IdentityProviderClient
from billing_sync.services.payment_gateway import PaymentGateway
from billing_sync.services.scheduler import get_scheduler_status, shutdown_scheduler, start_scheduler


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    WHY: Factory pattern allows easier testing with different configurations.
    Shared collaborators are created here rather than at import time so each
    app instance (and each test) owns its own cache.

    Returns:
        Configured FastAPI application instance
    """
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="Subscription entitlement and payment provider synchronization API",
        version=settings.VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
    )

    entitlement_config = build_entitlement_config()
    app.state.entitlement_config = entitlement_config
    app.state.entitlement_cache = EntitlementCache(ttl_seconds=entitlement_config.cache_ttl_seconds)
    app.state.payment_gateway = PaymentGateway(build_provider_config(), build_oauth_config())
    app.state.identity_client = IdentityProviderClient(
        settings.IDENTITY_ADMIN_URL,
        settings.IDENTITY_ADMIN_TOKEN,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )

    # Register exception handlers
    # WHY: Exception handlers ensure consistent error responses across the API
    # and prevent sensitive data leaks in error messages (OWASP A04)
    app.add_exception_handler(AppException, app_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.add_middleware(RequestContextMiddleware)

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", tags=["health"])
    async def health_check() -> dict:
        """
        Health check endpoint.

        WHY: Allows load balancers and monitoring to verify service health
        without touching the database or the provider.
        """
        return {
            "status": "healthy",
            "version": settings.VERSION,
            "entitlement_cache": {
                "running": app.state.entitlement_cache.is_running,
                "entries": len(app.state.entitlement_cache),
            },
            "scheduler": get_scheduler_status(),
        }

    @app.on_event("startup")
    async def startup_event():
        """
        Application startup event handler.

        WHY: The cache lifecycle follows the application; the reconciliation
        job shares the same cache so its changes invalidate request-path reads.
        """
        await app.state.entitlement_cache.start()
        await start_scheduler(app.state.entitlement_cache, app.state.payment_gateway)

    @app.on_event("shutdown")
    async def shutdown_event():
        await shutdown_scheduler()
        await app.state.entitlement_cache.stop()

    # Register API routers
    app.include_router(entitlements.router, prefix="/api")
    app.include_router(subscriptions.router, prefix="/api")
    app.include_router(users.router, prefix="/api")
    app.include_router(provider_accounts.router, prefix="/api")
    app.include_router(plans.router, prefix="/api")
    app.include_router(bookings.router, prefix="/api")
    app.include_router(admin.router, prefix="/api")
    app.include_router(webhooks.webhooks_router, prefix="/api")

    return app


# Create app instance
# WHY: Creating the app instance here allows it to be imported by uvicorn.
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "billing_sync.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="info" if settings.DEBUG else "warning",
    )
