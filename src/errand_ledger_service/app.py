"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from errand_ledger_service.config import get_settings
from errand_ledger_service.core.exceptions import register_exception_handlers
from errand_ledger_service.core.lifespan import lifespan
from errand_ledger_service.core.middleware import RequestValidationMiddleware
from errand_ledger_service.routers import health, payments, settings, tasks, users, wallets


def create_app() -> FastAPI:
    """
    Create and configure FastAPI application.

    Returns:
        Configured FastAPI instance with all routers registered.
    """
    config = get_settings()

    app = FastAPI(
        title=f"{config.service.name} Service",
        version=config.service.version,
        lifespan=lifespan,
    )

    register_exception_handlers(app)

    app.include_router(health.router, tags=["Operations"])
    app.include_router(users.router, tags=["Users"])
    app.include_router(wallets.router, tags=["Wallets"])
    app.include_router(payments.router, tags=["Payments"])
    app.include_router(settings.router, tags=["Settings"])
    app.include_router(tasks.router, tags=["Tasks"])

    app.add_middleware(
        RequestValidationMiddleware,
        max_body_size=config.request.max_body_size,
    )

    return app
