"""Application lifecycle management."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from errand_ledger_service.config import get_settings
from errand_ledger_service.core.state import init_app_state
from errand_ledger_service.logging import get_logger, setup_logging
from errand_ledger_service.services.escrow_manager import EscrowManager
from errand_ledger_service.services.ledger_store import LedgerStore
from errand_ledger_service.services.notifications import NotificationOutbox
from errand_ledger_service.services.payment_gateway import HostedCheckoutGateway
from errand_ledger_service.services.payment_intake import PaymentIntake
from errand_ledger_service.services.profiles import ProfileRegistry
from errand_ledger_service.services.task_manager import TaskManager
from errand_ledger_service.services.wallet_ledger import WalletLedger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifecycle."""
    # === STARTUP ===
    settings = get_settings()

    setup_logging(settings.logging.level, settings.service.name, settings.logging.directory)
    logger = get_logger(__name__)

    state = init_app_state()
    state.platform = settings.platform

    store = LedgerStore(db_path=settings.database.path)
    state.store = store

    wallets = WalletLedger(store)
    escrows = EscrowManager(store)
    profiles = ProfileRegistry(store, wallets)
    notifications = NotificationOutbox(store)
    state.wallets = wallets
    state.escrows = escrows
    state.profiles = profiles
    state.notifications = notifications

    state.task_manager = TaskManager(
        store=store,
        wallets=wallets,
        escrows=escrows,
        profiles=profiles,
        notifications=notifications,
        platform=settings.platform,
    )
    state.payment_intake = PaymentIntake(
        wallets=wallets,
        gateway=HostedCheckoutGateway(settings.payment_gateway),
        config=settings.payment_gateway,
        notifications=notifications,
        allowed_methods=settings.platform.payment_methods,
    )

    revenue_account_id = settings.platform.revenue_account_id
    if revenue_account_id and wallets.get_wallet(revenue_account_id) is None:
        wallets.create_wallet(revenue_account_id)

    logger.info(
        "Service starting",
        extra={
            "service": settings.service.name,
            "version": settings.service.version,
            "port": settings.server.port,
            "db_path": settings.database.path,
            "commission_percentage": settings.platform.commission_percentage,
            "runner_stake_required": settings.platform.runner_stake_required,
            "gateway_environment": settings.payment_gateway.environment,
        },
    )

    yield  # Application runs here

    # === SHUTDOWN ===
    logger.info("Service shutting down", extra={"uptime_seconds": state.uptime_seconds})
    store.close()
