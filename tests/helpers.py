"""Shared builders for unit and router tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from errand_ledger_service.config import PaymentGatewayConfig, PlatformSettings
from errand_ledger_service.services.escrow_manager import EscrowManager
from errand_ledger_service.services.ledger_store import LedgerStore
from errand_ledger_service.services.notifications import NotificationOutbox
from errand_ledger_service.services.profiles import ProfileRegistry
from errand_ledger_service.services.task_manager import TaskManager
from errand_ledger_service.services.wallet_ledger import WalletLedger

if TYPE_CHECKING:
    from httpx import AsyncClient

OPERATOR_ID = "u-operator"
FAR_FUTURE_DEADLINE = "2099-12-31T23:59:59Z"

PLATFORM_DEFAULTS: dict[str, Any] = {
    "commission_percentage": 10,
    "minimum_task_amount": 100,
    "maximum_task_amount": 50000,
    "payment_methods": ["card", "bank_transfer", "wallet"],
    "supported_categories": ["delivery", "pickup", "errand", "other"],
    "maintenance_mode": False,
    "runner_stake_required": True,
    "operator_id": OPERATOR_ID,
    "revenue_account_id": None,
}

GATEWAY_DEFAULTS: dict[str, Any] = {
    "merchant_code": "MX-TEST",
    "environment": "sandbox",
    "sandbox_checkout_url": "https://sandbox.example.test/checkout",
    "production_checkout_url": "https://pay.example.test/checkout",
    "currency": "NGN",
    "country": "NG",
    "locale": "en",
    "return_url": "http://test/payments/return",
    "pending_timeout_seconds": 1800,
}


def make_platform(**overrides: Any) -> PlatformSettings:
    return PlatformSettings(**{**PLATFORM_DEFAULTS, **overrides})


def make_gateway_config(**overrides: Any) -> PaymentGatewayConfig:
    return PaymentGatewayConfig(**{**GATEWAY_DEFAULTS, **overrides})


@dataclass
class Marketplace:
    """All services wired over one store, as the lifespan does."""

    store: LedgerStore
    wallets: WalletLedger
    escrows: EscrowManager
    profiles: ProfileRegistry
    notifications: NotificationOutbox
    tasks: TaskManager
    platform: PlatformSettings

    def close(self) -> None:
        self.store.close()

    def wallet(self, user_id: str) -> dict[str, Any]:
        return self.wallets.require_wallet(user_id)

    def total_funds(self) -> int:
        """Sum of balance and escrow balance over every wallet."""
        return sum(
            w["balance"] + w["escrow_balance"] for w in self.store.query("wallets")
        )


def build_marketplace(db_path: str, **platform_overrides: Any) -> Marketplace:
    platform = make_platform(**platform_overrides)
    store = LedgerStore(db_path=db_path)
    wallets = WalletLedger(store)
    escrows = EscrowManager(store)
    profiles = ProfileRegistry(store, wallets)
    notifications = NotificationOutbox(store)
    tasks = TaskManager(
        store=store,
        wallets=wallets,
        escrows=escrows,
        profiles=profiles,
        notifications=notifications,
        platform=platform,
    )
    if platform.revenue_account_id:
        wallets.create_wallet(platform.revenue_account_id)
    return Marketplace(store, wallets, escrows, profiles, notifications, tasks, platform)


def onboard(
    market: Marketplace,
    user_id: str,
    balance: int = 0,
    *,
    is_runner: bool = True,
    is_requester: bool = True,
) -> None:
    """Register a user and fund their wallet with an internal deposit."""
    market.profiles.register_user(
        user_id,
        f"User {user_id}",
        is_runner=is_runner,
        is_requester=is_requester,
    )
    if balance:
        market.wallets.deposit(user_id, balance, "internal")


def task_payload(**overrides: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "title": "Pick up dry cleaning",
        "description": "Collect two shirts from the cleaner on Allen Avenue",
        "category": "pickup",
        "reward_amount": 2000,
        "pickup_location": {
            "address": "12 Allen Avenue, Ikeja",
            "coordinates": {"lat": 6.6018, "lng": 3.3515},
        },
        "delivery_location": {
            "address": "4 Admiralty Way, Lekki",
            "coordinates": {"lat": 6.4474, "lng": 3.4723},
            "instructions": "Leave with the gate man",
        },
        "deadline": FAR_FUTURE_DEADLINE,
        "expected_duration": 90,
    }
    payload.update(overrides)
    return payload


def caller(user_id: str) -> dict[str, str]:
    """Headers identifying the calling user."""
    return {"X-User-Id": user_id}


async def onboard_via_api(
    client: AsyncClient,
    user_id: str,
    balance: int = 0,
    *,
    is_runner: bool = True,
) -> None:
    response = await client.post(
        "/users",
        json={"full_name": f"User {user_id}", "is_runner": is_runner, "is_requester": True},
        headers=caller(user_id),
    )
    assert response.status_code == 201, response.text
    if balance:
        response = await client.post(
            f"/wallets/{user_id}/credits",
            json={"amount": balance},
            headers=caller(OPERATOR_ID),
        )
        assert response.status_code == 201, response.text
