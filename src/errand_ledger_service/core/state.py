"""Application state management."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from errand_ledger_service.config import PlatformSettings
    from errand_ledger_service.services.escrow_manager import EscrowManager
    from errand_ledger_service.services.ledger_store import LedgerStore
    from errand_ledger_service.services.notifications import NotificationOutbox
    from errand_ledger_service.services.payment_intake import PaymentIntake
    from errand_ledger_service.services.profiles import ProfileRegistry
    from errand_ledger_service.services.task_manager import TaskManager
    from errand_ledger_service.services.wallet_ledger import WalletLedger


@dataclass
class AppState:
    """Runtime application state."""

    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    store: LedgerStore | None = None
    wallets: WalletLedger | None = None
    escrows: EscrowManager | None = None
    profiles: ProfileRegistry | None = None
    notifications: NotificationOutbox | None = None
    task_manager: TaskManager | None = None
    payment_intake: PaymentIntake | None = None
    platform: PlatformSettings | None = None

    @property
    def uptime_seconds(self) -> float:
        """Calculate uptime in seconds."""
        return (datetime.now(UTC) - self.start_time).total_seconds()

    @property
    def started_at(self) -> str:
        """ISO format start time."""
        return self.start_time.isoformat(timespec="seconds").replace("+00:00", "Z")


# Global application state container
_state_container: dict[str, AppState | None] = {"app_state": None}


def get_app_state() -> AppState:
    """Get the current application state."""
    app_state = _state_container["app_state"]
    if app_state is None:
        msg = "Application state not initialized"
        raise RuntimeError(msg)
    return app_state


def init_app_state() -> AppState:
    """Initialize application state. Called during startup."""
    app_state = AppState()
    _state_container["app_state"] = app_state
    return app_state


def reset_app_state() -> None:
    """Reset application state. Used in testing."""
    _state_container["app_state"] = None
