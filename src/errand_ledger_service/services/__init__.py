"""Service layer components."""

from errand_ledger_service.services.escrow_manager import EscrowManager
from errand_ledger_service.services.ledger_store import LedgerStore
from errand_ledger_service.services.notifications import NotificationOutbox
from errand_ledger_service.services.payment_gateway import HostedCheckoutGateway
from errand_ledger_service.services.payment_intake import PaymentIntake
from errand_ledger_service.services.profiles import ProfileRegistry
from errand_ledger_service.services.task_manager import TaskManager
from errand_ledger_service.services.wallet_ledger import WalletLedger

__all__ = [
    "EscrowManager",
    "HostedCheckoutGateway",
    "LedgerStore",
    "NotificationOutbox",
    "PaymentIntake",
    "ProfileRegistry",
    "TaskManager",
    "WalletLedger",
]
