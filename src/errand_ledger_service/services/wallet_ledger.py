"""Wallet ledger: balances, escrow holds and the transaction log."""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from threading import Lock
from typing import TYPE_CHECKING, Any

from errand_ledger_service.exceptions import (
    InsufficientFundsError,
    InvalidAmountError,
    InvalidTransitionError,
    NotFoundError,
    ServiceError,
)
from errand_ledger_service.logging import get_logger
from errand_ledger_service.services.ledger_store import (
    DuplicateDocumentError,
    VersionConflictError,
)
from errand_ledger_service.services.locks import KeyedLocks

if TYPE_CHECKING:
    from errand_ledger_service.services.ledger_store import Filter, LedgerStore

WALLETS = "wallets"
TRANSACTIONS = "transactions"

INTERNAL_METHOD = "internal"
EXTERNAL_DEPOSIT_METHODS = frozenset({"card", "bank_transfer"})

TRANSACTION_TYPES = frozenset(
    {
        "deposit",
        "withdrawal",
        "task_payment",
        "task_earning",
        "commission",
        "refund",
        "escrow_hold",
        "escrow_release",
    }
)

_MAX_WRITE_ATTEMPTS = 5


@dataclass(frozen=True)
class BalanceChange:
    """Notification delivered to balance observers after a wallet mutation."""

    user_id: str
    reason: str
    wallet: dict[str, Any]
    transaction: dict[str, Any] | None


BalanceObserver = Callable[[BalanceChange], None]


def wallet_id_for(user_id: str) -> str:
    """Wallets are one per user and keyed by the user id."""
    return f"wal-{user_id}"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _require_positive(amount: object) -> int:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer")
    return amount


class WalletLedger:
    """
    Sole writer of wallet balances.

    Every mutation runs under a per-wallet lock and writes the wallet
    with a version check, retrying if another writer got there first.
    Each mutation appends a transaction record, and balance observers
    are notified once the wallet lock has been released.
    """

    def __init__(self, store: LedgerStore, locks: KeyedLocks | None = None) -> None:
        self._store = store
        self._locks = locks if locks is not None else KeyedLocks()
        self._observers: dict[str, list[BalanceObserver]] = {}
        self._observers_lock = Lock()
        self._logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------

    def create_wallet(self, user_id: str) -> dict[str, Any]:
        """
        Create the all-zero wallet for a newly onboarded user.

        Raises:
            ServiceError: WALLET_EXISTS if the user already has a wallet.
        """
        wallet_id = wallet_id_for(user_id)
        try:
            wallet = self._store.insert(
                WALLETS,
                wallet_id,
                {
                    "wallet_id": wallet_id,
                    "user_id": user_id,
                    "balance": 0,
                    "escrow_balance": 0,
                    "total_earned": 0,
                    "total_spent": 0,
                },
            )
        except DuplicateDocumentError as exc:
            raise ServiceError(
                "WALLET_EXISTS",
                "Wallet already exists for this user",
                409,
                {},
            ) from exc
        self._logger.info("Wallet created", extra={"user_id": user_id, "wallet_id": wallet_id})
        return wallet

    def get_wallet(self, user_id: str) -> dict[str, Any] | None:
        """Look up a user's wallet. Returns None if not found."""
        return self._store.get(WALLETS, wallet_id_for(user_id))

    def require_wallet(self, user_id: str) -> dict[str, Any]:
        """Look up a user's wallet, raising WALLET_NOT_FOUND if missing."""
        wallet = self.get_wallet(user_id)
        if wallet is None:
            raise NotFoundError("wallet", {"user_id": user_id})
        return wallet

    def count_wallets(self) -> int:
        return self._store.count(WALLETS)

    def total_escrow_balance(self) -> int:
        """Sum of escrow balances across all wallets."""
        return self._store.sum(WALLETS, "escrow_balance")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _apply(
        self,
        user_id: str,
        compute: Callable[[dict[str, Any]], dict[str, int]],
    ) -> dict[str, Any]:
        """
        Read the wallet, compute new field values and write them back.

        Must be called with the wallet lock held. ``compute`` raises to
        reject the change and leaves the wallet untouched.
        """
        wallet_id = wallet_id_for(user_id)
        for attempt in range(1, _MAX_WRITE_ATTEMPTS + 1):
            wallet = self._store.get(WALLETS, wallet_id)
            if wallet is None:
                raise NotFoundError("wallet", {"user_id": user_id})
            changes = compute(wallet)
            if any(changes.get(field, 0) < 0 for field in ("balance", "escrow_balance")):
                msg = f"Wallet {wallet_id} would go negative: {changes}"
                raise RuntimeError(msg)
            try:
                return self._store.put(
                    WALLETS,
                    wallet_id,
                    changes,
                    merge=True,
                    expected_version=wallet["version"],
                )
            except VersionConflictError:
                self._logger.warning(
                    "Wallet version conflict, retrying",
                    extra={"wallet_id": wallet_id, "attempt": attempt},
                )
        raise ServiceError(
            "WALLET_BUSY",
            "Wallet is being modified concurrently, try again",
            409,
            {"user_id": user_id},
        )

    def _apply_recorded(
        self,
        user_id: str,
        compute: Callable[[dict[str, Any]], dict[str, int]],
        tx_type: str,
        amount: int,
        status: str,
        description: str,
        **tx_fields: Any,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """
        Apply a wallet change together with its transaction record.

        Must be called with the wallet lock held. If the record cannot be
        written, the wallet fields are put back before the error propagates.
        """
        previous: dict[str, int] = {}

        def tracked(wallet: dict[str, Any]) -> dict[str, int]:
            changes = compute(wallet)
            previous.clear()
            previous.update({field: wallet[field] for field in changes})
            return changes

        wallet = self._apply(user_id, tracked)
        try:
            tx = self._append_transaction(
                user_id,
                tx_type,
                amount,
                status,
                description,
                balance_after=wallet["balance"],
                **tx_fields,
            )
        except Exception:
            self._logger.error(
                "Transaction record failed, reverting wallet change",
                extra={"user_id": user_id, "tx_type": tx_type, "amount": amount},
            )
            self._revert(wallet, previous)
            raise
        return wallet, tx

    def _revert(self, wallet: dict[str, Any], previous: dict[str, int]) -> None:
        try:
            self._store.put(
                WALLETS,
                wallet["wallet_id"],
                previous,
                merge=True,
                expected_version=wallet["version"],
            )
        except Exception:
            self._logger.exception(
                "Failed to revert wallet change",
                extra={"user_id": wallet["user_id"], "wallet_id": wallet["wallet_id"], "previous": previous},
            )

    def _append_transaction(
        self,
        user_id: str,
        tx_type: str,
        amount: int,
        status: str,
        description: str,
        **fields: Any,
    ) -> dict[str, Any]:
        if tx_type not in TRANSACTION_TYPES:
            msg = f"Unknown transaction type: {tx_type}"
            raise ValueError(msg)
        tx_id = f"tx-{uuid.uuid4()}"
        record: dict[str, Any] = {
            "tx_id": tx_id,
            "user_id": user_id,
            "type": tx_type,
            "amount": amount,
            "status": status,
            "description": description,
            "task_id": None,
            "payment_method": None,
            "payment_reference": None,
            "external_transaction_id": None,
            "balance_after": None,
            "completed_at": _now_iso() if status == "completed" else None,
        }
        record.update(fields)
        return self._store.insert(TRANSACTIONS, tx_id, record)

    def _require_transaction(self, tx_id: str, tx_type: str) -> dict[str, Any]:
        tx = self._store.get(TRANSACTIONS, tx_id)
        if tx is None:
            raise NotFoundError("transaction", {"tx_id": tx_id})
        if tx["type"] != tx_type:
            raise ServiceError(
                "INVALID_TRANSACTION_TYPE",
                f"Transaction is a {tx['type']}, not a {tx_type}",
                400,
                {"tx_id": tx_id},
            )
        return tx

    def _set_transaction_status(
        self,
        tx: dict[str, Any],
        status: str,
        **fields: Any,
    ) -> dict[str, Any]:
        changes: dict[str, Any] = {"status": status, **fields}
        if status == "completed":
            changes["completed_at"] = _now_iso()
        try:
            return self._store.put(
                TRANSACTIONS,
                tx["tx_id"],
                changes,
                merge=True,
                expected_version=tx["version"],
            )
        except VersionConflictError as exc:
            raise InvalidTransitionError(
                "Transaction was updated concurrently",
                {"tx_id": tx["tx_id"]},
            ) from exc

    def _move(
        self,
        user_id: str,
        reason: str,
        compute: Callable[[dict[str, Any]], dict[str, int]],
        tx_type: str,
        amount: int,
        description: str,
        **tx_fields: Any,
    ) -> dict[str, Any]:
        """Apply an instantaneous wallet change and record a completed transaction."""
        if tx_type not in TRANSACTION_TYPES:
            msg = f"Unknown transaction type: {tx_type}"
            raise ValueError(msg)
        with self._locks.hold(wallet_id_for(user_id)):
            wallet, tx = self._apply_recorded(
                user_id,
                compute,
                tx_type,
                amount,
                "completed",
                description,
                **tx_fields,
            )
        self._logger.info(
            "Wallet updated",
            extra={
                "user_id": user_id,
                "reason": reason,
                "tx_id": tx["tx_id"],
                "tx_type": tx_type,
                "amount": amount,
                "balance": wallet["balance"],
                "escrow_balance": wallet["escrow_balance"],
            },
        )
        self._notify(BalanceChange(user_id=user_id, reason=reason, wallet=wallet, transaction=tx))
        return tx

    # ------------------------------------------------------------------
    # Deposits and withdrawals
    # ------------------------------------------------------------------

    def deposit(
        self,
        user_id: str,
        amount: int,
        method: str,
        *,
        description: str | None = None,
        payment_reference: str | None = None,
    ) -> dict[str, Any]:
        """
        Start or perform a deposit.

        Internal deposits credit the balance immediately and return a
        completed transaction. External methods return a pending
        transaction that is settled by ``complete_deposit`` or
        ``fail_deposit`` once the payment provider reports back.

        Raises:
            InvalidAmountError: amount is not a positive integer.
            ServiceError: INVALID_PAYMENT_METHOD, WALLET_NOT_FOUND.
        """
        amount = _require_positive(amount)
        if method != INTERNAL_METHOD and method not in EXTERNAL_DEPOSIT_METHODS:
            raise ServiceError(
                "INVALID_PAYMENT_METHOD",
                f"Unsupported deposit method: {method}",
                400,
                {"allowed": sorted(EXTERNAL_DEPOSIT_METHODS | {INTERNAL_METHOD})},
            )
        text = description or f"Wallet deposit via {method.replace('_', ' ')}"

        if method == INTERNAL_METHOD:
            return self._move(
                user_id,
                "deposit",
                lambda w: {"balance": w["balance"] + amount},
                "deposit",
                amount,
                text,
                payment_method=method,
                payment_reference=payment_reference,
            )

        self.require_wallet(user_id)
        tx = self._append_transaction(
            user_id,
            "deposit",
            amount,
            "pending",
            text,
            payment_method=method,
            payment_reference=payment_reference,
        )
        self._logger.info(
            "Deposit pending",
            extra={"user_id": user_id, "tx_id": tx["tx_id"], "amount": amount, "method": method},
        )
        return tx

    def complete_deposit(
        self,
        tx_id: str,
        *,
        external_transaction_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Credit a pending deposit to its wallet.

        Completing an already completed deposit returns it unchanged.

        Raises:
            InvalidTransitionError: the deposit already failed or was cancelled.
        """
        tx = self._require_transaction(tx_id, "deposit")
        user_id = tx["user_id"]
        with self._locks.hold(wallet_id_for(user_id)):
            tx = self._require_transaction(tx_id, "deposit")
            if tx["status"] == "completed":
                return tx
            if tx["status"] != "pending":
                raise InvalidTransitionError(
                    f"Cannot complete deposit in '{tx['status']}' status",
                    {"tx_id": tx_id},
                )
            amount = int(tx["amount"])
            claimed = self._set_transaction_status(
                tx,
                "completed",
                external_transaction_id=external_transaction_id,
            )
            try:
                wallet = self._apply(user_id, lambda w: {"balance": w["balance"] + amount})
            except Exception:
                self._store.put(
                    TRANSACTIONS,
                    tx_id,
                    {"status": "pending", "completed_at": None, "external_transaction_id": None},
                    merge=True,
                )
                raise
            completed = self._store.put(
                TRANSACTIONS,
                tx_id,
                {"balance_after": wallet["balance"]},
                merge=True,
                expected_version=claimed["version"],
            )
        self._logger.info(
            "Deposit completed",
            extra={"user_id": user_id, "tx_id": tx_id, "amount": amount},
        )
        self._notify(BalanceChange(user_id=user_id, reason="deposit", wallet=wallet, transaction=completed))
        return completed

    def fail_deposit(self, tx_id: str, *, status: str = "failed") -> dict[str, Any]:
        """
        Mark a pending deposit as failed or cancelled. No balance effect.

        Raises:
            InvalidTransitionError: the deposit is already in another terminal status.
        """
        if status not in ("failed", "cancelled"):
            raise ServiceError(
                "INVALID_STATUS",
                "Deposit can only be marked 'failed' or 'cancelled'",
                400,
                {},
            )
        tx = self._require_transaction(tx_id, "deposit")
        with self._locks.hold(wallet_id_for(tx["user_id"])):
            tx = self._require_transaction(tx_id, "deposit")
            if tx["status"] == status:
                return tx
            if tx["status"] != "pending":
                raise InvalidTransitionError(
                    f"Cannot mark deposit {status} in '{tx['status']}' status",
                    {"tx_id": tx_id},
                )
            updated = self._set_transaction_status(tx, status)
        self._logger.info(
            "Deposit not completed",
            extra={"user_id": tx["user_id"], "tx_id": tx_id, "status": status},
        )
        return updated

    def withdraw(
        self,
        user_id: str,
        amount: int,
        bank_details: dict[str, Any],
    ) -> dict[str, Any]:
        """
        Withhold funds for a payout and record a pending withdrawal.

        Raises:
            InvalidAmountError: amount is not a positive integer.
            InsufficientFundsError: amount exceeds the available balance.
        """
        amount = _require_positive(amount)

        def compute(wallet: dict[str, Any]) -> dict[str, int]:
            if amount > wallet["balance"]:
                raise InsufficientFundsError(
                    "Insufficient balance for withdrawal",
                    {"balance": wallet["balance"], "amount": amount},
                )
            return {"balance": wallet["balance"] - amount}

        with self._locks.hold(wallet_id_for(user_id)):
            wallet, tx = self._apply_recorded(
                user_id,
                compute,
                "withdrawal",
                amount,
                "pending",
                "Withdrawal to bank account",
                payment_method="bank_transfer",
                bank_details=bank_details,
            )
        self._logger.info(
            "Withdrawal pending",
            extra={"user_id": user_id, "tx_id": tx["tx_id"], "amount": amount},
        )
        self._notify(BalanceChange(user_id=user_id, reason="withdrawal", wallet=wallet, transaction=tx))
        return tx

    def complete_withdrawal(
        self,
        tx_id: str,
        *,
        external_transaction_id: str | None = None,
    ) -> dict[str, Any]:
        """Confirm a payout. Funds already left the balance at withdrawal time."""
        tx = self._require_transaction(tx_id, "withdrawal")
        with self._locks.hold(wallet_id_for(tx["user_id"])):
            tx = self._require_transaction(tx_id, "withdrawal")
            if tx["status"] == "completed":
                return tx
            if tx["status"] != "pending":
                raise InvalidTransitionError(
                    f"Cannot complete withdrawal in '{tx['status']}' status",
                    {"tx_id": tx_id},
                )
            updated = self._set_transaction_status(
                tx,
                "completed",
                external_transaction_id=external_transaction_id,
            )
        self._logger.info("Withdrawal completed", extra={"user_id": tx["user_id"], "tx_id": tx_id})
        return updated

    def fail_withdrawal(self, tx_id: str) -> dict[str, Any]:
        """Mark a payout failed and return the withheld amount to the balance."""
        tx = self._require_transaction(tx_id, "withdrawal")
        user_id = tx["user_id"]
        with self._locks.hold(wallet_id_for(user_id)):
            tx = self._require_transaction(tx_id, "withdrawal")
            if tx["status"] == "failed":
                return tx
            if tx["status"] != "pending":
                raise InvalidTransitionError(
                    f"Cannot fail withdrawal in '{tx['status']}' status",
                    {"tx_id": tx_id},
                )
            amount = int(tx["amount"])
            updated = self._set_transaction_status(tx, "failed")
            try:
                wallet = self._apply(user_id, lambda w: {"balance": w["balance"] + amount})
            except Exception:
                self._store.put(TRANSACTIONS, tx_id, {"status": "pending"}, merge=True)
                raise
        self._logger.info(
            "Withdrawal failed, funds restored",
            extra={"user_id": user_id, "tx_id": tx_id, "amount": amount},
        )
        self._notify(
            BalanceChange(user_id=user_id, reason="withdrawal_failed", wallet=wallet, transaction=updated)
        )
        return updated

    # ------------------------------------------------------------------
    # Escrow movements
    # ------------------------------------------------------------------

    def move_to_escrow(
        self,
        user_id: str,
        amount: int,
        *,
        task_id: str,
        tx_type: str = "escrow_hold",
        description: str = "Funds held in escrow",
    ) -> dict[str, Any]:
        """
        Move funds from the available balance into the escrow balance.

        Raises:
            InsufficientFundsError: amount exceeds the available balance.
        """
        amount = _require_positive(amount)

        def compute(wallet: dict[str, Any]) -> dict[str, int]:
            if amount > wallet["balance"]:
                raise InsufficientFundsError(
                    "Insufficient balance",
                    {"balance": wallet["balance"], "amount": amount},
                )
            return {
                "balance": wallet["balance"] - amount,
                "escrow_balance": wallet["escrow_balance"] + amount,
            }

        return self._move(user_id, "escrow_hold", compute, tx_type, amount, description, task_id=task_id)

    def release_from_escrow(
        self,
        user_id: str,
        amount: int,
        *,
        credit_to_balance: bool,
        task_id: str,
        tx_type: str = "escrow_release",
        description: str = "Escrow released",
        count_as_spent: bool = False,
    ) -> dict[str, Any]:
        """
        Take funds out of escrow.

        With ``credit_to_balance`` the funds land in the available balance
        and count towards ``total_earned``; otherwise they leave the wallet.

        Raises:
            InvalidAmountError: amount exceeds the escrow balance.
        """
        amount = _require_positive(amount)

        def compute(wallet: dict[str, Any]) -> dict[str, int]:
            if amount > wallet["escrow_balance"]:
                raise InvalidAmountError(
                    "Amount exceeds escrow balance",
                    {"escrow_balance": wallet["escrow_balance"], "amount": amount},
                )
            changes = {"escrow_balance": wallet["escrow_balance"] - amount}
            if credit_to_balance:
                changes["balance"] = wallet["balance"] + amount
                changes["total_earned"] = wallet["total_earned"] + amount
            if count_as_spent:
                changes["total_spent"] = wallet["total_spent"] + amount
            return changes

        return self._move(user_id, "escrow_release", compute, tx_type, amount, description, task_id=task_id)

    def refund_from_escrow(
        self,
        user_id: str,
        amount: int,
        *,
        task_id: str,
        tx_type: str = "refund",
        description: str = "Escrow refunded",
    ) -> dict[str, Any]:
        """
        Return held funds to the available balance.

        Raises:
            InvalidAmountError: amount exceeds the escrow balance.
        """
        amount = _require_positive(amount)

        def compute(wallet: dict[str, Any]) -> dict[str, int]:
            if amount > wallet["escrow_balance"]:
                raise InvalidAmountError(
                    "Amount exceeds escrow balance",
                    {"escrow_balance": wallet["escrow_balance"], "amount": amount},
                )
            return {
                "escrow_balance": wallet["escrow_balance"] - amount,
                "balance": wallet["balance"] + amount,
            }

        return self._move(user_id, "escrow_refund", compute, tx_type, amount, description, task_id=task_id)

    def credit(
        self,
        user_id: str,
        amount: int,
        *,
        tx_type: str,
        description: str,
        task_id: str | None = None,
        count_as_earned: bool = False,
    ) -> dict[str, Any]:
        """Credit the available balance from inside the platform (payouts, commission)."""
        amount = _require_positive(amount)

        def compute(wallet: dict[str, Any]) -> dict[str, int]:
            changes = {"balance": wallet["balance"] + amount}
            if count_as_earned:
                changes["total_earned"] = wallet["total_earned"] + amount
            return changes

        return self._move(user_id, "credit", compute, tx_type, amount, description, task_id=task_id)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def get_transaction(self, tx_id: str) -> dict[str, Any] | None:
        return self._store.get(TRANSACTIONS, tx_id)

    def get_transactions(
        self,
        user_id: str,
        *,
        limit: int = 50,
        offset: int | None = None,
        tx_type: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List a user's transactions, newest first."""
        filters: list[Filter] = [("user_id", "==", user_id)]
        if tx_type is not None:
            filters.append(("type", "==", tx_type))
        if status is not None:
            filters.append(("status", "==", status))
        return self._store.query(
            TRANSACTIONS,
            filters,
            order_by="created_at",
            descending=True,
            limit=limit,
            offset=offset,
        )

    def expire_stale_deposits(self, max_age_seconds: int) -> list[dict[str, Any]]:
        """
        Mark external deposits pending longer than ``max_age_seconds`` as failed.

        Deposits settled concurrently by the payment return are skipped.
        """
        cutoff = (datetime.now(UTC) - timedelta(seconds=max_age_seconds)).isoformat(
            timespec="microseconds"
        ).replace("+00:00", "Z")
        stale = self._store.query(
            TRANSACTIONS,
            [("type", "==", "deposit"), ("status", "==", "pending"), ("created_at", "<", cutoff)],
        )
        expired: list[dict[str, Any]] = []
        for tx in stale:
            try:
                expired.append(self.fail_deposit(tx["tx_id"]))
            except InvalidTransitionError:
                self._logger.info(
                    "Stale deposit settled before expiry",
                    extra={"tx_id": tx["tx_id"]},
                )
        if expired:
            self._logger.info(
                "Expired stale deposits",
                extra={"count": len(expired), "max_age_seconds": max_age_seconds},
            )
        return expired

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_balance_changed(self, user_id: str, callback: BalanceObserver) -> Callable[[], None]:
        """
        Subscribe to balance changes of one wallet.

        Returns:
            A function that removes the subscription.
        """
        with self._observers_lock:
            self._observers.setdefault(user_id, []).append(callback)

        def unsubscribe() -> None:
            with self._observers_lock:
                callbacks = self._observers.get(user_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)
                if not callbacks:
                    self._observers.pop(user_id, None)

        return unsubscribe

    def _notify(self, change: BalanceChange) -> None:
        with self._observers_lock:
            callbacks = list(self._observers.get(change.user_id, ()))
        for callback in callbacks:
            try:
                callback(change)
            except Exception:
                self._logger.exception(
                    "Balance observer failed",
                    extra={"user_id": change.user_id, "reason": change.reason},
                )
