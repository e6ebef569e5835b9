"""
Bridges the hosted checkout to wallet deposits.

Return parameters arrive unsigned through the customer's browser; verifying
them against the provider (signature or status query) is left to the
deployment in front of this service.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlencode

from errand_ledger_service.exceptions import (
    ExternalPaymentFailedError,
    InvalidTransitionError,
    ServiceError,
)
from errand_ledger_service.logging import get_logger
from errand_ledger_service.services.wallet_ledger import EXTERNAL_DEPOSIT_METHODS

if TYPE_CHECKING:
    from collections.abc import Collection, Mapping

    from errand_ledger_service.config import PaymentGatewayConfig
    from errand_ledger_service.services.notifications import NotificationOutbox
    from errand_ledger_service.services.payment_gateway import CheckoutSession, HostedCheckoutGateway
    from errand_ledger_service.services.wallet_ledger import WalletLedger


@dataclass(frozen=True)
class DepositResult:
    """Typed outcome of a checkout return, success or not."""

    success: bool
    transaction: dict[str, Any] | None
    message: str
    needs_reconciliation: bool = False


class PaymentIntake:
    """
    Starts external deposits and settles them when the customer returns.

    The pending deposit's transaction id doubles as the gateway order id,
    and the return URL carries it back as ``?transaction=<tx_id>``.
    """

    def __init__(
        self,
        wallets: WalletLedger,
        gateway: HostedCheckoutGateway,
        config: PaymentGatewayConfig,
        notifications: NotificationOutbox | None = None,
        *,
        allowed_methods: Collection[str] | None = None,
    ) -> None:
        self._wallets = wallets
        self._gateway = gateway
        self._config = config
        self._notifications = notifications
        # Platform methods such as "wallet" are paid from the balance, not through checkout
        if allowed_methods is None:
            self._methods = EXTERNAL_DEPOSIT_METHODS
        else:
            self._methods = frozenset(allowed_methods) & EXTERNAL_DEPOSIT_METHODS
        self._logger = get_logger(__name__)

    def start_deposit(
        self,
        user_id: str,
        amount: int,
        method: str,
        customer: Mapping[str, Any],
    ) -> tuple[dict[str, Any], CheckoutSession]:
        """
        Create a pending deposit and the checkout session that pays it.

        Raises:
            ServiceError: INVALID_PAYMENT_METHOD unless the method is an
                external method the platform currently allows.
            ExternalPaymentFailedError: the checkout could not be initiated;
                the pending deposit is marked failed first.
        """
        if method not in self._methods:
            raise ServiceError(
                "INVALID_PAYMENT_METHOD",
                f"Unsupported deposit method: {method}",
                400,
                {"allowed": sorted(self._methods)},
            )
        tx = self._wallets.deposit(user_id, amount, method)
        return_url = f"{self._config.return_url}?{urlencode({'transaction': tx['tx_id']})}"
        try:
            session = self._gateway.initiate(
                amount,
                self._config.currency,
                tx["tx_id"],
                customer,
                return_url,
                payment_method=method,
            )
        except ExternalPaymentFailedError:
            self._wallets.fail_deposit(tx["tx_id"])
            self._logger.warning(
                "Checkout initiation failed",
                extra={"user_id": user_id, "tx_id": tx["tx_id"]},
            )
            raise
        except Exception as exc:
            self._wallets.fail_deposit(tx["tx_id"])
            raise ExternalPaymentFailedError(
                "Payment gateway could not start the checkout",
                {"tx_id": tx["tx_id"]},
            ) from exc
        return tx, session

    def handle_return(self, query_params: Mapping[str, str]) -> DepositResult:
        """
        Settle a pending deposit from the gateway's return parameters.

        A successful payment completes the deposit; a failure, a
        cancellation or an amount that does not match marks it failed or
        cancelled. A payment reported after the deposit was already failed
        or expired is not credited; the result carries
        ``needs_reconciliation`` so an operator can settle it by hand.

        Raises:
            ServiceError: INVALID_PAYLOAD without a transaction reference,
                TRANSACTION_NOT_FOUND for an unknown one.
        """
        outcome = self._gateway.parse_return(query_params)
        if not outcome.transaction_id:
            raise ServiceError(
                "INVALID_PAYLOAD",
                "Payment return is missing the transaction reference",
                400,
                {},
            )
        tx_id = outcome.transaction_id
        tx = self._wallets.get_transaction(tx_id)
        if tx is None or tx["type"] != "deposit":
            raise ServiceError("TRANSACTION_NOT_FOUND", "Transaction not found", 404, {"tx_id": tx_id})

        if tx["status"] == "completed":
            return DepositResult(success=True, transaction=tx, message="Payment already completed")
        if tx["status"] != "pending":
            if outcome.success:
                return self._paid_after_close(tx)
            return DepositResult(success=False, transaction=tx, message=outcome.message)

        if outcome.success and outcome.amount is not None and outcome.amount != tx["amount"]:
            self._logger.warning(
                "Payment amount mismatch",
                extra={"tx_id": tx_id, "expected": tx["amount"], "reported": outcome.amount},
            )
            failed = self._wallets.fail_deposit(tx_id)
            self._notify_failure(failed)
            return DepositResult(
                success=False,
                transaction=failed,
                message="Paid amount does not match the deposit amount",
            )

        if outcome.success:
            try:
                completed = self._wallets.complete_deposit(
                    tx_id,
                    external_transaction_id=outcome.external_reference,
                )
            except InvalidTransitionError:
                # Expired between the read above and the completion
                return self._paid_after_close(self._wallets.get_transaction(tx_id) or tx)
            if self._notifications is not None:
                self._notifications.notify(
                    completed["user_id"],
                    "deposit_completed",
                    "Deposit Successful",
                    f"{completed['amount']} has been added to your wallet.",
                    {"tx_id": tx_id},
                )
            return DepositResult(success=True, transaction=completed, message=outcome.message)

        status = "cancelled" if outcome.status == "cancelled" else "failed"
        failed = self._wallets.fail_deposit(tx_id, status=status)
        self._notify_failure(failed)
        self._logger.info(
            "Payment not completed",
            extra={"tx_id": tx_id, "status": status, "message": outcome.message},
        )
        return DepositResult(success=False, transaction=failed, message=outcome.message)

    def _paid_after_close(self, tx: dict[str, Any]) -> DepositResult:
        self._logger.warning(
            "Payment reported for a closed deposit",
            extra={"tx_id": tx["tx_id"], "user_id": tx["user_id"], "status": tx["status"], "amount": tx["amount"]},
        )
        return DepositResult(
            success=False,
            transaction=tx,
            message=f"Payment received after the deposit was {tx['status']}; it will be reconciled manually",
            needs_reconciliation=True,
        )

    def _notify_failure(self, tx: dict[str, Any]) -> None:
        if self._notifications is None:
            return
        self._notifications.notify(
            tx["user_id"],
            "deposit_failed",
            "Deposit Failed",
            "Your deposit could not be completed.",
            {"tx_id": tx["tx_id"]},
        )

    def expire_stale(self) -> list[dict[str, Any]]:
        """Fail deposits whose checkout was abandoned."""
        return self._wallets.expire_stale_deposits(self._config.pending_timeout_seconds)
