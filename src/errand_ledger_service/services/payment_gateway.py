"""Hosted checkout gateway: builds checkout requests and reads return parameters."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from errand_ledger_service.exceptions import ExternalPaymentFailedError
from errand_ledger_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from errand_ledger_service.config import PaymentGatewayConfig

# Gateway amounts are in minor units (kobo)
MINOR_UNITS_PER_UNIT = 100

SUCCESS_RESPONSE_CODE = "90000"

_GATEWAY_PAYMENT_METHODS: dict[str, str] = {
    "card": "CARD",
    "bank_transfer": "BANK_TRANSFER",
}


@dataclass(frozen=True)
class CheckoutSession:
    """Where to send the customer and which form fields to post there."""

    checkout_url: str
    form_fields: dict[str, str]


@dataclass(frozen=True)
class PaymentOutcome:
    """Result reported by the gateway when the customer returns."""

    success: bool
    transaction_id: str | None
    amount: int | None
    status: str
    message: str
    external_reference: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: int) -> int:
    return amount * MINOR_UNITS_PER_UNIT


def from_minor_units(value: object) -> int | None:
    """Convert a gateway amount back to whole units, None if unreadable."""
    if value is None or value == "":
        return None
    try:
        minor = Decimal(str(value))
    except InvalidOperation:
        return None
    if not minor.is_finite():
        return None
    return int((minor / MINOR_UNITS_PER_UNIT).quantize(Decimal(1), rounding=ROUND_HALF_UP))


class HostedCheckoutGateway:
    """
    Redirect-based checkout provider contract.

    The customer is sent to the provider's hosted page with a form post
    and comes back to ``return_url`` with the outcome in query parameters.
    """

    def __init__(self, config: PaymentGatewayConfig) -> None:
        self._config = config
        self._logger = get_logger(__name__)

    @property
    def checkout_url(self) -> str:
        if self._config.environment == "production":
            return self._config.production_checkout_url
        return self._config.sandbox_checkout_url

    def initiate(
        self,
        amount: int,
        currency: str,
        order_id: str,
        customer: Mapping[str, Any],
        return_url: str,
        payment_method: str = "card",
    ) -> CheckoutSession:
        """
        Build the hosted checkout request for one deposit.

        Raises:
            ExternalPaymentFailedError: merchant code missing or unsupported method.
        """
        if not self._config.merchant_code:
            raise ExternalPaymentFailedError("Payment gateway merchant code is not configured")
        gateway_method = _GATEWAY_PAYMENT_METHODS.get(payment_method)
        if gateway_method is None:
            raise ExternalPaymentFailedError(
                f"Payment method '{payment_method}' is not supported by the gateway"
            )

        form_fields = {
            "merchantCode": self._config.merchant_code,
            "amount": str(to_minor_units(amount)),
            "orderId": order_id,
            "currency": currency,
            "customerEmail": str(customer.get("email") or ""),
            "customerName": str(customer.get("name") or ""),
            "description": f"Wallet deposit - {order_id}",
            "redirectUrl": return_url,
            "paymentMethod": gateway_method,
            "country": self._config.country,
            "locale": self._config.locale,
            "testMode": "0" if self._config.environment == "production" else "1",
        }
        self._logger.info(
            "Checkout initiated",
            extra={"order_id": order_id, "amount": amount, "environment": self._config.environment},
        )
        return CheckoutSession(checkout_url=self.checkout_url, form_fields=form_fields)

    def parse_return(self, query_params: Mapping[str, str]) -> PaymentOutcome:
        """
        Read the gateway's return parameters.

        ``response`` is either URL-decoded JSON or a bare status string.
        Success is signalled by ``status=success``, a ``success`` status in
        the response, or response code ``90000``.
        """
        transaction_id = query_params.get("transaction") or query_params.get("order_id")
        amount = from_minor_units(query_params.get("amount"))
        response = query_params.get("response")

        if not response:
            return PaymentOutcome(
                success=False,
                transaction_id=transaction_id,
                amount=amount,
                status="failed",
                message="No response received from payment gateway",
            )

        try:
            parsed = json.loads(response)
        except ValueError:
            parsed = {"status": response}
        if not isinstance(parsed, dict):
            parsed = {"status": str(parsed)}

        status = str(query_params.get("status") or parsed.get("status") or "failed").lower()
        response_code = str(parsed.get("ResponseCode") or parsed.get("responseCode") or "")
        success = (
            status == "success"
            or str(parsed.get("status", "")).lower() == "success"
            or response_code == SUCCESS_RESPONSE_CODE
        )
        if success:
            status = "success"
        message = str(
            parsed.get("ResponseDescription")
            or parsed.get("message")
            or ("Payment completed successfully" if success else "Payment was not completed")
        )
        external_reference = parsed.get("PaymentReference") or parsed.get("paymentReference")
        if amount is None:
            amount = from_minor_units(parsed.get("Amount") or parsed.get("amount"))

        return PaymentOutcome(
            success=success,
            transaction_id=transaction_id,
            amount=amount,
            status=status,
            message=message,
            external_reference=str(external_reference) if external_reference else None,
            raw=parsed,
        )
