"""Unit tests for deposits through the hosted checkout."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import Mock

import pytest
from freezegun import freeze_time

from errand_ledger_service.exceptions import ExternalPaymentFailedError, ServiceError
from errand_ledger_service.services.payment_gateway import HostedCheckoutGateway
from errand_ledger_service.services.payment_intake import PaymentIntake
from tests.helpers import make_gateway_config, onboard

pytestmark = pytest.mark.unit

CUSTOMER = {"email": "ada@example.com", "name": "Ada Obi"}


def approved(tx_id, amount_minor=None):
    params = {"transaction": tx_id, "response": json.dumps({"ResponseCode": "90000", "PaymentReference": "REF-1"})}
    if amount_minor is not None:
        params["amount"] = str(amount_minor)
    return params


@pytest.fixture
def intake(market):
    onboard(market, "ada", 0)
    config = make_gateway_config()
    return PaymentIntake(market.wallets, HostedCheckoutGateway(config), config, market.notifications)


class TestStartDeposit:
    def test_pending_deposit_and_checkout(self, market, intake):
        tx, session = intake.start_deposit("ada", 2500, "card", CUSTOMER)

        assert tx["status"] == "pending"
        assert tx["amount"] == 2500
        assert session.form_fields["orderId"] == tx["tx_id"]
        assert session.form_fields["redirectUrl"] == f"http://test/payments/return?transaction={tx['tx_id']}"
        assert session.form_fields["amount"] == "250000"
        assert market.wallet("ada")["balance"] == 0

    def test_internal_method_not_allowed(self, intake):
        with pytest.raises(ServiceError) as exc_info:
            intake.start_deposit("ada", 2500, "internal", CUSTOMER)
        assert exc_info.value.error == "INVALID_PAYMENT_METHOD"

    def test_method_not_enabled_by_platform(self, market):
        onboard(market, "ada", 0)
        config = make_gateway_config()
        intake = PaymentIntake(
            market.wallets,
            HostedCheckoutGateway(config),
            config,
            allowed_methods=["card"],
        )

        with pytest.raises(ServiceError) as exc_info:
            intake.start_deposit("ada", 2500, "bank_transfer", CUSTOMER)

        assert exc_info.value.error == "INVALID_PAYMENT_METHOD"
        assert exc_info.value.details == {"allowed": ["card"]}
        assert market.wallets.get_transactions("ada") == []
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)
        assert tx["payment_method"] == "card"

    def test_wallet_method_is_not_a_checkout_method(self, market):
        onboard(market, "ada", 0)
        config = make_gateway_config()
        intake = PaymentIntake(
            market.wallets,
            HostedCheckoutGateway(config),
            config,
            allowed_methods=["card", "bank_transfer", "wallet"],
        )

        with pytest.raises(ServiceError) as exc_info:
            intake.start_deposit("ada", 2500, "wallet", CUSTOMER)

        assert exc_info.value.details == {"allowed": ["bank_transfer", "card"]}

    def test_gateway_misconfiguration_fails_deposit(self, market):
        onboard(market, "ada", 0)
        config = make_gateway_config(merchant_code="")
        intake = PaymentIntake(market.wallets, HostedCheckoutGateway(config), config)

        with pytest.raises(ExternalPaymentFailedError):
            intake.start_deposit("ada", 2500, "card", CUSTOMER)

        [tx] = market.wallets.get_transactions("ada")
        assert tx["status"] == "failed"

    def test_unexpected_gateway_error_is_wrapped(self, market):
        onboard(market, "ada", 0)
        gateway = Mock(spec=HostedCheckoutGateway)
        gateway.initiate.side_effect = ConnectionError("gateway unreachable")
        intake = PaymentIntake(market.wallets, gateway, make_gateway_config())

        with pytest.raises(ExternalPaymentFailedError) as exc_info:
            intake.start_deposit("ada", 2500, "bank_transfer", CUSTOMER)

        [tx] = market.wallets.get_transactions("ada")
        assert exc_info.value.details == {"tx_id": tx["tx_id"]}
        assert tx["status"] == "failed"


class TestHandleReturn:
    def test_success_credits_wallet(self, market, intake):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)

        result = intake.handle_return(approved(tx["tx_id"], 250000))

        assert result.success is True
        assert result.transaction["status"] == "completed"
        assert result.transaction["external_transaction_id"] == "REF-1"
        assert market.wallet("ada")["balance"] == 2500
        assert [n["type"] for n in market.notifications.list_for_user("ada")] == ["deposit_completed"]

    def test_repeat_return_credits_once(self, market, intake):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)
        intake.handle_return(approved(tx["tx_id"]))

        result = intake.handle_return(approved(tx["tx_id"]))

        assert result.success is True
        assert result.message == "Payment already completed"
        assert market.wallet("ada")["balance"] == 2500

    def test_failure_marks_transaction_failed(self, market, intake):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)

        result = intake.handle_return(
            {"transaction": tx["tx_id"], "response": json.dumps({"ResponseCode": "Z6", "ResponseDescription": "Declined"})}
        )

        assert result.success is False
        assert result.message == "Declined"
        assert result.transaction["status"] == "failed"
        assert market.wallet("ada")["balance"] == 0
        assert [n["type"] for n in market.notifications.list_for_user("ada")] == ["deposit_failed"]

    def test_cancelled_checkout(self, market, intake):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)
        result = intake.handle_return({"transaction": tx["tx_id"], "response": "cancelled"})
        assert result.success is False
        assert result.transaction["status"] == "cancelled"

    def test_amount_mismatch_is_failed(self, market, intake):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)

        result = intake.handle_return(approved(tx["tx_id"], 100))

        assert result.success is False
        assert result.transaction["status"] == "failed"
        assert market.wallet("ada")["balance"] == 0

    def test_failure_after_completion_is_reported_not_applied(self, market, intake):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)
        intake.handle_return(approved(tx["tx_id"]))

        result = intake.handle_return({"transaction": tx["tx_id"], "response": "failed"})

        assert result.success is True
        assert market.wallet("ada")["balance"] == 2500

    def test_late_success_after_failure_is_flagged(self, market, intake):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)
        intake.handle_return({"transaction": tx["tx_id"], "response": "failed"})

        result = intake.handle_return(approved(tx["tx_id"]))

        assert result.success is False
        assert result.needs_reconciliation is True
        assert result.transaction["status"] == "failed"
        assert market.wallet("ada")["balance"] == 0

    def test_success_after_expiry_is_flagged(self, market, intake):
        with freeze_time("2026-05-01 08:00:00") as frozen:
            tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)
            frozen.tick(timedelta(seconds=1801))
            intake.expire_stale()

            result = intake.handle_return(approved(tx["tx_id"], 250000))

        assert result.needs_reconciliation is True
        assert market.wallets.get_transaction(tx["tx_id"])["status"] == "failed"
        assert market.wallet("ada")["balance"] == 0

    def test_deposit_expired_during_completion_is_flagged(self, market, intake, monkeypatch):
        tx, _ = intake.start_deposit("ada", 2500, "card", CUSTOMER)
        complete = market.wallets.complete_deposit

        def expire_first(tx_id, **kwargs):
            market.wallets.fail_deposit(tx_id)
            return complete(tx_id, **kwargs)

        monkeypatch.setattr(market.wallets, "complete_deposit", expire_first)

        result = intake.handle_return(approved(tx["tx_id"]))

        assert result.needs_reconciliation is True
        assert result.transaction["status"] == "failed"
        assert market.wallet("ada")["balance"] == 0

    def test_missing_transaction_reference(self, intake):
        with pytest.raises(ServiceError) as exc_info:
            intake.handle_return({"response": "success"})
        assert exc_info.value.error == "INVALID_PAYLOAD"

    def test_unknown_transaction(self, intake):
        with pytest.raises(ServiceError) as exc_info:
            intake.handle_return(approved("tx-missing"))
        assert exc_info.value.error == "TRANSACTION_NOT_FOUND"

    def test_non_deposit_transaction(self, market, intake):
        market.wallets.deposit("ada", 500, "internal")
        tx = market.wallets.withdraw("ada", 200, {"bank_name": "GTBank"})
        with pytest.raises(ServiceError) as exc_info:
            intake.handle_return(approved(tx["tx_id"]))
        assert exc_info.value.status_code == 404


def test_expire_stale_uses_configured_timeout(market, intake):
    with freeze_time("2026-05-01 08:00:00") as frozen:
        old, _ = intake.start_deposit("ada", 1000, "card", CUSTOMER)
        frozen.tick(timedelta(seconds=1801))
        fresh, _ = intake.start_deposit("ada", 2000, "card", CUSTOMER)

        expired = intake.expire_stale()

    assert [tx["tx_id"] for tx in expired] == [old["tx_id"]]
    assert market.wallets.get_transaction(fresh["tx_id"])["status"] == "pending"
