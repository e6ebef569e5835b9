"""Wallet, deposit and withdrawal endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from errand_ledger_service.core.state import AppState, get_app_state
from errand_ledger_service.exceptions import ServiceError
from errand_ledger_service.logging import get_logger
from errand_ledger_service.routers.validation import (
    optional_str,
    parse_json_body,
    parse_pagination,
    read_optional_body,
    require_caller,
    require_int,
    require_operator,
    require_str,
)
from errand_ledger_service.schemas import (
    CheckoutResponse,
    TransactionListResponse,
    TransactionResponse,
    WalletResponse,
)
from errand_ledger_service.services.wallet_ledger import INTERNAL_METHOD, WalletLedger

router = APIRouter()
logger = get_logger(__name__)

_BANK_DETAIL_FIELDS = ("bank_name", "account_number", "account_name")


def _wallets(state: AppState) -> WalletLedger:
    if state.wallets is None:
        msg = "WalletLedger not initialized"
        raise RuntimeError(msg)
    return state.wallets


def _operator_id(state: AppState) -> str:
    if state.platform is None:
        msg = "Platform settings not initialized"
        raise RuntimeError(msg)
    return state.platform.operator_id


def _tx_content(tx: dict[str, Any]) -> dict[str, Any]:
    return TransactionResponse.model_validate(tx).model_dump()


# === GET /wallets/me: Caller's wallet ===


@router.get("/wallets/me", response_model=WalletResponse)
async def get_my_wallet(request: Request) -> WalletResponse:
    """Balances of the calling user's wallet."""
    caller_id = require_caller(request)
    wallet = await run_in_threadpool(_wallets(get_app_state()).require_wallet, caller_id)
    return WalletResponse.model_validate(wallet)


@router.get("/wallets/me/transactions", response_model=TransactionListResponse)
async def list_my_transactions(request: Request) -> TransactionListResponse:
    """Transaction history of the calling user, newest first."""
    caller_id = require_caller(request)
    limit, offset = parse_pagination(request)
    wallets = _wallets(get_app_state())
    await run_in_threadpool(wallets.require_wallet, caller_id)
    transactions = await run_in_threadpool(
        wallets.get_transactions,
        caller_id,
        limit=limit if limit is not None else 50,
        offset=offset,
        tx_type=request.query_params.get("type"),
        status=request.query_params.get("status"),
    )
    return TransactionListResponse(
        transactions=[TransactionResponse.model_validate(tx) for tx in transactions]
    )


# === POST /wallets/me/deposits: Start an external deposit ===


@router.post("/wallets/me/deposits", status_code=201)
async def start_deposit(request: Request) -> JSONResponse:
    """Create a pending deposit and return the hosted checkout to pay it."""
    caller_id = require_caller(request)
    data = parse_json_body(await request.body())
    amount = require_int(data, "amount")
    method = require_str(data, "method")

    state = get_app_state()
    if state.payment_intake is None:
        msg = "PaymentIntake not initialized"
        raise RuntimeError(msg)

    customer = {
        "email": optional_str(data, "email") or "",
        "name": optional_str(data, "name") or "",
    }
    tx, session = await run_in_threadpool(
        state.payment_intake.start_deposit,
        caller_id,
        amount,
        method,
        customer,
    )
    response = CheckoutResponse(
        transaction=TransactionResponse.model_validate(tx),
        checkout_url=session.checkout_url,
        form_fields=session.form_fields,
    )
    return JSONResponse(status_code=201, content=response.model_dump())


# === POST /wallets/me/withdrawals: Withdraw to a bank account ===


@router.post("/wallets/me/withdrawals", status_code=201)
async def withdraw(request: Request) -> JSONResponse:
    """Withhold funds and record a pending payout."""
    caller_id = require_caller(request)
    data = parse_json_body(await request.body())
    amount = require_int(data, "amount")

    bank_details = data.get("bank_details")
    if not isinstance(bank_details, dict):
        raise ServiceError("INVALID_PAYLOAD", "Field 'bank_details' must be an object", 400, {})
    details = {field: require_str(bank_details, field) for field in _BANK_DETAIL_FIELDS}

    tx = await run_in_threadpool(_wallets(get_app_state()).withdraw, caller_id, amount, details)
    logger.info("Withdrawal requested", extra={"user_id": caller_id, "tx_id": tx["tx_id"]})
    return JSONResponse(status_code=201, content=_tx_content(tx))


# === Operator endpoints ===


@router.post("/wallets/{user_id}/credits", status_code=201)
async def credit_wallet(user_id: str, request: Request) -> JSONResponse:
    """Operator-only internal deposit, completed immediately."""
    caller_id = require_caller(request)
    state = get_app_state()
    require_operator(caller_id, _operator_id(state))

    data = parse_json_body(await request.body())
    amount = require_int(data, "amount")
    tx = await run_in_threadpool(
        _wallets(state).deposit,
        user_id,
        amount,
        INTERNAL_METHOD,
        description=optional_str(data, "description"),
        payment_reference=optional_str(data, "reference"),
    )
    return JSONResponse(status_code=201, content=_tx_content(tx))


@router.post("/withdrawals/{tx_id}/confirm")
async def confirm_withdrawal(tx_id: str, request: Request) -> JSONResponse:
    """Operator-only payout confirmation: ``completed`` or ``failed``."""
    caller_id = require_caller(request)
    state = get_app_state()
    require_operator(caller_id, _operator_id(state))

    data = parse_json_body(await request.body())
    outcome = require_str(data, "status")
    wallets = _wallets(state)
    if outcome == "completed":
        tx = await run_in_threadpool(
            wallets.complete_withdrawal,
            tx_id,
            external_transaction_id=optional_str(data, "external_transaction_id"),
        )
    elif outcome == "failed":
        tx = await run_in_threadpool(wallets.fail_withdrawal, tx_id)
    else:
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Field 'status' must be 'completed' or 'failed'",
            400,
            {},
        )
    return JSONResponse(status_code=200, content=_tx_content(tx))


@router.post("/deposits/expire")
async def expire_stale_deposits(request: Request) -> dict[str, Any]:
    """Operator-only reconciliation sweep for abandoned checkouts."""
    caller_id = require_caller(request)
    state = get_app_state()
    require_operator(caller_id, _operator_id(state))
    await read_optional_body(request)

    if state.payment_intake is None:
        msg = "PaymentIntake not initialized"
        raise RuntimeError(msg)
    expired = await run_in_threadpool(state.payment_intake.expire_stale)
    return {"expired": [tx["tx_id"] for tx in expired]}
