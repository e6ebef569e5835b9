"""Hosted checkout return endpoint. The query parameters are not signed by the provider."""

from __future__ import annotations

from fastapi import APIRouter, Request
from starlette.concurrency import run_in_threadpool

from errand_ledger_service.core.state import get_app_state
from errand_ledger_service.schemas import DepositResultResponse, TransactionResponse

router = APIRouter()


@router.get("/payments/return", response_model=DepositResultResponse)
async def payment_return(request: Request) -> DepositResultResponse:
    """Settle the pending deposit named in the gateway's return parameters."""
    state = get_app_state()
    if state.payment_intake is None:
        msg = "PaymentIntake not initialized"
        raise RuntimeError(msg)

    result = await run_in_threadpool(
        state.payment_intake.handle_return,
        dict(request.query_params),
    )
    transaction = (
        TransactionResponse.model_validate(result.transaction)
        if result.transaction is not None
        else None
    )
    return DepositResultResponse(
        success=result.success,
        message=result.message,
        transaction=transaction,
        needs_reconciliation=result.needs_reconciliation,
    )
