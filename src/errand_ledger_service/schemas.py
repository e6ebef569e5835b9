"""Pydantic response models for the API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict


class HealthResponse(BaseModel):
    """Response model for GET /health."""

    model_config = ConfigDict(extra="forbid")
    status: Literal["ok"]
    uptime_seconds: float
    started_at: str
    total_wallets: int
    total_escrowed: int
    total_tasks: int
    tasks_by_status: dict[str, int]


class ErrorResponse(BaseModel):
    """Standard error response model."""

    model_config = ConfigDict(extra="forbid")
    error: str
    message: str
    details: dict[str, object]


# Record-backed models ignore store bookkeeping such as ``version``


class WalletResponse(BaseModel):
    """A user's wallet balances."""

    model_config = ConfigDict(extra="ignore")
    wallet_id: str
    user_id: str
    balance: int
    escrow_balance: int
    total_earned: int
    total_spent: int
    created_at: str
    updated_at: str


class TransactionResponse(BaseModel):
    """One entry of the transaction log."""

    model_config = ConfigDict(extra="ignore")
    tx_id: str
    user_id: str
    type: str
    amount: int
    status: Literal["pending", "completed", "failed", "cancelled"]
    description: str
    task_id: str | None = None
    needs_reconciliation: bool
    payment_method: str | None = None
    payment_reference: str | None = None
    external_transaction_id: str | None = None
    balance_after: int | None = None
    bank_details: dict[str, Any] | None = None
    created_at: str
    updated_at: str
    completed_at: str | None = None


class TransactionListResponse(BaseModel):
    """Response model for GET /wallets/me/transactions."""

    model_config = ConfigDict(extra="forbid")
    transactions: list[TransactionResponse]


class EscrowResponse(BaseModel):
    """Escrow record of a task."""

    model_config = ConfigDict(extra="ignore")
    escrow_id: str
    task_id: str
    requester_id: str
    runner_id: str
    amount: int
    commission_amount: int
    runner_amount: int
    runner_stake: int
    status: Literal["active", "released", "refunded"]
    created_at: str
    updated_at: str
    released_at: str | None = None
    refunded_at: str | None = None


class ProfileResponse(BaseModel):
    """Public marketplace profile of a user."""

    model_config = ConfigDict(extra="ignore")
    user_id: str
    full_name: str
    is_runner: bool
    is_requester: bool
    rating: float
    total_tasks_completed: int
    total_tasks_posted: int
    created_at: str


class PlatformSettingsResponse(BaseModel):
    """Response model for GET /settings/platform."""

    model_config = ConfigDict(extra="ignore")
    commission_percentage: float
    minimum_task_amount: int
    maximum_task_amount: int
    payment_methods: list[str]
    supported_categories: list[str]
    maintenance_mode: bool
    runner_stake_required: bool


class CheckoutResponse(BaseModel):
    """Pending deposit plus where to send the customer to pay it."""

    model_config = ConfigDict(extra="forbid")
    transaction: TransactionResponse
    checkout_url: str
    form_fields: dict[str, str]


class DepositResultResponse(BaseModel):
    """Outcome of a payment return."""

    model_config = ConfigDict(extra="forbid")
    success: bool
    message: str
    transaction: TransactionResponse | None
    needs_reconciliation: bool
