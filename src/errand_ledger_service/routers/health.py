"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from starlette.concurrency import run_in_threadpool

from errand_ledger_service.core.state import get_app_state
from errand_ledger_service.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Check service health and return ledger statistics."""
    state = get_app_state()
    total_wallets = 0
    total_escrowed = 0
    total_tasks = 0
    tasks_by_status: dict[str, int] = {}
    if state.wallets is not None:
        total_wallets = await run_in_threadpool(state.wallets.count_wallets)
        total_escrowed = await run_in_threadpool(state.wallets.total_escrow_balance)
    if state.task_manager is not None:
        stats = await run_in_threadpool(state.task_manager.get_stats)
        total_tasks = stats["total_tasks"]
        tasks_by_status = stats["tasks_by_status"]
    return HealthResponse(
        status="ok",
        uptime_seconds=state.uptime_seconds,
        started_at=state.started_at,
        total_wallets=total_wallets,
        total_escrowed=total_escrowed,
        total_tasks=total_tasks,
        tasks_by_status=tasks_by_status,
    )
