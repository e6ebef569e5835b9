"""Task lifecycle endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from errand_ledger_service.core.state import get_app_state
from errand_ledger_service.routers.validation import (
    parse_json_body,
    parse_pagination,
    read_optional_body,
    require_caller,
)
from errand_ledger_service.schemas import EscrowResponse
from errand_ledger_service.services.task_manager import TaskManager

router = APIRouter()


def _task_manager() -> TaskManager:
    state = get_app_state()
    if state.task_manager is None:
        msg = "TaskManager not initialized"
        raise RuntimeError(msg)
    return state.task_manager


# ---------------------------------------------------------------------------
# POST /tasks: create task (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.post("/tasks", status_code=201)
async def create_task(request: Request) -> JSONResponse:
    """Post a task and hold its reward in escrow."""
    caller_id = require_caller(request)
    data = parse_json_body(await request.body())
    result = await run_in_threadpool(_task_manager().create_task, caller_id, data)
    return JSONResponse(status_code=201, content=result)


# ---------------------------------------------------------------------------
# GET /tasks: list tasks (MUST be before GET /tasks/{task_id})
# ---------------------------------------------------------------------------


@router.get("/tasks")
async def list_tasks(request: Request) -> dict[str, Any]:
    """List tasks with optional filters."""
    limit, offset = parse_pagination(request)
    tasks = await run_in_threadpool(
        _task_manager().list_tasks,
        status=request.query_params.get("status"),
        requester_id=request.query_params.get("requester_id"),
        runner_id=request.query_params.get("runner_id"),
        category=request.query_params.get("category"),
        limit=limit,
        offset=offset,
    )
    return {"tasks": tasks}


@router.get("/tasks/{task_id}")
async def get_task(task_id: str) -> dict[str, Any]:
    """Get a single task."""
    return await run_in_threadpool(_task_manager().get_task, task_id)


@router.get("/tasks/{task_id}/escrow", response_model=EscrowResponse)
async def get_task_escrow(task_id: str, request: Request) -> EscrowResponse:
    """Escrow record of a task, for its requester and runner."""
    caller_id = require_caller(request)
    escrow = await run_in_threadpool(_task_manager().get_escrow_for_task, task_id, caller_id)
    return EscrowResponse.model_validate(escrow)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


@router.post("/tasks/{task_id}/accept")
async def accept_task(task_id: str, request: Request) -> JSONResponse:
    """Accept a pending task as its runner."""
    caller_id = require_caller(request)
    await read_optional_body(request)
    result = await run_in_threadpool(_task_manager().accept_task, task_id, caller_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/start")
async def start_task(task_id: str, request: Request) -> JSONResponse:
    """Mark an accepted task as in progress."""
    caller_id = require_caller(request)
    await read_optional_body(request)
    result = await run_in_threadpool(_task_manager().start_task, task_id, caller_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/complete")
async def complete_task(task_id: str, request: Request) -> JSONResponse:
    """Confirm completion and release payment to the runner."""
    caller_id = require_caller(request)
    await read_optional_body(request)
    result = await run_in_threadpool(_task_manager().complete_task, task_id, caller_id)
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request) -> JSONResponse:
    """Cancel a task and refund every hold."""
    caller_id = require_caller(request)
    data = await read_optional_body(request)
    result = await run_in_threadpool(
        _task_manager().cancel_task,
        task_id,
        caller_id,
        data.get("reason"),
    )
    return JSONResponse(status_code=200, content=result)


@router.post("/tasks/{task_id}/dispute")
async def dispute_task(task_id: str, request: Request) -> JSONResponse:
    """Flag a task for dispute resolution."""
    caller_id = require_caller(request)
    data = parse_json_body(await request.body())
    result = await run_in_threadpool(
        _task_manager().dispute_task,
        task_id,
        caller_id,
        data.get("reason"),
    )
    return JSONResponse(status_code=200, content=result)
