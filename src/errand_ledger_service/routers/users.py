"""User onboarding and profile endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from errand_ledger_service.core.state import get_app_state
from errand_ledger_service.exceptions import ServiceError
from errand_ledger_service.routers.validation import (
    optional_str,
    parse_json_body,
    require_caller,
    require_str,
)
from errand_ledger_service.schemas import ProfileResponse
from errand_ledger_service.services.profiles import ProfileRegistry

router = APIRouter()


def _profiles() -> ProfileRegistry:
    state = get_app_state()
    if state.profiles is None:
        msg = "ProfileRegistry not initialized"
        raise RuntimeError(msg)
    return state.profiles


@router.post("/users", status_code=201)
async def register_user(request: Request) -> JSONResponse:
    """Onboard the calling user: profile plus an empty wallet."""
    caller_id = require_caller(request)
    data = parse_json_body(await request.body())

    full_name = require_str(data, "full_name")
    is_runner = data.get("is_runner", False)
    is_requester = data.get("is_requester", True)
    if not isinstance(is_runner, bool) or not isinstance(is_requester, bool):
        raise ServiceError(
            "INVALID_PAYLOAD",
            "Fields 'is_runner' and 'is_requester' must be booleans",
            400,
            {},
        )

    profile = await run_in_threadpool(
        _profiles().register_user,
        caller_id,
        full_name,
        is_runner=is_runner,
        is_requester=is_requester,
        email=optional_str(data, "email"),
        phone=optional_str(data, "phone"),
    )
    return JSONResponse(status_code=201, content=ProfileResponse.model_validate(profile).model_dump())


@router.get("/users/{user_id}", response_model=ProfileResponse)
async def get_user(user_id: str) -> ProfileResponse:
    """Public marketplace profile of a user."""
    profile = await run_in_threadpool(_profiles().require_profile, user_id)
    return ProfileResponse.model_validate(profile)
