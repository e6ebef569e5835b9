"""Platform settings endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from errand_ledger_service.core.state import get_app_state
from errand_ledger_service.schemas import PlatformSettingsResponse

router = APIRouter()


@router.get("/settings/platform", response_model=PlatformSettingsResponse)
async def get_platform_settings() -> PlatformSettingsResponse:
    """Commission, task limits and categories clients need before posting."""
    state = get_app_state()
    if state.platform is None:
        msg = "Platform settings not initialized"
        raise RuntimeError(msg)
    return PlatformSettingsResponse.model_validate(state.platform.model_dump())
