"""Router test fixtures with a temporary database and test gateway settings."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

import pytest
from httpx import ASGITransport, AsyncClient

from errand_ledger_service.app import create_app
from errand_ledger_service.config import clear_settings_cache
from errand_ledger_service.core.lifespan import lifespan
from errand_ledger_service.core.state import reset_app_state
from tests.helpers import OPERATOR_ID, caller, task_payload

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from pathlib import Path

# ---------------------------------------------------------------------------
# Fixed user IDs
# ---------------------------------------------------------------------------
REQUESTER_ID = "u-ada"
RUNNER_ID = "u-bola"
OTHER_RUNNER_ID = "u-chi"
REVENUE_ACCOUNT_ID = "u-platform-revenue"


def build_config(tmp_path: Path, **platform_overrides: Any) -> str:
    """Render a complete config.yaml for a test app."""
    platform = {
        "commission_percentage": 10,
        "minimum_task_amount": 100,
        "maximum_task_amount": 50000,
        "maintenance_mode": "false",
        "runner_stake_required": "true",
        "revenue_account_id": "null",
        "payment_methods": '["card", "bank_transfer", "wallet"]',
    }
    platform.update(platform_overrides)
    return f"""\
service:
  name: "errand-ledger"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "WARNING"
  directory: "{tmp_path / "logs"}"
database:
  path: "{tmp_path / "test.db"}"
request:
  max_body_size: 4096
platform:
  commission_percentage: {platform["commission_percentage"]}
  minimum_task_amount: {platform["minimum_task_amount"]}
  maximum_task_amount: {platform["maximum_task_amount"]}
  payment_methods: {platform["payment_methods"]}
  supported_categories: ["delivery", "pickup", "errand", "other"]
  maintenance_mode: {platform["maintenance_mode"]}
  runner_stake_required: {platform["runner_stake_required"]}
  operator_id: "{OPERATOR_ID}"
  revenue_account_id: {platform["revenue_account_id"]}
payment_gateway:
  merchant_code: "MX-TEST"
  environment: "sandbox"
  sandbox_checkout_url: "https://sandbox.example.test/checkout"
  production_checkout_url: "https://pay.example.test/checkout"
  currency: "NGN"
  country: "NG"
  locale: "en"
  return_url: "http://test/payments/return"
  pending_timeout_seconds: 1800
"""


@pytest.fixture
def platform_overrides() -> dict[str, Any]:
    """Override in a test module to change platform settings."""
    return {}


# ---------------------------------------------------------------------------
# App + client fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
async def app(tmp_path: Path, platform_overrides: dict[str, Any]) -> AsyncIterator[Any]:
    """Create a test app backed by a temporary database."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text(build_config(tmp_path, **platform_overrides))

    old_config = os.environ.get("CONFIG_PATH")
    os.environ["CONFIG_PATH"] = str(config_path)

    clear_settings_cache()
    reset_app_state()

    test_app = create_app()
    async with lifespan(test_app):
        yield test_app

    reset_app_state()
    clear_settings_cache()
    if old_config is None:
        os.environ.pop("CONFIG_PATH", None)
    else:
        os.environ["CONFIG_PATH"] = old_config


@pytest.fixture
async def client(app: Any) -> AsyncIterator[AsyncClient]:
    """Create an async HTTP client for the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Task lifecycle helper functions
# ---------------------------------------------------------------------------
async def post_task(client: AsyncClient, requester_id: str = REQUESTER_ID, **overrides: Any) -> Any:
    """Create a task via POST /tasks and return the response."""
    return await client.post("/tasks", json=task_payload(**overrides), headers=caller(requester_id))


async def transition(
    client: AsyncClient,
    task_id: str,
    action: str,
    user_id: str,
    body: dict[str, Any] | None = None,
) -> Any:
    """POST /tasks/{task_id}/{action} as ``user_id``."""
    if body is None:
        return await client.post(f"/tasks/{task_id}/{action}", headers=caller(user_id))
    return await client.post(f"/tasks/{task_id}/{action}", json=body, headers=caller(user_id))


async def get_wallet(client: AsyncClient, user_id: str) -> dict[str, Any]:
    response = await client.get("/wallets/me", headers=caller(user_id))
    assert response.status_code == 200, response.text
    return response.json()
