"""Unit test fixtures: auto-clear caches between tests."""

import pytest

from errand_ledger_service.config import clear_settings_cache
from errand_ledger_service.core.state import reset_app_state
from tests.helpers import build_marketplace


@pytest.fixture(autouse=True)
def _clear_caches():
    """Clear settings cache and app state between tests."""
    clear_settings_cache()
    reset_app_state()
    yield
    clear_settings_cache()
    reset_app_state()


@pytest.fixture
def market(tmp_path):
    """Fully wired services over a fresh database."""
    marketplace = build_marketplace(str(tmp_path / "ledger.db"))
    try:
        yield marketplace
    finally:
        marketplace.close()
