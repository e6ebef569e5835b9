"""Configuration loading tests."""

from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from errand_ledger_service.config import Settings, clear_settings_cache, get_settings

VALID_CONFIG = """\
service:
  name: "errand-ledger"
  version: "0.1.0"
server:
  host: "0.0.0.0"
  port: 8010
  log_level: "info"
logging:
  level: "INFO"
  directory: "data/logs"
database:
  path: "data/errand-ledger.db"
request:
  max_body_size: 1048576
platform:
  commission_percentage: 10
  minimum_task_amount: 100
  maximum_task_amount: 50000
  payment_methods: ["card", "bank_transfer", "wallet"]
  supported_categories: ["delivery", "pickup", "errand", "other"]
  maintenance_mode: false
  runner_stake_required: true
  operator_id: "u-platform-operator"
payment_gateway:
  merchant_code: "MX123"
  environment: "sandbox"
  sandbox_checkout_url: "https://sandbox.example.test/checkout"
  production_checkout_url: "https://pay.example.test/checkout"
  currency: "NGN"
  country: "NG"
  locale: "en"
  return_url: "http://localhost:8010/payments/return"
  pending_timeout_seconds: 1800
"""


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    def _write(content: str):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(content)
        monkeypatch.setenv("CONFIG_PATH", str(config_path))
        clear_settings_cache()
        return config_path

    return _write


@pytest.mark.unit
def test_config_loads_from_yaml(config_file):
    """Valid config loads without error."""
    config_file(VALID_CONFIG)

    settings = get_settings()

    assert isinstance(settings, Settings)
    assert settings.service.name == "errand-ledger"
    assert settings.platform.commission_percentage == 10
    assert settings.platform.supported_categories == ["delivery", "pickup", "errand", "other"]
    assert settings.platform.revenue_account_id is None
    assert settings.payment_gateway.environment == "sandbox"


@pytest.mark.unit
def test_settings_are_cached_until_cleared(config_file):
    path = config_file(VALID_CONFIG)
    first = get_settings()
    assert get_settings() is first

    path.write_text(VALID_CONFIG.replace("commission_percentage: 10", "commission_percentage: 15"))
    assert get_settings() is first

    clear_settings_cache()
    assert get_settings().platform.commission_percentage == 15


@pytest.mark.unit
def test_config_rejects_unknown_keys(config_file):
    config_file(VALID_CONFIG + "unexpected_section:\n  value: 1\n")

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_config_requires_platform_section(config_file):
    start = VALID_CONFIG.index("platform:")
    end = VALID_CONFIG.index("payment_gateway:")
    config_file(VALID_CONFIG[:start] + VALID_CONFIG[end:])

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_config_rejects_unknown_gateway_environment(config_file):
    config_file(VALID_CONFIG.replace('environment: "sandbox"', 'environment: "staging"'))

    with pytest.raises(ValidationError):
        get_settings()


@pytest.mark.unit
def test_config_rejects_non_mapping_file(config_file):
    config_file("- just\n- a list\n")

    with pytest.raises(ValueError, match="Invalid config file"):
        get_settings()


@pytest.mark.unit
def test_config_path_defaults_to_working_directory(tmp_path, monkeypatch):
    monkeypatch.delenv("CONFIG_PATH", raising=False)
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text(VALID_CONFIG)
    clear_settings_cache()

    assert get_settings().server.port == 8010
    assert "CONFIG_PATH" not in os.environ
