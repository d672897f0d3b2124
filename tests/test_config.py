from pathlib import Path

import pytest
from pydantic import ValidationError

from gateway.config import BootstrapRegistration, GatewaySettings


def test_defaults(monkeypatch):
    monkeypatch.delenv("GATEWAY_API_ADMIN_TOKEN", raising=False)
    settings = GatewaySettings(_env_file=None)

    assert settings.wallet_header == "X-Wallet-Address"
    assert settings.api_port == 4021
    assert settings.slug_conflict_policy == "overwrite"
    assert settings.viewer_tokens == []


def test_environment_overrides(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("GATEWAY_PUBLIC_BASE_URL", "https://gw.example/")
    monkeypatch.setenv("GATEWAY_VIEWER_TOKENS", "alpha, beta gamma")
    monkeypatch.setenv("GATEWAY_SLUG_CONFLICT_POLICY", "Owner")
    monkeypatch.setenv("GATEWAY_LEDGER__BALANCES", str(tmp_path / "balances.json"))
    monkeypatch.setenv("GATEWAY_LOG_LEVEL", "debug")

    settings = GatewaySettings(_env_file=None)

    assert settings.public_base_url == "https://gw.example"
    assert settings.viewer_tokens == ["alpha", "beta", "gamma"]
    assert settings.slug_conflict_policy == "owner"
    assert settings.ledger.balances == tmp_path / "balances.json"
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    "name, value",
    [
        ("GATEWAY_PUBLIC_BASE_URL", "gw.example"),
        ("GATEWAY_SLUG_CONFLICT_POLICY", "first-wins"),
        ("GATEWAY_UPSTREAM_TIMEOUT_SECONDS", "0"),
        ("GATEWAY_WALLET_HEADER", "X Wallet"),
        ("GATEWAY_LOG_LEVEL", "LOUD"),
    ],
)
def test_invalid_values_are_rejected(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(ValidationError):
        GatewaySettings(_env_file=None)


def test_bootstrap_registration_coerces_numeric_price():
    entry = BootstrapRegistration.model_validate(
        {
            "slug": "weather",
            "upstream_base_url": "https://upstream.example",
            "price_per_call": 0.25,
            "owner_wallet": "0xowner",
            "listing_id": "listing-1",
        }
    )
    assert entry.price_per_call == "0.25"
