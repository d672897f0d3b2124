import json
from decimal import Decimal
from pathlib import Path

import pytest

from gateway.errors import NotFoundError, SlugConflictError, UnauthorizedOwnerError, ValidationError
from gateway.registry import Registry


def register_weather(registry: Registry, owner: str = "0xowner", price="0.01") -> str:
    return registry.register("weather", "https://api.weather.example/v1/", price, owner, "listing-1")


def test_register_and_resolve(tmp_path: Path):
    registry = Registry(tmp_path / "registry.json", public_base_url="https://gw.example/")

    gateway_url = register_weather(registry)

    assert gateway_url == "https://gw.example/weather"
    record = registry.resolve("weather")
    assert record.upstream_base_url == "https://api.weather.example/v1"
    assert record.price_per_call == Decimal("0.01")
    assert record.owner_wallet == "0xowner"
    assert record.listing_id == "listing-1"
    assert registry.find_by_listing("listing-1") == record
    assert registry.count() == 1


def test_registry_persists_and_reloads(tmp_path: Path):
    path = tmp_path / "registry.json"
    register_weather(Registry(path))

    stored = json.loads(path.read_text())
    assert stored["weather"]["price_per_call"] == "0.01"

    reloaded = Registry(path)
    assert reloaded.resolve("weather").price_per_call == Decimal("0.01")


def test_missing_fields_are_listed():
    registry = Registry()
    with pytest.raises(ValidationError) as excinfo:
        registry.register("weather", None, "1", "", "listing-1")

    assert excinfo.value.fields == ["upstream_base_url", "owner_wallet"]
    assert excinfo.value.message.startswith("Missing required fields")


@pytest.mark.parametrize(
    "slug, base_url, price, field",
    [
        ("bad slug", "https://x.example", "1", "slug"),
        ("-leading", "https://x.example", "1", "slug"),
        ("gateway", "https://x.example", "1", "slug"),
        ("ok", "ftp://x.example", "1", "upstream_base_url"),
        ("ok", "not a url", "1", "upstream_base_url"),
        ("ok", "https://x.example", "-1", "price_per_call"),
        ("ok", "https://x.example", "free", "price_per_call"),
    ],
)
def test_invalid_registrations_are_rejected(slug, base_url, price, field):
    registry = Registry()
    with pytest.raises(ValidationError) as excinfo:
        registry.register(slug, base_url, price, "0xowner", "listing-1")
    assert excinfo.value.fields == [field]
    assert registry.count() == 0


def test_zero_price_is_allowed():
    registry = Registry()
    register_weather(registry, price=0)
    assert registry.resolve("weather").price_per_call == Decimal("0")


def test_unknown_slug_echoes_slug_with_hint():
    with pytest.raises(NotFoundError) as excinfo:
        Registry().resolve("nonexistent")

    body = excinfo.value.to_body()
    assert excinfo.value.status_code == 404
    assert body["error"] == "API not found"
    assert body["slug"] == "nonexistent"
    assert "/gateway/apis" in body["hint"]


def test_overwrite_policy_replaces_registration():
    registry = Registry()
    register_weather(registry)
    register_weather(registry, owner="0xother", price="0.05")

    record = registry.resolve("weather")
    assert record.owner_wallet == "0xother"
    assert record.price_per_call == Decimal("0.05")
    assert record.registration_count == 2


def test_owner_policy_blocks_other_wallets():
    registry = Registry(conflict_policy="owner")
    register_weather(registry)
    register_weather(registry, price="0.02")

    with pytest.raises(UnauthorizedOwnerError):
        register_weather(registry, owner="0xother")
    assert registry.resolve("weather").price_per_call == Decimal("0.02")


def test_reject_policy_refuses_reregistration():
    registry = Registry(conflict_policy="reject")
    register_weather(registry)

    with pytest.raises(SlugConflictError) as excinfo:
        register_weather(registry)
    assert excinfo.value.status_code == 409


def test_unknown_conflict_policy():
    with pytest.raises(ValueError):
        Registry(conflict_policy="first-wins")


def test_unregister_requires_owner(tmp_path: Path):
    audit = tmp_path / "audit.log"
    registry = Registry(tmp_path / "registry.json", audit_log_path=audit)
    register_weather(registry)

    with pytest.raises(UnauthorizedOwnerError):
        registry.unregister("weather", "0xintruder")
    with pytest.raises(NotFoundError):
        registry.unregister("missing", "0xowner")

    registry.unregister("weather", "0xowner")
    assert registry.count() == 0

    events = [json.loads(line)["event"] for line in audit.read_text().splitlines()]
    assert events == ["register", "unregister"]


def test_all_registrations_sorted_by_slug():
    registry = Registry()
    registry.register("zeta", "https://z.example", 1, "0xa", "l-z")
    registry.register("alpha", "https://a.example", 1, "0xa", "l-a")

    assert [record.slug for record in registry.all_registrations()] == ["alpha", "zeta"]


def test_price_beyond_decimal_precision_is_rejected():
    registry = Registry()
    with pytest.raises(ValidationError) as excinfo:
        registry.register("weather", "https://x.example", "12345678901234567890123456789", "0xowner", "listing-1")
    assert excinfo.value.fields == ["price_per_call"]
    assert registry.count() == 0
