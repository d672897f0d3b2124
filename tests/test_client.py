from decimal import Decimal
from unittest.mock import MagicMock

import pytest
import requests

from gateway.client import GatewayClient, GatewayClientError


def fake_response(status_code, payload):
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = payload
    return response


def build_client(*responses):
    session = MagicMock(spec=requests.Session)
    session.request.side_effect = list(responses)
    return GatewayClient("http://gateway.test/", admin_token="secret", session=session), session


def test_register_posts_listing_payload():
    client, session = build_client(
        fake_response(200, {"success": True, "gatewayUrl": "http://gateway.test/weather"})
    )

    url = client.register("weather", "https://upstream.example", Decimal("0.01"), "0xowner", "listing-1")

    assert url == "http://gateway.test/weather"
    method, target = session.request.call_args.args
    kwargs = session.request.call_args.kwargs
    assert (method, target) == ("POST", "http://gateway.test/gateway/register")
    assert kwargs["json"]["pricePerCall"] == "0.01"
    assert kwargs["json"]["apiId"] == "listing-1"
    assert kwargs["headers"]["X-Admin-Token"] == "secret"


def test_balance_and_top_up_return_decimals():
    client, _ = build_client(
        fake_response(200, {"success": True, "wallet": "0xw", "newBalance": 500}),
        fake_response(200, {"wallet": "0xw", "balance": 12.5}),
    )

    assert client.top_up("0xw", 500) == Decimal("500")
    assert client.get_balance("0xw") == Decimal("12.5")


def test_error_responses_raise_with_status():
    client, _ = build_client(fake_response(402, {"error": "Insufficient balance"}))

    with pytest.raises(GatewayClientError) as excinfo:
        client.stats(owner="0xowner", time_range="24h")

    assert excinfo.value.status_code == 402
    assert str(excinfo.value) == "Insufficient balance"


def test_stats_drops_unset_query_params():
    client, session = build_client(fake_response(200, {"success": True, "data": {"totalRequests": 0}}))

    assert client.stats(owner="0xowner") == {"totalRequests": 0}
    assert session.request.call_args.kwargs["params"] == {"owner": "0xowner"}


def test_call_sends_wallet_header():
    upstream = MagicMock(spec=requests.Response)
    client, session = build_client(upstream)

    assert client.call("weather", "0xcaller", "forecast", params={"city": "Oslo"}) is upstream
    args = session.request.call_args
    assert args.args == ("GET", "http://gateway.test/weather/forecast")
    assert args.kwargs["headers"] == {"X-Wallet-Address": "0xcaller"}
    assert args.kwargs["params"] == {"city": "Oslo"}


def test_transport_failures_are_wrapped():
    client, _ = build_client(requests.ConnectionError("refused"))

    with pytest.raises(GatewayClientError):
        client.health()
