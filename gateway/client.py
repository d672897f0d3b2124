"""Blocking HTTP client for the gateway's admin, wallet and usage endpoints.

Listing services and scripts use this to register APIs, fund wallets and read
usage without speaking raw HTTP. Proxied calls go through :meth:`call`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import requests

Amount = Union[int, float, str, Decimal]


class GatewayClientError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


def _json_amount(value: Amount) -> Union[int, float, str]:
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class GatewayClient:
    base_url: str
    admin_token: Optional[str] = None
    wallet_header: str = "X-Wallet-Address"
    timeout_seconds: float = 10.0
    session: requests.Session = field(default_factory=requests.Session)

    def _url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.admin_token:
            headers["X-Admin-Token"] = self.admin_token
        return headers

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            response = self.session.request(
                method,
                self._url(path),
                json=json,
                params={key: value for key, value in (params or {}).items() if value is not None},
                headers=self._headers(),
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise GatewayClientError(f"{method} {path} failed: {exc}") from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None
        if response.status_code >= 400:
            message = payload.get("error") if isinstance(payload, dict) else None
            raise GatewayClientError(
                message or f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
                body=payload,
            )
        return payload

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------
    def register(
        self,
        slug: str,
        upstream_base_url: str,
        price_per_call: Amount,
        owner_wallet: str,
        listing_id: str,
    ) -> str:
        payload = self._request(
            "POST",
            "/gateway/register",
            json={
                "slug": slug,
                "originalBaseUrl": upstream_base_url,
                "pricePerCall": _json_amount(price_per_call),
                "owner": owner_wallet,
                "apiId": listing_id,
            },
        )
        return str(payload["gatewayUrl"])

    def unregister(self, slug: str, owner_wallet: str) -> None:
        self._request("DELETE", f"/gateway/apis/{slug}", json={"owner": owner_wallet})

    def list_registered(self) -> List[Dict[str, Any]]:
        return list(self._request("GET", "/gateway/apis")["apis"])

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/gateway/health")

    # ------------------------------------------------------------------
    # Wallets
    # ------------------------------------------------------------------
    def top_up(self, wallet: str, amount: Amount) -> Decimal:
        payload = self._request(
            "POST",
            "/gateway/topup",
            json={"wallet": wallet, "amount": _json_amount(amount)},
        )
        return Decimal(str(payload["newBalance"]))

    def get_balance(self, wallet: str) -> Decimal:
        payload = self._request("GET", f"/gateway/balance/{wallet}")
        return Decimal(str(payload["balance"]))

    def ledger_events(self, wallet: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        payload = self._request("GET", "/gateway/ledger/events", params={"wallet": wallet, "limit": limit})
        return list(payload["events"])

    # ------------------------------------------------------------------
    # Usage
    # ------------------------------------------------------------------
    def record_usage(
        self,
        listing_id: str,
        user_address: str,
        success: bool,
        cost: Amount,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        payload = self._request(
            "POST",
            f"/api/listings/{listing_id}/usage",
            json={
                "user_address": user_address,
                "success": success,
                "error": error,
                "cost": _json_amount(cost),
            },
        )
        return payload["data"]

    def usage(self, listing_id: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        path = f"/api/listings/{listing_id}/usage" if listing_id else "/api/usage"
        return list(self._request("GET", path, params={"limit": limit})["data"])

    def stats(self, owner: Optional[str] = None, time_range: Optional[str] = None) -> Dict[str, Any]:
        payload = self._request(
            "GET",
            "/api/usage/stats/summary",
            params={"owner": owner, "timeRange": time_range},
        )
        return payload["data"]

    # ------------------------------------------------------------------
    # Proxied calls
    # ------------------------------------------------------------------
    def call(
        self,
        slug: str,
        wallet: str,
        path: str = "",
        *,
        method: str = "GET",
        **kwargs: Any,
    ) -> requests.Response:
        """Call a registered API through the gateway and return the raw response.

        Non-2xx responses are returned as-is so callers can inspect the
        ``X-Gateway-Cost`` header on upstream 4xx replies.
        """
        headers = dict(kwargs.pop("headers", None) or {})
        headers[self.wallet_header] = wallet
        url = self._url(f"{slug}/{path.lstrip('/')}" if path else slug)
        try:
            return self.session.request(method, url, headers=headers, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise GatewayClientError(f"{method} {url} failed: {exc}") from exc


__all__ = ["GatewayClient", "GatewayClientError"]
