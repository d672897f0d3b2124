"""Request pipeline that meters and charges proxied upstream calls.

Every inbound call walks the same states::

    RESOLVING -> AUTHENTICATING -> AUTHORIZING -> FORWARDING
              -> SETTLING -> RECORDING -> RESPONDING

and may jump straight to RESPONDING with an error from any of the first
three. The caller's price is moved into a ledger hold during AUTHORIZING, so
a call is only forwarded once it is paid for; SETTLING then either captures
the hold for the API owner (upstream status below 500) or releases it back
to the caller (5xx, timeout or network failure). No lock is held while the
upstream request is in flight.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Tuple

import httpx

from .errors import GatewayError, UnauthenticatedError, UpstreamError
from .ledger import ZERO, Hold, Ledger, format_amount
from .registry import Registration, Registry
from .usage import UsageEvent, UsageRecorder

logger = logging.getLogger(__name__)

COST_HEADER = "X-Gateway-Cost"
BALANCE_HEADER = "X-Gateway-Balance"

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}
# Dropped on the way upstream in addition to hop-by-hop headers.
GATEWAY_ONLY_HEADERS = {"host", "content-length", "x-admin-token"}
# httpx hands back a decoded body, so length and encoding no longer apply.
STALE_RESPONSE_HEADERS = {"content-length", "content-encoding"}


class RequestState(str, Enum):
    RESOLVING = "resolving"
    AUTHENTICATING = "authenticating"
    AUTHORIZING = "authorizing"
    FORWARDING = "forwarding"
    SETTLING = "settling"
    RECORDING = "recording"
    RESPONDING = "responding"


@dataclass
class GatewayRequest:
    method: str
    slug: str
    path: str = ""
    query: str = ""
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


@dataclass
class GatewayResponse:
    status_code: int
    body: bytes
    headers: List[Tuple[str, str]] = field(default_factory=list)
    failed_in: Optional[RequestState] = None
    charged: Decimal = ZERO
    usage_event: Optional[UsageEvent] = None

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers:
            if key.lower() == lowered:
                return value
        return None


def error_response(
    exc: GatewayError,
    state: Optional[RequestState] = None,
    headers: Optional[List[Tuple[str, str]]] = None,
) -> GatewayResponse:
    payload = json.dumps(exc.to_body()).encode("utf-8")
    return GatewayResponse(
        status_code=exc.status_code,
        body=payload,
        headers=[("content-type", "application/json")] + list(headers or []),
        failed_in=state,
    )


class GatewayRouter:
    """Routes ``/<slug>/<path>`` calls through registry, ledger and recorder."""

    def __init__(
        self,
        registry: Registry,
        ledger: Ledger,
        recorder: UsageRecorder,
        *,
        wallet_header: str = "X-Wallet-Address",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.recorder = recorder
        self.wallet_header = wallet_header
        self.timeout = httpx.Timeout(timeout_seconds)
        self._client = client or httpx.AsyncClient(
            timeout=self.timeout,
            transport=transport,
            follow_redirects=False,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def handle(self, request: GatewayRequest) -> GatewayResponse:
        state = RequestState.RESOLVING
        try:
            registration = self.registry.resolve(request.slug)

            state = RequestState.AUTHENTICATING
            caller = self._caller_wallet(request)

            state = RequestState.AUTHORIZING
            hold = self.ledger.reserve(caller, registration.price_per_call)
        except GatewayError as exc:
            logger.info(
                "Rejected %s /%s/%s during %s: %s",
                request.method,
                request.slug,
                request.path,
                state.value,
                exc.message,
            )
            return error_response(exc, state)

        try:
            return await self._forward_and_settle(request, registration, caller, hold)
        except Exception:
            logger.exception("Unexpected failure handling /%s/%s", request.slug, request.path)
            if hold.hold_id in {pending.hold_id for pending in self.ledger.pending_holds()}:
                self._release_quietly(hold)
            return error_response(GatewayError("Internal gateway error"), RequestState.RESPONDING)

    async def _forward_and_settle(
        self,
        request: GatewayRequest,
        registration: Registration,
        caller: str,
        hold: Hold,
    ) -> GatewayResponse:
        upstream: Optional[httpx.Response] = None
        failure: Optional[UpstreamError] = None
        try:
            upstream = await self._forward(request, registration)
        except httpx.TimeoutException as exc:
            failure = UpstreamError(f"Upstream timed out: {exc.__class__.__name__}", timed_out=True)
        except httpx.HTTPError as exc:
            failure = UpstreamError(f"Upstream request failed: {exc}")

        status = upstream.status_code if upstream is not None else None
        charge = status is not None and status < 500
        charged = ZERO
        balance: Optional[Decimal] = None
        settlement_error: Optional[GatewayError] = None
        try:
            if charge:
                result = self.ledger.capture(
                    hold,
                    registration.owner_wallet,
                    metadata={"slug": registration.slug, "listing_id": registration.listing_id},
                )
                charged = hold.amount
                balance = result.payer_balance
            else:
                balance = self.ledger.release(hold)
        except GatewayError as exc:
            logger.error("Settlement failed for /%s (hold %s): %s", registration.slug, hold.hold_id, exc.message)
            settlement_error = exc
            if charge:
                self._release_quietly(hold)

        if settlement_error is not None:
            error_message: Optional[str] = f"Settlement failed: {settlement_error.message}"
        elif failure is not None:
            error_message = failure.message
        elif status is not None and status >= 400:
            error_message = f"Upstream responded with status {status}"
        else:
            error_message = None

        event: Optional[UsageEvent] = None
        try:
            event = self.recorder.record(
                registration.listing_id,
                caller,
                settlement_error is None and status is not None and status < 400,
                error_message,
                charged,
                slug=registration.slug,
                owner_wallet=registration.owner_wallet,
                upstream_status=status,
                method=request.method,
                path="/" + request.path if request.path else "/",
            )
        except GatewayError as exc:
            # Settlement stands even when the usage append fails.
            logger.error("Failed to record usage for /%s: %s", registration.slug, exc.message)

        if settlement_error is not None:
            # A hold that could not be released stays pending and is refunded on the next load.
            response = error_response(settlement_error, RequestState.SETTLING)
            response.usage_event = event
            return response

        gateway_headers = [
            (COST_HEADER, format_amount(charged)),
            (BALANCE_HEADER, format_amount(balance)),
        ]

        if failure is not None:
            logger.warning(
                "Forwarding /%s/%s for %s failed (not charged): %s",
                registration.slug,
                request.path,
                caller,
                failure.message,
            )
            response = error_response(failure, RequestState.FORWARDING, gateway_headers)
            response.usage_event = event
            return response

        logger.info(
            "%s /%s/%s -> %s for %s (cost=%s balance=%s)",
            request.method,
            registration.slug,
            request.path,
            status,
            caller,
            format_amount(charged),
            format_amount(balance),
        )
        headers = [
            (key, value)
            for key, value in upstream.headers.multi_items()
            if key.lower() not in HOP_BY_HOP_HEADERS and key.lower() not in STALE_RESPONSE_HEADERS
        ]
        return GatewayResponse(
            status_code=upstream.status_code,
            body=upstream.content,
            headers=headers + gateway_headers,
            charged=charged,
            usage_event=event,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _caller_wallet(self, request: GatewayRequest) -> str:
        wallet = (request.header(self.wallet_header) or "").strip()
        if not wallet:
            raise UnauthenticatedError(hint=f"Include {self.wallet_header} header")
        return wallet

    def upstream_url(self, registration: Registration, request: GatewayRequest) -> str:
        url = registration.upstream_base_url
        if request.path:
            url = f"{url}/{request.path.lstrip('/')}"
        if request.query:
            url = f"{url}?{request.query}"
        return url

    def _upstream_headers(self, request: GatewayRequest) -> List[Tuple[str, str]]:
        dropped = HOP_BY_HOP_HEADERS | GATEWAY_ONLY_HEADERS | {self.wallet_header.lower()}
        return [(key, value) for key, value in request.headers if key.lower() not in dropped]

    async def _forward(self, request: GatewayRequest, registration: Registration) -> httpx.Response:
        outbound = self._client.build_request(
            request.method,
            self.upstream_url(registration, request),
            headers=self._upstream_headers(request),
            content=request.body or None,
            timeout=self.timeout,
        )
        logger.debug("Forwarding %s %s", outbound.method, outbound.url)
        return await self._client.send(outbound)

    def _release_quietly(self, hold: Hold) -> None:
        try:
            self.ledger.release(hold)
        except GatewayError as exc:
            logger.error("Could not release hold %s for %s: %s", hold.hold_id, hold.wallet, exc.message)


__all__ = [
    "BALANCE_HEADER",
    "COST_HEADER",
    "GatewayRequest",
    "GatewayResponse",
    "GatewayRouter",
    "RequestState",
]
