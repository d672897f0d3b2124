"""HTTP API exposing the metered gateway, its admin surface and usage stats."""
from __future__ import annotations

import logging
import threading
import time
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Union

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field

from .config import GatewaySettings
from .errors import GatewayError, NotFoundError, amount_to_json
from .ledger import Ledger
from .registry import Registration, Registry
from .router import GatewayRequest, GatewayRouter
from .usage import StatsService, UsageRecorder

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]

Amount = Union[str, int, float]


class RateLimiter:
    """Simple sliding-window rate limiter."""

    def __init__(self, max_calls: int, window_seconds: int) -> None:
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._events: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()

    def allow(self, key: str) -> bool:
        now = time.monotonic()
        with self._lock:
            queue = self._events.setdefault(key, deque())
            cutoff = now - self.window_seconds
            while queue and queue[0] < cutoff:
                queue.popleft()
            if len(queue) >= self.max_calls:
                return False
            queue.append(now)
            return True


class RegisterPayload(BaseModel):
    slug: Optional[str] = Field(default=None, max_length=128)
    originalBaseUrl: Optional[str] = Field(default=None, max_length=2048)
    pricePerCall: Optional[Amount] = None
    owner: Optional[str] = Field(default=None, max_length=128)
    apiId: Optional[str] = Field(default=None, max_length=128)


class RegisterResponse(BaseModel):
    success: bool
    gatewayUrl: str
    message: str


class UnregisterPayload(BaseModel):
    owner: Optional[str] = Field(default=None, max_length=128)


class TopUpPayload(BaseModel):
    wallet: Optional[str] = Field(default=None, max_length=128)
    amount: Optional[Amount] = None


class UsagePayload(BaseModel):
    user_address: Optional[str] = Field(default=None, max_length=128)
    success: Optional[bool] = None
    error: Optional[str] = Field(default=None, max_length=2048)
    cost: Optional[Amount] = None


class ApiRecord(BaseModel):
    slug: str
    originalBaseUrl: str
    pricePerCall: Union[int, float]
    owner: str
    apiId: str
    gatewayUrl: str
    registeredAt: str
    updatedAt: str


class ApisResponse(BaseModel):
    apis: List[ApiRecord]
    count: int


class HealthResponse(BaseModel):
    status: str
    registeredApis: int
    timestamp: str


class LedgerEvent(BaseModel):
    timestamp: str
    event: str
    wallet: str
    amount: str
    balance: str
    delta: Optional[str] = None
    reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class LedgerEventsResponse(BaseModel):
    events: List[LedgerEvent]


def _api_record(registry: Registry, registration: Registration) -> ApiRecord:
    return ApiRecord(
        slug=registration.slug,
        originalBaseUrl=registration.upstream_base_url,
        pricePerCall=amount_to_json(registration.price_per_call),
        owner=registration.owner_wallet,
        apiId=registration.listing_id,
        gatewayUrl=registry.gateway_url(registration.slug),
        registeredAt=registration.registered_at,
        updatedAt=registration.updated_at,
    )


def create_app(
    registry: Registry,
    ledger: Ledger,
    recorder: UsageRecorder,
    settings: GatewaySettings,
    *,
    stats: Optional[StatsService] = None,
    upstream_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    router = GatewayRouter(
        registry,
        ledger,
        recorder,
        wallet_header=settings.wallet_header,
        timeout_seconds=settings.upstream_timeout_seconds,
        transport=upstream_transport,
    )
    stats = stats or StatsService(recorder)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        await router.aclose()

    app = FastAPI(title="Pay-per-call Gateway", version="1.0.0", lifespan=lifespan)
    app.state.router = router

    per_minute_limiter = RateLimiter(
        max_calls=settings.registration_rate_limit_per_minute,
        window_seconds=60,
    )
    burst_limiter = RateLimiter(
        max_calls=settings.registration_rate_limit_burst,
        window_seconds=10,
    )

    def _provided_token(request: Request) -> Optional[str]:
        return request.headers.get("X-Admin-Token")

    async def require_admin(request: Request) -> None:
        token = settings.api_admin_token
        if not token:
            return
        provided = _provided_token(request)
        if provided != token:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")

    async def require_view_access(request: Request) -> None:
        admin_token = settings.api_admin_token
        viewer_tokens = settings.viewer_tokens
        provided = _provided_token(request)
        if admin_token:
            if provided == admin_token:
                return
            if viewer_tokens:
                if provided in viewer_tokens:
                    return
                raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Viewer token required")
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Admin token required")
        if viewer_tokens:
            if provided in viewer_tokens:
                return
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Viewer token required")
        # No tokens configured => open access

    def resolve_limit(limit: Optional[int]) -> int:
        if limit is None:
            return settings.usage_default_limit
        return min(limit, settings.usage_max_limit)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(_: Request, exc: GatewayError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(HTTPException)
    async def http_error_handler(_: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        fields = []
        for error in exc.errors():
            location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query", "path")]
            if location:
                fields.append(".".join(location))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "Invalid request", "fields": fields},
        )

    # ======================================================
    # ADMIN / REGISTRATION
    # ======================================================

    @app.post("/gateway/register", response_model=RegisterResponse)
    async def register(
        payload: RegisterPayload,
        request: Request,
        _: Any = Depends(require_admin),
    ) -> RegisterResponse:
        client_ip = request.client.host if request.client else None
        limiter_keys = [f"owner:{payload.owner}"] if payload.owner else []
        if client_ip:
            limiter_keys.append(f"ip:{client_ip}")
        for key in limiter_keys:
            if not per_minute_limiter.allow(key) or not burst_limiter.allow(key):
                raise HTTPException(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    detail="Too many registration attempts; slow down",
                )

        gateway_url = registry.register(
            payload.slug,
            payload.originalBaseUrl,
            payload.pricePerCall,
            payload.owner,
            payload.apiId,
        )
        return RegisterResponse(
            success=True,
            gatewayUrl=gateway_url,
            message="API registered with gateway",
        )

    @app.delete("/gateway/apis/{slug}")
    async def unregister(
        slug: str,
        payload: Optional[UnregisterPayload] = None,
        _: Any = Depends(require_admin),
    ) -> Dict[str, Any]:
        registry.unregister(slug, payload.owner if payload else None)
        return {"success": True, "slug": slug}

    @app.post("/gateway/topup")
    async def top_up(payload: TopUpPayload, _: Any = Depends(require_admin)) -> Dict[str, Any]:
        new_balance = ledger.top_up(payload.wallet or "", payload.amount, reason="top_up")
        return {"success": True, "wallet": payload.wallet, "newBalance": amount_to_json(new_balance)}

    @app.get("/gateway/balance/{wallet}")
    async def get_balance(wallet: str) -> Dict[str, Any]:
        return {"wallet": wallet, "balance": amount_to_json(ledger.get_balance(wallet))}

    @app.get("/gateway/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="healthy",
            registeredApis=registry.count(),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    @app.get("/gateway/apis", response_model=ApisResponse)
    async def list_registered() -> ApisResponse:
        apis = [_api_record(registry, record) for record in registry.all_registrations()]
        return ApisResponse(apis=apis, count=len(apis))

    @app.get("/gateway/ledger/events", response_model=LedgerEventsResponse)
    async def ledger_events(
        wallet: Optional[str] = Query(default=None),
        limit: int = Query(default=100, ge=1, le=1000),
        _: Any = Depends(require_view_access),
    ) -> LedgerEventsResponse:
        entries = ledger.read_journal(wallet=wallet, limit=limit)
        return LedgerEventsResponse(events=[LedgerEvent(**entry) for entry in entries])

    # ======================================================
    # USAGE / STATS
    # ======================================================

    @app.post("/api/listings/{listing_id}/usage")
    async def record_usage(listing_id: str, payload: UsagePayload) -> Dict[str, Any]:
        registration = registry.find_by_listing(listing_id)
        if registration is None:
            raise NotFoundError("API listing not found")
        event = recorder.record(
            listing_id,
            payload.user_address,
            payload.success,
            payload.error,
            payload.cost,
            slug=registration.slug,
            owner_wallet=registration.owner_wallet,
        )
        listing_stats = recorder.listing_stats(listing_id)
        return {
            "success": True,
            "data": {"usage": event.to_json(), "stats": listing_stats.to_json()},
        }

    @app.get("/api/listings/{listing_id}/usage")
    async def usage_by_listing(
        listing_id: str,
        limit: Optional[int] = Query(default=None, ge=1),
    ) -> Dict[str, Any]:
        events = stats.usage_by_listing(listing_id, resolve_limit(limit))
        return {"success": True, "data": [event.to_json() for event in events]}

    @app.get("/api/listings/{listing_id}/stats")
    async def listing_stats(listing_id: str) -> Dict[str, Any]:
        if registry.find_by_listing(listing_id) is None:
            raise NotFoundError("API listing not found")
        return {"success": True, "data": recorder.listing_stats(listing_id).to_json()}

    @app.get("/api/usage")
    async def recent_usage(
        limit: Optional[int] = Query(default=None, ge=1),
        owner: Optional[str] = Query(default=None),
    ) -> Dict[str, Any]:
        events = stats.recent_usage(resolve_limit(limit), owner=owner)
        return {"success": True, "data": [event.to_json() for event in events]}

    @app.get("/api/usage/owner/{wallet}")
    async def usage_by_owner(
        wallet: str,
        limit: Optional[int] = Query(default=None, ge=1),
    ) -> Dict[str, Any]:
        events = stats.usage_by_owner(wallet, resolve_limit(limit))
        return {"success": True, "data": [event.to_json() for event in events]}

    @app.get("/api/usage/stats/summary")
    async def stats_summary(
        owner: Optional[str] = Query(default=None),
        time_range: Optional[str] = Query(default=None, alias="timeRange"),
    ) -> Dict[str, Any]:
        return {"success": True, "data": stats.summarize(owner=owner, time_range=time_range)}

    # ======================================================
    # GATEWAY (must stay last: it matches any path)
    # ======================================================

    async def proxy(request: Request, slug: str, path: str = "") -> Response:
        gateway_request = GatewayRequest(
            method=request.method,
            slug=slug,
            path=path,
            query=request.url.query,
            headers=list(request.headers.items()),
            body=await request.body(),
        )
        result = await router.handle(gateway_request)
        response = Response(content=result.body, status_code=result.status_code)
        for key, value in result.headers:
            response.raw_headers.append((key.lower().encode("latin-1"), value.encode("latin-1")))
        return response

    app.add_api_route("/{slug}", proxy, methods=PROXY_METHODS, include_in_schema=False)
    app.add_api_route("/{slug}/{path:path}", proxy, methods=PROXY_METHODS, include_in_schema=False)

    return app


def run_api(app: FastAPI, settings: GatewaySettings) -> None:
    """Run the FastAPI app using uvicorn in the main thread.

    uvicorn keeps its own signal handlers here, so shutdown goes through the
    app lifespan and closes the upstream client. Its log level follows
    ``GATEWAY_LOG_LEVEL``.
    """
    import uvicorn  # Imported lazily to avoid mandatory dependency in tests

    config = uvicorn.Config(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
        root_path=settings.api_root_path,
    )
    server = uvicorn.Server(config)
    server.run()


__all__ = ["create_app", "run_api"]
