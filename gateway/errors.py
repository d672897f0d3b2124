"""Error taxonomy shared by the gateway stores, router and HTTP API."""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional


def amount_to_json(value: Decimal) -> Any:
    """Render a Decimal as a JSON number, integral amounts as ints."""
    if value == value.to_integral_value():
        return int(value)
    return float(value)


class GatewayError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_body(self) -> Dict[str, Any]:
        return {"error": self.message}


class ValidationError(GatewayError):
    status_code = 400

    def __init__(self, message: str, fields: Optional[Iterable[str]] = None) -> None:
        super().__init__(message)
        self.fields: List[str] = list(fields or [])

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        if self.fields:
            body["fields"] = self.fields
        return body


class UnauthenticatedError(GatewayError):
    status_code = 401

    def __init__(self, message: str = "Authentication required", hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        if self.hint:
            body["hint"] = self.hint
        return body


class InsufficientBalanceError(GatewayError):
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal) -> None:
        super().__init__("Insufficient balance")
        self.required = required
        self.available = available

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        body["required"] = amount_to_json(self.required)
        body["available"] = amount_to_json(self.available)
        return body


class UnauthorizedOwnerError(GatewayError):
    status_code = 403


class NotFoundError(GatewayError):
    status_code = 404

    def __init__(
        self,
        message: str,
        *,
        slug: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.slug = slug
        self.hint = hint

    def to_body(self) -> Dict[str, Any]:
        body = super().to_body()
        if self.slug is not None:
            body["slug"] = self.slug
        if self.hint:
            body["hint"] = self.hint
        return body


class SlugConflictError(GatewayError):
    status_code = 409


class StorageError(GatewayError):
    status_code = 500


class UpstreamError(GatewayError):
    """Upstream network failure, timeout or 5xx. Never charged."""

    status_code = 502

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message, status_code=504 if timed_out else 502)
        self.timed_out = timed_out


__all__ = [
    "GatewayError",
    "ValidationError",
    "UnauthenticatedError",
    "InsufficientBalanceError",
    "UnauthorizedOwnerError",
    "NotFoundError",
    "SlugConflictError",
    "StorageError",
    "UpstreamError",
    "amount_to_json",
]
