"""Append-only usage events, per-listing aggregates and read-side stats."""
from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .errors import StorageError, ValidationError, amount_to_json
from .ledger import ZERO, format_amount, parse_amount

logger = logging.getLogger(__name__)

TIME_RANGES: Dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso8601(value: str) -> datetime:
    candidate = value
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    parsed = datetime.fromisoformat(candidate)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class UsageEvent:
    id: str
    listing_id: str
    caller_wallet: str
    success: bool
    error: Optional[str]
    cost: Decimal
    timestamp: str
    slug: Optional[str] = None
    owner_wallet: Optional[str] = None
    upstream_status: Optional[int] = None
    method: Optional[str] = None
    path: Optional[str] = None

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "listing_id": self.listing_id,
            "caller_wallet": self.caller_wallet,
            "success": self.success,
            "error": self.error,
            "cost": str(self.cost),
            "timestamp": self.timestamp,
            "slug": self.slug,
            "owner_wallet": self.owner_wallet,
            "upstream_status": self.upstream_status,
            "method": self.method,
            "path": self.path,
        }

    def to_json(self) -> Dict[str, Any]:
        record = self.to_record()
        record["cost"] = amount_to_json(self.cost)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "UsageEvent":
        status = record.get("upstream_status")
        return cls(
            id=str(record["id"]),
            listing_id=str(record["listing_id"]),
            caller_wallet=str(record["caller_wallet"]),
            success=bool(record["success"]),
            error=record.get("error"),
            cost=Decimal(str(record.get("cost", "0"))),
            timestamp=str(record["timestamp"]),
            slug=record.get("slug"),
            owner_wallet=record.get("owner_wallet"),
            upstream_status=int(status) if status is not None else None,
            method=record.get("method"),
            path=record.get("path"),
        )


@dataclass(frozen=True)
class ListingStats:
    total_calls: int
    total_revenue: Decimal

    def to_json(self) -> Dict[str, Any]:
        return {
            "total_calls": self.total_calls,
            "total_revenue": format_amount(self.total_revenue),
        }


class UsageRecorder:
    """Stores usage events as JSON lines and keeps running totals per listing.

    The event append and the aggregate bump happen under one lock, and every
    reader takes the same lock, so an event is never visible without its
    aggregate or the reverse. Aggregates are rebuilt from the log on load.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = path
        self._lock = threading.RLock()
        self._events: List[UsageEvent] = []
        self._stats: Dict[str, ListingStats] = {}
        self._load()

    def _load(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            return
        events: List[UsageEvent] = []
        with self.path.open("r", encoding="utf-8") as handle:
            for line_no, line in enumerate(handle, start=1):
                if not line.strip():
                    continue
                try:
                    events.append(UsageEvent.from_record(json.loads(line)))
                except (json.JSONDecodeError, KeyError, ValueError, ArithmeticError) as exc:
                    logger.error("Skipping malformed usage line %s in %s: %s", line_no, self.path, exc)
        self._events = events
        self._stats = {}
        for event in events:
            self._stats[event.listing_id] = self._bump(self._stats.get(event.listing_id), event.cost)
        logger.info("Loaded %s usage events from %s", len(events), self.path)

    def _append(self, event: UsageEvent) -> None:
        if self.path is None:
            return
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                json.dump(event.to_record(), handle, separators=(",", ":"))
                handle.write("\n")
        except OSError as exc:
            raise StorageError(f"Failed to persist usage event: {exc}") from exc

    @staticmethod
    def _bump(current: Optional[ListingStats], cost: Decimal) -> ListingStats:
        if current is None:
            return ListingStats(total_calls=1, total_revenue=cost)
        return ListingStats(
            total_calls=current.total_calls + 1,
            total_revenue=current.total_revenue + cost,
        )

    def record(
        self,
        listing_id: str,
        caller_wallet: str,
        success: Any,
        error: Optional[str],
        cost: Any,
        *,
        slug: Optional[str] = None,
        owner_wallet: Optional[str] = None,
        upstream_status: Optional[int] = None,
        method: Optional[str] = None,
        path: Optional[str] = None,
    ) -> UsageEvent:
        missing = [
            name
            for name, value in (
                ("listing_id", listing_id),
                ("caller_wallet", caller_wallet),
                ("success", success),
                ("cost", cost),
            )
            if value is None or value == ""
        ]
        if missing:
            raise ValidationError("Missing required fields: " + ", ".join(missing), fields=missing)
        if not isinstance(success, bool):
            raise ValidationError("success must be a boolean", fields=["success"])
        amount = parse_amount(cost, field="cost")
        if amount < ZERO:
            raise ValidationError("cost must not be negative", fields=["cost"])

        event = UsageEvent(
            id=uuid.uuid4().hex,
            listing_id=str(listing_id),
            caller_wallet=str(caller_wallet),
            success=success,
            error=error or None,
            cost=amount,
            timestamp=isoformat(utcnow()),
            slug=slug,
            owner_wallet=owner_wallet,
            upstream_status=upstream_status,
            method=method,
            path=path,
        )
        with self._lock:
            self._append(event)
            self._events.append(event)
            self._stats[event.listing_id] = self._bump(self._stats.get(event.listing_id), amount)
        return event

    def listing_stats(self, listing_id: str) -> ListingStats:
        with self._lock:
            return self._stats.get(listing_id) or ListingStats(total_calls=0, total_revenue=ZERO)

    def events(self) -> List[UsageEvent]:
        with self._lock:
            return list(self._events)


class StatsService:
    """Read-only queries over the recorder's events."""

    def __init__(self, recorder: UsageRecorder) -> None:
        self.recorder = recorder

    @staticmethod
    def _window_start(time_range: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
        if time_range is None or time_range == "":
            return None
        window = TIME_RANGES.get(time_range)
        if window is None:
            raise ValidationError(
                "timeRange must be one of " + ", ".join(TIME_RANGES),
                fields=["timeRange"],
            )
        return (now or utcnow()) - window

    @staticmethod
    def _newest_first(events: Iterable[UsageEvent], limit: Optional[int]) -> List[UsageEvent]:
        ordered = list(reversed(list(events)))
        if limit is not None:
            ordered = ordered[:limit]
        return ordered

    def summarize(
        self,
        owner: Optional[str] = None,
        time_range: Optional[str] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        since = self._window_start(time_range, now)
        total = 0
        successful = 0
        revenue = ZERO
        for event in self.recorder.events():
            if owner and event.owner_wallet != owner:
                continue
            if since is not None and parse_iso8601(event.timestamp) < since:
                continue
            total += 1
            if event.success:
                successful += 1
            revenue += event.cost
        return {
            "totalRequests": total,
            "successfulRequests": successful,
            "failedRequests": total - successful,
            "totalRevenue": amount_to_json(revenue),
        }

    def usage_by_listing(self, listing_id: str, limit: Optional[int] = None) -> List[UsageEvent]:
        events = (event for event in self.recorder.events() if event.listing_id == listing_id)
        return self._newest_first(events, limit)

    def usage_by_owner(self, owner: str, limit: Optional[int] = None) -> List[UsageEvent]:
        events = (event for event in self.recorder.events() if event.owner_wallet == owner)
        return self._newest_first(events, limit)

    def recent_usage(self, limit: Optional[int] = None, owner: Optional[str] = None) -> List[UsageEvent]:
        if owner:
            return self.usage_by_owner(owner, limit)
        return self._newest_first(self.recorder.events(), limit)


__all__ = [
    "ListingStats",
    "StatsService",
    "TIME_RANGES",
    "UsageEvent",
    "UsageRecorder",
]
