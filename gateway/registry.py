"""Slug registry binding public gateway routes to upstream APIs."""
from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .errors import (
    NotFoundError,
    SlugConflictError,
    StorageError,
    UnauthorizedOwnerError,
    ValidationError,
)
from .ledger import ZERO, format_amount, parse_amount

logger = logging.getLogger(__name__)

SLUG_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")
RESERVED_SLUGS = {"gateway", "api", "docs", "redoc", "openapi.json"}
CONFLICT_POLICIES = {"overwrite", "owner", "reject"}
DISCOVERY_HINT = "Use /gateway/apis to see available APIs"


@dataclass(frozen=True)
class Registration:
    slug: str
    upstream_base_url: str
    price_per_call: Decimal
    owner_wallet: str
    listing_id: str
    registered_at: str
    updated_at: str
    registration_count: int = 1

    def to_record(self) -> Dict[str, Any]:
        record = asdict(self)
        record["price_per_call"] = str(self.price_per_call)
        return record

    @classmethod
    def from_record(cls, slug: str, record: Dict[str, Any]) -> "Registration":
        now_iso = datetime.now(timezone.utc).isoformat()
        return cls(
            slug=slug,
            upstream_base_url=str(record["upstream_base_url"]),
            price_per_call=Decimal(str(record.get("price_per_call", "0"))),
            owner_wallet=str(record["owner_wallet"]),
            listing_id=str(record["listing_id"]),
            registered_at=record.get("registered_at") or now_iso,
            updated_at=record.get("updated_at") or now_iso,
            registration_count=int(record.get("registration_count", 1)),
        )


class Registry:
    """Persists registrations keyed by slug.

    One lock guards reads and writes; ``resolve`` holds it only for a dict
    lookup. With ``path=None`` nothing is written.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        *,
        public_base_url: str = "http://localhost:4021",
        conflict_policy: str = "overwrite",
        audit_log_path: Optional[Path] = None,
    ) -> None:
        if conflict_policy not in CONFLICT_POLICIES:
            raise ValueError(f"Unknown slug conflict policy: {conflict_policy}")
        self.path = path
        self.public_base_url = public_base_url.rstrip("/")
        self.conflict_policy = conflict_policy
        self.audit_log_path = audit_log_path
        self._lock = threading.RLock()
        self._records: Dict[str, Registration] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._records = {}
            return

        with self.path.open("r", encoding="utf-8") as handle:
            raw_records = json.load(handle)

        records: Dict[str, Registration] = {}
        for slug, raw in raw_records.items():
            if not isinstance(raw, dict):
                continue
            try:
                records[slug] = Registration.from_record(slug, raw)
            except (KeyError, ValueError, ArithmeticError) as exc:
                logger.error("Skipping malformed registration %s: %s", slug, exc)
        self._records = records

    def _persist(self, records: Dict[str, Registration]) -> None:
        if self.path is None:
            return
        tmp_path = self.path.with_suffix(".tmp")
        data = {slug: record.to_record() for slug, record in records.items()}
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            tmp_path.replace(self.path)
        except OSError as exc:
            raise StorageError(f"Failed to persist registry: {exc}") from exc

    def _write_audit_event(self, event: str, slug: str, payload: Dict[str, Any]) -> None:
        if not self.audit_log_path:
            return
        try:
            self.audit_log_path.parent.mkdir(parents=True, exist_ok=True)
            entry = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event": event,
                "slug": slug,
                **payload,
            }
            with self.audit_log_path.open("a", encoding="utf-8") as handle:
                json.dump(entry, handle, separators=(",", ":"))
                handle.write("\n")
        except Exception as exc:  # pragma: no cover - audit logging best effort
            logger.error("Failed to append audit log for %s: %s", event, exc)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    @staticmethod
    def _validate(
        slug: Any,
        upstream_base_url: Any,
        price_per_call: Any,
        owner_wallet: Any,
        listing_id: Any,
    ) -> Decimal:
        provided = {
            "slug": slug,
            "upstream_base_url": upstream_base_url,
            "price_per_call": price_per_call,
            "owner_wallet": owner_wallet,
            "listing_id": listing_id,
        }
        missing = [
            name
            for name, value in provided.items()
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            raise ValidationError(
                "Missing required fields: " + ", ".join(missing),
                fields=missing,
            )

        if not isinstance(slug, str) or not SLUG_PATTERN.match(slug):
            raise ValidationError(
                "slug must be 1-128 characters of letters, digits, '.', '_' or '-'",
                fields=["slug"],
            )
        if slug.lower() in RESERVED_SLUGS:
            raise ValidationError(f"slug '{slug}' is reserved", fields=["slug"])

        parsed = urlparse(str(upstream_base_url))
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationError(
                "upstream_base_url must be an absolute http(s) URL",
                fields=["upstream_base_url"],
            )

        price = parse_amount(price_per_call, field="price_per_call")
        if price < ZERO:
            raise ValidationError(
                "price_per_call must be a non-negative number",
                fields=["price_per_call"],
            )
        return price

    # ------------------------------------------------------------------
    # Registry logic
    # ------------------------------------------------------------------
    def gateway_url(self, slug: str) -> str:
        return f"{self.public_base_url}/{slug}"

    def register(
        self,
        slug: Any,
        upstream_base_url: Any,
        price_per_call: Any,
        owner_wallet: Any,
        listing_id: Any,
    ) -> str:
        price = self._validate(slug, upstream_base_url, price_per_call, owner_wallet, listing_id)
        now_iso = datetime.now(timezone.utc).isoformat()
        base_url = str(upstream_base_url).rstrip("/")

        with self._lock:
            existing = self._records.get(slug)
            if existing is not None:
                if self.conflict_policy == "reject":
                    raise SlugConflictError(f"Slug '{slug}' is already registered")
                if self.conflict_policy == "owner" and existing.owner_wallet != owner_wallet:
                    raise UnauthorizedOwnerError(f"Slug '{slug}' is owned by another wallet")

            record = Registration(
                slug=slug,
                upstream_base_url=base_url,
                price_per_call=price,
                owner_wallet=str(owner_wallet),
                listing_id=str(listing_id),
                registered_at=existing.registered_at if existing else now_iso,
                updated_at=now_iso,
                registration_count=(existing.registration_count + 1) if existing else 1,
            )
            records = dict(self._records)
            records[slug] = record
            self._persist(records)
            self._records = records

        self._write_audit_event(
            "register",
            slug,
            {
                "upstream_base_url": base_url,
                "price_per_call": format_amount(price),
                "owner_wallet": record.owner_wallet,
                "listing_id": record.listing_id,
                "first_registration": existing is None,
                "previous_owner": existing.owner_wallet if existing else None,
            },
        )
        if existing is None:
            logger.info("Registered %s -> %s at %s", slug, base_url, format_amount(price))
        else:
            logger.info("Re-registered %s (count=%s)", slug, record.registration_count)
        return self.gateway_url(slug)

    def resolve(self, slug: str) -> Registration:
        with self._lock:
            record = self._records.get(slug)
        if record is None:
            raise NotFoundError("API not found", slug=slug, hint=DISCOVERY_HINT)
        return record

    def unregister(self, slug: str, owner_wallet: Optional[str]) -> Registration:
        with self._lock:
            record = self._records.get(slug)
            if record is None:
                raise NotFoundError("API not found", slug=slug, hint=DISCOVERY_HINT)
            if not owner_wallet or record.owner_wallet != owner_wallet:
                raise UnauthorizedOwnerError("Unauthorized")
            records = dict(self._records)
            del records[slug]
            self._persist(records)
            self._records = records

        self._write_audit_event("unregister", slug, {"owner_wallet": owner_wallet})
        logger.info("Unregistered %s", slug)
        return record

    def find_by_listing(self, listing_id: str) -> Optional[Registration]:
        with self._lock:
            for record in self._records.values():
                if record.listing_id == listing_id:
                    return record
        return None

    def all_registrations(self) -> List[Registration]:
        with self._lock:
            return sorted(self._records.values(), key=lambda record: record.slug)

    def count(self) -> int:
        with self._lock:
            return len(self._records)


__all__ = [
    "CONFLICT_POLICIES",
    "DISCOVERY_HINT",
    "Registration",
    "Registry",
]
