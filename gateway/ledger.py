"""JSON-backed ledger for wallet balances and in-flight call holds."""
from __future__ import annotations

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, Inexact, InvalidOperation, getcontext, localcontext
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import InsufficientBalanceError, StorageError, ValidationError

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def _significant_digits(value: Decimal) -> int:
    digits = "".join(str(digit) for digit in value.as_tuple().digits).lstrip("0").rstrip("0")
    return len(digits)


def parse_amount(value: Any, field: str = "amount") -> Decimal:
    """Coerce user input into a finite Decimal or raise ValidationError.

    Amounts must fit the decimal context precision so ledger arithmetic on
    them stays exact.
    """
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{field} must be a number", fields=[field])
    if isinstance(value, Decimal):
        candidate = value
    else:
        try:
            candidate = Decimal(str(value).strip())
        except (InvalidOperation, ValueError) as exc:
            raise ValidationError(f"{field} must be a number", fields=[field]) from exc
    if not candidate.is_finite():
        raise ValidationError(f"{field} must be a finite number", fields=[field])
    precision = getcontext().prec
    if _significant_digits(candidate) > precision:
        raise ValidationError(
            f"{field} must have at most {precision} significant digits",
            fields=[field],
        )
    return candidate


def format_amount(value: Decimal) -> str:
    text = format(value, "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


@contextmanager
def exact_arithmetic(field: str = "amount") -> Iterator[None]:
    """Raise ValidationError instead of letting a balance be rounded."""
    with localcontext() as ctx:
        ctx.traps[Inexact] = True
        try:
            yield
        except Inexact as exc:
            raise ValidationError(f"{field} exceeds the supported balance precision", fields=[field]) from exc


@dataclass(frozen=True)
class Hold:
    hold_id: str
    wallet: str
    amount: Decimal
    created_at: str


@dataclass(frozen=True)
class SettlementResult:
    payer_balance: Decimal
    payee_balance: Decimal


class Ledger:
    """Wallet balances guarded by a single lock.

    Every mutation, including the balance check that precedes a debit, runs
    inside one critical section, so concurrent debits against the same wallet
    cannot both pass against a stale read. With ``path=None`` the ledger is
    kept in memory only.
    """

    def __init__(self, path: Optional[Path] = None, journal_path: Optional[Path] = None) -> None:
        self.path = path
        self.journal_path = journal_path
        self._lock = threading.RLock()
        self.balances: Dict[str, Decimal] = {}
        self.holds: Dict[str, Hold] = {}
        self._load()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> None:
        if self.path is None:
            return
        if not self.path.exists():
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.balances = {}
            return
        with self.path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if "balances" in raw and isinstance(raw.get("balances"), dict):
            balances = raw["balances"]
            holds = raw.get("holds") or {}
        else:
            balances, holds = raw, {}
        self.balances = {key: Decimal(str(value)) for key, value in balances.items()}

        # Holds outlive the request that created them only if the process
        # died mid-forward; the caller was never charged, so refund them.
        if holds:
            for hold_id, hold in holds.items():
                wallet = hold["wallet"]
                amount = Decimal(str(hold["amount"]))
                self.balances[wallet] = self.balances.get(wallet, ZERO) + amount
                logger.warning("Released stale hold %s (%s to %s)", hold_id, amount, wallet)
                self._write_journal(
                    event="release",
                    wallet=wallet,
                    amount=amount,
                    balance=self.balances[wallet],
                    delta=amount,
                    reason="stale_hold",
                    metadata={"hold_id": hold_id},
                )
            self._persist(self.balances, {})

    def _persist(self, balances: Dict[str, Decimal], holds: Dict[str, Hold]) -> None:
        if self.path is None:
            return
        data = {
            "balances": {key: str(value) for key, value in balances.items()},
            "holds": {
                hold_id: {
                    "wallet": hold.wallet,
                    "amount": str(hold.amount),
                    "created_at": hold.created_at,
                }
                for hold_id, hold in holds.items()
            },
        }
        tmp_path = self.path.with_suffix(".tmp")
        try:
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2)
            tmp_path.replace(self.path)
        except OSError as exc:
            raise StorageError(f"Failed to persist ledger: {exc}") from exc

    def _commit(self, balances: Dict[str, Decimal], holds: Dict[str, Hold]) -> None:
        # Persist first so a storage failure leaves the live state untouched.
        self._persist(balances, holds)
        self.balances = balances
        self.holds = holds

    def _write_journal(
        self,
        *,
        event: str,
        wallet: str,
        amount: Decimal,
        balance: Decimal,
        delta: Optional[Decimal] = None,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
    ) -> None:
        if not self.journal_path:
            return
        try:
            self.journal_path.parent.mkdir(parents=True, exist_ok=True)
            entry: Dict[str, object] = {
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "event": event,
                "wallet": wallet,
                "amount": str(amount),
                "balance": str(balance),
            }
            if delta is not None:
                entry["delta"] = str(delta)
            if reason:
                entry["reason"] = reason
            if metadata:
                entry["metadata"] = metadata
            with self.journal_path.open("a", encoding="utf-8") as handle:
                json.dump(entry, handle, separators=(",", ":"))
                handle.write("\n")
        except Exception as exc:
            logger.error("Failed to append ledger journal for %s: %s", event, exc)

    # ------------------------------------------------------------------
    # Balance operations
    # ------------------------------------------------------------------
    def get_balance(self, wallet: str) -> Decimal:
        with self._lock:
            return self.balances.get(wallet, ZERO)

    def top_up(
        self,
        wallet: str,
        amount: Any,
        *,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, object]] = None,
    ) -> Decimal:
        if not wallet:
            raise ValidationError("wallet is required", fields=["wallet"])
        value = parse_amount(amount)
        if value <= ZERO:
            raise ValidationError("amount must be a positive number", fields=["amount"])
        with self._lock:
            balances = dict(self.balances)
            with exact_arithmetic():
                new_balance = balances.get(wallet, ZERO) + value
            balances[wallet] = new_balance
            self._commit(balances, self.holds)
            self._write_journal(
                event="top_up",
                wallet=wallet,
                amount=value,
                balance=new_balance,
                delta=value,
                reason=reason,
                metadata=metadata,
            )
            return new_balance

    def settle(
        self,
        payer: str,
        payee: str,
        amount: Decimal,
        *,
        metadata: Optional[Dict[str, object]] = None,
    ) -> SettlementResult:
        """Move ``amount`` from payer to payee, both or neither."""
        if amount < ZERO:
            raise ValidationError("amount must not be negative", fields=["amount"])
        with self._lock:
            available = self.balances.get(payer, ZERO)
            if available < amount:
                raise InsufficientBalanceError(required=amount, available=available)
            balances = dict(self.balances)
            with exact_arithmetic():
                balances[payer] = available - amount
                balances[payee] = balances.get(payee, ZERO) + amount
            self._commit(balances, self.holds)
            self._write_journal(
                event="debit",
                wallet=payer,
                amount=amount,
                balance=balances[payer],
                delta=-amount,
                reason="settle",
                metadata=metadata,
            )
            self._write_journal(
                event="credit",
                wallet=payee,
                amount=amount,
                balance=balances[payee],
                delta=amount,
                reason="settle",
                metadata=metadata,
            )
            return SettlementResult(payer_balance=balances[payer], payee_balance=balances[payee])

    def reserve(self, payer: str, amount: Decimal) -> Hold:
        """Atomically check the payer's balance and move ``amount`` into a hold."""
        if amount < ZERO:
            raise ValidationError("amount must not be negative", fields=["amount"])
        with self._lock:
            available = self.balances.get(payer, ZERO)
            if available < amount:
                raise InsufficientBalanceError(required=amount, available=available)
            hold = Hold(
                hold_id=uuid.uuid4().hex,
                wallet=payer,
                amount=amount,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            balances = dict(self.balances)
            with exact_arithmetic():
                balances[payer] = available - amount
            holds = dict(self.holds)
            holds[hold.hold_id] = hold
            self._commit(balances, holds)
            self._write_journal(
                event="reserve",
                wallet=payer,
                amount=amount,
                balance=balances[payer],
                delta=-amount,
                metadata={"hold_id": hold.hold_id},
            )
            return hold

    def capture(
        self,
        hold: Hold,
        payee: str,
        *,
        metadata: Optional[Dict[str, object]] = None,
    ) -> SettlementResult:
        """Pay a reserved amount out to ``payee``."""
        with self._lock:
            if hold.hold_id not in self.holds:
                raise ValidationError("hold is not pending", fields=["hold_id"])
            balances = dict(self.balances)
            with exact_arithmetic():
                balances[payee] = balances.get(payee, ZERO) + hold.amount
            holds = dict(self.holds)
            del holds[hold.hold_id]
            self._commit(balances, holds)
            self._write_journal(
                event="credit",
                wallet=payee,
                amount=hold.amount,
                balance=balances[payee],
                delta=hold.amount,
                reason="capture",
                metadata={"hold_id": hold.hold_id, "payer": hold.wallet, **(metadata or {})},
            )
            return SettlementResult(
                payer_balance=balances.get(hold.wallet, ZERO),
                payee_balance=balances[payee],
            )

    def release(self, hold: Hold) -> Decimal:
        """Return a reserved amount to the payer; returns the payer's balance."""
        with self._lock:
            if hold.hold_id not in self.holds:
                raise ValidationError("hold is not pending", fields=["hold_id"])
            balances = dict(self.balances)
            with exact_arithmetic():
                balances[hold.wallet] = balances.get(hold.wallet, ZERO) + hold.amount
            holds = dict(self.holds)
            del holds[hold.hold_id]
            self._commit(balances, holds)
            self._write_journal(
                event="release",
                wallet=hold.wallet,
                amount=hold.amount,
                balance=balances[hold.wallet],
                delta=hold.amount,
                metadata={"hold_id": hold.hold_id},
            )
            return balances[hold.wallet]

    def pending_holds(self) -> List[Hold]:
        with self._lock:
            return list(self.holds.values())

    def as_dict(self) -> Dict[str, str]:
        with self._lock:
            return {key: str(value) for key, value in self.balances.items()}

    def read_journal(self, wallet: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Newest-first journal entries, optionally filtered by wallet."""
        if not self.journal_path or not self.journal_path.exists():
            return []
        events: List[Dict[str, Any]] = []
        try:
            with self.journal_path.open("r", encoding="utf-8") as handle:
                for line in handle:
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        continue
                    events.append(entry)
        except OSError as exc:
            raise StorageError(f"Failed to read ledger journal: {exc}") from exc
        if wallet:
            events = [entry for entry in events if entry.get("wallet") == wallet]
        return list(reversed(events))[:limit]


__all__ = [
    "Hold",
    "Ledger",
    "SettlementResult",
    "format_amount",
    "parse_amount",
]
