"""
Ledger - Append-Only Financial Record & Audit Packages

Tracks every reported financial event of the agent:
- record(): one immutable LedgerEntry per event (income or expense)
- generate_pnl(): profit/loss derived purely from the entry sequence
- generate_audit_package(): checksummed snapshot for external verification
- verify_audit_package(): recompute a package checksum (tamper check)

The ledger is a record of REPORTED events, not a balance authority. It never
calls a collaborator and never edits or removes an entry, so every derived
view is reproducible from the entries alone. That is what makes the audit
checksum meaningful.

Amounts are Python ints in the smallest unit (wei). Floats never touch a
total; they only appear in profit_margin.
"""

import hashlib
import json
import logging
import os
import tempfile
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional, Union

from .errors import LedgerError
from .policy import format_native
from .results import ClaimResult, ProtectionResult

logger = logging.getLogger("sentinel.ledger")


class EntryDirection(Enum):
    INCOME = "income"
    EXPENSE = "expense"


class EntrySource(Enum):
    """Closed set of ledger categories."""
    REWARD = "reward"                                  # Bounty reward claimed on-chain
    PROTECTIVE_ENCRYPTION = "protective-encryption"    # Policy + encrypt + store + anchor
    BLOB_STORAGE = "blob-storage"                      # Standalone storage fees
    GAS = "gas"                                        # Gas not attributable to a service
    TRANSFER = "transfer"                              # Plain value transfers
    OTHER = "other"


# Optional proof fields, python name → serialized name
PROOF_FIELDS = {
    "proof_hash": "proofHash",
    "task_id": "taskId",
    "transaction_id": "transactionId",
    "blob_id": "blobId",
    "policy_id": "policyId",
    "inspection_url": "inspectionUrl",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(ts: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; a naive value is taken to already be UTC."""
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _iso(ts: Optional[datetime]) -> Optional[str]:
    ts = _as_utc(ts)
    return ts.isoformat() if ts is not None else None


def _amounts(by_source: dict[str, int]) -> dict[str, str]:
    return {k: str(v) for k, v in sorted(by_source.items())}


# ============================================================
# DATA TYPES
# ============================================================

@dataclass(frozen=True)
class LedgerEntry:
    id: str
    timestamp: datetime
    direction: EntryDirection
    source: EntrySource
    amount: int
    description: str = ""
    proof_hash: Optional[str] = None
    task_id: Optional[str] = None
    transaction_id: Optional[str] = None
    blob_id: Optional[str] = None
    policy_id: Optional[str] = None
    inspection_url: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "timestamp": _iso(self.timestamp),
            "direction": self.direction.value,
            "source": self.source.value,
            "amount": str(self.amount),
            "description": self.description,
        }
        for attr, key in PROOF_FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data


@dataclass(frozen=True)
class ProfitLossReport:
    period_start: Optional[datetime]
    period_end: Optional[datetime]
    total_income: int
    total_expense: int
    net_profit: int
    profit_margin: float
    transaction_count: int
    income_by_source: dict[str, int] = field(default_factory=dict)
    expense_by_source: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "period": {"from": _iso(self.period_start), "to": _iso(self.period_end)},
            "totalIncome": str(self.total_income),
            "totalExpense": str(self.total_expense),
            "netProfit": str(self.net_profit),
            "profitMargin": self.profit_margin,
            "transactionCount": self.transaction_count,
            "incomeBySource": _amounts(self.income_by_source),
            "expenseBySource": _amounts(self.expense_by_source),
        }


@dataclass(frozen=True)
class AuditPackage:
    generated_at: Optional[datetime]
    subject_address: str
    entries: tuple[LedgerEntry, ...]
    profit_loss: ProfitLossReport
    on_chain_transactions: tuple[dict, ...]
    encrypted_storage: tuple[dict, ...]
    work_proofs: tuple[dict, ...]
    checksum: str = ""

    def body(self) -> dict:
        """Every field except the checksum, in serialized form."""
        return {
            "generatedAt": _iso(self.generated_at),
            "subjectAddress": self.subject_address,
            "entries": [e.to_dict() for e in self.entries],
            "profitLoss": self.profit_loss.to_dict(),
            "onChainTransactions": [dict(t) for t in self.on_chain_transactions],
            "encryptedStorage": [dict(s) for s in self.encrypted_storage],
            "workProofs": [dict(w) for w in self.work_proofs],
        }

    def to_dict(self) -> dict:
        data = self.body()
        data["checksum"] = self.checksum
        return data


# ============================================================
# CHECKSUM
# ============================================================

def canonical_json(data: Any) -> str:
    """Key-order-stable, whitespace-free JSON. Amounts must already be strings."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_checksum(body: dict) -> str:
    """SHA-256 over the canonical body. A 'checksum' key, if present, is left out."""
    payload = {k: v for k, v in body.items() if k != "checksum"}
    return hashlib.sha256(canonical_json(payload).encode("utf-8")).hexdigest()


def verify_audit_package(package: Union[AuditPackage, dict]) -> bool:
    """True if the package's checksum matches its content."""
    data = package.to_dict() if isinstance(package, AuditPackage) else package
    expected = data.get("checksum", "")
    return bool(expected) and compute_checksum(data) == expected


# ============================================================
# LEDGER
# ============================================================

def _coerce(enum_cls, value, what: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [m.value for m in enum_cls]
        raise LedgerError(f"Invalid {what} {value!r}. Allowed: {allowed}") from None


class Ledger:
    """
    In-memory, append-only store of LedgerEntry records.

    Lives for the whole process (or until clear()). There is no expiry and no
    locking: callers run one cycle at a time.
    """

    def __init__(
        self,
        clock: Optional[Callable[[], datetime]] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self._entries: list[LedgerEntry] = []
        self._clock = clock or _utc_now
        self._new_id = id_factory or (lambda: str(uuid.uuid4()))

    def __len__(self) -> int:
        return len(self._entries)

    # ============================================================
    # RECORDING
    # ============================================================

    def record(
        self,
        direction: Union[EntryDirection, str],
        source: Union[EntrySource, str],
        amount: int,
        description: str = "",
        **proof: Optional[str],
    ) -> LedgerEntry:
        """Append one entry with a fresh id and timestamp; returns the stored entry."""
        direction = _coerce(EntryDirection, direction, "direction")
        source = _coerce(EntrySource, source, "source")

        if isinstance(amount, bool) or not isinstance(amount, int):
            raise LedgerError(f"Amount must be an int in the smallest unit, got {type(amount).__name__}")
        if amount < 0:
            raise LedgerError(f"Amount must be non-negative, got {amount}")

        unknown = set(proof) - set(PROOF_FIELDS)
        if unknown:
            raise LedgerError(f"Unknown proof fields: {sorted(unknown)}")

        entry = LedgerEntry(
            id=self._new_id(),
            timestamp=_as_utc(self._clock()),
            direction=direction,
            source=source,
            amount=amount,
            description=description,
            **{k: (str(v) if v else None) for k, v in proof.items()},
        )
        self._entries.append(entry)
        logger.debug(
            f"Recorded {direction.value} {amount} ({source.value}) "
            f"tx={entry.transaction_id or '-'}"
        )
        return entry

    def record_earning(self, claim: ClaimResult) -> LedgerEntry:
        """Successful reward claim → income entry, carrying every proof field."""
        label = f"Bounty #{claim.task_id} reward claimed" if claim.task_id else "Reward claimed"
        return self.record(
            EntryDirection.INCOME,
            EntrySource.REWARD,
            claim.amount,
            label,
            **self._proof_of(claim),
        )

    def record_spending(self, protection: ProtectionResult) -> LedgerEntry:
        """Successful protection → expense entry, carrying every proof field."""
        return self.record(
            EntryDirection.EXPENSE,
            EntrySource.PROTECTIVE_ENCRYPTION,
            protection.amount_spent,
            f'Protected "{protection.label}"',
            **self._proof_of(protection),
        )

    @staticmethod
    def _proof_of(result: Any) -> dict[str, Optional[str]]:
        return {attr: getattr(result, attr, None) for attr in PROOF_FIELDS}

    def clear(self):
        """Drop all entries. The only way entries ever leave the ledger."""
        count = len(self._entries)
        self._entries = []
        logger.info(f"Ledger cleared ({count} entries dropped)")

    # ============================================================
    # QUERIES
    # ============================================================

    def get_entries(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        direction: Union[EntryDirection, str, None] = None,
        source: Union[EntrySource, str, None] = None,
    ) -> list[LedgerEntry]:
        """
        Entries matching every given filter (inclusive window), in insertion order.

        Naive start/end are read as UTC, the same way they are serialized.
        """
        start, end = _as_utc(start), _as_utc(end)
        if direction is not None:
            direction = _coerce(EntryDirection, direction, "direction")
        if source is not None:
            source = _coerce(EntrySource, source, "source")

        result = []
        for entry in self._entries:
            if start is not None and entry.timestamp < start:
                continue
            if end is not None and entry.timestamp > end:
                continue
            if direction is not None and entry.direction is not direction:
                continue
            if source is not None and entry.source is not source:
                continue
            result.append(entry)
        return result

    def generate_pnl(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> ProfitLossReport:
        start, end = _as_utc(start), _as_utc(end)
        filtered = self.get_entries(start=start, end=end)

        total_income = 0
        total_expense = 0
        income_by_source: dict[str, int] = {}
        expense_by_source: dict[str, int] = {}

        for entry in filtered:
            key = entry.source.value
            if entry.direction is EntryDirection.INCOME:
                total_income += entry.amount
                income_by_source[key] = income_by_source.get(key, 0) + entry.amount
            else:
                total_expense += entry.amount
                expense_by_source[key] = expense_by_source.get(key, 0) + entry.amount

        net_profit = total_income - total_expense
        profit_margin = net_profit / total_income if total_income > 0 else 0.0

        return ProfitLossReport(
            period_start=start or (filtered[0].timestamp if filtered else None),
            period_end=end or (filtered[-1].timestamp if filtered else None),
            total_income=total_income,
            total_expense=total_expense,
            net_profit=net_profit,
            profit_margin=profit_margin,
            transaction_count=len(filtered),
            income_by_source=income_by_source,
            expense_by_source=expense_by_source,
        )

    def generate_audit_package(
        self, subject_address: str, generated_at: Optional[datetime] = None
    ) -> AuditPackage:
        """
        Checksummed snapshot of the whole ledger.

        generated_at defaults to the as-of instant of the snapshot (the latest
        entry's timestamp), so repeated calls over an unchanged ledger produce
        the same checksum.
        """
        entries = tuple(self._entries)
        profit_loss = self.generate_pnl()

        on_chain = tuple(
            {
                "transactionId": e.transaction_id,
                "inspectionUrl": e.inspection_url or "",
                "direction": e.direction.value,
                "amount": str(e.amount),
                "source": e.source.value,
            }
            for e in entries if e.transaction_id
        )
        storage = tuple(
            {
                "blobId": e.blob_id,
                "policyId": e.policy_id or "",
                "transactionId": e.transaction_id or "",
                "label": e.description,
            }
            for e in entries if e.blob_id
        )
        proofs = tuple(
            {
                "proofHash": e.proof_hash,
                "taskId": e.task_id,
                "transactionId": e.transaction_id or "",
            }
            for e in entries if e.proof_hash and e.task_id
        )

        package = AuditPackage(
            generated_at=generated_at or (entries[-1].timestamp if entries else None),
            subject_address=subject_address,
            entries=entries,
            profit_loss=profit_loss,
            on_chain_transactions=on_chain,
            encrypted_storage=storage,
            work_proofs=proofs,
        )
        return replace(package, checksum=compute_checksum(package.body()))

    # ============================================================
    # EXPORT
    # ============================================================

    def export_json(self, indent: int = 2) -> str:
        return json.dumps([e.to_dict() for e in self._entries], ensure_ascii=False, indent=indent)

    def log_summary(self):
        pnl = self.generate_pnl()
        logger.info(
            f"Ledger: {pnl.transaction_count} tx | "
            f"income +{format_native(pnl.total_income)} | "
            f"expense -{format_native(pnl.total_expense)} | "
            f"net {format_native(pnl.net_profit)} | "
            f"margin {pnl.profit_margin * 100:.2f}%"
        )


def write_audit_package(package: AuditPackage, path: Union[str, Path]) -> Path:
    """Write a package as JSON, atomically (temp file + rename)."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_path = tempfile.mkstemp(dir=str(p.parent), suffix=".tmp", prefix="audit_")
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(package.to_dict(), f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, str(p))
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    logger.info(f"Audit package written: {p} ({len(package.entries)} entries, {package.checksum[:12]}...)")
    return p
