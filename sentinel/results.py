"""
Collaborator Result Shapes

Typed results handed from the earning, spending and verification
collaborators to the controller and ledger. Raw contract rows, RPC payloads
and gateway JSON never cross this line; sentinel.decoding builds these.

Amounts are always int in the smallest unit (wei).
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


# ============================================================
# EARNING
# ============================================================

class TaskType(Enum):
    LINT = "lint"
    TEST = "test"
    FORMAT = "format"
    AUDIT = "audit"
    CUSTOM = "custom"


# Tie-break order when two bounties pay the same reward
TASK_PRIORITY = {
    TaskType.LINT: 5,
    TaskType.TEST: 4,
    TaskType.FORMAT: 3,
    TaskType.AUDIT: 2,
    TaskType.CUSTOM: 1,
}


@dataclass(frozen=True)
class BountyTask:
    bounty_id: int
    description: str
    reward_amount: int
    poster: str = ""
    completed: bool = False
    task_type: TaskType = TaskType.CUSTOM


@dataclass(frozen=True)
class ExecResponse:
    """Output of one command run on the execution gateway."""
    output: str
    exit_code: int
    duration_ms: int = 0


@dataclass(frozen=True)
class TaskResult:
    bounty: BountyTask
    output: str
    output_hash: str
    success: bool
    duration_ms: int
    error: str = ""


@dataclass(frozen=True)
class ClaimResult:
    """One reward claim attempt. Only success=True claims reach the ledger."""
    success: bool
    amount: int
    transaction_id: Optional[str] = None
    proof_hash: Optional[str] = None
    task_id: Optional[str] = None
    inspection_url: Optional[str] = None
    error: str = ""


@dataclass(frozen=True)
class EarnResult:
    tasks_found: int
    tasks_completed: int
    total_earned: int
    claims: tuple[ClaimResult, ...] = ()
    timestamp: Optional[datetime] = None


# ============================================================
# SPENDING
# ============================================================

@dataclass(frozen=True)
class BlobUpload:
    """Blob publisher receipt for one stored ciphertext."""
    blob_id: str
    object_id: str = ""
    size: int = 0


@dataclass(frozen=True)
class ProtectionResult:
    """One protect attempt (policy → encrypt → store → anchor)."""
    label: str
    success: bool
    amount_spent: int
    transaction_id: Optional[str] = None
    blob_id: Optional[str] = None
    policy_id: Optional[str] = None
    inspection_url: Optional[str] = None
    plaintext_size: int = 0
    ciphertext_size: int = 0
    error: str = ""


@dataclass(frozen=True)
class SpendResult:
    items_protected: int
    total_spent: int
    protections: tuple[ProtectionResult, ...] = ()
    timestamp: Optional[datetime] = None


# ============================================================
# VERIFICATION
# ============================================================

@dataclass(frozen=True)
class BrowserSnapshot:
    text: str = ""
    output: str = ""
    screenshot_url: Optional[str] = None


@dataclass(frozen=True)
class VerificationDetail:
    transaction_id: str
    verified: bool
    inspection_url: str
    screenshot_url: Optional[str] = None


@dataclass(frozen=True)
class VerifyResult:
    transactions_verified: int
    all_verified: bool
    details: tuple[VerificationDetail, ...] = field(default_factory=tuple)

    @classmethod
    def from_details(cls, details: list[VerificationDetail]) -> "VerifyResult":
        verified = sum(1 for d in details if d.verified)
        return cls(
            transactions_verified=verified,
            all_verified=verified == len(details) if details else True,
            details=tuple(details),
        )
