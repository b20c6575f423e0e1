"""
Cycle Controller - The Earn → Spend → Report State Machine

One run_cycle() = one bounded economic cycle:

    health → earn → spend → audit → verify → report

Rules:
1. The cycle counter goes up once per call, whatever happens next.
2. Mode is recomputed from fresh health observations every cycle. If the
   health phase itself fails, the failure streak is still re-judged.
3. Earning source unreachable = infrastructure absent → abort the cycle.
4. A failed claim / protection is simply left out of the ledger.
5. STARVATION skips spending entirely; the spender is never called.
6. Verification that cannot confirm a tx reports verified=False, never aborts.
7. run_cycle() never raises. Failures come back as CycleRecord(success=False).

Not reentrant: the scheduler must serialize calls (main.py's loop does).
State is per instance; two controllers never share anything.
"""

import logging
import time
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from .errors import CycleAborted
from .health import HealthCheckResult, HealthMonitor, recommend_mode
from .ledger import AuditPackage, Ledger, ProfitLossReport
from .policy import DEFAULT_POLICY, CyclePolicy, Mode, format_native
from .results import EarnResult, SpendResult, VerificationDetail, VerifyResult

logger = logging.getLogger("sentinel.controller")


# ============================================================
# STATE & RECORDS
# ============================================================

@dataclass
class AgentState:
    mode: Mode = Mode.NORMAL
    cycle_count: int = 0
    last_cycle_at: Optional[datetime] = None
    consecutive_failures: int = 0
    total_earned: int = 0
    total_spent: int = 0
    wallet_url: str = ""

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "cycleCount": self.cycle_count,
            "lastCycleAt": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "consecutiveFailures": self.consecutive_failures,
            "totalEarned": str(self.total_earned),
            "totalSpent": str(self.total_spent),
            "walletUrl": self.wallet_url,
        }


class SurvivalStatus(Enum):
    PROFITABLE = "profitable"
    BREAK_EVEN = "break-even"
    LOSS = "loss"

    @classmethod
    def from_net(cls, net_profit: int) -> "SurvivalStatus":
        if net_profit > 0:
            return cls.PROFITABLE
        if net_profit == 0:
            return cls.BREAK_EVEN
        return cls.LOSS

    @property
    def text(self) -> str:
        return _SURVIVAL_TEXT[self]


_SURVIVAL_TEXT = {
    SurvivalStatus.PROFITABLE: "PROFITABLE: agent is self-sustaining",
    SurvivalStatus.BREAK_EVEN: "BREAK-EVEN: agent is surviving",
    SurvivalStatus.LOSS: "LOSS: agent needs more bounties",
}


@dataclass(frozen=True)
class CycleReport:
    pnl_summary: str
    survival_status: SurvivalStatus
    profit_loss: ProfitLossReport
    next_cycle_at: datetime

    @property
    def status_text(self) -> str:
        return self.survival_status.text


@dataclass(frozen=True)
class CyclePhases:
    """Per-phase outcome. None = phase not reached, or skipped by policy."""
    health: Optional[HealthCheckResult] = None
    earn: Optional[EarnResult] = None
    spend: Optional[SpendResult] = None
    audit: Optional[AuditPackage] = None
    verify: Optional[VerifyResult] = None
    report: Optional[CycleReport] = None


@dataclass(frozen=True)
class CycleRecord:
    cycle_number: int
    mode: Mode
    phases: CyclePhases
    duration_ms: int
    success: bool
    error: Optional[str] = None

    def summary(self) -> dict:
        """Compact JSON-friendly view for the status API and logs."""
        phases = self.phases
        return {
            "cycleNumber": self.cycle_number,
            "mode": self.mode.value,
            "success": self.success,
            "error": self.error,
            "durationMs": self.duration_ms,
            "balance": str(phases.health.balance) if phases.health else None,
            "claims": len(phases.earn.claims) if phases.earn else None,
            "protections": len(phases.spend.protections) if phases.spend else None,
            "spendSkipped": phases.health is not None and phases.spend is None and self.success,
            "checksum": phases.audit.checksum if phases.audit else None,
            "verified": (
                f"{phases.verify.transactions_verified}/{len(phases.verify.details)}"
                if phases.verify else None
            ),
            "survivalStatus": phases.report.survival_status.value if phases.report else None,
        }


# ============================================================
# CONTROLLER
# ============================================================

class CycleController:
    """
    Usage:
        controller = CycleController(ledger, health, earner, spender, verifier, address)
        record = await controller.run_cycle()
        state = controller.get_state()
    """

    def __init__(
        self,
        ledger: Ledger,
        health: HealthMonitor,
        earner: Any,
        spender: Any,
        verifier: Any,
        subject_address: str,
        policy: CyclePolicy = DEFAULT_POLICY,
        wallet_url: str = "",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ledger = ledger
        self.health = health
        self.earner = earner
        self.spender = spender
        self.verifier = verifier
        self.subject_address = subject_address
        self.policy = policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._state = AgentState(wallet_url=wallet_url)
        self.history: deque[CycleRecord] = deque(maxlen=policy.CYCLE_HISTORY_SIZE)

    def get_state(self) -> AgentState:
        return replace(self._state)

    def bind_wallet(self, subject_address: str, wallet_url: str = ""):
        """Set the audited address once the wallet is known (after chain init)."""
        self.subject_address = subject_address
        self._state.wallet_url = wallet_url

    @property
    def last_record(self) -> Optional[CycleRecord]:
        return self.history[-1] if self.history else None

    async def run_cycle(self) -> CycleRecord:
        self._state.cycle_count += 1
        cycle_number = self._state.cycle_count
        start = time.monotonic()
        phases: dict[str, Any] = {}
        logger.info(f"=== Cycle #{cycle_number} start ===")

        try:
            await self._run_phases(phases)
        except CycleAborted as e:
            return self._finish(cycle_number, start, phases, error=str(e))
        except Exception as e:
            logger.exception(f"Cycle #{cycle_number} raised")
            return self._finish(cycle_number, start, phases, error=f"{type(e).__name__}: {e}")

        return self._finish(cycle_number, start, phases)

    async def _run_phases(self, phases: dict[str, Any]):
        state = self._state

        # --- 1. HEALTH ---
        try:
            health = await self.health.evaluate(state.consecutive_failures)
        except Exception:
            # Balance unknown: carry the last sufficiency forward, re-judge the failure streak
            state.mode = recommend_mode(
                state.mode is not Mode.STARVATION, state.consecutive_failures, self.policy
            )
            raise
        phases["health"] = health
        state.mode = health.recommended_mode

        if not health.earning_source_reachable:
            raise CycleAborted("Earning source unreachable")

        # --- 2. EARN ---
        earn = await self.earner.earn()
        phases["earn"] = earn
        tx_ids = []
        for claim in earn.claims:
            if not claim.success:
                logger.warning(f"Claim failed, not recorded: {claim.error or 'no detail'}")
                continue
            self.ledger.record_earning(claim)
            state.total_earned += claim.amount
            if claim.transaction_id:
                tx_ids.append(claim.transaction_id)

        # --- 3. SPEND ---
        if self._spend_skipped(state.mode):
            logger.info(f"Spend phase skipped ({state.mode.value} mode)")
        else:
            spend = await self.spender.spend()
            phases["spend"] = spend
            for protection in spend.protections:
                if not protection.success:
                    continue
                self.ledger.record_spending(protection)
                state.total_spent += protection.amount_spent
                if protection.transaction_id:
                    tx_ids.append(protection.transaction_id)

        # --- 4. AUDIT ---
        audit = self.ledger.generate_audit_package(self.subject_address)
        phases["audit"] = audit
        logger.info(f"Audit package: {len(audit.entries)} entries | checksum={audit.checksum[:16]}...")

        # --- 5. VERIFY ---
        unique_ids = list(dict.fromkeys(tx_ids))
        if unique_ids:
            phases["verify"] = VerifyResult.from_details(await self._verify(unique_ids))

        # --- 6. REPORT ---
        self.ledger.log_summary()
        phases["report"] = self._report()

    def _spend_skipped(self, mode: Mode) -> bool:
        if mode == Mode.STARVATION:
            return True
        return mode == Mode.ERROR and self.policy.SKIP_SPEND_IN_ERROR_MODE

    async def _verify(self, tx_ids: list[str]) -> list[VerificationDetail]:
        try:
            return list(await self.verifier.verify(tx_ids))
        except Exception as e:
            logger.warning(f"Verifier raised, marking {len(tx_ids)} txs unverified: {type(e).__name__}: {e}")
            return [
                VerificationDetail(transaction_id=tx_id, verified=False, inspection_url="")
                for tx_id in tx_ids
            ]

    def _report(self) -> CycleReport:
        pnl = self.ledger.generate_pnl()
        status = SurvivalStatus.from_net(pnl.net_profit)
        net = pnl.net_profit
        summary = "\n".join([
            f"Income: +{format_native(pnl.total_income)}",
            f"Expense: -{format_native(pnl.total_expense)}",
            f"Net: {'+' if net >= 0 else ''}{format_native(net)}",
            f"Margin: {pnl.profit_margin * 100:.1f}%",
            f"Wallet: {self._state.wallet_url}",
        ])
        return CycleReport(
            pnl_summary=summary,
            survival_status=status,
            profit_loss=pnl,
            next_cycle_at=self._clock() + timedelta(minutes=self.policy.CYCLE_INTERVAL_MINUTES),
        )

    def _finish(self, cycle_number: int, start: float, phases: dict[str, Any],
                error: Optional[str] = None) -> CycleRecord:
        state = self._state
        success = error is None
        if success:
            state.consecutive_failures = 0
            state.last_cycle_at = self._clock()
        else:
            state.consecutive_failures += 1

        record = CycleRecord(
            cycle_number=cycle_number,
            mode=state.mode,
            phases=CyclePhases(**phases),
            duration_ms=int((time.monotonic() - start) * 1000),
            success=success,
            error=error,
        )
        self.history.append(record)

        if success:
            report = record.phases.report
            logger.info(
                f"=== Cycle #{cycle_number} OK ({record.duration_ms}ms) | mode={state.mode.value} | "
                f"{report.survival_status.text} ==="
            )
        else:
            logger.error(
                f"=== Cycle #{cycle_number} FAILED ({record.duration_ms}ms): {error} | "
                f"consecutive_failures={state.consecutive_failures} ==="
            )
        return record
