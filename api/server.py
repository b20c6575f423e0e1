"""
bounty-sentinel API Server - FastAPI Status Backend

Endpoints (all read-only, all public):
- GET /health     Liveness + current mode (+ chain client status when wired)
- GET /state      Controller state snapshot
- GET /pnl        Profit / loss over the whole ledger
- GET /ledger     Ledger entries (?direction=&source=&limit=)
- GET /audit      Freshly generated, checksummed audit package
- GET /cycles     Recent cycle summaries (?limit=)

Amounts are decimal strings in wei everywhere; JSON numbers lose precision.
"""

import os
import logging
from typing import Callable, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from sentinel.controller import CycleController
from sentinel.ledger import EntryDirection, EntrySource, Ledger

logger = logging.getLogger("sentinel.api")


# ============================================================
# MODELS
# ============================================================

class HealthResponse(BaseModel):
    alive: bool = True
    mode: str
    cycle_count: int
    consecutive_failures: int
    last_cycle_ok: Optional[bool] = None
    chain: Optional[dict] = None


class StateResponse(BaseModel):
    mode: str
    cycleCount: int
    lastCycleAt: Optional[str] = None
    consecutiveFailures: int
    totalEarned: str
    totalSpent: str
    walletUrl: str = ""
    subjectAddress: str = ""


class PeriodModel(BaseModel):
    # "from" is a Python keyword
    from_: Optional[str] = Field(None, alias="from")
    to: Optional[str] = None


class PnLResponse(BaseModel):
    period: PeriodModel
    totalIncome: str
    totalExpense: str
    netProfit: str
    profitMargin: float
    transactionCount: int
    incomeBySource: dict[str, str]
    expenseBySource: dict[str, str]


def _parse_enum(enum_cls, value: Optional[str], what: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise HTTPException(400, f"Unknown {what} {value!r}. Expected one of: {allowed}")


def create_app(
    controller: CycleController,
    ledger: Ledger,
    subject_address: Optional[str] = None,
    chain_status: Optional[Callable[[], dict]] = None,
) -> FastAPI:
    """
    Create the status app over one controller and its ledger.

    The app never mutates either; main.py swaps in a lifespan that runs the
    cycle loop beside it. chain_status, when given, is reported under
    /health "chain" (main.py passes ChainClient.get_status).
    """
    app = FastAPI(
        title="bounty-sentinel",
        description="Autonomous earn → spend → report agent. Read-only status.",
        version="0.1.0",
    )

    cors_origins = os.getenv("CORS_ORIGINS", "*").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=False,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    def _subject() -> str:
        # main.py binds the wallet only after startup
        return subject_address if subject_address is not None else controller.subject_address

    # ============================================================
    # ROUTES
    # ============================================================

    @app.get("/health", response_model=HealthResponse)
    async def health():
        state = controller.get_state()
        last = controller.last_record
        return HealthResponse(
            mode=state.mode.value,
            cycle_count=state.cycle_count,
            consecutive_failures=state.consecutive_failures,
            last_cycle_ok=last.success if last else None,
            chain=chain_status() if chain_status else None,
        )

    @app.get("/state", response_model=StateResponse)
    async def state():
        return StateResponse(**controller.get_state().to_dict(), subjectAddress=_subject())

    @app.get("/pnl", response_model=PnLResponse, response_model_by_alias=True)
    async def pnl():
        return ledger.generate_pnl().to_dict()

    @app.get("/ledger")
    async def ledger_entries(
        direction: Optional[str] = None,
        source: Optional[str] = None,
        limit: int = 100,
    ):
        """Newest last; limit keeps the tail."""
        entries = ledger.get_entries(
            direction=_parse_enum(EntryDirection, direction, "direction"),
            source=_parse_enum(EntrySource, source, "source"),
        )
        if limit > 0:
            entries = entries[-limit:]
        return {"count": len(entries), "entries": [e.to_dict() for e in entries]}

    @app.get("/audit")
    async def audit():
        return ledger.generate_audit_package(_subject()).to_dict()

    @app.get("/cycles")
    async def cycles(limit: int = 20):
        records = list(controller.history)
        if limit > 0:
            records = records[-limit:]
        return {"cycles": [r.summary() for r in reversed(records)]}

    return app
