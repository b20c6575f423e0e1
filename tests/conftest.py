"""
Shared fixtures: deterministic clock/ids for the ledger and scripted
collaborators for the cycle controller. No network access anywhere.
"""

import itertools
from datetime import datetime, timedelta, timezone
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from sentinel.controller import CycleController
from sentinel.health import HealthMonitor
from sentinel.ledger import Ledger
from sentinel.policy import CyclePolicy
from sentinel.results import (
    ClaimResult,
    EarnResult,
    ProtectionResult,
    SpendResult,
    VerificationDetail,
)

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
RICH = 10 ** 18
POOR = 10 ** 15


class TickingClock:
    """Returns T0, T0+1s, T0+2s, ... on successive calls."""

    def __init__(self, start: datetime = T0, step: timedelta = timedelta(seconds=1)):
        self._counter = itertools.count()
        self.start = start
        self.step = step

    def __call__(self) -> datetime:
        return self.start + self.step * next(self._counter)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def ledger(clock):
    ids = itertools.count(1)
    return Ledger(clock=clock, id_factory=lambda: f"entry-{next(ids)}")


def make_claim(success=True, amount=1_000_000_000, tx="0xaaa", **kwargs) -> ClaimResult:
    defaults = dict(
        transaction_id=tx if success else None,
        proof_hash="ab" * 32 if success else None,
        task_id="7" if success else None,
        inspection_url=f"https://sepolia.basescan.org/tx/{tx}" if success else None,
    )
    defaults.update(kwargs)
    return ClaimResult(success=success, amount=amount, **defaults)


def make_protection(success=True, spent=100_000_000, tx="0xbbb", **kwargs) -> ProtectionResult:
    defaults = dict(
        label="~/.gitconfig",
        transaction_id=tx if success else None,
        blob_id="blob-1" if success else None,
        policy_id="42" if success else None,
    )
    defaults.update(kwargs)
    return ProtectionResult(success=success, amount_spent=spent, **defaults)


class ScriptedHealth:
    """Async probes whose results the test can change between cycles."""

    def __init__(self, balance=RICH, board_up=True, gateway_up=True):
        self.balance = balance
        self.board_up = board_up
        self.gateway_up = gateway_up
        self.balance_error: Optional[Exception] = None

    async def get_balance(self) -> int:
        if self.balance_error is not None:
            raise self.balance_error
        return self.balance

    async def probe_board(self):
        if not self.board_up:
            raise ConnectionError("board down")
        return []

    async def probe_gateway(self) -> bool:
        return self.gateway_up


@pytest.fixture
def probes():
    return ScriptedHealth()


@pytest.fixture
def earner():
    mock = AsyncMock()
    mock.earn.return_value = EarnResult(
        tasks_found=1, tasks_completed=1, total_earned=1_000_000_000,
        claims=(make_claim(),),
    )
    return mock


@pytest.fixture
def spender():
    mock = AsyncMock()
    mock.spend.return_value = SpendResult(
        items_protected=1, total_spent=100_000_000,
        protections=(make_protection(),),
    )
    return mock


@pytest.fixture
def verifier():
    async def _verify(ids):
        return [
            VerificationDetail(transaction_id=i, verified=True, inspection_url=f"https://x/tx/{i}")
            for i in ids
        ]
    mock = AsyncMock()
    mock.verify.side_effect = _verify
    return mock


@pytest.fixture
def policy():
    return CyclePolicy()


@pytest.fixture
def make_controller(ledger, probes, earner, spender, verifier, policy, clock):
    def _make(**overrides) -> CycleController:
        pol = overrides.pop("policy", policy)
        health = HealthMonitor(probes.get_balance, probes.probe_board, probes.probe_gateway, pol)
        kwargs = dict(
            ledger=ledger, health=health, earner=earner, spender=spender,
            verifier=verifier, subject_address="0xAgent", policy=pol,
            wallet_url="https://sepolia.basescan.org/address/0xAgent", clock=clock,
        )
        kwargs.update(overrides)
        return CycleController(**kwargs)
    return _make
