"""
Health Monitor - Pre-Cycle Survival Check

Three fresh observations per cycle:
- wallet balance (must succeed; a failing balance read fails the cycle)
- earning source reachable (bounty board readable)
- execution gateway reachable (GET /health)

From them and the controller's failure count it recommends the cycle's mode.
ERROR outranks STARVATION: a wallet that is both broke and failing is failing.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from .policy import DEFAULT_POLICY, CyclePolicy, Mode, format_native

logger = logging.getLogger("sentinel.health")


@dataclass(frozen=True)
class HealthCheckResult:
    balance: int
    sufficient_balance: bool
    earning_source_reachable: bool
    gateway_reachable: bool
    recommended_mode: Mode


def recommend_mode(sufficient_balance: bool, consecutive_failures: int,
                   policy: CyclePolicy = DEFAULT_POLICY) -> Mode:
    if consecutive_failures >= policy.ERROR_FAILURE_THRESHOLD:
        return Mode.ERROR
    if not sufficient_balance:
        return Mode.STARVATION
    return Mode.NORMAL


class HealthMonitor:
    """
    Usage:
        health = HealthMonitor(chain.get_balance, probe_board, gateway.is_reachable)
        result = await health.evaluate(consecutive_failures=0)
    """

    def __init__(
        self,
        balance_fn: Callable[[], Awaitable[int]],
        earning_probe: Callable[[], Awaitable[object]],
        gateway_probe: Callable[[], Awaitable[bool]],
        policy: CyclePolicy = DEFAULT_POLICY,
    ):
        self._balance_fn = balance_fn
        self._earning_probe = earning_probe
        self._gateway_probe = gateway_probe
        self.policy = policy

    async def evaluate(self, consecutive_failures: int) -> HealthCheckResult:
        balance = await self._balance_fn()
        sufficient = balance > self.policy.STARVATION_THRESHOLD_WEI

        # Any completed read counts as reachable, even an empty bounty list
        try:
            await self._earning_probe()
            earning_reachable = True
        except Exception as e:
            logger.warning(f"Earning source unreachable: {type(e).__name__}: {e}")
            earning_reachable = False

        try:
            gateway_reachable = bool(await self._gateway_probe())
        except Exception as e:
            logger.debug(f"Gateway probe raised: {e}")
            gateway_reachable = False

        mode = recommend_mode(sufficient, consecutive_failures, self.policy)
        logger.info(
            f"Health: balance={format_native(balance)} | sufficient={sufficient} | "
            f"board={'up' if earning_reachable else 'DOWN'} | "
            f"gateway={'up' if gateway_reachable else 'down'} | mode={mode.value}"
        )
        return HealthCheckResult(
            balance=balance,
            sufficient_balance=sufficient,
            earning_source_reachable=earning_reachable,
            gateway_reachable=gateway_reachable,
            recommended_mode=mode,
        )
