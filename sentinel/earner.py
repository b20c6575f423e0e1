"""
Earner - Bounty Work & Reward Claims

One earn() per cycle:
1. Read open bounties from the bounty board contract
2. Pick the best one (highest reward; ties broken by task type)
3. Run the task's command on the execution gateway
4. SHA-256 of the output = work proof
5. claimReward(bountyId, proofHash) on-chain

At most one claim per cycle. A failed task produces no claim; a failed claim
comes back as ClaimResult(success=False) and never reaches the ledger.
"""

import hashlib
import logging
import time
from datetime import datetime, timezone
from typing import Optional

from .adapters.gateway import GatewayClient
from .chain import BOUNTY_BOARD_ABI, ChainClient
from .decoding import decode_bounty_list
from .errors import GatewayError
from .results import (
    TASK_PRIORITY,
    BountyTask,
    ClaimResult,
    EarnResult,
    TaskResult,
    TaskType,
)

logger = logging.getLogger("sentinel.earner")


# Command run on the gateway for each task type
TASK_COMMANDS = {
    TaskType.LINT: "ruff check --output-format=json . 2>&1 || true",
    TaskType.TEST: "pytest -q --no-header 2>&1 || true",
    TaskType.FORMAT: "ruff format . 2>&1 || true",
    TaskType.AUDIT: "pip-audit -f json 2>&1 || true",
    TaskType.CUSTOM: 'echo "custom task placeholder"',
}


class Earner:
    """
    Earning collaborator for the cycle controller.

    Usage:
        earner = Earner(chain, gateway, board_address)
        result = await earner.earn()
        for claim in result.claims: ...
    """

    def __init__(
        self,
        chain: ChainClient,
        gateway: GatewayClient,
        board_address: str,
        task_commands: Optional[dict[TaskType, str]] = None,
    ):
        self.chain = chain
        self.gateway = gateway
        self.board_address = board_address
        self.task_commands = {**TASK_COMMANDS, **(task_commands or {})}

    def _board(self):
        return self.chain.contract(self.board_address, BOUNTY_BOARD_ABI)

    async def earn(self) -> EarnResult:
        bounties = await self.get_available_bounties()
        if not bounties:
            logger.info("No open bounties")
            return self._result(0, None)

        best = self.select_best_bounty(bounties)
        if best is None:
            return self._result(len(bounties), None)

        logger.info(
            f"Selected bounty #{best.bounty_id} ({best.task_type.value}, reward={best.reward_amount})"
        )
        task = await self.execute_task(best)
        if not task.success:
            logger.warning(f"Bounty #{best.bounty_id} task failed: {task.error}")
            return self._result(len(bounties), None)

        claim = await self.claim_reward(task)
        return self._result(len(bounties), claim, completed=1)

    @staticmethod
    def _result(found: int, claim: Optional[ClaimResult], completed: int = 0) -> EarnResult:
        if claim is None:
            return EarnResult(
                tasks_found=found, tasks_completed=completed, total_earned=0,
                timestamp=datetime.now(timezone.utc),
            )
        return EarnResult(
            tasks_found=found,
            tasks_completed=completed,
            total_earned=claim.amount if claim.success else 0,
            claims=(claim,),
            timestamp=datetime.now(timezone.utc),
        )

    async def get_available_bounties(self) -> list[BountyTask]:
        """Open, uncompleted bounties. Raises if the board cannot be read (used as a reachability probe)."""
        raw = await self.chain.call(self._board().functions.getOpenBounties())
        return [b for b in decode_bounty_list(raw) if not b.completed]

    def select_best_bounty(self, bounties: list[BountyTask]) -> Optional[BountyTask]:
        if not bounties:
            return None
        return max(
            bounties,
            key=lambda b: (b.reward_amount, TASK_PRIORITY[b.task_type]),
        )

    async def execute_task(self, bounty: BountyTask) -> TaskResult:
        start = time.monotonic()
        command = self.task_commands[bounty.task_type]

        try:
            result = await self.gateway.exec(command, host="gateway", timeout=30)
        except GatewayError as e:
            return TaskResult(
                bounty=bounty, output="", output_hash="", success=False,
                duration_ms=int((time.monotonic() - start) * 1000), error=str(e),
            )

        return TaskResult(
            bounty=bounty,
            output=result.output,
            output_hash=hashlib.sha256(result.output.encode("utf-8")).hexdigest(),
            success=result.exit_code == 0,
            duration_ms=int((time.monotonic() - start) * 1000),
            error="" if result.exit_code == 0 else f"Command exited with code {result.exit_code}",
        )

    async def claim_reward(self, task: TaskResult) -> ClaimResult:
        bounty = task.bounty
        try:
            tx_fn = self._board().functions.claimReward(
                bounty.bounty_id, bytes.fromhex(task.output_hash)
            )
            tx = await self.chain.send(tx_fn)
        except Exception as e:
            logger.warning(f"Claim for bounty #{bounty.bounty_id} failed: {e}")
            return ClaimResult(
                success=False,
                amount=bounty.reward_amount,
                proof_hash=task.output_hash,
                task_id=str(bounty.bounty_id),
                error=f"{type(e).__name__}: {e}",
            )

        return ClaimResult(
            success=tx.success,
            amount=bounty.reward_amount,
            transaction_id=tx.tx_hash or None,
            proof_hash=task.output_hash,
            task_id=str(bounty.bounty_id),
            inspection_url=self.chain.tx_url(tx.tx_hash) if tx.tx_hash else None,
            error=tx.error,
        )
