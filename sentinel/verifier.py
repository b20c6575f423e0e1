"""
Verifier - Independent Transaction Confirmation

Confirms the cycle's transaction ids against something other than the
client that sent them:
- BrowserVerifier: opens the block explorer in the gateway's browser and
  looks for the success marker (or the tx id) in the page snapshot
- ReceiptVerifier: asks the RPC node for the receipt status

A transaction that cannot be confirmed is verified=False; verify() never
fails the cycle.
"""

import logging
from typing import Callable

from .adapters.gateway import GatewayClient
from .chain import ChainClient
from .errors import SentinelError
from .results import VerificationDetail

logger = logging.getLogger("sentinel.verifier")

SUCCESS_MARKER = "Success"


class BrowserVerifier:

    def __init__(self, gateway: GatewayClient, url_fn: Callable[[str], str]):
        self.gateway = gateway
        self.url_fn = url_fn

    async def verify(self, transaction_ids: list[str]) -> list[VerificationDetail]:
        details = []
        for tx_id in transaction_ids:
            url = self.url_fn(tx_id)
            verified = False
            screenshot_url = None

            if self.gateway.is_configured:
                try:
                    await self.gateway.browser("navigate", url)
                    snapshot = await self.gateway.browser("snapshot")
                    text = f"{snapshot.text} {snapshot.output}"
                    verified = SUCCESS_MARKER in text or tx_id in text
                    screenshot_url = snapshot.screenshot_url
                except SentinelError as e:
                    logger.warning(f"Explorer check failed for {tx_id[:16]}...: {e}")

            details.append(VerificationDetail(
                transaction_id=tx_id,
                verified=verified,
                inspection_url=url,
                screenshot_url=screenshot_url,
            ))

        logger.info(
            f"Verified {sum(1 for d in details if d.verified)}/{len(details)} transactions via explorer"
        )
        return details


class ReceiptVerifier:

    def __init__(self, chain: ChainClient):
        self.chain = chain

    async def verify(self, transaction_ids: list[str]) -> list[VerificationDetail]:
        details = []
        for tx_id in transaction_ids:
            status = await self.chain.get_receipt_status(tx_id)
            details.append(VerificationDetail(
                transaction_id=tx_id,
                verified=status is True,
                inspection_url=self.chain.tx_url(tx_id),
            ))
        return details
