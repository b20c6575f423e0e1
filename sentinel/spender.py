"""
Spender - Protective Encryption of Sensitive Data

One spend() per cycle. For every sensitive file the gateway can read:
1. createPolicy([agent]) on the protection registry → policyId (PolicyCreated event)
2. Encrypt with a Fernet key derived from PROTECTION_SECRET + policyId
3. Store the ciphertext on the blob publisher → blobId
4. anchorBlob(policyId, blobId, sha256(ciphertext)) on-chain

amount_spent = gas of the policy tx + gas of the anchor tx (integer wei).
Plaintext never leaves this module; only ciphertext reaches the publisher.
One failed item is success=False for that item only.
"""

import base64
import hashlib
import hmac
import logging
from datetime import datetime, timezone

from cryptography.fernet import Fernet
from web3.logs import DISCARD

from .adapters.blob_store import BlobPublisher
from .adapters.gateway import GatewayClient
from .chain import PROTECTION_REGISTRY_ABI, ChainClient
from .decoding import decode_policy_id
from .results import ProtectionResult, SpendResult

logger = logging.getLogger("sentinel.spender")


DEFAULT_SENSITIVE_PATHS = (
    "~/.ssh/id_ed25519.pub",
    "~/.gitconfig",
    "./audit-log.json",
)


def derive_key(secret: str, policy_id: str) -> bytes:
    """Fernet key for one policy: urlsafe_b64(HMAC-SHA256(secret, 'protect:' + policyId))."""
    if not secret:
        raise ValueError("PROTECTION_SECRET is not set")
    derived = hmac.new(
        secret.encode(),
        b"protect:" + policy_id.encode(),
        hashlib.sha256,
    ).digest()
    return base64.urlsafe_b64encode(derived)


class Spender:
    """
    Spending collaborator for the cycle controller.

    Usage:
        spender = Spender(chain, gateway, publisher, registry_address, secret)
        result = await spender.spend()
    """

    def __init__(
        self,
        chain: ChainClient,
        gateway: GatewayClient,
        publisher: BlobPublisher,
        registry_address: str,
        secret: str,
        sensitive_paths: tuple[str, ...] = DEFAULT_SENSITIVE_PATHS,
    ):
        self.chain = chain
        self.gateway = gateway
        self.publisher = publisher
        self.registry_address = registry_address
        self._secret = secret
        self.sensitive_paths = tuple(sensitive_paths)

    def _registry(self):
        return self.chain.contract(self.registry_address, PROTECTION_REGISTRY_ABI)

    async def spend(self) -> SpendResult:
        items = await self.collect_sensitive_data()
        if not items:
            logger.info("No sensitive data found to protect")
            return SpendResult(
                items_protected=0, total_spent=0,
                timestamp=datetime.now(timezone.utc),
            )

        protections = []
        for label, data in items.items():
            protections.append(await self.protect(label, data))

        succeeded = [p for p in protections if p.success]
        logger.info(f"Protected {len(succeeded)}/{len(protections)} items")
        return SpendResult(
            items_protected=len(succeeded),
            total_spent=sum(p.amount_spent for p in succeeded),
            protections=tuple(protections),
            timestamp=datetime.now(timezone.utc),
        )

    async def collect_sensitive_data(self) -> dict[str, bytes]:
        """Readable, non-empty files from sensitive_paths, keyed by path."""
        items: dict[str, bytes] = {}
        for path in self.sensitive_paths:
            content = await self.gateway.read_file(path)
            if content:
                items[path] = content.encode("utf-8")
            else:
                logger.debug(f"Skipping {path}: missing or unreadable")
        return items

    def encrypt(self, plaintext: bytes, policy_id: str) -> bytes:
        return Fernet(derive_key(self._secret, policy_id)).encrypt(plaintext)

    def decrypt(self, ciphertext: bytes, policy_id: str) -> bytes:
        return Fernet(derive_key(self._secret, policy_id)).decrypt(ciphertext)

    async def protect(self, label: str, data: bytes) -> ProtectionResult:
        spent = 0
        try:
            registry = self._registry()

            policy_tx = await self.chain.send(
                registry.functions.createPolicy([self.chain.address])
            )
            spent += policy_tx.gas_cost_wei
            if not policy_tx.success:
                return self._failed(label, data, spent, f"createPolicy failed: {policy_tx.error}")

            events = registry.events.PolicyCreated().process_receipt(policy_tx.receipt, errors=DISCARD)
            policy_id = decode_policy_id(events)
            if not policy_id:
                return self._failed(label, data, spent, "PolicyCreated event missing from receipt")

            ciphertext = self.encrypt(data, policy_id)
            upload = await self.publisher.store(ciphertext)

            anchor_tx = await self.chain.send(
                registry.functions.anchorBlob(
                    int(policy_id), upload.blob_id, hashlib.sha256(ciphertext).digest()
                )
            )
            spent += anchor_tx.gas_cost_wei
            if not anchor_tx.success:
                return self._failed(label, data, spent, f"anchorBlob failed: {anchor_tx.error}")

        except Exception as e:
            return self._failed(label, data, spent, f"{type(e).__name__}: {e}")

        logger.info(f"Protected {label}: policy={policy_id} blob={upload.blob_id[:16]}...")
        return ProtectionResult(
            label=label,
            success=True,
            amount_spent=spent,
            transaction_id=anchor_tx.tx_hash or None,
            blob_id=upload.blob_id,
            policy_id=policy_id,
            inspection_url=self.chain.tx_url(anchor_tx.tx_hash) if anchor_tx.tx_hash else None,
            plaintext_size=len(data),
            ciphertext_size=len(ciphertext),
        )

    @staticmethod
    def _failed(label: str, data: bytes, spent: int, error: str) -> ProtectionResult:
        logger.warning(f"Protection of {label} failed: {error}")
        return ProtectionResult(
            label=label, success=False, amount_spent=spent,
            plaintext_size=len(data), error=error,
        )
