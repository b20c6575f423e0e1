"""
Chain Client - On-Chain Transaction Layer

Everything the agent does on-chain goes through here:
- Wallet balance (native token, integer wei)
- View calls on the bounty board / protection registry
- Signed contract transactions (gas estimate + 20% buffer, nonce from chain)
- Receipt lookups for independent verification
- Explorer URLs for every transaction the ledger records

Design:
- Sync Web3 calls wrapped in run_in_executor() (web3.py async is fragile)
- Embedded minimal ABI: only the functions we call
- Non-fatal: a failed transaction returns ChainTxResult(success=False),
  it never raises into the cycle
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TransactionNotFound

from .decoding import to_hex
from .errors import ChainError
from .policy import NetworkConfig, format_native

logger = logging.getLogger("sentinel.chain")


# ============================================================
# MINIMAL ABI: only functions we call at runtime
# ============================================================

BOUNTY_BOARD_ABI = [
    # getOpenBounties() → (id, description, rewardAmount, poster, completed)[]
    {
        "inputs": [],
        "name": "getOpenBounties",
        "outputs": [
            {
                "components": [
                    {"name": "id", "type": "uint256"},
                    {"name": "description", "type": "string"},
                    {"name": "rewardAmount", "type": "uint256"},
                    {"name": "poster", "type": "address"},
                    {"name": "completed", "type": "bool"},
                ],
                "name": "",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "view",
        "type": "function",
    },
    # claimReward(uint256 bountyId, bytes32 proofHash): pays rewardAmount to msg.sender
    {
        "inputs": [
            {"name": "bountyId", "type": "uint256"},
            {"name": "proofHash", "type": "bytes32"},
        ],
        "name": "claimReward",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

PROTECTION_REGISTRY_ABI = [
    # createPolicy(address[] allowed) → emits PolicyCreated(policyId, owner)
    {
        "inputs": [{"name": "allowed", "type": "address[]"}],
        "name": "createPolicy",
        "outputs": [{"name": "policyId", "type": "uint256"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # anchorBlob(uint256 policyId, string blobId, bytes32 contentHash)
    {
        "inputs": [
            {"name": "policyId", "type": "uint256"},
            {"name": "blobId", "type": "string"},
            {"name": "contentHash", "type": "bytes32"},
        ],
        "name": "anchorBlob",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "policyId", "type": "uint256"},
            {"indexed": True, "name": "owner", "type": "address"},
        ],
        "name": "PolicyCreated",
        "type": "event",
    },
]


# ============================================================
# RESULT TYPE
# ============================================================

@dataclass
class ChainTxResult:
    """Result of an on-chain transaction attempt."""
    success: bool
    tx_hash: str = ""
    error: str = ""
    gas_used: int = 0
    gas_price_wei: int = 0       # effectiveGasPrice from receipt
    gas_cost_wei: int = 0        # gas_used * gas_price, integer wei
    receipt: Optional[Any] = None


# ============================================================
# CHAIN CLIENT
# ============================================================

class ChainClient:
    """
    Single-network wallet + contract access for the agent.

    Usage:
        client = ChainClient(get_network_config("base-sepolia"))
        if client.initialize(private_key):
            balance = await client.get_balance()
            result = await client.send(board.functions.claimReward(7, proof))
    """

    def __init__(self, network: NetworkConfig):
        self.network = network
        self._w3: Optional[Web3] = None
        self._private_key: str = ""
        self._address: str = ""
        self._initialized: bool = False
        self._tx_count: int = 0
        self._last_error: str = ""

    def initialize(self, private_key: str, rpc_url: Optional[str] = None) -> bool:
        """Connect to the RPC and derive the agent address. Returns False if unusable."""
        if not private_key:
            logger.warning("No AGENT_PRIVATE_KEY: chain client disabled")
            return False

        try:
            self._address = Account.from_key(private_key).address
        except Exception as e:
            # The key itself is never logged
            logger.error(f"Invalid AGENT_PRIVATE_KEY: {type(e).__name__}")
            return False
        self._private_key = private_key

        url = rpc_url or self.network.rpc
        w3 = Web3(Web3.HTTPProvider(url, request_kwargs={"timeout": 30}))
        if not w3.is_connected():
            logger.warning(f"Cannot connect to {self.network.name} RPC ({url})")
            return False

        self._w3 = w3
        self._initialized = True
        logger.info(f"Chain client connected: {self.network.name} | agent={self._address[:10]}...")
        return True

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def address(self) -> str:
        if not self._address:
            raise ChainError("Chain client not initialized")
        return self._address

    def _require_w3(self) -> Web3:
        if not self._initialized or self._w3 is None:
            raise ChainError("Chain client not initialized")
        return self._w3

    def contract(self, address: str, abi: list):
        w3 = self._require_w3()
        return w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    # ============================================================
    # READS
    # ============================================================

    async def get_balance(self) -> int:
        """Native balance of the agent wallet in wei."""
        w3 = self._require_w3()
        balance = await asyncio.get_running_loop().run_in_executor(
            None, w3.eth.get_balance, self._address
        )
        logger.debug(f"Balance: {format_native(balance)} {self.network.native_symbol}")
        return int(balance)

    async def call(self, fn) -> Any:
        """Run a contract view function off the event loop."""
        self._require_w3()
        return await asyncio.get_running_loop().run_in_executor(None, fn.call)

    async def get_receipt_status(self, tx_hash: str) -> Optional[bool]:
        """True/False for a mined tx's status, None if the tx is unknown or the RPC fails."""
        w3 = self._require_w3()

        def _lookup():
            return w3.eth.get_transaction_receipt(tx_hash)

        try:
            receipt = await asyncio.get_running_loop().run_in_executor(None, _lookup)
        except TransactionNotFound:
            return None
        except Exception as e:
            logger.warning(f"Receipt lookup failed for {tx_hash[:16]}...: {e}")
            return None
        return receipt["status"] == 1

    # ============================================================
    # WRITE TRANSACTIONS
    # ============================================================

    async def send(self, tx_fn) -> ChainTxResult:
        """
        Build, sign, and send a transaction, then wait for its receipt.

        Args:
            tx_fn: A web3 contract function call (e.g., board.functions.claimReward(id, proof))
        """
        try:
            w3 = self._require_w3()
        except ChainError as e:
            return ChainTxResult(success=False, error=str(e))

        try:
            def _execute():
                nonce = w3.eth.get_transaction_count(self._address)
                tx = tx_fn.build_transaction({
                    "from": self._address,
                    "nonce": nonce,
                    "gasPrice": w3.eth.gas_price,
                    "chainId": self.network.chain_id,
                })

                # Gas estimation + 20% buffer
                try:
                    gas_estimate = w3.eth.estimate_gas(tx)
                    tx["gas"] = int(gas_estimate * 1.2)
                except Exception as gas_err:
                    logger.warning(f"Gas estimation failed, using default 200k: {gas_err}")
                    tx["gas"] = 200_000

                signed = w3.eth.account.sign_transaction(tx, self._private_key)
                tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
                receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
                return receipt, to_hex(tx_hash)

            receipt, tx_hash_hex = await asyncio.get_running_loop().run_in_executor(None, _execute)

        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR [{self.network.name}]: {error}")
            self._last_error = error
            return ChainTxResult(success=False, error=error)

        gas_used = int(receipt.get("gasUsed", 0))
        gas_price_wei = int(receipt.get("effectiveGasPrice", 0))
        gas_cost_wei = gas_used * gas_price_wei

        if receipt["status"] != 1:
            error = f"TX reverted: {tx_hash_hex}"
            logger.warning(f"TX FAILED [{self.network.name}]: {error}")
            self._last_error = error
            return ChainTxResult(
                success=False, tx_hash=tx_hash_hex, error=error,
                gas_used=gas_used, gas_price_wei=gas_price_wei,
                gas_cost_wei=gas_cost_wei, receipt=receipt,
            )

        self._tx_count += 1
        logger.info(
            f"TX SUCCESS [{self.network.name}]: {tx_hash_hex[:16]}... | "
            f"gas={gas_used} | cost={format_native(gas_cost_wei)} {self.network.native_symbol}"
        )
        return ChainTxResult(
            success=True, tx_hash=tx_hash_hex,
            gas_used=gas_used, gas_price_wei=gas_price_wei,
            gas_cost_wei=gas_cost_wei, receipt=receipt,
        )

    # ============================================================
    # STATUS
    # ============================================================

    def tx_url(self, tx_hash: str) -> str:
        return f"{self.network.explorer}/tx/{tx_hash}"

    def address_url(self) -> str:
        return f"{self.network.explorer}/address/{self._address}" if self._address else ""

    def get_status(self) -> dict:
        return {
            "initialized": self._initialized,
            "network": self.network.name,
            "address": self._address[:10] + "..." if self._address else "",
            "tx_count": self._tx_count,
            "last_error": self._last_error,
        }
