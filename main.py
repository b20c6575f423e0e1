"""
bounty-sentinel - main entry point

Wires the chain client, adapters, collaborators and cycle controller, runs
the cycle loop beside the status API.
One file to understand how everything connects.

Usage:
    python main.py              # Start the agent + status API
    uvicorn main:app            # Same, via uvicorn directly
"""

import os
import re
import asyncio
import logging
from pathlib import Path
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("sentinel.main")

AUDIT_DIR = Path(os.getenv("AUDIT_DIR", "data/audit"))


# ============================================================
# MODULE IMPORTS
# ============================================================

from sentinel.policy import DEFAULT_NETWORK, env_int, get_network_config, load_policy_from_env
from sentinel.chain import ChainClient
from sentinel.ledger import Ledger, write_audit_package
from sentinel.health import HealthMonitor
from sentinel.earner import Earner
from sentinel.spender import Spender
from sentinel.verifier import BrowserVerifier, ReceiptVerifier
from sentinel.controller import CycleController, CycleRecord
from sentinel.adapters.gateway import DEFAULT_GATEWAY_URL, GatewayClient
from sentinel.adapters.blob_store import DEFAULT_PUBLISHER_URL, BlobPublisher
from api.server import create_app


# ============================================================
# GLOBALS (singleton instances)
# ============================================================

policy = load_policy_from_env()
network = get_network_config(os.getenv("CHAIN_NETWORK", DEFAULT_NETWORK))

chain = ChainClient(network)
gateway = GatewayClient(
    base_url=os.getenv("GATEWAY_BASE_URL", DEFAULT_GATEWAY_URL),
    token=os.getenv("GATEWAY_TOKEN", ""),
)
publisher = BlobPublisher(
    base_url=os.getenv("BLOB_PUBLISHER_URL", DEFAULT_PUBLISHER_URL),
    epochs=max(1, env_int("BLOB_EPOCHS", 3)),
)
ledger = Ledger()

earner = Earner(chain, gateway, os.getenv("BOUNTY_BOARD_ADDRESS", ""))
spender = Spender(
    chain,
    gateway,
    publisher,
    registry_address=os.getenv("PROTECTION_REGISTRY_ADDRESS", ""),
    secret=os.getenv("PROTECTION_SECRET", ""),
)

if os.getenv("VERIFY_MODE", "browser").lower() == "receipt":
    verifier = ReceiptVerifier(chain)
else:
    verifier = BrowserVerifier(gateway, chain.tx_url)

health = HealthMonitor(
    balance_fn=chain.get_balance,
    earning_probe=earner.get_available_bounties,
    gateway_probe=gateway.is_reachable,
    policy=policy,
)

# Subject address + wallet URL are bound once the chain client is up (lifespan)
controller = CycleController(
    ledger=ledger,
    health=health,
    earner=earner,
    spender=spender,
    verifier=verifier,
    subject_address="",
    policy=policy,
)


# ============================================================
# CYCLE LOOP
# ============================================================

def _persist_audit(record: CycleRecord):
    audit = record.phases.audit
    if audit is None:
        return
    try:
        write_audit_package(audit, AUDIT_DIR / "latest.json")
    except OSError as e:
        logger.error(f"Failed to write audit package: {e}")


_cycle_running: bool = False

async def _cycle_loop():
    """One cycle every CYCLE_INTERVAL_MINUTES, never two at once."""
    global _cycle_running
    interval = policy.CYCLE_INTERVAL_MINUTES * 60

    while True:
        # ---- OVERLAP GUARD ----
        if _cycle_running:
            logger.warning("Cycle loop: previous cycle still running, skipping this tick")
            await asyncio.sleep(interval)
            continue
        _cycle_running = True
        try:
            record = await controller.run_cycle()
            _persist_audit(record)
            if record.success and record.phases.report:
                logger.info(f"P&L:\n{record.phases.report.pnl_summary}")
                logger.info(f"Next cycle at {record.phases.report.next_cycle_at.isoformat()}")
        except Exception as e:
            logger.error(f"Cycle loop critical error: {type(e).__name__}: {e}")
        finally:
            _cycle_running = False

        await asyncio.sleep(interval)


# ============================================================
# APP LIFECYCLE
# ============================================================

@asynccontextmanager
async def lifespan(app):
    """Startup and shutdown."""
    logger.info("=" * 60)
    logger.info(f"bounty-sentinel starting on {network.name} (chain {network.chain_id})")
    logger.info("=" * 60)

    ok = await asyncio.get_running_loop().run_in_executor(
        None, chain.initialize, os.getenv("AGENT_PRIVATE_KEY", ""), os.getenv("CHAIN_RPC_URL") or None
    )
    if ok:
        controller.bind_wallet(chain.address, chain.address_url())
    else:
        logger.warning("Chain client unavailable: cycles will fail until it is configured")

    if not gateway.is_configured:
        logger.warning("No GATEWAY_TOKEN: bounty tasks and explorer checks are disabled")

    cycle_task = asyncio.create_task(_cycle_loop())
    logger.info(f"Cycle loop started (every {policy.CYCLE_INTERVAL_MINUTES}m)")

    yield

    logger.info("bounty-sentinel shutting down...")
    cycle_task.cancel()
    await gateway.close()
    await publisher.close()
    logger.info("Goodbye.")


def create_sentinel_app():
    """Create the fully wired FastAPI app."""
    app = create_app(controller=controller, ledger=ledger, chain_status=chain.get_status)
    # Replace the default lifespan with ours
    app.router.lifespan_context = lifespan
    return app


app = create_sentinel_app()

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = env_int("PORT", 8000)

    logger.info(f"Starting server on {host}:{port}")

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        log_level=LOG_LEVEL.lower(),
    )
