"""
Cycle Policy - Operating Modes & Survival Thresholds

The controller's degraded-operation rules live here:
- Mode: NORMAL / STARVATION / ERROR, recomputed once per cycle
- STARVATION when the wallet balance is at or below the survival threshold
- ERROR after N consecutive failed cycles (sticky until one cycle succeeds)
- Network table: RPC endpoints, explorers and native units per network

Thresholds are policy values, not derived ones. They are configurable through
the environment (see load_policy_from_env) and default to the values the
agent has always run with.
"""

import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Final

from .errors import ChainError

logger = logging.getLogger("sentinel.policy")


class Mode(Enum):
    NORMAL = "normal"
    STARVATION = "starvation"   # Balance at/below threshold: spending is skipped
    ERROR = "error"             # Too many consecutive failed cycles


# ============================================================
# CYCLE POLICY
# ============================================================

@dataclass(frozen=True)
class CyclePolicy:
    """Frozen dataclass = fixed for the lifetime of a controller."""

    # --- SURVIVAL ---
    STARVATION_THRESHOLD_WEI: int = 10_000_000_000_000_000   # 0.01 native token
    # balance > threshold = sufficient; balance <= threshold = STARVATION

    # --- ESCALATION ---
    ERROR_FAILURE_THRESHOLD: int = 3                         # consecutive failed cycles → ERROR
    SKIP_SPEND_IN_ERROR_MODE: bool = False                   # ERROR mode also skips spending

    # --- SCHEDULING ---
    CYCLE_INTERVAL_MINUTES: int = 5
    CYCLE_HISTORY_SIZE: int = 50                             # CycleRecords kept for the status API


DEFAULT_POLICY = CyclePolicy()


def env_int(name: str, default: int) -> int:
    """Non-negative int from the environment, or default when the value is unusable."""
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw.replace("_", ""))
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
    if value < 0:
        logger.warning(f"Negative {name}={raw!r}, using default {default}")
        return default
    return value


def env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def load_policy_from_env() -> CyclePolicy:
    """Build a CyclePolicy from environment overrides, keeping defaults for anything unset."""
    policy = CyclePolicy(
        STARVATION_THRESHOLD_WEI=env_int(
            "STARVATION_THRESHOLD_WEI", DEFAULT_POLICY.STARVATION_THRESHOLD_WEI
        ),
        ERROR_FAILURE_THRESHOLD=max(
            1, env_int("ERROR_FAILURE_THRESHOLD", DEFAULT_POLICY.ERROR_FAILURE_THRESHOLD)
        ),
        SKIP_SPEND_IN_ERROR_MODE=env_bool(
            "SKIP_SPEND_IN_ERROR_MODE", DEFAULT_POLICY.SKIP_SPEND_IN_ERROR_MODE
        ),
        CYCLE_INTERVAL_MINUTES=max(
            1, env_int("CYCLE_INTERVAL_MINUTES", DEFAULT_POLICY.CYCLE_INTERVAL_MINUTES)
        ),
    )
    logger.info(
        f"Cycle policy: starvation<={policy.STARVATION_THRESHOLD_WEI} wei | "
        f"error after {policy.ERROR_FAILURE_THRESHOLD} failures | "
        f"interval={policy.CYCLE_INTERVAL_MINUTES}m"
    )
    return policy


# ============================================================
# NETWORK REGISTRY
# ============================================================

@dataclass(frozen=True)
class NetworkConfig:
    """Immutable per-network configuration."""
    name: str
    rpc: str
    chain_id: int
    explorer: str
    native_symbol: str
    native_decimals: int = 18


NETWORK_DEFAULTS: Final[dict[str, NetworkConfig]] = {
    "base": NetworkConfig(
        name="base", rpc="https://mainnet.base.org", chain_id=8453,
        explorer="https://basescan.org", native_symbol="ETH",
    ),
    "base-sepolia": NetworkConfig(
        name="base-sepolia", rpc="https://sepolia.base.org", chain_id=84532,
        explorer="https://sepolia.basescan.org", native_symbol="ETH",
    ),
    "bsc": NetworkConfig(
        name="bsc", rpc="https://bsc-dataseed.binance.org", chain_id=56,
        explorer="https://bscscan.com", native_symbol="BNB",
    ),
}

DEFAULT_NETWORK: Final[str] = "base-sepolia"


def get_network_config(name: str) -> NetworkConfig:
    """Get network config by name. Raises ChainError if unknown."""
    config = NETWORK_DEFAULTS.get(name)
    if config is None:
        raise ChainError(f"Unknown network: {name}. Supported: {sorted(NETWORK_DEFAULTS)}")
    return config


def format_native(amount_wei: int, decimals: int = 18, places: int = 6) -> str:
    """Render an integer amount in whole native units without going through float."""
    sign = "-" if amount_wei < 0 else ""
    whole, frac = divmod(abs(amount_wei), 10 ** decimals)
    frac_str = str(frac).rjust(decimals, "0")[:places]
    return f"{sign}{whole}.{frac_str}"
