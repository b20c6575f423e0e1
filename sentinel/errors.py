"""
Sentinel exceptions.

Nothing below the cycle controller lets these escape to the scheduler:
run_cycle() catches every exception and turns it into a failed CycleRecord.
"""


class SentinelError(Exception):
    """Base class for all sentinel errors."""
    pass


class LedgerError(SentinelError, ValueError):
    """Raised when a ledger record violates the entry model (bad enum, bad amount)."""
    pass


class GatewayError(SentinelError):
    """Execution gateway transport or RPC failure."""
    pass


class ChainError(SentinelError):
    """Chain client misconfiguration or unusable RPC connection."""
    pass


class CycleAborted(SentinelError):
    """Infrastructure-absent precondition failed; the cycle stops before earning."""
    pass


class StorageError(SentinelError):
    """Blob publisher rejected or failed an upload."""
    pass
