"""Keeper error taxonomy.

Only `ConfigInvalid` and `WalletConfigError` are fatal (raised before the loop
starts). Everything else is caught per cycle, audited, and retried at the next
scheduled poll at the earliest.
"""

from __future__ import annotations

from typing import Optional


class KeeperError(RuntimeError):
    pass


class ConfigInvalid(KeeperError):
    pass


class WalletConfigError(KeeperError):
    pass


class TransientProviderError(KeeperError):
    """Network/timeout failure on the ledger RPC, swap provider or pool."""


class UnavailableError(TransientProviderError):
    pass


class QuoteError(TransientProviderError):
    pass


class PoolUnavailableError(TransientProviderError):
    pass


class DecodeError(KeeperError):
    pass


class ExecutionError(KeeperError):
    def __init__(self, message: str, *, reference: Optional[str] = None):
        super().__init__(message)
        self.reference = reference


class ExecutionUnconfirmed(ExecutionError):
    """Submitted, but confirmation was not observed before the deadline.

    Must be treated as failed for accounting; never assume it landed.
    """


class LedgerSubmissionError(ExecutionError):
    pass


__all__ = [
    "KeeperError",
    "ConfigInvalid",
    "WalletConfigError",
    "TransientProviderError",
    "UnavailableError",
    "QuoteError",
    "PoolUnavailableError",
    "DecodeError",
    "ExecutionError",
    "ExecutionUnconfirmed",
    "LedgerSubmissionError",
]
