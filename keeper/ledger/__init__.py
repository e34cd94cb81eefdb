"""Ledger layer: treasury account decoding, RPC client, state reader.

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from keeper.ledger.reader import TreasuryReader`
  - `from keeper.ledger.client import LedgerClient`
"""

__all__: list[str] = []
