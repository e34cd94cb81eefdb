"""Execution layer (swap provider, buyback and liquidity executors, journal).

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from keeper.execution.jupiter_client import JupiterClient`
  - `from keeper.execution.buyback import BuybackExecutor`
"""

__all__: list[str] = []
