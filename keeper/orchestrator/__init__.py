"""Keeper orchestration (cycle state machine and cadence loop).

Import concrete modules directly, e.g.:
  - `from keeper.orchestrator.keeper import Keeper`
  - `from keeper.orchestrator.main_loop import run_forever`
"""

__all__: list[str] = []
