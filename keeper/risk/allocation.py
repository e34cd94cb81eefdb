"""Allocation engine.

Budget per category is recomputed from every snapshot, never cached:

    remaining = total_usdc_converted * bps // 10000 - already_spent   (floored at 0)

The ledger's bps are authoritative. The local config only supplies the
initialization defaults, and is checked against the ledger at startup.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from keeper.config import BPS_DENOMINATOR, AllocationConfig, KeeperConfig
from keeper.errors import ConfigInvalid
from keeper.execution.schemas import OperationCategory
from keeper.ledger.schemas import TreasuryState

DISPATCH_CATEGORIES = (OperationCategory.buyback, OperationCategory.liquidity)


@dataclass(frozen=True)
class AllocationRatios:
    buyback_bps: int
    liquidity_bps: int
    reserve_bps: int

    @classmethod
    def from_config(cls, alloc: AllocationConfig) -> "AllocationRatios":
        bps = alloc.to_bps()
        return cls(buyback_bps=bps["buyback"], liquidity_bps=bps["liquidity"], reserve_bps=bps["reserve"])

    @classmethod
    def from_state(cls, state: TreasuryState) -> "AllocationRatios":
        return cls(
            buyback_bps=state.buyback_allocation_bps,
            liquidity_bps=state.liquidity_allocation_bps,
            reserve_bps=state.reserve_allocation_bps,
        )

    @property
    def total_bps(self) -> int:
        return self.buyback_bps + self.liquidity_bps + self.reserve_bps

    @property
    def valid(self) -> bool:
        return self.total_bps == BPS_DENOMINATOR

    def bps_for(self, category: OperationCategory) -> int:
        if category == OperationCategory.buyback:
            return self.buyback_bps
        if category == OperationCategory.liquidity:
            return self.liquidity_bps
        raise ValueError(f"No allocation for category {category}")

    def as_dict(self) -> Dict[str, int]:
        return {"buyback": self.buyback_bps, "liquidity": self.liquidity_bps, "reserve": self.reserve_bps}


def spent_for(category: OperationCategory, state: TreasuryState) -> int:
    if category == OperationCategory.buyback:
        return state.total_buybacks_usdc
    if category == OperationCategory.liquidity:
        return state.total_liquidity_usdc
    raise ValueError(f"No spend counter for category {category}")


def budget_for(category: OperationCategory, state: TreasuryState, ratios: AllocationRatios) -> int:
    allocated = state.total_usdc_converted * ratios.bps_for(category) // BPS_DENOMINATOR
    return max(0, allocated - spent_for(category, state))


def clamp_spend(budget: int, available: int, max_per_cycle: int) -> int:
    return max(0, min(budget, available, max_per_cycle))


def allocation_divergence_bps(local: AllocationRatios, ledger: AllocationRatios) -> Dict[str, int]:
    return {k: abs(v - ledger.as_dict()[k]) for k, v in local.as_dict().items()}


def resolve_allocation_ratios(
    config: KeeperConfig,
    state: TreasuryState,
    tolerance_bps: Optional[int] = None,
) -> AllocationRatios:
    """Return the ledger's ratios, refusing to start if local defaults disagree."""
    tolerance = config.allocation_tolerance_bps if tolerance_bps is None else tolerance_bps
    local = AllocationRatios.from_config(config.allocations)
    ledger = AllocationRatios.from_state(state)
    diverged = {k: d for k, d in allocation_divergence_bps(local, ledger).items() if d > tolerance}
    if diverged:
        raise ConfigInvalid(
            f"Local allocations {local.as_dict()} diverge from ledger {ledger.as_dict()} "
            f"by more than {tolerance} bps: {diverged}"
        )
    return ledger


__all__ = [
    "DISPATCH_CATEGORIES",
    "AllocationRatios",
    "allocation_divergence_bps",
    "budget_for",
    "clamp_spend",
    "resolve_allocation_ratios",
    "spent_for",
]
