"""Deterministic gates evaluated before any dispatch.

Rules are pure (no ledger or network access). Skips are outcomes, not errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from keeper.config import LimitsConfig
from keeper.execution.schemas import CycleOutcome
from keeper.ledger.schemas import TreasuryState


@dataclass(frozen=True)
class GateResult:
    allowed: bool
    outcome: Optional[CycleOutcome] = None
    reason: str = ""
    remaining_s: int = 0


ALLOWED = GateResult(allowed=True)


@dataclass(frozen=True)
class EffectiveLimits:
    max_usdc_per_cycle: int
    cooldown_seconds: int
    slippage_bps: int


def effective_limits(state: TreasuryState, local: LimitsConfig) -> EffectiveLimits:
    """The stricter of ledger and local limits; cooldown always comes from the ledger."""
    return EffectiveLimits(
        max_usdc_per_cycle=min(state.max_usdc_per_cycle, local.max_usdc_per_cycle),
        cooldown_seconds=state.cooldown_seconds,
        slippage_bps=min(state.slippage_bps, local.slippage_bps),
    )


def check_allocations(state: TreasuryState) -> GateResult:
    if state.allocations_valid:
        return ALLOWED
    return GateResult(
        allowed=False,
        outcome=CycleOutcome.invalid_ledger_config,
        reason=f"ledger allocation bps sum to {state.allocation_bps_total}, expected 10000",
    )


def check_pause(state: TreasuryState) -> GateResult:
    if not state.paused:
        return ALLOWED
    return GateResult(allowed=False, outcome=CycleOutcome.paused, reason="treasury is paused")


def check_cooldown(state: TreasuryState, now: float) -> GateResult:
    elapsed = int(now) - state.last_operation_timestamp
    if elapsed >= state.cooldown_seconds:
        return ALLOWED
    remaining = state.cooldown_seconds - elapsed
    return GateResult(
        allowed=False,
        outcome=CycleOutcome.cooldown,
        reason=f"cooldown active, {remaining}s remaining",
        remaining_s=remaining,
    )


__all__ = [
    "ALLOWED",
    "EffectiveLimits",
    "GateResult",
    "check_allocations",
    "check_cooldown",
    "check_pause",
    "effective_limits",
]
