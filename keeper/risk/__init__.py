"""Allocation and gating rules (pure, no I/O)."""

from .allocation import AllocationRatios, budget_for, clamp_spend, resolve_allocation_ratios  # noqa: F401
from .rules import EffectiveLimits, GateResult, check_cooldown, check_pause, effective_limits  # noqa: F401
