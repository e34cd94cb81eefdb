import pytest

from fakes import make_config, make_state
from keeper.errors import ConfigInvalid
from keeper.execution.schemas import OperationCategory
from keeper.risk.allocation import (
    AllocationRatios,
    allocation_divergence_bps,
    budget_for,
    clamp_spend,
    resolve_allocation_ratios,
)

BUYBACK = OperationCategory.buyback
LIQUIDITY = OperationCategory.liquidity


def test_budget_from_converted_total():
    state = make_state(total_usdc_converted=1000, buyback_allocation_bps=5000)
    ratios = AllocationRatios.from_state(state)
    assert budget_for(BUYBACK, state, ratios) == 500
    assert budget_for(LIQUIDITY, state, ratios) == 300


def test_budget_exhausted_after_spend():
    state = make_state(total_usdc_converted=1000, total_buybacks_usdc=500)
    assert budget_for(BUYBACK, state, AllocationRatios.from_state(state)) == 0


def test_budget_never_negative_when_overspent():
    state = make_state(total_usdc_converted=1000, total_liquidity_usdc=900)
    assert budget_for(LIQUIDITY, state, AllocationRatios.from_state(state)) == 0


def test_budget_floors_fractional_units():
    state = make_state(total_usdc_converted=3, buyback_allocation_bps=5000)
    assert budget_for(BUYBACK, state, AllocationRatios.from_state(state)) == 1


def test_budget_is_monotone_in_converted_total():
    previous = -1
    for converted in (0, 1, 999, 1000, 10_000, 2_000_000_000):
        state = make_state(total_usdc_converted=converted, total_buybacks_usdc=0)
        budget = budget_for(BUYBACK, state, AllocationRatios.from_state(state))
        assert budget >= previous
        previous = budget


def test_reserve_has_no_budget():
    ratios = AllocationRatios(buyback_bps=5000, liquidity_bps=3000, reserve_bps=2000)
    with pytest.raises(ValueError):
        ratios.bps_for(OperationCategory.conversion)


def test_clamp_spend():
    assert clamp_spend(1000, 600, 300) == 300
    assert clamp_spend(1000, 200, 300) == 200
    assert clamp_spend(100, 600, 300) == 100
    assert clamp_spend(-5, 600, 300) == 0


def test_ratios_from_config():
    ratios = AllocationRatios.from_config(make_config().allocations)
    assert ratios.as_dict() == {"buyback": 5000, "liquidity": 3000, "reserve": 2000}
    assert ratios.valid


def test_resolve_returns_ledger_ratios_within_tolerance():
    state = make_state(buyback_allocation_bps=5005, liquidity_allocation_bps=2995)
    ratios = resolve_allocation_ratios(make_config(tolerance_bps=10), state)
    assert ratios.buyback_bps == 5005
    assert ratios.liquidity_bps == 2995


def test_resolve_rejects_divergent_local_defaults():
    state = make_state(buyback_allocation_bps=6000, liquidity_allocation_bps=2000)
    with pytest.raises(ConfigInvalid):
        resolve_allocation_ratios(make_config(), state)


def test_divergence_per_category():
    local = AllocationRatios(5000, 3000, 2000)
    ledger = AllocationRatios(6000, 2000, 2000)
    assert allocation_divergence_bps(local, ledger) == {"buyback": 1000, "liquidity": 1000, "reserve": 0}
