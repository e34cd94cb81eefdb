"""Treasury snapshot schema.

A `TreasuryState` is one immutable, point-in-time view of the on-chain
treasury account. It is re-read every cycle and never cached across cycles.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from keeper.config import BPS_DENOMINATOR
from keeper.data.mongo import utc_now


class StateSource(str, Enum):
    ledger = "ledger"
    synthetic = "synthetic"


class TreasuryState(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, use_enum_values=True)

    authority: str = Field(..., description="Base58 key allowed to mutate configuration.")
    sol_balance: int = Field(..., ge=0, description="Spendable lamports.")
    usdc_balance: int = Field(..., ge=0, description="Spendable USDC minor units.")

    buyback_allocation_bps: int = Field(..., ge=0)
    liquidity_allocation_bps: int = Field(..., ge=0)
    reserve_allocation_bps: int = Field(..., ge=0)

    max_usdc_per_cycle: int = Field(..., ge=0)
    cooldown_seconds: int
    slippage_bps: int = Field(..., ge=0)

    total_sol_collected: int = Field(..., ge=0)
    total_usdc_converted: int = Field(..., ge=0)
    total_buybacks_usdc: int = Field(..., ge=0)
    total_liquidity_usdc: int = Field(..., ge=0)
    total_tokens_burned: int = Field(..., ge=0)

    last_operation_timestamp: int
    paused: bool

    source: StateSource = StateSource.ledger
    fetched_at: datetime = Field(default_factory=utc_now)

    @property
    def allocation_bps_total(self) -> int:
        return self.buyback_allocation_bps + self.liquidity_allocation_bps + self.reserve_allocation_bps

    @property
    def allocations_valid(self) -> bool:
        return self.allocation_bps_total == BPS_DENOMINATOR

    @property
    def synthetic(self) -> bool:
        return self.source == StateSource.synthetic

    def summary(self) -> dict:
        return {
            "source": self.source,
            "sol_balance": self.sol_balance,
            "usdc_balance": self.usdc_balance,
            "total_sol_collected": self.total_sol_collected,
            "total_usdc_converted": self.total_usdc_converted,
            "total_buybacks_usdc": self.total_buybacks_usdc,
            "total_liquidity_usdc": self.total_liquidity_usdc,
            "last_operation_timestamp": self.last_operation_timestamp,
            "paused": self.paused,
        }


__all__ = ["StateSource", "TreasuryState"]
