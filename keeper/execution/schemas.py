"""Execution-layer schemas.

`Quote` and `SwapResult` are value objects returned by the swap provider.
`SwapExecution` is the journal entry that tracks one swap through
quoted -> submitted -> confirmed | failed, and the ledger record that follows
it through pending -> submitted -> settled | failed.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from keeper.data.mongo import utc_now


class OperationCategory(str, Enum):
    conversion = "conversion"
    buyback = "buyback"
    liquidity = "liquidity"


class Quote(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    input_mint: str
    output_mint: str
    in_amount: int = Field(..., gt=0)
    out_amount: int = Field(..., ge=0)
    price_impact_bps: int = Field(..., ge=0)
    slippage_bps: int = Field(..., ge=0)
    other_amount_threshold: Optional[int] = None
    raw: Dict[str, Any] = Field(default_factory=dict, description="Provider route payload for /swap.")

    def min_out_amount(self) -> int:
        if self.other_amount_threshold is not None:
            return self.other_amount_threshold
        return self.out_amount * (10_000 - self.slippage_bps) // 10_000


class SwapResult(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    executed_in_amount: int = Field(..., ge=0)
    executed_out_amount: int = Field(..., ge=0)
    execution_reference: str
    simulated: bool = False


class SwapStatus(str, Enum):
    quoted = "quoted"
    submitted = "submitted"
    confirmed = "confirmed"
    failed = "failed"


class LedgerRecordStatus(str, Enum):
    not_required = "not_required"
    pending = "pending"
    submitted = "submitted"
    settled = "settled"
    failed = "failed"
    abandoned = "abandoned"


class SwapExecution(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    execution_id: str
    category: OperationCategory
    status: SwapStatus = SwapStatus.quoted

    input_mint: str
    output_mint: str
    quoted_in_amount: int
    quoted_out_amount: int
    min_out_amount: Optional[int] = None
    price_impact_bps: int

    execution_reference: Optional[str] = None
    executed_in_amount: Optional[int] = None
    executed_out_amount: Optional[int] = None

    # Ledger counter value before this operation; the record has landed once
    # the counter reaches `counter_baseline + ledger_amount`.
    counter_baseline: Optional[int] = None
    ledger_amount: Optional[int] = None
    ledger_status: LedgerRecordStatus = LedgerRecordStatus.pending
    ledger_reference: Optional[str] = None
    ledger_attempts: int = 0

    error: Optional[str] = None
    simulated: bool = False
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def swap_open(self) -> bool:
        return self.status in (SwapStatus.quoted, SwapStatus.submitted)

    @property
    def ledger_open(self) -> bool:
        return self.status == SwapStatus.confirmed and self.ledger_status in (
            LedgerRecordStatus.pending,
            LedgerRecordStatus.submitted,
            LedgerRecordStatus.failed,
        )


class DispatchOutcome(str, Enum):
    executed = "executed"
    simulated = "simulated"
    skipped_slippage = "skipped_slippage"
    skipped_budget = "skipped_budget"
    deferred_cooldown = "deferred_cooldown"
    failed = "failed"


class DispatchResult(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    category: OperationCategory
    outcome: DispatchOutcome
    amount: int = Field(..., ge=0, description="USDC (or lamports for conversion) requested.")
    quote: Optional[Quote] = None
    swap: Optional[SwapResult] = None
    token_amount: Optional[int] = None
    execution_id: Optional[str] = None
    ledger_reference: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (DispatchOutcome.executed, DispatchOutcome.simulated)


class CycleOutcome(str, Enum):
    completed = "completed"
    paused = "paused"
    cooldown = "cooldown"
    invalid_ledger_config = "invalid_ledger_config"
    error = "error"
    stopped = "stopped"
    busy = "busy"


class CycleReport(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)

    cycle_id: str
    run_id: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    outcome: CycleOutcome = CycleOutcome.completed
    simulated: bool = False
    state_source: Optional[str] = None
    budgets: Dict[str, int] = Field(default_factory=dict)
    results: List[DispatchResult] = Field(default_factory=list)
    error: Optional[str] = None

    def result_for(self, category: OperationCategory) -> Optional[DispatchResult]:
        return next((r for r in self.results if r.category == category), None)


def make_execution_id(*, run_id: Optional[str], cycle_id: Optional[str], category: str) -> str:
    """Deterministic journal key for one operation attempt in one cycle."""
    seed = f"{run_id}|{cycle_id}|{category}"
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()  # nosec - non-crypto use
    return "x_" + digest[:28]


def new_execution_id(category: str) -> str:
    """Unique journal key for an operation started outside a keeper cycle."""
    return f"x_{category}_{uuid4().hex[:20]}"


__all__ = [
    "OperationCategory",
    "Quote",
    "SwapResult",
    "SwapStatus",
    "LedgerRecordStatus",
    "SwapExecution",
    "DispatchOutcome",
    "DispatchResult",
    "CycleOutcome",
    "CycleReport",
    "make_execution_id",
    "new_execution_id",
]
