"""Buyback executor: USDC -> protocol token through the swap provider.

The swap spends the keeper wallet's USDC; the follow-up `execute_buyback`
ledger record reimburses it from the treasury and advances
`total_buybacks_usdc`. Burning the bought tokens is a separate explicit step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from keeper.data.audit import AuditContext, AuditManager
from keeper.errors import ExecutionError
from keeper.execution.journal import ExecutionJournal, MemoryExecutionJournal, record_journaled, run_journaled_swap
from keeper.execution.jupiter_client import JupiterClient, simulated_swap_result
from keeper.execution.schemas import (
    DispatchOutcome,
    DispatchResult,
    OperationCategory,
    SwapExecution,
    new_execution_id,
)
from keeper.ledger.client import LedgerClient


@dataclass(frozen=True)
class ImpactEstimate:
    tokens_out: int
    price_impact_bps: int
    # USDC minor units paid per token minor unit
    effective_price: float


class BuybackExecutor:
    def __init__(
        self,
        jupiter: JupiterClient,
        *,
        usdc_mint: str,
        token_mint: str,
        slippage_bps: int,
        ledger: Optional[LedgerClient] = None,
        journal: Optional[ExecutionJournal] = None,
        audit: Optional[AuditManager] = None,
        dry_run: bool = False,
    ):
        self.jupiter = jupiter
        self.usdc_mint = usdc_mint
        self.token_mint = token_mint
        self.slippage_bps = slippage_bps
        self.ledger = ledger
        self.journal = journal or MemoryExecutionJournal()
        self.audit = audit or AuditManager()
        self.dry_run = dry_run
        self.audit_ctx = AuditContext(agent_id="buyback")

    async def execute(
        self,
        usdc_amount: int,
        *,
        slippage_bps: Optional[int] = None,
        execution_id: Optional[str] = None,
        counter_baseline: Optional[int] = None,
    ) -> DispatchResult:
        """Quote and (outside dry-run) swap `usdc_amount` USDC into the token.

        Returns `skipped_slippage` without touching the swap when the quoted
        price impact exceeds the slippage limit. Provider and execution errors
        propagate to the caller.
        """
        max_slippage = self.slippage_bps if slippage_bps is None else slippage_bps
        quote = await self.jupiter.quote(self.usdc_mint, self.token_mint, usdc_amount, max_slippage)
        quote_info = {
            "usdc_amount": usdc_amount,
            "quoted_out": quote.out_amount,
            "price_impact_bps": quote.price_impact_bps,
            "slippage_bps": max_slippage,
        }

        if quote.price_impact_bps > max_slippage:
            await self.audit.log(
                "buyback_skipped",
                {**quote_info, "reason": "slippage_exceeded"},
                level="warning",
                ctx=self.audit_ctx,
            )
            return DispatchResult(
                category=OperationCategory.buyback,
                outcome=DispatchOutcome.skipped_slippage,
                amount=usdc_amount,
                quote=quote,
                error=f"price impact {quote.price_impact_bps} bps exceeds {max_slippage} bps",
            )

        if self.dry_run:
            await self.audit.log("buyback_simulated", quote_info, ctx=self.audit_ctx, simulated=True)
            return DispatchResult(
                category=OperationCategory.buyback,
                outcome=DispatchOutcome.simulated,
                amount=usdc_amount,
                quote=quote,
                swap=simulated_swap_result(quote),
                token_amount=quote.out_amount,
            )

        execution_id = execution_id or new_execution_id("buyback")
        _, swap = await run_journaled_swap(
            self.journal,
            self.jupiter,
            execution_id=execution_id,
            category=OperationCategory.buyback,
            quote=quote,
            counter_baseline=counter_baseline,
            ledger_amount=usdc_amount,
        )
        await self.audit.log(
            "buyback_executed",
            {
                **quote_info,
                "executed_in": swap.executed_in_amount,
                "executed_out": swap.executed_out_amount,
                "reference": swap.execution_reference,
            },
            ctx=self.audit_ctx,
        )
        return DispatchResult(
            category=OperationCategory.buyback,
            outcome=DispatchOutcome.executed,
            amount=usdc_amount,
            quote=quote,
            swap=swap,
            token_amount=swap.executed_out_amount,
            execution_id=execution_id,
        )

    def _require_ledger(self) -> LedgerClient:
        if self.ledger is None:
            raise ExecutionError("Ledger records require a LedgerClient")
        return self.ledger

    async def resubmit_record(self, entry: SwapExecution) -> str:
        ledger = self._require_ledger()
        return await ledger.execute_buyback(entry.ledger_amount or entry.quoted_in_amount, entry.min_out_amount or 0)

    async def record_on_ledger(self, result: DispatchResult) -> DispatchResult:
        """Submit `execute_buyback` for an executed swap."""
        ledger = self._require_ledger()
        if result.outcome != DispatchOutcome.executed or result.quote is None or not result.execution_id:
            raise ExecutionError(f"Nothing to record for buyback outcome {result.outcome}")
        entry = await self.journal.get(result.execution_id)
        if entry is None:
            raise ExecutionError(f"Journal entry missing for {result.execution_id}")

        min_tokens_out = result.quote.min_out_amount()
        try:
            entry = await record_journaled(
                self.journal, entry, lambda: ledger.execute_buyback(result.amount, min_tokens_out)
            )
        except ExecutionError as e:
            await self.audit.log(
                "buyback_record_failed",
                {"execution_id": result.execution_id, "usdc_amount": result.amount, "error": str(e)},
                level="error",
                ctx=self.audit_ctx,
            )
            raise
        await self.audit.log(
            "buyback_recorded",
            {
                "execution_id": result.execution_id,
                "usdc_amount": result.amount,
                "min_tokens_out": min_tokens_out,
                "reference": entry.ledger_reference,
            },
            ctx=self.audit_ctx,
        )
        return result.model_copy(update={"ledger_reference": entry.ledger_reference})

    async def estimate_impact(self, usdc_amount: int) -> ImpactEstimate:
        quote = await self.jupiter.quote(self.usdc_mint, self.token_mint, usdc_amount, self.slippage_bps)
        return ImpactEstimate(
            tokens_out=quote.out_amount,
            price_impact_bps=quote.price_impact_bps,
            effective_price=quote.in_amount / quote.out_amount,
        )

    async def burn_tokens(self, amount: int) -> str:
        """Burn `amount` bought-back tokens from the keeper wallet."""
        if amount <= 0:
            raise ValueError("burn amount must be positive")
        if self.dry_run:
            await self.audit.log("burn_simulated", {"amount": amount}, ctx=self.audit_ctx, simulated=True)
            return "SIMULATED-burn"
        reference = await self._require_ledger().burn_tokens(self.token_mint, amount)
        await self.audit.log("tokens_burned", {"amount": amount, "reference": reference}, ctx=self.audit_ctx)
        return reference


__all__ = ["BuybackExecutor", "ImpactEstimate"]
