"""SOL -> USDC conversion of collected fees.

The swap runs from the keeper wallet; the follow-up `record_usdc_conversion`
ledger record advances `total_usdc_converted`, which is the base every
allocation budget is computed from.
"""

from __future__ import annotations

from typing import Optional

from keeper.config import SOL_MINT
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


class ConversionExecutor:
    def __init__(
        self,
        jupiter: JupiterClient,
        *,
        usdc_mint: str,
        slippage_bps: int,
        ledger: Optional[LedgerClient] = None,
        journal: Optional[ExecutionJournal] = None,
        audit: Optional[AuditManager] = None,
        dry_run: bool = False,
    ):
        self.jupiter = jupiter
        self.usdc_mint = usdc_mint
        self.slippage_bps = slippage_bps
        self.ledger = ledger
        self.journal = journal or MemoryExecutionJournal()
        self.audit = audit or AuditManager()
        self.dry_run = dry_run
        self.audit_ctx = AuditContext(agent_id="conversion")

    async def convert(
        self,
        lamports: int,
        *,
        slippage_bps: Optional[int] = None,
        execution_id: Optional[str] = None,
        counter_baseline: Optional[int] = None,
    ) -> DispatchResult:
        """Swap `lamports` SOL to USDC and record the executed USDC on the ledger."""
        max_slippage = self.slippage_bps if slippage_bps is None else slippage_bps
        quote = await self.jupiter.quote(SOL_MINT, self.usdc_mint, lamports, max_slippage)
        info = {
            "sol_amount": lamports,
            "quoted_usdc": quote.out_amount,
            "price_impact_bps": quote.price_impact_bps,
            "slippage_bps": max_slippage,
        }

        if quote.price_impact_bps > max_slippage:
            await self.audit.log(
                "conversion_skipped", {**info, "reason": "slippage_exceeded"}, level="warning", ctx=self.audit_ctx
            )
            return DispatchResult(
                category=OperationCategory.conversion,
                outcome=DispatchOutcome.skipped_slippage,
                amount=lamports,
                quote=quote,
                error=f"price impact {quote.price_impact_bps} bps exceeds {max_slippage} bps",
            )

        if self.dry_run:
            await self.audit.log("conversion_simulated", info, ctx=self.audit_ctx, simulated=True)
            return DispatchResult(
                category=OperationCategory.conversion,
                outcome=DispatchOutcome.simulated,
                amount=lamports,
                quote=quote,
                swap=simulated_swap_result(quote),
                token_amount=quote.out_amount,
            )

        if self.ledger is None:
            raise ExecutionError("Live conversion requires a LedgerClient")
        ledger = self.ledger
        execution_id = execution_id or new_execution_id("conversion")
        entry, swap = await run_journaled_swap(
            self.journal,
            self.jupiter,
            execution_id=execution_id,
            category=OperationCategory.conversion,
            quote=quote,
            counter_baseline=counter_baseline,
        )
        await self.audit.log(
            "conversion_swapped",
            {**info, "executed_usdc": swap.executed_out_amount, "reference": swap.execution_reference},
            ctx=self.audit_ctx,
        )
        result = DispatchResult(
            category=OperationCategory.conversion,
            outcome=DispatchOutcome.executed,
            amount=lamports,
            quote=quote,
            swap=swap,
            token_amount=swap.executed_out_amount,
            execution_id=execution_id,
        )

        try:
            entry = await record_journaled(
                self.journal, entry, lambda: ledger.record_usdc_conversion(swap.executed_out_amount)
            )
        except ExecutionError as e:
            await self.audit.log(
                "conversion_record_failed",
                {"execution_id": execution_id, "usdc_amount": swap.executed_out_amount, "error": str(e)},
                level="error",
                ctx=self.audit_ctx,
            )
            return result.model_copy(update={"error": f"ledger record pending: {e}"})
        await self.audit.log(
            "conversion_recorded",
            {"execution_id": execution_id, "usdc_amount": swap.executed_out_amount, "reference": entry.ledger_reference},
            ctx=self.audit_ctx,
        )
        return result.model_copy(update={"ledger_reference": entry.ledger_reference})

    async def resubmit_record(self, entry: SwapExecution) -> str:
        if self.ledger is None:
            raise ExecutionError("Ledger records require a LedgerClient")
        amount = entry.ledger_amount if entry.ledger_amount is not None else entry.executed_out_amount
        if not amount:
            raise ExecutionError(f"No recorded USDC amount for {entry.execution_id}")
        return await self.ledger.record_usdc_conversion(amount)


__all__ = ["ConversionExecutor"]
