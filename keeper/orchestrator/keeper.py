"""Keeper control loop: one cycle = poll -> convert -> gate -> dispatch.

State machine:
  idle -> polling -> (stopped | sleeping[paused] | converting)
  converting -> [polling] -> gated -> (sleeping[cooldown] | dispatching) -> sleeping

After any ledger write (a conversion record or a reconciled resubmission) the
snapshot is fetched again and the gates re-run before budgets are computed.

Skips (paused, cooldown, invalid ledger allocations, slippage, empty budget)
are cycle or dispatch outcomes, never exceptions. Unexpected errors are caught
at the cycle boundary so the next poll always runs.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Callable, List, Optional

from keeper.config import KeeperConfig
from keeper.data.audit import AuditContext, AuditManager
from keeper.data.mongo import utc_now
from keeper.errors import ExecutionError
from keeper.execution.buyback import BuybackExecutor
from keeper.execution.conversion import ConversionExecutor
from keeper.execution.journal import ExecutionJournal, JournalReconciler
from keeper.execution.liquidity import LiquidityManager
from keeper.execution.schemas import (
    CycleOutcome,
    CycleReport,
    DispatchOutcome,
    DispatchResult,
    OperationCategory,
    make_execution_id,
)
from keeper.ledger.client import LedgerClient
from keeper.ledger.reader import TreasuryReader
from keeper.ledger.schemas import TreasuryState
from keeper.risk.allocation import (
    DISPATCH_CATEGORIES,
    AllocationRatios,
    budget_for,
    clamp_spend,
    resolve_allocation_ratios,
)
from keeper.risk.rules import (
    EffectiveLimits,
    GateResult,
    check_allocations,
    check_cooldown,
    check_pause,
    effective_limits,
)


class KeeperState(str, Enum):
    idle = "idle"
    polling = "polling"
    converting = "converting"
    gated = "gated"
    dispatching = "dispatching"
    sleeping = "sleeping"
    stopped = "stopped"


def cycle_id_now() -> str:
    return utc_now().strftime("cycle_%Y%m%d_%H%M%S")


class Keeper:
    def __init__(
        self,
        cfg: KeeperConfig,
        *,
        reader: TreasuryReader,
        conversion: ConversionExecutor,
        buyback: BuybackExecutor,
        liquidity: LiquidityManager,
        ledger: Optional[LedgerClient] = None,
        journal: Optional[ExecutionJournal] = None,
        audit: Optional[AuditManager] = None,
        run_id: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.reader = reader
        self.conversion = conversion
        self.buyback = buyback
        self.liquidity = liquidity
        self.ledger = ledger
        self.audit = audit or AuditManager()
        self.run_id = run_id
        self.clock = clock
        self.audit_ctx = AuditContext(run_id=run_id, agent_id="keeper")

        self.state = KeeperState.idle
        self.ratios: Optional[AllocationRatios] = None
        self._stop_requested = False
        self._cycle_running = False
        self._idle: Optional[asyncio.Event] = None
        # category deferred by the ledger cooldown last cycle; it leads the next dispatch
        self._lead: Optional[OperationCategory] = None

        self.reconciler: Optional[JournalReconciler] = None
        if journal is not None and ledger is not None and not cfg.dry_run:
            self.reconciler = JournalReconciler(
                journal,
                ledger,
                audit=self.audit,
                submitters={
                    OperationCategory.conversion.value: conversion.resubmit_record,
                    OperationCategory.buyback.value: buyback.resubmit_record,
                },
                confirm_window_s=cfg.solana.confirm_timeout_s,
            )

    @property
    def simulated(self) -> bool:
        return self.cfg.dry_run

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self) -> None:
        """Cooperative shutdown; a running cycle completes, the next one is skipped."""
        self._stop_requested = True
        if not self._cycle_running:
            self.state = KeeperState.stopped

    async def wait_idle(self) -> None:
        """Return once no cycle is running."""
        if self._cycle_running and self._idle is not None:
            await self._idle.wait()

    async def start(self) -> AllocationRatios:
        """Validate the local config against the ledger before the first cycle.

        Raises ConfigInvalid when local allocation defaults diverge from the
        ledger's by more than the configured tolerance.
        """
        await self.audit.log(
            "keeper_init",
            {
                "dry_run": self.simulated,
                "token_mint": self.cfg.solana.token_mint,
                "program_id": self.cfg.solana.program_id,
                "check_interval_seconds": self.cfg.monitoring.check_interval_seconds,
                "allocations": self.cfg.allocations.to_bps(),
            },
            ctx=self.audit_ctx,
        )
        snapshot = await self.reader.fetch()
        self.ratios = resolve_allocation_ratios(self.cfg, snapshot)
        return self.ratios

    async def run_cycle(self, *, cycle_id: Optional[str] = None) -> CycleReport:
        report = CycleReport(cycle_id=cycle_id or cycle_id_now(), run_id=self.run_id, simulated=self.simulated)
        ctx = AuditContext(run_id=self.run_id, agent_id="keeper", trace_id=report.cycle_id)

        if self._cycle_running:
            report.outcome = CycleOutcome.busy
            await self.audit.log("cycle_skipped_busy", {"cycle_id": report.cycle_id}, level="warning", ctx=ctx)
            return report
        if self._stop_requested:
            self.state = KeeperState.stopped
            report.outcome = CycleOutcome.stopped
            return report

        self._cycle_running = True
        self._idle = asyncio.Event()
        try:
            try:
                await self._run_cycle(report, ctx)
            except Exception as e:  # pylint: disable=broad-exception-caught
                report.outcome = CycleOutcome.error
                report.error = f"{type(e).__name__}: {e}"
                await self.audit.log(
                    "cycle_error",
                    {"cycle_id": report.cycle_id, "state": self.state.value, "error": report.error},
                    level="error",
                    ctx=ctx,
                )
            report.finished_at = utc_now()
            self.state = KeeperState.stopped if self._stop_requested else KeeperState.sleeping
            await self.audit.log(
                "cycle_complete",
                {
                    "cycle_id": report.cycle_id,
                    "outcome": report.outcome,
                    "state_source": report.state_source,
                    "budgets": report.budgets,
                    "results": {r.category: r.outcome for r in report.results},
                },
                level="error" if report.outcome == CycleOutcome.error else "info",
                ctx=ctx,
            )
        finally:
            self._cycle_running = False
            self._idle.set()
        return report

    async def _gate(self, gate: GateResult, report: CycleReport, ctx: AuditContext) -> bool:
        if gate.allowed:
            return True
        report.outcome = gate.outcome or CycleOutcome.completed
        await self.audit.log(
            "cycle_gated",
            {"cycle_id": report.cycle_id, "outcome": report.outcome, "reason": gate.reason, "remaining_s": gate.remaining_s},
            level="error" if gate.outcome == CycleOutcome.invalid_ledger_config else "info",
            ctx=ctx,
        )
        return False

    async def _run_cycle(self, report: CycleReport, ctx: AuditContext) -> None:
        self.state = KeeperState.polling
        await self.audit.log("cycle_start", {"cycle_id": report.cycle_id}, ctx=ctx)

        snapshot = await self.reader.fetch()
        report.state_source = snapshot.source
        await self.audit.log("treasury_state", snapshot.summary(), ctx=ctx)

        if not await self._gate(check_allocations(snapshot), report, ctx):
            return
        if not await self._gate(check_pause(snapshot), report, ctx):
            return

        ledger_written = False
        if self.reconciler is not None:
            await self.reconciler.reconcile(snapshot, now=self.clock())
            ledger_written = self.reconciler.resubmitted > 0

        limits = effective_limits(snapshot, self.cfg.limits)

        self.state = KeeperState.converting
        if snapshot.sol_balance >= self.cfg.limits.min_sol_to_swap:
            conversion = await self._convert(snapshot, limits, report, ctx)
            report.results.append(conversion)
            ledger_written = ledger_written or conversion.outcome == DispatchOutcome.executed

        if ledger_written:
            self.state = KeeperState.polling
            snapshot = await self.reader.fetch()
            await self.audit.log("treasury_state", snapshot.summary(), ctx=ctx)
            if not await self._gate(check_allocations(snapshot), report, ctx):
                return
            if not await self._gate(check_pause(snapshot), report, ctx):
                return
            limits = effective_limits(snapshot, self.cfg.limits)

        self.state = KeeperState.gated
        if not await self._gate(check_cooldown(snapshot, self.clock()), report, ctx):
            return

        self.state = KeeperState.dispatching
        await self._dispatch(snapshot, limits, report, ctx)
        report.outcome = CycleOutcome.completed

    async def _convert(
        self,
        snapshot: TreasuryState,
        limits: EffectiveLimits,
        report: CycleReport,
        ctx: AuditContext,
    ) -> DispatchResult:
        try:
            return await self.conversion.convert(
                snapshot.sol_balance,
                slippage_bps=limits.slippage_bps,
                execution_id=make_execution_id(run_id=self.run_id, cycle_id=report.cycle_id, category="conversion"),
                counter_baseline=snapshot.total_usdc_converted,
            )
        except Exception as e:  # pylint: disable=broad-exception-caught
            # The cycle continues with the snapshot's balances.
            await self.audit.log(
                "conversion_failed",
                {"sol_amount": snapshot.sol_balance, "error": f"{type(e).__name__}: {e}"},
                level="error",
                ctx=ctx,
            )
            return DispatchResult(
                category=OperationCategory.conversion,
                outcome=DispatchOutcome.failed,
                amount=snapshot.sol_balance,
                error=f"{type(e).__name__}: {e}",
            )

    async def _dispatch_one(
        self,
        category: OperationCategory,
        amount: int,
        snapshot: TreasuryState,
        limits: EffectiveLimits,
        report: CycleReport,
    ) -> DispatchResult:
        execution_id = make_execution_id(run_id=self.run_id, cycle_id=report.cycle_id, category=category.value)
        if category == OperationCategory.buyback:
            result = await self.buyback.execute(
                amount,
                slippage_bps=limits.slippage_bps,
                execution_id=execution_id,
                counter_baseline=snapshot.total_buybacks_usdc,
            )
            if result.outcome == DispatchOutcome.executed:
                try:
                    result = await self.buyback.record_on_ledger(result)
                except ExecutionError as e:
                    # The swap happened; the reconciler settles the record later.
                    result = result.model_copy(update={"error": f"ledger record pending: {e}"})
            return result
        return await self.liquidity.add_liquidity(
            amount,
            execution_id=execution_id,
            counter_baseline=snapshot.total_liquidity_usdc,
        )

    async def _dispatch(
        self,
        snapshot: TreasuryState,
        limits: EffectiveLimits,
        report: CycleReport,
        ctx: AuditContext,
    ) -> None:
        ratios = AllocationRatios.from_state(snapshot)
        available = snapshot.usdc_balance
        ledger_touched = False
        deferred: Optional[OperationCategory] = None

        for category in self.dispatch_order():
            budget = budget_for(category, snapshot, ratios)
            amount = clamp_spend(budget, available, limits.max_usdc_per_cycle)
            report.budgets[category.value] = amount
            name = category.value

            if amount <= 0:
                await self.audit.log(
                    f"{name}_skipped",
                    {"reason": "insufficient_budget", "budget": budget, "available": available},
                    ctx=ctx,
                )
                report.results.append(
                    DispatchResult(category=category, outcome=DispatchOutcome.skipped_budget, amount=0)
                )
                continue

            if ledger_touched and limits.cooldown_seconds > 0:
                # The previous record restarted the ledger cooldown; the program would reject this one.
                await self.audit.log(
                    f"{name}_deferred",
                    {"reason": "ledger_cooldown_restarted", "amount": amount},
                    ctx=ctx,
                )
                report.results.append(
                    DispatchResult(category=category, outcome=DispatchOutcome.deferred_cooldown, amount=amount)
                )
                deferred = deferred or category
                continue

            try:
                result = await self._dispatch_one(category, amount, snapshot, limits, report)
            except Exception as e:  # pylint: disable=broad-exception-caught
                await self.audit.log(
                    f"{name}_failed",
                    {"amount": amount, "error": f"{type(e).__name__}: {e}"},
                    level="error",
                    ctx=ctx,
                )
                result = DispatchResult(
                    category=category,
                    outcome=DispatchOutcome.failed,
                    amount=amount,
                    error=f"{type(e).__name__}: {e}",
                )
            report.results.append(result)

            if result.succeeded:
                available -= amount
                if result.outcome == DispatchOutcome.executed:
                    ledger_touched = True

        self._lead = deferred

    def dispatch_order(self) -> List[OperationCategory]:
        """Buyback first, unless the cooldown deferred another category last cycle."""
        if self._lead is None:
            return list(DISPATCH_CATEGORIES)
        return [self._lead] + [c for c in DISPATCH_CATEGORIES if c != self._lead]


__all__ = ["Keeper", "KeeperState", "cycle_id_now"]
