"""Swap execution journal and restart reconciliation.

Every live swap is journaled before it is sent, so a crash between submission
and confirmation leaves an open entry behind. At the start of each cycle the
reconciler settles open entries against the ledger: a ledger counter that has
advanced past the entry's baseline proves the record landed; otherwise the
signature status decides. A ledger record is resubmitted only once the prior
attempt is known not to have committed.
"""

from __future__ import annotations

from datetime import timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

from pymongo import ASCENDING

from keeper.data.audit import AuditContext, AuditManager
from keeper.data.mongo import MongoManager, jsonify, utc_now
from keeper.data.schemas import SWAP_EXECUTIONS
from keeper.errors import ExecutionError, ExecutionUnconfirmed, TransientProviderError
from keeper.execution.jupiter_client import JupiterClient
from keeper.execution.schemas import (
    LedgerRecordStatus,
    OperationCategory,
    Quote,
    SwapExecution,
    SwapResult,
    SwapStatus,
)
from keeper.ledger.client import LedgerClient, SignatureState
from keeper.ledger.schemas import TreasuryState
from keeper.risk.rules import check_cooldown

MAX_LEDGER_ATTEMPTS = 3

# Ledger records that the program rejects while its cooldown is active.
COOLDOWN_RECORDS = (OperationCategory.buyback.value, OperationCategory.liquidity.value)

# category -> resubmits the ledger record for an entry, returning its reference
RecordSubmitter = Callable[[SwapExecution], Awaitable[str]]


def ledger_counter(category: str, state: TreasuryState) -> int:
    if category == OperationCategory.conversion.value:
        return state.total_usdc_converted
    if category == OperationCategory.buyback.value:
        return state.total_buybacks_usdc
    if category == OperationCategory.liquidity.value:
        return state.total_liquidity_usdc
    raise ValueError(f"Unknown operation category: {category}")


class ExecutionJournal(Protocol):
    async def save(self, entry: SwapExecution) -> None: ...

    async def get(self, execution_id: str) -> Optional[SwapExecution]: ...

    async def open_entries(self) -> List[SwapExecution]: ...


def _is_open(entry: SwapExecution) -> bool:
    return entry.swap_open or entry.ledger_open


class MemoryExecutionJournal:
    """In-process journal; loses open entries on restart."""

    def __init__(self) -> None:
        self.entries: Dict[str, SwapExecution] = {}

    async def save(self, entry: SwapExecution) -> None:
        self.entries[entry.execution_id] = entry.model_copy(update={"updated_at": utc_now()})

    async def get(self, execution_id: str) -> Optional[SwapExecution]:
        return self.entries.get(execution_id)

    async def open_entries(self) -> List[SwapExecution]:
        return sorted((e for e in self.entries.values() if _is_open(e)), key=lambda e: e.created_at)


class MongoExecutionJournal:
    """Journal persisted in MongoDB `swap_executions`, keyed by `execution_id`."""

    def __init__(self, mongo: MongoManager):
        self.mongo = mongo

    async def _col(self):
        await self.mongo.connect()
        return self.mongo.collection(SWAP_EXECUTIONS)

    async def save(self, entry: SwapExecution) -> None:
        col = await self._col()
        doc = jsonify(entry.model_copy(update={"updated_at": utc_now()}).model_dump())
        await col.replace_one({"execution_id": entry.execution_id}, doc, upsert=True)

    async def get(self, execution_id: str) -> Optional[SwapExecution]:
        col = await self._col()
        doc = await col.find_one({"execution_id": execution_id})
        if not doc:
            return None
        doc.pop("_id", None)
        return SwapExecution.model_validate(doc)

    async def open_entries(self) -> List[SwapExecution]:
        col = await self._col()
        query = {
            "$or": [
                {"status": {"$in": [SwapStatus.quoted.value, SwapStatus.submitted.value]}},
                {
                    "status": SwapStatus.confirmed.value,
                    "ledger_status": {
                        "$in": [
                            LedgerRecordStatus.pending.value,
                            LedgerRecordStatus.submitted.value,
                            LedgerRecordStatus.failed.value,
                        ]
                    },
                },
            ]
        }
        out: List[SwapExecution] = []
        async for doc in col.find(query).sort("created_at", ASCENDING):
            doc.pop("_id", None)
            out.append(SwapExecution.model_validate(doc))
        return out


async def run_journaled_swap(
    journal: ExecutionJournal,
    jupiter: JupiterClient,
    *,
    execution_id: str,
    category: OperationCategory,
    quote: Quote,
    counter_baseline: Optional[int],
    ledger_amount: Optional[int] = None,
) -> Tuple[SwapExecution, SwapResult]:
    """Execute `quote`, journaling it quoted -> submitted -> confirmed | failed.

    `ledger_amount` is the amount the follow-up ledger record will add to the
    category counter; when omitted the executed output amount is used.
    """
    entry = SwapExecution(
        execution_id=execution_id,
        category=category,
        input_mint=quote.input_mint,
        output_mint=quote.output_mint,
        quoted_in_amount=quote.in_amount,
        quoted_out_amount=quote.out_amount,
        min_out_amount=quote.min_out_amount(),
        price_impact_bps=quote.price_impact_bps,
        counter_baseline=counter_baseline,
        ledger_amount=ledger_amount,
    )
    await journal.save(entry)

    async def _submitted(reference: str) -> None:
        nonlocal entry
        entry = entry.model_copy(update={"status": SwapStatus.submitted.value, "execution_reference": reference})
        await journal.save(entry)

    try:
        result = await jupiter.execute_swap(quote, on_submitted=_submitted)
    except ExecutionUnconfirmed as e:
        # Outcome unknown: leave it open for the reconciler.
        entry = entry.model_copy(update={"execution_reference": entry.execution_reference or e.reference, "error": str(e)})
        await journal.save(entry)
        raise
    except ExecutionError as e:
        entry = entry.model_copy(
            update={
                "status": SwapStatus.failed.value,
                "ledger_status": LedgerRecordStatus.not_required.value,
                "error": str(e),
            }
        )
        await journal.save(entry)
        raise

    entry = entry.model_copy(
        update={
            "status": SwapStatus.confirmed.value,
            "execution_reference": result.execution_reference,
            "executed_in_amount": result.executed_in_amount,
            "executed_out_amount": result.executed_out_amount,
            "ledger_amount": ledger_amount if ledger_amount is not None else result.executed_out_amount,
            "error": None,
        }
    )
    await journal.save(entry)
    return entry, result


async def record_journaled(
    journal: ExecutionJournal,
    entry: SwapExecution,
    submit: Callable[[], Awaitable[str]],
) -> SwapExecution:
    """Submit the ledger record for a confirmed swap and journal its outcome."""
    attempts = entry.ledger_attempts + 1
    try:
        reference = await submit()
    except ExecutionError as e:
        status = LedgerRecordStatus.submitted if isinstance(e, ExecutionUnconfirmed) else LedgerRecordStatus.failed
        await journal.save(
            entry.model_copy(
                update={
                    "ledger_status": status.value,
                    "ledger_reference": e.reference or entry.ledger_reference,
                    "ledger_attempts": attempts,
                    "error": str(e),
                }
            )
        )
        raise
    entry = entry.model_copy(
        update={
            "ledger_status": LedgerRecordStatus.settled.value,
            "ledger_reference": reference,
            "ledger_attempts": attempts,
            "error": None,
        }
    )
    await journal.save(entry)
    return entry


class JournalReconciler:
    def __init__(
        self,
        journal: ExecutionJournal,
        ledger: LedgerClient,
        *,
        audit: Optional[AuditManager] = None,
        submitters: Optional[Dict[str, RecordSubmitter]] = None,
        confirm_window_s: float = 60.0,
    ):
        self.journal = journal
        self.ledger = ledger
        self.audit = audit or AuditManager()
        self.submitters = dict(submitters or {})
        self.confirm_window_s = confirm_window_s
        self.audit_ctx = AuditContext(agent_id="reconciler")
        # ledger records resubmitted by the last reconcile() call
        self.resubmitted = 0
        self._cooldown_restarted = False

    def _window_elapsed(self, entry: SwapExecution) -> bool:
        updated_at = entry.updated_at
        if updated_at.tzinfo is None:
            # Mongo hands back naive UTC datetimes.
            updated_at = updated_at.replace(tzinfo=timezone.utc)
        return utc_now() - updated_at > timedelta(seconds=self.confirm_window_s)

    async def _reconcile_swap(self, entry: SwapExecution) -> SwapExecution:
        if not entry.execution_reference:
            # Never handed to the network.
            return entry.model_copy(
                update={
                    "status": SwapStatus.failed.value,
                    "ledger_status": LedgerRecordStatus.not_required.value,
                    "error": "swap was never submitted",
                }
            )
        sig = await self.ledger.signature_state(entry.execution_reference)
        if sig == SignatureState.confirmed:
            amount = entry.ledger_amount
            if amount is None:
                amount = entry.min_out_amount if entry.category == OperationCategory.conversion.value else entry.quoted_in_amount
            return entry.model_copy(update={"status": SwapStatus.confirmed.value, "ledger_amount": amount})
        if sig == SignatureState.failed or (sig == SignatureState.unknown and self._window_elapsed(entry)):
            return entry.model_copy(
                update={
                    "status": SwapStatus.failed.value,
                    "ledger_status": LedgerRecordStatus.not_required.value,
                    "error": f"swap signature {sig.value}",
                }
            )
        return entry

    async def _record_landed(self, entry: SwapExecution, state: TreasuryState) -> bool:
        if entry.counter_baseline is not None and entry.ledger_amount is not None:
            if ledger_counter(entry.category, state) >= entry.counter_baseline + entry.ledger_amount:
                return True
        if entry.ledger_reference:
            return await self.ledger.signature_state(entry.ledger_reference) == SignatureState.confirmed
        return False

    async def _needs_retry(self, entry: SwapExecution) -> bool:
        if entry.ledger_status == LedgerRecordStatus.pending.value or not entry.ledger_reference:
            return True
        if entry.ledger_status == LedgerRecordStatus.failed.value:
            return True
        sig = await self.ledger.signature_state(entry.ledger_reference)
        return sig == SignatureState.failed or (sig == SignatureState.unknown and self._window_elapsed(entry))

    async def _retry_record(self, entry: SwapExecution, state: TreasuryState, now: Optional[float]) -> SwapExecution:
        submit = self.submitters.get(entry.category)
        if submit is not None and now is not None and entry.category in COOLDOWN_RECORDS:
            gate = check_cooldown(state, now)
            if not gate.allowed or (self._cooldown_restarted and state.cooldown_seconds > 0):
                await self.audit.log(
                    "reconcile_deferred",
                    {"execution_id": entry.execution_id, "reason": "cooldown", "remaining_s": gate.remaining_s or state.cooldown_seconds},
                    ctx=self.audit_ctx,
                )
                return entry

        if submit is None or entry.ledger_attempts >= MAX_LEDGER_ATTEMPTS:
            await self.audit.log(
                "reconcile_abandoned",
                {"execution_id": entry.execution_id, "category": entry.category, "attempts": entry.ledger_attempts},
                level="error",
                ctx=self.audit_ctx,
            )
            return entry.model_copy(update={"ledger_status": LedgerRecordStatus.abandoned.value})

        self.resubmitted += 1
        try:
            settled = await record_journaled(self.journal, entry, lambda: submit(entry))
        except ExecutionError as e:
            await self.audit.log(
                "reconcile_retry_failed",
                {"execution_id": entry.execution_id, "attempt": entry.ledger_attempts + 1, "error": str(e)},
                level="warning",
                ctx=self.audit_ctx,
            )
            failed = await self.journal.get(entry.execution_id)
            return failed or entry
        if entry.category in COOLDOWN_RECORDS:
            self._cooldown_restarted = True
        await self.audit.log(
            "reconcile_retry_settled",
            {
                "execution_id": entry.execution_id,
                "attempt": settled.ledger_attempts,
                "reference": settled.ledger_reference,
            },
            ctx=self.audit_ctx,
        )
        return settled

    async def reconcile_entry(
        self, entry: SwapExecution, state: TreasuryState, now: Optional[float] = None
    ) -> SwapExecution:
        if entry.swap_open:
            entry = await self._reconcile_swap(entry)
            if entry.swap_open or entry.status == SwapStatus.failed.value:
                return entry
        if not entry.ledger_open:
            return entry
        if await self._record_landed(entry, state):
            return entry.model_copy(update={"ledger_status": LedgerRecordStatus.settled.value, "error": None})
        if await self._needs_retry(entry):
            return await self._retry_record(entry, state, now)
        return entry

    async def reconcile(self, state: TreasuryState, *, now: Optional[float] = None) -> List[SwapExecution]:
        """Settle every open journal entry against `state`; returns the updated entries.

        With `now` given, buyback and liquidity records are not resubmitted
        while the ledger cooldown is active; they stay open for a later cycle.
        """
        self.resubmitted = 0
        self._cooldown_restarted = False
        open_entries = await self.journal.open_entries()
        if not open_entries:
            return []
        await self.audit.log("reconcile_start", {"open_entries": len(open_entries)}, ctx=self.audit_ctx)
        updated: List[SwapExecution] = []
        for entry in open_entries:
            try:
                new = await self.reconcile_entry(entry, state, now)
            except TransientProviderError as e:
                await self.audit.log(
                    "reconcile_deferred",
                    {"execution_id": entry.execution_id, "error": str(e)},
                    level="warning",
                    ctx=self.audit_ctx,
                )
                continue
            if new != entry:
                await self.journal.save(new)
            updated.append(new)
            await self.audit.log(
                "reconcile_entry",
                {
                    "execution_id": new.execution_id,
                    "category": new.category,
                    "status": new.status,
                    "ledger_status": new.ledger_status,
                },
                ctx=self.audit_ctx,
            )
        return updated


__all__ = [
    "ExecutionJournal",
    "JournalReconciler",
    "MemoryExecutionJournal",
    "MongoExecutionJournal",
    "RecordSubmitter",
    "ledger_counter",
    "record_journaled",
    "run_journaled_swap",
]
