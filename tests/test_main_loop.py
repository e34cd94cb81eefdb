import asyncio

from fakes import NOW, TOKEN_MINT, FakeJupiter, FakeLedger, FakePool, FakeReader, make_config, make_state
from keeper.config import USDC_MINT
from keeper.data.audit import AuditManager, MemoryAuditSink
from keeper.execution.buyback import BuybackExecutor
from keeper.execution.conversion import ConversionExecutor
from keeper.execution.journal import MemoryExecutionJournal
from keeper.execution.liquidity import LiquidityManager
from keeper.execution.schemas import CycleOutcome, SwapStatus
from keeper.orchestrator.keeper import Keeper
from keeper.orchestrator.main_loop import MainLoopConfig, run_forever, run_once


def _keeper(sink):
    cfg = make_config(dry_run=True)
    audit = AuditManager([sink], run_id="run_loop", simulated=True)
    jupiter = FakeJupiter()
    return Keeper(
        cfg,
        reader=FakeReader(make_state()),
        conversion=ConversionExecutor(jupiter, usdc_mint=USDC_MINT, slippage_bps=200, audit=audit, dry_run=True),
        buyback=BuybackExecutor(
            jupiter, usdc_mint=USDC_MINT, token_mint=TOKEN_MINT, slippage_bps=200, audit=audit, dry_run=True
        ),
        liquidity=LiquidityManager(FakePool(), token_mint=TOKEN_MINT, usdc_mint=USDC_MINT, audit=audit, dry_run=True),
        audit=audit,
        run_id="run_loop",
        clock=lambda: NOW,
    )


def test_run_once():
    keeper = _keeper(MemoryAuditSink())
    report = asyncio.run(run_once(keeper=keeper, cycle_id="cycle_once"))
    assert report.cycle_id == "cycle_once"
    assert report.outcome == CycleOutcome.completed


def test_run_forever_stops_after_max_cycles():
    sink = MemoryAuditSink()
    keeper = _keeper(sink)
    cycles = asyncio.run(
        run_forever(keeper=keeper, cfg=MainLoopConfig(check_interval_seconds=1, max_cycles=1), handle_signals=False)
    )
    assert cycles == 1
    assert keeper.stop_requested
    types = sink.event_types()
    assert types[0] == "main_loop_start"
    assert types[-1] == "main_loop_stop"
    assert types.count("cycle_complete") == 1


def test_run_forever_honours_prior_stop():
    sink = MemoryAuditSink()
    keeper = _keeper(sink)
    keeper.request_stop()
    cycles = asyncio.run(
        run_forever(keeper=keeper, cfg=MainLoopConfig(check_interval_seconds=1), handle_signals=False)
    )
    assert cycles == 0
    assert "cycle_start" not in sink.event_types()


def test_run_forever_stops_on_event():
    sink = MemoryAuditSink()
    keeper = _keeper(sink)

    async def _run():
        stop = asyncio.Event()

        async def _stop_soon():
            while "cycle_complete" not in sink.event_types():
                await asyncio.sleep(0.01)
            stop.set()

        stopper = asyncio.create_task(_stop_soon())
        cycles = await run_forever(
            keeper=keeper,
            cfg=MainLoopConfig(check_interval_seconds=60),
            stop_event=stop,
            handle_signals=False,
        )
        await stopper
        return cycles

    assert asyncio.run(_run()) == 1
    assert keeper.stop_requested


class BlockingJupiter(FakeJupiter):
    """Holds the n-th swap until `release` is set."""

    def __init__(self, block_on):
        super().__init__()
        self.block_on = block_on
        self.blocked = asyncio.Event()
        self.release = asyncio.Event()

    async def execute_swap(self, quote, *, on_submitted=None):
        if len(self.swaps) + 1 == self.block_on:
            self.blocked.set()
            await self.release.wait()
        return await super().execute_swap(quote, on_submitted=on_submitted)


def _live_keeper(sink, jupiter, journal):
    cfg = make_config(dry_run=False)
    audit = AuditManager([sink], run_id="run_loop")
    ledger = FakeLedger()
    common = dict(ledger=ledger, journal=journal, audit=audit, dry_run=False)
    return Keeper(
        cfg,
        reader=FakeReader(make_state(cooldown_seconds=0)),
        conversion=ConversionExecutor(jupiter, usdc_mint=USDC_MINT, slippage_bps=200, **common),
        buyback=BuybackExecutor(jupiter, usdc_mint=USDC_MINT, token_mint=TOKEN_MINT, slippage_bps=200, **common),
        liquidity=LiquidityManager(
            FakePool(), token_mint=TOKEN_MINT, usdc_mint=USDC_MINT, journal=journal, audit=audit, dry_run=False
        ),
        ledger=ledger,
        journal=journal,
        audit=audit,
        run_id="run_loop",
        clock=lambda: NOW,
    )


def test_stop_during_scheduled_cycle_lets_it_finish():
    sink = MemoryAuditSink()
    journal = MemoryExecutionJournal()

    async def _run():
        jupiter = BlockingJupiter(block_on=2)
        keeper = _live_keeper(sink, jupiter, journal)
        stop = asyncio.Event()

        async def _stop_mid_swap():
            await jupiter.blocked.wait()
            stop.set()
            await asyncio.sleep(0.05)
            jupiter.release.set()

        stopper = asyncio.create_task(_stop_mid_swap())
        cycles = await run_forever(
            keeper=keeper,
            cfg=MainLoopConfig(check_interval_seconds=1),
            stop_event=stop,
            handle_signals=False,
        )
        await stopper
        return cycles

    assert asyncio.run(_run()) == 2
    types = sink.event_types()
    assert types.count("cycle_complete") == 2
    assert types[-1] == "main_loop_stop"
    buybacks = [e for e in journal.entries.values() if e.category == "buyback"]
    assert [e.status for e in buybacks] == [SwapStatus.confirmed, SwapStatus.confirmed]
