"""Cadence loop using APScheduler.

Supports:
- run once
- run continuously every `check_interval_seconds` until SIGINT/SIGTERM
"""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from keeper.data.audit import AuditContext, AuditManager
from keeper.execution.schemas import CycleReport
from keeper.orchestrator.keeper import Keeper


@dataclass(frozen=True)
class MainLoopConfig:
    check_interval_seconds: int = 60
    max_cycles: Optional[int] = None


async def run_once(*, keeper: Keeper, cycle_id: Optional[str] = None) -> CycleReport:
    return await keeper.run_cycle(cycle_id=cycle_id)


def install_signal_handlers(stop_event: asyncio.Event, keeper: Keeper) -> None:
    def _request_stop(*_args: object) -> None:
        keeper.request_stop()
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop)
        except NotImplementedError:
            signal.signal(sig, lambda *_a: _request_stop())


async def run_forever(
    *,
    keeper: Keeper,
    cfg: MainLoopConfig,
    audit: Optional[AuditManager] = None,
    stop_event: Optional[asyncio.Event] = None,
    handle_signals: bool = True,
) -> int:
    """Run cycles on a fixed interval until stopped; returns the number of cycles run."""
    stop_event = stop_event or asyncio.Event()
    audit = audit or keeper.audit
    ctx = AuditContext(run_id=keeper.run_id, agent_id="main_loop")
    cycle_counter = 0

    if handle_signals:
        install_signal_handlers(stop_event, keeper)

    async def _job() -> None:
        nonlocal cycle_counter
        if stop_event.is_set() or keeper.stop_requested:
            stop_event.set()
            return
        await keeper.run_cycle()
        cycle_counter += 1
        if keeper.stop_requested or (cfg.max_cycles and cycle_counter >= cfg.max_cycles):
            stop_event.set()

    scheduler = AsyncIOScheduler(timezone="UTC")
    scheduler.add_job(
        _job,
        trigger="interval",
        seconds=max(1, int(cfg.check_interval_seconds)),
        id="keeper_cycle",
        max_instances=1,
        coalesce=True,
    )

    await audit.log(
        "main_loop_start",
        {
            "run_id": keeper.run_id,
            "check_interval_seconds": cfg.check_interval_seconds,
            "max_cycles": cfg.max_cycles,
            "dry_run": keeper.simulated,
        },
        ctx=ctx,
    )

    # First cycle runs immediately instead of waiting a full interval.
    await _job()
    if stop_event.is_set():
        keeper.request_stop()
        await audit.log("main_loop_stop", {"run_id": keeper.run_id, "cycles": cycle_counter}, ctx=ctx)
        return cycle_counter

    scheduler.start()
    try:
        await stop_event.wait()
    finally:
        keeper.request_stop()
        scheduler.pause()
        # A cycle in flight finishes before its job can be cancelled.
        await keeper.wait_idle()
        scheduler.shutdown(wait=False)
        await audit.log("main_loop_stop", {"run_id": keeper.run_id, "cycles": cycle_counter}, ctx=ctx)
    return cycle_counter


__all__ = ["MainLoopConfig", "install_signal_handlers", "run_forever", "run_once"]
