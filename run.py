"""Run the treasury keeper.

Defaults:
- Config from CONFIG_PATH (default config/config.json), .env loaded first.
- Dry-run comes from the config/DRY_RUN; `--dry-run` forces it on.
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import os
from typing import Optional
from uuid import uuid4

from dotenv import load_dotenv

from keeper.config import MAX_SLIPPAGE_BPS, KeeperConfig, load_config, validate_config
from keeper.data.audit import AuditManager, ConsoleAuditSink, MongoAuditSink
from keeper.data.mongo import MongoManager, utc_now
from keeper.errors import ConfigInvalid, KeeperError, WalletConfigError
from keeper.execution.buyback import BuybackExecutor
from keeper.execution.conversion import ConversionExecutor
from keeper.execution.journal import ExecutionJournal, MemoryExecutionJournal, MongoExecutionJournal
from keeper.execution.jupiter_client import JupiterClient
from keeper.execution.liquidity import LiquidityManager, PoolClient, SimulatedPoolClient, TreasuryPoolClient
from keeper.ledger.client import LedgerClient
from keeper.ledger.reader import TreasuryReader
from keeper.orchestrator.keeper import Keeper
from keeper.orchestrator.main_loop import MainLoopConfig, run_forever, run_once
from keeper.wallet import load_keypair


def generate_run_id(*, prefix: str = "keeper") -> str:
    return f"{prefix}_{utc_now().strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Treasury keeper")
    p.add_argument("--config", default=None, help="Path to config JSON (default CONFIG_PATH or config/config.json)")
    p.add_argument("--run-id", default=generate_run_id(), help="Run identifier attached to every audit record")
    p.add_argument("--once", action="store_true", help="Run exactly one cycle and exit")
    p.add_argument("--cycle-id", default=None, help="Optional cycle id for --once")
    p.add_argument("--max-cycles", type=int, default=None, help="Stop after N cycles")
    p.add_argument("--dry-run", action="store_true", help="Force simulation mode (no mutating calls)")
    p.add_argument("--db-name", default=os.getenv("MONGODB_DB", "treasury_keeper"), help="MongoDB database name")
    p.add_argument("--status", action="store_true", help="Print the current treasury state and exit")

    admin = p.add_argument_group("admin operations (authority wallet)")
    admin.add_argument("--pause", action="store_true", help="Submit emergency_pause and exit")
    admin.add_argument("--resume", action="store_true", help="Submit resume and exit")
    admin.add_argument("--record-fee", type=int, default=None, metavar="LAMPORTS", help="Submit record_fee and exit")
    admin.add_argument("--update-config", action="store_true", help="Submit update_config with the values below and exit")
    admin.add_argument("--max-usdc-per-cycle", type=int, default=None)
    admin.add_argument("--cooldown-seconds", type=int, default=None)
    admin.add_argument("--slippage-bps", type=int, default=None)
    return p


class Components:
    """Everything `run.py` wires together for one process."""

    def __init__(self, cfg: KeeperConfig, *, run_id: str, db_name: str):
        self.cfg = cfg
        self.run_id = run_id
        self.audit = AuditManager(
            [ConsoleAuditSink(min_level=cfg.monitoring.log_level)],
            run_id=run_id,
            simulated=cfg.dry_run,
        )
        self.mongo: Optional[MongoManager] = None
        if cfg.mongodb_uri:
            self.mongo = MongoManager(db_name=db_name, uri=cfg.mongodb_uri)
            self.audit.add_sink(MongoAuditSink(self.mongo))
        journal: ExecutionJournal = MongoExecutionJournal(self.mongo) if self.mongo else MemoryExecutionJournal()
        self.journal = journal

        # The wallet is only needed for live submissions.
        keypair = None if cfg.dry_run else load_keypair(wallet_path=cfg.wallet_path)
        self.ledger = LedgerClient(cfg.solana, keypair=keypair, audit=self.audit, dry_run=cfg.dry_run)
        self.reader = TreasuryReader(cfg, ledger=self.ledger)
        self.jupiter = JupiterClient(cfg.jupiter, ledger=self.ledger, audit=self.audit, dry_run=cfg.dry_run)

        common = dict(ledger=self.ledger, journal=journal, audit=self.audit, dry_run=cfg.dry_run)
        self.conversion = ConversionExecutor(
            self.jupiter, usdc_mint=cfg.solana.usdc_mint, slippage_bps=cfg.limits.slippage_bps, **common
        )
        self.buyback = BuybackExecutor(
            self.jupiter,
            usdc_mint=cfg.solana.usdc_mint,
            token_mint=cfg.solana.token_mint,
            slippage_bps=cfg.limits.slippage_bps,
            **common,
        )
        pool: PoolClient = SimulatedPoolClient() if cfg.dry_run else TreasuryPoolClient(self.ledger, cfg.solana)
        self.liquidity = LiquidityManager(
            pool,
            token_mint=cfg.solana.token_mint,
            usdc_mint=cfg.solana.usdc_mint,
            journal=journal,
            audit=self.audit,
            dry_run=cfg.dry_run,
        )
        self.keeper = Keeper(
            cfg,
            reader=self.reader,
            conversion=self.conversion,
            buyback=self.buyback,
            liquidity=self.liquidity,
            ledger=self.ledger,
            journal=journal,
            audit=self.audit,
            run_id=run_id,
        )

    async def connect(self) -> None:
        if self.mongo is not None:
            await self.mongo.connect()
            await self.mongo.ensure_indexes()

    async def close(self) -> None:
        await self.jupiter.close()
        await self.ledger.close()
        if self.mongo is not None:
            await self.mongo.close()


async def _admin(args: argparse.Namespace, c: Components) -> Optional[int]:
    """Run a one-shot admin operation if one was requested."""
    if args.pause:
        print(f"[INFO] emergency_pause reference={await c.ledger.emergency_pause()}")
        return 0
    if args.resume:
        print(f"[INFO] resume reference={await c.ledger.resume()}")
        return 0
    if args.record_fee is not None:
        if args.record_fee <= 0:
            raise SystemExit("--record-fee must be a positive lamport amount")
        print(f"[INFO] record_fee amount={args.record_fee} reference={await c.ledger.record_fee(args.record_fee)}")
        return 0
    if args.update_config:
        if args.slippage_bps is not None and not 0 <= args.slippage_bps <= MAX_SLIPPAGE_BPS:
            raise SystemExit(f"--slippage-bps must be within [0, {MAX_SLIPPAGE_BPS}]")
        if args.max_usdc_per_cycle is None and args.cooldown_seconds is None and args.slippage_bps is None:
            raise SystemExit("--update-config needs at least one of --max-usdc-per-cycle/--cooldown-seconds/--slippage-bps")
        ref = await c.ledger.update_config(
            max_usdc_per_cycle=args.max_usdc_per_cycle,
            cooldown_seconds=args.cooldown_seconds,
            slippage_bps=args.slippage_bps,
        )
        print(f"[INFO] update_config reference={ref}")
        return 0
    if args.status:
        state = await c.reader.fetch()
        print("[INFO] treasury_state:", state.summary())
        return 0
    return None


async def _amain() -> int:
    load_dotenv()
    args = _build_arg_parser().parse_args()

    try:
        cfg = load_config(args.config)
        if args.dry_run and not cfg.dry_run:
            cfg = validate_config(dataclasses.replace(cfg, dry_run=True))
        c = Components(cfg, run_id=args.run_id, db_name=args.db_name)
    except (ConfigInvalid, WalletConfigError) as e:
        print(f"[ERROR] {type(e).__name__}: {e}")
        return 2

    print("[INFO] Starting treasury keeper")
    print(f"[INFO] run_id={args.run_id}")
    print(f"[INFO] dry_run={cfg.dry_run} rpc_url={cfg.solana.rpc_url} jupiter={cfg.jupiter.api_url}")
    print(f"[INFO] check_interval_seconds={cfg.monitoring.check_interval_seconds}")
    print(f"[INFO] mongodb={'enabled' if c.mongo else 'disabled'}")

    try:
        await c.connect()
        admin_rc = await _admin(args, c)
        if admin_rc is not None:
            return admin_rc

        try:
            await c.keeper.start()
        except (ConfigInvalid, WalletConfigError) as e:
            print(f"[ERROR] {type(e).__name__}: {e}")
            return 2
        except KeeperError as e:
            print(f"[ERROR] startup check failed: {type(e).__name__}: {e}")
            return 1

        if args.once:
            report = await run_once(keeper=c.keeper, cycle_id=args.cycle_id)
            print(f"[INFO] cycle_report outcome={report.outcome} budgets={report.budgets}")
            return 0 if report.outcome != "error" else 1

        ml_cfg = MainLoopConfig(
            check_interval_seconds=cfg.monitoring.check_interval_seconds,
            max_cycles=args.max_cycles,
        )
        await run_forever(keeper=c.keeper, cfg=ml_cfg, audit=c.audit)
        return 0
    finally:
        await c.close()


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
