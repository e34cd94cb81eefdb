"""Liquidity provisioning.

Pool reserves are read from the pool's USDC and token vault accounts. The
deposit goes through the treasury program's `add_liquidity`, which moves the
USDC into the pool vault and advances `total_liquidity_usdc`. Any failure to
read usable reserves fails closed with `PoolUnavailableError`.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from solders.pubkey import Pubkey

from keeper.config import SolanaConfig
from keeper.data.audit import AuditContext, AuditManager
from keeper.errors import PoolUnavailableError, UnavailableError
from keeper.execution.journal import ExecutionJournal, MemoryExecutionJournal, record_journaled
from keeper.execution.schemas import (
    DispatchOutcome,
    DispatchResult,
    OperationCategory,
    SwapExecution,
    SwapStatus,
    new_execution_id,
)
from keeper.ledger.client import LedgerClient

# Simulation-mode pool: 1M USDC / 1M tokens, 1000 LP tokens (6 decimals).
SIMULATED_RESERVES = (1_000_000_000_000, 1_000_000_000_000, 1_000_000_000)


@dataclass(frozen=True)
class PoolReserves:
    usdc_reserve: int
    token_reserve: int
    lp_supply: int = 0


class PoolClient(Protocol):
    async def reserves(self) -> PoolReserves: ...

    async def add_liquidity(self, usdc_amount: int, token_amount: int) -> str: ...


class TreasuryPoolClient:
    """Pool access through the treasury program and the pool's vault accounts."""

    def __init__(self, ledger: LedgerClient, cfg: SolanaConfig):
        self.ledger = ledger
        self.cfg = cfg

    async def reserves(self) -> PoolReserves:
        if not self.cfg.pool_usdc_vault or not self.cfg.pool_token_vault:
            raise PoolUnavailableError("poolUsdcVault/poolTokenVault are not configured")
        try:
            usdc = await self.ledger.get_token_balance(Pubkey.from_string(self.cfg.pool_usdc_vault))
            token = await self.ledger.get_token_balance(Pubkey.from_string(self.cfg.pool_token_vault))
            lp = 0
            if self.cfg.pool_lp_mint:
                lp = await self.ledger.get_token_supply(Pubkey.from_string(self.cfg.pool_lp_mint))
        except UnavailableError as e:
            raise PoolUnavailableError(f"Pool reserves unavailable: {e}") from e
        return PoolReserves(usdc_reserve=usdc, token_reserve=token, lp_supply=lp)

    async def add_liquidity(self, usdc_amount: int, token_amount: int) -> str:
        return await self.ledger.add_liquidity(usdc_amount, token_amount)


class SimulatedPoolClient:
    async def reserves(self) -> PoolReserves:
        usdc, token, lp = SIMULATED_RESERVES
        return PoolReserves(usdc_reserve=usdc, token_reserve=token, lp_supply=lp)

    async def add_liquidity(self, usdc_amount: int, token_amount: int) -> str:
        raise PoolUnavailableError("Simulated pool does not accept deposits")


class LiquidityManager:
    def __init__(
        self,
        pool: PoolClient,
        *,
        token_mint: str,
        usdc_mint: str,
        journal: Optional[ExecutionJournal] = None,
        audit: Optional[AuditManager] = None,
        dry_run: bool = False,
    ):
        self.pool = pool
        self.token_mint = token_mint
        self.usdc_mint = usdc_mint
        self.journal = journal or MemoryExecutionJournal()
        self.audit = audit or AuditManager()
        self.dry_run = dry_run
        self.audit_ctx = AuditContext(agent_id="liquidity")

    async def _usable_reserves(self) -> PoolReserves:
        reserves = await self.pool.reserves()
        if reserves.usdc_reserve <= 0 or reserves.token_reserve <= 0:
            raise PoolUnavailableError(
                f"Pool reserves are empty: usdc={reserves.usdc_reserve} token={reserves.token_reserve}"
            )
        return reserves

    async def token_amount_for(self, usdc_amount: int) -> int:
        reserves = await self._usable_reserves()
        return usdc_amount * reserves.token_reserve // reserves.usdc_reserve

    async def add_liquidity(
        self,
        usdc_amount: int,
        *,
        execution_id: Optional[str] = None,
        counter_baseline: Optional[int] = None,
    ) -> DispatchResult:
        """Deposit `usdc_amount` USDC plus the matching token amount at the pool ratio."""
        token_amount = await self.token_amount_for(usdc_amount)
        info = {"usdc_amount": usdc_amount, "token_amount": token_amount}

        if self.dry_run:
            await self.audit.log("liquidity_simulated", info, ctx=self.audit_ctx, simulated=True)
            return DispatchResult(
                category=OperationCategory.liquidity,
                outcome=DispatchOutcome.simulated,
                amount=usdc_amount,
                token_amount=token_amount,
            )

        execution_id = execution_id or new_execution_id("liquidity")
        # No swap leg: the deposit itself is the ledger record.
        entry = SwapExecution(
            execution_id=execution_id,
            category=OperationCategory.liquidity,
            status=SwapStatus.confirmed,
            input_mint=self.usdc_mint,
            output_mint=self.token_mint,
            quoted_in_amount=usdc_amount,
            quoted_out_amount=token_amount,
            price_impact_bps=0,
            counter_baseline=counter_baseline,
            ledger_amount=usdc_amount,
        )
        await self.journal.save(entry)
        entry = await record_journaled(
            self.journal, entry, lambda: self.pool.add_liquidity(usdc_amount, token_amount)
        )
        await self.audit.log("liquidity_added", {**info, "reference": entry.ledger_reference}, ctx=self.audit_ctx)
        return DispatchResult(
            category=OperationCategory.liquidity,
            outcome=DispatchOutcome.executed,
            amount=usdc_amount,
            token_amount=token_amount,
            execution_id=execution_id,
            ledger_reference=entry.ledger_reference,
        )

    async def estimate_lp_tokens(self, usdc_amount: int) -> int:
        """LP tokens minted for `usdc_amount`, pro rata to the USDC reserve."""
        try:
            reserves = await self._usable_reserves()
        except PoolUnavailableError:
            return 0
        return usdc_amount * reserves.lp_supply // reserves.usdc_reserve


__all__ = [
    "LiquidityManager",
    "PoolClient",
    "PoolReserves",
    "SimulatedPoolClient",
    "TreasuryPoolClient",
]
