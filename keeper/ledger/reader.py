"""Treasury state reader.

`fetch()` returns one confirmed-commitment snapshot of the treasury PDA plus
its spendable balances. In dry-run mode it returns a fixed synthetic snapshot
(labelled `source="synthetic"`) derived from the local config and never calls
the ledger.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from pydantic import ValidationError
from solders.pubkey import Pubkey

from keeper.config import KeeperConfig
from keeper.errors import DecodeError, UnavailableError
from keeper.ledger import layout
from keeper.ledger.client import LedgerClient
from keeper.ledger.schemas import StateSource, TreasuryState

SYSTEM_PROGRAM_ADDRESS = "11111111111111111111111111111111"

# Synthetic counters: 20 SOL collected, 2000 USDC converted, 800 USDC bought
# back and 400 USDC provided as liquidity so far.
SYNTHETIC_SOL_BALANCE = 5_000_000_000
SYNTHETIC_USDC_BALANCE = 500_000_000
SYNTHETIC_TOTAL_SOL_COLLECTED = 20_000_000_000
SYNTHETIC_TOTAL_USDC_CONVERTED = 2_000_000_000
SYNTHETIC_TOTAL_BUYBACKS_USDC = 800_000_000
SYNTHETIC_TOTAL_LIQUIDITY_USDC = 400_000_000


class TreasuryReader:
    def __init__(
        self,
        cfg: KeeperConfig,
        *,
        ledger: Optional[LedgerClient] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self.ledger = ledger
        self.clock = clock
        if not cfg.dry_run and ledger is None:
            raise ValueError("TreasuryReader needs a LedgerClient outside dry-run mode")

    @property
    def simulated(self) -> bool:
        return self.cfg.dry_run

    async def fetch(self) -> TreasuryState:
        if self.simulated:
            return self.synthetic_state()
        return await self._fetch_ledger()

    async def _fetch_ledger(self) -> TreasuryState:
        if self.ledger is None:
            raise UnavailableError("Ledger reads need a LedgerClient")
        if self.ledger.treasury_address is None:
            raise UnavailableError("Treasury address unknown: programId is not configured")
        account = await self.ledger.get_account(self.ledger.treasury_address)
        fields = layout.decode_treasury_account(account.data)

        rent_minimum = await self.ledger.get_rent_exempt_minimum(len(account.data))
        usdc_balance = 0
        if self.cfg.solana.treasury_usdc_account:
            usdc_balance = await self.ledger.get_token_balance(
                Pubkey.from_string(self.cfg.solana.treasury_usdc_account)
            )

        fields.pop("bump", None)
        try:
            return TreasuryState(
                **fields,
                sol_balance=max(0, account.lamports - rent_minimum),
                usdc_balance=usdc_balance,
                source=StateSource.ledger,
            )
        except ValidationError as e:
            raise DecodeError(f"Treasury account decoded to an invalid state: {e}") from e

    def synthetic_state(self) -> TreasuryState:
        bps = self.cfg.allocations.to_bps()
        limits = self.cfg.limits
        now = int(self.clock())
        return TreasuryState(
            authority=SYSTEM_PROGRAM_ADDRESS,
            sol_balance=SYNTHETIC_SOL_BALANCE,
            usdc_balance=SYNTHETIC_USDC_BALANCE,
            buyback_allocation_bps=bps["buyback"],
            liquidity_allocation_bps=bps["liquidity"],
            reserve_allocation_bps=bps["reserve"],
            max_usdc_per_cycle=limits.max_usdc_per_cycle,
            cooldown_seconds=limits.cooldown_seconds,
            slippage_bps=limits.slippage_bps,
            total_sol_collected=SYNTHETIC_TOTAL_SOL_COLLECTED,
            total_usdc_converted=SYNTHETIC_TOTAL_USDC_CONVERTED,
            total_buybacks_usdc=SYNTHETIC_TOTAL_BUYBACKS_USDC,
            total_liquidity_usdc=SYNTHETIC_TOTAL_LIQUIDITY_USDC,
            total_tokens_burned=0,
            last_operation_timestamp=now - max(7200, 2 * limits.cooldown_seconds),
            paused=False,
            source=StateSource.synthetic,
        )

    async def wait_for_balance_change(
        self,
        current_balance: int,
        *,
        timeout_s: float = 30.0,
        poll_interval_s: float = 2.0,
    ) -> int:
        """Poll until the treasury USDC balance differs from `current_balance`."""
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            state = await self.fetch()
            if state.usdc_balance != current_balance:
                return state.usdc_balance
            await asyncio.sleep(poll_interval_s)
        raise UnavailableError(f"Timeout waiting for balance change after {timeout_s}s")


__all__ = ["TreasuryReader"]
