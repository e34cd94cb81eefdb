"""In-test collaborators for the keeper. No network, RPC or database."""

from typing import Any, Dict, List, Optional, Sequence, Tuple

from solders.pubkey import Pubkey

from keeper.config import (
    USDC_MINT,
    AllocationConfig,
    JupiterConfig,
    KeeperConfig,
    LimitsConfig,
    MonitoringConfig,
    SolanaConfig,
)
from keeper.errors import QuoteError
from keeper.execution.liquidity import PoolReserves
from keeper.execution.schemas import Quote, SwapResult
from keeper.ledger.client import SignatureState
from keeper.ledger.schemas import StateSource, TreasuryState

NOW = 1_700_000_000

PROGRAM_ID = str(Pubkey.new_unique())
TOKEN_MINT = str(Pubkey.new_unique())
TREASURY_USDC = str(Pubkey.new_unique())
KEEPER_USDC = str(Pubkey.new_unique())
POOL_USDC = str(Pubkey.new_unique())
POOL_TOKEN = str(Pubkey.new_unique())


def make_config(
    *,
    dry_run: bool = True,
    buyback: float = 0.5,
    liquidity: float = 0.3,
    reserve: float = 0.2,
    max_usdc_per_cycle: int = 10_000_000_000,
    cooldown_minutes: float = 60,
    slippage_bps: int = 200,
    min_sol_to_swap: int = 1_000_000_000,
    tolerance_bps: int = 10,
) -> KeeperConfig:
    return KeeperConfig(
        dry_run=dry_run,
        solana=SolanaConfig(
            rpc_url="http://localhost:8899",
            program_id=PROGRAM_ID,
            treasury_usdc_account=TREASURY_USDC,
            keeper_usdc_account=KEEPER_USDC,
            usdc_mint=USDC_MINT,
            token_mint=TOKEN_MINT,
            pool_usdc_vault=POOL_USDC,
            pool_token_vault=POOL_TOKEN,
        ),
        jupiter=JupiterConfig(api_url="https://jup.test/v6", min_request_interval_s=0.0),
        allocations=AllocationConfig(buyback=buyback, liquidity=liquidity, reserve=reserve),
        limits=LimitsConfig(
            max_usdc_per_cycle=max_usdc_per_cycle,
            cooldown_minutes=cooldown_minutes,
            slippage_bps=slippage_bps,
            min_sol_to_swap=min_sol_to_swap,
        ),
        monitoring=MonitoringConfig(check_interval_seconds=1),
        allocation_tolerance_bps=tolerance_bps,
    )


def make_state(**overrides: Any) -> TreasuryState:
    fields: Dict[str, Any] = {
        "authority": str(Pubkey.default()),
        "sol_balance": 0,
        "usdc_balance": 1_000_000_000,
        "buyback_allocation_bps": 5000,
        "liquidity_allocation_bps": 3000,
        "reserve_allocation_bps": 2000,
        "max_usdc_per_cycle": 10_000_000_000,
        "cooldown_seconds": 3600,
        "slippage_bps": 200,
        "total_sol_collected": 0,
        "total_usdc_converted": 2_000_000_000,
        "total_buybacks_usdc": 0,
        "total_liquidity_usdc": 0,
        "total_tokens_burned": 0,
        "last_operation_timestamp": NOW - 7200,
        "paused": False,
        "source": StateSource.ledger,
    }
    fields.update(overrides)
    return TreasuryState(**fields)


class FakeReader:
    """Serves `state`; snapshots queued in `upcoming` replace it one fetch at a time."""

    def __init__(self, state: Optional[TreasuryState] = None, *, error: Optional[Exception] = None):
        self.state = state or make_state()
        self.error = error
        self.upcoming: List[TreasuryState] = []
        self.fetches = 0

    async def fetch(self) -> TreasuryState:
        self.fetches += 1
        if self.error is not None:
            raise self.error
        current = self.state
        if self.upcoming:
            self.state = self.upcoming.pop(0)
        return current


class FakeJupiter:
    def __init__(
        self,
        *,
        impact_bps: int = 10,
        rate: int = 1,
        fail_quote_for: Sequence[str] = (),
        swap_error: Optional[Exception] = None,
    ):
        self.impact_bps = impact_bps
        self.rate = rate
        self.fail_quote_for = set(fail_quote_for)
        self.swap_error = swap_error
        self.quotes: List[Tuple[str, str, int]] = []
        self.swaps: List[Quote] = []

    async def quote(self, input_mint: str, output_mint: str, amount: int, max_slippage_bps: int) -> Quote:
        self.quotes.append((input_mint, output_mint, amount))
        if output_mint in self.fail_quote_for:
            raise QuoteError("no route")
        return Quote(
            input_mint=input_mint,
            output_mint=output_mint,
            in_amount=amount,
            out_amount=amount * self.rate,
            price_impact_bps=self.impact_bps,
            slippage_bps=max_slippage_bps,
            raw={"fake": True},
        )

    async def execute_swap(self, quote: Quote, *, on_submitted=None) -> SwapResult:
        self.swaps.append(quote)
        reference = f"swap-sig-{len(self.swaps)}"
        if on_submitted is not None:
            await on_submitted(reference)
        if self.swap_error is not None:
            raise self.swap_error
        return SwapResult(
            executed_in_amount=quote.in_amount,
            executed_out_amount=quote.out_amount,
            execution_reference=reference,
        )


class FakeLedger:
    """Records every mutating call; signature states are looked up in a dict."""

    def __init__(
        self,
        *,
        signature_states: Optional[Dict[str, SignatureState]] = None,
        fail: Optional[Dict[str, Exception]] = None,
        signature_error: Optional[Exception] = None,
    ):
        self.signature_states = dict(signature_states or {})
        self.fail = dict(fail or {})
        self.signature_error = signature_error
        self.calls: List[Tuple[str, tuple]] = []
        self.keypair = None

    async def _submit(self, name: str, *args: Any) -> str:
        self.calls.append((name, args))
        if name in self.fail:
            raise self.fail[name]
        return f"{name}-ref-{len(self.calls)}"

    def call_names(self) -> List[str]:
        return [name for name, _ in self.calls]

    async def signature_state(self, reference: str) -> SignatureState:
        if self.signature_error is not None:
            raise self.signature_error
        return self.signature_states.get(reference, SignatureState.unknown)

    async def record_usdc_conversion(self, usdc_amount: int) -> str:
        return await self._submit("record_usdc_conversion", usdc_amount)

    async def execute_buyback(self, usdc_amount: int, min_tokens_out: int) -> str:
        return await self._submit("execute_buyback", usdc_amount, min_tokens_out)

    async def add_liquidity(self, usdc_amount: int, token_amount: int) -> str:
        return await self._submit("add_liquidity", usdc_amount, token_amount)

    async def burn_tokens(self, mint: str, amount: int) -> str:
        return await self._submit("burn_tokens", mint, amount)


class FakePool:
    def __init__(
        self,
        reserves: PoolReserves = PoolReserves(usdc_reserve=2_000_000, token_reserve=8_000_000, lp_supply=1_000_000),
        *,
        error: Optional[Exception] = None,
    ):
        self._reserves = reserves
        self.error = error
        self.deposits: List[Tuple[int, int]] = []

    async def reserves(self) -> PoolReserves:
        if self.error is not None:
            raise self.error
        return self._reserves

    async def add_liquidity(self, usdc_amount: int, token_amount: int) -> str:
        self.deposits.append((usdc_amount, token_amount))
        return f"pool-ref-{len(self.deposits)}"
