import asyncio
from typing import Optional

import pytest
from solders.pubkey import Pubkey

from fakes import NOW, TREASURY_USDC, make_config
from keeper.errors import DecodeError, UnavailableError
from keeper.ledger import layout
from keeper.ledger.client import AccountSnapshot
from keeper.ledger.reader import SYNTHETIC_USDC_BALANCE, TreasuryReader
from keeper.ledger.schemas import StateSource

RENT_MINIMUM = 1_900_000


def _account_fields(**overrides):
    fields = {
        "authority": str(Pubkey.new_unique()),
        "buyback_allocation_bps": 5000,
        "liquidity_allocation_bps": 3000,
        "reserve_allocation_bps": 2000,
        "max_usdc_per_cycle": 10_000_000_000,
        "cooldown_seconds": 3600,
        "slippage_bps": 200,
        "total_sol_collected": 7_000_000_000,
        "total_usdc_converted": 1_000_000_000,
        "total_buybacks_usdc": 100_000_000,
        "total_liquidity_usdc": 50_000_000,
        "total_tokens_burned": 0,
        "last_operation_timestamp": NOW - 100,
        "paused": False,
        "bump": 255,
    }
    fields.update(overrides)
    return fields


class RpcLedger:
    """Ledger reads backed by fixed account bytes."""

    def __init__(self, data: bytes, *, lamports: int, usdc: int = 0, error: Optional[Exception] = None):
        self.treasury_address = Pubkey.new_unique()
        self.data = data
        self.lamports = lamports
        self.usdc = usdc
        self.error = error
        self.token_reads = []

    async def get_account(self, address):
        if self.error is not None:
            raise self.error
        assert address == self.treasury_address
        return AccountSnapshot(address=str(address), data=self.data, lamports=self.lamports)

    async def get_rent_exempt_minimum(self, size):
        return RENT_MINIMUM

    async def get_token_balance(self, address):
        self.token_reads.append(str(address))
        return self.usdc


def test_dry_run_returns_synthetic_state():
    cfg = make_config(dry_run=True)
    reader = TreasuryReader(cfg, clock=lambda: NOW)
    state = asyncio.run(reader.fetch())
    assert state.source == StateSource.synthetic
    assert state.synthetic
    assert state.buyback_allocation_bps == 5000
    assert state.allocations_valid
    assert state.cooldown_seconds == 3600
    assert state.last_operation_timestamp == NOW - 7200


def test_live_read_decodes_account_and_balances():
    data = layout.encode_treasury_account(_account_fields())
    ledger = RpcLedger(data, lamports=RENT_MINIMUM + 3_000_000_000, usdc=250_000_000)
    reader = TreasuryReader(make_config(dry_run=False), ledger=ledger)

    state = asyncio.run(reader.fetch())
    assert state.source == StateSource.ledger
    assert state.sol_balance == 3_000_000_000
    assert state.usdc_balance == 250_000_000
    assert state.total_usdc_converted == 1_000_000_000
    assert state.last_operation_timestamp == NOW - 100
    assert ledger.token_reads == [TREASURY_USDC]


def test_spendable_sol_never_negative():
    data = layout.encode_treasury_account(_account_fields())
    reader = TreasuryReader(make_config(dry_run=False), ledger=RpcLedger(data, lamports=RENT_MINIMUM - 1))
    assert asyncio.run(reader.fetch()).sol_balance == 0


def test_live_read_surfaces_unavailable():
    ledger = RpcLedger(b"", lamports=0, error=UnavailableError("rpc down"))
    reader = TreasuryReader(make_config(dry_run=False), ledger=ledger)
    with pytest.raises(UnavailableError):
        asyncio.run(reader.fetch())


def test_live_read_rejects_foreign_account():
    ledger = RpcLedger(b"\x01" * layout.TREASURY_ACCOUNT_LEN, lamports=RENT_MINIMUM)
    reader = TreasuryReader(make_config(dry_run=False), ledger=ledger)
    with pytest.raises(DecodeError):
        asyncio.run(reader.fetch())


def test_live_reader_requires_ledger():
    with pytest.raises(ValueError):
        TreasuryReader(make_config(dry_run=False))


def test_wait_for_balance_change():
    reader = TreasuryReader(make_config(dry_run=True), clock=lambda: NOW)
    assert asyncio.run(reader.wait_for_balance_change(0, timeout_s=1.0, poll_interval_s=0.01)) == SYNTHETIC_USDC_BALANCE


def test_wait_for_balance_change_times_out():
    reader = TreasuryReader(make_config(dry_run=True), clock=lambda: NOW)
    with pytest.raises(UnavailableError):
        asyncio.run(reader.wait_for_balance_change(SYNTHETIC_USDC_BALANCE, timeout_s=0.05, poll_interval_s=0.01))


def test_ledger_read_without_client_is_unavailable():
    reader = TreasuryReader(make_config(dry_run=True), clock=lambda: NOW)
    with pytest.raises(UnavailableError):
        asyncio.run(reader._fetch_ledger())
