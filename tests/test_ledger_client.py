import asyncio

import pytest
from solders.pubkey import Pubkey

from fakes import KEEPER_USDC, PROGRAM_ID, make_config
from keeper.config import USDC_MINT
from keeper.data.audit import AuditManager, MemoryAuditSink
from keeper.errors import WalletConfigError
from keeper.ledger import layout
from keeper.ledger.client import LedgerClient, SignatureState


def _client(sink, *, dry_run=True):
    return LedgerClient(make_config().solana, audit=AuditManager([sink]), dry_run=dry_run)


def test_treasury_address_derived_from_program():
    client = _client(MemoryAuditSink())
    assert client.treasury_address == layout.find_treasury_address(Pubkey.from_string(PROGRAM_ID))
    asyncio.run(client.close())


def test_dry_run_submissions_are_simulated():
    sink = MemoryAuditSink()
    client = _client(sink)

    async def _run():
        try:
            first = await client.execute_buyback(1_000, 1_900)
            second = await client.execute_buyback(1_000, 1_900)
            state = await client.signature_state(first)
            return first, second, state
        finally:
            await client.close()

    first, second, state = asyncio.run(_run())
    assert first.startswith("SIMULATED-")
    assert first == second
    assert state == SignatureState.confirmed
    records = sink.events("ledger_submit_simulated")
    assert len(records) == 2
    assert records[0].simulated is True
    assert records[0].payload["label"] == "execute_buyback"


def test_live_submission_requires_wallet():
    client = _client(MemoryAuditSink(), dry_run=False)

    async def _run():
        try:
            await client.emergency_pause()
        finally:
            await client.close()

    with pytest.raises(WalletConfigError):
        asyncio.run(_run())


def test_wallet_usdc_account_uses_configured_account():
    client = _client(MemoryAuditSink())
    assert str(client.wallet_token_account(USDC_MINT)) == KEEPER_USDC
    asyncio.run(client.close())
