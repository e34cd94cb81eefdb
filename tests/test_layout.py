import hashlib
import struct

import pytest
from solders.pubkey import Pubkey

from keeper.errors import DecodeError
from keeper.ledger import layout


def _fields(**overrides):
    fields = {
        "authority": str(Pubkey.new_unique()),
        "buyback_allocation_bps": 5000,
        "liquidity_allocation_bps": 3000,
        "reserve_allocation_bps": 2000,
        "max_usdc_per_cycle": 10_000_000_000,
        "cooldown_seconds": 3600,
        "slippage_bps": 200,
        "total_sol_collected": 20_000_000_000,
        "total_usdc_converted": 2_000_000_000,
        "total_buybacks_usdc": 800_000_000,
        "total_liquidity_usdc": 400_000_000,
        "total_tokens_burned": 0,
        "last_operation_timestamp": 1_700_000_000,
        "paused": False,
        "bump": 254,
    }
    fields.update(overrides)
    return fields


def test_treasury_account_size():
    # 32 authority + 3*2 bps + 8 + 8 + 2 + 5*8 counters + 8 + 1 + 1
    assert layout.TREASURY_STRUCT.size == 106
    assert layout.TREASURY_ACCOUNT_LEN == 114


def test_discriminators_follow_anchor_convention():
    assert layout.TREASURY_DISCRIMINATOR == hashlib.sha256(b"account:Treasury").digest()[:8]
    assert layout.instruction_discriminator("execute_buyback") == hashlib.sha256(b"global:execute_buyback").digest()[:8]


def test_decode_encoded_account():
    fields = _fields(paused=True)
    decoded = layout.decode_treasury_account(layout.encode_treasury_account(fields))
    assert decoded == fields


def test_decode_ignores_trailing_bytes():
    fields = _fields()
    data = layout.encode_treasury_account(fields) + b"\x00" * 16
    assert layout.decode_treasury_account(data)["total_usdc_converted"] == 2_000_000_000


def test_decode_rejects_short_account():
    data = layout.encode_treasury_account(_fields())[:-1]
    with pytest.raises(DecodeError):
        layout.decode_treasury_account(data)


def test_decode_rejects_foreign_discriminator():
    data = b"\x00" * 8 + layout.encode_treasury_account(_fields())[8:]
    with pytest.raises(DecodeError):
        layout.decode_treasury_account(data)


def test_instruction_payloads():
    data = layout.encode_execute_buyback(1_000_000, 950_000)
    assert data[:8] == layout.instruction_discriminator("execute_buyback")
    assert struct.unpack("<QQ", data[8:]) == (1_000_000, 950_000)

    data = layout.encode_record_usdc_conversion(42)
    assert len(data) == 16
    assert struct.unpack("<Q", data[8:]) == (42,)

    assert layout.encode_emergency_pause() == layout.instruction_discriminator("emergency_pause")


def test_update_config_options():
    empty = layout.encode_update_config()
    assert empty[8:] == b"\x00\x00\x00"

    full = layout.encode_update_config(max_usdc_per_cycle=5, cooldown_seconds=60, slippage_bps=100)
    assert len(full) == 8 + 9 + 9 + 3
    assert full[8:17] == b"\x01" + struct.pack("<Q", 5)
    assert full[26:] == b"\x01" + struct.pack("<H", 100)


def test_treasury_address_is_the_program_pda():
    program_id = Pubkey.new_unique()
    expected, _ = Pubkey.find_program_address([b"treasury"], program_id)
    assert layout.find_treasury_address(program_id) == expected
