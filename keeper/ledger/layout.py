"""Anchor wire formats for the treasury program.

Account: 8-byte discriminator (`sha256("account:Treasury")[:8]`) followed by
the Borsh-encoded `Treasury` struct (little-endian, no padding).
Instructions: 8-byte discriminator (`sha256("global:<name>")[:8]`) followed by
Borsh-encoded arguments.
"""

from __future__ import annotations

import hashlib
import struct
from typing import Any, Dict, Optional

from solders.pubkey import Pubkey

from keeper.errors import DecodeError

# authority, 3x u16 bps, max_usdc_per_cycle u64, cooldown i64, slippage u16,
# 5x u64 counters, last_operation_timestamp i64, paused bool, bump u8
TREASURY_STRUCT = struct.Struct("<32s3HQqH5Qq?B")
DISCRIMINATOR_LEN = 8
TREASURY_ACCOUNT_LEN = DISCRIMINATOR_LEN + TREASURY_STRUCT.size

TREASURY_SEED = b"treasury"

TREASURY_FIELDS = (
    "authority",
    "buyback_allocation_bps",
    "liquidity_allocation_bps",
    "reserve_allocation_bps",
    "max_usdc_per_cycle",
    "cooldown_seconds",
    "slippage_bps",
    "total_sol_collected",
    "total_usdc_converted",
    "total_buybacks_usdc",
    "total_liquidity_usdc",
    "total_tokens_burned",
    "last_operation_timestamp",
    "paused",
    "bump",
)


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_LEN]


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:DISCRIMINATOR_LEN]


TREASURY_DISCRIMINATOR = account_discriminator("Treasury")


def find_treasury_address(program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([TREASURY_SEED], program_id)
    return address


def decode_treasury_account(data: bytes) -> Dict[str, Any]:
    """Decode raw account bytes into a field dict (authority as base58)."""
    if len(data) < TREASURY_ACCOUNT_LEN:
        raise DecodeError(
            f"Treasury account too short: {len(data)} bytes, expected {TREASURY_ACCOUNT_LEN}"
        )
    if bytes(data[:DISCRIMINATOR_LEN]) != TREASURY_DISCRIMINATOR:
        raise DecodeError("Account discriminator does not match Treasury")
    try:
        values = TREASURY_STRUCT.unpack_from(bytes(data), DISCRIMINATOR_LEN)
    except struct.error as e:
        raise DecodeError(f"Treasury layout mismatch: {e}") from e
    decoded = dict(zip(TREASURY_FIELDS, values))
    decoded["authority"] = str(Pubkey.from_bytes(decoded["authority"]))
    return decoded


def encode_treasury_account(fields: Dict[str, Any]) -> bytes:
    """Inverse of `decode_treasury_account` (fixtures, local validators)."""
    values = []
    for name in TREASURY_FIELDS:
        val = fields[name]
        if name == "authority":
            val = bytes(Pubkey.from_string(val)) if isinstance(val, str) else bytes(val)
        values.append(val)
    return TREASURY_DISCRIMINATOR + TREASURY_STRUCT.pack(*values)


def _opt(fmt: str, value: Optional[int]) -> bytes:
    if value is None:
        return b"\x00"
    return b"\x01" + struct.pack(fmt, value)


def encode_record_fee(amount: int) -> bytes:
    return instruction_discriminator("record_fee") + struct.pack("<Q", amount)


def encode_record_usdc_conversion(usdc_amount: int) -> bytes:
    return instruction_discriminator("record_usdc_conversion") + struct.pack("<Q", usdc_amount)


def encode_execute_buyback(usdc_amount: int, min_tokens_out: int) -> bytes:
    return instruction_discriminator("execute_buyback") + struct.pack("<QQ", usdc_amount, min_tokens_out)


def encode_add_liquidity(usdc_amount: int, token_amount: int) -> bytes:
    return instruction_discriminator("add_liquidity") + struct.pack("<QQ", usdc_amount, token_amount)


def encode_emergency_pause() -> bytes:
    return instruction_discriminator("emergency_pause")


def encode_resume() -> bytes:
    return instruction_discriminator("resume")


def encode_update_config(
    max_usdc_per_cycle: Optional[int] = None,
    cooldown_seconds: Optional[int] = None,
    slippage_bps: Optional[int] = None,
) -> bytes:
    return (
        instruction_discriminator("update_config")
        + _opt("<Q", max_usdc_per_cycle)
        + _opt("<q", cooldown_seconds)
        + _opt("<H", slippage_bps)
    )


__all__ = [
    "TREASURY_ACCOUNT_LEN",
    "TREASURY_DISCRIMINATOR",
    "TREASURY_FIELDS",
    "account_discriminator",
    "instruction_discriminator",
    "find_treasury_address",
    "decode_treasury_account",
    "encode_treasury_account",
    "encode_record_fee",
    "encode_record_usdc_conversion",
    "encode_execute_buyback",
    "encode_add_liquidity",
    "encode_emergency_pause",
    "encode_resume",
    "encode_update_config",
]
