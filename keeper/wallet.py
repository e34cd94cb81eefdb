"""Keeper wallet loading.

Only this module and the ledger client ever touch the signing key. Accepts
either `WALLET_SECRET` (base58 string or JSON byte array) or a Solana CLI
keypair file at `WALLET_PATH` (default `~/.config/solana/id.json`).
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import List, Optional

import base58
from solders.keypair import Keypair

from keeper.errors import WalletConfigError

DEFAULT_WALLET_PATH = Path.home() / ".config" / "solana" / "id.json"
SECRET_KEY_LEN = 64


def _keypair_from_bytes(raw: bytes, *, source: str) -> Keypair:
    if len(raw) != SECRET_KEY_LEN:
        raise WalletConfigError(f"{source} decoded to {len(raw)} bytes, expected {SECRET_KEY_LEN}")
    try:
        return Keypair.from_bytes(raw)
    except ValueError as e:
        raise WalletConfigError(f"{source} is not a valid ed25519 keypair: {e}") from e


def _parse_byte_array(text: str, *, source: str) -> bytes:
    try:
        arr: List[int] = json.loads(text)
    except json.JSONDecodeError as e:
        raise WalletConfigError(f"{source} is not a JSON byte array: {e}") from e
    if not isinstance(arr, list) or not all(isinstance(b, int) and 0 <= b <= 255 for b in arr):
        raise WalletConfigError(f"{source} must be a JSON array of bytes")
    return bytes(arr)


def keypair_from_secret(secret: str) -> Keypair:
    """Parse a base58 secret or a `[1,2,...]` byte array string."""
    secret = secret.strip()
    if secret.startswith("["):
        return _keypair_from_bytes(_parse_byte_array(secret, source="WALLET_SECRET"), source="WALLET_SECRET")
    try:
        raw = base58.b58decode(secret)
    except ValueError as e:
        raise WalletConfigError(f"WALLET_SECRET is not valid base58: {e}") from e
    return _keypair_from_bytes(raw, source="WALLET_SECRET")


def load_keypair(*, wallet_path: Optional[str] = None, secret: Optional[str] = None) -> Keypair:
    """Resolve the keeper keypair from explicit args or environment."""
    secret = secret or os.getenv("WALLET_SECRET")
    if secret:
        return keypair_from_secret(secret)

    path = Path(wallet_path or os.getenv("WALLET_PATH") or DEFAULT_WALLET_PATH).expanduser()
    if not path.exists():
        raise WalletConfigError(
            f"Keeper wallet not found at {path}. Set WALLET_PATH or WALLET_SECRET in .env."
        )
    raw = _parse_byte_array(path.read_text(encoding="utf-8"), source=str(path))
    return _keypair_from_bytes(raw, source=str(path))


__all__ = ["DEFAULT_WALLET_PATH", "keypair_from_secret", "load_keypair"]
