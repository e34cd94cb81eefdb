"""Solana RPC wrapper for the treasury program.

Only this layer (and the wallet loader) ever touches the signing key. Every
read uses `Confirmed` commitment and every call is bounded by a timeout. In
dry-run mode no mutating submission leaves the process: submissions return a
`SIMULATED-` reference and are audited as simulated.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import BurnParams, burn, get_associated_token_address

from keeper.config import SolanaConfig
from keeper.data.audit import AuditContext, AuditManager
from keeper.errors import (
    ExecutionUnconfirmed,
    LedgerSubmissionError,
    UnavailableError,
    WalletConfigError,
)
from keeper.ledger import layout

T = TypeVar("T")

RPC_ERRORS = (SolanaRpcException, RPCException, httpx.HTTPError, OSError)


class SignatureState(str, Enum):
    confirmed = "confirmed"
    pending = "pending"
    failed = "failed"
    unknown = "unknown"


@dataclass(frozen=True)
class AccountSnapshot:
    address: str
    data: bytes
    lamports: int


def _simulated_reference(label: str, payload: Dict[str, Any]) -> str:
    seed = f"{label}|{sorted(payload.items())}"
    return "SIMULATED-" + hashlib.sha1(seed.encode("utf-8")).hexdigest()[:24]  # nosec - non-crypto use


class LedgerClient:
    """Thin async wrapper over solana-py for treasury reads and submissions."""

    def __init__(
        self,
        cfg: SolanaConfig,
        *,
        keypair: Optional[Keypair] = None,
        audit: Optional[AuditManager] = None,
        dry_run: bool = False,
        rpc: Optional[AsyncClient] = None,
        poll_interval_s: float = 0.5,
    ):
        self.cfg = cfg
        self.keypair = keypair
        self.audit = audit or AuditManager()
        self.dry_run = dry_run
        self.rpc = rpc or AsyncClient(cfg.rpc_url, commitment=Confirmed, timeout=cfg.rpc_timeout_s)
        self.poll_interval_s = poll_interval_s
        self.audit_ctx = AuditContext(agent_id="ledger")
        self.program_id: Optional[Pubkey] = Pubkey.from_string(cfg.program_id) if cfg.program_id else None
        self.treasury_address: Optional[Pubkey] = (
            layout.find_treasury_address(self.program_id) if self.program_id else None
        )

    async def close(self) -> None:
        await self.rpc.close()

    # ------------------------------------------------------------------ reads

    async def _bounded(self, what: str, coro: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=self.cfg.rpc_timeout_s)
        except asyncio.TimeoutError as e:
            raise UnavailableError(f"{what} timed out after {self.cfg.rpc_timeout_s}s") from e
        except RPC_ERRORS as e:
            raise UnavailableError(f"{what} failed: {e}") from e

    async def get_account(self, address: Pubkey) -> AccountSnapshot:
        resp = await self._bounded(
            f"get_account_info({address})",
            self.rpc.get_account_info(address, commitment=Confirmed),
        )
        if resp.value is None:
            raise UnavailableError(f"Account not found: {address}")
        return AccountSnapshot(address=str(address), data=bytes(resp.value.data), lamports=int(resp.value.lamports))

    async def get_token_balance(self, address: Pubkey) -> int:
        resp = await self._bounded(
            f"get_token_account_balance({address})",
            self.rpc.get_token_account_balance(address, commitment=Confirmed),
        )
        return int(resp.value.amount)

    async def get_token_supply(self, mint: Pubkey) -> int:
        resp = await self._bounded(
            f"get_token_supply({mint})",
            self.rpc.get_token_supply(mint, commitment=Confirmed),
        )
        return int(resp.value.amount)

    async def get_rent_exempt_minimum(self, size: int) -> int:
        resp = await self._bounded(
            "get_minimum_balance_for_rent_exemption",
            self.rpc.get_minimum_balance_for_rent_exemption(size, commitment=Confirmed),
        )
        return int(resp.value)

    async def signature_state(self, reference: str) -> SignatureState:
        """Classify a previously sent signature without resubmitting anything."""
        if reference.startswith("SIMULATED-"):
            return SignatureState.confirmed
        resp = await self._bounded(
            "get_signature_statuses",
            self.rpc.get_signature_statuses([Signature.from_string(reference)], search_transaction_history=True),
        )
        status = resp.value[0] if resp.value else None
        if status is None:
            return SignatureState.unknown
        if status.err is not None:
            return SignatureState.failed
        if status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        ):
            return SignatureState.confirmed
        return SignatureState.pending

    # ------------------------------------------------------------ submission

    def _require_keypair(self) -> Keypair:
        if self.keypair is None:
            raise WalletConfigError("Ledger submissions require the keeper wallet.")
        return self.keypair

    def _require_program(self) -> Pubkey:
        if self.program_id is None or self.treasury_address is None:
            raise WalletConfigError("programId is not configured.")
        return self.program_id

    def sign(self, tx: VersionedTransaction) -> VersionedTransaction:
        """Sign a provider-built transaction with the keeper wallet."""
        return VersionedTransaction(tx.message, [self._require_keypair()])

    async def wait_for_confirmation(self, reference: str, *, timeout_s: Optional[float] = None) -> str:
        deadline = time.monotonic() + (timeout_s or self.cfg.confirm_timeout_s)
        while time.monotonic() < deadline:
            try:
                state = await self.signature_state(reference)
            except UnavailableError:
                state = SignatureState.pending
            if state == SignatureState.confirmed:
                return reference
            if state == SignatureState.failed:
                raise LedgerSubmissionError(f"Transaction failed on chain: {reference}", reference=reference)
            await asyncio.sleep(self.poll_interval_s)
        raise ExecutionUnconfirmed(
            f"Confirmation not observed within {timeout_s or self.cfg.confirm_timeout_s}s: {reference}",
            reference=reference,
        )

    async def send_transaction(self, tx: VersionedTransaction, *, label: str) -> str:
        """Send a signed transaction and wait for confirmed status."""
        reference = str(tx.signatures[0])
        start = time.perf_counter()
        try:
            await asyncio.wait_for(
                self.rpc.send_transaction(tx, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)),
                timeout=self.cfg.rpc_timeout_s,
            )
        except asyncio.TimeoutError as e:
            # The transaction may still land; only the signature status can tell.
            raise ExecutionUnconfirmed(f"{label}: send timed out", reference=reference) from e
        except RPC_ERRORS as e:
            await self.audit.log(
                "ledger_submit_failed",
                {"label": label, "reference": reference, "error": str(e)},
                level="error",
                ctx=self.audit_ctx,
            )
            raise LedgerSubmissionError(f"{label}: rejected before commit: {e}", reference=reference) from e

        await self.wait_for_confirmation(reference)
        await self.audit.log(
            "ledger_submit_confirmed",
            {"label": label, "reference": reference, "latency_s": time.perf_counter() - start},
            ctx=self.audit_ctx,
        )
        return reference

    async def submit(
        self,
        label: str,
        build: Callable[[], Sequence[Instruction]],
        payload: Dict[str, Any],
    ) -> str:
        """Submit a mutating transaction, or simulate it in dry-run mode.

        `build` is only invoked for live submissions, so dry runs do not need
        program or token account addresses configured.
        """
        if self.dry_run:
            reference = _simulated_reference(label, payload)
            await self.audit.log(
                "ledger_submit_simulated",
                {"label": label, "reference": reference, **payload},
                ctx=self.audit_ctx,
                simulated=True,
            )
            return reference

        kp = self._require_keypair()
        blockhash = await self._bounded("get_latest_blockhash", self.rpc.get_latest_blockhash(commitment=Confirmed))
        message = MessageV0.try_compile(kp.pubkey(), list(build()), [], blockhash.value.blockhash)
        tx = VersionedTransaction(message, [kp])
        await self.audit.log(
            "ledger_submit",
            {"label": label, "reference": str(tx.signatures[0]), **payload},
            ctx=self.audit_ctx,
        )
        return await self.send_transaction(tx, label=label)

    # ------------------------------------------------ treasury instructions

    def _authority(self) -> Pubkey:
        if self.keypair is None:
            return Pubkey.default()
        return self.keypair.pubkey()

    def _treasury_meta(self) -> AccountMeta:
        self._require_program()
        return AccountMeta(self.treasury_address, is_signer=False, is_writable=True)

    def _authority_meta(self) -> AccountMeta:
        return AccountMeta(self._require_keypair().pubkey(), is_signer=True, is_writable=False)

    def _treasury_ix(self, data: bytes, *, signer: bool = True) -> Instruction:
        accounts = [self._treasury_meta()]
        if signer:
            accounts.append(self._authority_meta())
        return Instruction(self._require_program(), data, accounts)

    def _transfer_ix(self, data: bytes, destination: Pubkey) -> Instruction:
        if not self.cfg.treasury_usdc_account:
            raise WalletConfigError("treasuryUsdcAccount is not configured.")
        accounts = [
            self._treasury_meta(),
            AccountMeta(Pubkey.from_string(self.cfg.treasury_usdc_account), is_signer=False, is_writable=True),
            AccountMeta(destination, is_signer=False, is_writable=True),
            self._authority_meta(),
            AccountMeta(TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        return Instruction(self._require_program(), data, accounts)

    def keeper_usdc_account(self) -> Pubkey:
        if self.cfg.keeper_usdc_account:
            return Pubkey.from_string(self.cfg.keeper_usdc_account)
        return get_associated_token_address(self._authority(), Pubkey.from_string(self.cfg.usdc_mint))

    def wallet_token_account(self, mint: str) -> Pubkey:
        """Token account the keeper wallet receives `mint` into."""
        if mint == self.cfg.usdc_mint:
            return self.keeper_usdc_account()
        return get_associated_token_address(self._authority(), Pubkey.from_string(mint))

    def _pool_usdc_vault(self) -> Pubkey:
        if not self.cfg.pool_usdc_vault:
            raise WalletConfigError("poolUsdcVault is not configured.")
        return Pubkey.from_string(self.cfg.pool_usdc_vault)

    async def record_fee(self, amount: int) -> str:
        return await self.submit(
            "record_fee",
            lambda: [self._treasury_ix(layout.encode_record_fee(amount), signer=False)],
            {"amount": amount},
        )

    async def record_usdc_conversion(self, usdc_amount: int) -> str:
        return await self.submit(
            "record_usdc_conversion",
            lambda: [self._treasury_ix(layout.encode_record_usdc_conversion(usdc_amount))],
            {"usdc_amount": usdc_amount},
        )

    async def execute_buyback(self, usdc_amount: int, min_tokens_out: int) -> str:
        """Record a buyback; the program moves `usdc_amount` to the keeper's USDC account."""
        return await self.submit(
            "execute_buyback",
            lambda: [
                self._transfer_ix(
                    layout.encode_execute_buyback(usdc_amount, min_tokens_out), self.keeper_usdc_account()
                )
            ],
            {"usdc_amount": usdc_amount, "min_tokens_out": min_tokens_out},
        )

    async def add_liquidity(self, usdc_amount: int, token_amount: int) -> str:
        """Move `usdc_amount` into the pool vault and record the liquidity spend."""
        return await self.submit(
            "add_liquidity",
            lambda: [
                self._transfer_ix(layout.encode_add_liquidity(usdc_amount, token_amount), self._pool_usdc_vault())
            ],
            {"usdc_amount": usdc_amount, "token_amount": token_amount},
        )

    async def emergency_pause(self) -> str:
        return await self.submit("emergency_pause", lambda: [self._treasury_ix(layout.encode_emergency_pause())], {})

    async def resume(self) -> str:
        return await self.submit("resume", lambda: [self._treasury_ix(layout.encode_resume())], {})

    async def update_config(
        self,
        *,
        max_usdc_per_cycle: Optional[int] = None,
        cooldown_seconds: Optional[int] = None,
        slippage_bps: Optional[int] = None,
    ) -> str:
        data = layout.encode_update_config(max_usdc_per_cycle, cooldown_seconds, slippage_bps)
        payload = {
            "max_usdc_per_cycle": max_usdc_per_cycle,
            "cooldown_seconds": cooldown_seconds,
            "slippage_bps": slippage_bps,
        }
        return await self.submit("update_config", lambda: [self._treasury_ix(data)], payload)

    async def burn_tokens(self, mint: str, amount: int) -> str:
        """Burn `amount` of `mint` held in the keeper wallet's associated account."""

        def _build() -> List[Instruction]:
            owner = self._require_keypair().pubkey()
            mint_key = Pubkey.from_string(mint)
            return [
                burn(
                    BurnParams(
                        program_id=TOKEN_PROGRAM_ID,
                        account=get_associated_token_address(owner, mint_key),
                        mint=mint_key,
                        owner=owner,
                        amount=amount,
                    )
                )
            ]

        return await self.submit("burn_tokens", _build, {"mint": mint, "amount": amount})


__all__ = ["AccountSnapshot", "LedgerClient", "SignatureState"]
