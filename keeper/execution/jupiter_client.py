"""Jupiter v6 quote/swap client.

The aggregator builds the swap transaction; this client signs it with the
keeper wallet (through the ledger client) and waits for confirmed status.
Calls are serialized and spaced by `min_request_interval_s`; there is no
parallel fan-out and no retry inside a cycle.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import math
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx
from solders.transaction import VersionedTransaction

from keeper.config import SOL_MINT, JupiterConfig
from keeper.data.audit import AuditContext, AuditManager
from keeper.errors import ExecutionError, QuoteError, UnavailableError
from keeper.execution.schemas import Quote, SwapResult
from keeper.ledger.client import LedgerClient

REQUIRED_QUOTE_FIELDS = ("inAmount", "outAmount", "routePlan")


def price_impact_to_bps(value: Any) -> int:
    """Convert Jupiter's `priceImpactPct` (a fraction, as a string) to bps, rounded up."""
    if value in (None, ""):
        return 0
    try:
        frac = Decimal(str(value))
    except InvalidOperation as e:
        raise QuoteError(f"Malformed priceImpactPct: {value!r}") from e
    return max(0, math.ceil(frac * 10_000))


def parse_quote(data: Dict[str, Any], *, slippage_bps: int) -> Quote:
    if not isinstance(data, dict):
        raise QuoteError("Quote response is not an object")
    missing = [f for f in REQUIRED_QUOTE_FIELDS if f not in data]
    if missing:
        raise QuoteError(f"Quote response missing fields: {', '.join(missing)}")
    if not data["routePlan"]:
        raise QuoteError("No route available")
    try:
        in_amount = int(data["inAmount"])
        out_amount = int(data["outAmount"])
        threshold = int(data["otherAmountThreshold"]) if data.get("otherAmountThreshold") else None
    except (TypeError, ValueError) as e:
        raise QuoteError(f"Malformed quote amounts: {e}") from e
    if in_amount <= 0 or out_amount <= 0:
        raise QuoteError(f"Quote has no output: in={in_amount} out={out_amount}")
    return Quote(
        input_mint=str(data.get("inputMint", "")),
        output_mint=str(data.get("outputMint", "")),
        in_amount=in_amount,
        out_amount=out_amount,
        price_impact_bps=price_impact_to_bps(data.get("priceImpactPct")),
        slippage_bps=int(data.get("slippageBps", slippage_bps)),
        other_amount_threshold=threshold,
        raw=data,
    )


def simulated_swap_result(quote: Quote) -> SwapResult:
    seed = f"{quote.input_mint}|{quote.output_mint}|{quote.in_amount}|{quote.out_amount}"
    digest = hashlib.sha1(seed.encode("utf-8")).hexdigest()[:24]  # nosec - non-crypto use
    return SwapResult(
        executed_in_amount=quote.in_amount,
        executed_out_amount=quote.out_amount,
        execution_reference=f"SIMULATED-{digest}",
        simulated=True,
    )


class JupiterClient:
    """Quote and execute swaps through the Jupiter aggregator."""

    def __init__(
        self,
        cfg: JupiterConfig,
        *,
        ledger: Optional[LedgerClient] = None,
        audit: Optional[AuditManager] = None,
        dry_run: bool = False,
        http: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cfg = cfg
        self.ledger = ledger
        self.audit = audit or AuditManager()
        self.dry_run = dry_run
        self.http = http or httpx.AsyncClient(timeout=cfg.http_timeout_s)
        self.clock = clock
        self.audit_ctx = AuditContext(agent_id="jupiter")
        self._lock = asyncio.Lock()
        self._last_call: Optional[float] = None

    async def close(self) -> None:
        await self.http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """Serialized, spaced, bounded HTTP call returning the decoded JSON body."""
        async with self._lock:
            if self._last_call is not None:
                wait = self.cfg.min_request_interval_s - (self.clock() - self._last_call)
                if wait > 0:
                    await asyncio.sleep(wait)
            try:
                resp = await asyncio.wait_for(
                    self.http.request(method, f"{self.cfg.api_url}{path}", **kwargs),
                    timeout=self.cfg.http_timeout_s,
                )
            except asyncio.TimeoutError as e:
                raise UnavailableError(f"Jupiter {path} timed out after {self.cfg.http_timeout_s}s") from e
            except httpx.HTTPError as e:
                raise UnavailableError(f"Jupiter {path} failed: {e}") from e
            finally:
                self._last_call = self.clock()

        if resp.status_code >= 400:
            raise UnavailableError(f"Jupiter {path} returned HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as e:
            raise UnavailableError(f"Jupiter {path} returned non-JSON body") from e

    async def quote(self, input_mint: str, output_mint: str, amount: int, max_slippage_bps: int) -> Quote:
        """Best route for `amount` of `input_mint`; raises QuoteError on any failure."""
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(max_slippage_bps),
        }
        try:
            data = await self._request("GET", "/quote", params=params)
        except UnavailableError as e:
            raise QuoteError(str(e)) from e
        quote = parse_quote(data, slippage_bps=max_slippage_bps)
        await self.audit.log(
            "jupiter_quote",
            {
                "input_mint": quote.input_mint,
                "output_mint": quote.output_mint,
                "in_amount": quote.in_amount,
                "out_amount": quote.out_amount,
                "price_impact_bps": quote.price_impact_bps,
            },
            level="debug",
            ctx=self.audit_ctx,
        )
        return quote

    async def _wallet_balance(self, mint: str) -> Optional[int]:
        if self.ledger is None:
            raise ExecutionError("Live swaps need a LedgerClient to read wallet balances")
        if mint == SOL_MINT:
            return None
        try:
            return await self.ledger.get_token_balance(self.ledger.wallet_token_account(mint))
        except UnavailableError:
            return None

    async def execute_swap(
        self,
        quote: Quote,
        *,
        on_submitted: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> SwapResult:
        """Build, sign, send and confirm the swap for `quote`.

        Raises `ExecutionError` when the provider refuses to build the
        transaction or it fails on chain, `ExecutionUnconfirmed` when the
        confirmation is not observed in time. `on_submitted` receives the
        transaction signature before it is sent.
        """
        if self.dry_run:
            result = simulated_swap_result(quote)
            await self.audit.log(
                "jupiter_swap_simulated",
                {"reference": result.execution_reference, "in_amount": quote.in_amount, "out_amount": quote.out_amount},
                ctx=self.audit_ctx,
                simulated=True,
            )
            return result

        if self.ledger is None:
            raise ExecutionError("Live swaps require a LedgerClient for signing and submission")
        keypair = self.ledger.keypair
        if keypair is None:
            raise ExecutionError("Live swaps require the keeper wallet")

        payload = {
            "quoteResponse": quote.raw,
            "userPublicKey": str(keypair.pubkey()),
            "wrapAndUnwrapSol": True,
            "prioritizationFeeLamports": "auto",
        }
        try:
            data = await self._request("POST", "/swap", json=payload)
        except UnavailableError as e:
            raise ExecutionError(f"Swap transaction request failed: {e}") from e
        tx_b64 = data.get("swapTransaction") if isinstance(data, dict) else None
        if not tx_b64:
            raise ExecutionError("Swap response missing swapTransaction")
        try:
            unsigned = VersionedTransaction.from_bytes(base64.b64decode(tx_b64))
        except (binascii.Error, ValueError) as e:
            raise ExecutionError(f"Swap transaction could not be decoded: {e}") from e

        before = await self._wallet_balance(quote.output_mint)
        signed = self.ledger.sign(unsigned)
        await self.audit.log(
            "jupiter_swap_submitted",
            {"reference": str(signed.signatures[0]), "in_amount": quote.in_amount, "quoted_out": quote.out_amount},
            ctx=self.audit_ctx,
        )
        if on_submitted is not None:
            await on_submitted(str(signed.signatures[0]))
        reference = await self.ledger.send_transaction(signed, label="jupiter_swap")

        executed_out = quote.min_out_amount()
        after = await self._wallet_balance(quote.output_mint)
        if before is not None and after is not None and after > before:
            executed_out = after - before
        else:
            # Balance delta not observable; fall back to the guaranteed minimum.
            await self.audit.log(
                "jupiter_swap_output_unobserved",
                {"reference": reference, "assumed_out": executed_out},
                level="warning",
                ctx=self.audit_ctx,
            )

        result = SwapResult(
            executed_in_amount=quote.in_amount,
            executed_out_amount=executed_out,
            execution_reference=reference,
        )
        await self.audit.log(
            "jupiter_swap_confirmed",
            {
                "reference": reference,
                "in_amount": result.executed_in_amount,
                "quoted_out": quote.out_amount,
                "executed_out": result.executed_out_amount,
                "price_impact_bps": quote.price_impact_bps,
            },
            ctx=self.audit_ctx,
        )
        return result


__all__ = ["JupiterClient", "parse_quote", "price_impact_to_bps", "simulated_swap_result"]
