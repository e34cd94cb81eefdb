"""Central configuration loader.

Reads the JSON config file (CONFIG_PATH, default `config/config.json`), applies
environment overrides, and exposes typed, frozen config objects. Validation
failures raise `ConfigInvalid`, which is fatal before the loop starts.

All amounts are integer minor units (lamports for SOL, 6-decimal units for
USDC), matching the on-chain treasury account.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from keeper.errors import ConfigInvalid

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"

BPS_DENOMINATOR = 10_000
ALLOCATION_SUM_TOLERANCE = 0.001
# The treasury program rejects slippage settings above 10%.
MAX_SLIPPAGE_BPS = 1_000

DEFAULT_CONFIG_PATH = Path("config") / "config.json"


def _env_bool(name: str, default: bool = False) -> bool:
    val = os.getenv(name)
    if val is None:
        return default
    return val.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return float(val)


def _env_str(name: str, default: Optional[str]) -> Optional[str]:
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return val.strip()


@dataclass(frozen=True)
class AllocationConfig:
    buyback: float
    liquidity: float
    reserve: float

    @property
    def total(self) -> float:
        return self.buyback + self.liquidity + self.reserve

    def to_bps(self) -> Dict[str, int]:
        buyback = int(round(self.buyback * BPS_DENOMINATOR))
        liquidity = int(round(self.liquidity * BPS_DENOMINATOR))
        # Reserve absorbs rounding so the three always sum to 10000.
        return {
            "buyback": buyback,
            "liquidity": liquidity,
            "reserve": BPS_DENOMINATOR - buyback - liquidity,
        }


@dataclass(frozen=True)
class LimitsConfig:
    max_usdc_per_cycle: int
    cooldown_minutes: float
    slippage_bps: int
    min_sol_to_swap: int

    @property
    def cooldown_seconds(self) -> int:
        return int(self.cooldown_minutes * 60)


@dataclass(frozen=True)
class MonitoringConfig:
    check_interval_seconds: int = 60
    log_level: str = "info"


@dataclass(frozen=True)
class SolanaConfig:
    rpc_url: str
    program_id: Optional[str]
    treasury_usdc_account: Optional[str]
    keeper_usdc_account: Optional[str]
    usdc_mint: str
    token_mint: str
    pool_usdc_vault: Optional[str]
    pool_token_vault: Optional[str]
    pool_lp_mint: Optional[str] = None
    rpc_timeout_s: float = 20.0
    confirm_timeout_s: float = 60.0


@dataclass(frozen=True)
class JupiterConfig:
    api_url: str = "https://quote-api.jup.ag/v6"
    http_timeout_s: float = 15.0
    min_request_interval_s: float = 1.0


@dataclass(frozen=True)
class KeeperConfig:
    dry_run: bool
    solana: SolanaConfig
    jupiter: JupiterConfig
    allocations: AllocationConfig
    limits: LimitsConfig
    monitoring: MonitoringConfig
    wallet_path: Optional[str] = None
    mongodb_uri: Optional[str] = None
    # Max tolerated divergence between local allocation defaults and ledger bps.
    allocation_tolerance_bps: int = 10
    extra: Dict[str, Any] = field(default_factory=dict)


def validate_config(cfg: KeeperConfig) -> KeeperConfig:
    """Reject configurations the keeper must never start with."""
    alloc = cfg.allocations
    for name in ("buyback", "liquidity", "reserve"):
        if getattr(alloc, name) < 0:
            raise ConfigInvalid(f"allocations.{name} must be non-negative, got {getattr(alloc, name)}")
    if abs(alloc.total - 1.0) > ALLOCATION_SUM_TOLERANCE:
        raise ConfigInvalid(f"Allocations must sum to 1.0, got {alloc.total}")

    lim = cfg.limits
    if lim.slippage_bps < 0 or lim.slippage_bps > MAX_SLIPPAGE_BPS:
        raise ConfigInvalid(f"limits.slippageBps must be within [0, {MAX_SLIPPAGE_BPS}], got {lim.slippage_bps}")
    if lim.max_usdc_per_cycle < 0:
        raise ConfigInvalid("limits.maxUsdcPerCycle must be non-negative")
    if lim.cooldown_minutes < 0:
        raise ConfigInvalid("limits.cooldownMinutes must be non-negative")
    if lim.min_sol_to_swap <= 0:
        raise ConfigInvalid("limits.minSolToSwap must be positive")

    if cfg.monitoring.check_interval_seconds <= 0:
        raise ConfigInvalid("monitoring.checkIntervalSeconds must be positive")

    if not cfg.solana.token_mint:
        raise ConfigInvalid("tokenMint is required")

    if not cfg.dry_run:
        missing = [
            key
            for key, val in (
                ("programId", cfg.solana.program_id),
                ("treasuryUsdcAccount", cfg.solana.treasury_usdc_account),
                ("poolUsdcVault", cfg.solana.pool_usdc_vault),
                ("poolTokenVault", cfg.solana.pool_token_vault),
            )
            if not val
        ]
        if missing:
            raise ConfigInvalid(f"Live mode requires: {', '.join(missing)}")
    return cfg


def _require(raw: Dict[str, Any], key: str) -> Any:
    if key not in raw:
        raise ConfigInvalid(f"Missing config key: {key}")
    return raw[key]


def config_from_dict(raw: Dict[str, Any]) -> KeeperConfig:
    """Build a validated KeeperConfig from the camelCase JSON document."""
    try:
        alloc_raw = _require(raw, "allocations")
        limits_raw = _require(raw, "limits")
        monitoring_raw = raw.get("monitoring") or {}

        allocations = AllocationConfig(
            buyback=float(_require(alloc_raw, "buyback")),
            liquidity=float(_require(alloc_raw, "liquidity")),
            reserve=float(_require(alloc_raw, "reserve")),
        )
        limits = LimitsConfig(
            max_usdc_per_cycle=int(_require(limits_raw, "maxUsdcPerCycle")),
            cooldown_minutes=float(_require(limits_raw, "cooldownMinutes")),
            slippage_bps=int(_require(limits_raw, "slippageBps")),
            min_sol_to_swap=int(_require(limits_raw, "minSolToSwap")),
        )
        monitoring = MonitoringConfig(
            check_interval_seconds=int(monitoring_raw.get("checkIntervalSeconds", 60)),
            log_level=str(monitoring_raw.get("logLevel", "info")),
        )
        solana = SolanaConfig(
            rpc_url=_env_str("RPC_URL", raw.get("rpcUrl")) or "https://api.mainnet-beta.solana.com",
            program_id=raw.get("programId"),
            treasury_usdc_account=raw.get("treasuryUsdcAccount"),
            keeper_usdc_account=raw.get("keeperUsdcAccount"),
            usdc_mint=raw.get("usdcMint") or USDC_MINT,
            token_mint=raw.get("tokenMint") or "",
            pool_usdc_vault=raw.get("poolUsdcVault"),
            pool_token_vault=raw.get("poolTokenVault"),
            pool_lp_mint=raw.get("poolLpMint"),
            rpc_timeout_s=_env_float("KEEPER_RPC_TIMEOUT_S", float(raw.get("rpcTimeoutSeconds", 20.0))),
            confirm_timeout_s=_env_float("KEEPER_CONFIRM_TIMEOUT_S", float(raw.get("confirmTimeoutSeconds", 60.0))),
        )
        jupiter = JupiterConfig(
            api_url=(_env_str("JUPITER_API_URL", raw.get("jupiterApiUrl")) or JupiterConfig.api_url).rstrip("/"),
            http_timeout_s=float(raw.get("httpTimeoutSeconds", JupiterConfig.http_timeout_s)),
            min_request_interval_s=float(raw.get("minRequestIntervalSeconds", JupiterConfig.min_request_interval_s)),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigInvalid(f"Malformed config: {e}") from e

    cfg = KeeperConfig(
        dry_run=_env_bool("DRY_RUN", bool(raw.get("dryRun", False))),
        solana=solana,
        jupiter=jupiter,
        allocations=allocations,
        limits=limits,
        monitoring=monitoring,
        wallet_path=_env_str("WALLET_PATH", raw.get("walletPath")),
        mongodb_uri=_env_str("MONGODB_URI", None) or _env_str("MONGODB_URL", None),
        allocation_tolerance_bps=int(raw.get("allocationToleranceBps", 10)),
    )
    return validate_config(cfg)


def load_config(path: Optional[str] = None) -> KeeperConfig:
    """Load configuration from the JSON file plus environment overrides."""
    config_path = Path(path or os.getenv("CONFIG_PATH") or DEFAULT_CONFIG_PATH)
    if not config_path.exists():
        raise ConfigInvalid(f"Config file not found: {config_path}")
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigInvalid(f"Config file is not valid JSON: {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigInvalid(f"Config root must be an object: {config_path}")
    return config_from_dict(raw)


__all__ = [
    "SOL_MINT",
    "USDC_MINT",
    "BPS_DENOMINATOR",
    "AllocationConfig",
    "LimitsConfig",
    "MonitoringConfig",
    "SolanaConfig",
    "JupiterConfig",
    "KeeperConfig",
    "config_from_dict",
    "load_config",
    "validate_config",
]
