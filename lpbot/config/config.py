"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from lpbot.constants import MIN_SOL_BALANCE_RAW, SOL_USDC_WHIRLPOOL, USDC_MINT
from lpbot.errors import ConfigError

load_dotenv()

# In-band tolerance as a share of the position's range width
DEADBAND_RATIO = 0.9


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc


def _optional_float_env(key: str) -> Optional[float]:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return None
    return _float_env(key, 0.0)


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    wallet_path: str
    state_path: str
    whirlpool_address: str
    position_size_usd: float
    upper_boundary_pct: float
    lower_boundary_pct: float
    deadband_upper_pct: float
    deadband_lower_pct: float
    poll_interval_sec: float
    slippage_bps: int
    swap_slippage_bps: int
    min_sol_balance_raw: int
    min_sweep_raw: int
    stable_mint: str
    swap_api_url: str
    coingecko_id: str | None
    max_confirmation_sec: float
    http_timeout: float
    commitment: str
    metrics_port: int
    log_file: str | None
    log_level: str
    sweep_enabled: bool

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging."""
        return self.__dict__.copy()

    @classmethod
    def load(cls) -> "Settings":
        upper = _float_env("LP_UPPER_BOUNDARY_PCT", 0.05)
        lower = _float_env("LP_LOWER_BOUNDARY_PCT", 0.05)
        deadband_upper = _optional_float_env("LP_DEADBAND_UPPER_PCT")
        deadband_lower = _optional_float_env("LP_DEADBAND_LOWER_PCT")

        cfg = cls(
            rpc_url=os.getenv("LP_RPC_URL", "https://api.mainnet-beta.solana.com"),
            wallet_path=os.path.expanduser(os.getenv("LP_WALLET_PATH", "~/.config/solana/id.json")),
            state_path=os.getenv("LP_STATE_PATH", "state/position.json"),
            whirlpool_address=os.getenv("LP_WHIRLPOOL_ADDRESS", SOL_USDC_WHIRLPOOL),
            position_size_usd=_float_env("LP_POSITION_SIZE_USD", 1.0),
            upper_boundary_pct=upper,
            lower_boundary_pct=lower,
            deadband_upper_pct=deadband_upper if deadband_upper is not None else upper * DEADBAND_RATIO,
            deadband_lower_pct=deadband_lower if deadband_lower is not None else lower * DEADBAND_RATIO,
            poll_interval_sec=_float_env("LP_POLL_INTERVAL_SEC", 60.0),
            slippage_bps=_int_env("LP_SLIPPAGE_BPS", 25),
            swap_slippage_bps=_int_env("LP_SWAP_SLIPPAGE_BPS", 10),
            min_sol_balance_raw=_int_env("LP_MIN_SOL_BALANCE", MIN_SOL_BALANCE_RAW),
            min_sweep_raw=_int_env("LP_MIN_SWEEP_RAW", 1000),
            stable_mint=os.getenv("LP_STABLE_MINT", str(USDC_MINT)),
            swap_api_url=os.getenv("LP_SWAP_API_URL", "https://quote-api.jup.ag/v6"),
            coingecko_id=os.getenv("LP_COINGECKO_ID") or None,
            max_confirmation_sec=_float_env("LP_MAX_CONFIRMATION_SEC", 120.0),
            http_timeout=_float_env("LP_HTTP_TIMEOUT", 10.0),
            commitment=os.getenv("LP_COMMITMENT", "confirmed"),
            metrics_port=_int_env("LP_METRICS_PORT", 0),
            log_file=os.getenv("LP_LOG_FILE", "logs/lpbot.jsonl") or None,
            log_level=os.getenv("LP_LOG_LEVEL", "INFO").upper(),
            sweep_enabled=env_bool("LP_SWEEP_ENABLED", True),
        )
        cfg._validate()
        _sanity_check(cfg)
        return cfg

    def resolve_signer(self) -> Keypair:
        """
        Load the wallet keypair. Accepts the Solana CLI JSON byte-array
        format or a base58 secret key string.
        """
        path = Path(self.wallet_path)
        if not path.exists():
            raise ConfigError(f"wallet file not found: {path} (set LP_WALLET_PATH)")
        raw = path.read_text().strip()
        try:
            if raw.startswith("["):
                return Keypair.from_bytes(bytes(json.loads(raw)))
            return Keypair.from_base58_string(raw)
        except ValueError as exc:
            raise ConfigError(f"wallet file {path} is not a valid keypair") from exc

    def _validate(self) -> None:
        for key, value in (
            ("LP_WHIRLPOOL_ADDRESS", self.whirlpool_address),
            ("LP_STABLE_MINT", self.stable_mint),
        ):
            try:
                Pubkey.from_string(value)
            except ValueError as exc:
                raise ConfigError(f"{key} is not a valid address: {value!r}") from exc
        if self.position_size_usd <= 0:
            raise ConfigError("LP_POSITION_SIZE_USD must be > 0")
        if not 0 < self.lower_boundary_pct < 1:
            raise ConfigError("LP_LOWER_BOUNDARY_PCT must be in (0, 1)")
        if self.upper_boundary_pct <= 0:
            raise ConfigError("LP_UPPER_BOUNDARY_PCT must be > 0")
        if self.deadband_lower_pct < 0 or self.deadband_upper_pct < 0:
            raise ConfigError("dead-band widths must be >= 0")
        if self.poll_interval_sec <= 0:
            raise ConfigError("LP_POLL_INTERVAL_SEC must be > 0")
        if not 0 <= self.slippage_bps < 10_000 or not 0 <= self.swap_slippage_bps < 10_000:
            raise ConfigError("slippage must be in [0, 10000) bps")
        if self.min_sol_balance_raw < 0:
            raise ConfigError("LP_MIN_SOL_BALANCE must be >= 0")
        if self.max_confirmation_sec <= 0:
            raise ConfigError("LP_MAX_CONFIRMATION_SEC must be > 0")

        logger = logging.getLogger("lpbot")
        if self.deadband_lower_pct > self.lower_boundary_pct or self.deadband_upper_pct > self.upper_boundary_pct:
            logger.warning(
                "WARNING: dead-band wider than the position range; price can leave "
                "the range without triggering a rebalance."
            )
        if self.min_sol_balance_raw < 10_000_000:
            logger.warning(
                f"WARNING: LP_MIN_SOL_BALANCE is {self.min_sol_balance_raw} lamports. "
                "Position rent and fees may drain the wallet."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("lpbot")
    payload = {
        "event": "config_loaded",
        "whirlpool": cfg.whirlpool_address,
        "position_size_usd": cfg.position_size_usd,
        "range_pct": [cfg.lower_boundary_pct, cfg.upper_boundary_pct],
        "deadband_pct": [cfg.deadband_lower_pct, cfg.deadband_upper_pct],
        "poll_interval_sec": cfg.poll_interval_sec,
        "slippage_bps": cfg.slippage_bps,
    }
    logger.info(json.dumps(payload))
