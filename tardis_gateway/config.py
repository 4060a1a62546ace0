"""Runtime configuration for the Tardis gateway.

All settings come from environment variables so the same build runs in dev,
CI and production without code changes.

Env vars:
  - TARDIS_RPC_URL (fallbacks: HELIUS_STAKED_URL, RPC_URL)
  - TARDIS_RPC_TIMEOUT_SECONDS: per-call RPC timeout (default 10)
  - TARDIS_GATE_MODE: sequential|parallel (default sequential)
  - TARDIS_SGT_MINT_AUTHORITY / TARDIS_SGT_GROUP_ADDRESS: genesis token constants
  - TARDIS_TOKEN_2022_PROGRAM_ID: Token-2022 program id
  - TARDIS_REGISTRY_DB: SQLite path of the public-key registry
  - TARDIS_SIGN_IN_CHALLENGE: statement signed once to derive the seed
  - TARDIS_MAX_REQUEST_BYTES: request body limit for the service
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

from .crypto import SIGN_IN_CHALLENGE
from .errors import tardis_error, TARDIS_E_BAD_REQUEST

logger = logging.getLogger("tardis_gateway")

DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"

# Seeker Genesis Token constants (Solana Mobile)
SGT_MINT_AUTHORITY = "GT2zuHVaZQYZSyQMgJPLzvkmyztfyXg2NJunqFp4p3A4"
SGT_GROUP_ADDRESS = "GT22s89nU4iWFkNXj1Bw6uYhJJWDRPpShHt4Bk8f99Te"
TOKEN_2022_PROGRAM_ID = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"

GATE_MODES = ("sequential", "parallel")


def _env_str(name: str, default: str) -> str:
    return (os.getenv(name, "") or "").strip() or default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default
    if value <= 0:
        logger.warning("Non-positive %s=%r; using default %s", name, raw, default)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default


def resolve_rpc_url() -> str:
    for name in ("TARDIS_RPC_URL", "HELIUS_STAKED_URL", "RPC_URL"):
        value = (os.getenv(name, "") or "").strip()
        if value:
            return value
    return DEFAULT_RPC_URL


@dataclass(frozen=True)
class TardisConfig:
    """Resolved gateway configuration."""

    rpc_url: str = DEFAULT_RPC_URL
    rpc_timeout_seconds: float = 10.0
    gate_mode: str = "sequential"
    sgt_mint_authority: str = SGT_MINT_AUTHORITY
    sgt_group_address: str = SGT_GROUP_ADDRESS
    token_2022_program_id: str = TOKEN_2022_PROGRAM_ID
    registry_db_path: str = "tardis_registry.db"
    sign_in_challenge: str = SIGN_IN_CHALLENGE
    max_request_bytes: int = 65536

    @classmethod
    def load_from_env(cls) -> "TardisConfig":
        """Load configuration from the environment.

        Malformed numbers fall back to defaults (logged). An unknown gate mode
        is a deployment mistake and raises instead of silently changing the
        admission semantics.
        """
        gate_mode = _env_str("TARDIS_GATE_MODE", "sequential").lower()
        if gate_mode not in GATE_MODES:
            raise tardis_error(
                TARDIS_E_BAD_REQUEST,
                f"TARDIS_GATE_MODE must be one of {'|'.join(GATE_MODES)}",
                got=gate_mode,
            )
        return cls(
            rpc_url=resolve_rpc_url(),
            rpc_timeout_seconds=_env_float("TARDIS_RPC_TIMEOUT_SECONDS", 10.0),
            gate_mode=gate_mode,
            sgt_mint_authority=_env_str("TARDIS_SGT_MINT_AUTHORITY", SGT_MINT_AUTHORITY),
            sgt_group_address=_env_str("TARDIS_SGT_GROUP_ADDRESS", SGT_GROUP_ADDRESS),
            token_2022_program_id=_env_str("TARDIS_TOKEN_2022_PROGRAM_ID", TOKEN_2022_PROGRAM_ID),
            registry_db_path=_env_str("TARDIS_REGISTRY_DB", "tardis_registry.db"),
            sign_in_challenge=_env_str("TARDIS_SIGN_IN_CHALLENGE", SIGN_IN_CHALLENGE),
            max_request_bytes=_env_int("TARDIS_MAX_REQUEST_BYTES", 65536),
        )
