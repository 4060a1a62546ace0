"""
Access Gate: token-gated community admission.

A community owns zero or more gate rules; admission requires every rule to
pass. Rules are read-only predicates over on-chain state, evaluated fresh on
each attempt:

- GENESIS: the identity owns a Token-2022 account whose mint has the
  Seeker Genesis mint authority AND a TokenGroupMember extension pointing at
  the Seeker Genesis group. Both predicates must hold on the same mint.
- TOKEN / NFT: the identity's summed UI balance for the rule's mint is at
  least `min_balance` (Decimal, no float rounding at the boundary).

Fail-closed: an RPC error, malformed RPC response or timeout makes the rule
fail. The operator log gets the detail; the user-facing reason only names the
rule type.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import metrics
from .config import TardisConfig
from .crypto import is_wallet_address
from .errors import tardis_error, TardisError, TARDIS_E_GATE_RULE_INVALID
from .rpc import RpcError, SolanaRpc
from .token2022 import TokenLayoutError, unpack_mint

logger = logging.getLogger("tardis_gateway")

GATE_TYPES = ("GENESIS", "TOKEN", "NFT")
DEFAULT_MIN_BALANCE = Decimal("1")


# ---------------------------
# Rules
# ---------------------------

@dataclass(frozen=True)
class GenesisRule:
    rule_type: ClassVar[str] = "GENESIS"


@dataclass(frozen=True)
class TokenRule:
    mint: str
    min_balance: Decimal = DEFAULT_MIN_BALANCE
    symbol: Optional[str] = None

    rule_type: ClassVar[str] = "TOKEN"


@dataclass(frozen=True)
class NftRule:
    mint: str
    min_balance: Decimal = DEFAULT_MIN_BALANCE
    symbol: Optional[str] = None

    rule_type: ClassVar[str] = "NFT"


GateRule = Union[GenesisRule, TokenRule, NftRule]


def parse_min_balance(value: Any) -> Decimal:
    if value is None or (isinstance(value, str) and not value.strip()):
        return DEFAULT_MIN_BALANCE
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise tardis_error(TARDIS_E_GATE_RULE_INVALID, "min_balance must be a decimal string")
    try:
        parsed = Decimal(str(value).strip())
    except InvalidOperation as e:
        raise tardis_error(TARDIS_E_GATE_RULE_INVALID, "min_balance is not a decimal", min_balance=str(value)) from e
    if not parsed.is_finite() or parsed < 0:
        raise tardis_error(TARDIS_E_GATE_RULE_INVALID, "min_balance must be a finite non-negative decimal", min_balance=str(value))
    return parsed


def parse_gate_rule(row: Mapping[str, Any]) -> GateRule:
    """Parse a persisted gate row: {gate_type, mint_address?, min_balance?, symbol?}."""
    if not isinstance(row, Mapping):
        raise tardis_error(TARDIS_E_GATE_RULE_INVALID, "gate rule must be an object")
    gate_type = row.get("gate_type")
    if gate_type == "GENESIS":
        return GenesisRule()
    if gate_type not in ("TOKEN", "NFT"):
        raise tardis_error(TARDIS_E_GATE_RULE_INVALID, f"unknown gate_type: {gate_type!r}", gate_type=str(gate_type))

    mint = row.get("mint_address")
    if not is_wallet_address(mint):
        raise tardis_error(TARDIS_E_GATE_RULE_INVALID, f"{gate_type} rule requires a valid mint_address", gate_type=gate_type)
    symbol = row.get("symbol")
    cls = TokenRule if gate_type == "TOKEN" else NftRule
    return cls(
        mint=mint,
        min_balance=parse_min_balance(row.get("min_balance")),
        symbol=symbol if isinstance(symbol, str) else None,
    )


def rule_type_of(row: Any) -> str:
    """Best-effort rule type label for a row that may not parse."""
    if isinstance(row, Mapping) and isinstance(row.get("gate_type"), str):
        return row["gate_type"]
    return "UNKNOWN"


# ---------------------------
# Decisions
# ---------------------------

def denial_reason(rule_type: str) -> str:
    return f"Access Denied: You do not meet the {rule_type} requirement."


@dataclass(frozen=True)
class Admitted:
    admitted: ClassVar[bool] = True


@dataclass(frozen=True)
class Denied:
    rule_type: str
    reason: str

    admitted: ClassVar[bool] = False

    @classmethod
    def for_rule(cls, rule_type: str) -> "Denied":
        return cls(rule_type=rule_type, reason=denial_reason(rule_type))


GateDecision = Union[Admitted, Denied]


# ---------------------------
# Token account helpers (jsonParsed shape)
# ---------------------------

def _parsed_info(item: Any) -> Optional[Dict[str, Any]]:
    try:
        info = item["account"]["data"]["parsed"]["info"]
    except (KeyError, TypeError):
        return None
    return info if isinstance(info, dict) else None


def ui_amount(token_amount: Any) -> Decimal:
    """UI amount of a jsonParsed tokenAmount as Decimal.

    Prefers uiAmountString; falls back to amount / 10**decimals. Raises
    ValueError when neither is usable.
    """
    if not isinstance(token_amount, dict):
        raise ValueError("tokenAmount is not an object")
    ui_str = token_amount.get("uiAmountString")
    try:
        if isinstance(ui_str, str) and ui_str.strip():
            value = Decimal(ui_str)
        else:
            value = Decimal(str(token_amount["amount"])).scaleb(-int(token_amount["decimals"]))
    except (InvalidOperation, KeyError, TypeError, ValueError) as e:
        raise ValueError("unusable tokenAmount") from e
    if not value.is_finite():
        raise ValueError("non-finite tokenAmount")
    return value


# ---------------------------
# Gate
# ---------------------------

class AccessGate:
    """Evaluates gate rules for an identity against a Solana RPC node.

    mode="sequential" checks rules in order and stops at the first failure.
    mode="parallel" checks all rules concurrently and reports the first
    failing rule in rule order, so the decision is the same either way.
    """

    def __init__(
        self,
        rpc: SolanaRpc,
        *,
        config: Optional[TardisConfig] = None,
        mode: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.rpc = rpc
        self.config = config or TardisConfig()
        self.mode = (mode or self.config.gate_mode).strip().lower()
        if self.mode not in ("sequential", "parallel"):
            raise ValueError(f"unsupported gate mode: {self.mode!r}")
        self.timeout_seconds = float(timeout_seconds or self.config.rpc_timeout_seconds)

    async def _call(self, method: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise RpcError(method, f"timed out after {self.timeout_seconds}s") from e

    # -- predicates --

    async def holds_genesis_token(self, identity: str) -> bool:
        accounts = await self._call(
            "getTokenAccountsByOwner",
            self.rpc.get_token_accounts_by_owner,
            identity,
            program_id=self.config.token_2022_program_id,
        )
        seen = set()
        for item in accounts:
            info = _parsed_info(item)
            mint = info.get("mint") if info else None
            if not isinstance(mint, str) or mint in seen:
                continue
            seen.add(mint)

            account = await self._call("getAccountInfo", self.rpc.get_account_info, mint)
            if account is None or account.owner != self.config.token_2022_program_id:
                continue
            try:
                mint_info = unpack_mint(account.data)
                member = mint_info.group_member
            except TokenLayoutError as e:
                logger.debug("Skipping undecodable mint %s: %s", mint, e)
                continue
            if (
                mint_info.mint_authority == self.config.sgt_mint_authority
                and member is not None
                and member.group == self.config.sgt_group_address
            ):
                return True
        return False

    async def token_balance(self, identity: str, mint: str) -> Decimal:
        method = "getTokenAccountsByOwner"
        accounts = await self._call(method, self.rpc.get_token_accounts_by_owner, identity, mint=mint)
        total = Decimal(0)
        for item in accounts:
            info = _parsed_info(item)
            if info is None:
                raise RpcError(method, "token account is not jsonParsed")
            try:
                total += ui_amount(info.get("tokenAmount"))
            except ValueError as e:
                raise RpcError(method, str(e)) from e
        return total

    async def check_rule(self, identity: str, rule: GateRule) -> bool:
        """True iff the rule passes. Never raises for RPC trouble."""
        try:
            if isinstance(rule, GenesisRule):
                return await self.holds_genesis_token(identity)
            if isinstance(rule, (TokenRule, NftRule)):
                return await self.token_balance(identity, rule.mint) >= rule.min_balance
        except RpcError as e:
            metrics.record_rpc_error(e.method)
            logger.warning("Gate %s check failed closed for %s: %s", rule.rule_type, identity, e)
            return False
        logger.warning("Unsupported gate rule %r; denying", rule)
        return False

    # -- evaluation --

    def _decide(self, decision: GateDecision) -> GateDecision:
        if isinstance(decision, Denied):
            metrics.record_gate_decision("denied", decision.rule_type)
        else:
            metrics.record_gate_decision("admitted", "")
        return decision

    async def evaluate(self, identity: str, rules: Sequence[GateRule]) -> GateDecision:
        rules = list(rules)
        if not rules:
            return self._decide(Admitted())
        if not is_wallet_address(identity):
            logger.info("Gate evaluation for invalid identity %r", identity)
            return self._decide(Denied.for_rule(rules[0].rule_type))

        if self.mode == "parallel":
            results = await asyncio.gather(*(self.check_rule(identity, r) for r in rules))
            for rule, ok in zip(rules, results):
                if not ok:
                    return self._decide(Denied.for_rule(rule.rule_type))
            return self._decide(Admitted())

        for rule in rules:
            if not await self.check_rule(identity, rule):
                return self._decide(Denied.for_rule(rule.rule_type))
        return self._decide(Admitted())

    async def evaluate_persisted(self, identity: str, rows: Iterable[Mapping[str, Any]]) -> GateDecision:
        """Evaluate persisted gate rows. A row that does not parse denies."""
        rules: List[GateRule] = []
        for row in rows:
            try:
                rules.append(parse_gate_rule(row))
            except TardisError as e:
                logger.warning("Invalid gate rule %r: %s", row, e)
                return self._decide(Denied.for_rule(rule_type_of(row)))
        return await self.evaluate(identity, rules)
