"""Minimal Solana JSON-RPC client.

Blocking urllib calls with a socket timeout; the access gate runs them in
worker threads. Every failure (network, HTTP status, JSON-RPC error object,
unexpected result shape) surfaces as RpcError so the caller can fail closed.
"""

from __future__ import annotations

import base64
import binascii
import http.client
import itertools
import json
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol


class RpcError(Exception):
    def __init__(self, method: str, message: str):
        super().__init__(f"{method}: {message}")
        self.method = method
        self.message = message


@dataclass(frozen=True)
class AccountInfo:
    owner: str
    data: bytes
    lamports: int = 0


class SolanaRpc(Protocol):
    """Read-only RPC surface used by the access gate."""

    def get_token_accounts_by_owner(
        self,
        owner: str,
        *,
        mint: Optional[str] = None,
        program_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        ...

    def get_account_info(self, address: str) -> Optional[AccountInfo]:
        ...


class HttpSolanaRpc:
    def __init__(self, url: str, *, timeout_seconds: float = 10.0):
        self.url = url
        self.timeout_seconds = float(timeout_seconds)
        self._ids = itertools.count(1)

    def call(self, method: str, params: List[Any]) -> Any:
        body = json.dumps({"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}).encode("utf-8")
        try:
            req = urllib.request.Request(
                self.url,
                data=body,
                headers={"Content-Type": "application/json"},
                method="POST",
            )
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp_bytes = resp.read()
        except urllib.error.HTTPError as e:
            raise RpcError(method, f"HTTP {e.code}") from e
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            raise RpcError(method, f"{type(e).__name__}: {e}") from e

        try:
            decoded = json.loads(resp_bytes.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise RpcError(method, "invalid JSON response") from e
        if not isinstance(decoded, dict):
            raise RpcError(method, "response is not an object")
        if decoded.get("error") is not None:
            err = decoded["error"]
            msg = err.get("message") if isinstance(err, dict) else str(err)
            raise RpcError(method, f"RPC error: {msg}")
        if "result" not in decoded:
            raise RpcError(method, "response missing result")
        return decoded["result"]

    def get_token_accounts_by_owner(
        self,
        owner: str,
        *,
        mint: Optional[str] = None,
        program_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Return jsonParsed token accounts (the `value` list)."""
        method = "getTokenAccountsByOwner"
        if (mint is None) == (program_id is None):
            raise ValueError("exactly one of mint or program_id is required")
        account_filter = {"mint": mint} if mint is not None else {"programId": program_id}
        result = self.call(method, [owner, account_filter, {"encoding": "jsonParsed"}])
        value = result.get("value") if isinstance(result, dict) else None
        if not isinstance(value, list):
            raise RpcError(method, "result.value is not a list")
        return value

    def get_account_info(self, address: str) -> Optional[AccountInfo]:
        method = "getAccountInfo"
        result = self.call(method, [address, {"encoding": "base64"}])
        if not isinstance(result, dict):
            raise RpcError(method, "result is not an object")
        value = result.get("value")
        if value is None:
            return None
        try:
            data_field = value["data"]
            raw = base64.b64decode(data_field[0], validate=True)
            return AccountInfo(owner=str(value["owner"]), data=raw, lamports=int(value.get("lamports", 0)))
        except (KeyError, IndexError, TypeError, ValueError, binascii.Error) as e:
            raise RpcError(method, "malformed account info") from e
