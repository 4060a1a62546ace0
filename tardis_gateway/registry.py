"""Public-key registry.

Maps a wallet address (base58) to its published encryption public key
(base64 of 32 bytes). Peers look a recipient up here before sealing a direct
message.

Backends:
- InMemoryKeyRegistry: process-local, for tests and single-node dev.
- SqliteKeyRegistry: durable store used by the service.
- HttpKeyRegistry: client for the service's /v1/keys endpoints.

All backends validate on write; readers still treat stored values as
untrusted (see messaging.compose_direct_message).
"""

from __future__ import annotations

import binascii
import json
import logging
import sqlite3
import threading
import urllib.error
import urllib.parse
import urllib.request
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Optional, Protocol, runtime_checkable

from .crypto import BOX_KEY_SIZE, b64decode_strict, decode_wallet_address
from .errors import (
    tardis_error,
    TARDIS_E_KEY_INVALID,
    TARDIS_E_REGISTRY_UNAVAILABLE,
)

logger = logging.getLogger("tardis_gateway")


@runtime_checkable
class KeyRegistry(Protocol):
    def get(self, wallet_address: str) -> Optional[str]:
        ...

    def put(self, wallet_address: str, public_key_b64: str) -> None:
        ...


def validate_registry_entry(wallet_address: str, public_key_b64: str) -> None:
    """Raise TARDIS_E_KEY_INVALID unless both halves of an entry are well-formed."""
    decode_wallet_address(wallet_address)
    if not isinstance(public_key_b64, str):
        raise tardis_error(TARDIS_E_KEY_INVALID, "public key must be a base64 string")
    try:
        raw = b64decode_strict(public_key_b64)
    except (ValueError, binascii.Error) as e:
        raise tardis_error(TARDIS_E_KEY_INVALID, "public key is not valid base64") from e
    if len(raw) != BOX_KEY_SIZE:
        raise tardis_error(
            TARDIS_E_KEY_INVALID,
            f"public key must decode to {BOX_KEY_SIZE} bytes",
            length=len(raw),
        )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryKeyRegistry:
    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._lock = threading.Lock()
        self._keys: Dict[str, str] = dict(initial or {})
        self.writes = 0

    def get(self, wallet_address: str) -> Optional[str]:
        with self._lock:
            return self._keys.get(wallet_address)

    def put(self, wallet_address: str, public_key_b64: str) -> None:
        validate_registry_entry(wallet_address, public_key_b64)
        with self._lock:
            self._keys[wallet_address] = public_key_b64
            self.writes += 1


class SqliteKeyRegistry:
    """
    SQLite-backed registry.

    One row per wallet; a put replaces the previous key (rotation) and stamps
    updated_at_utc.
    """

    def __init__(self, db_path: str = "tardis_registry.db", *, connect_timeout_seconds: float = 5.0):
        self.db_path = db_path
        self.connect_timeout_seconds = float(connect_timeout_seconds)
        self._init_db()

    @contextmanager
    def _db(self):
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.connect_timeout_seconds)
        except sqlite3.Error as e:
            raise tardis_error(
                TARDIS_E_REGISTRY_UNAVAILABLE,
                "registry database unavailable",
                retryable=True,
                http_status=503,
                error=str(e),
            ) from e
        try:
            with conn:
                yield conn
        except sqlite3.OperationalError as e:
            raise tardis_error(
                TARDIS_E_REGISTRY_UNAVAILABLE,
                "registry database operation failed",
                retryable=True,
                http_status=503,
                error=str(e),
            ) from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._db() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA busy_timeout = 5000")
            conn.execute("""
            CREATE TABLE IF NOT EXISTS encryption_keys (
                wallet_address TEXT PRIMARY KEY,
                public_key_b64 TEXT NOT NULL,
                updated_at_utc TEXT NOT NULL
            )
            """)

    def get(self, wallet_address: str) -> Optional[str]:
        with self._db() as conn:
            row = conn.execute(
                "SELECT public_key_b64 FROM encryption_keys WHERE wallet_address = ?",
                (wallet_address,),
            ).fetchone()
        return row[0] if row else None

    def put(self, wallet_address: str, public_key_b64: str) -> None:
        validate_registry_entry(wallet_address, public_key_b64)
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO encryption_keys (wallet_address, public_key_b64, updated_at_utc)
                VALUES (?, ?, ?)
                ON CONFLICT(wallet_address) DO UPDATE SET
                    public_key_b64 = excluded.public_key_b64,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (wallet_address, public_key_b64, _utc_now_iso()),
            )


class HttpKeyRegistry:
    """Client for the registry endpoints of the Tardis service.

    GET  {base_url}/v1/keys/{wallet_address} -> {"wallet_address", "public_key"}
    PUT  {base_url}/v1/keys/{wallet_address}  body {"public_key": b64}

    404 on GET means "no key published". Network errors, other HTTP errors
    and malformed responses raise TARDIS_E_REGISTRY_UNAVAILABLE.
    """

    def __init__(self, base_url: str, *, timeout_seconds: float = 5.0):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def _url(self, wallet_address: str) -> str:
        return f"{self.base_url}/v1/keys/{urllib.parse.quote(wallet_address, safe='')}"

    def _unavailable(self, message: str, **details) -> Exception:
        return tardis_error(
            TARDIS_E_REGISTRY_UNAVAILABLE,
            message,
            retryable=True,
            http_status=503,
            url=self.base_url,
            **details,
        )

    def get(self, wallet_address: str) -> Optional[str]:
        req = urllib.request.Request(self._url(wallet_address), method="GET")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                body = resp.read()
        except urllib.error.HTTPError as e:
            if e.code == 404:
                return None
            raise self._unavailable("registry lookup failed", status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise self._unavailable("registry unreachable", error=str(e)) from e

        try:
            decoded = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise self._unavailable("registry returned invalid JSON") from e
        value = decoded.get("public_key") if isinstance(decoded, dict) else None
        if not isinstance(value, str):
            raise self._unavailable("registry response missing public_key")
        return value

    def put(self, wallet_address: str, public_key_b64: str) -> None:
        validate_registry_entry(wallet_address, public_key_b64)
        payload = json.dumps({"public_key": public_key_b64}).encode("utf-8")
        req = urllib.request.Request(
            self._url(wallet_address),
            data=payload,
            headers={"Content-Type": "application/json"},
            method="PUT",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp.read()
        except urllib.error.HTTPError as e:
            raise self._unavailable("registry publish failed", status=e.code) from e
        except (urllib.error.URLError, OSError) as e:
            raise self._unavailable("registry unreachable", error=str(e)) from e
        logger.debug("Published encryption key for %s", wallet_address)
