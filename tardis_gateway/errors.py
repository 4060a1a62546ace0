"""Stable error taxonomy for Tardis.

This module defines machine-readable error codes and a single exception type
used across the cipher, signer/verifier, access gate, registry and service.

Design goals:
- Stable `code` string suitable for programmatic handling.
- Optional `retryable` flag and `http_status` for transport layers.
- Structured `details` for operators without parsing messages.

Cryptographic failures (bad ciphertext, bad signature) do not raise; they
resolve to `None` / `False`. The codes below are still defined for them so the
service layer can report them in a uniform envelope.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Generic
TARDIS_E_BAD_REQUEST = "TARDIS_E_BAD_REQUEST"
TARDIS_E_INTERNAL = "TARDIS_E_INTERNAL"

# Hardware signer / session
TARDIS_E_USER_CANCELLED = "TARDIS_E_USER_CANCELLED"
TARDIS_E_SIGNING_UNAVAILABLE = "TARDIS_E_SIGNING_UNAVAILABLE"
TARDIS_E_SESSION_CLOSED = "TARDIS_E_SESSION_CLOSED"

# Cipher / keys
TARDIS_E_DECRYPTION_FAILED = "TARDIS_E_DECRYPTION_FAILED"
TARDIS_E_KEY_INVALID = "TARDIS_E_KEY_INVALID"

# Signed actions
TARDIS_E_INVALID_SIGNATURE = "TARDIS_E_INVALID_SIGNATURE"
TARDIS_E_UNKNOWN_ACTION = "TARDIS_E_UNKNOWN_ACTION"

# Access gate / upstream
TARDIS_E_GATE_DENIED = "TARDIS_E_GATE_DENIED"
TARDIS_E_GATE_RULE_INVALID = "TARDIS_E_GATE_RULE_INVALID"
TARDIS_E_RPC_UNAVAILABLE = "TARDIS_E_RPC_UNAVAILABLE"

# Public-key registry
TARDIS_E_KEY_NOT_FOUND = "TARDIS_E_KEY_NOT_FOUND"
TARDIS_E_REGISTRY_UNAVAILABLE = "TARDIS_E_REGISTRY_UNAVAILABLE"


@dataclass
class TardisError(Exception):
    """Base Tardis exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class SigningUnavailableError(TardisError):
    """The hardware signing bridge is absent on this platform."""

    def __init__(self, message: str = "hardware signer unavailable on this platform"):
        super().__init__(
            code=TARDIS_E_SIGNING_UNAVAILABLE,
            message=message,
            http_status=503,
        )


def tardis_error(
    code: str,
    message: str,
    *,
    retryable: bool = False,
    http_status: int = 400,
    **details: Any,
) -> TardisError:
    return TardisError(code=code, message=message, retryable=retryable, http_status=http_status, details=details)
