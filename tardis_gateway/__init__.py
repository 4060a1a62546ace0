"""Tardis Gateway package.

Hardware-rooted identity for a Solana messaging app:

- Encryption keypair derived from one hardware wallet signature
- NaCl box encryption for direct messages
- Detached Ed25519 signatures over canonical social actions
- Token-gated community admission (Seeker Genesis Token, SPL/Token-2022 balances)

Convenience imports
------------------
The package avoids heavy import-time side effects. These are available as
top-level imports and are loaded lazily:

    from tardis_gateway import create_app, AccessGate, ActionVerifier
    from tardis_gateway import SessionVault, bootstrap_identity
"""

from __future__ import annotations

import re
from importlib import import_module
from pathlib import Path
from typing import Any


def _read_version_from_pyproject() -> str | None:
    """Best-effort version discovery for dev/test environments.

    The project version is a simple `version = "..."` field in
    `pyproject.toml`, so a regex parse is enough.
    """

    try:
        pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
        txt = pyproject.read_text(encoding="utf-8")
    except OSError:
        return None
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    return m.group(1) if m else None


__version__ = (
    _read_version_from_pyproject()
    or "0.3.0"
)

__all__ = [
    "__version__",
    "create_app",
    "TardisGateway",
    "AccessGate",
    "ActionVerifier",
    "SessionVault",
    "bootstrap_identity",
    "TardisError",
]

# Lazy export map: name -> (module, attribute)
_LAZY_EXPORTS: dict[str, tuple[str, str]] = {
    "create_app": ("tardis_gateway.server", "create_app"),
    "TardisGateway": ("tardis_gateway.server", "TardisGateway"),
    "AccessGate": ("tardis_gateway.gate", "AccessGate"),
    "ActionVerifier": ("tardis_gateway.actions", "ActionVerifier"),
    "SessionVault": ("tardis_gateway.identity", "SessionVault"),
    "bootstrap_identity": ("tardis_gateway.identity", "bootstrap_identity"),
    "TardisError": ("tardis_gateway.errors", "TardisError"),
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_EXPORTS:
        module_name, attr = _LAZY_EXPORTS[name]
        module = import_module(module_name)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module 'tardis_gateway' has no attribute {name!r}")


def __dir__() -> list[str]:
    return sorted(set(list(globals().keys()) + list(_LAZY_EXPORTS.keys())))
