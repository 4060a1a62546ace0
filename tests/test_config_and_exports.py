import importlib

import pytest

from tardis_gateway.config import DEFAULT_RPC_URL, SGT_MINT_AUTHORITY, TardisConfig
from tardis_gateway.crypto import SIGN_IN_CHALLENGE
from tardis_gateway.errors import TardisError


def _read_pyproject_version() -> str:
    import re
    from pathlib import Path

    txt = (Path(__file__).resolve().parents[1] / "pyproject.toml").read_text(encoding="utf-8")
    m = re.search(r"^version\s*=\s*\"([^\"]+)\"\s*$", txt, flags=re.MULTILINE)
    assert m, "Could not locate [project].version in pyproject.toml"
    return m.group(1)


_ENV = [
    "TARDIS_RPC_URL", "HELIUS_STAKED_URL", "RPC_URL", "TARDIS_RPC_TIMEOUT_SECONDS",
    "TARDIS_GATE_MODE", "TARDIS_SIGN_IN_CHALLENGE", "TARDIS_MAX_REQUEST_BYTES",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in _ENV:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    cfg = TardisConfig.load_from_env()
    assert cfg.rpc_url == DEFAULT_RPC_URL
    assert cfg.rpc_timeout_seconds == 10.0
    assert cfg.gate_mode == "sequential"
    assert cfg.sgt_mint_authority == SGT_MINT_AUTHORITY
    assert cfg.sign_in_challenge == SIGN_IN_CHALLENGE


def test_rpc_url_fallback_order(clean_env):
    clean_env.setenv("RPC_URL", "http://rpc")
    assert TardisConfig.load_from_env().rpc_url == "http://rpc"
    clean_env.setenv("HELIUS_STAKED_URL", "http://helius")
    assert TardisConfig.load_from_env().rpc_url == "http://helius"
    clean_env.setenv("TARDIS_RPC_URL", "http://tardis")
    assert TardisConfig.load_from_env().rpc_url == "http://tardis"


def test_malformed_numbers_fall_back(clean_env):
    clean_env.setenv("TARDIS_RPC_TIMEOUT_SECONDS", "soon")
    clean_env.setenv("TARDIS_MAX_REQUEST_BYTES", "big")
    cfg = TardisConfig.load_from_env()
    assert cfg.rpc_timeout_seconds == 10.0
    assert cfg.max_request_bytes == 65536

    clean_env.setenv("TARDIS_RPC_TIMEOUT_SECONDS", "-3")
    assert TardisConfig.load_from_env().rpc_timeout_seconds == 10.0


def test_unknown_gate_mode_fails_loudly(clean_env):
    clean_env.setenv("TARDIS_GATE_MODE", "optimistic")
    with pytest.raises(TardisError):
        TardisConfig.load_from_env()


def test_parallel_gate_mode(clean_env):
    clean_env.setenv("TARDIS_GATE_MODE", "Parallel")
    assert TardisConfig.load_from_env().gate_mode == "parallel"


def test_convenience_imports_work():
    import tardis_gateway

    assert hasattr(tardis_gateway, "create_app")
    assert hasattr(tardis_gateway, "AccessGate")

    from tardis_gateway import ActionVerifier, SessionVault, TardisError, bootstrap_identity  # noqa: F401

    with pytest.raises(AttributeError):
        tardis_gateway.DoesNotExist  # noqa: B018

    importlib.reload(tardis_gateway)


def test_version_export_matches_pyproject():
    import tardis_gateway

    assert tardis_gateway.__version__ == _read_pyproject_version()
