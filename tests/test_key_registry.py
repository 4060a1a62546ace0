import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest

from tardis_gateway.crypto import BoxKeyPair, Ed25519KeyPair
from tardis_gateway.errors import TardisError, TARDIS_E_KEY_INVALID, TARDIS_E_REGISTRY_UNAVAILABLE
from tardis_gateway.identity import publish_public_key
from tardis_gateway.registry import HttpKeyRegistry, InMemoryKeyRegistry, SqliteKeyRegistry


WALLET = Ed25519KeyPair.from_seed(b"\x11" * 32).address
KEY_B64 = BoxKeyPair.from_seed(b"\x22" * 32).public_key_b64
ROTATED_B64 = BoxKeyPair.from_seed(b"\x33" * 32).public_key_b64


class _RegistryHandler(BaseHTTPRequestHandler):
    keys = {}
    fail_with = None
    puts = 0

    def _send(self, status, obj=None):
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.end_headers()
        if obj is not None:
            self.wfile.write(json.dumps(obj).encode("utf-8"))

    def do_GET(self):  # noqa: N802
        if _RegistryHandler.fail_with:
            return self._send(_RegistryHandler.fail_with, {"detail": "boom"})
        addr = self.path.rsplit("/", 1)[-1]
        if addr not in _RegistryHandler.keys:
            return self._send(404, {"code": "TARDIS_E_KEY_NOT_FOUND"})
        return self._send(200, {"wallet_address": addr, "public_key": _RegistryHandler.keys[addr]})

    def do_PUT(self):  # noqa: N802
        length = int(self.headers.get("Content-Length", "0") or "0")
        body = json.loads(self.rfile.read(length).decode("utf-8"))
        addr = self.path.rsplit("/", 1)[-1]
        _RegistryHandler.keys[addr] = body["public_key"]
        _RegistryHandler.puts += 1
        return self._send(200, {"wallet_address": addr, "public_key": body["public_key"]})

    def log_message(self, format, *args):  # noqa: A003
        return


@pytest.fixture
def registry_server():
    _RegistryHandler.keys = {}
    _RegistryHandler.fail_with = None
    _RegistryHandler.puts = 0
    httpd = HTTPServer(("127.0.0.1", 0), _RegistryHandler)
    host, port = httpd.server_address
    t = threading.Thread(target=httpd.serve_forever, daemon=True)
    t.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        httpd.server_close()
        t.join(timeout=2)


@pytest.fixture(params=["memory", "sqlite"])
def local_registry(request, tmp_path):
    if request.param == "memory":
        return InMemoryKeyRegistry()
    return SqliteKeyRegistry(str(tmp_path / "registry.db"))


def test_get_absent_returns_none(local_registry):
    assert local_registry.get(WALLET) is None


def test_put_then_get_and_rotate(local_registry):
    local_registry.put(WALLET, KEY_B64)
    assert local_registry.get(WALLET) == KEY_B64
    local_registry.put(WALLET, ROTATED_B64)
    assert local_registry.get(WALLET) == ROTATED_B64


@pytest.mark.parametrize(
    "address,key",
    [
        ("not-base58-0OIl", KEY_B64),
        (WALLET, "AAAA"),
        (WALLET, "%%%"),
        (WALLET, None),
    ],
)
def test_put_validates_entry(local_registry, address, key):
    with pytest.raises(TardisError) as ei:
        local_registry.put(address, key)
    assert ei.value.code == TARDIS_E_KEY_INVALID


def test_sqlite_registry_persists_across_instances(tmp_path):
    path = str(tmp_path / "registry.db")
    SqliteKeyRegistry(path).put(WALLET, KEY_B64)
    assert SqliteKeyRegistry(path).get(WALLET) == KEY_B64


def test_http_registry_round_trip(registry_server):
    reg = HttpKeyRegistry(registry_server, timeout_seconds=2)
    assert reg.get(WALLET) is None
    reg.put(WALLET, KEY_B64)
    assert reg.get(WALLET) == KEY_B64


def test_http_registry_idempotent_publish(registry_server):
    reg = HttpKeyRegistry(registry_server, timeout_seconds=2)
    assert publish_public_key(reg, WALLET, KEY_B64) is True
    assert publish_public_key(reg, WALLET, KEY_B64) is False
    assert _RegistryHandler.puts == 1


def test_http_registry_server_error_is_retryable(registry_server):
    _RegistryHandler.fail_with = 500
    reg = HttpKeyRegistry(registry_server, timeout_seconds=2)
    with pytest.raises(TardisError) as ei:
        reg.get(WALLET)
    assert ei.value.code == TARDIS_E_REGISTRY_UNAVAILABLE
    assert ei.value.retryable


def test_http_registry_unreachable():
    reg = HttpKeyRegistry("http://127.0.0.1:9", timeout_seconds=0.5)
    with pytest.raises(TardisError) as ei:
        reg.get(WALLET)
    assert ei.value.code == TARDIS_E_REGISTRY_UNAVAILABLE
