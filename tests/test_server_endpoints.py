import base58
import pytest
from fastapi.testclient import TestClient

from tardis_gateway.actions import Like
from tardis_gateway.config import TardisConfig
from tardis_gateway.crypto import BoxKeyPair, Ed25519KeyPair, b64encode
from tardis_gateway.gate import AccessGate
from tardis_gateway.registry import InMemoryKeyRegistry
from tardis_gateway.server import TardisGateway, create_app


WALLET = Ed25519KeyPair.from_seed(b"\x05" * 32)
KEY_B64 = BoxKeyPair.from_seed(b"\x06" * 32).public_key_b64
MINT = base58.b58encode(b"\x07" * 32).decode("ascii")


@pytest.fixture
def rpc(chain):
    return chain.Rpc(by_mint={MINT: [chain.account(MINT, ui_amount_string="3")]})


@pytest.fixture
def client(rpc):
    config = TardisConfig(max_request_bytes=4096)
    gateway = TardisGateway(
        registry=InMemoryKeyRegistry(),
        gate=AccessGate(rpc, config=config),
        config=config,
    )
    return TestClient(create_app(gateway))


def test_health(client):
    r = client.get("/v1/health")
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "healthy"
    assert body["gate_mode"] == "sequential"


def test_key_publish_and_lookup(client):
    r = client.get(f"/v1/keys/{WALLET.address}")
    assert r.status_code == 404
    assert r.json()["code"] == "TARDIS_E_KEY_NOT_FOUND"

    r = client.put(f"/v1/keys/{WALLET.address}", json={"public_key": KEY_B64})
    assert r.status_code == 200
    assert r.json()["updated"] is True

    r = client.put(f"/v1/keys/{WALLET.address}", json={"public_key": KEY_B64})
    assert r.json()["updated"] is False

    r = client.get(f"/v1/keys/{WALLET.address}")
    assert r.status_code == 200
    assert r.json() == {"wallet_address": WALLET.address, "public_key": KEY_B64}


def test_key_publish_rejects_bad_key(client):
    r = client.put(f"/v1/keys/{WALLET.address}", json={"public_key": b64encode(b"\x01" * 16)})
    assert r.status_code == 400
    assert r.json()["code"] == "TARDIS_E_KEY_INVALID"


def _like_request(post_id="p1"):
    like = Like(post_id="p1", user_wallet_address=WALLET.address, timestamp="2026-01-01T00:00:00.000Z")
    sig = b64encode(WALLET.sign(like.canonical_message().encode("utf-8")))
    fields = like.to_fields()
    fields["post_id"] = post_id
    return {"kind": "like", "fields": fields, "signature": sig, "signer_address": WALLET.address}


def test_verify_valid_action(client):
    r = client.post("/v1/actions/verify", json=_like_request())
    assert r.status_code == 200
    assert r.json() == {"valid": True}


def test_verify_rejects_tampered_action(client):
    r = client.post("/v1/actions/verify", json=_like_request(post_id="p2"))
    assert r.status_code == 401
    assert r.json()["code"] == "TARDIS_E_INVALID_SIGNATURE"


def test_verify_unknown_kind(client):
    body = _like_request()
    body["kind"] = "follow"
    r = client.post("/v1/actions/verify", json=body)
    assert r.status_code == 400
    assert r.json()["code"] == "TARDIS_E_UNKNOWN_ACTION"


def test_admission_admitted(client):
    r = client.post(
        "/v1/communities/admission",
        json={"identity": WALLET.address, "gates": [{"gate_type": "TOKEN", "mint_address": MINT, "min_balance": "3"}]},
    )
    assert r.status_code == 200
    assert r.json() == {"admitted": True}


def test_admission_denied_reports_rule_type(client):
    r = client.post(
        "/v1/communities/admission",
        json={"identity": WALLET.address, "gates": [{"gate_type": "NFT", "mint_address": MINT, "min_balance": "4"}]},
    )
    assert r.status_code == 403
    body = r.json()
    assert body["code"] == "TARDIS_E_GATE_DENIED"
    assert body["message"] == "Access Denied: You do not meet the NFT requirement."
    assert body["details"]["rule_type"] == "NFT"


def test_admission_rpc_failure_is_denied_without_detail(chain):
    config = TardisConfig()
    gateway = TardisGateway(
        registry=InMemoryKeyRegistry(),
        gate=AccessGate(chain.Rpc(fail={"getTokenAccountsByOwner"}), config=config),
        config=config,
    )
    client = TestClient(create_app(gateway))
    r = client.post(
        "/v1/communities/admission",
        json={"identity": WALLET.address, "gates": [{"gate_type": "TOKEN", "mint_address": MINT}]},
    )
    assert r.status_code == 403
    assert "503" not in r.text


def test_request_size_limit(client):
    r = client.post(
        "/v1/actions/verify",
        content=b"{" + b" " * 5000 + b"}",
        headers={"Content-Type": "application/json"},
    )
    assert r.status_code == 413
