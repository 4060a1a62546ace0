import pytest

from tardis_gateway.crypto import (
    SIGN_IN_CHALLENGE,
    BoxKeyPair,
    Ed25519KeyPair,
    derive_encryption_seed,
)
from tardis_gateway.errors import TardisError, TARDIS_E_SESSION_CLOSED
from tardis_gateway.identity import SessionVault, bootstrap_identity, publish_public_key
from tardis_gateway.messaging import (
    LOCKED_PLACEHOLDER,
    MessageRecord,
    compose_direct_message,
    open_direct_message,
)
from tardis_gateway.registry import InMemoryKeyRegistry
from tardis_gateway.signing import InProcessWalletSigner, SerializedSigner


@pytest.fixture
def alice():
    return Ed25519KeyPair.from_seed(b"\x0a" * 32)


@pytest.fixture
def bob():
    return Ed25519KeyPair.from_seed(b"\x0b" * 32)


@pytest.mark.asyncio
async def test_bootstrap_derives_from_challenge_signature_and_publishes(alice):
    registry = InMemoryKeyRegistry()
    result = await bootstrap_identity(alice, alice.address, registry)
    assert result is not None
    identity, vault = result

    expected = BoxKeyPair.from_seed(derive_encryption_seed(alice.sign(SIGN_IN_CHALLENGE.encode("utf-8"))))
    assert identity.encryption_public_key == expected.public_key
    assert vault.public_key == expected.public_key
    assert registry.get(alice.address) == expected.public_key_b64


@pytest.mark.asyncio
async def test_bootstrap_is_stable_across_sessions(alice):
    registry = InMemoryKeyRegistry()
    first, _ = await bootstrap_identity(alice, alice.address, registry)
    second, _ = await bootstrap_identity(alice, alice.address, registry)
    assert first.encryption_public_key == second.encryption_public_key
    # Second session found the same key already published.
    assert registry.writes == 1


@pytest.mark.asyncio
async def test_bootstrap_cancelled_leaves_no_state(alice):
    registry = InMemoryKeyRegistry()
    signer = SerializedSigner(InProcessWalletSigner(alice, auto_approve=False))
    assert await bootstrap_identity(signer, alice.address, registry) is None
    assert registry.get(alice.address) is None
    assert registry.writes == 0


def test_publish_is_idempotent(alice):
    registry = InMemoryKeyRegistry()
    kp = BoxKeyPair.from_seed(b"\x01" * 32)
    assert publish_public_key(registry, alice.address, kp.public_key) is True
    assert publish_public_key(registry, alice.address, kp.public_key) is False
    assert registry.writes == 1

    rotated = BoxKeyPair.from_seed(b"\x02" * 32)
    assert publish_public_key(registry, alice.address, rotated.public_key_b64) is True
    assert registry.get(alice.address) == rotated.public_key_b64


def test_vault_close_zeroes_seed():
    vault = SessionVault(b"\x07" * 32)
    buf = vault._seed
    vault.close()
    assert buf == bytearray(32)
    assert vault.closed
    with pytest.raises(TardisError) as ei:
        vault.public_key
    assert ei.value.code == TARDIS_E_SESSION_CLOSED


def test_vault_context_manager_closes():
    peer = BoxKeyPair.from_seed(b"\x09" * 32)
    with SessionVault(b"\x07" * 32) as vault:
        env = vault.encrypt_for("hi", peer.public_key)
        assert env.nonce
    with pytest.raises(TardisError):
        vault.encrypt_for("again", peer.public_key)
    with pytest.raises(TardisError):
        vault.decrypt_from(env, peer.public_key)


def test_vault_repr_hides_seed():
    vault = SessionVault(b"\x07" * 32)
    assert "07" not in repr(vault)


@pytest.mark.asyncio
async def test_direct_message_between_bootstrapped_identities(alice, bob):
    registry = InMemoryKeyRegistry()
    _, alice_vault = await bootstrap_identity(alice, alice.address, registry)
    _, bob_vault = await bootstrap_identity(bob, bob.address, registry)

    record = compose_direct_message("see you at 5", bob.address, registry, alice_vault)
    assert record.is_encrypted
    assert record.nonce
    assert record.content != "see you at 5"

    assert open_direct_message(record, alice.address, registry, bob_vault) == "see you at 5"
    # Sender can read back its own sent message.
    assert open_direct_message(record, bob.address, registry, alice_vault) == "see you at 5"


@pytest.mark.asyncio
async def test_peer_without_registered_key_gets_flagged_plaintext(alice, bob):
    registry = InMemoryKeyRegistry()
    _, alice_vault = await bootstrap_identity(alice, alice.address, registry)

    record = compose_direct_message("hello", bob.address, registry, alice_vault)
    assert record == MessageRecord(content="hello", nonce=None, is_encrypted=False)


def test_sender_without_keypair_sends_flagged_plaintext(bob):
    registry = InMemoryKeyRegistry({bob.address: BoxKeyPair.from_seed(b"\x02" * 32).public_key_b64})
    record = compose_direct_message("hello", bob.address, registry, None)
    assert not record.is_encrypted
    assert record.content == "hello"


def test_corrupt_registry_entry_is_not_used_for_encryption(bob):
    registry = InMemoryKeyRegistry({bob.address: "bm90LWEta2V5"})
    record = compose_direct_message("hello", bob.address, registry, SessionVault(b"\x01" * 32))
    assert not record.is_encrypted


@pytest.mark.asyncio
async def test_tampered_message_renders_locked_placeholder(alice, bob):
    registry = InMemoryKeyRegistry()
    _, alice_vault = await bootstrap_identity(alice, alice.address, registry)
    _, bob_vault = await bootstrap_identity(bob, bob.address, registry)

    record = compose_direct_message("secret", bob.address, registry, alice_vault)
    tampered = MessageRecord(content="A" + record.content[1:], nonce=record.nonce, is_encrypted=True)
    if tampered.content == record.content:
        tampered = MessageRecord(content="B" + record.content[1:], nonce=record.nonce, is_encrypted=True)
    assert open_direct_message(tampered, alice.address, registry, bob_vault) == LOCKED_PLACEHOLDER


def test_encrypted_record_without_vault_is_locked(alice):
    record = MessageRecord(content="AAAA", nonce="AAAA", is_encrypted=True)
    assert open_direct_message(record, alice.address, InMemoryKeyRegistry(), None) == LOCKED_PLACEHOLDER


def test_plain_record_passes_through(alice):
    record = MessageRecord(content="plain", is_encrypted=False)
    assert open_direct_message(record, alice.address, InMemoryKeyRegistry(), None) == "plain"


def test_record_dict_shape():
    record = MessageRecord.from_dict({"content": "c", "nonce": "n", "is_encrypted": True})
    assert record.to_dict() == {"content": "c", "nonce": "n", "is_encrypted": True}


@pytest.mark.parametrize("flag", ["false", "true", 1, None])
def test_record_flag_must_be_a_real_boolean(flag):
    record = MessageRecord.from_dict({"content": "c", "nonce": "n", "is_encrypted": flag})
    assert record.is_encrypted is False
