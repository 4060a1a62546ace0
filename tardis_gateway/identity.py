"""Session identity: seed vault, bootstrap, key publication.

A session begins with exactly one hardware signature over the sign-in
challenge. The signature is hashed into the encryption seed, the seed is
held in a SessionVault for the life of the session, and the derived public
key is published to the registry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

from .crypto import (
    SEED_SIZE,
    SIGN_IN_CHALLENGE,
    BoxKeyPair,
    EncryptedEnvelope,
    b64encode,
    decode_wallet_address,
    decrypt_message,
    derive_encryption_seed,
    encrypt_message,
)
from .errors import tardis_error, TARDIS_E_KEY_INVALID, TARDIS_E_SESSION_CLOSED
from .registry import KeyRegistry
from .signing import coerce_signer

logger = logging.getLogger("tardis_gateway")


@dataclass(frozen=True)
class Identity:
    wallet_address: str
    encryption_public_key: bytes

    @property
    def encryption_public_key_b64(self) -> str:
        return b64encode(self.encryption_public_key)


class SessionVault:
    """Holds the encryption seed for one session.

    The seed lives in a mutable buffer so close() can overwrite it. The vault
    never hands out the seed or the secret key; callers encrypt and decrypt
    through it. After close() every operation raises TARDIS_E_SESSION_CLOSED.
    """

    def __init__(self, seed: Union[bytes, bytearray]):
        if not isinstance(seed, (bytes, bytearray)) or len(seed) != SEED_SIZE:
            raise tardis_error(TARDIS_E_KEY_INVALID, f"seed must be {SEED_SIZE} bytes")
        self._seed = bytearray(seed)
        self._public_key = BoxKeyPair.from_seed(self._seed).public_key
        self._closed = False

    @classmethod
    def from_signature(cls, signature: bytes) -> "SessionVault":
        return cls(derive_encryption_seed(signature))

    def __enter__(self) -> "SessionVault":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _require_open(self) -> None:
        if self._closed:
            raise tardis_error(TARDIS_E_SESSION_CLOSED, "session vault is closed")

    @property
    def public_key(self) -> bytes:
        self._require_open()
        return self._public_key

    @property
    def public_key_b64(self) -> str:
        return b64encode(self.public_key)

    def _secret_key(self) -> bytes:
        return BoxKeyPair.from_seed(self._seed).secret_key

    def encrypt_for(self, plaintext: str, peer_public_key: Union[bytes, str]) -> EncryptedEnvelope:
        self._require_open()
        return encrypt_message(plaintext, peer_public_key, self._secret_key())

    def decrypt_from(self, envelope: EncryptedEnvelope, peer_public_key: Union[bytes, str]) -> Optional[str]:
        self._require_open()
        return decrypt_message(envelope, peer_public_key, self._secret_key())

    def close(self) -> None:
        """Zero the seed buffer. Idempotent."""
        for i in range(len(self._seed)):
            self._seed[i] = 0
        self._closed = True

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"SessionVault({state})"


def publish_public_key(registry: KeyRegistry, wallet_address: str, public_key: Union[bytes, str]) -> bool:
    """Publish an encryption public key unless the registry already has it.

    Returns True when a write happened, False when the stored value already
    matched.
    """
    value = public_key if isinstance(public_key, str) else b64encode(public_key)
    if registry.get(wallet_address) == value:
        return False
    registry.put(wallet_address, value)
    logger.info("Registered encryption key for %s", wallet_address)
    return True


async def bootstrap_identity(
    signer: Any,
    wallet_address: str,
    registry: KeyRegistry,
    *,
    challenge: str = SIGN_IN_CHALLENGE,
) -> Optional[Tuple[Identity, SessionVault]]:
    """Run the one-time sign-in handshake for a session.

    Returns None if the user cancels the signing prompt; in that case no seed
    is derived and nothing is written to the registry.
    """
    decode_wallet_address(wallet_address)
    serialized = coerce_signer(signer)
    signature = await serialized.sign(challenge.encode("utf-8"))
    if signature is None:
        logger.info("Sign-in cancelled for %s; encryption disabled for this session", wallet_address)
        return None

    vault = SessionVault.from_signature(signature)
    identity = Identity(wallet_address=wallet_address, encryption_public_key=vault.public_key)
    try:
        publish_public_key(registry, wallet_address, identity.encryption_public_key_b64)
    except Exception:
        vault.close()
        raise
    return identity, vault
