"""
Tardis Cryptography Module

Two independent keypair families, both rooted in the hardware wallet:

- Wallet signing keys (Ed25519, base58 addresses). The private half lives in
  the hardware wallet; the server only ever verifies detached signatures.
- Encryption keys (X25519 NaCl box). Derived deterministically from one
  hardware signature over a fixed sign-in challenge:

      seed    = SHA-256(signature)
      keypair = box_keypair_from_secret_key(seed)

  Direct messages are sealed with NaCl box (X25519 + XSalsa20-Poly1305) under
  a fresh random 24-byte nonce per message.

Decryption and verification never raise on bad input; they return None/False
so callers can render a "locked" placeholder or reject the action.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

import base58
import nacl.utils
from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey, Ed25519PublicKey
)

from .errors import (
    TardisError,
    tardis_error,
    TARDIS_E_BAD_REQUEST,
    TARDIS_E_KEY_INVALID,
)


SEED_SIZE = 32
BOX_KEY_SIZE = PublicKey.SIZE        # 32
BOX_NONCE_SIZE = Box.NONCE_SIZE      # 24
ED25519_KEY_SIZE = 32
ED25519_SIGNATURE_SIZE = 64

# Fixed, well-known statement the wallet signs once per device to derive the
# encryption seed. Changing it changes every derived keypair.
SIGN_IN_CHALLENGE = "You are signing in to Tardis, the high-security Solana messaging platform."


# ---------------------------
# Encoding helpers
# ---------------------------

def b64encode(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64decode_strict(value: str) -> bytes:
    """Decode standard base64, rejecting non-alphabet characters.

    Raises ValueError (binascii.Error) on malformed input.
    """
    if not isinstance(value, str):
        raise ValueError("base64 value must be a string")
    return base64.b64decode(value.encode("ascii"), validate=True)


def decode_wallet_address(address: str) -> bytes:
    """Decode a base58 wallet address into its 32 raw public key bytes."""
    if not isinstance(address, str) or not address:
        raise tardis_error(TARDIS_E_KEY_INVALID, "wallet address must be a non-empty string")
    try:
        raw = base58.b58decode(address)
    except ValueError as e:
        raise tardis_error(TARDIS_E_KEY_INVALID, "wallet address is not valid base58", address=address) from e
    if len(raw) != ED25519_KEY_SIZE:
        raise tardis_error(
            TARDIS_E_KEY_INVALID,
            "wallet address must decode to 32 bytes",
            address=address,
            length=len(raw),
        )
    return raw


def encode_wallet_address(public_key: bytes) -> str:
    if len(public_key) != ED25519_KEY_SIZE:
        raise tardis_error(TARDIS_E_KEY_INVALID, "wallet public key must be 32 bytes", length=len(public_key))
    return base58.b58encode(bytes(public_key)).decode("ascii")


def is_wallet_address(address: Any) -> bool:
    try:
        decode_wallet_address(address)
        return True
    except TardisError:
        return False


def canonical_object_literal(pairs: "list[tuple[str, str]]") -> str:
    """Render ordered string pairs as a single-line JSON object literal.

    Key order is exactly the order given (no sorting) and there is no
    whitespace. String escaping follows JSON, so the bytes match what a
    JavaScript client produces with JSON.stringify on the same object.
    """
    parts = []
    for key, value in pairs:
        if not isinstance(value, str):
            raise tardis_error(TARDIS_E_BAD_REQUEST, "canonical fields must be strings", field=key)
        try:
            value.encode("utf-8")
        except UnicodeEncodeError:
            raise tardis_error(TARDIS_E_BAD_REQUEST, "canonical fields must be valid UTF-8 text", field=key) from None
        parts.append(
            json.dumps(key, ensure_ascii=False) + ":" + json.dumps(value, ensure_ascii=False)
        )
    return "{" + ",".join(parts) + "}"


# ---------------------------
# Seed Deriver
# ---------------------------

def derive_encryption_seed(signature: bytes) -> bytes:
    """Derive the 32-byte encryption seed from a hardware signature.

    The seed is SHA-256 over the raw signature bytes. Continuity across
    sessions holds because Ed25519 signatures are deterministic: the same
    wallet signing the same challenge yields the same bytes.
    """
    if not isinstance(signature, (bytes, bytearray)) or len(signature) == 0:
        raise tardis_error(TARDIS_E_BAD_REQUEST, "signature must be non-empty bytes")
    return hashlib.sha256(bytes(signature)).digest()


# ---------------------------
# Key Manager
# ---------------------------

@dataclass(frozen=True)
class BoxKeyPair:
    """X25519 box keypair. `secret_key` must only reach the cipher."""

    public_key: bytes
    secret_key: bytes

    @classmethod
    def from_seed(cls, seed: Union[bytes, bytearray]) -> "BoxKeyPair":
        """Use the seed directly as the X25519 secret key.

        Pure function: the same seed always yields the same keypair.
        """
        if not isinstance(seed, (bytes, bytearray)) or len(seed) != SEED_SIZE:
            raise tardis_error(TARDIS_E_KEY_INVALID, f"seed must be {SEED_SIZE} bytes")
        sk = PrivateKey(bytes(seed))
        return cls(public_key=bytes(sk.public_key), secret_key=bytes(sk))

    @property
    def public_key_b64(self) -> str:
        return b64encode(self.public_key)


def keypair_from_seed(seed: Union[bytes, bytearray]) -> BoxKeyPair:
    return BoxKeyPair.from_seed(seed)


def coerce_box_public_key(value: Union[bytes, str]) -> bytes:
    """Accept a peer public key as raw bytes or registry base64 text."""
    if isinstance(value, str):
        try:
            value = b64decode_strict(value)
        except (ValueError, binascii.Error) as e:
            raise tardis_error(TARDIS_E_KEY_INVALID, "public key is not valid base64") from e
    if not isinstance(value, (bytes, bytearray)) or len(value) != BOX_KEY_SIZE:
        raise tardis_error(TARDIS_E_KEY_INVALID, f"public key must be {BOX_KEY_SIZE} bytes")
    return bytes(value)


# ---------------------------
# Cipher
# ---------------------------

@dataclass(frozen=True)
class EncryptedEnvelope:
    """Wire shape for an encrypted direct message (both fields base64)."""

    ciphertext: str
    nonce: str

    def to_dict(self) -> Dict[str, str]:
        return {"ciphertext": self.ciphertext, "nonce": self.nonce}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptedEnvelope":
        ct = data.get("ciphertext") if isinstance(data, dict) else None
        nonce = data.get("nonce") if isinstance(data, dict) else None
        if not isinstance(ct, str) or not isinstance(nonce, str):
            raise tardis_error(TARDIS_E_BAD_REQUEST, "envelope requires string ciphertext and nonce")
        return cls(ciphertext=ct, nonce=nonce)


def encrypt_message(
    plaintext: str,
    peer_public_key: Union[bytes, str],
    local_secret_key: bytes,
) -> EncryptedEnvelope:
    """Seal UTF-8 plaintext for a peer under a fresh random nonce."""
    if not isinstance(plaintext, str):
        raise tardis_error(TARDIS_E_BAD_REQUEST, "plaintext must be a string")
    peer = PublicKey(coerce_box_public_key(peer_public_key))
    if not isinstance(local_secret_key, (bytes, bytearray)) or len(local_secret_key) != BOX_KEY_SIZE:
        raise tardis_error(TARDIS_E_KEY_INVALID, f"secret key must be {BOX_KEY_SIZE} bytes")

    nonce = nacl.utils.random(BOX_NONCE_SIZE)
    box = Box(PrivateKey(bytes(local_secret_key)), peer)
    sealed = box.encrypt(plaintext.encode("utf-8"), nonce)
    return EncryptedEnvelope(ciphertext=b64encode(sealed.ciphertext), nonce=b64encode(nonce))


def decrypt_message(
    envelope: EncryptedEnvelope,
    peer_public_key: Union[bytes, str],
    local_secret_key: bytes,
) -> Optional[str]:
    """Open an envelope from a peer. Returns None on any failure."""
    try:
        ciphertext = b64decode_strict(envelope.ciphertext)
        nonce = b64decode_strict(envelope.nonce)
        if len(nonce) != BOX_NONCE_SIZE:
            return None
        peer = PublicKey(coerce_box_public_key(peer_public_key))
        if not isinstance(local_secret_key, (bytes, bytearray)) or len(local_secret_key) != BOX_KEY_SIZE:
            return None
        box = Box(PrivateKey(bytes(local_secret_key)), peer)
        plaintext = box.decrypt(ciphertext, nonce)
        return plaintext.decode("utf-8")
    except (CryptoError, TardisError, ValueError, TypeError, AttributeError):
        # ValueError also covers binascii.Error and UnicodeDecodeError.
        return None


# ---------------------------
# Wallet signing keys (Ed25519)
# ---------------------------

@dataclass
class Ed25519KeyPair:
    """
    Ed25519 wallet keypair.

    SECURITY: In production the private half never leaves the hardware wallet.
    This class exists for verification (public-only) and for in-process
    signers used in development and tests.
    """
    public_key_bytes: bytes
    private_key_bytes: Optional[bytes] = None

    @classmethod
    def generate(cls) -> "Ed25519KeyPair":
        return cls.from_private_key(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Ed25519KeyPair":
        """Create key pair from a 32-byte Ed25519 seed."""
        if len(seed) != 32:
            raise ValueError(f"Seed must be 32 bytes, got {len(seed)}")
        return cls.from_private_key(Ed25519PrivateKey.from_private_bytes(bytes(seed)))

    @classmethod
    def from_private_key(cls, private_key: Ed25519PrivateKey) -> "Ed25519KeyPair":
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
        return cls(public_key_bytes=public_bytes, private_key_bytes=private_bytes)

    @classmethod
    def from_address(cls, address: str) -> "Ed25519KeyPair":
        """Public-only key pair for a base58 wallet address."""
        return cls(public_key_bytes=decode_wallet_address(address))

    @property
    def address(self) -> str:
        return encode_wallet_address(self.public_key_bytes)

    def can_sign(self) -> bool:
        return self.private_key_bytes is not None

    def sign(self, message: bytes) -> bytes:
        if not self.can_sign():
            raise ValueError(f"Key {self.address} has no private key - cannot sign")
        private_key = Ed25519PrivateKey.from_private_bytes(self.private_key_bytes)
        return private_key.sign(bytes(message))

    def verify(self, message: bytes, signature: bytes) -> bool:
        try:
            public_key = Ed25519PublicKey.from_public_bytes(self.public_key_bytes)
            public_key.verify(bytes(signature), bytes(message))
            return True
        except InvalidSignature:
            return False
        except (ValueError, TypeError):
            return False


def verify_detached(message: str, signature_b64: str, signer_address: str) -> bool:
    """Verify a detached Ed25519 signature over the UTF-8 bytes of `message`.

    Pure predicate. Returns False for malformed base64, a signature that is
    not 64 bytes, an address that is not base58 of 32 bytes, or a mismatch.
    """
    if not isinstance(message, str):
        return False
    try:
        signature = b64decode_strict(signature_b64)
    except (ValueError, binascii.Error):
        return False
    if len(signature) != ED25519_SIGNATURE_SIZE:
        return False
    try:
        key = Ed25519KeyPair.from_address(signer_address)
        data = message.encode("utf-8")
    except (TardisError, UnicodeEncodeError):
        return False
    return key.verify(data, signature)
