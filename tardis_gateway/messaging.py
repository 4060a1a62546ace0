"""Direct-message records.

A chat message record carries `content`, an optional `nonce` and an
`is_encrypted` flag. When either side lacks an encryption key the message is
sent in the clear and labelled as such; plaintext is never labelled as
encrypted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .crypto import EncryptedEnvelope, coerce_box_public_key
from .errors import TardisError
from .identity import SessionVault
from .registry import KeyRegistry

logger = logging.getLogger("tardis_gateway")

LOCKED_PLACEHOLDER = "[Decryption failed]"


@dataclass(frozen=True)
class MessageRecord:
    content: str
    nonce: Optional[str] = None
    is_encrypted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"content": self.content, "nonce": self.nonce, "is_encrypted": self.is_encrypted}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageRecord":
        return cls(
            content=str(data.get("content") or ""),
            nonce=data.get("nonce"),
            is_encrypted=data.get("is_encrypted") is True,
        )


def _peer_key(registry: KeyRegistry, peer_address: str) -> Optional[bytes]:
    value = registry.get(peer_address)
    if value is None:
        return None
    try:
        return coerce_box_public_key(value)
    except TardisError:
        logger.warning("Registry entry for %s is not a valid encryption key", peer_address)
        return None


def compose_direct_message(
    plaintext: str,
    peer_address: str,
    registry: KeyRegistry,
    vault: Optional[SessionVault],
) -> MessageRecord:
    """Build the record to store for an outgoing direct message."""
    if vault is None or vault.closed:
        return MessageRecord(content=plaintext)
    peer = _peer_key(registry, peer_address)
    if peer is None:
        logger.debug("No encryption key for %s; sending unencrypted", peer_address)
        return MessageRecord(content=plaintext)
    envelope = vault.encrypt_for(plaintext, peer)
    return MessageRecord(content=envelope.ciphertext, nonce=envelope.nonce, is_encrypted=True)


def open_direct_message(
    record: MessageRecord,
    peer_address: str,
    registry: KeyRegistry,
    vault: Optional[SessionVault],
) -> str:
    """Render a stored record as text, or LOCKED_PLACEHOLDER if it cannot be opened."""
    if not record.is_encrypted:
        return record.content
    if vault is None or vault.closed or not record.nonce:
        return LOCKED_PLACEHOLDER
    peer = _peer_key(registry, peer_address)
    if peer is None:
        return LOCKED_PLACEHOLDER
    plaintext = vault.decrypt_from(EncryptedEnvelope(ciphertext=record.content, nonce=record.nonce), peer)
    return LOCKED_PLACEHOLDER if plaintext is None else plaintext
