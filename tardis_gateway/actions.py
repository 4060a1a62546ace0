"""
Signed social actions.

Every authored action (post, delete, like, repost, group chat message) is
signed by the hardware wallet over a canonical single-line object literal.
The server never trusts a client-supplied canonical string: it rebuilds the
message from the request fields and verifies the detached signature against
that.

Canonical forms (key order fixed, no whitespace, JSON string escaping):

    post          {"content":C,"timestamp":T}
    post_delete   {"id":I,"author_wallet_address":A,"timestamp":T}
    like          {"post_id":P,"user_wallet_address":U,"timestamp":T}
    repost        {"original_post_id":P,"reposter_wallet_address":R,"timestamp":T}
    group_message {"content":C,"timestamp":T,"chatId":G}

Timestamps are not checked for freshness.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, Mapping, Optional, Tuple, Type, Union

from . import metrics
from .crypto import b64encode, canonical_object_literal, verify_detached
from .errors import tardis_error, TARDIS_E_BAD_REQUEST, TARDIS_E_UNKNOWN_ACTION
from .signing import coerce_signer

logger = logging.getLogger("tardis_gateway")


def iso_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp with millisecond precision and Z suffix (JS toISOString form)."""
    dt = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


@dataclass(frozen=True)
class _CanonicalAction:
    kind: ClassVar[str] = ""
    # (canonical key, attribute name) in canonical order
    LAYOUT: ClassVar[Tuple[Tuple[str, str], ...]] = ()
    # attribute naming the signing wallet, if the message carries one
    SIGNER_FIELD: ClassVar[Optional[str]] = None

    def canonical_message(self) -> str:
        return canonical_object_literal([(key, getattr(self, attr)) for key, attr in self.LAYOUT])

    @property
    def signer_wallet_address(self) -> Optional[str]:
        return getattr(self, self.SIGNER_FIELD) if self.SIGNER_FIELD else None

    def to_fields(self) -> Dict[str, str]:
        return {key: getattr(self, attr) for key, attr in self.LAYOUT}


@dataclass(frozen=True)
class PostCreate(_CanonicalAction):
    content: str
    timestamp: str

    kind: ClassVar[str] = "post"
    LAYOUT: ClassVar[Tuple[Tuple[str, str], ...]] = (("content", "content"), ("timestamp", "timestamp"))


@dataclass(frozen=True)
class PostDelete(_CanonicalAction):
    id: str
    author_wallet_address: str
    timestamp: str

    kind: ClassVar[str] = "post_delete"
    LAYOUT: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("id", "id"),
        ("author_wallet_address", "author_wallet_address"),
        ("timestamp", "timestamp"),
    )
    SIGNER_FIELD: ClassVar[Optional[str]] = "author_wallet_address"


@dataclass(frozen=True)
class Like(_CanonicalAction):
    post_id: str
    user_wallet_address: str
    timestamp: str

    kind: ClassVar[str] = "like"
    LAYOUT: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("post_id", "post_id"),
        ("user_wallet_address", "user_wallet_address"),
        ("timestamp", "timestamp"),
    )
    SIGNER_FIELD: ClassVar[Optional[str]] = "user_wallet_address"


@dataclass(frozen=True)
class Repost(_CanonicalAction):
    original_post_id: str
    reposter_wallet_address: str
    timestamp: str

    kind: ClassVar[str] = "repost"
    LAYOUT: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("original_post_id", "original_post_id"),
        ("reposter_wallet_address", "reposter_wallet_address"),
        ("timestamp", "timestamp"),
    )
    SIGNER_FIELD: ClassVar[Optional[str]] = "reposter_wallet_address"


@dataclass(frozen=True)
class GroupChatMessage(_CanonicalAction):
    content: str
    timestamp: str
    chat_id: str

    kind: ClassVar[str] = "group_message"
    LAYOUT: ClassVar[Tuple[Tuple[str, str], ...]] = (
        ("content", "content"),
        ("timestamp", "timestamp"),
        ("chatId", "chat_id"),
    )

    @classmethod
    def compose(cls, content: str, chat_id: str, *, timestamp: Optional[str] = None) -> "GroupChatMessage":
        """Build an outgoing group message; the signed content is trimmed."""
        return cls(content=content.strip(), timestamp=timestamp or iso_timestamp(), chat_id=chat_id)


CanonicalAction = Union[PostCreate, PostDelete, Like, Repost, GroupChatMessage]

ACTION_TYPES: Dict[str, Type[_CanonicalAction]] = {
    cls.kind: cls for cls in (PostCreate, PostDelete, Like, Repost, GroupChatMessage)
}


def action_from_fields(kind: str, fields: Mapping[str, Any]) -> CanonicalAction:
    """Build an action variant from request fields.

    Fields are looked up by canonical key first, then by attribute name
    (so both "chatId" and "chat_id" are accepted). Extra fields are ignored.
    """
    cls = ACTION_TYPES.get(kind)
    if cls is None:
        raise tardis_error(TARDIS_E_UNKNOWN_ACTION, f"unknown action kind: {kind!r}", kind=str(kind))
    if not isinstance(fields, Mapping):
        raise tardis_error(TARDIS_E_BAD_REQUEST, "action fields must be an object")

    values: Dict[str, str] = {}
    for key, attr in cls.LAYOUT:
        value = fields.get(key, fields.get(attr))
        if not isinstance(value, str):
            raise tardis_error(TARDIS_E_BAD_REQUEST, f"action field {key!r} must be a string", kind=kind, field=key)
        values[attr] = value
    return cls(**values)  # type: ignore[return-value]


@dataclass(frozen=True)
class SignedAction:
    canonical_message: str
    signature: str
    signer_address: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "canonical_message": self.canonical_message,
            "signature": self.signature,
            "signer_address": self.signer_address,
        }


async def sign_action(signer: Any, action: CanonicalAction, signer_address: str) -> Optional[SignedAction]:
    """Ask the hardware wallet to sign an action. None if the user cancels."""
    message = action.canonical_message()
    signature = await coerce_signer(signer).sign(message.encode("utf-8"))
    if signature is None:
        return None
    return SignedAction(canonical_message=message, signature=b64encode(signature), signer_address=signer_address)


def verify_action(action: CanonicalAction, signature_b64: str, signer_address: str) -> bool:
    """Verify a detached signature against the reconstructed canonical message.

    For variants that name their signer, the claimed signer must be that wallet.
    """
    expected = action.signer_wallet_address
    if expected is not None and expected != signer_address:
        return False
    return verify_detached(action.canonical_message(), signature_b64, signer_address)


class ActionVerifier:
    """Server-side verification of signed actions with logging and metrics."""

    def verify(self, action: CanonicalAction, signature_b64: str, signer_address: str) -> bool:
        ok = verify_action(action, signature_b64, signer_address)
        metrics.record_verification(action.kind, "valid" if ok else "invalid")
        if not ok:
            logger.info("Rejected %s signature from %s", action.kind, signer_address)
        return ok

    def verify_fields(self, kind: str, fields: Mapping[str, Any], signature_b64: str, signer_address: str) -> bool:
        action = action_from_fields(kind, fields)
        return self.verify(action, signature_b64, signer_address)

