"""Token-2022 mint account decoding.

Only what the genesis check needs: the base mint fields and the
TokenGroupMember extension.

Layout (little endian):

    0    u32   mint authority option tag (0 = None, 1 = Some)
    4    [32]  mint authority
    36   u64   supply
    44   u8    decimals
    45   u8    is_initialized
    46   u32   freeze authority option tag
    50   [32]  freeze authority
    82         end of base mint

Extended mints pad with zeros to 165, store the account type at 165
(1 = mint) and a TLV list from 166: u16 type, u16 length, value.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from typing import Dict, Optional

from .crypto import encode_wallet_address

MINT_SIZE = 82
MULTISIG_SIZE = 355
ACCOUNT_TYPE_OFFSET = 165
TLV_START = ACCOUNT_TYPE_OFFSET + 1
ACCOUNT_TYPE_MINT = 1

EXTENSION_UNINITIALIZED = 0
EXTENSION_TOKEN_GROUP_MEMBER = 23
TOKEN_GROUP_MEMBER_SIZE = 72


class TokenLayoutError(ValueError):
    """Account data is not a decodable Token-2022 mint."""


@dataclass(frozen=True)
class TokenGroupMember:
    mint: str
    group: str
    member_number: int


@dataclass(frozen=True)
class MintInfo:
    mint_authority: Optional[str]
    supply: int
    decimals: int
    is_initialized: bool
    freeze_authority: Optional[str]
    extensions: Dict[int, bytes] = field(default_factory=dict)

    @property
    def group_member(self) -> Optional[TokenGroupMember]:
        raw = self.extensions.get(EXTENSION_TOKEN_GROUP_MEMBER)
        if raw is None:
            return None
        return parse_group_member(raw)


def _coption_pubkey(data: bytes, offset: int) -> Optional[str]:
    (tag,) = struct.unpack_from("<I", data, offset)
    if tag == 0:
        return None
    if tag != 1:
        raise TokenLayoutError(f"invalid COption tag {tag} at offset {offset}")
    return encode_wallet_address(data[offset + 4: offset + 36])


def parse_group_member(raw: bytes) -> TokenGroupMember:
    if len(raw) != TOKEN_GROUP_MEMBER_SIZE:
        raise TokenLayoutError(f"TokenGroupMember must be {TOKEN_GROUP_MEMBER_SIZE} bytes, got {len(raw)}")
    (member_number,) = struct.unpack_from("<Q", raw, 64)
    return TokenGroupMember(
        mint=encode_wallet_address(raw[0:32]),
        group=encode_wallet_address(raw[32:64]),
        member_number=member_number,
    )


def _parse_tlv(data: bytes) -> Dict[int, bytes]:
    extensions: Dict[int, bytes] = {}
    offset = TLV_START
    while offset + 4 <= len(data):
        ext_type, length = struct.unpack_from("<HH", data, offset)
        if ext_type == EXTENSION_UNINITIALIZED:
            break
        start = offset + 4
        end = start + length
        if end > len(data):
            raise TokenLayoutError(f"extension {ext_type} overruns account data")
        extensions[ext_type] = bytes(data[start:end])
        offset = end
    return extensions


def unpack_mint(data: bytes) -> MintInfo:
    """Decode Token-2022 mint account data. Raises TokenLayoutError."""
    data = bytes(data)
    if len(data) < MINT_SIZE:
        raise TokenLayoutError(f"mint data too short: {len(data)} bytes")
    if len(data) == MULTISIG_SIZE:
        raise TokenLayoutError("account data has multisig length")

    (supply,) = struct.unpack_from("<Q", data, 36)
    decimals = data[44]
    is_initialized = data[45]
    if is_initialized != 1:
        raise TokenLayoutError("mint is not initialized")

    extensions: Dict[int, bytes] = {}
    if len(data) > MINT_SIZE:
        if len(data) <= ACCOUNT_TYPE_OFFSET:
            raise TokenLayoutError(f"invalid extended mint length: {len(data)} bytes")
        if any(data[MINT_SIZE:ACCOUNT_TYPE_OFFSET]):
            raise TokenLayoutError("non-zero padding between base mint and account type")
        if data[ACCOUNT_TYPE_OFFSET] != ACCOUNT_TYPE_MINT:
            raise TokenLayoutError(f"account type {data[ACCOUNT_TYPE_OFFSET]} is not a mint")
        extensions = _parse_tlv(data)

    return MintInfo(
        mint_authority=_coption_pubkey(data, 0),
        supply=supply,
        decimals=decimals,
        is_initialized=True,
        freeze_authority=_coption_pubkey(data, 46),
        extensions=extensions,
    )
