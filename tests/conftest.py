import struct
import time

import base58
import pytest

from tardis_gateway.config import SGT_GROUP_ADDRESS, SGT_MINT_AUTHORITY, TOKEN_2022_PROGRAM_ID
from tardis_gateway.rpc import AccountInfo, RpcError


def build_mint(
    *,
    mint_authority=None,
    group=None,
    member_mint=None,
    decimals=0,
    supply=1,
    initialized=True,
    extra_extensions=(),
):
    """Token-2022 mint account bytes, optionally with a TokenGroupMember extension."""
    data = bytearray()
    if mint_authority is None:
        data += struct.pack("<I", 0) + b"\x00" * 32
    else:
        data += struct.pack("<I", 1) + base58.b58decode(mint_authority)
    data += struct.pack("<Q", supply)
    data += bytes([decimals, 1 if initialized else 0])
    data += struct.pack("<I", 0) + b"\x00" * 32
    assert len(data) == 82

    extensions = list(extra_extensions)
    if group is not None:
        member = base58.b58decode(member_mint or SGT_MINT_AUTHORITY) + base58.b58decode(group) + struct.pack("<Q", 7)
        extensions.append((23, member))
    if not extensions:
        return bytes(data)

    data += b"\x00" * (165 - 82)
    data += bytes([1])
    for ext_type, value in extensions:
        data += struct.pack("<HH", ext_type, len(value)) + value
    return bytes(data)


def token_account(mint, *, ui_amount_string=None, amount=None, decimals=0):
    token_amount = {"decimals": decimals}
    if ui_amount_string is not None:
        token_amount["uiAmountString"] = ui_amount_string
    if amount is not None:
        token_amount["amount"] = amount
    return {
        "pubkey": "acct",
        "account": {
            "data": {
                "program": "spl-token-2022",
                "parsed": {"type": "account", "info": {"mint": mint, "tokenAmount": token_amount}},
            },
            "owner": TOKEN_2022_PROGRAM_ID,
        },
    }


class FakeRpc:
    """In-memory SolanaRpc double."""

    def __init__(self, *, by_program=None, by_mint=None, accounts=None, fail=None, delay=0.0):
        self.by_program = by_program or []
        self.by_mint = by_mint or {}
        self.accounts = accounts or {}
        self.fail = set(fail or ())
        self.delay = delay
        self.calls = []

    def get_token_accounts_by_owner(self, owner, *, mint=None, program_id=None):
        self.calls.append(("getTokenAccountsByOwner", owner, mint, program_id))
        if self.delay:
            time.sleep(self.delay)
        if "getTokenAccountsByOwner" in self.fail:
            raise RpcError("getTokenAccountsByOwner", "HTTP 503")
        if program_id is not None:
            return list(self.by_program)
        return list(self.by_mint.get(mint, []))

    def get_account_info(self, address):
        self.calls.append(("getAccountInfo", address))
        if "getAccountInfo" in self.fail:
            raise RpcError("getAccountInfo", "HTTP 503")
        return self.accounts.get(address)


def sgt_account_info(**kwargs):
    params = {"mint_authority": SGT_MINT_AUTHORITY, "group": SGT_GROUP_ADDRESS}
    params.update(kwargs)
    return AccountInfo(owner=TOKEN_2022_PROGRAM_ID, data=build_mint(**params))


@pytest.fixture
def chain():
    """Helpers for building fake on-chain state."""

    class _Chain:
        Rpc = FakeRpc
        mint = staticmethod(build_mint)
        account = staticmethod(token_account)
        sgt = staticmethod(sgt_account_info)

    return _Chain
