#!/usr/bin/env python3
"""
Tardis - Command Line Interface

Usage:
    tardis keygen [--out FILE]                 Generate a dev wallet (Ed25519 seed + address)
    tardis derive --signature B64              Derive the encryption public key from a sign-in signature
    tardis derive --wallet-seed-file FILE      Sign the challenge with a dev wallet, then derive
    tardis sign-action --kind K --fields JSON  Sign a canonical action (SIGNER_MODE selects the signer)
    tardis verify-action --kind K --fields JSON --signature B64 --signer ADDR
    tardis gate --identity ADDR --gates JSON   Evaluate persisted gate rules against the RPC node
    tardis serve [--host H] [--port P]         Run the verification service

Exit codes: 0 success / valid / admitted, 1 rejected / denied / cancelled, 2 usage error.
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from tardis_gateway.actions import action_from_fields, sign_action, verify_action
from tardis_gateway.config import TardisConfig
from tardis_gateway.crypto import (
    BoxKeyPair,
    Ed25519KeyPair,
    b64decode_strict,
    b64encode,
    derive_encryption_seed,
)
from tardis_gateway.errors import TardisError
from tardis_gateway.gate import AccessGate, Denied
from tardis_gateway.rpc import HttpSolanaRpc
from tardis_gateway.signing import build_signer_from_env

logger = logging.getLogger("tardis_gateway")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(level)


def _print_json(obj: Any) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def _load_json_arg(value: str) -> Any:
    """Parse a JSON argument given inline or as @path."""
    if value.startswith("@"):
        value = Path(value[1:]).read_text(encoding="utf-8")
    return json.loads(value)


def _load_wallet(path: Optional[str]) -> Optional[Ed25519KeyPair]:
    if not path:
        return None
    seed = b64decode_strict(Path(path).read_text(encoding="utf-8").strip())
    return Ed25519KeyPair.from_seed(seed)


def cmd_keygen(args) -> int:
    """Generate a development wallet keypair."""
    kp = Ed25519KeyPair.generate()
    seed_b64 = b64encode(kp.private_key_bytes)
    if args.out:
        Path(args.out).write_text(seed_b64 + "\n", encoding="utf-8")
        _print_json({"address": kp.address, "seed_file": args.out})
    else:
        _print_json({"address": kp.address, "seed_b64": seed_b64})
    return 0


def cmd_derive(args) -> int:
    """Derive the encryption public key from a sign-in signature."""
    config = TardisConfig.load_from_env()
    if args.signature:
        signature = b64decode_strict(args.signature)
    else:
        wallet = _load_wallet(args.wallet_seed_file)
        if wallet is None:
            print("ERROR: pass --signature or --wallet-seed-file", file=sys.stderr)
            return 2
        signature = wallet.sign(config.sign_in_challenge.encode("utf-8"))

    seed = derive_encryption_seed(signature)
    out: Dict[str, Any] = {"public_key": BoxKeyPair.from_seed(seed).public_key_b64}
    if args.show_seed:
        out["seed_hex"] = seed.hex()
    _print_json(out)
    return 0


def cmd_sign_action(args) -> int:
    """Sign a canonical action through the configured hardware signer."""
    action = action_from_fields(args.kind, _load_json_arg(args.fields))
    wallet = _load_wallet(args.wallet_seed_file)
    signer_address = args.address or (wallet.address if wallet else None)
    if not signer_address:
        print("ERROR: --address is required without --wallet-seed-file", file=sys.stderr)
        return 2

    try:
        signer = build_signer_from_env(wallet)
    except (RuntimeError, TypeError) as e:
        print(f"ERROR: no signer configured: {e}", file=sys.stderr)
        return 2
    signed = asyncio.run(sign_action(signer, action, signer_address))
    if signed is None:
        print("Signing cancelled", file=sys.stderr)
        return 1
    _print_json(signed.to_dict())
    return 0


def cmd_verify_action(args) -> int:
    """Verify a signed action against its reconstructed canonical message."""
    action = action_from_fields(args.kind, _load_json_arg(args.fields))
    ok = verify_action(action, args.signature, args.signer)
    print("VALID" if ok else "INVALID")
    return 0 if ok else 1


def cmd_gate(args) -> int:
    """Evaluate persisted gate rules for an identity."""
    config = TardisConfig.load_from_env()
    rows: List[Dict[str, Any]] = _load_json_arg(args.gates)
    if not isinstance(rows, list):
        print("ERROR: --gates must be a JSON list of gate rules", file=sys.stderr)
        return 2

    rpc = HttpSolanaRpc(args.rpc_url or config.rpc_url, timeout_seconds=config.rpc_timeout_seconds)
    gate = AccessGate(rpc, config=config, mode=args.mode)
    decision = asyncio.run(gate.evaluate_persisted(args.identity, rows))
    if isinstance(decision, Denied):
        _print_json({"admitted": False, "rule_type": decision.rule_type, "reason": decision.reason})
        return 1
    _print_json({"admitted": True})
    return 0


def cmd_serve(args) -> int:
    """Run the verification service with uvicorn."""
    import uvicorn
    from tardis_gateway.server import create_app

    logger.info("Starting Tardis gateway on %s:%s", args.host, args.port)
    uvicorn.run(create_app(), host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tardis",
        description="Tardis gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    keygen_parser = subparsers.add_parser("keygen", help="Generate a dev wallet keypair")
    keygen_parser.add_argument("--out", help="Write the base64 seed to this file")
    keygen_parser.set_defaults(func=cmd_keygen)

    derive_parser = subparsers.add_parser("derive", help="Derive the encryption public key")
    derive_parser.add_argument("--signature", help="Base64 signature over the sign-in challenge")
    derive_parser.add_argument("--wallet-seed-file", help="Dev wallet seed file (signs the challenge)")
    derive_parser.add_argument("--show-seed", action="store_true", help="Also print the derived seed (hex)")
    derive_parser.set_defaults(func=cmd_derive)

    sign_parser = subparsers.add_parser("sign-action", help="Sign a canonical action")
    sign_parser.add_argument("--kind", required=True, help="post|post_delete|like|repost|group_message")
    sign_parser.add_argument("--fields", required=True, help="Action fields as JSON (or @file)")
    sign_parser.add_argument("--wallet-seed-file", help="Dev wallet seed file (SIGNER_MODE=file)")
    sign_parser.add_argument("--address", help="Signer wallet address (required with SIGNER_MODE=external)")
    sign_parser.set_defaults(func=cmd_sign_action)

    verify_parser = subparsers.add_parser("verify-action", help="Verify a signed action")
    verify_parser.add_argument("--kind", required=True, help="post|post_delete|like|repost|group_message")
    verify_parser.add_argument("--fields", required=True, help="Action fields as JSON (or @file)")
    verify_parser.add_argument("--signature", required=True, help="Base64 detached signature")
    verify_parser.add_argument("--signer", required=True, help="Signer wallet address (base58)")
    verify_parser.set_defaults(func=cmd_verify_action)

    gate_parser = subparsers.add_parser("gate", help="Evaluate community gate rules")
    gate_parser.add_argument("--identity", required=True, help="Wallet address to check")
    gate_parser.add_argument("--gates", required=True, help="Persisted gate rules as a JSON list (or @file)")
    gate_parser.add_argument("--rpc-url", default=None, help="Override TARDIS_RPC_URL")
    gate_parser.add_argument("--mode", choices=["sequential", "parallel"], default=None, help="Override TARDIS_GATE_MODE")
    gate_parser.set_defaults(func=cmd_gate)

    serve_parser = subparsers.add_parser("serve", help="Run the verification service")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Host to bind (default: 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 2

    setup_logging(args.verbose)
    try:
        return args.func(args)
    except TardisError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 2
    except (OSError, ValueError) as e:
        print(f"ERROR: {type(e).__name__}: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
