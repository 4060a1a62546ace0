"""
Tardis verification service.

HTTP surface for the server-side half of the protocol:

- public-key registry (publish / look up encryption keys)
- signed action verification (canonical message rebuilt server-side)
- community admission (token gate, fail-closed)

Errors use the stable TardisError envelope:
    {"code": ..., "message": ..., "retryable": ..., "http_status": ..., "details"?: ...}
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .actions import ActionVerifier, action_from_fields
from .config import TardisConfig
from .errors import (
    TardisError,
    tardis_error,
    TARDIS_E_GATE_DENIED,
    TARDIS_E_INVALID_SIGNATURE,
    TARDIS_E_KEY_NOT_FOUND,
)
from .gate import AccessGate, Denied
from .identity import publish_public_key
from .metrics import instrument_fastapi
from .registry import KeyRegistry, SqliteKeyRegistry
from .rpc import HttpSolanaRpc

logger = logging.getLogger("tardis_gateway")


# ---------------------------
# Request Models
# ---------------------------

class PublishKeyRequest(BaseModel):
    public_key: str


class VerifyActionRequest(BaseModel):
    kind: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    signature: str
    signer_address: str


class AdmissionRequest(BaseModel):
    identity: str
    gates: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------
# Gateway
# ---------------------------

class TardisGateway:
    """Server-side composition of registry, verifier and access gate."""

    def __init__(
        self,
        *,
        registry: KeyRegistry,
        gate: AccessGate,
        verifier: Optional[ActionVerifier] = None,
        config: Optional[TardisConfig] = None,
    ):
        self.config = config or TardisConfig()
        self.registry = registry
        self.gate = gate
        self.verifier = verifier or ActionVerifier()

    @classmethod
    def from_config(cls, config: TardisConfig) -> "TardisGateway":
        rpc = HttpSolanaRpc(config.rpc_url, timeout_seconds=config.rpc_timeout_seconds)
        return cls(
            registry=SqliteKeyRegistry(config.registry_db_path),
            gate=AccessGate(rpc, config=config),
            config=config,
        )

    def publish_key(self, wallet_address: str, public_key_b64: str) -> bool:
        return publish_public_key(self.registry, wallet_address, public_key_b64)

    def lookup_key(self, wallet_address: str) -> str:
        value = self.registry.get(wallet_address)
        if value is None:
            raise tardis_error(
                TARDIS_E_KEY_NOT_FOUND,
                "no encryption key published for this wallet",
                http_status=404,
                wallet_address=wallet_address,
            )
        return value

    def verify_action(self, kind: str, fields: Dict[str, Any], signature: str, signer_address: str) -> None:
        """Raise TARDIS_E_INVALID_SIGNATURE (401) unless the signature verifies."""
        action = action_from_fields(kind, fields)
        if not self.verifier.verify(action, signature, signer_address):
            raise tardis_error(TARDIS_E_INVALID_SIGNATURE, "invalid signature", http_status=401, kind=kind)

    async def admit(self, identity: str, gates: List[Dict[str, Any]]) -> None:
        """Raise TARDIS_E_GATE_DENIED (403) unless every gate passes."""
        decision = await self.gate.evaluate_persisted(identity, gates)
        if isinstance(decision, Denied):
            raise tardis_error(TARDIS_E_GATE_DENIED, decision.reason, http_status=403, rule_type=decision.rule_type)


# ---------------------------
# FastAPI App Factory
# ---------------------------

def create_app(gateway: Optional[TardisGateway] = None, *, config: Optional[TardisConfig] = None) -> FastAPI:
    """Create FastAPI application with Tardis endpoints."""
    from . import __version__ as tardis_version

    if config is None:
        config = gateway.config if gateway is not None else TardisConfig.load_from_env()
    if gateway is None:
        gateway = TardisGateway.from_config(config)

    app = FastAPI(
        title="Tardis Gateway",
        description="Signed action verification, public-key registry and token-gated admission",
        version=tardis_version,
    )

    @app.exception_handler(TardisError)
    async def _tardis_error_handler(request: Request, exc: TardisError):
        return JSONResponse(status_code=int(exc.http_status or 400), content=exc.as_dict())

    instrument_fastapi(app)

    max_request_bytes = int(config.max_request_bytes)

    @app.middleware("http")
    async def _limit_request_size(req: Request, call_next):
        cl = req.headers.get("content-length")
        if cl is not None:
            try:
                too_large = int(cl) > max_request_bytes
            except ValueError:
                return JSONResponse(status_code=400, content={"detail": "BAD_CONTENT_LENGTH"})
            if too_large:
                return JSONResponse(status_code=413, content={"detail": "REQUEST_TOO_LARGE"})
        return await call_next(req)

    @app.get("/v1/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": tardis_version,
            "gate_mode": gateway.gate.mode,
        }

    @app.put("/v1/keys/{wallet_address}")
    def publish_key(wallet_address: str, body: PublishKeyRequest):
        updated = gateway.publish_key(wallet_address, body.public_key)
        return {"wallet_address": wallet_address, "public_key": body.public_key, "updated": updated}

    @app.get("/v1/keys/{wallet_address}")
    def get_key(wallet_address: str):
        return {"wallet_address": wallet_address, "public_key": gateway.lookup_key(wallet_address)}

    @app.post("/v1/actions/verify")
    def verify_action(body: VerifyActionRequest):
        gateway.verify_action(body.kind, body.fields, body.signature, body.signer_address)
        return {"valid": True}

    @app.post("/v1/communities/admission")
    async def admission(body: AdmissionRequest):
        await gateway.admit(body.identity, body.gates)
        return {"admitted": True}

    return app
