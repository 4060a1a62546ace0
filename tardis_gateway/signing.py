"""
tardis_gateway.signing: hardware signer abstraction.

The wallet's private key never leaves secure hardware. This module models the
hardware wallet as an opaque, asynchronous signer:

- HardwareSigner: protocol. `sign(message)` returns the 64-byte detached
  signature, or None when the user dismissed the prompt.
- InProcessWalletSigner: wraps an Ed25519KeyPair (dev/testing).
- ExternalCommandWalletSigner: delegates to an external command that owns the
  key (wallet bridge daemon, device CLI).
- SerializedSigner: single in-flight guard; the hardware session is modal and
  not reentrant, so concurrent callers queue behind one lock.

Contract for ExternalCommandWalletSigner:
- stdin: base64(message) (may include trailing newline)
- stdout: base64(signature)
- exit code 3, or exit 0 with empty stdout: user cancelled
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import shlex
import subprocess
import weakref
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from .crypto import ED25519_SIGNATURE_SIZE, Ed25519KeyPair
from .errors import SigningUnavailableError, tardis_error, TARDIS_E_INTERNAL

logger = logging.getLogger("tardis_gateway")

EXIT_CODE_USER_CANCELLED = 3


@runtime_checkable
class HardwareSigner(Protocol):
    """Protocol implemented by wallet signing backends."""

    @property
    def available(self) -> bool: ...

    async def sign(self, message: bytes) -> Optional[bytes]: ...


@dataclass
class InProcessWalletSigner:
    """Signer holding an Ed25519KeyPair in memory.

    auto_approve=False simulates a user who rejects every prompt.
    """
    keypair: Ed25519KeyPair
    auto_approve: bool = True

    @property
    def available(self) -> bool:
        return self.keypair.can_sign()

    @property
    def address(self) -> str:
        return self.keypair.address

    async def sign(self, message: bytes) -> Optional[bytes]:
        if not self.auto_approve:
            return None
        return self.keypair.sign(bytes(message))


def _run_wallet_signer_cmd(*, signing_cmd: str, message: bytes, timeout_seconds: float) -> Optional[bytes]:
    """Run an external wallet signer command.

    Returns the signature, or None if the command reports user cancellation.
    """
    if not signing_cmd or not str(signing_cmd).strip():
        raise ValueError("External signer requires signing_cmd")
    msg_b64 = base64.b64encode(bytes(message)).decode("ascii")
    try:
        proc = subprocess.run(
            shlex.split(str(signing_cmd)),
            input=(msg_b64 + "\n").encode("utf-8"),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=float(timeout_seconds),
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise tardis_error(TARDIS_E_INTERNAL, f"External signer timed out after {timeout_seconds}s", retryable=True) from e
    except OSError as e:
        raise tardis_error(TARDIS_E_INTERNAL, f"External signer failed to execute: {e}") from e

    if proc.returncode == EXIT_CODE_USER_CANCELLED:
        return None
    if proc.returncode != 0:
        err = (proc.stderr or b"").decode("utf-8", errors="ignore").strip()
        raise tardis_error(TARDIS_E_INTERNAL, f"External signer returned code {proc.returncode}: {err}")

    out = (proc.stdout or b"").decode("utf-8", errors="ignore").strip()
    if not out:
        return None
    try:
        sig = base64.b64decode(out.encode("ascii"), validate=True)
    except (ValueError, binascii.Error) as e:
        raise tardis_error(TARDIS_E_INTERNAL, "External signer output was not valid base64(signature)") from e

    if len(sig) != ED25519_SIGNATURE_SIZE:
        raise tardis_error(TARDIS_E_INTERNAL, f"External signer returned invalid Ed25519 signature length: {len(sig)} bytes")
    return sig


@dataclass
class ExternalCommandWalletSigner:
    """Signer that delegates to an external wallet bridge command.

    This is the hard-key seam: the private key lives outside the Python process.
    """
    signing_cmd: str
    timeout_seconds: float = 30.0

    @property
    def available(self) -> bool:
        return bool((self.signing_cmd or "").strip())

    async def sign(self, message: bytes) -> Optional[bytes]:
        return await asyncio.to_thread(
            _run_wallet_signer_cmd,
            signing_cmd=self.signing_cmd,
            message=bytes(message),
            timeout_seconds=self.timeout_seconds,
        )


class SerializedSigner:
    """Single in-flight guard around a HardwareSigner.

    Only one prompt may be open against the device at a time. Callers that
    arrive while a request is in flight wait for it to finish.
    """

    def __init__(self, inner: HardwareSigner):
        self._inner = inner
        self._lock: Optional[asyncio.Lock] = None
        self._lock_loop: Optional[asyncio.AbstractEventLoop] = None

    def _loop_lock(self) -> asyncio.Lock:
        # asyncio.Lock binds to one event loop; a long-lived wrapper may
        # outlive the loop it was first used on.
        loop = asyncio.get_running_loop()
        if self._lock is None or self._lock_loop is not loop:
            self._lock = asyncio.Lock()
            self._lock_loop = loop
        return self._lock

    @property
    def available(self) -> bool:
        return bool(self._inner.available)

    @property
    def busy(self) -> bool:
        return self._lock is not None and self._lock.locked()

    async def sign(self, message: bytes) -> Optional[bytes]:
        """Request a signature. None means the user cancelled.

        Raises SigningUnavailableError before prompting if the bridge is absent.
        """
        if not self.available:
            raise SigningUnavailableError()
        async with self._loop_lock():
            signature = await self._inner.sign(bytes(message))
        if signature is None:
            logger.info("Hardware signing request cancelled by user")
            return None
        return bytes(signature)


_SERIALIZED_SIGNERS: "weakref.WeakValueDictionary[int, SerializedSigner]" = weakref.WeakValueDictionary()


def coerce_signer(obj: Any) -> SerializedSigner:
    """Coerce a supported object into a SerializedSigner.

    Raw signers and keypairs map to one shared SerializedSigner per object,
    so every caller queues on the same lock for the same device.
    """
    if obj is None:
        raise TypeError("signer is None")
    if isinstance(obj, SerializedSigner):
        return obj
    if not isinstance(obj, (Ed25519KeyPair, HardwareSigner)):
        raise TypeError(f"Unsupported signer type: {type(obj)}")

    # Keyed by id(): the cached wrapper holds obj, so the id stays valid while
    # the entry exists.
    serialized = _SERIALIZED_SIGNERS.get(id(obj))
    if serialized is None:
        inner = InProcessWalletSigner(obj) if isinstance(obj, Ed25519KeyPair) else obj
        serialized = SerializedSigner(inner)
        _SERIALIZED_SIGNERS[id(obj)] = serialized
    return serialized


def build_signer_from_env(
    base_signer: Any = None,
    *,
    mode_env: str = "SIGNER_MODE",
    cmd_env: str = "SIGNER_CMD",
    timeout_env: str = "SIGNER_TIMEOUT_SECONDS",
) -> SerializedSigner:
    """Build a signer based on environment configuration.

    - SIGNER_MODE=file (default): use base_signer (a keypair or HardwareSigner).
    - SIGNER_MODE=external: use ExternalCommandWalletSigner with SIGNER_CMD.
    """
    mode = (os.getenv(mode_env, "") or "file").strip().lower()

    if mode in ("file", "inproc", "in-process", "software"):
        return coerce_signer(base_signer)

    if mode in ("external", "cmd", "command"):
        cmd = (os.getenv(cmd_env, "") or "").strip()
        if not cmd:
            raise RuntimeError(f"{cmd_env} must be set when {mode_env}=external")
        tout = (os.getenv(timeout_env, "") or "").strip()
        timeout = 30.0
        if tout:
            try:
                timeout = float(tout)
            except ValueError:
                raise RuntimeError(f"{timeout_env} must be a number (seconds)")
        return SerializedSigner(ExternalCommandWalletSigner(signing_cmd=cmd, timeout_seconds=timeout))

    raise RuntimeError(f"Unsupported {mode_env}={mode!r}; expected file|external")
