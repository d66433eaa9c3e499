"""
VeilKYC Confidential Task Client

Drives the remote confidential-execution protocol:

    protect(payload)  ->  grant_access(app, user)  ->  execute(app, workerpool)
                                                            │
                                                  result JSON (attestation)

The backend is an explicit async collaborator (``ConfidentialBackend``); the
client never inspects anything beyond the three calls it defines. Network
parameters (workerpool, subgraph, IPFS endpoints) come from a profile keyed
by chain ID.

Supported Networks:
    - 421614  arbitrum-sepolia-testnet  (primary, experimental)
    - 42161   arbitrum-mainnet
    Unknown chain IDs fall back to the testnet profile.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import asyncio
import json
import os
import pathlib
import secrets
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Protocol, Set, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from veilkyc.commitment import canonical_digest
from veilkyc.enclave import EnclaveSigner
from veilkyc.errors import (
    AccessDeniedError,
    BackendDenied,
    BackendUnavailableError,
    ConfidentialBackendError,
    ExecutionError,
    ProtectionError,
    ResultParseError,
)
from veilkyc.hardening import Validators
from veilkyc.models import AttestationResult, ProtectedDataHandle, TaskResult
from veilkyc.observability import KycLogger, LogContext, PipelineLayer, default_context
from veilkyc.worker import COMPUTED_FILENAME, KycWorker, serialize_protected_data


# =============================================================================
# NETWORK PROFILES
# =============================================================================

TESTNET_CHAIN_ID = 421614
MAINNET_CHAIN_ID = 42161


@dataclass(frozen=True)
class NetworkProfile:
    chain_id: int
    name: str
    workerpool_address: str
    subgraph_url: str
    ipfs_gateway: str
    ipfs_upload_url: str
    is_experimental: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "name": self.name,
            "workerpool_address": self.workerpool_address,
            "subgraph_url": self.subgraph_url,
            "ipfs_gateway": self.ipfs_gateway,
            "ipfs_upload_url": self.ipfs_upload_url,
            "is_experimental": self.is_experimental,
        }


ARBITRUM_SEPOLIA = NetworkProfile(
    chain_id=TESTNET_CHAIN_ID,
    name="arbitrum-sepolia-testnet",
    workerpool_address="0xB967057a21dc6A66A29721d96b8Aa7454B7c383F",
    subgraph_url=(
        "https://thegraph.arbitrum-sepolia-testnet.iex.ec/api/subgraphs/id/"
        "5YjRPLtjS6GH6bB4yY55Qg4HzwtRGQ8TaHtGf9UBWWd"
    ),
    ipfs_gateway="https://ipfs-gateway.arbitrum-sepolia-testnet.iex.ec",
    ipfs_upload_url="https://ipfs-upload.arbitrum-sepolia-testnet.iex.ec",
    is_experimental=True,
)

ARBITRUM_MAINNET = NetworkProfile(
    chain_id=MAINNET_CHAIN_ID,
    name="arbitrum-mainnet",
    workerpool_address="0x2C06263943180Cc024dAFfeEe15612DB6e5fD248",
    subgraph_url=(
        "https://thegraph.arbitrum.iex.ec/api/subgraphs/id/"
        "Ep5zs5zVr4tDiVuQJepUu51e5eWYJpka624X4DMBxe3u"
    ),
    ipfs_gateway="https://ipfs-gateway.arbitrum-mainnet.iex.ec",
    ipfs_upload_url="https://ipfs-upload.arbitrum-mainnet.iex.ec",
)

NETWORK_PROFILES: Dict[int, NetworkProfile] = {
    TESTNET_CHAIN_ID: ARBITRUM_SEPOLIA,
    MAINNET_CHAIN_ID: ARBITRUM_MAINNET,
}


def get_network_profile(chain_id: int, logger: Optional[KycLogger] = None) -> NetworkProfile:
    """Profile for ``chain_id``. Unknown IDs fail closed to the testnet profile."""
    profile = NETWORK_PROFILES.get(chain_id)
    if profile is None:
        (logger or default_context().get_logger("network", PipelineLayer.CONFIDENTIAL)).warning(
            "Unknown chain ID, falling back to testnet profile",
            chain_id=chain_id,
            profile=ARBITRUM_SEPOLIA.name,
        )
        return ARBITRUM_SEPOLIA
    return profile


# =============================================================================
# BACKEND INTERFACE
# =============================================================================

class ConfidentialBackend(Protocol):
    """
    Confidential-computation backend.

    Implementations raise ``BackendDenied`` for a policy refusal; any other
    exception is treated as a transport or execution failure.
    """

    async def protect_data(self, data: Dict[str, Any], name: str) -> Dict[str, Any]:
        """Encrypt and register ``data``. Returns at least ``{"address": ...}``."""
        ...

    async def grant_access(
        self,
        protected_data: str,
        authorized_app: str,
        authorized_user: str,
    ) -> Any:
        ...

    async def process_protected_data(
        self,
        protected_data: str,
        app: str,
        workerpool: str,
    ) -> Dict[str, Any]:
        """Run ``app`` over the data. Returns ``{"result": <json string>, "task_id"?: ...}``."""
        ...


# =============================================================================
# CLIENT
# =============================================================================

def protected_data_name(owner_id: str) -> str:
    return f"KYC Data for {owner_id[:6]}...{owner_id[-4:]}"


class ConfidentialTaskClient:
    """
    Client for one confidential backend on one network.

    Steps are sequential per handle: a second ``execute`` on a handle whose
    first execution has not settled is refused.
    """

    def __init__(
        self,
        backend: ConfidentialBackend,
        app_address: str,
        chain_id: int = TESTNET_CHAIN_ID,
        workerpool_address: Optional[str] = None,
        log_context: Optional[LogContext] = None,
    ):
        self.backend = backend
        self.app_address = app_address
        self.logger = (log_context or default_context()).get_logger(
            "task_client", PipelineLayer.CONFIDENTIAL
        )
        self.profile = get_network_profile(chain_id, self.logger)
        self.workerpool_address = workerpool_address or self.profile.workerpool_address
        self._executing: Set[str] = set()

    @staticmethod
    def _validate_payload(payload: Any) -> Dict[str, Any]:
        if not isinstance(payload, Mapping) or not payload:
            raise ProtectionError("Payload must be a non-empty mapping")
        clean: Dict[str, Any] = {}
        for key, value in payload.items():
            if not isinstance(key, str) or not key:
                raise ProtectionError(f"Invalid payload key: {key!r}", field=str(key))
            if value is None or value == "":
                raise ProtectionError(f"Invalid data for field {key}: empty", field=key)
            if not isinstance(value, (str, int, bool)):
                raise ProtectionError(
                    f"Invalid data type for field {key}: {type(value).__name__}",
                    field=key,
                )
            clean[key] = value
        return clean

    async def protect(
        self,
        payload: Mapping[str, Any],
        owner_id: str,
        data_hash: Optional[str] = None,
    ) -> ProtectedDataHandle:
        """Register the payload with the backend and return its handle."""
        owner = Validators.validate_address(owner_id, "ownerId")
        if not owner.is_valid:
            raise ProtectionError(f"Invalid owner: {owner.errors[0].message}", field="ownerId")
        data = self._validate_payload(payload)
        name = protected_data_name(owner.sanitized_value)

        try:
            result = await self.backend.protect_data(data, name)
        except BackendDenied as e:
            raise ProtectionError(f"Backend rejected the payload: {e}") from e
        except Exception as e:
            self.logger.error("Data protection failed", error_code=ProtectionError.code, error=str(e))
            raise ProtectionError(f"Data protection failed: {e}") from e

        address = result.get("address") if isinstance(result, Mapping) else None
        if not address:
            raise ProtectionError("Backend returned no protected-data address")

        handle = ProtectedDataHandle(
            address=str(address),
            data_hash=data_hash or canonical_digest(data),
        )
        self.logger.info("Data protected", protected_data=handle.address)
        return handle

    async def grant_access(
        self,
        handle: ProtectedDataHandle,
        authorized_app: str,
        authorized_user: str,
    ) -> bool:
        """False on a backend denial; BackendUnavailableError on transport failure."""
        try:
            await self.backend.grant_access(handle.address, authorized_app, authorized_user.lower())
        except BackendDenied as e:
            self.logger.warning(
                "Access grant denied",
                protected_data=handle.address,
                app=authorized_app,
                reason=str(e),
            )
            return False
        except Exception as e:
            self.logger.error(
                "Access grant failed",
                error_code=BackendUnavailableError.code,
                protected_data=handle.address,
                error=str(e),
            )
            raise BackendUnavailableError(f"Access grant failed: {e}") from e

        self.logger.info("Access granted", protected_data=handle.address, app=authorized_app)
        return True

    async def execute(
        self,
        handle: ProtectedDataHandle,
        app: Optional[str] = None,
        workerpool: Optional[str] = None,
    ) -> TaskResult:
        """Run the confidential app over ``handle`` and parse its attestation."""
        if handle.address in self._executing:
            raise ExecutionError(
                "An execution is already in progress for this protected data",
                protected_data=handle.address,
            )
        app = app or self.app_address
        workerpool = workerpool or self.workerpool_address

        self._executing.add(handle.address)
        try:
            self.logger.info(
                "Starting confidential task",
                protected_data=handle.address,
                app=app,
                workerpool=workerpool,
            )
            try:
                response = await self.backend.process_protected_data(handle.address, app, workerpool)
            except ConfidentialBackendError as e:
                if isinstance(e, ExecutionError):
                    raise
                raise ExecutionError(f"Confidential task failed: {e.message}") from e
            except Exception as e:
                self.logger.error(
                    "Confidential task failed",
                    error_code=ExecutionError.code,
                    protected_data=handle.address,
                    error=str(e),
                )
                raise ExecutionError(f"Confidential task failed: {e}") from e
        finally:
            self._executing.discard(handle.address)

        if not isinstance(response, Mapping) or "result" not in response:
            raise ResultParseError("Backend response carries no result")
        attestation = AttestationResult.from_json(response["result"])
        task_id = str(response.get("task_id") or handle.address)
        self.logger.info("Confidential task completed", task_id=task_id, result=attestation.is_valid)
        return TaskResult(task_id=task_id, result=attestation)

    async def run(self, payload: Mapping[str, Any], owner_id: str) -> TaskResult:
        """protect, grant, execute."""
        handle = await self.protect(payload, owner_id)
        if not await self.grant_access(handle, self.app_address, owner_id):
            raise AccessDeniedError("Backend denied access to the protected data")
        return await self.execute(handle)


# =============================================================================
# LOCAL ENCLAVE BACKEND
# =============================================================================

@dataclass
class _ProtectedRecord:
    name: str
    nonce: bytes
    ciphertext: bytes
    created_at: datetime


class LocalEnclaveBackend:
    """
    In-process stand-in for a confidential backend.

    Payloads are serialized into protected-data archives and sealed with
    AES-256-GCM under a key that never leaves this object. Execution decrypts
    into a private temporary directory and runs the worker there.
    """

    DATASET_FILENAME = "protected-data.zip"

    def __init__(
        self,
        signer: Optional[EnclaveSigner] = None,
        sanctioned_digests: Optional[Iterable[str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        log_context: Optional[LogContext] = None,
    ):
        self.signer = signer or EnclaveSigner.generate()
        self.sanctioned_digests = list(sanctioned_digests) if sanctioned_digests is not None else None
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._log_context = log_context or default_context()
        self.logger = self._log_context.get_logger("local_enclave", PipelineLayer.CONFIDENTIAL)
        self._key = AESGCM.generate_key(bit_length=256)
        self._records: Dict[str, _ProtectedRecord] = {}
        self._grants: Set[Tuple[str, str, str]] = set()

    def _seal(self, plaintext: bytes, address: str) -> Tuple[bytes, bytes]:
        nonce = os.urandom(12)
        return nonce, AESGCM(self._key).encrypt(nonce, plaintext, address.encode())

    def _open(self, address: str) -> bytes:
        record = self._records[address]
        try:
            return AESGCM(self._key).decrypt(record.nonce, record.ciphertext, address.encode())
        except InvalidTag as e:
            raise ExecutionError("Protected data failed authentication", protected_data=address) from e

    async def protect_data(self, data: Dict[str, Any], name: str) -> Dict[str, Any]:
        try:
            archive = serialize_protected_data(data)
        except ValueError as e:
            raise BackendDenied(str(e)) from e
        address = "0x" + secrets.token_hex(20)
        nonce, ciphertext = self._seal(archive, address)
        self._records[address] = _ProtectedRecord(name, nonce, ciphertext, self.clock())
        self.logger.debug("Protected data registered", protected_data=address, size=len(ciphertext))
        return {"address": address, "name": name}

    async def grant_access(self, protected_data: str, authorized_app: str, authorized_user: str) -> None:
        if protected_data not in self._records:
            raise BackendDenied(f"Unknown protected data {protected_data}")
        self._grants.add((protected_data, authorized_app.lower(), authorized_user.lower()))

    def is_granted(self, protected_data: str, app: str) -> bool:
        return any(
            g[0] == protected_data and g[1] == app.lower()
            for g in self._grants
        )

    def _worker_env(self, in_dir: pathlib.Path, out_dir: pathlib.Path, task_id: str) -> Dict[str, str]:
        env = {
            "IEXEC_IN": str(in_dir),
            "IEXEC_OUT": str(out_dir),
            "IEXEC_DATASET_FILENAME": self.DATASET_FILENAME,
            "IEXEC_INPUT_FILES_NUMBER": "0",
            "IEXEC_TASK_ID": task_id,
            "IEXEC_APP_DEVELOPER_SECRET": json.dumps(self.signer.to_jwk()),
        }
        if self.sanctioned_digests is not None:
            env["IEXEC_REQUESTER_SECRET_1"] = json.dumps(self.sanctioned_digests)
        return env

    def _run_task(self, protected_data: str, task_id: str) -> str:
        archive = self._open(protected_data)
        with tempfile.TemporaryDirectory(prefix="veilkyc-task-") as tmp:
            in_dir = pathlib.Path(tmp) / "in"
            out_dir = pathlib.Path(tmp) / "out"
            in_dir.mkdir()
            out_dir.mkdir()
            (in_dir / self.DATASET_FILENAME).write_bytes(archive)

            worker = KycWorker(
                self._worker_env(in_dir, out_dir, task_id),
                now=self.clock(),
                log_context=self._log_context,
            )
            computed = worker.run()
            if "error-message" in computed:
                raise ExecutionError(f"Worker failed: {computed['error-message']}", task_id=task_id)
            if not (out_dir / COMPUTED_FILENAME).exists():
                raise ExecutionError("Worker wrote no completion descriptor", task_id=task_id)

            report = json.loads(pathlib.Path(computed["deterministic-output-path"]).read_text(encoding="utf-8"))
        return json.dumps(report.get("attestation"))

    async def process_protected_data(self, protected_data: str, app: str, workerpool: str) -> Dict[str, Any]:
        if protected_data not in self._records:
            raise BackendDenied(f"Unknown protected data {protected_data}")
        if not self.is_granted(protected_data, app):
            raise BackendDenied(f"App {app} is not authorized for {protected_data}")

        task_id = "0x" + secrets.token_hex(32)
        self.logger.info("Running confidential task", task_id=task_id, workerpool=workerpool)
        result = await asyncio.to_thread(self._run_task, protected_data, task_id)
        return {"result": result, "task_id": task_id}


# =============================================================================
# VERIFICATION STATUS LOOKUP
# =============================================================================

Transport = Callable[[str, bytes, Dict[str, str]], bytes]

VERIFICATION_QUERY = """
query Verification($id: ID!) {
  verification(id: $id) {
    isVerified
    expiryTimestamp
  }
}
""".strip()


def _urllib_transport(url: str, body: bytes, headers: Dict[str, str]) -> bytes:
    request = urllib.request.Request(url, data=body, headers=headers, method="POST")
    with urllib.request.urlopen(request, timeout=10) as resp:
        return resp.read()


def fetch_verification_status(
    subject: str,
    profile: NetworkProfile,
    transport: Optional[Transport] = None,
    now: Optional[datetime] = None,
    log_context: Optional[LogContext] = None,
) -> Optional[bool]:
    """
    Ask the profile's subgraph whether ``subject`` holds a live verification.

    Returns None when the lookup fails or the answer is malformed.
    """
    logger = (log_context or default_context()).get_logger("status_lookup", PipelineLayer.CONFIDENTIAL)
    transport = transport or _urllib_transport
    body = json.dumps({
        "query": VERIFICATION_QUERY,
        "variables": {"id": subject.lower()},
    }).encode("utf-8")

    try:
        raw = transport(profile.subgraph_url, body, {"Content-Type": "application/json"})
        payload = json.loads(raw)
    except (urllib.error.URLError, OSError, ValueError) as e:
        logger.warning("Verification status lookup failed", subject=subject.lower(), error=str(e))
        return None

    if not isinstance(payload, dict) or payload.get("errors"):
        logger.warning("Subgraph returned errors", subject=subject.lower())
        return None
    data = payload.get("data")
    if not isinstance(data, dict):
        return None
    verification = data.get("verification")
    if verification is None:
        return False
    if not isinstance(verification, dict):
        return None

    verified = bool(verification.get("isVerified"))
    expiry = verification.get("expiryTimestamp")
    if verified and expiry is not None:
        now = now or datetime.now(timezone.utc)
        try:
            verified = int(expiry) > int(now.timestamp())
        except (TypeError, ValueError):
            return None
    return verified
