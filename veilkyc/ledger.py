"""
VeilKYC Ledger Boundary

The verifier contract is an external collaborator. This module fixes the
shape of the calls made to it, provides an in-memory double that enforces
the contract's rules, and wraps submission so that any failure surfaces as
``LedgerSubmissionError``.

Contract surface:
    submitProof(user, result, proofHash, enclaveSignature, expiryTimestamp)
    isVerified(user) -> bool
    getVerification(user) -> (isVerified, verificationTimestamp, proofHash, expiryTimestamp)
    revokeVerification(user)                                    owner only

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Union

from veilkyc.enclave import EnclaveSigner, verify_enclave_signature
from veilkyc.errors import LedgerSubmissionError
from veilkyc.models import AttestationResult, LedgerReceipt
from veilkyc.observability import LogContext, PipelineLayer, default_context

# One year
VERIFICATION_VALIDITY_PERIOD = 365 * 24 * 60 * 60

KYC_VERIFIER_ABI: List[Dict[str, Any]] = [
    {
        "name": "submitProof",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "result", "type": "bool"},
            {"name": "proofHash", "type": "bytes32"},
            {"name": "enclaveSignature", "type": "bytes"},
            {"name": "expiryTimestamp", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "name": "isVerified",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "getVerification",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [
            {"name": "isVerified", "type": "bool"},
            {"name": "verificationTimestamp", "type": "uint256"},
            {"name": "proofHash", "type": "bytes32"},
            {"name": "expiryTimestamp", "type": "uint256"},
        ],
    },
    {
        "name": "revokeVerification",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "user", "type": "address"}],
        "outputs": [],
    },
    {
        "name": "Verified",
        "type": "event",
        "inputs": [
            {"name": "user", "type": "address", "indexed": True},
            {"name": "proofHash", "type": "bytes32", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
]


class LedgerRevert(Exception):
    """The contract rejected a call."""


@dataclass(frozen=True)
class OnChainVerification:
    subject: str
    is_verified: bool
    verification_timestamp: int
    proof_hash: str
    expiry_timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userAddress": self.subject,
            "isVerified": self.is_verified,
            "verificationTimestamp": self.verification_timestamp,
            "proofHash": self.proof_hash,
            "expiryTimestamp": self.expiry_timestamp,
        }


class LedgerContract(Protocol):
    """Calls the pipeline makes against the verifier contract."""

    def submit_proof(
        self,
        subject: str,
        result: bool,
        proof_hash: str,
        enclave_signature: str,
        expiry_timestamp: int,
    ) -> str:
        """Returns the transaction hash."""
        ...

    def is_verified(self, subject: str) -> bool:
        ...

    def get_verification(self, subject: str) -> OnChainVerification:
        ...

    def revoke_verification(self, subject: str, caller: str) -> str:
        ...


class InMemoryLedger:
    """
    In-memory verifier contract.

    Enforces the contract rules: the signature must come from the trusted
    enclave, the result must be true, the expiry must be in the future and
    only the owner may revoke. Subjects are compared lower-cased.
    """

    def __init__(
        self,
        trusted_enclave: Union[str, EnclaveSigner],
        owner: str,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.trusted_enclave = trusted_enclave
        self.owner = owner.lower()
        self.clock = clock or time.time
        self._verifications: Dict[str, OnChainVerification] = {}
        self.events: List[Dict[str, Any]] = []
        self.transactions: Dict[str, Dict[str, Any]] = {}

    def _tx(self, function: str, **args: Any) -> str:
        tx_hash = "0x" + secrets.token_hex(32)
        self.transactions[tx_hash] = {"function": function, "args": args}
        return tx_hash

    def submit_proof(
        self,
        subject: str,
        result: bool,
        proof_hash: str,
        enclave_signature: str,
        expiry_timestamp: int,
    ) -> str:
        subject = subject.lower()
        now = int(self.clock())
        if not verify_enclave_signature(self.trusted_enclave, subject, result, proof_hash, enclave_signature):
            raise LedgerRevert("Invalid enclave signature")
        if not result:
            raise LedgerRevert("Verification result is false")
        if expiry_timestamp <= now:
            raise LedgerRevert("Expiry must be in the future")

        self._verifications[subject] = OnChainVerification(
            subject=subject,
            is_verified=True,
            verification_timestamp=now,
            proof_hash=proof_hash,
            expiry_timestamp=expiry_timestamp,
        )
        self.events.append({"event": "Verified", "user": subject, "proofHash": proof_hash, "timestamp": now})
        return self._tx(
            "submitProof",
            user=subject,
            result=result,
            proofHash=proof_hash,
            expiryTimestamp=expiry_timestamp,
        )

    def is_verified(self, subject: str) -> bool:
        record = self._verifications.get(subject.lower())
        return bool(record and record.is_verified and record.expiry_timestamp > int(self.clock()))

    def get_verification(self, subject: str) -> OnChainVerification:
        subject = subject.lower()
        record = self._verifications.get(subject)
        if record is None:
            return OnChainVerification(subject, False, 0, "0" * 64, 0)
        return record

    def revoke_verification(self, subject: str, caller: str) -> str:
        if caller.lower() != self.owner:
            raise LedgerRevert("Only the owner can revoke verifications")
        subject = subject.lower()
        record = self._verifications.get(subject)
        if record is None:
            raise LedgerRevert("No verification for subject")
        self._verifications[subject] = OnChainVerification(
            subject=subject,
            is_verified=False,
            verification_timestamp=record.verification_timestamp,
            proof_hash=record.proof_hash,
            expiry_timestamp=record.expiry_timestamp,
        )
        return self._tx("revokeVerification", user=subject)


class LedgerSubmitter:
    """Hands an attestation to the ledger and returns a receipt."""

    def __init__(
        self,
        contract: LedgerContract,
        validity_seconds: int = VERIFICATION_VALIDITY_PERIOD,
        clock: Optional[Callable[[], float]] = None,
        log_context: Optional[LogContext] = None,
    ):
        self.contract = contract
        self.validity_seconds = validity_seconds
        self.clock = clock or time.time
        self.logger = (log_context or default_context()).get_logger("submitter", PipelineLayer.LEDGER)

    def submit(self, subject: str, attestation: AttestationResult) -> LedgerReceipt:
        subject = subject.lower()
        expiry = int(self.clock()) + self.validity_seconds
        try:
            tx_hash = self.contract.submit_proof(
                subject,
                attestation.is_valid,
                attestation.proof_hash,
                attestation.enclave_signature,
                expiry,
            )
        except Exception as e:
            self.logger.error(
                "Ledger submission failed",
                error_code=LedgerSubmissionError.code,
                subject=subject,
                error=str(e),
            )
            raise LedgerSubmissionError(f"Ledger submission failed: {e}") from e

        self.logger.info("Verification submitted", subject=subject, tx_hash=tx_hash)
        return LedgerReceipt(
            tx_hash=tx_hash,
            subject=subject,
            proof_hash=attestation.proof_hash,
            expiry_timestamp=expiry,
        )
