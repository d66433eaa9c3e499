"""
VeilKYC Data Model

Value types that flow through the verification pipeline. Wire formats use
camelCase names; Python attributes use snake_case.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from veilkyc.errors import ResultParseError
from veilkyc.hardening import Validators
from veilkyc.schema import ATTESTATION_SCHEMA, validate_with_schema


class DocumentType(Enum):
    """Supported identity document types."""
    PASSPORT = "passport"
    NATIONAL_ID = "national_id"
    DRIVING_LICENSE = "driving_license"
    AADHAAR = "aadhaar"
    PAN_CARD = "pan_card"


@dataclass(frozen=True)
class IdentityRecord:
    """
    Private identity input.

    Constructed from validated input and consumed once by the pipeline.
    ``repr()`` shows only the document type.
    """
    document_type: DocumentType
    document_number: str = field(repr=False)
    full_name: str = field(repr=False)
    date_of_birth: date = field(repr=False)
    nationality: str = field(repr=False)
    expiry_date: date = field(repr=False)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], today: Optional[date] = None) -> "IdentityRecord":
        """Validate a raw mapping and build a record. Raises ValidationErrors."""
        result = Validators.validate_identity(data, today=today)
        result.raise_if_invalid()
        return cls(**result.sanitized_value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "documentType": self.document_type.value,
            "documentNumber": self.document_number,
            "fullName": self.full_name,
            "dateOfBirth": self.date_of_birth.isoformat(),
            "nationality": self.nationality,
            "expiryDate": self.expiry_date.isoformat(),
        }


@dataclass(frozen=True)
class ProofArtifact:
    """Proof value, ordered public signals and nullifier. Immutable."""
    proof: str
    public_signals: Tuple[str, ...]
    nullifier_hash: str
    circuit_id: str = ""
    seal: str = ""

    def __post_init__(self):
        object.__setattr__(self, "public_signals", tuple(self.public_signals))

    @property
    def is_success(self) -> bool:
        return bool(self.public_signals) and self.public_signals[0] == "1"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proof": self.proof,
            "publicSignals": list(self.public_signals),
            "nullifierHash": self.nullifier_hash,
            "circuitId": self.circuit_id,
            "seal": self.seal,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProofArtifact":
        signals = data.get("publicSignals", [])
        if not isinstance(signals, (list, tuple)):
            raise ValueError("publicSignals must be a list")
        return cls(
            proof=str(data.get("proof", "")),
            public_signals=tuple(str(s) for s in signals),
            nullifier_hash=str(data.get("nullifierHash", "")),
            circuit_id=str(data.get("circuitId", "")),
            seal=str(data.get("seal", "")),
        )


@dataclass
class ProtectedDataHandle:
    """Reference to data held by the confidential backend."""
    address: str
    data_hash: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Only set by the local encrypted-blob fallback.
    encrypted_data: Optional[str] = field(default=None, repr=False)

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "address": self.address,
            "dataHash": self.data_hash,
            "createdAt": self.created_at.isoformat(),
        }
        if self.encrypted_data is not None:
            d["encryptedData"] = self.encrypted_data
        return d


@dataclass(frozen=True)
class AttestationAttributes:
    is_adult: bool
    is_not_expired: bool
    is_not_sanctioned: bool

    def to_dict(self) -> Dict[str, bool]:
        return {
            "isAdult": self.is_adult,
            "isNotExpired": self.is_not_expired,
            "isNotSanctioned": self.is_not_sanctioned,
        }


@dataclass(frozen=True)
class AttestationResult:
    """
    Signed outcome of a confidential verification.

    ``enclave_signature`` is a hex Ed25519 signature by ``signer`` (a
    ``did:key``) over the canonical ``{subject, isValid, proofHash}``.
    """
    is_valid: bool
    timestamp: int
    proof_hash: str
    enclave_signature: str
    attributes: AttestationAttributes
    subject: str = ""
    signer: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "isValid": self.is_valid,
            "timestamp": self.timestamp,
            "proofHash": self.proof_hash,
            "enclaveSignature": self.enclave_signature,
            "attributes": self.attributes.to_dict(),
        }
        if self.subject:
            d["subject"] = self.subject
        if self.signer:
            d["signer"] = self.signer
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_dict(cls, data: Any) -> "AttestationResult":
        """Build from a decoded JSON object. Raises ResultParseError on a wrong shape."""
        errors = validate_with_schema(data, ATTESTATION_SCHEMA)
        if errors:
            raise ResultParseError("Result is not an attestation", errors=errors)
        attrs = data["attributes"]
        return cls(
            is_valid=data["isValid"],
            timestamp=data["timestamp"],
            proof_hash=data["proofHash"],
            enclave_signature=data["enclaveSignature"],
            attributes=AttestationAttributes(
                is_adult=attrs["isAdult"],
                is_not_expired=attrs["isNotExpired"],
                is_not_sanctioned=attrs["isNotSanctioned"],
            ),
            subject=data.get("subject", ""),
            signer=data.get("signer", ""),
        )

    @classmethod
    def from_json(cls, text: Any) -> "AttestationResult":
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        if not isinstance(text, str):
            raise ResultParseError(f"Result must be a JSON string, got {type(text).__name__}")
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ResultParseError(f"Result is not valid JSON: {e}") from e
        return cls.from_dict(data)


@dataclass(frozen=True)
class TaskResult:
    task_id: str
    result: AttestationResult


@dataclass(frozen=True)
class LedgerReceipt:
    tx_hash: str
    subject: str
    proof_hash: str
    expiry_timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "txHash": self.tx_hash,
            "subject": self.subject,
            "proofHash": self.proof_hash,
            "expiryTimestamp": self.expiry_timestamp,
        }


class SessionStatus(Enum):
    """Orchestrator states."""
    IDLE = "idle"
    ENCRYPTING = "encrypting"
    COMPUTING = "computing"
    VERIFYING = "verifying"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    FAILED = "failed"

    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    def is_active(self) -> bool:
        return self in (
            SessionStatus.ENCRYPTING,
            SessionStatus.COMPUTING,
            SessionStatus.VERIFYING,
            SessionStatus.SUBMITTING,
        )


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: SessionStatus
    to_state: SessionStatus
    timestamp: str
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp,
            "reason": self.reason,
        }


@dataclass
class VerificationSession:
    """Mutable orchestrator state. Mutated only by the orchestrator."""
    status: SessionStatus = SessionStatus.IDLE
    current_step_index: int = 0
    protected_data: Optional[ProtectedDataHandle] = None
    proof: Optional[ProofArtifact] = None
    attestation: Optional[AttestationResult] = None
    receipt: Optional[LedgerReceipt] = None
    error: Optional[str] = None
    error_detail: Optional[Dict[str, Any]] = None
    generation: int = 0
    transitions: List[StateTransition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "currentStepIndex": self.current_step_index,
            "protectedData": self.protected_data.to_dict() if self.protected_data else None,
            "proof": self.proof.to_dict() if self.proof else None,
            "attestation": self.attestation.to_dict() if self.attestation else None,
            "receipt": self.receipt.to_dict() if self.receipt else None,
            "error": self.error,
            "errorDetail": self.error_detail,
            "generation": self.generation,
            "transitions": [t.to_dict() for t in self.transitions],
        }
