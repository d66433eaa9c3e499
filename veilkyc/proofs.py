"""
VeilKYC Proof Generator

Builds attribute proofs from private identity data. Every date computation is
reduced to a boolean (or the public threshold) before it leaves this module;
only digests and "1"/"0" signals cross the privacy boundary.

Public signal layouts:
    age_verification    [isAboveMinimumAge, minimumAge, currentYear]
    document_validity   [isValid, hasMinimumValidity]
    nationality_check   [isNationalityValid, allowedNationalityHash]
    full_kyc            [isFullyValid, isAgeValid, isDocValid,
                         isNationalityValid, minimumAge]

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Tuple

from veilkyc.commitment import canonical_digest, derive_nullifier, digest
from veilkyc.errors import InvalidInputError
from veilkyc.hardening import parse_iso_date
from veilkyc.models import DocumentType, IdentityRecord, ProofArtifact
from veilkyc.observability import KycLogger, LogContext, PipelineLayer, default_context
from veilkyc.zkp import (
    Circuit,
    CircuitRegistry,
    CircuitType,
    ProvingBackend,
    SealedCommitmentBackend,
    create_standard_registry,
)

DEFAULT_MINIMUM_AGE = 18
MINIMUM_VALIDITY_DAYS = 30

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# DATE PREDICATES
# =============================================================================

def compute_age(date_of_birth: date, today: date) -> int:
    """Whole years elapsed. A birthday falling on ``today`` counts."""
    age = today.year - date_of_birth.year
    if (today.month, today.day) < (date_of_birth.month, date_of_birth.day):
        age -= 1
    return age


def days_until(expiry: date, today: date) -> int:
    return (expiry - today).days


def is_adult(date_of_birth: date, today: date, minimum_age: int = DEFAULT_MINIMUM_AGE) -> bool:
    return compute_age(date_of_birth, today) >= minimum_age


def is_document_valid(expiry: date, today: date) -> bool:
    return expiry > today


def has_minimum_validity(expiry: date, today: date, days: int = MINIMUM_VALIDITY_DAYS) -> bool:
    return days_until(expiry, today) > days


def nationality_allowed(nationality: str, allowed: Optional[Iterable[str]]) -> bool:
    """Exact membership. No list, or an empty one, allows everything."""
    allowed = list(allowed or [])
    if not allowed:
        return True
    return nationality in allowed


def _parse(value: Any, field_name: str) -> date:
    try:
        return parse_iso_date(value)
    except ValueError as e:
        raise InvalidInputError(f"Unparseable {field_name}: {value!r}", field=field_name) from e


# =============================================================================
# GENERATOR
# =============================================================================

class ProofGenerator:
    """
    Attribute proofs over a proving backend.

    ``clock`` supplies "now"; all date comparisons use its UTC date.
    """

    def __init__(
        self,
        backend: Optional[ProvingBackend] = None,
        registry: Optional[CircuitRegistry] = None,
        clock: Optional[Clock] = None,
        log_context: Optional[LogContext] = None,
        min_validity_days: int = MINIMUM_VALIDITY_DAYS,
    ):
        self.registry = registry or (backend.registry if isinstance(backend, SealedCommitmentBackend)
                                     else create_standard_registry())
        self.backend = backend or SealedCommitmentBackend(self.registry)
        self.clock = clock or utc_now
        self.min_validity_days = min_validity_days
        self.logger: KycLogger = (log_context or default_context()).get_logger(
            "proof_generator", PipelineLayer.PROOF
        )

    def today(self) -> date:
        now = self.clock()
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        return now.date()

    def _circuit(self, circuit_type: CircuitType) -> Circuit:
        circuit = self.registry.get_circuit_by_type(circuit_type)
        if circuit is None:
            raise ValueError(f"Circuit not registered: {circuit_type.value}")
        return circuit

    def prove_age(
        self,
        date_of_birth: Any,
        minimum_age: int,
        subject_id: str,
    ) -> ProofArtifact:
        """Prove age >= ``minimum_age`` without exposing the birth date."""
        dob = _parse(date_of_birth, "dateOfBirth")
        if isinstance(minimum_age, bool) or not isinstance(minimum_age, int) or minimum_age < 0:
            raise InvalidInputError(f"Invalid minimum age: {minimum_age!r}", field="minimumAge")
        today = self.today()
        above = is_adult(dob, today, minimum_age)

        artifact = self.backend.generate(
            self._circuit(CircuitType.AGE_VERIFICATION),
            private_inputs={
                "birthYear": dob.year,
                "birthMonth": dob.month,
                "birthDay": dob.day,
                "currentMonth": today.month,
                "currentDay": today.day,
            },
            public_inputs={
                "isAboveMinimumAge": above,
                "minimumAge": minimum_age,
                "currentYear": today.year,
            },
            nullifier_for=lambda proof: derive_nullifier(proof, subject_id),
        )
        self.logger.debug("Age proof generated", operation="prove_age", result=above)
        return artifact

    def prove_document_validity(
        self,
        expiry_date: Any,
        document_type: Any,
        subject_id: str,
    ) -> ProofArtifact:
        """Prove the document is unexpired, and whether more than ``min_validity_days`` remain."""
        expiry = _parse(expiry_date, "expiryDate")
        doc_type = document_type.value if isinstance(document_type, DocumentType) else str(document_type)
        today = self.today()
        valid = is_document_valid(expiry, today)
        minimum = has_minimum_validity(expiry, today, self.min_validity_days)

        artifact = self.backend.generate(
            self._circuit(CircuitType.DOCUMENT_VALIDITY),
            private_inputs={
                "documentType": doc_type,
                "expiryYear": expiry.year,
                "expiryMonth": expiry.month,
                "evaluatedOn": today,
            },
            public_inputs={
                "isValid": valid,
                "hasMinimumValidity": minimum,
            },
            nullifier_for=lambda proof: derive_nullifier(proof, subject_id),
        )
        self.logger.debug(
            "Document validity proof generated",
            operation="prove_document_validity",
            result=valid,
        )
        return artifact

    def prove_nationality(
        self,
        nationality: str,
        allowed_nationalities: Optional[Iterable[str]],
        subject_id: str,
    ) -> ProofArtifact:
        """Prove allow-list membership without exposing the nationality."""
        if not isinstance(nationality, str) or not nationality:
            raise InvalidInputError("Nationality is required", field="nationality")
        allowed = sorted(set(allowed_nationalities or []))
        ok = nationality_allowed(nationality, allowed)
        # "0" when any nationality is allowed
        allowed_hash = canonical_digest(allowed) if allowed else "0"

        return self.backend.generate(
            self._circuit(CircuitType.NATIONALITY_CHECK),
            private_inputs={"nationality": nationality},
            public_inputs={
                "isNationalityValid": ok,
                "allowedNationalityHash": allowed_hash,
            },
            nullifier_for=lambda proof: derive_nullifier(proof, subject_id),
        )

    def prove_full_kyc(
        self,
        record: Any,
        subject_id: str,
        minimum_age: int = DEFAULT_MINIMUM_AGE,
        allowed_nationalities: Optional[Iterable[str]] = None,
    ) -> ProofArtifact:
        """
        Combined proof: age AND document validity AND nationality.

        The nullifier is derived from the document type and number only, so
        repeated proofs for the same document and subject always collide.
        """
        doc_type, doc_number, dob, nationality, expiry = _record_fields(record)

        age_proof = self.prove_age(dob, minimum_age, subject_id)
        doc_proof = self.prove_document_validity(expiry, doc_type, subject_id)
        nationality_ok = nationality_allowed(nationality, allowed_nationalities)

        age_ok = age_proof.is_success
        doc_ok = doc_proof.is_success
        fully_valid = age_ok and doc_ok and nationality_ok
        timestamp = int(self.clock().timestamp() * 1000)

        nullifier = derive_nullifier(f"{doc_type}:{digest(doc_number)}", subject_id)
        artifact = self.backend.generate(
            self._circuit(CircuitType.FULL_KYC),
            private_inputs={
                "ageProof": age_proof.proof,
                "docProof": doc_proof.proof,
                "nationalityValid": nationality_ok,
                "timestamp": timestamp,
            },
            public_inputs={
                "isFullyValid": fully_valid,
                "isAgeValid": age_ok,
                "isDocValid": doc_ok,
                "isNationalityValid": nationality_ok,
                "minimumAge": minimum_age,
            },
            nullifier_for=lambda _proof: nullifier,
        )
        self.logger.info(
            "Full KYC proof generated",
            operation="prove_full_kyc",
            result=fully_valid,
            nullifier=nullifier,
        )
        return artifact


def _record_fields(record: Any) -> Tuple[str, str, Any, str, Any]:
    """(documentType, documentNumber, dateOfBirth, nationality, expiryDate)."""
    if isinstance(record, IdentityRecord):
        return (
            record.document_type.value,
            record.document_number,
            record.date_of_birth,
            record.nationality,
            record.expiry_date,
        )
    if not isinstance(record, Mapping):
        raise InvalidInputError(f"Expected identity record, got {type(record).__name__}")

    missing = [
        k for k in ("documentType", "documentNumber", "dateOfBirth", "nationality", "expiryDate")
        if record.get(k) in (None, "")
    ]
    if missing:
        raise InvalidInputError(f"Missing identity fields: {', '.join(missing)}", fields=missing)
    doc_type = record["documentType"]
    if isinstance(doc_type, DocumentType):
        doc_type = doc_type.value
    return (
        str(doc_type),
        str(record["documentNumber"]),
        record["dateOfBirth"],
        str(record["nationality"]),
        record["expiryDate"],
    )
