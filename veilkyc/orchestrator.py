"""
VeilKYC Verification Orchestrator

Drives one subject through the pipeline as an async state machine:

    idle ─► encrypting ─► computing ─► verifying ─► submitting ─► completed
               │              │            │             │
               └──────────────┴─────┬──────┴─────────────┘
                                    ▼
                                  failed

    encrypting   commitment + protected-data handle (or local encrypted blob)
    computing    full KYC proof, then the local verifier gate
    verifying    confidential execution (or local simulation) -> attestation
    submitting   ledger submission -> receipt

``completed`` and ``failed`` are terminal until ``reset()``. The step index
only moves forward on success; ``failed`` keeps the index of the failed step.

Each ``reset()`` bumps the session generation. A run whose session has been
replaced by a reset discards whatever its in-flight calls return.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import asyncio
import base64
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Set, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from veilkyc.commitment import canonical_json, derive_commitment
from veilkyc.config import TESTNET_CHAIN_ID, VeilKycConfig
from veilkyc.confidential import ConfidentialBackend, ConfidentialTaskClient
from veilkyc.enclave import EnclaveSigner, build_attestation, verify_attestation
from veilkyc.errors import (
    AccessDeniedError,
    AttestationInvalidError,
    NetworkMismatchError,
    ProofRejectedError,
    SessionStateError,
    SubjectBindingError,
    VeilKycError,
)
from veilkyc.ledger import LedgerSubmitter
from veilkyc.models import (
    AttestationResult,
    IdentityRecord,
    ProtectedDataHandle,
    SessionStatus,
    StateTransition,
    VerificationSession,
)
from veilkyc.observability import (
    LogContext,
    PipelineLayer,
    default_context,
    generate_correlation_id,
    set_correlation_id,
)
from veilkyc.proofs import DEFAULT_MINIMUM_AGE, ProofGenerator, is_adult, is_document_valid, utc_now
from veilkyc.verifier import ProofVerifier
from veilkyc.zkp import CircuitType


STEPS: List[str] = [
    "Connect Wallet",
    "Submit Identity",
    "Encrypt Data",
    "Generate ZK Proof",
    "TEE Verification",
    "Submit On-Chain",
    "Complete",
]

STEP_INDEX: Dict[SessionStatus, int] = {
    SessionStatus.IDLE: 0,
    SessionStatus.ENCRYPTING: 2,
    SessionStatus.COMPUTING: 3,
    SessionStatus.VERIFYING: 4,
    SessionStatus.SUBMITTING: 5,
    SessionStatus.COMPLETED: 6,
}

VALID_TRANSITIONS: Dict[SessionStatus, Set[SessionStatus]] = {
    SessionStatus.IDLE: {SessionStatus.ENCRYPTING, SessionStatus.FAILED},
    SessionStatus.ENCRYPTING: {SessionStatus.COMPUTING, SessionStatus.FAILED},
    SessionStatus.COMPUTING: {SessionStatus.VERIFYING, SessionStatus.FAILED},
    SessionStatus.VERIFYING: {SessionStatus.SUBMITTING, SessionStatus.FAILED},
    SessionStatus.SUBMITTING: {SessionStatus.COMPLETED, SessionStatus.FAILED},
    # Terminal until reset()
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


def render_document(record: IdentityRecord) -> str:
    """Labelled plain-text rendering of the document the worker checks the layout of."""
    return "\n".join([
        record.document_type.value.upper().replace("_", " "),
        f"NUMBER: {record.document_number}",
        f"NAME: {record.full_name}",
        f"DOB: {record.date_of_birth.strftime('%d/%m/%Y')}",
        f"EXPIRY: {record.expiry_date.strftime('%d/%m/%Y')}",
    ])


def confidential_payload(
    record: IdentityRecord,
    subject: str,
    minimum_age: int = DEFAULT_MINIMUM_AGE,
) -> Dict[str, Any]:
    """Flat payload handed to the confidential backend."""
    return {
        "documentData": render_document(record),
        "documentType": record.document_type.value,
        "documentNumber": record.document_number,
        "dateOfBirth": record.date_of_birth.isoformat(),
        "expiryDate": record.expiry_date.isoformat(),
        "nationality": record.nationality,
        "userId": subject.lower(),
        "minimumAge": minimum_age,
    }


# =============================================================================
# VERIFICATION STRATEGIES
# =============================================================================

class VerificationStrategy(Protocol):
    """How the encrypting and verifying steps are carried out."""

    name: str

    async def protect(self, record: IdentityRecord, subject: str, commitment: str) -> ProtectedDataHandle:
        ...

    async def verify(self, handle: ProtectedDataHandle, record: IdentityRecord, subject: str) -> AttestationResult:
        ...


class ConfidentialVerification:
    """Protect, grant and execute through a confidential task client."""

    name = "confidential"

    def __init__(self, client: ConfidentialTaskClient, minimum_age: int = DEFAULT_MINIMUM_AGE):
        self.client = client
        self.minimum_age = minimum_age

    async def protect(self, record: IdentityRecord, subject: str, commitment: str) -> ProtectedDataHandle:
        payload = confidential_payload(record, subject, self.minimum_age)
        return await self.client.protect(payload, subject, data_hash=commitment)

    async def verify(self, handle: ProtectedDataHandle, record: IdentityRecord, subject: str) -> AttestationResult:
        if not await self.client.grant_access(handle, self.client.app_address, subject):
            raise AccessDeniedError("Backend denied access to the protected data", protected_data=handle.address)
        task = await self.client.execute(handle)
        return task.result


class SimulatedVerification:
    """
    Local stand-in when no confidential backend is reachable.

    The record is sealed into a local AES-GCM blob under a throwaway key and
    the adult/expiry checks are applied directly. The attestation is still
    signed, by the configured enclave signer.
    """

    name = "simulated"

    def __init__(
        self,
        signer: EnclaveSigner,
        minimum_age: int = DEFAULT_MINIMUM_AGE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.signer = signer
        self.minimum_age = minimum_age
        self.clock = clock or utc_now

    async def protect(self, record: IdentityRecord, subject: str, commitment: str) -> ProtectedDataHandle:
        key = AESGCM.generate_key(bit_length=256)
        nonce = os.urandom(12)
        ciphertext = AESGCM(key).encrypt(nonce, canonical_json(record.to_dict()), None)
        return ProtectedDataHandle(
            address=subject.lower(),
            data_hash=commitment,
            created_at=self.clock(),
            encrypted_data=base64.b64encode(nonce + ciphertext).decode("ascii"),
        )

    async def verify(self, handle: ProtectedDataHandle, record: IdentityRecord, subject: str) -> AttestationResult:
        now = self.clock()
        today = now.astimezone(timezone.utc).date() if now.tzinfo else now.date()
        return build_attestation(
            subject=subject,
            document_type=record.document_type.value,
            adult=is_adult(record.date_of_birth, today, self.minimum_age),
            not_expired=is_document_valid(record.expiry_date, today),
            not_sanctioned=True,
            signer=self.signer,
            now=now,
        )


def load_enclave_signer(config: VeilKycConfig, log_context: Optional[LogContext] = None) -> EnclaveSigner:
    """Signer from ``enclave.key_path``, or an ephemeral one."""
    key_path = config.enclave.key_path.get()
    if key_path:
        return EnclaveSigner.from_file(key_path)
    (log_context or default_context()).get_logger("strategy", PipelineLayer.ENCLAVE).warning(
        "No enclave key configured, using an ephemeral signing key"
    )
    return EnclaveSigner.generate()


def build_strategy(
    config: VeilKycConfig,
    backend: Optional[ConfidentialBackend] = None,
    signer: Optional[EnclaveSigner] = None,
    clock: Optional[Callable[[], datetime]] = None,
    log_context: Optional[LogContext] = None,
) -> VerificationStrategy:
    """
    Strategy selected by ``verification.mode``.

    Confidential mode without a backend falls back to the simulation.
    """
    minimum_age = config.verification.minimum_age.get()
    mode = config.verification.mode.get()
    logger = (log_context or default_context()).get_logger("strategy", PipelineLayer.ORCHESTRATOR)

    if mode == "confidential" and backend is not None:
        client = ConfidentialTaskClient(
            backend,
            app_address=config.confidential.app_address.get(),
            chain_id=config.network.chain_id.get(),
            workerpool_address=config.confidential.workerpool_address.get() or None,
            log_context=log_context,
        )
        return ConfidentialVerification(client, minimum_age)

    if mode == "confidential":
        logger.warning("No confidential backend reachable, using local simulation")
    signer = signer or load_enclave_signer(config, log_context)
    return SimulatedVerification(signer, minimum_age, clock)


# =============================================================================
# ORCHESTRATOR
# =============================================================================

class VerificationOrchestrator:
    """
    State machine for one subject.

    Example:
        orchestrator = VerificationOrchestrator(
            subject="0xabc...", strategy=strategy,
            generator=generator, verifier=verifier, submitter=submitter,
        )
        session = await orchestrator.start_verification(identity)
        if session.status is SessionStatus.COMPLETED:
            print(session.receipt.tx_hash)
    """

    def __init__(
        self,
        subject: Optional[str],
        strategy: VerificationStrategy,
        generator: ProofGenerator,
        verifier: ProofVerifier,
        submitter: LedgerSubmitter,
        chain_id: int = TESTNET_CHAIN_ID,
        required_chain_id: int = TESTNET_CHAIN_ID,
        minimum_age: int = DEFAULT_MINIMUM_AGE,
        allowed_nationalities: Optional[Iterable[str]] = None,
        trusted_signer: Optional[Union[str, EnclaveSigner]] = None,
        log_context: Optional[LogContext] = None,
    ):
        self.subject = subject.lower() if subject else None
        self.strategy = strategy
        self.generator = generator
        self.verifier = verifier
        self.submitter = submitter
        self.chain_id = chain_id
        self.required_chain_id = required_chain_id
        self.minimum_age = minimum_age
        self.allowed_nationalities = list(allowed_nationalities) if allowed_nationalities else None
        self.trusted_signer = trusted_signer
        self.logger = (log_context or default_context()).get_logger(
            "orchestrator", PipelineLayer.ORCHESTRATOR
        )
        self.session = VerificationSession()

    @property
    def steps(self) -> List[str]:
        return list(STEPS)

    @property
    def total_steps(self) -> int:
        return len(STEPS)

    @property
    def status(self) -> SessionStatus:
        return self.session.status

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _is_stale(self, session: VerificationSession) -> bool:
        return session is not self.session

    def _advance(self, session: VerificationSession, target: SessionStatus, reason: str = "") -> None:
        if target not in VALID_TRANSITIONS[session.status]:
            raise SessionStateError(
                f"Invalid transition {session.status.value} -> {target.value}",
                from_state=session.status.value,
                to_state=target.value,
            )
        session.transitions.append(StateTransition(
            from_state=session.status,
            to_state=target,
            timestamp=datetime.now(timezone.utc).isoformat(),
            reason=reason or f"Advanced to {target.value}",
        ))
        session.status = target
        if target in STEP_INDEX:
            session.current_step_index = STEP_INDEX[target]
        self.logger.info(
            "Session state changed",
            operation="transition",
            to_state=target.value,
            step=session.current_step_index,
            generation=session.generation,
        )

    def _fail(
        self,
        session: VerificationSession,
        error: Exception,
        attestation: Optional[AttestationResult] = None,
    ) -> None:
        if isinstance(error, VeilKycError):
            session.error = error.message
            session.error_detail = error.to_dict()
        else:
            session.error = str(error) or "Verification failed"
            session.error_detail = {"code": "unexpected", "type": type(error).__name__, "message": str(error)}
        if attestation is not None:
            session.attestation = attestation
        failed_at = session.status
        self._advance(session, SessionStatus.FAILED, reason=session.error)
        self.logger.error(
            "Verification failed",
            error_code=session.error_detail["code"],
            failed_state=failed_at.value,
            step=session.current_step_index,
        )

    def reset(self) -> VerificationSession:
        """Abandon the current session. In-flight results will be discarded."""
        generation = self.session.generation + 1
        self.session = VerificationSession(generation=generation)
        self.logger.info("Session reset", generation=generation)
        return self.session

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _bind(self) -> str:
        if not self.subject:
            raise SubjectBindingError("Please connect your wallet first")
        if self.chain_id != self.required_chain_id:
            raise NetworkMismatchError(self.chain_id, self.required_chain_id)
        return self.subject

    async def start_verification(
        self,
        identity: Union[IdentityRecord, Mapping[str, Any]],
    ) -> VerificationSession:
        """
        Run the pipeline once.

        Returns the session this run worked on. Pipeline failures are
        recorded on the session, not raised; starting while a session is
        active or terminal raises SessionStateError.
        """
        session = self.session
        if session.status is not SessionStatus.IDLE:
            raise SessionStateError(
                f"Cannot start verification from state {session.status.value}; reset() first",
                status=session.status.value,
            )
        set_correlation_id(generate_correlation_id())

        try:
            subject = self._bind()
            record = identity if isinstance(identity, IdentityRecord) else IdentityRecord.from_dict(
                identity, today=self.generator.today()
            )
        except VeilKycError as e:
            self._fail(session, e)
            return session

        try:
            await self._run(session, record, subject)
        except VeilKycError as e:
            if not self._is_stale(session):
                self._fail(session, e, getattr(e, "attestation", None))
        except Exception as e:
            if not self._is_stale(session):
                self.logger.error("Unexpected pipeline error", error_code="unexpected", exc_info=True)
                self._fail(session, e)
        return session

    async def _run(self, session: VerificationSession, record: IdentityRecord, subject: str) -> None:
        self._advance(session, SessionStatus.ENCRYPTING)
        commitment = derive_commitment(record)
        handle = await self.strategy.protect(record, subject, commitment)
        if self._is_stale(session):
            return
        session.protected_data = handle

        self._advance(session, SessionStatus.COMPUTING)
        proof = self.generator.prove_full_kyc(
            record,
            subject,
            minimum_age=self.minimum_age,
            allowed_nationalities=self.allowed_nationalities,
        )
        outcome = self.verifier.verify(proof, CircuitType.FULL_KYC)
        if not outcome.is_valid:
            raise ProofRejectedError(
                "ZK proof verification failed. Please check your information.",
                public_outputs=outcome.public_outputs,
            )
        session.proof = proof

        self._advance(session, SessionStatus.VERIFYING)
        attestation = await self.strategy.verify(handle, record, subject)
        if self._is_stale(session):
            self.logger.warning("Discarding attestation from a reset session", generation=session.generation)
            return
        if self.trusted_signer is not None and not verify_attestation(attestation, self.trusted_signer):
            raise AttestationInvalidError("Attestation signature is not from the trusted enclave")
        if not attestation.is_valid:
            raise AttestationInvalidError(
                "Identity verification failed. Please ensure your documents are valid.",
                attestation,
            )
        session.attestation = attestation

        self._advance(session, SessionStatus.SUBMITTING)
        receipt = await asyncio.to_thread(self.submitter.submit, subject, attestation)
        if self._is_stale(session):
            return
        session.receipt = receipt
        self._advance(session, SessionStatus.COMPLETED, reason=f"Submitted in {receipt.tx_hash}")

    def to_dict(self) -> Dict[str, Any]:
        d = self.session.to_dict()
        d["steps"] = self.steps
        d["totalSteps"] = self.total_steps
        d["subject"] = self.subject
        return d
