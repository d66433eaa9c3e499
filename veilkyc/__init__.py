"""
VeilKYC: Privacy-Preserving KYC Verification

Turns raw identity attributes into an on-chain verifiable attestation without
the attributes ever leaving the client in the clear. A commitment and
nullifier bind the identity to a subject, attribute proofs reduce it to
booleans, and a confidential worker signs the final verdict.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                         VERIFICATION PIPELINE                            │
    │                                                                          │
    │  ORCHESTRATION                                                          │
    │    orchestrator.py  Async state machine, strategies, generations        │
    │    ledger.py        Verifier contract boundary and submission           │
    │                                                                          │
    │  CONFIDENTIAL EXECUTION                                                 │
    │    confidential.py  protect -> grant -> execute, network profiles       │
    │    worker.py        Deterministic worker inside the enclave             │
    │    enclave.py       Ed25519 enclave identity and attestations           │
    │                                                                          │
    │  PROOFS                                                                 │
    │    commitment.py    Digests, commitments, nullifiers                    │
    │    zkp.py           Circuits, keys, proving backend capability          │
    │    proofs.py        Age, document, nationality and full KYC proofs      │
    │    verifier.py      Local proof gate                                    │
    │                                                                          │
    │  SUPPORT                                                                │
    │    config.py        YAML + VEILKYC_* environment configuration          │
    │    observability.py Structured logging with a bounded buffer            │
    │    hardening.py     Input validation                                    │
    │    errors.py        Error taxonomy                                      │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Design Principles
─────────────────

    Minimal Disclosure: Only digests and "1"/"0" signals cross the privacy
    boundary. Identity fields are redacted from every log sink.

    Fail Fast: A proof that fails the local gate never reaches the
    confidential backend.

    Fail Closed: Unknown networks fall back to the testnet profile. An
    attestation without a trusted signature is never submitted.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

__version__ = "0.3.0"


# Lazy imports to avoid circular dependencies
def __getattr__(name):
    """Lazy import VeilKYC modules on first access."""

    if name in ("digest", "derive_commitment", "derive_nullifier", "canonical_json",
                "canonical_digest", "generate_salt"):
        from veilkyc import commitment
        return getattr(commitment, name)

    if name in ("DocumentType", "IdentityRecord", "ProofArtifact", "ProtectedDataHandle",
                "AttestationAttributes", "AttestationResult", "TaskResult", "LedgerReceipt",
                "SessionStatus", "VerificationSession"):
        from veilkyc import models
        return getattr(models, name)

    if name in ("CircuitType", "CircuitRegistry", "ProvingBackend", "SealedCommitmentBackend",
                "create_standard_registry"):
        from veilkyc import zkp
        return getattr(zkp, name)

    if name in ("ProofGenerator", "compute_age", "is_adult", "is_document_valid"):
        from veilkyc import proofs
        return getattr(proofs, name)

    if name in ("ProofVerifier", "VerificationOutcome"):
        from veilkyc import verifier
        return getattr(verifier, name)

    if name in ("ConfidentialTaskClient", "ConfidentialBackend", "LocalEnclaveBackend",
                "NetworkProfile", "get_network_profile", "fetch_verification_status"):
        from veilkyc import confidential
        return getattr(confidential, name)

    if name in ("KycWorker", "run_worker", "serialize_protected_data"):
        from veilkyc import worker
        return getattr(worker, name)

    if name in ("EnclaveSigner", "build_attestation", "verify_attestation"):
        from veilkyc import enclave
        return getattr(enclave, name)

    if name in ("LedgerContract", "InMemoryLedger", "LedgerSubmitter"):
        from veilkyc import ledger
        return getattr(ledger, name)

    if name in ("VerificationOrchestrator", "ConfidentialVerification",
                "SimulatedVerification", "build_strategy", "STEPS"):
        from veilkyc import orchestrator
        return getattr(orchestrator, name)

    if name in ("ConfigManager", "VeilKycConfig", "get_config", "get_config_manager"):
        from veilkyc import config
        return getattr(config, name)

    if name in ("LogContext", "KycLogger"):
        from veilkyc import observability
        return getattr(observability, name)

    raise AttributeError(f"module 'veilkyc' has no attribute '{name}'")


__all__ = [
    "__version__",
    # Commitment
    "digest",
    "derive_commitment",
    "derive_nullifier",
    # Models
    "DocumentType",
    "IdentityRecord",
    "ProofArtifact",
    "AttestationResult",
    "SessionStatus",
    "VerificationSession",
    # Proofs
    "CircuitType",
    "ProofGenerator",
    "ProofVerifier",
    # Confidential
    "ConfidentialTaskClient",
    "LocalEnclaveBackend",
    "KycWorker",
    "EnclaveSigner",
    # Ledger
    "InMemoryLedger",
    "LedgerSubmitter",
    # Orchestration
    "VerificationOrchestrator",
    "build_strategy",
    # Support
    "ConfigManager",
    "LogContext",
]
