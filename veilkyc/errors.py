"""
VeilKYC Error Taxonomy

Every failure the pipeline can surface maps to one of these types. Each type
carries a stable ``code`` that is written to the structured log so operators
can group failures without parsing messages.

Propagation policy:
    - Local validation errors never reach the confidential backend.
    - Remote-step errors abort the current step; the orchestrator moves the
      session to ``failed`` and keeps the structured detail for logging.
    - Nothing is retried automatically. Retry is ``reset()`` + resubmission.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class VeilKycError(Exception):
    """Base class for all pipeline errors."""

    code = "veilkyc_error"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = detail

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "type": type(self).__name__,
            "message": self.message,
            "detail": self.detail,
        }


# =============================================================================
# LOCAL ERRORS (never reach the backend)
# =============================================================================

class ValidationError(VeilKycError):
    """A single malformed or missing identity field."""

    code = "validation_error"

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.value = value
        super().__init__(f"{field}: {message}", field=field)
        self.message = message


class ValidationErrors(VeilKycError):
    """Collection of validation errors."""

    code = "validation_error"

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(
            f"Validation failed: {messages}",
            fields=[e.field for e in errors],
        )


class EncodingError(VeilKycError):
    """Input to a digest function could not be serialized."""

    code = "encoding_error"


class InvalidInputError(VeilKycError):
    """Proof input (typically a date) could not be parsed."""

    code = "invalid_input"


class SubjectBindingError(VeilKycError):
    """No subject identity is bound to the session."""

    code = "subject_binding"


class NetworkMismatchError(VeilKycError):
    """Subject's chain ID does not match the required network."""

    code = "network_mismatch"

    def __init__(self, actual: int, required: int):
        super().__init__(
            f"Connected to chain {actual}, but chain {required} is required",
            actual_chain_id=actual,
            required_chain_id=required,
        )


class ProofRejectedError(VeilKycError):
    """Local proof verification failed; no remote execution is attempted."""

    code = "proof_rejected"


class SessionStateError(VeilKycError):
    """Operation is not allowed in the session's current state."""

    code = "session_state"


class ConfigError(VeilKycError):
    """Configuration error."""

    code = "config_error"


# =============================================================================
# CONFIDENTIAL BACKEND ERRORS
# =============================================================================

class ConfidentialBackendError(VeilKycError):
    """Failure reported while driving the confidential backend."""

    code = "confidential_backend"


class ProtectionError(ConfidentialBackendError):
    """Payload could not be protected."""

    code = "protection_failed"


class AccessDeniedError(ConfidentialBackendError):
    """Backend refused to authorize the computation."""

    code = "access_denied"


class ExecutionError(ConfidentialBackendError):
    """Confidential task failed or could not be started."""

    code = "execution_failed"


class BackendUnavailableError(ConfidentialBackendError):
    """Transport-level failure talking to the backend."""

    code = "backend_unavailable"


class BackendDenied(Exception):
    """
    Raised by backend implementations to report a policy denial.

    Distinct from transport failures so the client can turn it into a
    ``False`` return instead of an exception.
    """


class ResultParseError(VeilKycError):
    """Task result is not valid JSON or not an attestation."""

    code = "result_parse"


class AttestationInvalidError(VeilKycError):
    """Attestation is well-formed but reports a failed verification."""

    code = "attestation_invalid"

    def __init__(self, message: str, attestation: Optional[Any] = None):
        super().__init__(message)
        self.attestation = attestation


# =============================================================================
# LEDGER ERRORS
# =============================================================================

class LedgerSubmissionError(VeilKycError):
    """The ledger collaborator rejected or failed the submission."""

    code = "ledger_submission"
