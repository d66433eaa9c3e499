"""
VeilKYC Proof Verifier

Local gate in front of the confidential step. A proof passes when:

    1. it is well-formed (64-hex proof, at least one signal, a seal)
    2. its seal verifies against the circuit's verification key
    3. its first public signal is "1"

Failing any of these is a normal outcome and is reported, never raised.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from veilkyc.models import ProofArtifact
from veilkyc.observability import LogContext, PipelineLayer, default_context
from veilkyc.zkp import CircuitRegistry, CircuitType, ProvingBackend

PROOF_PATTERN = re.compile(r'^[a-f0-9]{64}$')


@dataclass(frozen=True)
class VerificationOutcome:
    is_valid: bool
    nullifier_hash: str
    public_outputs: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "isValid": self.is_valid,
            "nullifierHash": self.nullifier_hash,
            "publicOutputs": list(self.public_outputs),
        }


class ProofVerifier:
    """Verifies proof artifacts against the registry's verification keys."""

    def __init__(
        self,
        backend: ProvingBackend,
        registry: CircuitRegistry,
        log_context: Optional[LogContext] = None,
    ):
        self.backend = backend
        self.registry = registry
        self.logger = (log_context or default_context()).get_logger(
            "proof_verifier", PipelineLayer.VERIFIER
        )

    def verify(
        self,
        proof: Union[ProofArtifact, Mapping[str, Any]],
        circuit_type: Union[CircuitType, str],
    ) -> VerificationOutcome:
        if isinstance(proof, Mapping):
            try:
                proof = ProofArtifact.from_dict(proof)
            except (TypeError, ValueError) as e:
                self.logger.warning("Proof could not be decoded", reason=str(e))
                return VerificationOutcome(False, "")
        if not isinstance(proof, ProofArtifact):
            self.logger.warning("Proof has unexpected type", proof_type=type(proof).__name__)
            return VerificationOutcome(False, "")

        rejected = VerificationOutcome(False, proof.nullifier_hash)

        if not self._well_formed(proof):
            self.logger.warning("Malformed proof rejected", operation="verify")
            return rejected

        try:
            circuit_type = CircuitType(circuit_type)
        except ValueError:
            self.logger.warning("Unknown circuit type", circuit_type=str(circuit_type))
            return rejected

        circuit = self.registry.get_circuit_by_type(circuit_type)
        verification_key = self.registry.get_verification_key(circuit) if circuit else None
        if circuit is None or verification_key is None:
            self.logger.warning("No verification key for circuit", circuit_type=circuit_type.value)
            return rejected
        if proof.circuit_id != circuit.circuit_id:
            self.logger.warning(
                "Proof was generated for another circuit",
                expected=circuit.circuit_id,
                actual=proof.circuit_id,
            )
            return rejected

        if not self.backend.verify(proof, verification_key):
            self.logger.warning(
                "Proof seal did not verify",
                operation="verify",
                error_code="proof_forged",
                circuit=circuit.circuit_id,
            )
            return rejected

        outcome = VerificationOutcome(
            is_valid=proof.public_signals[0] == "1",
            nullifier_hash=proof.nullifier_hash,
            public_outputs=list(proof.public_signals),
        )
        self.logger.debug("Proof verified", circuit=circuit.circuit_id, result=outcome.is_valid)
        return outcome

    @staticmethod
    def _well_formed(proof: ProofArtifact) -> bool:
        return (
            bool(PROOF_PATTERN.match(proof.proof))
            and len(proof.public_signals) > 0
            and bool(proof.seal)
        )
