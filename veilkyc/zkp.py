"""
VeilKYC Proving Backend

Capability interface between the proof generator and whatever proving system
backs it. The generator and orchestrator only ever see:

    ProvingBackend.generate(circuit, private_inputs, public_inputs) -> ProofArtifact
    ProvingBackend.verify(proof, verification_key) -> bool

Circuits are registered in a content-addressed registry together with their
keys, and proofs reference their circuit by id.

Default backend (SealedCommitmentBackend):
    - proof  = SHA-256 commitment to the witness, reduced to BN254 field elements
    - seal   = Ed25519 signature by the circuit's proving key over the canonical
               {circuit, proof, publicSignals, nullifierHash}
    - verify = seal check against the circuit's verification key

This is not zero-knowledge. It binds the public signals to the prover's key so
that a hand-edited signal array fails verification, and it has the same shape a
Groth16 or PLONK backend would plug into.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from veilkyc.commitment import canonical_json
from veilkyc.models import ProofArtifact


# =============================================================================
# PROOF SYSTEMS AND CIRCUIT TYPES
# =============================================================================

class ProofSystem(Enum):
    """
    Proof systems a backend may implement.

    Only SEALED_COMMITMENT ships with a backend.
    """
    SEALED_COMMITMENT = "sealed_commitment"
    GROTH16 = "groth16"
    PLONK = "plonk"

    def requires_trusted_setup(self) -> bool:
        return self in {ProofSystem.GROTH16, ProofSystem.PLONK}


class CircuitType(Enum):
    """Circuits of the KYC pipeline."""
    AGE_VERIFICATION = "age_verification"
    DOCUMENT_VALIDITY = "document_validity"
    NATIONALITY_CHECK = "nationality_check"
    FULL_KYC = "full_kyc"


# =============================================================================
# CRYPTOGRAPHIC PRIMITIVES
# =============================================================================

@dataclass(frozen=True)
class FieldElement:
    """
    Element of the BN254 scalar field, as 64 hex chars.

    Values are reduced modulo the field prime on construction from ints.
    """
    value: str

    # BN254 scalar field order (also known as Fr)
    FIELD_MODULUS: int = 0x30644e72e131a029b85045b68181585d2833e84879b9709143e1f593f0000001

    def __post_init__(self):
        if not self.value or not all(c in '0123456789abcdef' for c in self.value.lower()):
            raise ValueError("Field element must be hex string")

    @classmethod
    def zero(cls) -> 'FieldElement':
        return cls("0" * 64)

    @classmethod
    def one(cls) -> 'FieldElement':
        return cls("0" * 63 + "1")

    @classmethod
    def from_int(cls, n: int) -> 'FieldElement':
        """Create a field element from an integer, reducing modulo FIELD_MODULUS."""
        return cls(format(n % cls.FIELD_MODULUS, '064x'))

    @classmethod
    def from_bytes(cls, b: bytes) -> 'FieldElement':
        return cls.from_int(int.from_bytes(b, 'big'))

    def to_int(self) -> int:
        return int(self.value, 16)

    def to_bytes(self) -> bytes:
        return self.to_int().to_bytes(32, 'big')


# =============================================================================
# KEYS
# =============================================================================

@dataclass
class ProvingKey:
    """Ed25519 signing key that seals proofs for one circuit."""
    circuit_id: str
    proof_system: ProofSystem
    key_data: bytes = field(repr=False)  # raw 32-byte private key
    digest: str = ""

    def __post_init__(self):
        if not self.digest:
            self.digest = hashlib.sha256(self.key_data).hexdigest()

    def private_key(self) -> Ed25519PrivateKey:
        return Ed25519PrivateKey.from_private_bytes(self.key_data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "circuit_id": self.circuit_id,
            "proof_system": self.proof_system.value,
            "key_digest": self.digest,
        }


@dataclass
class VerificationKey:
    """Ed25519 public key that checks seals for one circuit."""
    circuit_id: str
    proof_system: ProofSystem
    public_input_count: int
    key_data: bytes  # raw 32-byte public key
    digest: str = ""

    def __post_init__(self):
        if not self.digest:
            self.digest = hashlib.sha256(self.key_data).hexdigest()

    def public_key(self) -> Ed25519PublicKey:
        return Ed25519PublicKey.from_public_bytes(self.key_data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "circuit_id": self.circuit_id,
            "proof_system": self.proof_system.value,
            "public_input_count": self.public_input_count,
            "key": self.key_data.hex(),
            "key_digest": self.digest,
        }


def generate_keypair(
    circuit: "Circuit",
    seed: Optional[str] = None,
) -> Tuple[ProvingKey, VerificationKey]:
    """
    Key pair for a circuit.

    With a seed the key is derived from ``sha256(seed:circuit_id)`` so every
    process sharing the seed agrees on it. Without one a fresh key is drawn.
    """
    if seed:
        sk = Ed25519PrivateKey.from_private_bytes(
            hashlib.sha256(f"{seed}:{circuit.circuit_id}".encode()).digest()
        )
    else:
        sk = Ed25519PrivateKey.generate()

    raw_sk = sk.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    raw_pk = sk.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    pk = ProvingKey(circuit.circuit_id, circuit.proof_system, raw_sk)
    vk = VerificationKey(
        circuit.circuit_id,
        circuit.proof_system,
        len(circuit.public_input_names),
        raw_pk,
    )
    return pk, vk


# =============================================================================
# WITNESS
# =============================================================================

@dataclass
class Witness:
    """
    Private witness data for proof generation.

    The witness contains all private inputs needed to satisfy
    the circuit constraints. This data is never revealed.
    """
    circuit_id: str
    private_inputs: Dict[str, Any]
    public_inputs: Dict[str, Any]

    def to_field_elements(self) -> List[FieldElement]:
        """Convert witness to field elements for the prover."""
        elements: List[FieldElement] = []

        # Public inputs first
        for key in sorted(self.public_inputs.keys()):
            elements.append(self._to_field_element(self.public_inputs[key]))

        # Then private inputs
        for key in sorted(self.private_inputs.keys()):
            elements.append(self._to_field_element(self.private_inputs[key]))

        return elements

    def commitment(self) -> str:
        """SHA-256 over the circuit id and the witness field elements."""
        h = hashlib.sha256(self.circuit_id.encode())
        for element in self.to_field_elements():
            h.update(element.to_bytes())
        return h.hexdigest()

    def _to_field_element(self, value: Any) -> FieldElement:
        if isinstance(value, bool):
            # Check bool before int since bool is subclass of int
            return FieldElement.one() if value else FieldElement.zero()
        elif isinstance(value, int):
            return FieldElement.from_int(value)
        elif isinstance(value, date):
            return self._to_field_element(value.isoformat())
        elif isinstance(value, str):
            return FieldElement.from_bytes(hashlib.sha256(value.encode()).digest())
        elif isinstance(value, bytes):
            return FieldElement.from_bytes(hashlib.sha256(value).digest())
        elif isinstance(value, (list, tuple)):
            return FieldElement.from_bytes(hashlib.sha256(canonical_json(list(value))).digest())
        else:
            raise ValueError(f"Cannot convert {type(value)} to field element")


def encode_signal(value: Any) -> str:
    """Public signals are strings: booleans as "1"/"0", integers in decimal."""
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return value
    raise ValueError(f"Cannot encode {type(value).__name__} as a public signal")


# =============================================================================
# CIRCUIT DEFINITION
# =============================================================================

@dataclass
class Circuit:
    """
    A circuit definition.

    ``public_input_names`` fixes the order of the public signals.
    """
    circuit_id: str
    circuit_type: CircuitType
    proof_system: ProofSystem
    public_input_names: List[str]
    private_input_names: List[str]
    description: str = ""
    version: str = "1.0.0"

    @property
    def digest(self) -> str:
        """Content-addressed identifier for the circuit."""
        content = {
            "circuit_id": self.circuit_id,
            "circuit_type": self.circuit_type.value,
            "proof_system": self.proof_system.value,
            "public_input_names": self.public_input_names,
            "private_input_names": self.private_input_names,
            "version": self.version,
        }
        return hashlib.sha256(canonical_json(content)).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "circuit_id": self.circuit_id,
            "circuit_type": self.circuit_type.value,
            "proof_system": self.proof_system.value,
            "public_input_names": self.public_input_names,
            "private_input_names": self.private_input_names,
            "description": self.description,
            "version": self.version,
            "digest": self.digest,
        }


def build_age_verification_circuit() -> Circuit:
    """
    Proves: age(birth date, today) >= minimumAge

    Public inputs: isAboveMinimumAge, minimumAge, currentYear
    Private inputs: birth date components, current date components
    """
    return Circuit(
        circuit_id="kyc.age_verification.v1",
        circuit_type=CircuitType.AGE_VERIFICATION,
        proof_system=ProofSystem.SEALED_COMMITMENT,
        public_input_names=["isAboveMinimumAge", "minimumAge", "currentYear"],
        private_input_names=[
            "birthYear", "birthMonth", "birthDay",
            "currentMonth", "currentDay",
        ],
        description="Proves age >= minimum without revealing the birth date",
    )


def build_document_validity_circuit() -> Circuit:
    """
    Proves: expiry > today, and whether more than 30 days remain.
    """
    return Circuit(
        circuit_id="kyc.document_validity.v1",
        circuit_type=CircuitType.DOCUMENT_VALIDITY,
        proof_system=ProofSystem.SEALED_COMMITMENT,
        public_input_names=["isValid", "hasMinimumValidity"],
        private_input_names=["documentType", "expiryYear", "expiryMonth", "evaluatedOn"],
        description="Proves document validity without revealing the expiry date",
    )


def build_nationality_check_circuit() -> Circuit:
    return Circuit(
        circuit_id="kyc.nationality_check.v1",
        circuit_type=CircuitType.NATIONALITY_CHECK,
        proof_system=ProofSystem.SEALED_COMMITMENT,
        public_input_names=["isNationalityValid", "allowedNationalityHash"],
        private_input_names=["nationality"],
        description="Proves membership in an allow-list without revealing nationality",
    )


def build_full_kyc_circuit() -> Circuit:
    """
    Composes the age and document proofs with the nationality flag.

    The timestamp keeps every combined proof fresh; the nullifier does not
    depend on it.
    """
    return Circuit(
        circuit_id="kyc.full_kyc.v1",
        circuit_type=CircuitType.FULL_KYC,
        proof_system=ProofSystem.SEALED_COMMITMENT,
        public_input_names=[
            "isFullyValid",
            "isAgeValid",
            "isDocValid",
            "isNationalityValid",
            "minimumAge",
        ],
        private_input_names=["ageProof", "docProof", "nationalityValid", "timestamp"],
        description="Combined KYC proof",
    )


# =============================================================================
# CIRCUIT REGISTRY
# =============================================================================

class CircuitRegistry:
    """
    Content-addressed registry of circuits and their keys.

    Circuits are identified by their digest; lookups by circuit id or
    circuit type resolve to the digest first.
    """

    def __init__(self):
        self._circuits: Dict[str, Circuit] = {}  # digest -> Circuit
        self._circuit_id_to_digest: Dict[str, str] = {}
        self._type_to_digest: Dict[CircuitType, str] = {}
        self._proving_keys: Dict[str, ProvingKey] = {}
        self._verification_keys: Dict[str, VerificationKey] = {}

    def register(
        self,
        circuit: Circuit,
        proving_key: Optional[ProvingKey] = None,
        verification_key: Optional[VerificationKey] = None,
    ) -> str:
        """
        Register a circuit and optionally its keys.

        Returns the circuit digest.
        """
        digest = circuit.digest
        self._circuits[digest] = circuit
        self._circuit_id_to_digest[circuit.circuit_id] = digest
        self._type_to_digest[circuit.circuit_type] = digest

        if proving_key:
            self._proving_keys[digest] = proving_key
        if verification_key:
            self._verification_keys[digest] = verification_key

        return digest

    def get_circuit(self, digest: str) -> Optional[Circuit]:
        return self._circuits.get(digest)

    def get_circuit_by_id(self, circuit_id: str) -> Optional[Circuit]:
        digest = self._circuit_id_to_digest.get(circuit_id)
        return self._circuits.get(digest) if digest else None

    def get_circuit_by_type(self, circuit_type: CircuitType) -> Optional[Circuit]:
        digest = self._type_to_digest.get(circuit_type)
        return self._circuits.get(digest) if digest else None

    def get_proving_key(self, circuit: Circuit) -> Optional[ProvingKey]:
        return self._proving_keys.get(circuit.digest)

    def get_verification_key(self, circuit: Circuit) -> Optional[VerificationKey]:
        return self._verification_keys.get(circuit.digest)

    def list_circuits(self, circuit_type: Optional[CircuitType] = None) -> List[Circuit]:
        circuits = list(self._circuits.values())
        if circuit_type:
            circuits = [c for c in circuits if c.circuit_type == circuit_type]
        return circuits

    def export_registry(self) -> Dict[str, Any]:
        """Export circuits and verification keys (never proving keys)."""
        return {
            "circuits": {
                digest: circuit.to_dict()
                for digest, circuit in self._circuits.items()
            },
            "verification_keys": {
                digest: key.to_dict()
                for digest, key in self._verification_keys.items()
            },
        }


def create_standard_registry(seed: Optional[str] = None) -> CircuitRegistry:
    """Registry with the four KYC circuits and their keys."""
    registry = CircuitRegistry()
    for circuit in (
        build_age_verification_circuit(),
        build_document_validity_circuit(),
        build_nationality_check_circuit(),
        build_full_kyc_circuit(),
    ):
        pk, vk = generate_keypair(circuit, seed)
        registry.register(circuit, pk, vk)
    return registry


# =============================================================================
# BACKEND INTERFACE
# =============================================================================

NullifierFn = Callable[[str], str]


class ProvingBackend(Protocol):
    """Capability interface for proof generation and verification."""

    def generate(
        self,
        circuit: Circuit,
        private_inputs: Dict[str, Any],
        public_inputs: Dict[str, Any],
        nullifier_for: Optional[NullifierFn] = None,
    ) -> ProofArtifact:
        """
        Produce a proof.

        ``nullifier_for`` maps the proof value to the nullifier; when omitted
        the nullifier is the proof value itself.
        """
        ...

    def verify(self, proof: ProofArtifact, verification_key: VerificationKey) -> bool:
        """Cryptographically check a proof. Never raises on bad input."""
        ...


def seal_message(circuit_id: str, proof: str, public_signals: List[str], nullifier_hash: str) -> bytes:
    return canonical_json({
        "circuit": circuit_id,
        "proof": proof,
        "publicSignals": list(public_signals),
        "nullifierHash": nullifier_hash,
    })


class SealedCommitmentBackend:
    """
    Witness commitment sealed with the circuit's Ed25519 proving key.

    Proving keys are looked up in the registry, so a backend can only prove
    circuits whose keys it holds.
    """

    proof_system = ProofSystem.SEALED_COMMITMENT

    def __init__(self, registry: CircuitRegistry):
        self.registry = registry

    def generate(
        self,
        circuit: Circuit,
        private_inputs: Dict[str, Any],
        public_inputs: Dict[str, Any],
        nullifier_for: Optional[NullifierFn] = None,
    ) -> ProofArtifact:
        missing = [n for n in circuit.public_input_names if n not in public_inputs]
        if missing:
            raise ValueError(
                f"Missing required public input(s) {missing} for {circuit.circuit_id}"
            )
        proving_key = self.registry.get_proving_key(circuit)
        if proving_key is None:
            raise ValueError(f"No proving key registered for {circuit.circuit_id}")

        witness = Witness(circuit.circuit_id, dict(private_inputs), dict(public_inputs))
        proof = witness.commitment()
        signals = [encode_signal(public_inputs[n]) for n in circuit.public_input_names]
        nullifier = nullifier_for(proof) if nullifier_for else proof

        seal = proving_key.private_key().sign(
            seal_message(circuit.circuit_id, proof, signals, nullifier)
        )
        return ProofArtifact(
            proof=proof,
            public_signals=tuple(signals),
            nullifier_hash=nullifier,
            circuit_id=circuit.circuit_id,
            seal=seal.hex(),
        )

    def verify(self, proof: ProofArtifact, verification_key: VerificationKey) -> bool:
        if proof.circuit_id != verification_key.circuit_id:
            return False
        if verification_key.public_input_count != len(proof.public_signals):
            return False
        try:
            signature = bytes.fromhex(proof.seal)
            verification_key.public_key().verify(
                signature,
                seal_message(
                    proof.circuit_id,
                    proof.proof,
                    list(proof.public_signals),
                    proof.nullifier_hash,
                ),
            )
        except (InvalidSignature, ValueError):
            return False
        return True
