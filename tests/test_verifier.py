"""
Tests for the local proof verifier.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import dataclasses

import pytest

from veilkyc.verifier import ProofVerifier
from veilkyc.zkp import CircuitType, SealedCommitmentBackend, create_standard_registry


@pytest.fixture
def kyc_proof(generator, subject, make_identity):
    return generator.prove_full_kyc(make_identity(), subject)


class TestVerifierAccepts:

    def test_valid_proof(self, verifier, kyc_proof):
        outcome = verifier.verify(kyc_proof, CircuitType.FULL_KYC)
        assert outcome.is_valid
        assert outcome.nullifier_hash == kyc_proof.nullifier_hash
        assert outcome.public_outputs == list(kyc_proof.public_signals)

    def test_circuit_type_by_name(self, verifier, kyc_proof):
        assert verifier.verify(kyc_proof, "full_kyc").is_valid

    def test_wire_mapping(self, verifier, kyc_proof):
        assert verifier.verify(kyc_proof.to_dict(), CircuitType.FULL_KYC).is_valid

    def test_attribute_proofs(self, verifier, generator, subject):
        age = generator.prove_age("1990-01-01", 18, subject)
        assert verifier.verify(age, CircuitType.AGE_VERIFICATION).is_valid

    def test_same_seed_verifies_across_instances(self, kyc_proof):
        registry = create_standard_registry("test-seed")
        other = ProofVerifier(SealedCommitmentBackend(registry), registry)
        assert other.verify(kyc_proof, CircuitType.FULL_KYC).is_valid


class TestVerifierRejects:
    """Rejections are outcomes, never exceptions."""

    def test_failed_proof_is_not_valid(self, verifier, generator, subject, make_identity):
        proof = generator.prove_full_kyc(make_identity(dateOfBirth="2010-01-01"), subject)
        outcome = verifier.verify(proof, CircuitType.FULL_KYC)
        assert not outcome.is_valid
        assert outcome.public_outputs[0] == "0"

    def test_edited_signal_fails_seal(self, verifier, generator, subject, make_identity):
        proof = generator.prove_full_kyc(make_identity(dateOfBirth="2010-01-01"), subject)
        forged = dataclasses.replace(proof, public_signals=("1",) + proof.public_signals[1:])
        outcome = verifier.verify(forged, CircuitType.FULL_KYC)
        assert not outcome.is_valid
        assert outcome.public_outputs == []

    def test_edited_nullifier_fails_seal(self, verifier, kyc_proof):
        forged = dataclasses.replace(kyc_proof, nullifier_hash="f" * 64)
        assert not verifier.verify(forged, CircuitType.FULL_KYC).is_valid

    def test_other_keys_reject(self, kyc_proof):
        registry = create_standard_registry("another-seed")
        other = ProofVerifier(SealedCommitmentBackend(registry), registry)
        assert not other.verify(kyc_proof, CircuitType.FULL_KYC).is_valid

    def test_wrong_circuit(self, verifier, generator, subject):
        age = generator.prove_age("1990-01-01", 18, subject)
        assert not verifier.verify(age, CircuitType.FULL_KYC).is_valid

    def test_unknown_circuit_type(self, verifier, kyc_proof):
        assert not verifier.verify(kyc_proof, "kyc_plus").is_valid

    @pytest.mark.parametrize("proof_value", ["", "xyz", "A" * 64, "0" * 63])
    def test_malformed_proof_value(self, verifier, kyc_proof, proof_value):
        bad = dataclasses.replace(kyc_proof, proof=proof_value)
        assert not verifier.verify(bad, CircuitType.FULL_KYC).is_valid

    def test_no_signals(self, verifier, kyc_proof):
        bad = dataclasses.replace(kyc_proof, public_signals=())
        assert not verifier.verify(bad, CircuitType.FULL_KYC).is_valid

    def test_missing_seal(self, verifier, kyc_proof):
        bad = dataclasses.replace(kyc_proof, seal="")
        assert not verifier.verify(bad, CircuitType.FULL_KYC).is_valid

    def test_garbage_seal(self, verifier, kyc_proof):
        bad = dataclasses.replace(kyc_proof, seal="not-hex")
        assert not verifier.verify(bad, CircuitType.FULL_KYC).is_valid

    def test_signals_not_a_list(self, verifier, kyc_proof):
        wire = kyc_proof.to_dict()
        wire["publicSignals"] = "1,1,1,1,18"
        outcome = verifier.verify(wire, CircuitType.FULL_KYC)
        assert not outcome.is_valid
        assert outcome.nullifier_hash == ""

    def test_wrong_type(self, verifier):
        assert not verifier.verify(None, CircuitType.FULL_KYC).is_valid

    def test_forgery_is_logged(self, verifier, kyc_proof, log_context):
        forged = dataclasses.replace(kyc_proof, nullifier_hash="0" * 64)
        verifier.verify(forged, CircuitType.FULL_KYC)
        codes = [e.error_code for e in log_context.buffer.entries()]
        assert "proof_forged" in codes


def test_outcome_wire_form(verifier, kyc_proof):
    out = verifier.verify(kyc_proof, CircuitType.FULL_KYC).to_dict()
    assert set(out) == {"isValid", "nullifierHash", "publicOutputs"}
    assert out["isValid"] is True
