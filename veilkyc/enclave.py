"""
VeilKYC Enclave Signatures

The enclave's signing identity and the attestation it produces.

Profile / invariants:
- Ed25519 keys, identified by ``did:key``
- Signing input is the canonical JSON of ``{subject, isValid, proofHash}``
  with the subject lower-cased
- Signatures are hex encoded so the ledger can store them as bytes
- proofHash = sha256("<subject>:<documentType>:<true|false>:<timestampMs>")

Key material is loaded from an OKP JWK (file or JSON string) or a base64url
32-byte seed.

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import base64
import json
import pathlib
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from veilkyc.commitment import canonical_json, digest
from veilkyc.errors import ConfigError
from veilkyc.models import AttestationAttributes, AttestationResult


# Base58 (bitcoin alphabet) for did:key multibase
B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}

ED25519_MULTICODEC = bytes([0xED, 0x01])


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii")
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = len(s_bytes) - len(s_bytes.lstrip(B58_ALPHABET[:1]))
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = len(b) - len(b.lstrip(b"\x00"))
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------

def _raw_public(pub: Ed25519PublicKey) -> bytes:
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def did_key_from_ed25519_public_key(pub: bytes) -> str:
    return "did:key:z" + b58encode(ED25519_MULTICODEC + pub)


def ed25519_public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a ``did:key`` (Ed25519) and return a cryptography public key."""
    did = did.split("#", 1)[0]
    if not did.startswith("did:key:z"):
        raise ValueError("Only did:key:z... supported")

    decoded = b58decode(did[len("did:key:z"):])
    if not decoded.startswith(ED25519_MULTICODEC):
        raise ValueError("did:key multicodec prefix not recognized for Ed25519")

    raw = decoded[len(ED25519_MULTICODEC):]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------

def attestation_message(subject: str, is_valid: bool, proof_hash: str) -> bytes:
    return canonical_json({
        "subject": subject.lower(),
        "isValid": bool(is_valid),
        "proofHash": proof_hash,
    })


class EnclaveSigner:
    """Ed25519 signing identity of the enclave."""

    def __init__(self, private_key: Ed25519PrivateKey):
        self._private_key = private_key
        self.public_key = private_key.public_key()
        self.did = did_key_from_ed25519_public_key(_raw_public(self.public_key))

    def __repr__(self) -> str:
        return f"EnclaveSigner(did={self.did!r})"

    @classmethod
    def generate(cls) -> "EnclaveSigner":
        return cls(Ed25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "EnclaveSigner":
        return cls(Ed25519PrivateKey.from_private_bytes(seed))

    @classmethod
    def from_jwk(cls, jwk: Dict[str, Any]) -> "EnclaveSigner":
        """Load from an OKP/Ed25519 private JWK, or a ``{"private_jwk": ...}`` wrapper."""
        if "private_jwk" in jwk or "jwk" in jwk:
            jwk = jwk.get("private_jwk") or jwk.get("jwk")
            if not isinstance(jwk, dict):
                raise ValueError("key wrapper must contain a JWK object")
        if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
            raise ValueError("Only OKP/Ed25519 JWK is supported")
        d = jwk.get("d")
        if not d:
            raise ValueError("JWK must include 'd' (private)")
        signer = cls.from_seed(b64url_decode(d))
        x = jwk.get("x")
        if x and b64url_decode(x) != _raw_public(signer.public_key):
            raise ValueError("JWK public key does not match its private key")
        return signer

    @classmethod
    def from_secret(cls, secret: str) -> "EnclaveSigner":
        """
        Load from a secret string: a JSON JWK, or a base64url 32-byte seed.

        Raises ConfigError when neither form parses.
        """
        text = (secret or "").strip()
        try:
            if text.startswith("{"):
                return cls.from_jwk(json.loads(text))
            seed = b64url_decode(text)
            if len(seed) != 32:
                raise ValueError(f"seed must be 32 bytes, got {len(seed)}")
            return cls.from_seed(seed)
        except (ValueError, TypeError) as e:
            raise ConfigError(f"Invalid enclave signing key: {e}") from e

    @classmethod
    def from_file(cls, path: Union[str, pathlib.Path]) -> "EnclaveSigner":
        p = pathlib.Path(path)
        try:
            return cls.from_jwk(json.loads(p.read_text(encoding="utf-8")))
        except (OSError, ValueError) as e:
            raise ConfigError(f"Cannot load enclave key from {p}: {e}") from e

    def to_jwk(self, kid: str = "enclave-1") -> Dict[str, Any]:
        priv_bytes = self._private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        return {
            "kty": "OKP",
            "crv": "Ed25519",
            "x": b64url_encode(_raw_public(self.public_key)),
            "d": b64url_encode(priv_bytes),
            "kid": kid,
        }

    def public_jwk(self, kid: str = "enclave-1") -> Dict[str, Any]:
        out = self.to_jwk(kid)
        out.pop("d")
        return out

    def sign(self, message: bytes) -> bytes:
        return self._private_key.sign(message)

    def sign_attestation(self, subject: str, is_valid: bool, proof_hash: str) -> str:
        return self.sign(attestation_message(subject, is_valid, proof_hash)).hex()


def verify_enclave_signature(
    signer: Union[str, Ed25519PublicKey, EnclaveSigner],
    subject: str,
    is_valid: bool,
    proof_hash: str,
    signature_hex: str,
) -> bool:
    """Check an attestation signature against a did:key, public key or signer."""
    try:
        if isinstance(signer, EnclaveSigner):
            public_key = signer.public_key
        elif isinstance(signer, str):
            public_key = ed25519_public_key_from_did_key(signer)
        else:
            public_key = signer
        public_key.verify(
            bytes.fromhex(signature_hex),
            attestation_message(subject, is_valid, proof_hash),
        )
    except (InvalidSignature, ValueError, TypeError):
        return False
    return True


def attestation_proof_hash(subject: str, document_type: str, is_valid: bool, timestamp_ms: int) -> str:
    flag = "true" if is_valid else "false"
    return digest(f"{subject.lower()}:{document_type}:{flag}:{timestamp_ms}")


def build_attestation(
    subject: str,
    document_type: str,
    adult: bool,
    not_expired: bool,
    not_sanctioned: bool,
    signer: EnclaveSigner,
    now: Optional[datetime] = None,
    checks_passed: bool = True,
) -> AttestationResult:
    """
    Signed attestation; valid only when every attribute holds and the
    structural checks passed.
    """
    now = now or datetime.now(timezone.utc)
    timestamp = int(now.timestamp() * 1000)
    is_valid = bool(checks_passed and adult and not_expired and not_sanctioned)
    proof_hash = attestation_proof_hash(subject, document_type, is_valid, timestamp)

    return AttestationResult(
        is_valid=is_valid,
        timestamp=timestamp,
        proof_hash=proof_hash,
        enclave_signature=signer.sign_attestation(subject, is_valid, proof_hash),
        attributes=AttestationAttributes(
            is_adult=bool(adult),
            is_not_expired=bool(not_expired),
            is_not_sanctioned=bool(not_sanctioned),
        ),
        subject=subject.lower(),
        signer=signer.did,
    )


def verify_attestation(attestation: AttestationResult, trusted_signer: Union[str, EnclaveSigner]) -> bool:
    """True when ``attestation`` carries a valid signature by ``trusted_signer``."""
    if not attestation.subject:
        return False
    return verify_enclave_signature(
        trusted_signer,
        attestation.subject,
        attestation.is_valid,
        attestation.proof_hash,
        attestation.enclave_signature,
    )
