"""
VeilKYC Input Validation

Validation and sanitization for everything that enters the pipeline from the
outside: identity records, chain addresses, digests and dates.

Security Model:
    - All inputs are untrusted until validated
    - Validation runs before any digest, encryption or network call
    - A failed validation reports every bad field at once

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from veilkyc.errors import ValidationError, ValidationErrors


# =============================================================================
# VALIDATION RESULT
# =============================================================================

@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None) -> 'ValidationResult':
        return cls(is_valid=True, sanitized_value=sanitized_value)

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> 'ValidationResult':
        return cls(is_valid=False, errors=errors)


# =============================================================================
# DATE UTILITIES
# =============================================================================

def parse_iso_date(value: Any) -> date:
    """
    Parse a calendar date.

    Handles:
    - date objects (returned as-is)
    - datetime objects (converted to their UTC date)
    - "2000-01-31"
    - "2000-01-31T00:00:00Z" and other ISO 8601 timestamps

    Raises:
        ValueError: If the value cannot be parsed
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"Cannot parse date: {value!r}")

    text = value.strip()
    try:
        return date.fromisoformat(text)
    except ValueError:
        pass
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise ValueError(f"Cannot parse date: {value!r}") from e
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.date()


# =============================================================================
# INPUT VALIDATORS
# =============================================================================

# camelCase wire name -> record attribute
IDENTITY_FIELDS = {
    "documentType": "document_type",
    "documentNumber": "document_number",
    "fullName": "full_name",
    "dateOfBirth": "date_of_birth",
    "nationality": "nationality",
    "expiryDate": "expiry_date",
}


class Validators:
    """Collection of input validators."""

    # Patterns
    HEX64_PATTERN = re.compile(r'^[a-f0-9]{64}$')
    HEX40_PATTERN = re.compile(r'^0x[a-f0-9]{40}$')
    DOCUMENT_NUMBER_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9 -]*$')
    NAME_PATTERN = re.compile(r"^[^\W\d_]+(?:[ '.-]+[^\W\d_]+)*\.?$")

    # Per-type document number layouts; other types use DOCUMENT_NUMBER_PATTERN
    DOCUMENT_NUMBER_FORMATS = {
        "passport": re.compile(r'[A-Z0-9]{6,9}'),
        "national_id": re.compile(r'[A-Z0-9]{8,12}'),
        "aadhaar": re.compile(r'\d{4} ?\d{4} ?\d{4}'),
        "pan_card": re.compile(r'[A-Z]{5}[0-9]{4}[A-Z]'),
    }

    # Limits
    MAX_STRING_LENGTH = 4096
    MAX_DOCUMENT_NUMBER = 64
    MAX_NAME_LENGTH = 256
    MAX_NATIONALITY_LENGTH = 64

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: int = None,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        max_length = max_length or cls.MAX_STRING_LENGTH
        errors = []

        if not isinstance(value, str):
            errors.append(ValidationError(field_name, f"Expected string, got {type(value).__name__}", value))
            return ValidationResult.failure(errors)

        # Sanitize: strip whitespace and null bytes
        sanitized = value.strip().replace('\x00', '')

        if len(sanitized) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))

        if len(sanitized) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))
            sanitized = sanitized[:max_length]

        if pattern and sanitized and not pattern.match(sanitized):
            errors.append(ValidationError(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def is_valid_name(cls, value: Any) -> bool:
        return isinstance(value, str) and bool(cls.NAME_PATTERN.fullmatch(value))

    @classmethod
    def matches_document_number(cls, document_type: str, number: Any) -> bool:
        """Whether ``number`` has the layout of ``document_type``'s numbers."""
        if not isinstance(number, str):
            return False
        pattern = cls.DOCUMENT_NUMBER_FORMATS.get(document_type, cls.DOCUMENT_NUMBER_PATTERN)
        return bool(pattern.fullmatch(number))

    @classmethod
    def validate_digest(cls, value: Any, field_name: str = "digest") -> ValidationResult:
        """Validate a SHA256 digest (64 hex chars)."""
        result = cls.validate_string(value, field_name, min_length=64, max_length=64)
        if not result.is_valid:
            return result

        if not cls.HEX64_PATTERN.match(result.sanitized_value.lower()):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be 64 lowercase hex characters", value)
            ])

        return ValidationResult.success(result.sanitized_value.lower())

    @classmethod
    def validate_address(cls, value: Any, field_name: str = "address") -> ValidationResult:
        """Validate a chain address; the sanitized value is lower-cased."""
        result = cls.validate_string(value, field_name, min_length=42, max_length=42)
        if not result.is_valid:
            return result

        lower = result.sanitized_value.lower()
        if not cls.HEX40_PATTERN.match(lower):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be valid address (0x + 40 hex)", value)
            ])

        return ValidationResult.success(lower)

    @classmethod
    def validate_date(
        cls,
        value: Any,
        field_name: str = "date",
        before: Optional[date] = None,
    ) -> ValidationResult:
        """Validate a calendar date, optionally requiring it to precede ``before``."""
        try:
            parsed = parse_iso_date(value)
        except ValueError:
            return ValidationResult.failure([
                ValidationError(field_name, "Invalid ISO 8601 date", value)
            ])

        if before is not None and parsed >= before:
            return ValidationResult.failure([
                ValidationError(field_name, f"Must be before {before.isoformat()}", value)
            ])

        return ValidationResult.success(parsed)

    @classmethod
    def validate_identity(
        cls,
        data: Mapping[str, Any],
        today: Optional[date] = None,
    ) -> ValidationResult:
        """
        Validate a raw identity mapping.

        Accepts camelCase or snake_case keys. On success the sanitized value
        is a dict keyed by record attribute names, with dates parsed.
        """
        from veilkyc.models import DocumentType

        if not isinstance(data, Mapping):
            return ValidationResult.failure([
                ValidationError("identity", f"Expected mapping, got {type(data).__name__}")
            ])

        today = today or datetime.now(timezone.utc).date()
        errors: List[ValidationError] = []
        clean: Dict[str, Any] = {}

        def pick(wire: str) -> Any:
            if wire in data:
                return data[wire]
            return data.get(IDENTITY_FIELDS[wire])

        for wire in IDENTITY_FIELDS:
            if pick(wire) in (None, ""):
                errors.append(ValidationError(wire, "Required field is missing"))
        if errors:
            return ValidationResult.failure(errors)

        raw_type = pick("documentType")
        raw_type = raw_type.value if isinstance(raw_type, DocumentType) else raw_type
        try:
            clean["document_type"] = DocumentType(raw_type)
        except ValueError:
            allowed = ", ".join(t.value for t in DocumentType)
            errors.append(ValidationError("documentType", f"Must be one of: {allowed}", raw_type))

        checks = [
            ("documentNumber", cls.validate_string(
                pick("documentNumber"), "documentNumber",
                max_length=cls.MAX_DOCUMENT_NUMBER,
                pattern=cls.DOCUMENT_NUMBER_PATTERN,
            )),
            ("fullName", cls.validate_string(
                pick("fullName"), "fullName",
                max_length=cls.MAX_NAME_LENGTH,
                pattern=cls.NAME_PATTERN,
            )),
            ("nationality", cls.validate_string(
                pick("nationality"), "nationality",
                min_length=2, max_length=cls.MAX_NATIONALITY_LENGTH,
            )),
            ("dateOfBirth", cls.validate_date(pick("dateOfBirth"), "dateOfBirth", before=today)),
            ("expiryDate", cls.validate_date(pick("expiryDate"), "expiryDate")),
        ]
        for wire, result in checks:
            if result.is_valid:
                clean[IDENTITY_FIELDS[wire]] = result.sanitized_value
            else:
                errors.extend(result.errors)

        doc_type = clean.get("document_type")
        number = clean.get("document_number")
        if doc_type is not None and number is not None and not cls.matches_document_number(doc_type.value, number):
            errors.append(ValidationError(
                "documentNumber",
                f"Not a valid {doc_type.value.replace('_', ' ')} number",
                number,
            ))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(clean)
