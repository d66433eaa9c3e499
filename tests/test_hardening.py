"""
Tests for input validation and sanitization.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from veilkyc.errors import ValidationErrors
from veilkyc.hardening import ValidationResult, Validators, parse_iso_date
from veilkyc.models import DocumentType

TODAY = date(2024, 6, 1)


class TestParseIsoDate:

    def test_plain_date(self):
        assert parse_iso_date("2000-01-31") == date(2000, 1, 31)

    def test_date_object(self):
        assert parse_iso_date(date(2000, 1, 31)) == date(2000, 1, 31)

    def test_aware_datetime_uses_utc_date(self):
        late = datetime(2000, 1, 31, 23, 0, tzinfo=timezone(timedelta(hours=-5)))
        assert parse_iso_date(late) == date(2000, 2, 1)

    def test_zulu_suffix(self):
        assert parse_iso_date("2000-01-31T00:00:00Z") == date(2000, 1, 31)

    def test_surrounding_whitespace(self):
        assert parse_iso_date("  2000-01-31 ") == date(2000, 1, 31)

    @pytest.mark.parametrize("value", ["", "   ", "31/01/2000", "2000-02-30", None, 20000131])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_iso_date(value)


class TestStrings:

    def test_strips_null_bytes_and_whitespace(self):
        result = Validators.validate_string("  ab\x00c ", "f")
        assert result.is_valid
        assert result.sanitized_value == "abc"

    def test_too_long(self):
        result = Validators.validate_string("x" * 11, "f", max_length=10)
        assert not result.is_valid
        assert "Too long" in result.errors[0].message

    def test_empty(self):
        assert not Validators.validate_string("   ", "f").is_valid

    def test_not_a_string(self):
        result = Validators.validate_string(42, "f")
        assert result.errors[0].message == "Expected string, got int"


class TestAddressesAndDigests:

    def test_address_lower_cased(self):
        result = Validators.validate_address("0xAbCdEf0123456789abcdef0123456789ABCDEF01")
        assert result.sanitized_value == "0xabcdef0123456789abcdef0123456789abcdef01"

    @pytest.mark.parametrize("value", ["0x123", "AbCdEf0123456789abcdef0123456789ABCDEF0102", "0x" + "g" * 40, None])
    def test_bad_address(self, value):
        assert not Validators.validate_address(value).is_valid

    def test_digest(self):
        assert Validators.validate_digest("AB" * 32).sanitized_value == "ab" * 32
        assert not Validators.validate_digest("zz" * 32).is_valid
        assert not Validators.validate_digest("ab" * 31).is_valid


class TestIdentity:

    def test_valid_record(self, make_identity):
        result = Validators.validate_identity(make_identity(fullName="  Jane Doe "), today=TODAY)
        assert result.is_valid
        clean = result.sanitized_value
        assert clean["document_type"] is DocumentType.PASSPORT
        assert clean["full_name"] == "Jane Doe"
        assert clean["date_of_birth"] == date(1990, 5, 15)
        assert clean["expiry_date"] == date(2030, 1, 1)

    def test_snake_case_keys(self):
        data = {
            "document_type": "national_id",
            "document_number": "X99887766A",
            "full_name": "Seán O'Brien",
            "date_of_birth": "1980-02-29",
            "nationality": "IE",
            "expiry_date": "2028-12-31",
        }
        result = Validators.validate_identity(data, today=TODAY)
        assert result.is_valid
        assert result.sanitized_value["document_type"] is DocumentType.NATIONAL_ID

    def test_missing_fields_all_reported(self, make_identity):
        data = make_identity(fullName="")
        del data["nationality"]
        result = Validators.validate_identity(data, today=TODAY)
        assert sorted(e.field for e in result.errors) == ["fullName", "nationality"]

    def test_every_bad_field_reported(self, make_identity):
        data = make_identity(
            documentType="visa",
            documentNumber="AB#1",
            fullName="Jane123",
            nationality="D",
            dateOfBirth="2030-01-01",
            expiryDate="soon",
        )
        result = Validators.validate_identity(data, today=TODAY)
        assert not result.is_valid
        assert {e.field for e in result.errors} == {
            "documentType", "documentNumber", "fullName", "nationality", "dateOfBirth", "expiryDate",
        }

    def test_birth_today_rejected(self, make_identity):
        result = Validators.validate_identity(make_identity(dateOfBirth="2024-06-01"), today=TODAY)
        assert [e.field for e in result.errors] == ["dateOfBirth"]

    def test_expired_document_still_well_formed(self, make_identity):
        assert Validators.validate_identity(make_identity(expiryDate="2001-01-01"), today=TODAY).is_valid

    def test_not_a_mapping(self):
        result = Validators.validate_identity(["passport"], today=TODAY)
        assert result.errors[0].field == "identity"

    @pytest.mark.parametrize("doc_type, number", [
        ("passport", "12"),
        ("national_id", "X-99"),
        ("aadhaar", "1234-5678-9012"),
        ("pan_card", "ABC"),
    ])
    def test_number_must_fit_document_type(self, make_identity, doc_type, number):
        result = Validators.validate_identity(
            make_identity(documentType=doc_type, documentNumber=number), today=TODAY,
        )
        assert [e.field for e in result.errors] == ["documentNumber"]
        assert doc_type.replace("_", " ") in result.errors[0].message


class TestLayoutChecks:
    """Checks shared with the enclave worker's document layout check."""

    @pytest.mark.parametrize("name", ["Jane Doe", "José García", "Madonna", "Seán O'Brien", "J. R. Smith", "jane doe"])
    def test_valid_names(self, name):
        assert Validators.is_valid_name(name)

    @pytest.mark.parametrize("name", ["", "Jane123", "R2D2", "Jane_Doe", " Jane", None, 42])
    def test_invalid_names(self, name):
        assert not Validators.is_valid_name(name)

    @pytest.mark.parametrize("doc_type, number, expected", [
        ("passport", "AB1234567", True),
        ("passport", "ab1234567", False),
        ("passport", "12", False),
        ("national_id", "X99887766A", True),
        ("national_id", "1234567", False),
        ("aadhaar", "1234 5678 9012", True),
        ("aadhaar", "123456789012", True),
        ("aadhaar", "12345 678 9012", False),
        ("pan_card", "ABCDE1234F", True),
        ("pan_card", "ABCD1234F", False),
        ("driving_license", "dl-77 12", True),
        ("driving_license", "-77", False),
        ("passport", None, False),
    ])
    def test_document_numbers(self, doc_type, number, expected):
        assert Validators.matches_document_number(doc_type, number) is expected


class TestValidationResult:

    def test_raise_if_invalid(self, make_identity):
        result = Validators.validate_identity(make_identity(nationality="D"), today=TODAY)
        with pytest.raises(ValidationErrors) as exc_info:
            result.raise_if_invalid()
        assert exc_info.value.code == "validation_error"
        assert exc_info.value.detail["fields"] == ["nationality"]

    def test_success_does_not_raise(self):
        ValidationResult.success("ok").raise_if_invalid()
