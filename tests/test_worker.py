"""
Tests for the confidential worker.

Each test lays out an input directory the way the confidential runtime
would, runs the worker against it and inspects the output directory.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import json
from datetime import datetime, timezone

import pytest

from veilkyc.commitment import digest
from veilkyc.enclave import b64url_encode, verify_attestation
from veilkyc.models import AttestationResult
from veilkyc.schema import REPORT_SCHEMA, validate_with_schema
from veilkyc.worker import (
    ALL_VERIFIED,
    COMPUTED_FILENAME,
    LOG_FILENAME,
    PARTIAL_VERIFICATION,
    REPORT_FILENAME,
    KycWorker,
    ProtectedDataReader,
    parse_document_fields,
    parse_sanctions_list,
    read_attestation,
    run_worker,
    serialize_protected_data,
    validate_format,
)

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
USER = "0xabcdef0123456789abcdef0123456789abcdef01"
PASSPORT_TEXT = "PASSPORT\nNUMBER: AB1234567\nNAME: Jane Doe\nDOB: 15/05/1990\nEXPIRY: 01/01/2030"


def payload(**overrides):
    data = {
        "documentData": PASSPORT_TEXT,
        "documentType": "passport",
        "documentNumber": "AB1234567",
        "dateOfBirth": "1990-05-15",
        "expiryDate": "2030-01-01",
        "nationality": "DE",
        "userId": USER,
        "minimumAge": 18,
    }
    data.update(overrides)
    return {k: v for k, v in data.items() if v is not None}


@pytest.fixture
def layout(tmp_path):
    in_dir = tmp_path / "in"
    out_dir = tmp_path / "out"
    in_dir.mkdir()

    def _write(name, data):
        (in_dir / name).write_bytes(serialize_protected_data(data))
        return name

    env = {"IEXEC_IN": str(in_dir), "IEXEC_OUT": str(out_dir), "IEXEC_TASK_ID": "0xtask"}
    return env, in_dir, out_dir, _write


def run(env, log_context):
    return KycWorker(env, now=NOW, log_context=log_context).run()


def report_of(out_dir):
    return json.loads((out_dir / REPORT_FILENAME).read_text(encoding="utf-8"))


# =============================================================================
# PROTECTED DATA ARCHIVE
# =============================================================================

class TestProtectedData:

    def test_typed_values(self, tmp_path):
        path = tmp_path / "data.zip"
        path.write_bytes(serialize_protected_data({"s": "text", "n": 42, "b": True}))
        reader = ProtectedDataReader(path)
        assert reader.keys() == ["b", "n", "s"]
        assert reader.get_value("s") == "text"
        assert reader.get_value("n", "i128") == 42
        assert reader.get_value("b", "bool") is True
        assert reader.has("n")

    def test_missing_key(self, tmp_path):
        path = tmp_path / "data.zip"
        path.write_bytes(serialize_protected_data({"s": "text"}))
        reader = ProtectedDataReader(path)
        with pytest.raises(KeyError):
            reader.get_value("other")
        assert reader.get_optional("other") is None

    def test_kind_mismatch(self, tmp_path):
        path = tmp_path / "data.zip"
        path.write_bytes(serialize_protected_data({"n": 42}))
        with pytest.raises(ValueError):
            ProtectedDataReader(path).get_value("n", "string")

    def test_unsupported_value(self):
        with pytest.raises(ValueError):
            serialize_protected_data({"x": 1.5})


class TestFormatChecks:

    @pytest.mark.parametrize("doc_type,text,expected", [
        ("passport", PASSPORT_TEXT, True),
        ("passport", PASSPORT_TEXT.replace("Jane Doe", "José García"), True),
        ("passport", PASSPORT_TEXT.replace("Jane Doe", "Madonna"), True),
        ("passport", PASSPORT_TEXT.replace("Jane Doe", "Seán O'Brien"), True),
        ("passport", PASSPORT_TEXT.replace("Jane Doe", "jane doe"), True),
        ("passport", PASSPORT_TEXT.replace("Jane Doe", "Jane123"), False),
        ("passport", PASSPORT_TEXT.replace("15/05/1990", "1990-05-15"), False),
        ("passport", "PASSPORT\nNUMBER: AB1234567\nNAME: Jane Doe", False),
        ("passport", "AB1234567 jane doe", False),
        ("national_id", "NATIONAL ID\nNUMBER: X1234567Z\nNAME: Jane Doe", True),
        ("national_id", "NATIONAL ID\nNUMBER: 12\nNAME: Jane Doe", False),
        ("national_id", "NATIONAL ID\nNUMBER: X1234567Z", False),
        ("aadhaar", "AADHAAR\nNUMBER: 1234 5678 9012", True),
        ("aadhaar", "AADHAAR\nNUMBER: 12345 678 9012", False),
        ("pan_card", "PAN CARD\nNUMBER: ABCDE1234F", True),
        ("pan_card", "PAN CARD\nNUMBER: ABCD1234F", False),
        ("driving_license", "DRIVING LICENSE\nNUMBER: DL-123", True),
        ("driving_license", "anything", False),
    ])
    def test_layouts(self, doc_type, text, expected):
        assert validate_format(doc_type, text) is expected

    def test_number_is_read_from_its_own_field(self):
        # A valid-looking number elsewhere in the text does not count
        text = "NATIONAL ID X1234567Z\nNUMBER: 12\nNAME: Jane Doe X1234567Z"
        assert validate_format("national_id", text) is False
        assert validate_format("national_id", "NATIONAL ID\nNAME: Jane Doe") is False

    def test_parse_document_fields(self):
        fields = parse_document_fields("PASSPORT\nnumber:  AB1234567 \nName: Jane Doe\nNAME: Other\nnoise")
        assert fields == {"NUMBER": "AB1234567", "NAME": "Jane Doe"}

    def test_sanctions_list_forms(self):
        assert parse_sanctions_list('["AA", "bb"]') == {"aa", "bb"}
        assert parse_sanctions_list("aa, BB ,") == {"aa", "bb"}


# =============================================================================
# SINGLE DOCUMENT
# =============================================================================

class TestSingleDocument:

    def test_verified_passport(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())

        computed = run(env, log_context)

        assert computed == {"deterministic-output-path": str(out_dir / REPORT_FILENAME)}
        report = report_of(out_dir)
        assert validate_with_schema(report, REPORT_SCHEMA) == []
        assert report["verificationId"] == "0xtask"
        assert report["overallStatus"] == ALL_VERIFIED
        assert report["verifiedDocuments"] == 1
        result = report["verificationResults"][0]
        assert result["status"] == "VERIFIED"
        assert result["documentHash"] == digest(PASSPORT_TEXT)
        assert result["checks"]["isAdult"] and result["checks"]["isNotExpired"]
        assert "isNotSanctioned" not in result["checks"]

    def test_attestation_is_signed_by_developer_secret(self, layout, log_context, signer):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        env["IEXEC_APP_DEVELOPER_SECRET"] = b64url_encode(bytes(range(32)))

        run(env, log_context)

        attestation = AttestationResult.from_dict(read_attestation(out_dir))
        assert attestation.is_valid
        assert attestation.subject == USER
        assert attestation.signer == signer.did
        assert attestation.attributes.is_not_sanctioned
        assert verify_attestation(attestation, signer.did)

    def test_ephemeral_key_is_logged(self, layout, log_context):
        env, _, _, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        run(env, log_context)
        messages = [e.message for e in log_context.buffer.entries()]
        assert "No app developer secret; using an ephemeral enclave key" in messages

    def test_underage(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write(
            "protected.zip",
            payload(dateOfBirth="2004-01-01", minimumAge=21),
        )
        run(env, log_context)
        report = report_of(out_dir)
        assert report["overallStatus"] == PARTIAL_VERIFICATION
        assert report["verificationResults"][0]["checks"]["isAdult"] is False
        attestation = report["attestation"]
        assert attestation["isValid"] is False
        assert attestation["attributes"]["isAdult"] is False

    def test_expired(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload(expiryDate="2024-06-01"))
        run(env, log_context)
        assert report_of(out_dir)["attestation"]["attributes"]["isNotExpired"] is False

    def test_claimed_hash_mismatch(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload(documentHash="0" * 64))
        run(env, log_context)
        result = report_of(out_dir)["verificationResults"][0]
        assert result["status"] == "FAILED"
        assert result["checks"]["dataIntegrity"] is False

    def test_bad_format(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload(documentData="nothing useful"))
        run(env, log_context)
        result = report_of(out_dir)["verificationResults"][0]
        assert result["checks"]["formatValid"] is False
        assert report_of(out_dir)["attestation"]["isValid"] is False

    def test_unreadable_dataset_is_an_item_error(self, layout, log_context):
        env, _, out_dir, _ = layout
        env["IEXEC_DATASET_FILENAME"] = "missing.zip"
        computed = run(env, log_context)
        assert "error-message" not in computed
        report = report_of(out_dir)
        assert report["verificationResults"][0]["status"] == "ERROR"
        assert report["attestation"] is None
        assert read_attestation(out_dir) is None

    def test_no_dataset(self, layout, log_context):
        env, _, out_dir, _ = layout
        run(env, log_context)
        report = report_of(out_dir)
        assert report["totalDocuments"] == 0
        assert report["overallStatus"] == PARTIAL_VERIFICATION


# =============================================================================
# SANCTIONS SCREENING
# =============================================================================

class TestStrictMode:

    def test_sanctioned_document(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        env["IEXEC_REQUESTER_SECRET_1"] = json.dumps([digest("AB1234567")])

        run(env, log_context)

        report = report_of(out_dir)
        checks = report["verificationResults"][0]["checks"]
        assert checks["isNotSanctioned"] is False
        assert checks["hasMinimumValidity"] is True
        assert report["attestation"]["isValid"] is False
        assert report["attestation"]["attributes"]["isNotSanctioned"] is False

    def test_clear_document(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        env["IEXEC_REQUESTER_SECRET_1"] = digest("ZZ0000000")

        run(env, log_context)

        report = report_of(out_dir)
        assert report["verificationResults"][0]["checks"]["isNotSanctioned"] is True
        assert report["attestation"]["isValid"] is True

    def test_short_validity_fails_in_strict_mode(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload(expiryDate="2024-06-20"))
        env["IEXEC_REQUESTER_SECRET_1"] = "[]"
        run(env, log_context)
        checks = report_of(out_dir)["verificationResults"][0]["checks"]
        assert checks["isNotExpired"] is True
        assert checks["hasMinimumValidity"] is False


# =============================================================================
# BULK AND INPUT FILES
# =============================================================================

class TestBulk:

    def test_two_documents_same_subject(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_BULK_SLICE_SIZE"] = "2"
        env["IEXEC_DATASET_1_FILENAME"] = write("a.zip", payload())
        env["IEXEC_DATASET_2_FILENAME"] = write(
            "b.zip",
            payload(documentType="pan_card", documentData="PAN CARD\nNUMBER: ABCDE1234F", documentNumber="ABCDE1234F"),
        )
        run(env, log_context)
        report = report_of(out_dir)
        assert report["totalDocuments"] == 2
        assert report["overallStatus"] == ALL_VERIFIED
        assert [r["index"] for r in report["verificationResults"]] == [1, 2]
        assert report["attestation"]["isValid"] is True

    def test_mixed_subjects_get_no_attestation(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_BULK_SLICE_SIZE"] = "2"
        env["IEXEC_DATASET_1_FILENAME"] = write("a.zip", payload())
        env["IEXEC_DATASET_2_FILENAME"] = write("b.zip", payload(userId="0x" + "1" * 40))
        run(env, log_context)
        report = report_of(out_dir)
        assert report["overallStatus"] == ALL_VERIFIED
        assert report["attestation"] is None

    def test_input_files_are_hashed_and_copied(self, layout, log_context):
        env, in_dir, out_dir, write = layout
        (in_dir / "extra.txt").write_bytes(b"extra")
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        env["IEXEC_INPUT_FILES_NUMBER"] = "1"
        env["IEXEC_INPUT_FILE_NAME_1"] = "extra.txt"
        run(env, log_context)
        assert (out_dir / "processed_extra.txt").read_bytes() == b"extra"
        assert digest(b"extra") in report_of(out_dir)["documentHashes"]


# =============================================================================
# COMPLETION DESCRIPTOR
# =============================================================================

class TestCompletion:

    def test_descriptor_written_on_failure(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        env["IEXEC_APP_DEVELOPER_SECRET"] = "not-a-key"

        computed = run(env, log_context)

        assert computed["deterministic-output-path"] == str(out_dir)
        assert "Invalid enclave signing key" in computed["error-message"]
        on_disk = json.loads((out_dir / COMPUTED_FILENAME).read_text(encoding="utf-8"))
        assert on_disk == computed
        assert not (out_dir / REPORT_FILENAME).exists()
        assert read_attestation(out_dir) is None

    def test_missing_input_file_fails_the_run(self, layout, log_context):
        env, _, out_dir, _ = layout
        env["IEXEC_INPUT_FILES_NUMBER"] = "1"
        env["IEXEC_INPUT_FILE_NAME_1"] = "absent.txt"
        computed = run(env, log_context)
        assert "error-message" in computed
        assert (out_dir / COMPUTED_FILENAME).exists()

    def test_failure_is_logged(self, layout, log_context):
        env, _, _, _ = layout
        env["IEXEC_APP_DEVELOPER_SECRET"] = "not-a-key"
        run(env, log_context)
        codes = [e.error_code for e in log_context.buffer.entries()]
        assert "worker_failed" in codes

    def test_structured_log_file(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        run(env, log_context)
        lines = (out_dir / LOG_FILENAME).read_text(encoding="utf-8").splitlines()
        events = [json.loads(line) for line in lines]
        assert events[0]["message"] == "Starting KYC verification worker"
        assert all(e["layer"] == "worker" for e in events)
        assert "AB1234567" not in "\n".join(lines)

    def test_run_worker_helper(self, layout, log_context):
        env, _, out_dir, write = layout
        env["IEXEC_DATASET_FILENAME"] = write("protected.zip", payload())
        computed = run_worker(env, now=NOW, log_context=log_context)
        assert computed["deterministic-output-path"].endswith(REPORT_FILENAME)
