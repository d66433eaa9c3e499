"""
VeilKYC Confidential Worker

Runs inside the confidential environment. Reads protected identity payloads,
checks each one, and writes a report plus a completion descriptor.

Environment:
    IEXEC_IN, IEXEC_OUT             input and output directories
    IEXEC_BULK_SLICE_SIZE           number of protected datasets (bulk mode)
    IEXEC_DATASET_<i>_FILENAME      protected dataset i (1-based, bulk mode)
    IEXEC_DATASET_FILENAME          single protected dataset
    IEXEC_INPUT_FILES_NUMBER        number of plain input files
    IEXEC_INPUT_FILE_NAME_<i>       input file i (1-based)
    IEXEC_APP_DEVELOPER_SECRET      enclave signing key (JWK or b64url seed)
    IEXEC_REQUESTER_SECRET_1        sanctions list of document-number digests
    IEXEC_TASK_ID                   task identifier, used as verificationId

Outputs (in IEXEC_OUT):
    kyc-verification-result.json    the report
    computed.json                   completion descriptor, always written
    app.log                         structured log
    processed_<name>                copies of the input files

Copyright (c) 2026 Momentum. All rights reserved.
Contact: engineering@momentum.inc
"""

from __future__ import annotations

import io
import json
import pathlib
import re
import shutil
import uuid
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Set

from veilkyc.commitment import digest
from veilkyc.enclave import EnclaveSigner, build_attestation
from veilkyc.errors import ConfigError
from veilkyc.hardening import Validators, parse_iso_date
from veilkyc.models import DocumentType
from veilkyc.observability import (
    KycLogger,
    LogContext,
    LogLevel,
    PipelineLayer,
    StructuredHandler,
)
from veilkyc.proofs import DEFAULT_MINIMUM_AGE, MINIMUM_VALIDITY_DAYS, has_minimum_validity, is_adult, is_document_valid
from veilkyc.schema import REPORT_SCHEMA, validate_with_schema

REPORT_FILENAME = "kyc-verification-result.json"
COMPUTED_FILENAME = "computed.json"
LOG_FILENAME = "app.log"
DEFAULT_OUT_DIR = "/iexec_out"

STATUS_VERIFIED = "VERIFIED"
STATUS_FAILED = "FAILED"
STATUS_ERROR = "ERROR"

ALL_VERIFIED = "ALL_VERIFIED"
PARTIAL_VERIFICATION = "PARTIAL_VERIFICATION"

SCHEMA_ENTRY = "__schema__.json"


# =============================================================================
# PROTECTED DATA ARCHIVE
# =============================================================================

def _kind_of(value: Any) -> str:
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, int):
        return "i128"
    if isinstance(value, str):
        return "string"
    raise ValueError(f"Unsupported protected value type: {type(value).__name__}")


def serialize_protected_data(data: Mapping[str, Any]) -> bytes:
    """
    Serialize a flat mapping into a protected-data archive.

    One zip entry per key plus a schema entry recording each value's kind.
    """
    schema: Dict[str, str] = {}
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for key in sorted(data):
            value = data[key]
            kind = _kind_of(value)
            schema[key] = kind
            if kind == "bool":
                raw = b"\x01" if value else b"\x00"
            else:
                raw = str(value).encode("utf-8")
            zf.writestr(key, raw)
        zf.writestr(SCHEMA_ENTRY, json.dumps(schema, sort_keys=True))
    return buf.getvalue()


class ProtectedDataReader:
    """Typed access to the entries of a protected-data archive."""

    def __init__(self, path: pathlib.Path):
        self.path = pathlib.Path(path)
        self._schema: Optional[Dict[str, str]] = None

    def _load_schema(self, zf: zipfile.ZipFile) -> Dict[str, str]:
        if self._schema is None:
            self._schema = json.loads(zf.read(SCHEMA_ENTRY).decode("utf-8"))
        return self._schema

    def keys(self) -> List[str]:
        with zipfile.ZipFile(self.path) as zf:
            return sorted(self._load_schema(zf))

    def has(self, key: str) -> bool:
        return key in self.keys()

    def get_value(self, key: str, kind: str = "string") -> Any:
        """
        Read one value.

        Raises KeyError when the key is absent and ValueError when its
        recorded kind differs from ``kind``.
        """
        with zipfile.ZipFile(self.path) as zf:
            schema = self._load_schema(zf)
            if key not in schema:
                raise KeyError(f"Protected data has no entry {key!r}")
            if schema[key] != kind:
                raise ValueError(f"Entry {key!r} is {schema[key]}, not {kind}")
            raw = zf.read(key)

        if kind == "bool":
            return raw == b"\x01"
        text = raw.decode("utf-8")
        if kind == "i128":
            return int(text)
        return text

    def get_optional(self, key: str, kind: str = "string") -> Any:
        try:
            return self.get_value(key, kind)
        except KeyError:
            return None


# =============================================================================
# DOCUMENT CHECKS
# =============================================================================

SLASH_DATE_RE = re.compile(r"\d{2}/\d{2}/\d{4}")

# Documents that must carry the holder's name
NAMED_DOCUMENTS = {DocumentType.PASSPORT.value, DocumentType.NATIONAL_ID.value}


def parse_document_fields(data: str) -> Dict[str, str]:
    """
    Labelled ``KEY: value`` lines of a rendered document.

    Lines without a label (the document title) are skipped. Keys are
    upper-cased; the first occurrence of a key wins.
    """
    fields: Dict[str, str] = {}
    for line in data.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        fields.setdefault(key.strip().upper(), value.strip())
    return fields


def validate_format(document_type: str, data: str) -> bool:
    """Layout check for the rendered document text."""
    fields = parse_document_fields(data)
    if not Validators.matches_document_number(document_type, fields.get("NUMBER")):
        return False
    if document_type in NAMED_DOCUMENTS and not Validators.is_valid_name(fields.get("NAME")):
        return False
    if document_type == DocumentType.PASSPORT.value:
        return bool(SLASH_DATE_RE.fullmatch(fields.get("DOB", "")))
    return True


@dataclass
class WorkerSecrets:
    signer: EnclaveSigner
    sanctioned: Optional[Set[str]] = None

    @property
    def strict(self) -> bool:
        return self.sanctioned is not None


def parse_sanctions_list(secret: str) -> Set[str]:
    """A JSON array of digests, or a comma-separated list."""
    text = secret.strip()
    if text.startswith("["):
        entries = json.loads(text)
        if not isinstance(entries, list):
            raise ValueError("sanctions list must be an array")
    else:
        entries = text.split(",")
    return {str(e).strip().lower() for e in entries if str(e).strip()}


@dataclass
class ItemOutcome:
    index: int
    status: str
    user_id: str = ""
    document_type: str = ""
    document_hash: str = ""
    checks: Dict[str, bool] = field(default_factory=dict)
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"index": self.index, "status": self.status}
        if self.user_id:
            d["userId"] = self.user_id
        if self.document_type:
            d["documentType"] = self.document_type
        if self.document_hash:
            d["documentHash"] = self.document_hash
        if self.checks:
            d["checks"] = dict(self.checks)
        if self.error:
            d["error"] = self.error
        return d


def verify_document(
    index: int,
    reader: ProtectedDataReader,
    secrets: WorkerSecrets,
    today,
) -> ItemOutcome:
    """Run every check on one protected payload."""
    document_data = reader.get_optional("documentData") or ""
    document_type = reader.get_optional("documentType") or ""
    user_id = (reader.get_optional("userId") or "").lower()
    claimed_hash = reader.get_optional("documentHash")

    doc_hash = digest(document_data)
    valid_types = {t.value for t in DocumentType}

    checks: Dict[str, bool] = {
        "hasData": len(document_data) > 0,
        "validType": document_type in valid_types,
        "validUserId": len(user_id) > 0,
        "dataIntegrity": Validators.validate_digest(doc_hash).is_valid
        and (claimed_hash is None or claimed_hash.lower() == doc_hash),
        "formatValid": validate_format(document_type, document_data),
    }

    dob = reader.get_optional("dateOfBirth")
    if dob:
        minimum_age = reader.get_optional("minimumAge", "i128") or DEFAULT_MINIMUM_AGE
        checks["isAdult"] = is_adult(parse_iso_date(dob), today, minimum_age)

    expiry = reader.get_optional("expiryDate")
    if expiry:
        expiry_date = parse_iso_date(expiry)
        checks["isNotExpired"] = is_document_valid(expiry_date, today)
        if secrets.strict:
            checks["hasMinimumValidity"] = has_minimum_validity(expiry_date, today, MINIMUM_VALIDITY_DAYS)

    if secrets.strict:
        number = reader.get_optional("documentNumber")
        screened = digest(number) if number else doc_hash
        checks["isNotSanctioned"] = screened not in secrets.sanctioned

    status = STATUS_VERIFIED if all(checks.values()) else STATUS_FAILED
    return ItemOutcome(
        index=index,
        status=status,
        user_id=user_id,
        document_type=document_type,
        document_hash=doc_hash,
        checks=checks,
    )


# =============================================================================
# WORKER
# =============================================================================

class KycWorker:
    """
    One worker invocation.

    ``run()`` always writes exactly one completion descriptor, whatever
    happens in between.
    """

    def __init__(
        self,
        env: Mapping[str, str],
        now: Optional[datetime] = None,
        log_context: Optional[LogContext] = None,
    ):
        self.env = env
        self.now = now or datetime.now(timezone.utc)
        self.in_dir = pathlib.Path(env.get("IEXEC_IN") or ".")
        self.out_dir = pathlib.Path(env.get("IEXEC_OUT") or DEFAULT_OUT_DIR)
        self._log_context = log_context
        self._log_file = None
        self._log_handler: Optional[StructuredHandler] = None
        self.logger: Optional[KycLogger] = None

    @property
    def report_path(self) -> pathlib.Path:
        return self.out_dir / REPORT_FILENAME

    @property
    def computed_path(self) -> pathlib.Path:
        return self.out_dir / COMPUTED_FILENAME

    def _open_logger(self) -> KycLogger:
        if self._log_context is None:
            self._log_context = LogContext(level=LogLevel.INFO)
        try:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            self._log_file = open(self.out_dir / LOG_FILENAME, "a", encoding="utf-8")
        except OSError:
            self._log_file = None
        else:
            self._log_handler = StructuredHandler(stream=self._log_file, fmt="json")
            self._log_context.add_handler(self._log_handler)
        return self._log_context.get_logger("worker", PipelineLayer.WORKER)

    def _close_logger(self) -> None:
        if self._log_handler is not None:
            self._log_context.remove_handler(self._log_handler)
            self._log_handler = None
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None

    def _load_secrets(self) -> WorkerSecrets:
        dev_secret = self.env.get("IEXEC_APP_DEVELOPER_SECRET")
        if dev_secret:
            signer = EnclaveSigner.from_secret(dev_secret)
            self.logger.info("Using app developer secret as enclave key", signer=signer.did)
        else:
            signer = EnclaveSigner.generate()
            self.logger.warning("No app developer secret; using an ephemeral enclave key", signer=signer.did)

        sanctioned = None
        requester_secret = self.env.get("IEXEC_REQUESTER_SECRET_1")
        if requester_secret:
            try:
                sanctioned = parse_sanctions_list(requester_secret)
            except ValueError as e:
                raise ConfigError(f"Invalid requester secret: {e}") from e
            self.logger.info("Sanctions screening enabled", entries=len(sanctioned))
        return WorkerSecrets(signer=signer, sanctioned=sanctioned)

    def _dataset_paths(self) -> List[pathlib.Path]:
        bulk = int(self.env.get("IEXEC_BULK_SLICE_SIZE") or 0)
        if bulk > 0:
            self.logger.info("Processing protected documents in bulk", count=bulk)
            return [
                self.in_dir / self.env.get(f"IEXEC_DATASET_{i}_FILENAME", "")
                for i in range(1, bulk + 1)
            ]
        single = self.env.get("IEXEC_DATASET_FILENAME")
        return [self.in_dir / single] if single else []

    def _process_input_files(self) -> List[str]:
        hashes: List[str] = []
        count = int(self.env.get("IEXEC_INPUT_FILES_NUMBER") or 0)
        for i in range(1, count + 1):
            name = self.env[f"IEXEC_INPUT_FILE_NAME_{i}"]
            source = self.in_dir / name
            hashes.append(digest(source.read_bytes()))
            shutil.copyfile(source, self.out_dir / f"processed_{name}")
            self.logger.info("Input file processed", index=i, file=name)
        return hashes

    def _attest(self, outcomes: List[ItemOutcome], secrets: WorkerSecrets) -> Optional[Dict[str, Any]]:
        checked = [o for o in outcomes if o.status != STATUS_ERROR]
        subjects = {o.user_id for o in checked if o.user_id}
        if len(subjects) != 1 or len(checked) != len(outcomes):
            self.logger.warning("No attestation: batch must cover exactly one subject without errors",
                                subjects=len(subjects))
            return None

        types = {o.document_type for o in checked}
        attestation = build_attestation(
            subject=subjects.pop(),
            document_type=types.pop() if len(types) == 1 else "batch",
            adult=all(o.checks.get("isAdult", False) for o in checked),
            not_expired=all(o.checks.get("isNotExpired", False) for o in checked),
            not_sanctioned=all(o.checks.get("isNotSanctioned", True) for o in checked),
            signer=secrets.signer,
            now=self.now,
            checks_passed=all(o.status == STATUS_VERIFIED for o in checked),
        )
        return attestation.to_dict()

    def build_report(self) -> Dict[str, Any]:
        secrets = self._load_secrets()
        today = self.now.date()

        outcomes: List[ItemOutcome] = []
        for index, path in enumerate(self._dataset_paths(), start=1):
            try:
                outcome = verify_document(index, ProtectedDataReader(path), secrets, today)
                self.logger.info(
                    "Document processed",
                    index=index,
                    status=outcome.status,
                    document_type=outcome.document_type,
                )
            except Exception as e:
                self.logger.error(
                    "Error processing document",
                    error_code="item_error",
                    index=index,
                    error=str(e),
                )
                outcome = ItemOutcome(index=index, status=STATUS_ERROR, error=str(e))
            outcomes.append(outcome)

        document_hashes = [o.document_hash for o in outcomes if o.document_hash]
        document_hashes.extend(self._process_input_files())

        all_verified = bool(outcomes) and all(o.status == STATUS_VERIFIED for o in outcomes)
        return {
            "verificationId": self.env.get("IEXEC_TASK_ID") or str(uuid.uuid4()),
            "totalDocuments": len(outcomes),
            "verifiedDocuments": sum(1 for o in outcomes if o.status == STATUS_VERIFIED),
            "failedDocuments": sum(1 for o in outcomes if o.status == STATUS_FAILED),
            "documentHashes": document_hashes,
            "verificationResults": [o.to_dict() for o in outcomes],
            "overallStatus": ALL_VERIFIED if all_verified else PARTIAL_VERIFICATION,
            "processedAt": self.now.isoformat(),
            "attestation": self._attest(outcomes, secrets),
        }

    def run(self) -> Dict[str, Any]:
        """Process every input and return the completion descriptor."""
        self.logger = self._open_logger()
        self.logger.info("Starting KYC verification worker")
        computed: Dict[str, Any] = {}
        try:
            report = self.build_report()
            errors = validate_with_schema(report, REPORT_SCHEMA)
            if errors:
                raise ValueError(f"Report does not match schema: {errors[0]}")
            self.report_path.write_text(json.dumps(report, indent=2), encoding="utf-8")
            computed = {"deterministic-output-path": str(self.report_path)}
            self.logger.info("Report written", status=report["overallStatus"])
        except Exception as e:
            self.logger.error(
                "KYC verification failed",
                error_code="worker_failed",
                exc_info=True,
                error=str(e),
            )
            computed = {
                "deterministic-output-path": str(self.out_dir),
                "error-message": str(e) or type(e).__name__,
            }
        finally:
            self.out_dir.mkdir(parents=True, exist_ok=True)
            self.computed_path.write_text(json.dumps(computed), encoding="utf-8")
            self._close_logger()
        return computed


def run_worker(
    env: Mapping[str, str],
    now: Optional[datetime] = None,
    log_context: Optional[LogContext] = None,
) -> Dict[str, Any]:
    return KycWorker(env, now=now, log_context=log_context).run()


def read_attestation(out_dir: pathlib.Path) -> Optional[Dict[str, Any]]:
    """The attestation from a finished run, or None when the run failed."""
    computed = json.loads((pathlib.Path(out_dir) / COMPUTED_FILENAME).read_text(encoding="utf-8"))
    if "error-message" in computed:
        return None
    report = json.loads(pathlib.Path(computed["deterministic-output-path"]).read_text(encoding="utf-8"))
    return report.get("attestation")
