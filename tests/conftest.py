import io
import os
import pathlib
import sys
from datetime import datetime, timezone

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import veilkyc`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from veilkyc.config import ConfigManager  # noqa: E402
from veilkyc.enclave import EnclaveSigner  # noqa: E402
from veilkyc.observability import LogContext, LogLevel  # noqa: E402
from veilkyc.proofs import ProofGenerator  # noqa: E402
from veilkyc.verifier import ProofVerifier  # noqa: E402
from veilkyc.zkp import SealedCommitmentBackend, create_standard_registry  # noqa: E402


FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    for name in list(os.environ):
        if name.startswith("VEILKYC_"):
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset_instance()
    yield
    ConfigManager.reset_instance()


@pytest.fixture
def now():
    return FIXED_NOW


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def subject():
    return "0xAbCdEf0123456789abcdef0123456789ABCDEF01"


@pytest.fixture
def make_identity():
    def _make(**overrides):
        data = {
            "documentType": "passport",
            "documentNumber": "AB1234567",
            "fullName": "Jane Doe",
            "dateOfBirth": "1990-05-15",
            "nationality": "DE",
            "expiryDate": "2030-01-01",
        }
        data.update(overrides)
        return data
    return _make


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def log_context(log_stream):
    return LogContext(level=LogLevel.DEBUG, stream=log_stream, buffer_size=500)


@pytest.fixture
def registry():
    return create_standard_registry("test-seed")


@pytest.fixture
def proving_backend(registry):
    return SealedCommitmentBackend(registry)


@pytest.fixture
def generator(proving_backend, registry, clock, log_context):
    return ProofGenerator(proving_backend, registry, clock=clock, log_context=log_context)


@pytest.fixture
def verifier(proving_backend, registry, log_context):
    return ProofVerifier(proving_backend, registry, log_context)


@pytest.fixture
def signer():
    return EnclaveSigner.from_seed(bytes(range(32)))
