"""JSON Schema loading for attestation and worker report artifacts."""

from __future__ import annotations

import json
import pathlib
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

SCHEMAS_DIR = pathlib.Path(__file__).resolve().parent / "schemas"

ATTESTATION_SCHEMA = "attestation.schema.json"
REPORT_SCHEMA = "report.schema.json"

_SCHEMA_REGISTRY: Optional[Registry] = None
_VALIDATORS: Dict[str, Draft202012Validator] = {}


def load_schema(name: str) -> Dict[str, Any]:
    return json.loads((SCHEMAS_DIR / name).read_text(encoding="utf-8"))


def _schema_registry() -> Registry:
    """Build an in-memory registry of bundled schemas keyed by $id.

    The report schema references the attestation schema by $id, so
    validation works offline.
    """
    global _SCHEMA_REGISTRY
    if _SCHEMA_REGISTRY is not None:
        return _SCHEMA_REGISTRY

    reg = Registry()
    for sp in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        sj = json.loads(sp.read_text(encoding="utf-8"))
        sid = sj.get("$id")
        if isinstance(sid, str) and sid:
            reg = reg.with_resource(sid, Resource.from_contents(sj, default_specification=DRAFT202012))

    _SCHEMA_REGISTRY = reg
    return reg


def schema_validator(name: str) -> Draft202012Validator:
    if name not in _VALIDATORS:
        _VALIDATORS[name] = Draft202012Validator(load_schema(name), registry=_schema_registry())
    return _VALIDATORS[name]


def validate_with_schema(obj: Any, name: str) -> List[str]:
    errors = []
    for e in sorted(schema_validator(name).iter_errors(obj), key=str):
        errors.append(f"{list(e.absolute_path)}: {e.message}")
    return errors
