from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Union

import jsonschema
from pydantic import BaseModel

from .errors import ContractViolation
from .models import ScanRun
from .schemas import all_contract_schemas


def validate_pydantic(model_cls: type[BaseModel], data: Dict[str, Any]) -> BaseModel:
    try:
        return model_cls.model_validate(data)
    except Exception as e:
        raise ContractViolation(f"Contract validation failed for {model_cls.__name__}: {e}") from e


def validate_document(name: str, document: Dict[str, Any]) -> None:
    """Structural check of an exported document against its JSON schema."""
    schemas = all_contract_schemas()
    if name not in schemas:
        raise KeyError(f"Unknown schema: {name}")
    try:
        jsonschema.validate(instance=document, schema=schemas[name])
    except jsonschema.ValidationError as e:
        raise ContractViolation(f"{name} document failed schema validation: {e.message}") from e


def validate_scan_run(data: Dict[str, Any]) -> ScanRun:
    return validate_pydantic(ScanRun, data)  # type: ignore[return-value]


def load_scan_run(path: Union[str, Path]) -> ScanRun:
    raw = Path(path).read_text(encoding="utf-8")
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ContractViolation(f"Result file {path} is not valid JSON: {e}") from e
    return validate_scan_run(data)


def dump_schema(name: str) -> str:
    schemas = all_contract_schemas()
    if name not in schemas:
        raise KeyError(f"Unknown schema: {name}")
    return json.dumps(schemas[name], indent=2, sort_keys=True)
