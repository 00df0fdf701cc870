from __future__ import annotations

from typing import Any, Dict

from pydantic import BaseModel

from .models import LinkageStats, ScanRun


def pydantic_schema(model: type[BaseModel]) -> Dict[str, Any]:
    """
    Returns a JSON Schema dict from Pydantic (v2), keyed by wire aliases.
    Keeps the exported file contract in lockstep with the models.
    """
    return model.model_json_schema(by_alias=True)


def all_contract_schemas() -> Dict[str, Dict[str, Any]]:
    return {
        "ScanRun": pydantic_schema(ScanRun),
        "LinkageStats": pydantic_schema(LinkageStats),
    }
