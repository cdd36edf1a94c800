from __future__ import annotations

from functools import lru_cache
from importlib import resources
import json
from typing import Any

from jsonschema import Draft202012Validator

SCHEMA_NAME = "gpu-counters"
SCHEMA_VERSION = 1


def load_schema() -> dict[str, Any]:
    schema_file = resources.files("gpu_counters").joinpath(f"schemas/{SCHEMA_NAME}.schema.json")
    return json.loads(schema_file.read_text(encoding="utf-8"))


@lru_cache(maxsize=1)
def get_validator() -> Draft202012Validator:
    return Draft202012Validator(schema=load_schema())


def validate_payload(payload: dict[str, Any]) -> list[str]:
    errors = sorted(get_validator().iter_errors(payload), key=lambda e: [str(p) for p in e.path])
    return [error.message for error in errors]
