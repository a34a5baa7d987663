"""JSON Schema validation infrastructure.

Schemas ship inside the package under ``rdo/schemas/<name>.schema.json``.
Validators are cached per schema name.
"""

from __future__ import annotations

import pathlib
from functools import lru_cache
from typing import Any, List

from jsonschema import Draft202012Validator

from rdo.core import load_json

SCHEMAS_DIR = pathlib.Path(__file__).resolve().parent / "schemas"


def schema_path(name: str) -> pathlib.Path:
    return SCHEMAS_DIR / f"{name}.schema.json"


@lru_cache(maxsize=None)
def schema_validator(name: str) -> Draft202012Validator:
    """Create (and cache) a validator for a packaged schema.

    Args:
        name: Schema name without suffix, e.g. ``"intent"``

    Returns:
        A configured Draft202012Validator
    """
    path = schema_path(name)
    if not path.exists():
        raise FileNotFoundError(f"schema not found: {path}")
    schema = load_json(path)
    Draft202012Validator.check_schema(schema)
    return Draft202012Validator(schema)


def schema_errors(name: str, instance: Any) -> List[str]:
    """Validate instance; return human-readable errors sorted by location."""
    v = schema_validator(name)
    errs = sorted(v.iter_errors(instance), key=lambda e: [str(p) for p in e.absolute_path])
    out: List[str] = []
    for e in errs:
        loc = "/".join(str(p) for p in e.absolute_path) or "<root>"
        out.append(f"{loc}: {e.message}")
    return out
