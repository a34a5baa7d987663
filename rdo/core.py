"""Core primitives for the RDO stack.

This module provides the foundational utilities used throughout the stack:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (sorted keys, no whitespace, no floats)
- YAML/JSON loading with consistent encoding

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import re
import time
from typing import Any, Union

import yaml

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    """Compute SHA-256 hash of UTF-8 encoded text."""
    return sha256_bytes(text.encode("utf-8"))


def is_valid_sha256(digest: Any) -> bool:
    """Check if value is a lowercase SHA-256 hex digest."""
    return isinstance(digest, str) and bool(SHA256_HEX_RE.match(digest))


def load_yaml(path: Union[str, pathlib.Path]) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: Union[str, pathlib.Path]) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def load_document(path: Union[str, pathlib.Path]) -> Any:
    """Load a JSON or YAML document, choosing the parser by suffix."""
    p = pathlib.Path(path)
    if p.suffix.lower() in (".yaml", ".yml"):
        return load_yaml(p)
    return load_json(p)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes.

    Properties:
    - Keys sorted lexicographically at every nesting level
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (timestamps and counts are integers)

    This ensures byte-for-byte reproducibility for digest commitments.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def canonical_digest(obj: Any) -> str:
    """SHA-256 of the canonical JSON encoding of obj."""
    return sha256_bytes(canonical_json_bytes(obj))


def unix_now() -> int:
    """Current time as integer epoch seconds."""
    return int(time.time())
