"""
RDO Error Taxonomy

Refused verdicts are NOT errors: a refusal is a successful, expected outcome
returned as data (see ``rdo.registry.ActionOutcome``). The exceptions below
are reserved for conditions that abort a call outright.

    RDOError
    ├─ ValidationError      malformed intent (caller's responsibility)
    ├─ ValidationErrors     collection of ValidationError
    ├─ StorageError         content-store put/get failure (retryable)
    ├─ NotFound             unknown object id (aborts, no state change)
    ├─ MalformedRequest     invalid create/request_action parameters
    ├─ DecryptionError      authentication tag did not verify
    └─ LinkError            capability link cannot be parsed
"""

from __future__ import annotations

from typing import Any, List, Optional


class RDOError(Exception):
    """Base exception for the RDO stack."""
    pass


class ValidationError(RDOError):
    """Base exception for validation failures."""

    def __init__(self, field: str, message: str, value: Any = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ValidationErrors(RDOError):
    """Collection of validation errors."""

    def __init__(self, errors: List[ValidationError]):
        self.errors = errors
        messages = "; ".join(f"{e.field}: {e.message}" for e in errors)
        super().__init__(f"Validation failed: {messages}")


class StorageError(RDOError):
    """Content store operation failed."""

    def __init__(self, message: str, pointer: Optional[str] = None):
        self.pointer = pointer
        super().__init__(message)


class NotFound(RDOError):
    """No record exists for the requested object id."""

    def __init__(self, rdo_id: Any):
        self.rdo_id = rdo_id
        super().__init__(f"RDO not found: {rdo_id}")


class MalformedRequest(RDOError):
    """Structurally invalid parameters; raised before any state mutation."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class DecryptionError(RDOError):
    """Ciphertext could not be opened with the supplied key and iv."""
    pass


class LinkError(RDOError):
    """Capability link is malformed."""
    pass
