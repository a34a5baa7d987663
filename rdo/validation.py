"""
Intent Validation

Malformed intent is a caller concern: the compiler accepts whatever it is
given. Callers (the CLI, the action protocol) validate first:

    validate_intent_document(doc)   structural check of a JSON/YAML document
    validate_intent(intent)         semantic checks on a RuleIntent

Both return a ValidationResult; ``raise_if_invalid()`` turns a failure into
ValidationErrors.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, List, Optional
from urllib.parse import urlparse

from rdo.errors import ValidationError, ValidationErrors
from rdo.rules import PAYLOAD_TYPES, AccessType, RDOType, RuleIntent
from rdo.schema import schema_errors


@dataclass
class ValidationResult:
    """Result of a validation operation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    sanitized_value: Any = None

    def raise_if_invalid(self) -> None:
        """Raise ValidationErrors if validation failed."""
        if not self.is_valid:
            raise ValidationErrors(self.errors)

    @classmethod
    def success(cls, sanitized_value: Any = None, warnings: Optional[List[str]] = None) -> "ValidationResult":
        return cls(is_valid=True, sanitized_value=sanitized_value, warnings=list(warnings or []))

    @classmethod
    def failure(cls, errors: List[ValidationError]) -> "ValidationResult":
        return cls(is_valid=False, errors=errors)


class Validators:
    """Collection of input validators."""

    IDENTITY_PATTERN = re.compile(r"^[A-Za-z0-9:._@#-]{1,256}$")

    MAX_NAME_LENGTH = 256
    MAX_DESCRIPTION_LENGTH = 4096
    MAX_EXPIRY_SECONDS = 100 * 365 * 24 * 3600

    @classmethod
    def validate_string(
        cls,
        value: Any,
        field_name: str,
        min_length: int = 1,
        max_length: int = 4096,
        pattern: Optional[re.Pattern] = None,
    ) -> ValidationResult:
        """Validate a string value."""
        if not isinstance(value, str):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected string, got {type(value).__name__}", value)
            ])

        sanitized = value.strip().replace("\x00", "")
        errors = []
        if len(sanitized) < min_length:
            errors.append(ValidationError(field_name, f"Too short (min {min_length} chars)", value))
        if len(sanitized) > max_length:
            errors.append(ValidationError(field_name, f"Too long (max {max_length} chars)", value))
        if pattern and not pattern.match(sanitized):
            errors.append(ValidationError(field_name, "Does not match required pattern", value))

        if errors:
            return ValidationResult.failure(errors)
        return ValidationResult.success(sanitized)

    @classmethod
    def validate_identity(cls, value: Any, field_name: str = "identity") -> ValidationResult:
        # identities are compared verbatim, so padding is rejected rather than stripped
        result = cls.validate_string(value, field_name, pattern=cls.IDENTITY_PATTERN)
        if result.is_valid and result.sanitized_value != value:
            return ValidationResult.failure([
                ValidationError(field_name, "Must not have surrounding whitespace or NUL bytes", value)
            ])
        return result

    @classmethod
    def validate_non_negative_int(cls, value: Any, field_name: str, maximum: Optional[int] = None) -> ValidationResult:
        # bool is an int subclass; reject it explicitly
        if isinstance(value, bool) or not isinstance(value, int):
            return ValidationResult.failure([
                ValidationError(field_name, f"Expected integer, got {type(value).__name__}", value)
            ])
        if value < 0:
            return ValidationResult.failure([ValidationError(field_name, "Must be >= 0", value)])
        if maximum is not None and value > maximum:
            return ValidationResult.failure([ValidationError(field_name, f"Must be <= {maximum}", value)])
        return ValidationResult.success(value)

    @classmethod
    def validate_url(cls, value: Any, field_name: str = "payload.url") -> ValidationResult:
        result = cls.validate_string(value, field_name)
        if not result.is_valid:
            return result
        parsed = urlparse(result.sanitized_value)
        if parsed.scheme not in ("http", "https", "ipfs") or not (parsed.netloc or parsed.path):
            return ValidationResult.failure([
                ValidationError(field_name, "Must be an http(s) or ipfs URL", value)
            ])
        return result


def _payload_errors(intent: RuleIntent) -> List[ValidationError]:
    errors: List[ValidationError] = []
    expected = PAYLOAD_TYPES.get(RDOType(intent.type))
    if not isinstance(intent.payload, expected):
        errors.append(ValidationError(
            "payload",
            f"{RDOType(intent.type).name} requires {expected.__name__}, got {type(intent.payload).__name__}",
        ))
        return errors

    p = intent.payload
    if intent.type == RDOType.MESSAGE:
        errors.extend(Validators.validate_string(p.text, "payload.text").errors)
    elif intent.type == RDOType.FILE:
        errors.extend(Validators.validate_string(p.file_name, "payload.fileName").errors)
        if not p.content and not p.content_ref:
            errors.append(ValidationError("payload.content", "File content is empty"))
    elif intent.type == RDOType.LINK:
        errors.extend(Validators.validate_url(p.url).errors)
    else:
        errors.extend(Validators.validate_string(p.scope, "payload.scope").errors)
        errors.extend(Validators.validate_string(p.resource, "payload.resource").errors)
    return errors


def validate_intent(intent: RuleIntent) -> ValidationResult:
    """Semantic validation of a RuleIntent."""
    errors: List[ValidationError] = []
    warnings: List[str] = []

    errors.extend(
        Validators.validate_string(intent.name, "name", max_length=Validators.MAX_NAME_LENGTH).errors
    )
    if not isinstance(intent.description, str) or len(intent.description) > Validators.MAX_DESCRIPTION_LENGTH:
        errors.append(ValidationError("description", "Must be a string of at most 4096 chars", intent.description))

    errors.extend(_payload_errors(intent))
    errors.extend(Validators.validate_non_negative_int(
        intent.expiry_seconds, "expirySeconds", maximum=Validators.MAX_EXPIRY_SECONDS
    ).errors)
    errors.extend(Validators.validate_non_negative_int(intent.max_uses, "maxUses").errors)

    if AccessType(intent.allowed_users) == AccessType.LIST:
        if not intent.whitelist:
            errors.append(ValidationError("whitelist", "LIST access requires at least one identity"))
        for i, ident in enumerate(intent.whitelist):
            errors.extend(Validators.validate_identity(ident, f"whitelist[{i}]").errors)
    elif intent.whitelist:
        errors.append(ValidationError(
            "whitelist", f"whitelist is only allowed with LIST access, not {AccessType(intent.allowed_users).name}"
        ))

    if (
        AccessType(intent.allowed_users) == AccessType.SINGLE_USE
        and isinstance(intent.max_uses, int)
        and intent.max_uses > 1
    ):
        warnings.append("SINGLE_USE access with maxUses > 1: maxUses governs the usage budget")

    if errors:
        return ValidationResult.failure(errors)
    return ValidationResult.success(intent, warnings=warnings)


def validate_intent_document(doc: Any) -> ValidationResult:
    """Structural validation of an intent document against intent.schema.json."""
    errs = schema_errors("intent", doc)
    if errs:
        return ValidationResult.failure([ValidationError("intent", e) for e in errs])
    return ValidationResult.success(doc)


def load_intent(doc: Any) -> RuleIntent:
    """Validate a document structurally and semantically, then build the intent."""
    validate_intent_document(doc).raise_if_invalid()
    intent = RuleIntent.from_dict(doc)
    validate_intent(intent).raise_if_invalid()
    return intent
