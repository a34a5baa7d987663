"""Rule compiler.

Turns a creator's ``RuleIntent`` into a canonical, hash-stable rule
representation:

  intent ──► CanonicalRules (v1) ──► canonical JSON ──► sha256 digest
                     │
                     └──► CompactRules (what the registry stores/evaluates)

The canonical serialization is the commitment: two intents that differ only
in non-semantic ordering (forbidden action order, duplicate entries) compile
to byte-identical output and therefore to the same digest. Changing the
rules of an object means minting a new object.

Two schema versions exist:

- v0 (legacy): ``(expiry, allow_forward)``. The digest is sha256 over the
  packed encoding ``uint256 expiry || uint8 allow_forward``.
- v1: the full canonical rule document below.

Both expose ``digest()`` and ``to_compact()`` so callers dispatch on the
object rather than on the version number.
"""

from __future__ import annotations

import hmac
import json
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from rdo.core import canonical_json_bytes, sha256_bytes, sha256_text, unix_now
from rdo.observability import Layer, RDOLogger

log = RDOLogger("compiler", Layer.COMPILER)

RULES_VERSION = 1
LEGACY_RULES_VERSION = 0


class RDOType(IntEnum):
    """Object type tag. Integer values are the registry encoding."""
    MESSAGE = 0
    FILE = 1
    LINK = 2
    PERMISSION = 3


class AccessType(IntEnum):
    """Access scope. Integer values are the registry encoding."""
    ANY = 0
    LINK = 1
    CREATOR_ONLY = 2
    SINGLE_USE = 3
    LIST = 4


class ForbiddableAction(str, Enum):
    """Actions a creator may forbid. READ is never forbiddable."""
    FORWARD = "FORWARD"
    COPY = "COPY"
    EXPORT = "EXPORT"


class ViolationAction(str, Enum):
    REFUSE = "REFUSE"
    LOCK = "LOCK"


class IdentityRequirement(str, Enum):
    ALWAYS = "ALWAYS"
    CONDITIONAL = "CONDITIONAL"
    NEVER = "NEVER"


# =============================================================================
# PAYLOAD VARIANTS
# =============================================================================

@dataclass(frozen=True)
class MessagePayload:
    text: str

    rdo_type = RDOType.MESSAGE

    def descriptor(self) -> Dict[str, Any]:
        return {"text": self.text}

    def content_bytes(self) -> bytes:
        return self.text.encode("utf-8")


@dataclass(frozen=True)
class FilePayload:
    """A file. ``content`` is the raw binary and is never hashed."""
    file_name: str
    mime_type: str = "application/octet-stream"
    content: bytes = field(default=b"", repr=False, compare=False)
    content_ref: Optional[str] = None

    rdo_type = RDOType.FILE

    def descriptor(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"fileName": self.file_name, "mimeType": self.mime_type}
        if self.content_ref:
            d["contentRef"] = self.content_ref
        return d

    def content_bytes(self) -> bytes:
        return self.content


@dataclass(frozen=True)
class LinkPayload:
    url: str

    rdo_type = RDOType.LINK

    def descriptor(self) -> Dict[str, Any]:
        return {"url": self.url}

    def content_bytes(self) -> bytes:
        return self.url.encode("utf-8")


@dataclass(frozen=True)
class PermissionPayload:
    scope: str
    resource: str

    rdo_type = RDOType.PERMISSION

    def descriptor(self) -> Dict[str, Any]:
        return {"resource": self.resource, "scope": self.scope}

    def content_bytes(self) -> bytes:
        return canonical_json_bytes(self.descriptor())


Payload = Union[MessagePayload, FilePayload, LinkPayload, PermissionPayload]

PAYLOAD_TYPES = {
    RDOType.MESSAGE: MessagePayload,
    RDOType.FILE: FilePayload,
    RDOType.LINK: LinkPayload,
    RDOType.PERMISSION: PermissionPayload,
}


def payload_from_dict(rdo_type: RDOType, data: Dict[str, Any]) -> Payload:
    """Build the payload variant for rdo_type from its descriptor keys."""
    rdo_type = RDOType(rdo_type)
    if rdo_type == RDOType.MESSAGE:
        return MessagePayload(text=str(data.get("text", "")))
    if rdo_type == RDOType.FILE:
        content = data.get("content", b"")
        if isinstance(content, str):
            content = content.encode("utf-8")
        return FilePayload(
            file_name=str(data.get("fileName", "")),
            mime_type=str(data.get("mimeType") or "application/octet-stream"),
            content=content,
            content_ref=data.get("contentRef"),
        )
    if rdo_type == RDOType.LINK:
        return LinkPayload(url=str(data.get("url", "")))
    return PermissionPayload(
        scope=str(data.get("scope", "")),
        resource=str(data.get("resource", "")),
    )


# =============================================================================
# INTENT
# =============================================================================

@dataclass
class RuleIntent:
    """Creator input. Client-side only, never persisted as-is."""
    type: RDOType
    name: str
    payload: Payload
    description: str = ""
    allowed_users: AccessType = AccessType.LINK
    forbidden_actions: Tuple[ForbiddableAction, ...] = (ForbiddableAction.FORWARD,)
    expiry_seconds: int = 0
    violation_action: ViolationAction = ViolationAction.REFUSE
    max_uses: int = 0
    require_identity: IdentityRequirement = IdentityRequirement.NEVER
    whitelist: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RuleIntent":
        """Load an intent document (camelCase keys, enum names as strings).

        The document is expected to have passed
        ``rdo.validation.validate_intent_document``.
        """
        rdo_type = RDOType[str(data["type"]).upper()]
        return cls(
            type=rdo_type,
            name=str(data.get("name", "")),
            description=str(data.get("description", "")),
            payload=payload_from_dict(rdo_type, data.get("payload") or {}),
            allowed_users=AccessType[str(data.get("allowedUsers", "LINK")).upper()],
            forbidden_actions=tuple(
                ForbiddableAction(str(a).upper()) for a in data.get("forbiddenActions", [])
            ),
            expiry_seconds=int(data.get("expirySeconds", 0)),
            violation_action=ViolationAction(str(data.get("violationAction", "REFUSE")).upper()),
            max_uses=int(data.get("maxUses", 0)),
            require_identity=IdentityRequirement(str(data.get("requireIdentity", "NEVER")).upper()),
            whitelist=tuple(str(a).strip() for a in data.get("whitelist", [])),
        )


# =============================================================================
# COMPACT RULES (registry representation)
# =============================================================================

@dataclass(frozen=True)
class CompactRules:
    """The fixed-shape rule struct stored and evaluated by the registry."""
    forbid_copy: bool = False
    forbid_forward: bool = False
    forbid_export: bool = False
    expiry: int = 0
    access_type: AccessType = AccessType.ANY
    max_uses: int = 0
    lock_on_violation: bool = False
    require_identity: bool = False
    version: int = RULES_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "forbid_copy": self.forbid_copy,
            "forbid_forward": self.forbid_forward,
            "forbid_export": self.forbid_export,
            "expiry": self.expiry,
            "access_type": self.access_type.name,
            "max_uses": self.max_uses,
            "lock_on_violation": self.lock_on_violation,
            "require_identity": self.require_identity,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompactRules":
        access = data.get("access_type", "ANY")
        access_type = AccessType[access] if isinstance(access, str) else AccessType(access)
        return cls(
            forbid_copy=bool(data.get("forbid_copy", False)),
            forbid_forward=bool(data.get("forbid_forward", False)),
            forbid_export=bool(data.get("forbid_export", False)),
            expiry=int(data.get("expiry", 0)),
            access_type=access_type,
            max_uses=int(data.get("max_uses", 0)),
            lock_on_violation=bool(data.get("lock_on_violation", False)),
            require_identity=bool(data.get("require_identity", False)),
            version=int(data.get("version", RULES_VERSION)),
        )


# =============================================================================
# CANONICAL RULES
# =============================================================================

@dataclass(frozen=True)
class CanonicalRules:
    """Version 1 canonical rule document."""
    type: RDOType
    payload: Dict[str, Any]
    access_scope: AccessType
    forbidden: Tuple[str, ...]
    expiry: int
    max_uses: int
    lock_on_violation: bool
    require_identity: IdentityRequirement
    v: int = RULES_VERSION

    def to_dict(self) -> Dict[str, Any]:
        return {
            "v": self.v,
            "type": self.type.name,
            "payload": dict(self.payload),
            "rules": {
                "access_scope": self.access_scope.name,
                "forbidden": list(self.forbidden),
                "expiry": self.expiry,
                "max_uses": self.max_uses,
                "lock_on_violation": self.lock_on_violation,
                "require_identity": self.require_identity.value,
            },
        }

    def canonical_bytes(self) -> bytes:
        return canonical_json_bytes(self.to_dict())

    def digest(self) -> str:
        return sha256_bytes(self.canonical_bytes())

    def to_compact(self) -> CompactRules:
        forbidden = set(self.forbidden)
        max_uses = self.max_uses
        if self.access_scope == AccessType.SINGLE_USE and max_uses == 0:
            max_uses = 1
        return CompactRules(
            forbid_copy=ForbiddableAction.COPY.value in forbidden,
            forbid_forward=ForbiddableAction.FORWARD.value in forbidden,
            forbid_export=ForbiddableAction.EXPORT.value in forbidden,
            expiry=self.expiry,
            access_type=self.access_scope,
            max_uses=max_uses,
            lock_on_violation=self.lock_on_violation,
            require_identity=self.require_identity == IdentityRequirement.ALWAYS,
            version=self.v,
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CanonicalRules":
        rules = data["rules"]
        return cls(
            v=int(data["v"]),
            type=RDOType[data["type"]],
            payload=dict(data.get("payload") or {}),
            access_scope=AccessType[rules["access_scope"]],
            forbidden=tuple(rules.get("forbidden", [])),
            expiry=int(rules.get("expiry", 0)),
            max_uses=int(rules.get("max_uses", 0)),
            lock_on_violation=bool(rules.get("lock_on_violation", False)),
            require_identity=IdentityRequirement(rules.get("require_identity", "NEVER")),
        )


@dataclass(frozen=True)
class LegacyRules:
    """Version 0 two-field rule object."""
    expiry: int
    allow_forward: bool
    v: int = LEGACY_RULES_VERSION

    def packed_bytes(self) -> bytes:
        return int(self.expiry).to_bytes(32, "big") + (b"\x01" if self.allow_forward else b"\x00")

    def digest(self) -> str:
        return sha256_bytes(self.packed_bytes())

    def to_dict(self) -> Dict[str, Any]:
        return {"v": self.v, "expiry": self.expiry, "allow_forward": self.allow_forward}

    def to_compact(self) -> CompactRules:
        return CompactRules(
            forbid_forward=not self.allow_forward,
            expiry=self.expiry,
            version=LEGACY_RULES_VERSION,
        )


def legacy_rules_digest(expiry: int, allow_forward: bool) -> str:
    """Digest of a v0 rule set."""
    return LegacyRules(expiry=expiry, allow_forward=allow_forward).digest()


def rules_from_dict(data: Dict[str, Any]) -> Union[CanonicalRules, LegacyRules]:
    """Load a rule document, dispatching on its version tag."""
    v = data.get("v")
    if v == RULES_VERSION:
        return CanonicalRules.from_dict(data)
    if v == LEGACY_RULES_VERSION:
        return LegacyRules(expiry=int(data["expiry"]), allow_forward=bool(data["allow_forward"]))
    raise ValueError(f"unsupported rules version: {v!r}")


def canonical_rules_from_json(text: str) -> Union[CanonicalRules, LegacyRules]:
    return rules_from_dict(json.loads(text))


def compact_rules(rules: Union[CanonicalRules, LegacyRules]) -> CompactRules:
    """Registry representation of a v0 or v1 rule object."""
    return rules.to_compact()


# =============================================================================
# COMPILER
# =============================================================================

@dataclass(frozen=True)
class CompiledRules:
    """Output of compile_rules."""
    canonical: str
    digest: str
    rules: CanonicalRules

    @property
    def compact(self) -> CompactRules:
        return self.rules.to_compact()


def _normalize_forbidden(actions: Iterable[Any]) -> Tuple[str, ...]:
    return tuple(sorted({ForbiddableAction(a).value for a in actions}))


def compile_rules(intent: RuleIntent, *, now: Optional[int] = None) -> CompiledRules:
    """Compile an intent into (canonical string, digest, canonical rules).

    Relative expiry is resolved against ``now`` (epoch seconds, defaults to
    the current time); an expiry of 0 stays 0 and means "never".
    """
    if now is None:
        now = unix_now()
    expiry = int(now) + int(intent.expiry_seconds) if intent.expiry_seconds > 0 else 0

    rules = CanonicalRules(
        type=RDOType(intent.type),
        payload=intent.payload.descriptor(),
        access_scope=AccessType(intent.allowed_users),
        forbidden=_normalize_forbidden(intent.forbidden_actions),
        expiry=expiry,
        max_uses=int(intent.max_uses),
        lock_on_violation=ViolationAction(intent.violation_action) == ViolationAction.LOCK,
        require_identity=IdentityRequirement(intent.require_identity),
    )
    canonical = rules.canonical_bytes()
    digest = sha256_bytes(canonical)
    log.debug("Rules compiled", operation="compile", rdo_type=rules.type.name, digest=digest)
    return CompiledRules(
        canonical=canonical.decode("utf-8"),
        digest=digest,
        rules=rules,
    )


def verify_rules_digest(canonical: str, digest: str) -> bool:
    """Check that canonical is a canonical v1 serialization hashing to digest."""
    try:
        rules = canonical_rules_from_json(canonical)
    except (ValueError, KeyError, TypeError):
        return False
    if not isinstance(rules, CanonicalRules):
        return False
    if rules.canonical_bytes().decode("utf-8") != canonical:
        return False
    return hmac.compare_digest(sha256_text(canonical), str(digest).lower())


__all__ = [
    "RULES_VERSION",
    "LEGACY_RULES_VERSION",
    "RDOType",
    "AccessType",
    "ForbiddableAction",
    "ViolationAction",
    "IdentityRequirement",
    "MessagePayload",
    "FilePayload",
    "LinkPayload",
    "PermissionPayload",
    "Payload",
    "payload_from_dict",
    "RuleIntent",
    "CompactRules",
    "CanonicalRules",
    "LegacyRules",
    "legacy_rules_digest",
    "rules_from_dict",
    "canonical_rules_from_json",
    "compact_rules",
    "CompiledRules",
    "compile_rules",
    "verify_rules_digest",
]
