"""
RDO: Rule-bound Digital Objects

Content whose usage rules are compiled into a hash commitment, encrypted
under a key that travels only in a capability link, and guarded by a
registry that records every allow/refuse decision.

Architecture
────────────

    ┌──────────────────────────────────────────────────────────────────┐
    │  CLIENT                                                          │
    │    rules.py        RuleIntent ─► canonical rules ─► sha256       │
    │    crypto.py       AES-256-GCM, JWK key export                   │
    │    storage.py      content-addressed put/get (memory/file/IPFS)  │
    │    protocol.py     create/access orchestration, capability links │
    │                                                                  │
    │  AUTHORITY                                                       │
    │    registry.py     record arena, ordered rule evaluation, locks  │
    │    events.py       Created/Allowed/Refused events, tx refs       │
    │                                                                  │
    │  AMBIENT                                                         │
    │    config.py  observability.py  resilience.py  validation.py     │
    └──────────────────────────────────────────────────────────────────┘

A refusal is a normal result, not an exception.
"""

__version__ = "0.3.0"

from rdo.crypto import SymmetricKey, decrypt, encrypt, export_key, generate_key, import_key
from rdo.errors import (
    DecryptionError,
    LinkError,
    MalformedRequest,
    NotFound,
    RDOError,
    StorageError,
    ValidationError,
    ValidationErrors,
)
from rdo.protocol import AccessResult, ActionProtocol, CapabilityLink, CreatedObject, ObjectMetadata
from rdo.registry import ActionOutcome, ActionType, RDORecord, RefusalProof, Registry
from rdo.rules import (
    AccessType,
    CompactRules,
    CompiledRules,
    ForbiddableAction,
    IdentityRequirement,
    RDOType,
    RuleIntent,
    ViolationAction,
    compile_rules,
)
from rdo.storage import ContentStore, FileContentStore, MemoryContentStore, PinataContentStore

__all__ = [
    "__version__",
    # rules
    "AccessType",
    "CompactRules",
    "CompiledRules",
    "ForbiddableAction",
    "IdentityRequirement",
    "RDOType",
    "RuleIntent",
    "ViolationAction",
    "compile_rules",
    # crypto
    "SymmetricKey",
    "generate_key",
    "encrypt",
    "decrypt",
    "export_key",
    "import_key",
    # registry
    "ActionOutcome",
    "ActionType",
    "RDORecord",
    "RefusalProof",
    "Registry",
    # storage
    "ContentStore",
    "MemoryContentStore",
    "FileContentStore",
    "PinataContentStore",
    # protocol
    "AccessResult",
    "ActionProtocol",
    "CapabilityLink",
    "CreatedObject",
    "ObjectMetadata",
    # errors
    "RDOError",
    "ValidationError",
    "ValidationErrors",
    "StorageError",
    "NotFound",
    "MalformedRequest",
    "DecryptionError",
    "LinkError",
]
