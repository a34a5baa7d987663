"""
RDO Registry

The single-writer authority holding RDO records and evaluating action
requests. States per record:

    ACTIVE ──(violation with lock_on_violation)──► LOCKED   (absorbing)

``request_action`` is evaluated in strict, short-circuiting order:

    1. unknown id                          → NotFound (hard failure)
    2. locked                              → Refused "OBJECT_LOCKED"
    3. LIST access, actor not whitelisted  → Refused "Access denied (Not in whitelist)"
       CREATOR_ONLY, actor is not creator  → Refused "Access denied (Creator only)"
    4. expiry != 0 and now >= expiry       → Refused "RDO has expired"
    5. action maps to a set forbid flag    → Refused, violation_count += 1,
                                             locked = True if lock_on_violation
    6. max_uses != 0 and budget exhausted  → Refused "Usage limit exceeded"
    7. otherwise                           → Allowed, budget -= 1 if capped

Refusals are returned as data and recorded as ActionRefused events carrying
the rules hash. Only NotFound and MalformedRequest abort a call, and both
are raised before any state mutation.

Every call runs under one re-entrant lock, so each read-evaluate-mutate
sequence is atomic and calls are linearizable.
"""

from __future__ import annotations

import hmac
import threading
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

from rdo.core import is_valid_sha256, sha256_bytes, unix_now
from rdo.errors import MalformedRequest, NotFound
from rdo.events import (
    ActionAllowed,
    ActionRefused,
    Event,
    EventBus,
    EventRecord,
    EventStore,
    RDOCreated,
)
from rdo.observability import Layer, RDOLogger, correlation_id_var, generate_correlation_id
from rdo.rules import (
    LEGACY_RULES_VERSION,
    RULES_VERSION,
    AccessType,
    CompactRules,
    RDOType,
    legacy_rules_digest,
)

log = RDOLogger("registry", Layer.REGISTRY)

REASON_LOCKED = "OBJECT_LOCKED"
REASON_NOT_WHITELISTED = "Access denied (Not in whitelist)"
REASON_CREATOR_ONLY = "Access denied (Creator only)"
REASON_EXPIRED = "RDO has expired"
REASON_USAGE_EXCEEDED = "Usage limit exceeded"
REASON_LEGACY_FORWARD = "Forwarding is not allowed"
LOCKED_SUFFIX = " (Object Locked)"


class ActionType(IntEnum):
    """Requestable actions. EXPORT is an alias of DOWNLOAD."""
    READ = 0
    FORWARD = 1
    COPY = 2
    DOWNLOAD = 3
    EXECUTE = 4
    EXPORT = 3


FORBIDDEN_REASONS = {
    ActionType.FORWARD: "Forwarding forbidden",
    ActionType.COPY: "Copying forbidden",
    ActionType.DOWNLOAD: "Export forbidden",
}


class RecordState(Enum):
    ACTIVE = "ACTIVE"
    LOCKED = "LOCKED"


def parse_action(value: Any) -> ActionType:
    """Coerce an action code or name into an ActionType."""
    if isinstance(value, ActionType):
        return value
    if isinstance(value, str):
        try:
            return ActionType[value.strip().upper()]
        except KeyError:
            raise MalformedRequest("action", f"unknown action: {value!r}") from None
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedRequest("action", f"unknown action: {value!r}")
    try:
        return ActionType(value)
    except ValueError:
        raise MalformedRequest("action", f"unknown action code: {value}") from None


def compute_action_hash(action: ActionType, context: bytes) -> str:
    """sha256(uint8 action || context)."""
    return sha256_bytes(bytes([int(action)]) + bytes(context))


@dataclass
class RDORecord:
    """One minted object. Only the last three fields ever change."""
    id: int
    creator: str
    rdo_type: RDOType
    rules_hash: str
    rules: CompactRules
    whitelist: FrozenSet[str]
    metadata_pointer: str
    created_at: int
    locked: bool = False
    violation_count: int = 0
    uses_remaining: int = 0

    @property
    def state(self) -> RecordState:
        return RecordState.LOCKED if self.locked else RecordState.ACTIVE

    def is_expired(self, now: int) -> bool:
        return self.rules.expiry != 0 and now >= self.rules.expiry

    def status(self, now: Optional[int] = None) -> str:
        """Display status: LOCKED, EXPIRED or ACTIVE."""
        if self.locked:
            return "LOCKED"
        if self.is_expired(unix_now() if now is None else now):
            return "EXPIRED"
        return "ACTIVE"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "creator": self.creator,
            "rdo_type": self.rdo_type.name,
            "rules_hash": self.rules_hash,
            "rules": self.rules.to_dict(),
            "whitelist": sorted(self.whitelist),
            "metadata_pointer": self.metadata_pointer,
            "created_at": self.created_at,
            "locked": self.locked,
            "violation_count": self.violation_count,
            "uses_remaining": self.uses_remaining,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RDORecord":
        return cls(
            id=int(data["id"]),
            creator=str(data["creator"]),
            rdo_type=RDOType[data["rdo_type"]],
            rules_hash=str(data["rules_hash"]),
            rules=CompactRules.from_dict(data["rules"]),
            whitelist=frozenset(data.get("whitelist", [])),
            metadata_pointer=str(data["metadata_pointer"]),
            created_at=int(data.get("created_at", 0)),
            locked=bool(data.get("locked", False)),
            violation_count=int(data.get("violation_count", 0)),
            uses_remaining=int(data.get("uses_remaining", 0)),
        )


@dataclass(frozen=True)
class ActionOutcome:
    """Verdict of request_action. ``tx_ref`` is the durable event reference."""
    rdo_id: int
    actor: str
    action: ActionType
    allowed: bool
    reason: str
    tx_ref: str
    event: Event

    @property
    def refused(self) -> bool:
        return not self.allowed


@dataclass(frozen=True)
class RefusalProof:
    """Result of re-verifying a refusal against the immutable record."""
    valid: bool
    tx_ref: str
    rdo_id: Optional[int] = None
    actor: str = ""
    action: Optional[ActionType] = None
    reason: str = ""
    rules_hash: str = ""
    errors: List[str] = field(default_factory=list)


class Registry:
    """
    Authority state machine over an arena of RDO records.

    Records are indexed by a monotonically increasing id starting at 1 and
    are never deleted. ``read`` hands out copies; the registry is the only
    writer.
    """

    def __init__(
        self,
        *,
        clock: Optional[Callable[[], int]] = None,
        event_bus: Optional[EventBus] = None,
        event_store: Optional[EventStore] = None,
    ):
        self._clock = clock or unix_now
        self._bus = event_bus or EventBus()
        self._store = event_store or EventStore()
        self._records: Dict[int, RDORecord] = {}
        self._next_id = 1
        self._lock = threading.RLock()

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def event_store(self) -> EventStore:
        return self._store

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def _check_create(
        self,
        rules_hash: Any,
        rdo_type: Any,
        rules: Any,
        metadata_pointer: Any,
        whitelist: FrozenSet[str],
        creator: Any,
    ) -> RDOType:
        if not isinstance(creator, str) or not creator.strip():
            raise MalformedRequest("creator", "creator identity is required")
        if not is_valid_sha256(rules_hash):
            raise MalformedRequest("rules_hash", "must be 64 lowercase hex chars")
        try:
            typ = RDOType(rdo_type)
        except ValueError:
            raise MalformedRequest("rdo_type", f"out of range: {rdo_type!r}") from None
        if not isinstance(rules, CompactRules):
            raise MalformedRequest("rules", f"expected CompactRules, got {type(rules).__name__}")
        if rules.version not in (LEGACY_RULES_VERSION, RULES_VERSION):
            raise MalformedRequest("rules.version", f"unsupported version {rules.version}")
        if rules.expiry < 0 or rules.max_uses < 0:
            raise MalformedRequest("rules", "expiry and max_uses must be non-negative")
        if not isinstance(metadata_pointer, str) or not metadata_pointer.strip():
            raise MalformedRequest("metadata_pointer", "metadata pointer is required")
        if rules.access_type == AccessType.LIST:
            if not whitelist:
                raise MalformedRequest("whitelist", "LIST access requires a non-empty whitelist")
        elif whitelist:
            raise MalformedRequest("whitelist", "whitelist is only allowed with LIST access")

        if rules.version == LEGACY_RULES_VERSION:
            if rules != CompactRules(
                forbid_forward=rules.forbid_forward,
                expiry=rules.expiry,
                version=LEGACY_RULES_VERSION,
            ):
                raise MalformedRequest("rules", "legacy rules carry only expiry and forward policy")
            expected = legacy_rules_digest(rules.expiry, not rules.forbid_forward)
            if not hmac.compare_digest(expected, rules_hash):
                raise MalformedRequest("rules_hash", "provided rules do not match stored hash")
        return typ

    def create(
        self,
        rules_hash: str,
        rdo_type: RDOType,
        rules: CompactRules,
        metadata_pointer: str,
        whitelist: Optional[Iterable[str]] = None,
        *,
        creator: str,
    ) -> int:
        """Mint a record and return its id. Emits RDOCreated."""
        wl = frozenset(str(a) for a in (whitelist or ()))
        with self._lock:
            typ = self._check_create(rules_hash, rdo_type, rules, metadata_pointer, wl, creator)
            rdo_id = self._next_id
            self._next_id += 1
            self._records[rdo_id] = RDORecord(
                id=rdo_id,
                creator=creator,
                rdo_type=typ,
                rules_hash=rules_hash,
                rules=rules,
                whitelist=wl,
                metadata_pointer=metadata_pointer,
                created_at=int(self._clock()),
                uses_remaining=rules.max_uses,
            )
            self._emit(rdo_id, RDOCreated(
                rdo_id=rdo_id,
                creator=creator,
                rdo_type=int(typ),
                rules_hash=rules_hash,
                metadata_pointer=metadata_pointer,
            ))

        log.info("RDO created", operation="create", rdo_id=rdo_id, rdo_type=typ.name, rules_hash=rules_hash)
        return rdo_id

    # ------------------------------------------------------------------
    # read
    # ------------------------------------------------------------------

    def read(self, rdo_id: int) -> RDORecord:
        """Return a copy of the record; raises NotFound."""
        with self._lock:
            return replace(self._get(rdo_id))

    def _get(self, rdo_id: Any) -> RDORecord:
        if isinstance(rdo_id, bool) or not isinstance(rdo_id, int):
            raise MalformedRequest("rdo_id", f"expected integer id, got {rdo_id!r}")
        record = self._records.get(rdo_id)
        if record is None:
            raise NotFound(rdo_id)
        return record

    # ------------------------------------------------------------------
    # request_action
    # ------------------------------------------------------------------

    def request_action(
        self,
        rdo_id: int,
        action: Any,
        context: bytes = b"",
        *,
        actor: str,
    ) -> ActionOutcome:
        """Evaluate an action against the record's rules and record the verdict."""
        act = parse_action(action)
        if not isinstance(context, (bytes, bytearray)):
            raise MalformedRequest("context", "context data must be bytes")
        if not isinstance(actor, str) or not actor.strip():
            raise MalformedRequest("actor", "actor identity is required")

        correlation_id = correlation_id_var.get() or generate_correlation_id()
        with self._lock:
            record = self._get(rdo_id)
            reason = self._evaluate(record, act, actor)
            if reason is None:
                if record.rules.max_uses != 0:
                    record.uses_remaining -= 1
                event: Event = ActionAllowed(
                    rdo_id=record.id,
                    actor=actor,
                    action=int(act),
                    action_hash=compute_action_hash(act, bytes(context)),
                    correlation_id=correlation_id,
                )
            else:
                event = ActionRefused(
                    rdo_id=record.id,
                    actor=actor,
                    action=int(act),
                    rules_hash=record.rules_hash,
                    reason=reason,
                    correlation_id=correlation_id,
                )
            rec = self._emit(record.id, event)

        if reason is None:
            log.info("Action allowed", operation="request_action", rdo_id=rdo_id, action=act.name)
        else:
            log.info("Action refused", operation="request_action", rdo_id=rdo_id, action=act.name, reason=reason)

        return ActionOutcome(
            rdo_id=rdo_id,
            actor=actor,
            action=act,
            allowed=reason is None,
            reason=reason or "",
            tx_ref=rec.tx_ref,
            event=event,
        )

    def _evaluate(self, record: RDORecord, action: ActionType, actor: str) -> Optional[str]:
        """Apply the rule order to a record. Returns a refusal reason or None.

        Mutates violation_count/locked on a forbidden-action violation only.
        """
        rules = record.rules

        if record.locked:
            return REASON_LOCKED

        if rules.access_type == AccessType.LIST and actor not in record.whitelist:
            return REASON_NOT_WHITELISTED
        if rules.access_type == AccessType.CREATOR_ONLY and actor != record.creator:
            return REASON_CREATOR_ONLY

        if rules.expiry != 0 and int(self._clock()) >= rules.expiry:
            return REASON_EXPIRED

        if self._is_forbidden(rules, action):
            record.violation_count += 1
            if rules.version == LEGACY_RULES_VERSION:
                reason = REASON_LEGACY_FORWARD
            else:
                reason = FORBIDDEN_REASONS[action]
            if rules.lock_on_violation:
                record.locked = True
                reason += LOCKED_SUFFIX
                log.warning("RDO locked after violation", rdo_id=record.id, action=action.name)
            return reason

        if rules.max_uses != 0 and record.uses_remaining <= 0:
            return REASON_USAGE_EXCEEDED

        return None

    @staticmethod
    def _is_forbidden(rules: CompactRules, action: ActionType) -> bool:
        if action == ActionType.FORWARD:
            return rules.forbid_forward
        if action == ActionType.COPY:
            return rules.forbid_copy
        if action == ActionType.DOWNLOAD:
            return rules.forbid_export
        return False

    def _emit(self, rdo_id: int, event: Event) -> EventRecord:
        record = self._store.append(str(rdo_id), event)
        self._bus.publish(event)
        return record

    # ------------------------------------------------------------------
    # proofs and history
    # ------------------------------------------------------------------

    def events(self, rdo_id: Optional[int] = None) -> List[EventRecord]:
        if rdo_id is None:
            return self._store.read_all()
        return self._store.read_stream(str(rdo_id))

    def verify_refusal(self, tx_ref: str) -> RefusalProof:
        """Re-read a refusal event and check it against the immutable record."""
        rec = self._store.get(tx_ref)
        if rec is None:
            return RefusalProof(valid=False, tx_ref=tx_ref, errors=["no event for transaction reference"])

        event = rec.event
        errors: List[str] = []
        if not isinstance(event, ActionRefused):
            return RefusalProof(valid=False, tx_ref=tx_ref, errors=[f"event is {event.event_type}, not ActionRefused"])

        if not hmac.compare_digest(event.digest(), rec.tx_ref):
            errors.append("event content does not match its transaction reference")

        with self._lock:
            record = self._records.get(event.rdo_id)
            if record is None:
                errors.append(f"event references unknown RDO {event.rdo_id}")
            elif not hmac.compare_digest(record.rules_hash, event.rules_hash):
                errors.append("refusal rules hash does not match the record")

        return RefusalProof(
            valid=not errors,
            tx_ref=rec.tx_ref,
            rdo_id=event.rdo_id,
            actor=event.actor,
            action=ActionType(event.action),
            reason=event.reason,
            rules_hash=event.rules_hash,
            errors=errors,
        )

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "next_id": self._next_id,
                "records": [r.to_dict() for r in sorted(self._records.values(), key=lambda r: r.id)],
                "events": self._store.to_list(),
            }

    @classmethod
    def restore(
        cls,
        data: Dict[str, Any],
        *,
        clock: Optional[Callable[[], int]] = None,
        event_bus: Optional[EventBus] = None,
    ) -> "Registry":
        reg = cls(clock=clock, event_bus=event_bus, event_store=EventStore.from_list(data.get("events", [])))
        for raw in data.get("records", []):
            record = RDORecord.from_dict(raw)
            reg._records[record.id] = record
        reg._next_id = max(int(data.get("next_id", 1)), max(reg._records, default=0) + 1)
        return reg


__all__ = [
    "REASON_LOCKED",
    "REASON_NOT_WHITELISTED",
    "REASON_CREATOR_ONLY",
    "REASON_EXPIRED",
    "REASON_USAGE_EXCEEDED",
    "REASON_LEGACY_FORWARD",
    "LOCKED_SUFFIX",
    "FORBIDDEN_REASONS",
    "ActionType",
    "RecordState",
    "parse_action",
    "compute_action_hash",
    "RDORecord",
    "ActionOutcome",
    "RefusalProof",
    "Registry",
]
