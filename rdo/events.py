"""
RDO Event Infrastructure

Every registry decision is recorded as an immutable event. The event digest
doubles as the durable transaction reference returned to callers, so a
refusal can be re-verified later by re-reading the event and comparing its
rules hash against the record.

    Registry ──publish──► EventBus ──► subscribers (logging, CLI, tests)
        │
        └──append──► EventStore (append-only, streams keyed by object id)

Domain events
─────────────

    RDOCreated       id, creator, rdo_type, rules_hash, metadata_pointer
    ActionAllowed    id, actor, action, action_hash
    ActionRefused    id, actor, action, rules_hash, reason

Events within a stream keep causal ordering; the global sequence number
orders events across streams.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Type

from rdo.core import canonical_digest

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BASE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class Event:
    """
    Base class for all events in the system.

    Events are immutable facts representing something that happened.
    Each event has a unique ID, timestamp, and optional metadata.
    """

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    event_timestamp: str = field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat()
    )
    correlation_id: Optional[str] = None

    @property
    def event_type(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["event_type"] = self.event_type
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        data = data.copy()
        data.pop("event_type", None)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def digest(self) -> str:
        """Deterministic digest of the event content (canonical JSON)."""
        return canonical_digest(self.to_dict())


# ════════════════════════════════════════════════════════════════════════════
# DOMAIN EVENTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class RDOCreated(Event):
    """Emitted when an object is minted."""
    rdo_id: int = 0
    creator: str = ""
    rdo_type: int = 0
    rules_hash: str = ""
    metadata_pointer: str = ""


@dataclass
class ActionAllowed(Event):
    """Emitted when a requested action passes every rule."""
    rdo_id: int = 0
    actor: str = ""
    action: int = 0
    action_hash: str = ""


@dataclass
class ActionRefused(Event):
    """The refusal proof: binds actor, action and reason to the rules hash."""
    rdo_id: int = 0
    actor: str = ""
    action: int = 0
    rules_hash: str = ""
    reason: str = ""


EVENT_TYPES: Dict[str, Type[Event]] = {
    "RDOCreated": RDOCreated,
    "ActionAllowed": ActionAllowed,
    "ActionRefused": ActionRefused,
}


def event_from_dict(data: Dict[str, Any]) -> Event:
    """Rebuild a domain event from its serialized form."""
    cls = EVENT_TYPES.get(str(data.get("event_type")))
    if cls is None:
        raise ValueError(f"unknown event type: {data.get('event_type')!r}")
    return cls.from_dict(data)


# ════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ════════════════════════════════════════════════════════════════════════════


EventHandler = Callable[[Event], None]


@dataclass
class EventHandlerRegistration:
    """Registration for an event handler."""
    handler: EventHandler
    event_types: Set[Type[Event]]
    priority: int = 0


class EventHandlerError(Exception):
    """Error during event handling."""
    def __init__(self, event: Event, handler: EventHandler, cause: Exception):
        self.event = event
        self.handler = handler
        self.cause = cause
        name = getattr(handler, "__name__", repr(handler))
        super().__init__(f"Handler {name} failed for {event.event_type}: {cause}")


class EventBus:
    """
    In-memory synchronous pub/sub.

    Handler failures never propagate into the publisher: a registry verdict
    is final whether or not a subscriber crashes. Failures are counted and
    passed to ``on_error`` (or logged).

    Example:
        bus = EventBus()

        @bus.subscribe(ActionRefused)
        def on_refusal(event):
            print(event.reason)
    """

    def __init__(self, on_error: Optional[Callable[[EventHandlerError], None]] = None):
        self._handlers: List[EventHandlerRegistration] = []
        self._lock = threading.RLock()
        self._on_error = on_error
        self._published_count = 0
        self._handled_count = 0
        self._error_count = 0

    def subscribe(
        self,
        *event_types: Type[Event],
        priority: int = 0,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator to subscribe a handler to event types (higher priority runs first)."""
        def decorator(handler: EventHandler) -> EventHandler:
            registration = EventHandlerRegistration(
                handler=handler,
                event_types=set(event_types) if event_types else {Event},
                priority=priority,
            )
            with self._lock:
                self._handlers.append(registration)
                self._handlers.sort(key=lambda r: -r.priority)
            return handler
        return decorator

    def unsubscribe(self, handler: EventHandler) -> bool:
        with self._lock:
            original_len = len(self._handlers)
            self._handlers = [r for r in self._handlers if r.handler != handler]
            return len(self._handlers) < original_len

    def publish(self, event: Event) -> None:
        with self._lock:
            self._published_count += 1
            handlers_to_call = [
                r for r in self._handlers
                if any(isinstance(event, t) for t in r.event_types)
            ]

        for registration in handlers_to_call:
            self._call_handler(registration.handler, event)

    def _call_handler(self, handler: EventHandler, event: Event) -> None:
        try:
            handler(event)
            with self._lock:
                self._handled_count += 1
        except Exception as e:
            with self._lock:
                self._error_count += 1
            error = EventHandlerError(event, handler, e)
            if self._on_error:
                self._on_error(error)
            else:
                logger.warning("%s", error)

    @property
    def metrics(self) -> Dict[str, int]:
        with self._lock:
            return {
                "published_count": self._published_count,
                "handled_count": self._handled_count,
                "error_count": self._error_count,
                "handler_count": len(self._handlers),
            }


# ════════════════════════════════════════════════════════════════════════════
# EVENT STORE
# ════════════════════════════════════════════════════════════════════════════


@dataclass
class EventRecord:
    """A persisted event. ``tx_ref`` is the event digest."""
    sequence_number: int
    event: Event
    stream_id: str
    version: int
    tx_ref: str = ""

    def __post_init__(self) -> None:
        if not self.tx_ref:
            self.tx_ref = self.event.digest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "event": self.event.to_dict(),
            "stream_id": self.stream_id,
            "version": self.version,
            "tx_ref": self.tx_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventRecord":
        return cls(
            sequence_number=int(data["sequence_number"]),
            event=event_from_dict(data["event"]),
            stream_id=str(data["stream_id"]),
            version=int(data["version"]),
            tx_ref=str(data.get("tx_ref") or ""),
        )


class EventStore:
    """
    Append-only event store.

    Events are organized into streams by object id and indexed by tx_ref.
    """

    def __init__(self):
        self._events: List[EventRecord] = []
        self._streams: Dict[str, List[EventRecord]] = {}
        self._by_ref: Dict[str, EventRecord] = {}
        self._sequence_number = 0
        self._lock = threading.RLock()

    def append(self, stream_id: str, event: Event) -> EventRecord:
        with self._lock:
            stream = self._streams.setdefault(stream_id, [])
            self._sequence_number += 1
            record = EventRecord(
                sequence_number=self._sequence_number,
                event=event,
                stream_id=stream_id,
                version=len(stream) + 1,
            )
            self._events.append(record)
            stream.append(record)
            self._by_ref[record.tx_ref] = record
            return record

    def _load(self, record: EventRecord) -> None:
        with self._lock:
            self._events.append(record)
            self._streams.setdefault(record.stream_id, []).append(record)
            self._by_ref[record.tx_ref] = record
            self._sequence_number = max(self._sequence_number, record.sequence_number)

    def get(self, tx_ref: str) -> Optional[EventRecord]:
        with self._lock:
            return self._by_ref.get(str(tx_ref).lower())

    def read_stream(self, stream_id: str) -> List[EventRecord]:
        with self._lock:
            return list(self._streams.get(stream_id, []))

    def read_all(self, from_position: int = 0, max_count: Optional[int] = None) -> List[EventRecord]:
        with self._lock:
            end = None if max_count is None else from_position + max_count
            return self._events[from_position:end]

    @property
    def total_events(self) -> int:
        with self._lock:
            return len(self._events)

    def to_list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [r.to_dict() for r in self._events]

    @classmethod
    def from_list(cls, records: List[Dict[str, Any]]) -> "EventStore":
        store = cls()
        for data in records:
            store._load(EventRecord.from_dict(data))
        return store


__all__ = [
    "Event",
    "RDOCreated",
    "ActionAllowed",
    "ActionRefused",
    "EVENT_TYPES",
    "event_from_dict",
    "EventHandler",
    "EventHandlerRegistration",
    "EventHandlerError",
    "EventBus",
    "EventRecord",
    "EventStore",
]
