"""
Registry tests: creation checks, the ordered rule evaluation, locking,
usage budgets, refusal proofs and snapshot persistence.

Run with: pytest tests/test_registry.py -v
"""

import threading

import pytest

from rdo.errors import MalformedRequest, NotFound
from rdo.events import ActionAllowed, ActionRefused, EventBus, RDOCreated
from rdo.observability import correlation_id_var, set_correlation_id
from rdo.registry import (
    LOCKED_SUFFIX,
    REASON_CREATOR_ONLY,
    REASON_EXPIRED,
    REASON_LEGACY_FORWARD,
    REASON_LOCKED,
    REASON_NOT_WHITELISTED,
    REASON_USAGE_EXCEEDED,
    ActionType,
    RecordState,
    Registry,
    compute_action_hash,
    parse_action,
)
from rdo.rules import LEGACY_RULES_VERSION, AccessType, CompactRules, RDOType, legacy_rules_digest

HASH = "ab" * 32
POINTER = "bafy-metadata"


def mint(registry, rules=None, *, creator="alice", whitelist=None, rdo_type=RDOType.MESSAGE, rules_hash=HASH):
    return registry.create(
        rules_hash, rdo_type, rules or CompactRules(), POINTER, whitelist, creator=creator
    )


# =============================================================================
# CREATE
# =============================================================================

class TestCreate:

    def test_ids_are_monotonic_from_one(self, registry):
        assert mint(registry) == 1
        assert mint(registry) == 2
        assert len(registry) == 2

    def test_record_fields(self, registry, clock):
        rules = CompactRules(forbid_forward=True, max_uses=3)
        rdo_id = mint(registry, rules)
        rec = registry.read(rdo_id)
        assert rec.creator == "alice"
        assert rec.rdo_type == RDOType.MESSAGE
        assert rec.rules_hash == HASH
        assert rec.rules == rules
        assert rec.metadata_pointer == POINTER
        assert rec.created_at == clock.now
        assert rec.locked is False
        assert rec.violation_count == 0
        assert rec.uses_remaining == 3
        assert rec.state == RecordState.ACTIVE

    def test_created_event(self, registry):
        rdo_id = mint(registry)
        (rec,) = registry.events(rdo_id)
        assert isinstance(rec.event, RDOCreated)
        assert rec.event.rules_hash == HASH
        assert rec.event.creator == "alice"

    def test_read_returns_copy(self, registry):
        rdo_id = mint(registry)
        copy = registry.read(rdo_id)
        copy.locked = True
        assert registry.read(rdo_id).locked is False

    @pytest.mark.parametrize("kwargs,field", [
        ({"rules_hash": "XYZ"}, "rules_hash"),
        ({"rules_hash": "AB" * 32}, "rules_hash"),
        ({"rdo_type": 9}, "rdo_type"),
        ({"creator": ""}, "creator"),
    ])
    def test_malformed_create(self, registry, kwargs, field):
        with pytest.raises(MalformedRequest) as exc:
            mint(registry, **kwargs)
        assert exc.value.field == field
        assert len(registry) == 0

    def test_empty_metadata_pointer(self, registry):
        with pytest.raises(MalformedRequest):
            registry.create(HASH, RDOType.MESSAGE, CompactRules(), "  ", creator="alice")

    def test_negative_budget(self, registry):
        with pytest.raises(MalformedRequest):
            mint(registry, CompactRules(max_uses=-1))

    def test_whitelist_requires_list_access(self, registry):
        with pytest.raises(MalformedRequest) as exc:
            mint(registry, CompactRules(access_type=AccessType.LINK), whitelist=["bob"])
        assert exc.value.field == "whitelist"

    def test_list_access_requires_whitelist(self, registry):
        with pytest.raises(MalformedRequest):
            mint(registry, CompactRules(access_type=AccessType.LIST))

    def test_rules_must_be_compact(self, registry):
        with pytest.raises(MalformedRequest):
            registry.create(HASH, RDOType.MESSAGE, {"forbid_copy": True}, POINTER, creator="alice")

    def test_failed_create_does_not_consume_id(self, registry):
        with pytest.raises(MalformedRequest):
            mint(registry, rules_hash="bad")
        assert mint(registry) == 1


# =============================================================================
# REQUEST ACTION: ORDERED EVALUATION
# =============================================================================

class TestRequestAction:

    def test_unknown_id_is_not_found(self, registry):
        with pytest.raises(NotFound) as exc:
            registry.request_action(42, ActionType.READ, actor="bob")
        assert exc.value.rdo_id == 42
        assert registry.events() == []

    def test_forbidden_forward_refused(self, registry):
        rdo_id = mint(registry, CompactRules(forbid_forward=True, max_uses=5))
        for i in range(3):
            outcome = registry.request_action(rdo_id, ActionType.FORWARD, actor="bob")
            assert outcome.refused
            assert outcome.reason == "Forwarding forbidden"
        rec = registry.read(rdo_id)
        assert rec.violation_count == 3
        assert rec.uses_remaining == 5
        assert rec.locked is False

    def test_read_is_never_forbiddable(self, registry):
        rdo_id = mint(registry, CompactRules(forbid_forward=True, forbid_copy=True, forbid_export=True))
        outcome = registry.request_action(rdo_id, ActionType.READ, actor="bob")
        assert outcome.allowed
        assert outcome.reason == ""
        assert isinstance(outcome.event, ActionAllowed)

    @pytest.mark.parametrize("action,flag,reason", [
        (ActionType.COPY, "forbid_copy", "Copying forbidden"),
        (ActionType.DOWNLOAD, "forbid_export", "Export forbidden"),
        (ActionType.EXPORT, "forbid_export", "Export forbidden"),
    ])
    def test_forbidden_reasons(self, registry, action, flag, reason):
        rdo_id = mint(registry, CompactRules(**{flag: True}))
        assert registry.request_action(rdo_id, action, actor="bob").reason == reason

    def test_execute_is_never_forbiddable(self, registry):
        rdo_id = mint(registry, CompactRules(forbid_forward=True, forbid_copy=True, forbid_export=True))
        assert registry.request_action(rdo_id, ActionType.EXECUTE, actor="bob").allowed

    def test_action_hash(self, registry):
        rdo_id = mint(registry)
        outcome = registry.request_action(rdo_id, ActionType.READ, b"ctx", actor="bob")
        assert outcome.event.action_hash == compute_action_hash(ActionType.READ, b"ctx")

    def test_refusal_event_carries_rules_hash(self, registry):
        rdo_id = mint(registry, CompactRules(forbid_copy=True))
        outcome = registry.request_action(rdo_id, ActionType.COPY, actor="bob")
        assert isinstance(outcome.event, ActionRefused)
        assert outcome.event.rules_hash == HASH
        assert outcome.event.actor == "bob"
        assert outcome.tx_ref == outcome.event.digest()


class TestLocking:

    def test_lock_on_violation(self, registry):
        rdo_id = mint(registry, CompactRules(forbid_copy=True, lock_on_violation=True), rdo_type=RDOType.FILE)
        first = registry.request_action(rdo_id, ActionType.COPY, actor="bob")
        assert first.refused
        assert first.reason == "Copying forbidden" + LOCKED_SUFFIX
        rec = registry.read(rdo_id)
        assert rec.locked is True
        assert rec.state == RecordState.LOCKED
        assert rec.violation_count == 1

    def test_lock_is_absorbing(self, registry):
        rdo_id = mint(registry, CompactRules(forbid_copy=True, lock_on_violation=True))
        registry.request_action(rdo_id, ActionType.COPY, actor="bob")
        for action in ActionType:
            outcome = registry.request_action(rdo_id, action, actor="alice")
            assert outcome.refused
            assert outcome.reason == REASON_LOCKED
        assert registry.read(rdo_id).violation_count == 1

    def test_lock_precedes_expiry(self, registry, clock):
        rdo_id = mint(registry, CompactRules(forbid_copy=True, lock_on_violation=True, expiry=clock.now + 10))
        registry.request_action(rdo_id, ActionType.COPY, actor="bob")
        clock.advance(100)
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").reason == REASON_LOCKED


class TestAccessScope:

    def test_whitelist(self, registry):
        rdo_id = mint(registry, CompactRules(access_type=AccessType.LIST), whitelist=["bob"])
        for _ in range(2):
            assert registry.request_action(rdo_id, ActionType.READ, actor="carol").reason == REASON_NOT_WHITELISTED
            assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed

    def test_whitelist_does_not_count_violations(self, registry):
        rdo_id = mint(registry, CompactRules(access_type=AccessType.LIST, forbid_copy=True), whitelist=["bob"])
        registry.request_action(rdo_id, ActionType.COPY, actor="carol")
        assert registry.read(rdo_id).violation_count == 0

    def test_creator_only(self, registry):
        rdo_id = mint(registry, CompactRules(access_type=AccessType.CREATOR_ONLY))
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").reason == REASON_CREATOR_ONLY
        assert registry.request_action(rdo_id, ActionType.READ, actor="alice").allowed

    def test_any_and_link_admit_everyone(self, registry):
        for access in (AccessType.ANY, AccessType.LINK):
            rdo_id = mint(registry, CompactRules(access_type=access))
            assert registry.request_action(rdo_id, ActionType.READ, actor="zed").allowed


class TestExpiry:

    def test_before_and_at_expiry(self, registry, clock):
        rdo_id = mint(registry, CompactRules(expiry=clock.now + 3600))
        clock.advance(3599)
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed
        clock.advance(1)
        outcome = registry.request_action(rdo_id, ActionType.READ, actor="bob")
        assert outcome.refused
        assert outcome.reason == REASON_EXPIRED

    def test_expiry_precedes_forbidden_check(self, registry, clock):
        rdo_id = mint(registry, CompactRules(expiry=clock.now, forbid_forward=True, lock_on_violation=True))
        outcome = registry.request_action(rdo_id, ActionType.FORWARD, actor="bob")
        assert outcome.reason == REASON_EXPIRED
        rec = registry.read(rdo_id)
        assert rec.violation_count == 0
        assert rec.locked is False

    def test_status(self, registry, clock):
        rdo_id = mint(registry, CompactRules(expiry=clock.now + 5))
        rec = registry.read(rdo_id)
        assert rec.status(clock.now) == "ACTIVE"
        assert rec.status(clock.now + 5) == "EXPIRED"
        rec.locked = True
        assert rec.status(clock.now + 5) == "LOCKED"


class TestUsageBudget:

    def test_budget_decrements_and_exhausts(self, registry):
        rdo_id = mint(registry, CompactRules(max_uses=2))
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed
        assert registry.read(rdo_id).uses_remaining == 0
        outcome = registry.request_action(rdo_id, ActionType.READ, actor="bob")
        assert outcome.reason == REASON_USAGE_EXCEEDED

    def test_unlimited_budget(self, registry):
        rdo_id = mint(registry, CompactRules(max_uses=0))
        for _ in range(10):
            assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed
        assert registry.read(rdo_id).uses_remaining == 0

    def test_refusals_do_not_spend_budget(self, registry):
        rdo_id = mint(registry, CompactRules(max_uses=1, forbid_copy=True))
        registry.request_action(rdo_id, ActionType.COPY, actor="bob")
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed

    def test_single_use(self, registry):
        rdo_id = mint(registry, CompactRules(access_type=AccessType.SINGLE_USE, max_uses=1))
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed
        assert registry.request_action(rdo_id, ActionType.READ, actor="carol").reason == REASON_USAGE_EXCEEDED


class TestLegacyRecords:

    def legacy(self, expiry=0, allow_forward=False):
        rules = CompactRules(forbid_forward=not allow_forward, expiry=expiry, version=LEGACY_RULES_VERSION)
        return rules, legacy_rules_digest(expiry, allow_forward)

    def test_legacy_forward_reason(self, registry):
        rules, digest = self.legacy()
        rdo_id = mint(registry, rules, rules_hash=digest)
        assert registry.request_action(rdo_id, ActionType.FORWARD, actor="bob").reason == REASON_LEGACY_FORWARD
        assert registry.request_action(rdo_id, ActionType.COPY, actor="bob").allowed

    def test_legacy_digest_mismatch(self, registry):
        rules, _ = self.legacy()
        with pytest.raises(MalformedRequest, match="do not match"):
            mint(registry, rules, rules_hash=HASH)

    def test_legacy_rules_cannot_carry_v1_fields(self, registry):
        rules = CompactRules(forbid_forward=True, lock_on_violation=True, version=LEGACY_RULES_VERSION)
        with pytest.raises(MalformedRequest):
            mint(registry, rules, rules_hash=legacy_rules_digest(0, False))


class TestMalformedRequests:

    def test_unknown_action_code(self, registry):
        rdo_id = mint(registry)
        with pytest.raises(MalformedRequest):
            registry.request_action(rdo_id, 9, actor="bob")
        assert len(registry.events(rdo_id)) == 1

    def test_action_names(self):
        assert parse_action("forward") == ActionType.FORWARD
        assert parse_action("EXPORT") == ActionType.DOWNLOAD
        assert parse_action(2) == ActionType.COPY
        with pytest.raises(MalformedRequest):
            parse_action(True)
        with pytest.raises(MalformedRequest):
            parse_action("delete")

    def test_missing_actor(self, registry):
        rdo_id = mint(registry)
        with pytest.raises(MalformedRequest):
            registry.request_action(rdo_id, ActionType.READ, actor="")

    def test_context_must_be_bytes(self, registry):
        rdo_id = mint(registry)
        with pytest.raises(MalformedRequest):
            registry.request_action(rdo_id, ActionType.READ, "text", actor="bob")


# =============================================================================
# PROOFS, EVENTS, PERSISTENCE
# =============================================================================

class TestVerifyRefusal:

    def test_valid_refusal(self, registry):
        rdo_id = mint(registry, CompactRules(forbid_forward=True))
        outcome = registry.request_action(rdo_id, ActionType.FORWARD, actor="bob")
        proof = registry.verify_refusal(outcome.tx_ref)
        assert proof.valid
        assert proof.rdo_id == rdo_id
        assert proof.actor == "bob"
        assert proof.action == ActionType.FORWARD
        assert proof.reason == "Forwarding forbidden"
        assert proof.rules_hash == HASH

    def test_unknown_reference(self, registry):
        proof = registry.verify_refusal("00" * 32)
        assert not proof.valid
        assert proof.errors

    def test_allowed_event_is_not_a_refusal(self, registry):
        rdo_id = mint(registry)
        outcome = registry.request_action(rdo_id, ActionType.READ, actor="bob")
        proof = registry.verify_refusal(outcome.tx_ref)
        assert not proof.valid
        assert "ActionAllowed" in proof.errors[0]


class TestEventsAndBus:

    def test_bus_receives_every_decision(self, clock):
        bus = EventBus()
        seen = []
        bus.subscribe(ActionRefused, ActionAllowed)(seen.append)
        registry = Registry(clock=clock, event_bus=bus)
        rdo_id = mint(registry, CompactRules(forbid_copy=True))
        registry.request_action(rdo_id, ActionType.COPY, actor="bob")
        registry.request_action(rdo_id, ActionType.READ, actor="bob")
        assert [type(e) for e in seen] == [ActionRefused, ActionAllowed]

    def test_failing_subscriber_does_not_break_registry(self, clock):
        bus = EventBus()

        @bus.subscribe(ActionAllowed)
        def boom(event):
            raise RuntimeError("subscriber failure")

        registry = Registry(clock=clock, event_bus=bus)
        rdo_id = mint(registry)
        assert registry.request_action(rdo_id, ActionType.READ, actor="bob").allowed

    def test_stream_order(self, registry):
        rdo_id = mint(registry)
        other = mint(registry)
        registry.request_action(rdo_id, ActionType.READ, actor="bob")
        registry.request_action(other, ActionType.READ, actor="bob")
        assert [r.version for r in registry.events(rdo_id)] == [1, 2]
        assert [r.sequence_number for r in registry.events()] == [1, 2, 3, 4]

    def test_fresh_correlation_id_per_call(self, registry):
        rdo_id = mint(registry)
        token = correlation_id_var.set("")
        try:
            registry.request_action(rdo_id, ActionType.READ, actor="bob")
            registry.request_action(rdo_id, ActionType.READ, actor="bob")
            assert correlation_id_var.get() == ""
        finally:
            correlation_id_var.reset(token)
        first, second = [r.event.correlation_id for r in registry.events(rdo_id)][1:]
        assert first.startswith("corr-")
        assert first != second

    def test_ambient_correlation_id_used(self, registry):
        rdo_id = mint(registry)
        token = set_correlation_id("corr-cli-run")
        try:
            registry.request_action(rdo_id, ActionType.READ, actor="bob")
        finally:
            correlation_id_var.reset(token)
        assert registry.events(rdo_id)[-1].event.correlation_id == "corr-cli-run"


class TestSnapshot:

    def test_restore_preserves_state(self, registry, clock):
        locked = mint(registry, CompactRules(forbid_copy=True, lock_on_violation=True))
        budget = mint(registry, CompactRules(access_type=AccessType.LIST, max_uses=2), whitelist=["bob"])
        registry.request_action(locked, ActionType.COPY, actor="bob")
        refusal = registry.request_action(locked, ActionType.READ, actor="bob")
        registry.request_action(budget, ActionType.READ, actor="bob")

        restored = Registry.restore(registry.snapshot(), clock=clock)
        assert restored.read(locked) == registry.read(locked)
        assert restored.read(budget) == registry.read(budget)
        assert restored.read(budget).whitelist == frozenset({"bob"})
        assert restored.verify_refusal(refusal.tx_ref).valid
        assert mint(restored) == 3
        assert len(restored.events()) == len(registry.events()) + 1

    def test_snapshot_is_json_serializable(self, registry):
        import json
        mint(registry, CompactRules(access_type=AccessType.LIST), whitelist=["b", "a"])
        data = json.loads(json.dumps(registry.snapshot()))
        assert data["records"][0]["whitelist"] == ["a", "b"]


class TestConcurrency:

    def test_budget_is_never_overspent(self, registry):
        rdo_id = mint(registry, CompactRules(max_uses=25))
        results = []
        lock = threading.Lock()

        def worker():
            for _ in range(10):
                outcome = registry.request_action(rdo_id, ActionType.READ, actor="bob")
                with lock:
                    results.append(outcome.allowed)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 25
        assert registry.read(rdo_id).uses_remaining == 0
