"""
CLI tests. Each invocation runs ``main`` against a temporary state
directory, so registry state persists between calls exactly as it does
between shell invocations.

Run with: pytest tests/test_cli.py -v
"""

import json
import threading

import pytest
import yaml

from rdo.cli import EXIT_REFUSED, StateDir, format_output, main, OutputFormat
from rdo.config import get_config_manager
from rdo.protocol import ActionProtocol
from rdo.registry import REASON_LOCKED, ActionType
from rdo.rules import ViolationAction


@pytest.fixture
def state_dir(tmp_path):
    return tmp_path / "state"


@pytest.fixture
def intent_file(tmp_path):
    def make(**overrides):
        doc = {
            "type": "MESSAGE",
            "name": "memo",
            "description": "internal",
            "payload": {"text": "meet at noon"},
            "forbiddenActions": ["FORWARD", "COPY"],
            "violationAction": "LOCK",
        }
        doc.update(overrides)
        path = tmp_path / "intent.yaml"
        path.write_text(yaml.safe_dump(doc))
        return path
    return make


def run(capsys, *argv):
    code = main(list(argv))
    out = capsys.readouterr().out
    return code, (json.loads(out) if out.strip() else None)


class TestCompileAndKeygen:

    def test_compile(self, capsys, intent_file):
        code, out = run(capsys, "compile", str(intent_file()), "--now", "100")
        assert code == 0
        assert len(out["digest"]) == 64
        assert json.loads(out["canonical"])["rules"]["forbidden"] == ["COPY", "FORWARD"]
        assert out["compact"]["lock_on_violation"] is True

    def test_compile_order_independent(self, capsys, intent_file):
        _, a = run(capsys, "compile", str(intent_file(forbiddenActions=["COPY", "FORWARD"])), "--now", "1")
        _, b = run(capsys, "compile", str(intent_file(forbiddenActions=["FORWARD", "COPY"])), "--now", "1")
        assert a["digest"] == b["digest"]

    def test_compile_invalid_intent(self, capsys, intent_file):
        code = main(["compile", str(intent_file(allowedUsers="LIST"))])
        assert code == 1
        assert "whitelist" in capsys.readouterr().err

    def test_compile_missing_file(self, capsys, tmp_path):
        assert main(["compile", str(tmp_path / "nope.yaml")]) == 1

    def test_keygen(self, capsys):
        code, out = run(capsys, "keygen")
        assert code == 0
        assert json.loads(out["jwk"])["alg"] == "A256GCM"


class TestObjectLifecycle:

    def test_create_access_lock(self, capsys, intent_file, state_dir):
        code, created = run(capsys, "--state-dir", str(state_dir), "create", str(intent_file()), "-i", "alice")
        assert code == 0
        assert created["rdo_id"] == 1
        link = created["link"]
        assert (state_dir / "registry.json").exists()
        assert (state_dir / "content" / f"{created['content_pointer']}.bin").exists()

        code, read = run(capsys, "-s", str(state_dir), "access", link, "-i", "bob")
        assert code == 0
        assert read["plaintext"] == "meet at noon"

        code, refused = run(capsys, "-s", str(state_dir), "access", link, "-i", "bob", "-a", "copy")
        assert code == EXIT_REFUSED
        assert refused["reason"] == "Copying forbidden (Object Locked)"

        code, shown = run(capsys, "-s", str(state_dir), "show", "1")
        assert shown["locked"] is True
        assert shown["status"] == "LOCKED"
        assert shown["violation_count"] == 1

        code, proof = run(capsys, "-s", str(state_dir), "verify-refusal", refused["tx_ref"])
        assert code == 0
        assert proof["valid"] is True
        assert proof["action"] == "COPY"

        code, events = run(capsys, "-s", str(state_dir), "events", "--rdo-id", "1")
        assert [e["event"]["event_type"] for e in events] == ["RDOCreated", "ActionAllowed", "ActionRefused"]

    def test_show_unknown(self, capsys, state_dir):
        assert main(["-s", str(state_dir), "show", "7"]) == 2
        assert "not found" in capsys.readouterr().err

    def test_bad_link(self, capsys, state_dir):
        assert main(["-s", str(state_dir), "access", "https://rdo.app/rdo/1", "-i", "bob"]) == 1

    def test_verify_unknown_refusal(self, capsys, state_dir):
        code, proof = run(capsys, "-s", str(state_dir), "verify-refusal", "00" * 32)
        assert code == EXIT_REFUSED
        assert proof["valid"] is False

    def test_state_dir_from_config(self, capsys, intent_file, tmp_path, monkeypatch):
        monkeypatch.setenv("RDO_STATE_DIR", str(tmp_path / "env-state"))
        code, _ = run(capsys, "create", str(intent_file()), "-i", "alice")
        assert code == 0
        assert (tmp_path / "env-state" / "registry.json").exists()


class TestStateDirLocking:

    def protocol(self, state, registry, identity):
        return ActionProtocol.from_config(registry, state.content_store(), state.config, identity=identity)

    def test_overlapping_access_cannot_undo_lock(self, tmp_path, message_intent):
        state = StateDir(tmp_path / "state", get_config_manager().config)
        with state.transaction() as registry:
            created = self.protocol(state, registry, "alice").create_object(message_intent(
                forbidden_actions=("COPY",), violation_action=ViolationAction.LOCK
            ))

        violated = threading.Event()
        release = threading.Event()
        reads = []

        def violator():
            with state.transaction() as registry:
                self.protocol(state, registry, "mallory").access_object(created.link, ActionType.COPY)
                violated.set()
                release.wait(5)

        def reader():
            with state.transaction() as registry:
                reads.append(self.protocol(state, registry, "bob").access_object(created.link, ActionType.READ))

        first = threading.Thread(target=violator)
        first.start()
        assert violated.wait(5)
        second = threading.Thread(target=reader)
        second.start()
        second.join(0.2)
        assert second.is_alive()
        assert reads == []

        release.set()
        first.join(5)
        second.join(5)

        assert reads[0].reason == REASON_LOCKED
        reloaded = state.load_registry()
        record = reloaded.read(created.rdo_id)
        assert record.locked is True
        assert record.violation_count == 1
        refusals = [r for r in reloaded.events(created.rdo_id) if r.event.event_type == "ActionRefused"]
        assert len(refusals) == 2
        assert reloaded.verify_refusal(refusals[0].tx_ref).valid

    def test_snapshot_saved_when_access_fails(self, tmp_path, message_intent):
        state = StateDir(tmp_path / "state", get_config_manager().config)
        with state.transaction() as registry:
            created = self.protocol(state, registry, "alice").create_object(message_intent())
        with pytest.raises(RuntimeError):
            with state.transaction() as registry:
                self.protocol(state, registry, "bob").access_object(created.link, ActionType.FORWARD)
                raise RuntimeError("interrupted")
        assert state.load_registry().read(created.rdo_id).violation_count == 1


class TestConfigCommands:

    def test_show(self, capsys):
        code, out = run(capsys, "config", "show")
        assert code == 0
        assert out["storage"]["backend"] == "file"

    def test_validate_with_file(self, capsys, tmp_path):
        cfg = tmp_path / "rdo.yaml"
        cfg.write_text("protocol:\n  origin: https://objects.example\n")
        code, out = run(capsys, "--config", str(cfg), "config", "validate")
        assert code == 0
        assert out == {"valid": True, "errors": []}

    def test_validate_reports_errors(self, capsys, monkeypatch):
        monkeypatch.setenv("RDO_STORAGE_BACKEND", "s3")
        code, out = run(capsys, "config", "validate")
        assert code == 1
        assert out["valid"] is False

    def test_config_requires_subcommand(self, capsys):
        assert main(["config"]) == 1


class TestFormatting:

    def test_yaml_and_text(self):
        data = {"b": 1, "a": "x"}
        assert yaml.safe_load(format_output(data, OutputFormat.YAML)) == data
        assert format_output(data, OutputFormat.TEXT) == "b: 1\na: x"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out.lower()
