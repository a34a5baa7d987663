#!/usr/bin/env python3
"""
RDO CLI

Usage:
    rdo [--state-dir DIR] [--format json|yaml|text] <command> [options]

Commands:
    compile         Compile an intent document to canonical rules and digest
    keygen          Generate a content key (JWK)
    create          Encrypt, store and mint an object; prints its capability link
    access          Request an action through a capability link
    show            Show a registry record
    events          List registry events
    verify-refusal  Re-verify a refusal by transaction reference
    config          Configuration management (show, validate)

Registry state is a JSON snapshot inside the state directory; ciphertext and
metadata go to the configured content store (``file`` keeps them under
``<state-dir>/content``).

Exit codes: 0 success, 1 error, 2 hard registry failure (not found,
malformed request), 3 action refused or refusal proof invalid.
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import json
import os
import pathlib
import sys
import tempfile
from enum import Enum
from typing import Any, Iterator, List, Optional

import yaml

try:
    import fcntl
except ImportError:  # Windows
    fcntl = None
    import msvcrt

from rdo import __version__
from rdo.config import ConfigError, RDOConfig, get_config_manager
from rdo.core import load_document
from rdo.crypto import export_key, generate_key
from rdo.errors import MalformedRequest, NotFound, RDOError
from rdo.observability import Layer, RDOLogger, configure_logging
from rdo.protocol import ActionProtocol
from rdo.registry import ActionType, Registry
from rdo.rules import FilePayload, compile_rules
from rdo.storage import ContentStore, FileContentStore, MemoryContentStore, PinataContentStore
from rdo.validation import load_intent

log = RDOLogger("cli", Layer.CLI)

EXIT_REFUSED = 3


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, sort_keys=True, default=str)
    elif fmt == OutputFormat.YAML:
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
    return _format_text(data)


def _format_text(data: Any) -> str:
    if isinstance(data, list):
        return "\n".join(_format_text(item) for item in data)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


# ════════════════════════════════════════════════════════════════════════════
# STATE DIRECTORY
# ════════════════════════════════════════════════════════════════════════════


def _lock_exclusive(handle: Any) -> None:
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
    else:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_LOCK, 1)


def _unlock(handle: Any) -> None:
    if fcntl is not None:
        fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    else:
        handle.seek(0)
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)


class StateDir:
    """Registry snapshot plus on-disk content store under one directory."""

    def __init__(self, root: pathlib.Path, config: RDOConfig):
        self.root = root
        self.config = config
        self.snapshot_path = root / config.registry.snapshot_file.get()
        self.lock_path = root / ".lock"

    def load_registry(self) -> Registry:
        if not self.snapshot_path.exists():
            return Registry()
        try:
            data = json.loads(self.snapshot_path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise CLIError(f"Corrupt registry snapshot {self.snapshot_path}: {e}") from e
        return Registry.restore(data)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[Registry]:
        """Load, mutate and save the registry under an exclusive directory lock.

        Concurrent invocations against one state directory serialize here.
        The snapshot is saved even when the body raises, since refusals and
        lock transitions are recorded before a later storage or decryption
        failure.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a+b") as handle:
            _lock_exclusive(handle)
            try:
                registry = self.load_registry()
                try:
                    yield registry
                finally:
                    self.save_registry(registry)
            finally:
                _unlock(handle)

    def save_registry(self, registry: Registry) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        body = json.dumps(registry.snapshot(), indent=2, sort_keys=True)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".snapshot-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(body)
            os.replace(tmp, self.snapshot_path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def content_store(self) -> ContentStore:
        storage = self.config.storage
        backend = storage.backend.get()
        if backend == "file":
            return FileContentStore(self.root / "content")
        if backend == "pinata":
            return PinataContentStore(
                storage.pinata_jwt.get(),
                gateway=storage.gateway_url.get(),
                timeout_seconds=storage.timeout_seconds.get(),
            )
        log.warning("Memory content store does not persist between invocations", backend=backend)
        return MemoryContentStore()


# ════════════════════════════════════════════════════════════════════════════
# CLI
# ════════════════════════════════════════════════════════════════════════════


class RDOCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="rdo",
            description="Rule-bound digital objects: compile, mint and access",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"rdo {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error messages on stderr",
        )
        self.parser.add_argument("--config", "-c", help="Configuration file (default: rdo.yaml search)")
        self.parser.add_argument("--state-dir", "-s", help="State directory (default: registry.state_dir)")
        self.parser.add_argument("--log-level", help="Override observability.log_level")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()
        self.exit_code = 0

    def _register_commands(self) -> None:
        compile_cmd = self.subparsers.add_parser("compile", help="Compile an intent document")
        compile_cmd.add_argument("intent", help="Intent document (JSON or YAML)")
        compile_cmd.add_argument("--now", type=int, help="Epoch seconds used to resolve relative expiry")

        self.subparsers.add_parser("keygen", help="Generate a content key")

        create = self.subparsers.add_parser("create", help="Create an object from an intent document")
        create.add_argument("intent", help="Intent document (JSON or YAML)")
        create.add_argument("--identity", "-i", required=True, help="Creator identity")
        create.add_argument("--content-file", help="Binary content for FILE objects")

        access = self.subparsers.add_parser("access", help="Request an action through a capability link")
        access.add_argument("link", help="Capability link")
        access.add_argument("--identity", "-i", required=True, help="Actor identity")
        access.add_argument(
            "--action", "-a",
            default="READ",
            type=str.upper,
            choices=[a.name for a in ActionType] + ["EXPORT"],
            help="Action to request (default: READ)",
        )
        access.add_argument("--context", default="", help="Action context data (UTF-8)")

        show = self.subparsers.add_parser("show", help="Show a registry record")
        show.add_argument("rdo_id", type=int, help="Object id")

        events = self.subparsers.add_parser("events", help="List registry events")
        events.add_argument("--rdo-id", type=int, help="Only events of this object")

        verify = self.subparsers.add_parser("verify-refusal", help="Verify a refusal proof")
        verify.add_argument("tx_ref", help="Transaction reference of the refusal")

        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")
        config_sub.add_parser("show", help="Show all configuration")
        config_sub.add_parser("validate", help="Validate configuration")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        parsed = self.parser.parse_args(args)
        self.exit_code = 0

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            self._setup(parsed)
            fmt = OutputFormat(parsed.format)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return self.exit_code

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except (NotFound, MalformedRequest) as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 2

        except (RDOError, ConfigError, OSError, ValueError) as e:
            log.error("Command failed", error_code=type(e).__name__, command=parsed.command)
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _setup(self, args: argparse.Namespace) -> None:
        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()
        if args.log_level:
            mgr.set("observability.log_level", args.log_level.lower())
        obs = mgr.config.observability
        configure_logging(level=obs.log_level.get(), fmt=obs.log_format.get())

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command.replace("-", "_")
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {args.command} {subcmd or ''}")

        return handler(args)

    def _state(self, args: argparse.Namespace) -> StateDir:
        config = get_config_manager().config
        root = args.state_dir or config.registry.state_dir.get()
        return StateDir(pathlib.Path(root), config)

    def _load_intent(self, path: str, content_file: Optional[str] = None) -> Any:
        if not pathlib.Path(path).exists():
            raise CLIError(f"Intent file not found: {path}")
        intent = load_intent(load_document(path))
        if content_file:
            if not isinstance(intent.payload, FilePayload):
                raise CLIError("--content-file is only valid for FILE intents")
            intent.payload = dataclasses.replace(
                intent.payload, content=pathlib.Path(content_file).read_bytes()
            )
        return intent

    # Rule handlers
    def _handle_compile(self, args: argparse.Namespace) -> Any:
        intent = self._load_intent(args.intent)
        compiled = compile_rules(intent, now=args.now)
        return {
            "canonical": compiled.canonical,
            "digest": compiled.digest,
            "compact": compiled.compact.to_dict(),
        }

    def _handle_keygen(self, args: argparse.Namespace) -> Any:
        return {"jwk": export_key(generate_key())}

    # Protocol handlers
    def _handle_create(self, args: argparse.Namespace) -> Any:
        intent = self._load_intent(args.intent, args.content_file)
        state = self._state(args)
        with state.transaction() as registry:
            protocol = ActionProtocol.from_config(
                registry, state.content_store(), state.config, identity=args.identity
            )
            created = protocol.create_object(intent)
        return created.to_dict()

    def _handle_access(self, args: argparse.Namespace) -> Any:
        state = self._state(args)
        with state.transaction() as registry:
            protocol = ActionProtocol.from_config(
                registry, state.content_store(), state.config, identity=args.identity
            )
            result = protocol.access_object(args.link, args.action, args.context.encode("utf-8"))
        if not result.allowed:
            self.exit_code = EXIT_REFUSED
        return result.to_dict()

    # Registry handlers
    def _handle_show(self, args: argparse.Namespace) -> Any:
        record = self._state(args).load_registry().read(args.rdo_id)
        data = record.to_dict()
        data["status"] = record.status()
        return data

    def _handle_events(self, args: argparse.Namespace) -> Any:
        registry = self._state(args).load_registry()
        return [r.to_dict() for r in registry.events(args.rdo_id)]

    def _handle_verify_refusal(self, args: argparse.Namespace) -> Any:
        proof = self._state(args).load_registry().verify_refusal(args.tx_ref)
        if not proof.valid:
            self.exit_code = EXIT_REFUSED
        return {
            "valid": proof.valid,
            "tx_ref": proof.tx_ref,
            "rdo_id": proof.rdo_id,
            "actor": proof.actor,
            "action": proof.action.name if proof.action is not None else None,
            "reason": proof.reason,
            "rules_hash": proof.rules_hash,
            "errors": list(proof.errors),
        }

    # Config handlers
    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        errors = get_config_manager().validate()
        if errors:
            self.exit_code = 1
        return {"valid": len(errors) == 0, "errors": errors}

    def _handle_config(self, args: argparse.Namespace) -> Any:
        raise CLIError("config requires a subcommand: show, validate")


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = RDOCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
