"""
RDO Action Protocol

Client-side orchestration over the rule compiler, the encryption gate, the
content store and the registry.

Create:

    intent ─► compile_rules ─► generate_key ─► encrypt ─► store.put(ciphertext)
           ─► store.put(metadata) ─► Registry.create ─► CapabilityLink

Access:

    link ─► Registry.read ─► store.get(metadata) ─► Registry.request_action
         ├─ Allowed: store.get(ciphertext) ─► decrypt ─► plaintext
         └─ Refused: reason + tx_ref, no decryption

Content-store I/O is retried; registry calls are not. A create that fails in
the storage phase leaves no registry state behind.

The key travels only in the link fragment and is never logged.
"""

from __future__ import annotations

import base64
import binascii
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Union
from urllib.parse import urlsplit

from rdo.core import unix_now
from rdo.crypto import SymmetricKey, decrypt, encrypt, export_key, generate_key, import_key
from rdo.errors import LinkError, StorageError, ValidationError, ValidationErrors
from rdo.observability import Layer, RDOLogger, generate_correlation_id, correlation_id_var
from rdo.registry import ActionType, RefusalProof, Registry, parse_action
from rdo.resilience import BackoffStrategy, RetryExhaustedError, RetryPolicy
from rdo.rules import RuleIntent, compile_rules
from rdo.schema import schema_errors
from rdo.storage import ContentStore
from rdo.validation import validate_intent

log = RDOLogger("protocol", Layer.PROTOCOL)

DEFAULT_IMAGE = "ipfs://bafkreidmvnotre7527r4jjk3v3i5h3qaqy2q2f22cbe62g3aa22a4z3w7u"


# ════════════════════════════════════════════════════════════════════════════
# CAPABILITY LINK
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class CapabilityLink:
    """
    ``<origin>/<rdo_id>#<base64url(JWK)>``

    Possession of the link is possession of the decryption key. Parsing
    accepts standard base64 fragments too, as produced by browser clients.
    """
    origin: str
    rdo_id: int
    key: SymmetricKey

    def build(self) -> str:
        fragment = base64.urlsafe_b64encode(export_key(self.key).encode("utf-8"))
        return f"{self.origin.rstrip('/')}/{self.rdo_id}#{fragment.decode('ascii').rstrip('=')}"

    @classmethod
    def parse(cls, link: str) -> "CapabilityLink":
        if not isinstance(link, str) or "#" not in link:
            raise LinkError("capability link has no key fragment")
        base, fragment = link.split("#", 1)
        parts = urlsplit(base)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise LinkError("capability link must be an http(s) URL")

        path = parts.path.rstrip("/")
        head, _, tail = path.rpartition("/")
        if not (tail.isascii() and tail.isdigit()) or int(tail) < 1:
            raise LinkError(f"capability link has no object id: {tail!r}")

        fragment = fragment.strip().replace("+", "-").replace("/", "_")
        try:
            jwk_text = base64.urlsafe_b64decode(fragment + "=" * (-len(fragment) % 4)).decode("utf-8")
            key = import_key(jwk_text)
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise LinkError(f"capability link key fragment is invalid: {e}") from e

        return cls(origin=f"{parts.scheme}://{parts.netloc}{head}", rdo_id=int(tail), key=key)

    def __repr__(self) -> str:
        return f"CapabilityLink(origin={self.origin!r}, rdo_id={self.rdo_id}, key=<redacted>)"


# ════════════════════════════════════════════════════════════════════════════
# METADATA DOCUMENT
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ObjectMetadata:
    """The public metadata document stored next to the ciphertext."""
    name: str
    description: str
    rules_hash: str
    content_pointer: str
    iv: str
    created_at: int
    image: str = DEFAULT_IMAGE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "image": self.image,
            "properties": {
                "rulesHash": self.rules_hash,
                "encryptedContentCID": self.content_pointer,
                "iv": self.iv,
                "createdAt": self.created_at,
            },
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ObjectMetadata":
        """Validate against metadata.schema.json and build; raises ValidationErrors."""
        errs = schema_errors("metadata", data)
        if errs:
            raise ValidationErrors([ValidationError("metadata", e) for e in errs])
        props = data["properties"]
        return cls(
            name=data["name"],
            description=data["description"],
            image=data["image"],
            rules_hash=props["rulesHash"],
            content_pointer=props["encryptedContentCID"],
            iv=props["iv"],
            created_at=props["createdAt"],
        )


# ════════════════════════════════════════════════════════════════════════════
# RESULTS
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class CreatedObject:
    rdo_id: int
    link: str
    rules_hash: str
    metadata_pointer: str
    content_pointer: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rdo_id": self.rdo_id,
            "link": self.link,
            "rules_hash": self.rules_hash,
            "metadata_pointer": self.metadata_pointer,
            "content_pointer": self.content_pointer,
        }


@dataclass(frozen=True)
class AccessResult:
    """
    Outcome of access_object.

    ``plaintext`` is set only when ``allowed``; on refusal ``reason`` and
    ``tx_ref`` form the refusal proof.
    """
    allowed: bool
    reason: str
    plaintext: Optional[bytes]
    tx_ref: str
    rdo_id: int = 0
    action: ActionType = ActionType.READ

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "rdo_id": self.rdo_id,
            "action": self.action.name,
            "allowed": self.allowed,
            "reason": self.reason,
            "tx_ref": self.tx_ref,
        }
        if self.plaintext is not None:
            try:
                d["plaintext"] = self.plaintext.decode("utf-8")
            except UnicodeDecodeError:
                d["plaintext_b64"] = base64.b64encode(self.plaintext).decode("ascii")
        return d


# ════════════════════════════════════════════════════════════════════════════
# ORCHESTRATOR
# ════════════════════════════════════════════════════════════════════════════


class ActionProtocol:
    """
    Client orchestrator acting as one identity.

    Example:
        protocol = ActionProtocol(registry, MemoryContentStore(),
                                  origin="https://rdo.app/rdo", identity="alice")
        created = protocol.create_object(intent)
        result = protocol.access_object(created.link, ActionType.READ)
    """

    def __init__(
        self,
        registry: Registry,
        store: ContentStore,
        *,
        origin: str,
        identity: str,
        retry: Optional[RetryPolicy] = None,
        image: str = DEFAULT_IMAGE,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.registry = registry
        self.store = store
        self.origin = origin.rstrip("/")
        self.identity = identity
        self.image = image
        self._clock = clock or unix_now
        self._retry = retry or RetryPolicy(
            max_attempts=3,
            base_delay_seconds=0.5,
            backoff_strategy=BackoffStrategy.EXPONENTIAL_JITTER,
            retryable_exceptions=(StorageError,),
        )

    @classmethod
    def from_config(cls, registry: Registry, store: ContentStore, config: Any, *, identity: str) -> "ActionProtocol":
        """Build from an RDOConfig."""
        retry = RetryPolicy(
            max_attempts=config.protocol.retry_max_attempts.get(),
            base_delay_seconds=config.protocol.retry_base_delay_seconds.get(),
            retryable_exceptions=(StorageError,),
        )
        return cls(
            registry,
            store,
            origin=config.protocol.origin.get(),
            identity=identity,
            retry=retry,
            image=config.protocol.default_image.get(),
        )

    def _io(self, what: str, fn: Callable[[], Any]) -> Any:
        try:
            return self._retry.execute(fn)
        except RetryExhaustedError as e:
            log.error(f"Content store {what} failed", error_code="STORAGE", attempts=e.attempts)
            pointer = getattr(e.last_exception, "pointer", None)
            raise StorageError(f"{what} failed after {e.attempts} attempts: {e.last_exception}", pointer=pointer) from e

    def _with_correlation(self) -> Any:
        if correlation_id_var.get():
            return None
        return correlation_id_var.set(generate_correlation_id())

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------

    def create_object(self, intent: RuleIntent) -> CreatedObject:
        """Compile, encrypt, store and mint. Raises ValidationErrors or StorageError."""
        token = self._with_correlation()
        start = time.perf_counter()
        try:
            validate_intent(intent).raise_if_invalid()
            now = int(self._clock())
            compiled = compile_rules(intent, now=now)

            key = generate_key()
            sealed = encrypt(key, intent.payload.content_bytes())
            content_pointer = self._io(
                "ciphertext upload", lambda: self.store.put(bytes.fromhex(sealed.ciphertext))
            )

            metadata = ObjectMetadata(
                name=intent.name,
                description=intent.description,
                image=self.image,
                rules_hash=compiled.digest,
                content_pointer=content_pointer,
                iv=sealed.iv,
                created_at=now,
            )
            metadata_pointer = self._io("metadata upload", lambda: self.store.put_json(metadata.to_dict()))

            rdo_id = self.registry.create(
                compiled.digest,
                intent.type,
                compiled.compact,
                metadata_pointer,
                intent.whitelist,
                creator=self.identity,
            )
            link = CapabilityLink(origin=self.origin, rdo_id=rdo_id, key=key).build()
        finally:
            if token is not None:
                correlation_id_var.reset(token)

        log.operation(
            "create_object",
            duration_ms=(time.perf_counter() - start) * 1000,
            rdo_id=rdo_id,
            rules_hash=compiled.digest,
        )
        return CreatedObject(
            rdo_id=rdo_id,
            link=link,
            rules_hash=compiled.digest,
            metadata_pointer=metadata_pointer,
            content_pointer=content_pointer,
        )

    # ------------------------------------------------------------------
    # access
    # ------------------------------------------------------------------

    def fetch_metadata(self, pointer: str) -> ObjectMetadata:
        data = self._io("metadata fetch", lambda: self.store.get_json(pointer))
        return ObjectMetadata.from_dict(data)

    def access_object(
        self,
        link: Union[str, CapabilityLink],
        action: Any = ActionType.READ,
        context: bytes = b"",
    ) -> AccessResult:
        """
        Request an action through a capability link.

        Raises LinkError, NotFound, MalformedRequest, StorageError or
        DecryptionError. A refusal is a normal return value.
        """
        cap = link if isinstance(link, CapabilityLink) else CapabilityLink.parse(link)
        act = parse_action(action)
        token = self._with_correlation()
        start = time.perf_counter()
        try:
            record = self.registry.read(cap.rdo_id)
            metadata = self.fetch_metadata(record.metadata_pointer)
            if metadata.rules_hash != record.rules_hash:
                raise StorageError(
                    f"metadata for RDO {cap.rdo_id} does not match the registry rules hash",
                    pointer=record.metadata_pointer,
                )

            outcome = self.registry.request_action(cap.rdo_id, act, bytes(context), actor=self.identity)
            if outcome.refused:
                log.info("Access refused", operation="access_object", rdo_id=cap.rdo_id,
                         action=act.name, reason=outcome.reason, tx_ref=outcome.tx_ref)
                return AccessResult(
                    allowed=False,
                    reason=outcome.reason,
                    plaintext=None,
                    tx_ref=outcome.tx_ref,
                    rdo_id=cap.rdo_id,
                    action=act,
                )

            ciphertext = self._io("ciphertext fetch", lambda: self.store.get(metadata.content_pointer))
            plaintext = decrypt(cap.key, metadata.iv, ciphertext.hex())
        finally:
            if token is not None:
                correlation_id_var.reset(token)

        log.operation(
            "access_object",
            duration_ms=(time.perf_counter() - start) * 1000,
            rdo_id=cap.rdo_id,
            action=act.name,
        )
        return AccessResult(
            allowed=True,
            reason="",
            plaintext=plaintext,
            tx_ref=outcome.tx_ref,
            rdo_id=cap.rdo_id,
            action=act,
        )

    def verify_refusal(self, tx_ref: str) -> RefusalProof:
        return self.registry.verify_refusal(tx_ref)


__all__ = [
    "DEFAULT_IMAGE",
    "CapabilityLink",
    "ObjectMetadata",
    "CreatedObject",
    "AccessResult",
    "ActionProtocol",
]
