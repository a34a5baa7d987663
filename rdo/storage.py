"""Content-addressed storage (CAS) for RDO ciphertext and metadata.

A content store is a put/get blob service referenced by pointer:

  put(bytes) -> pointer
  get(pointer) -> bytes

Backends:

- ``MemoryContentStore``: in-process dict, pointer = sha256 hex of the bytes.
- ``FileContentStore``: ``<root>/<digest>.bin`` on disk, pointer = sha256 hex.
- ``PinataContentStore``: Pinata pinning API for puts, an IPFS gateway for
  gets; pointer = IPFS CID.

Every backend failure surfaces as ``StorageError`` so the orchestrator can
retry it without touching the registry.
"""

from __future__ import annotations

import json
import os
import pathlib
import tempfile
import threading
import urllib.error
import urllib.request
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from rdo.core import SHA256_HEX_RE, canonical_json_bytes, sha256_bytes
from rdo.errors import StorageError
from rdo.observability import Layer, RDOLogger

log = RDOLogger("storage", Layer.STORAGE)


class ContentStore(ABC):
    """Put/get blob service."""

    @abstractmethod
    def put(self, data: bytes) -> str:
        """Store bytes, return a pointer."""

    @abstractmethod
    def get(self, pointer: str) -> bytes:
        """Fetch bytes by pointer; raise StorageError if unavailable."""

    def put_json(self, obj: Any) -> str:
        return self.put(canonical_json_bytes(obj))

    def get_json(self, pointer: str) -> Any:
        raw = self.get(pointer)
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise StorageError(f"content at {pointer} is not JSON", pointer=pointer) from e


def normalize_digest(pointer: str) -> str:
    dd = str(pointer or "").strip().lower()
    if not SHA256_HEX_RE.match(dd):
        raise StorageError("pointer must be 64 lowercase hex chars", pointer=pointer)
    return dd


class MemoryContentStore(ContentStore):
    """Thread-safe in-memory CAS."""

    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        digest = sha256_bytes(bytes(data))
        with self._lock:
            self._blobs[digest] = bytes(data)
        return digest

    def get(self, pointer: str) -> bytes:
        digest = normalize_digest(pointer)
        with self._lock:
            data = self._blobs.get(digest)
        if data is None:
            raise StorageError(f"content not found: {digest}", pointer=digest)
        return data

    def __len__(self) -> int:
        with self._lock:
            return len(self._blobs)


class FileContentStore(ContentStore):
    """On-disk CAS: ``<root>/<digest>.bin``. Writes are atomic (temp file + rename)."""

    SUFFIX = ".bin"

    def __init__(self, root: os.PathLike):
        self.root = pathlib.Path(root)

    def path_for(self, pointer: str) -> pathlib.Path:
        return self.root / f"{normalize_digest(pointer)}{self.SUFFIX}"

    def put(self, data: bytes) -> str:
        data = bytes(data)
        digest = sha256_bytes(data)
        dest = self.root / f"{digest}{self.SUFFIX}"
        if dest.exists():
            return digest
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(data)
                os.replace(tmp, dest)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise StorageError(f"failed to write {dest}: {e}", pointer=digest) from e
        log.debug("Stored blob", operation="put", pointer=digest, size=len(data))
        return digest

    def get(self, pointer: str) -> bytes:
        path = self.path_for(pointer)
        try:
            data = path.read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"content not found: {pointer}", pointer=pointer) from e
        except OSError as e:
            raise StorageError(f"failed to read {path}: {e}", pointer=pointer) from e
        if sha256_bytes(data) != normalize_digest(pointer):
            raise StorageError(f"content digest mismatch for {pointer}", pointer=pointer)
        return data


class PinataContentStore(ContentStore):
    """IPFS via the Pinata pinning API (puts) and a public gateway (gets)."""

    PIN_FILE_URL = "https://api.pinata.cloud/pinning/pinFileToIPFS"

    def __init__(
        self,
        jwt: str,
        *,
        gateway: str = "https://gateway.pinata.cloud/ipfs/",
        timeout_seconds: float = 30.0,
        name_prefix: str = "rdo",
    ):
        if not jwt:
            raise StorageError("Pinata JWT is not configured")
        self._jwt = jwt
        self.gateway = gateway if gateway.endswith("/") else gateway + "/"
        self.timeout_seconds = timeout_seconds
        self.name_prefix = name_prefix

    def _multipart(self, data: bytes, name: str) -> tuple:
        boundary = uuid.uuid4().hex
        parts = [
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="file"; filename="{name}"\r\n'
            "Content-Type: application/octet-stream\r\n\r\n".encode("utf-8"),
            data,
            f"\r\n--{boundary}\r\n"
            'Content-Disposition: form-data; name="pinataMetadata"\r\n\r\n'
            f'{json.dumps({"name": name})}\r\n'
            f"--{boundary}\r\n"
            'Content-Disposition: form-data; name="pinataOptions"\r\n\r\n'
            f'{json.dumps({"cidVersion": 1})}\r\n'
            f"--{boundary}--\r\n".encode("utf-8"),
        ]
        return b"".join(parts), f"multipart/form-data; boundary={boundary}"

    def put(self, data: bytes) -> str:
        name = f"{self.name_prefix}-{sha256_bytes(data)[:16]}.bin"
        body, content_type = self._multipart(bytes(data), name)
        req = urllib.request.Request(
            self.PIN_FILE_URL,
            data=body,
            method="POST",
            headers={"Authorization": f"Bearer {self._jwt}", "Content-Type": content_type},
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except (urllib.error.URLError, OSError, ValueError) as e:
            raise StorageError(f"Pinata upload failed: {e}") from e
        cid = payload.get("IpfsHash") if isinstance(payload, dict) else None
        if not cid:
            raise StorageError("Pinata upload response has no IpfsHash")
        log.info("Pinned blob", operation="put", pointer=cid, size=len(data))
        return str(cid)

    def get(self, pointer: str) -> bytes:
        if not pointer or "/" in pointer:
            raise StorageError(f"invalid CID: {pointer!r}", pointer=pointer)
        url = f"{self.gateway}{pointer}"
        try:
            with urllib.request.urlopen(url, timeout=self.timeout_seconds) as resp:
                return resp.read()
        except (urllib.error.URLError, OSError) as e:
            raise StorageError(f"failed to fetch {pointer} from gateway: {e}", pointer=pointer) from e


__all__ = [
    "ContentStore",
    "MemoryContentStore",
    "FileContentStore",
    "PinataContentStore",
    "normalize_digest",
]
