"""Artifact Store adapters.

Artifacts are addressed by the SHA-256 of their bytes, so ``put`` is
idempotent and safe to retry.
"""

from __future__ import annotations

import hashlib
import mimetypes
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import structlog

from replicator.errors import ArtifactStoreError, NotFoundError

logger = structlog.get_logger()

SCHEME = "artifact://"

_EXTENSIONS = {
    "audio/wav": ".wav",
    "audio/x-wav": ".wav",
    "audio/flac": ".flac",
    "audio/aiff": ".aiff",
    "audio/x-aiff": ".aiff",
    "audio/mpeg": ".mp3",
}

T = TypeVar("T")


def content_key(data: bytes, content_type: str) -> str:
    ext = _EXTENSIONS.get(content_type) or mimetypes.guess_extension(content_type) or ".bin"
    return hashlib.sha256(data).hexdigest() + ext


class ArtifactStore(ABC):
    """Durable blob storage for input and output audio."""

    @abstractmethod
    def put(self, data: bytes, content_type: str) -> str:
        """Store bytes. Returns the artifact URL."""
        ...

    @abstractmethod
    def get(self, url: str) -> bytes:
        """Fetch bytes. Raises ``NotFoundError`` for unknown URLs."""
        ...


class LocalArtifactStore(ArtifactStore):
    """Content-addressed files under a root directory."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, url: str) -> Path:
        if not url.startswith(SCHEME):
            raise NotFoundError(f"Unknown artifact URL: {url}", url=url)
        key = url[len(SCHEME):]
        if "/" in key or key.startswith("."):
            raise NotFoundError(f"Invalid artifact key: {key}", url=url)
        return self.root / key

    def put(self, data: bytes, content_type: str) -> str:
        key = content_key(data, content_type)
        path = self.root / key
        if not path.exists():
            tmp = path.parent / (path.name + ".part")
            tmp.write_bytes(data)
            tmp.replace(path)
        return SCHEME + key

    def get(self, url: str) -> bytes:
        path = self._path(url)
        if not path.exists():
            raise NotFoundError(f"Artifact not found: {url}", url=url)
        return path.read_bytes()


class MemoryArtifactStore(ArtifactStore):
    """Dict-backed store for tests and single-process development.

    ``inject_failures(n)`` makes the next ``n`` calls raise ``OSError``, which
    simulates a flaky backend.
    """

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self._failures = 0

    def inject_failures(self, count: int) -> None:
        with self._lock:
            self._failures = count

    def _maybe_fail(self) -> None:
        if self._failures > 0:
            self._failures -= 1
            raise OSError("injected artifact store failure")

    def put(self, data: bytes, content_type: str) -> str:
        url = SCHEME + content_key(data, content_type)
        with self._lock:
            self._maybe_fail()
            self._blobs[url] = bytes(data)
        return url

    def get(self, url: str) -> bytes:
        with self._lock:
            self._maybe_fail()
            data = self._blobs.get(url)
        if data is None:
            raise NotFoundError(f"Artifact not found: {url}", url=url)
        return data

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._blobs


class RetryingStore(ArtifactStore):
    """Wraps a store with bounded exponential backoff on transient errors.

    ``NotFoundError`` is not transient and propagates immediately; any other
    exception is retried, and exhaustion raises ``ArtifactStoreError``.
    """

    def __init__(
        self,
        store: ArtifactStore,
        max_retries: int = 4,
        base_delay: float = 0.25,
        max_delay: float = 8.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep

    def _retry(self, op: str, fn: Callable[[], T]) -> T:
        delay = self.base_delay
        for attempt in range(self.max_retries + 1):
            try:
                return fn()
            except NotFoundError:
                raise
            except Exception as e:
                if attempt == self.max_retries:
                    logger.error("artifact_store_exhausted", op=op, attempts=attempt + 1, error=str(e))
                    raise ArtifactStoreError(
                        f"Artifact store {op} failed after {attempt + 1} attempts: {e}",
                        op=op,
                    ) from e
                logger.warning("artifact_store_retry", op=op, attempt=attempt + 1, delay=delay, error=str(e))
                self._sleep(delay)
                delay = min(delay * 2, self.max_delay)
        raise AssertionError("unreachable")

    def put(self, data: bytes, content_type: str) -> str:
        return self._retry("put", lambda: self.store.put(data, content_type))

    def get(self, url: str) -> bytes:
        return self._retry("get", lambda: self.store.get(url))
