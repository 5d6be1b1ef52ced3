"""Processing Engine — dispatch over operation.

The engine does no I/O beyond its input bytes: (input, operation, settings)
fully determines the output, so results are cached by their hashes.
"""

from __future__ import annotations

import hashlib
import json
import threading
from collections import OrderedDict
from dataclasses import dataclass

import structlog

from replicator.engine import export as export_mod
from replicator.engine import inpaint as inpaint_mod
from replicator.engine import restoration
from replicator.engine.audio import ProgressFn, decode, encode
from replicator.errors import InvalidInputError
from replicator.jobs.models import (
    ExportSettings,
    InpaintSettings,
    JobSettings,
    Operation,
    ProcessSettings,
)

logger = structlog.get_logger()

PROCESSED_SUBTYPE = "PCM_24"


@dataclass(frozen=True)
class EngineResult:
    data: bytes
    content_type: str


def settings_digest(settings: JobSettings) -> str:
    raw = json.dumps(settings.to_dict(), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(raw.encode()).hexdigest()


_EXPECTED: dict[Operation, type] = {
    Operation.PROCESS: ProcessSettings,
    Operation.REPROCESS: ProcessSettings,
    Operation.INPAINT: InpaintSettings,
    Operation.EXPORT: ExportSettings,
}


class ProcessingEngine:
    """Synchronous, side-effect free audio engine with an LRU result cache."""

    def __init__(self, cache_size: int = 32) -> None:
        self.cache_size = cache_size
        self._cache: OrderedDict[tuple[str, str, str], EngineResult] = OrderedDict()
        self._lock = threading.Lock()

    def run(
        self,
        operation: Operation | str,
        data: bytes,
        settings: JobSettings,
        progress: ProgressFn | None = None,
    ) -> EngineResult:
        operation = Operation(operation)
        expected = _EXPECTED[operation]
        if not isinstance(settings, expected):
            raise InvalidInputError(
                f"{operation.value} expects {expected.__name__}, got {type(settings).__name__}"
            )

        key = (hashlib.sha256(data).hexdigest(), operation.value, settings_digest(settings))
        cached = self._cache_get(key)
        if cached is not None:
            logger.debug("engine_cache_hit", operation=operation.value)
            if progress:
                progress(1.0)
            return cached

        result = self._dispatch(operation, data, settings, progress)
        self._cache_put(key, result)
        return result

    def _dispatch(
        self,
        operation: Operation,
        data: bytes,
        settings: JobSettings,
        progress: ProgressFn | None,
    ) -> EngineResult:
        buffer = decode(data)
        if progress:
            progress(0.0)

        if isinstance(settings, ProcessSettings):
            out = restoration.process(buffer, settings, progress)
            return EngineResult(encode(out, "WAV", PROCESSED_SUBTYPE), "audio/wav")

        if isinstance(settings, InpaintSettings):
            out = inpaint_mod.inpaint(buffer, settings.regions, progress)
            return EngineResult(encode(out, "WAV", PROCESSED_SUBTYPE), "audio/wav")

        fmt = export_mod.resolve_format(settings.format)
        payload = export_mod.export(buffer, fmt.id)
        if progress:
            progress(1.0)
        return EngineResult(payload, fmt.content_type)

    # ── Cache ────────────────────────────────────────────

    def _cache_get(self, key: tuple[str, str, str]) -> EngineResult | None:
        if self.cache_size <= 0:
            return None
        with self._lock:
            result = self._cache.get(key)
            if result is not None:
                self._cache.move_to_end(key)
            return result

    def _cache_put(self, key: tuple[str, str, str], result: EngineResult) -> None:
        if self.cache_size <= 0:
            return
        with self._lock:
            self._cache[key] = result
            self._cache.move_to_end(key)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
