"""Format export — deterministic transcoding to delivery containers."""

from __future__ import annotations

from dataclasses import dataclass
from math import gcd

import numpy as np
from scipy import signal

from replicator.engine.audio import AudioBuffer, encode
from replicator.errors import UnsupportedFormatError


@dataclass(frozen=True)
class ExportFormat:
    id: str
    name: str
    container: str
    subtype: str
    extension: str
    content_type: str
    sample_rate: int | None = None  # None keeps the source rate


EXPORT_FORMATS: dict[str, ExportFormat] = {
    "wav": ExportFormat("wav", "WAV 16-bit", "WAV", "PCM_16", "wav", "audio/wav"),
    "wav24": ExportFormat("wav24", "WAV 24-bit", "WAV", "PCM_24", "wav", "audio/wav"),
    "wav-float": ExportFormat("wav-float", "WAV 32-bit float", "WAV", "FLOAT", "wav", "audio/wav"),
    "flac": ExportFormat("flac", "FLAC 16-bit", "FLAC", "PCM_16", "flac", "audio/flac"),
    "flac-hires": ExportFormat(
        "flac-hires", "FLAC 24-bit / 96kHz", "FLAC", "PCM_24", "flac", "audio/flac", 96000
    ),
    "aiff": ExportFormat("aiff", "AIFF 16-bit", "AIFF", "PCM_16", "aiff", "audio/aiff"),
}


def resolve_format(name: str) -> ExportFormat:
    fmt = EXPORT_FORMATS.get(name.lower())
    if fmt is None:
        raise UnsupportedFormatError(
            f"Unsupported export format: {name!r}",
            format=name,
            supported=sorted(EXPORT_FORMATS),
        )
    return fmt


def _resample(buffer: AudioBuffer, target: int) -> AudioBuffer:
    if target == buffer.sample_rate:
        return buffer
    g = gcd(target, buffer.sample_rate)
    up, down = target // g, buffer.sample_rate // g
    samples = signal.resample_poly(buffer.samples, up, down, axis=0)
    return AudioBuffer(samples=np.asarray(samples, dtype=np.float64), sample_rate=target)


def export(buffer: AudioBuffer, name: str) -> bytes:
    """Transcode ``buffer``. No dither, so equal input gives equal bytes."""
    fmt = resolve_format(name)
    if fmt.sample_rate:
        buffer = _resample(buffer, fmt.sample_rate)
    return encode(buffer, container=fmt.container, subtype=fmt.subtype)
