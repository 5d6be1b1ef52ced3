"""Audio buffer decode/encode helpers."""

from __future__ import annotations

import io
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np
import soundfile as sf
from numpy.typing import NDArray

from replicator.errors import ProcessingError

AudioArray = NDArray[np.float64]

# Engine progress checkpoint: receives a 0-1 fraction, may raise to abort.
ProgressFn = Callable[[float], None]


@dataclass
class AudioBuffer:
    """Decoded audio, always shaped (frames, channels)."""

    samples: AudioArray
    sample_rate: int

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    def with_samples(self, samples: AudioArray) -> AudioBuffer:
        return AudioBuffer(samples=samples, sample_rate=self.sample_rate)


def decode(data: bytes) -> AudioBuffer:
    """Decode any libsndfile-readable container."""
    if not data:
        raise ProcessingError("Input audio is empty")
    try:
        samples, sr = sf.read(io.BytesIO(data), dtype="float64", always_2d=True)
    except (RuntimeError, TypeError, ValueError) as e:
        raise ProcessingError(f"Could not decode input audio: {e}") from e
    if samples.shape[0] == 0:
        raise ProcessingError("Input audio has no frames")
    return AudioBuffer(samples=samples, sample_rate=int(sr))


def sanitize(samples: AudioArray) -> AudioArray:
    """Replace NaN/Inf that a DSP stage may have produced."""
    return np.nan_to_num(samples, nan=0.0, posinf=1.0, neginf=-1.0)


def encode(
    buffer: AudioBuffer, container: str = "WAV", subtype: str = "PCM_24"
) -> bytes:
    """Encode to bytes. Integer subtypes are clipped to full scale."""
    data = sanitize(buffer.samples)
    if subtype.startswith("PCM"):
        data = np.clip(data, -1.0, 1.0)
    out = io.BytesIO()
    try:
        sf.write(out, data, buffer.sample_rate, format=container, subtype=subtype)
    except (RuntimeError, TypeError, ValueError) as e:
        raise ProcessingError(f"Could not encode {container}/{subtype}: {e}") from e
    return out.getvalue()


def peak_db(samples: AudioArray) -> float:
    return float(20 * np.log10(max(float(np.max(np.abs(samples))), 1e-10)))
