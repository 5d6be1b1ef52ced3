"""REPLICATOR Restoration chain.

Chain (fixed order, each stage gated by a ``ProcessSettings`` flag):
  ① Denoise (STFT spectral gate, noise profile from the quietest frames)
  ② Background removal (median spectral subtraction of the stationary bed)
  ③ De-clip (cubic-spline reconstruction of flat-topped runs)
  ④ Stereo enhance (M/S widening, bass kept mono below 120Hz)
  ⑤ Normalize (peak to ceiling; runs last so it sees the final peak)
"""

from __future__ import annotations

from collections.abc import Callable

import numpy as np
import structlog
from numpy.typing import NDArray
from scipy import signal
from scipy.interpolate import CubicSpline
from scipy.ndimage import uniform_filter1d

from replicator.engine.audio import AudioArray, AudioBuffer, ProgressFn, sanitize
from replicator.jobs.models import ProcessSettings

logger = structlog.get_logger()

MIN_STFT = 64
BASS_MONO_HZ = 120.0
MAX_NORMALIZE_GAIN_DB = 24.0


# ── Utilities ────────────────────────────────────────────


def _stft_size(n: int, preferred: int = 2048) -> int:
    size = preferred
    while size > n and size > MIN_STFT:
        size //= 2
    return size


def _spectral_apply(
    buffer: AudioBuffer, mask_fn: Callable[[AudioArray], AudioArray]
) -> AudioBuffer:
    """Run ``mask_fn(magnitude) -> gain`` over every channel's STFT."""
    n = buffer.frames
    nperseg = _stft_size(n)
    if n < nperseg:
        return buffer
    out = np.empty_like(buffer.samples)
    for ch in range(buffer.channels):
        x = buffer.samples[:, ch]
        _, _, spec = signal.stft(x, fs=buffer.sample_rate, nperseg=nperseg)
        gain = mask_fn(np.abs(spec))
        _, y = signal.istft(spec * gain, fs=buffer.sample_rate, nperseg=nperseg)
        if len(y) < n:
            y = np.pad(y, (0, n - len(y)))
        out[:, ch] = y[:n]
    return buffer.with_samples(sanitize(out))


def _to_ms(data: AudioArray) -> tuple[AudioArray, AudioArray]:
    return (data[:, 0] + data[:, 1]) * 0.5, (data[:, 0] - data[:, 1]) * 0.5


def _from_ms(mid: AudioArray, side: AudioArray) -> AudioArray:
    return np.column_stack([mid + side, mid - side])


# ── Stages ───────────────────────────────────────────────


def denoise(
    buffer: AudioBuffer, reduction_db: float = 12.0, threshold: float = 1.5
) -> AudioBuffer:
    """① Spectral gate against a noise profile from the quietest 10% of frames.

    Tonal peaks in the profile are capped at its median so sustained tones
    are not mistaken for noise.
    """
    floor = 10 ** (-abs(reduction_db) / 20)

    def _mask(mag: AudioArray) -> AudioArray:
        energy = np.sum(mag**2, axis=0)
        k = max(1, int(len(energy) * 0.1))
        quiet = np.argsort(energy)[:k]
        profile = np.mean(mag[:, quiet], axis=1)
        profile = np.minimum(profile, np.median(profile))
        gate = np.where(mag > profile[:, np.newaxis] * threshold, 1.0, floor)
        return uniform_filter1d(gate, size=3, axis=1)

    return _spectral_apply(buffer, _mask)


def remove_background(buffer: AudioBuffer, strength: float = 1.0, floor: float = 0.1) -> AudioBuffer:
    """② Subtract the per-bin median magnitude (hum, room tone, hiss bed)."""

    def _mask(mag: AudioArray) -> AudioArray:
        bed = np.median(mag, axis=1, keepdims=True)
        cleaned = np.maximum(mag - bed * strength, mag * floor)
        return cleaned / np.maximum(mag, 1e-12)

    return _spectral_apply(buffer, _mask)


def _runs(mask: NDArray[np.bool_]) -> list[tuple[int, int]]:
    padded = np.concatenate([[False], mask, [False]])
    edges = np.flatnonzero(np.diff(padded.astype(np.int8)))
    return list(zip(edges[::2].tolist(), edges[1::2].tolist()))


def declip(
    buffer: AudioBuffer, threshold: float = 0.999, min_run: int = 3, context: int = 8
) -> AudioBuffer:
    """③ Rebuild runs of samples stuck at the peak with a cubic spline."""
    out = buffer.samples.copy()
    peak = float(np.max(np.abs(out)))
    if peak < 1e-6:
        return buffer
    limit = peak * threshold
    repaired = 0
    for ch in range(buffer.channels):
        x = out[:, ch]
        for start, end in _runs(np.abs(x) >= limit):
            if end - start < min_run:
                continue
            left = np.arange(max(0, start - context), start)
            right = np.arange(end, min(len(x), end + context))
            if len(left) < 2 or len(right) < 2:
                continue
            known = np.concatenate([left, right])
            spline = CubicSpline(known, x[known])
            x[start:end] = spline(np.arange(start, end))
            repaired += 1
    if repaired:
        logger.debug("declip_repaired", runs=repaired)
    return buffer.with_samples(sanitize(out))


def enhance_stereo(buffer: AudioBuffer, width: float = 1.3) -> AudioBuffer:
    """④ M/S width. Side content below 120Hz is removed (bass mono)."""
    if buffer.channels != 2:
        return buffer
    mid, side = _to_ms(buffer.samples)
    sos = signal.butter(4, BASS_MONO_HZ, btype="low", fs=buffer.sample_rate, output="sos")
    if buffer.frames > 64:
        side = side - signal.sosfiltfilt(sos, side)
    return buffer.with_samples(sanitize(_from_ms(mid, side * width)))


def normalize(buffer: AudioBuffer, ceiling_db: float = -1.0) -> AudioBuffer:
    """⑤ Peak normalize to ``ceiling_db``; gain is capped so silence stays silent."""
    peak = float(np.max(np.abs(buffer.samples)))
    if peak < 1e-9:
        return buffer
    gain = min(10 ** (ceiling_db / 20) / peak, 10 ** (MAX_NORMALIZE_GAIN_DB / 20))
    return buffer.with_samples(buffer.samples * gain)


# ── Chain ────────────────────────────────────────────────


def process(
    buffer: AudioBuffer,
    settings: ProcessSettings,
    progress: ProgressFn | None = None,
) -> AudioBuffer:
    """Run the enabled stages in chain order."""
    stages: list[tuple[str, Callable[[AudioBuffer], AudioBuffer]]] = []
    if settings.denoise:
        stages.append(("denoise", lambda b: denoise(b, settings.noise_reduction_db)))
    if settings.remove_background:
        stages.append(("remove_background", remove_background))
    if settings.remove_clipping:
        stages.append(("declip", declip))
    if settings.enhance_stereo:
        stages.append(("enhance_stereo", lambda b: enhance_stereo(b, settings.stereo_width)))
    if settings.normalize:
        stages.append(("normalize", lambda b: normalize(b, settings.normalize_ceiling_db)))

    logger.info("restoration_start", stages=[name for name, _ in stages], duration=buffer.duration)
    for index, (_, stage) in enumerate(stages):
        buffer = stage(buffer)
        if progress:
            progress((index + 1) / len(stages))
    return buffer
