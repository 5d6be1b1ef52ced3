"""Region inpainting by bidirectional linear prediction.

Each flagged region is regenerated from the audio on both sides of it:
an LPC model fitted on the preceding context is run forward, one fitted on
the following context is run backward, and the two are crossfaded.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

import numpy as np
import structlog
from scipy import signal
from scipy.linalg import solve_toeplitz

from replicator.engine.audio import AudioArray, AudioBuffer, ProgressFn, sanitize
from replicator.errors import InvalidRegionError
from replicator.jobs.models import Region

logger = structlog.get_logger()

LPC_ORDER = 32
MAX_CONTEXT = 8192
MIN_CONTEXT = 256


def validate_regions(regions: Sequence[Region], duration: float = math.inf) -> list[Region]:
    """Check bounds and overlap; returns the regions sorted by start.

    Regions that merely touch (``a.end == b.start``) are allowed.
    """
    if not regions:
        raise InvalidRegionError("At least one region is required")
    for region in regions:
        if not (math.isfinite(region.start) and math.isfinite(region.end)):
            raise InvalidRegionError("Region bounds must be finite", region=region.to_dict())
        if region.start < 0:
            raise InvalidRegionError("Region starts before 0", region=region.to_dict())
        if region.end <= region.start:
            raise InvalidRegionError("Region end must be after start", region=region.to_dict())
        if region.end > duration:
            raise InvalidRegionError(
                f"Region ends after the audio ({duration:.3f}s)",
                region=region.to_dict(),
                duration=duration,
            )
    ordered = sorted(regions, key=lambda r: r.start)
    for prev, cur in zip(ordered, ordered[1:]):
        if cur.start < prev.end:
            raise InvalidRegionError(
                "Regions overlap", regions=[prev.to_dict(), cur.to_dict()]
            )
    return ordered


def _lpc(context: AudioArray, order: int) -> AudioArray | None:
    """Autocorrelation-method predictor coefficients, or None for silence."""
    n = len(context)
    r = np.correlate(context, context, mode="full")[n - 1 : n + order]
    if r[0] <= 1e-12:
        return None
    r = r.copy()
    r[0] *= 1.0 + 1e-4  # white-noise correction keeps the system well conditioned
    return solve_toeplitz(r[:order], r[1 : order + 1])


def _extrapolate(context: AudioArray, length: int) -> AudioArray:
    """Continue ``context`` for ``length`` samples with its own LPC model."""
    order = min(LPC_ORDER, len(context) // 4)
    if order < 2:
        return np.zeros(length)
    coeffs = _lpc(context, order)
    if coeffs is None:
        return np.zeros(length)
    denom = np.concatenate([[1.0], -coeffs])
    zi = signal.lfiltic([1.0], denom, y=context[::-1][:order])
    out, _ = signal.lfilter([1.0], denom, np.zeros(length), zi=zi)
    limit = float(np.max(np.abs(context)))
    return np.clip(sanitize(out), -limit, limit)


def _fill_gap(x: AudioArray, start: int, end: int) -> AudioArray:
    gap = end - start
    span = min(max(gap * 2, MIN_CONTEXT), MAX_CONTEXT)
    before = x[max(0, start - span) : start]
    after = x[end : end + span]

    forward = _extrapolate(before, gap) if len(before) else None
    backward = _extrapolate(after[::-1], gap)[::-1] if len(after) else None
    if forward is None and backward is None:
        return np.zeros(gap)
    if backward is None:
        return forward
    if forward is None:
        return backward
    fade = 0.5 * (1 + np.cos(np.linspace(0, np.pi, gap)))
    return forward * fade + backward * (1 - fade)


def inpaint(
    buffer: AudioBuffer,
    regions: Sequence[Region],
    progress: ProgressFn | None = None,
) -> AudioBuffer:
    """Regenerate every region from its surrounding context."""
    ordered = validate_regions(regions, buffer.duration)
    out = buffer.samples.copy()
    sr = buffer.sample_rate
    for index, region in enumerate(ordered):
        start = int(round(region.start * sr))
        end = min(int(round(region.end * sr)), buffer.frames)
        if end > start:
            for ch in range(buffer.channels):
                out[start:end, ch] = _fill_gap(out[:, ch], start, end)
        if progress:
            progress((index + 1) / len(ordered))
    logger.info("inpaint_complete", regions=len(ordered), duration=buffer.duration)
    return buffer.with_samples(out)
