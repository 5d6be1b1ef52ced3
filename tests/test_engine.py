"""Tests for the Processing Engine — restoration, inpainting, export, dispatch."""

from __future__ import annotations

import io

import numpy as np
import pytest
import soundfile as sf

from conftest import make_wav
from replicator.engine.audio import AudioBuffer, decode, encode, peak_db
from replicator.engine.export import EXPORT_FORMATS, export, resolve_format
from replicator.engine.inpaint import inpaint, validate_regions
from replicator.engine.pipeline import ProcessingEngine
from replicator.engine.restoration import declip, denoise, enhance_stereo, normalize, process
from replicator.errors import (
    InvalidInputError,
    InvalidRegionError,
    ProcessingError,
    UnsupportedFormatError,
)
from replicator.jobs.models import (
    ExportSettings,
    InpaintSettings,
    Operation,
    ProcessSettings,
    Region,
)

SR = 22050


def _sine(duration_s: float = 0.5, freq: float = 440.0, amp: float = 0.5, channels: int = 1) -> AudioBuffer:
    t = np.arange(int(SR * duration_s)) / SR
    tone = amp * np.sin(2 * np.pi * freq * t)
    return AudioBuffer(samples=np.column_stack([tone] * channels), sample_rate=SR)


def _rms(x: np.ndarray) -> float:
    return float(np.sqrt(np.mean(x**2)))


# ── Decode / encode ──────────────────────────────────────


def test_decode_rejects_garbage() -> None:
    with pytest.raises(ProcessingError):
        decode(b"definitely not a wav file")
    with pytest.raises(ProcessingError):
        decode(b"")


def test_decode_shape() -> None:
    buffer = decode(make_wav(duration_s=0.25, channels=1))
    assert buffer.channels == 1
    assert buffer.sample_rate == 22050
    assert abs(buffer.duration - 0.25) < 1e-3


def test_encode_clips_integer_formats() -> None:
    loud = AudioBuffer(samples=np.full((100, 1), 3.0), sample_rate=SR)
    audio, _ = sf.read(io.BytesIO(encode(loud, "WAV", "PCM_16")))
    assert np.max(np.abs(audio)) <= 1.0


# ── Restoration ──────────────────────────────────────────


def test_denoise_reduces_noise_floor() -> None:
    rng = np.random.default_rng(1)
    n = SR
    t = np.arange(n) / SR
    tone = 0.5 * np.sin(2 * np.pi * 440 * t)
    tone[: n // 2] = 0.0  # first half is noise only
    noisy = tone + 0.02 * rng.standard_normal(n)
    buffer = AudioBuffer(samples=noisy[:, np.newaxis], sample_rate=SR)

    cleaned = denoise(buffer, reduction_db=18)
    before = _rms(buffer.samples[: n // 4, 0])
    after = _rms(cleaned.samples[: n // 4, 0])
    assert after < before * 0.7
    assert cleaned.frames == buffer.frames


def test_declip_rebuilds_flat_tops() -> None:
    clean = _sine(amp=1.0)
    clipped = clean.with_samples(np.clip(clean.samples, -0.5, 0.5))
    repaired = declip(clipped)
    assert np.max(np.abs(repaired.samples)) > 0.55
    assert np.all(np.isfinite(repaired.samples))


def test_enhance_stereo_leaves_mono_alone() -> None:
    mono = _sine()
    assert enhance_stereo(mono, width=2.0) is mono


def test_enhance_stereo_widens_side() -> None:
    t = np.arange(SR // 2) / SR
    left = 0.4 * np.sin(2 * np.pi * 440 * t)
    right = 0.4 * np.sin(2 * np.pi * 440 * t + 0.8)
    buffer = AudioBuffer(samples=np.column_stack([left, right]), sample_rate=SR)
    wide = enhance_stereo(buffer, width=1.5)
    side_before = _rms(buffer.samples[:, 0] - buffer.samples[:, 1])
    side_after = _rms(wide.samples[:, 0] - wide.samples[:, 1])
    assert side_after > side_before * 1.2


def test_normalize_hits_ceiling_and_ignores_silence() -> None:
    loud = normalize(_sine(amp=0.1), ceiling_db=-1.0)
    assert abs(peak_db(loud.samples) - (-1.0)) < 0.01
    silent = AudioBuffer(samples=np.zeros((1000, 2)), sample_rate=SR)
    assert np.all(normalize(silent).samples == 0.0)


def test_process_reports_progress_per_stage() -> None:
    seen: list[float] = []
    settings = ProcessSettings(denoise=True, normalize=True, remove_clipping=True)
    out = process(decode(make_wav()), settings, seen.append)
    assert seen == pytest.approx([1 / 3, 2 / 3, 1.0])
    assert abs(peak_db(out.samples) - (-1.0)) < 0.01


def test_process_with_no_flags_is_identity() -> None:
    buffer = _sine(channels=2)
    out = process(buffer, ProcessSettings())
    assert np.array_equal(out.samples, buffer.samples)


# ── Inpainting ───────────────────────────────────────────


def test_region_end_before_start_rejected() -> None:
    with pytest.raises(InvalidRegionError):
        validate_regions([Region(5, 3)], duration=10)


def test_region_past_duration_rejected() -> None:
    duration = 2.0
    with pytest.raises(InvalidRegionError):
        validate_regions([Region(0, duration + 1)], duration=duration)


def test_overlapping_regions_rejected() -> None:
    with pytest.raises(InvalidRegionError):
        validate_regions([Region(0.0, 1.0), Region(0.5, 1.5)], duration=2.0)


def test_valid_regions_sorted_and_touching_allowed() -> None:
    ordered = validate_regions([Region(1.0, 1.5), Region(0.5, 1.0)], duration=2.0)
    assert ordered == [Region(0.5, 1.0), Region(1.0, 1.5)]


def test_empty_and_negative_regions_rejected() -> None:
    with pytest.raises(InvalidRegionError):
        validate_regions([])
    with pytest.raises(InvalidRegionError):
        validate_regions([Region(-0.1, 0.2)])


def test_inpaint_restores_dropout() -> None:
    original = _sine(duration_s=0.5, freq=330.0)
    damaged = original.samples.copy()
    start, end = int(0.2 * SR), int(0.21 * SR)
    damaged[start:end] = 0.0

    seen: list[float] = []
    repaired = inpaint(original.with_samples(damaged), [Region(0.2, 0.21)], seen.append)
    filled = repaired.samples[start:end, 0]
    truth = original.samples[start:end, 0]

    assert seen == [1.0]
    assert _rms(filled) > 0.3 * _rms(truth)
    assert np.corrcoef(filled, truth)[0, 1] > 0.9
    # Outside the region nothing changes
    assert np.array_equal(repaired.samples[:start], damaged[:start])
    assert np.array_equal(repaired.samples[end:], damaged[end:])


# ── Export ───────────────────────────────────────────────


def test_unknown_format_rejected() -> None:
    with pytest.raises(UnsupportedFormatError):
        resolve_format("wma")


@pytest.mark.parametrize("name", sorted(EXPORT_FORMATS))
def test_export_is_byte_identical(name: str) -> None:
    buffer = decode(make_wav(duration_s=0.2))
    first = export(buffer, name)
    second = export(decode(make_wav(duration_s=0.2)), name)
    assert first == second
    info = sf.info(io.BytesIO(first))
    assert info.format == EXPORT_FORMATS[name].container


def test_hires_export_resamples() -> None:
    out = export(decode(make_wav(duration_s=0.2)), "flac-hires")
    info = sf.info(io.BytesIO(out))
    assert info.samplerate == 96000
    assert info.subtype == "PCM_24"


# ── Engine dispatch ──────────────────────────────────────


def test_engine_dispatches_by_operation() -> None:
    engine = ProcessingEngine(cache_size=0)
    data = make_wav()
    processed = engine.run(Operation.PROCESS, data, ProcessSettings(normalize=True))
    assert processed.content_type == "audio/wav"
    exported = engine.run("export", data, ExportSettings(format="flac"))
    assert exported.content_type == "audio/flac"
    assert sf.info(io.BytesIO(exported.data)).format == "FLAC"


def test_engine_export_twice_is_identical_without_cache() -> None:
    data = make_wav()
    a = ProcessingEngine(cache_size=0).run("export", data, ExportSettings(format="aiff"))
    b = ProcessingEngine(cache_size=0).run("export", data, ExportSettings(format="aiff"))
    assert a.data == b.data


def test_engine_rejects_mismatched_settings() -> None:
    with pytest.raises(InvalidInputError):
        ProcessingEngine().run("inpaint", make_wav(), ProcessSettings())


def test_engine_validates_regions_against_duration() -> None:
    settings = InpaintSettings(regions=(Region(0.0, 1.5),))
    with pytest.raises(InvalidRegionError):
        ProcessingEngine().run("inpaint", make_wav(duration_s=0.5), settings)


def test_engine_cache_hits_and_evicts() -> None:
    engine = ProcessingEngine(cache_size=1)
    data = make_wav()
    settings = ProcessSettings(normalize=True)
    first = engine.run("process", data, settings)
    seen: list[float] = []
    assert engine.run("process", data, settings, seen.append) is first
    assert seen == [1.0]

    engine.run("process", data, ProcessSettings(normalize=True, normalize_ceiling_db=-3.0))
    assert engine.run("process", data, settings) is not first
