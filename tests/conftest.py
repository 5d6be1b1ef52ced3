"""Shared fixtures — synthetic audio and an isolated in-memory core."""

from __future__ import annotations

import io
import time
from collections.abc import Callable, Iterator

import numpy as np
import pytest
import soundfile as sf

from replicator.config import Settings
from replicator.core import StudioCore, build_core
from replicator.storage.artifacts import MemoryArtifactStore


# ── Helpers ──────────────────────────────────────────────


def make_wav(
    duration_s: float = 0.5,
    sr: int = 22050,
    channels: int = 2,
    freq: float = 440.0,
    amplitude: float = 0.5,
    noise: float = 0.01,
    seed: int = 0,
) -> bytes:
    """Sine plus a little white noise, encoded as 16-bit WAV."""
    rng = np.random.default_rng(seed)
    t = np.arange(int(sr * duration_s)) / sr
    tone = amplitude * np.sin(2 * np.pi * freq * t)
    data = np.column_stack([tone + noise * rng.standard_normal(len(t)) for _ in range(channels)])
    buf = io.BytesIO()
    sf.write(buf, data, sr, format="WAV", subtype="PCM_16")
    return buf.getvalue()


def wait_until(predicate: Callable[[], bool], timeout: float = 10.0, interval: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


# ── Fixtures ─────────────────────────────────────────────


@pytest.fixture
def wav_bytes() -> bytes:
    return make_wav()


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        data_dir=tmp_path,
        min_instances=1,
        max_instances=4,
        initial_instances=2,
        job_timeout_seconds=30.0,
        heartbeat_interval_seconds=0.1,
        poll_interval_seconds=0.02,
        store_backoff_seconds=0.0,
        store_backoff_max_seconds=0.0,
        metrics_interval_seconds=3600.0,
    )


@pytest.fixture
def memory_store() -> MemoryArtifactStore:
    return MemoryArtifactStore()


@pytest.fixture
def core(test_settings: Settings, memory_store: MemoryArtifactStore) -> Iterator[StudioCore]:
    """A fully wired core that is NOT started; tests start it when needed."""
    studio = build_core(test_settings, store=memory_store, persistent=False)
    yield studio
    studio.stop()
