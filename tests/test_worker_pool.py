"""Tests for the Worker Pool — end-to-end runs, timeouts, cancellation, scaling."""

from __future__ import annotations

import io
import threading
import time
from datetime import timedelta
from typing import Any

import pytest
import soundfile as sf

from conftest import make_wav, wait_until
from replicator.engine.pipeline import EngineResult, ProcessingEngine
from replicator.jobs.dispatcher import QueueDispatcher
from replicator.jobs.generations import GenerationRegistry
from replicator.jobs.ledger import JobLedger
from replicator.jobs.models import InputKind, InputRef, Job, JobState, Operation, ProcessSettings, utcnow
from replicator.jobs.transport import InMemoryTransport
from replicator.jobs.worker_pool import WorkerPool
from replicator.storage.artifacts import MemoryArtifactStore, RetryingStore


class SlowEngine:
    """Engine stand-in that sleeps for ``delay`` seconds."""

    def __init__(self, delay: float) -> None:
        self.delay = delay
        self.calls = 0
        self.finished = 0

    def run(self, operation, data, settings, progress=None) -> EngineResult:
        self.calls += 1
        time.sleep(self.delay)
        self.finished += 1
        if progress:
            progress(1.0)
        return EngineResult(data=b"late-result", content_type="audio/wav")


class CheckpointEngine:
    """Reports progress in a loop until released; honours cancellation."""

    def __init__(self) -> None:
        self.started = threading.Event()
        self.release = threading.Event()

    def run(self, operation, data, settings, progress=None) -> EngineResult:
        self.started.set()
        while not self.release.is_set():
            if progress:
                progress(0.25)
            time.sleep(0.01)
        return EngineResult(data=b"done", content_type="audio/wav")


class FlakyLedger(JobLedger):
    """Ledger whose persistence step fails ``failures`` more times."""

    def __init__(self) -> None:
        super().__init__()
        self.failures = 0

    def _on_change(self) -> None:
        if self.failures:
            self.failures -= 1
            raise OSError("No space left on device")


def _build(
    engine: Any = None,
    duplicates: int = 0,
    ledger: JobLedger | None = None,
    **pool_kwargs: Any,
) -> dict[str, Any]:
    ledger = ledger if ledger is not None else JobLedger()
    transport = InMemoryTransport(duplicate_deliveries=duplicates)
    generations = GenerationRegistry()
    backend = MemoryArtifactStore()
    store = RetryingStore(backend, max_retries=3, base_delay=0.0, max_delay=0.0)
    options = {"initial_instances": 1, "poll_interval": 0.02, "heartbeat_interval": 0.05}
    options.update(pool_kwargs)
    pool = WorkerPool(
        ledger, transport, engine or ProcessingEngine(), store, generations, **options
    )
    return {
        "ledger": ledger,
        "transport": transport,
        "generations": generations,
        "backend": backend,
        "store": store,
        "pool": pool,
        "dispatcher": QueueDispatcher(ledger, transport, generations),
    }


def _upload(parts: dict[str, Any], data: bytes | None = None) -> dict[str, str]:
    url = parts["backend"].put(data if data is not None else make_wav(), "audio/wav")
    return {"kind": "upload", "ref": url}


def _terminal(ledger: JobLedger, job_id: str) -> bool:
    return ledger.get(job_id).is_terminal


# ── End to end ───────────────────────────────────────────


def test_process_job_end_to_end() -> None:
    parts = _build()
    ledger, dispatcher = parts["ledger"], parts["dispatcher"]
    job_id = dispatcher.submit("p1", "process", _upload(parts), {"denoise": True, "normalize": True})

    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job_id))

    job = ledger.get(job_id)
    assert job.state is JobState.COMPLETED, job.error
    assert job.started_at <= job.finished_at
    report = dispatcher.get_progress("p1")
    assert (report.state, report.percent) == (JobState.COMPLETED, 100.0)

    generations = parts["generations"].list_for_project("p1")
    assert len(generations) == 1
    assert generations[0].output == job.output
    assert generations[0].job_id == job_id

    audio, sr = sf.read(io.BytesIO(parts["backend"].get(job.output.url)))
    assert sr == 22050
    assert audio.shape[1] == 2


def test_generation_chain_names() -> None:
    parts = _build()
    ledger, dispatcher, registry = parts["ledger"], parts["dispatcher"], parts["generations"]
    with parts["pool"]:
        first = dispatcher.submit("p1", "process", _upload(parts), {"normalize": True})
        assert wait_until(lambda: _terminal(ledger, first))
        base = registry.list_for_project("p1")[0]

        second = dispatcher.submit(
            "p1", "inpaint", {"kind": "generation", "ref": base.id},
            {"regions": [{"start": 0.1, "end": 0.15}]},
        )
        assert wait_until(lambda: _terminal(ledger, second))
        third = dispatcher.submit("p1", "export", {"kind": "generation", "ref": base.id}, {"format": "flac"})
        assert wait_until(lambda: _terminal(ledger, third))

    names = [g.name for g in registry.list_for_project("p1")]
    assert names[-1] == "Processed 1"
    assert "Processed 1 (Inpainted)" in names
    assert "Processed 1 (Export FLAC)" in names
    assert ledger.get(third).output.content_type == "audio/flac"


def test_duplicate_signals_are_noops() -> None:
    parts = _build(duplicates=4, initial_instances=3)
    ledger = parts["ledger"]
    job_id = parts["dispatcher"].submit("p1", "process", _upload(parts), {"normalize": True})

    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job_id))
        assert wait_until(lambda: parts["transport"].pending() == 0)
        assert wait_until(lambda: parts["transport"].in_flight() == 0)

    assert ledger.get(job_id).state is JobState.COMPLETED
    assert len(parts["generations"].list_for_project("p1")) == 1


def test_idle_slots_poll_without_signal() -> None:
    parts = _build()
    ledger = parts["ledger"]
    url = parts["backend"].put(make_wav(), "audio/wav")
    # Written straight to the ledger: no transport message exists
    job = ledger.create(
        Job(
            project_id="p1",
            operation=Operation.PROCESS,
            input=InputRef(InputKind.UPLOAD, url, url),
            settings=ProcessSettings(normalize=True),
        )
    )
    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job.id))
    assert ledger.get(job.id).state is JobState.COMPLETED


# ── Failures ─────────────────────────────────────────────


def test_malformed_audio_fails_with_processing_error() -> None:
    parts = _build()
    ledger = parts["ledger"]
    job_id = parts["dispatcher"].submit("p1", "process", _upload(parts, b"not audio at all"), {})
    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job_id))
    job = ledger.get(job_id)
    assert job.state is JobState.FAILED
    assert job.error.code == "processing_error"
    assert parts["generations"].list_for_project("p1") == []


def test_region_past_end_fails_job() -> None:
    parts = _build()
    ledger = parts["ledger"]
    job_id = parts["dispatcher"].submit(
        "p1", "inpaint", _upload(parts), {"regions": [{"start": 0.0, "end": 1.5}]}
    )
    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job_id))
    assert ledger.get(job_id).error.code == "invalid_region"


def test_missing_input_artifact_fails_job() -> None:
    parts = _build()
    ledger = parts["ledger"]
    job_id = parts["dispatcher"].submit(
        "p1", "process", {"kind": "upload", "ref": "artifact://gone.wav"}, {}
    )
    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job_id))
    assert ledger.get(job_id).error.code == "not_found"


def test_transient_store_errors_are_retried() -> None:
    parts = _build()
    ledger = parts["ledger"]
    job_id = parts["dispatcher"].submit("p1", "process", _upload(parts), {"normalize": True})
    parts["backend"].inject_failures(2)
    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job_id))
    assert ledger.get(job_id).state is JobState.COMPLETED


def test_store_exhaustion_fails_job() -> None:
    parts = _build()
    ledger = parts["ledger"]
    job_id = parts["dispatcher"].submit("p1", "process", _upload(parts), {"normalize": True})
    parts["backend"].inject_failures(1000)
    with parts["pool"]:
        assert wait_until(lambda: _terminal(ledger, job_id))
    job = ledger.get(job_id)
    assert job.state is JobState.FAILED
    assert job.error.code == "artifact_store_error"


def test_timeout_fails_job_and_frees_slot() -> None:
    engine = SlowEngine(delay=1.0)
    parts = _build(engine=engine, job_timeout=0.2)
    ledger, dispatcher = parts["ledger"], parts["dispatcher"]
    slow = dispatcher.submit("p1", "process", _upload(parts), {})

    with parts["pool"]:
        started = time.monotonic()
        assert wait_until(lambda: _terminal(ledger, slow), timeout=5)
        assert time.monotonic() - started < 0.9
        job = ledger.get(slow)
        assert job.state is JobState.FAILED
        assert job.error.code == "timeout"

        # Single slot: the next job only runs if the slot was freed
        engine.delay = 0.0
        fast = dispatcher.submit("p2", "process", _upload(parts), {})
        assert wait_until(lambda: _terminal(ledger, fast))
        assert ledger.get(fast).state is JobState.COMPLETED

        # The abandoned engine call finishes later; its result is discarded
        assert wait_until(lambda: engine.finished == engine.calls == 2, timeout=5)
        time.sleep(0.05)
        assert ledger.get(slow).error.code == "timeout"
    assert len(parts["generations"].list_for_project("p1")) == 0


def test_stop_request_cancels_running_job() -> None:
    engine = CheckpointEngine()
    parts = _build(engine=engine)
    ledger, dispatcher = parts["ledger"], parts["dispatcher"]
    job_id = dispatcher.submit("p1", "process", _upload(parts), {})

    with parts["pool"]:
        assert engine.started.wait(5)
        assert wait_until(lambda: ledger.get(job_id).progress == 0.25)
        dispatcher.request_stop(job_id)
        assert wait_until(lambda: _terminal(ledger, job_id))
        engine.release.set()

    job = ledger.get(job_id)
    assert job.state is JobState.FAILED
    assert job.error.code == "cancelled"


# ── Capacity & liveness ──────────────────────────────────


def test_capacity_is_clamped() -> None:
    parts = _build(min_instances=1, max_instances=3, initial_instances=2)
    pool = parts["pool"]
    assert pool.capacity == 2
    assert pool.set_capacity(10) == 3
    assert pool.set_capacity(0) == 1
    assert pool.scale(+1) == 2
    assert pool.scale(-5) == 1


def test_scaling_spawns_and_retires_slots() -> None:
    parts = _build(min_instances=1, max_instances=4, initial_instances=1)
    pool = parts["pool"]
    with pool:
        assert wait_until(lambda: pool.occupancy()["slots"] == 1)
        pool.scale(+1)
        pool.scale(+1)
        assert wait_until(lambda: len(pool.slots()) == 3)
        occupancy = pool.occupancy()
        assert occupancy == {"capacity": 3, "slots": 3, "active": 0, "idle": 3, "min": 1, "max": 4}

        pool.set_capacity(1)
        assert wait_until(lambda: len(pool.slots()) == 1)


def test_stale_slot_detection() -> None:
    parts = _build(initial_instances=2, heartbeat_timeout=60.0)
    pool = parts["pool"]
    with pool:
        assert wait_until(lambda: len(pool.slots()) == 2)
        assert pool.stale_slots() == []
        future = utcnow() + timedelta(seconds=120)
        assert len(pool.stale_slots(now=future)) == 2


def test_job_on_dead_slot_is_recovered_by_requeue() -> None:
    parts = _build()
    ledger, dispatcher, pool = parts["ledger"], parts["dispatcher"], parts["pool"]
    job_id = dispatcher.submit("p1", "process", _upload(parts), {"normalize": True})
    ledger.claim(job_id, "slot-crashed")

    with pool:
        time.sleep(0.1)
        assert ledger.get(job_id).state is JobState.RUNNING
        assert [j.id for j in pool.stale_jobs()] == [job_id]

        dispatcher.requeue_stale(job_id)
        assert wait_until(lambda: _terminal(ledger, job_id))

    assert ledger.get(job_id).state is JobState.COMPLETED
    assert pool.stale_jobs() == []


def test_invalid_capacity_bounds() -> None:
    with pytest.raises(ValueError):
        _build(min_instances=5, max_instances=2)


def test_slot_survives_ledger_write_error() -> None:
    ledger = FlakyLedger()
    parts = _build(ledger=ledger)
    dispatcher, pool = parts["dispatcher"], parts["pool"]
    first = dispatcher.submit("p1", "process", _upload(parts), {"normalize": True})
    # The claim's write fails after the job is already marked running
    ledger.failures = 1

    with pool:
        assert wait_until(lambda: _terminal(ledger, first))
        second = dispatcher.submit("p2", "process", _upload(parts), {"normalize": True})
        assert wait_until(lambda: _terminal(ledger, second))
        assert pool.occupancy()["slots"] == 1

    failed = ledger.get(first)
    assert failed.state is JobState.FAILED
    assert failed.error.code == "internal_error"
    assert "No space left" in failed.error.message
    assert ledger.get(second).state is JobState.COMPLETED


def test_restart_after_timed_out_stop_keeps_capacity() -> None:
    engine = SlowEngine(delay=0.5)
    parts = _build(engine=engine)
    ledger, pool = parts["ledger"], parts["pool"]
    job_id = parts["dispatcher"].submit("p1", "process", _upload(parts), {})

    pool.start()
    assert wait_until(lambda: engine.calls == 1)
    pool.stop(timeout=0.01)
    pool.start()
    try:
        busy = [s for s in pool.slots() if s.job_id == job_id]
        assert len(busy) == 1 and busy[0].retiring
        assert pool.occupancy()["slots"] == 1

        # The leftover slot finishes its job and then leaves
        assert wait_until(lambda: _terminal(ledger, job_id))
        assert wait_until(lambda: len(pool.slots()) == 1)
        assert not pool.slots()[0].retiring
    finally:
        pool.stop()
    assert ledger.get(job_id).state is JobState.COMPLETED
