"""JOBS — ledger, dispatch and execution of processing jobs.

- models: Job / Generation / WorkerSlot and settings snapshots
- ledger: authoritative job state, exclusive claim
- dispatcher: submission, progress, cancellation
- worker_pool: elastic slots running the engine
- transport: at-least-once wake-up signals between the two

Submodules are imported directly; the engine depends on ``jobs.models``
while the dispatcher depends on the engine.
"""
