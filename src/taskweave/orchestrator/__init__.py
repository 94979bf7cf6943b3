"""In-process task orchestration with resilience policies.

Why not Celery / Dramatiq / Arq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not moving messages between processes. It is what
happens around every single executor call: a task-wide retry budget shared
by parallel branches, per-dependency circuit breakers and rate limiters that
all workers update atomically, deadlines that abandon non-cooperative
executors, fallback chains, and fan-in rules that keep one entry per branch
even when branches fail. Those live inside the worker regardless of broker.

A broker would add an operational dependency for what is an embeddable,
single-process engine. The pull loop (queue -> worker -> resilience wrapper
-> topology) stays small, and only dead letters are persisted (SQLite via
SQLModel) so exhausted work can be inspected and replayed.
"""
