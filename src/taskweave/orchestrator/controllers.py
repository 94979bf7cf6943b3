"""Controllers for engine CLI commands."""

from __future__ import annotations

import json
from collections import Counter
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from taskweave.config import Settings
from taskweave.orchestrator.backend import EchoExecutor, FlakyExecutor, FunctionExecutor
from taskweave.orchestrator.engine import TaskEngine
from taskweave.orchestrator.errors import TaskNotFoundError
from taskweave.orchestrator.metrics import LoggingMetricsSink, MetricsRegistry, render_stats_lines
from taskweave.orchestrator.models import BranchResult, Task, TaskStatus
from taskweave.orchestrator.observability import ObservabilityHub
from taskweave.orchestrator.repository import DeadLetterRepository, DeadLetterView
from taskweave.orchestrator.resilience import Step
from taskweave.orchestrator.topology import (
    Aggregation,
    Decomposition,
    FanOutTopology,
    HierarchicalTopology,
    PipelineTopology,
    RouterTopology,
    SubTask,
    SwarmTopology,
    Synthesis,
    Topology,
)

DEMO_TOPOLOGIES = ("pipeline", "fan-out", "router", "hierarchical", "swarm")


@dataclass(slots=True)
class DemoCommand:
    """CLI input for a demo engine run."""

    db_path: Path | None
    topology: str
    tasks: int
    workers: int
    failure_rate: float
    seed: int
    max_retries: int = 2
    retry_base_seconds: float = 0.01
    wait_seconds: float = 60.0


@dataclass(slots=True)
class DemoResult:
    """Demo report to render in CLI."""

    lines: list[str]
    success: bool


@dataclass(slots=True)
class DeadLetterListCommand:
    """CLI input for dead-letter listing."""

    db_path: Path | None
    limit: int
    pending_only: bool


@dataclass(slots=True)
class DeadLetterInspectCommand:
    """CLI input for dead-letter inspection and mark-replayed."""

    db_path: Path | None
    dead_letter_id: str


class EngineCliController:
    """Coordinates demo runs and dead-letter inspection CLI operations."""

    def run_demo(self, command: DemoCommand) -> DemoResult:
        settings = Settings.from_env(db_path=command.db_path)
        settings = replace(
            settings,
            worker=replace(settings.worker, workers=command.workers),
            retry=replace(
                settings.retry,
                max_retries=command.max_retries,
                base_seconds=command.retry_base_seconds,
                max_seconds=max(settings.retry.max_seconds, command.retry_base_seconds),
            ),
            queue=replace(settings.queue, capacity=max(command.tasks, settings.queue.capacity or 0)),
        )
        topology = build_demo_topology(
            command.topology,
            failure_rate=command.failure_rate,
            seed=command.seed,
            max_iterations=settings.max_iterations,
        )

        with _repository(settings) as repository:
            engine = TaskEngine(
                default_topology=topology,
                settings=settings,
                dead_letters=repository,
                hub=ObservabilityHub(metrics=MetricsRegistry(sink=LoggingMetricsSink())),
            )
            try:
                task_ids = [
                    engine.submit(engine.new_task(f"item-{index}", task_type=command.topology))
                    for index in range(command.tasks)
                ]
                unfinished = [
                    task_id
                    for task_id in task_ids
                    if engine.result(task_id, timeout=command.wait_seconds) is None
                ]
                statuses = Counter(engine.status(task_id) for task_id in task_ids)
                snapshot = engine.metrics_snapshot()
            finally:
                engine.drain(timeout=settings.drain_timeout_seconds)

        lines = [
            (
                f"Demo run: topology={command.topology} tasks={command.tasks} "
                f"workers={command.workers} failure_rate={command.failure_rate} seed={command.seed}"
            ),
            "Status: "
            + " ".join(
                f"{status.value}={statuses.get(status, 0)}"
                for status in (
                    TaskStatus.SUCCEEDED,
                    TaskStatus.FAILED,
                    TaskStatus.DEAD_LETTERED,
                    TaskStatus.CANCELLED,
                )
            ),
            f"Dead letters stored: {statuses.get(TaskStatus.DEAD_LETTERED, 0)} (db={settings.db_path})",
            *render_stats_lines(snapshot=snapshot),
        ]
        if unfinished:
            lines.append(f"Unfinished tasks after {command.wait_seconds:g}s: {len(unfinished)}")
        return DemoResult(lines=lines, success=not unfinished)

    def list_dead_letters(self, command: DeadLetterListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            views = (
                repository.list_pending_replay(command.limit)
                if command.pending_only
                else repository.list_all(command.limit)
            )

        lines = [f"Dead letters: {len(views)}"]
        for view in views:
            replayed = view.replayed_at.isoformat() if view.replayed_at is not None else "-"
            lines.append(
                f"  {view.dead_letter_id} task_id={view.task_id} type={view.task_type} "
                f"kind={view.error_kind.value} stage={view.failed_stage or '-'} "
                f"attempts={len(view.attempts)} replayed_at={replayed}",
            )
        return lines

    def inspect_dead_letter(self, command: DeadLetterInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            try:
                view = repository.get(command.dead_letter_id)
            except TaskNotFoundError:
                return [f"Dead letter not found: {command.dead_letter_id}"]
        return _render_dead_letter(view)

    def mark_replayed(self, command: DeadLetterInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            changed = repository.mark_replayed(command.dead_letter_id)
        if not changed:
            return [f"Dead letter not pending: {command.dead_letter_id}"]
        return [f"Dead letter marked replayed: {command.dead_letter_id}"]


def build_demo_topology(
    name: str,
    *,
    failure_rate: float,
    seed: int,
    max_iterations: int = 5,
) -> Topology:
    """Topology wired to deterministic demo executors."""

    flaky = FlakyExecutor(failure_rate=failure_rate, seed=seed, name="flaky_service")
    if name == "pipeline":
        return PipelineTopology(
            [
                Step("normalize", FunctionExecutor(lambda payload, _: str(payload).strip(), name="normalize")),
                Step("enrich", flaky, fallbacks=(EchoExecutor(name="enrich_cache", prefix="cached:"),)),
                Step("publish", EchoExecutor(name="publish", prefix="published:")),
            ],
        )
    if name == "fan-out":
        return FanOutTopology(
            step=Step("shard", flaky),
            split=lambda payload: [f"{payload}#{part}" for part in range(3)],
            aggregation=Aggregation.ALL,
            failure_threshold=0.34,
        )
    if name == "router":
        return RouterTopology(
            _demo_classify,
            {
                "even": Step("even", EchoExecutor(name="even_handler", prefix="even:")),
                "odd": Step("odd", flaky),
                "general": Step("general", EchoExecutor(name="general_handler", prefix="general:")),
            },
            default="general",
        )
    if name == "hierarchical":
        return HierarchicalTopology(
            _DemoManager(),
            {
                "research": Step("research", flaky),
                "write": Step("write", EchoExecutor(name="writer", prefix="draft:")),
            },
            max_iterations=max_iterations,
        )
    if name == "swarm":
        return SwarmTopology(Step("solver", flaky), redundancy=3)
    raise ValueError(f"Unknown demo topology: {name!r}. Expected one of {', '.join(DEMO_TOPOLOGIES)}.")


def _demo_classify(task: Task) -> str:
    suffix = str(task.payload).rsplit("-", 1)[-1]
    number = int(suffix)
    if number % 5 == 4:
        return "unrouted"
    return "even" if number % 2 == 0 else "odd"


class _DemoManager:
    """Two-worker plan: research then write; asks for one revision."""

    def decompose(self, payload: Any, iteration: int, history: list[list[BranchResult]]) -> Decomposition:
        return Decomposition(
            subtasks=[SubTask("research", payload), SubTask("write", f"{payload} (rev {iteration})")],
        )

    def synthesize(self, payload: Any, results: list[BranchResult], iteration: int) -> Synthesis:
        return Synthesis(done=iteration >= 2, output=[entry.output for entry in results])


def _render_dead_letter(view: DeadLetterView) -> list[str]:
    lines = [
        f"Dead letter: {view.dead_letter_id}",
        f"Task: {view.task_id}",
        f"Type: {view.task_type}",
        f"Error kind: {view.error_kind.value}",
        f"Error: {view.error_summary}",
        f"Reason: {view.reason_code or '-'}",
        f"Failed stage: {view.failed_stage or '-'}",
        f"Retries: {view.retries_attempted}/{view.max_retries}",
        f"Payload replayable: {'yes' if view.payload_replayable else 'no'}",
        f"Payload: {json.dumps(view.payload, ensure_ascii=True)}",
        f"Replayed: {view.replayed_at.isoformat() if view.replayed_at is not None else '-'}",
        f"Attempts: {len(view.attempts)}",
    ]
    for attempt in view.attempts:
        error = attempt.error.summary if attempt.error is not None else "-"
        lines.append(
            f"  #{attempt.attempt_no} executor={attempt.executor} stage={attempt.stage or '-'} "
            f"outcome={attempt.outcome.value} duration={attempt.duration_seconds:.3f}s error={error}",
        )
    return lines


@contextmanager
def _repository(settings: Settings) -> Iterator[DeadLetterRepository]:
    repository = DeadLetterRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
