"""Coordination topologies: pipeline, fan-out/fan-in, router, hierarchical, swarm."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable, Hashable, Mapping, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from taskweave.orchestrator.models import (
    BranchResult,
    ErrorInfo,
    ErrorKind,
    ExecutionResult,
    Outcome,
    Task,
)
from taskweave.orchestrator.observability import ObservabilityHub, Span
from taskweave.orchestrator.resilience import ExecutionContext, ResilienceWrapper, Step
from taskweave.orchestrator.sanitization import summarize_exception

logger = logging.getLogger(__name__)

BranchStop = Callable[[list[BranchResult]], bool]

_EXHAUSTED_OUTCOMES = frozenset(
    {Outcome.TRANSIENT_FAILURE, Outcome.TIMEOUT, Outcome.CIRCUIT_OPEN},
)


class DispatchContext:
    """What a topology may do while running one task."""

    def __init__(
        self,
        *,
        wrapper: ResilienceWrapper,
        execution: ExecutionContext,
        hub: ObservabilityHub,
    ) -> None:
        self.wrapper = wrapper
        self.execution = execution
        self.hub = hub

    @property
    def task(self) -> Task:
        return self.execution.task

    @property
    def span(self) -> Span | None:
        return self.execution.span

    def invoke(self, step: Step, payload: Any, *, stage: str | None = None) -> ExecutionResult:
        """Run one step through the resilience wrapper inside a stage span."""

        stage_name = stage or step.name
        with self.hub.tracer.span(stage_name, parent=self.execution.span, step=step.name) as span:
            result = self.wrapper.execute(step, payload, self.execution, stage=stage_name)
            span.set_attribute("outcome", result.outcome.value)
            if not result.ok:
                span.status = "error"
        return result

    def run_parallel(
        self,
        calls: Sequence[tuple[str, Step, Any]],
        *,
        stop_when: BranchStop | None = None,
    ) -> list[BranchResult]:
        """Run ``(branch, step, payload)`` calls concurrently.

        Returns one entry per call in call order. When ``stop_when`` accepts
        the completed entries, unfinished branches are cancelled and keep
        their slot as ``cancelled`` entries.
        """

        if not calls:
            return []
        branch_ctx = ExecutionContext(
            task=self.execution.task,
            budget=self.execution.budget,
            token=self.execution.token.child(),
            history=self.execution.history,
            span=self.execution.span,
        )
        branch_dispatch = DispatchContext(wrapper=self.wrapper, execution=branch_ctx, hub=self.hub)
        entries: list[BranchResult | None] = [None] * len(calls)
        pool = ThreadPoolExecutor(
            max_workers=len(calls),
            thread_name_prefix=f"taskweave-branch-{self.task.task_id[:8]}",
        )
        try:
            futures: dict[Future[ExecutionResult], int] = {
                pool.submit(branch_dispatch.invoke, step, payload, stage=branch): index
                for index, (branch, step, payload) in enumerate(calls)
            }
            pending = set(futures)
            while pending:
                done, pending = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    index = futures[future]
                    entries[index] = _branch_entry(index, calls[index][0], future)
                if pending and stop_when is not None:
                    completed = [entry for entry in entries if entry is not None]
                    if stop_when(completed):
                        branch_ctx.token.cancel("branch aggregation satisfied")
                        break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        return [
            entry
            if entry is not None
            else BranchResult(
                index=index,
                branch=calls[index][0],
                outcome=Outcome.CANCELLED,
                error=ErrorInfo(
                    kind=ErrorKind.CANCELLED,
                    summary="Branch cancelled after aggregation was satisfied.",
                    reason_code="branch_not_needed",
                ),
            )
            for index, entry in enumerate(entries)
        ]


def _branch_entry(index: int, branch: str, future: Future[ExecutionResult]) -> BranchResult:
    try:
        result = future.result()
    except Exception as error:  # noqa: BLE001
        logger.warning("Branch %s raised outside the resilience wrapper", branch, exc_info=True)
        return BranchResult(
            index=index,
            branch=branch,
            outcome=Outcome.PERMANENT_FAILURE,
            error=ErrorInfo(
                kind=ErrorKind.PERMANENT,
                summary=summarize_exception(error),
                reason_code="branch_crashed",
            ),
        )
    return BranchResult(
        index=index,
        branch=branch,
        outcome=result.outcome,
        output=result.output,
        error=result.error,
    )


class Topology(Protocol):
    """Coordination pattern bound to one task type."""

    name: str

    def run(self, task: Task, ctx: DispatchContext) -> ExecutionResult:
        """Execute ``task`` and return its tagged result."""


class PipelineTopology:
    """Ordered stages; each stage consumes the previous stage's output."""

    def __init__(self, stages: Sequence[Step], *, name: str = "pipeline") -> None:
        if not stages:
            raise ValueError("Pipeline needs at least one stage.")
        self.stages = list(stages)
        self.name = name

    def run(self, task: Task, ctx: DispatchContext) -> ExecutionResult:
        payload = task.payload
        attempts = []
        for step in self.stages:
            result = ctx.invoke(step, payload, stage=step.name)
            attempts.extend(result.attempts)
            if not result.ok:
                result.attempts = attempts
                result.stage = step.name
                return result
            payload = result.output
        return ExecutionResult.success(
            task.task_id,
            payload,
            attempts=attempts,
            stage=self.stages[-1].name,
        )


class Aggregation(str, Enum):
    """When a fan-in completes."""

    ALL = "all"
    FIRST_SUCCESS = "first_success"
    QUORUM = "quorum"


class FanOutTopology:
    """Split one task into N concurrent branches and gather every outcome.

    Either pass one step per branch in ``branches`` (each receives the
    payload, or its split share when ``split`` is given), or pass ``step``
    with ``split`` to apply one step to every split payload. The gathered
    ``ExecutionResult.branches`` always holds N entries.
    """

    def __init__(  # noqa: PLR0913
        self,
        branches: Sequence[Step] | None = None,
        *,
        step: Step | None = None,
        split: Callable[[Any], Sequence[Any]] | None = None,
        aggregation: Aggregation | str = Aggregation.ALL,
        quorum: int | None = None,
        failure_threshold: float = 0.0,
        merge: Callable[[list[BranchResult]], Any] | None = None,
        name: str = "fan_out",
    ) -> None:
        if (branches is None) == (step is None):
            raise ValueError("Pass exactly one of branches or step.")
        if step is not None and split is None:
            raise ValueError("A shared step needs a split function.")
        if branches is not None and not branches:
            raise ValueError("Fan-out needs at least one branch.")
        self.aggregation = Aggregation(aggregation)
        if self.aggregation == Aggregation.QUORUM and (quorum is None or quorum <= 0):
            raise ValueError("Quorum aggregation needs quorum > 0.")
        if not 0.0 <= failure_threshold <= 1.0:
            raise ValueError("failure_threshold must be within [0, 1].")
        self.branches = list(branches) if branches is not None else None
        self.step = step
        self.split = split
        self.quorum = quorum
        self.failure_threshold = failure_threshold
        self.merge = merge
        self.name = name

    def run(self, task: Task, ctx: DispatchContext) -> ExecutionResult:
        calls = self._calls(task.payload)
        if self.aggregation == Aggregation.QUORUM and self.quorum is not None and self.quorum > len(calls):
            return ExecutionResult.failure(
                task.task_id,
                ErrorInfo(
                    kind=ErrorKind.PERMANENT,
                    summary=f"Quorum {self.quorum} exceeds branch count {len(calls)}.",
                    reason_code="quorum_unreachable",
                ),
                branches=[],
            )
        entries = ctx.run_parallel(calls, stop_when=self._stop_when())
        return self._gather(task, entries)

    def _calls(self, payload: Any) -> list[tuple[str, Step, Any]]:
        if self.branches is None:
            shares = list(self.split(payload))  # type: ignore[misc]
            step = self.step
            return [(f"{step.name}[{index}]", step, share) for index, share in enumerate(shares)]  # type: ignore[union-attr]
        if self.split is None:
            return [(branch.name, branch, payload) for branch in self.branches]
        shares = list(self.split(payload))
        if len(shares) != len(self.branches):
            raise ValueError(
                f"split produced {len(shares)} payloads for {len(self.branches)} branches",
            )
        return [(branch.name, branch, share) for branch, share in zip(self.branches, shares, strict=True)]

    def _stop_when(self) -> BranchStop | None:
        if self.aggregation == Aggregation.FIRST_SUCCESS:
            return lambda done: any(entry.ok for entry in done)
        if self.aggregation == Aggregation.QUORUM:
            required = self.quorum or 0
            return lambda done: sum(entry.ok for entry in done) >= required
        return None

    def _gather(self, task: Task, entries: list[BranchResult]) -> ExecutionResult:
        output = self.merge(entries) if self.merge is not None else [entry.output for entry in entries]
        succeeded = sum(entry.ok for entry in entries)
        failed = [entry for entry in entries if not entry.ok and entry.outcome != Outcome.CANCELLED]
        total = len(entries)

        if self.aggregation == Aggregation.FIRST_SUCCESS:
            passed = succeeded > 0
        elif self.aggregation == Aggregation.QUORUM:
            passed = succeeded >= (self.quorum or 0)
        else:
            passed = total == 0 or len(failed) / total <= self.failure_threshold

        if passed:
            return ExecutionResult.success(task.task_id, output, branches=entries)
        if failed and succeeded == 0 and all(entry.outcome in _EXHAUSTED_OUTCOMES for entry in failed):
            first = failed[0]
            return ExecutionResult(
                task_id=task.task_id,
                outcome=first.outcome,
                output=output,
                error=first.error,
                stage=first.branch,
                branches=entries,
            )
        return ExecutionResult.failure(
            task.task_id,
            ErrorInfo(
                kind=ErrorKind.PARTIAL_FAILURE,
                summary=f"{len(failed)} of {total} branches failed ({self.aggregation.value}).",
                reason_code="fan_out_partial_failure",
            ),
            output=output,
            stage=failed[0].branch if failed else None,
            branches=entries,
        )


class RouterTopology:
    """Classifier-selected branch with a mandatory default."""

    def __init__(
        self,
        classify: Callable[[Task], str],
        branches: Mapping[str, Step],
        *,
        default: str,
        name: str = "router",
    ) -> None:
        if default not in branches:
            raise ValueError(f"Default branch {default!r} is not among the router branches.")
        self.classify = classify
        self.branches = dict(branches)
        self.default = default
        self.name = name

    def run(self, task: Task, ctx: DispatchContext) -> ExecutionResult:
        branch_id = self._route(task, ctx)
        step = self.branches[branch_id]
        result = ctx.invoke(step, task.payload, stage=branch_id)
        result.stage = branch_id
        return result

    def _route(self, task: Task, ctx: DispatchContext) -> str:
        try:
            branch_id = self.classify(task)
        except Exception as error:  # noqa: BLE001
            reason = summarize_exception(error)
        else:
            if branch_id in self.branches:
                return branch_id
            reason = f"unknown branch {branch_id!r}"
        ctx.hub.event(
            "route_fallback_applied",
            task.task_id,
            details={"router": self.name, "default": self.default, "reason": reason},
        )
        return self.default


@dataclass(slots=True)
class SubTask:
    """One unit a manager delegates to a named worker step."""

    worker: str
    payload: Any


@dataclass(slots=True)
class Decomposition:
    subtasks: list[SubTask]
    parallel: bool = False


@dataclass(slots=True)
class Synthesis:
    """Manager verdict after one round; ``done=False`` asks for another round."""

    done: bool
    output: Any = None


class Manager(Protocol):
    """Decomposes a task and synthesizes worker results."""

    def decompose(self, payload: Any, iteration: int, history: list[list[BranchResult]]) -> Decomposition:
        """Plan the subtasks for round ``iteration`` (1-based)."""

    def synthesize(self, payload: Any, results: list[BranchResult], iteration: int) -> Synthesis:
        """Combine one round of results."""


@dataclass(slots=True)
class _RoundOutcome:
    results: list[BranchResult] = field(default_factory=list)
    failure: ExecutionResult | None = None


class HierarchicalTopology:
    """Manager-driven delegation bounded by an explicit iteration counter."""

    def __init__(
        self,
        manager: Manager,
        workers: Mapping[str, Step],
        *,
        max_iterations: int = 5,
        name: str = "hierarchical",
    ) -> None:
        if max_iterations <= 0:
            raise ValueError("max_iterations must be > 0.")
        if not workers:
            raise ValueError("Hierarchical topology needs at least one worker step.")
        self.manager = manager
        self.workers = dict(workers)
        self.max_iterations = max_iterations
        self.name = name

    def run(self, task: Task, ctx: DispatchContext) -> ExecutionResult:
        history: list[list[BranchResult]] = []
        for iteration in range(1, self.max_iterations + 1):
            try:
                decomposition = self.manager.decompose(task.payload, iteration, history)
            except Exception as error:  # noqa: BLE001
                return self._manager_failure(task, error, stage=f"decompose#{iteration}")

            unknown = sorted({sub.worker for sub in decomposition.subtasks} - set(self.workers))
            if unknown:
                return ExecutionResult.failure(
                    task.task_id,
                    ErrorInfo(
                        kind=ErrorKind.PERMANENT,
                        summary=f"Manager delegated to unknown workers: {', '.join(unknown)}.",
                        reason_code="unknown_worker",
                    ),
                    stage=f"decompose#{iteration}",
                )

            round_outcome = self._dispatch(decomposition, iteration=iteration, ctx=ctx)
            if round_outcome.failure is not None:
                return round_outcome.failure

            try:
                synthesis = self.manager.synthesize(task.payload, round_outcome.results, iteration)
            except Exception as error:  # noqa: BLE001
                return self._manager_failure(task, error, stage=f"synthesize#{iteration}")
            if synthesis.done:
                return ExecutionResult.success(
                    task.task_id,
                    synthesis.output,
                    stage=f"synthesize#{iteration}",
                    branches=round_outcome.results,
                )
            history.append(round_outcome.results)

        return ExecutionResult.failure(
            task.task_id,
            ErrorInfo(
                kind=ErrorKind.MAX_ITERATIONS_EXCEEDED,
                summary=f"Manager did not converge within {self.max_iterations} iterations.",
                reason_code="max_iterations_exceeded",
            ),
            stage=self.name,
        )

    def _dispatch(self, decomposition: Decomposition, *, iteration: int, ctx: DispatchContext) -> _RoundOutcome:
        calls = [
            (f"{sub.worker}#{iteration}.{index}", self.workers[sub.worker], sub.payload)
            for index, sub in enumerate(decomposition.subtasks)
        ]
        outcome = _RoundOutcome()
        if decomposition.parallel:
            outcome.results = ctx.run_parallel(calls)
        else:
            for index, (branch, step, payload) in enumerate(calls):
                result = ctx.invoke(step, payload, stage=branch)
                outcome.results.append(
                    BranchResult(
                        index=index,
                        branch=branch,
                        outcome=result.outcome,
                        output=result.output,
                        error=result.error,
                    ),
                )
                if not result.ok:
                    break
        failed = next((entry for entry in outcome.results if not entry.ok), None)
        if failed is not None:
            outcome.failure = ExecutionResult(
                task_id=ctx.task.task_id,
                outcome=failed.outcome,
                error=failed.error,
                stage=failed.branch,
                branches=outcome.results,
            )
        return outcome

    def _manager_failure(self, task: Task, error: Exception, *, stage: str) -> ExecutionResult:
        logger.warning("Manager %s failed at %s for task %s", self.name, stage, task.task_id)
        return ExecutionResult.failure(
            task.task_id,
            ErrorInfo(
                kind=ErrorKind.PERMANENT,
                summary=summarize_exception(error),
                reason_code="manager_failed",
            ),
            stage=stage,
        )


class Selection(str, Enum):
    """How a swarm picks among redundant results."""

    MAJORITY = "majority"
    FIRST_SUCCESS = "first_success"


class SwarmTopology:
    """Homogeneous step dispatched ``redundancy`` times; one result selected."""

    def __init__(
        self,
        step: Step,
        *,
        redundancy: int = 1,
        selection: Selection | str = Selection.MAJORITY,
        agreement_key: Callable[[Any], Hashable] | None = None,
        name: str = "swarm",
    ) -> None:
        if redundancy <= 0:
            raise ValueError("redundancy must be > 0.")
        self.step = step
        self.redundancy = redundancy
        self.selection = Selection(selection)
        self.agreement_key = agreement_key
        self.name = name

    def run(self, task: Task, ctx: DispatchContext) -> ExecutionResult:
        if self.redundancy == 1:
            return ctx.invoke(self.step, task.payload, stage=self.step.name)

        calls = [
            (f"{self.step.name}[{index}]", self.step, task.payload)
            for index in range(self.redundancy)
        ]
        if self.selection == Selection.FIRST_SUCCESS:
            entries = ctx.run_parallel(calls, stop_when=lambda done: any(entry.ok for entry in done))
            winner = next((entry for entry in entries if entry.ok), None)
            if winner is not None:
                return ExecutionResult.success(task.task_id, winner.output, stage=winner.branch, branches=entries)
            return self._all_failed(task, entries)

        entries = ctx.run_parallel(calls)
        successes = [entry for entry in entries if entry.ok]
        if not successes:
            return self._all_failed(task, entries)
        votes = Counter(self._key(entry.output) for entry in successes)
        key, count = votes.most_common(1)[0]
        if count * 2 > self.redundancy:
            output = next(entry.output for entry in successes if self._key(entry.output) == key)
            return ExecutionResult.success(task.task_id, output, branches=entries)
        return ExecutionResult.failure(
            task.task_id,
            ErrorInfo(
                kind=ErrorKind.NO_CONSENSUS,
                summary=f"No strict majority among {self.redundancy} results (top vote {count}).",
                reason_code="no_consensus",
            ),
            stage=self.name,
            branches=entries,
        )

    def _key(self, output: Any) -> Hashable:
        if self.agreement_key is not None:
            return self.agreement_key(output)
        try:
            hash(output)
        except TypeError:
            return repr(output)
        return output

    def _all_failed(self, task: Task, entries: list[BranchResult]) -> ExecutionResult:
        first = next(entry for entry in entries if not entry.ok)
        return ExecutionResult(
            task_id=task.task_id,
            outcome=first.outcome,
            error=first.error,
            stage=first.branch,
            branches=entries,
        )
