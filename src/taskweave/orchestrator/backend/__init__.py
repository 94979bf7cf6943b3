"""Executor backends."""

from taskweave.orchestrator.backend.base import (
    CancellationToken,
    Deadline,
    Executor,
    FunctionExecutor,
    as_executor,
)
from taskweave.orchestrator.backend.demo_agents import (
    EchoExecutor,
    FlakyExecutor,
    ScriptedExecutor,
    SleepExecutor,
)

__all__ = [
    "CancellationToken",
    "Deadline",
    "EchoExecutor",
    "Executor",
    "FlakyExecutor",
    "FunctionExecutor",
    "ScriptedExecutor",
    "SleepExecutor",
    "as_executor",
]
