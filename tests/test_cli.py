from __future__ import annotations

import logging
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from taskweave.main import taskweave
from taskweave.orchestrator.controllers import DEMO_TOPOLOGIES, build_demo_topology

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]


def _invoke(args: list[str]):
    result = CliRunner().invoke(taskweave, args)
    assert result.exit_code == 0, result.output
    return result


@pytest.mark.parametrize("topology", DEMO_TOPOLOGIES)
def test_demo_runs_every_topology(tmp_path: Path, topology: str) -> None:
    result = _invoke(
        [
            "demo",
            "--db-path",
            str(tmp_path / "demo.db"),
            "--topology",
            topology,
            "--tasks",
            "5",
            "--workers",
            "2",
            "--failure-rate",
            "0",
        ],
    )

    assert f"Demo run: topology={topology} tasks=5 workers=2" in result.output
    assert "Status: succeeded=5 failed=0 dead_lettered=0 cancelled=0" in result.output
    assert "Dead letters stored: 0" in result.output
    assert "Counters:" in result.output


def test_pipeline_fallback_absorbs_flaky_dependency(tmp_path: Path) -> None:
    result = _invoke(
        [
            "demo",
            "--db-path",
            str(tmp_path / "demo.db"),
            "--tasks",
            "4",
            "--failure-rate",
            "1",
            "--max-retries",
            "0",
        ],
    )

    assert "Status: succeeded=4 failed=0 dead_lettered=0 cancelled=0" in result.output
    assert "events_total{event_type=fallback_invoked} = 4" in result.output


def test_dead_letter_commands(tmp_path: Path) -> None:
    db_path = str(tmp_path / "dlq.db")
    demo = _invoke(
        [
            "demo",
            "--db-path",
            db_path,
            "--topology",
            "fan-out",
            "--tasks",
            "3",
            "--failure-rate",
            "1",
            "--max-retries",
            "0",
        ],
    )
    assert "dead_lettered=3" in demo.output

    listed = _invoke(["dlq", "list", "--db-path", db_path])
    lines = listed.output.splitlines()
    assert lines[0] == "Dead letters: 3"
    dead_letter_id = lines[1].split()[0]
    assert "type=fan-out" in lines[1]

    inspected = _invoke(["dlq", "inspect", "--db-path", db_path, "--id", dead_letter_id])
    assert f"Dead letter: {dead_letter_id}" in inspected.output
    assert "Payload replayable: yes" in inspected.output
    assert "  #1 executor=flaky_service" in inspected.output

    marked = _invoke(["dlq", "mark-replayed", "--db-path", db_path, "--id", dead_letter_id])
    assert marked.output.strip() == f"Dead letter marked replayed: {dead_letter_id}"
    again = _invoke(["dlq", "mark-replayed", "--db-path", db_path, "--id", dead_letter_id])
    assert again.output.strip() == f"Dead letter not pending: {dead_letter_id}"

    pending = _invoke(["dlq", "list", "--db-path", db_path, "--pending"])
    assert pending.output.splitlines()[0] == "Dead letters: 2"


def test_inspect_unknown_dead_letter(tmp_path: Path) -> None:
    result = _invoke(["dlq", "inspect", "--db-path", str(tmp_path / "empty.db"), "--id", "nope"])

    assert result.output.strip() == "Dead letter not found: nope"


def test_demo_rejects_unknown_topology(tmp_path: Path) -> None:
    result = CliRunner().invoke(taskweave, ["demo", "--db-path", str(tmp_path / "x.db"), "--topology", "mesh"])

    assert result.exit_code != 0


def test_build_demo_topology_rejects_unknown_name() -> None:
    with pytest.raises(ValueError, match="Unknown demo topology"):
        build_demo_topology("mesh", failure_rate=0.0, seed=1)


def test_demo_forwards_metric_samples_to_debug_log(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.DEBUG, logger="taskweave.orchestrator.metrics"):
        result = _invoke(
            ["demo", "--db-path", str(tmp_path / "demo.db"), "--tasks", "2", "--failure-rate", "0"],
        )

    assert "Status: succeeded=2" in result.output
    assert any(
        record.getMessage().startswith("metric tasks_total") for record in caplog.records
    )


def test_log_level_comes_from_validated_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TASKWEAVE_LOG_LEVEL", "chatty")

    result = CliRunner().invoke(taskweave, ["dlq", "list"])

    assert result.exit_code != 0
    assert "TASKWEAVE_LOG_LEVEL" in result.output
