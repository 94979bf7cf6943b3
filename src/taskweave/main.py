"""CLI entrypoint for taskweave."""

import logging
from pathlib import Path

import rich_click as click

from taskweave import __version__
from taskweave.config import Settings
from taskweave.orchestrator.controllers import (
    DEMO_TOPOLOGIES,
    DeadLetterInspectCommand,
    DeadLetterListCommand,
    DemoCommand,
    EngineCliController,
)

click.rich_click.USE_MARKDOWN = True
ENGINE_CONTROLLER = EngineCliController()


@click.group()
@click.version_option(version=__version__, prog_name="taskweave")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level; defaults to TASKWEAVE_LOG_LEVEL or WARNING.",
)
def taskweave(log_level: str | None) -> None:
    """Task orchestration engine CLI."""

    if log_level is None:
        try:
            settings = Settings.from_env()
            settings.validate()
        except ValueError as error:
            raise click.ClickException(str(error)) from error
        log_level = settings.log_level
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@taskweave.command("demo")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--topology",
    type=click.Choice(list(DEMO_TOPOLOGIES), case_sensitive=False),
    default="pipeline",
    show_default=True,
    help="Coordination topology to exercise.",
)
@click.option(
    "--tasks",
    type=click.IntRange(min=1, max=10_000),
    default=20,
    show_default=True,
    help="How many tasks to submit.",
)
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=256),
    default=4,
    show_default=True,
    help="Worker pool size.",
)
@click.option(
    "--failure-rate",
    type=click.FloatRange(min=0.0, max=1.0),
    default=0.2,
    show_default=True,
    help="Probability that the flaky demo dependency fails transiently.",
)
@click.option("--seed", type=int, default=7, show_default=True, help="Seed for the flaky dependency.")
@click.option(
    "--max-retries",
    type=click.IntRange(min=0, max=20),
    default=2,
    show_default=True,
    help="Retries per task.",
)
def demo(  # noqa: PLR0913
    db_path: Path | None,
    topology: str,
    tasks: int,
    workers: int,
    failure_rate: float,
    seed: int,
    max_retries: int,
) -> None:
    """Run demo executors through a real engine and print stats."""

    result = ENGINE_CONTROLLER.run_demo(
        DemoCommand(
            db_path=db_path,
            topology=topology.lower(),
            tasks=tasks,
            workers=workers,
            failure_rate=failure_rate,
            seed=seed,
            max_retries=max_retries,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Demo run did not finish in time.")


@taskweave.group()
def dlq() -> None:
    """Dead-letter store commands."""


@dlq.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of entries to print.",
)
@click.option("--pending", "pending_only", is_flag=True, help="Only entries not yet replayed.")
def dlq_list(db_path: Path | None, limit: int, pending_only: bool) -> None:
    """List dead-lettered tasks."""

    _emit_lines(
        ENGINE_CONTROLLER.list_dead_letters(
            DeadLetterListCommand(
                db_path=db_path,
                limit=limit,
                pending_only=pending_only,
            ),
        ),
    )


@dlq.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--id", "dead_letter_id", required=True, help="Dead letter id.")
def dlq_inspect(db_path: Path | None, dead_letter_id: str) -> None:
    """Inspect one dead letter with its attempt history."""

    _emit_lines(
        ENGINE_CONTROLLER.inspect_dead_letter(
            DeadLetterInspectCommand(
                db_path=db_path,
                dead_letter_id=dead_letter_id,
            ),
        ),
    )


@dlq.command("mark-replayed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--id", "dead_letter_id", required=True, help="Dead letter id.")
def dlq_mark_replayed(db_path: Path | None, dead_letter_id: str) -> None:
    """Flag a dead letter as replayed without resubmitting it."""

    _emit_lines(
        ENGINE_CONTROLLER.mark_replayed(
            DeadLetterInspectCommand(
                db_path=db_path,
                dead_letter_id=dead_letter_id,
            ),
        ),
    )


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskweave()
