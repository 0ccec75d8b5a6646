"""CLI entrypoint for step-orchestrator."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from step_orchestrator import __version__
from step_orchestrator.controllers import (
    OrchestratorCliController,
    ProjectAdvanceCommand,
    ProjectCreateCommand,
    ProjectListCommand,
    ProjectRunCommand,
    ProjectTasksCommand,
    SandboxRunCommand,
    TaskInspectCommand,
)
from step_orchestrator.store.base import RecordNotFoundError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()

C = TypeVar("C")


@click.group()
@click.version_option(version=__version__, prog_name="step-orchestrator")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for orchestrator diagnostics.",
)
def step_orchestrator(log_level: str) -> None:
    """Plan goals into typed steps and execute them with LLM-backed executors."""

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@step_orchestrator.group()
def project() -> None:
    """Project commands."""


@project.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--name", required=True, help="Project name.")
@click.option("--goal", default="", help="Optional project goal.")
@click.option("--owner", default=None, help="Optional project owner.")
def project_create(db_path: Path | None, name: str, goal: str, owner: str | None) -> None:
    """Create an empty project."""

    _emit_lines(
        _guarded(
            CONTROLLER.create_project,
            ProjectCreateCommand(db_path=db_path, name=name, goal=goal, owner=owner),
        ),
    )


@project.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def project_list(db_path: Path | None) -> None:
    """List projects in creation order."""

    _emit_lines(_guarded(CONTROLLER.list_projects, ProjectListCommand(db_path=db_path)))


@project.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Project to drive.")
@click.option("--message", required=True, help="User message that states or refines the goal.")
@click.option(
    "--max-steps",
    type=click.IntRange(min=1),
    default=None,
    help="Upper bound on advances. Defaults to STEP_ORCHESTRATOR_MAX_STEPS.",
)
def project_run(db_path: Path | None, project_id: str, message: str, max_steps: int | None) -> None:
    """Plan and execute steps until the project finishes, stalls or needs input."""

    _emit_lines(
        _guarded(
            CONTROLLER.run_project,
            ProjectRunCommand(
                db_path=db_path,
                project_id=project_id,
                message=message,
                max_steps=max_steps,
            ),
        ),
    )


@project.command("advance")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Project to advance.")
@click.option("--message", required=True, help="User message for this advance.")
def project_advance(db_path: Path | None, project_id: str, message: str) -> None:
    """Run exactly one plan-or-step advance."""

    _emit_lines(
        _guarded(
            CONTROLLER.advance_project,
            ProjectAdvanceCommand(db_path=db_path, project_id=project_id, message=message),
        ),
    )


@project.command("tasks")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--project-id", required=True, help="Project whose tasks to list.")
def project_tasks(db_path: Path | None, project_id: str) -> None:
    """List goal and step tasks of a project in plan order."""

    _emit_lines(
        _guarded(
            CONTROLLER.list_tasks,
            ProjectTasksCommand(db_path=db_path, project_id=project_id),
        ),
    )


@step_orchestrator.group()
def task() -> None:
    """Task commands."""


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_inspect(db_path: Path | None, task_id: str) -> None:
    """Show task status, recorded error and last result."""

    _emit_lines(
        _guarded(CONTROLLER.inspect_task, TaskInspectCommand(db_path=db_path, task_id=task_id)),
    )


@step_orchestrator.command("executors")
def executors() -> None:
    """List registered step types."""

    _emit_lines(CONTROLLER.list_executors())


@step_orchestrator.group()
def sandbox() -> None:
    """Sandbox commands."""


@sandbox.command("run")
@click.option(
    "--file",
    "code_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="Python file to execute in the sandbox worker.",
)
@click.option(
    "--artifacts",
    "artifacts_file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="Optional JSON list exposed to the code as ARTIFACTS.",
)
def sandbox_run(code_file: Path, artifacts_file: Path | None) -> None:
    """Run a code file through the sandbox bridge with the configured LLM."""

    _emit_lines(
        _guarded(
            CONTROLLER.run_sandbox,
            SandboxRunCommand(code_file=code_file, artifacts_file=artifacts_file),
        ),
    )


def _guarded(handler: Callable[[C], list[str]], command: C) -> list[str]:
    try:
        return handler(command)
    except (RecordNotFoundError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    step_orchestrator()
