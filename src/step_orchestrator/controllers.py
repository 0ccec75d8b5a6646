"""Controllers for step-orchestrator CLI commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from step_orchestrator.config import Settings
from step_orchestrator.llm.base import LlmService
from step_orchestrator.llm.cli_backend import CliLlmService
from step_orchestrator.llm.http_backend import HttpLlmService
from step_orchestrator.orchestrator.engine import AdvanceOutcome, StepOrchestrator
from step_orchestrator.orchestrator.errors import SandboxExecutionError
from step_orchestrator.orchestrator.models import StepResult, Task
from step_orchestrator.orchestrator.registry import build_default_registry
from step_orchestrator.orchestrator.request_queue import SerializedRequestQueue
from step_orchestrator.orchestrator.retry import RetryOptions
from step_orchestrator.sandbox.bridge import SandboxBridge
from step_orchestrator.store.sql import SqlStore


@dataclass(slots=True)
class ProjectCreateCommand:
    """CLI input for project creation."""

    db_path: Path | None
    name: str
    goal: str
    owner: str | None = None


@dataclass(slots=True)
class ProjectListCommand:
    """CLI input for project listing."""

    db_path: Path | None


@dataclass(slots=True)
class ProjectRunCommand:
    """CLI input for driving a project until it stops."""

    db_path: Path | None
    project_id: str
    message: str
    max_steps: int | None = None


@dataclass(slots=True)
class ProjectAdvanceCommand:
    """CLI input for a single plan-and-advance call."""

    db_path: Path | None
    project_id: str
    message: str


@dataclass(slots=True)
class ProjectTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    project_id: str


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class SandboxRunCommand:
    """CLI input for running a code file through the sandbox bridge."""

    code_file: Path
    artifacts_file: Path | None = None


class OrchestratorCliController:
    """Coordinates project, task and sandbox CLI operations."""

    def create_project(self, command: ProjectCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            project = store.tasks.create_project(
                name=command.name,
                goal=command.goal,
                owner=command.owner,
            )
        return [f"Project created: project_id={project.id} name={project.name}"]

    def list_projects(self, command: ProjectListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            projects = store.tasks.list_projects()
        if not projects:
            return ["No projects."]
        return [
            f"- {project.id} {project.name}" + (f": {project.goal}" if project.goal else "")
            for project in projects
        ]

    def run_project(self, command: ProjectRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        max_steps = command.max_steps or settings.orchestrator.max_steps
        with _store(settings) as store:
            orchestrator = build_orchestrator(settings, store)
            outcomes = asyncio.run(
                orchestrator.run(command.project_id, command.message, max_steps=max_steps),
            )
        lines = [f"Advance {index}: {outcome.summary()}" for index, outcome in enumerate(outcomes, 1)]
        if outcomes:
            lines.extend(_outcome_detail_lines(outcomes[-1]))
        return lines

    def advance_project(self, command: ProjectAdvanceCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            orchestrator = build_orchestrator(settings, store)
            outcome = asyncio.run(
                orchestrator.plan_and_advance(command.project_id, command.message),
            )
        return [f"Advance: {outcome.summary()}", *_outcome_detail_lines(outcome)]

    def list_tasks(self, command: ProjectTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            project = store.tasks.get_project(command.project_id)
            tasks = store.tasks.get_project_tasks(command.project_id)

        lines = [f"Project {project.id}: {project.name}"]
        if project.goal:
            lines.append(f"Goal: {project.goal}")
        if not tasks:
            lines.append("No tasks.")
            return lines
        lines.extend(_task_line(task) for task in tasks)
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            task = store.tasks.get_task(command.task_id)

        lines = [
            f"task_id={task.id}",
            f"project_id={task.project_id}",
            f"type={task.type.value}",
            f"status={task.status.value}",
            f"order={task.order}",
            f"step_type={task.step_type or '-'}",
            f"description={task.description}",
            f"depends_on={','.join(task.depends_on) or '-'}",
            f"created_at={task.created_at.isoformat()}",
            f"updated_at={task.updated_at.isoformat()}",
        ]
        error = task.props.get("error")
        if error:
            lines.append(
                "error: "
                f"failure_class={error.get('failure_class')} "
                f"reason_code={error.get('reason_code')} "
                f"summary={error.get('summary')}",
            )
        if task.props.get("awaitingResponse"):
            lines.append("awaiting_response=true")
        result = task.props.get("result")
        if result:
            step_result = StepResult.from_dict(result)
            lines.append(
                f"result: finished={step_result.finished} "
                f"needs_user_input={step_result.needs_user_input} "
                f"replan={step_result.replan.value}",
            )
            if step_result.artifact_ids:
                lines.append(f"artifacts={','.join(step_result.artifact_ids)}")
            lines.append(step_result.response.message)
        return lines

    def list_executors(self) -> list[str]:
        registry = build_default_registry()
        return [f"{spec.executor_type.value}: {spec.description}" for spec in registry]

    def run_sandbox(self, command: SandboxRunCommand) -> list[str]:
        settings = _settings(None)
        code = command.code_file.read_text("utf-8")
        artifacts: list[dict[str, Any]] = []
        if command.artifacts_file is not None:
            loaded = json.loads(command.artifacts_file.read_text("utf-8"))
            if not isinstance(loaded, list):
                raise ValueError("Artifacts file must contain a JSON list.")
            artifacts = loaded

        bridge = build_sandbox(settings, build_llm_service(settings))
        try:
            result = asyncio.run(bridge.run(code, artifacts=artifacts))
        except SandboxExecutionError as error:
            lines = [f"Sandbox error ({error.error_type or type(error).__name__}): {error}"]
            if error.console_output:
                lines.extend(["Console:", error.console_output])
            return lines

        lines = [
            "Result: " + json.dumps(result.return_value, ensure_ascii=False, default=str),
            f"Artifacts: {len(result.artifacts)} generate_calls={result.generate_calls}",
        ]
        if result.console_output:
            lines.extend(["Console:", result.console_output])
        return lines


def build_llm_service(settings: Settings) -> LlmService:
    if settings.llm.backend == "http":
        return HttpLlmService(
            base_url=settings.llm.http_base_url,
            model=settings.llm.model,
            api_key=settings.llm.api_key,
            timeout_seconds=settings.llm.timeout_seconds,
            temperature=settings.llm.temperature,
        )
    return CliLlmService(
        command_template=settings.llm.command_template,
        model=settings.llm.model,
        agent=settings.llm.agent,
        timeout_seconds=settings.llm.timeout_seconds,
    )


def build_sandbox(settings: Settings, llm: LlmService) -> SandboxBridge:
    return SandboxBridge(
        llm,
        timeout_seconds=settings.sandbox.timeout_seconds,
        cpu_seconds=settings.sandbox.cpu_seconds,
        python_executable=settings.sandbox.python_executable,
        request_queue=SerializedRequestQueue() if settings.sandbox.serialize_generate else None,
    )


def build_orchestrator(settings: Settings, store: SqlStore) -> StepOrchestrator:
    llm = build_llm_service(settings)
    return StepOrchestrator(
        store.tasks,
        store.artifacts,
        llm,
        retry_options=RetryOptions(
            max_attempts=settings.retry.max_attempts,
            initial_delay_seconds=settings.retry.initial_delay_seconds,
            backoff_factor=settings.retry.backoff_factor,
            timeout_seconds=settings.retry.attempt_timeout_seconds,
            min_interval_seconds=settings.retry.min_interval_seconds,
        ),
        sandbox=build_sandbox(settings, llm),
        agent_id=settings.orchestrator.agent_id,
        execution_mode=settings.orchestrator.execution_mode,
    )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _task_line(task: Task) -> str:
    marker = " !" if task.props.get("error") else ""
    step_type = f"[{task.step_type}] " if task.step_type else ""
    return (
        f"- {task.id} {task.type.value} #{task.order} {task.status.value}{marker} "
        f"{step_type}{task.description}"
    )


def _outcome_detail_lines(outcome: AdvanceOutcome) -> list[str]:
    lines: list[str] = []
    if outcome.error is not None:
        lines.append(
            f"Error: {outcome.error.get('failure_class')} {outcome.error.get('summary')}",
        )
    if outcome.stall_reason and outcome.error is None:
        lines.append(f"Stalled: {outcome.stall_reason}")
    if outcome.replan_suggested:
        lines.append("Replan suggested: the validator found gaps in the current plan.")
    if outcome.message:
        lines.append(outcome.message)
    return lines


@contextmanager
def _store(settings: Settings) -> Iterator[SqlStore]:
    store = SqlStore(settings.store.db_path, busy_timeout_ms=settings.store.busy_timeout_ms)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
