from __future__ import annotations

import json
import re
from pathlib import Path

import allure
from click.testing import CliRunner

from step_orchestrator.main import step_orchestrator

pytestmark = [
    allure.epic("Step Orchestration"),
    allure.feature("CLI"),
]


def _create_project(runner: CliRunner, db_path: Path, name: str = "tides") -> str:
    result = runner.invoke(
        step_orchestrator,
        ["project", "create", "--db-path", str(db_path), "--name", name, "--goal", "Explain tides"],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"project_id=(\w+)", result.output)
    assert match is not None
    return match.group(1)


def _task_ids(output: str) -> list[str]:
    return re.findall(r"^- (\w+) ", output, flags=re.MULTILINE)


def test_project_run_drives_plan_to_completion(tmp_path: Path, echo_agent) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    project_id = _create_project(runner, db_path)

    run = runner.invoke(
        step_orchestrator,
        ["project", "run", "--db-path", str(db_path), "--project-id", project_id, "--message", "Why tides?"],
    )

    assert run.exit_code == 0, run.output
    assert "Advance 1: planned" in run.output
    assert "type=thinking" in run.output
    assert "type=final-response" in run.output
    assert "Advance 4: finished" in run.output
    assert "echo: Why tides?" in run.output

    tasks = runner.invoke(
        step_orchestrator,
        ["project", "tasks", "--db-path", str(db_path), "--project-id", project_id],
    )
    assert tasks.exit_code == 0, tasks.output
    assert f"Project {project_id}: tides" in tasks.output
    assert "Goal: Explain tides" in tasks.output
    assert "[thinking] Think about: Why tides?" in tasks.output
    assert len(_task_ids(tasks.output)) == 3

    step_id = next(
        line.split()[1] for line in tasks.output.splitlines() if "[final-response]" in line
    )
    inspect = runner.invoke(
        step_orchestrator,
        ["task", "inspect", "--db-path", str(db_path), "--task-id", step_id],
    )
    assert inspect.exit_code == 0, inspect.output
    assert "status=complete" in inspect.output
    assert "result: finished=True needs_user_input=False replan=none" in inspect.output


def test_project_advance_runs_one_step(tmp_path: Path, echo_agent) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    project_id = _create_project(runner, db_path)
    args = ["project", "advance", "--db-path", str(db_path), "--project-id", project_id, "--message", "Why?"]

    first = runner.invoke(step_orchestrator, args)
    second = runner.invoke(step_orchestrator, args)

    assert first.exit_code == 0, first.output
    assert first.output.startswith("Advance: planned")
    assert "created=2" in first.output
    assert second.output.startswith("Advance: step_completed")
    assert "type=thinking" in second.output


def test_backend_failure_is_recorded_on_the_goal(tmp_path: Path, echo_agent, monkeypatch) -> None:
    monkeypatch.setenv("STEP_ORCHESTRATOR_ECHO_FAIL", "Quota exceeded for this project")
    monkeypatch.setenv("STEP_ORCHESTRATOR_RETRY_MAX_ATTEMPTS", "1")
    runner = CliRunner()
    db_path = tmp_path / "cli.db"
    project_id = _create_project(runner, db_path)

    run = runner.invoke(
        step_orchestrator,
        ["project", "run", "--db-path", str(db_path), "--project-id", project_id, "--message", "Why?"],
    )

    assert run.exit_code == 0, run.output
    assert "Advance 1: step_failed" in run.output
    assert "failure=billing_or_quota" in run.output

    goal_id = re.search(r"task=(\w+)", run.output).group(1)
    inspect = runner.invoke(
        step_orchestrator,
        ["task", "inspect", "--db-path", str(db_path), "--task-id", goal_id],
    )
    assert "status=blocked" in inspect.output
    assert "error: failure_class=billing_or_quota" in inspect.output


def test_unknown_project_is_reported_as_click_error(tmp_path: Path, echo_agent) -> None:
    result = CliRunner().invoke(
        step_orchestrator,
        ["project", "tasks", "--db-path", str(tmp_path / "cli.db"), "--project-id", "missing"],
    )

    assert result.exit_code == 1
    assert "Project not found: missing" in result.output


def test_executors_lists_every_step_type() -> None:
    result = CliRunner().invoke(step_orchestrator, ["executors"])

    assert result.exit_code == 0, result.output
    for step_type in (
        "establish-goal-and-plan",
        "document-retrieval",
        "code-execution",
        "thinking",
        "validation",
        "final-response",
    ):
        assert f"{step_type}: " in result.output


def test_sandbox_run_prints_result_and_console(tmp_path: Path, echo_agent) -> None:
    code_file = tmp_path / "script.py"
    code_file.write_text('print("hello")\nprovide_result(len(ARTIFACTS))\n', "utf-8")
    artifacts_file = tmp_path / "artifacts.json"
    artifacts_file.write_text(json.dumps([{"id": "a1", "content": "x"}]), "utf-8")

    result = CliRunner().invoke(
        step_orchestrator,
        ["sandbox", "run", "--file", str(code_file), "--artifacts", str(artifacts_file)],
    )

    assert result.exit_code == 0, result.output
    assert result.output.splitlines() == [
        "Result: 1",
        "Artifacts: 1 generate_calls=0",
        "Console:",
        "hello",
    ]


def test_sandbox_run_reports_disallowed_import(tmp_path: Path, echo_agent) -> None:
    code_file = tmp_path / "script.py"
    code_file.write_text("import socket\n", "utf-8")

    result = CliRunner().invoke(step_orchestrator, ["sandbox", "run", "--file", str(code_file)])

    assert result.exit_code == 0, result.output
    assert "Sandbox error (ModuleNotAllowedError): Module socket is not allowed" in result.output


def test_sandbox_generate_uses_configured_backend(tmp_path: Path, echo_agent) -> None:
    code_file = tmp_path / "script.py"
    code_file.write_text('provide_result((await generate("ping"))["message"])\n', "utf-8")

    result = CliRunner().invoke(step_orchestrator, ["sandbox", "run", "--file", str(code_file)])

    assert result.exit_code == 0, result.output
    assert 'Result: "echo: ping"' in result.output
    assert "generate_calls=1" in result.output


def test_project_list_shows_created_projects(tmp_path: Path) -> None:
    runner = CliRunner()
    db_path = tmp_path / "cli.db"

    empty = runner.invoke(step_orchestrator, ["project", "list", "--db-path", str(db_path)])
    project_id = _create_project(runner, db_path)
    listed = runner.invoke(step_orchestrator, ["project", "list", "--db-path", str(db_path)])

    assert empty.output.strip() == "No projects."
    assert listed.exit_code == 0, listed.output
    assert listed.output.strip() == f"- {project_id} tides: Explain tides"
