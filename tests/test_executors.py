from __future__ import annotations

import asyncio
from typing import Any

import allure
import pytest

from step_orchestrator.orchestrator.errors import OrchestratorError, SandboxExecutionError
from step_orchestrator.orchestrator.executors import (
    CodeExecutionExecutor,
    DocumentRetrievalExecutor,
    ExecutorDeps,
    FinalResponseExecutor,
    ThinkingExecutor,
    ValidationExecutor,
)
from step_orchestrator.orchestrator.models import (
    ArtifactDraft,
    ExecuteContext,
    ExecuteParams,
    ExecutionMode,
    ModelResponse,
    ReplanType,
)
from step_orchestrator.orchestrator.retry import TaskThrottle
from step_orchestrator.orchestrator.schemas import SchemaError
from step_orchestrator.sandbox.bridge import SandboxResult

pytestmark = [
    allure.epic("Step Orchestration"),
    allure.feature("Executors"),
]


class _FakeSandbox:
    def __init__(self, outcomes: list[SandboxResult | BaseException]) -> None:
        self.outcomes = outcomes
        self.calls: list[tuple[str, list[dict[str, Any]]]] = []

    async def run(self, code: str, *, artifacts: list[dict[str, Any]] | None = None) -> SandboxResult:
        self.calls.append((code, list(artifacts or ())))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def _deps(task_manager, artifact_manager, llm, fast_retry, **extra) -> ExecutorDeps:
    return ExecutorDeps(
        task_manager=task_manager,
        artifact_manager=artifact_manager,
        llm=llm,
        retry_options=fast_retry,
        throttle=TaskThrottle(),
        **extra,
    )


def _params(**overrides) -> ExecuteParams:
    values: dict[str, Any] = {
        "agent_id": "tester",
        "message": "What is the weather like?",
        "goal": "Describe the weather",
        "step_goal": "Look up the forecast",
        "project_id": "project-1",
        "previous_responses": [ModelResponse(message="It rained yesterday")],
    }
    values.update(overrides)
    return ExecuteParams(**values)


def test_thinking_records_reasoning(task_manager, artifact_manager, scripted_llm, fast_retry) -> None:
    llm = scripted_llm({"thinking": [{"reasoning": "Clouds mean rain", "message": "Expect rain"}]})
    executor = ThinkingExecutor(_deps(task_manager, artifact_manager, llm, fast_retry))

    result = asyncio.run(executor.execute(_params()))

    assert result.finished is True
    assert result.response.message == "Expect rain"
    assert result.response.reasoning == "Clouds mean rain"
    prompt = llm.requests[0].render_prompt()
    assert "Step 1: It rained yesterday" in prompt
    assert prompt.endswith("## Request\nLook up the forecast")


def test_schema_mismatch_is_retried(task_manager, artifact_manager, scripted_llm, fast_retry) -> None:
    llm = scripted_llm(
        {
            "thinking": [
                {"message": "no reasoning field"},
                {"reasoning": "second try", "message": "ok"},
            ],
        },
    )
    executor = ThinkingExecutor(_deps(task_manager, artifact_manager, llm, fast_retry))

    result = asyncio.run(executor.execute(_params()))

    assert result.response.reasoning == "second try"
    assert len(llm.calls("thinking")) == 2


def test_schema_mismatch_exhausts_retries(task_manager, artifact_manager, scripted_llm, fast_retry) -> None:
    llm = scripted_llm({"thinking": [{"message": "never valid"}]})
    executor = ThinkingExecutor(_deps(task_manager, artifact_manager, llm, fast_retry))

    with pytest.raises(SchemaError, match="thinking.reasoning"):
        asyncio.run(executor.execute(_params()))

    assert len(llm.calls("thinking")) == fast_retry.max_attempts


def test_final_response_uses_previous_responses(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    llm = scripted_llm({"final_response": [{"message": "Bring an umbrella", "summary": "rain"}]})
    executor = FinalResponseExecutor(_deps(task_manager, artifact_manager, llm, fast_retry))

    result = asyncio.run(executor.execute(_params()))

    assert result.finished is True
    assert result.response.message == "Bring an umbrella"
    assert result.response.data == {"summary": "rain"}
    assert "## Step results\nStep 1: It rained yesterday" in llm.requests[0].render_prompt()


@pytest.mark.parametrize(
    ("verdict", "mode", "finished", "needs_input", "replan"),
    [
        ({"isComplete": True, "message": "done"}, ExecutionMode.CONVERSATION, True, False, "none"),
        (
            {"isComplete": False, "message": "wrong plan", "planIsWrong": True},
            ExecutionMode.TASK,
            True,
            False,
            "required",
        ),
        (
            {"isComplete": False, "message": "which city?", "missingAspects": ["city"]},
            ExecutionMode.CONVERSATION,
            False,
            True,
            "none",
        ),
        (
            {"isComplete": False, "message": "gaps", "missingAspects": ["city"]},
            ExecutionMode.TASK,
            True,
            False,
            "suggested",
        ),
    ],
)
def test_validation_verdict_mapping(  # noqa: PLR0913
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
    verdict,
    mode,
    finished,
    needs_input,
    replan,
) -> None:
    llm = scripted_llm({"validation": [verdict]})
    executor = ValidationExecutor(_deps(task_manager, artifact_manager, llm, fast_retry))

    result = asyncio.run(executor.execute(_params(execution_mode=mode)))

    assert result.finished is finished
    assert result.needs_user_input is needs_input
    assert result.replan == ReplanType(replan)
    if replan == "suggested":
        assert "- city" in result.response.message


def test_document_retrieval_returns_matching_artifacts(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    forecast = artifact_manager.save_artifact(
        ArtifactDraft(
            type="document",
            content="The forecast for Lisbon is sunny with light wind.",
            metadata={"title": "Lisbon forecast"},
        ),
    )
    artifact_manager.save_artifact(ArtifactDraft(type="document", content="Pasta recipe"))
    executor = DocumentRetrievalExecutor(
        _deps(task_manager, artifact_manager, scripted_llm(), fast_retry),
    )

    result = asyncio.run(executor.execute(_params(step_goal="Find the Lisbon forecast")))

    assert result.finished is True
    assert result.artifact_ids == (forecast.id,)
    assert "## Lisbon forecast" in result.response.message
    assert result.response.data["retrievedArtifactIds"] == [forecast.id]


def test_document_retrieval_without_matches(task_manager, artifact_manager, scripted_llm, fast_retry) -> None:
    executor = DocumentRetrievalExecutor(
        _deps(task_manager, artifact_manager, scripted_llm(), fast_retry),
    )

    result = asyncio.run(executor.execute(_params(step_goal="Find quarterly numbers")))

    assert result.artifact_ids == ()
    assert result.response.message == "No stored documents matched: Find quarterly numbers"


def test_code_execution_returns_result_and_new_artifacts(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    existing = artifact_manager.save_artifact(ArtifactDraft(type="document", content="1,2,3"))
    llm = scripted_llm(
        {"code_generation": [{"code": "provide_result(6)", "explanation": "Sums numbers"}]},
    )
    sandbox = _FakeSandbox(
        [
            SandboxResult(
                return_value=6,
                artifacts=[
                    {"id": existing.id, "type": "document", "content": "1,2,3"},
                    {"type": "report", "title": "Sum", "content": "Total: 6"},
                ],
                console_output="summing",
                generate_calls=0,
            ),
        ],
    )
    executor = CodeExecutionExecutor(
        _deps(task_manager, artifact_manager, llm, fast_retry, sandbox=sandbox),
    )

    result = asyncio.run(
        executor.execute(_params(context=ExecuteContext(artifacts=[existing]))),
    )

    assert result.finished is True
    assert result.response.data["result"] == 6
    assert result.response.data["console"] == "summing"
    assert "**Execution Result:**" in result.response.message
    assert [draft.content for draft in result.response.artifacts] == ["Total: 6"]
    assert result.response.artifacts[0].metadata["title"] == "Sum"
    assert result.response.artifacts[0].metadata["source"] == "code-execution"
    assert sandbox.calls[0][1][0]["id"] == existing.id


def test_code_execution_feeds_error_back_to_model(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    llm = scripted_llm(
        {
            "code_generation": [
                {"code": "provide_result(1/0)"},
                {"code": "provide_result(0)"},
            ],
        },
    )
    sandbox = _FakeSandbox(
        [
            SandboxExecutionError(
                "division by zero",
                console_output="about to divide",
                error_type="ZeroDivisionError",
            ),
            SandboxResult(return_value=0, artifacts=[], console_output="", generate_calls=0),
        ],
    )
    executor = CodeExecutionExecutor(
        _deps(task_manager, artifact_manager, llm, fast_retry, sandbox=sandbox),
    )

    result = asyncio.run(executor.execute(_params()))

    assert result.response.data["code"] == "provide_result(0)"
    retry_prompt = llm.requests[1].render_prompt()
    assert "## Previous attempt failed\ndivision by zero" in retry_prompt
    assert "about to divide" in retry_prompt


def test_code_execution_disallowed_import_is_not_retried(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    llm = scripted_llm({"code_generation": [{"code": "import os"}]})
    sandbox = _FakeSandbox(
        [SandboxExecutionError("Module os is not allowed", error_type="ModuleNotAllowedError")],
    )
    executor = CodeExecutionExecutor(
        _deps(task_manager, artifact_manager, llm, fast_retry, sandbox=sandbox),
    )

    with pytest.raises(SandboxExecutionError, match="not allowed"):
        asyncio.run(executor.execute(_params()))

    assert len(sandbox.calls) == 1


def test_code_execution_requires_sandbox(task_manager, artifact_manager, scripted_llm, fast_retry) -> None:
    executor = CodeExecutionExecutor(_deps(task_manager, artifact_manager, scripted_llm(), fast_retry))

    with pytest.raises(OrchestratorError, match="sandbox"):
        asyncio.run(executor.execute(_params()))
