from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any

import allure

from step_orchestrator.orchestrator.engine import (
    AdvanceStatus,
    StepOrchestrator,
    diagnose_stall,
    select_next_step,
)
from step_orchestrator.orchestrator.executors import ExecutorDeps
from step_orchestrator.orchestrator.models import (
    ExecuteParams,
    ExecutionMode,
    ExecutorType,
    ModelResponse,
    StepResult,
    Task,
    TaskStatus,
    TaskType,
)
from step_orchestrator.orchestrator.registry import ExecutorRegistry, ExecutorSpec, build_default_registry
from step_orchestrator.sandbox.bridge import SandboxResult

pytestmark = [
    allure.epic("Step Orchestration"),
    allure.feature("Orchestrator"),
]

PLAN_THINK_THEN_ANSWER = {
    "goal": "Explain tides",
    "message": "Planned",
    "plan": [
        {"description": "Reason about the moon", "actionType": "thinking"},
        {"description": "Answer the user", "actionType": "final-response"},
    ],
}


def _orchestrator(task_manager, artifact_manager, llm, fast_retry, **kwargs) -> StepOrchestrator:
    return StepOrchestrator(task_manager, artifact_manager, llm, retry_options=fast_retry, **kwargs)


def _step(task_id: str, *, order: int, status: TaskStatus = TaskStatus.NOT_STARTED, depends_on=()) -> Task:
    return Task(
        id=task_id,
        project_id="p",
        type=TaskType.STEP,
        description=task_id,
        order=order,
        status=status,
        depends_on=tuple(depends_on),
        props={"stepType": "thinking"},
    )


def test_select_next_step_respects_order_and_dependencies() -> None:
    first = _step("a", order=0, status=TaskStatus.COMPLETE)
    waiting = _step("b", order=1, depends_on=["c"])
    ready = _step("c", order=2, depends_on=["a"])
    later = _step("d", order=3)

    assert select_next_step([later, waiting, ready, first]) is ready


def test_select_next_step_ties_break_on_creation_time() -> None:
    older = _step("older", order=1)
    newer = _step("newer", order=1)
    newer.created_at = older.created_at + timedelta(seconds=1)

    assert select_next_step([newer, older]) is older


def test_select_next_step_treats_unknown_dependency_as_incomplete() -> None:
    orphan = _step("orphan", order=0, depends_on=["missing"])

    assert select_next_step([orphan]) is None
    assert diagnose_stall([orphan]) == "orphan waits on unknown task missing"


def test_select_next_step_reruns_blocked_and_in_progress_steps() -> None:
    blocked = _step("blocked", order=0, status=TaskStatus.BLOCKED)
    cancelled = _step("cancelled", order=-1, status=TaskStatus.CANCELLED)

    assert select_next_step([cancelled, blocked]) is blocked


def test_diagnose_stall_reports_dependency_cycle() -> None:
    a = _step("a", order=0, depends_on=["b"])
    b = _step("b", order=1, depends_on=["a"])

    assert select_next_step([a, b]) is None
    assert diagnose_stall([a, b]) == "dependency cycle: a -> b -> a"


def test_run_plans_then_executes_steps_in_order(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm(
        {
            "goal_and_plan": [PLAN_THINK_THEN_ANSWER],
            "thinking": [{"reasoning": "The moon pulls water", "message": "Gravity"}],
            "final_response": [{"message": "Tides come from the moon"}],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    outcomes = asyncio.run(orchestrator.run(project.id, "Why are there tides?"))

    assert [outcome.status for outcome in outcomes] == [
        AdvanceStatus.PLANNED,
        AdvanceStatus.STEP_COMPLETED,
        AdvanceStatus.STEP_COMPLETED,
        AdvanceStatus.FINISHED,
    ]
    assert outcomes[-1].message == "Tides come from the moon"
    tasks = task_manager.get_project_tasks(project.id)
    goal = next(task for task in tasks if task.type == TaskType.GOAL)
    steps = [task for task in tasks if task.type == TaskType.STEP]
    assert goal.status == TaskStatus.COMPLETE
    assert goal.props["goal"] == "Explain tides"
    assert goal.props["messages"] == ["Why are there tides?"]
    assert [step.status for step in steps] == [TaskStatus.COMPLETE, TaskStatus.COMPLETE]
    assert all(step.props["goalTaskId"] == goal.id for step in steps)
    assert "Step 1: Gravity" in llm.calls("final_response")[0].render_prompt()


def test_failed_step_is_blocked_with_classified_error_and_retried_later(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm(
        {
            "goal_and_plan": [PLAN_THINK_THEN_ANSWER],
            "thinking": [RuntimeError("429 Too Many Requests for key sk-abcdefghijklmnop")],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    outcomes = asyncio.run(orchestrator.run(project.id, "Why are there tides?"))

    failed = outcomes[-1]
    assert failed.status == AdvanceStatus.STEP_FAILED
    assert failed.error["failure_class"] == "backend_transient"
    assert failed.error["reason_code"] == "thinking_rate_limit_transient"
    assert "[redacted-token]" in failed.error["summary"]
    assert "sk-abcdefghijklmnop" not in failed.error["summary"]
    stored = task_manager.get_task(failed.task.id)
    assert stored.status == TaskStatus.BLOCKED
    assert stored.props["error"]["error_type"] == "RuntimeError"
    assert len(llm.calls("thinking")) == fast_retry.max_attempts

    llm.script["thinking"] = [{"reasoning": "Recovered"}]
    retried = asyncio.run(orchestrator.plan_and_advance(project.id, "Why are there tides?"))

    assert retried.status == AdvanceStatus.STEP_COMPLETED
    assert retried.task.id == failed.task.id
    assert "error" not in task_manager.get_task(failed.task.id).props


def test_validation_waiting_for_user_blocks_the_step(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="trip")
    llm = scripted_llm(
        {
            "goal_and_plan": [
                {
                    "goal": "Plan a trip",
                    "message": "ok",
                    "plan": [{"description": "Check details", "actionType": "validation"}],
                },
            ],
            "validation": [{"isComplete": False, "message": "Which city?", "missingAspects": ["city"]}],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    outcomes = asyncio.run(orchestrator.run(project.id, "Plan my trip"))

    assert outcomes[-1].status == AdvanceStatus.STEP_BLOCKED
    assert outcomes[-1].message == "Which city?"
    step = task_manager.get_task(outcomes[-1].task.id)
    assert step.status == TaskStatus.BLOCKED
    assert step.props["awaitingResponse"] is True


def test_finished_result_waiting_for_input_is_kept_open(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    class _ContradictoryExecutor:
        def __init__(self, deps: ExecutorDeps) -> None:
            self.deps = deps

        async def execute(self, params: ExecuteParams) -> StepResult:
            return StepResult(
                finished=True,
                needs_user_input=True,
                response=ModelResponse(message="Done, but tell me more"),
            )

    registry = ExecutorRegistry(
        [
            *(spec for spec in build_default_registry() if spec.executor_type != ExecutorType.THINKING),
            ExecutorSpec(ExecutorType.THINKING, _ContradictoryExecutor, "Contradicts itself"),
        ],
    )
    project = task_manager.create_project(name="tides")
    llm = scripted_llm({"goal_and_plan": [PLAN_THINK_THEN_ANSWER]})
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry, registry=registry)

    outcomes = asyncio.run(orchestrator.run(project.id, "Why are there tides?"))

    assert outcomes[-1].status == AdvanceStatus.STEP_BLOCKED
    assert outcomes[-1].result.finished is False
    assert task_manager.get_task(outcomes[-1].task.id).status == TaskStatus.BLOCKED


def test_required_replan_cancels_open_steps_and_appends_new_plan(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm(
        {
            "goal_and_plan": [
                {
                    "goal": "Explain tides",
                    "message": "first plan",
                    "plan": [
                        {"description": "Validate", "actionType": "validation"},
                        {"description": "Answer", "actionType": "final-response"},
                    ],
                },
                {
                    "goal": "Explain tides properly",
                    "message": "second plan",
                    "plan": [{"description": "Answer again", "actionType": "final-response"}],
                },
            ],
            "validation": [{"isComplete": False, "message": "Wrong approach", "planIsWrong": True}],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    asyncio.run(orchestrator.plan_and_advance(project.id, "Why are there tides?"))
    outcome = asyncio.run(orchestrator.plan_and_advance(project.id, "Why are there tides?"))

    assert outcome.status == AdvanceStatus.STEP_COMPLETED
    assert outcome.replanned is True
    assert len(outcome.created_task_ids) == 1
    steps = {
        task.description: task
        for task in task_manager.get_project_tasks(project.id)
        if task.type == TaskType.STEP
    }
    assert steps["Validate"].status == TaskStatus.COMPLETE
    assert steps["Answer"].status == TaskStatus.CANCELLED
    assert steps["Answer again"].status == TaskStatus.NOT_STARTED
    assert steps["Answer again"].order == 2
    assert steps["Answer again"].id == outcome.created_task_ids[0]


def test_suggested_replan_is_surfaced_without_changing_the_plan(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm(
        {
            "goal_and_plan": [
                {
                    "goal": "Explain tides",
                    "message": "ok",
                    "plan": [
                        {"description": "Validate", "actionType": "validation"},
                        {"description": "Answer", "actionType": "final-response"},
                    ],
                },
            ],
            "validation": [{"isComplete": False, "message": "gaps", "missingAspects": ["sun"]}],
        },
    )
    orchestrator = _orchestrator(
        task_manager,
        artifact_manager,
        llm,
        fast_retry,
        execution_mode=ExecutionMode.TASK,
    )

    asyncio.run(orchestrator.plan_and_advance(project.id, "Why are there tides?"))
    outcome = asyncio.run(orchestrator.plan_and_advance(project.id, "Why are there tides?"))

    assert outcome.status == AdvanceStatus.STEP_COMPLETED
    assert outcome.replan_suggested is True
    assert outcome.replanned is False
    assert len(llm.calls("goal_and_plan")) == 1
    assert "replan_suggested" in outcome.summary()


def test_empty_plan_stalls_and_blocks_the_goal_until_replanned(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm({"goal_and_plan": [{"goal": "Explain tides", "message": "?", "plan": []}]})
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    outcomes = asyncio.run(orchestrator.run(project.id, "Why are there tides?"))

    assert [outcome.status for outcome in outcomes] == [AdvanceStatus.STALLED]
    assert outcomes[0].error["failure_class"] == "plan_invalid"
    goal = task_manager.get_task(outcomes[0].task.id)
    assert goal.type == TaskType.GOAL
    assert goal.status == TaskStatus.BLOCKED

    llm.script["goal_and_plan"] = [PLAN_THINK_THEN_ANSWER]
    retried = asyncio.run(orchestrator.plan_and_advance(project.id, "Why are there tides?"))

    assert retried.status == AdvanceStatus.PLANNED
    assert len(retried.created_task_ids) == 2
    assert "error" not in task_manager.get_task(goal.id).props


def test_unknown_step_type_fails_the_step(task_manager, artifact_manager, scripted_llm, fast_retry) -> None:
    project = task_manager.create_project(name="dragons")
    llm = scripted_llm(
        {
            "goal_and_plan": [
                {
                    "goal": "Summon",
                    "message": "ok",
                    "plan": [{"description": "Summon a dragon", "actionType": "summon-dragons"}],
                },
            ],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    outcomes = asyncio.run(orchestrator.run(project.id, "Summon a dragon"))

    assert outcomes[-1].status == AdvanceStatus.STEP_FAILED
    assert outcomes[-1].error["failure_class"] == "unknown_executor"
    assert outcomes[-1].error["reason_code"] == "summon_dragons_unknown_executor"
    assert task_manager.get_task(outcomes[-1].task.id).status == TaskStatus.BLOCKED


def test_new_message_after_completion_opens_a_new_goal(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm(
        {
            "goal_and_plan": [PLAN_THINK_THEN_ANSWER],
            "thinking": [{"reasoning": "Moon"}],
            "final_response": [{"message": "Moon"}],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    asyncio.run(orchestrator.run(project.id, "Why are there tides?"))
    follow_up = asyncio.run(orchestrator.plan_and_advance(project.id, "And on Mars?"))

    goals = [task for task in task_manager.get_project_tasks(project.id) if task.type == TaskType.GOAL]
    assert follow_up.status == AdvanceStatus.PLANNED
    assert sorted(goal.status for goal in goals) == sorted([TaskStatus.COMPLETE, TaskStatus.IN_PROGRESS])
    assert follow_up.task.props["messages"] == ["And on Mars?"]


def test_follow_up_message_is_recorded_as_thread_history(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm(
        {
            "goal_and_plan": [PLAN_THINK_THEN_ANSWER],
            "thinking": [{"reasoning": "Moon"}],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    asyncio.run(orchestrator.plan_and_advance(project.id, "Why are there tides?"))
    asyncio.run(orchestrator.plan_and_advance(project.id, "Keep it short"))

    thinking_request = llm.calls("thinking")[0]
    assert thinking_request.thread_posts == ["Why are there tides?"]


def test_code_step_artifacts_are_stored_and_passed_on(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    class _Sandbox:
        async def run(self, code: str, *, artifacts: list[dict[str, Any]] | None = None) -> SandboxResult:
            return SandboxResult(
                return_value=6,
                artifacts=[{"type": "report", "title": "Sum", "content": "Total: 6"}],
                console_output="",
                generate_calls=0,
            )

    project = task_manager.create_project(name="math")
    llm = scripted_llm(
        {
            "goal_and_plan": [
                {
                    "goal": "Add numbers",
                    "message": "ok",
                    "plan": [
                        {"description": "Sum the numbers", "actionType": "code-execution"},
                        {"description": "Report", "actionType": "final-response"},
                    ],
                },
            ],
            "code_generation": [{"code": "provide_result(6)"}],
            "final_response": [{"message": "The total is 6"}],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry, sandbox=_Sandbox())

    outcomes = asyncio.run(orchestrator.run(project.id, "Add 1, 2 and 3"))

    code_outcome = outcomes[1]
    (artifact_id,) = code_outcome.result.artifact_ids
    assert artifact_manager.get_artifact(artifact_id).content == "Total: 6"
    assert code_outcome.result.response.artifacts == []
    stored = task_manager.get_task(code_outcome.task.id)
    assert stored.props["result"]["artifactIds"] == [artifact_id]
    assert f"### Sum ({artifact_id})" in llm.calls("final_response")[0].render_prompt()
    assert outcomes[-1].status == AdvanceStatus.FINISHED


class _ConcurrencyCounter:
    """Answers planning requests slowly and records how many overlap."""

    def __init__(self, inner) -> None:
        self.inner = inner
        self.active = 0
        self.max_active = 0

    async def generate(self, request):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0.02)
            return await self.inner.generate(request)
        finally:
            self.active -= 1


def test_advances_for_one_project_are_serialized(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    project = task_manager.create_project(name="tides")
    counter = _ConcurrencyCounter(
        scripted_llm(
            {
                "goal_and_plan": [PLAN_THINK_THEN_ANSWER],
                "thinking": [{"reasoning": "Moon"}],
            },
        ),
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, counter, fast_retry)

    async def _scenario():
        return await asyncio.gather(
            orchestrator.plan_and_advance(project.id, "Why are there tides?"),
            orchestrator.plan_and_advance(project.id, "Why are there tides?"),
        )

    first, second = asyncio.run(_scenario())

    assert counter.max_active == 1
    assert first.status == AdvanceStatus.PLANNED
    assert second.status == AdvanceStatus.STEP_COMPLETED
    goals = [task for task in task_manager.get_project_tasks(project.id) if task.type == TaskType.GOAL]
    assert len(goals) == 1


def test_different_projects_advance_concurrently(
    task_manager,
    artifact_manager,
    scripted_llm,
    fast_retry,
) -> None:
    first_project = task_manager.create_project(name="one")
    second_project = task_manager.create_project(name="two")
    counter = _ConcurrencyCounter(scripted_llm({"goal_and_plan": [PLAN_THINK_THEN_ANSWER]}))
    orchestrator = _orchestrator(task_manager, artifact_manager, counter, fast_retry)

    async def _scenario():
        return await asyncio.gather(
            orchestrator.plan_and_advance(first_project.id, "Why are there tides?"),
            orchestrator.plan_and_advance(second_project.id, "Why are there tides?"),
        )

    outcomes = asyncio.run(_scenario())

    assert counter.max_active == 2
    assert [outcome.status for outcome in outcomes] == [AdvanceStatus.PLANNED, AdvanceStatus.PLANNED]


def test_run_stops_after_max_steps(task_manager, artifact_manager, scripted_llm, fast_retry) -> None:
    project = task_manager.create_project(name="tides")
    llm = scripted_llm(
        {
            "goal_and_plan": [PLAN_THINK_THEN_ANSWER],
            "thinking": [{"reasoning": "Moon"}],
        },
    )
    orchestrator = _orchestrator(task_manager, artifact_manager, llm, fast_retry)

    outcomes = asyncio.run(orchestrator.run(project.id, "Why are there tides?", max_steps=2))

    assert [outcome.status for outcome in outcomes] == [
        AdvanceStatus.PLANNED,
        AdvanceStatus.STEP_COMPLETED,
    ]
