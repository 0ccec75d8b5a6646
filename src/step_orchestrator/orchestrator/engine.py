"""Drive a project's plan one step at a time."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from step_orchestrator.llm.base import LlmService
from step_orchestrator.orchestrator.errors import PlanResponseError
from step_orchestrator.orchestrator.executors.base import ExecutorDeps
from step_orchestrator.orchestrator.failure_classifier import classify_step_failure
from step_orchestrator.orchestrator.models import (
    Artifact,
    ExecuteContext,
    ExecuteParams,
    ExecutionMode,
    ExecutorType,
    ReplanType,
    StepResult,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
)
from step_orchestrator.orchestrator.registry import ExecutorRegistry, build_default_registry
from step_orchestrator.orchestrator.retry import RetryOptions, Sleep, TaskThrottle
from step_orchestrator.orchestrator.sanitization import failure_details
from step_orchestrator.sandbox.bridge import SandboxBridge
from step_orchestrator.store.base import ArtifactManager, RecordNotFoundError, TaskManager

logger = logging.getLogger(__name__)

DEFAULT_AGENT_ID = "step-orchestrator"
DEFAULT_MAX_STEPS = 20
ELIGIBLE_STATUSES = frozenset(
    {TaskStatus.NOT_STARTED, TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS},
)


class AdvanceStatus(str, Enum):
    """What one ``plan_and_advance`` call achieved."""

    PLANNED = "planned"
    STEP_COMPLETED = "step_completed"
    STEP_IN_PROGRESS = "step_in_progress"
    STEP_BLOCKED = "step_blocked"
    STEP_FAILED = "step_failed"
    FINISHED = "finished"
    STALLED = "stalled"


CONTINUE_STATUSES = frozenset(
    {AdvanceStatus.PLANNED, AdvanceStatus.STEP_COMPLETED, AdvanceStatus.STEP_IN_PROGRESS},
)


@dataclass(slots=True)
class AdvanceOutcome:
    """Result of one advance, returned to the caller instead of raising."""

    status: AdvanceStatus
    project_id: str
    task: Task | None = None
    result: StepResult | None = None
    replan_suggested: bool = False
    replanned: bool = False
    error: dict[str, Any] | None = None
    stall_reason: str | None = None
    created_task_ids: list[str] = field(default_factory=list)

    @property
    def message(self) -> str | None:
        return self.result.response.message if self.result is not None else None

    def summary(self) -> str:
        parts = [self.status.value]
        if self.task is not None:
            parts.append(f"task={self.task.id}")
            if self.task.step_type:
                parts.append(f"type={self.task.step_type}")
        if self.created_task_ids:
            parts.append(f"created={len(self.created_task_ids)}")
        if self.replanned:
            parts.append("replanned")
        if self.replan_suggested:
            parts.append("replan_suggested")
        if self.error is not None:
            parts.append(f"failure={self.error.get('failure_class')}")
        if self.stall_reason:
            parts.append(f"reason={self.stall_reason}")
        return " ".join(parts)


def select_next_step(tasks: Sequence[Task]) -> Task | None:
    """Lowest-order open step whose dependencies are all complete.

    Dependency ids not present in ``tasks`` count as incomplete.
    """

    complete = {task.id for task in tasks if task.status == TaskStatus.COMPLETE}
    eligible = [
        task
        for task in tasks
        if task.type == TaskType.STEP
        and task.status in ELIGIBLE_STATUSES
        and all(dependency in complete for dependency in task.depends_on)
    ]
    return min(eligible, key=lambda task: (task.order, task.created_at), default=None)


def diagnose_stall(tasks: Sequence[Task]) -> str:
    """Explain why open steps cannot run."""

    by_id = {task.id: task for task in tasks}
    open_steps = [task for task in tasks if task.type == TaskType.STEP and task.is_open]
    cycle = _find_cycle(open_steps, by_id)
    if cycle:
        return "dependency cycle: " + " -> ".join(cycle)

    reasons = []
    for task in open_steps:
        for dependency in task.depends_on:
            upstream = by_id.get(dependency)
            if upstream is None:
                reasons.append(f"{task.id} waits on unknown task {dependency}")
            elif upstream.status != TaskStatus.COMPLETE:
                reasons.append(f"{task.id} waits on {dependency} ({upstream.status.value})")
    return "; ".join(reasons) or "no eligible step"


def _find_cycle(open_steps: Sequence[Task], by_id: dict[str, Task]) -> list[str]:
    visiting: list[str] = []
    done: set[str] = set()

    def _visit(task_id: str) -> list[str]:
        if task_id in visiting:
            return [*visiting[visiting.index(task_id) :], task_id]
        if task_id in done or task_id not in by_id:
            return []
        visiting.append(task_id)
        for dependency in by_id[task_id].depends_on:
            found = _visit(dependency)
            if found:
                return found
        visiting.pop()
        done.add(task_id)
        return []

    for task in open_steps:
        found = _visit(task.id)
        if found:
            return found
    return []


class StepOrchestrator:
    """Plan a project's goal into steps and execute them sequentially.

    Advances for one project are serialized by a per-project lock; different
    projects advance concurrently and share only the model backend.
    """

    def __init__(  # noqa: PLR0913
        self,
        task_manager: TaskManager,
        artifact_manager: ArtifactManager,
        llm: LlmService,
        registry: ExecutorRegistry | None = None,
        *,
        retry_options: RetryOptions | None = None,
        throttle: TaskThrottle | None = None,
        sleep: Sleep = asyncio.sleep,
        sandbox: SandboxBridge | None = None,
        agent_id: str = DEFAULT_AGENT_ID,
        execution_mode: ExecutionMode = ExecutionMode.CONVERSATION,
    ) -> None:
        self.task_manager = task_manager
        self.artifact_manager = artifact_manager
        self.registry = registry or build_default_registry()
        self.agent_id = agent_id
        self.execution_mode = execution_mode
        self.deps = ExecutorDeps(
            task_manager=task_manager,
            artifact_manager=artifact_manager,
            llm=llm,
            retry_options=retry_options or RetryOptions(),
            throttle=throttle,
            sleep=sleep,
            sandbox=sandbox,
            step_catalog=self.registry.describe_for_prompt(),
            known_step_types=self.registry.types,
        )
        self._locks: dict[str, asyncio.Lock] = {}

    async def run(
        self,
        project_id: str,
        message: str,
        *,
        max_steps: int = DEFAULT_MAX_STEPS,
    ) -> list[AdvanceOutcome]:
        """Advance until the project finishes, stops for input or fails."""

        outcomes: list[AdvanceOutcome] = []
        for _ in range(max_steps):
            outcome = await self.plan_and_advance(project_id, message)
            outcomes.append(outcome)
            if outcome.status not in CONTINUE_STATUSES:
                break
        else:
            logger.warning("Project %s stopped after %d advances", project_id, max_steps)
        return outcomes

    async def plan_and_advance(self, project_id: str, user_message: str) -> AdvanceOutcome:
        async with self._lock_for(project_id):
            self.task_manager.get_project(project_id)
            goal_task = self._active_goal(project_id)
            if goal_task is None:
                goal_task = self._open_goal(project_id, user_message)
            goal_task = self._record_message(goal_task, user_message)

            steps = self._goal_steps(project_id, goal_task)
            needs_plan = goal_task.status == TaskStatus.BLOCKED and not any(
                step.is_open for step in steps
            )
            if needs_plan or not any(step.status != TaskStatus.CANCELLED for step in steps):
                return await self._plan(goal_task, user_message, steps)

            next_step = select_next_step(steps)
            if next_step is None:
                return self._close_or_stall(goal_task, steps)
            return await self._advance_step(goal_task, next_step, user_message, steps)

    def _lock_for(self, project_id: str) -> asyncio.Lock:
        lock = self._locks.get(project_id)
        if lock is None:
            lock = self._locks[project_id] = asyncio.Lock()
        return lock

    def _active_goal(self, project_id: str) -> Task | None:
        goals = [
            task
            for task in self.task_manager.get_project_tasks(project_id)
            if task.type == TaskType.GOAL and task.is_open
        ]
        if len(goals) > 1:
            logger.warning("Project %s has %d open goal tasks; using the newest", project_id, len(goals))
        return max(goals, key=lambda task: task.created_at, default=None)

    def _open_goal(self, project_id: str, user_message: str) -> Task:
        goal_task = self.task_manager.add_task(
            project_id,
            TaskSpec(
                type=TaskType.GOAL,
                description=user_message,
                creator=self.agent_id,
                props={"stepType": ExecutorType.ESTABLISH_GOAL_AND_PLAN.value},
            ),
        )
        logger.info("Opened goal task %s for project %s", goal_task.id, project_id)
        return goal_task

    def _record_message(self, goal_task: Task, user_message: str) -> Task:
        messages = list(goal_task.props.get("messages") or [])
        if not messages or messages[-1] != user_message:
            messages.append(user_message)
            goal_task.props["messages"] = messages
            goal_task = self.task_manager.update_task(goal_task)
        return goal_task

    def _goal_steps(self, project_id: str, goal_task: Task) -> list[Task]:
        return [
            task
            for task in self.task_manager.get_project_tasks(project_id)
            if task.type == TaskType.STEP and task.props.get("goalTaskId") == goal_task.id
        ]

    async def _plan(
        self,
        goal_task: Task,
        user_message: str,
        steps: list[Task],
    ) -> AdvanceOutcome:
        goal_task.status = TaskStatus.IN_PROGRESS
        goal_task = self.task_manager.update_task(goal_task)
        try:
            created = await self._run_planner(goal_task, user_message, steps)
        except Exception as error:  # noqa: BLE001
            return self._fail(goal_task, error)

        goal_task = self.task_manager.get_task(goal_task.id)
        if not created:
            return self._fail(
                goal_task,
                PlanResponseError("Planning produced no steps"),
                status=AdvanceStatus.STALLED,
            )
        return AdvanceOutcome(
            status=AdvanceStatus.PLANNED,
            project_id=goal_task.project_id,
            task=goal_task,
            result=StepResult.from_dict(goal_task.props["result"]),
            created_task_ids=created,
        )

    async def _run_planner(
        self,
        goal_task: Task,
        user_message: str,
        steps: list[Task],
    ) -> list[str]:
        """Dispatch the planning executor and adopt the steps it created."""

        executor = self.registry.create(ExecutorType.ESTABLISH_GOAL_AND_PLAN.value, self.deps)
        params = self._build_params(
            goal_task,
            step=goal_task,
            user_message=user_message,
            steps=steps,
        )
        logger.info("Planning project %s", goal_task.project_id)
        result = await executor.execute(params)

        data = result.response.data or {}
        created_ids = [str(task_id) for task_id in data.get("createdTaskIds") or ()]
        offset = max((step.order for step in steps), default=-1) + 1
        for task_id in created_ids:
            task = self.task_manager.get_task(task_id)
            task.order += offset
            task.props["goalTaskId"] = goal_task.id
            self.task_manager.update_task(task)

        goal_task = self.task_manager.get_task(goal_task.id)
        if result.goal:
            goal_task.props["goal"] = result.goal
        goal_task.props["result"] = result.to_dict()
        goal_task.props.pop("error", None)
        if not created_ids:
            goal_task.status = TaskStatus.BLOCKED
        self.task_manager.update_task(goal_task)
        return created_ids

    def _close_or_stall(self, goal_task: Task, steps: list[Task]) -> AdvanceOutcome:
        if all(not step.is_open for step in steps):
            goal_task.status = TaskStatus.COMPLETE
            goal_task = self.task_manager.update_task(goal_task)
            logger.info("Project %s finished goal %s", goal_task.project_id, goal_task.id)
            last = _last_result(steps)
            return AdvanceOutcome(
                status=AdvanceStatus.FINISHED,
                project_id=goal_task.project_id,
                task=goal_task,
                result=last,
            )

        reason = diagnose_stall(steps)
        logger.warning("Project %s stalled: %s", goal_task.project_id, reason)
        return AdvanceOutcome(
            status=AdvanceStatus.STALLED,
            project_id=goal_task.project_id,
            task=goal_task,
            stall_reason=reason,
        )

    async def _advance_step(
        self,
        goal_task: Task,
        step: Task,
        user_message: str,
        steps: list[Task],
    ) -> AdvanceOutcome:
        try:
            executor = self.registry.create(step.step_type, self.deps)
        except Exception as error:  # noqa: BLE001
            return self._fail(step, error)

        step.status = TaskStatus.IN_PROGRESS
        step.props.pop("error", None)
        step.props["awaitingResponse"] = False
        step = self.task_manager.update_task(step)
        params = self._build_params(goal_task, step=step, user_message=user_message, steps=steps)

        logger.info("Executing step %s [%s]: %s", step.id, step.step_type, step.description)
        try:
            result = _coerce_result_flags(await executor.execute(params), step)
            result = self._store_artifacts(result)
        except Exception as error:  # noqa: BLE001
            return self._fail(step, error)

        step = self.task_manager.get_task(step.id)
        step.props["result"] = result.to_dict()
        if result.child_project_id:
            step.props["childProjectId"] = result.child_project_id
        if result.finished:
            step.status = TaskStatus.COMPLETE
            status = AdvanceStatus.STEP_COMPLETED
        elif result.needs_user_input:
            step.status = TaskStatus.BLOCKED
            step.props["awaitingResponse"] = True
            status = AdvanceStatus.STEP_BLOCKED
        else:
            status = AdvanceStatus.STEP_IN_PROGRESS
        step = self.task_manager.update_task(step)
        logger.info("Step %s -> %s", step.id, step.status.value)

        outcome = AdvanceOutcome(
            status=status,
            project_id=step.project_id,
            task=step,
            result=result,
            replan_suggested=result.replan == ReplanType.SUGGESTED,
        )
        if result.replan == ReplanType.REQUIRED:
            await self._replan(goal_task, user_message, outcome)
        return outcome

    async def _replan(self, goal_task: Task, user_message: str, outcome: AdvanceOutcome) -> None:
        steps = self._goal_steps(goal_task.project_id, goal_task)
        cancelled = 0
        for step in steps:
            if step.is_open:
                step.status = TaskStatus.CANCELLED
                self.task_manager.update_task(step)
                cancelled += 1
        logger.info("Replanning project %s; cancelled %d open steps", goal_task.project_id, cancelled)

        goal_task = self.task_manager.get_task(goal_task.id)
        steps = self._goal_steps(goal_task.project_id, goal_task)
        try:
            created = await self._run_planner(goal_task, user_message, steps)
        except Exception as error:  # noqa: BLE001
            failed = self._fail(self.task_manager.get_task(goal_task.id), error)
            outcome.status = AdvanceStatus.STEP_FAILED
            outcome.error = failed.error
            return
        if not created:
            failed = self._fail(
                self.task_manager.get_task(goal_task.id),
                PlanResponseError("Replanning produced no steps"),
                status=AdvanceStatus.STALLED,
            )
            outcome.status = AdvanceStatus.STALLED
            outcome.error = failed.error
            outcome.stall_reason = failed.stall_reason
            return
        outcome.replanned = True
        outcome.created_task_ids = created

    def _build_params(
        self,
        goal_task: Task,
        *,
        step: Task,
        user_message: str,
        steps: list[Task],
    ) -> ExecuteParams:
        completed = sorted(
            (task for task in steps if task.status == TaskStatus.COMPLETE and task.props.get("result")),
            key=lambda task: (task.order, task.created_at),
        )
        results = [StepResult.from_dict(task.props["result"]) for task in completed]
        return ExecuteParams(
            agent_id=self.agent_id,
            message=user_message,
            goal=str(goal_task.props.get("goal") or goal_task.description),
            step_goal=step.description,
            project_id=step.project_id,
            step_id=step.id,
            step_type=step.step_type,
            previous_responses=[result.response for result in results],
            steps=list(steps),
            execution_mode=self.execution_mode,
            context=ExecuteContext(
                artifacts=self._load_artifacts(results),
                thread_posts=[str(post) for post in goal_task.props.get("messages") or ()][:-1],
            ),
        )

    def _load_artifacts(self, results: list[StepResult]) -> list[Artifact]:
        artifacts: list[Artifact] = []
        seen: set[str] = set()
        for result in results:
            for artifact_id in result.artifact_ids:
                if artifact_id in seen:
                    continue
                seen.add(artifact_id)
                try:
                    artifacts.append(self.artifact_manager.get_artifact(artifact_id))
                except RecordNotFoundError:
                    logger.warning("Artifact %s referenced by a step result is gone", artifact_id)
        return artifacts

    def _store_artifacts(self, result: StepResult) -> StepResult:
        drafts = result.response.artifacts
        if not drafts:
            return result
        saved_ids = [self.artifact_manager.save_artifact(draft).id for draft in drafts]
        merged = tuple(dict.fromkeys([*result.artifact_ids, *saved_ids]))
        return replace(
            result,
            response=replace(result.response, artifacts=[]),
            artifact_ids=merged,
        )

    def _fail(
        self,
        task: Task,
        error: Exception,
        *,
        status: AdvanceStatus = AdvanceStatus.STEP_FAILED,
    ) -> AdvanceOutcome:
        executor = (task.step_type or "step").replace("-", "_")
        classification = classify_step_failure(error, executor=executor)
        details: dict[str, Any] = {
            **classification.to_details(),
            **failure_details(error),
        }
        logger.error(
            "Task %s failed (%s): %s",
            task.id,
            classification.failure_class.value,
            details["summary"],
            exc_info=error,
        )
        task.status = TaskStatus.BLOCKED
        task.props["error"] = details
        task = self.task_manager.update_task(task)
        return AdvanceOutcome(
            status=status,
            project_id=task.project_id,
            task=task,
            error=details,
            stall_reason=details["summary"] if status == AdvanceStatus.STALLED else None,
        )


def _coerce_result_flags(result: StepResult, step: Task) -> StepResult:
    if result.needs_user_input and result.finished:
        logger.warning(
            "Step %s reported finished while waiting for user input; keeping it open",
            step.id,
        )
        return replace(result, finished=False)
    return result


def _last_result(steps: list[Task]) -> StepResult | None:
    completed = [
        step for step in steps if step.status == TaskStatus.COMPLETE and step.props.get("result")
    ]
    if not completed:
        return None
    last = max(completed, key=lambda step: (step.order, step.created_at))
    return StepResult.from_dict(last.props["result"])

