"""Check whether the work so far addresses the goal."""

from __future__ import annotations

from step_orchestrator.orchestrator.executors.base import BaseStepExecutor, thread_posts_of
from step_orchestrator.orchestrator.models import (
    ExecuteParams,
    ExecutionMode,
    ExecutorType,
    ModelResponse,
    ReplanType,
    StepResult,
)
from step_orchestrator.orchestrator.prompts import StructuredPrompt, render_previous_responses
from step_orchestrator.orchestrator.schemas import VALIDATION_SCHEMA

_INSTRUCTIONS = """\
Decide whether the previous steps reasonably address the original goal and
whether their reasoning is sound. Set isComplete accordingly. When something
is missing, list each missing aspect. Set planIsWrong only when the remaining
plan cannot reach the goal and must be rebuilt."""

_TASK_MODE_NOTE = (
    "No user is available to answer questions, so be lenient and only flag gaps "
    "that more work could close."
)


class ValidationExecutor(BaseStepExecutor):
    executor_type = ExecutorType.VALIDATION
    description = "Verify the work addresses the goal before the final response"

    async def execute(self, params: ExecuteParams) -> StepResult:
        prompt = StructuredPrompt(instructions=_INSTRUCTIONS)
        prompt.add_section("Original goal", params.goal)
        prompt.add_section(
            "Previous results",
            render_previous_responses(params.previous_responses) or "No previous results",
        )
        if params.execution_mode == ExecutionMode.TASK:
            prompt.add_section("Mode", _TASK_MODE_NOTE)

        reply = await self.generate_structured(
            message="Validate solution completeness",
            prompt=prompt,
            schema=VALIDATION_SCHEMA,
            thread_posts=thread_posts_of(params),
        )
        verdict = reply.value
        data = {"isComplete": verdict.is_complete, "missingAspects": verdict.missing_aspects}

        if verdict.is_complete:
            return StepResult(
                finished=True,
                response=ModelResponse(message=verdict.message, data=data, usage=reply.usage),
            )

        if verdict.plan_is_wrong:
            return StepResult(
                finished=True,
                replan=ReplanType.REQUIRED,
                response=ModelResponse(message=verdict.message, data=data, usage=reply.usage),
            )

        if params.execution_mode == ExecutionMode.CONVERSATION:
            return StepResult(
                finished=False,
                needs_user_input=True,
                response=ModelResponse(message=verdict.message, data=data, usage=reply.usage),
            )

        missing = "\n".join(f"- {aspect}" for aspect in verdict.missing_aspects)
        return StepResult(
            finished=True,
            replan=ReplanType.SUGGESTED,
            response=ModelResponse(
                message=(
                    "Validation completed in task mode. Some aspects need attention:\n"
                    f"{missing}\nContinuing with next steps."
                ),
                data=data,
                usage=reply.usage,
            ),
        )
