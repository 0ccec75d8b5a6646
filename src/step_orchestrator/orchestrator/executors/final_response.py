"""Synthesize earlier step results into the answer shown to the user."""

from __future__ import annotations

from step_orchestrator.orchestrator.executors.base import BaseStepExecutor, thread_posts_of
from step_orchestrator.orchestrator.models import (
    ExecuteParams,
    ExecutorType,
    ModelResponse,
    StepResult,
)
from step_orchestrator.orchestrator.prompts import (
    StructuredPrompt,
    render_artifact_excerpts,
    render_previous_responses,
)
from step_orchestrator.orchestrator.schemas import FINAL_RESPONSE_SCHEMA

_INSTRUCTIONS = """\
Write the final response for the user. Combine the results of all earlier
steps into one clear answer that addresses the overall goal and name the
sources you relied on."""


class FinalResponseExecutor(BaseStepExecutor):
    executor_type = ExecutorType.FINAL_RESPONSE
    description = "Provide the final response to the user (put at the end of the plan)"

    async def execute(self, params: ExecuteParams) -> StepResult:
        prompt = StructuredPrompt(instructions=_INSTRUCTIONS)
        prompt.add_section("Overall goal", params.goal)
        prompt.add_section("Step goal", params.step_goal)
        prompt.add_section("Step results", render_previous_responses(params.previous_responses))
        if params.context is not None:
            prompt.add_section("Artifacts", render_artifact_excerpts(params.context.artifacts))

        reply = await self.generate_structured(
            message=params.message or params.step_goal,
            prompt=prompt,
            schema=FINAL_RESPONSE_SCHEMA,
            thread_posts=thread_posts_of(params),
        )
        data = {"summary": reply.value.summary} if reply.value.summary else None
        return StepResult(
            finished=True,
            response=ModelResponse(message=reply.value.message, data=data, usage=reply.usage),
        )
