"""Single reasoning pass over the step goal."""

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
from step_orchestrator.orchestrator.schemas import THINKING_SCHEMA

_INSTRUCTIONS = """\
Think the current step through carefully before anyone acts on it.
Use the overall goal and the results of earlier steps. Put your chain of
reasoning in `reasoning` and a short conclusion for the next step in `message`."""


class ThinkingExecutor(BaseStepExecutor):
    executor_type = ExecutorType.THINKING
    description = "Reason through a problem and record the conclusion"

    async def execute(self, params: ExecuteParams) -> StepResult:
        prompt = StructuredPrompt(instructions=_INSTRUCTIONS)
        prompt.add_section("Overall goal", params.goal)
        prompt.add_section("Earlier results", render_previous_responses(params.previous_responses))
        if params.context is not None:
            prompt.add_section("Artifacts", render_artifact_excerpts(params.context.artifacts))

        reply = await self.generate_structured(
            message=params.step_goal,
            prompt=prompt,
            schema=THINKING_SCHEMA,
            thread_posts=thread_posts_of(params),
        )
        return StepResult(
            finished=True,
            response=ModelResponse(
                message=reply.value.message,
                reasoning=reply.value.reasoning,
                usage=reply.usage,
            ),
        )
