"""Establish the goal and materialize the plan as step tasks."""

from __future__ import annotations

import logging

from step_orchestrator.orchestrator.executors.base import BaseStepExecutor, thread_posts_of
from step_orchestrator.orchestrator.models import (
    ExecuteParams,
    ExecutorType,
    ModelResponse,
    ReplanType,
    StepResult,
    TaskSpec,
    TaskType,
)
from step_orchestrator.orchestrator.prompts import (
    StructuredPrompt,
    render_plan,
    render_previous_responses,
)
from step_orchestrator.orchestrator.schemas import GOAL_AND_PLAN_SCHEMA

logger = logging.getLogger(__name__)

PLAN_CREATOR = "system"

_INSTRUCTIONS = """\
You plan work for a team of specialised steps.
Restate the user's goal in one sentence, then break it into an ordered plan.
Each plan entry has a short description and an actionType chosen from the
available step types. Avoid acronyms and ambiguous terminology.
End the plan with a final-response step when the user expects an answer."""


class EstablishGoalAndPlanExecutor(BaseStepExecutor):
    executor_type = ExecutorType.ESTABLISH_GOAL_AND_PLAN
    description = "Establish the goal and plan the steps to reach it"

    async def execute(self, params: ExecuteParams) -> StepResult:
        prompt = StructuredPrompt(instructions=_INSTRUCTIONS)
        prompt.add_section("Available step types", self.deps.step_catalog)
        if params.goal:
            prompt.add_section("Current goal", params.goal)
        prompt.add_section("Completed work", render_previous_responses(params.previous_responses))
        prompt.add_section("Existing plan", render_plan(params.steps))

        reply = await self.generate_structured(
            message=params.message,
            prompt=prompt,
            schema=GOAL_AND_PLAN_SCHEMA,
            thread_posts=thread_posts_of(params),
        )
        response = reply.value

        created_ids: list[str] = []
        if response.goal is None or response.plan is None:
            logger.warning(
                "Plan response for project %s is missing %s; no steps created",
                params.project_id,
                "goal" if response.goal is None else "plan",
            )
        else:
            for index, step in enumerate(response.plan):
                if self.deps.known_step_types and step.action_type not in self.deps.known_step_types:
                    logger.warning("Plan uses unregistered step type %r", step.action_type)
                task = self.deps.task_manager.add_task(
                    params.project_id,
                    TaskSpec(
                        type=TaskType.STEP,
                        description=step.description,
                        creator=PLAN_CREATOR,
                        order=index,
                        props={"stepType": step.action_type},
                    ),
                )
                created_ids.append(task.id)
            logger.info("Created %d plan steps for project %s", len(created_ids), params.project_id)

        return StepResult(
            finished=True,
            needs_user_input=False,
            replan=ReplanType.NONE,
            goal=response.goal,
            response=ModelResponse(
                message=response.message,
                data={"createdTaskIds": created_ids},
                usage=reply.usage,
            ),
        )
