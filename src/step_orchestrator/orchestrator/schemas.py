"""Tagged response schemas, one per model-backed executor type."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

from step_orchestrator.orchestrator.models import ExecutorType, normalize_step_type

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SchemaError(ValueError):
    """Model payload does not match the expected response schema."""


@dataclass(slots=True)
class PlanStep:
    description: str
    action_type: str


@dataclass(slots=True)
class GoalAndPlanResponse:
    message: str
    goal: str | None
    plan: list[PlanStep] | None


@dataclass(slots=True)
class CodeGenerationResponse:
    code: str
    explanation: str


@dataclass(slots=True)
class ThinkingResponse:
    reasoning: str
    message: str


@dataclass(slots=True)
class ValidationVerdict:
    is_complete: bool
    message: str
    missing_aspects: list[str] = field(default_factory=list)
    plan_is_wrong: bool = False


@dataclass(slots=True)
class FinalResponse:
    message: str
    summary: str | None = None


@dataclass(frozen=True, slots=True)
class ResponseSchema(Generic[T]):
    """JSON schema sent to the model together with its typed parser."""

    name: str
    json_schema: dict[str, Any]
    parser: Callable[[dict[str, Any]], T]

    def parse(self, payload: Any) -> T:
        if not isinstance(payload, dict):
            raise SchemaError(f"{self.name}: expected a JSON object, got {type(payload).__name__}")
        return self.parser(payload)


def _require_str(payload: dict[str, Any], key: str, *, schema: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        raise SchemaError(f"{schema}.{key} must be a non-empty string")
    return value


def _optional_str(payload: dict[str, Any], key: str, *, schema: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise SchemaError(f"{schema}.{key} must be a string when provided")
    return value


def _parse_goal_and_plan(payload: dict[str, Any]) -> GoalAndPlanResponse:
    goal = payload.get("goal")
    message = payload.get("message")
    raw_plan = payload.get("plan")

    plan: list[PlanStep] | None = None
    if isinstance(raw_plan, list):
        plan = []
        for index, item in enumerate(raw_plan):
            if not isinstance(item, dict):
                logger.warning("Skipping plan entry %d: not an object", index)
                continue
            description = item.get("description")
            action_type = normalize_step_type(item.get("actionType"))
            if not isinstance(description, str) or not description.strip() or not action_type:
                logger.warning("Skipping plan entry %d: missing description or actionType", index)
                continue
            plan.append(PlanStep(description=description.strip(), action_type=action_type))
    elif raw_plan is not None:
        logger.warning("Ignoring plan of type %s", type(raw_plan).__name__)

    return GoalAndPlanResponse(
        message=message if isinstance(message, str) else "",
        goal=goal if isinstance(goal, str) and goal.strip() else None,
        plan=plan,
    )


def _parse_code_generation(payload: dict[str, Any]) -> CodeGenerationResponse:
    return CodeGenerationResponse(
        code=_require_str(payload, "code", schema="code_generation"),
        explanation=_optional_str(payload, "explanation", schema="code_generation") or "",
    )


def _parse_thinking(payload: dict[str, Any]) -> ThinkingResponse:
    reasoning = _require_str(payload, "reasoning", schema="thinking")
    return ThinkingResponse(
        reasoning=reasoning,
        message=_optional_str(payload, "message", schema="thinking") or reasoning,
    )


def _parse_validation(payload: dict[str, Any]) -> ValidationVerdict:
    is_complete = payload.get("isComplete")
    if not isinstance(is_complete, bool):
        raise SchemaError("validation.isComplete must be a boolean")
    missing = payload.get("missingAspects", [])
    if not isinstance(missing, list) or not all(isinstance(item, str) for item in missing):
        raise SchemaError("validation.missingAspects must be an array of strings")
    plan_is_wrong = payload.get("planIsWrong", False)
    if not isinstance(plan_is_wrong, bool):
        raise SchemaError("validation.planIsWrong must be a boolean")
    return ValidationVerdict(
        is_complete=is_complete,
        message=_optional_str(payload, "message", schema="validation") or "",
        missing_aspects=list(missing),
        plan_is_wrong=plan_is_wrong,
    )


def _parse_final_response(payload: dict[str, Any]) -> FinalResponse:
    return FinalResponse(
        message=_require_str(payload, "message", schema="final_response"),
        summary=_optional_str(payload, "summary", schema="final_response"),
    )


GOAL_AND_PLAN_SCHEMA: ResponseSchema[GoalAndPlanResponse] = ResponseSchema(
    name="goal_and_plan",
    json_schema={
        "type": "object",
        "properties": {
            "goal": {"type": "string", "description": "The user's goal restated"},
            "message": {"type": "string", "description": "Reply shown to the user"},
            "plan": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "description": {"type": "string"},
                        "actionType": {"type": "string"},
                    },
                    "required": ["description", "actionType"],
                },
            },
        },
        "required": ["goal", "message", "plan"],
    },
    parser=_parse_goal_and_plan,
)

CODE_GENERATION_SCHEMA: ResponseSchema[CodeGenerationResponse] = ResponseSchema(
    name="code_generation",
    json_schema={
        "type": "object",
        "properties": {
            "code": {"type": "string", "description": "Python code to execute"},
            "explanation": {"type": "string", "description": "What the code does"},
        },
        "required": ["code", "explanation"],
    },
    parser=_parse_code_generation,
)

THINKING_SCHEMA: ResponseSchema[ThinkingResponse] = ResponseSchema(
    name="thinking",
    json_schema={
        "type": "object",
        "properties": {
            "reasoning": {"type": "string"},
            "message": {"type": "string"},
        },
        "required": ["reasoning"],
    },
    parser=_parse_thinking,
)

VALIDATION_SCHEMA: ResponseSchema[ValidationVerdict] = ResponseSchema(
    name="validation",
    json_schema={
        "type": "object",
        "properties": {
            "isComplete": {"type": "boolean"},
            "message": {"type": "string"},
            "missingAspects": {"type": "array", "items": {"type": "string"}},
            "planIsWrong": {"type": "boolean"},
        },
        "required": ["isComplete", "message"],
    },
    parser=_parse_validation,
)

FINAL_RESPONSE_SCHEMA: ResponseSchema[FinalResponse] = ResponseSchema(
    name="final_response",
    json_schema={
        "type": "object",
        "properties": {
            "message": {"type": "string"},
            "summary": {"type": "string"},
        },
        "required": ["message"],
    },
    parser=_parse_final_response,
)

SCHEMAS_BY_EXECUTOR: dict[ExecutorType, ResponseSchema[Any]] = {
    ExecutorType.ESTABLISH_GOAL_AND_PLAN: GOAL_AND_PLAN_SCHEMA,
    ExecutorType.CODE_EXECUTION: CODE_GENERATION_SCHEMA,
    ExecutorType.THINKING: THINKING_SCHEMA,
    ExecutorType.VALIDATION: VALIDATION_SCHEMA,
    ExecutorType.FINAL_RESPONSE: FINAL_RESPONSE_SCHEMA,
}
