"""Executor contract and the shared helper for structured model calls."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar, Generic, Protocol, TypeVar

from step_orchestrator.llm.base import GenerateRequest, LlmService
from step_orchestrator.orchestrator.models import (
    ExecuteParams,
    ExecutorType,
    StepResult,
    UsageMetrics,
)
from step_orchestrator.orchestrator.prompts import StructuredPrompt
from step_orchestrator.orchestrator.retry import (
    AttemptContext,
    RetryOptions,
    Sleep,
    TaskThrottle,
    with_retry,
)
from step_orchestrator.orchestrator.schemas import ResponseSchema
from step_orchestrator.store.base import ArtifactManager, TaskManager

if TYPE_CHECKING:
    from step_orchestrator.sandbox.bridge import SandboxBridge

T = TypeVar("T")


class StepExecutor(Protocol):
    """A unit of work bound to one step type."""

    async def execute(self, params: ExecuteParams) -> StepResult:
        """Run the step and report whether it finished."""


@dataclass(slots=True)
class ExecutorDeps:
    """Collaborators handed to every executor factory."""

    task_manager: TaskManager
    artifact_manager: ArtifactManager
    llm: LlmService
    retry_options: RetryOptions = field(default_factory=RetryOptions)
    throttle: TaskThrottle | None = None
    sleep: Sleep = asyncio.sleep
    sandbox: SandboxBridge | None = None
    step_catalog: str = ""
    known_step_types: frozenset[str] = frozenset()


@dataclass(slots=True)
class StructuredReply(Generic[T]):
    value: T
    usage: UsageMetrics | None
    attempts: int


class BaseStepExecutor:
    """Common plumbing for executors that talk to the model."""

    executor_type: ClassVar[ExecutorType]
    description: ClassVar[str]

    def __init__(self, deps: ExecutorDeps) -> None:
        self.deps = deps

    async def execute(self, params: ExecuteParams) -> StepResult:
        raise NotImplementedError

    async def generate_structured(
        self,
        *,
        message: str,
        prompt: StructuredPrompt | Callable[[AttemptContext[Any]], StructuredPrompt],
        schema: ResponseSchema[T],
        thread_posts: list[str] | None = None,
        validate: Callable[[T], bool] | None = None,
    ) -> StructuredReply[T]:
        """Ask for ``schema`` through ``with_retry``; schema mismatches count as failed attempts."""

        async def _attempt(context: AttemptContext[StructuredReply[T]]) -> StructuredReply[T]:
            instructions = prompt(context) if callable(prompt) else prompt
            if instructions.schema is None:
                instructions.schema = schema.json_schema
                instructions.schema_name = schema.name
            reply = await self.deps.llm.generate(
                GenerateRequest(
                    message=message,
                    instructions=instructions,
                    thread_posts=list(thread_posts or ()),
                ),
            )
            return StructuredReply(
                value=schema.parse(reply.payload),
                usage=reply.usage,
                attempts=context.attempt,
            )

        def _validate(reply: StructuredReply[T]) -> bool:
            return validate is None or validate(reply.value)

        return await with_retry(
            _attempt,
            _validate,
            self.deps.retry_options,
            throttle=self.deps.throttle,
            sleep=self.deps.sleep,
        )


def thread_posts_of(params: ExecuteParams) -> list[str]:
    return list(params.context.thread_posts) if params.context is not None else []
