"""Closed mapping from step type to executor factory."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from types import MappingProxyType

from step_orchestrator.orchestrator.errors import UnknownExecutorTypeError
from step_orchestrator.orchestrator.executors.base import ExecutorDeps, StepExecutor
from step_orchestrator.orchestrator.executors.code_execution import CodeExecutionExecutor
from step_orchestrator.orchestrator.executors.document_retrieval import DocumentRetrievalExecutor
from step_orchestrator.orchestrator.executors.final_response import FinalResponseExecutor
from step_orchestrator.orchestrator.executors.goal_and_plan import EstablishGoalAndPlanExecutor
from step_orchestrator.orchestrator.executors.thinking import ThinkingExecutor
from step_orchestrator.orchestrator.executors.validation import ValidationExecutor
from step_orchestrator.orchestrator.models import ExecutorType, normalize_step_type

ExecutorFactory = Callable[[ExecutorDeps], StepExecutor]


@dataclass(frozen=True, slots=True)
class ExecutorSpec:
    executor_type: ExecutorType
    factory: ExecutorFactory
    description: str


class ExecutorRegistry:
    """Immutable registry; built once and shared by every orchestrator."""

    def __init__(self, specs: Iterable[ExecutorSpec]) -> None:
        entries: dict[str, ExecutorSpec] = {}
        for spec in specs:
            key = spec.executor_type.value
            if key in entries:
                raise ValueError(f"Executor type registered twice: {key}")
            entries[key] = spec
        self._entries = MappingProxyType(entries)

    def __contains__(self, step_type: object) -> bool:
        return isinstance(step_type, str) and normalize_step_type(step_type) in self._entries

    def __iter__(self) -> Iterator[ExecutorSpec]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def types(self) -> frozenset[str]:
        return frozenset(self._entries)

    def resolve(self, step_type: str | None) -> ExecutorSpec:
        """Look up ``step_type``; ``[thinking]`` and ``thinking`` resolve alike."""

        key = normalize_step_type(step_type)
        try:
            return self._entries[key]
        except KeyError as error:
            raise UnknownExecutorTypeError(step_type or "") from error

    def create(self, step_type: str | None, deps: ExecutorDeps) -> StepExecutor:
        return self.resolve(step_type).factory(deps)

    def describe_for_prompt(self) -> str:
        """Bullet list of the types a plan may use."""

        return "\n".join(
            f"- [{spec.executor_type.value}]: {spec.description}"
            for spec in self._entries.values()
            if spec.executor_type != ExecutorType.ESTABLISH_GOAL_AND_PLAN
        )


def _spec(executor_cls: type) -> ExecutorSpec:
    return ExecutorSpec(
        executor_type=executor_cls.executor_type,
        factory=executor_cls,
        description=executor_cls.description,
    )


def build_default_registry() -> ExecutorRegistry:
    return ExecutorRegistry(
        _spec(executor_cls)
        for executor_cls in (
            EstablishGoalAndPlanExecutor,
            DocumentRetrievalExecutor,
            CodeExecutionExecutor,
            ThinkingExecutor,
            ValidationExecutor,
            FinalResponseExecutor,
        )
    )
