"""Step executors, one per ``ExecutorType``."""

from step_orchestrator.orchestrator.executors.base import (
    BaseStepExecutor,
    ExecutorDeps,
    StepExecutor,
)
from step_orchestrator.orchestrator.executors.code_execution import CodeExecutionExecutor
from step_orchestrator.orchestrator.executors.document_retrieval import DocumentRetrievalExecutor
from step_orchestrator.orchestrator.executors.final_response import FinalResponseExecutor
from step_orchestrator.orchestrator.executors.goal_and_plan import EstablishGoalAndPlanExecutor
from step_orchestrator.orchestrator.executors.thinking import ThinkingExecutor
from step_orchestrator.orchestrator.executors.validation import ValidationExecutor

__all__ = [
    "BaseStepExecutor",
    "CodeExecutionExecutor",
    "DocumentRetrievalExecutor",
    "EstablishGoalAndPlanExecutor",
    "ExecutorDeps",
    "FinalResponseExecutor",
    "StepExecutor",
    "ThinkingExecutor",
    "ValidationExecutor",
]
