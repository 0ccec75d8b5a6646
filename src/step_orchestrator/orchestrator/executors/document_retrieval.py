"""Retrieve stored documents that match the step goal."""

from __future__ import annotations

import logging

from step_orchestrator.orchestrator.executors.base import BaseStepExecutor
from step_orchestrator.orchestrator.models import (
    ExecuteParams,
    ExecutorType,
    ModelResponse,
    StepResult,
)

logger = logging.getLogger(__name__)

DEFAULT_MATCH_LIMIT = 3


class DocumentRetrievalExecutor(BaseStepExecutor):
    executor_type = ExecutorType.DOCUMENT_RETRIEVAL
    description = "Retrieve requested documents from the artifact store"

    async def execute(self, params: ExecuteParams) -> StepResult:
        query = params.step_goal or params.message
        matches = self.deps.artifact_manager.search_artifacts(query, limit=DEFAULT_MATCH_LIMIT)
        logger.info("Document search %r matched %d artifacts", query, len(matches))

        if matches:
            message = "\n\n".join(f"## {artifact.title}\n{artifact.content}" for artifact in matches)
        else:
            message = f"No stored documents matched: {query}"
        return StepResult(
            finished=True,
            response=ModelResponse(
                message=message,
                data={
                    "retrievedArtifactIds": [artifact.id for artifact in matches],
                    "searchQuery": query,
                },
            ),
            artifact_ids=tuple(artifact.id for artifact in matches),
        )
