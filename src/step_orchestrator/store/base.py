"""Task and artifact manager interfaces consumed by the orchestrator."""

from __future__ import annotations

import hashlib
from collections.abc import Iterable
from typing import Any, Protocol

from step_orchestrator.orchestrator.models import (
    Artifact,
    ArtifactDraft,
    Project,
    Task,
    TaskSpec,
)

MIN_KEYWORD_TOKEN_LENGTH = 3


class RecordNotFoundError(LookupError):
    """Requested project, task or artifact does not exist."""


class TaskManager(Protocol):
    """CRUD over projects and tasks."""

    def new_uuid(self) -> str: ...

    def create_project(
        self,
        *,
        name: str,
        goal: str = "",
        owner: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Project: ...

    def get_project(self, project_id: str) -> Project: ...

    def list_projects(self) -> list[Project]: ...

    def add_task(self, project_id: str, spec: TaskSpec) -> Task: ...

    def get_task(self, task_id: str) -> Task: ...

    def get_project_tasks(self, project_id: str) -> list[Task]: ...

    def update_task(self, task: Task) -> Task:
        """Persist status, props and dependencies; bumps ``updated_at``."""


class ArtifactManager(Protocol):
    """Content-addressed blob store."""

    def save_artifact(self, draft: ArtifactDraft) -> Artifact: ...

    def get_artifact(self, artifact_id: str) -> Artifact: ...

    def list_artifacts(self) -> list[Artifact]: ...

    def search_artifacts(self, query: str, *, limit: int = 3) -> list[Artifact]: ...


def content_checksum(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def keyword_tokens(text: str) -> set[str]:
    parts = [token.strip(".,:;!?()[]{}\"'`").lower() for token in text.split()]
    return {token for token in parts if len(token) >= MIN_KEYWORD_TOKEN_LENGTH}


def rank_artifacts(query: str, artifacts: Iterable[Artifact], *, limit: int) -> list[Artifact]:
    """Order artifacts by keyword overlap with ``query``; drop non-matching ones."""

    wanted = keyword_tokens(query)
    if not wanted:
        return []
    scored: list[tuple[int, str, Artifact]] = []
    for artifact in artifacts:
        haystack = keyword_tokens(f"{artifact.title} {artifact.content}")
        score = len(wanted & haystack)
        if score:
            scored.append((score, artifact.id, artifact))
    scored.sort(key=lambda item: (-item[0], item[1]))
    return [artifact for _, _, artifact in scored[:limit]]
