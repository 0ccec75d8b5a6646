"""In-memory task and artifact managers."""

from __future__ import annotations

import copy
from dataclasses import replace
from typing import Any
from uuid import uuid4

from step_orchestrator.orchestrator.models import (
    Artifact,
    ArtifactDraft,
    Project,
    Task,
    TaskSpec,
    utc_now,
)
from step_orchestrator.store.base import RecordNotFoundError, content_checksum, rank_artifacts


class InMemoryTaskManager:
    """Dict-backed ``TaskManager``; returns copies so callers cannot mutate stored rows."""

    def __init__(self) -> None:
        self._projects: dict[str, Project] = {}
        self._tasks: dict[str, Task] = {}

    def new_uuid(self) -> str:
        return uuid4().hex

    def create_project(
        self,
        *,
        name: str,
        goal: str = "",
        owner: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Project:
        project = Project(
            id=self.new_uuid(),
            name=name,
            goal=goal,
            owner=owner,
            metadata=dict(metadata or {}),
        )
        self._projects[project.id] = project
        return replace(project)

    def get_project(self, project_id: str) -> Project:
        try:
            return replace(self._projects[project_id])
        except KeyError as error:
            raise RecordNotFoundError(f"Project not found: {project_id}") from error

    def list_projects(self) -> list[Project]:
        return [replace(project) for project in self._projects.values()]

    def add_task(self, project_id: str, spec: TaskSpec) -> Task:
        self.get_project(project_id)
        task = Task(
            id=spec.id or self.new_uuid(),
            project_id=project_id,
            type=spec.type,
            description=spec.description,
            order=spec.order,
            assignee=spec.assignee,
            creator=spec.creator,
            props=dict(spec.props),
            depends_on=tuple(spec.depends_on),
        )
        self._tasks[task.id] = task
        return _copy_task(task)

    def get_task(self, task_id: str) -> Task:
        try:
            return _copy_task(self._tasks[task_id])
        except KeyError as error:
            raise RecordNotFoundError(f"Task not found: {task_id}") from error

    def get_project_tasks(self, project_id: str) -> list[Task]:
        tasks = [task for task in self._tasks.values() if task.project_id == project_id]
        tasks.sort(key=lambda task: (task.order, task.created_at))
        return [_copy_task(task) for task in tasks]

    def update_task(self, task: Task) -> Task:
        if task.id not in self._tasks:
            raise RecordNotFoundError(f"Task not found: {task.id}")
        stored = _copy_task(task)
        stored.updated_at = utc_now()
        self._tasks[task.id] = stored
        return _copy_task(stored)


class InMemoryArtifactManager:
    """Dict-backed ``ArtifactManager``; identical content maps to one artifact."""

    def __init__(self, artifacts: list[Artifact] | None = None) -> None:
        self._artifacts: dict[str, Artifact] = {}
        for artifact in artifacts or ():
            self._artifacts[artifact.id] = artifact

    def save_artifact(self, draft: ArtifactDraft) -> Artifact:
        checksum = content_checksum(draft.content)
        for existing in self._artifacts.values():
            if existing.checksum == checksum and existing.type == draft.type:
                return existing
        artifact = Artifact(
            id=uuid4().hex,
            type=draft.type,
            subtype=draft.subtype,
            content=draft.content,
            metadata={"generated_at": utc_now().isoformat(), **draft.metadata},
            checksum=checksum,
        )
        self._artifacts[artifact.id] = artifact
        return artifact

    def get_artifact(self, artifact_id: str) -> Artifact:
        try:
            return self._artifacts[artifact_id]
        except KeyError as error:
            raise RecordNotFoundError(f"Artifact not found: {artifact_id}") from error

    def list_artifacts(self) -> list[Artifact]:
        return list(self._artifacts.values())

    def search_artifacts(self, query: str, *, limit: int = 3) -> list[Artifact]:
        return rank_artifacts(query, self._artifacts.values(), limit=limit)


def _copy_task(task: Task) -> Task:
    return replace(task, props=copy.deepcopy(task.props))

