"""SQLModel-backed task and artifact managers on SQLite."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import Column, DateTime, Text, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, Session, SQLModel, col, create_engine, select

from step_orchestrator.orchestrator.models import (
    Artifact,
    ArtifactDraft,
    Project,
    Task,
    TaskSpec,
    TaskStatus,
    TaskType,
    utc_now,
)
from step_orchestrator.store.base import RecordNotFoundError, content_checksum, rank_artifacts

DEFAULT_BUSY_TIMEOUT_MS = 5_000


class ProjectRow(SQLModel, table=True):
    __tablename__ = "projects"  # type: ignore[bad-override]

    project_id: str = Field(primary_key=True)
    name: str = Field(index=True)
    goal: str = Field(default="", sa_column=Column(Text, nullable=False, server_default=""))
    owner: str | None = None
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskRow(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]

    task_id: str = Field(primary_key=True)
    project_id: str = Field(foreign_key="projects.project_id", index=True)
    task_type: str = Field(index=True)
    description: str = Field(sa_column=Column(Text, nullable=False))
    sort_order: int = Field(default=0, index=True)
    assignee: str | None = None
    creator: str | None = None
    status: str = Field(index=True)
    props_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    depends_on_json: str = Field(default="[]", sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ArtifactRow(SQLModel, table=True):
    __tablename__ = "artifacts"  # type: ignore[bad-override]

    artifact_id: str = Field(primary_key=True)
    artifact_type: str = Field(index=True)
    subtype: str | None = None
    content: str = Field(sa_column=Column(Text, nullable=False))
    metadata_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    checksum: str = Field(index=True)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> Engine:
    """Build SQLAlchemy engine with WAL, busy timeout and foreign keys enabled."""

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


class SqlStore:
    """Owns the engine shared by the SQL task and artifact managers."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self.tasks = SqlTaskManager(self.engine)
        self.artifacts = SqlArtifactManager(self.engine)

    def init_schema(self) -> None:
        """Create missing tables. There are no migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        SQLModel.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()


class SqlTaskManager:
    """``TaskManager`` persisted in the ``projects`` and ``tasks`` tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

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
        row = ProjectRow(
            project_id=self.new_uuid(),
            name=name,
            goal=goal,
            owner=owner,
            metadata_json=json.dumps(metadata or {}, sort_keys=True),
            created_at=utc_now(),
        )
        with Session(self.engine) as session:
            session.add(row)
            session.commit()
            session.refresh(row)
            return _project_from_row(row)

    def get_project(self, project_id: str) -> Project:
        with Session(self.engine) as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                raise RecordNotFoundError(f"Project not found: {project_id}")
            return _project_from_row(row)

    def list_projects(self) -> list[Project]:
        with Session(self.engine) as session:
            rows = session.exec(select(ProjectRow).order_by(col(ProjectRow.created_at))).all()
            return [_project_from_row(row) for row in rows]

    def add_task(self, project_id: str, spec: TaskSpec) -> Task:
        now = utc_now()
        with Session(self.engine) as session:
            if session.get(ProjectRow, project_id) is None:
                raise RecordNotFoundError(f"Project not found: {project_id}")
            row = TaskRow(
                task_id=spec.id or self.new_uuid(),
                project_id=project_id,
                task_type=spec.type.value,
                description=spec.description,
                sort_order=spec.order,
                assignee=spec.assignee,
                creator=spec.creator,
                status=TaskStatus.NOT_STARTED.value,
                props_json=json.dumps(spec.props, sort_keys=True, default=str),
                depends_on_json=json.dumps(list(spec.depends_on)),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _task_from_row(row)

    def get_task(self, task_id: str) -> Task:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise RecordNotFoundError(f"Task not found: {task_id}")
            return _task_from_row(row)

    def get_project_tasks(self, project_id: str) -> list[Task]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TaskRow)
                .where(TaskRow.project_id == project_id)
                .order_by(col(TaskRow.sort_order), col(TaskRow.created_at)),
            ).all()
            return [_task_from_row(row) for row in rows]

    def update_task(self, task: Task) -> Task:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task.id)
            if row is None:
                raise RecordNotFoundError(f"Task not found: {task.id}")
            row.description = task.description
            row.sort_order = task.order
            row.assignee = task.assignee
            row.status = task.status.value
            row.props_json = json.dumps(task.props, sort_keys=True, default=str)
            row.depends_on_json = json.dumps(list(task.depends_on))
            row.updated_at = utc_now()
            session.add(row)
            session.commit()
            session.refresh(row)
            return _task_from_row(row)


class SqlArtifactManager:
    """``ArtifactManager`` persisted in the ``artifacts`` table."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def save_artifact(self, draft: ArtifactDraft) -> Artifact:
        checksum = content_checksum(draft.content)
        with Session(self.engine) as session:
            existing = session.exec(
                select(ArtifactRow).where(
                    ArtifactRow.checksum == checksum,
                    ArtifactRow.artifact_type == draft.type,
                ),
            ).first()
            if existing is not None:
                return _artifact_from_row(existing)
            row = ArtifactRow(
                artifact_id=uuid4().hex,
                artifact_type=draft.type,
                subtype=draft.subtype,
                content=draft.content,
                metadata_json=json.dumps(
                    {"generated_at": utc_now().isoformat(), **draft.metadata},
                    sort_keys=True,
                    default=str,
                ),
                checksum=checksum,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _artifact_from_row(row)

    def get_artifact(self, artifact_id: str) -> Artifact:
        with Session(self.engine) as session:
            row = session.get(ArtifactRow, artifact_id)
            if row is None:
                raise RecordNotFoundError(f"Artifact not found: {artifact_id}")
            return _artifact_from_row(row)

    def list_artifacts(self) -> list[Artifact]:
        with Session(self.engine) as session:
            rows = session.exec(select(ArtifactRow)).all()
            return [_artifact_from_row(row) for row in rows]

    def search_artifacts(self, query: str, *, limit: int = 3) -> list[Artifact]:
        return rank_artifacts(query, self.list_artifacts(), limit=limit)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _project_from_row(row: ProjectRow) -> Project:
    return Project(
        id=row.project_id,
        name=row.name,
        goal=row.goal,
        owner=row.owner,
        metadata=json.loads(row.metadata_json or "{}"),
        created_at=_as_utc(row.created_at),
    )


def _task_from_row(row: TaskRow) -> Task:
    return Task(
        id=row.task_id,
        project_id=row.project_id,
        type=TaskType(row.task_type),
        description=row.description,
        order=row.sort_order,
        assignee=row.assignee,
        creator=row.creator,
        status=TaskStatus(row.status),
        props=json.loads(row.props_json or "{}"),
        depends_on=tuple(json.loads(row.depends_on_json or "[]")),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
    )


def _artifact_from_row(row: ArtifactRow) -> Artifact:
    return Artifact(
        id=row.artifact_id,
        type=row.artifact_type,
        subtype=row.subtype,
        content=row.content,
        metadata=json.loads(row.metadata_json or "{}"),
        checksum=row.checksum,
    )
