"""Domain models for projects, plan steps and executor results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


class TaskType(str, Enum):
    """Kinds of trackable work."""

    GOAL = "goal"
    STEP = "step"
    STANDARD = "standard"
    RECURRING = "recurring"


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


OPEN_STATUSES = frozenset(
    {TaskStatus.NOT_STARTED, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED},
)
CLOSED_STATUSES = frozenset({TaskStatus.COMPLETE, TaskStatus.CANCELLED})


class ReplanType(str, Enum):
    """Executor signal about the remaining plan."""

    NONE = "none"
    REQUIRED = "required"
    SUGGESTED = "suggested"


class ExecutorType(str, Enum):
    """Closed set of step types a plan may use."""

    ESTABLISH_GOAL_AND_PLAN = "establish-goal-and-plan"
    DOCUMENT_RETRIEVAL = "document-retrieval"
    CODE_EXECUTION = "code-execution"
    THINKING = "thinking"
    VALIDATION = "validation"
    FINAL_RESPONSE = "final-response"


class ExecutionMode(str, Enum):
    """Whether a user is present to answer follow-up questions."""

    CONVERSATION = "conversation"
    TASK = "task"


class FailureClass(str, Enum):
    """Normalized failure classes recorded on blocked steps."""

    TIMEOUT = "timeout"
    VALIDATION_FAILED = "validation_failed"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    UNKNOWN_EXECUTOR = "unknown_executor"
    PLAN_INVALID = "plan_invalid"
    MODULE_NOT_ALLOWED = "module_not_allowed"
    SANDBOX_RUNTIME = "sandbox_runtime"


def normalize_step_type(value: object) -> str:
    """Strip whitespace and the square brackets models like to wrap tags in."""

    if not isinstance(value, str) or not value:
        return ""
    return value.strip().strip("[]").strip()


@dataclass(slots=True)
class Task:
    """A unit of trackable work inside a project."""

    id: str
    project_id: str
    type: TaskType
    description: str
    order: int = 0
    assignee: str | None = None
    creator: str | None = None
    status: TaskStatus = TaskStatus.NOT_STARTED
    props: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def step_type(self) -> str:
        return normalize_step_type(self.props.get("stepType"))

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES


@dataclass(slots=True)
class TaskSpec:
    """Input payload for ``TaskManager.add_task``."""

    type: TaskType
    description: str
    order: int = 0
    creator: str | None = None
    assignee: str | None = None
    props: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    id: str | None = None


@dataclass(slots=True)
class Project:
    """Named collection of tasks with one driving goal."""

    id: str
    name: str
    goal: str = ""
    owner: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class Artifact:
    """Content blob owned by the artifact store."""

    id: str
    type: str
    content: str
    subtype: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    checksum: str | None = None

    @property
    def title(self) -> str:
        return str(self.metadata.get("title") or self.id)


@dataclass(slots=True)
class ArtifactDraft:
    """Artifact content produced by a step and not yet stored."""

    type: str
    content: str
    subtype: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class UsageMetrics:
    """Token usage reported by the model backend."""

    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None

    def to_dict(self) -> dict[str, int | None]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(slots=True)
class ModelResponse:
    """Message text plus optional structured payload from one step."""

    message: str
    data: dict[str, Any] | None = None
    usage: UsageMetrics | None = None
    status: str | None = None
    reasoning: str | None = None
    artifacts: list[ArtifactDraft] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"message": self.message}
        if self.data is not None:
            payload["data"] = self.data
        if self.usage is not None:
            payload["usage"] = self.usage.to_dict()
        if self.status is not None:
            payload["status"] = self.status
        if self.reasoning is not None:
            payload["reasoning"] = self.reasoning
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ModelResponse:
        usage_raw = payload.get("usage")
        usage = UsageMetrics(**usage_raw) if isinstance(usage_raw, dict) else None
        data = payload.get("data")
        return cls(
            message=str(payload.get("message", "")),
            data=data if isinstance(data, dict) else None,
            usage=usage,
            status=payload.get("status"),
            reasoning=payload.get("reasoning"),
        )


@dataclass(frozen=True, slots=True)
class StepResult:
    """Output contract of one executor invocation."""

    response: ModelResponse
    finished: bool = False
    needs_user_input: bool = False
    replan: ReplanType = ReplanType.NONE
    goal: str | None = None
    artifact_ids: tuple[str, ...] = ()
    child_project_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "finished": self.finished,
            "needsUserInput": self.needs_user_input,
            "replan": self.replan.value,
            "goal": self.goal,
            "response": self.response.to_dict(),
            "artifactIds": list(self.artifact_ids),
            "childProjectId": self.child_project_id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> StepResult:
        return cls(
            response=ModelResponse.from_dict(payload.get("response") or {}),
            finished=bool(payload.get("finished", False)),
            needs_user_input=bool(payload.get("needsUserInput", False)),
            replan=ReplanType(payload.get("replan") or ReplanType.NONE.value),
            goal=payload.get("goal"),
            artifact_ids=tuple(payload.get("artifactIds") or ()),
            child_project_id=payload.get("childProjectId"),
        )


@dataclass(slots=True)
class ExecuteContext:
    """Optional context bundle handed to executors."""

    channel_id: str | None = None
    thread_id: str | None = None
    artifacts: list[Artifact] = field(default_factory=list)
    projects: list[Project] = field(default_factory=list)
    thread_posts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ExecuteParams:
    """Inputs of ``StepExecutor.execute``."""

    agent_id: str
    message: str
    goal: str
    step_goal: str
    project_id: str
    step_id: str | None = None
    step_type: str | None = None
    previous_responses: list[ModelResponse] = field(default_factory=list)
    steps: list[Task] = field(default_factory=list)
    execution_mode: ExecutionMode = ExecutionMode.CONVERSATION
    context: ExecuteContext | None = None


@dataclass(slots=True)
class RetryState:
    """Transient bookkeeping for one retried operation."""

    attempts: int = 0
    last_error: BaseException | None = None
    last_result: Any = None
    last_invocation_at: float | None = None
