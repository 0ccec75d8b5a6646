"""Runtime configuration for the step orchestrator."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from step_orchestrator.orchestrator.models import ExecutionMode

LLM_BACKENDS = ("cli", "http")
ECHO_AGENT_COMMAND = (
    f"{shlex.quote(sys.executable)} -m step_orchestrator.llm.echo_agent --prompt-file {{prompt_file}}"
)


@dataclass(slots=True)
class RetrySettings:
    """Retry and throttle settings applied to every model call."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_factor: float = 2.0
    attempt_timeout_seconds: float | None = 180.0
    min_interval_seconds: float = 0.1


@dataclass(slots=True)
class SandboxSettings:
    """Code-execution worker settings."""

    timeout_seconds: float | None = 300.0
    cpu_seconds: int | None = None
    python_executable: str = sys.executable
    serialize_generate: bool = True


@dataclass(slots=True)
class LlmSettings:
    """Model backend settings."""

    backend: str = "cli"
    command_template: str = ECHO_AGENT_COMMAND
    agent: str = "cli"
    model: str = ""
    timeout_seconds: float = 300.0
    http_base_url: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float = 0.2

    @property
    def api_key(self) -> str | None:
        return os.getenv(self.api_key_env) or None


@dataclass(slots=True)
class StoreSettings:
    """Task and artifact store settings."""

    db_path: Path = Path(".step_orchestrator.db")
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class OrchestratorSettings:
    """Plan execution settings."""

    agent_id: str = "step-orchestrator"
    max_steps: int = 20
    execution_mode: ExecutionMode = ExecutionMode.CONVERSATION


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    retry: RetrySettings = field(default_factory=RetrySettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    llm: LlmSettings = field(default_factory=LlmSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    orchestrator: OrchestratorSettings = field(default_factory=OrchestratorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``STEP_ORCHESTRATOR_*`` variables with local-development defaults."""

        return cls(
            retry=RetrySettings(
                max_attempts=int(os.getenv("STEP_ORCHESTRATOR_RETRY_MAX_ATTEMPTS", "3")),
                initial_delay_seconds=_env_float(
                    "STEP_ORCHESTRATOR_RETRY_INITIAL_DELAY_SECONDS",
                    default=1.0,
                ),
                backoff_factor=_env_float("STEP_ORCHESTRATOR_RETRY_BACKOFF_FACTOR", default=2.0),
                attempt_timeout_seconds=_env_optional_float(
                    "STEP_ORCHESTRATOR_RETRY_TIMEOUT_SECONDS",
                    default=180.0,
                ),
                min_interval_seconds=_env_float(
                    "STEP_ORCHESTRATOR_RETRY_MIN_INTERVAL_SECONDS",
                    default=0.1,
                ),
            ),
            sandbox=SandboxSettings(
                timeout_seconds=_env_optional_float(
                    "STEP_ORCHESTRATOR_SANDBOX_TIMEOUT_SECONDS",
                    default=300.0,
                ),
                cpu_seconds=_env_optional_int("STEP_ORCHESTRATOR_SANDBOX_CPU_SECONDS"),
                python_executable=os.getenv("STEP_ORCHESTRATOR_SANDBOX_PYTHON", sys.executable),
                serialize_generate=_env_bool(
                    "STEP_ORCHESTRATOR_SANDBOX_SERIALIZE_GENERATE",
                    default=True,
                ),
            ),
            llm=LlmSettings(
                backend=os.getenv("STEP_ORCHESTRATOR_LLM_BACKEND", "cli").strip().lower(),
                command_template=os.getenv("STEP_ORCHESTRATOR_LLM_COMMAND", ECHO_AGENT_COMMAND),
                agent=os.getenv("STEP_ORCHESTRATOR_LLM_AGENT_NAME", "cli"),
                model=os.getenv("STEP_ORCHESTRATOR_LLM_MODEL", ""),
                timeout_seconds=_env_float("STEP_ORCHESTRATOR_LLM_TIMEOUT_SECONDS", default=300.0),
                http_base_url=os.getenv(
                    "STEP_ORCHESTRATOR_LLM_BASE_URL",
                    "https://api.openai.com/v1",
                ),
                api_key_env=os.getenv("STEP_ORCHESTRATOR_LLM_API_KEY_ENV", "OPENAI_API_KEY"),
                temperature=_env_float("STEP_ORCHESTRATOR_LLM_TEMPERATURE", default=0.2),
            ),
            store=StoreSettings(
                db_path=db_path
                or Path(os.getenv("STEP_ORCHESTRATOR_DB_PATH", ".step_orchestrator.db")),
                busy_timeout_ms=int(os.getenv("STEP_ORCHESTRATOR_DB_BUSY_TIMEOUT_MS", "5000")),
            ),
            orchestrator=OrchestratorSettings(
                agent_id=os.getenv("STEP_ORCHESTRATOR_AGENT_ID", "step-orchestrator"),
                max_steps=int(os.getenv("STEP_ORCHESTRATOR_MAX_STEPS", "20")),
                execution_mode=_env_execution_mode(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.retry.max_attempts <= 0:
            raise ValueError("STEP_ORCHESTRATOR_RETRY_MAX_ATTEMPTS must be > 0.")
        if self.retry.initial_delay_seconds < 0:
            raise ValueError("STEP_ORCHESTRATOR_RETRY_INITIAL_DELAY_SECONDS must be >= 0.")
        if self.retry.backoff_factor < 1:
            raise ValueError("STEP_ORCHESTRATOR_RETRY_BACKOFF_FACTOR must be >= 1.")
        if self.retry.attempt_timeout_seconds is not None and self.retry.attempt_timeout_seconds <= 0:
            raise ValueError("STEP_ORCHESTRATOR_RETRY_TIMEOUT_SECONDS must be > 0.")
        if self.retry.min_interval_seconds < 0:
            raise ValueError("STEP_ORCHESTRATOR_RETRY_MIN_INTERVAL_SECONDS must be >= 0.")
        if self.sandbox.timeout_seconds is not None and self.sandbox.timeout_seconds <= 0:
            raise ValueError("STEP_ORCHESTRATOR_SANDBOX_TIMEOUT_SECONDS must be > 0.")
        if self.sandbox.cpu_seconds is not None and self.sandbox.cpu_seconds <= 0:
            raise ValueError("STEP_ORCHESTRATOR_SANDBOX_CPU_SECONDS must be > 0.")
        if self.llm.backend not in LLM_BACKENDS:
            raise ValueError(
                f"STEP_ORCHESTRATOR_LLM_BACKEND must be one of {', '.join(LLM_BACKENDS)}: "
                f"{self.llm.backend!r}",
            )
        if self.llm.timeout_seconds <= 0:
            raise ValueError("STEP_ORCHESTRATOR_LLM_TIMEOUT_SECONDS must be > 0.")
        if self.llm.backend == "cli":
            template = self.llm.command_template
            if "{prompt}" not in template and "{prompt_file}" not in template:
                raise ValueError(
                    "STEP_ORCHESTRATOR_LLM_COMMAND must include {prompt} or {prompt_file}.",
                )
        if self.llm.backend == "http":
            parsed = urlparse(self.llm.http_base_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    "Invalid STEP_ORCHESTRATOR_LLM_BASE_URL: "
                    f"{self.llm.http_base_url!r}. Expected an absolute http(s) URL.",
                )
            if not self.llm.model:
                raise ValueError("STEP_ORCHESTRATOR_LLM_MODEL is required for the http backend.")
        if self.orchestrator.max_steps <= 0:
            raise ValueError("STEP_ORCHESTRATOR_MAX_STEPS must be > 0.")


def _env_execution_mode() -> ExecutionMode:
    raw = os.getenv("STEP_ORCHESTRATOR_EXECUTION_MODE", ExecutionMode.CONVERSATION.value)
    try:
        return ExecutionMode(raw.strip().lower())
    except ValueError as error:
        raise ValueError(f"Invalid STEP_ORCHESTRATOR_EXECUTION_MODE: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid numeric value for {name}: {value!r}") from error


def _env_optional_float(name: str, default: float | None) -> float | None:
    """Float setting where ``0``, ``off`` or ``none`` disables the limit."""

    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    if value.strip().lower() in {"0", "off", "none"}:
        return None
    return _env_float(name, default=0.0)


def _env_optional_int(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
