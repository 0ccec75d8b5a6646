"""Error taxonomy for step orchestration."""

from __future__ import annotations


class OrchestratorError(RuntimeError):
    """Base class for orchestration failures."""


class AttemptTimeoutError(OrchestratorError, TimeoutError):
    """A single retried attempt exceeded its time budget."""

    def __init__(self, timeout_seconds: float) -> None:
        super().__init__("Timeout")
        self.timeout_seconds = timeout_seconds


class ValidationFailedError(OrchestratorError):
    """Operation result was rejected by the validator."""

    def __init__(self, message: str = "Validation failed") -> None:
        super().__init__(message)


class RetryExhaustedError(OrchestratorError):
    """Retries ran out without any recorded error."""

    def __init__(self) -> None:
        super().__init__("Max retries reached")


class UnknownExecutorTypeError(OrchestratorError, LookupError):
    """No executor is registered for a step type."""

    def __init__(self, step_type: str) -> None:
        super().__init__(f"No executor registered for step type: {step_type!r}")
        self.step_type = step_type


class PlanResponseError(OrchestratorError, ValueError):
    """Planning produced no usable steps."""


class ModuleNotAllowedError(ImportError):
    """Sandboxed code tried to import a module outside the allow-list."""

    def __init__(self, module_name: str) -> None:
        super().__init__(f"Module {module_name} is not allowed")
        self.module_name = module_name


class SandboxExecutionError(OrchestratorError):
    """Generated code failed inside the sandbox worker."""

    def __init__(
        self,
        message: str,
        *,
        stack: str | None = None,
        console_output: str = "",
        error_type: str | None = None,
    ) -> None:
        super().__init__(message)
        self.stack = stack
        self.console_output = console_output
        self.error_type = error_type


class SandboxTimeoutError(SandboxExecutionError, TimeoutError):
    """Sandbox worker was killed by the host watchdog."""
