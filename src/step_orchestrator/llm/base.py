"""LLM service interface consumed by executors and the sandbox bridge."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from step_orchestrator.orchestrator.models import UsageMetrics
from step_orchestrator.orchestrator.prompts import StructuredPrompt


class LlmServiceError(RuntimeError):
    """Model call error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class GenerateRequest:
    """One structured-output generation request."""

    message: str
    instructions: StructuredPrompt
    thread_posts: list[str] = field(default_factory=list)

    def render_prompt(self) -> str:
        parts = [self.instructions.render()]
        if self.thread_posts:
            parts.append("## Conversation\n" + "\n".join(self.thread_posts))
        parts.append(f"## Request\n{self.message}")
        return "\n\n".join(parts)


@dataclass(slots=True)
class GenerateReply:
    """Parsed JSON payload plus usage reported for the call."""

    payload: dict[str, Any]
    usage: UsageMetrics | None = None


class LlmService(Protocol):
    """Protocol implemented by model backends."""

    async def generate(self, request: GenerateRequest) -> GenerateReply:
        """Run one generation and return the parsed JSON object."""
