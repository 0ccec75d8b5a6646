"""Structured-output prompt building."""

from __future__ import annotations

import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from step_orchestrator.orchestrator.models import Artifact, ModelResponse, Task

_MAX_ARTIFACT_EXCERPT_CHARS = 1_500


@dataclass(slots=True)
class StructuredPrompt:
    """Instructions plus the JSON schema the model must answer with."""

    instructions: str
    schema: dict[str, Any] | None = None
    schema_name: str = "response"
    sections: list[tuple[str, str]] = field(default_factory=list)

    def add_section(self, title: str, body: str) -> StructuredPrompt:
        if body.strip():
            self.sections.append((title, body.strip()))
        return self

    def render(self) -> str:
        parts = [self.instructions.strip()]
        for title, body in self.sections:
            parts.append(f"## {title}\n{body}")
        if self.schema is not None:
            parts.append(
                f"Response schema: {self.schema_name}\n"
                "Respond with a single JSON object that matches this JSON schema:\n"
                f"```json\n{json.dumps(self.schema, indent=2, sort_keys=True)}\n```",
            )
        return "\n\n".join(parts)


def render_previous_responses(responses: Iterable[ModelResponse]) -> str:
    lines = [
        f"Step {index}: {response.message}"
        for index, response in enumerate(responses, start=1)
        if response.message
    ]
    return "\n\n".join(lines)


def render_plan(steps: Iterable[Task]) -> str:
    lines = []
    for step in steps:
        lines.append(f"{step.order}. [{step.step_type}] {step.description} ({step.status.value})")
    return "\n".join(lines)


def render_artifact_excerpts(
    artifacts: Iterable[Artifact],
    *,
    max_chars: int = _MAX_ARTIFACT_EXCERPT_CHARS,
) -> str:
    blocks = []
    for artifact in artifacts:
        excerpt = artifact.content[:max_chars]
        blocks.append(f"### {artifact.title} ({artifact.id})\n{excerpt}")
    return "\n\n".join(blocks)
