"""Generate Python code with the model and run it in the sandbox worker."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from step_orchestrator.llm.base import GenerateRequest
from step_orchestrator.orchestrator.errors import OrchestratorError, SandboxExecutionError
from step_orchestrator.orchestrator.executors.base import BaseStepExecutor, thread_posts_of
from step_orchestrator.orchestrator.models import (
    Artifact,
    ArtifactDraft,
    ExecuteParams,
    ExecutorType,
    ModelResponse,
    StepResult,
    UsageMetrics,
)
from step_orchestrator.orchestrator.prompts import StructuredPrompt, render_previous_responses
from step_orchestrator.orchestrator.retry import AttemptContext, with_retry
from step_orchestrator.orchestrator.sanitization import retry_feedback
from step_orchestrator.orchestrator.schemas import CODE_GENERATION_SCHEMA, CodeGenerationResponse
from step_orchestrator.sandbox.protocol import ALLOWED_MODULES

if TYPE_CHECKING:
    from step_orchestrator.sandbox.bridge import SandboxResult

logger = logging.getLogger(__name__)

_INSTRUCTIONS = f"""\
Write Python code that accomplishes the step goal. The code runs as a module
body where top-level `await` is allowed. Available helpers:

- `await generate(message, instructions=None, schema=None)` asks the model and
  returns its JSON object.
- `provide_result(value)` sets the value returned to the caller.
- `ARTIFACTS` is a list of dicts with `id`, `type`, `title` and `content`.
  Append a dict with `type`, `title` and `content` to store a new artifact.

Only these modules may be imported: {", ".join(sorted(ALLOWED_MODULES))}.
Do not open files, sockets or subprocesses; the process has no host credentials."""


@dataclass(slots=True)
class _CodeRun:
    generated: CodeGenerationResponse
    outcome: SandboxResult | None
    usage: UsageMetrics | None
    fatal: SandboxExecutionError | None = None


class CodeExecutionExecutor(BaseStepExecutor):
    executor_type = ExecutorType.CODE_EXECUTION
    description = "Write and run Python code in an isolated worker process"

    async def execute(self, params: ExecuteParams) -> StepResult:
        sandbox = self.deps.sandbox
        if sandbox is None:
            raise OrchestratorError("Code execution requires a sandbox bridge")
        artifacts = list(params.context.artifacts) if params.context is not None else []
        sandbox_artifacts = [_artifact_to_payload(artifact) for artifact in artifacts]

        async def _attempt(context: AttemptContext[_CodeRun]) -> _CodeRun:
            prompt = self._build_prompt(params, context)
            reply = await self.deps.llm.generate(
                GenerateRequest(
                    message=params.step_goal,
                    instructions=prompt,
                    thread_posts=thread_posts_of(params),
                ),
            )
            generated = CODE_GENERATION_SCHEMA.parse(reply.payload)
            try:
                outcome = await sandbox.run(generated.code, artifacts=sandbox_artifacts)
            except SandboxExecutionError as error:
                if error.error_type != "ModuleNotAllowedError":
                    raise
                # Import violations fail the step without another attempt.
                return _CodeRun(generated=generated, outcome=None, usage=reply.usage, fatal=error)
            return _CodeRun(generated=generated, outcome=outcome, usage=reply.usage)

        run = await with_retry(
            _attempt,
            None,
            self.deps.retry_options,
            throttle=self.deps.throttle,
            sleep=self.deps.sleep,
        )
        if run.fatal is not None:
            raise run.fatal
        outcome = run.outcome
        if outcome is None:
            raise OrchestratorError("Sandbox run finished without an outcome")

        drafts = _new_artifact_drafts(outcome.artifacts, known={a.id for a in artifacts})
        logger.info(
            "Code step produced %d new artifacts after %d model callbacks",
            len(drafts),
            outcome.generate_calls,
        )
        return StepResult(
            finished=True,
            response=ModelResponse(
                message=_render_message(run.generated, outcome),
                data={
                    "code": run.generated.code,
                    "explanation": run.generated.explanation,
                    "result": outcome.return_value,
                    "console": outcome.console_output,
                },
                usage=run.usage,
                artifacts=drafts,
            ),
        )

    def _build_prompt(
        self,
        params: ExecuteParams,
        context: AttemptContext[_CodeRun],
    ) -> StructuredPrompt:
        prompt = StructuredPrompt(
            instructions=_INSTRUCTIONS,
            schema=CODE_GENERATION_SCHEMA.json_schema,
            schema_name=CODE_GENERATION_SCHEMA.name,
        )
        prompt.add_section("Overall goal", params.goal)
        prompt.add_section("Earlier results", render_previous_responses(params.previous_responses))
        if context.previous_error is not None:
            prompt.add_section(
                "Previous attempt failed",
                retry_feedback(context.previous_error) + "\nFix the code and try again.",
            )
        return prompt


def _artifact_to_payload(artifact: Artifact) -> dict[str, Any]:
    return {
        "id": artifact.id,
        "type": artifact.type,
        "subtype": artifact.subtype,
        "title": artifact.title,
        "content": artifact.content,
        "metadata": artifact.metadata,
    }


def _new_artifact_drafts(payloads: list[dict[str, Any]], *, known: set[str]) -> list[ArtifactDraft]:
    drafts: list[ArtifactDraft] = []
    for payload in payloads:
        if not isinstance(payload, dict) or payload.get("id") in known:
            continue
        content = payload.get("content")
        if content is None:
            continue
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False, default=str)
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), dict) else {}
        if payload.get("title"):
            metadata = {**metadata, "title": str(payload["title"])}
        drafts.append(
            ArtifactDraft(
                type=str(payload.get("type") or "document"),
                subtype=payload.get("subtype"),
                content=content,
                metadata={**metadata, "source": "code-execution"},
            ),
        )
    return drafts


def _render_message(generated: CodeGenerationResponse, outcome: SandboxResult) -> str:
    parts = [f"**Code:**\n```python\n{generated.code}\n```"]
    if generated.explanation:
        parts.append(f"**Explanation:**\n{generated.explanation}")
    rendered_result = json.dumps(outcome.return_value, indent=2, ensure_ascii=False, default=str)
    parts.append(f"**Execution Result:**\n```\n{rendered_result}\n```")
    if outcome.console_output:
        parts.append(f"**Console:**\n```\n{outcome.console_output}\n```")
    return "\n\n".join(parts)
