"""Subprocess-based LLM service for CLI agents."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import tempfile
from pathlib import Path

from step_orchestrator.llm.base import GenerateReply, GenerateRequest, LlmServiceError
from step_orchestrator.llm.output_parser import extract_usage, parse_json_payload
from step_orchestrator.orchestrator.failure_classifier import classify_backend_failure
from step_orchestrator.orchestrator.models import FailureClass
from step_orchestrator.orchestrator.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

DEFAULT_TRANSIENT_EXIT_CODES = (124, 137, 143)


class CliLlmService:
    """Render a command template per request and read a JSON object from stdout.

    The template may reference ``{model}``, ``{prompt}`` and ``{prompt_file}``.
    Values are shell-quoted before the template is split into argv.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        command_template: str,
        model: str = "",
        agent: str = "cli",
        timeout_seconds: float = 300.0,
        transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
    ) -> None:
        self.command_template = command_template
        self.model = model
        self.agent = agent
        self.timeout_seconds = timeout_seconds
        self.transient_exit_codes = transient_exit_codes

    async def generate(self, request: GenerateRequest) -> GenerateReply:
        prompt = request.render_prompt()
        with tempfile.TemporaryDirectory(prefix="step-orchestrator-") as workdir:
            prompt_file = Path(workdir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            run_args, command_head = _build_run_args(
                command_template=self.command_template,
                model=self.model,
                prompt=prompt,
                prompt_file=prompt_file,
            )
            stdout, stderr, exit_code = await self._run(run_args, command_head)

        if exit_code != 0:
            classification = classify_backend_failure(
                agent=self.agent,
                exit_code=exit_code,
                stdout=stdout,
                stderr=stderr,
                transient_exit_codes=self.transient_exit_codes,
            )
            logger.warning(
                "CLI agent %s exited with %d (%s)",
                self.agent,
                exit_code,
                classification.reason_code,
            )
            raise LlmServiceError(
                f"CLI backend exited with code {exit_code}: "
                f"{sanitize_preview(stderr or stdout, max_chars=500)}",
                transient=classification.failure_class == FailureClass.BACKEND_TRANSIENT,
            )

        payload = parse_json_payload(stdout)
        if payload is None:
            raise LlmServiceError(
                "CLI backend output did not contain a JSON object: "
                f"{sanitize_preview(stdout, max_chars=200)}",
                transient=True,
            )
        return GenerateReply(payload=payload, usage=extract_usage(stdout=stdout, stderr=stderr))

    async def _run(self, run_args: list[str], command_head: str) -> tuple[str, str, int]:
        env = os.environ.copy()
        env["STEP_ORCHESTRATOR_LLM_AGENT"] = self.agent
        env["STEP_ORCHESTRATOR_LLM_MODEL"] = self.model
        try:
            process = await asyncio.create_subprocess_exec(
                *run_args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as error:
            raise LlmServiceError(
                f"CLI backend command not found: {command_head}",
                transient=False,
            ) from error
        except OSError as error:
            raise LlmServiceError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(
                process.communicate(),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            await _terminate_process(process)
            raise LlmServiceError(
                f"CLI backend timed out after {self.timeout_seconds:g}s",
                transient=True,
            ) from error

        return (
            stdout_raw.decode("utf-8", errors="replace"),
            stderr_raw.decode("utf-8", errors="replace"),
            process.returncode if process.returncode is not None else -1,
        )


def _build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
) -> tuple[list[str], str]:
    stripped = command_template.strip()
    if not stripped:
        raise LlmServiceError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise LlmServiceError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except KeyError as error:
        raise LlmServiceError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise LlmServiceError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv, argv[0]


async def _terminate_process(process: asyncio.subprocess.Process) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
