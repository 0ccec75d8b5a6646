"""Host side of the sandbox: spawn the worker and answer its model callbacks."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from step_orchestrator.llm.base import GenerateRequest, LlmService
from step_orchestrator.orchestrator.errors import SandboxExecutionError, SandboxTimeoutError
from step_orchestrator.orchestrator.prompts import StructuredPrompt
from step_orchestrator.orchestrator.request_queue import SerializedRequestQueue
from step_orchestrator.orchestrator.sanitization import STACK_MAX_CHARS, sanitize_tail
from step_orchestrator.sandbox.protocol import (
    MessageType,
    ProtocolError,
    decode_message,
    encode_message,
    execute_message,
    generate_response_message,
    message_type,
)

logger = logging.getLogger(__name__)

WORKER_MODULE = "step_orchestrator.sandbox.worker"
DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_GENERATE_INSTRUCTIONS = "Answer the request with a single JSON object."
_STREAM_LIMIT_BYTES = 16 * 1024 * 1024
_PACKAGE_ROOT = Path(__file__).resolve().parents[2]
_INHERITED_ENV = ("PATH", "SYSTEMROOT", "TMPDIR", "TEMP", "TMP", "LANG", "LC_ALL", "LC_CTYPE")


@dataclass(slots=True)
class SandboxResult:
    """Terminal ``result`` message plus everything printed on the way."""

    return_value: Any
    artifacts: list[dict[str, Any]]
    console_output: str
    generate_calls: int


class SandboxBridge:
    """Run generated code in a fresh worker process per call.

    ``request_queue`` serializes model callbacks across every worker sharing
    it; without one, callbacks from concurrent runs may overlap.
    """

    def __init__(  # noqa: PLR0913
        self,
        llm: LlmService,
        *,
        timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS,
        cpu_seconds: int | None = None,
        python_executable: str | None = None,
        request_queue: SerializedRequestQueue | None = None,
    ) -> None:
        self.llm = llm
        self.timeout_seconds = timeout_seconds
        self.cpu_seconds = cpu_seconds
        self.python_executable = python_executable or sys.executable
        self.request_queue = request_queue

    async def run(
        self,
        code: str,
        *,
        artifacts: list[dict[str, Any]] | None = None,
    ) -> SandboxResult:
        process = await asyncio.create_subprocess_exec(
            self.python_executable,
            "-s",
            "-P",
            "-m",
            WORKER_MODULE,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=_worker_env(),
            limit=_STREAM_LIMIT_BYTES,
        )
        logger.debug("Sandbox worker %s started", process.pid)
        try:
            if self.timeout_seconds is None:
                return await self._converse(process, code, list(artifacts or ()))
            return await asyncio.wait_for(
                self._converse(process, code, list(artifacts or ())),
                timeout=self.timeout_seconds,
            )
        except TimeoutError as error:
            logger.warning("Sandbox worker %s timed out", process.pid)
            raise SandboxTimeoutError(
                f"Sandbox execution timed out after {self.timeout_seconds:g}s",
            ) from error
        finally:
            await _reap(process)

    async def _converse(
        self,
        process: asyncio.subprocess.Process,
        code: str,
        artifacts: list[dict[str, Any]],
    ) -> SandboxResult:
        assert process.stdin is not None and process.stdout is not None
        assert process.stderr is not None
        stderr_task = asyncio.create_task(process.stderr.read())
        try:
            return await self._exchange(process, code, artifacts, stderr_task)
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await stderr_task

    async def _exchange(
        self,
        process: asyncio.subprocess.Process,
        code: str,
        artifacts: list[dict[str, Any]],
        stderr_task: asyncio.Task[bytes],
    ) -> SandboxResult:
        assert process.stdin is not None and process.stdout is not None
        console: list[str] = []
        generate_calls = 0

        try:
            await _send(process, execute_message(code, artifacts, cpu_seconds=self.cpu_seconds))
            while True:
                line = await process.stdout.readline()
                if not line:
                    break
                try:
                    message = decode_message(line)
                except ProtocolError:
                    console.append(line.decode("utf-8", errors="replace").rstrip("\n"))
                    continue

                kind = message_type(message)
                if kind == MessageType.CONSOLE:
                    console.append(str(message.get("data", "")))
                elif kind == MessageType.GENERATE:
                    generate_calls += 1
                    await _send(process, await self._answer_generate(message))
                elif kind == MessageType.RESULT:
                    process.stdin.close()
                    returned = message.get("artifacts")
                    return SandboxResult(
                        return_value=message.get("returnValue"),
                        artifacts=list(returned) if isinstance(returned, list) else artifacts,
                        console_output="\n".join(console),
                        generate_calls=generate_calls,
                    )
                elif kind == MessageType.ERROR:
                    raise SandboxExecutionError(
                        str(message.get("message") or "Sandboxed code failed"),
                        stack=message.get("stack"),
                        console_output="\n".join(console),
                        error_type=message.get("errorType"),
                    )
        except (BrokenPipeError, ConnectionResetError):
            logger.warning("Sandbox worker %s closed its input early", process.pid)

        await process.wait()
        stderr = (await stderr_task).decode("utf-8", errors="replace")
        raise SandboxExecutionError(
            f"Sandbox worker exited with code {process.returncode} without a result",
            stack=sanitize_tail(stderr, max_chars=STACK_MAX_CHARS) or None,
            console_output="\n".join(console),
        )

    async def _answer_generate(self, message: dict[str, Any]) -> dict[str, Any]:
        request_id = message.get("id")
        instructions = message.get("instructions") or {}
        request = GenerateRequest(
            message=str(message.get("message", "")),
            instructions=StructuredPrompt(
                instructions=instructions.get("instructions") or DEFAULT_GENERATE_INSTRUCTIONS,
                schema=instructions.get("schema"),
            ),
        )
        try:
            if self.request_queue is not None:
                reply = await self.request_queue.enqueue(lambda: self.llm.generate(request))
            else:
                reply = await self.llm.generate(request)
        except Exception as error:  # noqa: BLE001
            logger.warning("Sandbox generate %s failed: %s", request_id, error)
            return generate_response_message(request_id, error=str(error) or type(error).__name__)
        return generate_response_message(request_id, data=reply.payload)


async def _send(process: asyncio.subprocess.Process, message: dict[str, Any]) -> None:
    assert process.stdin is not None
    process.stdin.write(encode_message(message))
    await process.stdin.drain()


async def _reap(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=2)
        return
    except TimeoutError:
        pass
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


def _worker_env(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Locale and search paths only; host credentials never reach the worker."""

    source = os.environ if environ is None else environ
    env = {name: source[name] for name in _INHERITED_ENV if name in source}
    existing = source.get("PYTHONPATH")
    env["PYTHONPATH"] = (
        f"{_PACKAGE_ROOT}{os.pathsep}{existing}" if existing else str(_PACKAGE_ROOT)
    )
    env["PYTHONIOENCODING"] = "utf-8"
    return env
