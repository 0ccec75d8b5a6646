"""Sandbox worker: runs one generated script in its own interpreter process.

The script gets ``generate``, ``provide_result`` and ``ARTIFACTS`` as globals
and a builtins table without file, eval or import access beyond
``ALLOWED_MODULES``. This narrows what well-behaved generated code can reach;
it is not an OS security boundary and the process keeps the host user's
privileges.
"""

from __future__ import annotations

import ast
import asyncio
import builtins
import contextlib
import importlib
import inspect
import io
import itertools
import os
import sys
import threading
import traceback
from typing import Any, BinaryIO

from step_orchestrator.orchestrator.errors import ModuleNotAllowedError
from step_orchestrator.orchestrator.request_queue import SerializedRequestQueue
from step_orchestrator.sandbox.protocol import (
    ALLOWED_MODULES,
    MessageType,
    ProtocolError,
    console_message,
    decode_message,
    encode_message,
    error_message,
    generate_message,
    message_type,
    result_message,
)

_REMOVED_BUILTINS = frozenset(
    {
        "__import__",
        "breakpoint",
        "compile",
        "eval",
        "exec",
        "exit",
        "help",
        "input",
        "open",
        "quit",
    },
)


class GenerateError(RuntimeError):
    """The host could not answer a ``generate`` call."""


def guarded_import(
    name: str,
    globals: dict[str, Any] | None = None,  # noqa: A002
    locals: dict[str, Any] | None = None,  # noqa: A002
    fromlist: tuple[str, ...] = (),
    level: int = 0,
) -> Any:
    root = name.partition(".")[0]
    if level != 0 or root not in ALLOWED_MODULES:
        raise ModuleNotAllowedError(name or ".")
    return importlib.__import__(name, globals, locals, fromlist, level)


def build_builtins() -> dict[str, Any]:
    safe = {key: value for key, value in vars(builtins).items() if key not in _REMOVED_BUILTINS}
    safe["__import__"] = guarded_import
    return safe


class HostLink:
    """Worker side of the bridge: sends messages and matches replies by id."""

    def __init__(self, output: BinaryIO) -> None:
        self._output = output
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._queue = SerializedRequestQueue()
        self._closed_reason: str | None = None

    def send(self, message: dict[str, Any]) -> None:
        self.send_encoded(encode_message(message))

    def send_encoded(self, data: bytes) -> None:
        self._output.write(data)
        self._output.flush()

    async def generate(
        self,
        message: str,
        instructions: str | None = None,
        schema: dict[str, Any] | None = None,
    ) -> Any:
        return await self._queue.enqueue(lambda: self._request(message, instructions, schema))

    async def _request(
        self,
        message: str,
        instructions: str | None,
        schema: dict[str, Any] | None,
    ) -> Any:
        if self._closed_reason is not None:
            raise GenerateError(self._closed_reason)
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            self.send(generate_message(request_id, str(message), instructions, schema))
            return await future
        finally:
            self._pending.pop(request_id, None)

    def deliver(self, message: dict[str, Any]) -> None:
        future = self._pending.get(message.get("id"))  # type: ignore[arg-type]
        if future is None or future.done():
            return
        if message.get("error") is not None:
            future.set_exception(GenerateError(str(message["error"])))
        else:
            future.set_result(message.get("data"))

    def close(self, reason: str) -> None:
        self._closed_reason = reason
        for future in self._pending.values():
            if not future.done():
                future.set_exception(GenerateError(reason))


def _start_reader(stream: BinaryIO, loop: asyncio.AbstractEventLoop, link: HostLink) -> None:
    def _pump() -> None:
        with contextlib.suppress(RuntimeError):
            for line in iter(stream.readline, b""):
                try:
                    message = decode_message(line)
                except ProtocolError:
                    continue
                if message_type(message) == MessageType.GENERATE_RESPONSE:
                    loop.call_soon_threadsafe(link.deliver, message)
            loop.call_soon_threadsafe(link.close, "Host closed the bridge")

    threading.Thread(target=_pump, name="sandbox-host-reader", daemon=True).start()


async def run_code(code: str, artifacts: list[Any], link: HostLink) -> None:
    """Execute ``code`` and send the console flush followed by one terminal message."""

    console = io.StringIO()
    provided: dict[str, Any] = {}

    def provide_result(value: Any) -> None:
        provided["value"] = value

    namespace: dict[str, Any] = {
        "__builtins__": build_builtins(),
        "__name__": "__sandbox__",
        "ARTIFACTS": artifacts,
        "generate": link.generate,
        "provide_result": provide_result,
    }
    with contextlib.redirect_stdout(console), contextlib.redirect_stderr(console):
        try:
            compiled = compile(
                code,
                "<generated>",
                "exec",
                flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT,
                dont_inherit=True,
            )
            outcome = eval(compiled, namespace)  # noqa: S307
            if inspect.isawaitable(outcome):
                await outcome
        except (Exception, SystemExit) as error:  # noqa: BLE001
            terminal = error_message(
                str(error) or type(error).__name__,
                stack=traceback.format_exc(),
                error_type=type(error).__name__,
            )
        else:
            terminal = result_message(provided.get("value"), namespace.get("ARTIFACTS", artifacts))

    try:
        encoded_terminal = encode_message(terminal)
    except (TypeError, ValueError) as error:
        encoded_terminal = encode_message(
            error_message(f"Result is not serializable: {error}", stack=None, error_type="TypeError"),
        )

    output = console.getvalue()
    if output:
        link.send(console_message(output.rstrip("\n")))
    link.send_encoded(encoded_terminal)


def apply_limits(limits: dict[str, Any]) -> None:
    cpu_seconds = limits.get("cpuSeconds")
    if not cpu_seconds or os.name != "posix":
        return
    import resource  # noqa: PLC0415

    resource.setrlimit(resource.RLIMIT_CPU, (int(cpu_seconds), int(cpu_seconds)))


async def _serve(request: dict[str, Any], stdin: BinaryIO, link: HostLink) -> None:
    _start_reader(stdin, asyncio.get_running_loop(), link)
    artifacts = request.get("artifacts")
    await run_code(str(request.get("code", "")), list(artifacts or ()), link)


def main() -> int:
    """Read the ``execute`` message from stdin and run it."""

    stdin = sys.stdin.buffer
    link = HostLink(sys.stdout.buffer)
    first = stdin.readline()
    try:
        request = decode_message(first)
    except ProtocolError as error:
        link.send(error_message(str(error), stack=None, error_type="ProtocolError"))
        return 2
    if message_type(request) != MessageType.EXECUTE:
        link.send(
            error_message("First message must be execute", stack=None, error_type="ProtocolError"),
        )
        return 2

    apply_limits(request.get("limits") or {})
    asyncio.run(_serve(request, stdin, link))
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
