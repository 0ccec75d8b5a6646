"""JSON-lines message contract between the host bridge and the sandbox worker.

Host -> worker: ``execute`` once, then one ``generateResponse`` per ``generate``.
Worker -> host: any number of ``generate``, one ``console`` flush, then exactly
one terminal ``result`` or ``error``. ``generate`` and ``generateResponse``
carry the same ``id``.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any

ALLOWED_MODULES = frozenset(
    {
        "collections",
        "csv",
        "datetime",
        "decimal",
        "fractions",
        "functools",
        "itertools",
        "json",
        "math",
        "random",
        "re",
        "statistics",
        "string",
        "textwrap",
    },
)


class MessageType(str, Enum):
    EXECUTE = "execute"
    GENERATE = "generate"
    GENERATE_RESPONSE = "generateResponse"
    CONSOLE = "console"
    RESULT = "result"
    ERROR = "error"


TERMINAL_TYPES = frozenset({MessageType.RESULT, MessageType.ERROR})


class ProtocolError(ValueError):
    """Line is not a valid bridge message."""


def encode_message(message: dict[str, Any]) -> bytes:
    return (json.dumps(message, ensure_ascii=False, default=_fallback) + "\n").encode("utf-8")


def decode_message(line: bytes | str) -> dict[str, Any]:
    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    try:
        message = json.loads(text)
    except json.JSONDecodeError as error:
        raise ProtocolError(f"Not a JSON line: {text[:80]!r}") from error
    if not isinstance(message, dict):
        raise ProtocolError("Bridge message must be a JSON object")
    try:
        MessageType(message.get("type"))
    except ValueError as error:
        raise ProtocolError(f"Unknown bridge message type: {message.get('type')!r}") from error
    return message


def message_type(message: dict[str, Any]) -> MessageType:
    return MessageType(message["type"])


def execute_message(
    code: str,
    artifacts: list[dict[str, Any]],
    *,
    cpu_seconds: int | None = None,
) -> dict[str, Any]:
    return {
        "type": MessageType.EXECUTE.value,
        "code": code,
        "artifacts": artifacts,
        "limits": {"cpuSeconds": cpu_seconds},
    }


def generate_message(
    request_id: int,
    message: str,
    instructions: str | None,
    schema: dict[str, Any] | None,
) -> dict[str, Any]:
    return {
        "type": MessageType.GENERATE.value,
        "id": request_id,
        "message": message,
        "instructions": {"instructions": instructions, "schema": schema},
    }


def generate_response_message(
    request_id: int,
    *,
    data: dict[str, Any] | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": MessageType.GENERATE_RESPONSE.value, "id": request_id}
    if error is not None:
        payload["error"] = error
    else:
        payload["data"] = data
    return payload


def console_message(output: str) -> dict[str, Any]:
    return {"type": MessageType.CONSOLE.value, "data": output}


def result_message(return_value: Any, artifacts: list[Any]) -> dict[str, Any]:
    return {"type": MessageType.RESULT.value, "returnValue": return_value, "artifacts": artifacts}


def error_message(message: str, *, stack: str | None, error_type: str | None) -> dict[str, Any]:
    return {
        "type": MessageType.ERROR.value,
        "message": message,
        "stack": stack,
        "errorType": error_type,
    }


def _fallback(value: Any) -> Any:
    if isinstance(value, (set, frozenset)):
        return list(value)
    return repr(value)
