"""Scrubbing of step failures before they reach task props, logs or prompts.

A failed step carries up to three texts: the error message, the worker
traceback and the sandbox console. All three are redacted the same way.
Messages keep their head when clamped; tracebacks and console output keep
their tail, where the failing frame and the last prints are.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Any

from step_orchestrator.orchestrator.errors import SandboxExecutionError

SUMMARY_MAX_CHARS = 2_000
STACK_MAX_CHARS = 1_500
CONSOLE_MAX_CHARS = 1_000

_ELLIPSIS = "…"
_MIN_SECRET_VALUE_CHARS = 8
_SECRET_ENV_NAME = re.compile(r"(?i)(?:^|_)(?:api_?key|key|token|secret|password|passwd)$")

_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}"), r"\1 [redacted-token]"),
    (re.compile(r"\bsk-[A-Za-z0-9_\-]{8,}"), "[redacted-token]"),
    (re.compile(r"(?i)([?&](?:token|key|api_key|signature|auth)=)[^&\s]+"), r"\1[redacted]"),
    # NAME_API_KEY=..., "token": "...", password: ...
    (
        re.compile(
            r"(?i)\b((?:[a-z0-9]+_)*(?:api_?key|token|secret|password))(['\"]?\s*[:=]\s*)"
            r"(?!\[redacted)['\"]?[^'\"\s&,}]+['\"]?",
        ),
        r"\1\2[redacted-secret]",
    ),
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "[redacted-email]"),
)


def host_secret_values(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Secret-looking environment variables of this process, by value."""

    source = os.environ if environ is None else environ
    return {
        value: name
        for name, value in source.items()
        if _SECRET_ENV_NAME.search(name) and len(value) >= _MIN_SECRET_VALUE_CHARS
    }


def redact(text: str, *, environ: Mapping[str, str] | None = None) -> str:
    for value, name in sorted(host_secret_values(environ).items(), key=lambda item: -len(item[0])):
        text = text.replace(value, f"[redacted-env:{name}]")
    for pattern, replacement in _PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def clamp_head(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 1)] + _ELLIPSIS


def clamp_tail(text: str, max_chars: int) -> str:
    """Keep the last ``max_chars``, starting on a line boundary when one is close."""

    if len(text) <= max_chars:
        return text
    tail = text[len(text) - max(0, max_chars - 1) :]
    newline = tail.find("\n")
    if 0 <= newline < len(tail) // 4:
        tail = tail[newline + 1 :]
    return _ELLIPSIS + tail


def sanitize_preview(text: str, *, max_chars: int = SUMMARY_MAX_CHARS) -> str:
    """Redact secrets and emails, then cut to ``max_chars`` keeping the start."""

    compact = text.strip()
    if not compact:
        return ""
    return clamp_head(redact(compact), max_chars)


def sanitize_tail(text: str | None, *, max_chars: int) -> str:
    """Redact, then keep the end of a traceback or console log."""

    compact = (text or "").strip()
    if not compact:
        return ""
    return clamp_tail(redact(compact), max_chars)


def failure_details(error: BaseException) -> dict[str, Any]:
    """Fields describing ``error`` that are safe to persist on a task."""

    details: dict[str, Any] = {
        "summary": sanitize_preview(str(error) or type(error).__name__),
        "error_type": type(error).__name__,
    }
    if isinstance(error, SandboxExecutionError):
        if error.error_type:
            details["sandbox_error_type"] = error.error_type
        stack = sanitize_tail(error.stack, max_chars=STACK_MAX_CHARS)
        if stack:
            details["stack"] = stack
        console = sanitize_tail(error.console_output, max_chars=CONSOLE_MAX_CHARS)
        if console:
            details["console"] = console
    return details


def retry_feedback(error: BaseException) -> str:
    """Failure text shown to the model before it regenerates code."""

    parts = [sanitize_preview(str(error) or type(error).__name__, max_chars=500)]
    if isinstance(error, SandboxExecutionError):
        stack = sanitize_tail(error.stack, max_chars=STACK_MAX_CHARS)
        if stack:
            parts.append(f"Traceback (tail):\n{stack}")
        console = sanitize_tail(error.console_output, max_chars=CONSOLE_MAX_CHARS)
        if console:
            parts.append(f"Console output:\n{console}")
    return "\n".join(parts)
