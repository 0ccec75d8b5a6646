"""Best-effort recovery of JSON payloads and token usage from agent output."""

from __future__ import annotations

import json
import re
from typing import Any

from step_orchestrator.orchestrator.models import UsageMetrics

_FENCED_JSON = re.compile(r"```(?:json)?[^\n]*\n?(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)

_JSON_PROMPT_TOKENS = re.compile(r'"prompt_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COMPLETION_TOKENS = re.compile(r'"completion_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_TOTAL_TOKENS = re.compile(r'"total_tokens"\s*:\s*(\d+)', re.IGNORECASE)

_INPUT_TOKENS = re.compile(r"input[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOTAL_TOKENS = re.compile(r"total[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOKENS_USED = re.compile(r"tokens used\s*[\r\n ]+\s*([\d,]+)", re.IGNORECASE)


def parse_json_payload(text: str) -> dict[str, Any] | None:
    """Find a JSON object in model output: whole text, fenced block, then outer braces."""

    stripped = text.strip()
    if not stripped:
        return None

    direct = _try_load_dict(stripped)
    if direct is not None:
        return direct

    for fenced in _FENCED_JSON.finditer(stripped):
        payload = _try_load_dict(fenced.group(1))
        if payload is not None:
            return payload

    start = stripped.find("{")
    end = stripped.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return None
    return _try_load_dict(stripped[start : end + 1])


def extract_usage(*, stdout: str, stderr: str) -> UsageMetrics | None:
    """Extract token usage from structured markers, falling back to plain text."""

    for text in (stdout, stderr):
        prompt = _extract_int(_JSON_PROMPT_TOKENS, text)
        completion = _extract_int(_JSON_COMPLETION_TOKENS, text)
        total = _extract_int(_JSON_TOTAL_TOKENS, text)
        if prompt is not None or completion is not None or total is not None:
            return _usage(prompt, completion, total)

    prompt = completion = total = None
    for text in (stderr, stdout):
        prompt = prompt if prompt is not None else _extract_int(_INPUT_TOKENS, text)
        completion = completion if completion is not None else _extract_int(_OUTPUT_TOKENS, text)
        if total is None:
            total = _extract_int(_TOTAL_TOKENS, text)
        if total is None:
            total = _extract_int(_TOKENS_USED, text)
    if prompt is None and completion is None and total is None:
        return None
    return _usage(prompt, completion, total)


def _usage(prompt: int | None, completion: int | None, total: int | None) -> UsageMetrics:
    if total is None:
        known = [value for value in (prompt, completion) if value is not None]
        total = sum(known) if known else None
    return UsageMetrics(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)


def _try_load_dict(raw: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    return parsed


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
