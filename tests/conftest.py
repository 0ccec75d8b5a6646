"""Shared test fixtures."""

from __future__ import annotations

import os
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest

from step_orchestrator.config import ECHO_AGENT_COMMAND, Settings
from step_orchestrator.llm.base import GenerateReply, GenerateRequest
from step_orchestrator.orchestrator.retry import RetryOptions
from step_orchestrator.store.memory import InMemoryArtifactManager, InMemoryTaskManager

SRC_ROOT = Path(__file__).resolve().parents[1] / "src"
FAST_RETRY = RetryOptions(
    max_attempts=3,
    initial_delay_seconds=0.0,
    backoff_factor=2.0,
    timeout_seconds=5.0,
    min_interval_seconds=0.0,
)


class ScriptedLlm:
    """Fake LLM answering by response-schema name.

    Each schema maps to a list of payloads (or exceptions to raise) consumed in
    order; the last entry keeps answering once the list is drained.
    """

    def __init__(self, script: dict[str, list[Any]] | None = None) -> None:
        self.script = {name: list(items) for name, items in (script or {}).items()}
        self.requests: list[GenerateRequest] = []

    def calls(self, schema_name: str) -> list[GenerateRequest]:
        return [request for request in self.requests if _schema_name(request) == schema_name]

    async def generate(self, request: GenerateRequest) -> GenerateReply:
        self.requests.append(request)
        name = _schema_name(request)
        items = self.script.get(name)
        if not items:
            raise AssertionError(f"No scripted reply for schema {name!r}")
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, BaseException):
            raise item
        return GenerateReply(payload=item)


def _schema_name(request: GenerateRequest) -> str:
    if request.instructions.schema is None:
        return "response"
    return request.instructions.schema_name


@pytest.fixture()
def task_manager() -> InMemoryTaskManager:
    return InMemoryTaskManager()


@pytest.fixture()
def artifact_manager() -> InMemoryArtifactManager:
    return InMemoryArtifactManager()


@pytest.fixture()
def worker_pythonpath(monkeypatch):
    """Make ``step_orchestrator`` importable in spawned interpreters."""

    existing = os.environ.get("PYTHONPATH")
    value = f"{SRC_ROOT}{os.pathsep}{existing}" if existing else str(SRC_ROOT)
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def echo_agent(monkeypatch, worker_pythonpath):
    """Monkeypatch Settings.from_env to use the echo agent with fast retries."""
    original_from_env = Settings.from_env

    def _patched_from_env(db_path=None):
        settings = original_from_env(db_path=db_path)
        new_llm = replace(
            settings.llm,
            backend="cli",
            command_template=ECHO_AGENT_COMMAND,
            timeout_seconds=60.0,
        )
        new_retry = replace(
            settings.retry,
            initial_delay_seconds=0.0,
            min_interval_seconds=0.0,
        )
        return replace(settings, llm=new_llm, retry=new_retry)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))


@pytest.fixture()
def scripted_llm() -> type[ScriptedLlm]:
    return ScriptedLlm


@pytest.fixture()
def fast_retry() -> RetryOptions:
    return FAST_RETRY
