"""LLM service backends."""

from step_orchestrator.llm.base import GenerateRequest, LlmService, LlmServiceError
from step_orchestrator.llm.cli_backend import CliLlmService
from step_orchestrator.llm.http_backend import HttpLlmService

__all__ = [
    "CliLlmService",
    "GenerateRequest",
    "HttpLlmService",
    "LlmService",
    "LlmServiceError",
]
