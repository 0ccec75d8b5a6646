"""OpenAI-compatible chat-completions LLM service."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from step_orchestrator.llm.base import GenerateReply, GenerateRequest, LlmServiceError
from step_orchestrator.llm.output_parser import parse_json_payload
from step_orchestrator.orchestrator.models import UsageMetrics
from step_orchestrator.orchestrator.sanitization import sanitize_preview

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_MAX_RETRIES = 2
_TRANSIENT_STATUS_CODES = frozenset({408, 409, 425, 429})


class HttpLlmService:
    """POST structured-output requests to ``{base_url}/chat/completions``."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        temperature: float = 0.2,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"
        self._max_retries = max_retries
        self._transport = transport

    def build_body(self, request: GenerateRequest) -> dict[str, Any]:
        messages = [{"role": "system", "content": request.instructions.render()}]
        messages.extend({"role": "user", "content": post} for post in request.thread_posts)
        messages.append({"role": "user", "content": request.message})

        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        schema = request.instructions.schema
        if schema is not None:
            body["response_format"] = {
                "type": "json_schema",
                "json_schema": {"name": request.instructions.schema_name, "schema": schema},
            }
        else:
            body["response_format"] = {"type": "json_object"}
        return body

    async def generate(self, request: GenerateRequest) -> GenerateReply:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self._timeout,
            headers=self._headers,
            transport=self._transport or httpx.AsyncHTTPTransport(retries=self._max_retries),
        ) as client:
            try:
                response = await client.post("/chat/completions", json=self.build_body(request))
            except httpx.TimeoutException as error:
                logger.warning("Timeout calling %s", self.base_url)
                raise LlmServiceError("LLM HTTP request timed out", transient=True) from error
            except httpx.HTTPError as error:
                logger.warning("HTTP error calling %s: %s", self.base_url, error)
                raise LlmServiceError(f"LLM HTTP request failed: {error}", transient=True) from error

        if not response.is_success:
            transient = (
                response.status_code in _TRANSIENT_STATUS_CODES or response.status_code >= 500
            )
            raise LlmServiceError(
                f"LLM HTTP {response.status_code}: "
                f"{sanitize_preview(response.text, max_chars=500)}",
                transient=transient,
            )

        return _parse_completion(response)


def _parse_completion(response: httpx.Response) -> GenerateReply:
    try:
        data = response.json()
        content = data["choices"][0]["message"]["content"]
    except (ValueError, KeyError, IndexError, TypeError) as error:
        raise LlmServiceError(
            "LLM HTTP response is not a chat completion",
            transient=False,
        ) from error

    payload = parse_json_payload(content if isinstance(content, str) else "")
    if payload is None:
        raise LlmServiceError(
            "LLM reply did not contain a JSON object: "
            f"{sanitize_preview(str(content), max_chars=200)}",
            transient=True,
        )

    usage_raw = data.get("usage")
    usage = None
    if isinstance(usage_raw, dict):
        usage = UsageMetrics(
            prompt_tokens=usage_raw.get("prompt_tokens"),
            completion_tokens=usage_raw.get("completion_tokens"),
            total_tokens=usage_raw.get("total_tokens"),
        )
    return GenerateReply(payload=payload, usage=usage)
