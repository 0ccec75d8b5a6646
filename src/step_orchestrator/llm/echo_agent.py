"""Local deterministic agent for CLI backend integration tests and demos."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from pathlib import Path

_SCHEMA_MARKER = re.compile(r"^Response schema: (\w+)", re.MULTILINE)
_REQUEST_MARKER = re.compile(r"^## Request\n(.*)\Z", re.MULTILINE | re.DOTALL)


def build_reply(prompt: str) -> dict[str, object]:
    """Answer the schema named in the prompt with a fixed payload."""

    schema = _SCHEMA_MARKER.search(prompt)
    schema_name = schema.group(1) if schema else ""
    request = _REQUEST_MARKER.search(prompt)
    request_text = request.group(1).strip() if request else prompt.strip()

    if schema_name == "goal_and_plan":
        return {
            "goal": request_text or "echo goal",
            "message": "Planned two steps.",
            "plan": [
                {"description": f"Think about: {request_text}", "actionType": "thinking"},
                {"description": "Answer the user", "actionType": "final-response"},
            ],
        }
    if schema_name == "code_generation":
        return {
            "code": "provide_result({'artifacts': len(ARTIFACTS)})",
            "explanation": "Counts the available artifacts.",
        }
    if schema_name == "thinking":
        return {"reasoning": f"echo reasoning: {request_text}", "message": request_text}
    if schema_name == "validation":
        return {"isComplete": True, "message": "Looks complete.", "missingAspects": []}
    return {"message": f"echo: {request_text}"}


def main(argv: list[str] | None = None) -> int:
    """Print one JSON reply for the prompt file and report token usage on stderr."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    prompt = Path(args.prompt_file).read_text("utf-8")
    if os.getenv("STEP_ORCHESTRATOR_ECHO_FAIL"):
        sys.stderr.write(os.environ["STEP_ORCHESTRATOR_ECHO_FAIL"] + "\n")
        return 1

    sys.stdout.write(json.dumps(build_reply(prompt)) + "\n")
    sys.stderr.write(f"input_tokens: {len(prompt.split())}\noutput_tokens: 8\n")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
