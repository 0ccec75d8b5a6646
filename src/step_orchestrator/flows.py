"""Prefect flow that drives one project to a stopping point.

The advance loop is ``StepOrchestrator.run``; the flow adds Prefect run
tracking and a per-status summary around it.
"""

from __future__ import annotations

import logging
from collections import Counter

from prefect import flow

from step_orchestrator.orchestrator.engine import (
    DEFAULT_MAX_STEPS,
    AdvanceOutcome,
    StepOrchestrator,
)

logger = logging.getLogger(__name__)


@flow(name="drive_project_flow", validate_parameters=False)
async def drive_project_flow(
    *,
    orchestrator: StepOrchestrator,
    project_id: str,
    message: str,
    max_steps: int = DEFAULT_MAX_STEPS,
) -> list[AdvanceOutcome]:
    """Advance ``project_id`` until it finishes, stalls, fails or needs input."""

    outcomes = await orchestrator.run(project_id, message, max_steps=max_steps)
    for index, outcome in enumerate(outcomes, 1):
        logger.info("Project %s advance %d: %s", project_id, index, outcome.summary())

    counts = Counter(outcome.status.value for outcome in outcomes)
    final = outcomes[-1].status.value if outcomes else "none"
    logger.info(
        "Project %s flow done after %d advances (final=%s, %s)",
        project_id,
        len(outcomes),
        final,
        ", ".join(f"{status}={count}" for status, count in sorted(counts.items())),
    )
    return outcomes
