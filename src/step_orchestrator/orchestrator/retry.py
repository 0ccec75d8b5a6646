"""Retry runner with per-attempt timeout, validation and a shared throttle."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from step_orchestrator.orchestrator.errors import (
    AttemptTimeoutError,
    RetryExhaustedError,
    ValidationFailedError,
)
from step_orchestrator.orchestrator.models import RetryState

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryOptions:
    """Recognized retry options. Durations are in seconds."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    backoff_factor: float = 2.0
    timeout_seconds: float | None = 180.0
    min_interval_seconds: float = 0.1

    def backoff_delay(self, failed_attempts: int) -> float:
        """Delay after the ``failed_attempts``-th failure."""

        return self.initial_delay_seconds * self.backoff_factor ** (failed_attempts - 1)


@dataclass(frozen=True, slots=True)
class AttemptContext(Generic[T]):
    """What the operation knows about earlier attempts."""

    previous_result: T | None
    previous_error: BaseException | None
    attempt: int


class TaskThrottle:
    """Floor on the time between the starts of any two throttled attempts.

    One instance is shared by every caller that should be spaced out together.
    The read-then-write of ``last_started_at`` is not locked: a lost race only
    shortens one gap.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep
        self.last_started_at: float | None = None

    async def wait_turn(self, min_interval_seconds: float) -> float:
        now = self._clock()
        if self.last_started_at is not None:
            remaining = min_interval_seconds - (now - self.last_started_at)
            if remaining > 0:
                await self._sleep(remaining)
                now = self._clock()
        self.last_started_at = now
        return now

    def reset(self) -> None:
        self.last_started_at = None


DEFAULT_THROTTLE = TaskThrottle()

Operation = Callable[[AttemptContext[T]], T | Awaitable[T]]
Validator = Callable[[T], bool | Awaitable[bool]]


async def with_retry(
    operation: Operation[T],
    validate: Validator[T] | None = None,
    options: RetryOptions | None = None,
    *,
    throttle: TaskThrottle | None = None,
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation`` until ``validate`` accepts its result or attempts run out.

    Every failure is retried: an exception from the operation, a timeout, and
    a rejected or raising validator. Exhaustion re-raises the last error.
    """

    resolved = options or RetryOptions()
    active_throttle = throttle or DEFAULT_THROTTLE
    state: RetryState = RetryState()

    while state.attempts < resolved.max_attempts:
        state.last_invocation_at = await active_throttle.wait_turn(
            resolved.min_interval_seconds,
        )
        context: AttemptContext[T] = AttemptContext(
            previous_result=state.last_result,
            previous_error=state.last_error,
            attempt=state.attempts + 1,
        )
        try:
            result = await _run_attempt(operation, context, resolved.timeout_seconds)
        except Exception as error:  # noqa: BLE001
            failure: Exception = error
        else:
            state.last_result = result
            try:
                if await _run_validator(validate, result):
                    return result
                failure = ValidationFailedError()
            except Exception as error:  # noqa: BLE001
                failure = ValidationFailedError(f"Validation failed: {error}")
                failure.__cause__ = error

        state.attempts += 1
        state.last_error = failure
        logger.warning(
            "Attempt %d/%d failed: %s",
            state.attempts,
            resolved.max_attempts,
            failure,
        )
        if state.attempts < resolved.max_attempts:
            await sleep(resolved.backoff_delay(state.attempts))

    logger.error("Retries exhausted after %d attempts", state.attempts)
    if state.last_error is not None:
        raise state.last_error
    raise RetryExhaustedError()


async def _run_attempt(
    operation: Operation[T],
    context: AttemptContext[T],
    timeout_seconds: float | None,
) -> T:
    outcome = operation(context)
    if not inspect.isawaitable(outcome):
        return outcome

    pending = asyncio.ensure_future(outcome)
    if timeout_seconds is None:
        return await pending
    try:
        done, _ = await asyncio.wait({pending}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        pending.cancel()
        raise
    if pending in done:
        return pending.result()

    # The attempt is abandoned, not aborted: it may still finish in the background.
    pending.add_done_callback(_consume_abandoned_outcome)
    raise AttemptTimeoutError(timeout_seconds)


async def _run_validator(validate: Validator[T] | None, result: T) -> bool:
    if validate is None:
        return True
    verdict: Any = validate(result)
    if inspect.isawaitable(verdict):
        verdict = await verdict
    return bool(verdict)


def _consume_abandoned_outcome(future: asyncio.Future[Any]) -> None:
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.debug("Abandoned attempt finished with error: %s", error)
