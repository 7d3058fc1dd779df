"""Timeout, retry and cancellation wrapper around single stage calls.

This is the only place retries happen. Callers hand over a zero-argument
coroutine factory and a :class:`StepContext`; every failure that escapes is an
:class:`ExecutorError` produced by the failure classifier.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Generic, Literal, TypeVar

from fit_check.orchestrator.failure_classifier import (
    ExecutorError,
    classify_error,
    create_cancellation_error,
    create_max_retries_error,
    create_timeout_error,
    should_retry,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25

_RANDOM = random.Random()  # noqa: S311


@dataclass(slots=True, frozen=True)
class RetryOptions:
    max_attempts: int = 3
    initial_delay_ms: int = 1_000
    max_delay_ms: int = 10_000
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


class AbortSignal:
    """Cooperative cancellation flag observed by the resilience wrapper."""

    def __init__(self) -> None:
        self._aborted = False
        self._reason: str | None = None
        self._listeners: list[Callable[[str | None], None]] = []
        self._event: asyncio.Event | None = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def add_listener(self, listener: Callable[[str | None], None]) -> Callable[[], None]:
        """Call ``listener`` once on abort; returns a function that unsubscribes it."""

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def wait(self) -> None:
        if self._aborted:
            return
        if self._event is None:
            self._event = asyncio.Event()
        await self._event.wait()

    def _fire(self, reason: str | None) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        listeners, self._listeners = self._listeners, []
        for listener in listeners:
            listener(reason)


class AbortController:
    """Owner side of an :class:`AbortSignal`; aborting is idempotent."""

    def __init__(self) -> None:
        self.signal = AbortSignal()

    def abort(self, reason: str | None = None) -> None:
        self.signal._fire(reason)  # noqa: SLF001


def create_linked_abort_controller(parent: AbortSignal | None) -> AbortController:
    """Child controller that follows ``parent`` aborts, past and future."""

    controller = AbortController()
    if parent is None:
        return controller
    if parent.aborted:
        controller.abort(parent.reason)
        return controller
    parent.add_listener(controller.abort)
    return controller


@dataclass(slots=True)
class StepContext:
    """Per-call policy for :func:`execute_with_resilience`."""

    stage: str
    timeout_ms: int
    retry_options: RetryOptions
    abort_signal: AbortSignal | None = None
    on_error: Callable[[ExecutorError], None] | None = None
    on_retry: Callable[[int, ExecutorError, float], None] | None = None
    rng: random.Random | None = None

    @property
    def is_aborted(self) -> bool:
        return self.abort_signal is not None and self.abort_signal.aborted


@dataclass(slots=True)
class ParallelResult(Generic[T]):
    index: int
    status: Literal["fulfilled", "rejected"]
    value: T | None = None
    error: ExecutorError | None = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


class _AttemptTimedOutError(Exception):
    pass


class _AttemptAbortedError(Exception):
    pass


def calculate_backoff_delay(
    attempt: int,
    options: RetryOptions,
    rng: random.Random | None = None,
) -> float:
    """Delay in ms before retrying after ``attempt``: capped exponential base plus up to 25% jitter."""

    base = min(
        options.initial_delay_ms * options.backoff_multiplier ** max(attempt - 1, 0),
        options.max_delay_ms,
    )
    return base + (rng or _RANDOM).random() * base * JITTER_RATIO


async def execute_with_resilience(fn: Callable[[], Awaitable[T]], context: StepContext) -> T:
    """Run ``fn`` with timeout, bounded retries and cancellation."""

    options = context.retry_options
    attempt = 0
    while True:
        attempt += 1
        if context.is_aborted:
            raise _cancelled(context, attempt)

        try:
            return await _run_attempt(fn, context.timeout_ms, context.abort_signal)
        except _AttemptTimedOutError:
            error = create_timeout_error(context.stage, context.timeout_ms, attempt)
        except _AttemptAbortedError:
            raise _cancelled(context, attempt) from None
        except Exception as raw:  # noqa: BLE001
            if context.is_aborted:
                raise _cancelled(context, attempt) from raw
            error = classify_error(raw, context.stage, attempt)

        _report_error(context, error)

        if not should_retry(error, attempt, options.max_attempts):
            if attempt > 1 and attempt >= options.max_attempts and error.recoverable:
                raise create_max_retries_error(context.stage, options.max_attempts, error)
            raise error

        delay_ms = calculate_backoff_delay(attempt, options, context.rng)
        logger.debug(
            "Retrying %s after attempt %d in %.0fms: %s",
            context.stage,
            attempt,
            delay_ms,
            error.message,
        )
        if context.on_retry is not None:
            try:
                context.on_retry(attempt, error, delay_ms)
            except Exception:
                logger.exception("on_retry hook failed for %s", context.stage)
        await _sleep_unless_aborted(delay_ms, context, attempt)


async def execute_parallel_with_resilience(
    operations: Sequence[Callable[[], Awaitable[T]]],
    context: StepContext,
) -> list[ParallelResult[T]]:
    """Run every operation concurrently; one result per input position, never raises."""

    async def _run_one(index: int, operation: Callable[[], Awaitable[T]]) -> ParallelResult[T]:
        try:
            value = await execute_with_resilience(operation, context)
        except ExecutorError as error:
            return ParallelResult(index=index, status="rejected", error=error)
        return ParallelResult(index=index, status="fulfilled", value=value)

    return list(
        await asyncio.gather(
            *(_run_one(index, operation) for index, operation in enumerate(operations)),
        ),
    )


async def _run_attempt(
    fn: Callable[[], Awaitable[T]],
    timeout_ms: int,
    signal: AbortSignal | None,
) -> T:
    task = asyncio.ensure_future(fn())
    waiters: set[asyncio.Future] = {task}
    abort_waiter: asyncio.Future | None = None
    if signal is not None:
        abort_waiter = asyncio.ensure_future(signal.wait())
        waiters.add(abort_waiter)
    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=timeout_ms / 1000,
            return_when=asyncio.FIRST_COMPLETED,
        )
    except asyncio.CancelledError:
        task.cancel()
        raise
    finally:
        if abort_waiter is not None:
            abort_waiter.cancel()

    if task in done:
        return task.result()

    # The orchestrator stops waiting; the call itself only gets a cancel request.
    task.cancel()
    task.add_done_callback(_discard_outcome)
    if abort_waiter is not None and abort_waiter in done:
        raise _AttemptAbortedError
    raise _AttemptTimedOutError


async def _sleep_unless_aborted(delay_ms: float, context: StepContext, attempt: int) -> None:
    signal = context.abort_signal
    if signal is None:
        await asyncio.sleep(delay_ms / 1000)
        return
    if signal.aborted:
        raise _cancelled(context, attempt)
    try:
        await asyncio.wait_for(signal.wait(), timeout=delay_ms / 1000)
    except asyncio.TimeoutError:
        return
    raise _cancelled(context, attempt)


def _discard_outcome(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


def _report_error(context: StepContext, error: ExecutorError) -> None:
    if context.on_error is None:
        return
    try:
        context.on_error(error)
    except Exception:
        logger.exception("on_error hook failed for %s", context.stage)


def _cancelled(context: StepContext, attempt: int) -> ExecutorError:
    error = create_cancellation_error(context.stage, attempt)
    _report_error(context, error)
    return error
