"""RunRegistry: start, resume, cancel and inspect runs in one process."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass, field
from typing import Any

from fit_check.config import calculate_progress
from fit_check.orchestrator import events
from fit_check.orchestrator.dimensions import EVALUATION_DIMENSIONS
from fit_check.orchestrator.failure_classifier import (
    ErrorCode,
    ExecutorError,
    create_cancellation_error,
)
from fit_check.orchestrator.models import (
    ExecutionStatus,
    PipelineStage,
    RunInput,
    UserAnswer,
    now_ms,
)
from fit_check.orchestrator.resilience import AbortController
from fit_check.orchestrator.sequencer import ExecutionOutcome, OutcomeStatus, StageSequencer
from fit_check.orchestrator.state import (
    RunState,
    create_initial_state,
    get_completed_dimension_count,
    get_unanswered_questions,
    merge_answers,
)

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Pipeline cancelled by user"

RunEventSink = Callable[[str, events.PipelineEvent], None]


class RunNotFoundError(LookupError):
    """Raised when a run id is unknown to the registry and the snapshot store."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class RunStateError(RuntimeError):
    """Raised when an operation does not fit the run's current status."""

    def __init__(self, run_id: str, message: str) -> None:
        super().__init__(f"Run {run_id}: {message}")
        self.run_id = run_id


@dataclass(slots=True)
class RunStatus:
    """Process-local view of one run; never persisted."""

    run_id: str
    stage: PipelineStage
    status: ExecutionStatus
    pending_question_ids: list[str] = field(default_factory=list)
    errors: list[ExecutorError] = field(default_factory=list)
    started_at: int = field(default_factory=now_ms)
    completed_at: int | None = None
    progress: int = 0

    def snapshot(self) -> RunStatus:
        return RunStatus(
            run_id=self.run_id,
            stage=self.stage,
            status=self.status,
            pending_question_ids=list(self.pending_question_ids),
            errors=list(self.errors),
            started_at=self.started_at,
            completed_at=self.completed_at,
            progress=self.progress,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "runId": self.run_id,
            "stage": self.stage.value,
            "status": self.status.value,
            "pendingQuestionIds": list(self.pending_question_ids),
            "errors": [error.to_dict() for error in self.errors],
            "startedAt": self.started_at,
            "progress": self.progress,
        }
        if self.completed_at is not None:
            payload["completedAt"] = self.completed_at
        return payload


@dataclass(slots=True)
class _RunRecord:
    run_id: str
    state: RunState
    status: RunStatus
    controller: AbortController = field(default_factory=AbortController)
    task: asyncio.Task[ExecutionOutcome] | None = None
    subscribers: list[Callable[[events.PipelineEvent], None]] = field(default_factory=list)
    finished_monotonic: float | None = None


class RunHandle:
    """Caller-side handle for one started or resumed run."""

    def __init__(self, registry: RunRegistry, run_id: str, result: asyncio.Task[ExecutionOutcome]) -> None:
        self._registry = registry
        self.run_id = run_id
        self.result = result

    async def wait(self) -> ExecutionOutcome:
        return await self.result

    def cancel(self) -> bool:
        return self._registry.cancel_run(self.run_id)

    def get_status(self) -> RunStatus | None:
        return self._registry.get_run_status(self.run_id)


class RunRegistry:
    """Owns run records and routes events by run id.

    Constructed once by the hosting process and passed by reference. Runs are
    removed only through :meth:`remove_run` or :meth:`evict_finished`.
    """

    def __init__(
        self,
        *,
        sequencer: StageSequencer,
        on_event: RunEventSink | None = None,
    ) -> None:
        self.sequencer = sequencer
        self._on_event = on_event
        self._runs: dict[str, _RunRecord] = {}
        self._background: set[asyncio.Task[Any]] = set()

    # -- lifecycle ---------------------------------------------------------------

    def start_run(
        self,
        run_input: RunInput,
        *,
        answers: Iterable[UserAnswer] = (),
    ) -> RunHandle:
        """Start a new run; must be called with a running event loop.

        ``answers`` pre-seeds the run with answers given up front.
        """

        return self.start_run_with_id(str(uuid.uuid4()), run_input, answers=answers)

    def start_run_with_id(
        self,
        run_id: str,
        run_input: RunInput,
        *,
        answers: Iterable[UserAnswer] = (),
    ) -> RunHandle:
        if run_id in self._runs:
            raise RunStateError(run_id, "run id already registered")
        state = create_initial_state(run_input)
        merge_answers(state, answers)
        record = _RunRecord(
            run_id=run_id,
            state=state,
            status=RunStatus(
                run_id=run_id,
                stage=state.current_stage,
                status=ExecutionStatus.RUNNING,
                started_at=state.started_at,
            ),
        )
        self._runs[run_id] = record
        logger.info("Starting run %s", run_id)
        record.task = asyncio.create_task(
            self._drive(record, [events.pipeline_start(run_id, state.started_at)]),
            name=f"fit-check-run-{run_id}",
        )
        return RunHandle(self, run_id, record.task)

    async def resume_run(
        self,
        run_id: str,
        answers: Iterable[UserAnswer],
        *,
        step_id: str | None = None,
    ) -> RunHandle:
        """Resume a suspended run, restoring it from the snapshot store if needed."""

        record = self._runs.get(run_id)
        if record is None:
            record = await self._restore(run_id)
        if record.status.status != ExecutionStatus.SUSPENDED:
            raise RunStateError(run_id, f"cannot resume a {record.status.status.value} run")
        if step_id is not None and step_id != record.state.current_stage.value:
            raise RunStateError(
                run_id,
                f"suspended at {record.state.current_stage.value!r}, not {step_id!r}",
            )

        applied = merge_answers(record.state, answers)
        record.controller = AbortController()
        record.status.status = ExecutionStatus.RUNNING
        record.status.pending_question_ids = []
        record.status.completed_at = None
        record.finished_monotonic = None
        prelude: list[events.PipelineEvent] = [
            events.answer_received(answer.question_id, answer.answer) for answer in applied
        ]
        prelude.append(events.pipeline_resumed(run_id, record.state.current_stage.value))
        logger.info(
            "Resuming run %s at %s with %d answer(s)",
            run_id,
            record.state.current_stage.value,
            len(applied),
        )
        record.task = asyncio.create_task(
            self._drive(record, prelude),
            name=f"fit-check-run-{run_id}",
        )
        return RunHandle(self, run_id, record.task)

    def cancel_run(self, run_id: str) -> bool:
        """Cancel a running or suspended run; False when there is nothing to cancel."""

        record = self._runs.get(run_id)
        if record is None:
            return False
        if record.status.status not in {ExecutionStatus.RUNNING, ExecutionStatus.SUSPENDED}:
            return False

        was_suspended = record.status.status == ExecutionStatus.SUSPENDED
        record.controller.abort(CANCELLED_MESSAGE)
        error = create_cancellation_error(record.state.current_stage)
        record.state.errors.append(error)
        record.status.status = ExecutionStatus.CANCELLED
        record.status.pending_question_ids = []
        record.status.completed_at = now_ms()
        record.status.errors = list(record.state.errors)
        record.finished_monotonic = time.monotonic()
        logger.info("Cancelled run %s in %s", run_id, record.state.current_stage.value)
        self._dispatch(
            record,
            events.pipeline_error(ErrorCode.CANCELLED.value, CANCELLED_MESSAGE, False),
        )
        if was_suspended:
            self._spawn(run_id, self._drop_snapshot)
        return True

    def get_run_status(self, run_id: str) -> RunStatus | None:
        record = self._runs.get(run_id)
        if record is None:
            return None
        return record.status.snapshot()

    def get_run_state(self, run_id: str) -> RunState | None:
        record = self._runs.get(run_id)
        return record.state if record is not None else None

    def list_runs(self) -> list[RunStatus]:
        return [record.status.snapshot() for record in self._runs.values()]

    # -- subscriptions -------------------------------------------------------------

    def subscribe(
        self,
        run_id: str,
        sink: Callable[[events.PipelineEvent], None],
    ) -> Callable[[], None]:
        """Route events of ``run_id`` to ``sink``; returns an unsubscribe callable."""

        record = self._runs.get(run_id)
        if record is None:
            raise RunNotFoundError(run_id)
        record.subscribers.append(sink)

        def _unsubscribe() -> None:
            if sink in record.subscribers:
                record.subscribers.remove(sink)

        return _unsubscribe

    # -- eviction ------------------------------------------------------------------

    def remove_run(self, run_id: str) -> bool:
        record = self._runs.get(run_id)
        if record is None:
            return False
        if record.status.status == ExecutionStatus.RUNNING:
            raise RunStateError(run_id, "cannot remove a running run")
        del self._runs[run_id]
        return True

    def evict_finished(self, older_than_seconds: float) -> int:
        """Drop terminal runs that finished at least ``older_than_seconds`` ago."""

        cutoff = time.monotonic() - older_than_seconds
        stale = [
            run_id
            for run_id, record in self._runs.items()
            if record.status.status.is_terminal
            and record.finished_monotonic is not None
            and record.finished_monotonic <= cutoff
        ]
        for run_id in stale:
            del self._runs[run_id]
        if stale:
            logger.debug("Evicted %d finished run(s)", len(stale))
        return len(stale)

    async def aclose(self) -> None:
        """Wait for background housekeeping tasks."""

        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # -- internals -----------------------------------------------------------------

    async def _drive(
        self,
        record: _RunRecord,
        prelude: list[events.PipelineEvent],
    ) -> ExecutionOutcome:
        for event in prelude:
            self._dispatch(record, event)
        outcome = await self.sequencer.execute(
            record.run_id,
            record.state,
            abort_signal=record.controller.signal,
            emit=lambda event: self._dispatch(record, event),
        )
        self._finish(record, outcome)
        return outcome

    def _finish(self, record: _RunRecord, outcome: ExecutionOutcome) -> None:
        status = record.status
        status.errors = list(record.state.errors)
        status.stage = record.state.current_stage
        if status.status == ExecutionStatus.CANCELLED:
            return
        if outcome.status == OutcomeStatus.SUSPENDED:
            status.status = ExecutionStatus.SUSPENDED
            status.pending_question_ids = outcome.pending_question_ids
            return
        status.status = {
            OutcomeStatus.SUCCESS: ExecutionStatus.COMPLETED,
            OutcomeStatus.FAILED: ExecutionStatus.FAILED,
            OutcomeStatus.CANCELLED: ExecutionStatus.CANCELLED,
        }[outcome.status]
        if status.status == ExecutionStatus.COMPLETED:
            status.progress = 100
        status.completed_at = record.state.completed_at or now_ms()
        record.finished_monotonic = time.monotonic()

    async def _restore(self, run_id: str) -> _RunRecord:
        store = self.sequencer.store
        state = await store.load(run_id) if store is not None else None
        if state is None:
            raise RunNotFoundError(run_id)
        existing = self._runs.get(run_id)
        if existing is not None:
            return existing
        record = _RunRecord(
            run_id=run_id,
            state=state,
            status=RunStatus(
                run_id=run_id,
                stage=state.current_stage,
                status=ExecutionStatus.SUSPENDED,
                pending_question_ids=[
                    question.id for question in get_unanswered_questions(state, blocking_only=True)
                ],
                errors=list(state.errors),
                started_at=state.started_at,
            ),
        )
        record.status.progress = _progress(state)
        self._runs[run_id] = record
        logger.info("Restored run %s from snapshot at %s", run_id, state.current_stage.value)
        return record

    def _dispatch(self, record: _RunRecord, event: events.PipelineEvent) -> None:
        self._apply_event(record, event)
        sinks: list[Callable[[events.PipelineEvent], None]] = list(record.subscribers)
        if self._on_event is not None:
            on_event = self._on_event
            sinks.append(lambda item: on_event(record.run_id, item))
        for sink in sinks:
            try:
                sink(event)
            except Exception:
                logger.exception("Run %s: subscriber failed on %s", record.run_id, event.type)

    @staticmethod
    def _apply_event(record: _RunRecord, event: events.PipelineEvent) -> None:
        status = record.status
        if isinstance(event, events.PipelineStageEvent):
            status.stage = event.stage
        if isinstance(event, events.PipelineCompleteEvent):
            status.progress = 100
            return
        status.progress = max(status.progress, _progress(record.state))

    def _spawn(
        self,
        run_id: str,
        factory: Callable[[str], Coroutine[Any, Any, None]],
    ) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Run %s: no event loop, snapshot left to expire", run_id)
            return
        task = loop.create_task(factory(run_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _drop_snapshot(self, run_id: str) -> None:
        store = self.sequencer.store
        if store is None:
            return
        try:
            await store.delete(run_id)
        except Exception:
            logger.exception("Run %s: failed to delete snapshot", run_id)


def _progress(state: RunState) -> int:
    fraction = 0.0
    if state.current_stage == PipelineStage.DIMENSIONS:
        fraction = get_completed_dimension_count(state) / len(EVALUATION_DIMENSIONS)
    return calculate_progress(state.completed_stages, state.current_stage, fraction)
