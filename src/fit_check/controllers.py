"""CLI controller for analysis run commands."""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Iterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fit_check.config import Settings, StoreBackend
from fit_check.orchestrator import events
from fit_check.orchestrator.channel import EventChannel
from fit_check.orchestrator.failure_classifier import format_error
from fit_check.orchestrator.models import QuestionSource, UserAnswer
from fit_check.orchestrator.registry import RunHandle, RunNotFoundError, RunRegistry, RunStateError
from fit_check.orchestrator.sequencer import ExecutionOutcome, OutcomeStatus, StageSequencer
from fit_check.orchestrator.sse import format_done_event, format_sse_error, format_sse_event
from fit_check.orchestrator.state import get_unanswered_questions
from fit_check.orchestrator.validation import (
    RequestValidationError,
    parse_cancel_request,
    parse_resume_request,
    parse_start_request,
    parse_status_query,
)
from fit_check.stages.base import AnalysisStages
from fit_check.stages.heuristic import HeuristicStages
from fit_check.stages.inference import ChatCompletionsClient, InferenceStages
from fit_check.storage.snapshots import InMemorySnapshotStore, SnapshotStore, SqliteSnapshotStore

logger = logging.getLogger(__name__)

_SENTINEL = object()

LineSink = Callable[[str], None]


class CliCommandError(RuntimeError):
    """Command finished unsuccessfully; the message is shown to the user."""


@dataclass(slots=True)
class AnalyzeCommand:
    """Input for the analyze CLI command."""

    problem: str
    context: str | None = None
    answers: tuple[UserAnswer, ...] = ()
    offline: bool = False
    sse: bool = False
    db_path: Path | None = None


@dataclass(slots=True)
class ResumeCommand:
    """Input for the resume CLI command."""

    run_id: str
    answers: tuple[UserAnswer, ...] = ()
    step_id: str | None = None
    offline: bool = False
    sse: bool = False
    db_path: Path | None = None


@dataclass(slots=True)
class RunLookupCommand:
    """Input for status and cancel CLI commands."""

    run_id: str
    db_path: Path | None = None


@dataclass(slots=True)
class RunListCommand:
    """Input for the runs CLI command."""

    db_path: Path | None = None


class AnalysisCliController:
    """CLI controller for analysis runs."""

    def analyze(self, command: AnalyzeCommand) -> Iterator[str]:
        """Start a run and yield progress lines as events arrive."""

        settings = Settings.from_env(db_path=command.db_path)
        payload: dict[str, str] = {"problem": command.problem}
        if command.context is not None:
            payload["context"] = command.context
        try:
            run_input = parse_start_request(payload)
        except RequestValidationError as exc:
            raise _invalid_request(exc) from exc

        async def _run(sink: LineSink) -> ExecutionOutcome:
            async with _session(settings, offline=command.offline) as registry:
                handle = registry.start_run(run_input, answers=command.answers)
                sink(f"Run {handle.run_id} started")
                return await _follow(registry, handle, sink, sse=command.sse)

        yield from _stream(_run)

    def resume(self, command: ResumeCommand) -> Iterator[str]:
        """Resume a suspended run from its snapshot."""

        settings = Settings.from_env(db_path=command.db_path)
        payload: dict[str, object] = {
            "runId": command.run_id,
            "answers": [
                {"questionId": answer.question_id, "answer": answer.answer}
                for answer in command.answers
            ],
        }
        if command.step_id is not None:
            payload["stepId"] = command.step_id
        try:
            request = parse_resume_request(payload)
        except RequestValidationError as exc:
            raise _invalid_request(exc) from exc

        async def _run(sink: LineSink) -> ExecutionOutcome:
            async with _session(settings, offline=command.offline) as registry:
                try:
                    handle = await registry.resume_run(
                        request.run_id,
                        request.answers,
                        step_id=request.step_id,
                    )
                except RunNotFoundError as exc:
                    raise CliCommandError(f"No suspended run {request.run_id}") from exc
                except RunStateError as exc:
                    raise CliCommandError(str(exc)) from exc
                sink(f"Run {handle.run_id} resumed")
                return await _follow(registry, handle, sink, sse=command.sse)

        yield from _stream(_run)

    def status(self, command: RunLookupCommand) -> Iterator[str]:
        """Show a suspended run's stage and pending questions."""

        try:
            run_id = parse_status_query({"runId": command.run_id})
        except RequestValidationError as exc:
            raise _invalid_request(exc) from exc
        settings = Settings.from_env(db_path=command.db_path)
        store = _sqlite_store(settings)
        try:
            state = store.load_sync(run_id)
        finally:
            store.close()
        if state is None:
            yield f"No suspended run {run_id}"
            return

        completed = ", ".join(stage.value for stage in state.completed_stages) or "-"
        yield f"Run {run_id}"
        yield f"  Stage:      {state.current_stage.value}"
        yield f"  Completed:  {completed}"
        yield f"  Answers:    {len(state.answers)}"
        pending = get_unanswered_questions(state, blocking_only=False)
        if pending:
            yield "  Pending questions:"
            for question in pending:
                yield f"    [{question.priority.value}] {question.id}: {question.question}"

    def list_runs(self, command: RunListCommand) -> Iterator[str]:
        """List stored snapshots of suspended runs."""

        settings = Settings.from_env(db_path=command.db_path)
        store = _sqlite_store(settings)
        try:
            rows = store.list_runs()
        finally:
            store.close()
        if not rows:
            yield "No suspended runs."
            return
        for row in rows:
            expires = row.expires_at.isoformat(timespec="seconds") if row.expires_at else "never"
            yield (
                f"{row.run_id}  stage={row.stage}  status={row.status}  "
                f"updated={row.updated_at.isoformat(timespec='seconds')}  expires={expires}"
            )

    def cancel(self, command: RunLookupCommand) -> Iterator[str]:
        """Drop a suspended run's snapshot so it can no longer be resumed."""

        try:
            run_id = parse_cancel_request({"runId": command.run_id})
        except RequestValidationError as exc:
            raise _invalid_request(exc) from exc
        settings = Settings.from_env(db_path=command.db_path)
        store = _sqlite_store(settings)
        try:
            if not store.exists_sync(run_id):
                raise CliCommandError(f"No suspended run {run_id}")
            store.delete_sync(run_id)
        finally:
            store.close()
        yield f"Cancelled run {run_id}"


def parse_answer(value: str, source: QuestionSource = QuestionSource.SCREENING) -> UserAnswer:
    """Parse ``question_id=answer text`` from the command line."""

    question_id, sep, answer = value.partition("=")
    if not sep or not question_id.strip() or not answer.strip():
        raise ValueError(f"Expected QUESTION_ID=ANSWER, got {value!r}")
    return UserAnswer(question_id=question_id.strip(), answer=answer.strip(), source=source)


def parse_answers(values: Iterable[str]) -> tuple[UserAnswer, ...]:
    return tuple(parse_answer(value) for value in values)



def _invalid_request(exc: RequestValidationError) -> CliCommandError:
    details = "; ".join(
        f"{path}: {', '.join(messages)}" for path, messages in exc.details.items()
    )
    return CliCommandError(f"{exc}: {details}")

@asynccontextmanager
async def _session(settings: Settings, *, offline: bool) -> AsyncIterator[RunRegistry]:
    """Wire stages, snapshot store, sequencer and registry for one command."""

    try:
        if offline:
            settings.validate()
        else:
            settings.validate_for_inference()
    except ValueError as exc:
        raise CliCommandError(str(exc)) from exc

    client: ChatCompletionsClient | None = None
    stages: AnalysisStages
    if offline:
        stages = HeuristicStages()
    else:
        client = ChatCompletionsClient.from_settings(settings.inference)
        stages = InferenceStages(client)

    store: SnapshotStore
    if settings.store.backend == StoreBackend.SQLITE:
        store = _sqlite_store(settings)
    else:
        store = InMemorySnapshotStore(default_ttl_seconds=settings.store.snapshot_ttl_seconds)

    registry = RunRegistry(
        sequencer=StageSequencer(
            stages=stages,
            settings=settings.executor,
            store=store,
            snapshot_ttl_seconds=settings.store.snapshot_ttl_seconds,
        ),
    )
    try:
        yield registry
    finally:
        await registry.aclose()
        if client is not None:
            await client.aclose()
        if isinstance(store, SqliteSnapshotStore):
            store.close()


async def _follow(
    registry: RunRegistry,
    handle: RunHandle,
    sink: LineSink,
    *,
    sse: bool,
) -> ExecutionOutcome:
    channel = EventChannel(registry.sequencer.settings.event_queue_size)
    unsubscribe = registry.subscribe(handle.run_id, channel.put)

    async def _drain() -> None:
        async for event in channel:
            line = _sse_frame(format_sse_event(event)) if sse else _describe(event)
            if line is not None:
                sink(line)

    consumer = asyncio.create_task(_drain())
    try:
        outcome = await handle.wait()
    finally:
        unsubscribe()
        channel.close()
        await consumer

    if channel.dropped:
        logger.warning("Dropped %d event(s) for run %s", channel.dropped, handle.run_id)
    if sse:
        if outcome.status == OutcomeStatus.FAILED and outcome.error is not None:
            sink(_sse_frame(format_sse_error(outcome.error.message, outcome.error.code.value)))
        else:
            sink(_sse_frame(format_done_event()))
    else:
        for line in _summarize(outcome):
            sink(line)
    return outcome


def _stream(run: Callable[[LineSink], Awaitable[ExecutionOutcome]]) -> Iterator[str]:
    """Run ``run`` on a private event loop thread and yield its lines in real time."""

    lines: queue.Queue[str | object] = queue.Queue()
    outcome_holder: list[ExecutionOutcome] = []
    error_holder: list[BaseException] = []

    def _run() -> None:
        try:
            outcome_holder.append(asyncio.run(run(lines.put)))
        except Exception as exc:  # noqa: BLE001
            error_holder.append(exc)
        finally:
            lines.put(_SENTINEL)

    worker_thread = threading.Thread(target=_run, daemon=True)
    worker_thread.start()

    while True:
        item = lines.get()
        if item is _SENTINEL:
            break
        yield str(item)

    worker_thread.join(timeout=10)

    if error_holder:
        error = error_holder[0]
        if isinstance(error, CliCommandError):
            raise error
        logger.debug("Run failed with unexpected error", exc_info=error)
        raise CliCommandError(f"Run failed with error: {error}") from error

    if outcome_holder and outcome_holder[0].status == OutcomeStatus.FAILED:
        outcome = outcome_holder[0]
        detail = format_error(outcome.error) if outcome.error is not None else "unknown error"
        raise CliCommandError(f"Run {outcome.run_id} failed: {detail}")


def _describe(event: events.PipelineEvent) -> str | None:  # noqa: PLR0911
    if isinstance(event, events.PipelineStageEvent):
        return f"== {event.stage.value}"
    if isinstance(event, (events.ScreeningQuestionEvent, events.DimensionQuestionEvent)):
        question = event.question
        return f"  ? [{question.priority.value}] {question.id}: {question.question}"
    if isinstance(event, events.ScreeningSignalEvent):
        return f"  preliminary signal: {event.signal.value}"
    if isinstance(event, events.DimensionCompleteEvent):
        analysis = event.analysis
        return (
            f"  {analysis.id}: {analysis.score.value} "
            f"(confidence {analysis.confidence:.0%}, weight {analysis.weight:.0%})"
        )
    if isinstance(event, events.VerdictResultEvent):
        return f"  verdict: {event.verdict.value} ({event.confidence:.0%}) {event.summary}"
    if isinstance(event, events.AnswerReceivedEvent):
        return f"  answer {event.question_id}: {event.answer}"
    if isinstance(event, events.PipelineErrorEvent):
        return f"  error [{event.code}] {event.message}"
    return None


def _summarize(outcome: ExecutionOutcome) -> list[str]:
    if outcome.status == OutcomeStatus.SUCCESS and outcome.result is not None:
        result = outcome.result
        lines = [
            f"Verdict: {result.verdict.value} (confidence {result.confidence:.0%})",
            f"Summary: {result.summary}",
        ]
        if result.risks:
            lines.append("Risks:")
            lines.extend(f"  - [{risk.severity}] {risk.risk}" for risk in result.risks)
        if result.alternatives:
            lines.append("Alternatives:")
            lines.extend(f"  - {alt.name} ({alt.type})" for alt in result.alternatives)
        if result.architecture is not None:
            lines.append(f"Architecture: {result.architecture.description}")
        lines.extend(
            [
                "",
                result.reasoning,
                "",
                f"Run {outcome.run_id} completed in {result.duration_ms} ms",
            ],
        )
        return lines
    if outcome.status == OutcomeStatus.SUSPENDED:
        lines = [f"Run {outcome.run_id} suspended at {outcome.stage.value}. Pending questions:"]
        lines.extend(
            f"  [{question.priority.value}] {question.id}: {question.question}"
            for question in outcome.pending_questions
        )
        lines.append(
            f"Resume with: fit-check resume --run-id {outcome.run_id} --answer QUESTION_ID=ANSWER",
        )
        return lines
    if outcome.status == OutcomeStatus.CANCELLED:
        return [f"Run {outcome.run_id} cancelled"]
    return []


def _sse_frame(frame: str) -> str:
    # click.echo appends the final newline of the frame
    return frame[:-1] if frame.endswith("\n") else frame


def _sqlite_store(settings: Settings) -> SqliteSnapshotStore:
    store = SqliteSnapshotStore(
        settings.store.db_path,
        default_ttl_seconds=settings.store.snapshot_ttl_seconds,
    )
    store.init_schema()
    return store
