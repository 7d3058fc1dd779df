from __future__ import annotations

import asyncio

import allure
import pytest

from fit_check.config import ExecutorSettings
from fit_check.orchestrator import events
from fit_check.orchestrator.failure_classifier import ErrorCode
from fit_check.orchestrator.models import (
    ExecutionStatus,
    PipelineStage,
    RunInput,
    ScreeningOutput,
    UserAnswer,
)
from fit_check.orchestrator.registry import (
    CANCELLED_MESSAGE,
    RunNotFoundError,
    RunRegistry,
    RunStateError,
)
from fit_check.orchestrator.sequencer import OutcomeStatus, StageSequencer
from fit_check.stages.heuristic import SCOPE_QUESTION_ID, HeuristicStages
from fit_check.storage.snapshots import InMemorySnapshotStore

pytestmark = [
    allure.epic("Pipeline Execution"),
    allure.feature("Run Registry"),
]

SCOPE_ANSWER = UserAnswer(SCOPE_QUESTION_ID, "Supplier invoices in, ledger codes out for review")


class _SlowScreeningStages(HeuristicStages):
    async def screen(self, run_input: RunInput, answers: dict[str, UserAnswer]) -> ScreeningOutput:
        await asyncio.sleep(5)
        return await super().screen(run_input, answers)



class _RecordingStages(HeuristicStages):
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def screen(self, run_input: RunInput, answers: dict[str, UserAnswer]) -> ScreeningOutput:
        self.calls.append("screen")
        return await super().screen(run_input, answers)

    async def analyze_dimension(self, dimension, run_input, screening, answers, reporter):
        self.calls.append("dimension")
        return await super().analyze_dimension(dimension, run_input, screening, answers, reporter)


def _registry(
    settings: ExecutorSettings,
    store: InMemorySnapshotStore | None = None,
    stages: HeuristicStages | None = None,
    **kwargs,
) -> RunRegistry:
    return RunRegistry(
        sequencer=StageSequencer(
            stages=stages or HeuristicStages(),
            settings=settings,
            store=store if store is not None else InMemorySnapshotStore(),
        ),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_started_run_streams_events_and_completes(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    registry = _registry(fast_settings)
    handle = registry.start_run(clear_input)
    received: list[events.PipelineEvent] = []
    registry.subscribe(handle.run_id, received.append)

    outcome = await handle.wait()

    assert outcome.status == OutcomeStatus.SUCCESS
    assert received[0] == events.PipelineStartEvent(
        run_id=handle.run_id,
        timestamp=received[0].timestamp,
    )
    assert received[-1].type == "pipeline:complete"
    status = handle.get_status()
    assert status is not None
    assert status.status == ExecutionStatus.COMPLETED
    assert status.progress == 100
    assert status.stage == PipelineStage.SYNTHESIS
    assert status.completed_at is not None


@pytest.mark.asyncio
async def test_on_event_receives_run_id(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    seen: list[tuple[str, str]] = []
    registry = _registry(fast_settings, on_event=lambda run_id, event: seen.append((run_id, event.type)))

    handle = registry.start_run_with_id("run-a", clear_input)
    await handle.wait()

    assert {run_id for run_id, _ in seen} == {"run-a"}
    assert seen[0][1] == "pipeline:start"
    with pytest.raises(RunStateError, match="already registered"):
        registry.start_run_with_id("run-a", clear_input)


@pytest.mark.asyncio
async def test_suspended_run_resumes_with_answers(
    fast_settings: ExecutorSettings,
    vague_input: RunInput,
) -> None:
    registry = _registry(fast_settings)
    first = await registry.start_run(vague_input).wait()

    assert first.status == OutcomeStatus.SUSPENDED
    status = registry.get_run_status(first.run_id)
    assert status is not None
    assert status.status == ExecutionStatus.SUSPENDED
    assert status.pending_question_ids == [SCOPE_QUESTION_ID]

    handle = await registry.resume_run(first.run_id, [SCOPE_ANSWER], step_id="screening")
    received: list[events.PipelineEvent] = []
    registry.subscribe(handle.run_id, received.append)
    outcome = await handle.wait()

    assert outcome.status == OutcomeStatus.SUCCESS
    assert received[0] == events.answer_received(SCOPE_QUESTION_ID, SCOPE_ANSWER.answer)
    assert received[1] == events.pipeline_resumed(first.run_id, "screening")
    assert [e.type for e in received].count("pipeline:complete") == 1
    assert registry.get_run_status(first.run_id).status == ExecutionStatus.COMPLETED


@pytest.mark.asyncio
async def test_resume_marks_run_running_and_reenters_screening(
    fast_settings: ExecutorSettings,
    vague_input: RunInput,
) -> None:
    stages = _RecordingStages()
    registry = _registry(fast_settings, stages=stages)
    first = await registry.start_run(vague_input).wait()
    assert stages.calls == ["screen"]

    handle = await registry.resume_run(first.run_id, [SCOPE_ANSWER])
    resumed = registry.get_run_status(first.run_id)
    assert resumed is not None
    assert resumed.status == ExecutionStatus.RUNNING
    assert resumed.pending_question_ids == []

    await handle.wait()

    assert stages.calls[:2] == ["screen", "screen"]
    assert stages.calls.count("screen") == 2
    assert stages.calls.index("dimension") == 2


@pytest.mark.asyncio
async def test_resume_restores_run_from_snapshot_store(
    fast_settings: ExecutorSettings,
    vague_input: RunInput,
) -> None:
    store = InMemorySnapshotStore()
    first = await _registry(fast_settings, store).start_run(vague_input).wait()
    assert await store.exists(first.run_id)

    fresh = _registry(fast_settings, store)
    handle = await fresh.resume_run(first.run_id, [SCOPE_ANSWER])
    outcome = await handle.wait()

    assert outcome.status == OutcomeStatus.SUCCESS
    assert not await store.exists(first.run_id)


@pytest.mark.asyncio
async def test_resume_rejects_unknown_and_non_suspended_runs(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
    vague_input: RunInput,
) -> None:
    registry = _registry(fast_settings)
    with pytest.raises(RunNotFoundError):
        await registry.resume_run("missing", [SCOPE_ANSWER])

    completed = await registry.start_run(clear_input).wait()
    with pytest.raises(RunStateError, match="cannot resume a completed run"):
        await registry.resume_run(completed.run_id, [SCOPE_ANSWER])

    suspended = await registry.start_run(vague_input).wait()
    with pytest.raises(RunStateError, match="suspended at 'screening'"):
        await registry.resume_run(suspended.run_id, [SCOPE_ANSWER], step_id="verdict")


@pytest.mark.asyncio
async def test_cancel_suspended_run_is_idempotent_and_drops_snapshot(
    fast_settings: ExecutorSettings,
    vague_input: RunInput,
) -> None:
    store = InMemorySnapshotStore()
    registry = _registry(fast_settings, store)
    suspended = await registry.start_run(vague_input).wait()
    received: list[events.PipelineEvent] = []
    registry.subscribe(suspended.run_id, received.append)

    assert registry.cancel_run(suspended.run_id) is True
    assert registry.cancel_run(suspended.run_id) is False
    await registry.aclose()

    status = registry.get_run_status(suspended.run_id)
    assert status is not None
    assert status.status == ExecutionStatus.CANCELLED
    assert status.pending_question_ids == []
    assert [error.code for error in status.errors] == [ErrorCode.CANCELLED]
    assert received == [events.pipeline_error("CANCELLED", CANCELLED_MESSAGE, False)]
    assert not await store.exists(suspended.run_id)
    with pytest.raises(RunStateError):
        await registry.resume_run(suspended.run_id, [SCOPE_ANSWER])


@pytest.mark.asyncio
async def test_cancel_running_run_stops_without_completion(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    registry = _registry(fast_settings, stages=_SlowScreeningStages())
    handle = registry.start_run(clear_input)
    received: list[events.PipelineEvent] = []
    registry.subscribe(handle.run_id, received.append)
    await asyncio.sleep(0.01)

    assert handle.cancel() is True
    outcome = await handle.wait()

    assert outcome.status == OutcomeStatus.CANCELLED
    assert handle.get_status().status == ExecutionStatus.CANCELLED
    types = [event.type for event in received]
    assert types.count("pipeline:error") == 1
    assert "pipeline:complete" not in types


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    registry = _registry(fast_settings)
    with pytest.raises(RunNotFoundError):
        registry.subscribe("missing", lambda _event: None)

    handle = registry.start_run(clear_input)
    received: list[events.PipelineEvent] = []
    unsubscribe = registry.subscribe(handle.run_id, received.append)
    unsubscribe()
    await handle.wait()

    assert received == []


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_others(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    registry = _registry(fast_settings)
    handle = registry.start_run(clear_input)
    received: list[events.PipelineEvent] = []

    def _broken(_event: events.PipelineEvent) -> None:
        raise RuntimeError("consumer crashed")

    registry.subscribe(handle.run_id, _broken)
    registry.subscribe(handle.run_id, received.append)
    outcome = await handle.wait()

    assert outcome.status == OutcomeStatus.SUCCESS
    assert received[-1].type == "pipeline:complete"


@pytest.mark.asyncio
async def test_finished_runs_can_be_evicted(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    registry = _registry(fast_settings)
    handle = registry.start_run(clear_input)

    with pytest.raises(RunStateError, match="cannot remove a running run"):
        registry.remove_run(handle.run_id)
    await handle.wait()

    assert [status.run_id for status in registry.list_runs()] == [handle.run_id]
    assert registry.evict_finished(older_than_seconds=0) == 1
    assert registry.list_runs() == []
    assert registry.get_run_state(handle.run_id) is None
    assert registry.remove_run(handle.run_id) is False
