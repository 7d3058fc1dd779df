from __future__ import annotations

from collections import Counter
from dataclasses import replace

import allure
import pytest

from fit_check.config import ErrorStrategy, ExecutorSettings
from fit_check.orchestrator import events
from fit_check.orchestrator.dimensions import EVALUATION_DIMENSIONS, EvaluationDimension
from fit_check.orchestrator.failure_classifier import ErrorCode
from fit_check.orchestrator.models import (
    PIPELINE_STAGES,
    DimensionAnalysis,
    DimensionScore,
    DimensionStatus,
    FollowUpQuestion,
    PipelineStage,
    QuestionPriority,
    QuestionSource,
    RiskFactor,
    RunInput,
    ScreeningOutput,
    UserAnswer,
    Verdict,
    VerdictResult,
)
from fit_check.orchestrator.resilience import AbortController
from fit_check.orchestrator.sequencer import OutcomeStatus, StageSequencer
from fit_check.orchestrator.state import RunState, create_initial_state, merge_answers
from fit_check.stages.base import StageReporter
from fit_check.stages.heuristic import SCOPE_QUESTION_ID, HeuristicStages
from fit_check.storage.snapshots import InMemorySnapshotStore

pytestmark = [
    allure.epic("Pipeline Execution"),
    allure.feature("Stage Sequencing, Suspend & Resume"),
]

GAP_DIMENSION = "data_availability"
GAP_QUESTION_ID = "data-volume"


class _GapStages(HeuristicStages):
    """Raises a blocking info gap for one dimension until it is answered."""

    def __init__(self) -> None:
        self.dimension_calls: Counter[str] = Counter()

    async def analyze_dimension(
        self,
        dimension: EvaluationDimension,
        run_input: RunInput,
        screening: ScreeningOutput | None,
        answers: dict[str, UserAnswer],
        reporter: StageReporter,
    ) -> DimensionAnalysis:
        self.dimension_calls[dimension.id] += 1
        analysis = await super().analyze_dimension(
            dimension,
            run_input,
            screening,
            answers,
            reporter,
        )
        if dimension.id != GAP_DIMENSION or GAP_QUESTION_ID in answers:
            return analysis
        gap = FollowUpQuestion(
            id=GAP_QUESTION_ID,
            question="How many labeled tickets do you have?",
            rationale="Evaluation needs a labeled sample.",
            priority=QuestionPriority.BLOCKING,
            origin_stage=QuestionSource.DIMENSION,
        )
        return replace(analysis, info_gaps=[gap])


class _FailingStages(HeuristicStages):
    def __init__(
        self,
        *,
        dimension_error: str | None = None,
        risks_error: str | None = None,
        verdict_error: str | None = None,
    ) -> None:
        self.dimension_error = dimension_error
        self.risks_error = risks_error
        self.verdict_error = verdict_error

    async def analyze_dimension(self, dimension, run_input, screening, answers, reporter):
        if self.dimension_error and dimension.id == "edge_case_risk":
            raise RuntimeError(self.dimension_error)
        return await super().analyze_dimension(dimension, run_input, screening, answers, reporter)

    async def compute_verdict(self, run_input, screening, dimensions):
        if self.verdict_error:
            raise RuntimeError(self.verdict_error)
        return await super().compute_verdict(run_input, screening, dimensions)

    async def analyze_risks(self, run_input, dimensions, verdict) -> list[RiskFactor]:
        if self.risks_error:
            raise RuntimeError(self.risks_error)
        return await super().analyze_risks(run_input, dimensions, verdict)


class _FlakyVerdictStages(HeuristicStages):
    def __init__(self) -> None:
        self.verdict_calls = 0

    async def compute_verdict(self, run_input, screening, dimensions) -> VerdictResult:
        self.verdict_calls += 1
        if self.verdict_calls == 1:
            raise RuntimeError("503 Service Unavailable")
        return await super().compute_verdict(run_input, screening, dimensions)


async def _execute(sequencer: StageSequencer, state: RunState, run_id: str = "run-1"):
    collected: list[events.PipelineEvent] = []
    outcome = await sequencer.execute(
        run_id,
        state,
        abort_signal=AbortController().signal,
        emit=collected.append,
    )
    return outcome, collected


def _types(collected: list[events.PipelineEvent]) -> list[str]:
    return [event.type for event in collected]


@pytest.mark.asyncio
async def test_clear_problem_runs_every_stage_once(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    store = InMemorySnapshotStore()
    sequencer = StageSequencer(stages=HeuristicStages(), settings=fast_settings, store=store)
    state = create_initial_state(clear_input)

    outcome, collected = await _execute(sequencer, state)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.result is not None
    assert outcome.result.verdict == Verdict.STRONG_FIT
    assert state.completed_stages == list(PIPELINE_STAGES)
    types = _types(collected)
    assert types.count("pipeline:complete") == 1
    assert types[-1] == "pipeline:complete"
    assert types.count("dimension:complete") == len(EVALUATION_DIMENSIONS)
    assert types.count("dimension:tool_call") == len(EVALUATION_DIMENSIONS)
    assert [e.stage for e in collected if isinstance(e, events.PipelineStageEvent)] == list(
        PIPELINE_STAGES,
    )
    assert all(d.status == DimensionStatus.COMPLETE for d in outcome.result.dimensions)
    assert outcome.result.reasoning == state.final_reasoning
    assert "reasoning:chunk" in types
    assert len(store) == 0


@pytest.mark.asyncio
async def test_vague_problem_suspends_in_screening_and_resumes(
    fast_settings: ExecutorSettings,
    vague_input: RunInput,
) -> None:
    store = InMemorySnapshotStore()
    sequencer = StageSequencer(stages=HeuristicStages(), settings=fast_settings, store=store)
    state = create_initial_state(vague_input)

    outcome, collected = await _execute(sequencer, state)

    assert outcome.status == OutcomeStatus.SUSPENDED
    assert outcome.stage == PipelineStage.SCREENING
    assert outcome.pending_question_ids == [SCOPE_QUESTION_ID]
    assert "pipeline:complete" not in _types(collected)
    assert state.completed_stages == []
    assert await store.exists("run-1")

    restored = await store.load("run-1")
    assert restored is not None
    merge_answers(
        restored,
        [UserAnswer(SCOPE_QUESTION_ID, "Scanned supplier invoices in, ledger codes out for review")],
    )
    resumed, resumed_events = await _execute(sequencer, restored)

    assert resumed.status == OutcomeStatus.SUCCESS
    assert _types(resumed_events).count("pipeline:complete") == 1
    assert resumed.result is not None
    assert [a.question_id for a in resumed.result.answered_questions] == [SCOPE_QUESTION_ID]
    assert not await store.exists("run-1")


@pytest.mark.asyncio
async def test_blocking_gap_keeps_dimension_preliminary_until_answered(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    stages = _GapStages()
    sequencer = StageSequencer(stages=stages, settings=fast_settings, store=InMemorySnapshotStore())
    state = create_initial_state(clear_input)

    outcome, collected = await _execute(sequencer, state)

    assert outcome.status == OutcomeStatus.SUSPENDED
    assert outcome.stage == PipelineStage.DIMENSIONS
    assert outcome.pending_question_ids == [GAP_QUESTION_ID]
    assert state.dimensions[GAP_DIMENSION].status == DimensionStatus.PRELIMINARY
    completed = [d for d in state.dimensions.values() if d.status == DimensionStatus.COMPLETE]
    assert len(completed) == len(EVALUATION_DIMENSIONS) - 1
    questions = [e for e in collected if isinstance(e, events.DimensionQuestionEvent)]
    assert questions[0].question.origin_dimension == GAP_DIMENSION

    merge_answers(state, [UserAnswer(GAP_QUESTION_ID, "About 40k labeled tickets")])
    resumed, _ = await _execute(sequencer, state)

    assert resumed.status == OutcomeStatus.SUCCESS
    assert stages.dimension_calls[GAP_DIMENSION] == 2
    assert {
        dimension_id: calls
        for dimension_id, calls in stages.dimension_calls.items()
        if dimension_id != GAP_DIMENSION
    } == {dimension.id: 1 for dimension in EVALUATION_DIMENSIONS if dimension.id != GAP_DIMENSION}


@pytest.mark.asyncio
async def test_recoverable_failure_is_retried_and_recorded(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    stages = _FlakyVerdictStages()
    sequencer = StageSequencer(stages=stages, settings=fast_settings)
    state = create_initial_state(clear_input)

    outcome, _ = await _execute(sequencer, state)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert stages.verdict_calls == 2
    assert [error.code for error in outcome.errors] == [ErrorCode.SERVICE_UNAVAILABLE]


@pytest.mark.asyncio
async def test_fatal_failure_emits_pipeline_error_with_partial_result(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    sequencer = StageSequencer(
        stages=_FailingStages(verdict_error="401 Unauthorized"),
        settings=fast_settings,
    )
    state = create_initial_state(clear_input)

    outcome, collected = await _execute(sequencer, state)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.stage == PipelineStage.VERDICT
    assert outcome.error is not None
    assert outcome.error.code == ErrorCode.AUTHENTICATION
    assert outcome.partial_result is not None
    assert len(outcome.partial_result["dimensions"]) == len(EVALUATION_DIMENSIONS)
    errors = [e for e in collected if isinstance(e, events.PipelineErrorEvent)]
    assert [(e.code, e.recoverable) for e in errors] == [("AUTHENTICATION", False)]
    assert "pipeline:complete" not in _types(collected)


@pytest.mark.asyncio
async def test_fail_fast_stops_on_dimension_failure(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    sequencer = StageSequencer(
        stages=_FailingStages(dimension_error="Content filter flagged the request"),
        settings=fast_settings,
    )

    outcome, _ = await _execute(sequencer, create_initial_state(clear_input))

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.stage == PipelineStage.DIMENSIONS
    assert outcome.error is not None
    assert outcome.error.code == ErrorCode.CONTENT_FILTER


@pytest.mark.asyncio
async def test_continue_with_partial_uses_neutral_fallbacks(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    settings = replace(fast_settings, error_strategy=ErrorStrategy.CONTINUE_WITH_PARTIAL)
    sequencer = StageSequencer(
        stages=_FailingStages(
            dimension_error="Content filter flagged the request",
            risks_error="Response failed schema validation",
        ),
        settings=settings,
    )
    state = create_initial_state(clear_input)

    outcome, _ = await _execute(sequencer, state)

    assert outcome.status == OutcomeStatus.SUCCESS
    fallback = state.dimensions["edge_case_risk"]
    assert fallback.status == DimensionStatus.COMPLETE
    assert fallback.score == DimensionScore.NEUTRAL
    assert fallback.reasoning.startswith("Analysis unavailable:")
    assert state.risks == []
    assert {error.code for error in outcome.errors} == {
        ErrorCode.CONTENT_FILTER,
        ErrorCode.SCHEMA_VALIDATION,
    }


@pytest.mark.asyncio
async def test_aborted_run_is_cancelled_without_events(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    sequencer = StageSequencer(stages=HeuristicStages(), settings=fast_settings)
    controller = AbortController()
    controller.abort()
    collected: list[events.PipelineEvent] = []

    outcome = await sequencer.execute(
        "run-1",
        create_initial_state(clear_input),
        abort_signal=controller.signal,
        emit=collected.append,
    )

    assert outcome.status == OutcomeStatus.CANCELLED
    assert collected == []


@pytest.mark.asyncio
async def test_failing_event_sink_does_not_break_run(
    fast_settings: ExecutorSettings,
    clear_input: RunInput,
) -> None:
    sequencer = StageSequencer(stages=HeuristicStages(), settings=fast_settings)

    def _broken_sink(_event: events.PipelineEvent) -> None:
        raise RuntimeError("subscriber went away")

    outcome = await sequencer.execute(
        "run-1",
        create_initial_state(clear_input),
        abort_signal=AbortController().signal,
        emit=_broken_sink,
    )

    assert outcome.status == OutcomeStatus.SUCCESS
