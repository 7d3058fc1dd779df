"""StageSequencer: drives the five analysis stages for one run.

The sequencer owns every suspend-or-advance decision. Stage providers are
plain async functions; they return follow-up questions inside their outputs
and never learn whether the run was parked because of them.

Flow per run::

    screening -> dimensions (fan-out) -> verdict -> secondary (fan-out) -> synthesis

A stage that leaves unanswered blocking questions is not marked complete. The
run state is snapshotted and the run suspends; resuming re-enters that same
stage with the merged answers.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from fit_check.config import (
    ErrorStrategy,
    ExecutorSettings,
    get_stage_retry_options,
    get_stage_timeout,
)
from fit_check.orchestrator import events
from fit_check.orchestrator.dimensions import EVALUATION_DIMENSIONS, EvaluationDimension
from fit_check.orchestrator.failure_classifier import (
    ErrorCode,
    ExecutorError,
    classify_error,
    format_error,
)
from fit_check.orchestrator.models import (
    AnalysisResult,
    ArchitectureResult,
    DimensionAnalysis,
    DimensionScore,
    DimensionStatus,
    FollowUpQuestion,
    PipelineStage,
    QuestionPriority,
    QuestionSource,
    SynthesisInput,
    now_ms,
)
from fit_check.orchestrator.resilience import (
    AbortSignal,
    StepContext,
    execute_parallel_with_resilience,
    execute_with_resilience,
)
from fit_check.orchestrator.state import (
    RunState,
    StateInvariantError,
    assemble_result,
    build_partial_result,
    get_completed_dimension_count,
    get_dimensions_in_order,
    get_unanswered_questions,
    has_blocking_questions,
    mark_stage_complete,
    replace_pending_questions,
    set_dimension,
)
from fit_check.stages.base import AnalysisStages, StageReporter
from fit_check.storage.snapshots import SnapshotStore

logger = logging.getLogger(__name__)

SCREENING_CONTEXT_QUESTION_PREFIX = "screening-context"


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    SUSPENDED = "suspended"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(slots=True)
class ExecutionOutcome:
    """Terminal or suspended outcome of one ``execute`` call."""

    run_id: str
    status: OutcomeStatus
    stage: PipelineStage
    result: AnalysisResult | None = None
    pending_questions: list[FollowUpQuestion] = field(default_factory=list)
    error: ExecutorError | None = None
    partial_result: dict[str, Any] | None = None
    errors: list[ExecutorError] = field(default_factory=list)

    @property
    def pending_question_ids(self) -> list[str]:
        return [question.id for question in self.pending_questions]


class StageSequencer:
    """Runs the fixed stage order against a stage provider."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        stages: AnalysisStages,
        settings: ExecutorSettings | None = None,
        store: SnapshotStore | None = None,
        snapshot_ttl_seconds: int | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.stages = stages
        self.settings = settings or ExecutorSettings()
        self.store = store
        self.snapshot_ttl_seconds = snapshot_ttl_seconds
        self._rng = rng

    async def execute(
        self,
        run_id: str,
        state: RunState,
        *,
        abort_signal: AbortSignal,
        emit: Callable[[events.PipelineEvent], None],
    ) -> ExecutionOutcome:
        """Advance ``state`` until it completes, suspends, fails or is cancelled."""

        run = _StageRun(
            sequencer=self,
            run_id=run_id,
            state=state,
            signal=abort_signal,
            sink=emit,
        )
        return await run.execute()


class _StageRun:
    """Execution scope of one ``execute`` call; owns no state beyond the run's."""

    def __init__(
        self,
        *,
        sequencer: StageSequencer,
        run_id: str,
        state: RunState,
        signal: AbortSignal,
        sink: Callable[[events.PipelineEvent], None],
    ) -> None:
        self.sequencer = sequencer
        self.stages = sequencer.stages
        self.settings = sequencer.settings
        self.run_id = run_id
        self.state = state
        self.signal = signal
        self._sink = sink
        self._handlers: dict[PipelineStage, Callable[[], Awaitable[bool]]] = {
            PipelineStage.SCREENING: self._run_screening,
            PipelineStage.DIMENSIONS: self._run_dimensions,
            PipelineStage.VERDICT: self._run_verdict,
            PipelineStage.SECONDARY: self._run_secondary,
            PipelineStage.SYNTHESIS: self._run_synthesis,
        }

    async def execute(self) -> ExecutionOutcome:
        try:
            while (stage := self.state.next_stage()) is not None:
                if self.signal.aborted:
                    return await self._cancelled()
                self.state.current_stage = stage
                self._emit(events.pipeline_stage(stage))
                logger.info("Run %s: entering stage %s", self.run_id, stage.value)
                advanced = await self._handlers[stage]()
                if self.signal.aborted:
                    return await self._cancelled()
                if not advanced:
                    return await self._suspend(stage)
                mark_stage_complete(self.state, stage)
                logger.info("Run %s: stage %s complete", self.run_id, stage.value)
        except ExecutorError as error:
            if error.code == ErrorCode.CANCELLED or self.signal.aborted:
                return await self._cancelled()
            return await self._fail(error)
        except Exception as error:
            logger.exception(
                "Run %s: unexpected failure in %s",
                self.run_id,
                self.state.current_stage.value,
            )
            return await self._fail(classify_error(error, self.state.current_stage.value))

        result = assemble_result(self.state, self.run_id)
        await self._drop_snapshot()
        if self.signal.aborted:
            return await self._cancelled()
        self._emit(events.pipeline_complete(result))
        logger.info(
            "Run %s: completed with verdict %s in %dms",
            self.run_id,
            result.verdict.value,
            result.duration_ms,
        )
        return ExecutionOutcome(
            run_id=self.run_id,
            status=OutcomeStatus.SUCCESS,
            stage=PipelineStage.SYNTHESIS,
            result=result,
            errors=list(self.state.errors),
        )

    # -- stages ----------------------------------------------------------------

    async def _run_screening(self) -> bool:
        state = self.state
        self._emit(events.screening_start())
        answers = dict(state.answers)
        output = await execute_with_resilience(
            lambda: self.stages.screen(state.input, answers),
            self._context(PipelineStage.SCREENING),
        )
        state.screening = output
        self._emit(events.screening_signal(output.preliminary_signal))
        for insight in output.partial_insights:
            self._emit(events.screening_insight(insight))

        questions = [
            replace(question, origin_stage=QuestionSource.SCREENING, origin_dimension=None)
            for question in output.clarifying_questions
        ]
        unanswered_blocking = [
            question
            for question in questions
            if question.is_blocking and question.id not in state.answers
        ]
        if not output.can_evaluate and not unanswered_blocking:
            questions.append(self._context_question(output.reason))
        replace_pending_questions(state, questions, from_screening=True)
        for question in questions:
            if question.id not in state.answers:
                self._emit(events.screening_question(question))

        self._emit(
            events.screening_complete(
                output.can_evaluate,
                output.dimension_priorities,
                output.reason,
            ),
        )
        return not has_blocking_questions(state)

    async def _run_dimensions(self) -> bool:
        state = self.state
        priorities = {
            priority.dimension_id: priority.priority
            for priority in (state.screening.dimension_priorities if state.screening else [])
        }
        todo: list[EvaluationDimension] = []
        for dimension in EVALUATION_DIMENSIONS:
            current = state.dimensions.get(dimension.id)
            if current is not None and current.status == DimensionStatus.COMPLETE:
                continue
            if current is None or current.status == DimensionStatus.PENDING:
                set_dimension(state, _placeholder(dimension, DimensionStatus.RUNNING))
            self._emit(
                events.dimension_start(
                    dimension.id,
                    dimension.name,
                    priorities.get(dimension.id, "medium"),
                ),
            )
            todo.append(dimension)

        if todo:
            results = await execute_parallel_with_resilience(
                [self._dimension_operation(dimension) for dimension in todo],
                self._context(PipelineStage.DIMENSIONS),
            )
            failures: list[tuple[EvaluationDimension, ExecutorError]] = []
            for item in results:
                error = item.error
                if error is None:
                    continue
                if error.code == ErrorCode.CANCELLED:
                    raise error
                self._remember_error(error)
                failures.append((todo[item.index], error))
            if failures:
                self._handle_dimension_failures(failures)

        return not has_blocking_questions(state)

    async def _run_verdict(self) -> bool:
        state = self.state
        completed = get_completed_dimension_count(state)
        total = len(EVALUATION_DIMENSIONS)
        if completed != total:
            raise StateInvariantError(
                f"Verdict requires {total} complete dimensions, found {completed}",
            )
        self._emit(events.verdict_computing(completed, total))
        dimensions = get_dimensions_in_order(state)
        verdict = await execute_with_resilience(
            lambda: self.stages.compute_verdict(state.input, state.screening, dimensions),
            self._context(PipelineStage.VERDICT),
        )
        state.verdict = verdict
        self._emit(events.verdict_result(verdict.verdict, verdict.confidence, verdict.summary))
        return True

    async def _run_secondary(self) -> bool:
        state = self.state
        verdict = state.verdict
        if verdict is None:
            raise StateInvariantError("Secondary analyses require a verdict")
        dimensions = get_dimensions_in_order(state)

        self._emit(events.risks_start())
        self._emit(events.alternatives_start())
        self._emit(events.architecture_start())
        results = await execute_parallel_with_resilience(
            [
                lambda: self.stages.analyze_risks(state.input, dimensions, verdict),
                lambda: self.stages.analyze_alternatives(state.input, dimensions, verdict),
                lambda: self.stages.recommend_architecture(state.input, dimensions, verdict),
            ],
            self._context(PipelineStage.SECONDARY),
        )
        defaults: tuple[Any, ...] = ([], [], ArchitectureResult(architecture=None))
        values: list[Any] = []
        for item, default in zip(results, defaults, strict=True):
            error = item.error
            if error is None:
                values.append(item.value)
                continue
            if error.code == ErrorCode.CANCELLED:
                raise error
            self._remember_error(error)
            if self.settings.error_strategy == ErrorStrategy.FAIL_FAST:
                raise error
            logger.warning(
                "Run %s: secondary analysis failed, using empty default: %s",
                self.run_id,
                format_error(error),
            )
            values.append(default)

        risks, alternatives, architecture = values
        state.risks = list(risks)
        state.alternatives = list(alternatives)
        state.architecture = architecture.architecture
        state.pre_build_questions = list(architecture.questions_before_building)
        self._emit(events.risks_complete(state.risks))
        self._emit(events.alternatives_complete(state.alternatives))
        self._emit(events.architecture_complete(state.architecture))
        self._emit(events.prebuild_complete(state.pre_build_questions))
        return True

    async def _run_synthesis(self) -> bool:
        state = self.state
        verdict = state.verdict
        if verdict is None:
            raise StateInvariantError("Synthesis requires a verdict")
        self._emit(events.reasoning_start())
        reporter = StageReporter(
            on_reasoning_chunk=lambda chunk: self._emit(events.reasoning_chunk(chunk)),
        )
        synthesis_input = SynthesisInput(
            input=state.input,
            screening=state.screening,
            dimensions=dict(state.dimensions),
            answers=dict(state.answers),
            verdict=verdict,
            risks=list(state.risks or []),
            alternatives=list(state.alternatives or []),
            architecture=state.architecture,
            questions_before_building=list(state.pre_build_questions or []),
        )
        reasoning = await execute_with_resilience(
            lambda: self.stages.synthesize(synthesis_input, reporter),
            self._context(PipelineStage.SYNTHESIS),
        )
        state.final_reasoning = reasoning
        state.completed_at = now_ms()
        self._emit(events.reasoning_complete(reasoning))
        return True

    # -- dimension helpers -----------------------------------------------------

    def _dimension_operation(
        self,
        dimension: EvaluationDimension,
    ) -> Callable[[], Awaitable[DimensionAnalysis]]:
        state = self.state
        reporter = StageReporter(
            on_tool_call=lambda dim_id, tool, payload: self._emit(
                events.dimension_tool_call(dim_id, tool, payload),
            ),
            on_tool_result=lambda dim_id, tool, payload: self._emit(
                events.dimension_tool_result(dim_id, tool, payload),
            ),
        )

        async def _operation() -> DimensionAnalysis:
            analysis = await self.stages.analyze_dimension(
                dimension,
                state.input,
                state.screening,
                dict(state.answers),
                reporter,
            )
            return self._record_dimension(dimension, analysis)

        return _operation

    def _record_dimension(
        self,
        dimension: EvaluationDimension,
        analysis: DimensionAnalysis,
    ) -> DimensionAnalysis:
        """Store a fresh analysis as preliminary, then complete it if nothing blocks it."""

        state = self.state
        info_gaps = [
            replace(gap, origin_stage=QuestionSource.DIMENSION, origin_dimension=dimension.id)
            for gap in analysis.info_gaps
        ]
        preliminary = replace(
            analysis,
            id=dimension.id,
            name=dimension.name,
            info_gaps=info_gaps,
            status=DimensionStatus.PRELIMINARY,
        )
        set_dimension(state, preliminary)
        self._emit(
            events.dimension_preliminary(dimension.id, preliminary.score, preliminary.confidence),
        )

        replace_pending_questions(state, info_gaps, origin_dimension=dimension.id)
        for gap in info_gaps:
            if gap.id not in state.answers:
                self._emit(events.dimension_question(gap))

        blocked = any(gap.is_blocking and gap.id not in state.answers for gap in info_gaps)
        if blocked:
            return preliminary
        complete = replace(preliminary, status=DimensionStatus.COMPLETE)
        set_dimension(state, complete)
        self._emit(events.dimension_complete(dimension.id, complete))
        return complete

    def _handle_dimension_failures(
        self,
        failures: list[tuple[EvaluationDimension, ExecutorError]],
    ) -> None:
        first_error = failures[0][1]
        if self.settings.error_strategy == ErrorStrategy.FAIL_FAST:
            raise first_error

        usable = [
            analysis
            for analysis in self.state.dimensions.values()
            if analysis.status in {DimensionStatus.PRELIMINARY, DimensionStatus.COMPLETE}
        ]
        if not usable:
            raise first_error

        for dimension, error in failures:
            logger.warning(
                "Run %s: dimension %s unavailable, continuing with neutral record: %s",
                self.run_id,
                dimension.id,
                format_error(error),
            )
            fallback = replace(
                _placeholder(dimension, DimensionStatus.COMPLETE),
                reasoning=f"Analysis unavailable: {error.message}",
            )
            set_dimension(self.state, fallback)
            self._emit(events.dimension_complete(dimension.id, fallback))

    # -- outcomes --------------------------------------------------------------

    async def _suspend(self, stage: PipelineStage) -> ExecutionOutcome:
        pending = get_unanswered_questions(self.state, blocking_only=True)
        await self._save_snapshot()
        logger.info(
            "Run %s: suspended in %s waiting for %s",
            self.run_id,
            stage.value,
            [question.id for question in pending],
        )
        return ExecutionOutcome(
            run_id=self.run_id,
            status=OutcomeStatus.SUSPENDED,
            stage=stage,
            pending_questions=pending,
            errors=list(self.state.errors),
        )

    async def _fail(self, error: ExecutorError) -> ExecutionOutcome:
        self._remember_error(error)
        logger.error("Run %s failed: %s", self.run_id, format_error(error))
        self._emit(events.pipeline_error(error.code.value, error.message, error.recoverable))
        await self._drop_snapshot()
        return ExecutionOutcome(
            run_id=self.run_id,
            status=OutcomeStatus.FAILED,
            stage=self.state.current_stage,
            error=error,
            partial_result=build_partial_result(self.state, self.run_id),
            errors=list(self.state.errors),
        )

    async def _cancelled(self) -> ExecutionOutcome:
        logger.info("Run %s: cancelled in %s", self.run_id, self.state.current_stage.value)
        await self._drop_snapshot()
        return ExecutionOutcome(
            run_id=self.run_id,
            status=OutcomeStatus.CANCELLED,
            stage=self.state.current_stage,
            errors=list(self.state.errors),
        )

    # -- plumbing --------------------------------------------------------------

    def _context(self, stage: PipelineStage) -> StepContext:
        return StepContext(
            stage=stage.value,
            timeout_ms=get_stage_timeout(stage, self.settings.stage_timeouts_ms),
            retry_options=get_stage_retry_options(stage, self.settings.stage_retry_options),
            abort_signal=self.signal,
            on_error=self._remember_error,
            on_retry=self._log_retry,
            rng=self.sequencer._rng,  # noqa: SLF001
        )

    def _remember_error(self, error: ExecutorError) -> None:
        if any(existing is error for existing in self.state.errors):
            return
        if error.code == ErrorCode.CANCELLED and any(
            existing.code == ErrorCode.CANCELLED for existing in self.state.errors
        ):
            return
        self.state.errors.append(error)

    def _log_retry(self, attempt: int, error: ExecutorError, delay_ms: float) -> None:
        logger.warning(
            "Run %s: retrying %s after attempt %d in %.0fms (%s)",
            self.run_id,
            error.stage,
            attempt,
            delay_ms,
            error.code.value,
        )

    def _emit(self, event: events.PipelineEvent) -> None:
        try:
            self._sink(event)
        except Exception:
            logger.exception("Run %s: event sink failed on %s", self.run_id, event.type)

    def _context_question(self, reason: str | None) -> FollowUpQuestion:
        asked = sum(
            1 for key in self.state.answers if key.startswith(SCREENING_CONTEXT_QUESTION_PREFIX)
        )
        return FollowUpQuestion(
            id=f"{SCREENING_CONTEXT_QUESTION_PREFIX}-{asked + 1}",
            question="Can you describe the problem in more detail?",
            rationale=reason or "The description is not specific enough to evaluate yet.",
            priority=QuestionPriority.BLOCKING,
            origin_stage=QuestionSource.SCREENING,
        )

    async def _save_snapshot(self) -> None:
        store = self.sequencer.store
        if store is None:
            return
        try:
            await store.save(self.run_id, self.state, ttl_seconds=self.sequencer.snapshot_ttl_seconds)
        except Exception:
            logger.exception("Run %s: failed to persist snapshot", self.run_id)

    async def _drop_snapshot(self) -> None:
        store = self.sequencer.store
        if store is None:
            return
        try:
            await store.delete(self.run_id)
        except Exception:
            logger.exception("Run %s: failed to delete snapshot", self.run_id)


def _placeholder(dimension: EvaluationDimension, status: DimensionStatus) -> DimensionAnalysis:
    return DimensionAnalysis(
        id=dimension.id,
        name=dimension.name,
        score=DimensionScore.NEUTRAL,
        confidence=0.0,
        weight=0.0,
        reasoning="",
        status=status,
    )
