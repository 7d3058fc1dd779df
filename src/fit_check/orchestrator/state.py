"""Serializable run state: the unit of suspend/resume persistence."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from fit_check.orchestrator.dimensions import DIMENSION_IDS
from fit_check.orchestrator.failure_classifier import ExecutorError
from fit_check.orchestrator.models import (
    PIPELINE_STAGES,
    Alternative,
    AnalysisResult,
    AnsweredQuestion,
    DimensionAnalysis,
    DimensionScore,
    DimensionStatus,
    FollowUpQuestion,
    Influence,
    PipelineStage,
    PreBuildQuestion,
    QuestionSource,
    RecommendedArchitecture,
    RiskFactor,
    RunInput,
    ScreeningOutput,
    UserAnswer,
    Verdict,
    VerdictKeyFactor,
    VerdictResult,
    now_ms,
)

STATE_SCHEMA_VERSION = 1
HIGH_WEIGHT_THRESHOLD = 0.7
KEY_FACTOR_NOTE_CHARS = 100


class StateInvariantError(ValueError):
    """Raised when a run state breaks the stage-prefix rules."""


@dataclass(slots=True)
class RunState:
    input: RunInput
    answers: dict[str, UserAnswer] = field(default_factory=dict)
    screening: ScreeningOutput | None = None
    dimensions: dict[str, DimensionAnalysis] = field(default_factory=dict)
    pending_questions: list[FollowUpQuestion] = field(default_factory=list)
    verdict: VerdictResult | None = None
    risks: list[RiskFactor] | None = None
    alternatives: list[Alternative] | None = None
    architecture: RecommendedArchitecture | None = None
    pre_build_questions: list[PreBuildQuestion] | None = None
    final_reasoning: str | None = None
    current_stage: PipelineStage = PipelineStage.SCREENING
    completed_stages: list[PipelineStage] = field(default_factory=list)
    started_at: int = field(default_factory=now_ms)
    completed_at: int | None = None
    errors: list[ExecutorError] = field(default_factory=list)

    def is_stage_complete(self, stage: PipelineStage) -> bool:
        return stage in self.completed_stages

    def next_stage(self) -> PipelineStage | None:
        """First stage not yet completed, in the fixed order."""

        for stage in PIPELINE_STAGES:
            if stage not in self.completed_stages:
                return stage
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": STATE_SCHEMA_VERSION,
            "input": self.input.to_dict(),
            "answers": {key: answer.to_dict() for key, answer in self.answers.items()},
            "screening": self.screening.to_dict() if self.screening else None,
            "dimensions": {key: analysis.to_dict() for key, analysis in self.dimensions.items()},
            "pendingQuestions": [question.to_dict() for question in self.pending_questions],
            "verdict": self.verdict.to_dict() if self.verdict else None,
            "risks": _dump_list(self.risks),
            "alternatives": _dump_list(self.alternatives),
            "architecture": self.architecture.to_dict() if self.architecture else None,
            "preBuildQuestions": _dump_list(self.pre_build_questions),
            "finalReasoning": self.final_reasoning,
            "currentStage": self.current_stage.value,
            "completedStages": [stage.value for stage in self.completed_stages],
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "errors": [error.to_dict() for error in self.errors],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RunState:
        """Rebuild state from a snapshot; raises on version or invariant mismatch."""

        version = raw.get("version", STATE_SCHEMA_VERSION)
        if version != STATE_SCHEMA_VERSION:
            raise StateInvariantError(f"Unsupported run state version: {version!r}")
        screening = raw.get("screening")
        verdict = raw.get("verdict")
        architecture = raw.get("architecture")
        state = cls(
            input=RunInput.from_dict(raw["input"]),
            answers={
                key: UserAnswer.from_dict(value) for key, value in (raw.get("answers") or {}).items()
            },
            screening=ScreeningOutput.from_dict(screening) if screening else None,
            dimensions={
                key: DimensionAnalysis.from_dict(value)
                for key, value in (raw.get("dimensions") or {}).items()
            },
            pending_questions=[
                FollowUpQuestion.from_dict(item) for item in raw.get("pendingQuestions") or []
            ],
            verdict=VerdictResult.from_dict(verdict) if verdict else None,
            risks=_load_list(raw.get("risks"), RiskFactor.from_dict),
            alternatives=_load_list(raw.get("alternatives"), Alternative.from_dict),
            architecture=RecommendedArchitecture.from_dict(architecture) if architecture else None,
            pre_build_questions=_load_list(raw.get("preBuildQuestions"), PreBuildQuestion.from_dict),
            final_reasoning=raw.get("finalReasoning"),
            current_stage=PipelineStage(raw.get("currentStage", PipelineStage.SCREENING.value)),
            completed_stages=[PipelineStage(item) for item in raw.get("completedStages") or []],
            started_at=int(raw.get("startedAt", now_ms())),
            completed_at=raw.get("completedAt"),
            errors=[ExecutorError.from_dict(item) for item in raw.get("errors") or []],
        )
        check_invariants(state)
        return state


def create_initial_state(run_input: RunInput, started_at: int | None = None) -> RunState:
    return RunState(
        input=run_input,
        started_at=started_at if started_at is not None else now_ms(),
    )


def check_invariants(state: RunState) -> None:
    """Validate stage-prefix ordering and stage-owned fields."""

    expected = list(PIPELINE_STAGES[: len(state.completed_stages)])
    if state.completed_stages != expected:
        raise StateInvariantError(
            "completed stages must be a prefix of "
            f"{[stage.value for stage in PIPELINE_STAGES]}, got "
            f"{[stage.value for stage in state.completed_stages]}",
        )

    owned: tuple[tuple[PipelineStage, str, object], ...] = (
        (PipelineStage.VERDICT, "verdict", state.verdict),
        (PipelineStage.SECONDARY, "risks", state.risks),
        (PipelineStage.SECONDARY, "alternatives", state.alternatives),
        (PipelineStage.SECONDARY, "architecture", state.architecture),
        (PipelineStage.SECONDARY, "pre_build_questions", state.pre_build_questions),
        (PipelineStage.SYNTHESIS, "final_reasoning", state.final_reasoning),
    )
    for stage, name, value in owned:
        if value is None:
            continue
        required = PIPELINE_STAGES[: PIPELINE_STAGES.index(stage)]
        missing = [earlier.value for earlier in required if earlier not in state.completed_stages]
        if missing:
            raise StateInvariantError(f"{name} is set before stages {missing} completed")

    unknown = set(state.dimensions) - set(DIMENSION_IDS)
    if unknown:
        raise StateInvariantError(f"Unknown dimension ids in state: {sorted(unknown)}")


def mark_stage_complete(state: RunState, stage: PipelineStage) -> None:
    if stage in state.completed_stages:
        return
    if state.next_stage() != stage:
        raise StateInvariantError(
            f"Cannot complete {stage.value!r} before {state.next_stage()!r}",
        )
    state.completed_stages.append(stage)


def merge_answers(state: RunState, answers: Iterable[UserAnswer]) -> list[UserAnswer]:
    """Add answers last-write-wins; returns the answers applied, in order."""

    applied: list[UserAnswer] = []
    for answer in answers:
        state.answers[answer.question_id] = answer
        applied.append(answer)
    return applied


def replace_pending_questions(
    state: RunState,
    questions: Iterable[FollowUpQuestion],
    *,
    origin_dimension: str | None = None,
    from_screening: bool = False,
) -> None:
    """Swap in the latest questions from one origin, keeping others untouched."""

    def _same_origin(question: FollowUpQuestion) -> bool:
        if from_screening:
            return question.origin_stage == QuestionSource.SCREENING
        return question.origin_dimension == origin_dimension

    kept = [question for question in state.pending_questions if not _same_origin(question)]
    by_id = {question.id: question for question in kept}
    for question in questions:
        by_id[question.id] = question
    state.pending_questions = list(by_id.values())


def get_unanswered_questions(
    state: RunState,
    *,
    blocking_only: bool = False,
) -> list[FollowUpQuestion]:
    return [
        question
        for question in state.pending_questions
        if question.id not in state.answers and (question.is_blocking or not blocking_only)
    ]


def has_blocking_questions(state: RunState) -> bool:
    return bool(get_unanswered_questions(state, blocking_only=True))


def set_dimension(state: RunState, analysis: DimensionAnalysis) -> None:
    """Store a dimension record; status may only move forward."""

    current = state.dimensions.get(analysis.id)
    if current is not None and analysis.status.rank < current.status.rank:
        raise StateInvariantError(
            f"Dimension {analysis.id!r} cannot regress from "
            f"{current.status.value!r} to {analysis.status.value!r}",
        )
    state.dimensions[analysis.id] = analysis


def get_completed_dimension_count(state: RunState) -> int:
    return sum(
        1 for analysis in state.dimensions.values() if analysis.status == DimensionStatus.COMPLETE
    )


def get_dimensions_in_order(state: RunState) -> list[DimensionAnalysis]:
    return [state.dimensions[key] for key in DIMENSION_IDS if key in state.dimensions]


def score_to_influence(score: DimensionScore, weight: float) -> Influence:
    high_weight = weight >= HIGH_WEIGHT_THRESHOLD
    if score == DimensionScore.FAVORABLE:
        return Influence.STRONGLY_POSITIVE if high_weight else Influence.POSITIVE
    if score == DimensionScore.UNFAVORABLE:
        return Influence.STRONGLY_NEGATIVE if high_weight else Influence.NEGATIVE
    return Influence.NEUTRAL


def derive_key_factors(dimensions: list[DimensionAnalysis]) -> list[VerdictKeyFactor]:
    return [
        VerdictKeyFactor(
            dimension_id=analysis.id,
            influence=score_to_influence(analysis.score, analysis.weight),
            note=analysis.reasoning[:KEY_FACTOR_NOTE_CHARS],
        )
        for analysis in dimensions
    ]


def assemble_result(state: RunState, run_id: str) -> AnalysisResult:
    """Project run state onto the final result record."""

    dimensions = get_dimensions_in_order(state)
    verdict = state.verdict
    key_factors = list(verdict.key_factors) if verdict and verdict.key_factors else []
    if not key_factors:
        key_factors = derive_key_factors(dimensions)
    finished_at = state.completed_at if state.completed_at is not None else now_ms()
    return AnalysisResult(
        thread_id=run_id,
        problem=state.input.problem,
        verdict=verdict.verdict if verdict else Verdict.NOT_RECOMMENDED,
        confidence=verdict.confidence if verdict else 0.0,
        summary=verdict.summary if verdict else "Analysis incomplete",
        reasoning=state.final_reasoning or (verdict.reasoning if verdict else ""),
        dimensions=dimensions,
        key_factors=key_factors,
        risks=list(state.risks or []),
        alternatives=list(state.alternatives or []),
        architecture=state.architecture,
        questions_before_building=list(state.pre_build_questions or []),
        answered_questions=[
            AnsweredQuestion(question_id=answer.question_id, answer=answer.answer)
            for answer in state.answers.values()
        ],
        duration_ms=max(0, finished_at - state.started_at),
    )


def build_partial_result(state: RunState, run_id: str) -> dict[str, Any]:
    """Best-effort projection for failed runs; only fields that exist so far."""

    partial: dict[str, Any] = {
        "threadId": run_id,
        "problem": state.input.problem,
        "dimensions": [analysis.to_dict() for analysis in get_dimensions_in_order(state)],
        "answeredQuestions": [
            {"questionId": answer.question_id, "answer": answer.answer}
            for answer in state.answers.values()
        ],
    }
    if state.verdict is not None:
        partial["verdict"] = state.verdict.verdict.value
        partial["confidence"] = state.verdict.confidence
        partial["summary"] = state.verdict.summary
    if state.risks is not None:
        partial["risks"] = [risk.to_dict() for risk in state.risks]
    if state.alternatives is not None:
        partial["alternatives"] = [alternative.to_dict() for alternative in state.alternatives]
    return partial


def _dump_list(items: list[Any] | None) -> list[dict[str, Any]] | None:
    if items is None:
        return None
    return [item.to_dict() for item in items]


def _load_list(raw: Any, decode: Any) -> list[Any] | None:
    if raw is None:
        return None
    return [decode(item) for item in raw]
