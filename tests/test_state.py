from __future__ import annotations

import allure
import pytest

from fit_check.orchestrator.failure_classifier import create_timeout_error
from fit_check.orchestrator.models import (
    DimensionAnalysis,
    DimensionScore,
    DimensionStatus,
    FollowUpQuestion,
    Influence,
    PipelineStage,
    QuestionPriority,
    QuestionSource,
    RunInput,
    UserAnswer,
    Verdict,
    VerdictResult,
)
from fit_check.orchestrator.state import (
    RunState,
    StateInvariantError,
    assemble_result,
    build_partial_result,
    check_invariants,
    create_initial_state,
    derive_key_factors,
    get_unanswered_questions,
    has_blocking_questions,
    mark_stage_complete,
    merge_answers,
    replace_pending_questions,
    set_dimension,
)

pytestmark = [
    allure.epic("Pipeline Execution"),
    allure.feature("Run State"),
]


def _analysis(
    dimension_id: str = "task_determinism",
    *,
    score: DimensionScore = DimensionScore.FAVORABLE,
    weight: float = 0.5,
    status: DimensionStatus = DimensionStatus.COMPLETE,
) -> DimensionAnalysis:
    return DimensionAnalysis(
        id=dimension_id,
        name=dimension_id.replace("_", " ").title(),
        score=score,
        confidence=0.7,
        weight=weight,
        reasoning="Outputs come from a fixed label set." * 5,
        status=status,
    )


def _question(question_id: str, priority: QuestionPriority, **kwargs) -> FollowUpQuestion:
    return FollowUpQuestion(
        id=question_id,
        question=f"What about {question_id}?",
        rationale="Needed for the score.",
        priority=priority,
        origin_stage=kwargs.pop("origin_stage", QuestionSource.SCREENING),
        **kwargs,
    )


def _state() -> RunState:
    return create_initial_state(RunInput(problem="Route support tickets to teams"), started_at=1_000)


def test_initial_state_starts_at_screening() -> None:
    state = _state()

    assert state.current_stage == PipelineStage.SCREENING
    assert state.completed_stages == []
    assert state.next_stage() == PipelineStage.SCREENING
    check_invariants(state)


def test_stages_complete_only_in_order() -> None:
    state = _state()
    mark_stage_complete(state, PipelineStage.SCREENING)
    mark_stage_complete(state, PipelineStage.SCREENING)

    with pytest.raises(StateInvariantError, match="Cannot complete 'verdict'"):
        mark_stage_complete(state, PipelineStage.VERDICT)
    assert state.completed_stages == [PipelineStage.SCREENING]
    assert state.next_stage() == PipelineStage.DIMENSIONS


def test_invariants_reject_non_prefix_completion() -> None:
    state = _state()
    state.completed_stages = [PipelineStage.SCREENING, PipelineStage.VERDICT]

    with pytest.raises(StateInvariantError, match="prefix"):
        check_invariants(state)


def test_invariants_reject_verdict_before_dimensions() -> None:
    state = _state()
    state.completed_stages = [PipelineStage.SCREENING]
    state.verdict = VerdictResult(Verdict.CONDITIONAL, 0.5, "summary", "reasoning")

    with pytest.raises(StateInvariantError, match="verdict is set before"):
        check_invariants(state)


def test_invariants_reject_unknown_dimension_ids() -> None:
    state = _state()
    state.dimensions["vibes"] = _analysis("vibes")

    with pytest.raises(StateInvariantError, match="Unknown dimension ids"):
        check_invariants(state)


def test_dimension_status_never_regresses() -> None:
    state = _state()
    set_dimension(state, _analysis(status=DimensionStatus.PRELIMINARY))
    set_dimension(state, _analysis(status=DimensionStatus.COMPLETE))

    with pytest.raises(StateInvariantError, match="cannot regress"):
        set_dimension(state, _analysis(status=DimensionStatus.RUNNING))


def test_answers_merge_last_write_wins() -> None:
    state = _state()
    merge_answers(state, [UserAnswer("scope", "first")])
    applied = merge_answers(state, [UserAnswer("scope", "second"), UserAnswer("volume", "1k/day")])

    assert [answer.question_id for answer in applied] == ["scope", "volume"]
    assert state.answers["scope"].answer == "second"


def test_blocking_questions_clear_once_answered() -> None:
    state = _state()
    replace_pending_questions(
        state,
        [_question("scope", QuestionPriority.BLOCKING), _question("tone", QuestionPriority.HELPFUL)],
        from_screening=True,
    )
    assert has_blocking_questions(state)
    assert [q.id for q in get_unanswered_questions(state)] == ["scope", "tone"]

    merge_answers(state, [UserAnswer("scope", "Invoices in, codes out")])

    assert not has_blocking_questions(state)
    assert [q.id for q in get_unanswered_questions(state)] == ["tone"]


def test_replace_pending_questions_keeps_other_origins() -> None:
    state = _state()
    replace_pending_questions(state, [_question("scope", QuestionPriority.BLOCKING)], from_screening=True)
    replace_pending_questions(
        state,
        [
            _question(
                "volume",
                QuestionPriority.BLOCKING,
                origin_stage=QuestionSource.DIMENSION,
                origin_dimension="data_availability",
            ),
        ],
        origin_dimension="data_availability",
    )
    replace_pending_questions(state, [], origin_dimension="data_availability")

    assert [q.id for q in state.pending_questions] == ["scope"]


def test_key_factors_follow_score_and_weight() -> None:
    factors = derive_key_factors(
        [
            _analysis("task_determinism", score=DimensionScore.FAVORABLE, weight=0.8),
            _analysis("error_tolerance", score=DimensionScore.UNFAVORABLE, weight=0.3),
            _analysis("rate_of_change", score=DimensionScore.NEUTRAL, weight=0.9),
        ],
    )

    assert [factor.influence for factor in factors] == [
        Influence.STRONGLY_POSITIVE,
        Influence.NEGATIVE,
        Influence.NEUTRAL,
    ]
    assert all(len(factor.note) <= 100 for factor in factors)


def test_state_round_trips_through_dict() -> None:
    state = _state()
    merge_answers(state, [UserAnswer("scope", "answer", timestamp=5)])
    mark_stage_complete(state, PipelineStage.SCREENING)
    set_dimension(state, _analysis(status=DimensionStatus.PRELIMINARY))
    state.current_stage = PipelineStage.DIMENSIONS
    state.errors.append(create_timeout_error("dimensions", 100, attempt=1))

    restored = RunState.from_dict(state.to_dict())

    assert restored.to_dict() == state.to_dict()
    assert restored.current_stage == PipelineStage.DIMENSIONS


def test_from_dict_rejects_other_versions() -> None:
    payload = _state().to_dict()
    payload["version"] = 99

    with pytest.raises(StateInvariantError, match="Unsupported run state version"):
        RunState.from_dict(payload)


def test_assemble_result_derives_key_factors_and_duration() -> None:
    state = _state()
    for stage in (PipelineStage.SCREENING, PipelineStage.DIMENSIONS):
        mark_stage_complete(state, stage)
    set_dimension(state, _analysis("error_tolerance"))
    set_dimension(state, _analysis("task_determinism"))
    state.verdict = VerdictResult(Verdict.STRONG_FIT, 0.9, "Go.", "All good.")
    state.final_reasoning = "Final words."
    state.completed_at = 4_000

    result = assemble_result(state, "run-1")

    assert result.thread_id == "run-1"
    assert result.verdict == Verdict.STRONG_FIT
    assert result.reasoning == "Final words."
    assert [d.id for d in result.dimensions] == ["task_determinism", "error_tolerance"]
    assert [f.dimension_id for f in result.key_factors] == ["task_determinism", "error_tolerance"]
    assert result.duration_ms == 3_000


def test_partial_result_only_has_reached_fields() -> None:
    state = _state()
    set_dimension(state, _analysis())

    partial = build_partial_result(state, "run-1")

    assert partial["threadId"] == "run-1"
    assert len(partial["dimensions"]) == 1
    assert "verdict" not in partial
    assert "risks" not in partial
