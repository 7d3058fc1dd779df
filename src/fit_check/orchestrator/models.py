"""Domain models for the analysis pipeline and its wire format."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class PipelineStage(str, Enum):
    """Fixed analysis stages in execution order."""

    SCREENING = "screening"
    DIMENSIONS = "dimensions"
    VERDICT = "verdict"
    SECONDARY = "secondary"
    SYNTHESIS = "synthesis"


PIPELINE_STAGES: tuple[PipelineStage, ...] = tuple(PipelineStage)


class QuestionPriority(str, Enum):
    BLOCKING = "blocking"
    HELPFUL = "helpful"
    OPTIONAL = "optional"


class QuestionSource(str, Enum):
    SCREENING = "screening"
    DIMENSION = "dimension"


class DimensionScore(str, Enum):
    FAVORABLE = "favorable"
    NEUTRAL = "neutral"
    UNFAVORABLE = "unfavorable"


class DimensionStatus(str, Enum):
    """Per-dimension lifecycle; only ever moves forward."""

    PENDING = "pending"
    RUNNING = "running"
    PRELIMINARY = "preliminary"
    COMPLETE = "complete"

    @property
    def rank(self) -> int:
        return _DIMENSION_STATUS_ORDER.index(self)


_DIMENSION_STATUS_ORDER = (
    DimensionStatus.PENDING,
    DimensionStatus.RUNNING,
    DimensionStatus.PRELIMINARY,
    DimensionStatus.COMPLETE,
)


class Verdict(str, Enum):
    STRONG_FIT = "STRONG_FIT"
    CONDITIONAL = "CONDITIONAL"
    WEAK_FIT = "WEAK_FIT"
    NOT_RECOMMENDED = "NOT_RECOMMENDED"


class PreliminarySignal(str, Enum):
    LIKELY_POSITIVE = "likely_positive"
    UNCERTAIN = "uncertain"
    LIKELY_NEGATIVE = "likely_negative"


class Influence(str, Enum):
    STRONGLY_POSITIVE = "strongly_positive"
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"
    STRONGLY_NEGATIVE = "strongly_negative"


class ExecutionStatus(str, Enum):
    """Process-local run lifecycle states."""

    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        }


LEVELS = ("low", "medium", "high")
ALTERNATIVE_TYPES = ("rule_based", "traditional_ml", "human_process", "hybrid", "no_change")

PROBLEM_MAX_CHARS = 5_000
CONTEXT_MAX_CHARS = 10_000


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""

    return int(time.time() * 1000)


@dataclass(slots=True, frozen=True)
class RunInput:
    """Problem description submitted for analysis; immutable once a run starts."""

    problem: str
    context: str | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.problem, str) or not self.problem.strip():
            raise ValueError("problem must be a non-empty string")
        if len(self.problem) > PROBLEM_MAX_CHARS:
            raise ValueError(f"problem must not exceed {PROBLEM_MAX_CHARS} characters")
        if self.context is not None and len(self.context) > CONTEXT_MAX_CHARS:
            raise ValueError(f"context must not exceed {CONTEXT_MAX_CHARS} characters")

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"problem": self.problem}
        if self.context is not None:
            payload["context"] = self.context
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RunInput:
        return cls(problem=_req_str(raw, "problem"), context=_opt_str(raw, "context"))


@dataclass(slots=True)
class UserAnswer:
    question_id: str
    answer: str
    source: QuestionSource = QuestionSource.SCREENING
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "questionId": self.question_id,
            "answer": self.answer,
            "source": self.source.value,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UserAnswer:
        return cls(
            question_id=_req_str(raw, "questionId"),
            answer=_req_str(raw, "answer"),
            source=QuestionSource(raw.get("source", QuestionSource.SCREENING.value)),
            timestamp=int(raw.get("timestamp", now_ms())),
        )


@dataclass(slots=True)
class QuestionOption:
    label: str
    value: str
    impact_on_score: DimensionScore | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"label": self.label, "value": self.value}
        if self.impact_on_score is not None:
            payload["impactOnScore"] = self.impact_on_score.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QuestionOption:
        impact = raw.get("impactOnScore")
        return cls(
            label=_req_str(raw, "label"),
            value=_req_str(raw, "value"),
            impact_on_score=DimensionScore(impact) if impact is not None else None,
        )


@dataclass(slots=True)
class FollowUpQuestion:
    """Question raised by a stage; only ``blocking`` ones can suspend a run."""

    id: str
    question: str
    rationale: str
    priority: QuestionPriority
    origin_stage: QuestionSource
    origin_dimension: str | None = None
    current_assumption: str | None = None
    suggested_options: list[QuestionOption] = field(default_factory=list)

    @property
    def is_blocking(self) -> bool:
        return self.priority == QuestionPriority.BLOCKING

    def to_dict(self) -> dict[str, Any]:
        source: dict[str, Any] = {"stage": self.origin_stage.value}
        if self.origin_dimension is not None:
            source["dimensionId"] = self.origin_dimension
        payload: dict[str, Any] = {
            "id": self.id,
            "question": self.question,
            "rationale": self.rationale,
            "priority": self.priority.value,
            "source": source,
        }
        if self.current_assumption is not None:
            payload["currentAssumption"] = self.current_assumption
        if self.suggested_options:
            payload["suggestedOptions"] = [option.to_dict() for option in self.suggested_options]
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> FollowUpQuestion:
        source = raw.get("source") or {}
        if not isinstance(source, dict):
            raise TypeError("question.source must be an object")
        return cls(
            id=_req_str(raw, "id"),
            question=_req_str(raw, "question"),
            rationale=str(raw.get("rationale", "")),
            priority=QuestionPriority(raw.get("priority", QuestionPriority.HELPFUL.value)),
            origin_stage=QuestionSource(source.get("stage", QuestionSource.SCREENING.value)),
            origin_dimension=_opt_str(source, "dimensionId"),
            current_assumption=_opt_str(raw, "currentAssumption"),
            suggested_options=[
                QuestionOption.from_dict(item) for item in _list(raw, "suggestedOptions")
            ],
        )


@dataclass(slots=True)
class DimensionAnalysis:
    id: str
    name: str
    score: DimensionScore
    confidence: float
    weight: float
    reasoning: str
    evidence: list[str] = field(default_factory=list)
    info_gaps: list[FollowUpQuestion] = field(default_factory=list)
    status: DimensionStatus = DimensionStatus.PENDING

    def __post_init__(self) -> None:
        _check_unit_interval("confidence", self.confidence)
        _check_unit_interval("weight", self.weight)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "score": self.score.value,
            "confidence": self.confidence,
            "weight": self.weight,
            "reasoning": self.reasoning,
            "evidence": list(self.evidence),
            "infoGaps": [gap.to_dict() for gap in self.info_gaps],
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DimensionAnalysis:
        return cls(
            id=_req_str(raw, "id"),
            name=_req_str(raw, "name"),
            score=DimensionScore(raw["score"]),
            confidence=float(raw["confidence"]),
            weight=float(raw["weight"]),
            reasoning=str(raw.get("reasoning", "")),
            evidence=[str(item) for item in _list(raw, "evidence")],
            info_gaps=[FollowUpQuestion.from_dict(item) for item in _list(raw, "infoGaps")],
            status=DimensionStatus(raw.get("status", DimensionStatus.PENDING.value)),
        )


@dataclass(slots=True)
class PartialInsight:
    insight: str
    confidence: float
    relevant_dimension: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "insight": self.insight,
            "confidence": self.confidence,
            "relevantDimension": self.relevant_dimension,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PartialInsight:
        return cls(
            insight=_req_str(raw, "insight"),
            confidence=float(raw.get("confidence", 0.0)),
            relevant_dimension=str(raw.get("relevantDimension", "")),
        )


@dataclass(slots=True)
class DimensionPriority:
    dimension_id: str
    priority: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"dimensionId": self.dimension_id, "priority": self.priority, "reason": self.reason}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> DimensionPriority:
        return cls(
            dimension_id=_req_str(raw, "dimensionId"),
            priority=_req_level(raw, "priority"),
            reason=str(raw.get("reason", "")),
        )


@dataclass(slots=True)
class ScreeningOutput:
    can_evaluate: bool
    clarifying_questions: list[FollowUpQuestion] = field(default_factory=list)
    partial_insights: list[PartialInsight] = field(default_factory=list)
    preliminary_signal: PreliminarySignal = PreliminarySignal.UNCERTAIN
    dimension_priorities: list[DimensionPriority] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "canEvaluate": self.can_evaluate,
            "clarifyingQuestions": [q.to_dict() for q in self.clarifying_questions],
            "partialInsights": [i.to_dict() for i in self.partial_insights],
            "preliminarySignal": self.preliminary_signal.value,
            "dimensionPriorities": [p.to_dict() for p in self.dimension_priorities],
        }
        if self.reason is not None:
            payload["reason"] = self.reason
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ScreeningOutput:
        return cls(
            can_evaluate=bool(raw["canEvaluate"]),
            clarifying_questions=[
                FollowUpQuestion.from_dict(item) for item in _list(raw, "clarifyingQuestions")
            ],
            partial_insights=[
                PartialInsight.from_dict(item) for item in _list(raw, "partialInsights")
            ],
            preliminary_signal=PreliminarySignal(
                raw.get("preliminarySignal", PreliminarySignal.UNCERTAIN.value),
            ),
            dimension_priorities=[
                DimensionPriority.from_dict(item) for item in _list(raw, "dimensionPriorities")
            ],
            reason=_opt_str(raw, "reason"),
        )


@dataclass(slots=True)
class VerdictKeyFactor:
    dimension_id: str
    influence: Influence
    note: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimensionId": self.dimension_id,
            "influence": self.influence.value,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> VerdictKeyFactor:
        return cls(
            dimension_id=_req_str(raw, "dimensionId"),
            influence=Influence(raw["influence"]),
            note=str(raw.get("note", "")),
        )


@dataclass(slots=True)
class VerdictResult:
    verdict: Verdict
    confidence: float
    summary: str
    reasoning: str
    key_factors: list[VerdictKeyFactor] = field(default_factory=list)

    def __post_init__(self) -> None:
        _check_unit_interval("confidence", self.confidence)

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "confidence": self.confidence,
            "summary": self.summary,
            "reasoning": self.reasoning,
            "keyFactors": [factor.to_dict() for factor in self.key_factors],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> VerdictResult:
        return cls(
            verdict=Verdict(raw["verdict"]),
            confidence=float(raw["confidence"]),
            summary=str(raw.get("summary", "")),
            reasoning=str(raw.get("reasoning", "")),
            key_factors=[VerdictKeyFactor.from_dict(item) for item in _list(raw, "keyFactors")],
        )


@dataclass(slots=True)
class RiskFactor:
    risk: str
    severity: str
    likelihood: str
    related_dimensions: list[str] = field(default_factory=list)
    mitigation: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "risk": self.risk,
            "severity": self.severity,
            "likelihood": self.likelihood,
            "relatedDimensions": list(self.related_dimensions),
        }
        if self.mitigation is not None:
            payload["mitigation"] = self.mitigation
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RiskFactor:
        return cls(
            risk=_req_str(raw, "risk"),
            severity=_req_level(raw, "severity"),
            likelihood=_req_level(raw, "likelihood"),
            related_dimensions=[str(item) for item in _list(raw, "relatedDimensions")],
            mitigation=_opt_str(raw, "mitigation"),
        )


@dataclass(slots=True)
class Alternative:
    name: str
    type: str
    description: str
    advantages: list[str] = field(default_factory=list)
    disadvantages: list[str] = field(default_factory=list)
    estimated_effort: str = "medium"
    when_to_choose: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "advantages": list(self.advantages),
            "disadvantages": list(self.disadvantages),
            "estimatedEffort": self.estimated_effort,
            "whenToChoose": self.when_to_choose,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Alternative:
        alternative_type = _req_str(raw, "type")
        if alternative_type not in ALTERNATIVE_TYPES:
            raise ValueError(f"alternative.type must be one of {ALTERNATIVE_TYPES}")
        return cls(
            name=_req_str(raw, "name"),
            type=alternative_type,
            description=str(raw.get("description", "")),
            advantages=[str(item) for item in _list(raw, "advantages")],
            disadvantages=[str(item) for item in _list(raw, "disadvantages")],
            estimated_effort=_req_level(raw, "estimatedEffort"),
            when_to_choose=str(raw.get("whenToChoose", "")),
        )


@dataclass(slots=True)
class RecommendedArchitecture:
    description: str
    components: list[str] = field(default_factory=list)
    human_in_loop: bool = True
    confidence_threshold: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "description": self.description,
            "components": list(self.components),
            "humanInLoop": self.human_in_loop,
        }
        if self.confidence_threshold is not None:
            payload["confidenceThreshold"] = self.confidence_threshold
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> RecommendedArchitecture:
        threshold = raw.get("confidenceThreshold")
        return cls(
            description=_req_str(raw, "description"),
            components=[str(item) for item in _list(raw, "components")],
            human_in_loop=bool(raw.get("humanInLoop", True)),
            confidence_threshold=float(threshold) if threshold is not None else None,
        )


@dataclass(slots=True)
class PreBuildQuestion:
    question: str
    why_it_matters: str

    def to_dict(self) -> dict[str, Any]:
        return {"question": self.question, "whyItMatters": self.why_it_matters}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PreBuildQuestion:
        return cls(
            question=_req_str(raw, "question"),
            why_it_matters=str(raw.get("whyItMatters", "")),
        )


@dataclass(slots=True)
class ArchitectureResult:
    """Architecture stage output; ``architecture`` is ``None`` when building is not advised."""

    architecture: RecommendedArchitecture | None
    questions_before_building: list[PreBuildQuestion] = field(default_factory=list)


@dataclass(slots=True)
class SynthesisInput:
    """Everything the synthesis stage may read."""

    input: RunInput
    screening: ScreeningOutput | None
    dimensions: dict[str, DimensionAnalysis]
    answers: dict[str, UserAnswer]
    verdict: VerdictResult
    risks: list[RiskFactor]
    alternatives: list[Alternative]
    architecture: RecommendedArchitecture | None
    questions_before_building: list[PreBuildQuestion]


@dataclass(slots=True)
class AnsweredQuestion:
    question_id: str
    answer: str

    def to_dict(self) -> dict[str, Any]:
        return {"questionId": self.question_id, "answer": self.answer}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AnsweredQuestion:
        return cls(question_id=_req_str(raw, "questionId"), answer=str(raw.get("answer", "")))


@dataclass(slots=True)
class AnalysisResult:
    """Final result record assembled from a completed run."""

    thread_id: str
    problem: str
    verdict: Verdict
    confidence: float
    summary: str
    reasoning: str
    dimensions: list[DimensionAnalysis]
    key_factors: list[VerdictKeyFactor]
    risks: list[RiskFactor]
    alternatives: list[Alternative]
    architecture: RecommendedArchitecture | None
    questions_before_building: list[PreBuildQuestion]
    answered_questions: list[AnsweredQuestion]
    duration_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "threadId": self.thread_id,
            "problem": self.problem,
            "verdict": self.verdict.value,
            "confidence": self.confidence,
            "summary": self.summary,
            "reasoning": self.reasoning,
            "dimensions": [d.to_dict() for d in self.dimensions],
            "keyFactors": [f.to_dict() for f in self.key_factors],
            "risks": [r.to_dict() for r in self.risks],
            "alternatives": [a.to_dict() for a in self.alternatives],
            "architecture": self.architecture.to_dict() if self.architecture else None,
            "questionsBeforeBuilding": [q.to_dict() for q in self.questions_before_building],
            "answeredQuestions": [a.to_dict() for a in self.answered_questions],
            "durationMs": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> AnalysisResult:
        architecture = raw.get("architecture")
        return cls(
            thread_id=_req_str(raw, "threadId"),
            problem=str(raw.get("problem", "")),
            verdict=Verdict(raw["verdict"]),
            confidence=float(raw["confidence"]),
            summary=str(raw.get("summary", "")),
            reasoning=str(raw.get("reasoning", "")),
            dimensions=[DimensionAnalysis.from_dict(item) for item in _list(raw, "dimensions")],
            key_factors=[VerdictKeyFactor.from_dict(item) for item in _list(raw, "keyFactors")],
            risks=[RiskFactor.from_dict(item) for item in _list(raw, "risks")],
            alternatives=[Alternative.from_dict(item) for item in _list(raw, "alternatives")],
            architecture=(
                RecommendedArchitecture.from_dict(architecture)
                if isinstance(architecture, dict)
                else None
            ),
            questions_before_building=[
                PreBuildQuestion.from_dict(item)
                for item in _list(raw, "questionsBeforeBuilding")
            ],
            answered_questions=[
                AnsweredQuestion.from_dict(item) for item in _list(raw, "answeredQuestions")
            ],
            duration_ms=int(raw.get("durationMs", 0)),
        )


def _req_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{key} must be a non-empty string")
    return value


def _opt_str(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string when provided")
    return value


def _req_level(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if value not in LEVELS:
        raise ValueError(f"{key} must be one of {LEVELS}, got {value!r}")
    return str(value)


def _list(raw: dict[str, Any], key: str) -> list[Any]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"{key} must be an array")
    return value


def _check_unit_interval(name: str, value: float) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value!r}")
