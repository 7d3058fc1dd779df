"""Typed progress events emitted while a run executes.

Events are frozen dataclasses. Each one is built by a small constructor
function that only takes the data the event carries; ``to_dict`` gives the
camelCase wire shape with a ``type`` discriminator and ``event_from_dict``
reverses it for payloads received over the wire.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar

from fit_check.orchestrator.models import (
    AnalysisResult,
    Alternative,
    DimensionAnalysis,
    DimensionPriority,
    DimensionScore,
    FollowUpQuestion,
    PartialInsight,
    PipelineStage,
    PreBuildQuestion,
    PreliminarySignal,
    RecommendedArchitecture,
    RiskFactor,
    Verdict,
    now_ms,
)

EVENT_SCHEMA_VERSION = 1


def _decoded(decode: Callable[[Any], Any]) -> Any:
    return field(metadata={"decode": decode})


def _decoded_many(decode: Callable[[Any], Any]) -> Any:
    return field(metadata={"decode": lambda items: tuple(decode(item) for item in items)})


def _optional(decode: Callable[[Any], Any]) -> Callable[[Any], Any]:
    return lambda value: decode(value) if value is not None else None


@dataclass(slots=True, frozen=True)
class PipelineEvent:
    """Base class; ``type`` is the wire discriminator of each concrete event."""

    type: ClassVar[str] = ""

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        for item in fields(self):
            value = getattr(self, item.name)
            if value is None and item.metadata.get("omit_none"):
                continue
            payload[_camel(item.name)] = _encode(value)
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PipelineEvent:
        kwargs: dict[str, Any] = {}
        for item in fields(cls):
            key = _camel(item.name)
            if key not in payload:
                if item.metadata.get("omit_none"):
                    kwargs[item.name] = None
                    continue
                raise ValueError(f"{cls.type} event is missing {key!r}")
            decode = item.metadata.get("decode")
            kwargs[item.name] = decode(payload[key]) if decode else payload[key]
        return cls(**kwargs)


@dataclass(slots=True, frozen=True)
class PipelineStartEvent(PipelineEvent):
    type: ClassVar[str] = "pipeline:start"
    run_id: str
    timestamp: int


@dataclass(slots=True, frozen=True)
class PipelineResumedEvent(PipelineEvent):
    type: ClassVar[str] = "pipeline:resumed"
    run_id: str
    from_step: str


@dataclass(slots=True, frozen=True)
class PipelineStageEvent(PipelineEvent):
    type: ClassVar[str] = "pipeline:stage"
    stage: PipelineStage = _decoded(PipelineStage)


@dataclass(slots=True, frozen=True)
class PipelineCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "pipeline:complete"
    result: AnalysisResult = _decoded(AnalysisResult.from_dict)


@dataclass(slots=True, frozen=True)
class PipelineErrorEvent(PipelineEvent):
    type: ClassVar[str] = "pipeline:error"
    code: str
    message: str
    recoverable: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "error": {
                "code": self.code,
                "message": self.message,
                "recoverable": self.recoverable,
            },
        }

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> PipelineErrorEvent:
        error = payload.get("error")
        if not isinstance(error, dict):
            raise ValueError("pipeline:error event is missing 'error'")
        return cls(
            code=str(error.get("code", "UNKNOWN")),
            message=str(error.get("message", "")),
            recoverable=bool(error.get("recoverable", False)),
        )


@dataclass(slots=True, frozen=True)
class ScreeningStartEvent(PipelineEvent):
    type: ClassVar[str] = "screening:start"


@dataclass(slots=True, frozen=True)
class ScreeningSignalEvent(PipelineEvent):
    type: ClassVar[str] = "screening:signal"
    signal: PreliminarySignal = _decoded(PreliminarySignal)


@dataclass(slots=True, frozen=True)
class ScreeningQuestionEvent(PipelineEvent):
    type: ClassVar[str] = "screening:question"
    question: FollowUpQuestion = _decoded(FollowUpQuestion.from_dict)


@dataclass(slots=True, frozen=True)
class ScreeningInsightEvent(PipelineEvent):
    type: ClassVar[str] = "screening:insight"
    insight: PartialInsight = _decoded(PartialInsight.from_dict)


@dataclass(slots=True, frozen=True)
class ScreeningCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "screening:complete"
    can_evaluate: bool
    dimension_priorities: tuple[DimensionPriority, ...] = _decoded_many(
        DimensionPriority.from_dict,
    )
    reason: str | None = field(default=None, metadata={"omit_none": True})


@dataclass(slots=True, frozen=True)
class DimensionStartEvent(PipelineEvent):
    type: ClassVar[str] = "dimension:start"
    id: str
    name: str
    priority: str


@dataclass(slots=True, frozen=True)
class DimensionPreliminaryEvent(PipelineEvent):
    type: ClassVar[str] = "dimension:preliminary"
    id: str
    score: DimensionScore = _decoded(DimensionScore)
    confidence: float = _decoded(float)


@dataclass(slots=True, frozen=True)
class DimensionQuestionEvent(PipelineEvent):
    type: ClassVar[str] = "dimension:question"
    question: FollowUpQuestion = _decoded(FollowUpQuestion.from_dict)


@dataclass(slots=True, frozen=True)
class DimensionCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "dimension:complete"
    id: str
    analysis: DimensionAnalysis = _decoded(DimensionAnalysis.from_dict)


@dataclass(slots=True, frozen=True)
class DimensionToolCallEvent(PipelineEvent):
    type: ClassVar[str] = "dimension:tool_call"
    id: str
    tool: str
    input: Any


@dataclass(slots=True, frozen=True)
class DimensionToolResultEvent(PipelineEvent):
    type: ClassVar[str] = "dimension:tool_result"
    id: str
    tool: str
    result: Any


@dataclass(slots=True, frozen=True)
class VerdictComputingEvent(PipelineEvent):
    type: ClassVar[str] = "verdict:computing"
    completed_dimensions: int
    total_dimensions: int


@dataclass(slots=True, frozen=True)
class VerdictResultEvent(PipelineEvent):
    type: ClassVar[str] = "verdict:result"
    verdict: Verdict = _decoded(Verdict)
    confidence: float = _decoded(float)
    summary: str = _decoded(str)


@dataclass(slots=True, frozen=True)
class RisksStartEvent(PipelineEvent):
    type: ClassVar[str] = "risks:start"


@dataclass(slots=True, frozen=True)
class RisksCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "risks:complete"
    risks: tuple[RiskFactor, ...] = _decoded_many(RiskFactor.from_dict)


@dataclass(slots=True, frozen=True)
class AlternativesStartEvent(PipelineEvent):
    type: ClassVar[str] = "alternatives:start"


@dataclass(slots=True, frozen=True)
class AlternativesCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "alternatives:complete"
    alternatives: tuple[Alternative, ...] = _decoded_many(Alternative.from_dict)


@dataclass(slots=True, frozen=True)
class ArchitectureStartEvent(PipelineEvent):
    type: ClassVar[str] = "architecture:start"


@dataclass(slots=True, frozen=True)
class ArchitectureCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "architecture:complete"
    architecture: RecommendedArchitecture | None = _decoded(
        _optional(RecommendedArchitecture.from_dict),
    )


@dataclass(slots=True, frozen=True)
class PreBuildCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "prebuild:complete"
    questions: tuple[PreBuildQuestion, ...] = _decoded_many(PreBuildQuestion.from_dict)


@dataclass(slots=True, frozen=True)
class ReasoningStartEvent(PipelineEvent):
    type: ClassVar[str] = "reasoning:start"


@dataclass(slots=True, frozen=True)
class ReasoningChunkEvent(PipelineEvent):
    type: ClassVar[str] = "reasoning:chunk"
    chunk: str


@dataclass(slots=True, frozen=True)
class ReasoningCompleteEvent(PipelineEvent):
    type: ClassVar[str] = "reasoning:complete"
    reasoning: str


@dataclass(slots=True, frozen=True)
class AnswerReceivedEvent(PipelineEvent):
    type: ClassVar[str] = "answer:received"
    question_id: str
    answer: str


EVENT_CLASSES: tuple[type[PipelineEvent], ...] = (
    PipelineStartEvent,
    PipelineResumedEvent,
    PipelineStageEvent,
    PipelineCompleteEvent,
    PipelineErrorEvent,
    ScreeningStartEvent,
    ScreeningSignalEvent,
    ScreeningQuestionEvent,
    ScreeningInsightEvent,
    ScreeningCompleteEvent,
    DimensionStartEvent,
    DimensionPreliminaryEvent,
    DimensionQuestionEvent,
    DimensionCompleteEvent,
    DimensionToolCallEvent,
    DimensionToolResultEvent,
    VerdictComputingEvent,
    VerdictResultEvent,
    RisksStartEvent,
    RisksCompleteEvent,
    AlternativesStartEvent,
    AlternativesCompleteEvent,
    ArchitectureStartEvent,
    ArchitectureCompleteEvent,
    PreBuildCompleteEvent,
    ReasoningStartEvent,
    ReasoningChunkEvent,
    ReasoningCompleteEvent,
    AnswerReceivedEvent,
)

EVENT_TYPES: tuple[str, ...] = tuple(event_class.type for event_class in EVENT_CLASSES)

_EVENT_CLASS_BY_TYPE: dict[str, type[PipelineEvent]] = {
    event_class.type: event_class for event_class in EVENT_CLASSES
}

EventSink = Callable[[PipelineEvent], None]


def pipeline_start(run_id: str, timestamp: int | None = None) -> PipelineStartEvent:
    return PipelineStartEvent(run_id=run_id, timestamp=timestamp if timestamp is not None else now_ms())


def pipeline_resumed(run_id: str, from_step: str) -> PipelineResumedEvent:
    return PipelineResumedEvent(run_id=run_id, from_step=from_step)


def pipeline_stage(stage: PipelineStage) -> PipelineStageEvent:
    return PipelineStageEvent(stage=stage)


def pipeline_complete(result: AnalysisResult) -> PipelineCompleteEvent:
    return PipelineCompleteEvent(result=result)


def pipeline_error(code: str, message: str, recoverable: bool) -> PipelineErrorEvent:
    return PipelineErrorEvent(code=code, message=message, recoverable=recoverable)


def screening_start() -> ScreeningStartEvent:
    return ScreeningStartEvent()


def screening_signal(signal: PreliminarySignal) -> ScreeningSignalEvent:
    return ScreeningSignalEvent(signal=signal)


def screening_question(question: FollowUpQuestion) -> ScreeningQuestionEvent:
    return ScreeningQuestionEvent(question=question)


def screening_insight(insight: PartialInsight) -> ScreeningInsightEvent:
    return ScreeningInsightEvent(insight=insight)


def screening_complete(
    can_evaluate: bool,
    dimension_priorities: list[DimensionPriority] | tuple[DimensionPriority, ...],
    reason: str | None = None,
) -> ScreeningCompleteEvent:
    return ScreeningCompleteEvent(
        can_evaluate=can_evaluate,
        dimension_priorities=tuple(dimension_priorities),
        reason=reason,
    )


def dimension_start(dimension_id: str, name: str, priority: str) -> DimensionStartEvent:
    return DimensionStartEvent(id=dimension_id, name=name, priority=priority)


def dimension_preliminary(
    dimension_id: str,
    score: DimensionScore,
    confidence: float,
) -> DimensionPreliminaryEvent:
    return DimensionPreliminaryEvent(id=dimension_id, score=score, confidence=confidence)


def dimension_question(question: FollowUpQuestion) -> DimensionQuestionEvent:
    return DimensionQuestionEvent(question=question)


def dimension_complete(dimension_id: str, analysis: DimensionAnalysis) -> DimensionCompleteEvent:
    return DimensionCompleteEvent(id=dimension_id, analysis=analysis)


def dimension_tool_call(dimension_id: str, tool: str, tool_input: Any) -> DimensionToolCallEvent:
    return DimensionToolCallEvent(id=dimension_id, tool=tool, input=tool_input)


def dimension_tool_result(dimension_id: str, tool: str, result: Any) -> DimensionToolResultEvent:
    return DimensionToolResultEvent(id=dimension_id, tool=tool, result=result)


def verdict_computing(completed_dimensions: int, total_dimensions: int) -> VerdictComputingEvent:
    return VerdictComputingEvent(
        completed_dimensions=completed_dimensions,
        total_dimensions=total_dimensions,
    )


def verdict_result(verdict: Verdict, confidence: float, summary: str) -> VerdictResultEvent:
    return VerdictResultEvent(verdict=verdict, confidence=confidence, summary=summary)


def risks_start() -> RisksStartEvent:
    return RisksStartEvent()


def risks_complete(risks: list[RiskFactor] | tuple[RiskFactor, ...]) -> RisksCompleteEvent:
    return RisksCompleteEvent(risks=tuple(risks))


def alternatives_start() -> AlternativesStartEvent:
    return AlternativesStartEvent()


def alternatives_complete(
    alternatives: list[Alternative] | tuple[Alternative, ...],
) -> AlternativesCompleteEvent:
    return AlternativesCompleteEvent(alternatives=tuple(alternatives))


def architecture_start() -> ArchitectureStartEvent:
    return ArchitectureStartEvent()


def architecture_complete(
    architecture: RecommendedArchitecture | None,
) -> ArchitectureCompleteEvent:
    return ArchitectureCompleteEvent(architecture=architecture)


def prebuild_complete(
    questions: list[PreBuildQuestion] | tuple[PreBuildQuestion, ...],
) -> PreBuildCompleteEvent:
    return PreBuildCompleteEvent(questions=tuple(questions))


def reasoning_start() -> ReasoningStartEvent:
    return ReasoningStartEvent()


def reasoning_chunk(chunk: str) -> ReasoningChunkEvent:
    return ReasoningChunkEvent(chunk=chunk)


def reasoning_complete(reasoning: str) -> ReasoningCompleteEvent:
    return ReasoningCompleteEvent(reasoning=reasoning)


def answer_received(question_id: str, answer: str) -> AnswerReceivedEvent:
    return AnswerReceivedEvent(question_id=question_id, answer=answer)


def is_pipeline_event(value: object) -> bool:
    """True when a decoded payload has a known event ``type`` and decodes cleanly."""

    if not isinstance(value, dict):
        return False
    event_type = value.get("type")
    if not isinstance(event_type, str) or event_type not in _EVENT_CLASS_BY_TYPE:
        return False
    try:
        event_from_dict(value)
    except (KeyError, TypeError, ValueError):
        return False
    return True


def event_from_dict(payload: dict[str, Any]) -> PipelineEvent:
    """Rebuild a typed event from its wire shape; raises ``ValueError`` if unknown."""

    event_type = payload.get("type")
    event_class = _EVENT_CLASS_BY_TYPE.get(event_type) if isinstance(event_type, str) else None
    if event_class is None:
        raise ValueError(f"Unknown pipeline event type: {event_type!r}")
    return event_class.from_payload(payload)


def is_question_event(event: PipelineEvent) -> bool:
    return isinstance(event, (ScreeningQuestionEvent, DimensionQuestionEvent))


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _encode(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_encode(item) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item) for key, item in value.items()}
    return value
