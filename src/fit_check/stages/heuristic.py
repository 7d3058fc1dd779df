"""Deterministic keyword-driven stages for offline runs and tests.

No network, no randomness: the same problem text and answers always give the
same analysis. Scores come from counting favorable and unfavorable cue words
per dimension in the problem, its context and the user's answers.
"""

from __future__ import annotations

import logging
import re

from fit_check.orchestrator.dimensions import (
    EVALUATION_DIMENSIONS,
    EvaluationDimension,
    get_dimension,
)
from fit_check.orchestrator.models import (
    Alternative,
    ArchitectureResult,
    DimensionAnalysis,
    DimensionPriority,
    DimensionScore,
    DimensionStatus,
    FollowUpQuestion,
    PartialInsight,
    PreBuildQuestion,
    PreliminarySignal,
    QuestionPriority,
    QuestionSource,
    RecommendedArchitecture,
    RiskFactor,
    RunInput,
    ScreeningOutput,
    SynthesisInput,
    UserAnswer,
    Verdict,
    VerdictResult,
)
from fit_check.stages.base import StageReporter

logger = logging.getLogger(__name__)

MIN_PROBLEM_WORDS = 8
SCOPE_QUESTION_ID = "problem-scope"
ERROR_IMPACT_QUESTION_ID = "error-impact"
HIGH_WEIGHT = 0.7
PRIORITY_WEIGHTS = {"high": 0.8, "medium": 0.5, "low": 0.3}

# (favorable cues, unfavorable cues) per dimension id
DIMENSION_CUES: dict[str, tuple[tuple[str, ...], tuple[str, ...]]] = {
    "task_determinism": (
        ("classify", "categori", "extract", "summari", "tag", "route", "triage", "label"),
        ("creative", "open-ended", "novel", "exact calculation", "precise number"),
    ),
    "error_tolerance": (
        ("draft", "suggest", "internal", "brainstorm", "low stakes", "easily corrected"),
        ("medical", "legal", "financial", "safety", "diagnos", "irreversible", "regulat"),
    ),
    "data_availability": (
        ("historical", "labeled", "labelled", "examples", "dataset", "tickets", "logs", "archive"),
        ("no data", "new product", "no examples", "confidential"),
    ),
    "evaluation_clarity": (
        ("accuracy", "metric", "ground truth", "benchmark", "measur", "precision"),
        ("subjective", "taste", "hard to measure", "no way to check"),
    ),
    "edge_case_risk": (
        ("standard", "routine", "common", "repetitive", "templat"),
        ("rare", "edge case", "exception", "unusual", "adversarial", "fraud"),
    ),
    "human_oversight_cost": (
        ("review", "approve", "human in the loop", "agent", "escalat", "spot check"),
        ("real-time", "realtime", "fully automated", "no human", "millions", "autonomous"),
    ),
    "rate_of_change": (
        ("stable", "rarely change", "fixed rules", "well established"),
        ("daily", "frequently", "trending", "constantly", "new regulation"),
    ),
}

MITIGATIONS: dict[str, str] = {
    "task_determinism": "Constrain outputs to a fixed schema and validate every response.",
    "error_tolerance": "Keep a human approval step before any output takes effect.",
    "data_availability": "Collect and label a representative sample before building.",
    "evaluation_clarity": "Define an acceptance test set and pass criteria up front.",
    "edge_case_risk": "Route low-confidence and unusual cases to a human queue.",
    "human_oversight_cost": "Sample outputs for review instead of checking every item.",
    "rate_of_change": "Version prompts and schedule regular re-evaluation.",
}


class HeuristicStages:
    """Offline analysis stages; see the module docstring."""

    async def screen(
        self,
        run_input: RunInput,
        answers: dict[str, UserAnswer],
    ) -> ScreeningOutput:
        text = _corpus(run_input, answers)
        vague = (
            len(run_input.problem.split()) < MIN_PROBLEM_WORDS
            and SCOPE_QUESTION_ID not in answers
        )
        questions: list[FollowUpQuestion] = []
        if vague:
            questions.append(
                FollowUpQuestion(
                    id=SCOPE_QUESTION_ID,
                    question="What exactly should the system take as input and produce as output?",
                    rationale="The description is too short to judge any dimension.",
                    priority=QuestionPriority.BLOCKING,
                    origin_stage=QuestionSource.SCREENING,
                ),
            )
        favorable, unfavorable = _cue_hits(text, "error_tolerance")
        if not favorable and not unfavorable and ERROR_IMPACT_QUESTION_ID not in answers:
            questions.append(
                FollowUpQuestion(
                    id=ERROR_IMPACT_QUESTION_ID,
                    question="What happens when the output is wrong?",
                    rationale="Error cost decides how much oversight the solution needs.",
                    priority=QuestionPriority.HELPFUL,
                    origin_stage=QuestionSource.SCREENING,
                    origin_dimension="error_tolerance",
                    current_assumption="Mistakes are noticed and corrected by staff.",
                ),
            )

        insights: list[PartialInsight] = []
        priorities: list[DimensionPriority] = []
        balance = 0
        for dimension in EVALUATION_DIMENSIONS:
            favorable, unfavorable = _cue_hits(text, dimension.id)
            balance += len(favorable) - len(unfavorable)
            if favorable or unfavorable:
                cue = (favorable or unfavorable)[0]
                insights.append(
                    PartialInsight(
                        insight=f"Mentions '{cue}', relevant to {dimension.name.lower()}.",
                        confidence=0.5,
                        relevant_dimension=dimension.id,
                    ),
                )
            priority = "high" if unfavorable else "medium" if favorable else "low"
            priorities.append(
                DimensionPriority(
                    dimension_id=dimension.id,
                    priority=priority,
                    reason=f"{len(favorable)} favorable and {len(unfavorable)} unfavorable cue(s)",
                ),
            )

        signal = PreliminarySignal.UNCERTAIN
        if balance >= 2:
            signal = PreliminarySignal.LIKELY_POSITIVE
        elif balance <= -2:
            signal = PreliminarySignal.LIKELY_NEGATIVE
        return ScreeningOutput(
            can_evaluate=not vague,
            clarifying_questions=questions,
            partial_insights=insights,
            preliminary_signal=signal,
            dimension_priorities=priorities,
            reason="Problem description is too short to evaluate." if vague else None,
        )

    async def analyze_dimension(
        self,
        dimension: EvaluationDimension,
        run_input: RunInput,
        screening: ScreeningOutput | None,
        answers: dict[str, UserAnswer],
        reporter: StageReporter,
    ) -> DimensionAnalysis:
        text = _corpus(run_input, answers)
        reporter.tool_call(dimension.id, "keyword_scan", {"chars": len(text)})
        favorable, unfavorable = _cue_hits(text, dimension.id)
        reporter.tool_result(
            dimension.id,
            "keyword_scan",
            {"favorable": favorable, "unfavorable": unfavorable},
        )

        if len(favorable) > len(unfavorable):
            score = DimensionScore.FAVORABLE
            reasoning = f"Favorable signals: {dimension.favorable}."
        elif len(unfavorable) > len(favorable):
            score = DimensionScore.UNFAVORABLE
            reasoning = f"Unfavorable signals: {dimension.unfavorable}."
        else:
            score = DimensionScore.NEUTRAL
            reasoning = f"No clear signal for: {dimension.description}"

        hits = len(favorable) + len(unfavorable)
        return DimensionAnalysis(
            id=dimension.id,
            name=dimension.name,
            score=score,
            confidence=round(min(0.9, 0.4 + 0.1 * hits), 2),
            weight=_weight(dimension.id, screening),
            reasoning=reasoning,
            evidence=[f"mentions '{cue}'" for cue in favorable + unfavorable],
            status=DimensionStatus.PRELIMINARY,
        )

    async def compute_verdict(
        self,
        run_input: RunInput,
        screening: ScreeningOutput | None,
        dimensions: list[DimensionAnalysis],
    ) -> VerdictResult:
        favorable = [d for d in dimensions if d.score == DimensionScore.FAVORABLE]
        unfavorable = [d for d in dimensions if d.score == DimensionScore.UNFAVORABLE]
        critical = [d for d in unfavorable if d.weight >= HIGH_WEIGHT]
        error_tolerance = next((d for d in dimensions if d.id == "error_tolerance"), None)

        if critical and len(unfavorable) >= 2:
            verdict = Verdict.NOT_RECOMMENDED
        elif len(unfavorable) > len(favorable):
            verdict = Verdict.WEAK_FIT
        elif (
            len(favorable) >= 4
            and not unfavorable
            and error_tolerance is not None
            and error_tolerance.score != DimensionScore.UNFAVORABLE
        ):
            verdict = Verdict.STRONG_FIT
        else:
            verdict = Verdict.CONDITIONAL

        confidence = sum(d.confidence for d in dimensions) / len(dimensions) if dimensions else 0.0
        summary = (
            f"{len(favorable)} favorable, {len(unfavorable)} unfavorable and "
            f"{len(dimensions) - len(favorable) - len(unfavorable)} neutral dimension(s)."
        )
        reasoning = " ".join(f"{d.name}: {d.score.value}." for d in dimensions)
        logger.debug("Heuristic verdict %s (%s)", verdict.value, summary)
        return VerdictResult(
            verdict=verdict,
            confidence=round(confidence, 2),
            summary=summary,
            reasoning=reasoning,
        )

    async def analyze_risks(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> list[RiskFactor]:
        return [
            RiskFactor(
                risk=f"{analysis.name}: {get_dimension(analysis.id).unfavorable}",
                severity="high" if analysis.weight >= HIGH_WEIGHT else "medium",
                likelihood="high" if analysis.confidence >= HIGH_WEIGHT else "medium",
                related_dimensions=[analysis.id],
                mitigation=MITIGATIONS.get(analysis.id),
            )
            for analysis in dimensions
            if analysis.score == DimensionScore.UNFAVORABLE
        ]

    async def analyze_alternatives(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> list[Alternative]:
        alternatives = [
            Alternative(
                name="Rules engine",
                type="rule_based",
                description="Encode the decision logic as explicit rules.",
                advantages=["Predictable", "Auditable"],
                disadvantages=["Brittle when inputs vary"],
                estimated_effort="medium",
                when_to_choose="The valid outputs are few and well understood.",
            ),
            Alternative(
                name="Model drafts, human decides",
                type="hybrid",
                description="Use a model for suggestions and keep a person on every decision.",
                advantages=["Catches model mistakes"],
                disadvantages=["Review time scales with volume"],
                estimated_effort="medium",
                when_to_choose="Errors are costly but drafting is slow.",
            ),
        ]
        if verdict.verdict in {Verdict.WEAK_FIT, Verdict.NOT_RECOMMENDED}:
            alternatives.append(
                Alternative(
                    name="Keep the current process",
                    type="no_change",
                    description="Do not automate until the blockers are resolved.",
                    advantages=["No new risk"],
                    disadvantages=["No efficiency gain"],
                    estimated_effort="low",
                    when_to_choose="The unfavorable dimensions cannot be mitigated.",
                ),
            )
        return alternatives

    async def recommend_architecture(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> ArchitectureResult:
        uncertain = [d for d in dimensions if d.score != DimensionScore.FAVORABLE]
        questions = [
            PreBuildQuestion(
                question=get_dimension(analysis.id).questions[0],
                why_it_matters=f"{analysis.name} is {analysis.score.value}.",
            )
            for analysis in uncertain[:3]
        ]
        if verdict.verdict == Verdict.NOT_RECOMMENDED:
            return ArchitectureResult(architecture=None, questions_before_building=questions)
        return ArchitectureResult(
            architecture=RecommendedArchitecture(
                description="LLM behind a validation layer with a human review queue.",
                components=[
                    "input normalizer",
                    "LLM call with JSON schema",
                    "output validator",
                    "review queue",
                ],
                human_in_loop=verdict.verdict != Verdict.STRONG_FIT,
                confidence_threshold=0.8,
            ),
            questions_before_building=questions,
        )

    async def synthesize(
        self,
        synthesis_input: SynthesisInput,
        reporter: StageReporter,
    ) -> str:
        verdict = synthesis_input.verdict
        paragraphs = [
            f"Verdict: {verdict.verdict.value}. {verdict.summary}",
            verdict.reasoning,
        ]
        if synthesis_input.risks:
            paragraphs.append(
                "Main risks: " + "; ".join(risk.risk for risk in synthesis_input.risks) + ".",
            )
        if synthesis_input.architecture is not None:
            paragraphs.append(f"Suggested approach: {synthesis_input.architecture.description}")
        for paragraph in paragraphs:
            reporter.reasoning_chunk(paragraph + "\n\n")
        return "\n\n".join(paragraphs)


def _corpus(run_input: RunInput, answers: dict[str, UserAnswer]) -> str:
    parts = [run_input.problem, run_input.context or ""]
    parts.extend(answer.answer for answer in answers.values())
    return " ".join(parts).lower()


def _cue_hits(text: str, dimension_id: str) -> tuple[list[str], list[str]]:
    favorable, unfavorable = DIMENSION_CUES[dimension_id]
    return (
        [cue for cue in favorable if re.search(rf"\b{re.escape(cue)}", text)],
        [cue for cue in unfavorable if re.search(rf"\b{re.escape(cue)}", text)],
    )


def _weight(dimension_id: str, screening: ScreeningOutput | None) -> float:
    if screening is None:
        return PRIORITY_WEIGHTS["medium"]
    for priority in screening.dimension_priorities:
        if priority.dimension_id == dimension_id:
            return PRIORITY_WEIGHTS.get(priority.priority, PRIORITY_WEIGHTS["medium"])
    return PRIORITY_WEIGHTS["medium"]
