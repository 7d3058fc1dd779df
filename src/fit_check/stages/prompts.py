"""Prompt templates for each analysis stage."""

from __future__ import annotations

from fit_check.orchestrator.dimensions import EVALUATION_DIMENSIONS, EvaluationDimension
from fit_check.orchestrator.models import (
    DimensionAnalysis,
    RunInput,
    ScreeningOutput,
    SynthesisInput,
    UserAnswer,
    VerdictResult,
)

ADVISOR_PREAMBLE = """\
You are an AI implementation advisor who helps businesses decide whether an
LLM-based solution fits their problem. You are known for honest, technically
grounded assessments that sometimes recommend AGAINST using AI.
"""

_JSON_RULES = """
Output rules:
- Respond with a single JSON object and nothing else.
- Use exactly the keys listed above, in camelCase.
- Dimension ids must be one of: {dimension_ids}.
"""

SCREENING_PROMPT = ADVISOR_PREAMBLE + """
This is the screening phase. Decide whether the problem description is
specific enough to evaluate, ask 0-3 clarifying questions that would change
the recommendation, share insights you can already infer, and rank which
evaluation dimensions matter most for THIS problem.

Question priorities:
- blocking: no confident recommendation is possible without the answer
- helpful: improves the analysis but a stated assumption is acceptable
- optional: nice to have

The evaluation dimensions:
{dimensions}

Return keys: canEvaluate (bool), reason (string, when canEvaluate is false),
clarifyingQuestions [{{id, question, rationale, priority, dimensionId,
currentAssumption?, suggestedOptions? [{{label, value, impactOnScore?}}]}}],
partialInsights [{{insight, confidence 0-1, relevantDimension}}],
preliminarySignal (likely_positive | uncertain | likely_negative),
dimensionPriorities [{{dimensionId, priority (high | medium | low), reason}}].
""" + _JSON_RULES

DIMENSION_PROMPT = ADVISOR_PREAMBLE + """
Analyze exactly one evaluation dimension.

### {name} ({dimension_id})
{description}
- Favorable: {favorable}
- Unfavorable: {unfavorable}

Questions to consider:
{questions}

Return keys: score (favorable | neutral | unfavorable), confidence 0-1,
weight 0-1 (how much this dimension matters for THIS problem), reasoning,
evidence [string], infoGaps [{{id, question, rationale, priority,
currentAssumption?}}]. Only report info gaps whose answer would change the score.
""" + _JSON_RULES

VERDICT_PROMPT = ADVISOR_PREAMBLE + """
Synthesize a final verdict from the dimension analyses. Do not average the
scores: weigh how dimensions interact. STRONG_FIT requires error tolerance to
be at least neutral; one high-weight unfavorable dimension can justify
NOT_RECOMMENDED on its own.

Return keys: verdict (STRONG_FIT | CONDITIONAL | WEAK_FIT | NOT_RECOMMENDED),
confidence 0-1, summary (one sentence for a busy executive), reasoning,
keyFactors [{{dimensionId, influence (strongly_positive | positive | neutral |
negative | strongly_negative), note}}] with the 3-5 most important factors.
""" + _JSON_RULES

RISKS_PROMPT = ADVISOR_PREAMBLE + """
List the main implementation risks for the problem below, given the verdict.

Return keys: risks [{{risk, severity (low | medium | high),
likelihood (low | medium | high), mitigation?, relatedDimensions [dimensionId]}}].
""" + _JSON_RULES

ALTERNATIVES_PROMPT = ADVISOR_PREAMBLE + """
Suggest 2-4 alternatives to an LLM solution, including doing nothing when
appropriate.

Return keys: alternatives [{{name, type (rule_based | traditional_ml |
human_process | hybrid | no_change), description, advantages [string],
disadvantages [string], estimatedEffort (low | medium | high), whenToChoose}}].
""" + _JSON_RULES

ARCHITECTURE_PROMPT = ADVISOR_PREAMBLE + """
If building is advised, recommend an architecture; otherwise set
architecture to null. Always list questions to answer before building.

Return keys: architecture ({{description, components [string], humanInLoop
(bool), confidenceThreshold? 0-1}} or null), questionsBeforeBuilding
[{{question, whyItMatters}}].
""" + _JSON_RULES

SYNTHESIS_PROMPT = ADVISOR_PREAMBLE + """
Write the final narrative reasoning for the report: why the verdict holds,
what the key risks are, and what the reader should do next. Plain prose,
no headings, at most five paragraphs.

Return keys: reasoning (string).
""" + _JSON_RULES


def format_prompt(template: str, **values: str) -> str:
    return template.format(
        dimension_ids=", ".join(dimension.id for dimension in EVALUATION_DIMENSIONS),
        **values,
    )


def screening_system_prompt() -> str:
    return format_prompt(SCREENING_PROMPT, dimensions=_dimension_catalog())


def dimension_system_prompt(dimension: EvaluationDimension) -> str:
    return format_prompt(
        DIMENSION_PROMPT,
        name=dimension.name,
        dimension_id=dimension.id,
        description=dimension.description,
        favorable=dimension.favorable,
        unfavorable=dimension.unfavorable,
        questions="\n".join(f"- {question}" for question in dimension.questions),
    )


def problem_context(
    run_input: RunInput,
    answers: dict[str, UserAnswer] | None = None,
    screening: ScreeningOutput | None = None,
) -> str:
    """Render the user's problem, answers and screening notes as prompt text."""

    parts = [f"## Problem Description\n{run_input.problem}"]
    if run_input.context:
        parts.append(f"## Additional Context\n{run_input.context}")
    if answers:
        lines = [f"Q: {answer.question_id}\nA: {answer.answer}" for answer in answers.values()]
        parts.append("## Previously Answered Questions\n" + "\n\n".join(lines))
    if screening is not None:
        note = f"## Preliminary Signal\n{screening.preliminary_signal.value}"
        if screening.reason:
            note += f"\nNote: {screening.reason}"
        parts.append(note)
    return "\n\n".join(parts)


def dimensions_context(dimensions: list[DimensionAnalysis]) -> str:
    lines = ["## Dimension Analyses"]
    for analysis in dimensions:
        lines.append(
            f"### {analysis.name} ({analysis.id})\n"
            f"- Score: {analysis.score.value}\n"
            f"- Confidence: {analysis.confidence:.0%}\n"
            f"- Weight: {analysis.weight:.0%}\n"
            f"- Reasoning: {analysis.reasoning}",
        )
        if analysis.evidence:
            lines.append(f"- Evidence: {'; '.join(analysis.evidence)}")
    return "\n".join(lines)


def verdict_context(verdict: VerdictResult) -> str:
    return (
        f"## Verdict\n{verdict.verdict.value} ({verdict.confidence:.0%} confidence)\n"
        f"{verdict.summary}"
    )


def synthesis_context(synthesis_input: SynthesisInput) -> str:
    ordered = [
        synthesis_input.dimensions[dimension.id]
        for dimension in EVALUATION_DIMENSIONS
        if dimension.id in synthesis_input.dimensions
    ]
    parts = [
        problem_context(synthesis_input.input, synthesis_input.answers, synthesis_input.screening),
        dimensions_context(ordered),
        verdict_context(synthesis_input.verdict),
    ]
    if synthesis_input.risks:
        parts.append(
            "## Risks\n"
            + "\n".join(
                f"- {risk.risk} (severity {risk.severity}, likelihood {risk.likelihood})"
                for risk in synthesis_input.risks
            ),
        )
    if synthesis_input.alternatives:
        parts.append(
            "## Alternatives\n"
            + "\n".join(f"- {alt.name}: {alt.description}" for alt in synthesis_input.alternatives),
        )
    if synthesis_input.architecture is not None:
        parts.append(f"## Recommended Architecture\n{synthesis_input.architecture.description}")
    return "\n\n".join(parts)


def _dimension_catalog() -> str:
    return "\n".join(
        f"### {dimension.name} ({dimension.id})\n{dimension.description}\n"
        f"- Favorable: {dimension.favorable}\n- Unfavorable: {dimension.unfavorable}"
        for dimension in EVALUATION_DIMENSIONS
    )
