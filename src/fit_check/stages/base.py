"""Stage interface consumed by the sequencer."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from fit_check.orchestrator.dimensions import EvaluationDimension
from fit_check.orchestrator.models import (
    Alternative,
    ArchitectureResult,
    DimensionAnalysis,
    RiskFactor,
    RunInput,
    ScreeningOutput,
    SynthesisInput,
    UserAnswer,
    VerdictResult,
)


@dataclass(slots=True)
class StageReporter:
    """Optional diagnostics channel handed to stage calls.

    Stages never see the run state or the event sink; they can only report
    tool usage and streamed reasoning through these callbacks.
    """

    on_tool_call: Callable[[str, str, Any], None] | None = None
    on_tool_result: Callable[[str, str, Any], None] | None = None
    on_reasoning_chunk: Callable[[str], None] | None = None

    def tool_call(self, dimension_id: str, tool: str, tool_input: Any) -> None:
        if self.on_tool_call is not None:
            self.on_tool_call(dimension_id, tool, tool_input)

    def tool_result(self, dimension_id: str, tool: str, result: Any) -> None:
        if self.on_tool_result is not None:
            self.on_tool_result(dimension_id, tool, result)

    def reasoning_chunk(self, chunk: str) -> None:
        if self.on_reasoning_chunk is not None:
            self.on_reasoning_chunk(chunk)


NULL_REPORTER = StageReporter()


class AnalysisStages(Protocol):
    """Protocol implemented by stage providers.

    Every method is a plain async function of its inputs. Follow-up questions
    are returned inside the outputs; whether they suspend the run is decided
    by the sequencer.
    """

    async def screen(
        self,
        run_input: RunInput,
        answers: dict[str, UserAnswer],
    ) -> ScreeningOutput:
        """Quick viability check of the problem description."""

    async def analyze_dimension(
        self,
        dimension: EvaluationDimension,
        run_input: RunInput,
        screening: ScreeningOutput | None,
        answers: dict[str, UserAnswer],
        reporter: StageReporter,
    ) -> DimensionAnalysis:
        """Score one evaluation dimension."""

    async def compute_verdict(
        self,
        run_input: RunInput,
        screening: ScreeningOutput | None,
        dimensions: list[DimensionAnalysis],
    ) -> VerdictResult:
        """Aggregate completed dimensions into a verdict."""

    async def analyze_risks(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> list[RiskFactor]:
        """List implementation risks."""

    async def analyze_alternatives(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> list[Alternative]:
        """Suggest non-LLM or hybrid alternatives."""

    async def recommend_architecture(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> ArchitectureResult:
        """Recommend an architecture, or ``None`` when building is not advised."""

    async def synthesize(
        self,
        synthesis_input: SynthesisInput,
        reporter: StageReporter,
    ) -> str:
        """Write the final narrative reasoning."""
