"""Stage providers: offline heuristics and an HTTP inference client."""

from fit_check.stages.base import NULL_REPORTER, AnalysisStages, StageReporter
from fit_check.stages.heuristic import HeuristicStages
from fit_check.stages.inference import ChatCompletionsClient, InferenceError, InferenceStages

__all__ = [
    "NULL_REPORTER",
    "AnalysisStages",
    "ChatCompletionsClient",
    "HeuristicStages",
    "InferenceError",
    "InferenceStages",
    "StageReporter",
]
