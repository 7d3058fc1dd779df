"""Stages backed by an OpenAI-compatible ``/chat/completions`` endpoint."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any, TypeVar

import httpx

from fit_check import __version__
from fit_check.config import InferenceSettings
from fit_check.orchestrator.dimensions import EvaluationDimension
from fit_check.orchestrator.models import (
    Alternative,
    ArchitectureResult,
    DimensionAnalysis,
    DimensionStatus,
    PreBuildQuestion,
    QuestionSource,
    RecommendedArchitecture,
    RiskFactor,
    RunInput,
    ScreeningOutput,
    SynthesisInput,
    UserAnswer,
    VerdictResult,
)
from fit_check.stages import prompts
from fit_check.stages.base import StageReporter

logger = logging.getLogger(__name__)

CHAT_COMPLETIONS_PATH = "/chat/completions"
DEFAULT_USER_AGENT = f"fit-check/{__version__}"
MAX_ERROR_DETAIL_CHARS = 300
TOOL_NAME = "chat_completion"

T = TypeVar("T")


class InferenceError(RuntimeError):
    """Failure talking to the inference endpoint.

    Messages carry the HTTP status (``HTTP 429 ...``) or the transport failure
    so the failure classifier can map them to a code.
    """


class ChatCompletionsClient:
    """Thin async JSON-mode client for an OpenAI-compatible API."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        timeout_seconds: float = 120.0,
        temperature: float = 0.2,
        json_mode: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._temperature = temperature
        self._json_mode = json_mode
        headers = {"User-Agent": DEFAULT_USER_AGENT}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers=headers,
            transport=transport,
        )

    @classmethod
    def from_settings(
        cls,
        settings: InferenceSettings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> ChatCompletionsClient:
        return cls(
            base_url=settings.base_url,
            api_key=settings.api_key,
            model=settings.model,
            timeout_seconds=settings.request_timeout_seconds,
            temperature=settings.temperature,
            json_mode=settings.json_mode,
            transport=transport,
        )

    async def complete_json(self, system: str, prompt: str) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "temperature": self._temperature,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
        }
        if self._json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            response = await self._client.post(CHAT_COMPLETIONS_PATH, json=body)
        except httpx.TimeoutException as exc:
            raise InferenceError(f"Inference request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise InferenceError(f"Network error calling inference endpoint: {exc}") from exc

        if not response.is_success:
            raise InferenceError(
                f"HTTP {response.status_code} from inference endpoint: {_error_detail(response)}",
            )
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise InferenceError("Invalid response from inference endpoint") from exc
        return parse_json_object(content)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> ChatCompletionsClient:
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.aclose()


class InferenceStages:
    """Analysis stages that delegate every judgment to the model."""

    def __init__(self, client: ChatCompletionsClient) -> None:
        self.client = client

    async def screen(
        self,
        run_input: RunInput,
        answers: dict[str, UserAnswer],
    ) -> ScreeningOutput:
        data = await self.client.complete_json(
            prompts.screening_system_prompt(),
            prompts.problem_context(run_input, answers),
        )
        questions = [
            {
                **item,
                "source": {
                    "stage": QuestionSource.SCREENING.value,
                    "dimensionId": item.get("dimensionId"),
                },
            }
            for item in _items(data, "clarifyingQuestions")
        ]
        payload = {**data, "clarifyingQuestions": questions}
        return _decode("screening", lambda: ScreeningOutput.from_dict(payload))

    async def analyze_dimension(
        self,
        dimension: EvaluationDimension,
        run_input: RunInput,
        screening: ScreeningOutput | None,
        answers: dict[str, UserAnswer],
        reporter: StageReporter,
    ) -> DimensionAnalysis:
        reporter.tool_call(dimension.id, TOOL_NAME, {"model": self.client.model})
        data = await self.client.complete_json(
            prompts.dimension_system_prompt(dimension),
            prompts.problem_context(run_input, answers, screening),
        )
        reporter.tool_result(dimension.id, TOOL_NAME, {"keys": sorted(data)})
        gaps = [
            {
                **item,
                "id": item.get("id") or f"{dimension.id}-gap-{index}",
                "source": {"stage": QuestionSource.DIMENSION.value, "dimensionId": dimension.id},
            }
            for index, item in enumerate(_items(data, "infoGaps"), start=1)
        ]
        payload = {
            **data,
            "id": dimension.id,
            "name": dimension.name,
            "infoGaps": gaps,
            "status": DimensionStatus.PRELIMINARY.value,
        }
        return _decode(f"dimension {dimension.id}", lambda: DimensionAnalysis.from_dict(payload))

    async def compute_verdict(
        self,
        run_input: RunInput,
        screening: ScreeningOutput | None,
        dimensions: list[DimensionAnalysis],
    ) -> VerdictResult:
        data = await self.client.complete_json(
            prompts.format_prompt(prompts.VERDICT_PROMPT),
            "\n\n".join(
                [
                    prompts.problem_context(run_input, screening=screening),
                    prompts.dimensions_context(dimensions),
                ],
            ),
        )
        return _decode("verdict", lambda: VerdictResult.from_dict(data))

    async def analyze_risks(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> list[RiskFactor]:
        data = await self._secondary(prompts.RISKS_PROMPT, run_input, dimensions, verdict)
        return _decode("risks", lambda: [RiskFactor.from_dict(item) for item in _items(data, "risks")])

    async def analyze_alternatives(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> list[Alternative]:
        data = await self._secondary(prompts.ALTERNATIVES_PROMPT, run_input, dimensions, verdict)
        return _decode(
            "alternatives",
            lambda: [Alternative.from_dict(item) for item in _items(data, "alternatives")],
        )

    async def recommend_architecture(
        self,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> ArchitectureResult:
        data = await self._secondary(prompts.ARCHITECTURE_PROMPT, run_input, dimensions, verdict)

        def _build() -> ArchitectureResult:
            architecture = data.get("architecture")
            return ArchitectureResult(
                architecture=(
                    RecommendedArchitecture.from_dict(architecture)
                    if isinstance(architecture, dict)
                    else None
                ),
                questions_before_building=[
                    PreBuildQuestion.from_dict(item)
                    for item in _items(data, "questionsBeforeBuilding")
                ],
            )

        return _decode("architecture", _build)

    async def synthesize(
        self,
        synthesis_input: SynthesisInput,
        reporter: StageReporter,
    ) -> str:
        data = await self.client.complete_json(
            prompts.format_prompt(prompts.SYNTHESIS_PROMPT),
            prompts.synthesis_context(synthesis_input),
        )
        reasoning = data.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            raise InferenceError("Schema validation failed for synthesis: missing reasoning")
        for paragraph in reasoning.split("\n\n"):
            if paragraph.strip():
                reporter.reasoning_chunk(paragraph.strip() + "\n\n")
        return reasoning.strip()

    async def _secondary(
        self,
        template: str,
        run_input: RunInput,
        dimensions: list[DimensionAnalysis],
        verdict: VerdictResult,
    ) -> dict[str, Any]:
        return await self.client.complete_json(
            prompts.format_prompt(template),
            "\n\n".join(
                [
                    prompts.problem_context(run_input),
                    prompts.dimensions_context(dimensions),
                    prompts.verdict_context(verdict),
                ],
            ),
        )


def parse_json_object(content: Any) -> dict[str, Any]:
    """Decode model output into a JSON object, tolerating a Markdown code fence."""

    if not isinstance(content, str):
        raise InferenceError("Invalid response from inference endpoint: empty content")
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        text = text.rsplit("```", 1)[0].strip()
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InferenceError(f"JSON parse error in model output: {exc}") from exc
    if not isinstance(payload, dict):
        raise InferenceError("Schema validation failed: model output is not a JSON object")
    return payload


def _items(data: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = data.get(key) or []
    if not isinstance(value, list):
        raise InferenceError(f"Schema validation failed: {key} must be an array")
    return [item for item in value if isinstance(item, dict)]


def _decode(what: str, build: Callable[[], T]) -> T:
    try:
        return build()
    except (KeyError, ValueError, TypeError) as exc:
        logger.debug("Model output for %s did not match the expected shape", what, exc_info=True)
        raise InferenceError(f"Schema validation failed for {what}: {exc}") from exc


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:MAX_ERROR_DETAIL_CHARS]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"][:MAX_ERROR_DETAIL_CHARS]
    return json.dumps(payload)[:MAX_ERROR_DETAIL_CHARS]
