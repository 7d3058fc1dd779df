from __future__ import annotations

import json

import allure
import httpx
import pytest

from fit_check.config import ExecutorSettings, InferenceSettings
from fit_check.orchestrator import events
from fit_check.orchestrator.dimensions import EVALUATION_DIMENSIONS, get_dimension
from fit_check.orchestrator.failure_classifier import ErrorCode, classify_error
from fit_check.orchestrator.models import (
    DimensionScore,
    QuestionPriority,
    QuestionSource,
    RunInput,
    Verdict,
)
from fit_check.orchestrator.resilience import AbortController
from fit_check.orchestrator.sequencer import OutcomeStatus, StageSequencer
from fit_check.orchestrator.state import create_initial_state
from fit_check.stages.base import StageReporter
from fit_check.stages.inference import (
    ChatCompletionsClient,
    InferenceError,
    InferenceStages,
    parse_json_object,
)

pytestmark = [
    allure.epic("Analysis Stages"),
    allure.feature("Inference Endpoint"),
]

RUN_INPUT = RunInput(problem="Draft replies to routine customer emails for agents to review")

SCREENING = {
    "canEvaluate": True,
    "clarifyingQuestions": [
        {
            "id": "volume",
            "question": "How many emails per day?",
            "rationale": "Sizing",
            "priority": "helpful",
            "dimensionId": "human_oversight_cost",
        },
    ],
    "partialInsights": [
        {"insight": "Replies are reviewed", "confidence": 0.7, "relevantDimension": "error_tolerance"},
    ],
    "preliminarySignal": "likely_positive",
    "dimensionPriorities": [
        {"dimensionId": "error_tolerance", "priority": "high", "reason": "Customer facing"},
    ],
}
DIMENSION = {
    "score": "favorable",
    "confidence": 0.8,
    "weight": 0.6,
    "reasoning": "Agents review every draft.",
    "evidence": ["agents review"],
    "infoGaps": [
        {"question": "Is there a style guide?", "rationale": "Tone", "priority": "optional"},
    ],
}
VERDICT = {
    "verdict": "CONDITIONAL",
    "confidence": 0.75,
    "summary": "Good fit with human review.",
    "reasoning": "Drafting is low risk when reviewed.",
    "keyFactors": [{"dimensionId": "error_tolerance", "influence": "positive", "note": "Reviewed"}],
}
RISKS = {
    "risks": [
        {
            "risk": "Tone drift",
            "severity": "low",
            "likelihood": "medium",
            "relatedDimensions": ["rate_of_change"],
        },
    ],
}
ALTERNATIVES = {
    "alternatives": [
        {
            "name": "Canned responses",
            "type": "rule_based",
            "description": "Template library",
            "advantages": ["Cheap"],
            "disadvantages": ["Rigid"],
            "estimatedEffort": "low",
            "whenToChoose": "Few email types",
        },
    ],
}
ARCHITECTURE = {
    "architecture": {
        "description": "Draft generator with review UI",
        "components": ["retriever", "drafter", "review queue"],
        "humanInLoop": True,
    },
    "questionsBeforeBuilding": [{"question": "Who owns tone?", "whyItMatters": "Consistency"}],
}
SYNTHESIS = {"reasoning": "First paragraph.\n\nSecond paragraph."}


def _completion(payload: object) -> httpx.Response:
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return httpx.Response(200, json={"choices": [{"message": {"content": content}}]})


def _route(request: httpx.Request) -> httpx.Response:
    system = json.loads(request.content)["messages"][0]["content"]
    if "This is the screening phase" in system:
        return _completion(SCREENING)
    if "Analyze exactly one evaluation dimension" in system:
        return _completion(DIMENSION)
    if "final narrative reasoning" in system:
        return _completion(SYNTHESIS)
    if "Synthesize a final verdict" in system:
        return _completion(VERDICT)
    if "implementation risks" in system:
        return _completion(RISKS)
    if "alternatives to an LLM solution" in system:
        return _completion(ALTERNATIVES)
    if "recommend an architecture" in system:
        return _completion(ARCHITECTURE)
    return httpx.Response(400, json={"error": {"message": "unexpected prompt"}})


def _client(handler) -> ChatCompletionsClient:
    return ChatCompletionsClient(
        base_url="https://llm.example.test/v1",
        api_key="sk-test",
        model="test-model",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_client_sends_json_mode_request() -> None:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return _completion({"ok": True})

    async with _client(_handler) as client:
        payload = await client.complete_json("system text", "user text")

    assert payload == {"ok": True}
    request = seen[0]
    body = json.loads(request.content)
    assert request.url == "https://llm.example.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    assert request.headers["User-Agent"].startswith("fit-check/")
    assert body["model"] == "test-model"
    assert body["response_format"] == {"type": "json_object"}
    assert [message["role"] for message in body["messages"]] == ["system", "user"]


@pytest.mark.asyncio
async def test_client_from_settings_can_disable_json_mode() -> None:
    seen: list[dict] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return _completion({})

    settings = InferenceSettings(base_url="https://llm.example.test/v1", api_key="k", json_mode=False)
    client = ChatCompletionsClient.from_settings(settings, transport=httpx.MockTransport(_handler))
    try:
        await client.complete_json("s", "p")
    finally:
        await client.aclose()

    assert "response_format" not in seen[0]
    assert seen[0]["model"] == settings.model


@pytest.mark.asyncio
async def test_rate_limited_response_classifies_as_rate_limit() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Slow down"}})

    async with _client(_handler) as client:
        with pytest.raises(InferenceError) as excinfo:
            await client.complete_json("s", "p")

    assert str(excinfo.value) == "HTTP 429 from inference endpoint: Slow down"
    error = classify_error(excinfo.value, "screening")
    assert error.code == ErrorCode.RATE_LIMIT
    assert error.recoverable is True


@pytest.mark.asyncio
async def test_unauthorized_response_is_not_recoverable() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, text="bad key")

    async with _client(_handler) as client:
        with pytest.raises(InferenceError) as excinfo:
            await client.complete_json("s", "p")

    assert classify_error(excinfo.value, "verdict").code == ErrorCode.AUTHENTICATION


@pytest.mark.asyncio
async def test_transport_failure_classifies_as_network_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(_handler) as client:
        with pytest.raises(InferenceError, match="Network error") as excinfo:
            await client.complete_json("s", "p")

    assert classify_error(excinfo.value, "screening").code == ErrorCode.NETWORK_ERROR


@pytest.mark.asyncio
async def test_unexpected_body_is_schema_validation_failure() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "x"})

    async with _client(_handler) as client:
        with pytest.raises(InferenceError, match="Invalid response") as excinfo:
            await client.complete_json("s", "p")

    assert classify_error(excinfo.value, "screening").code == ErrorCode.SCHEMA_VALIDATION


def test_parse_json_object_strips_code_fence() -> None:
    assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}
    with pytest.raises(InferenceError, match="JSON parse error"):
        parse_json_object("not json")
    with pytest.raises(InferenceError, match="not a JSON object"):
        parse_json_object("[1, 2]")


@pytest.mark.asyncio
async def test_screen_marks_questions_as_screening() -> None:
    async with _client(_route) as client:
        output = await InferenceStages(client).screen(RUN_INPUT, {})

    assert output.can_evaluate is True
    question = output.clarifying_questions[0]
    assert question.origin_stage == QuestionSource.SCREENING
    assert question.origin_dimension == "human_oversight_cost"
    assert question.priority == QuestionPriority.HELPFUL


@pytest.mark.asyncio
async def test_dimension_analysis_fills_gap_ids_and_reports_tool_use() -> None:
    calls: list[tuple[str, str, str]] = []
    reporter = StageReporter(
        on_tool_call=lambda dim, tool, _payload: calls.append(("call", dim, tool)),
        on_tool_result=lambda dim, tool, _payload: calls.append(("result", dim, tool)),
    )

    async with _client(_route) as client:
        analysis = await InferenceStages(client).analyze_dimension(
            get_dimension("error_tolerance"),
            RUN_INPUT,
            None,
            {},
            reporter,
        )

    assert analysis.id == "error_tolerance"
    assert analysis.score == DimensionScore.FAVORABLE
    assert analysis.info_gaps[0].id == "error_tolerance-gap-1"
    assert analysis.info_gaps[0].origin_dimension == "error_tolerance"
    assert calls == [
        ("call", "error_tolerance", "chat_completion"),
        ("result", "error_tolerance", "chat_completion"),
    ]


@pytest.mark.asyncio
async def test_malformed_verdict_raises_schema_error() -> None:
    def _handler(_request: httpx.Request) -> httpx.Response:
        return _completion({"verdict": "MAYBE", "confidence": 0.5})

    async with _client(_handler) as client:
        with pytest.raises(InferenceError, match="Schema validation failed for verdict"):
            await InferenceStages(client).compute_verdict(RUN_INPUT, None, [])


@pytest.mark.asyncio
async def test_full_run_against_mocked_endpoint(fast_settings: ExecutorSettings) -> None:
    collected: list[events.PipelineEvent] = []

    async with _client(_route) as client:
        sequencer = StageSequencer(stages=InferenceStages(client), settings=fast_settings)
        outcome = await sequencer.execute(
            "run-1",
            create_initial_state(RUN_INPUT),
            abort_signal=AbortController().signal,
            emit=collected.append,
        )

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.result is not None
    assert outcome.result.verdict == Verdict.CONDITIONAL
    assert len(outcome.result.dimensions) == len(EVALUATION_DIMENSIONS)
    assert outcome.result.key_factors[0].dimension_id == "error_tolerance"
    assert outcome.result.architecture is not None
    assert outcome.result.reasoning == "First paragraph.\n\nSecond paragraph."
    chunks = [e.chunk for e in collected if isinstance(e, events.ReasoningChunkEvent)]
    assert chunks == ["First paragraph.\n\n", "Second paragraph.\n\n"]
