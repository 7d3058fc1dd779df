from __future__ import annotations

import uuid

import allure
import pytest

from fit_check.orchestrator.models import QuestionSource
from fit_check.orchestrator.validation import (
    RequestValidationError,
    parse_cancel_request,
    parse_resume_request,
    parse_start_request,
    parse_status_query,
)

pytestmark = [
    allure.epic("Streaming"),
    allure.feature("Request Validation"),
]

RUN_ID = str(uuid.uuid4())


def test_start_request_builds_run_input() -> None:
    run_input = parse_start_request(
        {"problem": "Summarize weekly sales calls", "context": "Sales team of 12"},
    )

    assert run_input.problem == "Summarize weekly sales calls"
    assert run_input.context == "Sales team of 12"


@pytest.mark.parametrize(
    ("payload", "path", "message"),
    [
        ({}, "problem", "Problem description is required"),
        ({"problem": "   "}, "problem", "Problem description is required"),
        ({"problem": "too short"}, "problem", "at least 10 characters"),
        ({"problem": "x" * 5_001}, "problem", "must not exceed 5000"),
        ({"problem": "A long enough problem", "context": 3}, "context", "must be a string"),
        ({"problem": "A long enough problem", "extra": 1}, "_root", "Unrecognized key(s): extra"),
    ],
)
def test_start_request_rejects_invalid_payloads(payload: dict, path: str, message: str) -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        parse_start_request(payload)

    assert any(message in item for item in excinfo.value.details[path])


def test_start_request_requires_an_object() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        parse_start_request(["problem"])

    assert excinfo.value.details == {"_root": ["Expected an object"]}


def test_resume_request_parses_answers() -> None:
    request = parse_resume_request(
        {
            "runId": RUN_ID,
            "stepId": "dimensions",
            "answers": [
                {"questionId": "data-volume", "answer": "40k tickets"},
                {"questionId": "error-impact", "answer": "Agents fix it"},
            ],
        },
    )

    assert request.run_id == RUN_ID
    assert request.step_id == "dimensions"
    assert [answer.question_id for answer in request.answers] == ["data-volume", "error-impact"]
    assert {answer.source for answer in request.answers} == {QuestionSource.SCREENING}
    assert len({answer.timestamp for answer in request.answers}) == 1


def test_resume_request_reports_every_issue_with_paths() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        parse_resume_request(
            {
                "runId": "not-a-uuid",
                "answers": [{"questionId": "", "answer": "x"}, {"answer": ""}, "nope"],
            },
        )

    details = excinfo.value.details
    assert details["runId"] == ["Run ID must be a valid UUID"]
    assert details["answers.0.questionId"] == ["Question ID is required"]
    assert details["answers.1.questionId"] == ["Question ID is required"]
    assert details["answers.1.answer"] == ["Answer is required"]
    assert details["answers.2"] == ["Answer must be an object"]
    payload = excinfo.value.to_dict()
    assert payload["code"] == "VALIDATION_ERROR"
    assert payload["message"] == "Request validation failed"


def test_resume_request_requires_answers() -> None:
    with pytest.raises(RequestValidationError) as excinfo:
        parse_resume_request({"runId": RUN_ID, "answers": []})

    assert excinfo.value.details == {"answers": ["At least one answer is required"]}


def test_cancel_request_is_strict_and_status_query_is_lenient() -> None:
    assert parse_cancel_request({"runId": RUN_ID}) == RUN_ID
    with pytest.raises(RequestValidationError):
        parse_cancel_request({"runId": RUN_ID, "force": True})

    assert parse_status_query({"runId": RUN_ID, "verbose": "1"}) == RUN_ID
    with pytest.raises(RequestValidationError) as excinfo:
        parse_status_query({})
    assert excinfo.value.details == {"runId": ["Run ID is required"]}
