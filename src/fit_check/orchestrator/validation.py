"""Parsing of start/resume/cancel/status request payloads."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any

from fit_check.orchestrator.models import (
    CONTEXT_MAX_CHARS,
    PROBLEM_MAX_CHARS,
    QuestionSource,
    RunInput,
    UserAnswer,
    now_ms,
)

PROBLEM_MIN_CHARS = 10
VALIDATION_ERROR_CODE = "VALIDATION_ERROR"
ROOT_PATH = "_root"


class RequestValidationError(ValueError):
    """Invalid request payload; ``details`` maps field paths to messages."""

    def __init__(self, details: dict[str, list[str]]) -> None:
        super().__init__("Request validation failed")
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": VALIDATION_ERROR_CODE,
            "message": str(self),
            "details": {path: list(messages) for path, messages in self.details.items()},
        }


@dataclass(slots=True, frozen=True)
class ResumeRequest:
    run_id: str
    answers: list[UserAnswer]
    step_id: str | None = None


@dataclass(slots=True)
class _Issues:
    details: dict[str, list[str]] = field(default_factory=dict)

    def add(self, path: str, message: str) -> None:
        self.details.setdefault(path or ROOT_PATH, []).append(message)

    def raise_if_any(self) -> None:
        if self.details:
            raise RequestValidationError(self.details)


def parse_start_request(payload: Any) -> RunInput:
    issues = _Issues()
    body = _object(payload, issues, allowed={"problem", "context"})

    problem = body.get("problem")
    if not isinstance(problem, str) or not problem.strip():
        issues.add("problem", "Problem description is required")
    elif len(problem) < PROBLEM_MIN_CHARS:
        issues.add("problem", f"Problem description must be at least {PROBLEM_MIN_CHARS} characters")
    elif len(problem) > PROBLEM_MAX_CHARS:
        issues.add("problem", f"Problem description must not exceed {PROBLEM_MAX_CHARS} characters")

    context = body.get("context")
    if context is not None:
        if not isinstance(context, str):
            issues.add("context", "Context must be a string")
        elif len(context) > CONTEXT_MAX_CHARS:
            issues.add("context", f"Context must not exceed {CONTEXT_MAX_CHARS} characters")

    issues.raise_if_any()
    return RunInput(problem=problem, context=context)


def parse_resume_request(payload: Any) -> ResumeRequest:
    """Answers get ``source=screening`` and the current time; the run fills in the rest."""

    issues = _Issues()
    body = _object(payload, issues, allowed={"runId", "stepId", "answers"})
    run_id = _run_id(body, issues)

    step_id = body.get("stepId")
    if step_id is not None and (not isinstance(step_id, str) or not step_id):
        issues.add("stepId", "Step ID must be a non-empty string")

    answers: list[UserAnswer] = []
    raw_answers = body.get("answers")
    if not isinstance(raw_answers, list):
        issues.add("answers", "Answers must be a list")
    elif not raw_answers:
        issues.add("answers", "At least one answer is required")
    else:
        timestamp = now_ms()
        for index, raw in enumerate(raw_answers):
            path = f"answers.{index}"
            if not isinstance(raw, dict):
                issues.add(path, "Answer must be an object")
                continue
            extra = sorted(set(raw) - {"questionId", "answer"})
            if extra:
                issues.add(path, f"Unrecognized key(s): {', '.join(extra)}")
            question_id = raw.get("questionId")
            answer = raw.get("answer")
            if not isinstance(question_id, str) or not question_id:
                issues.add(f"{path}.questionId", "Question ID is required")
            if not isinstance(answer, str) or not answer:
                issues.add(f"{path}.answer", "Answer is required")
            if isinstance(question_id, str) and question_id and isinstance(answer, str) and answer:
                answers.append(
                    UserAnswer(
                        question_id=question_id,
                        answer=answer,
                        source=QuestionSource.SCREENING,
                        timestamp=timestamp,
                    ),
                )

    issues.raise_if_any()
    return ResumeRequest(run_id=run_id, answers=answers, step_id=step_id)


def parse_cancel_request(payload: Any) -> str:
    issues = _Issues()
    body = _object(payload, issues, allowed={"runId"})
    run_id = _run_id(body, issues)
    issues.raise_if_any()
    return run_id


def parse_status_query(query: Any) -> str:
    """Extra query parameters are ignored."""

    issues = _Issues()
    body = _object(query, issues, allowed=None)
    run_id = _run_id(body, issues)
    issues.raise_if_any()
    return run_id


def _object(payload: Any, issues: _Issues, *, allowed: set[str] | None) -> dict[str, Any]:
    if not isinstance(payload, dict):
        issues.add(ROOT_PATH, "Expected an object")
        issues.raise_if_any()
    if allowed is not None:
        extra = sorted(set(payload) - allowed)
        if extra:
            issues.add(ROOT_PATH, f"Unrecognized key(s): {', '.join(extra)}")
    return payload


def _run_id(body: dict[str, Any], issues: _Issues) -> str:
    run_id = body.get("runId")
    if not isinstance(run_id, str):
        issues.add("runId", "Run ID is required")
        return ""
    try:
        uuid.UUID(run_id)
    except ValueError:
        issues.add("runId", "Run ID must be a valid UUID")
    return run_id
