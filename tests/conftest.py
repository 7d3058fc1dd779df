"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest

from fit_check.config import ExecutorSettings
from fit_check.orchestrator.models import PIPELINE_STAGES, RunInput
from fit_check.orchestrator.resilience import RetryOptions

CLEAR_PROBLEM = (
    "Classify incoming support tickets into categories using our labeled historical "
    "tickets; agents review and approve every suggestion before it is sent."
)
VAGUE_PROBLEM = "Use AI for invoices"


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch) -> None:
    """Keep developer environment variables out of settings-driven tests."""

    for name in list(os.environ):
        if name.startswith("FIT_CHECK_") or name == "OPENAI_API_KEY":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def fast_settings() -> ExecutorSettings:
    """Executor settings with millisecond retry delays."""

    return ExecutorSettings(
        stage_retry_options={
            stage: RetryOptions(max_attempts=3, initial_delay_ms=1, max_delay_ms=5)
            for stage in PIPELINE_STAGES
        },
    )


@pytest.fixture()
def clear_input() -> RunInput:
    return RunInput(problem=CLEAR_PROBLEM)


@pytest.fixture()
def vague_input() -> RunInput:
    return RunInput(problem=VAGUE_PROBLEM)
