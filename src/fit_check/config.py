"""Runtime configuration for the analysis pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path

from fit_check.orchestrator.models import PIPELINE_STAGES, PipelineStage
from fit_check.orchestrator.resilience import RetryOptions

DEFAULT_STAGE_TIMEOUTS_MS: dict[PipelineStage, int] = {
    PipelineStage.SCREENING: 30_000,
    PipelineStage.DIMENSIONS: 90_000,
    PipelineStage.VERDICT: 30_000,
    PipelineStage.SECONDARY: 60_000,
    PipelineStage.SYNTHESIS: 30_000,
}

DEFAULT_RETRY_OPTIONS = RetryOptions(
    max_attempts=3,
    initial_delay_ms=1_000,
    max_delay_ms=10_000,
    backoff_multiplier=2.0,
)

# Fan-out stages make more calls, so they get one extra attempt.
DEFAULT_STAGE_RETRY_OPTIONS: dict[PipelineStage, RetryOptions] = {
    PipelineStage.SCREENING: DEFAULT_RETRY_OPTIONS,
    PipelineStage.DIMENSIONS: replace(DEFAULT_RETRY_OPTIONS, max_attempts=4),
    PipelineStage.VERDICT: DEFAULT_RETRY_OPTIONS,
    PipelineStage.SECONDARY: replace(DEFAULT_RETRY_OPTIONS, max_attempts=4),
    PipelineStage.SYNTHESIS: DEFAULT_RETRY_OPTIONS,
}

STAGE_PROGRESS_WEIGHTS: dict[PipelineStage, int] = {
    PipelineStage.SCREENING: 10,
    PipelineStage.DIMENSIONS: 40,
    PipelineStage.VERDICT: 15,
    PipelineStage.SECONDARY: 25,
    PipelineStage.SYNTHESIS: 10,
}


class ErrorStrategy(str, Enum):
    FAIL_FAST = "fail-fast"
    CONTINUE_WITH_PARTIAL = "continue-with-partial"


class StoreBackend(str, Enum):
    MEMORY = "memory"
    SQLITE = "sqlite"


@dataclass(slots=True)
class ExecutorSettings:
    """Stage timeouts, retry policy and failure strategy."""

    stage_timeouts_ms: dict[PipelineStage, int] = field(
        default_factory=lambda: dict(DEFAULT_STAGE_TIMEOUTS_MS),
    )
    stage_retry_options: dict[PipelineStage, RetryOptions] = field(
        default_factory=lambda: dict(DEFAULT_STAGE_RETRY_OPTIONS),
    )
    error_strategy: ErrorStrategy = ErrorStrategy.FAIL_FAST
    event_queue_size: int = 1_000


@dataclass(slots=True)
class StoreSettings:
    """Snapshot store settings."""

    backend: StoreBackend = StoreBackend.SQLITE
    db_path: Path = Path(".fit_check.db")
    snapshot_ttl_seconds: int = 86_400


@dataclass(slots=True)
class InferenceSettings:
    """OpenAI-compatible inference endpoint settings."""

    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    request_timeout_seconds: float = 120.0
    temperature: float = 0.2
    json_mode: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    executor: ExecutorSettings = field(default_factory=ExecutorSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    inference: InferenceSettings = field(default_factory=InferenceSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        timeouts = {
            stage: int(
                float(
                    os.getenv(
                        f"FIT_CHECK_{stage.name}_TIMEOUT_SECONDS",
                        str(DEFAULT_STAGE_TIMEOUTS_MS[stage] / 1000),
                    ),
                )
                * 1000,
            )
            for stage in PIPELINE_STAGES
        }
        retry_base = RetryOptions(
            max_attempts=DEFAULT_RETRY_OPTIONS.max_attempts,
            initial_delay_ms=int(
                float(os.getenv("FIT_CHECK_RETRY_INITIAL_DELAY_SECONDS", "1.0")) * 1000,
            ),
            max_delay_ms=int(float(os.getenv("FIT_CHECK_RETRY_MAX_DELAY_SECONDS", "10.0")) * 1000),
            backoff_multiplier=float(os.getenv("FIT_CHECK_RETRY_BACKOFF_MULTIPLIER", "2.0")),
        )
        retry_options = {
            stage: replace(
                retry_base,
                max_attempts=_env_attempts(
                    f"FIT_CHECK_{stage.name}_MAX_ATTEMPTS",
                    DEFAULT_STAGE_RETRY_OPTIONS[stage].max_attempts,
                ),
            )
            for stage in PIPELINE_STAGES
        }
        return cls(
            executor=ExecutorSettings(
                stage_timeouts_ms=timeouts,
                stage_retry_options=retry_options,
                error_strategy=ErrorStrategy(
                    os.getenv("FIT_CHECK_ERROR_STRATEGY", ErrorStrategy.FAIL_FAST.value),
                ),
                event_queue_size=int(os.getenv("FIT_CHECK_EVENT_QUEUE_SIZE", "1000")),
            ),
            store=StoreSettings(
                backend=StoreBackend(os.getenv("FIT_CHECK_STORE", StoreBackend.SQLITE.value)),
                db_path=db_path or Path(os.getenv("FIT_CHECK_DB_PATH", ".fit_check.db")),
                snapshot_ttl_seconds=int(os.getenv("FIT_CHECK_SNAPSHOT_TTL_SECONDS", "86400")),
            ),
            inference=InferenceSettings(
                base_url=os.getenv("FIT_CHECK_INFERENCE_BASE_URL", "https://api.openai.com/v1"),
                api_key=os.getenv("FIT_CHECK_INFERENCE_API_KEY", os.getenv("OPENAI_API_KEY", "")),
                model=os.getenv("FIT_CHECK_INFERENCE_MODEL", "gpt-4o-mini"),
                request_timeout_seconds=float(
                    os.getenv("FIT_CHECK_INFERENCE_TIMEOUT_SECONDS", "120.0"),
                ),
                temperature=float(os.getenv("FIT_CHECK_INFERENCE_TEMPERATURE", "0.2")),
                json_mode=_env_bool("FIT_CHECK_INFERENCE_JSON_MODE", default=True),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range values."""

        for stage, timeout_ms in self.executor.stage_timeouts_ms.items():
            if timeout_ms <= 0:
                raise ValueError(f"FIT_CHECK_{stage.name}_TIMEOUT_SECONDS must be > 0.")
        for options in self.executor.stage_retry_options.values():
            if options.initial_delay_ms < 0:
                raise ValueError("FIT_CHECK_RETRY_INITIAL_DELAY_SECONDS must be >= 0.")
            if options.max_delay_ms < options.initial_delay_ms:
                raise ValueError(
                    "FIT_CHECK_RETRY_MAX_DELAY_SECONDS must be >= "
                    "FIT_CHECK_RETRY_INITIAL_DELAY_SECONDS.",
                )
            if options.backoff_multiplier < 1:
                raise ValueError("FIT_CHECK_RETRY_BACKOFF_MULTIPLIER must be >= 1.")
        if self.executor.event_queue_size <= 0:
            raise ValueError("FIT_CHECK_EVENT_QUEUE_SIZE must be > 0.")
        if self.store.snapshot_ttl_seconds <= 0:
            raise ValueError("FIT_CHECK_SNAPSHOT_TTL_SECONDS must be > 0.")

    def validate_for_inference(self) -> None:
        """Raise configuration error if the inference endpoint cannot be used."""

        self.validate()
        if not self.inference.api_key:
            raise ValueError(
                "An inference API key is required. "
                "Set FIT_CHECK_INFERENCE_API_KEY or pass --offline.",
            )
        if not self.inference.base_url.startswith(("http://", "https://")):
            raise ValueError(
                f"Invalid FIT_CHECK_INFERENCE_BASE_URL: {self.inference.base_url!r}. "
                "Expected an absolute http:// or https:// URL.",
            )
        if self.inference.request_timeout_seconds <= 0:
            raise ValueError("FIT_CHECK_INFERENCE_TIMEOUT_SECONDS must be > 0.")


def get_stage_timeout(
    stage: PipelineStage,
    overrides: dict[PipelineStage, int] | None = None,
) -> int:
    """Stage timeout in milliseconds, preferring an explicit override."""

    if overrides and stage in overrides:
        return overrides[stage]
    return DEFAULT_STAGE_TIMEOUTS_MS[stage]


def get_stage_retry_options(
    stage: PipelineStage,
    overrides: dict[PipelineStage, RetryOptions | dict[str, float]] | None = None,
) -> RetryOptions:
    """Merge a full or partial retry override with the stage default."""

    defaults = DEFAULT_STAGE_RETRY_OPTIONS[stage]
    override = (overrides or {}).get(stage)
    if override is None:
        return defaults
    if isinstance(override, RetryOptions):
        return override
    return replace(defaults, **override)


def calculate_progress(
    completed_stages: list[PipelineStage] | tuple[PipelineStage, ...],
    current_stage: PipelineStage | None = None,
    stage_fraction: float = 0.0,
) -> int:
    """Weighted completion percentage in ``[0, 100]``."""

    progress = float(sum(STAGE_PROGRESS_WEIGHTS[stage] for stage in set(completed_stages)))
    if current_stage is not None and current_stage not in completed_stages:
        fraction = min(max(stage_fraction, 0.0), 1.0)
        progress += STAGE_PROGRESS_WEIGHTS[current_stage] * fraction
    return max(0, min(100, round(progress)))


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_attempts(name: str, default: int) -> int:
    value = int(os.getenv(name, str(default)))
    if value < 1:
        raise ValueError(f"{name} must be >= 1.")
    return value
