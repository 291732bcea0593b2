"""Engine settings and per-run options.

Settings come from the environment; run options come from the caller.

Environment Variables:
    FLOW_BACKEND_URL: Base URL of the remote execution service (unset disables it)
    FLOW_BACKEND_TIMEOUT: Remote request timeout in seconds
    FLOW_DEFAULT_RETRIES: Retry bound used when neither node nor run sets one
    FLOW_RETRY_DELAY_MS: Base delay for linear backoff between attempts
    FLOW_EVENTS_PATH: Optional JSONL file receiving every run event
    FLOW_LOG_LEVEL: Log level for the ``flow_orchestra`` logger
"""

from __future__ import annotations
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1000

JoinThreshold = Literal["distinct_sources", "in_degree"]


@dataclass(frozen=True)
class EngineSettings:
    """Process-wide engine settings."""

    backend_url: Optional[str] = None
    backend_timeout: float = 30.0
    default_retries: int = DEFAULT_MAX_RETRIES
    retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS
    events_path: Optional[str] = None
    log_level: str = "INFO"

    @property
    def retry_delay(self) -> float:
        return self.retry_delay_ms / 1000.0


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got: {raw!r}")


def load_settings() -> EngineSettings:
    """Build settings from ``FLOW_*`` environment variables."""
    backend_url = os.getenv("FLOW_BACKEND_URL") or None
    return EngineSettings(
        backend_url=backend_url.rstrip("/") if backend_url else None,
        backend_timeout=_float_env("FLOW_BACKEND_TIMEOUT", 30.0),
        default_retries=_int_env("FLOW_DEFAULT_RETRIES", DEFAULT_MAX_RETRIES),
        retry_delay_ms=_int_env("FLOW_RETRY_DELAY_MS", DEFAULT_RETRY_DELAY_MS),
        events_path=os.getenv("FLOW_EVENTS_PATH") or None,
        log_level=os.getenv("FLOW_LOG_LEVEL", "INFO").upper(),
    )


class RunOptions(BaseModel):
    """Options for a single workflow run (camelCase aliases accepted)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    initial_input: Any = Field(default_factory=dict, alias="initialInput")
    start_from: List[str] = Field(default_factory=list, alias="startFrom")
    retries: Optional[int] = Field(default=None, ge=0, description="Default retry bound for nodes without one")
    timeout: Optional[float] = Field(default=None, gt=0, description="Per-attempt timeout in seconds")
    retry_delay: Optional[float] = Field(default=None, ge=0, alias="retryDelay",
                                         description="Base backoff delay in seconds")
    join_threshold: JoinThreshold = Field(default="distinct_sources", alias="joinThreshold")
    allow_cycles: bool = Field(default=False, alias="allowCycles")
    max_steps: Optional[int] = Field(default=None, gt=0, alias="maxSteps")
    use_remote: bool = Field(default=True, alias="useRemote")
    workflow_id: Optional[str] = Field(default=None, alias="workflowId")

    @field_validator("initial_input", mode="before")
    @classmethod
    def default_initial_input(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("start_from", mode="before")
    @classmethod
    def normalize_start_from(cls, v: Any) -> List[str]:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return list(v)

    @classmethod
    def coerce(cls, options: "RunOptions | Dict[str, Any] | None", **overrides: Any) -> "RunOptions":
        """Accept a RunOptions, a plain mapping, or None, applying keyword overrides."""
        if options is None:
            data: Dict[str, Any] = {}
        elif isinstance(options, RunOptions):
            data = options.model_dump()
        else:
            data = dict(options)
        data.update({k: v for k, v in overrides.items() if v is not None})
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid run options: {e}") from e
