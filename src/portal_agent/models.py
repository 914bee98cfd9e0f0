"""Pydantic models shared by the orchestrator, strategies, planner and CLI.

Terms used in this file:
- TaskConfig: everything one run needs; frozen for the lifetime of the run.
- TaskInterpretation: the planner's view of what to do, handed unchanged to
  every strategy in the fallback chain.
- ExecutionResult: the single structured outcome of a run.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from portal_agent.errors import ConfigurationError


class TaskType(StrEnum):
    REPORT = "report"
    LEAD_ACTIVITY = "lead-activity"
    CUSTOM = "custom"
    NATURAL_LANGUAGE = "natural-language"


class StrategyName(StrEnum):
    LEARNED_PATTERN = "learned-pattern"
    DIRECT = "direct"
    VISION_GUIDED = "vision-guided"
    POSITION_BASED = "position-based"


DEFAULT_STRATEGY_ORDER: tuple[StrategyName, ...] = (
    StrategyName.LEARNED_PATTERN,
    StrategyName.DIRECT,
    StrategyName.VISION_GUIDED,
    StrategyName.POSITION_BASED,
)

ActionKind = Literal["click", "fill", "select", "wait"]


class ConfigModel(BaseModel):
    """Frozen config model accepting both snake_case and camelCase keys."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TargetConfig(ConfigModel):
    url: str = Field(min_length=1)
    task_type: TaskType
    # Task-specific knobs, e.g. report_position, lead_phone, custom_selectors.
    parameters: dict[str, Any] = Field(default_factory=dict)
    natural_language_task: str | None = None


class AuthenticationConfig(ConfigModel):
    identity: str = Field(min_length=1)
    secret: str = Field(min_length=1)
    # When set, the second factor is resolved by polling this relay.
    otp_relay_endpoint: str | None = None


class CapabilitiesConfig(ConfigModel):
    use_vision_oracle: bool = False
    max_interactions: int = Field(default=5, ge=1)
    enabled_strategies: tuple[StrategyName, ...] = DEFAULT_STRATEGY_ORDER
    capture_debug_screenshots: bool = True


class OutputConfig(ConfigModel):
    recipients: tuple[str, ...] = ()
    callback_url: str | None = None
    artifact_dir: Path = Path("downloads")
    email_subject: str | None = None


class LearningConfig(ConfigModel):
    enable_pattern_storage: bool = True


class TaskConfig(ConfigModel):
    target: TargetConfig
    authentication: AuthenticationConfig
    capabilities: CapabilitiesConfig = Field(default_factory=CapabilitiesConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)

    @property
    def host(self) -> str:
        return urlparse(self.target.url).netloc or self.target.url


class ActionInstruction(BaseModel):
    """One intended sub-action of a task interpretation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    action: ActionKind
    selector: str | None = None
    fallback_selectors: tuple[str, ...] = ()
    value: str | None = None
    description: str = ""
    # Wrap the click in a wait-for-download.
    expect_download: bool = False


class TaskInterpretation(BaseModel):
    """Immutable description of what a strategy should accomplish."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_type: TaskType
    description: str
    target_elements: tuple[str, ...] = ()
    sub_actions: tuple[ActionInstruction, ...] = ()
    success_criteria: tuple[str, ...] = ()
    estimated_steps: int = Field(default=3, ge=1)
    required_capabilities: tuple[str, ...] = ()
    expects_download: bool = False
    # 1-based index used by the position-based strategy.
    ordinal_position: int | None = Field(default=None, ge=1)
    # Script evaluated on the page once actions complete, for data lookups.
    extract_script: str | None = None


class ExecutionResult(BaseModel):
    """Outcome of one task run, produced exactly once."""

    success: bool
    task_type: TaskType
    artifact_path: str | None = None
    data: Any = None
    interaction_count: int = 0
    duration_ms: float = 0.0
    screenshots: list[str] = Field(default_factory=list)
    error: str | None = None
    strategy_attempts: list[dict[str, Any]] = Field(default_factory=list)
    successful_strategy: StrategyName | None = None
    patterns_used: list[str] = Field(default_factory=list)
    patterns_learned: list[str] = Field(default_factory=list)
    budget_exhausted: bool = False
    completed_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


def load_task_config(path: str | Path) -> TaskConfig:
    """Read a JSON task config, mapping every failure to ConfigurationError."""
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Task config not found: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Task config is not valid JSON: {exc}") from exc
    try:
        return TaskConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid task config: {exc}") from exc
