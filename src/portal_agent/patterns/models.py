"""Learned pattern records and their execution bookkeeping."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from portal_agent.models import ActionKind, TaskInterpretation

RECENT_EXECUTION_WINDOW = 50


class StepTarget(BaseModel):
    primary_selector: str
    fallback_selectors: list[str] = Field(default_factory=list)
    description: str = ""

    def candidates(self) -> list[str]:
        return [self.primary_selector, *self.fallback_selectors]


class PatternStep(BaseModel):
    order: int = Field(ge=0)
    action_kind: ActionKind
    target: StepTarget
    value: str | None = None
    timeout_ms: int = Field(default=5000, ge=0)
    max_retries: int = Field(default=1, ge=0)
    expect_download: bool = False
    # Index of the interpretation sub-action this step was recorded from, and
    # that sub-action's selector at the time. Unset for oracle-driven steps.
    sub_action: int | None = Field(default=None, ge=0)
    source_selector: str | None = None


class ExecutionEnvironment(BaseModel):
    """Attributes of the run that decide whether a pattern transfers."""

    model_config = ConfigDict(frozen=True)

    host: str
    browser: str = "chromium"
    viewport: str = "1920x1080"


class ExecutionOutcome(BaseModel):
    success: bool
    execution_ms: float = 0.0
    context: dict[str, Any] = Field(default_factory=dict)
    error_details: str | None = None
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class LearnedPattern(BaseModel):
    id: str
    task_type: str
    context_fingerprint: str
    action_sequence: list[PatternStep]
    confidence: float = Field(ge=0.0, le=1.0)
    success_rate: float = Field(ge=0.0, le=1.0)
    last_used_at: datetime
    created_at: datetime
    total_executions: int = 0
    successful_executions: int = 0
    average_execution_ms: float = 0.0
    required_capabilities: list[str] = Field(default_factory=list)
    observed_selectors: list[str] = Field(default_factory=list)
    recent_executions: list[ExecutionOutcome] = Field(default_factory=list)
    task_signature: str = ""


def context_fingerprint(task_type: str, environment: ExecutionEnvironment) -> str:
    raw = "|".join((task_type, environment.host, environment.browser, environment.viewport))
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def task_signature(interpretation: TaskInterpretation) -> str:
    """Digest of everything the task parameters put into an interpretation."""
    raw = interpretation.model_dump_json()
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


def pattern_id(task_type: str, fingerprint: str, steps: list[PatternStep]) -> str:
    signature = "|".join(f"{step.action_kind}:{step.target.primary_selector}" for step in steps)
    digest = hashlib.sha1(f"{fingerprint}|{signature}".encode("utf-8")).hexdigest()[:10]
    return f"{task_type}_{digest}"


CAPABILITY_BY_ACTION: dict[str, str] = {
    "click": "mouse_interaction",
    "fill": "keyboard_input",
    "select": "dropdown_interaction",
    "wait": "page_wait",
}


def capabilities_for(steps: list[PatternStep]) -> list[str]:
    return sorted({CAPABILITY_BY_ACTION[step.action_kind] for step in steps})
