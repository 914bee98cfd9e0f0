"""Task interpretation by task type.

Each ``TaskType`` maps to one handler in ``TASK_HANDLERS``. A handler
validates the target parameters before any browser work starts and turns
them into a frozen ``TaskInterpretation`` that every strategy receives
unchanged.

Parameters understood per task type:
- report: report_position (1-based), report_selector, download_selector
- lead-activity: lead_phone (required), search_selector, result_selector,
  activity_script
- custom: actions (list of action dicts) or custom_selectors (list of
  selectors to click in order)
- natural-language: target.natural_language_task (required), estimated_steps,
  expects_download
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from pydantic import ValidationError

from portal_agent.errors import ConfigurationError
from portal_agent.models import ActionInstruction, TargetConfig, TaskInterpretation, TaskType
from portal_agent.oracle import VisionOracle
from portal_agent.patterns.models import CAPABILITY_BY_ACTION

logger = logging.getLogger(__name__)

DEFAULT_REPORT_SELECTOR = 'a[href*="report"]'
DEFAULT_DOWNLOAD_SELECTOR = 'button:has-text("Download"), a:has-text("Download")'
DEFAULT_SEARCH_SELECTOR = 'input[type="search"], input[name*="search"], input[placeholder*="Search"]'
DEFAULT_RESULT_SELECTOR = "table tbody tr, .search-result"
DEFAULT_ACTIVITY_SCRIPT = """() => Array.from(
    document.querySelectorAll('.activity-item, .activity-row, table.activity tbody tr')
).map((row) => row.innerText.trim()).filter(Boolean)"""


@dataclass(frozen=True)
class TaskHandler:
    validate: Callable[[TargetConfig], None]
    interpret: Callable[[TargetConfig], TaskInterpretation]


def _validate_report(target: TargetConfig) -> None:
    position = target.parameters.get("report_position", 1)
    if not isinstance(position, int) or isinstance(position, bool) or position < 1:
        raise ConfigurationError("report_position must be a positive integer")


def _interpret_report(target: TargetConfig) -> TaskInterpretation:
    params = target.parameters
    position = int(params.get("report_position", 1))
    report_selector = str(params.get("report_selector", DEFAULT_REPORT_SELECTOR))
    download_selector = str(params.get("download_selector", DEFAULT_DOWNLOAD_SELECTOR))
    return TaskInterpretation(
        task_type=TaskType.REPORT,
        description=f"Open report #{position} and download it",
        target_elements=(report_selector, download_selector),
        sub_actions=(
            ActionInstruction(
                action="click",
                selector=f"{report_selector} >> nth={position - 1}",
                description=f"open report #{position}",
            ),
            ActionInstruction(
                action="click",
                selector=download_selector,
                description="download report",
                expect_download=True,
            ),
        ),
        success_criteria=("report file downloaded",),
        estimated_steps=3,
        required_capabilities=("mouse_interaction",),
        expects_download=True,
        ordinal_position=position,
    )


def _validate_lead_activity(target: TargetConfig) -> None:
    if not str(target.parameters.get("lead_phone", "")).strip():
        raise ConfigurationError("lead-activity tasks require parameters.lead_phone")


def _interpret_lead_activity(target: TargetConfig) -> TaskInterpretation:
    params = target.parameters
    phone = str(params["lead_phone"]).strip()
    result_selector = str(params.get("result_selector", DEFAULT_RESULT_SELECTOR))
    return TaskInterpretation(
        task_type=TaskType.LEAD_ACTIVITY,
        description=f"Look up the lead with phone {phone} and collect its activity",
        target_elements=(result_selector,),
        sub_actions=(
            ActionInstruction(
                action="fill",
                selector=str(params.get("search_selector", DEFAULT_SEARCH_SELECTOR)),
                value=phone,
                description="search lead by phone",
            ),
            ActionInstruction(
                action="click",
                selector=f"{result_selector} >> nth=0",
                description="open first matching lead",
            ),
        ),
        success_criteria=("lead activity history is visible",),
        estimated_steps=3,
        required_capabilities=("keyboard_input", "mouse_interaction"),
        ordinal_position=1,
        extract_script=str(params.get("activity_script", DEFAULT_ACTIVITY_SCRIPT)),
    )


def _custom_actions(target: TargetConfig) -> tuple[ActionInstruction, ...]:
    raw_actions = target.parameters.get("actions")
    if raw_actions:
        if not isinstance(raw_actions, list):
            raise ConfigurationError("parameters.actions must be a list")
        try:
            return tuple(ActionInstruction.model_validate(item) for item in raw_actions)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid custom action: {exc}") from exc
    selectors = target.parameters.get("custom_selectors") or []
    if not isinstance(selectors, list) or not all(isinstance(item, str) for item in selectors):
        raise ConfigurationError("parameters.custom_selectors must be a list of selectors")
    return tuple(
        ActionInstruction(action="click", selector=selector, description=f"click {selector}")
        for selector in selectors
    )


def _validate_custom(target: TargetConfig) -> None:
    if not _custom_actions(target):
        raise ConfigurationError("custom tasks require parameters.actions or custom_selectors")


def _interpret_custom(target: TargetConfig) -> TaskInterpretation:
    actions = _custom_actions(target)
    return TaskInterpretation(
        task_type=TaskType.CUSTOM,
        description=str(target.parameters.get("description", "Run configured action sequence")),
        target_elements=tuple(action.selector for action in actions if action.selector),
        sub_actions=actions,
        success_criteria=tuple(target.parameters.get("success_criteria", ())),
        estimated_steps=max(len(actions), 1),
        required_capabilities=_capabilities(actions),
        expects_download=any(action.expect_download for action in actions),
    )


def _validate_natural_language(target: TargetConfig) -> None:
    if not (target.natural_language_task or "").strip():
        raise ConfigurationError("natural-language tasks require target.natural_language_task")
    _estimated_steps(target)


def _estimated_steps(target: TargetConfig) -> int:
    raw = target.parameters.get("estimated_steps", 5)
    if isinstance(raw, bool):
        raise ConfigurationError("estimated_steps must be a positive integer")
    try:
        steps = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("estimated_steps must be a positive integer") from exc
    if steps < 1 or (isinstance(raw, float) and not raw.is_integer()):
        raise ConfigurationError("estimated_steps must be a positive integer")
    return steps


def _interpret_natural_language(target: TargetConfig) -> TaskInterpretation:
    instruction = (target.natural_language_task or "").strip()
    return TaskInterpretation(
        task_type=TaskType.NATURAL_LANGUAGE,
        description=instruction,
        success_criteria=(instruction,),
        estimated_steps=_estimated_steps(target),
        required_capabilities=("mouse_interaction",),
        expects_download=bool(target.parameters.get("expects_download", False)),
    )


TASK_HANDLERS: dict[TaskType, TaskHandler] = {
    TaskType.REPORT: TaskHandler(_validate_report, _interpret_report),
    TaskType.LEAD_ACTIVITY: TaskHandler(_validate_lead_activity, _interpret_lead_activity),
    TaskType.CUSTOM: TaskHandler(_validate_custom, _interpret_custom),
    TaskType.NATURAL_LANGUAGE: TaskHandler(
        _validate_natural_language, _interpret_natural_language
    ),
}


class TaskPlanner:
    """Builds the task interpretation, asking the oracle for natural-language tasks.

    The deterministic handler is the baseline: when the oracle is missing or
    fails, natural-language tasks fall back to it.
    """

    def __init__(
        self,
        *,
        oracle: VisionOracle | None = None,
        handlers: dict[TaskType, TaskHandler] | None = None,
    ) -> None:
        self.oracle = oracle
        self.handlers = handlers or TASK_HANDLERS
        missing = [task_type for task_type in TaskType if task_type not in self.handlers]
        if missing:
            raise ConfigurationError(f"No task handler for: {', '.join(missing)}")

    def validate(self, target: TargetConfig) -> None:
        self.handlers[target.task_type].validate(target)

    async def interpret(self, target: TargetConfig) -> TaskInterpretation:
        handler = self.handlers[target.task_type]
        baseline = handler.interpret(target)
        if target.task_type is not TaskType.NATURAL_LANGUAGE or self.oracle is None:
            return baseline
        try:
            interpreted = await self.oracle.interpret_task(baseline.description, url=target.url)
        except Exception as exc:  # noqa: BLE001
            logger.warning("event=interpretation_fallback reason=%s", exc)
            return baseline
        return interpreted.model_copy(
            update={
                "task_type": TaskType.NATURAL_LANGUAGE,
                "description": baseline.description,
                "estimated_steps": max(interpreted.estimated_steps, 1),
            }
        )


def _capabilities(actions: tuple[ActionInstruction, ...]) -> tuple[str, ...]:
    return tuple(sorted({CAPABILITY_BY_ACTION[action.action] for action in actions}))

