"""Progressive-enhancement strategy engine.

Strategies run strictly in the configured order. Each gets the same frozen
``TaskInterpretation``. The first success ends the chain; a thrown error
is logged with a debug snapshot and the next strategy runs. When all fail,
``StrategyExhaustion`` carries the last observed error.

When the interaction budget runs out mid-strategy the chain stops and the
partial outcome is returned with ``budget_exhausted`` set.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from portal_agent.budget import InteractionBudget
from portal_agent.errors import (
    BudgetExhausted,
    ConfigurationError,
    ElementNotFound,
    ExtractionFailure,
    OracleContractError,
    StrategyExhaustion,
    TransportFailure,
)
from portal_agent.models import (
    DEFAULT_STRATEGY_ORDER,
    ActionKind,
    StrategyName,
    TaskInterpretation,
)
from portal_agent.oracle import ActionProposal, VisionOracle
from portal_agent.patterns.models import (
    ExecutionEnvironment,
    ExecutionOutcome,
    LearnedPattern,
    PatternStep,
    StepTarget,
    task_signature,
)
from portal_agent.patterns.store import PatternStore
from portal_agent.surface import ControllableSurface

logger = logging.getLogger(__name__)


@dataclass
class StrategyContext:
    """Shared, per-task resources every strategy works against."""

    surface: ControllableSurface
    budget: InteractionBudget
    environment: ExecutionEnvironment
    artifact_dir: Path
    pattern_store: PatternStore | None = None
    oracle: VisionOracle | None = None
    step_timeout_ms: int = 10000
    step_max_retries: int = 1
    download_timeout_ms: int = 60000
    screenshot_dir: Path | None = None
    capture_debug_screenshots: bool = True
    screenshots: list[str] = field(default_factory=list)

    async def capture_debug(self, label: str) -> str | None:
        """Best-effort screenshot for diagnostics; never raises."""
        if not self.capture_debug_screenshots or self.screenshot_dir is None:
            return None
        stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S%f")
        path = self.screenshot_dir / f"{label}_{stamp}.png"
        try:
            await self.surface.screenshot(path)
        except Exception as exc:  # noqa: BLE001
            logger.warning("event=debug_snapshot_failed label=%s reason=%s", label, exc)
            return None
        self.screenshots.append(str(path))
        return str(path)


@dataclass
class StrategyOutcome:
    success: bool
    artifact_path: Path | None = None
    data: Any = None
    error: str | None = None
    performed_steps: list[PatternStep] = field(default_factory=list)
    pattern_id: str | None = None
    budget_exhausted: bool = False

    @classmethod
    def failed(cls, error: str) -> StrategyOutcome:
        return cls(success=False, error=error)

    @classmethod
    def partial(
        cls,
        *,
        artifact_path: Path | None = None,
        performed_steps: list[PatternStep] | None = None,
        pattern_id: str | None = None,
    ) -> StrategyOutcome:
        return cls(
            success=True,
            artifact_path=artifact_path,
            performed_steps=performed_steps or [],
            pattern_id=pattern_id,
            budget_exhausted=True,
        )


@dataclass
class EngineResult:
    outcome: StrategyOutcome
    strategy: StrategyName
    attempts: list[dict[str, Any]]


class Strategy(Protocol):
    name: StrategyName

    async def execute(
        self, interpretation: TaskInterpretation, ctx: StrategyContext
    ) -> StrategyOutcome: ...


async def resolve_selector(
    ctx: StrategyContext,
    candidates: list[str],
    *,
    timeout_ms: int,
    max_retries: int,
) -> str:
    """Return the first visible candidate, retrying the whole list up to ``max_retries``."""
    for attempt in range(max_retries + 1):
        for selector in candidates:
            if await ctx.surface.is_visible(selector, timeout_ms=timeout_ms):
                return selector
        logger.debug(
            "event=selector_miss attempt=%d/%d candidates=%d",
            attempt + 1,
            max_retries + 1,
            len(candidates),
        )
    raise ElementNotFound(f"None of {len(candidates)} selectors matched: {candidates[0]}")


async def perform(
    ctx: StrategyContext,
    action: ActionKind,
    selector: str,
    *,
    value: str | None = None,
    expect_download: bool = False,
    timeout_ms: int,
) -> Path | None:
    """Run one committed action; returns the saved file for download clicks."""
    if action == "click":
        if expect_download:

            async def _click() -> None:
                await ctx.surface.click(selector, timeout_ms=timeout_ms)

            return await ctx.surface.expect_download(
                _click, save_dir=ctx.artifact_dir, timeout_ms=ctx.download_timeout_ms
            )
        await ctx.surface.click(selector, timeout_ms=timeout_ms)
    elif action == "fill":
        await ctx.surface.fill(selector, value or "", timeout_ms=timeout_ms)
    elif action == "select":
        await ctx.surface.select(selector, value or "", timeout_ms=timeout_ms)
    else:
        await ctx.surface.wait(int(value) if value and value.isdigit() else timeout_ms)
    return None


async def finish(
    ctx: StrategyContext,
    interpretation: TaskInterpretation,
    *,
    artifact_path: Path | None,
    steps: list[PatternStep],
    pattern_id: str | None = None,
) -> StrategyOutcome:
    """Check the expected artifact exists and collect page data."""
    if interpretation.expects_download and artifact_path is None:
        raise ExtractionFailure("Expected a download but none was captured")
    data: Any = None
    if interpretation.extract_script:
        data = await ctx.surface.evaluate(interpretation.extract_script)
        if not data:
            raise ExtractionFailure("Extraction script returned no data")
    return StrategyOutcome(
        success=True,
        artifact_path=artifact_path,
        data=data,
        performed_steps=steps,
        pattern_id=pattern_id,
    )


def bind_steps(
    pattern: LearnedPattern, interpretation: TaskInterpretation
) -> list[PatternStep] | None:
    """Fit a learned sequence to the current task parameters.

    Steps recorded from a sub-action take their value from the current
    sub-action, and its selectors too when the parameters changed them.
    Steps without that link replay literally, so a pattern holding any of
    them is only reused for an identical interpretation. Returns ``None``
    when the pattern does not fit.
    """
    steps = sorted(pattern.action_sequence, key=lambda step: step.order)
    if any(step.sub_action is None for step in steps):
        if pattern.task_signature != task_signature(interpretation):
            return None
        return steps

    actions = interpretation.sub_actions
    if sorted(step.sub_action or 0 for step in steps) != list(range(len(actions))):
        return None
    bound: list[PatternStep] = []
    for step in steps:
        action = actions[step.sub_action or 0]
        if action.action != step.action_kind:
            return None
        target = step.target
        if action.selector != step.source_selector:
            target = StepTarget(
                primary_selector=action.selector or "",
                fallback_selectors=list(action.fallback_selectors),
                description=action.description,
            )
        bound.append(
            step.model_copy(
                update={
                    "target": target,
                    "value": action.value,
                    "expect_download": action.expect_download,
                }
            )
        )
    return bound


class LearnedPatternStrategy:
    name = StrategyName.LEARNED_PATTERN

    async def execute(
        self, interpretation: TaskInterpretation, ctx: StrategyContext
    ) -> StrategyOutcome:
        if ctx.pattern_store is None:
            return StrategyOutcome.failed("Pattern storage is not configured")
        pattern = ctx.pattern_store.get_best_pattern(
            interpretation.task_type,
            ctx.environment,
            interpretation.required_capabilities,
            accept=lambda candidate: bind_steps(candidate, interpretation) is not None,
        )
        if pattern is None:
            return StrategyOutcome.failed("No usable learned pattern for these task parameters")
        steps = bind_steps(pattern, interpretation) or []

        logger.info(
            "event=pattern_replay id=%s confidence=%.3f success_rate=%.3f",
            pattern.id,
            pattern.confidence,
            pattern.success_rate,
        )
        started_at = time.perf_counter()
        artifact: Path | None = None
        try:
            for step in steps:
                if ctx.budget.exhausted:
                    return StrategyOutcome.partial(artifact_path=artifact, pattern_id=pattern.id)
                selector = ""
                if step.action_kind != "wait":
                    selector = await resolve_selector(
                        ctx,
                        step.target.candidates(),
                        timeout_ms=step.timeout_ms,
                        max_retries=step.max_retries,
                    )
                saved = await perform(
                    ctx,
                    step.action_kind,
                    selector,
                    value=step.value,
                    expect_download=step.expect_download,
                    timeout_ms=step.timeout_ms,
                )
                artifact = saved or artifact
            outcome = await finish(
                ctx,
                interpretation,
                artifact_path=artifact,
                steps=steps,
                pattern_id=pattern.id,
            )
        except BudgetExhausted:
            raise
        except Exception as exc:
            ctx.pattern_store.update_pattern_after_execution(
                pattern.id,
                ExecutionOutcome(
                    success=False,
                    execution_ms=_duration_ms(started_at),
                    error_details=str(exc),
                ),
            )
            raise
        ctx.pattern_store.update_pattern_after_execution(
            pattern.id,
            ExecutionOutcome(success=True, execution_ms=_duration_ms(started_at)),
        )
        return outcome


class DirectStrategy:
    name = StrategyName.DIRECT

    async def execute(
        self, interpretation: TaskInterpretation, ctx: StrategyContext
    ) -> StrategyOutcome:
        actions = interpretation.sub_actions
        if not actions or any(
            action.selector is None for action in actions if action.action != "wait"
        ):
            return StrategyOutcome.failed("No explicit selectors configured for direct execution")

        artifact: Path | None = None
        steps: list[PatternStep] = []
        for order, action in enumerate(actions):
            if ctx.budget.exhausted:
                return StrategyOutcome.partial(artifact_path=artifact, performed_steps=steps)
            candidates = [action.selector, *action.fallback_selectors] if action.selector else []
            selector = ""
            if action.action != "wait":
                selector = await resolve_selector(
                    ctx,
                    candidates,
                    timeout_ms=ctx.step_timeout_ms,
                    max_retries=ctx.step_max_retries,
                )
            saved = await perform(
                ctx,
                action.action,
                selector,
                value=action.value,
                expect_download=action.expect_download,
                timeout_ms=ctx.step_timeout_ms,
            )
            artifact = saved or artifact
            steps.append(
                PatternStep(
                    order=order,
                    action_kind=action.action,
                    target=StepTarget(
                        primary_selector=selector,
                        fallback_selectors=[item for item in candidates if item != selector],
                        description=action.description,
                    ),
                    value=action.value,
                    timeout_ms=ctx.step_timeout_ms,
                    max_retries=ctx.step_max_retries,
                    expect_download=action.expect_download,
                    sub_action=order,
                    source_selector=action.selector,
                )
            )
        return await finish(ctx, interpretation, artifact_path=artifact, steps=steps)


class VisionGuidedStrategy:
    name = StrategyName.VISION_GUIDED

    async def execute(
        self, interpretation: TaskInterpretation, ctx: StrategyContext
    ) -> StrategyOutcome:
        if ctx.oracle is None:
            return StrategyOutcome.failed("Vision oracle is not enabled")

        iterations = min(interpretation.estimated_steps, ctx.budget.limit)
        history: list[str] = []
        steps: list[PatternStep] = []
        artifact: Path | None = None
        completed = False

        for iteration in range(iterations):
            if ctx.budget.exhausted:
                break
            try:
                snapshot = await ctx.surface.screenshot()
                proposal = await ctx.oracle.propose_action(
                    snapshot, instruction=interpretation.description, history=history
                )
            except OracleContractError:
                raise
            except TransportFailure as exc:
                logger.warning("event=oracle_unavailable iteration=%d reason=%s", iteration, exc)
                continue

            if proposal.action == "done":
                completed = True
                break

            saved = await self._apply(proposal, interpretation, ctx)
            artifact = saved or artifact
            history.append(_describe_proposal(proposal))
            if proposal.selector:
                steps.append(
                    PatternStep(
                        order=len(steps),
                        action_kind=proposal.action,
                        target=StepTarget(
                            primary_selector=proposal.selector,
                            description=proposal.reasoning[:200],
                        ),
                        value=proposal.value,
                        timeout_ms=ctx.step_timeout_ms,
                        max_retries=ctx.step_max_retries,
                        expect_download=saved is not None,
                    )
                )

            try:
                verdict = await ctx.oracle.verify_completion(
                    await ctx.surface.screenshot(),
                    success_criteria=interpretation.success_criteria,
                    description=interpretation.description,
                )
            except OracleContractError:
                raise
            except TransportFailure as exc:
                logger.warning(
                    "event=oracle_verify_unavailable iteration=%d reason=%s", iteration, exc
                )
                continue
            if verdict.complete:
                completed = True
                break

        if completed:
            return await finish(ctx, interpretation, artifact_path=artifact, steps=steps)
        if ctx.budget.exhausted:
            return StrategyOutcome.partial(artifact_path=artifact, performed_steps=steps)
        return StrategyOutcome.failed(
            f"Vision-guided loop ended after {iterations} iterations without confirmed completion"
        )

    @staticmethod
    async def _apply(
        proposal: ActionProposal, interpretation: TaskInterpretation, ctx: StrategyContext
    ) -> Path | None:
        if proposal.action == "click" and not proposal.selector and proposal.coordinates:
            await ctx.surface.click_at(proposal.coordinates.x, proposal.coordinates.y)
            return None
        # Only clicks the oracle describes as downloads wait for a file.
        wants_download = interpretation.expects_download and "download" in (
            f"{proposal.selector} {proposal.reasoning}".lower()
        )
        return await perform(
            ctx,
            proposal.action,
            proposal.selector or "",
            value=proposal.value,
            expect_download=proposal.action == "click" and wants_download,
            timeout_ms=ctx.step_timeout_ms,
        )


class PositionBasedStrategy:
    """Last resort: click the N-th match of the first target element."""

    name = StrategyName.POSITION_BASED

    async def execute(
        self, interpretation: TaskInterpretation, ctx: StrategyContext
    ) -> StrategyOutcome:
        position = interpretation.ordinal_position
        if position is None or not interpretation.target_elements:
            return StrategyOutcome.failed("Position-based fallback has no ordinal target")

        first, *rest = interpretation.target_elements
        targets = [f"{first} >> nth={position - 1}", *rest]
        artifact: Path | None = None
        steps: list[PatternStep] = []
        for order, target in enumerate(targets):
            if ctx.budget.exhausted:
                return StrategyOutcome.partial(artifact_path=artifact, performed_steps=steps)
            selector = await resolve_selector(
                ctx, [target], timeout_ms=ctx.step_timeout_ms, max_retries=ctx.step_max_retries
            )
            is_last = order == len(targets) - 1
            expect_download = interpretation.expects_download and is_last
            saved = await perform(
                ctx,
                "click",
                selector,
                expect_download=expect_download,
                timeout_ms=ctx.step_timeout_ms,
            )
            artifact = saved or artifact
            steps.append(
                PatternStep(
                    order=order,
                    action_kind="click",
                    target=StepTarget(primary_selector=selector, description="ordinal fallback"),
                    timeout_ms=ctx.step_timeout_ms,
                    max_retries=ctx.step_max_retries,
                    expect_download=expect_download,
                )
            )
        return await finish(ctx, interpretation, artifact_path=artifact, steps=steps)


def build_default_handlers() -> dict[StrategyName, Strategy]:
    return {
        StrategyName.LEARNED_PATTERN: LearnedPatternStrategy(),
        StrategyName.DIRECT: DirectStrategy(),
        StrategyName.VISION_GUIDED: VisionGuidedStrategy(),
        StrategyName.POSITION_BASED: PositionBasedStrategy(),
    }


class StrategyEngine:
    def __init__(
        self,
        *,
        order: tuple[StrategyName, ...] = DEFAULT_STRATEGY_ORDER,
        handlers: dict[StrategyName, Strategy] | None = None,
    ) -> None:
        if not order:
            raise ConfigurationError("At least one strategy must be enabled")
        self.handlers = handlers if handlers is not None else build_default_handlers()
        missing = [name for name in order if name not in self.handlers]
        if missing:
            raise ConfigurationError(f"No handler registered for strategies: {missing}")
        self.order = tuple(order)

    async def run(self, interpretation: TaskInterpretation, ctx: StrategyContext) -> EngineResult:
        attempts: list[dict[str, Any]] = []
        last_message = "No strategy was attempted"
        last_exc: Exception | None = None

        for name in self.order:
            strategy = self.handlers[name]
            started_at = time.perf_counter()
            count_before = ctx.budget.count
            snapshot: str | None = None
            try:
                outcome = await strategy.execute(interpretation, ctx)
            except BudgetExhausted as exc:
                logger.info("event=strategy_budget_exhausted strategy=%s reason=%s", name, exc)
                outcome = StrategyOutcome.partial()
            except Exception as exc:  # noqa: BLE001
                snapshot = await ctx.capture_debug(f"strategy_{name}")
                outcome = StrategyOutcome.failed(f"{type(exc).__name__}: {exc}")
                last_exc = exc
                logger.warning("event=strategy_error strategy=%s reason=%s", name, exc)
            else:
                if not outcome.success:
                    last_exc = None

            attempts.append(
                {
                    "strategy": str(name),
                    "success": outcome.success,
                    "error": outcome.error,
                    "budget_exhausted": outcome.budget_exhausted,
                    "interactions": ctx.budget.count - count_before,
                    "duration_ms": _duration_ms(started_at),
                    "screenshot": snapshot,
                }
            )
            if outcome.success:
                logger.info(
                    "event=strategy_succeeded strategy=%s partial=%s attempts=%d",
                    name,
                    outcome.budget_exhausted,
                    len(attempts),
                )
                return EngineResult(outcome=outcome, strategy=name, attempts=attempts)

            last_message = outcome.error or f"{name} failed"
            logger.info("event=strategy_failed strategy=%s reason=%s", name, last_message)

        error = StrategyExhaustion(last_message, attempts=attempts)
        if last_exc is not None:
            raise error from last_exc
        raise error


def _describe_proposal(proposal: ActionProposal) -> str:
    target = proposal.selector or (
        f"({proposal.coordinates.x:.0f},{proposal.coordinates.y:.0f})"
        if proposal.coordinates
        else "page"
    )
    return f"{proposal.action} {target}"


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
