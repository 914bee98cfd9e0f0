"""Task orchestration: authenticate, execute by task type, deliver output.

``TaskOrchestrator.run`` is the single entry point. Pre-flight validation
raises ``ConfigurationError``; every later failure becomes a failed
``ExecutionResult``. Keep-alive and the browser are torn down on every exit
path.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable
from urllib.parse import urlparse

from portal_agent.auth import Authenticator, AuthTimeouts, looks_like_auth_url
from portal_agent.budget import BudgetedSurface, InteractionBudget
from portal_agent.config.settings import Settings, get_settings
from portal_agent.dispatch import OutputDispatcher
from portal_agent.errors import ConfigurationError, StrategyExhaustion
from portal_agent.models import ExecutionResult, StrategyName, TaskConfig
from portal_agent.oracle import VisionOracle, build_oracle_from_settings
from portal_agent.otp.client import OTPRelayClient
from portal_agent.patterns import PatternStore, build_pattern_backend
from portal_agent.patterns.models import ExecutionEnvironment, ExecutionOutcome, task_signature
from portal_agent.session import FileSessionStore
from portal_agent.strategies import EngineResult, Strategy, StrategyContext, StrategyEngine
from portal_agent.surface import ControllableSurface, PlaywrightSurface
from portal_agent.tasks import TaskPlanner

logger = logging.getLogger(__name__)

SurfaceFactory = Callable[[dict[str, Any] | None], Awaitable[ControllableSurface]]


class TaskOrchestrator:
    def __init__(
        self,
        *,
        settings: Settings,
        surface_factory: SurfaceFactory,
        session_store: FileSessionStore,
        pattern_store: PatternStore | None = None,
        oracle: VisionOracle | None = None,
        dispatcher: OutputDispatcher | None = None,
        relay_client_factory: Callable[[str], OTPRelayClient] = OTPRelayClient,
        strategy_handlers: dict[StrategyName, Strategy] | None = None,
        auth_timeouts: AuthTimeouts | None = None,
    ) -> None:
        self.settings = settings
        self.surface_factory = surface_factory
        self.session_store = session_store
        self.pattern_store = pattern_store
        self.oracle = oracle
        self.dispatcher = dispatcher or OutputDispatcher.from_settings(settings)
        self.relay_client_factory = relay_client_factory
        self.strategy_handlers = strategy_handlers
        self.auth_timeouts = auth_timeouts or AuthTimeouts.from_settings(settings)

    @classmethod
    def from_settings(cls, settings: Settings) -> TaskOrchestrator:
        async def _launch(storage_state: dict[str, Any] | None) -> ControllableSurface:
            return await PlaywrightSurface.launch(
                headless=settings.headless,
                viewport=(settings.viewport_width, settings.viewport_height),
                storage_state=storage_state,
            )

        backend = build_pattern_backend(
            settings.pattern_backend,
            path=settings.patterns_path,
            database_url=settings.resolved_database_url(),
        )
        return cls(
            settings=settings,
            surface_factory=_launch,
            session_store=FileSessionStore(
                settings.session_dir,
                max_age_s=settings.session_max_age_s,
                keep_alive_interval_s=settings.keep_alive_interval_s,
            ),
            pattern_store=PatternStore(backend),
            oracle=build_oracle_from_settings(settings),
        )

    def validate_task_config(self, config: TaskConfig) -> None:
        """Pre-flight checks. The only errors allowed to escape ``run``."""
        if not config.authentication.identity.strip() or not config.authentication.secret.strip():
            raise ConfigurationError("Authentication identity and secret are required")
        if urlparse(config.target.url).scheme not in {"http", "https"}:
            raise ConfigurationError(f"Target URL must be http(s): {config.target.url}")
        TaskPlanner().validate(config.target)
        self._build_engine(config)
        if config.capabilities.use_vision_oracle and self.oracle is None:
            raise ConfigurationError(
                "Vision oracle requested but no LLM is configured. Set OPENAI_API_KEY."
            )
        if config.output.recipients and not self.dispatcher.email_configured:
            raise ConfigurationError("Email recipients configured but Mailgun is not set up")

    async def run(self, config: TaskConfig) -> ExecutionResult:
        self.validate_task_config(config)
        engine = self._build_engine(config)
        started_at = time.perf_counter()
        budget = InteractionBudget(config.capabilities.max_interactions)
        ctx: StrategyContext | None = None
        raw_surface: ControllableSurface | None = None
        logger.info(
            "event=task_started task_type=%s host=%s max_interactions=%d",
            config.target.task_type,
            config.host,
            budget.limit,
        )

        try:
            restored = self.session_store.restore(config.authentication.identity, config.host)
            raw_surface = await self.surface_factory(
                restored.browsing_state if restored.hit else None
            )
            ctx = self._build_context(config, raw_surface, budget)
            await self.authenticate_and_navigate(config, ctx, restored_hit=restored.hit)
            engine_result = await self.execute_by_task_type(config, ctx, engine)
            result = self._result_from_engine(config, ctx, engine_result, started_at)
            await self.deliver_output(config, result)
        except Exception as exc:  # noqa: BLE001
            logger.exception("event=task_failed task_type=%s", config.target.task_type)
            if ctx is not None:
                await ctx.capture_debug("task_error")
            result = ExecutionResult(
                success=False,
                task_type=config.target.task_type,
                interaction_count=budget.count,
                duration_ms=_duration_ms(started_at),
                screenshots=list(ctx.screenshots) if ctx else [],
                error=str(exc) or type(exc).__name__,
                strategy_attempts=exc.attempts if isinstance(exc, StrategyExhaustion) else [],
            )
        finally:
            await self.session_store.stop_keep_alive()
            if raw_surface is not None:
                await raw_surface.close()

        result.duration_ms = _duration_ms(started_at)
        logger.info(
            "event=task_finished success=%s interactions=%d duration_ms=%.0f",
            result.success,
            result.interaction_count,
            result.duration_ms,
        )
        return result

    async def authenticate_and_navigate(
        self, config: TaskConfig, ctx: StrategyContext, *, restored_hit: bool
    ) -> None:
        surface = ctx.surface
        await surface.navigate(config.target.url)
        oracle = self.oracle if config.capabilities.use_vision_oracle else None
        relay_endpoint = config.authentication.otp_relay_endpoint
        authenticator = Authenticator(
            surface,
            timeouts=self.auth_timeouts,
            oracle=oracle,
            relay_client=self.relay_client_factory(relay_endpoint) if relay_endpoint else None,
        )

        needs_login = looks_like_auth_url(surface.current_url()) or await authenticator.needs_login()
        if restored_hit and needs_login:
            logger.info("event=restored_session_stale host=%s", config.host)
        if needs_login:
            await authenticator.authenticate(config.authentication)
            self.session_store.save(
                config.authentication.identity, config.host, await surface.storage_state()
            )
            if surface.current_url().rstrip("/") != config.target.url.rstrip("/"):
                await surface.navigate(config.target.url)
        self.session_store.start_keep_alive(surface)

    async def execute_by_task_type(
        self, config: TaskConfig, ctx: StrategyContext, engine: StrategyEngine
    ) -> EngineResult:
        oracle = self.oracle if config.capabilities.use_vision_oracle else None
        interpretation = await TaskPlanner(oracle=oracle).interpret(config.target)
        engine_result = await engine.run(interpretation, ctx)

        outcome = engine_result.outcome
        should_learn = (
            config.learning.enable_pattern_storage
            and self.pattern_store is not None
            and engine_result.strategy is not StrategyName.LEARNED_PATTERN
            and not outcome.budget_exhausted
            and bool(outcome.performed_steps)
        )
        if should_learn:
            selectors = [
                step.target.primary_selector
                for step in outcome.performed_steps
                if step.target.primary_selector
            ]
            learned_id = self.pattern_store.store_pattern(
                config.target.task_type,
                outcome.performed_steps,
                selectors,
                ExecutionOutcome(
                    success=True,
                    execution_ms=engine_result.attempts[-1]["duration_ms"],
                    context={"strategy": str(engine_result.strategy)},
                ),
                ctx.environment,
                task_signature=task_signature(interpretation),
            )
            outcome.pattern_id = outcome.pattern_id or learned_id
            engine_result.attempts[-1]["learned_pattern"] = learned_id
        return engine_result

    async def deliver_output(self, config: TaskConfig, result: ExecutionResult) -> None:
        channels = await self.dispatcher.deliver(result, config.output)
        if channels:
            logger.info("event=output_delivered channels=%s", ",".join(channels))

    def _build_engine(self, config: TaskConfig) -> StrategyEngine:
        return StrategyEngine(
            order=config.capabilities.enabled_strategies,
            handlers=self.strategy_handlers,
        )

    def _build_context(
        self, config: TaskConfig, raw_surface: ControllableSurface, budget: InteractionBudget
    ) -> StrategyContext:
        return StrategyContext(
            surface=BudgetedSurface(raw_surface, budget),
            budget=budget,
            environment=ExecutionEnvironment(
                host=config.host,
                viewport=f"{self.settings.viewport_width}x{self.settings.viewport_height}",
            ),
            artifact_dir=config.output.artifact_dir,
            pattern_store=self.pattern_store,
            oracle=self.oracle if config.capabilities.use_vision_oracle else None,
            step_timeout_ms=self.settings.step_timeout_ms,
            step_max_retries=self.settings.step_max_retries,
            download_timeout_ms=self.settings.download_timeout_ms,
            screenshot_dir=self.settings.screenshot_dir,
            capture_debug_screenshots=config.capabilities.capture_debug_screenshots,
        )

    @staticmethod
    def _result_from_engine(
        config: TaskConfig,
        ctx: StrategyContext,
        engine_result: EngineResult,
        started_at: float,
    ) -> ExecutionResult:
        outcome = engine_result.outcome
        learned = [
            attempt["learned_pattern"]
            for attempt in engine_result.attempts
            if attempt.get("learned_pattern")
        ]
        used = (
            [outcome.pattern_id]
            if engine_result.strategy is StrategyName.LEARNED_PATTERN and outcome.pattern_id
            else []
        )
        return ExecutionResult(
            success=outcome.success,
            task_type=config.target.task_type,
            artifact_path=str(outcome.artifact_path) if outcome.artifact_path else None,
            data=outcome.data,
            interaction_count=ctx.budget.count,
            duration_ms=_duration_ms(started_at),
            screenshots=list(ctx.screenshots),
            strategy_attempts=engine_result.attempts,
            successful_strategy=engine_result.strategy,
            patterns_used=used,
            patterns_learned=learned,
            budget_exhausted=outcome.budget_exhausted,
        )


async def run_task(config: TaskConfig, settings: Settings | None = None) -> ExecutionResult:
    orchestrator = TaskOrchestrator.from_settings(settings or get_settings())
    return await orchestrator.run(config)


def _duration_ms(started_at: float) -> float:
    return round((time.perf_counter() - started_at) * 1000.0, 2)
