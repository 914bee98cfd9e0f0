from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from fakes import FakeSurface

from portal_agent.config.settings import Settings
from portal_agent.dispatch import OutputDispatcher
from portal_agent.errors import ConfigurationError, TransportFailure
from portal_agent.models import StrategyName, TaskConfig, TaskType
from portal_agent.orchestrator import TaskOrchestrator
from portal_agent.patterns import InMemoryPatternBackend, PatternStore
from portal_agent.session import FileSessionStore

PORTAL_URL = "https://portal.example.com/reports"
LOGIN_URL = "https://portal.example.com/login?next=/reports"
USERNAME = 'input[name="username"]'
PASSWORD = 'input[name="password"]'
SUBMIT = 'button[type="submit"]'
REPORT_PAGE = {".report-link >> nth=1", "#download", "nav"}


def _config(tmp_path: Path, **sections: dict[str, Any]) -> TaskConfig:
    raw: dict[str, Any] = {
        "target": {
            "url": PORTAL_URL,
            "task_type": "report",
            "parameters": {
                "report_position": 2,
                "report_selector": ".report-link",
                "download_selector": "#download",
            },
        },
        "authentication": {"identity": "ops@example.com", "secret": "hunter2"},
        "capabilities": {"max_interactions": 10},
        "output": {"artifact_dir": str(tmp_path / "downloads")},
    }
    raw.update(sections)
    return TaskConfig.model_validate(raw)


def _logged_out_portal() -> FakeSurface:
    def submit(surface: FakeSurface) -> None:
        surface.url = PORTAL_URL
        surface.visible = set(REPORT_PAGE)

    return FakeSurface(
        redirects={PORTAL_URL: LOGIN_URL},
        visible={USERNAME, PASSWORD, SUBMIT},
        on_click={SUBMIT: submit},
    )


class SurfaceFactory:
    def __init__(self, *surfaces: FakeSurface) -> None:
        self.surfaces = list(surfaces)
        self.launched: list[FakeSurface] = []
        self.states: list[dict[str, Any] | None] = []

    async def __call__(self, storage_state: dict[str, Any] | None) -> FakeSurface:
        self.states.append(storage_state)
        surface = self.surfaces.pop(0)
        self.launched.append(surface)
        return surface


def _orchestrator(
    settings: Settings,
    factory: SurfaceFactory,
    *,
    pattern_store: PatternStore | None = None,
    dispatcher: OutputDispatcher | None = None,
) -> TaskOrchestrator:
    return TaskOrchestrator(
        settings=settings,
        surface_factory=factory,
        session_store=FileSessionStore(settings.session_dir),
        pattern_store=pattern_store or PatternStore(InMemoryPatternBackend()),
        dispatcher=dispatcher,
    )


async def test_login_then_report_download(settings: Settings, tmp_path: Path) -> None:
    factory = SurfaceFactory(_logged_out_portal())
    orchestrator = _orchestrator(settings, factory)

    result = await orchestrator.run(_config(tmp_path))

    assert result.success is True, result.error
    assert result.task_type is TaskType.REPORT
    assert result.successful_strategy is StrategyName.DIRECT
    assert result.artifact_path == str(tmp_path / "downloads" / "report.csv")
    assert result.interaction_count == 5
    assert len(result.patterns_learned) == 1
    assert result.patterns_used == []

    surface = factory.launched[0]
    assert surface.closed is True
    assert factory.states == [None]
    assert orchestrator.session_store.keep_alive_running is False
    restored = orchestrator.session_store.restore("ops@example.com", "portal.example.com")
    assert restored.hit is True


async def test_second_run_reuses_session_and_learned_pattern(
    settings: Settings, tmp_path: Path
) -> None:
    patterns = PatternStore(InMemoryPatternBackend())
    factory = SurfaceFactory(_logged_out_portal(), FakeSurface(visible=set(REPORT_PAGE)))
    orchestrator = _orchestrator(settings, factory, pattern_store=patterns)

    first = await orchestrator.run(_config(tmp_path))
    second = await orchestrator.run(_config(tmp_path))

    assert second.success is True, second.error
    assert second.successful_strategy is StrategyName.LEARNED_PATTERN
    assert second.patterns_used == first.patterns_learned
    assert second.patterns_learned == []
    assert second.interaction_count == 2
    assert factory.states[1] is not None
    assert factory.states[1]["cookies"][0]["name"] == "sid"
    pattern = patterns.get_pattern(first.patterns_learned[0])
    assert pattern is not None
    assert pattern.total_executions == 2


@pytest.mark.parametrize(
    ("sections", "message"),
    [
        ({"target": {"url": PORTAL_URL, "task_type": "lead-activity"}}, "lead_phone"),
        (
            {
                "target": {
                    "url": "ftp://portal.example.com",
                    "task_type": "custom",
                    "parameters": {"custom_selectors": ["#a"]},
                }
            },
            "http",
        ),
        ({"capabilities": {"use_vision_oracle": True}}, "Vision oracle requested"),
        ({"capabilities": {"enabled_strategies": []}}, "At least one strategy"),
        ({"output": {"recipients": ["ops@example.com"]}}, "Mailgun"),
        ({"authentication": {"identity": "ops@example.com", "secret": "   "}}, "secret"),
    ],
)
async def test_configuration_errors_escape_before_browser_launch(
    settings: Settings, tmp_path: Path, sections: dict[str, Any], message: str
) -> None:
    factory = SurfaceFactory()
    orchestrator = _orchestrator(settings, factory)

    with pytest.raises(ConfigurationError, match=message):
        await orchestrator.run(_config(tmp_path, **sections))

    assert factory.launched == []


async def test_strategy_exhaustion_becomes_failed_result(
    settings: Settings, tmp_path: Path
) -> None:
    factory = SurfaceFactory(FakeSurface(visible={"nav"}))
    orchestrator = _orchestrator(settings, factory)

    result = await orchestrator.run(_config(tmp_path))

    assert result.success is False
    assert "None of 1 selectors matched" in (result.error or "")
    assert [attempt["strategy"] for attempt in result.strategy_attempts] == [
        "learned-pattern",
        "direct",
        "vision-guided",
        "position-based",
    ]
    assert result.screenshots
    assert factory.launched[0].closed is True


async def test_authentication_failure_becomes_failed_result(
    settings: Settings, tmp_path: Path
) -> None:
    surface = FakeSurface(
        redirects={PORTAL_URL: LOGIN_URL}, visible={USERNAME, PASSWORD, SUBMIT}
    )
    factory = SurfaceFactory(surface)

    result = await _orchestrator(settings, factory).run(_config(tmp_path))

    assert result.success is False
    assert "Login did not complete" in (result.error or "")
    assert result.interaction_count == 3
    assert surface.closed is True


async def test_interaction_budget_is_never_exceeded(settings: Settings, tmp_path: Path) -> None:
    factory = SurfaceFactory(_logged_out_portal())
    config = _config(tmp_path, capabilities={"max_interactions": 4})

    result = await _orchestrator(settings, factory).run(config)

    assert result.interaction_count == 4
    assert result.budget_exhausted is True
    assert result.success is True
    assert result.patterns_learned == []
    assert len(factory.launched[0].interactions()) == 4


async def test_delivery_failure_fails_the_task(
    settings: Settings, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    dispatcher = OutputDispatcher()

    async def refused(url: str, **kwargs: Any) -> None:
        raise TransportFailure(f"POST {url} failed: connection refused")

    monkeypatch.setattr(dispatcher, "_post", refused)
    factory = SurfaceFactory(FakeSurface(visible=set(REPORT_PAGE)))
    config = _config(
        tmp_path,
        output={
            "artifact_dir": str(tmp_path / "downloads"),
            "callback_url": "https://hooks.example.com/portal",
        },
    )

    result = await _orchestrator(settings, factory, dispatcher=dispatcher).run(config)

    assert result.success is False
    assert "connection refused" in (result.error or "")
    assert factory.launched[0].closed is True


async def test_surface_launch_failure_is_reported(settings: Settings, tmp_path: Path) -> None:
    async def broken_factory(storage_state: dict[str, Any] | None) -> FakeSurface:
        raise RuntimeError("chromium missing")

    orchestrator = TaskOrchestrator(
        settings=settings,
        surface_factory=broken_factory,
        session_store=FileSessionStore(settings.session_dir),
    )

    result = await orchestrator.run(_config(tmp_path))

    assert result.success is False
    assert result.error == "chromium missing"
    assert result.interaction_count == 0


def _lead_config(tmp_path: Path, phone: str) -> TaskConfig:
    return _config(
        tmp_path,
        target={
            "url": PORTAL_URL,
            "task_type": "lead-activity",
            "parameters": {
                "lead_phone": phone,
                "search_selector": "#search",
                "result_selector": ".lead-row",
            },
        },
    )


async def test_learned_pattern_replays_with_new_task_parameters(
    settings: Settings, tmp_path: Path
) -> None:
    lead_page = {"#search", ".lead-row >> nth=0"}
    rows = ["Called 2026-02-01"]
    factory = SurfaceFactory(
        FakeSurface(visible=lead_page, evaluate_result=rows),
        FakeSurface(visible=lead_page, evaluate_result=rows),
    )
    orchestrator = _orchestrator(settings, factory)

    first = await orchestrator.run(_lead_config(tmp_path, "555-0001"))
    second = await orchestrator.run(_lead_config(tmp_path, "555-0002"))

    assert first.successful_strategy is StrategyName.DIRECT
    assert second.success is True, second.error
    assert second.successful_strategy is StrategyName.LEARNED_PATTERN
    assert second.patterns_used == first.patterns_learned
    assert factory.launched[1].interactions() == [
        ("fill", "#search", "555-0002"),
        ("click", ".lead-row >> nth=0"),
    ]


async def test_learned_report_pattern_follows_new_position(
    settings: Settings, tmp_path: Path
) -> None:
    factory = SurfaceFactory(
        FakeSurface(visible=set(REPORT_PAGE)),
        FakeSurface(visible={".report-link >> nth=2", "#download", "nav"}),
    )
    orchestrator = _orchestrator(settings, factory)
    moved_target = {
        "url": PORTAL_URL,
        "task_type": "report",
        "parameters": {
            "report_position": 3,
            "report_selector": ".report-link",
            "download_selector": "#download",
        },
    }

    await orchestrator.run(_config(tmp_path))
    result = await orchestrator.run(_config(tmp_path, target=moved_target))

    assert result.success is True, result.error
    assert result.successful_strategy is StrategyName.LEARNED_PATTERN
    assert factory.launched[1].interactions() == [
        ("click", ".report-link >> nth=2"),
        ("click", "#download"),
    ]


async def test_custom_sequence_with_wait_step(settings: Settings, tmp_path: Path) -> None:
    factory = SurfaceFactory(FakeSurface(visible={"#a"}))
    config = _config(
        tmp_path,
        target={
            "url": PORTAL_URL,
            "task_type": "custom",
            "parameters": {
                "actions": [
                    {"action": "click", "selector": "#a"},
                    {"action": "wait", "value": "500"},
                ]
            },
        },
    )

    result = await _orchestrator(settings, factory).run(config)

    assert result.success is True, result.error
    assert result.successful_strategy is StrategyName.DIRECT
    assert ("wait", 500) in factory.launched[0].calls
    assert result.interaction_count == 1
