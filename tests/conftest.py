from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from fakes import MutableClock

from portal_agent.api.main import create_app
from portal_agent.config.settings import Settings
from portal_agent.otp.store import OTPStore


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        session_dir=tmp_path / "sessions",
        patterns_path=tmp_path / "patterns.json",
        pattern_backend="memory",
        screenshot_dir=tmp_path / "screenshots",
        settle_delay_ms=0,
        otp_poll_interval_s=0.01,
        otp_timeout_s=0.05,
        openai_api_key="",
        mailgun_api_key="",
        mailgun_domain="",
    )


@pytest.fixture
def otp_store(clock: MutableClock) -> OTPStore:
    return OTPStore(ttl_s=600, clock=clock)


@pytest.fixture
def relay_client(otp_store: OTPStore, settings: Settings) -> TestClient:
    app = create_app(store=otp_store, settings_override=settings)
    with TestClient(app) as test_client:
        yield test_client
