"""Test doubles for the browser surface, vision oracle and relay client."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable

from portal_agent.errors import ElementNotFound, OracleContractError, SurfaceTimeout, TransportFailure
from portal_agent.models import TaskInterpretation
from portal_agent.oracle import ActionProposal, CompletionVerdict, LoginAnalysis
from portal_agent.otp.client import RelayCode


class MutableClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeSurface:
    """In-memory page: a URL, a set of visible selectors and a call log.

    ``on_click`` maps a selector to a hook run after the click lands, which
    lets a test move the page (e.g. submit a login form).
    """

    def __init__(
        self,
        *,
        url: str = "about:blank",
        visible: set[str] | None = None,
        redirects: dict[str, str] | None = None,
        download_name: str | None = "report.csv",
        evaluate_result: Any = None,
        on_click: dict[str, Callable[[FakeSurface], None]] | None = None,
    ) -> None:
        self.url = url
        self.visible = set(visible or ())
        self.redirects = dict(redirects or {})
        self.download_name = download_name
        self.evaluate_result = evaluate_result
        self.on_click = dict(on_click or {})
        self.calls: list[tuple[Any, ...]] = []
        self.pings = 0
        self.closed = False
        self.fail_screenshots = False

    def current_url(self) -> str:
        return self.url

    async def navigate(self, url: str, *, timeout_ms: int = 10000) -> None:
        self.calls.append(("navigate", url))
        self.url = self.redirects.get(url, url)

    async def is_visible(self, selector: str, *, timeout_ms: int = 0) -> bool:
        return selector in self.visible

    async def click(self, selector: str, *, timeout_ms: int = 10000) -> None:
        self._require(selector)
        self.calls.append(("click", selector))
        hook = self.on_click.get(selector)
        if hook is not None:
            hook(self)

    async def fill(self, selector: str, value: str, *, timeout_ms: int = 10000) -> None:
        self._require(selector)
        self.calls.append(("fill", selector, value))

    async def select(self, selector: str, value: str, *, timeout_ms: int = 10000) -> None:
        self._require(selector)
        self.calls.append(("select", selector, value))

    async def click_at(self, x: float, y: float) -> None:
        self.calls.append(("click_at", x, y))

    async def screenshot(self, path: Path | None = None) -> bytes:
        if self.fail_screenshots:
            raise SurfaceTimeout("screenshot timed out")
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(b"png")
        return b"png"

    async def wait(self, ms: int) -> None:
        self.calls.append(("wait", ms))

    async def wait_for_url(self, predicate: Callable[[str], bool], *, timeout_ms: int) -> None:
        if not predicate(self.url):
            raise SurfaceTimeout(f"URL condition not met within {timeout_ms}ms")

    async def expect_download(
        self,
        action: Callable[[], Awaitable[None]],
        *,
        save_dir: Path,
        timeout_ms: int,
    ) -> Path:
        await action()
        if self.download_name is None:
            raise SurfaceTimeout(f"No download started within {timeout_ms}ms")
        save_dir.mkdir(parents=True, exist_ok=True)
        target = save_dir / self.download_name
        target.write_text("id,name\n1,Ada\n", encoding="utf-8")
        return target

    async def evaluate(self, script: str) -> Any:
        self.calls.append(("evaluate",))
        return self.evaluate_result

    async def storage_state(self) -> dict[str, Any]:
        return {"cookies": [{"name": "sid", "value": "abc", "domain": "portal.example.com"}]}

    async def ping(self) -> None:
        self.pings += 1

    async def close(self) -> None:
        self.closed = True

    def interactions(self) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] in {"click", "fill", "select", "click_at"}]

    def _require(self, selector: str) -> None:
        if selector not in self.visible:
            raise ElementNotFound(f"No element matches {selector}")


class FakeOracle:
    """Scripted oracle. Queued items that are exceptions are raised."""

    def __init__(
        self,
        *,
        proposals: list[ActionProposal | Exception] | None = None,
        verdicts: list[CompletionVerdict | Exception] | None = None,
        login: LoginAnalysis | None = None,
        interpretation: TaskInterpretation | None = None,
    ) -> None:
        self.proposals = list(proposals or [])
        self.verdicts = list(verdicts or [])
        self.login = login
        self.interpretation = interpretation
        self.calls: list[str] = []
        self.histories: list[list[str]] = []

    async def propose_action(
        self,
        snapshot: bytes,
        *,
        instruction: str,
        history: list[str] | None = None,
        allowed_actions: tuple[str, ...] = (),
    ) -> ActionProposal:
        self.calls.append("propose_action")
        self.histories.append(list(history or []))
        item = (
            self.proposals.pop(0)
            if self.proposals
            else ActionProposal(action="done", confidence=1.0)
        )
        if isinstance(item, Exception):
            raise item
        return item

    async def verify_completion(
        self, snapshot: bytes, *, success_criteria: tuple[str, ...], description: str
    ) -> CompletionVerdict:
        self.calls.append("verify_completion")
        item = (
            self.verdicts.pop(0)
            if self.verdicts
            else CompletionVerdict(complete=False, confidence=0.4)
        )
        if isinstance(item, Exception):
            raise item
        return item

    async def analyze_login(self, snapshot: bytes) -> LoginAnalysis:
        self.calls.append("analyze_login")
        if self.login is None:
            raise OracleContractError("no login form recognised")
        return self.login

    async def interpret_task(self, instruction: str, *, url: str) -> TaskInterpretation:
        self.calls.append("interpret_task")
        if self.interpretation is None:
            raise TransportFailure("oracle offline")
        return self.interpretation


class FakeRelayClient:
    def __init__(self, responses: list[RelayCode | Exception | None] | None = None) -> None:
        self.responses = list(responses or [])
        self.requests: list[dict[str, Any]] = []

    async def fetch_latest(self, *, min_age_ms: int = 0, claim: bool = True) -> RelayCode | None:
        self.requests.append({"min_age_ms": min_age_ms, "claim": claim})
        item = self.responses.pop(0) if self.responses else None
        if isinstance(item, Exception):
            raise item
        return item


def relay_code(code: str = "482913", code_id: str = "code_1") -> RelayCode:
    return RelayCode(
        id=code_id,
        code=code,
        timestamp=1_770_000_000_000,
        sender="noreply@portal.example.com",
        subject="Your verification code",
    )
