from __future__ import annotations

from typing import Any

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from portal_agent.errors import ElementNotFound, SurfaceTimeout
from portal_agent.surface import PlaywrightSurface


class FakeLocator:
    def __init__(self, page: FakePage, selector: str) -> None:
        self.page = page
        self.selector = selector

    @property
    def first(self) -> FakeLocator:
        return self

    async def count(self) -> int:
        return 1 if self.selector in self.page.present else 0

    async def is_visible(self) -> bool:
        return self.selector in self.page.present

    async def wait_for(self, *, state: str, timeout: int) -> None:
        if self.selector not in self.page.present:
            raise PlaywrightTimeoutError(f"waiting for {self.selector}")

    async def click(self, *, timeout: int) -> None:
        if self.selector in self.page.slow:
            raise PlaywrightTimeoutError(f"click {self.selector}")
        self.page.actions.append(("click", self.selector))

    async def fill(self, value: str, *, timeout: int) -> None:
        self.page.actions.append(("fill", self.selector, value))


class FakeMouse:
    def __init__(self, page: FakePage) -> None:
        self.page = page

    async def move(self, x: float, y: float) -> None:
        self.page.actions.append(("move", x, y))

    async def wheel(self, dx: float, dy: float) -> None:
        self.page.actions.append(("wheel", dy))


class FakePage:
    def __init__(self, present: set[str], slow: set[str] | None = None) -> None:
        self.present = present
        self.slow = slow or set()
        self.actions: list[tuple[Any, ...]] = []
        self.url = "https://portal.example.com/"
        self.viewport_size = {"width": 1000, "height": 800}
        self.mouse = FakeMouse(self)

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    async def goto(self, url: str, *, wait_until: str, timeout: int) -> None:
        raise PlaywrightTimeoutError("navigation timeout")


class Closable:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.closed = False

    async def close(self) -> None:
        self.closed = True
        if self.fail:
            raise RuntimeError("already closed")

    async def stop(self) -> None:
        self.closed = True


def _surface(page: FakePage, *, browser: Closable | None = None) -> tuple[PlaywrightSurface, dict]:
    parts = {"playwright": Closable(), "browser": browser or Closable(), "context": Closable()}
    surface = PlaywrightSurface(
        playwright=parts["playwright"],
        browser=parts["browser"],
        context=parts["context"],
        page=page,
    )
    return surface, parts


async def test_visibility_probe_folds_timeouts_into_false() -> None:
    surface, _ = _surface(FakePage(present={"#ok"}))

    assert await surface.is_visible("#ok") is True
    assert await surface.is_visible("#ok", timeout_ms=100) is True
    assert await surface.is_visible("#missing", timeout_ms=100) is False


async def test_click_maps_missing_element_and_timeout() -> None:
    page = FakePage(present={"#ok", "#slow"}, slow={"#slow"})
    surface, _ = _surface(page)

    await surface.click("#ok")
    with pytest.raises(ElementNotFound):
        await surface.click("#missing")
    with pytest.raises(SurfaceTimeout, match="#slow"):
        await surface.click("#slow", timeout_ms=50)

    assert page.actions == [("click", "#ok")]


async def test_navigation_timeout() -> None:
    surface, _ = _surface(FakePage(present=set()))

    with pytest.raises(SurfaceTimeout, match="Navigation"):
        await surface.navigate("https://portal.example.com/slow", timeout_ms=10)


async def test_ping_moves_and_scrolls_back() -> None:
    page = FakePage(present=set())
    surface, _ = _surface(page)

    await surface.ping()

    assert page.actions == [("move", 500.0, 400.0), ("wheel", 1), ("wheel", -1)]


async def test_close_continues_past_failures() -> None:
    surface, parts = _surface(FakePage(present=set()), browser=Closable(fail=True))

    await surface.close()

    assert all(part.closed for part in parts.values())
