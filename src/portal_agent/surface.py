"""Controllable surface: the browser operations strategies are allowed to use.

Every operation has an explicit ceiling. A missing element raises
``ElementNotFound``; an exceeded ceiling raises ``SurfaceTimeout``.
Visibility probes fold both into ``False``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from portal_agent.errors import ElementNotFound, SurfaceTimeout

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10000


class ControllableSurface(Protocol):
    def current_url(self) -> str: ...

    async def navigate(self, url: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None: ...

    async def is_visible(self, selector: str, *, timeout_ms: int = 0) -> bool: ...

    async def click(self, selector: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None: ...

    async def fill(
        self, selector: str, value: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> None: ...

    async def select(
        self, selector: str, value: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> None: ...

    async def click_at(self, x: float, y: float) -> None: ...

    async def screenshot(self, path: Path | None = None) -> bytes: ...

    async def wait(self, ms: int) -> None: ...

    async def wait_for_url(self, predicate: Callable[[str], bool], *, timeout_ms: int) -> None: ...

    async def expect_download(
        self,
        action: Callable[[], Awaitable[None]],
        *,
        save_dir: Path,
        timeout_ms: int,
    ) -> Path: ...

    async def evaluate(self, script: str) -> Any: ...

    async def storage_state(self) -> dict[str, Any]: ...

    async def ping(self) -> None: ...

    async def close(self) -> None: ...


class PlaywrightSurface:
    """Chromium page driven through playwright.async_api."""

    def __init__(
        self,
        *,
        playwright: Playwright,
        browser: Browser,
        context: BrowserContext,
        page: Page,
    ) -> None:
        self._playwright = playwright
        self._browser = browser
        self._context = context
        self.page = page

    @classmethod
    async def launch(
        cls,
        *,
        headless: bool = True,
        viewport: tuple[int, int] = (1920, 1080),
        storage_state: dict[str, Any] | None = None,
    ) -> PlaywrightSurface:
        playwright = await async_playwright().start()
        browser = await playwright.chromium.launch(
            headless=headless,
            args=["--no-sandbox", "--disable-dev-shm-usage"],
        )
        context = await browser.new_context(
            viewport={"width": viewport[0], "height": viewport[1]},
            accept_downloads=True,
            storage_state=storage_state,
        )
        page = await context.new_page()
        logger.info(
            "event=browser_launched headless=%s restored_state=%s",
            headless,
            storage_state is not None,
        )
        return cls(playwright=playwright, browser=browser, context=context, page=page)

    def current_url(self) -> str:
        return self.page.url

    async def navigate(self, url: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        try:
            await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise SurfaceTimeout(f"Navigation to {url} timed out after {timeout_ms}ms") from exc

    async def is_visible(self, selector: str, *, timeout_ms: int = 0) -> bool:
        locator = self.page.locator(selector).first
        try:
            if timeout_ms <= 0:
                return await locator.is_visible()
            await locator.wait_for(state="visible", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as exc:
            logger.debug("event=visibility_probe_error selector=%s reason=%s", selector, exc)
            return False

    async def click(self, selector: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        locator = await self._locate(selector)
        try:
            await locator.click(timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise SurfaceTimeout(f"Click on {selector} timed out after {timeout_ms}ms") from exc

    async def fill(self, selector: str, value: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> None:
        locator = await self._locate(selector)
        try:
            await locator.fill(value, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise SurfaceTimeout(f"Fill on {selector} timed out after {timeout_ms}ms") from exc

    async def select(
        self, selector: str, value: str, *, timeout_ms: int = DEFAULT_TIMEOUT_MS
    ) -> None:
        locator = await self._locate(selector)
        try:
            await locator.select_option(value, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise SurfaceTimeout(f"Select on {selector} timed out after {timeout_ms}ms") from exc

    async def click_at(self, x: float, y: float) -> None:
        await self.page.mouse.click(x, y)

    async def screenshot(self, path: Path | None = None) -> bytes:
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
        return await self.page.screenshot(path=path, full_page=True)

    async def wait(self, ms: int) -> None:
        await self.page.wait_for_timeout(ms)

    async def wait_for_url(self, predicate: Callable[[str], bool], *, timeout_ms: int) -> None:
        try:
            await self.page.wait_for_url(predicate, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise SurfaceTimeout(f"URL condition not met within {timeout_ms}ms") from exc

    async def expect_download(
        self,
        action: Callable[[], Awaitable[None]],
        *,
        save_dir: Path,
        timeout_ms: int,
    ) -> Path:
        try:
            async with self.page.expect_download(timeout=timeout_ms) as download_info:
                await action()
            download = await download_info.value
        except PlaywrightTimeoutError as exc:
            raise SurfaceTimeout(f"No download started within {timeout_ms}ms") from exc
        save_dir.mkdir(parents=True, exist_ok=True)
        target = save_dir / download.suggested_filename
        await download.save_as(target)
        logger.info("event=download_saved path=%s", target)
        return target

    async def evaluate(self, script: str) -> Any:
        return await self.page.evaluate(script)

    async def storage_state(self) -> dict[str, Any]:
        return await self._context.storage_state()

    async def ping(self) -> None:
        """Nudge the page so the server sees activity: mouse move and a 1px scroll."""
        viewport = self.page.viewport_size or {"width": 200, "height": 200}
        await self.page.mouse.move(viewport["width"] / 2, viewport["height"] / 2)
        await self.page.mouse.wheel(0, 1)
        await self.page.mouse.wheel(0, -1)

    async def close(self) -> None:
        for name, closer in (
            ("context", self._context.close),
            ("browser", self._browser.close),
            ("playwright", self._playwright.stop),
        ):
            try:
                await closer()
            except Exception as exc:  # noqa: BLE001
                logger.warning("event=surface_close_failed part=%s reason=%s", name, exc)

    async def _locate(self, selector: str):
        locator = self.page.locator(selector).first
        if await self.page.locator(selector).count() == 0:
            raise ElementNotFound(f"No element matches {selector}")
        return locator
