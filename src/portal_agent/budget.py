"""Interaction budget shared by every phase of a task."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from portal_agent.errors import BudgetExhausted
from portal_agent.surface import ControllableSurface

logger = logging.getLogger(__name__)


class InteractionBudget:
    """Counts committed clicks, fills and selects against a fixed limit."""

    def __init__(self, limit: int) -> None:
        if limit < 1:
            raise ValueError("Interaction budget must allow at least one interaction")
        self.limit = limit
        self.count = 0

    @property
    def remaining(self) -> int:
        return self.limit - self.count

    @property
    def exhausted(self) -> bool:
        return self.count >= self.limit

    def ensure_available(self, kind: str) -> None:
        if self.exhausted:
            raise BudgetExhausted(
                f"Interaction budget of {self.limit} exhausted before {kind}"
            )

    def charge(self, kind: str) -> None:
        self.ensure_available(kind)
        self.count += 1
        logger.debug("event=interaction kind=%s count=%d/%d", kind, self.count, self.limit)


class BudgetedSurface:
    """Surface wrapper that refuses interactions once the budget is spent.

    A refused interaction raises ``BudgetExhausted`` before touching the page,
    so ``budget.count`` can never pass ``budget.limit``. Everything else is
    delegated unchanged.

    The keep-alive pings through this wrapper too. A ping is skipped when the
    page was used since the previous one, and interactions wait for a ping in
    flight, so pointer moves never land between a probe and its click.
    """

    def __init__(self, inner: ControllableSurface, budget: InteractionBudget) -> None:
        self.inner = inner
        self.budget = budget
        self._busy = asyncio.Lock()
        self._used_since_ping = False

    async def click(self, selector: str, **kwargs: Any) -> None:
        self.budget.ensure_available("click")
        async with self._interaction():
            await self.inner.click(selector, **kwargs)
        self.budget.charge("click")

    async def fill(self, selector: str, value: str, **kwargs: Any) -> None:
        self.budget.ensure_available("fill")
        async with self._interaction():
            await self.inner.fill(selector, value, **kwargs)
        self.budget.charge("fill")

    async def select(self, selector: str, value: str, **kwargs: Any) -> None:
        self.budget.ensure_available("select")
        async with self._interaction():
            await self.inner.select(selector, value, **kwargs)
        self.budget.charge("select")

    async def click_at(self, x: float, y: float) -> None:
        self.budget.ensure_available("click")
        async with self._interaction():
            await self.inner.click_at(x, y)
        self.budget.charge("click")

    async def ping(self) -> None:
        if self._used_since_ping or self._busy.locked():
            self._used_since_ping = False
            logger.debug("event=keep_alive_skipped reason=page_in_use")
            return
        async with self._busy:
            await self.inner.ping()

    @asynccontextmanager
    async def _interaction(self) -> AsyncIterator[None]:
        self._used_since_ping = True
        async with self._busy:
            yield

    def __getattr__(self, name: str) -> Any:
        self._used_since_ping = True
        return getattr(self.inner, name)
