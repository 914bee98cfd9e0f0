"""Persisted browser sessions keyed by identity and host, plus keep-alive."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, Field, ValidationError

from portal_agent.surface import ControllableSurface

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


class SessionRecord(BaseModel):
    identity: str
    host: str
    browsing_state: dict[str, Any] = Field(default_factory=dict)
    saved_at: datetime


class SessionRestore(BaseModel):
    hit: bool
    browsing_state: dict[str, Any] | None = None
    saved_at: datetime | None = None


MISS = SessionRestore(hit=False)


class FileSessionStore:
    """One JSON file per (identity, host), readable only by the owner."""

    def __init__(
        self,
        directory: Path,
        *,
        max_age_s: float = 24 * 3600.0,
        keep_alive_interval_s: float = 300.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.directory = Path(directory)
        self.max_age = timedelta(seconds=max_age_s)
        self.keep_alive_interval_s = keep_alive_interval_s
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._keep_alive_task: asyncio.Task[None] | None = None

    def path_for(self, identity: str, host: str) -> Path:
        key = _UNSAFE_CHARS.sub("_", f"{identity}_{host}")
        return self.directory / f"session_{key}.json"

    def restore(self, identity: str, host: str) -> SessionRestore:
        """Return the saved state, or a miss. Never raises."""
        path = self.path_for(identity, host)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return MISS
        except OSError as exc:
            logger.warning("event=session_read_failed path=%s reason=%s", path, exc)
            return MISS

        try:
            record = SessionRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("event=session_corrupt path=%s", path)
            self._discard(path)
            return MISS

        if record.identity != identity or record.host != host:
            return MISS

        age = self._clock() - record.saved_at
        if age > self.max_age:
            logger.info("event=session_expired identity=%s host=%s", identity, host)
            self._discard(path)
            return MISS

        logger.info(
            "event=session_restored identity=%s host=%s age_s=%.0f",
            identity,
            host,
            age.total_seconds(),
        )
        return SessionRestore(hit=True, browsing_state=record.browsing_state, saved_at=record.saved_at)

    def save(self, identity: str, host: str, browsing_state: dict[str, Any]) -> SessionRecord:
        record = SessionRecord(
            identity=identity,
            host=host,
            browsing_state=browsing_state,
            saved_at=self._clock(),
        )
        self.directory.mkdir(parents=True, exist_ok=True)
        with suppress(OSError):
            os.chmod(self.directory, 0o700)

        path = self.path_for(identity, host)
        tmp_path = path.with_suffix(".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(record.model_dump_json())
        os.replace(tmp_path, path)
        logger.info("event=session_saved identity=%s host=%s", identity, host)
        return record

    def delete(self, identity: str, host: str) -> bool:
        return self._discard(self.path_for(identity, host))

    def cleanup_expired(self) -> int:
        if not self.directory.exists():
            return 0
        removed = 0
        now = self._clock()
        for path in self.directory.glob("session_*.json"):
            try:
                record = SessionRecord.model_validate_json(path.read_text(encoding="utf-8"))
            except (OSError, ValidationError):
                removed += int(self._discard(path))
                continue
            if now - record.saved_at > self.max_age:
                removed += int(self._discard(path))
        if removed:
            logger.info("event=session_cleanup removed=%d", removed)
        return removed

    def start_keep_alive(self, surface: ControllableSurface) -> None:
        if self._keep_alive_task is not None and not self._keep_alive_task.done():
            return
        self._keep_alive_task = asyncio.create_task(self._keep_alive_loop(surface))
        logger.info("event=keep_alive_started interval_s=%s", self.keep_alive_interval_s)

    async def stop_keep_alive(self) -> None:
        task, self._keep_alive_task = self._keep_alive_task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
        logger.info("event=keep_alive_stopped")

    @property
    def keep_alive_running(self) -> bool:
        return self._keep_alive_task is not None and not self._keep_alive_task.done()

    async def _keep_alive_loop(self, surface: ControllableSurface) -> None:
        while True:
            await asyncio.sleep(self.keep_alive_interval_s)
            try:
                await surface.ping()
            except Exception as exc:  # noqa: BLE001
                logger.warning("event=keep_alive_failed reason=%s", exc)

    @staticmethod
    def _discard(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("event=session_delete_failed path=%s reason=%s", path, exc)
            return False
        return True
