"""Thread-safe in-memory store of one-time codes with TTL expiry."""

from __future__ import annotations

import logging
import secrets
import threading
from datetime import UTC, datetime, timedelta
from typing import Callable

from pydantic import BaseModel

logger = logging.getLogger(__name__)

DEFAULT_TTL_S = 600.0
BODY_EXCERPT_CHARS = 100


class OTPEntry(BaseModel):
    """One harvested code. Unretrievable once used or expired."""

    id: str
    code: str
    sender: str
    subject: str
    body_excerpt: str = ""
    created_at: datetime
    expires_at: datetime
    used: bool = False

    def is_available(self, now: datetime) -> bool:
        return not self.used and now < self.expires_at

    def age_ms(self, now: datetime) -> float:
        return (now - self.created_at).total_seconds() * 1000.0


class OTPStore:
    """Shared code store.

    Every operation holds one lock so that webhook deliveries and polling
    readers never interleave; ``claim_latest_code`` performs lookup and
    mark-used under a single acquisition.
    """

    def __init__(
        self,
        *,
        ttl_s: float = DEFAULT_TTL_S,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.ttl = timedelta(seconds=ttl_s)
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._entries: dict[str, OTPEntry] = {}
        self._lock = threading.Lock()

    def add_code(self, code: str, sender: str, subject: str, body_excerpt: str = "") -> str:
        with self._lock:
            now = self._clock()
            entry_id = f"code_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"
            self._entries[entry_id] = OTPEntry(
                id=entry_id,
                code=code,
                sender=sender,
                subject=subject,
                body_excerpt=_excerpt(body_excerpt),
                created_at=now,
                expires_at=now + self.ttl,
            )
            self._sweep(now)
        logger.info("event=otp_stored id=%s sender=%s", entry_id, sender)
        return entry_id

    def get_latest_code(self, min_age_ms: float = 0) -> OTPEntry | None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._latest(now, min_age_ms)
            return entry.model_copy() if entry else None

    def claim_latest_code(self, min_age_ms: float = 0) -> OTPEntry | None:
        """Return the latest available entry and mark it used atomically."""
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entry = self._latest(now, min_age_ms)
            if entry is None:
                return None
            entry.used = True
            claimed = entry.model_copy()
        logger.info("event=otp_claimed id=%s", claimed.id)
        return claimed

    def mark_used(self, entry_id: str) -> bool:
        with self._lock:
            self._sweep(self._clock())
            entry = self._entries.get(entry_id)
            if entry is None:
                return False
            entry.used = True
        logger.info("event=otp_marked_used id=%s", entry_id)
        return True

    def cleanup(self) -> int:
        with self._lock:
            removed = self._sweep(self._clock())
        if removed:
            logger.info("event=otp_cleanup removed=%d", removed)
        return removed

    def stats(self) -> dict[str, int]:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            entries = list(self._entries.values())
        return {
            "total": len(entries),
            "active": sum(1 for entry in entries if entry.is_available(now)),
            "used": sum(1 for entry in entries if entry.used),
        }

    def list_entries(self) -> list[OTPEntry]:
        with self._lock:
            self._sweep(self._clock())
            return [entry.model_copy() for entry in self._entries.values()]

    def _latest(self, now: datetime, min_age_ms: float) -> OTPEntry | None:
        best: OTPEntry | None = None
        # Insertion order breaks created_at ties in favor of the newer entry.
        for entry in self._entries.values():
            if not entry.is_available(now) or entry.age_ms(now) < min_age_ms:
                continue
            if best is None or entry.created_at >= best.created_at:
                best = entry
        return best

    def _sweep(self, now: datetime) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)


def _excerpt(body: str) -> str:
    if len(body) <= BODY_EXCERPT_CHARS:
        return body
    return body[:BODY_EXCERPT_CHARS] + "..."
