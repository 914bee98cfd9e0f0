"""Persistence backends for learned patterns."""

from __future__ import annotations

import json
import os
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from portal_agent.patterns.models import LearnedPattern


class PatternBackend(Protocol):
    def migrate(self) -> None: ...

    def load_all(self) -> list[LearnedPattern]: ...

    def save(self, pattern: LearnedPattern) -> None: ...

    def delete(self, pattern_id: str) -> None: ...


class InMemoryPatternBackend:
    """Volatile backend for tests and one-off runs."""

    def __init__(self) -> None:
        self._patterns: dict[str, LearnedPattern] = {}

    def migrate(self) -> None:
        return None

    def load_all(self) -> list[LearnedPattern]:
        return [pattern.model_copy(deep=True) for pattern in self._patterns.values()]

    def save(self, pattern: LearnedPattern) -> None:
        self._patterns[pattern.id] = pattern.model_copy(deep=True)

    def delete(self, pattern_id: str) -> None:
        self._patterns.pop(pattern_id, None)


class JsonFilePatternBackend:
    """Single JSON document rewritten atomically on every change."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def migrate(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load_all(self) -> list[LearnedPattern]:
        with self._lock:
            return list(self._read().values())

    def save(self, pattern: LearnedPattern) -> None:
        with self._lock:
            patterns = self._read()
            patterns[pattern.id] = pattern
            self._write(patterns)

    def delete(self, pattern_id: str) -> None:
        with self._lock:
            patterns = self._read()
            if patterns.pop(pattern_id, None) is not None:
                self._write(patterns)

    def _read(self) -> dict[str, LearnedPattern]:
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"Pattern file {self.path} is not valid JSON") from exc
        items = raw.get("patterns", []) if isinstance(raw, dict) else []
        patterns = [LearnedPattern.model_validate(item) for item in items]
        return {pattern.id: pattern for pattern in patterns}

    def _write(self, patterns: dict[str, LearnedPattern]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "version": 1,
            "updated_at": datetime.now(tz=UTC).isoformat(),
            "patterns": [pattern.model_dump(mode="json") for pattern in patterns.values()],
        }
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)


class PostgresPatternBackend:
    """Persist learned patterns in PostgreSQL as JSONB documents."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("PORTAL_AGENT_DATABASE_URL is required for the postgres backend")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS learned_patterns (
                    pattern_id TEXT PRIMARY KEY,
                    task_type TEXT NOT NULL,
                    context_fingerprint TEXT NOT NULL,
                    success_rate DOUBLE PRECISION NOT NULL,
                    confidence DOUBLE PRECISION NOT NULL,
                    pattern_json JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_learned_patterns_lookup
                ON learned_patterns(task_type, context_fingerprint)
                """)
            conn.commit()

    def load_all(self) -> list[LearnedPattern]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT pattern_json
                FROM learned_patterns
                ORDER BY updated_at DESC
                """
            ).fetchall()
        return [LearnedPattern.model_validate(self._as_dict(row["pattern_json"])) for row in rows]

    def save(self, pattern: LearnedPattern) -> None:
        payload = self._json_wrapper(pattern.model_dump(mode="json"))
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO learned_patterns (
                    pattern_id,
                    task_type,
                    context_fingerprint,
                    success_rate,
                    confidence,
                    pattern_json,
                    updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (pattern_id) DO UPDATE SET
                    success_rate = EXCLUDED.success_rate,
                    confidence = EXCLUDED.confidence,
                    pattern_json = EXCLUDED.pattern_json,
                    updated_at = EXCLUDED.updated_at
                """,
                (
                    pattern.id,
                    pattern.task_type,
                    pattern.context_fingerprint,
                    pattern.success_rate,
                    pattern.confidence,
                    payload,
                    datetime.now(tz=UTC),
                ),
            )
            conn.commit()

    def delete(self, pattern_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM learned_patterns WHERE pattern_id = %s", (pattern_id,))
            conn.commit()

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _as_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            return json.loads(value)
        return value

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "The postgres pattern backend requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.1,<4.0"'
            ) from exc
        return psycopg, dict_row, Json


def build_pattern_backend(
    kind: str,
    *,
    path: Path | None = None,
    database_url: str = "",
) -> PatternBackend:
    kind = kind.lower()
    if kind == "memory":
        return InMemoryPatternBackend()
    if kind == "json":
        if path is None:
            raise ValueError("A patterns path is required for the json backend")
        return JsonFilePatternBackend(path)
    if kind == "postgres":
        return PostgresPatternBackend(database_url)
    raise ValueError(f"Unknown pattern backend: {kind}")
