"""Learned-pattern store with reliability and confidence bookkeeping.

Patterns are keyed by task type and a context fingerprint of the
environment they were learned in. A pattern is only offered while both its
rolling success rate and its confidence stay above the usability
thresholds; failures recorded against it push it out of rotation.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Iterable

from portal_agent.patterns.backends import PatternBackend
from portal_agent.patterns.models import (
    RECENT_EXECUTION_WINDOW,
    ExecutionEnvironment,
    ExecutionOutcome,
    LearnedPattern,
    PatternStep,
    capabilities_for,
    context_fingerprint,
    pattern_id,
)

logger = logging.getLogger(__name__)

MIN_SUCCESS_RATE = 0.7
MIN_CONFIDENCE = 0.6
INITIAL_CONFIDENCE = 0.8

PRUNE_MIN_SUCCESS_RATE = 0.3
PRUNE_MIN_EXECUTIONS = 10
STALE_AFTER = timedelta(days=180)
STALE_MIN_EXECUTIONS = 3


class PatternStore:
    def __init__(
        self,
        backend: PatternBackend,
        *,
        min_success_rate: float = MIN_SUCCESS_RATE,
        min_confidence: float = MIN_CONFIDENCE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.backend = backend
        self.min_success_rate = min_success_rate
        self.min_confidence = min_confidence
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self.backend.migrate()
        self._patterns: dict[str, LearnedPattern] = {
            pattern.id: pattern for pattern in self.backend.load_all()
        }

    def store_pattern(
        self,
        task_type: str,
        action_sequence: list[PatternStep],
        observed_selectors: Iterable[str],
        outcome: ExecutionOutcome,
        environment: ExecutionEnvironment,
        *,
        task_signature: str = "",
    ) -> str:
        """Persist a sequence that just succeeded; repeats count as executions.

        ``task_signature`` ties steps that were not recorded from a sub-action
        to the interpretation that produced them.
        """
        if not action_sequence:
            raise ValueError("Cannot store an empty action sequence")
        fingerprint = context_fingerprint(task_type, environment)
        new_id = pattern_id(task_type, fingerprint, action_sequence)

        if new_id in self._patterns:
            self.update_pattern_after_execution(new_id, outcome)
            return new_id

        now = self._clock()
        pattern = LearnedPattern(
            id=new_id,
            task_type=task_type,
            context_fingerprint=fingerprint,
            action_sequence=sorted(action_sequence, key=lambda step: step.order),
            confidence=INITIAL_CONFIDENCE,
            success_rate=1.0 if outcome.success else 0.0,
            last_used_at=now,
            created_at=now,
            total_executions=1,
            successful_executions=int(outcome.success),
            average_execution_ms=outcome.execution_ms,
            required_capabilities=capabilities_for(action_sequence),
            observed_selectors=sorted(set(observed_selectors)),
            recent_executions=[outcome],
            task_signature=task_signature,
        )
        self._persist(pattern)
        logger.info(
            "event=pattern_stored id=%s task_type=%s steps=%d",
            new_id,
            task_type,
            len(action_sequence),
        )
        return new_id

    def get_best_pattern(
        self,
        task_type: str,
        environment: ExecutionEnvironment,
        required_capabilities: Iterable[str] = (),
        *,
        accept: Callable[[LearnedPattern], bool] | None = None,
    ) -> LearnedPattern | None:
        fingerprint = context_fingerprint(task_type, environment)
        required = set(required_capabilities)
        candidates = [
            pattern
            for pattern in self._patterns.values()
            if pattern.task_type == task_type
            and pattern.context_fingerprint == fingerprint
            and required.issubset(pattern.required_capabilities)
            and self.is_usable(pattern)
            and (accept is None or accept(pattern))
        ]
        if not candidates:
            return None
        best = max(
            candidates,
            key=lambda pattern: (pattern.confidence, pattern.success_rate, pattern.last_used_at),
        )
        return best.model_copy(deep=True)

    def is_usable(self, pattern: LearnedPattern) -> bool:
        return (
            pattern.success_rate >= self.min_success_rate
            and pattern.confidence >= self.min_confidence
        )

    def get_pattern(self, pattern_id_: str) -> LearnedPattern | None:
        pattern = self._patterns.get(pattern_id_)
        return pattern.model_copy(deep=True) if pattern else None

    def update_pattern_after_execution(
        self, pattern_id_: str, outcome: ExecutionOutcome
    ) -> LearnedPattern | None:
        current = self._patterns.get(pattern_id_)
        if current is None:
            logger.warning("event=pattern_update_unknown id=%s", pattern_id_)
            return None

        pattern = current.model_copy(deep=True)
        pattern.recent_executions = [*pattern.recent_executions, outcome][-RECENT_EXECUTION_WINDOW:]
        pattern.total_executions += 1
        pattern.successful_executions += int(outcome.success)
        window = pattern.recent_executions
        pattern.success_rate = sum(1 for item in window if item.success) / len(window)
        pattern.average_execution_ms += (
            outcome.execution_ms - pattern.average_execution_ms
        ) / pattern.total_executions
        pattern.last_used_at = self._clock()
        pattern.confidence = self._confidence(pattern)

        self._persist(pattern)
        logger.info(
            "event=pattern_updated id=%s success=%s success_rate=%.3f confidence=%.3f",
            pattern.id,
            outcome.success,
            pattern.success_rate,
            pattern.confidence,
        )
        return pattern.model_copy(deep=True)

    def prune(self) -> list[str]:
        """Drop patterns that keep failing or were tried a few times long ago."""
        now = self._clock()
        doomed = [
            pattern.id
            for pattern in self._patterns.values()
            if (
                pattern.success_rate < PRUNE_MIN_SUCCESS_RATE
                and pattern.total_executions >= PRUNE_MIN_EXECUTIONS
            )
            or (
                now - pattern.last_used_at > STALE_AFTER
                and pattern.total_executions < STALE_MIN_EXECUTIONS
            )
        ]
        for pattern_id_ in doomed:
            self.backend.delete(pattern_id_)
            del self._patterns[pattern_id_]
        if doomed:
            logger.info("event=patterns_pruned count=%d", len(doomed))
        return doomed

    def statistics(self) -> dict[str, Any]:
        patterns = list(self._patterns.values())
        by_task_type: dict[str, int] = {}
        for pattern in patterns:
            by_task_type[pattern.task_type] = by_task_type.get(pattern.task_type, 0) + 1
        top = sorted(
            patterns,
            key=lambda pattern: (pattern.success_rate * pattern.confidence, pattern.total_executions),
            reverse=True,
        )[:5]
        return {
            "total_patterns": len(patterns),
            "usable_patterns": sum(1 for pattern in patterns if self.is_usable(pattern)),
            "by_task_type": by_task_type,
            "total_executions": sum(pattern.total_executions for pattern in patterns),
            "average_success_rate": (
                round(sum(pattern.success_rate for pattern in patterns) / len(patterns), 4)
                if patterns
                else 0.0
            ),
            "top_performers": [
                {
                    "id": pattern.id,
                    "task_type": pattern.task_type,
                    "success_rate": pattern.success_rate,
                    "confidence": pattern.confidence,
                    "total_executions": pattern.total_executions,
                }
                for pattern in top
            ],
        }

    def export_patterns(self, path: Path) -> int:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        document = {
            "exported_at": self._clock().isoformat(),
            "patterns": [pattern.model_dump(mode="json") for pattern in self._patterns.values()],
        }
        path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        return len(document["patterns"])

    def import_patterns(self, path: Path, *, overwrite: bool = False) -> int:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        imported = 0
        for item in raw.get("patterns", []):
            pattern = LearnedPattern.model_validate(item)
            if pattern.id in self._patterns and not overwrite:
                continue
            self._persist(pattern)
            imported += 1
        logger.info("event=patterns_imported count=%d overwrite=%s", imported, overwrite)
        return imported

    def _confidence(self, pattern: LearnedPattern) -> float:
        experience = min(pattern.total_executions / 10.0, 0.1)
        age = self._clock() - pattern.last_used_at
        if age <= timedelta(days=7):
            recency = 0.05
        elif age <= timedelta(days=30):
            recency = 0.02
        else:
            recency = 0.0
        return round(min(pattern.success_rate + experience + recency, 1.0), 4)

    def _persist(self, pattern: LearnedPattern) -> None:
        self.backend.save(pattern)
        self._patterns[pattern.id] = pattern
