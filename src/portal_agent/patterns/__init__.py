"""Learned action patterns and their persistence backends."""

from portal_agent.patterns.backends import (
    InMemoryPatternBackend,
    JsonFilePatternBackend,
    PatternBackend,
    PostgresPatternBackend,
    build_pattern_backend,
)
from portal_agent.patterns.models import (
    ExecutionEnvironment,
    ExecutionOutcome,
    LearnedPattern,
    PatternStep,
    StepTarget,
    context_fingerprint,
)
from portal_agent.patterns.store import PatternStore

__all__ = [
    "ExecutionEnvironment",
    "ExecutionOutcome",
    "InMemoryPatternBackend",
    "JsonFilePatternBackend",
    "LearnedPattern",
    "PatternBackend",
    "PatternStep",
    "PatternStore",
    "PostgresPatternBackend",
    "StepTarget",
    "build_pattern_backend",
    "context_fingerprint",
]
