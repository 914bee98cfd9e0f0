"""Error taxonomy shared by every layer of a task run.

Only ``ConfigurationError`` is allowed to escape ``TaskOrchestrator.run``;
everything else is folded into a failed ``ExecutionResult``.
"""

from __future__ import annotations

from typing import Any


class AgentError(Exception):
    """Base class for all task-level failures."""


class ConfigurationError(AgentError):
    """Task configuration is missing required values or is malformed."""


class AuthenticationError(AgentError):
    """Login or second-factor indicators never cleared within their ceilings."""


class ExtractionFailure(AgentError):
    """An expected artifact (download, extracted rows) never materialized."""


class TimeoutOutcome(AgentError):
    """A bounded wait exceeded its ceiling."""


class SurfaceTimeout(TimeoutOutcome):
    """A controllable-surface operation timed out."""


class ElementNotFound(AgentError):
    """No candidate selector matched a visible element."""


class TransportFailure(AgentError):
    """An outbound call (relay, oracle, dispatch) failed at the transport level."""


class OracleContractError(TransportFailure):
    """The vision oracle answered with a payload that does not match its contract."""


class BudgetExhausted(AgentError):
    """An interaction was refused because the task budget is spent."""


class StrategyExhaustion(AgentError):
    """Every enabled strategy failed; the message is the last observed error."""

    def __init__(self, message: str, *, attempts: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []
