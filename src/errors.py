"""
Error taxonomy for the sub-agent pipeline.

Admission errors encode safety limits and always reach the caller.
Provider and timeout failures are turned into failed results by the
orchestrator; parse failures never leave the response normalizer.
"""

from __future__ import annotations


class SubAgentError(Exception):
    """Base class for all pipeline errors."""

    recoverable: bool = False


class ConfigError(SubAgentError):
    """Configuration value out of range or malformed."""


class AdmissionError(SubAgentError):
    """A request was refused because it would break a configured limit."""

    def __init__(self, message: str, session_id: str | None = None, limit: int | None = None):
        super().__init__(message)
        self.session_id = session_id
        self.limit = limit


class DepthExceeded(AdmissionError):
    """Spawning would nest deeper than the configured maximum depth."""


class CallBudgetExceeded(AdmissionError):
    """The session has used its total call budget."""


class RefinementBudgetExceeded(AdmissionError):
    """The task has been refined the maximum number of times."""


class SubAgentCannotSpawn(AdmissionError):
    """A sub-agent session tried to create its own child session."""


class ParallelLimitExceeded(AdmissionError):
    """More parallel agents requested than the configured maximum."""


class SessionNotFound(SubAgentError):
    """No active session with the given id."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class RoleNotFound(SubAgentError):
    """The role catalog has no definition for the requested role."""

    def __init__(self, role: str):
        super().__init__(f"Role not found: {role}")
        self.role = role


class ProviderError(SubAgentError):
    """LLM provider call failed."""

    def __init__(self, message: str, recoverable: bool = False, provider: str | None = None):
        super().__init__(message)
        self.recoverable = recoverable
        self.provider = provider


class IntegrityViolation(SubAgentError):
    """Compressed context lost task requirements or too much content."""

    def __init__(self, message: str, issues: list[str] | None = None):
        super().__init__(message)
        self.issues = issues or []


__all__ = [
    "SubAgentError",
    "ConfigError",
    "AdmissionError",
    "DepthExceeded",
    "CallBudgetExceeded",
    "RefinementBudgetExceeded",
    "SubAgentCannotSpawn",
    "ParallelLimitExceeded",
    "SessionNotFound",
    "RoleNotFound",
    "ProviderError",
    "IntegrityViolation",
]
