"""Error taxonomy shared by the guardrails, executor, verifier and lifecycle."""

from __future__ import annotations

from typing import Any, Mapping


class AgentError(RuntimeError):
    """Base class for every failure the engine surfaces to its callers."""

    category = "internal"

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})


class GuardrailViolation(AgentError):
    """Raised when a plan breaks a safety rule; always before any mutation."""

    category = "guardrail"

    def __init__(
        self,
        rule: str,
        message: str,
        *,
        op_id: str | None = None,
        path: str | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        prefix = f"[{rule}]"
        if op_id:
            prefix = f"{prefix} op {op_id}"
        super().__init__(f"{prefix}: {message}", details=details)
        self.rule = rule
        self.op_id = op_id
        self.path = path
        self.details.setdefault("rule", rule)
        if op_id is not None:
            self.details.setdefault("op_id", op_id)
        if path is not None:
            self.details.setdefault("path", path)


class ExecutionError(AgentError):
    """Raised when applying operations fails or produces no changes."""

    category = "execution"


class VerificationFailure(AgentError):
    """Raised when a verification gate blocks progress."""

    category = "verification"


class VersionControlError(AgentError):
    """Raised when git state prevents an operation (dirty tree, conflicts, missing branch)."""

    category = "version_control"


class MergeBlocked(VersionControlError):
    """Raised when ``merge`` refuses to run because its gate is not satisfied."""


class ConfigError(AgentError):
    """Raised when the agent configuration cannot be loaded."""

    category = "config"


class PlannerError(AgentError):
    """Raised when the planner collaborator fails to produce a plan."""

    category = "planner"


__all__ = [
    "AgentError",
    "ConfigError",
    "ExecutionError",
    "GuardrailViolation",
    "MergeBlocked",
    "PlannerError",
    "VerificationFailure",
    "VersionControlError",
]
