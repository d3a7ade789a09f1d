"""Error types raised by the hachiko engine."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional


class HachikoError(Exception):
    """Base error carrying a machine-readable ``code`` and ``details`` payload."""

    code = "HACHIKO_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details: Dict[str, Any] = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(HachikoError):
    """Invalid or missing configuration. Never retried."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)


class PolicyViolationError(HachikoError):
    """A proposed action was blocked by the policy engine."""

    code = "POLICY_VIOLATION"

    def __init__(
        self,
        message: str,
        violations: List[Any],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details={"violations": violations, **(details or {})})
        self.violations = violations


class MigrationStateError(HachikoError):
    """Invalid transition, or the migration/step does not exist."""

    code = "MIGRATION_STATE_ERROR"

    def __init__(
        self,
        message: str,
        plan_id: str,
        current_state: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            details={"plan_id": plan_id, "current_state": current_state, **(details or {})},
        )
        self.plan_id = plan_id
        self.current_state = current_state


class AgentExecutionError(HachikoError):
    """The agent dispatch collaborator failed or timed out."""

    code = "AGENT_EXECUTION_ERROR"

    def __init__(
        self, message: str, agent_name: str, details: Optional[Dict[str, Any]] = None
    ) -> None:
        super().__init__(message, details={"agent_name": agent_name, **(details or {})})
        self.agent_name = agent_name


class SignalSourceError(HachikoError):
    """Transient failure talking to a PR or document source."""

    code = "SIGNAL_SOURCE_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, details=details)


class ConventionError(HachikoError):
    """A pull request does not follow enough naming conventions."""

    code = "CONVENTION_ERROR"

    def __init__(
        self,
        message: str,
        recommendations: List[str],
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message, details={"recommendations": recommendations, **(details or {})}
        )
        self.recommendations = recommendations


NON_RETRYABLE_CODES = frozenset(
    {ConfigurationError.code, PolicyViolationError.code}
)


def is_retryable(error: BaseException) -> bool:
    """Return ``False`` for errors that must never be retried."""
    if isinstance(error, HachikoError):
        return error.code not in NON_RETRYABLE_CODES
    return True


def format_error_for_issue(error: BaseException) -> str:
    """Render ``error`` as a markdown snippet suitable for an issue comment."""
    if isinstance(error, HachikoError):
        lines = [f"**{type(error).__name__}**: {error.message}", ""]
        if error.details:
            lines.append("**Details:**")
            for key, value in error.details.items():
                lines.append(f"- {key}: {json.dumps(value, default=str)}")
            lines.append("")
        lines.append(f"**Code**: `{error.code}`")
        return "\n".join(lines)
    return f"**Error**: {error}"
