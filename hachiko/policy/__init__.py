"""Rule-based policy gate for agent actions."""

from __future__ import annotations

from .engine import (
    PolicyEngine,
    UnresolvedField,
    deep_equal,
    evaluate_condition,
    glob_match,
    normalize_path,
    resolve_field,
)
from .models import (
    ContainsCondition,
    EqualityCondition,
    GlobCondition,
    NumericCondition,
    PolicyAction,
    PolicyCondition,
    PolicyContext,
    PolicyEvaluationResult,
    PolicyRule,
    PolicyRuleType,
    PolicySeverity,
    PolicyViolation,
    RepositoryInfo,
    ResourceUsage,
    UserInfo,
)
from .rules import build_builtin_rules

__all__ = [
    "ContainsCondition",
    "EqualityCondition",
    "GlobCondition",
    "NumericCondition",
    "PolicyAction",
    "PolicyCondition",
    "PolicyContext",
    "PolicyEngine",
    "PolicyEvaluationResult",
    "PolicyRule",
    "PolicyRuleType",
    "PolicySeverity",
    "PolicyViolation",
    "RepositoryInfo",
    "ResourceUsage",
    "UnresolvedField",
    "UserInfo",
    "build_builtin_rules",
    "deep_equal",
    "evaluate_condition",
    "glob_match",
    "normalize_path",
    "resolve_field",
]
