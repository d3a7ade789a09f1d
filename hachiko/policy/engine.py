"""Runtime policy enforcement for agent actions."""

from __future__ import annotations

import logging
import math
import os
import posixpath
import re
from fnmatch import fnmatchcase
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ValidationError

from ..config import HachikoConfig, PolicyConfig
from ..exceptions import ConfigurationError, PolicyViolationError
from .models import (
    ContainsCondition,
    EqualityCondition,
    GlobCondition,
    NumericCondition,
    PolicyCondition,
    PolicyContext,
    PolicyEvaluationResult,
    PolicyRule,
    PolicyViolation,
)
from .rules import build_builtin_rules

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


class UnresolvedField(LookupError):
    """A condition's field path does not exist in the context."""


def resolve_field(context: Any, path: str) -> Any:
    """Follow a dotted ``path`` through models and mappings.

    camelCase segments fall back to their snake_case attribute, so
    ``resourceUsage.timeout`` and ``resource_usage.timeout`` are equivalent.

    Raises:
        UnresolvedField: If a segment is missing or the value is ``None``.
    """
    value = context
    for part in path.split("."):
        if value is None:
            raise UnresolvedField(path)
        candidates = (part, _CAMEL_RE.sub("_", part).lower())
        if isinstance(value, BaseModel):
            fields = type(value).model_fields
            name = next((c for c in candidates if c in fields), None)
            if name is None:
                raise UnresolvedField(path)
            value = getattr(value, name)
        elif isinstance(value, dict):
            name = next((c for c in candidates if c in value), None)
            if name is None:
                raise UnresolvedField(path)
            value = value[name]
        else:
            raise UnresolvedField(path)
    if value is None:
        raise UnresolvedField(path)
    return value


def normalize_path(path: str) -> Optional[str]:
    """Collapse ``.`` and ``..`` segments of a repository-relative path.

    Returns ``None`` for absolute paths and paths that leave the repository.
    """
    path = path.replace("\\", "/")
    if not path or path.startswith("/"):
        return None
    normalized = posixpath.normpath(path)
    if normalized == ".." or normalized.startswith("../"):
        return None
    return normalized


def _match_segments(parts: List[str], patterns: List[str]) -> bool:
    if not patterns:
        return not parts
    head, rest = patterns[0], patterns[1:]
    if head == "**":
        return any(_match_segments(parts[i:], rest) for i in range(len(parts) + 1))
    return bool(parts) and fnmatchcase(parts[0], head) and _match_segments(parts[1:], rest)


def glob_match(path: str, pattern: str) -> bool:
    """Match ``path`` against ``pattern`` one path segment at a time.

    ``*`` and ``?`` never cross a ``/``; a ``**`` segment matches zero or more
    whole segments. Paths outside the repository match nothing.
    """
    normalized = normalize_path(path)
    if normalized is None:
        return False
    patterns = [p for p in pattern.split("/") if p not in ("", ".")]
    return _match_segments(normalized.split("/"), patterns)


def _as_items(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


def _plain(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    return value


def deep_equal(actual: Any, expected: Any) -> bool:
    """Structural equality; sequences compare as multisets."""
    actual, expected = _plain(actual), _plain(expected)
    if isinstance(actual, (list, tuple)) and isinstance(expected, (list, tuple)):
        if len(actual) != len(expected):
            return False
        remaining = list(expected)
        for item in actual:
            for index, candidate in enumerate(remaining):
                if deep_equal(item, candidate):
                    del remaining[index]
                    break
            else:
                return False
        return True
    if isinstance(actual, dict) and isinstance(expected, dict):
        return actual.keys() == expected.keys() and all(
            deep_equal(actual[key], expected[key]) for key in actual
        )
    return actual == expected


def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return math.nan
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return math.nan
    return math.nan


def evaluate_condition(condition: PolicyCondition, context: PolicyContext) -> bool:
    """Return whether ``condition`` holds for ``context``.

    Raises:
        UnresolvedField: If the condition's field is not present.
    """
    actual = resolve_field(context, condition.field)

    if isinstance(condition, EqualityCondition):
        equal = deep_equal(actual, condition.value)
        return equal if condition.operator == "equals" else not equal

    if isinstance(condition, GlobCondition):
        items = [str(item) for item in _as_items(actual)]
        if condition.operator == "matches":
            return any(glob_match(item, p) for item in items for p in condition.value)
        # Fires when at least one item is outside every pattern.
        return any(
            not any(glob_match(item, p) for p in condition.value) for item in items
        )

    if isinstance(condition, ContainsCondition):
        items = [str(item) for item in _as_items(actual)]
        needles = condition.value
        if not condition.case_sensitive:
            items = [item.lower() for item in items]
            needles = [needle.lower() for needle in needles]
        found = any(needle in item for item in items for needle in needles)
        return found if condition.operator == "contains" else not found

    if isinstance(condition, NumericCondition):
        left, right = _to_number(actual), _to_number(condition.value)
        if math.isnan(left) or math.isnan(right):
            return False
        return left > right if condition.operator == "greater_than" else left < right

    raise TypeError(f"Unsupported condition type: {type(condition).__name__}")


class PolicyEngine:
    """Evaluates proposed agent actions against a mutable rule set.

    Construct one per process and pass it to the components that need it.
    The rule list is only changed through :meth:`add_rule`,
    :meth:`remove_rule` and :meth:`set_rule_enabled`.
    """

    def __init__(self) -> None:
        self._rules: List[PolicyRule] = []
        self._config: Optional[PolicyConfig] = None
        self._initialized = False

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def config(self) -> Optional[PolicyConfig]:
        return self._config

    def initialize(self, config: Union[HachikoConfig, PolicyConfig]) -> None:
        """Seed the built-in rules once. Later calls are no-ops."""
        if self._initialized:
            return
        policy = config.policy if isinstance(config, HachikoConfig) else config
        self._config = policy
        for rule in build_builtin_rules(policy):
            self.add_rule(rule)
        self._initialized = True
        logger.info(
            f"Policy engine initialized with {len(self._rules)} rules "
            f"({len(self.get_enabled_rules())} enabled)"
        )

    # ------------------------------------------------------------------
    # Rule management
    def add_rule(self, rule: Union[PolicyRule, Dict[str, Any]]) -> PolicyRule:
        """Add ``rule``, replacing in place any rule with the same id."""
        if not isinstance(rule, PolicyRule):
            try:
                rule = PolicyRule.model_validate(rule)
            except ValidationError as exc:
                raise ConfigurationError(
                    "Invalid policy rule",
                    {"rule": rule, "errors": exc.errors(include_url=False)},
                ) from exc

        for index, existing in enumerate(self._rules):
            if existing.id == rule.id:
                self._rules[index] = rule
                logger.info(f"Policy rule updated: {rule.id}")
                return rule
        self._rules.append(rule)
        logger.info(f"Policy rule added: {rule.id}")
        return rule

    def remove_rule(self, rule_id: str) -> bool:
        for index, existing in enumerate(self._rules):
            if existing.id == rule_id:
                del self._rules[index]
                logger.info(f"Policy rule removed: {rule_id}")
                return True
        return False

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        for index, existing in enumerate(self._rules):
            if existing.id == rule_id:
                self._rules[index] = existing.model_copy(update={"enabled": enabled})
                logger.info(f"Policy rule {rule_id} enabled={enabled}")
                return True
        return False

    def get_rules(self) -> List[PolicyRule]:
        return list(self._rules)

    def get_enabled_rules(self) -> List[PolicyRule]:
        return [rule for rule in self._rules if rule.enabled]

    def load_rules_from_file(self, path: Union[str, os.PathLike]) -> List[PolicyRule]:
        """Add every rule listed in a YAML file.

        The file holds either a list of rules or a mapping with a ``rules``
        key. All rules are validated before any is added.
        """
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or []
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(
                f"Cannot read policy rules from {path}", {"path": str(path), "error": str(exc)}
            ) from exc

        raw_rules = data.get("rules", []) if isinstance(data, dict) else data
        if not isinstance(raw_rules, list):
            raise ConfigurationError("Policy rules must be a list", {"path": str(path)})
        try:
            rules = [PolicyRule.model_validate(raw) for raw in raw_rules]
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid policy rule in {path}",
                {"path": str(path), "errors": exc.errors(include_url=False)},
            ) from exc
        return [self.add_rule(rule) for rule in rules]

    # ------------------------------------------------------------------
    # Evaluation
    def _rule_fires(self, rule: PolicyRule, context: PolicyContext) -> bool:
        if not rule.conditions:
            return False
        return all(evaluate_condition(c, context) for c in rule.conditions)

    def evaluate_policies(self, context: PolicyContext) -> PolicyEvaluationResult:
        """Evaluate every enabled rule against ``context``.

        Rules whose fields are missing from the context are skipped, and a
        rule that fails to evaluate is logged and skipped.

        Raises:
            ConfigurationError: If :meth:`initialize` has not been called.
        """
        if not self._initialized:
            raise ConfigurationError("Policy engine not initialized")

        result = PolicyEvaluationResult()
        for rule in list(self._rules):
            if not rule.enabled:
                continue
            try:
                fired = self._rule_fires(rule, context)
            except UnresolvedField as exc:
                logger.debug(f"Skipping rule {rule.id}: field {exc} not in context")
                continue
            except Exception as exc:
                logger.error(f"Failed to evaluate policy rule {rule.id}: {exc}")
                continue
            if not fired:
                continue

            violation = PolicyViolation(
                rule_id=rule.id,
                type=rule.type,
                severity=rule.severity,
                message=rule.message,
            )
            if rule.severity.blocks:
                result.violations.append(violation)
                result.allowed = False
            else:
                result.warnings.append(violation)
            if rule.requires_approval:
                result.requires_approval = True

        logger.debug(
            f"Policy evaluation for plan={context.plan_id} step={context.step_id}: "
            f"allowed={result.allowed} violations={len(result.violations)} "
            f"warnings={len(result.warnings)} approval={result.requires_approval}"
        )
        return result

    def enforce(self, context: PolicyContext) -> PolicyEvaluationResult:
        """Evaluate and raise when the action is not allowed.

        Raises:
            PolicyViolationError: Carrying the full violation list.
        """
        result = self.evaluate_policies(context)
        if not result.allowed:
            raise PolicyViolationError(
                "Action blocked by policy",
                [v.model_dump(mode="json") for v in result.violations],
                {"plan_id": context.plan_id, "step_id": context.step_id},
            )
        return result
