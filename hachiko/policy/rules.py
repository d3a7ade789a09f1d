"""Built-in policy rules seeded from configuration."""

from __future__ import annotations

from typing import List

from ..config import PolicyConfig
from .models import (
    ContainsCondition,
    EqualityCondition,
    GlobCondition,
    NumericCondition,
    PolicyAction,
    PolicyRule,
    PolicyRuleType,
    PolicySeverity,
)


def build_builtin_rules(config: PolicyConfig) -> List[PolicyRule]:
    """Return the default rule set for ``config``."""
    rules: List[PolicyRule] = [
        PolicyRule(
            id="block_sensitive_files",
            name="Block Sensitive Files",
            description="Prevent access to sensitive files",
            type=PolicyRuleType.FILE_ACCESS,
            severity=PolicySeverity.ERROR,
            conditions=[
                GlobCondition(field="files", operator="matches", value=config.sensitive_globs)
            ],
            actions=[PolicyAction(type="block", message="Access to sensitive files is not allowed")],
        )
    ]

    if config.risky_globs:
        rules.append(
            PolicyRule(
                id="block_risky_paths",
                name="Block Risky Paths",
                description="Prevent access to risky file patterns",
                type=PolicyRuleType.FILE_ACCESS,
                severity=PolicySeverity.ERROR,
                conditions=[
                    GlobCondition(field="files", operator="matches", value=config.risky_globs)
                ],
                actions=[PolicyAction(type="block", message="Access to risky paths is not allowed")],
            )
        )

    rules.append(
        PolicyRule(
            id="block_dangerous_commands",
            name="Block Dangerous Commands",
            description="Prevent execution of dangerous commands",
            type=PolicyRuleType.COMMAND_EXECUTION,
            severity=PolicySeverity.CRITICAL,
            conditions=[
                ContainsCondition(
                    field="commands", operator="contains", value=config.dangerous_commands
                )
            ],
            actions=[
                PolicyAction(type="block", message="Dangerous command execution is not allowed")
            ],
        )
    )

    if config.network == "none":
        rules.append(
            PolicyRule(
                id="block_network_access",
                name="Block Network Access",
                description="Prevent all network access",
                type=PolicyRuleType.NETWORK_ACCESS,
                severity=PolicySeverity.ERROR,
                conditions=[
                    EqualityCondition(field="network_requests", operator="not_equals", value=[])
                ],
                actions=[PolicyAction(type="block", message="Network access is not allowed")],
            )
        )

    if config.allowlist_globs:
        rules.append(
            PolicyRule(
                id="enforce_allowlist",
                name="Enforce File Allowlist",
                description="Only allow access to allowlisted file patterns",
                type=PolicyRuleType.FILE_ACCESS,
                severity=PolicySeverity.ERROR,
                conditions=[
                    GlobCondition(
                        field="files", operator="not_matches", value=config.allowlist_globs
                    )
                ],
                actions=[
                    PolicyAction(
                        type="block", message="File access outside allowlist is not permitted"
                    )
                ],
            )
        )

    rules.append(
        PolicyRule(
            id="flag_bot_accounts",
            name="Flag Bot Accounts",
            description="Actions requested by bot users are flagged for review",
            type=PolicyRuleType.USER_PERMISSIONS,
            severity=PolicySeverity.WARNING,
            conditions=[EqualityCondition(field="user.type", operator="equals", value="Bot")],
            actions=[PolicyAction(type="warn", message="Action requested by a bot account")],
        )
    )
    rules.append(
        PolicyRule(
            id="flag_service_accounts",
            name="Flag Service Accounts",
            description="Actions requested by known service accounts are flagged",
            type=PolicyRuleType.USER_PERMISSIONS,
            severity=PolicySeverity.WARNING,
            conditions=[
                ContainsCondition(
                    field="user.login",
                    operator="contains",
                    value=["[bot]", *config.service_accounts],
                )
            ],
            actions=[PolicyAction(type="warn", message="Action requested by a service account")],
        )
    )
    rules.append(
        PolicyRule(
            id="flag_execution_timeout",
            name="Flag Execution Time",
            description="Execution time exceeds the configured step timeout",
            type=PolicyRuleType.RESOURCE_USAGE,
            severity=PolicySeverity.WARNING,
            conditions=[
                NumericCondition(
                    field="resource_usage.timeout",
                    operator="greater_than",
                    value=config.step_timeout_minutes * 60,
                )
            ],
            actions=[PolicyAction(type="warn", message="Execution timeout exceeded")],
        )
    )
    return rules
