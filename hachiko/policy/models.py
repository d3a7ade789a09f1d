"""Policy rule and evaluation models."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class PolicyRuleType(str, Enum):
    FILE_ACCESS = "file_access"
    COMMAND_EXECUTION = "command_execution"
    NETWORK_ACCESS = "network_access"
    RESOURCE_USAGE = "resource_usage"
    TIME_CONSTRAINTS = "time_constraints"
    USER_PERMISSIONS = "user_permissions"


class PolicySeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"

    @property
    def blocks(self) -> bool:
        return self in (PolicySeverity.ERROR, PolicySeverity.CRITICAL)


class _Condition(BaseModel):
    field: str = Field(..., description="Dotted path into the policy context")

    @field_validator("field")
    @classmethod
    def _ensure_field(cls, v: str) -> str:
        if not v or any(not part for part in v.split(".")):
            raise ValueError("field must be a non-empty dotted path")
        return v


class EqualityCondition(_Condition):
    operator: Literal["equals", "not_equals"]
    value: Any


class GlobCondition(_Condition):
    operator: Literal["matches", "not_matches"]
    value: List[str]

    @field_validator("value", mode="before")
    @classmethod
    def _as_list(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class ContainsCondition(_Condition):
    operator: Literal["contains", "not_contains"]
    value: List[str]
    case_sensitive: bool = False

    @field_validator("value", mode="before")
    @classmethod
    def _as_list(cls, v: Any) -> Any:
        return [v] if isinstance(v, str) else v


class NumericCondition(_Condition):
    operator: Literal["less_than", "greater_than"]
    value: float


PolicyCondition = Annotated[
    Union[EqualityCondition, GlobCondition, ContainsCondition, NumericCondition],
    Field(discriminator="operator"),
]


class PolicyAction(BaseModel):
    type: Literal["block", "warn", "log", "require_approval"]
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PolicyRule(BaseModel):
    """A named rule that fires when all of its conditions hold."""

    id: str
    name: str = ""
    description: str = ""
    type: PolicyRuleType
    severity: PolicySeverity
    enabled: bool = True
    conditions: List[PolicyCondition] = Field(default_factory=list)
    actions: List[PolicyAction] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def message(self) -> str:
        for action in self.actions:
            if action.message:
                return action.message
        return self.description or self.name or self.id

    @property
    def requires_approval(self) -> bool:
        return any(action.type == "require_approval" for action in self.actions)


class RepositoryInfo(BaseModel):
    owner: str
    name: str
    default_branch: str = "main"
    is_private: Optional[bool] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


class UserInfo(BaseModel):
    login: str
    type: str = "User"
    permissions: List[str] = Field(default_factory=list)


class ResourceUsage(BaseModel):
    memory: Optional[float] = None
    cpu: Optional[float] = None
    timeout: Optional[float] = None


class PolicyContext(BaseModel):
    """A proposed agent action submitted for authorization."""

    repository: RepositoryInfo
    user: UserInfo
    files: List[str] = Field(default_factory=list)
    commands: Optional[List[str]] = None
    network_requests: Optional[List[str]] = None
    resource_usage: Optional[ResourceUsage] = None
    environment: str = "production"
    plan_id: Optional[str] = None
    step_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PolicyViolation(BaseModel):
    """A fired rule, as reported to callers."""

    rule_id: str
    type: PolicyRuleType
    severity: PolicySeverity
    message: str


class PolicyEvaluationResult(BaseModel):
    allowed: bool = True
    violations: List[PolicyViolation] = Field(default_factory=list)
    warnings: List[PolicyViolation] = Field(default_factory=list)
    requires_approval: bool = False
