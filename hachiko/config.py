from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError

DEFAULT_SENSITIVE_GLOBS = [
    "**/.env*",
    "**/secrets/**",
    "**/*password*",
    "**/*secret*",
    "**/*key*",
    "**/config/production/**",
]

DEFAULT_DANGEROUS_COMMANDS = [
    "rm -rf",
    "sudo",
    "curl",
    "wget",
    "nc ",
    "netcat",
    "exec",
    "eval",
    "system",
    "/bin/sh",
    "/bin/bash",
]


class PolicyConfig(BaseModel):
    """Safety policy settings used to seed the built-in rules."""

    allow_workflow_edits: bool = False
    network: Literal["none", "restricted", "unrestricted"] = "none"
    max_attempts_per_step: int = Field(default=2, ge=1, le=5)
    step_timeout_minutes: int = Field(default=15, ge=1, le=180)
    per_repo_max_concurrent_migrations: int = Field(default=3, ge=1, le=10)
    risky_globs: List[str] = Field(
        default_factory=lambda: [".github/workflows/**", ".git/**", "**/*.sh"]
    )
    # Empty means no allowlist is enforced.
    allowlist_globs: List[str] = Field(default_factory=list)
    sensitive_globs: List[str] = Field(
        default_factory=lambda: list(DEFAULT_SENSITIVE_GLOBS)
    )
    dangerous_commands: List[str] = Field(
        default_factory=lambda: list(DEFAULT_DANGEROUS_COMMANDS)
    )
    service_accounts: List[str] = Field(default_factory=list)


class DefaultsConfig(BaseModel):
    """Defaults applied to migrations that do not override them."""

    agent: str = "claude-cli"
    labels: List[str] = Field(default_factory=lambda: ["hachiko", "migration"])
    require_plan_review: bool = True


class PlansConfig(BaseModel):
    """Where migration documents live in the repository."""

    directory: str = "migrations/"
    filename_pattern: str = "*.md"


class HachikoConfig(BaseModel):
    """Top-level configuration model."""

    policy: PolicyConfig = PolicyConfig()
    defaults: DefaultsConfig = DefaultsConfig()
    plans: PlansConfig = PlansConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> HachikoConfig:
    """Load configuration from a YAML file.

    Args:
        path: Optional path to config file. Falls back to the HACHIKO_CONFIG
            env variable or '.hachiko.yml' in the current directory.

    Raises:
        ConfigurationError: If the file is not valid YAML or does not match
            the configuration schema.
    """

    config_path = path or os.getenv("HACHIKO_CONFIG", ".hachiko.yml")
    if os.path.exists(config_path):
        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(
                f"Invalid YAML in {config_path}", {"path": config_path, "error": str(exc)}
            ) from exc
        if not isinstance(data, dict):
            raise ConfigurationError(
                "Configuration root must be a mapping", {"path": config_path}
            )
        try:
            config = HachikoConfig(**data)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration in {config_path}",
                {"path": config_path, "errors": exc.errors(include_url=False)},
            ) from exc
    else:
        config = HachikoConfig()

    env_db_url = os.getenv("HACHIKO_DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
