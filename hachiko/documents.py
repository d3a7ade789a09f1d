"""Parsing of migration documents (Markdown with YAML frontmatter)."""

from __future__ import annotations

import logging
import re
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import ConfigurationError
from .persistence import ControlState

logger = logging.getLogger(__name__)

_FRONTMATTER_RE = re.compile(r"\A---\r?\n(.*?)\r?\n---\r?\n?(.*)\Z", re.DOTALL)


class MigrationStep(BaseModel):
    id: str
    description: str = ""
    expected_pr: bool = True
    agent: Optional[str] = None
    timeout: Optional[int] = None


class MigrationFrontmatter(BaseModel):
    """Plan metadata declared at the top of a migration document."""

    id: str
    title: str
    owner: str = ""
    status: ControlState = ControlState.DRAFT
    agent: Optional[str] = None
    steps: List[MigrationStep] = Field(default_factory=list)
    depends_on: List[str] = Field(default_factory=list)
    touches: List[str] = Field(default_factory=list)
    success_criteria: List[str] = Field(default_factory=list)


class MigrationDocument(BaseModel):
    frontmatter: MigrationFrontmatter
    content: str
    raw_frontmatter: str

    @property
    def step_ids(self) -> List[str]:
        return [step.id for step in self.frontmatter.steps]


def parse_migration_document(text: str) -> MigrationDocument:
    """Split ``text`` into validated frontmatter and Markdown body.

    Raises:
        ConfigurationError: If the frontmatter is missing, is not valid YAML
            or does not match :class:`MigrationFrontmatter`.
    """
    match = _FRONTMATTER_RE.match(text)
    if not match:
        raise ConfigurationError("Migration document missing frontmatter")
    raw, body = match.group(1), match.group(2)

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(
            "Failed to parse migration frontmatter", {"error": str(exc)}
        ) from exc
    if not isinstance(data, dict):
        raise ConfigurationError("Migration frontmatter must be a mapping")

    # Older documents use camelCase keys.
    for camel, snake in (
        ("dependsOn", "depends_on"),
        ("successCriteria", "success_criteria"),
    ):
        if camel in data and snake not in data:
            data[snake] = data.pop(camel)
    for step in data.get("steps") or []:
        if isinstance(step, dict) and "expectedPR" in step:
            step.setdefault("expected_pr", step.pop("expectedPR"))

    try:
        frontmatter = MigrationFrontmatter.model_validate(data)
    except ValidationError as exc:
        logger.error(f"Invalid migration frontmatter: {exc}")
        raise ConfigurationError(
            "Invalid migration frontmatter schema",
            {"errors": exc.errors(include_url=False)},
        ) from exc

    return MigrationDocument(frontmatter=frontmatter, content=body.strip(), raw_frontmatter=raw)


def migration_document_path(directory: str, migration_id: str) -> str:
    """Repository path of the document for ``migration_id``."""
    return f"{directory.rstrip('/')}/{migration_id}.md"
