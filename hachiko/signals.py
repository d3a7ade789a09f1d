"""Attribute pull requests to migrations using naming conventions.

A pull request can be tied to a migration by its branch name, by a tracking
token hidden in an HTML comment of its body or leading its title, or by a
bracketed migration id in its title. Everything in this module is pure.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field

from .constants import (
    BRANCH_PREFIX,
    CLEANUP_STEP,
    LEGACY_BRANCH_PREFIX,
    MIGRATION_LABEL,
    TRACKING_TOKEN_PREFIX,
)
from .contracts import HachikoPR, PRSignal

logger = logging.getLogger(__name__)

_BRANCH_RE = re.compile(rf"^{re.escape(BRANCH_PREFIX)}(.+)$")
_LEGACY_BRANCH_RE = re.compile(
    rf"^{re.escape(LEGACY_BRANCH_PREFIX)}([^/]+)/([^/]+)(?:/(.+))?$"
)
_STEP_SUFFIX_RE = re.compile(r"-step-(\d+)(?:-|$)")
_HTML_COMMENT_RE = re.compile(r"<!--(.*?)-->", re.DOTALL)
_TOKEN_RE = re.compile(rf"{re.escape(TRACKING_TOKEN_PREFIX)}([^:\s]+):([^\s:]+)")
_TITLE_TOKEN_RE = re.compile(
    rf"^\s*{re.escape(TRACKING_TOKEN_PREFIX)}([^:\s]+):([^\s:]+)"
)
_BRACKET_RE = re.compile(r"\[([^\]]+)\]")

# Trailing branch words that describe the work rather than name the migration,
# e.g. ``hachiko/add-jsdoc-comments-utility-functions``.
_DESCRIPTION_WORDS = frozenset(
    {
        "impl",
        "implementation",
        "fix",
        "update",
        "refactor",
        "feature",
        "utility",
        "functions",
        "components",
        "hooks",
        "tests",
        "simple",
        "complex",
        "basic",
        "advanced",
        "step",
        "cleanup",
        "final",
        "devin",
        "cursor",
        "codex",
        "claude",
        "v2",
        "v3",
    }
)

BRANCH_HINT = (
    "Branch should be named 'hachiko/{migration-id}' or "
    "'hachiko/{migration-id}-description'"
)
LABEL_HINT = f"Add label '{MIGRATION_LABEL}' to the PR"
TITLE_HINT = "Include '[{migration-id}]' somewhere in the PR title"


class PRValidation(BaseModel):
    """How well a pull request follows the migration naming conventions."""

    is_valid: bool
    migration_id: Optional[str] = None
    identification_methods: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)


def _is_description_word(part: str) -> bool:
    return part.lower() in _DESCRIPTION_WORDS or part.isdigit()


def extract_migration_id_from_branch(branch: str) -> Optional[str]:
    """Return the migration id encoded in ``branch`` or ``None``."""
    match = _BRANCH_RE.match(branch)
    if match:
        full_id = match.group(1)
        step = _STEP_SUFFIX_RE.search(full_id)
        if step and step.start() > 0:
            full_id = full_id[: step.start()]

        parts = full_id.split("-")
        keep = len(parts)
        while keep > 1 and _is_description_word(parts[keep - 1]):
            keep -= 1
        return "-".join(parts[:keep]) or None

    legacy = _LEGACY_BRANCH_RE.match(branch)
    if legacy:
        return legacy.group(1)
    return None


def parse_tracking_token(text: str) -> Optional[Tuple[str, str]]:
    """Find a tracking token inside an HTML comment of ``text``.

    Returns ``(migration_id, step_id)``; tokens in plain prose are ignored.
    """
    for comment in _HTML_COMMENT_RE.finditer(text):
        token = _TOKEN_RE.search(comment.group(1))
        if token:
            return token.group(1), token.group(2)
    return None


def parse_title_tracking_token(title: str) -> Optional[Tuple[str, str]]:
    """Return the tracking token leading ``title``, if any."""
    token = _TITLE_TOKEN_RE.match(title)
    if token:
        return token.group(1), token.group(2)
    return None


def extract_migration_id(pr: PRSignal) -> Optional[str]:
    """Identify the migration a pull request belongs to.

    Methods are tried in priority order: branch name, tracking token in a body
    HTML comment, tracking token leading the title, bracketed id in the title.
    """
    branch_id = extract_migration_id_from_branch(pr.head_branch)
    if branch_id:
        return branch_id

    if pr.body:
        token = parse_tracking_token(pr.body)
        if token:
            return token[0]

    token = parse_title_tracking_token(pr.title)
    if token:
        return token[0]

    bracket = _BRACKET_RE.search(pr.title)
    if bracket:
        return bracket.group(1)
    return None


def parse_step_number(branch: str) -> Optional[int]:
    """Return the positive step number encoded in ``branch`` or ``None``."""
    match = _STEP_SUFFIX_RE.search(branch)
    if match:
        value = int(match.group(1))
        return value if value > 0 else None

    legacy = _LEGACY_BRANCH_RE.match(branch)
    if legacy:
        digits = re.search(r"(\d+)", legacy.group(2))
        if digits and int(digits.group(1)) > 0:
            return int(digits.group(1))
    return None


def format_tracking_token(migration_id: str, step: str | int) -> str:
    """Render the HTML comment an agent embeds in its pull request body."""
    return f"<!-- {TRACKING_TOKEN_PREFIX}{migration_id}:{step} -->"


def is_cleanup_pr(pr: HachikoPR) -> bool:
    """Whether ``pr`` carries the final cleanup work of its migration."""
    branch = pr.branch.lower()
    return (
        f"{pr.migration_id}-{CLEANUP_STEP}" in branch
        or f"{pr.migration_id}/{CLEANUP_STEP}" in branch
        or (CLEANUP_STEP in pr.title.lower() and pr.migration_id in branch)
    )


def detect_hachiko_pr(pr: PRSignal) -> Optional[HachikoPR]:
    """Normalize ``pr`` into a :class:`HachikoPR` or return ``None``."""
    migration_id = extract_migration_id(pr)
    if not migration_id:
        return None
    return HachikoPR(
        number=pr.number,
        title=pr.title,
        migration_id=migration_id,
        branch=pr.head_branch,
        labels=list(pr.labels),
        url=pr.url,
        merged=pr.merged,
        closed=pr.closed,
        step_number=parse_step_number(pr.head_branch),
    )


def _is_migration_candidate(pr: PRSignal) -> bool:
    return (
        pr.head_branch.startswith((BRANCH_PREFIX, LEGACY_BRANCH_PREFIX))
        or MIGRATION_LABEL in pr.labels
    )


def filter_migration_prs(prs: Iterable[PRSignal], migration_id: str) -> List[HachikoPR]:
    """Return the pull requests attributed to ``migration_id``, one per number.

    Only PRs on a migration branch or carrying the migration label are
    considered; a matching title or tracking token alone is not enough.
    """
    found: dict[int, HachikoPR] = {}
    for pr in prs:
        if not _is_migration_candidate(pr):
            continue
        detected = detect_hachiko_pr(pr)
        if detected is not None and detected.migration_id == migration_id:
            found[pr.number] = detected
    logger.debug(f"Found {len(found)} pull requests for migration {migration_id}")
    return list(found.values())


def validate_hachiko_pr(pr: PRSignal) -> PRValidation:
    """Check branch, label and title conventions independently.

    A pull request is reliably classified when at least two conventions hold.
    Otherwise the result lists a remediation hint for each missing one.
    """
    methods: List[str] = []
    recommendations: List[str] = []
    migration_id: Optional[str] = None

    branch_id = extract_migration_id_from_branch(pr.head_branch)
    if branch_id:
        migration_id = branch_id
        methods.append("branch")
    else:
        recommendations.append(BRANCH_HINT)

    if MIGRATION_LABEL in pr.labels:
        methods.append("label")
    else:
        recommendations.append(LABEL_HINT)

    bracket = _BRACKET_RE.search(pr.title)
    if bracket:
        methods.append("title")
        migration_id = migration_id or bracket.group(1)
    else:
        recommendations.append(TITLE_HINT)

    is_valid = len(methods) >= 2
    return PRValidation(
        is_valid=is_valid,
        migration_id=migration_id,
        identification_methods=methods,
        recommendations=[] if is_valid else recommendations,
    )
