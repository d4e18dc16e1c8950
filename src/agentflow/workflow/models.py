"""Data models shared by the workflow state machine.

These are the inputs an agent receives from its collaborators (issues,
pull requests, CI results) plus the blocker and abandonment vocabularies.
Tagged variants carry a ``kind`` literal so JSON round-trips select the
right class.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Priority(str, Enum):
    """Issue priority."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Issue(BaseModel):
    """A unit of work assigned to an agent."""

    number: int
    title: str
    body: str = ""
    labels: list[str] = Field(default_factory=list)
    priority: Priority = Priority.MEDIUM
    estimated_hours: float | None = None


class PullRequest(BaseModel):
    """Pull request opened for an issue."""

    number: int
    title: str
    branch: str
    commits: int = 0
    files_changed: int = 0


class CIFailureInfo(BaseModel):
    """A failing CI job step."""

    job_name: str
    step: str
    error: str
    auto_fixable: bool = False


class ConflictInfo(BaseModel):
    """A file with merge conflicts."""

    file: str
    conflict_markers: int = 1
    auto_resolvable: bool = False


class CompletedWork(BaseModel):
    """Summary of merged work."""

    issue: Issue
    commits: int = 0
    files_changed: int = 0
    tests_added: int = 0
    completion_time: datetime = Field(default_factory=utcnow)


class WorkspaceState(BaseModel):
    """Branch and setup status of an agent's working tree."""

    branch_name: str
    base_branch: str = "main"
    workspace_setup: bool = True
    dependencies_installed: bool = True


class WorkProgress(BaseModel):
    """Accumulated progress while work is in flight."""

    commits_made: int = 0
    files_changed: int = 0
    tests_written: int = 0
    elapsed_minutes: int = 0
    completion_percentage: int = 0

    def describe(self) -> str:
        return (
            f"{self.commits_made} commits, {self.files_changed} files changed, "
            f"{self.tests_written} tests written ({self.completion_percentage}% complete)"
        )


# =============================================================================
# Blockers
# =============================================================================


class _Tagged(BaseModel):
    model_config = ConfigDict(frozen=True)


class TestFailureBlocker(_Tagged):
    __test__ = False  # keep pytest from collecting this as a test class

    kind: Literal["test_failure"] = "test_failure"
    test_name: str
    error: str


class BuildFailureBlocker(_Tagged):
    kind: Literal["build_failure"] = "build_failure"
    error: str


class DependencyBlocker(_Tagged):
    kind: Literal["dependency_issue"] = "dependency_issue"
    dependency: str
    error: str


class ExternalServiceBlocker(_Tagged):
    kind: Literal["external_service"] = "external_service"
    service: str
    status: str


class MissingRequirementsBlocker(_Tagged):
    kind: Literal["missing_requirements"] = "missing_requirements"
    missing: list[str] = Field(default_factory=list)


class NetworkBlocker(_Tagged):
    kind: Literal["network_issue"] = "network_issue"
    error: str


BlockerType = Annotated[
    TestFailureBlocker
    | BuildFailureBlocker
    | DependencyBlocker
    | ExternalServiceBlocker
    | MissingRequirementsBlocker
    | NetworkBlocker,
    Field(discriminator="kind"),
]

# Blockers an agent can clear on its own; the rest need a human or an outside fix.
AUTONOMOUSLY_RESOLVABLE_BLOCKERS = frozenset({"test_failure", "build_failure", "network_issue"})


# =============================================================================
# Abandonment reasons
# =============================================================================


class UnresolvableBlocker(_Tagged):
    kind: Literal["unresolvable_blocker"] = "unresolvable_blocker"
    blocker: BlockerType


class TimeoutExceeded(_Tagged):
    kind: Literal["timeout_exceeded"] = "timeout_exceeded"
    max_hours: int


class RequirementsChanged(_Tagged):
    kind: Literal["requirements_changed"] = "requirements_changed"


class DependencyIssues(_Tagged):
    kind: Literal["dependency_issues"] = "dependency_issues"


class CriticalFailure(_Tagged):
    kind: Literal["critical_failure"] = "critical_failure"
    error: str


AbandonmentReason = Annotated[
    UnresolvableBlocker
    | TimeoutExceeded
    | RequirementsChanged
    | DependencyIssues
    | CriticalFailure,
    Field(discriminator="kind"),
]
