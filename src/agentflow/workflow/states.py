"""Workflow states.

Exactly one state is active per workflow, and every state carries the
issue and agent it belongs to.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    AbandonmentReason,
    BlockerType,
    CIFailureInfo,
    CompletedWork,
    ConflictInfo,
    Issue,
    PullRequest,
    WorkProgress,
    WorkspaceState,
)


class _StateBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    issue: Issue
    agent: str

    @property
    def state_type(self) -> str:
        return type(self).__name__

    @property
    def is_terminal(self) -> bool:
        return False


class Assigned(_StateBase):
    kind: Literal["assigned"] = "assigned"
    workspace: WorkspaceState


class InProgress(_StateBase):
    kind: Literal["in_progress"] = "in_progress"
    progress: WorkProgress = Field(default_factory=WorkProgress)


class Blocked(_StateBase):
    kind: Literal["blocked"] = "blocked"
    blocker: BlockerType
    # Progress at the time the blocker hit, restored on ResolveBlocker.
    progress: WorkProgress = Field(default_factory=WorkProgress)


class ReadyForReview(_StateBase):
    kind: Literal["ready_for_review"] = "ready_for_review"
    pr: PullRequest


class UnderReview(_StateBase):
    kind: Literal["under_review"] = "under_review"
    pr: PullRequest


class Approved(_StateBase):
    kind: Literal["approved"] = "approved"
    pr: PullRequest


class MergeConflict(_StateBase):
    kind: Literal["merge_conflict"] = "merge_conflict"
    pr: PullRequest
    conflicts: list[ConflictInfo] = Field(default_factory=list)


class CIFailure(_StateBase):
    kind: Literal["ci_failure"] = "ci_failure"
    pr: PullRequest
    failures: list[CIFailureInfo] = Field(default_factory=list)


class Merged(_StateBase):
    kind: Literal["merged"] = "merged"
    completed_work: CompletedWork

    @property
    def is_terminal(self) -> bool:
        return True


class Abandoned(_StateBase):
    kind: Literal["abandoned"] = "abandoned"
    reason: AbandonmentReason

    @property
    def is_terminal(self) -> bool:
        return True


WorkflowState = Annotated[
    Assigned
    | InProgress
    | Blocked
    | ReadyForReview
    | UnderReview
    | Approved
    | MergeConflict
    | CIFailure
    | Merged
    | Abandoned,
    Field(discriminator="kind"),
]

ALL_STATES: tuple[type[_StateBase], ...] = (
    Assigned,
    InProgress,
    Blocked,
    ReadyForReview,
    UnderReview,
    Approved,
    MergeConflict,
    CIFailure,
    Merged,
    Abandoned,
)

TERMINAL_STATES = frozenset({"merged", "abandoned"})


def state_kind(state_cls: type[_StateBase]) -> str:
    """Return the ``kind`` tag of a state class."""
    return state_cls.model_fields["kind"].default
