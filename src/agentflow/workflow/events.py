"""Events that drive the workflow state machine."""

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
    WorkspaceState,
)


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def event_type(self) -> str:
        return type(self).__name__


class AssignAgent(_EventBase):
    kind: Literal["assign_agent"] = "assign_agent"
    issue: Issue
    agent: str
    workspace: WorkspaceState | None = None


class StartWork(_EventBase):
    kind: Literal["start_work"] = "start_work"


class MakeProgress(_EventBase):
    kind: Literal["make_progress"] = "make_progress"
    commits: int = 0
    files_changed: int = 0
    tests_written: int = 0


class CompleteWork(_EventBase):
    kind: Literal["complete_work"] = "complete_work"


class EncounterBlocker(_EventBase):
    kind: Literal["encounter_blocker"] = "encounter_blocker"
    blocker: BlockerType


class ResolveBlocker(_EventBase):
    kind: Literal["resolve_blocker"] = "resolve_blocker"


class SubmitForReview(_EventBase):
    kind: Literal["submit_for_review"] = "submit_for_review"
    pr: PullRequest


class ApprovalReceived(_EventBase):
    kind: Literal["approval_received"] = "approval_received"


class MergeConflictDetected(_EventBase):
    kind: Literal["merge_conflict_detected"] = "merge_conflict_detected"
    conflicts: list[ConflictInfo] = Field(default_factory=list)


class ConflictsResolved(_EventBase):
    kind: Literal["conflicts_resolved"] = "conflicts_resolved"


class CIFailureDetected(_EventBase):
    kind: Literal["ci_failure_detected"] = "ci_failure_detected"
    failures: list[CIFailureInfo] = Field(default_factory=list)


class CIFixed(_EventBase):
    kind: Literal["ci_fixed"] = "ci_fixed"


class MergeCompleted(_EventBase):
    kind: Literal["merge_completed"] = "merge_completed"
    completed_work: CompletedWork


class ForceAbandon(_EventBase):
    kind: Literal["force_abandon"] = "force_abandon"
    reason: AbandonmentReason


Event = Annotated[
    AssignAgent
    | StartWork
    | MakeProgress
    | CompleteWork
    | EncounterBlocker
    | ResolveBlocker
    | SubmitForReview
    | ApprovalReceived
    | MergeConflictDetected
    | ConflictsResolved
    | CIFailureDetected
    | CIFixed
    | MergeCompleted
    | ForceAbandon,
    Field(discriminator="kind"),
]

ALL_EVENTS: tuple[type[_EventBase], ...] = (
    AssignAgent,
    StartWork,
    MakeProgress,
    CompleteWork,
    EncounterBlocker,
    ResolveBlocker,
    SubmitForReview,
    ApprovalReceived,
    MergeConflictDetected,
    ConflictsResolved,
    CIFailureDetected,
    CIFixed,
    MergeCompleted,
    ForceAbandon,
)


def event_kind(event_cls: type[_EventBase]) -> str:
    """Return the ``kind`` tag of an event class."""
    return event_cls.model_fields["kind"].default
