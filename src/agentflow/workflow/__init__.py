"""Workflow state machine for autonomous agents.

This module provides:
- Boundary models (issues, pull requests, CI failures, conflicts)
- The workflow states and events as tagged unions
- WorkflowStateMachine with its explicit transition table
"""

from .events import (
    ApprovalReceived,
    AssignAgent,
    CIFailureDetected,
    CIFixed,
    CompleteWork,
    ConflictsResolved,
    EncounterBlocker,
    Event,
    ForceAbandon,
    MakeProgress,
    MergeCompleted,
    MergeConflictDetected,
    ResolveBlocker,
    StartWork,
    SubmitForReview,
)
from .machine import TRANSITION_TABLE, WorkflowStateMachine
from .models import (
    AbandonmentReason,
    BlockerType,
    BuildFailureBlocker,
    CIFailureInfo,
    CompletedWork,
    ConflictInfo,
    CriticalFailure,
    DependencyBlocker,
    DependencyIssues,
    ExternalServiceBlocker,
    Issue,
    MissingRequirementsBlocker,
    NetworkBlocker,
    Priority,
    PullRequest,
    RequirementsChanged,
    TestFailureBlocker,
    TimeoutExceeded,
    UnresolvableBlocker,
    WorkProgress,
    WorkspaceState,
)
from .records import StateTransitionRecord, StatusReport
from .states import (
    Abandoned,
    Approved,
    Assigned,
    Blocked,
    CIFailure,
    InProgress,
    Merged,
    MergeConflict,
    ReadyForReview,
    UnderReview,
    WorkflowState,
)

__all__ = [
    # Machine
    "WorkflowStateMachine",
    "TRANSITION_TABLE",
    "StateTransitionRecord",
    "StatusReport",
    # States
    "WorkflowState",
    "Assigned",
    "InProgress",
    "Blocked",
    "ReadyForReview",
    "UnderReview",
    "Approved",
    "MergeConflict",
    "CIFailure",
    "Merged",
    "Abandoned",
    # Events
    "Event",
    "AssignAgent",
    "StartWork",
    "MakeProgress",
    "CompleteWork",
    "EncounterBlocker",
    "ResolveBlocker",
    "SubmitForReview",
    "ApprovalReceived",
    "MergeConflictDetected",
    "ConflictsResolved",
    "CIFailureDetected",
    "CIFixed",
    "MergeCompleted",
    "ForceAbandon",
    # Models
    "Issue",
    "Priority",
    "PullRequest",
    "CIFailureInfo",
    "ConflictInfo",
    "CompletedWork",
    "WorkspaceState",
    "WorkProgress",
    "BlockerType",
    "TestFailureBlocker",
    "BuildFailureBlocker",
    "DependencyBlocker",
    "ExternalServiceBlocker",
    "MissingRequirementsBlocker",
    "NetworkBlocker",
    "AbandonmentReason",
    "UnresolvableBlocker",
    "TimeoutExceeded",
    "RequirementsChanged",
    "DependencyIssues",
    "CriticalFailure",
]
