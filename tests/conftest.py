"""Shared fixtures for agentflow tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from agentflow.config import AgentflowConfig
from agentflow.workflow.events import (
    ApprovalReceived,
    AssignAgent,
    CIFailureDetected,
    CIFixed,
    CompleteWork,
    ConflictsResolved,
    EncounterBlocker,
    ForceAbandon,
    MakeProgress,
    MergeCompleted,
    MergeConflictDetected,
    ResolveBlocker,
    StartWork,
    SubmitForReview,
)
from agentflow.workflow.machine import WorkflowStateMachine
from agentflow.workflow.models import (
    CIFailureInfo,
    CompletedWork,
    ConflictInfo,
    CriticalFailure,
    Issue,
    PullRequest,
    TestFailureBlocker,
)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def issue() -> Issue:
    return Issue(number=42, title="Handle empty payloads", labels=["bug"])


@pytest.fixture
def pr() -> PullRequest:
    return PullRequest(number=7, title="Fix Handle empty payloads", branch="agent001/42")


@pytest.fixture
def config(tmp_path: Path) -> AgentflowConfig:
    cfg = AgentflowConfig()
    cfg.persistence.state_directory = str(tmp_path / "state")
    return cfg


@pytest.fixture
def sample_events(issue: Issue, pr: PullRequest) -> dict[str, object]:
    """One representative event per event kind."""
    return {
        "assign_agent": AssignAgent(issue=issue, agent="agent001"),
        "start_work": StartWork(),
        "make_progress": MakeProgress(commits=1, files_changed=2),
        "complete_work": CompleteWork(),
        "encounter_blocker": EncounterBlocker(
            blocker=TestFailureBlocker(test_name="test_parse", error="assert 1 == 2")
        ),
        "resolve_blocker": ResolveBlocker(),
        "submit_for_review": SubmitForReview(pr=pr),
        "approval_received": ApprovalReceived(),
        "merge_conflict_detected": MergeConflictDetected(
            conflicts=[ConflictInfo(file="src/lib.rs", conflict_markers=2)]
        ),
        "conflicts_resolved": ConflictsResolved(),
        "ci_failure_detected": CIFailureDetected(
            failures=[CIFailureInfo(job_name="test", step="cargo test", error="1 test failed")]
        ),
        "ci_fixed": CIFixed(),
        "merge_completed": MergeCompleted(completed_work=CompletedWork(issue=issue, commits=3)),
        "force_abandon": ForceAbandon(reason=CriticalFailure(error="disk full")),
    }


# Event kinds that lead from no state to each state kind
PATHS: dict[str | None, list[str]] = {
    None: [],
    "assigned": ["assign_agent"],
    "in_progress": ["assign_agent", "start_work"],
    "blocked": ["assign_agent", "start_work", "encounter_blocker"],
    "ready_for_review": ["assign_agent", "start_work", "complete_work"],
    "under_review": ["assign_agent", "start_work", "complete_work", "submit_for_review"],
    "approved": [
        "assign_agent",
        "start_work",
        "complete_work",
        "submit_for_review",
        "approval_received",
    ],
}
PATHS["merge_conflict"] = PATHS["approved"] + ["merge_conflict_detected"]
PATHS["ci_failure"] = PATHS["approved"] + ["ci_failure_detected"]
PATHS["merged"] = PATHS["approved"] + ["merge_completed"]
PATHS["abandoned"] = ["assign_agent", "force_abandon"]


@pytest.fixture
def machine_in(clock: FakeClock, sample_events: dict[str, object]):
    """Factory building a machine driven into the given state kind."""

    def build(kind: str | None) -> WorkflowStateMachine:
        machine = WorkflowStateMachine(max_work_hours=8, clock=clock)
        for event_kind in PATHS[kind]:
            machine.handle_event(sample_events[event_kind])
        return machine

    return build
