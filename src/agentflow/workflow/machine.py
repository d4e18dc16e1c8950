"""Workflow state machine for a single agent working a single issue.

The legal transitions form an explicit table. Any (state, event) pair
outside the table is rejected with InvalidTransition and leaves the
machine untouched. Merged and Abandoned are terminal.

Example:
    machine = WorkflowStateMachine(max_work_hours=8)
    machine.handle_event(AssignAgent(issue=issue, agent="agent001"))
    machine.handle_event(StartWork())
    report = machine.generate_status_report()
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from ..utils.errors import AlreadyTerminal, InvalidTransition
from .events import (
    AssignAgent,
    CIFailureDetected,
    EncounterBlocker,
    Event,
    ForceAbandon,
    MakeProgress,
    MergeCompleted,
    MergeConflictDetected,
    SubmitForReview,
)
from .models import (
    AUTONOMOUSLY_RESOLVABLE_BLOCKERS,
    Issue,
    PullRequest,
    TimeoutExceeded,
    WorkProgress,
    WorkspaceState,
    utcnow,
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

if TYPE_CHECKING:
    from ..persistence.models import PersistentWorkflowState
    from ..recovery.models import RecoveryAttempt

logger = logging.getLogger(__name__)

NON_TERMINAL_STATES = (
    "assigned",
    "in_progress",
    "blocked",
    "ready_for_review",
    "under_review",
    "approved",
    "merge_conflict",
    "ci_failure",
)

# (current state kind, event kind) -> next state kind. None means no current state.
TRANSITION_TABLE: dict[tuple[str | None, str], str] = {
    (None, "assign_agent"): "assigned",
    ("assigned", "start_work"): "in_progress",
    ("in_progress", "make_progress"): "in_progress",
    ("in_progress", "encounter_blocker"): "blocked",
    ("blocked", "resolve_blocker"): "in_progress",
    ("in_progress", "complete_work"): "ready_for_review",
    ("ready_for_review", "submit_for_review"): "under_review",
    ("under_review", "approval_received"): "approved",
    ("approved", "merge_conflict_detected"): "merge_conflict",
    ("approved", "ci_failure_detected"): "ci_failure",
    ("merge_conflict", "conflicts_resolved"): "approved",
    ("ci_failure", "ci_fixed"): "approved",
    ("approved", "merge_completed"): "merged",
    **{(kind, "force_abandon"): "abandoned" for kind in NON_TERMINAL_STATES},
}


class WorkflowStateMachine:
    """Drives one agent through the issue lifecycle.

    The machine is owned by a single driver and processes events strictly
    in order; it does no locking of its own.
    """

    def __init__(
        self,
        max_work_hours: int = 8,
        agent_id: str | None = None,
        base_branch: str = "main",
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the state machine.

        Args:
            max_work_hours: Budget from assignment until the work times out.
            agent_id: Agent identity; set from AssignAgent when omitted.
            base_branch: Base branch for the default workspace.
            clock: Source of aware UTC datetimes.
        """
        self.max_work_hours = max_work_hours
        self.agent_id = agent_id
        self.base_branch = base_branch
        self._clock = clock

        self.current_state: WorkflowState | None = None
        self.state_history: list[StateTransitionRecord] = []
        self.start_time: datetime | None = None
        self.state_entered_at: datetime | None = None

    # -------------------------------------------------------------------------
    # Event handling
    # -------------------------------------------------------------------------

    def handle_event(self, event: Event) -> WorkflowState:
        """Apply an event and return the new state.

        Once the work budget is spent, any event other than ForceAbandon
        abandons the work with TimeoutExceeded instead of being applied.

        Raises:
            AlreadyTerminal: The workflow is Merged or Abandoned.
            InvalidTransition: The event is not legal in the current state.
        """
        started = time.monotonic()
        state = self.current_state

        if state is not None and state.is_terminal:
            raise AlreadyTerminal(state.state_type, event.event_type)

        if state is not None and not isinstance(event, ForceAbandon) and self.is_timeout_exceeded():
            logger.error(
                f"Agent {self.agent_id} exceeded {self.max_work_hours}h budget on issue "
                f"#{state.issue.number}, abandoning"
            )
            # Recorded as the abandonment it is, not as the event that noticed it
            abandon = ForceAbandon(reason=TimeoutExceeded(max_hours=self.max_work_hours))
            new_state = Abandoned(issue=state.issue, agent=state.agent, reason=abandon.reason)
            self._record_transition(state, new_state, abandon, started)
            return new_state

        key = (state.kind if state is not None else None, event.kind)
        if key not in TRANSITION_TABLE:
            raise InvalidTransition(
                state.state_type if state is not None else "Unassigned",
                event.event_type,
            )

        handler = getattr(self, f"_on_{event.kind}")
        new_state = handler(state, event)
        self._record_transition(state, new_state, event, started)
        return new_state

    def _on_assign_agent(self, state: None, event: AssignAgent) -> WorkflowState:
        self.agent_id = event.agent
        self.start_time = self._clock()
        workspace = event.workspace or WorkspaceState(
            branch_name=f"{event.agent}/{event.issue.number}",
            base_branch=self.base_branch,
        )
        return Assigned(issue=event.issue, agent=event.agent, workspace=workspace)

    def _on_start_work(self, state: WorkflowState, event: Event) -> WorkflowState:
        return InProgress(issue=state.issue, agent=state.agent)

    def _on_make_progress(self, state: WorkflowState, event: MakeProgress) -> WorkflowState:
        progress = state.progress.model_copy(
            update={
                "commits_made": state.progress.commits_made + event.commits,
                "files_changed": state.progress.files_changed + event.files_changed,
                "tests_written": state.progress.tests_written + event.tests_written,
                "elapsed_minutes": self.elapsed_minutes() or 0,
            }
        )
        return InProgress(issue=state.issue, agent=state.agent, progress=progress)

    def _on_encounter_blocker(self, state: WorkflowState, event: EncounterBlocker) -> WorkflowState:
        logger.warning(
            f"Agent {state.agent} blocked on issue #{state.issue.number}: {event.blocker.kind}"
        )
        return Blocked(
            issue=state.issue,
            agent=state.agent,
            blocker=event.blocker,
            progress=state.progress,
        )

    def _on_resolve_blocker(self, state: WorkflowState, event: Event) -> WorkflowState:
        return InProgress(issue=state.issue, agent=state.agent, progress=state.progress)

    def _on_complete_work(self, state: WorkflowState, event: Event) -> WorkflowState:
        # Draft PR; the real number arrives with SubmitForReview.
        branch = self.current_branch or f"{state.agent}/{state.issue.number}"
        pr = _draft_pull_request(state, branch)
        return ReadyForReview(issue=state.issue, agent=state.agent, pr=pr)

    def _on_submit_for_review(self, state: WorkflowState, event: SubmitForReview) -> WorkflowState:
        return UnderReview(issue=state.issue, agent=state.agent, pr=event.pr)

    def _on_approval_received(self, state: WorkflowState, event: Event) -> WorkflowState:
        return Approved(issue=state.issue, agent=state.agent, pr=state.pr)

    def _on_merge_conflict_detected(
        self, state: WorkflowState, event: MergeConflictDetected
    ) -> WorkflowState:
        return MergeConflict(
            issue=state.issue, agent=state.agent, pr=state.pr, conflicts=event.conflicts
        )

    def _on_conflicts_resolved(self, state: WorkflowState, event: Event) -> WorkflowState:
        return Approved(issue=state.issue, agent=state.agent, pr=state.pr)

    def _on_ci_failure_detected(
        self, state: WorkflowState, event: CIFailureDetected
    ) -> WorkflowState:
        return CIFailure(issue=state.issue, agent=state.agent, pr=state.pr, failures=event.failures)

    def _on_ci_fixed(self, state: WorkflowState, event: Event) -> WorkflowState:
        return Approved(issue=state.issue, agent=state.agent, pr=state.pr)

    def _on_merge_completed(self, state: WorkflowState, event: MergeCompleted) -> WorkflowState:
        return Merged(issue=state.issue, agent=state.agent, completed_work=event.completed_work)

    def _on_force_abandon(self, state: WorkflowState, event: ForceAbandon) -> WorkflowState:
        logger.error(
            f"Agent {state.agent} abandoned issue #{state.issue.number}: {event.reason.kind}"
        )
        return Abandoned(issue=state.issue, agent=state.agent, reason=event.reason)

    def _record_transition(
        self,
        from_state: WorkflowState | None,
        to_state: WorkflowState,
        event: Event,
        started: float,
    ) -> None:
        now = self._clock()
        record = StateTransitionRecord(
            from_state=from_state,
            to_state=to_state,
            event=event,
            timestamp=now,
            duration_ms=int((time.monotonic() - started) * 1000),
            success=True,
        )
        self.state_history.append(record)
        self.current_state = to_state
        self.state_entered_at = now

        from_name = from_state.state_type if from_state is not None else "Unassigned"
        logger.info(
            f"Agent {self.agent_id}: {from_name} -> {to_state.state_type} ({event.event_type})"
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def is_terminal(self) -> bool:
        return self.current_state is not None and self.current_state.is_terminal

    @property
    def current_issue(self) -> Issue | None:
        return self.current_state.issue if self.current_state is not None else None

    @property
    def current_branch(self) -> str | None:
        """Branch the work lives on, from the PR or the assigned workspace."""
        pr = getattr(self.current_state, "pr", None)
        if pr is not None and pr.branch:
            return pr.branch
        for record in reversed(self.state_history):
            if isinstance(record.to_state, Assigned):
                return record.to_state.workspace.branch_name
        return None

    @property
    def current_progress(self) -> WorkProgress | None:
        return getattr(self.current_state, "progress", None)

    def elapsed_minutes(self) -> int | None:
        if self.start_time is None:
            return None
        return int((self._clock() - self.start_time).total_seconds() // 60)

    def is_timeout_exceeded(self) -> bool:
        """True once the work budget since assignment is spent."""
        if self.start_time is None:
            return False
        return self._clock() - self.start_time >= timedelta(hours=self.max_work_hours)

    def can_continue_autonomously(self) -> bool:
        """Whether the agent may keep working without a human."""
        state = self.current_state
        if state is not None and state.is_terminal:
            return False
        if self.is_timeout_exceeded():
            return False
        if isinstance(state, Blocked):
            return state.blocker.kind in AUTONOMOUSLY_RESOLVABLE_BLOCKERS
        return True

    def generate_status_report(self) -> StatusReport:
        timeout_in_minutes = None
        elapsed = self.elapsed_minutes()
        if elapsed is not None:
            timeout_in_minutes = max(0, self.max_work_hours * 60 - elapsed)

        return StatusReport(
            agent_id=self.agent_id,
            current_state=self.current_state,
            transitions_count=len(self.state_history),
            timeout_in_minutes=timeout_in_minutes,
            can_continue=self.can_continue_autonomously(),
            uptime_minutes=elapsed,
            last_transition=self.state_history[-1].timestamp if self.state_history else None,
        )

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def snapshot(
        self, recovery_history: list[RecoveryAttempt] | None = None
    ) -> PersistentWorkflowState:
        """Build the persistent form of this machine."""
        from ..persistence.models import PersistentWorkflowState

        if self.agent_id is None:
            raise ValueError("Cannot snapshot a workflow that has no agent assigned")

        return PersistentWorkflowState(
            agent_id=self.agent_id,
            current_state=self.current_state,
            start_time=self.start_time,
            max_work_hours=self.max_work_hours,
            state_history=list(self.state_history),
            recovery_history=list(recovery_history or []),
            last_persisted=self._clock(),
        )

    @classmethod
    def from_persistent_state(
        cls,
        state: PersistentWorkflowState,
        base_branch: str = "main",
        clock: Callable[[], datetime] = utcnow,
    ) -> WorkflowStateMachine:
        """Rebuild a machine from a persisted state."""
        machine = cls(
            max_work_hours=state.max_work_hours,
            agent_id=state.agent_id,
            base_branch=base_branch,
            clock=clock,
        )
        machine.current_state = state.current_state
        machine.state_history = list(state.state_history)
        machine.start_time = state.start_time
        if state.state_history:
            machine.state_entered_at = state.state_history[-1].timestamp
        return machine


def _draft_pull_request(state: InProgress, branch: str) -> PullRequest:
    return PullRequest(
        number=0,
        title=f"Fix {state.issue.title}",
        branch=branch,
        commits=state.progress.commits_made,
        files_changed=state.progress.files_changed,
    )
