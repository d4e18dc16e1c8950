"""Tests for the workflow state machine."""

from __future__ import annotations

import logging

import pytest

from agentflow.utils.errors import AlreadyTerminal, InvalidTransition
from agentflow.workflow.events import (
    ALL_EVENTS,
    ApprovalReceived,
    AssignAgent,
    CompleteWork,
    EncounterBlocker,
    ForceAbandon,
    MakeProgress,
    MergeCompleted,
    ResolveBlocker,
    StartWork,
    SubmitForReview,
    event_kind,
)
from agentflow.workflow.machine import NON_TERMINAL_STATES, TRANSITION_TABLE, WorkflowStateMachine
from agentflow.workflow.models import (
    CompletedWork,
    DependencyBlocker,
    NetworkBlocker,
    RequirementsChanged,
    TimeoutExceeded,
    WorkspaceState,
)
from agentflow.workflow.states import (
    ALL_STATES,
    Abandoned,
    Assigned,
    Blocked,
    InProgress,
    Merged,
    ReadyForReview,
    state_kind,
)

STATE_KINDS: list[str | None] = [None] + [state_kind(cls) for cls in ALL_STATES]
EVENT_KINDS = [event_kind(cls) for cls in ALL_EVENTS]


# =============================================================================
# Transition table
# =============================================================================


class TestTransitionTable:
    """Tests for the explicit transition table."""

    @pytest.mark.parametrize("state", STATE_KINDS)
    @pytest.mark.parametrize("event", EVENT_KINDS)
    def test_every_pair_is_table_driven(self, machine_in, sample_events, state, event):
        """Test that each (state, event) pair either follows the table or is rejected."""
        machine = machine_in(state)
        before_state = machine.current_state
        before_history = len(machine.state_history)

        if state in ("merged", "abandoned"):
            with pytest.raises(AlreadyTerminal):
                machine.handle_event(sample_events[event])
        elif (state, event) in TRANSITION_TABLE:
            new_state = machine.handle_event(sample_events[event])
            assert new_state.kind == TRANSITION_TABLE[(state, event)]
            assert len(machine.state_history) == before_history + 1
            return
        else:
            with pytest.raises(InvalidTransition):
                machine.handle_event(sample_events[event])

        assert machine.current_state == before_state
        assert len(machine.state_history) == before_history

    def test_force_abandon_legal_from_every_non_terminal_state(self):
        """Test that ForceAbandon is in the table for all non-terminal states."""
        for kind in NON_TERMINAL_STATES:
            assert TRANSITION_TABLE[(kind, "force_abandon")] == "abandoned"

    def test_no_transitions_out_of_terminal_states(self):
        """Test that Merged and Abandoned have no outgoing transitions."""
        assert not [key for key in TRANSITION_TABLE if key[0] in ("merged", "abandoned")]

    def test_invalid_transition_names_states(self, machine_in, sample_events):
        """Test that InvalidTransition carries readable names."""
        machine = machine_in(None)
        with pytest.raises(InvalidTransition) as exc_info:
            machine.handle_event(sample_events["start_work"])
        assert exc_info.value.from_state == "Unassigned"
        assert exc_info.value.event == "StartWork"


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Tests for driving an issue through the lifecycle."""

    def test_happy_path(self, clock, issue, pr):
        """Test the full path from assignment to merge."""
        machine = WorkflowStateMachine(max_work_hours=8, clock=clock)

        events = [
            AssignAgent(issue=issue, agent="agent001"),
            StartWork(),
            MakeProgress(commits=2, files_changed=3, tests_written=1),
            CompleteWork(),
            SubmitForReview(pr=pr),
            ApprovalReceived(),
            MergeCompleted(completed_work=CompletedWork(issue=issue, commits=2)),
        ]
        for event in events:
            clock.advance(minutes=10)
            machine.handle_event(event)

        assert isinstance(machine.current_state, Merged)
        assert machine.is_terminal
        assert len(machine.state_history) == 7
        assert machine.state_history[0].from_state is None
        assert all(
            earlier.to_state == later.from_state
            for earlier, later in zip(machine.state_history, machine.state_history[1:])
        )
        assert all(record.to_state.issue.number == 42 for record in machine.state_history)

    def test_assignment_sets_agent_and_default_workspace(self, clock, issue):
        """Test that AssignAgent records the agent and derives a branch."""
        machine = WorkflowStateMachine(clock=clock, base_branch="develop")
        state = machine.handle_event(AssignAgent(issue=issue, agent="agent007"))

        assert isinstance(state, Assigned)
        assert machine.agent_id == "agent007"
        assert machine.start_time == clock()
        assert state.workspace.branch_name == "agent007/42"
        assert state.workspace.base_branch == "develop"
        assert machine.current_branch == "agent007/42"

    def test_explicit_workspace_is_kept(self, clock, issue):
        """Test that a provided workspace wins over the default."""
        machine = WorkflowStateMachine(clock=clock)
        workspace = WorkspaceState(branch_name="feature/empty-payloads")
        machine.handle_event(AssignAgent(issue=issue, agent="agent001", workspace=workspace))
        assert machine.current_branch == "feature/empty-payloads"

    def test_progress_accumulates(self, machine_in, clock):
        """Test that MakeProgress adds to the running totals."""
        machine = machine_in("in_progress")
        clock.advance(minutes=30)
        machine.handle_event(MakeProgress(commits=1, files_changed=2))
        machine.handle_event(MakeProgress(commits=2, tests_written=4))

        progress = machine.current_progress
        assert progress.commits_made == 3
        assert progress.files_changed == 2
        assert progress.tests_written == 4
        assert progress.elapsed_minutes == 30

    def test_blocker_round_trip_keeps_progress(self, machine_in):
        """Test that EncounterBlocker then ResolveBlocker returns to the same progress."""
        machine = machine_in("in_progress")
        machine.handle_event(MakeProgress(commits=2, files_changed=1))
        before = machine.current_progress

        blocked = machine.handle_event(
            EncounterBlocker(blocker=NetworkBlocker(error="connection reset"))
        )
        assert isinstance(blocked, Blocked)

        resumed = machine.handle_event(ResolveBlocker())
        assert isinstance(resumed, InProgress)
        assert resumed.progress == before

    def test_complete_work_drafts_pull_request(self, machine_in):
        """Test that CompleteWork creates a draft PR from progress."""
        machine = machine_in("in_progress")
        machine.handle_event(MakeProgress(commits=4, files_changed=6))
        state = machine.handle_event(CompleteWork())

        assert isinstance(state, ReadyForReview)
        assert state.pr.number == 0
        assert state.pr.title == "Fix Handle empty payloads"
        assert state.pr.branch == "agent001/42"
        assert state.pr.commits == 4

    def test_terminal_state_rejects_everything(self, machine_in, sample_events):
        """Test that no event is accepted after abandonment."""
        machine = machine_in("abandoned")
        with pytest.raises(AlreadyTerminal):
            machine.handle_event(sample_events["force_abandon"])

    def test_transition_logged_at_info(self, clock, issue, caplog):
        """Test that transitions are logged."""
        machine = WorkflowStateMachine(clock=clock)
        with caplog.at_level(logging.INFO, logger="agentflow"):
            machine.handle_event(AssignAgent(issue=issue, agent="agent001"))
        assert "Unassigned -> Assigned (AssignAgent)" in caplog.text


# =============================================================================
# Timeout
# =============================================================================


class TestTimeout:
    """Tests for the work budget."""

    def test_timeout_boundary(self, machine_in, clock):
        """Test that the budget is exceeded exactly at max_work_hours."""
        machine = machine_in("in_progress")

        clock.advance(hours=8, seconds=-1)
        assert not machine.is_timeout_exceeded()
        assert machine.can_continue_autonomously()

        clock.advance(seconds=1)
        assert machine.is_timeout_exceeded()
        assert not machine.can_continue_autonomously()

    def test_status_report_remaining_minutes(self, machine_in, clock):
        """Test timeout_in_minutes counts down and floors at zero."""
        machine = machine_in("in_progress")

        clock.advance(minutes=90)
        report = machine.generate_status_report()
        assert report.timeout_in_minutes == 8 * 60 - 90
        assert report.uptime_minutes == 90

        clock.advance(hours=10)
        assert machine.generate_status_report().timeout_in_minutes == 0

    def test_event_after_timeout_abandons(self, machine_in, clock):
        """Test that an event past the budget abandons with TimeoutExceeded."""
        machine = machine_in("in_progress")
        clock.advance(hours=9)

        state = machine.handle_event(MakeProgress(commits=1))

        assert isinstance(state, Abandoned)
        assert state.reason == TimeoutExceeded(max_hours=8)
        assert machine.state_history[-1].to_state == state

    def test_timeout_recorded_as_force_abandon(self, machine_in, clock):
        """Test that the history names the timeout, not the event that hit it."""
        machine = machine_in("in_progress")
        clock.advance(hours=9)

        machine.handle_event(MakeProgress(commits=1))

        record = machine.state_history[-1]
        assert record.event == ForceAbandon(reason=TimeoutExceeded(max_hours=8))
        assert record.from_state.kind == "in_progress"

    def test_force_abandon_after_timeout_keeps_reason(self, machine_in, clock):
        """Test that an explicit ForceAbandon is applied as given."""
        machine = machine_in("in_progress")
        clock.advance(hours=9)

        state = machine.handle_event(ForceAbandon(reason=RequirementsChanged()))
        assert state.reason == RequirementsChanged()

    def test_report_before_assignment(self):
        """Test the status report of a fresh machine."""
        report = WorkflowStateMachine().generate_status_report()
        assert report.state_type == "Unassigned"
        assert report.timeout_in_minutes is None
        assert report.transitions_count == 0
        assert report.can_continue is True


# =============================================================================
# Autonomy
# =============================================================================


class TestCanContinue:
    """Tests for can_continue_autonomously."""

    @pytest.mark.parametrize(
        "blocker, expected",
        [
            (NetworkBlocker(error="timeout"), True),
            (DependencyBlocker(dependency="serde", error="yanked"), False),
        ],
    )
    def test_blocked_depends_on_blocker(self, machine_in, blocker, expected):
        """Test that only resolvable blockers allow autonomous work."""
        machine = machine_in("in_progress")
        machine.handle_event(EncounterBlocker(blocker=blocker))
        assert machine.can_continue_autonomously() is expected

    def test_terminal_cannot_continue(self, machine_in):
        """Test that a merged workflow cannot continue."""
        assert machine_in("merged").can_continue_autonomously() is False


# =============================================================================
# Snapshots
# =============================================================================


class TestSnapshot:
    """Tests for converting to and from persistent state."""

    def test_snapshot_requires_agent(self):
        """Test that an unassigned machine cannot be snapshotted."""
        with pytest.raises(ValueError):
            WorkflowStateMachine().snapshot()

    def test_snapshot_round_trip(self, machine_in, clock):
        """Test that a restored machine matches the original."""
        machine = machine_in("under_review")
        snapshot = machine.snapshot()

        restored = WorkflowStateMachine.from_persistent_state(snapshot, clock=clock)

        assert restored.current_state == machine.current_state
        assert restored.state_history == machine.state_history
        assert restored.start_time == machine.start_time
        assert restored.agent_id == "agent001"
        assert restored.current_branch == machine.current_branch
