"""Autonomous coordinator.

Wires one state machine, one recovery engine and one continuity manager
together for a single agent:
- start() assigns the issue or resumes from the last checkpoint
- handle_event() applies events and checkpoints significant transitions
- recover() turns a blocking state into a recovery attempt and feeds the
  outcome back into the machine as an event
- shutdown() writes a final checkpoint and stops auto-save

Example:
    coordinator = AutonomousCoordinator("agent001", config)
    await coordinator.start(issue)
    coordinator.handle_event(StartWork())
    ...
    await coordinator.shutdown()
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from .config import AgentflowConfig
from .continuity import ContinueWork, ValidateAndResync, WorkContinuityManager
from .persistence.models import CheckpointReason
from .recovery.engine import ErrorRecoveryEngine
from .recovery.models import (
    BuildFailureError,
    CIFailureError,
    DependencyIssue,
    ErrorType,
    MergeConflictError,
    NetworkIssue,
    RecoveryAttempt,
    RecoveryReport,
    TestFailureError,
)
from .utils.errors import RecoveryError
from .workflow.events import (
    AssignAgent,
    CIFixed,
    ConflictsResolved,
    Event,
    ForceAbandon,
    ResolveBlocker,
)
from .workflow.machine import WorkflowStateMachine
from .workflow.models import (
    BuildFailureBlocker,
    CriticalFailure,
    DependencyBlocker,
    ExternalServiceBlocker,
    Issue,
    MissingRequirementsBlocker,
    NetworkBlocker,
    TestFailureBlocker,
    UnresolvableBlocker,
    WorkspaceState,
    utcnow,
)
from .workflow.records import StatusReport
from .workflow.states import Blocked, CIFailure, MergeConflict, WorkflowState

logger = logging.getLogger(__name__)

# Events whose resulting state is always checkpointed
SIGNIFICANT_EVENTS = frozenset(
    {
        "assign_agent",
        "encounter_blocker",
        "submit_for_review",
        "merge_conflict_detected",
        "ci_failure_detected",
    }
)


def error_for_state(state: WorkflowState | None) -> ErrorType:
    """Describe a blocking workflow state as a recoverable error.

    Raises:
        RecoveryError: The state is not one recovery can act on.
    """
    if isinstance(state, Blocked):
        return _error_for_blocker(state)

    if isinstance(state, MergeConflict):
        return MergeConflictError(
            files=[c.file for c in state.conflicts],
            conflict_count=sum(c.conflict_markers for c in state.conflicts),
        )

    if isinstance(state, CIFailure) and state.failures:
        return CIFailureError(
            job=", ".join(f.job_name for f in state.failures),
            step=", ".join(f.step for f in state.failures),
            error="; ".join(f.error for f in state.failures),
        )

    state_type = state.state_type if state is not None else "Unassigned"
    raise RecoveryError(f"Nothing to recover from in state {state_type}")


def _error_for_blocker(state: Blocked) -> ErrorType:
    blocker = state.blocker

    if isinstance(blocker, TestFailureBlocker):
        return TestFailureError(test_suite=blocker.test_name, failed_tests=[blocker.test_name])
    if isinstance(blocker, BuildFailureBlocker):
        return BuildFailureError(stage="build", error=blocker.error)
    if isinstance(blocker, DependencyBlocker):
        return DependencyIssue(
            dependency=blocker.dependency,
            version_conflict="conflict" in blocker.error.lower(),
        )
    if isinstance(blocker, ExternalServiceBlocker):
        return NetworkIssue(service=blocker.service, timeout="timeout" in blocker.status.lower())
    if isinstance(blocker, NetworkBlocker):
        error = blocker.error.lower()
        return NetworkIssue(service="network", timeout="timeout" in error or "timed out" in error)
    if isinstance(blocker, MissingRequirementsBlocker):
        # Only a human can supply requirements
        return DependencyIssue(
            dependency=", ".join(blocker.missing) or "requirements",
            version_conflict=True,
            resolvable=False,
        )
    raise RecoveryError(f"Unknown blocker: {blocker.kind}")


def _resolution_event(state: WorkflowState) -> Event:
    if isinstance(state, Blocked):
        return ResolveBlocker()
    if isinstance(state, MergeConflict):
        return ConflictsResolved()
    return CIFixed()


class AutonomousCoordinator:
    """Drives one agent through an issue with checkpointing and recovery."""

    def __init__(
        self,
        agent_id: str,
        config: AgentflowConfig | None = None,
        recovery_engine: ErrorRecoveryEngine | None = None,
        continuity: WorkContinuityManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the coordinator.

        Args:
            agent_id: Identity of the agent being driven.
            config: Full agentflow configuration.
            recovery_engine: Recovery engine. Built from config when omitted.
            continuity: Continuity manager. Built from config when omitted.
            clock: Source of aware UTC datetimes.
        """
        self.agent_id = agent_id
        self.config = config or AgentflowConfig()
        self._clock = clock

        self.machine = self._new_machine()
        self.recovery_engine = recovery_engine or ErrorRecoveryEngine(
            config=self.config.recovery, clock=clock
        )
        self.continuity = continuity or WorkContinuityManager(self.config, clock=clock)
        self.failed_recovery_rounds = 0

    def _new_machine(self) -> WorkflowStateMachine:
        return WorkflowStateMachine(
            max_work_hours=self.config.workflow.max_work_hours,
            agent_id=self.agent_id,
            base_branch=self.config.workflow.base_branch,
            clock=self._clock,
        )

    @property
    def current_state(self) -> WorkflowState | None:
        return self.machine.current_state

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, issue: Issue, workspace: WorkspaceState | None = None) -> WorkflowState:
        """Begin work on an issue, resuming saved work for it when possible."""
        await self.continuity.initialize()

        action = self.continuity.recover_from_checkpoint(self.agent_id)
        if isinstance(action, ContinueWork) and action.issue.number == issue.number:
            saved = self.continuity.persistence.load_state(self.agent_id)
            if saved is not None:
                self.machine = WorkflowStateMachine.from_persistent_state(
                    saved, base_branch=self.config.workflow.base_branch, clock=self._clock
                )
                self.recovery_engine.recovery_history = list(saved.recovery_history)
                logger.info(
                    f"Agent {self.agent_id} resuming issue #{issue.number} on "
                    f"{action.branch}: {action.last_progress}"
                )
                return self.machine.current_state
        elif isinstance(action, ValidateAndResync):
            logger.warning(
                f"Agent {self.agent_id} saved state needs resync ({action.reason}), starting over"
            )
        elif action is not None:
            logger.info(f"Agent {self.agent_id} starting fresh: {action}")

        self.machine = self._new_machine()
        self.failed_recovery_rounds = 0
        return self.handle_event(AssignAgent(issue=issue, agent=self.agent_id, workspace=workspace))

    async def shutdown(self) -> None:
        """Stop auto-save, then write a final checkpoint of the current state.

        Auto-save drains before the final write, so nothing it still had
        queued can land on top of the shutdown checkpoint.
        """
        await self.continuity.shutdown()
        if self.machine.current_state is not None:
            self.checkpoint(CheckpointReason.BEFORE_SHUTDOWN, note="Coordinator shutdown")

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    def handle_event(self, event: Event) -> WorkflowState:
        """Apply an event and persist the result.

        Significant events and terminal states are saved right away; every
        other transition goes to the auto-save task.

        Raises:
            InvalidTransition: The event is not legal in the current state.
            AlreadyTerminal: The workflow already finished.
        """
        previous_kind = self.machine.current_state.kind if self.machine.current_state else None
        new_state = self.machine.handle_event(event)

        if new_state.kind != previous_kind:
            self.failed_recovery_rounds = 0

        if event.kind in SIGNIFICANT_EVENTS or new_state.is_terminal:
            self.checkpoint(
                CheckpointReason.STATE_TRANSITION,
                note=f"{event.event_type} -> {new_state.state_type}",
            )
        else:
            self.continuity.enqueue_state(
                self.machine.snapshot(self.recovery_engine.recovery_history)
            )
        return new_state

    def checkpoint(self, reason: CheckpointReason, note: str | None = None) -> str:
        snapshot = self.machine.snapshot(self.recovery_engine.recovery_history)
        return self.continuity.checkpoint_state(snapshot, note=note, reason=reason)

    # -------------------------------------------------------------------------
    # Recovery
    # -------------------------------------------------------------------------

    async def recover(self) -> RecoveryAttempt:
        """Attempt to recover from the current blocking state.

        Returns:
            The recorded recovery attempt.

        Raises:
            RecoveryError: The current state is not Blocked, MergeConflict or CIFailure.
        """
        state = self.machine.current_state
        error = error_for_state(state)

        self.checkpoint(CheckpointReason.BEFORE_RECOVERY, note=f"Recovering from {error.type_name}")
        attempt = await self.recovery_engine.recover(error, state)

        if attempt.success:
            self.failed_recovery_rounds = 0
            self.handle_event(_resolution_event(state))
            return attempt

        if attempt.requires_human:
            logger.warning(
                f"Agent {self.agent_id} waiting on a human for issue #{state.issue.number}: "
                f"{attempt.error_message}"
            )
            return attempt

        self.failed_recovery_rounds += 1
        self.checkpoint(CheckpointReason.AFTER_ERROR, note=attempt.error_message)

        max_rounds = self.config.continuity.max_recovery_attempts
        if self.failed_recovery_rounds >= max_rounds:
            if isinstance(state, Blocked):
                reason = UnresolvableBlocker(blocker=state.blocker)
            else:
                reason = CriticalFailure(
                    error=attempt.error_message or f"Recovery from {error.type_name} failed"
                )
            logger.error(
                f"Agent {self.agent_id} giving up after {self.failed_recovery_rounds} "
                f"failed recovery rounds"
            )
            self.handle_event(ForceAbandon(reason=reason))
        return attempt

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def status_report(self) -> StatusReport:
        return self.machine.generate_status_report()

    def recovery_report(self) -> RecoveryReport:
        return self.recovery_engine.generate_recovery_report()
