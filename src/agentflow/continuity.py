"""Work continuity across agent restarts.

On startup the continuity manager inspects the last persisted state and
decides how the driver should proceed:
- ContinueWork: recent, consistent state; pick up where we left off
- ValidateAndResync: usable but stale or incomplete; verify against the
  live repository before trusting it
- StartFresh: too old, finished, or unreadable; begin again

It is also the write side used by the driver after each meaningful step.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from .config import AgentflowConfig
from .persistence.manager import StateChannel, StatePersistenceManager
from .persistence.models import CheckpointReason, PersistentWorkflowState
from .utils.errors import ContinuityError, PersistenceError, RecoveryFailed
from .workflow.machine import WorkflowStateMachine
from .workflow.models import Issue, utcnow

logger = logging.getLogger(__name__)

# Reasons that also get a named checkpoint alongside the latest-state file
NAMED_CHECKPOINT_REASONS = frozenset(
    {
        CheckpointReason.BEFORE_RECOVERY,
        CheckpointReason.BEFORE_SHUTDOWN,
        CheckpointReason.AFTER_ERROR,
        CheckpointReason.USER_REQUESTED,
    }
)


# =============================================================================
# Resume actions
# =============================================================================


class _ResumeBase(BaseModel):
    model_config = ConfigDict(frozen=True)


class ContinueWork(_ResumeBase):
    kind: Literal["continue_work"] = "continue_work"
    issue: Issue
    branch: str
    last_progress: str


class ValidateAndResync(_ResumeBase):
    kind: Literal["validate_and_resync"] = "validate_and_resync"
    reason: str


class StartFresh(_ResumeBase):
    kind: Literal["start_fresh"] = "start_fresh"
    reason: str


ResumeAction = Annotated[
    ContinueWork | ValidateAndResync | StartFresh,
    Field(discriminator="kind"),
]


class ContinuityStatus(BaseModel):
    """What the continuity manager knows about an agent."""

    is_active: bool
    agent_id: str
    last_checkpoint_id: str | None = None
    last_checkpoint_at: datetime | None = None
    current_issue: int | None = None
    current_branch: str | None = None
    can_resume: bool = False


# =============================================================================
# Manager
# =============================================================================


class WorkContinuityManager:
    """Decides how to resume work and records checkpoints for the driver."""

    def __init__(
        self,
        config: AgentflowConfig | None = None,
        persistence_manager: StatePersistenceManager | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the manager.

        Args:
            config: Full agentflow configuration.
            persistence_manager: Persistence front door. Built from config when omitted.
            clock: Source of aware UTC datetimes.
        """
        self.config = config or AgentflowConfig()
        self.persistence = persistence_manager or StatePersistenceManager(
            self.config.persistence, clock=clock
        )
        self._clock = clock
        self._channel: StateChannel | None = None

    @property
    def is_active(self) -> bool:
        return self._channel is not None and self.persistence.is_auto_saving

    async def initialize(self) -> None:
        """Start the auto-save task when persistence is enabled."""
        if self._channel is not None:
            return
        if not self.config.persistence.enable_persistence:
            logger.info("Persistence disabled, auto-save not started")
            return

        self._channel = StateChannel(self.config.persistence.channel_capacity)
        self.persistence.start_auto_save(self._channel)

    async def shutdown(self) -> None:
        """Close the auto-save channel and wait for queued snapshots to be written."""
        channel = self._channel
        self._channel = None
        if channel is None:
            await self.persistence.stop_auto_save()
            return
        channel.close()
        await self.persistence.stop_auto_save(drain=True)

    # -------------------------------------------------------------------------
    # Resume decisions
    # -------------------------------------------------------------------------

    def recover_from_checkpoint(self, agent_id: str) -> ResumeAction | None:
        """Decide how to resume an agent from its last saved state.

        Returns:
            None when there is nothing saved (or continuity is disabled),
            otherwise the resume action.
        """
        if not self.config.continuity.enable_continuity:
            return None

        try:
            state = self.persistence.load_state(agent_id)
        except PersistenceError as e:
            logger.warning(f"Saved state for {agent_id} is unusable, starting fresh: {e}")
            return StartFresh(reason=f"Saved state could not be loaded: {e}")

        if state is None:
            return None

        action = self._decide(state)
        logger.info(f"Resume decision for {agent_id}: {action.kind}")
        return action

    def _decide(self, state: PersistentWorkflowState) -> ResumeAction:
        continuity = self.config.continuity
        age = self._clock() - state.last_persisted

        if age > timedelta(hours=continuity.force_fresh_start_after_hours):
            hours = age.total_seconds() / 3600
            return StartFresh(reason=f"Saved state is {hours:.1f} hours old")

        current = state.current_state
        if current is None:
            return StartFresh(reason="No work was in progress")
        if current.is_terminal:
            return StartFresh(reason=f"Previous work already {current.state_type}")

        if age > timedelta(minutes=continuity.resync_after_minutes):
            minutes = int(age.total_seconds() // 60)
            return ValidateAndResync(reason=f"Saved state is {minutes} minutes old")

        machine = self._machine_from(state)
        branch = machine.current_branch
        if not branch:
            return ValidateAndResync(reason=f"No branch recorded for issue #{current.issue.number}")

        progress = machine.current_progress
        description = progress.describe() if progress is not None else f"In {current.state_type}"
        return ContinueWork(issue=current.issue, branch=branch, last_progress=description)

    def _machine_from(self, state: PersistentWorkflowState) -> WorkflowStateMachine:
        return WorkflowStateMachine.from_persistent_state(
            state, base_branch=self.config.workflow.base_branch, clock=self._clock
        )

    def restore_machine(self, agent_id: str) -> WorkflowStateMachine | None:
        """Rebuild the state machine from the last saved state."""
        state = self.persistence.load_state(agent_id)
        if state is None:
            return None
        return self._machine_from(state)

    def rollback_to_checkpoint(self, agent_id: str, checkpoint_id: str) -> WorkflowStateMachine:
        """Make a named checkpoint the latest state and rebuild the machine from it.

        Raises:
            RecoveryFailed: The checkpoint could not be read.
            ContinuityError: The checkpoint belongs to another agent.
        """
        try:
            state = self.persistence.restore_from_checkpoint(agent_id, checkpoint_id)
        except PersistenceError as e:
            raise RecoveryFailed(f"Cannot restore {agent_id} from {checkpoint_id}: {e}") from e

        if state.agent_id != agent_id:
            raise ContinuityError(
                f"Checkpoint {checkpoint_id} belongs to {state.agent_id}, not {agent_id}"
            )

        # Stamped now so snapshots queued before the rollback count as older
        state = state.model_copy(update={"last_persisted": self._clock()})
        self.persistence.save_state(
            state, CheckpointReason.USER_REQUESTED, note=f"Rolled back to {checkpoint_id}"
        )
        logger.info(f"Rolled {agent_id} back to checkpoint {checkpoint_id}")
        return self._machine_from(state)

    # -------------------------------------------------------------------------
    # Checkpointing
    # -------------------------------------------------------------------------

    def checkpoint_state(
        self,
        snapshot: PersistentWorkflowState,
        note: str | None = None,
        reason: CheckpointReason = CheckpointReason.STATE_TRANSITION,
    ) -> str:
        """Save a snapshot and hand it to the auto-save task.

        Returns:
            The checkpoint id of the saved state.
        """
        checkpoint_id = self.persistence.save_state(snapshot, reason, note)

        if reason in NAMED_CHECKPOINT_REASONS:
            self.persistence.create_checkpoint(snapshot, reason, note)

        self.enqueue_state(snapshot)
        return checkpoint_id

    def enqueue_state(self, snapshot: PersistentWorkflowState) -> bool:
        """Hand a snapshot to the auto-save task without writing it here.

        A snapshot that does not fit in the channel is still kept as the
        latest state, so the next periodic save writes it.

        Returns:
            True when the snapshot was queued.
        """
        if self._channel is None:
            return False

        self.persistence.offer_latest(snapshot)
        if not self._channel.try_send(snapshot):
            logger.debug(f"Auto-save channel full, dropped snapshot for {snapshot.agent_id}")
            return False
        return True

    def get_continuity_status(self, agent_id: str) -> ContinuityStatus:
        try:
            state = self.persistence.load_state(agent_id)
        except PersistenceError as e:
            logger.warning(f"Cannot read saved state for {agent_id}: {e}")
            state = None

        if state is None:
            return ContinuityStatus(is_active=self.is_active, agent_id=agent_id)

        machine = self._machine_from(state)
        issue = machine.current_issue
        return ContinuityStatus(
            is_active=self.is_active,
            agent_id=agent_id,
            last_checkpoint_id=(
                state.checkpoint_metadata.checkpoint_id if state.checkpoint_metadata else None
            ),
            last_checkpoint_at=state.last_persisted,
            current_issue=issue.number if issue is not None else None,
            current_branch=machine.current_branch,
            can_resume=(
                self.config.continuity.enable_continuity
                and isinstance(self._decide(state), ContinueWork)
            ),
        )
