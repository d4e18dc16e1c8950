"""On-disk models for the checkpoint store."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from ..recovery.models import RecoveryAttempt
from ..workflow.models import utcnow
from ..workflow.records import StateTransitionRecord
from ..workflow.states import WorkflowState

STATE_VERSION = "1.0.0"


class CheckpointReason(str, Enum):
    """Why a state was written, recorded for audit."""

    PERIODIC_SAVE = "periodic_save"
    STATE_TRANSITION = "state_transition"
    BEFORE_RECOVERY = "before_recovery"
    BEFORE_SHUTDOWN = "before_shutdown"
    AFTER_ERROR = "after_error"
    USER_REQUESTED = "user_requested"


class CheckpointMetadata(BaseModel):
    """Metadata stamped on every save."""

    checkpoint_id: str
    creation_reason: CheckpointReason
    integrity_hash: str
    agent_pid: int
    hostname: str
    created_at: datetime = Field(default_factory=utcnow)
    note: str | None = None


class PersistentWorkflowState(BaseModel):
    """Everything written to disk for one agent.

    The in-memory state machine is rebuilt from this, never the reverse.
    """

    version: str = STATE_VERSION
    agent_id: str
    current_state: WorkflowState | None = None
    start_time: datetime | None = None
    max_work_hours: int = 8
    state_history: list[StateTransitionRecord] = Field(default_factory=list)
    recovery_history: list[RecoveryAttempt] = Field(default_factory=list)
    checkpoint_metadata: CheckpointMetadata | None = None
    last_persisted: datetime = Field(default_factory=utcnow)


class StateSummary(BaseModel):
    """Short description of a checkpointed state."""

    current_state_type: str
    transitions_count: int
    recovery_attempts: int
    uptime_minutes: int


class CheckpointInfo(BaseModel):
    """Listing entry for a named checkpoint."""

    checkpoint_id: str
    creation_time: datetime
    reason: CheckpointReason
    state_summary: StateSummary
    file_size: int
    note: str | None = None
