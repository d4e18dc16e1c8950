"""Transition history and status reporting models."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict

from .events import Event
from .states import WorkflowState


class StateTransitionRecord(BaseModel):
    """One applied transition. Records are never modified once appended."""

    model_config = ConfigDict(frozen=True)

    from_state: WorkflowState | None
    to_state: WorkflowState
    event: Event
    timestamp: datetime
    duration_ms: int = 0
    success: bool = True


class StatusReport(BaseModel):
    """Read-only snapshot of a workflow, safe to poll from a dashboard."""

    agent_id: str | None
    current_state: WorkflowState | None
    transitions_count: int
    timeout_in_minutes: int | None
    can_continue: bool
    uptime_minutes: int | None = None
    last_transition: datetime | None = None

    @property
    def state_type(self) -> str:
        if self.current_state is None:
            return "Unassigned"
        return self.current_state.state_type
