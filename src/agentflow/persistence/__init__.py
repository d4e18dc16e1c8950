"""Checkpoint store for workflow state.

This module provides:
- PersistentWorkflowState and checkpoint metadata models
- StatePersistence interface and the FileSystemPersistence backend
- StatePersistenceManager with a background auto-save task
"""

from .manager import StateChannel, StatePersistenceManager
from .models import (
    STATE_VERSION,
    CheckpointInfo,
    CheckpointMetadata,
    CheckpointReason,
    PersistentWorkflowState,
    StateSummary,
)
from .store import (
    PERSISTENCE_DISABLED,
    FileSystemPersistence,
    StatePersistence,
    calculate_integrity_hash,
)

__all__ = [
    # Models
    "STATE_VERSION",
    "PersistentWorkflowState",
    "CheckpointMetadata",
    "CheckpointReason",
    "CheckpointInfo",
    "StateSummary",
    # Backends
    "StatePersistence",
    "FileSystemPersistence",
    "PERSISTENCE_DISABLED",
    "calculate_integrity_hash",
    # Manager
    "StatePersistenceManager",
    "StateChannel",
]
