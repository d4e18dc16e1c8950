"""Checkpoint store for workflow state.

Layout under the configured state directory:
    <agent_id>.state.json                          latest state
    <agent_id>_checkpoints/<id>.checkpoint.json    named checkpoints

Every file is written to a ``.tmp`` sibling, fsynced and renamed into
place, so a crash never leaves a partially written state behind.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import random
import socket
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from ..config import PersistenceConfig
from ..utils.errors import (
    PersistenceIOError,
    SerializationError,
    StateCorruption,
    VersionMismatch,
)
from ..workflow.models import utcnow
from .models import (
    STATE_VERSION,
    CheckpointInfo,
    CheckpointMetadata,
    CheckpointReason,
    PersistentWorkflowState,
    StateSummary,
)

logger = logging.getLogger(__name__)

PERSISTENCE_DISABLED = "persistence_disabled"

STATE_SUFFIX = ".state.json"
CHECKPOINT_SUFFIX = ".checkpoint.json"


class StatePersistence(ABC):
    """Storage backend for persistent workflow state."""

    @abstractmethod
    def save_state(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None = None,
    ) -> str:
        """Save the latest state for an agent and return its checkpoint id."""
        ...

    @abstractmethod
    def load_state(self, agent_id: str) -> PersistentWorkflowState | None:
        """Load the latest state, or None when nothing was saved."""
        ...

    @abstractmethod
    def create_checkpoint(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None = None,
    ) -> str:
        """Write a named checkpoint and return its id."""
        ...

    @abstractmethod
    def restore_from_checkpoint(self, agent_id: str, checkpoint_id: str) -> PersistentWorkflowState:
        ...

    @abstractmethod
    def list_checkpoints(self, agent_id: str) -> list[CheckpointInfo]:
        """List checkpoints newest first."""
        ...

    @abstractmethod
    def cleanup_old_data(self, agent_id: str) -> int:
        """Delete expired checkpoints and return how many were removed."""
        ...

    @abstractmethod
    def verify_integrity(self, state: PersistentWorkflowState) -> bool:
        ...


def calculate_integrity_hash(state: PersistentWorkflowState) -> str:
    """Hash the fields of a state that must not change behind our back."""
    payload = {
        "agent_id": state.agent_id,
        "version": state.version,
        "state_history": len(state.state_history),
        "recovery_history": len(state.recovery_history),
        "start_time": int(state.start_time.timestamp()) if state.start_time else None,
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def _major_version(version: str) -> str:
    return version.split(".", 1)[0]


class FileSystemPersistence(StatePersistence):
    """JSON files on the local filesystem."""

    def __init__(
        self,
        config: PersistenceConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the store.

        Args:
            config: Persistence settings.
            clock: Source of aware UTC datetimes.
        """
        self.config = config or PersistenceConfig()
        self.state_directory = Path(self.config.state_directory)
        self._clock = clock

    # -------------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------------

    def get_state_file_path(self, agent_id: str) -> Path:
        return self.state_directory / f"{agent_id}{STATE_SUFFIX}"

    def get_checkpoint_dir(self, agent_id: str) -> Path:
        return self.state_directory / f"{agent_id}_checkpoints"

    def get_checkpoint_file_path(self, agent_id: str, checkpoint_id: str) -> Path:
        return self.get_checkpoint_dir(agent_id) / f"{checkpoint_id}{CHECKPOINT_SUFFIX}"

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _generate_checkpoint_id(self) -> str:
        return f"{int(self._clock().timestamp())}_{random.getrandbits(32)}"

    def _stamp(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None,
    ) -> PersistentWorkflowState:
        """Return a copy carrying fresh checkpoint metadata.

        The hash is stored even when checks are off, so a store with checks
        enabled can still verify the file later.
        """
        metadata = CheckpointMetadata(
            checkpoint_id=self._generate_checkpoint_id(),
            creation_reason=reason,
            integrity_hash=calculate_integrity_hash(state),
            agent_pid=os.getpid(),
            hostname=socket.gethostname(),
            created_at=self._clock(),
            note=note,
        )
        return state.model_copy(update={"checkpoint_metadata": metadata})

    def _prune(self, state: PersistentWorkflowState) -> PersistentWorkflowState:
        """Drop the oldest history entries beyond the configured limits."""
        update = {}

        excess = len(state.state_history) - self.config.max_state_history_entries
        if excess > 0:
            update["state_history"] = state.state_history[excess:]
            logger.info(f"Pruned {excess} state history entries for {state.agent_id}")

        excess = len(state.recovery_history) - self.config.max_recovery_history_entries
        if excess > 0:
            update["recovery_history"] = state.recovery_history[excess:]
            logger.info(f"Pruned {excess} recovery history entries for {state.agent_id}")

        return state.model_copy(update=update) if update else state

    def _write_atomic(self, target: Path, content: str) -> None:
        temp_path = target.with_name(target.name + ".tmp")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, target)
        except OSError as e:
            if temp_path.exists():
                temp_path.unlink()
            raise PersistenceIOError(f"Failed to write {target}: {e}") from e

    def _read(self, path: Path) -> PersistentWorkflowState:
        try:
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise SerializationError(f"{path} is not valid UTF-8: {e}") from e
        except OSError as e:
            raise PersistenceIOError(f"Failed to read {path}: {e}") from e

        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise SerializationError(f"{path} is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise SerializationError(f"{path} does not contain a state object")

        found = str(data.get("version", ""))
        if _major_version(found) != _major_version(STATE_VERSION):
            raise VersionMismatch(STATE_VERSION, found)

        try:
            return PersistentWorkflowState.model_validate(data)
        except ValidationError as e:
            raise SerializationError(f"{path} does not match the state schema: {e}") from e

    def _check_integrity(self, state: PersistentWorkflowState) -> None:
        if not self.config.enable_integrity_checks or self.verify_integrity(state):
            return
        expected = state.checkpoint_metadata.integrity_hash if state.checkpoint_metadata else ""
        raise StateCorruption(state.agent_id, expected, calculate_integrity_hash(state))

    # -------------------------------------------------------------------------
    # StatePersistence
    # -------------------------------------------------------------------------

    def save_state(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None = None,
    ) -> str:
        if not self.config.enable_persistence:
            return PERSISTENCE_DISABLED

        to_save = self._prune(state).model_copy(update={"last_persisted": self._clock()})
        to_save = self._stamp(to_save, reason, note)

        target = self.get_state_file_path(state.agent_id)
        self._write_atomic(target, to_save.model_dump_json(indent=2))

        checkpoint_id = to_save.checkpoint_metadata.checkpoint_id
        logger.debug(f"Saved state for {state.agent_id} ({reason.value}) as {checkpoint_id}")
        return checkpoint_id

    def load_state(self, agent_id: str) -> PersistentWorkflowState | None:
        if not self.config.enable_persistence:
            return None

        path = self.get_state_file_path(agent_id)
        if not path.exists():
            logger.debug(f"No saved state for {agent_id}")
            return None

        state = self._read(path)
        self._check_integrity(state)
        logger.info(f"Loaded state for {agent_id} persisted at {state.last_persisted}")
        return state

    def create_checkpoint(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None = None,
    ) -> str:
        if not self.config.enable_persistence:
            return PERSISTENCE_DISABLED

        checkpoint = self._stamp(state, reason, note)
        checkpoint_id = checkpoint.checkpoint_metadata.checkpoint_id
        target = self.get_checkpoint_file_path(state.agent_id, checkpoint_id)
        self._write_atomic(target, checkpoint.model_dump_json(indent=2))

        logger.info(f"Created checkpoint {checkpoint_id} for {state.agent_id} ({reason.value})")
        return checkpoint_id

    def restore_from_checkpoint(self, agent_id: str, checkpoint_id: str) -> PersistentWorkflowState:
        """Load a named checkpoint.

        Raises:
            PersistenceIOError: The checkpoint does not exist.
            SerializationError: The file cannot be parsed.
            StateCorruption: The integrity hash does not match.
        """
        path = self.get_checkpoint_file_path(agent_id, checkpoint_id)
        if not path.exists():
            raise PersistenceIOError(f"Checkpoint {checkpoint_id} not found for agent {agent_id}")

        state = self._read(path)
        self._check_integrity(state)
        logger.info(f"Restored {agent_id} from checkpoint {checkpoint_id}")
        return state

    def list_checkpoints(self, agent_id: str) -> list[CheckpointInfo]:
        checkpoint_dir = self.get_checkpoint_dir(agent_id)
        if not checkpoint_dir.exists():
            return []

        checkpoints = []
        for path in checkpoint_dir.glob(f"*{CHECKPOINT_SUFFIX}"):
            try:
                state = self._read(path)
            except (SerializationError, VersionMismatch, PersistenceIOError) as e:
                logger.warning(f"Skipping unreadable checkpoint {path.name}: {e}")
                continue

            metadata = state.checkpoint_metadata
            if metadata is None:
                continue

            uptime = 0
            if state.start_time is not None:
                uptime = int((metadata.created_at - state.start_time).total_seconds() // 60)

            checkpoints.append(
                CheckpointInfo(
                    checkpoint_id=metadata.checkpoint_id,
                    creation_time=metadata.created_at,
                    reason=metadata.creation_reason,
                    state_summary=StateSummary(
                        current_state_type=(
                            state.current_state.state_type
                            if state.current_state is not None
                            else "Unassigned"
                        ),
                        transitions_count=len(state.state_history),
                        recovery_attempts=len(state.recovery_history),
                        uptime_minutes=max(0, uptime),
                    ),
                    file_size=path.stat().st_size,
                    note=metadata.note,
                )
            )

        checkpoints.sort(key=lambda c: c.creation_time, reverse=True)
        return checkpoints

    def cleanup_old_data(self, agent_id: str) -> int:
        checkpoint_dir = self.get_checkpoint_dir(agent_id)
        if not checkpoint_dir.exists():
            return 0

        cutoff = self._clock() - timedelta(days=self.config.backup_retention_days)
        removed = 0
        for path in checkpoint_dir.iterdir():
            if not path.is_file():
                continue
            modified = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            if modified >= cutoff:
                continue
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove old checkpoint {path}: {e}")
                continue
            removed += 1
            logger.debug(f"Removed old checkpoint {path.name}")

        if removed:
            logger.info(
                f"Cleaned up {removed} checkpoints older than "
                f"{self.config.backup_retention_days} days for {agent_id}"
            )
        return removed

    def verify_integrity(self, state: PersistentWorkflowState) -> bool:
        if not self.config.enable_integrity_checks:
            return True
        if state.checkpoint_metadata is None:
            return False
        return state.checkpoint_metadata.integrity_hash == calculate_integrity_hash(state)
