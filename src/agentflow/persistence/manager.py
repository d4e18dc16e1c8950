"""Persistence manager with background auto-save.

The driver pushes state snapshots into a bounded StateChannel; the
auto-save task writes each one as a StateTransition save and re-saves the
latest snapshot as a PeriodicSave whenever an interval passes quietly.

Direct saves and auto-save writes go through one lock. An auto-save write of
a snapshot older than what is already on disk is skipped, so a late queued
snapshot never replaces newer state. Closing the channel lets the task
drain what is queued before it exits.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
from collections.abc import Callable
from datetime import datetime

from ..config import PersistenceConfig
from ..utils.errors import LockError, PersistenceError
from ..workflow.models import utcnow
from .models import CheckpointInfo, CheckpointReason, PersistentWorkflowState
from .store import FileSystemPersistence, StatePersistence

logger = logging.getLogger(__name__)

_CLOSED = object()


class StateChannel:
    """Bounded single-consumer queue of state snapshots."""

    def __init__(self, capacity: int = 100):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=capacity)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def qsize(self) -> int:
        return self._queue.qsize()

    def try_send(self, state: PersistentWorkflowState) -> bool:
        """Enqueue without waiting. Returns False when full or closed."""
        if self._closed:
            return False
        try:
            self._queue.put_nowait(state)
        except asyncio.QueueFull:
            return False
        return True

    async def send(self, state: PersistentWorkflowState) -> None:
        if self._closed:
            raise PersistenceError("State channel is closed")
        await self._queue.put(state)

    async def receive(self) -> PersistentWorkflowState | None:
        """Next snapshot, or None once the channel is closed and drained."""
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        return None if item is _CLOSED else item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        # Wakes a waiting receiver; a full queue is drained first instead.
        with contextlib.suppress(asyncio.QueueFull):
            self._queue.put_nowait(_CLOSED)


class StatePersistenceManager:
    """Front door to a StatePersistence backend."""

    def __init__(
        self,
        config: PersistenceConfig | None = None,
        store: StatePersistence | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the manager.

        Args:
            config: Persistence settings.
            store: Backend to use. Defaults to FileSystemPersistence.
            clock: Source of aware UTC datetimes for the default backend.
        """
        self.config = config or PersistenceConfig()
        self.store = store or FileSystemPersistence(self.config, clock)
        self._auto_save_task: asyncio.Task | None = None
        self._latest_state: PersistentWorkflowState | None = None
        self._write_lock = threading.Lock()
        self._last_written: tuple | None = None

    # -------------------------------------------------------------------------
    # Delegation
    # -------------------------------------------------------------------------

    def save_state(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None = None,
    ) -> str:
        self._latest_state = state
        return self._write(state, reason, note, force=True)

    def load_state(self, agent_id: str) -> PersistentWorkflowState | None:
        return self.store.load_state(agent_id)

    def create_checkpoint(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None = None,
    ) -> str:
        return self.store.create_checkpoint(state, reason, note)

    def restore_from_checkpoint(self, agent_id: str, checkpoint_id: str) -> PersistentWorkflowState:
        return self.store.restore_from_checkpoint(agent_id, checkpoint_id)

    def list_checkpoints(self, agent_id: str) -> list[CheckpointInfo]:
        return self.store.list_checkpoints(agent_id)

    def cleanup_old_data(self, agent_id: str) -> int:
        return self.store.cleanup_old_data(agent_id)

    def verify_integrity(self, state: PersistentWorkflowState) -> bool:
        return self.store.verify_integrity(state)

    # -------------------------------------------------------------------------
    # Auto-save
    # -------------------------------------------------------------------------

    @property
    def is_auto_saving(self) -> bool:
        return self._auto_save_task is not None and not self._auto_save_task.done()

    def offer_latest(self, state: PersistentWorkflowState) -> None:
        """Remember a snapshot for the periodic save unless a newer one is known."""
        if self._latest_state is None or _freshness(state) >= _freshness(self._latest_state):
            self._latest_state = state

    def start_auto_save(self, channel: StateChannel) -> asyncio.Task:
        """Start the auto-save task on the running loop.

        Raises:
            LockError: Auto-save is already running.
        """
        if self.is_auto_saving:
            raise LockError("Auto-save is already running")

        self._auto_save_task = asyncio.create_task(
            self._auto_save_loop(channel), name="agentflow-auto-save"
        )
        logger.info(
            f"Auto-save started (interval {self.config.auto_save_interval_minutes} minutes)"
        )
        return self._auto_save_task

    async def stop_auto_save(self, drain: bool = False) -> None:
        """Stop the auto-save task and wait for it to finish.

        Args:
            drain: Let the task write what is still queued and exit on its own.
                The caller must have closed the channel. Otherwise the task is
                cancelled.
        """
        task = self._auto_save_task
        self._auto_save_task = None
        if task is None:
            return

        if drain:
            await task
        else:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        logger.info("Auto-save stopped")

    async def _auto_save_loop(self, channel: StateChannel) -> None:
        interval = self.config.auto_save_interval_minutes * 60

        while True:
            try:
                state = await asyncio.wait_for(channel.receive(), timeout=interval)
            except asyncio.TimeoutError:
                if self._latest_state is not None:
                    await self._save(self._latest_state, CheckpointReason.PERIODIC_SAVE)
                continue

            if state is None:
                latest = self._latest_state
                if latest is not None and self._is_unwritten(latest):
                    await self._save(latest, CheckpointReason.STATE_TRANSITION)
                logger.debug("Auto-save channel closed")
                return

            self.offer_latest(state)
            await self._save(state, CheckpointReason.STATE_TRANSITION)

    def _is_unwritten(self, state: PersistentWorkflowState) -> bool:
        with self._write_lock:
            return self._last_written is None or _freshness(state) > self._last_written

    def _write(
        self,
        state: PersistentWorkflowState,
        reason: CheckpointReason,
        note: str | None,
        force: bool,
    ) -> str | None:
        """Write through to the store unless a newer state is already on disk.

        Direct saves pass ``force`` and always win; auto-save writes of a
        snapshot older than the last written one are skipped.
        """
        key = _freshness(state)
        with self._write_lock:
            if not force and self._last_written is not None and key < self._last_written:
                logger.debug(
                    f"Skipped stale {reason.value} save for {state.agent_id}, "
                    f"a newer state is already written"
                )
                return None
            checkpoint_id = self.store.save_state(state, reason, note)
            self._last_written = key
            return checkpoint_id

    async def _save(self, state: PersistentWorkflowState, reason: CheckpointReason) -> None:
        try:
            await asyncio.to_thread(self._write, state, reason, None, False)
        except PersistenceError as e:
            logger.error(f"Auto-save failed for {state.agent_id} ({reason.value}): {e}")


def _freshness(state: PersistentWorkflowState) -> tuple:
    """Ordering key of snapshots taken from one running machine."""
    return (state.last_persisted, len(state.state_history), len(state.recovery_history))
