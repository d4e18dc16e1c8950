"""Remediation executors used by the recovery engine.

The engine decides *what* to do; an executor performs it against the
agent's workspace. CommandRemediation runs git and the configured fix
commands as subprocesses. Tests and embedders supply their own executor.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from abc import ABC, abstractmethod
from pathlib import Path

from ..config import RecoveryConfig
from .conflicts import has_conflict_markers, resolve_conflict_text
from .models import (
    ErrorType,
    FixType,
    GitHubAPIError,
    GitOperationFailed,
    MergeConflictError,
    NetworkIssue,
    RecoveryAction,
    RecoveryActionKind,
    StateInconsistency,
    TestFailureError,
    WorkspaceCorruption,
)

logger = logging.getLogger(__name__)


class RemediationExecutor(ABC):
    """Performs retries and scripted fixes for the recovery engine."""

    @abstractmethod
    async def retry_operation(self, error: ErrorType) -> RecoveryAction:
        """Retry the operation that failed.

        Args:
            error: The failure being retried.

        Returns:
            The action taken; ``success`` tells whether the retry worked.
        """
        ...

    @abstractmethod
    async def apply_fix(self, fix_type: FixType, error: ErrorType) -> list[RecoveryAction]:
        """Apply a scripted fix.

        Args:
            fix_type: The remediation to apply.
            error: The failure being fixed.

        Returns:
            Actions taken, in order. The fix succeeded when every action did.
        """
        ...


class CommandRemediation(RemediationExecutor):
    """Runs remediations as subprocesses in the agent's workspace."""

    def __init__(self, config: RecoveryConfig | None = None):
        """Initialize the executor.

        Args:
            config: Recovery settings (workspace path, timeout, fix commands).
        """
        self.config = config or RecoveryConfig()
        self.workspace = Path(self.config.workspace_path)

    async def _run(self, argv: list[str]) -> tuple[int, str]:
        """Run a command and return (exit code, trimmed output)."""
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self.workspace),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.command_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, f"timed out after {self.config.command_timeout}s"

        output = (stderr or stdout or b"").decode(errors="replace").strip()
        return process.returncode if process.returncode is not None else -1, output

    async def _run_command(
        self,
        argv: list[str],
        kind: RecoveryActionKind = RecoveryActionKind.RUN_COMMAND,
        files: list[str] | None = None,
    ) -> RecoveryAction:
        command = shlex.join(argv)
        try:
            code, output = await self._run(argv)
        except FileNotFoundError:
            logger.warning(f"Remediation command not found: {argv[0]}")
            return RecoveryAction(
                kind=kind, detail=f"{command}: command not found", files=files or [], success=False
            )

        if code != 0:
            logger.warning(f"Remediation command failed ({code}): {command}: {output[:200]}")
            return RecoveryAction(
                kind=kind, detail=f"{command}: {output[:200]}", files=files or [], success=False
            )

        logger.debug(f"Remediation command succeeded: {command}")
        return RecoveryAction(kind=kind, detail=command, files=files or [], success=True)

    async def retry_operation(self, error: ErrorType) -> RecoveryAction:
        retry = RecoveryActionKind.RETRY_OPERATION

        if isinstance(error, GitOperationFailed):
            return await self._run_command(["git", *shlex.split(error.operation)], kind=retry)

        if isinstance(error, GitHubAPIError):
            return await self._run_command(["gh", "api", error.endpoint], kind=retry)

        if isinstance(error, NetworkIssue):
            return await self._run_command(
                ["git", "ls-remote", "--exit-code", "origin"], kind=retry
            )

        if isinstance(error, TestFailureError):
            commands = self.config.fix_commands.get(FixType.TEST_FAILURE_FIX.value, [])
            if commands:
                return await self._run_command(shlex.split(commands[-1]), kind=retry)

        return RecoveryAction(
            kind=retry,
            detail=f"No retry operation for {error.type_name}",
            success=False,
        )

    async def apply_fix(self, fix_type: FixType, error: ErrorType) -> list[RecoveryAction]:
        if fix_type == FixType.MERGE_CONFLICT_RESOLUTION:
            return await self._resolve_conflicts(error)

        if fix_type == FixType.CONFIGURATION_ADJUSTMENT and isinstance(error, WorkspaceCorruption):
            return [
                await self._run_command(
                    ["git", "checkout", "--", *error.files_affected],
                    kind=RecoveryActionKind.RESTORE_FILES,
                    files=list(error.files_affected),
                )
            ]

        if fix_type == FixType.STATE_RECONCILIATION:
            detail = "Adopted observed state"
            if isinstance(error, StateInconsistency):
                detail = f"Adopted {error.actual_state} in place of {error.expected_state}"
            return [RecoveryAction(kind=RecoveryActionKind.RECONCILE_STATE, detail=detail)]

        commands = self.config.fix_commands.get(fix_type.value, [])
        if not commands:
            return [
                RecoveryAction(
                    kind=RecoveryActionKind.RUN_COMMAND,
                    detail=f"No commands configured for {fix_type.value}",
                    success=False,
                )
            ]

        actions = []
        for command in commands:
            action = await self._run_command(shlex.split(command))
            actions.append(action)
            if not action.success:
                break
        return actions

    async def _conflicted_files(self) -> list[str]:
        code, output = await self._run(["git", "diff", "--name-only", "--diff-filter=U"])
        if code != 0:
            return []
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def _resolve_conflicts(self, error: ErrorType) -> list[RecoveryAction]:
        if isinstance(error, MergeConflictError) and error.files:
            files = list(error.files)
        else:
            files = await self._conflicted_files()

        actions: list[RecoveryAction] = []
        for name in files:
            path = self.workspace / name
            try:
                text = await asyncio.to_thread(path.read_text)
            except OSError as e:
                actions.append(
                    RecoveryAction(
                        kind=RecoveryActionKind.RESOLVE_CONFLICTS,
                        detail=f"Cannot read {name}: {e}",
                        files=[name],
                        success=False,
                    )
                )
                continue

            if not has_conflict_markers(text):
                continue

            try:
                resolved, hunks = resolve_conflict_text(text)
            except ValueError as e:
                actions.append(
                    RecoveryAction(
                        kind=RecoveryActionKind.RESOLVE_CONFLICTS,
                        detail=f"{name}: {e}",
                        files=[name],
                        success=False,
                    )
                )
                continue

            await asyncio.to_thread(path.write_text, resolved)
            logger.info(f"Resolved {hunks} conflict hunks in {name}")
            staged = await self._run_command(
                ["git", "add", "--", name],
                kind=RecoveryActionKind.RESOLVE_CONFLICTS,
                files=[name],
            )
            if staged.success:
                staged = staged.model_copy(update={"detail": f"Resolved {hunks} hunks in {name}"})
            actions.append(staged)

        if not actions:
            actions.append(
                RecoveryAction(
                    kind=RecoveryActionKind.RESOLVE_CONFLICTS,
                    detail="No conflicted files found",
                    success=False,
                )
            )
        return actions
