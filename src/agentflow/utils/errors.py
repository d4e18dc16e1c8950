"""Exceptions and error formatting for agentflow.

Provides:
- The exception hierarchy raised by the state machine, the checkpoint
  store, the recovery engine and the continuity manager
- Structured ErrorInfo with suggested fixes
- Consistent rich console formatting (stack traces only in debug mode)
"""

from __future__ import annotations

import os
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from rich.console import Console

# Debug mode enabled by AGENTFLOW_DEBUG=1
_debug_mode = os.environ.get("AGENTFLOW_DEBUG", "0") == "1"


# =============================================================================
# Exception hierarchy
# =============================================================================


class AgentflowError(Exception):
    """Base class for all agentflow errors."""


class WorkflowError(AgentflowError):
    """Base class for state machine errors."""


class InvalidTransition(WorkflowError):
    """The (state, event) pair is not in the transition table."""

    def __init__(self, from_state: str, event: str):
        self.from_state = from_state
        self.event = event
        super().__init__(f"Invalid transition from {from_state} on {event}")


class AlreadyTerminal(WorkflowError):
    """The workflow already reached Merged or Abandoned."""

    def __init__(self, state: str, event: str):
        self.state = state
        self.event = event
        super().__init__(f"Workflow is terminal ({state}); rejected {event}")


class PersistenceError(AgentflowError):
    """Base class for checkpoint store errors."""


class PersistenceIOError(PersistenceError):
    """Reading or writing a state file failed."""


class SerializationError(PersistenceError):
    """A state file could not be encoded or decoded."""


class StateCorruption(PersistenceError):
    """The stored integrity hash does not match the state contents."""

    def __init__(self, agent_id: str, expected: str, actual: str):
        self.agent_id = agent_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State corruption detected for {agent_id}: "
            f"expected hash {expected[:12]}, got {actual[:12]}"
        )


class VersionMismatch(PersistenceError):
    """The stored state was written by an incompatible format version."""

    def __init__(self, expected: str, found: str):
        self.expected = expected
        self.found = found
        super().__init__(f"State version mismatch: expected {expected}, found {found}")


class LockError(PersistenceError):
    """Another owner is already writing state for this agent."""


class RecoveryFailed(PersistenceError):
    """Restoring from a checkpoint failed."""


class RecoveryError(AgentflowError):
    """A recovery strategy could not be executed."""


class ContinuityError(AgentflowError):
    """Work continuity could not be established."""


# =============================================================================
# Error display
# =============================================================================


class ErrorCategory(str, Enum):
    """Categories of errors for consistent formatting."""

    CONFIG = "config"  # Configuration errors
    FILE = "file"  # File not found, permission errors
    PERSISTENCE = "persistence"  # Checkpoint store errors
    WORKFLOW = "workflow"  # Illegal transitions
    RECOVERY = "recovery"  # Recovery execution errors
    GIT = "git"  # Git operation errors
    NETWORK = "network"  # Network/API errors
    INTERNAL = "internal"  # Internal/unexpected errors


@dataclass
class ErrorInfo:
    """Structured error information for consistent display."""

    message: str
    category: ErrorCategory
    suggestion: str | None = None
    details: str | None = None
    original_error: Exception | None = None


def set_debug_mode(enabled: bool) -> None:
    """Enable or disable debug mode for verbose error output."""
    global _debug_mode
    _debug_mode = enabled


def is_debug_mode() -> bool:
    """Check if debug mode is enabled."""
    return _debug_mode


def format_error(error: ErrorInfo, console: Console) -> None:
    """Format and display an error with consistent styling.

    Args:
        error: Structured error information
        console: Rich console for output
    """
    console.print(f"[bold red]Error:[/bold red] {error.message}")

    if error.details:
        if _debug_mode or len(error.details) < 200:
            console.print(f"[dim]{error.details}[/dim]")

    if error.suggestion:
        console.print()
        console.print(f"[yellow]Suggestion:[/yellow] {error.suggestion}")

    if _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Stack trace (debug mode):[/dim]")
        tb_lines = traceback.format_exception(
            type(error.original_error),
            error.original_error,
            error.original_error.__traceback__,
        )
        for line in tb_lines:
            console.print(f"[dim]{line.rstrip()}[/dim]")

    if not _debug_mode and error.original_error:
        console.print()
        console.print("[dim]Set AGENTFLOW_DEBUG=1 for more details[/dim]")


def classify_exception(exception: Exception, context: str = "operation") -> ErrorInfo:
    """Classify an exception into an ErrorInfo.

    Args:
        exception: The exception to classify
        context: Description of what was being done

    Returns:
        ErrorInfo with appropriate categorization
    """
    if isinstance(exception, StateCorruption):
        return ErrorInfo(
            message=f"Checkpoint for {exception.agent_id} failed its integrity check",
            category=ErrorCategory.PERSISTENCE,
            suggestion="Restore from an older checkpoint or start the work fresh",
            details=str(exception),
            original_error=exception,
        )

    if isinstance(exception, VersionMismatch):
        return ErrorInfo(
            message=f"Unsupported state format {exception.found}",
            category=ErrorCategory.PERSISTENCE,
            suggestion="Remove the stale state file; it was written by another release",
            original_error=exception,
        )

    if isinstance(exception, PersistenceError):
        return ErrorInfo(
            message=f"Persistence failed during {context}: {exception}",
            category=ErrorCategory.PERSISTENCE,
            suggestion="Check that the state directory exists and is writable",
            original_error=exception,
        )

    if isinstance(exception, AlreadyTerminal):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.WORKFLOW,
            suggestion="Assign a new issue instead of reusing a finished workflow",
            original_error=exception,
        )

    if isinstance(exception, WorkflowError):
        return ErrorInfo(
            message=str(exception),
            category=ErrorCategory.WORKFLOW,
            suggestion="The driver sent an event that is not legal in the current state",
            original_error=exception,
        )

    if isinstance(exception, RecoveryError):
        return ErrorInfo(
            message=f"Recovery failed: {exception}",
            category=ErrorCategory.RECOVERY,
            suggestion="Inspect the recovery report for the failed attempts",
            original_error=exception,
        )

    if isinstance(exception, FileNotFoundError):
        return ErrorInfo(
            message=f"{context.capitalize()} not found: {exception.filename or exception}",
            category=ErrorCategory.FILE,
            suggestion="Check the path and ensure the file exists",
            original_error=exception,
        )

    if isinstance(exception, PermissionError):
        return ErrorInfo(
            message=f"Permission denied: {exception}",
            category=ErrorCategory.FILE,
            suggestion="Check file permissions or run with appropriate access",
            original_error=exception,
        )

    if isinstance(exception, (ConnectionError, TimeoutError)):
        return ErrorInfo(
            message=f"{context} network error: {exception}",
            category=ErrorCategory.NETWORK,
            suggestion="Check your network connection and retry",
            original_error=exception,
        )

    error_str = str(exception).lower()
    if any(word in error_str for word in ["git", "branch", "commit", "merge"]):
        return ErrorInfo(
            message=f"Git {context} failed: {exception}",
            category=ErrorCategory.GIT,
            suggestion="Check git status and ensure working directory is clean",
            original_error=exception,
        )

    if any(word in error_str for word in ["config", "toml"]):
        return ErrorInfo(
            message=f"Configuration error: {exception}",
            category=ErrorCategory.CONFIG,
            suggestion="Check ~/.agentflow/config.toml or AGENTFLOW_CONFIG",
            original_error=exception,
        )

    return ErrorInfo(
        message=f"Internal error: {context}: {exception}",
        category=ErrorCategory.INTERNAL,
        suggestion="This may be a bug. Re-run with AGENTFLOW_DEBUG=1 and report it",
        original_error=exception,
    )
