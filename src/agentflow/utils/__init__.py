"""agentflow utility modules."""

from .errors import (
    AgentflowError,
    AlreadyTerminal,
    ContinuityError,
    ErrorCategory,
    ErrorInfo,
    InvalidTransition,
    LockError,
    PersistenceError,
    PersistenceIOError,
    RecoveryError,
    RecoveryFailed,
    SerializationError,
    StateCorruption,
    VersionMismatch,
    WorkflowError,
    classify_exception,
    format_error,
    is_debug_mode,
    set_debug_mode,
)

__all__ = [
    # Exceptions
    "AgentflowError",
    "WorkflowError",
    "InvalidTransition",
    "AlreadyTerminal",
    "PersistenceError",
    "PersistenceIOError",
    "SerializationError",
    "StateCorruption",
    "VersionMismatch",
    "LockError",
    "RecoveryFailed",
    "RecoveryError",
    "ContinuityError",
    # Display
    "ErrorCategory",
    "ErrorInfo",
    "classify_exception",
    "format_error",
    "is_debug_mode",
    "set_debug_mode",
]
