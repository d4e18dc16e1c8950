"""Error recovery for autonomous agents.

This module provides:
- The error type vocabulary and recovery strategy models
- Deterministic strategy selection
- ErrorRecoveryEngine with pluggable remediation executors
- Text-level merge conflict resolution
"""

from .classifier import determine_recovery_strategy, is_binary_path, states_reconcilable
from .conflicts import has_conflict_markers, resolve_conflict_text
from .engine import ErrorRecoveryEngine
from .models import (
    AutomatedFix,
    BuildFailureError,
    CIFailureError,
    ConfidenceLevel,
    DependencyIssue,
    ErrorType,
    Escalate,
    FixType,
    GitHubAPIError,
    GitOperationFailed,
    MergeConflictError,
    NetworkIssue,
    RecoveryAction,
    RecoveryActionKind,
    RecoveryAttempt,
    RecoveryReport,
    RecoveryStrategy,
    RetryWithBackoff,
    SecurityVulnerability,
    StateInconsistency,
    SystemResourceError,
    TestFailureError,
    WorkspaceCorruption,
)
from .remediation import CommandRemediation, RemediationExecutor

__all__ = [
    # Engine
    "ErrorRecoveryEngine",
    "determine_recovery_strategy",
    "is_binary_path",
    "states_reconcilable",
    # Executors
    "RemediationExecutor",
    "CommandRemediation",
    "has_conflict_markers",
    "resolve_conflict_text",
    # Error types
    "ErrorType",
    "GitOperationFailed",
    "GitHubAPIError",
    "MergeConflictError",
    "CIFailureError",
    "TestFailureError",
    "BuildFailureError",
    "DependencyIssue",
    "NetworkIssue",
    "SecurityVulnerability",
    "SystemResourceError",
    "WorkspaceCorruption",
    "StateInconsistency",
    # Strategies
    "RecoveryStrategy",
    "RetryWithBackoff",
    "AutomatedFix",
    "Escalate",
    "FixType",
    "ConfidenceLevel",
    # Attempts
    "RecoveryAction",
    "RecoveryActionKind",
    "RecoveryAttempt",
    "RecoveryReport",
]
