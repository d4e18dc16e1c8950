"""Recovery strategy selection.

Maps each error type to exactly one recovery strategy:
- retry: transient git, GitHub API and network failures
- automated fix: build, test, dependency, conflict and security problems
  with a known scripted remediation
- escalate: anything needing a human (resource exhaustion, permanent git
  errors, complex or binary conflicts, critical advisories)

Selection is pure and deterministic; no I/O happens here.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath

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
    RecoveryStrategy,
    RetryWithBackoff,
    SecurityVulnerability,
    StateInconsistency,
    SystemResourceError,
    TestFailureError,
    WorkspaceCorruption,
)

# Git messages that will not change on retry
PERMANENT_GIT_PATTERNS: list[str] = [
    r"not\s*found",
    r"does\s*not\s*exist",
    r"permission\s*denied",
    r"authentication\s*failed",
    r"not\s*a\s*git\s*repository",
    r"invalid\s*(reference|refspec)",
]

PERFORMANCE_SUITE_PATTERNS: list[str] = [
    r"perf(ormance)?",
    r"bench(mark)?",
    r"load[\s_-]*test",
    r"stress",
]

FORMAT_LINT_PATTERNS: list[str] = [
    r"format(ting)?",
    r"lint",
    r"clippy",
    r"rustfmt",
]

UNRESOLVED_SYMBOL_PATTERNS: list[str] = [
    r"unresolved",
    r"undefined\s*(reference|symbol)?",
]

BINARY_EXTENSIONS = frozenset(
    {
        ".png", ".jpg", ".jpeg", ".gif", ".ico", ".bmp", ".webp", ".pdf",
        ".zip", ".gz", ".tar", ".tgz", ".jar", ".war", ".exe", ".dll",
        ".so", ".dylib", ".a", ".o", ".bin", ".wasm", ".class", ".pyc",
        ".woff", ".woff2", ".ttf", ".otf", ".mp3", ".mp4", ".mov", ".sqlite",
    }
)

# Conflicts beyond these limits are not attempted automatically
MAX_AUTO_CONFLICT_FILES = 5
MAX_AUTO_CONFLICTS = 20
# At or below both limits the fix is expected to succeed
HIGH_CONFIDENCE_CONFLICT_FILES = 2
HIGH_CONFIDENCE_CONFLICTS = 5

MAX_HIGH_CONFIDENCE_TEST_FAILURES = 3
MAX_RESTORABLE_FILES = 5

# Lifecycle position of each state; side states share their anchor's position
LIFECYCLE_POSITIONS: dict[str, int] = {
    "unassigned": 0,
    "assigned": 1,
    "inprogress": 2,
    "blocked": 2,
    "readyforreview": 3,
    "underreview": 4,
    "approved": 5,
    "mergeconflict": 5,
    "cifailure": 5,
    "merged": 6,
}


def _matches_any(text: str, patterns: list[str]) -> bool:
    return any(re.search(pattern, text, re.IGNORECASE) for pattern in patterns)


def is_binary_path(path: str) -> bool:
    """Guess whether a conflicted file is binary from its extension."""
    return PurePosixPath(path).suffix.lower() in BINARY_EXTENSIONS


def _normalize_state_name(name: str) -> str:
    return re.sub(r"[^a-z]", "", name.lower())


def states_reconcilable(expected: str, actual: str) -> bool:
    """True when two state names are equal or adjacent in the lifecycle."""
    expected_key = _normalize_state_name(expected)
    actual_key = _normalize_state_name(actual)
    if expected_key == actual_key:
        return True
    if expected_key not in LIFECYCLE_POSITIONS or actual_key not in LIFECYCLE_POSITIONS:
        return False
    return abs(LIFECYCLE_POSITIONS[expected_key] - LIFECYCLE_POSITIONS[actual_key]) <= 1


def determine_recovery_strategy(error: ErrorType) -> RecoveryStrategy:
    """Select the recovery strategy for an error.

    Args:
        error: The classified failure.

    Returns:
        RetryWithBackoff, AutomatedFix or Escalate.
    """
    if isinstance(error, GitOperationFailed):
        return _git_strategy(error)
    if isinstance(error, GitHubAPIError):
        return _github_strategy(error)
    if isinstance(error, MergeConflictError):
        return _merge_conflict_strategy(error)
    if isinstance(error, CIFailureError):
        return _ci_strategy(error)
    if isinstance(error, TestFailureError):
        return _test_strategy(error)
    if isinstance(error, BuildFailureError):
        return _build_strategy(error)
    if isinstance(error, DependencyIssue):
        return _dependency_strategy(error)
    if isinstance(error, NetworkIssue):
        if error.timeout:
            return RetryWithBackoff(max_attempts=5, base_delay_ms=1000, max_delay_ms=15000)
        return Escalate(reason=f"Network connectivity to {error.service} lost")
    if isinstance(error, SecurityVulnerability):
        return _security_strategy(error)
    if isinstance(error, SystemResourceError):
        return Escalate(reason=f"System resource exhausted: {error.resource}")
    if isinstance(error, WorkspaceCorruption):
        if len(error.files_affected) <= MAX_RESTORABLE_FILES:
            return AutomatedFix(
                fix_type=FixType.CONFIGURATION_ADJUSTMENT, confidence=ConfidenceLevel.LOW
            )
        return Escalate(
            reason=f"Workspace corruption across {len(error.files_affected)} files"
        )
    if isinstance(error, StateInconsistency):
        if states_reconcilable(error.expected_state, error.actual_state):
            return AutomatedFix(
                fix_type=FixType.STATE_RECONCILIATION, confidence=ConfidenceLevel.HIGH
            )
        return Escalate(
            reason=f"State inconsistency: expected {error.expected_state}, "
            f"found {error.actual_state}"
        )
    raise TypeError(f"Unknown error type: {type(error).__name__}")


def _git_strategy(error: GitOperationFailed) -> RecoveryStrategy:
    if _matches_any(error.error, PERMANENT_GIT_PATTERNS):
        return Escalate(reason=f"git {error.operation} failed permanently: {error.error}")
    if error.operation in ("merge", "rebase") and "conflict" in error.error.lower():
        return AutomatedFix(
            fix_type=FixType.MERGE_CONFLICT_RESOLUTION, confidence=ConfidenceLevel.LOW
        )
    return RetryWithBackoff(max_attempts=3, base_delay_ms=1000, max_delay_ms=10000)


def _github_strategy(error: GitHubAPIError) -> RecoveryStrategy:
    if error.status == 429:
        return RetryWithBackoff(max_attempts=5, base_delay_ms=2000, max_delay_ms=30000)
    if 500 <= error.status <= 599:
        return RetryWithBackoff(max_attempts=3, base_delay_ms=5000, max_delay_ms=20000)
    return Escalate(reason=f"GitHub API {error.endpoint} returned {error.status}")


def _merge_conflict_strategy(error: MergeConflictError) -> RecoveryStrategy:
    binary = [f for f in error.files if is_binary_path(f)]
    if binary:
        return Escalate(reason=f"Binary files in conflict: {', '.join(binary)}")
    if any("migration" in f.lower() for f in error.files):
        return Escalate(reason="Conflicts touch database migrations")
    if len(error.files) > MAX_AUTO_CONFLICT_FILES or error.conflict_count > MAX_AUTO_CONFLICTS:
        return Escalate(
            reason=f"Complex merge conflicts: {error.conflict_count} conflicts "
            f"in {len(error.files)} files"
        )
    if (
        len(error.files) <= HIGH_CONFIDENCE_CONFLICT_FILES
        and error.conflict_count <= HIGH_CONFIDENCE_CONFLICTS
    ):
        confidence = ConfidenceLevel.HIGH
    else:
        confidence = ConfidenceLevel.LOW
    return AutomatedFix(fix_type=FixType.MERGE_CONFLICT_RESOLUTION, confidence=confidence)


def _ci_strategy(error: CIFailureError) -> RecoveryStrategy:
    text = f"{error.step} {error.error}".lower()
    if "test" in text:
        return AutomatedFix(fix_type=FixType.TEST_FAILURE_FIX, confidence=ConfidenceLevel.LOW)
    if "build" in text or "compile" in text:
        return AutomatedFix(fix_type=FixType.BUILD_ERROR_FIX, confidence=ConfidenceLevel.LOW)
    return Escalate(reason=f"CI failure in {error.job}: {error.error}")


def _test_strategy(error: TestFailureError) -> RecoveryStrategy:
    if _matches_any(error.test_suite, PERFORMANCE_SUITE_PATTERNS):
        return RetryWithBackoff(max_attempts=3, base_delay_ms=2000, max_delay_ms=20000)
    if len(error.failed_tests) <= MAX_HIGH_CONFIDENCE_TEST_FAILURES:
        confidence = ConfidenceLevel.HIGH
    else:
        confidence = ConfidenceLevel.LOW
    return AutomatedFix(fix_type=FixType.TEST_FAILURE_FIX, confidence=confidence)


def _build_strategy(error: BuildFailureError) -> RecoveryStrategy:
    stage = error.stage.lower()
    if stage.startswith("dependenc"):
        return AutomatedFix(fix_type=FixType.DEPENDENCY_UPDATE, confidence=ConfidenceLevel.HIGH)
    if _matches_any(error.error, FORMAT_LINT_PATTERNS):
        return AutomatedFix(fix_type=FixType.CODE_FORMATTING, confidence=ConfidenceLevel.HIGH)
    if stage.startswith("compil"):
        return AutomatedFix(fix_type=FixType.SYNTAX_ERROR, confidence=ConfidenceLevel.HIGH)
    if stage.startswith("link") and _matches_any(error.error, UNRESOLVED_SYMBOL_PATTERNS):
        return Escalate(reason=f"Unresolved symbols at link time: {error.error}")
    return AutomatedFix(fix_type=FixType.BUILD_ERROR_FIX, confidence=ConfidenceLevel.LOW)


def _dependency_strategy(error: DependencyIssue) -> RecoveryStrategy:
    if error.version_conflict and not error.resolvable:
        return Escalate(reason=f"Unresolvable version conflict on {error.dependency}")
    confidence = ConfidenceLevel.LOW if error.version_conflict else ConfidenceLevel.HIGH
    return AutomatedFix(fix_type=FixType.DEPENDENCY_UPDATE, confidence=confidence)


def _security_strategy(error: SecurityVulnerability) -> RecoveryStrategy:
    severity = error.severity.lower()
    if severity == "critical":
        reason = f"Critical vulnerability in {error.package} needs review"
        if error.advisory:
            reason += f" ({error.advisory})"
        return Escalate(reason=reason)
    confidence = ConfidenceLevel.LOW if severity == "high" else ConfidenceLevel.HIGH
    return AutomatedFix(fix_type=FixType.SECURITY_PATCH, confidence=confidence)
