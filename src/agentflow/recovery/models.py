"""Error, strategy and attempt models for the recovery engine."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from ..workflow.models import utcnow


class _Tagged(BaseModel):
    model_config = ConfigDict(frozen=True)

    @property
    def type_name(self) -> str:
        return type(self).__name__


# =============================================================================
# Error types
# =============================================================================


class GitOperationFailed(_Tagged):
    kind: Literal["git_operation_failed"] = "git_operation_failed"
    operation: str
    error: str


class GitHubAPIError(_Tagged):
    kind: Literal["github_api_error"] = "github_api_error"
    endpoint: str
    status: int
    message: str = ""


class MergeConflictError(_Tagged):
    kind: Literal["merge_conflict"] = "merge_conflict"
    files: list[str] = Field(default_factory=list)
    conflict_count: int = 0


class CIFailureError(_Tagged):
    kind: Literal["ci_failure"] = "ci_failure"
    job: str
    step: str
    error: str


class TestFailureError(_Tagged):
    __test__ = False

    kind: Literal["test_failure"] = "test_failure"
    test_suite: str
    failed_tests: list[str] = Field(default_factory=list)


class BuildFailureError(_Tagged):
    kind: Literal["build_failure"] = "build_failure"
    stage: str
    error: str


class DependencyIssue(_Tagged):
    kind: Literal["dependency_issue"] = "dependency_issue"
    dependency: str
    version_conflict: bool = False
    resolvable: bool = True


class NetworkIssue(_Tagged):
    kind: Literal["network_issue"] = "network_issue"
    service: str
    timeout: bool = False


class SecurityVulnerability(_Tagged):
    kind: Literal["security_vulnerability"] = "security_vulnerability"
    package: str
    severity: str
    advisory: str = ""


class SystemResourceError(_Tagged):
    """Resource exhaustion such as a full disk or out of memory."""

    kind: Literal["system_error"] = "system_error"
    resource: str
    message: str = ""


class WorkspaceCorruption(_Tagged):
    kind: Literal["workspace_corruption"] = "workspace_corruption"
    files_affected: list[str] = Field(default_factory=list)


class StateInconsistency(_Tagged):
    kind: Literal["state_inconsistency"] = "state_inconsistency"
    expected_state: str
    actual_state: str


ErrorType = Annotated[
    GitOperationFailed
    | GitHubAPIError
    | MergeConflictError
    | CIFailureError
    | TestFailureError
    | BuildFailureError
    | DependencyIssue
    | NetworkIssue
    | SecurityVulnerability
    | SystemResourceError
    | WorkspaceCorruption
    | StateInconsistency,
    Field(discriminator="kind"),
]


# =============================================================================
# Strategies
# =============================================================================


class FixType(str, Enum):
    """Scripted remediations the engine knows how to apply."""

    MERGE_CONFLICT_RESOLUTION = "merge_conflict_resolution"
    SYNTAX_ERROR = "syntax_error"
    TEST_FAILURE_FIX = "test_failure_fix"
    BUILD_ERROR_FIX = "build_error_fix"
    DEPENDENCY_UPDATE = "dependency_update"
    CONFIGURATION_ADJUSTMENT = "configuration_adjustment"
    CODE_FORMATTING = "code_formatting"
    SECURITY_PATCH = "security_patch"
    STATE_RECONCILIATION = "state_reconciliation"


class ConfidenceLevel(str, Enum):
    """Expected success of an automated fix."""

    HIGH = "high"
    LOW = "low"


class RetryWithBackoff(_Tagged):
    kind: Literal["retry_with_backoff"] = "retry_with_backoff"
    max_attempts: int = Field(default=3, ge=1)
    base_delay_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=10000, ge=0)

    def delay_ms(self, retry_number: int) -> int:
        """Delay before the given retry (1-indexed), doubling up to the cap."""
        delay = self.base_delay_ms * (2 ** (retry_number - 1))
        return min(delay, self.max_delay_ms)

    @property
    def label(self) -> str:
        return "RetryWithBackoff"


class AutomatedFix(_Tagged):
    kind: Literal["automated_fix"] = "automated_fix"
    fix_type: FixType
    confidence: ConfidenceLevel

    @property
    def label(self) -> str:
        return f"AutomatedFix({self.fix_type.value})"


class Escalate(_Tagged):
    kind: Literal["escalate"] = "escalate"
    reason: str

    @property
    def label(self) -> str:
        return "Escalate"


RecoveryStrategy = Annotated[
    RetryWithBackoff | AutomatedFix | Escalate,
    Field(discriminator="kind"),
]


# =============================================================================
# Attempts and reporting
# =============================================================================


class RecoveryActionKind(str, Enum):
    """Concrete steps taken during a recovery attempt."""

    RETRY_OPERATION = "retry_operation"
    BACKOFF_DELAY = "backoff_delay"
    RUN_COMMAND = "run_command"
    RESOLVE_CONFLICTS = "resolve_conflicts"
    RESTORE_FILES = "restore_files"
    RECONCILE_STATE = "reconcile_state"
    ESCALATE_TO_HUMAN = "escalate_to_human"


class RecoveryAction(BaseModel):
    """A single step taken while recovering."""

    kind: RecoveryActionKind
    detail: str = ""
    files: list[str] = Field(default_factory=list)
    success: bool = True


class RecoveryAttempt(BaseModel):
    """Outcome of executing one recovery strategy."""

    attempt_id: str
    error_type: ErrorType
    strategy: RecoveryStrategy
    recovery_actions: list[RecoveryAction] = Field(default_factory=list)
    duration_seconds: float = 0.0
    success: bool = False
    requires_human: bool = False
    error_message: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class RecoveryReport(BaseModel):
    """Aggregate view over the recovery history."""

    total_attempts: int
    successful_attempts: int
    success_rate: float
    last_attempt: RecoveryAttempt | None = None
    escalations: int = 0
    average_duration_seconds: float = 0.0
    common_error_types: list[tuple[str, int]] = Field(default_factory=list)
    most_effective_strategies: list[tuple[str, float]] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)
