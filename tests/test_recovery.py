"""Tests for the recovery module.

Tests strategy selection, the recovery engine and the command executor.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from agentflow.config import RecoveryConfig
from agentflow.recovery.classifier import determine_recovery_strategy, states_reconcilable
from agentflow.recovery.engine import ErrorRecoveryEngine
from agentflow.recovery.models import (
    AutomatedFix,
    BuildFailureError,
    CIFailureError,
    ConfidenceLevel,
    DependencyIssue,
    Escalate,
    FixType,
    GitHubAPIError,
    GitOperationFailed,
    MergeConflictError,
    NetworkIssue,
    RecoveryAction,
    RecoveryActionKind,
    RetryWithBackoff,
    SecurityVulnerability,
    StateInconsistency,
    SystemResourceError,
    TestFailureError,
    WorkspaceCorruption,
)
from agentflow.recovery.remediation import CommandRemediation, RemediationExecutor
from agentflow.utils.errors import RecoveryError
from agentflow.workflow.models import CompletedWork, TestFailureBlocker
from agentflow.workflow.states import Blocked, Merged

pytestmark = pytest.mark.anyio


def fix(fix_type: FixType, confidence: ConfidenceLevel) -> AutomatedFix:
    return AutomatedFix(fix_type=fix_type, confidence=confidence)


HIGH = ConfidenceLevel.HIGH
LOW = ConfidenceLevel.LOW


class ScriptedExecutor(RemediationExecutor):
    """Executor whose outcomes are fixed up front."""

    def __init__(self, retry_results=(), fix_success=True, raises=None):
        self.retry_results = list(retry_results)
        self.fix_success = fix_success
        self.raises = raises
        self.retry_calls = 0
        self.fix_calls: list[FixType] = []

    async def retry_operation(self, error):
        self.retry_calls += 1
        if self.raises is not None:
            raise self.raises
        success = self.retry_results.pop(0) if self.retry_results else False
        return RecoveryAction(
            kind=RecoveryActionKind.RETRY_OPERATION,
            detail=f"retry {self.retry_calls}",
            success=success,
        )

    async def apply_fix(self, fix_type, error):
        self.fix_calls.append(fix_type)
        if self.raises is not None:
            raise self.raises
        return [
            RecoveryAction(
                kind=RecoveryActionKind.RUN_COMMAND,
                detail=fix_type.value,
                success=self.fix_success,
            )
        ]


@pytest.fixture
def blocked_state(issue):
    return Blocked(
        issue=issue,
        agent="agent001",
        blocker=TestFailureBlocker(test_name="test_parse", error="assert 1 == 2"),
    )


# =============================================================================
# Strategy selection
# =============================================================================


class TestStrategySelection:
    """Tests for determine_recovery_strategy."""

    @pytest.mark.parametrize(
        "error, expected",
        [
            (
                GitOperationFailed(operation="push", error="connection reset"),
                RetryWithBackoff(max_attempts=3, base_delay_ms=1000, max_delay_ms=10000),
            ),
            (
                GitHubAPIError(endpoint="/repos/o/r/pulls", status=429),
                RetryWithBackoff(max_attempts=5, base_delay_ms=2000, max_delay_ms=30000),
            ),
            (
                GitHubAPIError(endpoint="/repos/o/r/pulls", status=502),
                RetryWithBackoff(max_attempts=3, base_delay_ms=5000, max_delay_ms=20000),
            ),
            (
                BuildFailureError(stage="compilation", error="expected `;`"),
                fix(FixType.SYNTAX_ERROR, HIGH),
            ),
            (
                BuildFailureError(stage="dependencies", error="failed to resolve"),
                fix(FixType.DEPENDENCY_UPDATE, HIGH),
            ),
            (
                BuildFailureError(stage="check", error="rustfmt: formatting differs"),
                fix(FixType.CODE_FORMATTING, HIGH),
            ),
            (
                BuildFailureError(stage="packaging", error="archive failed"),
                fix(FixType.BUILD_ERROR_FIX, LOW),
            ),
            (
                TestFailureError(test_suite="unit", failed_tests=["a", "b"]),
                fix(FixType.TEST_FAILURE_FIX, HIGH),
            ),
            (
                TestFailureError(test_suite="unit", failed_tests=["a", "b", "c", "d"]),
                fix(FixType.TEST_FAILURE_FIX, LOW),
            ),
            (
                TestFailureError(test_suite="performance", failed_tests=["throughput"]),
                RetryWithBackoff(max_attempts=3, base_delay_ms=2000, max_delay_ms=20000),
            ),
            (
                MergeConflictError(files=["src/a.rs", "src/b.rs"], conflict_count=3),
                fix(FixType.MERGE_CONFLICT_RESOLUTION, HIGH),
            ),
            (
                MergeConflictError(files=["a.rs", "b.rs", "c.rs"], conflict_count=8),
                fix(FixType.MERGE_CONFLICT_RESOLUTION, LOW),
            ),
            (
                CIFailureError(job="ci", step="cargo test", error="2 tests failed"),
                fix(FixType.TEST_FAILURE_FIX, LOW),
            ),
            (
                CIFailureError(job="ci", step="cargo build", error="compile error"),
                fix(FixType.BUILD_ERROR_FIX, LOW),
            ),
            (
                DependencyIssue(dependency="tokio", version_conflict=True, resolvable=True),
                fix(FixType.DEPENDENCY_UPDATE, LOW),
            ),
            (
                DependencyIssue(dependency="tokio"),
                fix(FixType.DEPENDENCY_UPDATE, HIGH),
            ),
            (
                NetworkIssue(service="github.com", timeout=True),
                RetryWithBackoff(max_attempts=5, base_delay_ms=1000, max_delay_ms=15000),
            ),
            (
                SecurityVulnerability(package="openssl", severity="high"),
                fix(FixType.SECURITY_PATCH, LOW),
            ),
            (
                SecurityVulnerability(package="openssl", severity="medium"),
                fix(FixType.SECURITY_PATCH, HIGH),
            ),
            (
                WorkspaceCorruption(files_affected=["Cargo.lock"]),
                fix(FixType.CONFIGURATION_ADJUSTMENT, LOW),
            ),
            (
                StateInconsistency(expected_state="InProgress", actual_state="Blocked"),
                fix(FixType.STATE_RECONCILIATION, HIGH),
            ),
        ],
    )
    def test_selects_expected_strategy(self, error, expected):
        """Test the strategy chosen for representative errors."""
        assert determine_recovery_strategy(error) == expected

    @pytest.mark.parametrize(
        "error",
        [
            GitOperationFailed(operation="fetch", error="fatal: repository not found"),
            GitOperationFailed(operation="push", error="Permission denied (publickey)"),
            GitHubAPIError(endpoint="/repos/o/r", status=404),
            BuildFailureError(stage="linking", error="undefined reference to `foo`"),
            MergeConflictError(files=["assets/logo.png"], conflict_count=1),
            MergeConflictError(files=["db/migrations/0003_users.sql"], conflict_count=1),
            MergeConflictError(files=[f"src/{i}.rs" for i in range(6)], conflict_count=6),
            MergeConflictError(files=["src/a.rs"], conflict_count=21),
            CIFailureError(job="deploy", step="upload", error="403 from registry"),
            DependencyIssue(dependency="serde", version_conflict=True, resolvable=False),
            NetworkIssue(service="crates.io"),
            SecurityVulnerability(package="openssl", severity="critical"),
            SystemResourceError(resource="disk", message="No space left on device"),
            WorkspaceCorruption(files_affected=[f"f{i}" for i in range(6)]),
            StateInconsistency(expected_state="Assigned", actual_state="Merged"),
        ],
    )
    def test_escalates(self, error):
        """Test errors that need a human."""
        assert isinstance(determine_recovery_strategy(error), Escalate)

    def test_merge_rebase_conflict_message_gets_fix(self):
        """Test that a conflicting merge is treated as a conflict fix."""
        error = GitOperationFailed(operation="rebase", error="CONFLICT (content): Merge conflict")
        assert determine_recovery_strategy(error) == fix(FixType.MERGE_CONFLICT_RESOLUTION, LOW)

    def test_critical_vulnerability_reason_mentions_advisory(self):
        """Test the escalation reason for critical advisories."""
        error = SecurityVulnerability(
            package="openssl", severity="critical", advisory="RUSTSEC-2025-0001"
        )
        strategy = determine_recovery_strategy(error)
        assert "openssl" in strategy.reason
        assert "RUSTSEC-2025-0001" in strategy.reason

    def test_selection_is_deterministic(self):
        """Test that the same error always yields the same strategy."""
        error = MergeConflictError(files=["src/a.rs"], conflict_count=2)
        assert determine_recovery_strategy(error) == determine_recovery_strategy(error)

    def test_unknown_error_type_rejected(self):
        """Test that non-error inputs raise TypeError."""
        with pytest.raises(TypeError):
            determine_recovery_strategy("not an error")

    @pytest.mark.parametrize(
        "expected, actual, result",
        [
            ("InProgress", "in_progress", True),
            ("Approved", "MergeConflict", True),
            ("Assigned", "UnderReview", False),
            ("InProgress", "Mystery", False),
        ],
    )
    def test_states_reconcilable(self, expected, actual, result):
        """Test lifecycle adjacency of state names."""
        assert states_reconcilable(expected, actual) is result


class TestRetryWithBackoff:
    """Tests for backoff delays."""

    def test_delay_doubles_up_to_cap(self):
        """Test exponential delay with a ceiling."""
        strategy = RetryWithBackoff(max_attempts=5, base_delay_ms=1000, max_delay_ms=5000)
        assert [strategy.delay_ms(n) for n in range(1, 6)] == [1000, 2000, 4000, 5000, 5000]

    def test_max_attempts_must_be_positive(self):
        """Test that zero attempts is rejected."""
        with pytest.raises(ValueError):
            RetryWithBackoff(max_attempts=0)


# =============================================================================
# Engine
# =============================================================================


class TestErrorRecoveryEngine:
    """Tests for ErrorRecoveryEngine."""

    async def test_retry_succeeds_after_backoff(self, blocked_state):
        """Test that retries sleep with doubling delays until one succeeds."""
        executor = ScriptedExecutor(retry_results=[False, False, True])
        sleep = AsyncMock()
        engine = ErrorRecoveryEngine(executor=executor, sleep=sleep)

        attempt = await engine.execute_recovery_strategy(
            GitOperationFailed(operation="push", error="connection reset"),
            RetryWithBackoff(max_attempts=3, base_delay_ms=1000, max_delay_ms=10000),
            blocked_state,
        )

        assert attempt.success is True
        assert executor.retry_calls == 3
        assert [call.args[0] for call in sleep.await_args_list] == [1.0, 2.0]
        kinds = [a.kind for a in attempt.recovery_actions]
        assert kinds == [
            RecoveryActionKind.RETRY_OPERATION,
            RecoveryActionKind.BACKOFF_DELAY,
            RecoveryActionKind.RETRY_OPERATION,
            RecoveryActionKind.BACKOFF_DELAY,
            RecoveryActionKind.RETRY_OPERATION,
        ]
        assert attempt.error_message is None

    async def test_retry_exhausted(self, blocked_state):
        """Test that a retry gives up after max_attempts with capped delays."""
        executor = ScriptedExecutor(retry_results=[False] * 4)
        sleep = AsyncMock()
        engine = ErrorRecoveryEngine(executor=executor, sleep=sleep)

        attempt = await engine.execute_recovery_strategy(
            NetworkIssue(service="github.com", timeout=True),
            RetryWithBackoff(max_attempts=4, base_delay_ms=4000, max_delay_ms=5000),
            blocked_state,
        )

        assert attempt.success is False
        assert executor.retry_calls == 4
        assert [call.args[0] for call in sleep.await_args_list] == [4.0, 5.0, 5.0]
        assert attempt.error_message == "retry 4"

    @pytest.mark.parametrize("fix_success", [True, False])
    async def test_automated_fix(self, blocked_state, fix_success):
        """Test that fixes are delegated to the executor."""
        executor = ScriptedExecutor(fix_success=fix_success)
        engine = ErrorRecoveryEngine(executor=executor, sleep=AsyncMock())

        attempt = await engine.execute_recovery_strategy(
            TestFailureError(test_suite="unit", failed_tests=["test_parse"]),
            fix(FixType.TEST_FAILURE_FIX, HIGH),
            blocked_state,
        )

        assert attempt.success is fix_success
        assert executor.fix_calls == [FixType.TEST_FAILURE_FIX]
        assert attempt.requires_human is False

    async def test_escalation_notifies_and_never_succeeds(self, blocked_state):
        """Test that escalation calls the notifier and needs a human."""
        executor = ScriptedExecutor()
        notify = MagicMock()
        engine = ErrorRecoveryEngine(executor=executor, notify_callback=notify)

        attempt = await engine.execute_recovery_strategy(
            SystemResourceError(resource="disk"),
            Escalate(reason="System resource exhausted: disk"),
            blocked_state,
        )

        assert attempt.success is False
        assert attempt.requires_human is True
        assert executor.retry_calls == 0
        assert executor.fix_calls == []
        notify.assert_called_once()
        message, context = notify.call_args.args
        assert message == "System resource exhausted: disk"
        assert context["issue"] == 42
        assert context["state"] == "Blocked"

    async def test_executor_exception_recorded(self, blocked_state):
        """Test that an executor failure becomes a failed attempt."""
        executor = ScriptedExecutor(raises=RuntimeError("boom"))
        engine = ErrorRecoveryEngine(executor=executor, sleep=AsyncMock())

        attempt = await engine.execute_recovery_strategy(
            BuildFailureError(stage="compilation", error="expected `;`"),
            fix(FixType.SYNTAX_ERROR, HIGH),
            blocked_state,
        )

        assert attempt.success is False
        assert attempt.error_message == "RuntimeError: boom"
        assert engine.recovery_history == [attempt]

    async def test_terminal_state_rejected(self, issue):
        """Test that recovery refuses to run on a finished workflow."""
        engine = ErrorRecoveryEngine(executor=ScriptedExecutor())
        merged = Merged(issue=issue, agent="agent001", completed_work=CompletedWork(issue=issue))

        with pytest.raises(RecoveryError):
            await engine.execute_recovery_strategy(
                NetworkIssue(service="github.com"), Escalate(reason="x"), merged
            )
        assert engine.recovery_history == []

    async def test_recover_classifies_first(self, blocked_state):
        """Test that recover() picks the strategy itself."""
        executor = ScriptedExecutor()
        engine = ErrorRecoveryEngine(executor=executor)

        attempt = await engine.recover(DependencyIssue(dependency="tokio"), blocked_state)

        assert attempt.strategy == fix(FixType.DEPENDENCY_UPDATE, HIGH)
        assert executor.fix_calls == [FixType.DEPENDENCY_UPDATE]


class TestRecoveryReport:
    """Tests for generate_recovery_report."""

    def test_empty_history(self):
        """Test the report with no attempts."""
        report = ErrorRecoveryEngine(executor=ScriptedExecutor()).generate_recovery_report()
        assert report.total_attempts == 0
        assert report.success_rate == 1.0
        assert report.last_attempt is None
        assert report.common_error_types == []

    async def test_aggregates_history(self, blocked_state):
        """Test counts, rates and rankings."""
        engine = ErrorRecoveryEngine(executor=ScriptedExecutor(fix_success=True))
        await engine.recover(DependencyIssue(dependency="a"), blocked_state)
        await engine.recover(DependencyIssue(dependency="b"), blocked_state)
        await engine.recover(SystemResourceError(resource="memory"), blocked_state)

        report = engine.generate_recovery_report()

        assert report.total_attempts == 3
        assert report.successful_attempts == 2
        assert report.success_rate == pytest.approx(2 / 3)
        assert report.escalations == 1
        assert report.last_attempt == engine.recovery_history[-1]
        assert report.common_error_types[0] == ("DependencyIssue", 2)
        assert report.most_effective_strategies[0] == ("AutomatedFix(dependency_update)", 1.0)
        assert report.most_effective_strategies[-1] == ("Escalate", 0.0)


# =============================================================================
# Command executor
# =============================================================================


class TestCommandRemediation:
    """Tests for the subprocess-backed executor."""

    def _executor(self, tmp_path: Path, **fix_commands: list[str]) -> CommandRemediation:
        config = RecoveryConfig(
            workspace_path=str(tmp_path), command_timeout=10, fix_commands=fix_commands
        )
        return CommandRemediation(config)

    async def test_runs_configured_commands(self, tmp_path):
        """Test that fix commands run in order."""
        executor = self._executor(tmp_path, code_formatting=["true", "true"])
        actions = await executor.apply_fix(
            FixType.CODE_FORMATTING, BuildFailureError(stage="check", error="fmt")
        )
        assert [a.success for a in actions] == [True, True]
        assert actions[0].detail == "true"

    async def test_stops_at_first_failing_command(self, tmp_path):
        """Test that a failing command ends the fix."""
        executor = self._executor(tmp_path, build_error_fix=["false", "true"])
        actions = await executor.apply_fix(
            FixType.BUILD_ERROR_FIX, BuildFailureError(stage="build", error="x")
        )
        assert len(actions) == 1
        assert actions[0].success is False

    async def test_missing_command(self, tmp_path):
        """Test that an unknown executable fails cleanly."""
        executor = self._executor(tmp_path, syntax_error=["definitely-not-a-real-binary-xyz"])
        actions = await executor.apply_fix(
            FixType.SYNTAX_ERROR, BuildFailureError(stage="compilation", error="x")
        )
        assert actions[0].success is False
        assert "command not found" in actions[0].detail

    async def test_unconfigured_fix_fails(self, tmp_path):
        """Test that a fix type without commands is a failure."""
        executor = self._executor(tmp_path)
        actions = await executor.apply_fix(
            FixType.SECURITY_PATCH, SecurityVulnerability(package="openssl", severity="low")
        )
        assert actions[0].success is False

    async def test_state_reconciliation_in_process(self, tmp_path):
        """Test that reconciliation records the adopted state."""
        executor = self._executor(tmp_path)
        actions = await executor.apply_fix(
            FixType.STATE_RECONCILIATION,
            StateInconsistency(expected_state="InProgress", actual_state="Blocked"),
        )
        assert actions[0].kind == RecoveryActionKind.RECONCILE_STATE
        assert actions[0].success is True

    async def test_resolves_conflicted_file(self, tmp_path):
        """Test that conflict markers are rewritten and the file is staged."""
        source = tmp_path / "lib.py"
        source.write_text(
            "<<<<<<< HEAD\nimport os\n=======\nimport sys\n>>>>>>> feature\nprint('x')\n"
        )
        executor = self._executor(tmp_path)

        with patch.object(CommandRemediation, "_run", AsyncMock(return_value=(0, ""))) as run:
            actions = await executor.apply_fix(
                FixType.MERGE_CONFLICT_RESOLUTION,
                MergeConflictError(files=["lib.py"], conflict_count=1),
            )

        assert source.read_text() == "import os\nimport sys\nprint('x')\n"
        assert actions[0].success is True
        assert actions[0].files == ["lib.py"]
        run.assert_awaited_once_with(["git", "add", "--", "lib.py"])

    async def test_no_retry_for_unsupported_error(self, tmp_path):
        """Test that errors without a retry operation fail the retry."""
        executor = self._executor(tmp_path)
        action = await executor.retry_operation(SystemResourceError(resource="disk"))
        assert action.success is False
