"""Error recovery engine.

Executes the strategy chosen for a classified failure and keeps an
append-only history of attempts:
- RetryWithBackoff re-runs the failed operation, sleeping between tries
- AutomatedFix hands the fix to a RemediationExecutor
- Escalate notifies a human and performs no remediation
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import Counter, defaultdict
from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any

from ..config import RecoveryConfig
from ..utils.errors import RecoveryError
from ..workflow.models import utcnow
from ..workflow.states import WorkflowState
from .classifier import determine_recovery_strategy
from .models import (
    AutomatedFix,
    ErrorType,
    Escalate,
    RecoveryAction,
    RecoveryActionKind,
    RecoveryAttempt,
    RecoveryReport,
    RecoveryStrategy,
    RetryWithBackoff,
)
from .remediation import CommandRemediation, RemediationExecutor

logger = logging.getLogger(__name__)

NotifyCallback = Callable[[str, dict[str, Any]], None]

# Report lists are capped at this many entries
REPORT_TOP_N = 5


def _generate_attempt_id() -> str:
    return f"recovery-{int(time.time())}-{random.randint(0, 0xFFFF):04x}"


class ErrorRecoveryEngine:
    """Runs recovery strategies and tracks their outcomes."""

    def __init__(
        self,
        executor: RemediationExecutor | None = None,
        notify_callback: NotifyCallback | None = None,
        config: RecoveryConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the engine.

        Args:
            executor: Performs retries and fixes. Defaults to CommandRemediation.
            notify_callback: Called with (message, context) on escalation.
            config: Recovery settings.
            sleep: Awaitable sleep used for backoff.
            clock: Source of aware UTC datetimes.
        """
        self.config = config or RecoveryConfig()
        self.executor = executor or CommandRemediation(self.config)
        self.notify_callback = notify_callback
        self._sleep = sleep
        self._clock = clock
        self.recovery_history: list[RecoveryAttempt] = []

    def determine_recovery_strategy(self, error: ErrorType) -> RecoveryStrategy:
        return determine_recovery_strategy(error)

    async def recover(
        self, error: ErrorType, current_state: WorkflowState | None
    ) -> RecoveryAttempt:
        """Classify an error and execute the chosen strategy."""
        strategy = self.determine_recovery_strategy(error)
        return await self.execute_recovery_strategy(error, strategy, current_state)

    async def execute_recovery_strategy(
        self,
        error: ErrorType,
        strategy: RecoveryStrategy,
        current_state: WorkflowState | None,
    ) -> RecoveryAttempt:
        """Execute a strategy and record the attempt.

        Args:
            error: The failure being recovered from.
            strategy: Strategy to execute.
            current_state: Workflow state the failure happened in.

        Returns:
            The recorded attempt. Escalations report success=False with
            requires_human=True.

        Raises:
            RecoveryError: The workflow is already terminal.
        """
        if current_state is not None and current_state.is_terminal:
            raise RecoveryError(
                f"Cannot recover {error.type_name}: workflow is {current_state.state_type}"
            )

        attempt_id = _generate_attempt_id()
        timestamp = self._clock()
        started = time.monotonic()
        actions: list[RecoveryAction] = []
        success = False
        requires_human = False
        error_message: str | None = None

        logger.info(f"Recovery {attempt_id}: {error.type_name} via {strategy.label}")

        try:
            if isinstance(strategy, RetryWithBackoff):
                success = await self._execute_retry(error, strategy, actions)
            elif isinstance(strategy, AutomatedFix):
                success = await self._execute_fix(error, strategy, actions)
            elif isinstance(strategy, Escalate):
                self._execute_escalation(error, strategy, current_state, actions)
                requires_human = True
                error_message = f"Escalated: {strategy.reason}"
        except Exception as e:
            logger.exception(f"Recovery {attempt_id} raised during {strategy.label}")
            success = False
            error_message = f"{type(e).__name__}: {e}"

        if not success and error_message is None:
            failed = [a for a in actions if not a.success]
            error_message = failed[-1].detail if failed else f"{strategy.label} did not succeed"

        attempt = RecoveryAttempt(
            attempt_id=attempt_id,
            error_type=error,
            strategy=strategy,
            recovery_actions=actions,
            duration_seconds=time.monotonic() - started,
            success=success,
            requires_human=requires_human,
            error_message=error_message,
            timestamp=timestamp,
        )
        self.recovery_history.append(attempt)

        if success:
            logger.info(f"Recovery {attempt_id} succeeded in {attempt.duration_seconds:.2f}s")
        elif not requires_human:
            logger.warning(f"Recovery {attempt_id} failed: {error_message}")
        return attempt

    async def _execute_retry(
        self,
        error: ErrorType,
        strategy: RetryWithBackoff,
        actions: list[RecoveryAction],
    ) -> bool:
        for attempt_number in range(1, strategy.max_attempts + 1):
            if attempt_number > 1:
                delay_ms = strategy.delay_ms(attempt_number - 1)
                actions.append(
                    RecoveryAction(kind=RecoveryActionKind.BACKOFF_DELAY, detail=f"{delay_ms}ms")
                )
                await self._sleep(delay_ms / 1000)

            action = await self.executor.retry_operation(error)
            actions.append(action)
            if action.success:
                return True
            logger.debug(
                f"Retry {attempt_number}/{strategy.max_attempts} of {error.type_name} failed"
            )
        return False

    async def _execute_fix(
        self,
        error: ErrorType,
        strategy: AutomatedFix,
        actions: list[RecoveryAction],
    ) -> bool:
        fix_actions = await self.executor.apply_fix(strategy.fix_type, error)
        actions.extend(fix_actions)
        return bool(fix_actions) and all(a.success for a in fix_actions)

    def _execute_escalation(
        self,
        error: ErrorType,
        strategy: Escalate,
        current_state: WorkflowState | None,
        actions: list[RecoveryAction],
    ) -> None:
        actions.append(
            RecoveryAction(
                kind=RecoveryActionKind.ESCALATE_TO_HUMAN,
                detail=strategy.reason,
                success=False,
            )
        )

        if self.config.notify_on_escalate:
            logger.warning(f"Escalating {error.type_name} to a human: {strategy.reason}")

        if self.notify_callback is not None:
            context: dict[str, Any] = {
                "error_type": error.type_name,
                "error": error.model_dump(mode="json"),
            }
            if current_state is not None:
                context["state"] = current_state.state_type
                context["issue"] = current_state.issue.number
                context["agent"] = current_state.agent
            self.notify_callback(strategy.reason, context)

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def generate_recovery_report(self) -> RecoveryReport:
        """Summarize the recovery history."""
        history = self.recovery_history
        total = len(history)
        successful = sum(1 for a in history if a.success)

        error_counts = Counter(a.error_type.type_name for a in history)

        per_strategy: dict[str, list[bool]] = defaultdict(list)
        for attempt in history:
            per_strategy[attempt.strategy.label].append(attempt.success)
        effectiveness = [
            (label, sum(outcomes) / len(outcomes)) for label, outcomes in per_strategy.items()
        ]
        effectiveness.sort(key=lambda item: item[1], reverse=True)

        return RecoveryReport(
            total_attempts=total,
            successful_attempts=successful,
            success_rate=successful / total if total else 1.0,
            last_attempt=history[-1] if history else None,
            escalations=sum(1 for a in history if a.requires_human),
            average_duration_seconds=(
                sum(a.duration_seconds for a in history) / total if total else 0.0
            ),
            common_error_types=error_counts.most_common(REPORT_TOP_N),
            most_effective_strategies=effectiveness[:REPORT_TOP_N],
            generated_at=self._clock(),
        )
