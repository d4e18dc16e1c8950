"""Human-readable views of status, recovery and checkpoint data.

Reports can be rendered as markdown (for notes and PR comments) or printed
to a rich Console as tables.
"""

from __future__ import annotations

from rich.console import Console
from rich.table import Table

from .persistence.models import CheckpointInfo
from .recovery.models import RecoveryReport
from .utils.errors import classify_exception, format_error
from .workflow.records import StatusReport


def format_duration(seconds: float) -> str:
    """Format a duration as a short human string."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes}m {int(seconds % 60)}s"
    hours = minutes // 60
    return f"{hours}h {minutes % 60}m"


def _minutes(value: int | None) -> str:
    return "-" if value is None else format_duration(value * 60)


# =============================================================================
# Markdown
# =============================================================================


def status_report_to_markdown(report: StatusReport) -> str:
    lines = [
        f"# Agent Status: {report.agent_id or 'unassigned'}",
        "",
        f"- **State:** {report.state_type}",
        f"- **Transitions:** {report.transitions_count}",
        f"- **Uptime:** {_minutes(report.uptime_minutes)}",
        f"- **Time Remaining:** {_minutes(report.timeout_in_minutes)}",
        f"- **Can Continue:** {'yes' if report.can_continue else 'no'}",
    ]
    if report.current_state is not None:
        issue = report.current_state.issue
        lines.insert(3, f"- **Issue:** #{issue.number} {issue.title}")
    if report.last_transition is not None:
        lines.append(f"- **Last Transition:** {report.last_transition.isoformat()}")
    return "\n".join(lines)


def recovery_report_to_markdown(report: RecoveryReport) -> str:
    lines = [
        "# Recovery Report",
        "",
        f"- **Attempts:** {report.total_attempts}",
        f"- **Successful:** {report.successful_attempts}",
        f"- **Success Rate:** {report.success_rate * 100:.1f}%",
        f"- **Escalations:** {report.escalations}",
        f"- **Avg Duration:** {format_duration(report.average_duration_seconds)}",
        "",
    ]

    if report.common_error_types:
        lines.extend(["## Common Errors", "", "| Error | Count |", "|-------|-------|"])
        for name, count in report.common_error_types:
            lines.append(f"| {name} | {count} |")
        lines.append("")

    if report.most_effective_strategies:
        lines.extend(
            ["## Strategy Effectiveness", "", "| Strategy | Success |", "|----------|---------|"]
        )
        for label, rate in report.most_effective_strategies:
            lines.append(f"| {label} | {rate * 100:.0f}% |")
        lines.append("")

    lines.append(f"*Generated at {report.generated_at.strftime('%Y-%m-%d %H:%M:%S')} UTC*")
    return "\n".join(lines)


# =============================================================================
# Rich tables
# =============================================================================


def render_status_report(report: StatusReport, console: Console) -> None:
    table = Table(title=f"Agent {report.agent_id or 'unassigned'}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")

    table.add_row("State", f"[cyan]{report.state_type}[/cyan]")
    if report.current_state is not None:
        issue = report.current_state.issue
        table.add_row("Issue", f"#{issue.number} {issue.title}")
    table.add_row("Transitions", str(report.transitions_count))
    table.add_row("Uptime", _minutes(report.uptime_minutes))
    table.add_row("Time remaining", _minutes(report.timeout_in_minutes))
    table.add_row(
        "Can continue",
        "[green]yes[/green]" if report.can_continue else "[red]no[/red]",
    )
    console.print(table)


def render_recovery_report(report: RecoveryReport, console: Console) -> None:
    console.print(
        f"[bold]Recovery:[/bold] {report.successful_attempts}/{report.total_attempts} "
        f"succeeded ({report.success_rate * 100:.1f}%), {report.escalations} escalated, "
        f"avg {format_duration(report.average_duration_seconds)}"
    )

    if report.common_error_types:
        errors = Table(title="Common Errors")
        errors.add_column("Error", style="yellow")
        errors.add_column("Count", justify="right")
        for name, count in report.common_error_types:
            errors.add_row(name, str(count))
        console.print(errors)

    if report.most_effective_strategies:
        strategies = Table(title="Strategy Effectiveness")
        strategies.add_column("Strategy", style="cyan")
        strategies.add_column("Success", justify="right")
        for label, rate in report.most_effective_strategies:
            strategies.add_row(label, f"{rate * 100:.0f}%")
        console.print(strategies)


def render_checkpoints(checkpoints: list[CheckpointInfo], console: Console) -> None:
    if not checkpoints:
        console.print("[dim]No checkpoints found.[/dim]")
        return

    table = Table(title="Checkpoints")
    table.add_column("Checkpoint ID", style="cyan")
    table.add_column("Reason", style="yellow")
    table.add_column("State")
    table.add_column("Transitions", justify="right")
    table.add_column("Created", style="dim")

    for info in checkpoints:
        table.add_row(
            info.checkpoint_id,
            info.reason.value,
            info.state_summary.current_state_type,
            str(info.state_summary.transitions_count),
            info.creation_time.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)


def render_error(exception: Exception, console: Console, context: str = "operation") -> None:
    """Print an agentflow failure with its category and suggested fix."""
    format_error(classify_exception(exception, context), console)
