"""Configuration for agentflow.

Configuration is stored at ~/.agentflow/config.toml and organized into sections.
A single AgentflowConfig is built once at startup and handed to the
components that need it.

Configuration loading priority:
1. Environment variables (highest)
2. Config file (~/.agentflow/config.toml or $AGENTFLOW_CONFIG)
3. Defaults (lowest)

Sections:
    [persistence]  - Checkpoint store location, retention, pruning limits
    [workflow]     - Work budget for the state machine
    [recovery]     - Escalation behaviour and scripted fix commands
    [continuity]   - Resume thresholds after a restart
    [logging]      - Log level for the agentflow logger

Example:
    from agentflow.config import load_config

    config = load_config()
    print(config.persistence.state_directory)
    print(config.workflow.max_work_hours)
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import tomli_w

logger = logging.getLogger(__name__)

# Default config location
DEFAULT_CONFIG_DIR = Path.home() / ".agentflow"
DEFAULT_CONFIG_FILE = "config.toml"

# Commands run in the workspace for each scripted fix type, in order.
# Merge conflicts, workspace restores and state reconciliation are handled in-process.
DEFAULT_FIX_COMMANDS: dict[str, list[str]] = {
    "syntax_error": ["cargo check"],
    "test_failure_fix": ["cargo test"],
    "build_error_fix": ["cargo clean", "cargo build"],
    "dependency_update": ["cargo update", "cargo build"],
    "code_formatting": ["cargo fmt"],
    "security_patch": ["cargo update"],
}


# =============================================================================
# Configuration Sections
# =============================================================================


@dataclass
class PersistenceConfig:
    """Checkpoint store settings.

    Attributes:
        enable_persistence: Write state to disk at all.
        state_directory: Directory holding <agent>.state.json files.
        auto_save_interval_minutes: Tick interval of the auto-save loop.
        max_state_history_entries: Transition records kept per agent.
        max_recovery_history_entries: Recovery attempts kept per agent.
        backup_retention_days: Checkpoints older than this are deleted by cleanup.
        enable_integrity_checks: Verify the integrity hash on load.
        channel_capacity: Bound of the auto-save channel.
    """

    enable_persistence: bool = True
    state_directory: str = ".agentflow/state"
    auto_save_interval_minutes: float = 5.0
    max_state_history_entries: int = 1000
    max_recovery_history_entries: int = 500
    backup_retention_days: int = 7
    enable_integrity_checks: bool = True
    channel_capacity: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PersistenceConfig:
        """Create from dictionary."""
        return cls(
            enable_persistence=data.get("enable_persistence", True),
            state_directory=data.get("state_directory", ".agentflow/state"),
            auto_save_interval_minutes=float(data.get("auto_save_interval_minutes", 5.0)),
            max_state_history_entries=int(data.get("max_state_history_entries", 1000)),
            max_recovery_history_entries=int(data.get("max_recovery_history_entries", 500)),
            backup_retention_days=int(data.get("backup_retention_days", 7)),
            enable_integrity_checks=data.get("enable_integrity_checks", True),
            channel_capacity=int(data.get("channel_capacity", 100)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enable_persistence": self.enable_persistence,
            "state_directory": self.state_directory,
            "auto_save_interval_minutes": self.auto_save_interval_minutes,
            "max_state_history_entries": self.max_state_history_entries,
            "max_recovery_history_entries": self.max_recovery_history_entries,
            "backup_retention_days": self.backup_retention_days,
            "enable_integrity_checks": self.enable_integrity_checks,
            "channel_capacity": self.channel_capacity,
        }


@dataclass
class WorkflowConfig:
    """State machine settings.

    Attributes:
        max_work_hours: Budget from assignment until the work is abandoned.
        base_branch: Branch new work is cut from.
    """

    max_work_hours: int = 8
    base_branch: str = "main"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowConfig:
        """Create from dictionary."""
        return cls(
            max_work_hours=int(data.get("max_work_hours", 8)),
            base_branch=data.get("base_branch", "main"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "max_work_hours": self.max_work_hours,
            "base_branch": self.base_branch,
        }


@dataclass
class RecoveryConfig:
    """Recovery engine settings.

    Attributes:
        workspace_path: Working tree where retries and fixes run.
        command_timeout: Seconds before a remediation command is killed.
        notify_on_escalate: Log escalations at WARNING for a human to pick up.
        fix_commands: Shell commands per fix type, run in order.
    """

    workspace_path: str = "."
    command_timeout: int = 300
    notify_on_escalate: bool = True
    fix_commands: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_FIX_COMMANDS.items()}
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RecoveryConfig:
        """Create from dictionary."""
        return cls(
            workspace_path=data.get("workspace_path", "."),
            command_timeout=int(data.get("command_timeout", 300)),
            notify_on_escalate=data.get("notify_on_escalate", True),
            fix_commands=data.get(
                "fix_commands",
                {k: list(v) for k, v in DEFAULT_FIX_COMMANDS.items()},
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "workspace_path": self.workspace_path,
            "command_timeout": self.command_timeout,
            "notify_on_escalate": self.notify_on_escalate,
            "fix_commands": self.fix_commands,
        }


@dataclass
class ContinuityConfig:
    """Resume-after-restart settings.

    Attributes:
        enable_continuity: Consult checkpoints on startup.
        resync_after_minutes: Older state must be re-validated before use.
        force_fresh_start_after_hours: Older state is discarded.
        max_recovery_attempts: Recovery rounds before the coordinator abandons.
    """

    enable_continuity: bool = True
    resync_after_minutes: int = 60
    force_fresh_start_after_hours: int = 24
    max_recovery_attempts: int = 3

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContinuityConfig:
        """Create from dictionary."""
        return cls(
            enable_continuity=data.get("enable_continuity", True),
            resync_after_minutes=int(data.get("resync_after_minutes", 60)),
            force_fresh_start_after_hours=int(data.get("force_fresh_start_after_hours", 24)),
            max_recovery_attempts=int(data.get("max_recovery_attempts", 3)),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "enable_continuity": self.enable_continuity,
            "resync_after_minutes": self.resync_after_minutes,
            "force_fresh_start_after_hours": self.force_fresh_start_after_hours,
            "max_recovery_attempts": self.max_recovery_attempts,
        }


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoggingConfig:
        """Create from dictionary."""
        return cls(level=data.get("level", "info"))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"level": self.level}


# =============================================================================
# Main Configuration Class
# =============================================================================


@dataclass
class AgentflowConfig:
    """Main agentflow configuration container."""

    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    continuity: ContinuityConfig = field(default_factory=ContinuityConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Metadata
    config_version: str = "1.0"
    config_path: Path | None = None
    last_modified: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentflowConfig:
        """Create configuration from dictionary."""
        return cls(
            persistence=PersistenceConfig.from_dict(data.get("persistence", {})),
            workflow=WorkflowConfig.from_dict(data.get("workflow", {})),
            recovery=RecoveryConfig.from_dict(data.get("recovery", {})),
            continuity=ContinuityConfig.from_dict(data.get("continuity", {})),
            logging=LoggingConfig.from_dict(data.get("logging", {})),
            config_version=data.get("config", {}).get("version", "1.0"),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "config": {
                "version": self.config_version,
            },
            "persistence": self.persistence.to_dict(),
            "workflow": self.workflow.to_dict(),
            "recovery": self.recovery.to_dict(),
            "continuity": self.continuity.to_dict(),
            "logging": self.logging.to_dict(),
        }

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration."""
        if state_dir := os.environ.get("AGENTFLOW_STATE_DIR"):
            self.persistence.state_directory = state_dir

        if os.environ.get("AGENTFLOW_DISABLE_PERSISTENCE") == "1":
            self.persistence.enable_persistence = False

        if max_hours := os.environ.get("AGENTFLOW_MAX_WORK_HOURS"):
            try:
                self.workflow.max_work_hours = int(max_hours)
            except ValueError:
                logger.warning(f"Ignoring invalid AGENTFLOW_MAX_WORK_HOURS: {max_hours}")

        if level := os.environ.get("AGENTFLOW_LOG_LEVEL"):
            self.logging.level = level

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value by dotted key path.

        Args:
            key: Dotted key path (e.g., 'workflow.max_work_hours').
            default: Default value if key not found.

        Returns:
            Configuration value or default.

        Example:
            config.get('persistence.backup_retention_days')  # Returns 7
            config.get('recovery.fix_commands.code_formatting')
        """
        parts = key.split(".")
        obj: Any = self

        for part in parts:
            if isinstance(obj, dict):
                if part not in obj:
                    return default
                obj = obj[part]
            elif hasattr(obj, part):
                obj = getattr(obj, part)
            else:
                return default

        return obj

    def set(self, key: str, value: Any) -> bool:
        """Set a configuration value by dotted key path.

        Args:
            key: Dotted key path (e.g., 'workflow.max_work_hours').
            value: Value to set.

        Returns:
            True if set successfully, False otherwise.
        """
        parts = key.split(".")
        if len(parts) < 2:
            return False

        section_name = parts[0]
        field_name = ".".join(parts[1:])

        if section_name not in ("persistence", "workflow", "recovery", "continuity", "logging"):
            return False

        section = getattr(self, section_name)

        # Only recovery.fix_commands supports a nested key
        if "." in field_name:
            nested = field_name.split(".")
            if section_name == "recovery" and len(nested) == 2 and nested[0] == "fix_commands":
                self.recovery.fix_commands[nested[1]] = list(value)
                return True
            return False

        if hasattr(section, field_name):
            setattr(section, field_name, value)
            return True

        return False


# =============================================================================
# Configuration Loading/Saving
# =============================================================================


def get_config_path() -> Path:
    """Get the path to the configuration file."""
    if custom_path := os.environ.get("AGENTFLOW_CONFIG"):
        return Path(custom_path)

    return DEFAULT_CONFIG_DIR / DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> AgentflowConfig:
    """Load configuration from TOML file.

    A missing file yields defaults. An unreadable file is logged and
    replaced by defaults so an agent can still start.

    Args:
        config_path: Path to config file. Uses default if not specified.

    Returns:
        AgentflowConfig with settings from file and environment.
    """
    path = config_path or get_config_path()

    config = AgentflowConfig()
    config.config_path = path

    if path.exists():
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)

            config = AgentflowConfig.from_dict(data)
            config.config_path = path
            config.last_modified = datetime.fromtimestamp(path.stat().st_mtime)

        except (OSError, tomllib.TOMLDecodeError, ValueError) as e:
            logger.error(f"Failed to load config from {path}: {e}")
            config = AgentflowConfig()
            config.config_path = path

    config.apply_env_overrides()

    return config


def save_config(config: AgentflowConfig, config_path: Path | None = None) -> bool:
    """Save configuration to TOML file.

    Args:
        config: AgentflowConfig to save.
        config_path: Path to config file. Uses default if not specified.

    Returns:
        True if saved successfully, False otherwise.
    """
    path = config_path or config.config_path or get_config_path()

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            tomli_w.dump(config.to_dict(), f)
    except OSError as e:
        logger.error(f"Failed to save config: {e}")
        return False

    config.config_path = path
    config.last_modified = datetime.now()
    logger.info(f"Saved config to {path}")
    return True


def configure_logging(config: AgentflowConfig) -> None:
    """Apply the configured level to the agentflow logger.

    No handlers are installed; the host application owns log output.
    """
    level = getattr(logging, config.logging.level.upper(), None)
    if not isinstance(level, int):
        logger.warning(f"Unknown log level {config.logging.level!r}, using INFO")
        level = logging.INFO
    logging.getLogger("agentflow").setLevel(level)
