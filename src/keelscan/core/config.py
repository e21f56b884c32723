"""Configuration loader for keelscan.

This module loads the orchestrator settings from a YAML file and applies
environment variable overrides on top of it.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml

from keelscan.core.constants import (
    DEFAULTS,
    LIMITS,
    LOG_LEVELS,
    SCANNER_NAMES,
    SCANNER_TIMEOUTS,
)
from keelscan.core.exceptions import ConfigError


# ============================================================================
# Configuration Paths
# ============================================================================

def get_config_dir() -> Path:
    """Get the configuration directory path.

    Returns:
        Path to configs directory (./configs relative to project root)
    """
    # core/ -> keelscan/ -> src/ -> root
    project_root = Path(__file__).parent.parent.parent.parent
    return project_root / "configs"


# ============================================================================
# Configuration Model
# ============================================================================

@dataclass
class OrchestratorConfig:
    """Settings for the scan orchestrator and its collaborators."""
    max_concurrent_scans: int = DEFAULTS["max_concurrent_scans"]
    max_queue_length: Optional[int] = None
    scan_timeout_minutes: int = DEFAULTS["scan_timeout_minutes"]
    enabled_scanners: list[str] = field(default_factory=lambda: list(SCANNER_NAMES))
    scanner_timeouts: dict[str, int] = field(default_factory=lambda: dict(SCANNER_TIMEOUTS))
    scanner_bin_path: Optional[Path] = None
    kill_grace_period: float = DEFAULTS["kill_grace_period"]
    heartbeat_interval: float = DEFAULTS["heartbeat_interval"]
    subscriber_buffer: int = DEFAULTS["subscriber_buffer"]
    history_size: int = DEFAULTS["history_size"]
    duration_window: int = DEFAULTS["duration_window"]
    work_dir: Path = Path(DEFAULTS["work_dir"])
    database_path: Path = Path(DEFAULTS["database_path"])
    log_level: str = DEFAULTS["log_level"]
    slack_webhook_url: Optional[str] = None
    teams_webhook_url: Optional[str] = None
    notify_on_high_severity: bool = False

    def timeout_for(self, scanner: str) -> int:
        """Per-adapter timeout in seconds, capped by the scan timeout."""
        ceiling = self.scan_timeout_minutes * 60
        return min(self.scanner_timeouts.get(scanner, ceiling), ceiling)

    def validate(self) -> None:
        """Validate configuration values.

        Raises:
            ConfigError: Listing every invalid setting
        """
        errors: list[str] = []

        low, high = LIMITS["max_concurrent_scans"]
        if not low <= self.max_concurrent_scans <= high:
            errors.append(f"MAX_CONCURRENT_SCANS must be between {low} and {high}")

        low, high = LIMITS["scan_timeout_minutes"]
        if not low <= self.scan_timeout_minutes <= high:
            errors.append(f"SCAN_TIMEOUT_MINUTES must be between {low} and {high}")

        if self.max_queue_length is not None and self.max_queue_length < 1:
            errors.append("MAX_QUEUE_LENGTH must be positive")

        if self.log_level not in LOG_LEVELS:
            errors.append(f"LOG_LEVEL must be one of: {', '.join(LOG_LEVELS)}")

        invalid = [s for s in self.enabled_scanners if s not in SCANNER_NAMES]
        if invalid:
            errors.append(
                f"Invalid scanners: {', '.join(invalid)}. "
                f"Valid options: {', '.join(SCANNER_NAMES)}"
            )

        if not self.enabled_scanners:
            errors.append("At least one scanner must be enabled")

        for name, value in self.scanner_timeouts.items():
            if value <= 0:
                errors.append(f"Timeout for {name} must be positive")

        if self.heartbeat_interval <= 0:
            errors.append("heartbeat_interval must be positive")

        if self.kill_grace_period < 0:
            errors.append("kill_grace_period must not be negative")

        if self.subscriber_buffer < 1:
            errors.append("subscriber_buffer must be positive")

        if self.history_size < 1 or self.duration_window < 1:
            errors.append("history_size and duration_window must be positive")

        if errors:
            raise ConfigError("Invalid configuration: " + "; ".join(errors))


# ============================================================================
# Loader
# ============================================================================

def _read_yaml(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config YAML: {e}") from e
    except OSError as e:
        raise ConfigError(f"Failed to read config file: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError("Config file must contain a mapping")
    return data


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return section


def _as_int(name: str, value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e


def _as_float(name: str, value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


def _apply_file(config: OrchestratorConfig, data: dict[str, Any]) -> None:
    orchestrator = _section(data, "orchestrator")
    scanners = _section(data, "scanners")
    events = _section(data, "events")
    storage = _section(data, "storage")
    logging_cfg = _section(data, "logging")
    notifications = _section(data, "notifications")

    if "max_concurrent_scans" in orchestrator:
        config.max_concurrent_scans = _as_int(
            "max_concurrent_scans", orchestrator["max_concurrent_scans"]
        )
    if orchestrator.get("max_queue_length") is not None:
        config.max_queue_length = _as_int(
            "max_queue_length", orchestrator["max_queue_length"]
        )
    if "history_size" in orchestrator:
        config.history_size = _as_int("history_size", orchestrator["history_size"])
    if "duration_window" in orchestrator:
        config.duration_window = _as_int("duration_window", orchestrator["duration_window"])

    if "enabled" in scanners:
        enabled = scanners["enabled"]
        if not isinstance(enabled, list):
            raise ConfigError("'scanners.enabled' must be a list")
        config.enabled_scanners = [str(s).strip() for s in enabled]
    if "timeout_minutes" in scanners:
        config.scan_timeout_minutes = _as_int("timeout_minutes", scanners["timeout_minutes"])
    if "kill_grace_period" in scanners:
        config.kill_grace_period = _as_float("kill_grace_period", scanners["kill_grace_period"])
    if "timeouts" in scanners:
        timeouts = scanners["timeouts"]
        if not isinstance(timeouts, dict):
            raise ConfigError("'scanners.timeouts' must be a mapping")
        for name, value in timeouts.items():
            config.scanner_timeouts[name] = _as_int(f"timeouts.{name}", value)
    if scanners.get("bin_path"):
        config.scanner_bin_path = Path(scanners["bin_path"])

    if "heartbeat_interval" in events:
        config.heartbeat_interval = _as_float("heartbeat_interval", events["heartbeat_interval"])
    if "subscriber_buffer" in events:
        config.subscriber_buffer = _as_int("subscriber_buffer", events["subscriber_buffer"])

    if storage.get("work_dir"):
        config.work_dir = Path(storage["work_dir"])
    if storage.get("database_path"):
        config.database_path = Path(storage["database_path"])

    if "level" in logging_cfg:
        config.log_level = str(logging_cfg["level"]).lower()

    if notifications.get("slack_webhook_url"):
        config.slack_webhook_url = notifications["slack_webhook_url"]
    if notifications.get("teams_webhook_url"):
        config.teams_webhook_url = notifications["teams_webhook_url"]
    if "notify_on_high_severity" in notifications:
        config.notify_on_high_severity = _as_bool(notifications["notify_on_high_severity"])


def _apply_env(config: OrchestratorConfig, env: Mapping[str, str]) -> None:
    if env.get("MAX_CONCURRENT_SCANS"):
        config.max_concurrent_scans = _as_int(
            "MAX_CONCURRENT_SCANS", env["MAX_CONCURRENT_SCANS"]
        )
    if env.get("MAX_QUEUE_LENGTH"):
        config.max_queue_length = _as_int("MAX_QUEUE_LENGTH", env["MAX_QUEUE_LENGTH"])
    if env.get("SCAN_TIMEOUT_MINUTES"):
        config.scan_timeout_minutes = _as_int(
            "SCAN_TIMEOUT_MINUTES", env["SCAN_TIMEOUT_MINUTES"]
        )
    if env.get("ENABLED_SCANNERS"):
        config.enabled_scanners = [
            s.strip() for s in env["ENABLED_SCANNERS"].split(",") if s.strip()
        ]
    if env.get("LOG_LEVEL"):
        config.log_level = env["LOG_LEVEL"].lower()
    if env.get("SCANNER_WORKDIR"):
        config.work_dir = Path(env["SCANNER_WORKDIR"])
    if env.get("DATABASE_PATH"):
        config.database_path = Path(env["DATABASE_PATH"])
    if env.get("SLACK_WEBHOOK_URL"):
        config.slack_webhook_url = env["SLACK_WEBHOOK_URL"]
    if env.get("TEAMS_WEBHOOK_URL"):
        config.teams_webhook_url = env["TEAMS_WEBHOOK_URL"]
    if env.get("NOTIFY_ON_HIGH_SEVERITY"):
        config.notify_on_high_severity = _as_bool(env["NOTIFY_ON_HIGH_SEVERITY"])


def load_config(
    config_file: Path | str | None = None,
    env: Optional[Mapping[str, str]] = None,
) -> OrchestratorConfig:
    """Load orchestrator configuration.

    Args:
        config_file: Path to YAML file. If None, configs/keelscan.yaml is used
            when it exists, otherwise defaults apply
        env: Environment mapping for overrides (defaults to os.environ)

    Returns:
        Validated OrchestratorConfig

    Raises:
        ConfigError: If the file cannot be read or a value is invalid
    """
    config = OrchestratorConfig()

    if config_file is None:
        default_path = get_config_dir() / "keelscan.yaml"
        if default_path.exists():
            _apply_file(config, _read_yaml(default_path))
    else:
        _apply_file(config, _read_yaml(Path(config_file)))

    _apply_env(config, os.environ if env is None else env)

    config.validate()
    return config
