"""
Configuration for the deadman switch.

Settings come from an optional YAML file, with ${VAR} references expanded
from the environment, and fall back to environment variables and defaults.
"""

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional
import structlog
import yaml

from deadman.errors import ArgumentError
from deadman.rules import WatchdogRules

logger = structlog.get_logger(__name__)

DEFAULT_CONFIG_PATH = "~/.deadman/config.yaml"
DEFAULT_RECORD_DIR = "~/.deadman/records"
DEFAULT_LOG_DIR = "~/.deadman/logs"

# EC2 instance ids
DEFAULT_RESOURCE_ID_PATTERN = r"^i-[0-9a-f]+$"

_ENV_VAR = re.compile(r"\$\{([^}]+)\}")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class DeadmanConfig:
    """Resolved configuration."""
    record_dir: Path = field(default_factory=lambda: Path(DEFAULT_RECORD_DIR).expanduser())
    log_dir: Path = field(default_factory=lambda: Path(DEFAULT_LOG_DIR).expanduser())
    log_level: str = "INFO"

    aws_binary: str = "aws"
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    aws_timeout_seconds: float = 60.0

    resource_id_pattern: str = DEFAULT_RESOURCE_ID_PATTERN
    slack_webhook_url: Optional[str] = None

    rules: WatchdogRules = field(default_factory=WatchdogRules)

    def validate_resource_id(self, resource_id: str) -> None:
        if not re.match(self.resource_id_pattern, resource_id):
            raise ArgumentError(
                f"'{resource_id}' does not look like a resource id "
                f"(expected {self.resource_id_pattern})"
            )

    def log_file_for(self, resource_id: str) -> Path:
        return self.log_dir / f"{resource_id}.log"


def load_config(path: Optional[str] = None) -> DeadmanConfig:
    """
    Load configuration.

    Args:
        path: YAML file; defaults to $DEADMAN_CONFIG, then ~/.deadman/config.yaml
    """
    explicit = path or os.environ.get("DEADMAN_CONFIG")
    config_path = Path(explicit or DEFAULT_CONFIG_PATH).expanduser()

    raw: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ArgumentError(f"Config file {config_path} must contain a mapping")
        logger.debug("config_loaded", path=str(config_path))
    elif explicit:
        raise ArgumentError(f"Config file not found: {config_path}")
    else:
        logger.debug("config_not_found_using_defaults", path=str(config_path))

    raw = _expand_env_vars(raw)
    aws = raw.get("aws") or {}
    alerts = raw.get("alerts") or {}

    log_level = str(raw.get("log_level", "INFO")).upper()
    if log_level not in LOG_LEVELS:
        raise ArgumentError(
            f"Invalid log_level '{raw['log_level']}' (expected one of {', '.join(LOG_LEVELS)})"
        )
    try:
        aws_timeout = float(aws.get("timeout_seconds", 60.0))
    except (TypeError, ValueError):
        raise ArgumentError(f"Invalid aws.timeout_seconds: {aws['timeout_seconds']!r}")

    return DeadmanConfig(
        record_dir=Path(
            raw.get("record_dir") or os.environ.get("DEADMAN_RECORD_DIR") or DEFAULT_RECORD_DIR
        ).expanduser(),
        log_dir=Path(
            raw.get("log_dir") or os.environ.get("DEADMAN_LOG_DIR") or DEFAULT_LOG_DIR
        ).expanduser(),
        log_level=log_level,
        aws_binary=aws.get("binary", "aws"),
        aws_region=aws.get("region") or os.environ.get("AWS_REGION"),
        aws_profile=aws.get("profile") or os.environ.get("AWS_PROFILE"),
        aws_timeout_seconds=aws_timeout,
        resource_id_pattern=raw.get("resource_id_pattern", DEFAULT_RESOURCE_ID_PATTERN),
        slack_webhook_url=alerts.get("slack_webhook_url") or os.environ.get("SLACK_WEBHOOK_URL"),
        rules=build_rules(raw.get("rules") or {}),
    )


def build_rules(overrides: dict[str, Any]) -> WatchdogRules:
    """Build WatchdogRules from a mapping, rejecting unknown keys."""
    known = {f.name for f in fields(WatchdogRules)}
    unknown = set(overrides) - known
    if unknown:
        raise ArgumentError(f"Unknown rules: {', '.join(sorted(unknown))}")
    try:
        return WatchdogRules(**overrides)
    except (TypeError, ValueError) as e:
        raise ArgumentError(f"Invalid rules: {e}")


def _expand_env_vars(value: Any) -> Any:
    """Expand ${VAR} in every string of a nested config structure."""
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, str) and "${" in value:
        return _ENV_VAR.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)
    return value
