"""Runtime configuration for the tracker.

Values come from ``PROGRESSOR_*`` environment variables, falling back to
defaults that match a single-user desktop install.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import timezone as dt_timezone, tzinfo
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import ValidationError


DELETE_POLICIES = ("cascade", "reject")


@dataclass(slots=True)
class TrackerConfig:
    """Tunable policies and storage location."""

    root: Optional[Path] = None
    storage_dir: str = ".progressor"
    on_time_multiplier: float = 1.2
    level_constant: int = 100
    delete_policy: str = "cascade"
    timezone: str = "UTC"
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    ROOT_ENV = "PROGRESSOR_PROJECT_ROOT"
    STORAGE_DIR_ENV = "PROGRESSOR_STORAGE_DIR"
    BONUS_ENV = "PROGRESSOR_ON_TIME_BONUS"
    LEVEL_CONSTANT_ENV = "PROGRESSOR_LEVEL_CONSTANT"
    DELETE_POLICY_ENV = "PROGRESSOR_DELETE_POLICY"
    TIMEZONE_ENV = "PROGRESSOR_TIMEZONE"
    LOG_LEVEL_ENV = "PROGRESSOR_LOG_LEVEL"
    LOG_FILE_ENV = "PROGRESSOR_LOG_FILE"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TrackerConfig":
        """Build a config from environment variables and validate it."""
        env = os.environ if environ is None else environ

        try:
            multiplier = float(env.get(cls.BONUS_ENV, "1.2"))
        except ValueError:
            raise ValidationError(f"{cls.BONUS_ENV} must be a number, got '{env.get(cls.BONUS_ENV)}'")
        try:
            level_constant = int(env.get(cls.LEVEL_CONSTANT_ENV, "100"))
        except ValueError:
            raise ValidationError(
                f"{cls.LEVEL_CONSTANT_ENV} must be an integer, got '{env.get(cls.LEVEL_CONSTANT_ENV)}'"
            )

        root = env.get(cls.ROOT_ENV)
        log_file = env.get(cls.LOG_FILE_ENV)
        config = cls(
            root=Path(root).expanduser().resolve() if root else None,
            storage_dir=env.get(cls.STORAGE_DIR_ENV) or ".progressor",
            on_time_multiplier=multiplier,
            level_constant=level_constant,
            delete_policy=env.get(cls.DELETE_POLICY_ENV, "cascade").strip().lower(),
            timezone=env.get(cls.TIMEZONE_ENV, "UTC"),
            log_level=env.get(cls.LOG_LEVEL_ENV, "INFO").upper(),
            log_file=Path(log_file).expanduser() if log_file else None,
        )

        issues = config.validate()
        if issues:
            raise ValidationError("Invalid configuration: " + "; ".join(issues), issues=issues)
        return config

    @property
    def tzinfo(self) -> tzinfo:
        if self.timezone.upper() == "UTC":
            return dt_timezone.utc
        return ZoneInfo(self.timezone)

    def validate(self) -> List[str]:
        """Validate settings and return any issues."""
        issues = []

        if self.on_time_multiplier < 1.0:
            issues.append(f"On-time multiplier must be at least 1.0, got: {self.on_time_multiplier}")
        if self.level_constant < 1:
            issues.append(f"Level constant must be positive, got: {self.level_constant}")
        if self.delete_policy not in DELETE_POLICIES:
            issues.append(f"Delete policy must be one of {DELETE_POLICIES}, got: {self.delete_policy}")
        if not self.storage_dir.strip():
            issues.append("Storage directory name cannot be empty")
        if not isinstance(logging.getLevelName(self.log_level), int):
            issues.append(f"Unknown log level: {self.log_level}")
        try:
            self.tzinfo
        except (ZoneInfoNotFoundError, ValueError):
            issues.append(f"Unknown timezone: {self.timezone}")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "root": str(self.root) if self.root else None,
            "storage_dir": self.storage_dir,
            "on_time_multiplier": self.on_time_multiplier,
            "level_constant": self.level_constant,
            "delete_policy": self.delete_policy,
            "timezone": self.timezone,
            "log_level": self.log_level,
            "log_file": str(self.log_file) if self.log_file else None,
        }
