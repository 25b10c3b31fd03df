"""Configuration for the savesync engine.

Configuration is an explicit ``SyncConfig`` passed to the orchestrator at
construction and validated up front. ``SyncConfig.load()`` builds one from
``<data dir>/config.json`` with environment overrides:

1. ~/.savesync/config.json (or $SAVESYNC_DATA_DIR/config.json)
2. Environment variables (SAVESYNC_BACKEND_URL, SAVESYNC_AUTH_TOKEN, ...)
"""

import json
import logging
import os
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional

from savesync.protocols import ConfigError
from savesync.types import CompressionMethod, ConflictStrategy
from savesync.utils import get_savesync_home, validate_backend_url

logger = logging.getLogger(__name__)

MiB = 1024 * 1024

# Environment variable -> (field name, parser)
ENV_OVERRIDES = {
    "SAVESYNC_BACKEND_URL": ("backend_url", str),
    "SAVESYNC_AUTH_TOKEN": ("auth_token", str),
    "SAVESYNC_MAX_SLOTS": ("max_slots", int),
    "SAVESYNC_MAX_SAVE_SIZE": ("max_save_size", int),
    "SAVESYNC_CONFLICT_STRATEGY": ("conflict_strategy", ConflictStrategy),
    "SAVESYNC_ENCRYPTION_KEY": ("encryption_key", str),
    "SAVESYNC_COMPRESSION": ("compression", CompressionMethod),
}


@dataclass
class SyncConfig:
    """Engine settings. Call ``validate()`` (the orchestrator does) before use."""

    # Slots and size limits
    max_slots: int = 5
    max_save_size: int = 10 * MiB
    total_levels: int = 100  # Denominator for slot progress percentage

    # Codec
    compression: CompressionMethod = CompressionMethod.ZLIB
    compression_level: int = 6
    encryption_key: Optional[str] = None  # Fernet key, urlsafe base64

    # Conflicts
    conflict_strategy: ConflictStrategy = ConflictStrategy.USE_NEWEST
    external_conflict_timeout: float = 30.0  # seconds

    # Retry / offline queue
    max_retries: int = 5
    backoff_base: float = 1.0  # seconds
    backoff_max: float = 60.0
    rate_limit_step: float = 5.0  # linear step for rate-limited retries
    jitter: float = 0.1  # fraction of the delay
    remote_timeout: float = 10.0  # per attempt, not per retry sequence

    # Auto-save
    auto_save_interval: float = 300.0  # seconds; 0 disables the timer

    # Record plausibility
    clock_skew_tolerance: float = 300.0  # seconds a save may be in the future
    max_record_age_days: int = 3650

    # Remote backend
    backend_url: Optional[str] = None
    auth_token: Optional[str] = None

    # Append save/load/conflict events to the sync event log
    event_log: bool = False

    def __post_init__(self):
        # Accept plain strings from JSON / env
        if not isinstance(self.compression, CompressionMethod):
            self.compression = CompressionMethod(self.compression)
        if not isinstance(self.conflict_strategy, ConflictStrategy):
            self.conflict_strategy = ConflictStrategy(self.conflict_strategy)

    @property
    def clock_skew(self) -> timedelta:
        return timedelta(seconds=self.clock_skew_tolerance)

    @property
    def max_record_age(self) -> timedelta:
        return timedelta(days=self.max_record_age_days)

    def validate(self) -> "SyncConfig":
        """Check every setting, raising ConfigError listing all problems."""
        problems: List[str] = []
        if self.max_slots < 1:
            problems.append("max_slots must be at least 1")
        if self.max_save_size <= 0:
            problems.append("max_save_size must be positive")
        if self.total_levels < 1:
            problems.append("total_levels must be at least 1")
        if not 0 <= self.compression_level <= 9:
            problems.append("compression_level must be between 0 and 9")
        if self.max_retries < 0:
            problems.append("max_retries cannot be negative")
        if self.backoff_base < 0 or self.backoff_max < 0 or self.rate_limit_step < 0:
            problems.append("backoff settings cannot be negative")
        if self.backoff_max < self.backoff_base:
            problems.append("backoff_max must be >= backoff_base")
        if not 0 <= self.jitter <= 1:
            problems.append("jitter must be between 0 and 1")
        if self.remote_timeout <= 0:
            problems.append("remote_timeout must be positive")
        if self.external_conflict_timeout <= 0:
            problems.append("external_conflict_timeout must be positive")
        if self.auto_save_interval < 0:
            problems.append("auto_save_interval cannot be negative")
        if self.clock_skew_tolerance < 0:
            problems.append("clock_skew_tolerance cannot be negative")
        if self.max_record_age_days < 1:
            problems.append("max_record_age_days must be at least 1")
        if self.backend_url and validate_backend_url(self.backend_url) is None:
            problems.append(f"backend_url rejected: {self.backend_url}")
        if self.encryption_key:
            try:
                from cryptography.fernet import Fernet

                Fernet(self.encryption_key.encode("ascii"))
            except (ValueError, TypeError, UnicodeEncodeError) as e:
                problems.append(f"encryption_key is not a valid Fernet key: {e}")

        if problems:
            raise ConfigError("Invalid configuration: " + "; ".join(problems))
        return self

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if hasattr(value, "value"):
                value = value.value
            if redact and f.name in ("auth_token", "encryption_key") and value:
                value = "***"
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {sorted(unknown)}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "SyncConfig":
        """Load config from JSON file then apply environment overrides."""
        path = path or get_savesync_home() / "config.json"
        data: Dict[str, Any] = {}
        if path.exists():
            try:
                with open(path) as f:
                    loaded = json.load(f)
                if isinstance(loaded, dict):
                    data.update(loaded)
                else:
                    logger.warning(f"Config file {path} is not a JSON object, ignoring")
            except (json.JSONDecodeError, OSError) as e:
                raise ConfigError(f"Cannot read config file {path}: {e}") from e

        for env_name, (field_name, parser) in ENV_OVERRIDES.items():
            raw = os.environ.get(env_name)
            if raw is None or raw == "":
                continue
            try:
                data[field_name] = parser(raw)
            except ValueError as e:
                raise ConfigError(f"{env_name}={raw!r} is invalid: {e}") from e

        try:
            config = cls.from_dict(data)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid configuration values: {e}") from e
        return config.validate()
