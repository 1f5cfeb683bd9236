"""Configuration loading and validation for fee insights."""

import os
import yaml
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .constants import (
    DEFAULT_ALERT_MIN_CHANGE_SECS,
    DEFAULT_BASE_FEE_STROOPS,
    DEFAULT_CONGESTION_AVG_MULTIPLIER,
    DEFAULT_DB_PATH,
    DEFAULT_ENTER_CYCLES,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_HORIZON_BATCH_SIZE,
    DEFAULT_HORIZON_MAX_PAGES,
    DEFAULT_HORIZON_URL,
    DEFAULT_HTTP_TIMEOUT_SECS,
    DEFAULT_HYSTERESIS_MARGIN,
    DEFAULT_JSONL_DIR,
    DEFAULT_LOG_BACKUP_COUNT,
    DEFAULT_LOG_MAX_BYTES,
    DEFAULT_POLL_SECS,
    DEFAULT_SHUTDOWN_GRACE_SECS,
    DEFAULT_SNAPSHOT_POLICY,
    DEFAULT_WINDOW_MAX_AGE_SECS,
    DEFAULT_WINDOW_MAX_POINTS,
)
from .detector import DetectorThresholds
from .errors import ConfigError
from .types import SnapshotPolicy


@dataclass(frozen=True)
class InsightsConfig:
    """Settings consumed by the insights engine."""
    poll_interval_secs: float = DEFAULT_POLL_SECS
    window_max_points: Optional[int] = DEFAULT_WINDOW_MAX_POINTS
    window_max_age_secs: Optional[float] = DEFAULT_WINDOW_MAX_AGE_SECS
    base_fee: int = DEFAULT_BASE_FEE_STROOPS
    congestion_avg_multiplier: str = DEFAULT_CONGESTION_AVG_MULTIPLIER
    congestion_absolute_ceiling: Optional[int] = None
    max_fee_ceiling: Optional[int] = None
    hysteresis_margin: str = DEFAULT_HYSTERESIS_MARGIN
    enter_cycles: int = DEFAULT_ENTER_CYCLES
    snapshot_policy: SnapshotPolicy = SnapshotPolicy.ALWAYS
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    shutdown_grace_secs: float = DEFAULT_SHUTDOWN_GRACE_SECS

    @property
    def thresholds(self) -> DetectorThresholds:
        return DetectorThresholds(
            base_fee=self.base_fee,
            avg_multiplier=self.congestion_avg_multiplier,
            hysteresis_margin=self.hysteresis_margin,
            absolute_ceiling=self.congestion_absolute_ceiling,
            max_fee_ceiling=self.max_fee_ceiling,
            enter_cycles=self.enter_cycles,
        )

    def validate(self) -> "InsightsConfig":
        """
        Check every setting; returns self so calls can be chained.

        Raises:
            ConfigError: On the first invalid setting
        """
        if self.poll_interval_secs <= 0:
            raise ConfigError(f"poll_interval_secs must be > 0, got {self.poll_interval_secs}")
        if self.window_max_points is None and self.window_max_age_secs is None:
            raise ConfigError("window needs a max_points or max_age_secs bound")
        if self.window_max_points is not None and self.window_max_points < 1:
            raise ConfigError(f"window_max_points must be >= 1, got {self.window_max_points}")
        if self.window_max_age_secs is not None and self.window_max_age_secs <= 0:
            raise ConfigError(f"window_max_age_secs must be > 0, got {self.window_max_age_secs}")
        if self.failure_threshold < 1:
            raise ConfigError(f"failure_threshold must be >= 1, got {self.failure_threshold}")
        if self.shutdown_grace_secs < 0:
            raise ConfigError(f"shutdown_grace_secs must be >= 0, got {self.shutdown_grace_secs}")
        if not isinstance(self.snapshot_policy, SnapshotPolicy):
            raise ConfigError(f"snapshot_policy must be a SnapshotPolicy, got {self.snapshot_policy!r}")
        self.thresholds.validate()
        return self


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


def _optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


class Config:
    """Configuration container with environment variable overrides."""

    def __init__(self, config_path: str = None, create_if_missing: bool = True):
        """
        Load configuration from YAML file with environment variable overrides.

        Configuration precedence (highest to lowest):
        1. Environment variables (FI_* prefix)
        2. config.local.yaml (if exists, local overrides)
        3. config.yaml (main config file)
        4. Default values

        Args:
            config_path: Path to config.yaml. If None, searches for config.yaml
                        in current directory and parent directories.
            create_if_missing: If True and config_path is None, create default config
                              if not found. If config_path is explicitly provided,
                              this is ignored (file must exist).

        Raises:
            FileNotFoundError: If an explicit config_path does not exist
            ConfigError: If the file is not valid YAML or a value is invalid
        """
        if config_path is None:
            config_path = self._find_config_file()
            if create_if_missing and not Path(config_path).exists():
                self._create_default_config(config_path)
        elif not Path(config_path).exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        try:
            with open(config_path, 'r') as f:
                self._raw = yaml.safe_load(f) or {}
            if not isinstance(self._raw, dict):
                raise ConfigError(f"{config_path} must contain a mapping at top level")

            # config.local.yaml is gitignored, for secrets
            local_config_path = Path(config_path).parent / "config.local.yaml"
            if local_config_path.exists():
                with open(local_config_path, 'r') as f:
                    self._deep_merge(self._raw, yaml.safe_load(f) or {})
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {config_path}: {e}") from e

        self._apply_env_overrides()
        self._validate()

    def _find_config_file(self) -> str:
        """Find config.yaml in current directory or parents."""
        current = Path.cwd()
        for path in [current] + list(current.parents):
            config_file = path / "config.yaml"
            if config_file.exists():
                return str(config_file)
        return str(current / "config.yaml")

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> None:
        """Recursively merge override dict into base dict."""
        for key, value in override.items():
            if key in base and isinstance(base[key], dict) and isinstance(value, dict):
                self._deep_merge(base[key], value)
            else:
                base[key] = value

    def _create_default_config(self, path: str):
        """Create a default config.yaml file."""
        default_config = {
            "horizon": {
                "url": DEFAULT_HORIZON_URL,
                "timeout_secs": DEFAULT_HTTP_TIMEOUT_SECS,
                "batch_size": DEFAULT_HORIZON_BATCH_SIZE,
                "max_pages": DEFAULT_HORIZON_MAX_PAGES,
            },
            "polling": {
                "poll_secs": DEFAULT_POLL_SECS,
                "window_max_points": DEFAULT_WINDOW_MAX_POINTS,
                "window_max_age_secs": DEFAULT_WINDOW_MAX_AGE_SECS,
                "snapshot_policy": DEFAULT_SNAPSHOT_POLICY,
                "failure_threshold": DEFAULT_FAILURE_THRESHOLD,
                "shutdown_grace_secs": DEFAULT_SHUTDOWN_GRACE_SECS,
            },
            "congestion": {
                "base_fee": DEFAULT_BASE_FEE_STROOPS,
                "avg_multiplier": DEFAULT_CONGESTION_AVG_MULTIPLIER,
                "absolute_ceiling": None,
                "max_fee_ceiling": None,
                "hysteresis_margin": DEFAULT_HYSTERESIS_MARGIN,
                "enter_cycles": DEFAULT_ENTER_CYCLES,
            },
            "storage": {
                "enabled": True,
                "backend": "sqlite",
                "db_path": DEFAULT_DB_PATH,
                "jsonl_dir": DEFAULT_JSONL_DIR,
            },
            "alerts": {
                "webhook_url": "",
                "min_change_secs": DEFAULT_ALERT_MIN_CHANGE_SECS,
            },
            "logging": {
                "level": "INFO",
                "log_dir": "logs",
                "console_level": "INFO",
                "rotation": {
                    "max_bytes": DEFAULT_LOG_MAX_BYTES,
                    "backup_count": DEFAULT_LOG_BACKUP_COUNT,
                    "when": "midnight",
                },
            },
        }
        with open(path, 'w') as f:
            yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)

    def _apply_env_overrides(self):
        """Apply environment variable overrides using FI_ prefix."""
        overrides = [
            ("FI_HORIZON_URL", "horizon", "url"),
            ("FI_HORIZON_TIMEOUT_SECS", "horizon", "timeout_secs"),
            ("FI_POLL_SECS", "polling", "poll_secs"),
            ("FI_WINDOW_MAX_POINTS", "polling", "window_max_points"),
            ("FI_WINDOW_MAX_AGE_SECS", "polling", "window_max_age_secs"),
            ("FI_SNAPSHOT_POLICY", "polling", "snapshot_policy"),
            ("FI_FAILURE_THRESHOLD", "polling", "failure_threshold"),
            ("FI_BASE_FEE", "congestion", "base_fee"),
            ("FI_CONGESTION_MULTIPLIER", "congestion", "avg_multiplier"),
            ("FI_CONGESTION_CEILING", "congestion", "absolute_ceiling"),
            ("FI_HYSTERESIS_MARGIN", "congestion", "hysteresis_margin"),
            ("FI_STORAGE_BACKEND", "storage", "backend"),
            ("FI_DB_PATH", "storage", "db_path"),
            ("FI_ALERT_WEBHOOK", "alerts", "webhook_url"),
            ("FI_LOG_DIR", "logging", "log_dir"),
            ("FI_LOG_LEVEL", "logging", "level"),
            ("FI_CONSOLE_LEVEL", "logging", "console_level"),
        ]
        for env_name, section, key in overrides:
            value = os.getenv(env_name)
            if value:
                self._raw.setdefault(section, {})[key] = value

        if os.getenv("FI_STORAGE_ENABLED"):
            self._raw.setdefault("storage", {})["enabled"] = os.getenv("FI_STORAGE_ENABLED").lower() == "true"

    def _validate(self):
        """Validate and normalize configuration values."""
        try:
            self._insights = self._build_insights_config()
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid setting: {e}") from e
        self._insights.validate()

        if self.storage_config["backend"] not in ("sqlite", "jsonl"):
            raise ConfigError(f"unknown storage backend: {self.storage_config['backend']}")
        if self.horizon_batch_size < 1:
            raise ConfigError(f"horizon batch_size must be >= 1, got {self.horizon_batch_size}")
        if self.horizon_max_pages < 1:
            raise ConfigError(f"horizon max_pages must be >= 1, got {self.horizon_max_pages}")

    def _build_insights_config(self) -> InsightsConfig:
        polling = self._raw.get("polling", {})
        congestion = self._raw.get("congestion", {})
        policy = str(polling.get("snapshot_policy", DEFAULT_SNAPSHOT_POLICY)).lower()
        try:
            snapshot_policy = SnapshotPolicy(policy)
        except ValueError:
            raise ConfigError(f"snapshot_policy must be 'always' or 'on_change', got {policy!r}")

        return InsightsConfig(
            poll_interval_secs=float(polling.get("poll_secs", DEFAULT_POLL_SECS)),
            window_max_points=_optional_int(polling.get("window_max_points", DEFAULT_WINDOW_MAX_POINTS)),
            window_max_age_secs=_optional_float(polling.get("window_max_age_secs", DEFAULT_WINDOW_MAX_AGE_SECS)),
            base_fee=int(congestion.get("base_fee", DEFAULT_BASE_FEE_STROOPS)),
            congestion_avg_multiplier=str(congestion.get("avg_multiplier", DEFAULT_CONGESTION_AVG_MULTIPLIER)),
            congestion_absolute_ceiling=_optional_int(congestion.get("absolute_ceiling")),
            max_fee_ceiling=_optional_int(congestion.get("max_fee_ceiling")),
            hysteresis_margin=str(congestion.get("hysteresis_margin", DEFAULT_HYSTERESIS_MARGIN)),
            enter_cycles=int(congestion.get("enter_cycles", DEFAULT_ENTER_CYCLES)),
            snapshot_policy=snapshot_policy,
            failure_threshold=int(polling.get("failure_threshold", DEFAULT_FAILURE_THRESHOLD)),
            shutdown_grace_secs=float(polling.get("shutdown_grace_secs", DEFAULT_SHUTDOWN_GRACE_SECS)),
        )

    @property
    def insights_config(self) -> InsightsConfig:
        return self._insights

    @property
    def horizon_url(self) -> str:
        return self._raw.get("horizon", {}).get("url", DEFAULT_HORIZON_URL)

    @property
    def horizon_timeout_secs(self) -> float:
        return float(self._raw.get("horizon", {}).get("timeout_secs", DEFAULT_HTTP_TIMEOUT_SECS))

    @property
    def horizon_batch_size(self) -> int:
        return int(self._raw.get("horizon", {}).get("batch_size", DEFAULT_HORIZON_BATCH_SIZE))

    @property
    def horizon_max_pages(self) -> int:
        return int(self._raw.get("horizon", {}).get("max_pages", DEFAULT_HORIZON_MAX_PAGES))

    @property
    def poll_secs(self) -> float:
        return self._insights.poll_interval_secs

    @property
    def storage_config(self) -> Dict[str, Any]:
        """Get storage configuration with defaults."""
        cfg = self._raw.get("storage", {})
        return {
            "enabled": cfg.get("enabled", True),
            "backend": cfg.get("backend", "sqlite"),
            "db_path": cfg.get("db_path", DEFAULT_DB_PATH),
            "jsonl_dir": cfg.get("jsonl_dir", DEFAULT_JSONL_DIR),
        }

    @property
    def alert_webhook_url(self) -> str:
        return self._raw.get("alerts", {}).get("webhook_url", "")

    @property
    def alert_min_change_secs(self) -> int:
        return int(self._raw.get("alerts", {}).get("min_change_secs", DEFAULT_ALERT_MIN_CHANGE_SECS))

    @property
    def log_level(self) -> str:
        return self._raw.get("logging", {}).get("level", "INFO")

    @property
    def log_dir(self) -> str:
        return self._raw.get("logging", {}).get("log_dir", "logs")

    @property
    def console_level(self) -> str:
        return self._raw.get("logging", {}).get("console_level", "INFO")

    @property
    def log_rotation(self) -> Dict[str, Any]:
        """Get log rotation configuration with defaults."""
        rotation = self._raw.get("logging", {}).get("rotation", {})
        return {
            "max_bytes": rotation.get("max_bytes", DEFAULT_LOG_MAX_BYTES),
            "backup_count": rotation.get("backup_count", DEFAULT_LOG_BACKUP_COUNT),
            "when": rotation.get("when", "midnight")
        }
