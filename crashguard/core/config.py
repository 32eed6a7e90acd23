# ============================================================================
# crashguard -- Configuration (crashguard/core/config.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Every tunable number of the fault engine lives here: ledger size,
#   stability thresholds, retry limits, backoff, timeouts, report queue
#   size, extra feature-gate rules, where the log files go.
#
# HOW IT WORKS:
#   1. Dataclasses define every setting with the production default
#   2. config/default_config.yaml can override those defaults
#   3. Environment variables override YAML (per-machine tuning, CI)
#
#   Priority: env vars > YAML file > hardcoded defaults
#
# ENV VARS:
#   CRASHGUARD_LOG_DIR           logging.log_dir
#   CRASHGUARD_BASE_DELAY        recovery.base_delay (seconds, 0 disables)
#   CRASHGUARD_STRATEGY_TIMEOUT  recovery.strategy_timeout (seconds)
#   CRASHGUARD_LEDGER_CAPACITY   ledger.capacity
#
# USAGE:
#   from crashguard.core.config import load_config, validate_config
#   config = load_config(".")                   # <dir>/config/default_config.yaml
#   problems = validate_config(config)
#   if problems:
#       ...
# ============================================================================

from __future__ import annotations

import dataclasses
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from crashguard.core.exceptions import ConfigValueError
from crashguard.core.signatures import FaultCategory
from crashguard.core.stability import (
    CategoryOverride,
    OperatingMode,
    StabilityAssessor,
    StabilityLevel,
)


def _env_number(name: str, cast):
    """Read a numeric env var; None when unset, ConfigValueError when garbage."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    try:
        return cast(value)
    except ValueError:
        raise ConfigValueError(
            f"Environment variable {name}={value!r} is not a valid {cast.__name__}."
        ) from None


# -------------------------------------------------------------------
# Sections
# -------------------------------------------------------------------

@dataclass
class LedgerConfig:
    """How many FaultEvents the ledger keeps before evicting the oldest."""
    capacity: int = 100

    def __post_init__(self) -> None:
        env_capacity = _env_number("CRASHGUARD_LEDGER_CAPACITY", int)
        if env_capacity is not None:
            self.capacity = env_capacity


@dataclass
class StabilityConfig:
    """
    Stability assessor thresholds.

    overrides is an ordered list of {category, threshold, window_seconds}.
    The first one that fires while the level is still STABLE switches the
    mode to SAFE. Locale is the only built-in entry; add memory, bridge...
    here if field data says they deserve the same early downgrade.
    """
    window_seconds: float = 600.0      # 10 minutes
    critical_threshold: int = 2        # critical faults in window -> CRITICAL
    unstable_threshold: int = 5        # any faults in window      -> UNSTABLE
    overrides: List[Dict[str, Any]] = field(default_factory=lambda: [
        {"category": "locale", "threshold": 2, "window_seconds": 300.0},
    ])

    def category_overrides(self) -> List[CategoryOverride]:
        result = []
        for entry in self.overrides:
            try:
                category = FaultCategory(str(entry["category"]).lower())
            except (KeyError, ValueError):
                raise ConfigValueError(
                    f"stability.overrides entry {entry!r} has no valid category."
                ) from None
            result.append(CategoryOverride(
                category=category,
                threshold=int(entry.get("threshold", 2)),
                window_seconds=float(entry.get("window_seconds", 300.0)),
            ))
        return result

    def build_assessor(self) -> StabilityAssessor:
        return StabilityAssessor(
            window_seconds=self.window_seconds,
            critical_threshold=self.critical_threshold,
            unstable_threshold=self.unstable_threshold,
            overrides=self.category_overrides(),
        )


@dataclass
class RecoveryConfig:
    """
    Recovery orchestrator policy.

    Backoff before attempt N+1 is N * base_delay seconds, so the first
    attempt runs immediately. Set base_delay to 0 in tests.
    """
    default_max_attempts: int = 3       # when the signature sets none
    base_delay: float = 1.0             # seconds
    attempt_horizon: float = 300.0      # attempts older than this are forgotten
    fingerprint_length: int = 100       # chars of normalised text per fingerprint
    strategy_timeout: float = 5.0       # seconds, per strategy run
    cascade_threshold: int = 3          # same-component faults ...
    cascade_window: float = 300.0       # ... within this many seconds -> restart
    restart_critical_threshold: int = 3 # critical faults in ledger -> restart
    crash_pattern_threshold: int = 3    # attempts or related crashes ...
    crash_pattern_window: float = 300.0 # ... within this many seconds -> crash recovery
    crash_recovery_seconds: float = 30.0

    def __post_init__(self) -> None:
        env_delay = _env_number("CRASHGUARD_BASE_DELAY", float)
        if env_delay is not None:
            self.base_delay = env_delay
        env_timeout = _env_number("CRASHGUARD_STRATEGY_TIMEOUT", float)
        if env_timeout is not None:
            self.strategy_timeout = env_timeout


@dataclass
class ReportingConfig:
    max_queue: int = 100          # oldest report dropped beyond this
    start_worker: bool = True     # False = deliver only on drain()/flush()
    enrich_context: bool = True   # attach platform/memory/locale/flags


@dataclass
class FeaturesConfig:
    """
    Extra or replacement feature-gate rules, merged over the built-in table:

        rules:
          camera_preview:
            min_level: stable
            allowed_modes: [normal]
    """
    rules: Dict[str, Dict[str, Any]] = field(default_factory=dict)


@dataclass
class LoggingConfig:
    log_dir: str = "logs"

    def __post_init__(self) -> None:
        env_dir = os.getenv("CRASHGUARD_LOG_DIR")
        if env_dir:
            self.log_dir = env_dir


# -------------------------------------------------------------------
# Master Config
# -------------------------------------------------------------------

@dataclass
class Config:
    """
    Master configuration object for crashguard.

    Example:
        config = load_config(".")
        print(config.ledger.capacity)            # 100
        print(config.recovery.base_delay)        # 1.0
        print(config.stability.overrides)        # [{'category': 'locale', ...}]
    """
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    stability: StabilityConfig = field(default_factory=StabilityConfig)
    recovery: RecoveryConfig = field(default_factory=RecoveryConfig)
    reporting: ReportingConfig = field(default_factory=ReportingConfig)
    features: FeaturesConfig = field(default_factory=FeaturesConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# -------------------------------------------------------------------
# Helper: YAML dict -> dataclass (with safety net)
# -------------------------------------------------------------------

def _dict_to_dataclass(cls, data: dict):
    """
    Build a dataclass from a dictionary, ignoring unknown keys.

    Unknown keys are not fatal, but they are almost always typos
    ("timeout" vs "strategy_timeout"), and a silently ignored threshold
    is exactly the kind of bug that only shows up during a crash storm.
    So each one is reported on stderr, with the closest field name when
    one contains the other.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigValueError(
            f"config section for {cls.__name__} must be a mapping, got {type(data).__name__}."
        )

    known_fields = {f.name for f in dataclasses.fields(cls)}

    filtered = {}
    for k, v in data.items():
        if k in known_fields:
            filtered[k] = v
        else:
            suggestion = ""
            for field_name in sorted(known_fields):
                if k in field_name or field_name in k:
                    suggestion = " Did you mean '" + field_name + "'?"
                    break
            print(
                "  [WARN] config/" + cls.__name__ + ": YAML key '"
                + str(k) + "' is not a recognized setting"
                + " -- IGNORED (using default)." + suggestion,
                file=sys.stderr,
            )

    return cls(**filtered)


# -------------------------------------------------------------------
# Main entry point: load_config()
# -------------------------------------------------------------------

def load_config(
    project_dir: str = ".",
    config_filename: str = "default_config.yaml",
) -> Config:
    """
    Load configuration from YAML file, with defaults and env var overrides.

    Resolution order (highest priority first):
      1. Environment variables (applied inside each dataclass __post_init__)
      2. YAML file values
      3. Hardcoded defaults

    A missing file means "all defaults".
    """
    config_path = Path(project_dir) / "config" / config_filename

    yaml_data: dict = {}
    if config_path.exists():
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)
            if isinstance(raw, dict):
                yaml_data = raw

    return config_from_dict(yaml_data)


def config_from_dict(data: Dict[str, Any]) -> Config:
    """Same as load_config() but from an already-parsed mapping."""
    return Config(
        ledger=_dict_to_dataclass(LedgerConfig, data.get("ledger", {})),
        stability=_dict_to_dataclass(StabilityConfig, data.get("stability", {})),
        recovery=_dict_to_dataclass(RecoveryConfig, data.get("recovery", {})),
        reporting=_dict_to_dataclass(ReportingConfig, data.get("reporting", {})),
        features=_dict_to_dataclass(FeaturesConfig, data.get("features", {})),
        logging=_dict_to_dataclass(LoggingConfig, data.get("logging", {})),
    )


def validate_config(config: Config) -> List[str]:
    """
    Check a Config object for problems. Returns a list of error messages.
    Empty list = everything is valid.
    """
    errors: List[str] = []

    if config.ledger.capacity < 1:
        errors.append("ledger.capacity must be >= 1, got " + str(config.ledger.capacity))

    st = config.stability
    if st.window_seconds <= 0:
        errors.append("stability.window_seconds must be positive")
    if st.critical_threshold < 1:
        errors.append("stability.critical_threshold must be >= 1")
    if st.unstable_threshold < 1:
        errors.append("stability.unstable_threshold must be >= 1")
    valid_categories = {c.value for c in FaultCategory}
    for entry in st.overrides:
        if not isinstance(entry, dict):
            errors.append("stability.overrides entries must be mappings: " + repr(entry))
            continue
        category = str(entry.get("category", "")).lower()
        if category not in valid_categories:
            errors.append(
                "stability.overrides: unknown category '" + category
                + "'. Valid: " + ", ".join(sorted(valid_categories))
            )
        if int(entry.get("threshold", 2)) < 1:
            errors.append("stability.overrides: threshold must be >= 1 for " + category)

    rc = config.recovery
    if rc.default_max_attempts < 1:
        errors.append("recovery.default_max_attempts must be >= 1")
    if rc.base_delay < 0:
        errors.append("recovery.base_delay cannot be negative")
    if rc.strategy_timeout <= 0:
        errors.append("recovery.strategy_timeout must be positive")
    if rc.attempt_horizon <= 0:
        errors.append("recovery.attempt_horizon must be positive")
    if rc.fingerprint_length < 1:
        errors.append("recovery.fingerprint_length must be >= 1")
    if rc.cascade_threshold < 1:
        errors.append("recovery.cascade_threshold must be >= 1")
    if rc.crash_pattern_threshold < 1:
        errors.append("recovery.crash_pattern_threshold must be >= 1")
    if rc.crash_pattern_window <= 0:
        errors.append("recovery.crash_pattern_window must be positive")

    if config.reporting.max_queue < 1:
        errors.append("reporting.max_queue must be >= 1")

    valid_levels = {lv.value for lv in StabilityLevel}
    valid_modes = {m.value for m in OperatingMode}
    for name, rule in config.features.rules.items():
        if not isinstance(rule, dict):
            errors.append("features.rules." + str(name) + " must be a mapping")
            continue
        level = str(rule.get("min_level", "stable")).lower()
        if level not in valid_levels:
            errors.append(
                "features.rules." + str(name) + ": unknown min_level '" + level + "'"
            )
        for mode in rule.get("allowed_modes", []):
            if str(mode).lower() not in valid_modes:
                errors.append(
                    "features.rules." + str(name) + ": unknown mode '" + str(mode) + "'"
                )

    return errors
