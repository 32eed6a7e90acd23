# ============================================================================
# crashguard -- Stability Assessor (crashguard/core/stability.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   Looks at the recent faults in the ledger and answers two questions:
#     1. How healthy is the process?   STABLE / UNSTABLE / CRITICAL
#     2. How cautious should it be?    NORMAL / SAFE / MINIMAL
#
# THE RULES (checked in this order):
#   level:
#     - >= 2 CRITICAL-severity faults in the last 10 minutes -> CRITICAL
#     - >= 5 faults of any severity in the last 10 minutes   -> UNSTABLE
#     - otherwise                                             -> STABLE
#   mode:
#     - CRITICAL -> MINIMAL
#     - UNSTABLE -> SAFE
#     - STABLE   -> first category override that fires (SAFE), else NORMAL
#
#   Raw volume escalates the mode before any single category does. The one
#   built-in override is "2+ locale faults in 5 minutes -> SAFE", because
#   locale crashes were the most common fatal pattern in field telemetry.
#   Overrides are a list in config, so other categories can get the same
#   treatment without code changes.
#
# INVARIANTS (enforced by StabilitySnapshot):
#   CRITICAL => MINIMAL, UNSTABLE => SAFE or MINIMAL, STABLE => never MINIMAL
#
# The assessor keeps no state. Call assess() whenever you need a fresh
# answer; nothing is cached between faults.
# ============================================================================

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Sequence

from crashguard.core.ledger import FaultLedger
from crashguard.core.signatures import FaultCategory, Severity


class StabilityLevel(str, Enum):
    """Coarse process health. Ordered CRITICAL < UNSTABLE < STABLE."""
    CRITICAL = "critical"
    UNSTABLE = "unstable"
    STABLE = "stable"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [StabilityLevel.CRITICAL, StabilityLevel.UNSTABLE, StabilityLevel.STABLE]


class OperatingMode(str, Enum):
    """How restricted the rest of the app should be."""
    NORMAL = "normal"
    SAFE = "safe"
    MINIMAL = "minimal"


@dataclass(frozen=True)
class StabilitySnapshot:
    level: StabilityLevel = StabilityLevel.STABLE
    mode: OperatingMode = OperatingMode.NORMAL

    def __post_init__(self) -> None:
        if self.level is StabilityLevel.CRITICAL and self.mode is not OperatingMode.MINIMAL:
            raise ValueError("critical stability requires minimal mode")
        if self.level is StabilityLevel.UNSTABLE and self.mode is OperatingMode.NORMAL:
            raise ValueError("unstable stability requires safe or minimal mode")
        if self.level is StabilityLevel.STABLE and self.mode is OperatingMode.MINIMAL:
            raise ValueError("stable stability cannot force minimal mode")

    def to_dict(self):
        return {"level": self.level.value, "mode": self.mode.value}


STABLE_NORMAL = StabilitySnapshot(StabilityLevel.STABLE, OperatingMode.NORMAL)


@dataclass(frozen=True)
class CategoryOverride:
    """
    "N faults of this category within W seconds -> downgrade to SAFE".

    Only ever applies while the level is STABLE.
    """
    category: FaultCategory
    threshold: int = 2
    window_seconds: float = 300.0

    def fires(self, ledger: FaultLedger, now: Optional[float] = None) -> bool:
        recent = ledger.window(self.window_seconds, now)
        return sum(1 for e in recent if e.category is self.category) >= self.threshold


def default_overrides() -> List[CategoryOverride]:
    return [CategoryOverride(FaultCategory.LOCALE, threshold=2, window_seconds=300.0)]


@dataclass
class StabilityAssessor:
    """
    Pure function of the ledger's recent window.

    Usage:
        assessor = StabilityAssessor()
        snapshot = assessor.assess(ledger)
        if snapshot.mode is OperatingMode.MINIMAL:
            ...
    """
    window_seconds: float = 600.0
    critical_threshold: int = 2
    unstable_threshold: int = 5
    overrides: Sequence[CategoryOverride] = field(default_factory=default_overrides)

    def level(self, ledger: FaultLedger, now: Optional[float] = None) -> StabilityLevel:
        recent = ledger.window(self.window_seconds, now)
        critical_recent = sum(1 for e in recent if e.severity is Severity.CRITICAL)

        if critical_recent >= self.critical_threshold:
            return StabilityLevel.CRITICAL
        if len(recent) >= self.unstable_threshold:
            return StabilityLevel.UNSTABLE
        return StabilityLevel.STABLE

    def assess(self, ledger: FaultLedger, now: Optional[float] = None) -> StabilitySnapshot:
        level = self.level(ledger, now)

        if level is StabilityLevel.CRITICAL:
            return StabilitySnapshot(level, OperatingMode.MINIMAL)
        if level is StabilityLevel.UNSTABLE:
            return StabilitySnapshot(level, OperatingMode.SAFE)

        for override in self.overrides:
            if override.fires(ledger, now):
                return StabilitySnapshot(level, OperatingMode.SAFE)
        return StabilitySnapshot(level, OperatingMode.NORMAL)
