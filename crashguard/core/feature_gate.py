# ===========================================================================
# crashguard -- FEATURE GATE
# ===========================================================================
# FILE: crashguard/core/feature_gate.py
#
# WHAT THIS IS:
#   The single place the rest of the app asks "may I run feature X right
#   now?". The answer depends only on the current StabilitySnapshot:
#
#     gate = FeatureGate(snapshot_source=engine.current_stability)
#     if gate.is_allowed("voice_recognition"):
#         start_listening()
#
# RULES:
#   Each feature has a FeatureRule(min_level, allowed_modes).
#   Deny when the current level is BELOW min_level (critical < unstable <
#   stable) or the current mode is not in allowed_modes. Everything else
#   is allowed.
#
#   UNKNOWN FEATURE NAMES ARE ALLOWED. The gate exists to switch off known
#   risky features under pressure, not to whitelist the app.
#
# SIDE EFFECTS: none. is_allowed() reads the snapshot and the table.
# ===========================================================================

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Mapping, Optional

from crashguard.core.exceptions import ConfigValueError
from crashguard.core.stability import (
    STABLE_NORMAL,
    OperatingMode,
    StabilityLevel,
    StabilitySnapshot,
)


ALL_MODES: FrozenSet[OperatingMode] = frozenset(OperatingMode)


@dataclass(frozen=True)
class FeatureRule:
    min_level: StabilityLevel = StabilityLevel.STABLE
    allowed_modes: FrozenSet[OperatingMode] = ALL_MODES

    def permits(self, snapshot: StabilitySnapshot) -> bool:
        if snapshot.level.rank < self.min_level.rank:
            return False
        return snapshot.mode in self.allowed_modes

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "FeatureRule":
        """Build from a YAML mapping: {min_level: stable, allowed_modes: [normal]}."""
        try:
            level = StabilityLevel(str(data.get("min_level", "stable")).lower())
            modes = data.get("allowed_modes")
            allowed = ALL_MODES if modes is None else frozenset(
                OperatingMode(str(m).lower()) for m in modes
            )
        except ValueError as e:
            raise ConfigValueError(f"Feature rule '{name}' is invalid: {e}") from None
        return cls(level, allowed)


_NORMAL = frozenset({OperatingMode.NORMAL})
_NORMAL_SAFE = frozenset({OperatingMode.NORMAL, OperatingMode.SAFE})

DEFAULT_FEATURE_RULES: Dict[str, FeatureRule] = {
    "voice_recognition":      FeatureRule(StabilityLevel.STABLE, _NORMAL_SAFE),
    "background_processing":  FeatureRule(StabilityLevel.STABLE, _NORMAL),
    "complex_ui_animations":  FeatureRule(StabilityLevel.STABLE, _NORMAL),
    "locale_processing":      FeatureRule(StabilityLevel.STABLE, _NORMAL),
    "accessibility_features": FeatureRule(StabilityLevel.UNSTABLE, _NORMAL_SAFE),
    "basic_functionality":    FeatureRule(StabilityLevel.CRITICAL, ALL_MODES),
}


def rules_from_config(extra: Optional[Mapping[str, Mapping[str, Any]]]) -> Dict[str, FeatureRule]:
    """Built-in table with YAML rules merged on top (same name replaces)."""
    rules = dict(DEFAULT_FEATURE_RULES)
    for name, data in (extra or {}).items():
        rules[name] = FeatureRule.from_dict(name, data)
    return rules


class FeatureGate:
    """Stability-aware allow/deny table for named features."""

    def __init__(
        self,
        rules: Optional[Mapping[str, FeatureRule]] = None,
        snapshot_source: Optional[Callable[[], StabilitySnapshot]] = None,
    ):
        self._rules: Dict[str, FeatureRule] = dict(
            DEFAULT_FEATURE_RULES if rules is None else rules
        )
        self._snapshot_source = snapshot_source or (lambda: STABLE_NORMAL)

    @staticmethod
    def evaluate(rules: Mapping[str, FeatureRule], name: str, snapshot: StabilitySnapshot) -> bool:
        rule = rules.get(name)
        if rule is None:
            return True
        return rule.permits(snapshot)

    def is_allowed(self, name: str, snapshot: Optional[StabilitySnapshot] = None) -> bool:
        if snapshot is None:
            snapshot = self._snapshot_source()
        return self.evaluate(self._rules, name, snapshot)

    def features(self):
        return sorted(self._rules)

    def status_report(self, snapshot: Optional[StabilitySnapshot] = None) -> Dict[str, bool]:
        """{feature: allowed} for every known feature, against one snapshot."""
        if snapshot is None:
            snapshot = self._snapshot_source()
        return {name: self.evaluate(self._rules, name, snapshot) for name in self.features()}
