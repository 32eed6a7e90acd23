# ============================================================================
# test_feature_gate.py -- Tests for FeatureGate
# ============================================================================
#
# COVERS:
#   TestDefaultRules -- the built-in table against every stability snapshot
#   TestGateBehavior -- unknown names, snapshot source, YAML rules
#
# RUN:
#   python -m pytest tests/test_feature_gate.py -v
#
# INTERNET ACCESS: NONE
# ============================================================================

import pytest

from crashguard.core.exceptions import ConfigValueError
from crashguard.core.feature_gate import (
    DEFAULT_FEATURE_RULES, FeatureGate, FeatureRule, rules_from_config,
)
from crashguard.core.stability import OperatingMode, StabilityLevel, StabilitySnapshot


STABLE_NORMAL = StabilitySnapshot(StabilityLevel.STABLE, OperatingMode.NORMAL)
STABLE_SAFE = StabilitySnapshot(StabilityLevel.STABLE, OperatingMode.SAFE)
UNSTABLE_SAFE = StabilitySnapshot(StabilityLevel.UNSTABLE, OperatingMode.SAFE)
CRITICAL_MINIMAL = StabilitySnapshot(StabilityLevel.CRITICAL, OperatingMode.MINIMAL)


class TestDefaultRules:

    @pytest.mark.parametrize("feature, expected", [
        ("voice_recognition", [True, True, False, False]),
        ("background_processing", [True, False, False, False]),
        ("complex_ui_animations", [True, False, False, False]),
        ("locale_processing", [True, False, False, False]),
        ("accessibility_features", [True, True, True, False]),
        ("basic_functionality", [True, True, True, True]),
    ])
    def test_table(self, feature, expected):
        gate = FeatureGate()
        snapshots = [STABLE_NORMAL, STABLE_SAFE, UNSTABLE_SAFE, CRITICAL_MINIMAL]
        assert [gate.is_allowed(feature, s) for s in snapshots] == expected

    def test_default_table_names(self):
        assert "voice_recognition" in DEFAULT_FEATURE_RULES
        assert len(DEFAULT_FEATURE_RULES) == 6


class TestGateBehavior:

    def test_unknown_feature_allowed_everywhere(self):
        gate = FeatureGate()
        assert gate.is_allowed("new_onboarding_flow", CRITICAL_MINIMAL)

    def test_reads_snapshot_source(self):
        current = {"snapshot": STABLE_NORMAL}
        gate = FeatureGate(snapshot_source=lambda: current["snapshot"])
        assert gate.is_allowed("background_processing")
        current["snapshot"] = UNSTABLE_SAFE
        assert not gate.is_allowed("background_processing")

    def test_evaluate_is_pure(self):
        rules = {"camera": FeatureRule(StabilityLevel.UNSTABLE, frozenset({OperatingMode.SAFE}))}
        assert FeatureGate.evaluate(rules, "camera", UNSTABLE_SAFE)
        assert not FeatureGate.evaluate(rules, "camera", STABLE_NORMAL)
        assert FeatureGate.evaluate(rules, "other", CRITICAL_MINIMAL)

    def test_rules_from_config_merge(self):
        rules = rules_from_config({
            "camera_preview": {"min_level": "stable", "allowed_modes": ["normal"]},
            "voice_recognition": {"min_level": "unstable"},
        })
        gate = FeatureGate(rules)
        assert not gate.is_allowed("camera_preview", STABLE_SAFE)
        # Replaced rule: no allowed_modes means every mode
        assert gate.is_allowed("voice_recognition", UNSTABLE_SAFE)
        assert gate.is_allowed("locale_processing", STABLE_NORMAL)

    def test_bad_rule_raises_config_error(self):
        with pytest.raises(ConfigValueError):
            rules_from_config({"camera": {"min_level": "wobbly"}})

    def test_status_report(self):
        report = FeatureGate().status_report(CRITICAL_MINIMAL)
        assert report["basic_functionality"] is True
        assert report["voice_recognition"] is False
