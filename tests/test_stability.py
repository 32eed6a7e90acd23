# ============================================================================
# test_stability.py -- Tests for StabilityAssessor and StabilitySnapshot
# ============================================================================
#
# COVERS:
#   TestSnapshotInvariants -- level/mode combinations that cannot exist
#   TestStabilityLevels    -- volume and critical thresholds, 10 minute window
#   TestCategoryOverrides  -- locale override, extra overrides, order
#
# RUN:
#   python -m pytest tests/test_stability.py -v
#
# INTERNET ACCESS: NONE
# ============================================================================

import pytest
import sys as _sys, os as _os
_sys.path.insert(0, _os.path.dirname(__file__))
from conftest import FakeClock

from crashguard.core.ledger import FaultEvent, FaultLedger
from crashguard.core.signatures import FaultCategory, Severity
from crashguard.core.stability import (
    CategoryOverride, OperatingMode, StabilityAssessor, StabilityLevel,
    StabilitySnapshot,
)


def _fill(ledger, clock, n, category=FaultCategory.UNKNOWN, severity=Severity.MEDIUM):
    for _ in range(n):
        ledger.record(FaultEvent(timestamp=clock(), category=category, severity=severity))


class TestSnapshotInvariants:

    def test_critical_requires_minimal(self):
        with pytest.raises(ValueError):
            StabilitySnapshot(StabilityLevel.CRITICAL, OperatingMode.SAFE)

    def test_unstable_cannot_be_normal(self):
        with pytest.raises(ValueError):
            StabilitySnapshot(StabilityLevel.UNSTABLE, OperatingMode.NORMAL)

    def test_stable_cannot_be_minimal(self):
        with pytest.raises(ValueError):
            StabilitySnapshot(StabilityLevel.STABLE, OperatingMode.MINIMAL)

    def test_level_ordering(self):
        assert StabilityLevel.CRITICAL.rank < StabilityLevel.UNSTABLE.rank < StabilityLevel.STABLE.rank


class TestStabilityLevels:

    def test_empty_ledger_is_stable_normal(self):
        snapshot = StabilityAssessor().assess(FaultLedger())
        assert snapshot == StabilitySnapshot(StabilityLevel.STABLE, OperatingMode.NORMAL)

    def test_four_faults_still_stable(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 4)
        assert StabilityAssessor().assess(ledger).level is StabilityLevel.STABLE

    def test_five_faults_unstable_safe(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 5)
        snapshot = StabilityAssessor().assess(ledger)
        assert snapshot.level is StabilityLevel.UNSTABLE
        assert snapshot.mode is OperatingMode.SAFE

    def test_two_critical_faults_critical_minimal(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 2, severity=Severity.CRITICAL)
        snapshot = StabilityAssessor().assess(ledger)
        assert snapshot.level is StabilityLevel.CRITICAL
        assert snapshot.mode is OperatingMode.MINIMAL

    def test_critical_checked_before_volume(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 6)
        _fill(ledger, clock, 2, severity=Severity.CRITICAL)
        assert StabilityAssessor().assess(ledger).level is StabilityLevel.CRITICAL

    def test_old_faults_age_out(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 10, severity=Severity.CRITICAL)
        clock.advance(601)
        assert StabilityAssessor().assess(ledger).level is StabilityLevel.STABLE

    def test_load_never_breaks_invariants(self):
        """Whatever the ledger holds, the snapshot is one of the legal pairs."""
        clock = FakeClock()
        ledger = FaultLedger(capacity=20, clock=clock)
        assessor = StabilityAssessor()
        severities = [Severity.LOW, Severity.CRITICAL, Severity.HIGH, Severity.MEDIUM]
        for i in range(60):
            ledger.record(FaultEvent(
                timestamp=clock(),
                category=FaultCategory.LOCALE if i % 3 == 0 else FaultCategory.NETWORK,
                severity=severities[i % 4],
            ))
            clock.advance(37)
            snapshot = assessor.assess(ledger)
            if snapshot.level is StabilityLevel.CRITICAL:
                assert snapshot.mode is OperatingMode.MINIMAL
            elif snapshot.level is StabilityLevel.UNSTABLE:
                assert snapshot.mode is not OperatingMode.NORMAL
            else:
                assert snapshot.mode is not OperatingMode.MINIMAL


class TestCategoryOverrides:

    def test_two_locale_faults_force_safe_while_stable(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 2, category=FaultCategory.LOCALE)
        snapshot = StabilityAssessor().assess(ledger)
        assert snapshot.level is StabilityLevel.STABLE
        assert snapshot.mode is OperatingMode.SAFE

    def test_locale_override_window_is_five_minutes(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 1, category=FaultCategory.LOCALE)
        clock.advance(301)
        _fill(ledger, clock, 1, category=FaultCategory.LOCALE)
        assert StabilityAssessor().assess(ledger).mode is OperatingMode.NORMAL

    def test_no_overrides_configured(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 3, category=FaultCategory.LOCALE)
        assert StabilityAssessor(overrides=[]).assess(ledger).mode is OperatingMode.NORMAL

    def test_extra_category_override(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 3, category=FaultCategory.BRIDGE)
        assessor = StabilityAssessor(overrides=[
            CategoryOverride(FaultCategory.LOCALE),
            CategoryOverride(FaultCategory.BRIDGE, threshold=3, window_seconds=120),
        ])
        assert assessor.assess(ledger).mode is OperatingMode.SAFE

    def test_override_never_yields_minimal(self):
        clock = FakeClock()
        ledger = FaultLedger(clock=clock)
        _fill(ledger, clock, 4, category=FaultCategory.LOCALE, severity=Severity.HIGH)
        snapshot = StabilityAssessor().assess(ledger)
        assert snapshot.mode is OperatingMode.SAFE
