# ============================================================================
# test_classifier.py -- Tests for the signature catalog and FaultClassifier
# ============================================================================
#
# COVERS:
#   TestSignatureCatalog -- construction errors, strategy ids, log scanning
#   TestClassification   -- each built-in pattern, first-match order,
#                           unmatched default, determinism
#   TestEscalation       -- severity raised by unstable / critical snapshots
#   TestRawFault         -- building a RawFault from a live exception
#
# RUN:
#   python -m pytest tests/test_classifier.py -v
#
# INTERNET ACCESS: NONE
# ============================================================================

import pytest
import sys as _sys, os as _os
_sys.path.insert(0, _os.path.dirname(__file__))
from conftest import (
    ACCESSIBILITY_CRASH, AUDIO_FAILURE, BRIDGE_CRASH, HERMES_GC_CRASH,
    INVARIANT_TEXT, LOCALE_CRASH, MEMORY_WARNING, NETWORK_FAILURE,
    SWIFT_STRING_CRASH, UNMATCHED_TEXT, make_raw,
)

from crashguard.core.classifier import FaultClassifier, FaultSource, RawFault
from crashguard.core.exceptions import DuplicateSignatureError, InvalidSignatureError
from crashguard.core.signatures import (
    FaultAction, FaultCategory, FaultSignature, Severity, SignatureCatalog,
    default_catalog,
)
from crashguard.core.stability import OperatingMode, StabilityLevel, StabilitySnapshot


UNSTABLE = StabilitySnapshot(StabilityLevel.UNSTABLE, OperatingMode.SAFE)
CRITICAL = StabilitySnapshot(StabilityLevel.CRITICAL, OperatingMode.MINIMAL)
STABLE = StabilitySnapshot(StabilityLevel.STABLE, OperatingMode.NORMAL)


class TestSignatureCatalog:

    def test_bad_regex_rejected(self):
        with pytest.raises(InvalidSignatureError) as info:
            FaultSignature("broken", "([unclosed", FaultCategory.UNKNOWN, FaultAction.LOG)
        assert info.value.error_code == "CAT-001"

    def test_recover_requires_strategy(self):
        with pytest.raises(InvalidSignatureError):
            FaultSignature("no_strategy", "boom", FaultCategory.UNKNOWN, FaultAction.RECOVER)

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(InvalidSignatureError):
            FaultSignature(
                "zero", "boom", FaultCategory.UNKNOWN, FaultAction.RECOVER,
                recovery_strategy_id="x", max_attempts=0,
            )

    def test_duplicate_names_rejected(self):
        sig = FaultSignature("same", "a", FaultCategory.UNKNOWN, FaultAction.LOG)
        other = FaultSignature("same", "b", FaultCategory.UNKNOWN, FaultAction.LOG)
        with pytest.raises(DuplicateSignatureError):
            SignatureCatalog([sig, other])

    def test_default_catalog_order_and_strategies(self):
        catalog = default_catalog()
        assert catalog.names[0] == "locale_icu_bridge"
        assert catalog.names[-1] == "audio_voice"
        assert catalog.strategy_ids() == [
            "locale_fallback",
            "safe_string_processing",
            "accessibility_bypass",
            "bridge_isolation",
            "audio_reset",
        ]

    def test_log_scanning_only_uses_native_patterns(self):
        catalog = default_catalog()
        assert catalog.matches_log_line(LOCALE_CRASH)
        assert catalog.matches_log_line(HERMES_GC_CRASH)
        # Keyword rules would turn ordinary log noise into faults
        assert not catalog.matches_log_line(MEMORY_WARNING)
        assert not catalog.matches_log_line("voice pipeline started")


class TestClassification:

    @pytest.mark.parametrize("text, name, category, action, severity", [
        (LOCALE_CRASH, "locale_icu_bridge", FaultCategory.LOCALE, FaultAction.RECOVER, Severity.HIGH),
        (SWIFT_STRING_CRASH, "swift_string_memory", FaultCategory.MEMORY, FaultAction.RECOVER, Severity.HIGH),
        (ACCESSIBILITY_CRASH, "accessibility_asset", FaultCategory.ACCESSIBILITY, FaultAction.RECOVER, Severity.MEDIUM),
        (BRIDGE_CRASH, "bridge_exception_queue", FaultCategory.BRIDGE, FaultAction.RECOVER, Severity.HIGH),
        (HERMES_GC_CRASH, "hermes_gc", FaultCategory.GC, FaultAction.ESCALATE, Severity.CRITICAL),
        (MEMORY_WARNING, "memory_pressure", FaultCategory.MEMORY, FaultAction.LOG, Severity.HIGH),
        (INVARIANT_TEXT, "invariant_violation", FaultCategory.UNKNOWN, FaultAction.LOG, Severity.LOW),
        (NETWORK_FAILURE, "network_request", FaultCategory.NETWORK, FaultAction.LOG, Severity.LOW),
        (AUDIO_FAILURE, "audio_voice", FaultCategory.AUDIO, FaultAction.RECOVER, Severity.MEDIUM),
    ])
    def test_builtin_patterns(self, text, name, category, action, severity):
        result = FaultClassifier().classify(make_raw(text))
        assert result.signature_name == name
        assert result.category is category
        assert result.action is action
        assert result.severity is severity
        assert result.escalated is False

    def test_unmatched_defaults_to_log(self):
        result = FaultClassifier().classify(make_raw(UNMATCHED_TEXT))
        assert not result.matched
        assert result.signature is None
        assert result.category is FaultCategory.UNKNOWN
        assert result.action is FaultAction.LOG
        assert result.severity is Severity.MEDIUM

    def test_first_match_wins(self):
        """A locale crash whose stack mentions the voice module stays locale."""
        raw = make_raw(LOCALE_CRASH, stack="at VoiceModule.startListening")
        assert FaultClassifier().classify(raw).category is FaultCategory.LOCALE

    def test_pattern_spans_message_and_stack(self):
        raw = make_raw("EXC_BAD_ACCESS Locale.Components.init", stack="frame 3: libicucore")
        assert FaultClassifier().classify(raw).signature_name == "locale_icu_bridge"

    def test_case_insensitive(self):
        raw = make_raw(NETWORK_FAILURE.upper())
        assert FaultClassifier().classify(raw).category is FaultCategory.NETWORK

    def test_deterministic(self):
        classifier = FaultClassifier()
        raw = make_raw(BRIDGE_CRASH)
        assert classifier.classify(raw, UNSTABLE) == classifier.classify(raw, UNSTABLE)

    def test_custom_catalog(self):
        catalog = SignatureCatalog([
            FaultSignature("quiet", "harmless", FaultCategory.UNKNOWN, FaultAction.IGNORE, Severity.LOW),
        ])
        result = FaultClassifier(catalog).classify(make_raw("a harmless warning"))
        assert result.action is FaultAction.IGNORE
        # Built-in patterns are not consulted
        assert not FaultClassifier(catalog).classify(make_raw(LOCALE_CRASH)).matched


class TestEscalation:

    def test_stable_keeps_default(self):
        result = FaultClassifier().classify(make_raw(NETWORK_FAILURE), STABLE)
        assert result.severity is Severity.LOW
        assert not result.escalated

    def test_unstable_raises_one_step(self):
        result = FaultClassifier().classify(make_raw(NETWORK_FAILURE), UNSTABLE)
        assert result.severity is Severity.MEDIUM
        assert result.escalated

    def test_unstable_caps_at_high(self):
        result = FaultClassifier().classify(make_raw(LOCALE_CRASH), UNSTABLE)
        assert result.severity is Severity.HIGH
        assert not result.escalated

    def test_critical_raises_to_critical(self):
        result = FaultClassifier().classify(make_raw(LOCALE_CRASH), CRITICAL)
        assert result.severity is Severity.CRITICAL
        assert result.escalated

    def test_critical_stays_critical(self):
        result = FaultClassifier().classify(make_raw(HERMES_GC_CRASH), CRITICAL)
        assert result.severity is Severity.CRITICAL
        assert not result.escalated

    def test_severity_helpers(self):
        assert Severity.LOW.raised() is Severity.MEDIUM
        assert Severity.HIGH.raised(ceiling=Severity.HIGH) is Severity.HIGH
        assert Severity.parse("high") is Severity.HIGH
        assert Severity.parse(4) is Severity.CRITICAL
        assert Severity.CRITICAL.label == "critical"


class TestRawFault:

    def test_from_exception(self):
        try:
            {}["missing_key"]
        except KeyError as e:
            raw = RawFault.from_exception(e, component="settings", fatal=True)
        assert raw.exception_type == "KeyError"
        assert raw.message == "'missing_key'"
        assert "Traceback" in raw.stack
        assert raw.source is FaultSource.SYNCHRONOUS_EXCEPTION
        assert raw.fatal is True
        assert raw.component == "settings"

    def test_exception_without_message_uses_type(self):
        raw = RawFault.from_exception(RuntimeError())
        assert raw.message == "RuntimeError"

    def test_text_joins_message_and_stack(self):
        raw = make_raw("top", stack="bottom")
        assert raw.text == "top\nbottom"
