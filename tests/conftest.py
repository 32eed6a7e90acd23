# ============================================================================
# conftest.py -- Shared Test Helpers for the crashguard Test Suite
# ============================================================================
#
# WHAT THIS FILE DOES:
#   Pytest automatically loads this file before any test runs.
#   It provides:
#     1. sys.path setup so "from crashguard.core.X import Y" works from
#        any test without installing the package
#     2. Log output redirected to a temp folder (no logs/ in the repo)
#     3. FakeClock -- a controllable time source, so window and horizon
#        tests never sleep
#     4. Crash text constants, one per built-in signature
#     5. make_raw() / make_config() / make_engine() builders
#
# ASYNC CODE:
#   Coroutines are driven with asyncio.run() inside plain test functions.
#   No pytest plugin needed.
#
# INTERNET ACCESS: NONE
# ============================================================================

import sys
import tempfile
from pathlib import Path

# -- sys.path setup --
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from crashguard.monitoring.logger import initialize_logging  # noqa: E402

initialize_logging(tempfile.mkdtemp(prefix="crashguard_test_logs_"))

from crashguard.core.classifier import FaultSource, RawFault  # noqa: E402
from crashguard.core.config import Config  # noqa: E402


# ============================================================================
# SECTION 0: FAKE CLOCK
# ============================================================================
#
# Every component takes a clock= callable. Passing a FakeClock lets a test
# say "ten minutes later" with clock.advance(600) instead of sleeping.
# ============================================================================

class FakeClock:
    """Callable time source that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


# ============================================================================
# SECTION 1: CRASH TEXT CONSTANTS
# ============================================================================
# One string per built-in signature, shaped like the symbolicated crash
# lines they were written for.
# ============================================================================

LOCALE_CRASH = "EXC_BAD_ACCESS in Locale.Components.init(identifier:) libicucore.A.dylib"
SWIFT_STRING_CRASH = "SIGSEGV _platform_strlen called from _platform_strcpy"
ACCESSIBILITY_CRASH = "AXAssetController -[isAssetCatalogInstalled] returned nil"
BRIDGE_CRASH = "com.facebook.react.ExceptionsManagerQueue: objc_exception_throw"
HERMES_GC_CRASH = "hermes::vm::HadesGC::Executor thread terminated"
MEMORY_WARNING = "Received memory warning from the OS"
INVARIANT_TEXT = "Invariant Violation: Text strings must be rendered within a <Text>"
NETWORK_FAILURE = "TypeError: Network request failed"
AUDIO_FAILURE = "microphone session could not be activated"
UNMATCHED_TEXT = "KeyError: 'settings_page_title'"


# ============================================================================
# SECTION 2: BUILDERS
# ============================================================================

def make_raw(
    message: str,
    stack: str = "",
    source: FaultSource = FaultSource.OTHER,
    fatal: bool = False,
    component: str = "app",
    clock=None,
) -> RawFault:
    """RawFault with a fixed component and (optionally) fake timestamp."""
    return RawFault(
        message=message,
        stack=stack,
        source=source,
        fatal=fatal,
        component=component,
        timestamp=clock() if clock is not None else 0.0,
    )


def make_config(**recovery_overrides) -> Config:
    """
    Config tuned for tests: no backoff sleep, no worker thread, no
    platform lookups. Recovery fields can be overridden by keyword.
    """
    config = Config()
    config.recovery.base_delay = 0.0
    config.recovery.strategy_timeout = 1.0
    config.reporting.start_worker = False
    config.reporting.enrich_context = False
    for key, value in recovery_overrides.items():
        setattr(config.recovery, key, value)
    return config


def make_engine(clock=None, config=None, **kwargs):
    """FaultEngine on a FakeClock with the test config."""
    from crashguard.core.engine import FaultEngine

    return FaultEngine(
        config if config is not None else make_config(),
        clock=clock if clock is not None else FakeClock(),
        **kwargs,
    )


class ReportSpy:
    """Reporting handler that just remembers what it was given."""

    def __init__(self):
        self.reports = []

    def __call__(self, report):
        self.reports.append(report)

    @property
    def statuses(self):
        return [r.status.value for r in self.reports]
