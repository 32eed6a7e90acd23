# ============================================================================
# crashguard -- Runtime Flags (crashguard/core/runtime_flags.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   The process-wide switches that recovery strategies flip: "use the safe
#   locale", "process strings defensively", "isolate the bridge", "skip
#   accessibility assets". Anything in the app may READ them; only a bound
#   recovery strategy (via the orchestrator) should SET them.
#
# WHY AN OBJECT INSTEAD OF GLOBALS:
#   One RuntimeFlags instance is created next to the engine and handed to
#   whoever needs it. Tests get a fresh instance each; nothing leaks
#   between them.
#
# CONCURRENCY:
#   Every setter writes a fixed value (True, a locale string, a deadline),
#   so setting twice from two callbacks is harmless. Readers need no lock.
# ============================================================================

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


SAFE_LOCALE = "en-US"
SAFE_LOCALE_FALLBACKS = ["en", "C"]


@dataclass
class RuntimeFlags:
    safe_string_processing: bool = False
    bridge_isolation: bool = False
    accessibility_bypass: bool = False
    safe_locale: Optional[str] = None
    locale_fallbacks: List[str] = field(default_factory=list)
    audio_reset_requested: bool = False
    # Deadlines (clock seconds); "active" while clock() < deadline
    bridge_recovery_until: float = 0.0
    crash_recovery_until: float = 0.0
    clock: Callable[[], float] = field(default=time.time, repr=False, compare=False)

    # -- setters (idempotent) ------------------------------------------------

    def enable_safe_locale(self, locale: str = SAFE_LOCALE, fallbacks: Optional[List[str]] = None) -> None:
        self.safe_locale = locale
        self.locale_fallbacks = list(fallbacks if fallbacks is not None else SAFE_LOCALE_FALLBACKS)

    def enable_safe_string_processing(self) -> None:
        self.safe_string_processing = True

    def enable_bridge_isolation(self, recovery_seconds: float = 10.0) -> None:
        self.bridge_isolation = True
        self.bridge_recovery_until = max(self.bridge_recovery_until, self.clock() + recovery_seconds)

    def enable_accessibility_bypass(self) -> None:
        self.accessibility_bypass = True

    def request_audio_reset(self) -> None:
        self.audio_reset_requested = True

    def enter_crash_recovery(self, seconds: float = 30.0) -> None:
        self.crash_recovery_until = max(self.crash_recovery_until, self.clock() + seconds)

    # -- readers -------------------------------------------------------------

    @property
    def bridge_recovering(self) -> bool:
        return self.clock() < self.bridge_recovery_until

    @property
    def crash_recovering(self) -> bool:
        return self.clock() < self.crash_recovery_until

    @property
    def resilience_mode(self) -> str:
        """Single label for reports: bridge_isolation > safe_processing > normal."""
        if self.bridge_isolation:
            return "bridge_isolation"
        if self.safe_string_processing:
            return "safe_processing"
        return "normal"

    @property
    def bridge_state(self) -> str:
        """
        "recovering" during the window after isolation was applied,
        "isolated" once it has passed (isolation itself stays on until
        reset()), "normal" if the bridge was never isolated.
        """
        if self.bridge_recovering:
            return "recovering"
        if self.bridge_isolation:
            return "isolated"
        return "normal"

    def snapshot(self) -> Dict[str, object]:
        return {
            "safe_string_processing": self.safe_string_processing,
            "bridge_isolation": self.bridge_isolation,
            "bridge_state": self.bridge_state,
            "accessibility_bypass": self.accessibility_bypass,
            "safe_locale": self.safe_locale,
            "audio_reset_requested": self.audio_reset_requested,
            "crash_recovering": self.crash_recovering,
            "resilience_mode": self.resilience_mode,
        }

    def reset(self) -> None:
        """Back to defaults. Manual reset control only."""
        self.safe_string_processing = False
        self.bridge_isolation = False
        self.accessibility_bypass = False
        self.safe_locale = None
        self.locale_fallbacks = []
        self.audio_reset_requested = False
        self.bridge_recovery_until = 0.0
        self.crash_recovery_until = 0.0
