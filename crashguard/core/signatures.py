# ============================================================================
# crashguard -- Signature Catalog (crashguard/core/signatures.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   A static table of "known ways this app crashes". Each entry (a
#   FaultSignature) pairs a text pattern with what to do when a fault
#   matches it: ignore it, log it, try a recovery strategy, or let it
#   escalate to the host's normal crash behaviour.
#
#   It also defines the shared vocabulary every other module uses:
#     - Severity:      LOW < MEDIUM < HIGH < CRITICAL
#     - FaultCategory: locale, memory, accessibility, bridge, gc, network,
#                      audio, unknown
#     - FaultAction:   ignore, log, recover, escalate
#
# ORDER MATTERS:
#   The classifier walks the catalog top to bottom and the FIRST match wins.
#   Specific native-crash patterns are registered before broad keyword
#   patterns ("audio|voice"), otherwise a bridge exception whose stack
#   mentions the voice module would be treated as an audio fault.
#
# WHERE THE PATTERNS COME FROM:
#   Symbolicated crash logs from the mobile client: ICU locale init in
#   libicucore, Swift string strlen/strcpy corruption, the accessibility
#   asset controller, the bridge exception queue, and the Hermes GC
#   executor thread.
# ============================================================================

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterator, List, Optional, Sequence

from crashguard.core.exceptions import DuplicateSignatureError, InvalidSignatureError


# ============================================================================
# SECTION 1: SEVERITY
# ============================================================================

class Severity(IntEnum):
    """
    How bad a fault is.

    IntEnum so severities compare with < and >:
        if classification.severity >= Severity.HIGH:
            ...
    """
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    def raised(self, ceiling: Optional["Severity"] = None) -> "Severity":
        """One step more severe, never above ``ceiling`` (default CRITICAL)."""
        ceiling = ceiling or Severity.CRITICAL
        if self >= ceiling:
            return self
        return Severity(self.value + 1)

    @classmethod
    def parse(cls, value) -> "Severity":
        """Accept a Severity, its int value, or its name ("high")."""
        if isinstance(value, Severity):
            return value
        if isinstance(value, int):
            return cls(value)
        return cls[str(value).strip().upper()]


# ============================================================================
# SECTION 2: CATEGORIES AND ACTIONS
# ============================================================================

class FaultCategory(str, Enum):
    """Which subsystem a fault belongs to."""
    LOCALE = "locale"
    MEMORY = "memory"
    ACCESSIBILITY = "accessibility"
    BRIDGE = "bridge"
    GC = "gc"
    NETWORK = "network"
    AUDIO = "audio"
    UNKNOWN = "unknown"


class FaultAction(str, Enum):
    """The initial reaction bound to a signature."""
    IGNORE = "ignore"
    LOG = "log"
    RECOVER = "recover"
    ESCALATE = "escalate"


# ============================================================================
# SECTION 3: FAULT SIGNATURE
# ============================================================================

@dataclass(frozen=True)
class FaultSignature:
    """
    One pattern-to-outcome binding.

    name:                 Unique id ("locale_icu_bridge")
    pattern:              Regex source, matched case-insensitively with
                          re.search over "message + newline + stack"
    category:             FaultCategory
    action:               FaultAction
    severity:             Default severity for matches
    recovery_strategy_id: Strategy to run when action is RECOVER
    max_attempts:         Recovery attempts allowed per fingerprint (None = engine default)
    scan_logs:            Also detect this pattern in diagnostic log lines
    """
    name: str
    pattern: str
    category: FaultCategory
    action: FaultAction
    severity: Severity = Severity.MEDIUM
    recovery_strategy_id: Optional[str] = None
    max_attempts: Optional[int] = None
    scan_logs: bool = False
    _regex: "re.Pattern" = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        try:
            regex = re.compile(self.pattern, re.IGNORECASE | re.DOTALL)
        except re.error as e:
            raise InvalidSignatureError(
                f"Signature '{self.name}' pattern does not compile: {e}",
                name=self.name,
            ) from e
        if self.action is FaultAction.RECOVER and not self.recovery_strategy_id:
            raise InvalidSignatureError(
                f"Signature '{self.name}' recovers but names no recovery strategy.",
                name=self.name,
            )
        if self.max_attempts is not None and self.max_attempts < 1:
            raise InvalidSignatureError(
                f"Signature '{self.name}' max_attempts must be >= 1.",
                name=self.name,
            )
        # frozen dataclass: bypass __setattr__ for the derived field
        object.__setattr__(self, "_regex", regex)

    def matches(self, text: str) -> bool:
        return self._regex.search(text) is not None


# ============================================================================
# SECTION 4: SIGNATURE CATALOG
# ============================================================================

class SignatureCatalog:
    """
    Ordered, read-only collection of FaultSignatures.

    Built once at startup. There is deliberately no add/remove after
    construction: the classifier's result must depend only on the fault
    text, never on when a rule happened to be registered.
    """

    def __init__(self, signatures: Sequence[FaultSignature]):
        seen = set()
        for sig in signatures:
            if sig.name in seen:
                raise DuplicateSignatureError(sig.name)
            seen.add(sig.name)
        self._signatures = tuple(signatures)

    def __iter__(self) -> Iterator[FaultSignature]:
        return iter(self._signatures)

    def __len__(self) -> int:
        return len(self._signatures)

    @property
    def names(self) -> List[str]:
        return [s.name for s in self._signatures]

    def strategy_ids(self) -> List[str]:
        """Every recovery strategy id referenced by a RECOVER signature."""
        ids = []
        for sig in self._signatures:
            if sig.action is FaultAction.RECOVER and sig.recovery_strategy_id not in ids:
                ids.append(sig.recovery_strategy_id)
        return ids

    def matches_log_line(self, text: str) -> bool:
        """True if a scan_logs signature matches a diagnostic log line."""
        return any(s.scan_logs and s.matches(text) for s in self._signatures)


# ============================================================================
# SECTION 5: DEFAULT CATALOG
# ============================================================================
# Native crash patterns first (scan_logs=True, they also show up in the
# bridge's console output), then the broad keyword rules.
# ============================================================================

DEFAULT_SIGNATURES: List[FaultSignature] = [
    FaultSignature(
        name="locale_icu_bridge",
        pattern=r"Locale\.Components\.init.*icucore",
        category=FaultCategory.LOCALE,
        action=FaultAction.RECOVER,
        severity=Severity.HIGH,
        recovery_strategy_id="locale_fallback",
        max_attempts=2,
        scan_logs=True,
    ),
    FaultSignature(
        name="swift_string_memory",
        pattern=r"_platform_strlen.*_platform_strcpy",
        category=FaultCategory.MEMORY,
        action=FaultAction.RECOVER,
        severity=Severity.HIGH,
        recovery_strategy_id="safe_string_processing",
        max_attempts=1,
        scan_logs=True,
    ),
    FaultSignature(
        name="accessibility_asset",
        pattern=r"AXAssetController.*isAssetCatalogInstalled",
        category=FaultCategory.ACCESSIBILITY,
        action=FaultAction.RECOVER,
        severity=Severity.MEDIUM,
        recovery_strategy_id="accessibility_bypass",
        max_attempts=3,
        scan_logs=True,
    ),
    FaultSignature(
        name="bridge_exception_queue",
        pattern=r"com\.facebook\.react\.ExceptionsManagerQueue.*objc_exception_throw",
        category=FaultCategory.BRIDGE,
        action=FaultAction.RECOVER,
        severity=Severity.HIGH,
        recovery_strategy_id="bridge_isolation",
        max_attempts=2,
        scan_logs=True,
    ),
    FaultSignature(
        name="hermes_gc",
        pattern=r"hermes.*HadesGC.*Executor",
        category=FaultCategory.GC,
        action=FaultAction.ESCALATE,
        severity=Severity.CRITICAL,
        max_attempts=1,
        scan_logs=True,
    ),
    FaultSignature(
        name="memory_pressure",
        pattern=r"out of memory|memory warning|MemoryError",
        category=FaultCategory.MEMORY,
        action=FaultAction.LOG,
        severity=Severity.HIGH,
    ),
    FaultSignature(
        name="invariant_violation",
        pattern=r"invariant violation",
        category=FaultCategory.UNKNOWN,
        action=FaultAction.LOG,
        severity=Severity.LOW,
    ),
    FaultSignature(
        name="network_request",
        pattern=r"network request failed|fetch.*failed",
        category=FaultCategory.NETWORK,
        action=FaultAction.LOG,
        severity=Severity.LOW,
    ),
    FaultSignature(
        name="audio_voice",
        pattern=r"audio|microphone|speech|voice",
        category=FaultCategory.AUDIO,
        action=FaultAction.RECOVER,
        severity=Severity.MEDIUM,
        recovery_strategy_id="audio_reset",
        max_attempts=2,
    ),
]


def default_catalog() -> SignatureCatalog:
    """The built-in catalog, in match order."""
    return SignatureCatalog(DEFAULT_SIGNATURES)
