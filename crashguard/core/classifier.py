# ============================================================================
# crashguard -- Fault Classifier (crashguard/core/classifier.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   Takes a raw fault (message + stack + where it came from) and decides
#   what kind of fault it is by matching it against the signature catalog.
#
# HOW IT WORKS:
#   1. Join message and stack into one text blob
#   2. Walk the catalog in registration order
#   3. First matching signature determines category, action, severity
#   4. No match -> category UNKNOWN, action LOG, severity MEDIUM
#
#   Matching is deliberately permissive (case-insensitive regex search).
#   A missed match only degrades to "log it", never to a wrong recovery,
#   so recall matters more than precision here.
#
# STABILITY ESCALATION:
#   If the caller passes the current StabilitySnapshot, severity is raised
#   one step while the process is already unhealthy:
#     - unstable: LOW->MEDIUM, MEDIUM->HIGH (capped at HIGH)
#     - critical: every severity one step up (capped at CRITICAL)
#   The same text + same snapshot always gives the same Classification.
# ============================================================================

from __future__ import annotations

import time
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from crashguard.core.signatures import (
    FaultAction,
    FaultCategory,
    FaultSignature,
    Severity,
    SignatureCatalog,
    default_catalog,
)
from crashguard.core.stability import StabilityLevel, StabilitySnapshot


class FaultSource(str, Enum):
    """Which host signal produced the fault."""
    SYNCHRONOUS_EXCEPTION = "synchronous_exception"
    PROMISE_REJECTION = "promise_rejection"
    BRIDGE_LOG = "bridge_log"
    OTHER = "other"


@dataclass(frozen=True)
class RawFault:
    """
    A fault as it arrives at the ingress boundary.

    Transient: consumed by the classifier and the orchestrator, never
    stored. The ledger keeps a FaultEvent instead.
    """
    message: str
    stack: str = ""
    source: FaultSource = FaultSource.OTHER
    fatal: bool = False
    timestamp: float = field(default_factory=time.time)
    component: str = "unknown"
    exception_type: str = ""

    @property
    def text(self) -> str:
        """The blob signatures are matched against."""
        return f"{self.message}\n{self.stack}"

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        source: FaultSource = FaultSource.SYNCHRONOUS_EXCEPTION,
        fatal: bool = False,
        component: str = "unknown",
        timestamp: Optional[float] = None,
    ) -> "RawFault":
        """Build a RawFault from a live exception, keeping its traceback."""
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(
            message=str(exc) or type(exc).__name__,
            stack=stack[:5000],  # Cap at 5KB
            source=source,
            fatal=fatal,
            timestamp=time.time() if timestamp is None else timestamp,
            component=component,
            exception_type=type(exc).__name__,
        )


@dataclass(frozen=True)
class Classification:
    """Result of matching one RawFault against the catalog."""
    signature: Optional[FaultSignature]
    category: FaultCategory
    action: FaultAction
    severity: Severity
    escalated: bool = False

    @property
    def matched(self) -> bool:
        return self.signature is not None

    @property
    def signature_name(self) -> Optional[str]:
        return self.signature.name if self.signature else None


class FaultClassifier:
    """
    Classifies raw faults against an ordered SignatureCatalog.

    Usage:
        classifier = FaultClassifier()               # built-in catalog
        result = classifier.classify(raw)
        result = classifier.classify(raw, snapshot)  # with escalation
    """

    UNMATCHED_CATEGORY = FaultCategory.UNKNOWN
    UNMATCHED_ACTION = FaultAction.LOG
    UNMATCHED_SEVERITY = Severity.MEDIUM

    def __init__(self, catalog: Optional[SignatureCatalog] = None):
        self.catalog = catalog if catalog is not None else default_catalog()

    def match(self, raw: RawFault) -> Optional[FaultSignature]:
        """First signature whose pattern matches, or None."""
        text = raw.text
        for signature in self.catalog:
            if signature.matches(text):
                return signature
        return None

    def classify(
        self,
        raw: RawFault,
        stability: Optional[StabilitySnapshot] = None,
    ) -> Classification:
        signature = self.match(raw)

        if signature is None:
            base = self.UNMATCHED_SEVERITY
            category, action = self.UNMATCHED_CATEGORY, self.UNMATCHED_ACTION
        else:
            base = signature.severity
            category, action = signature.category, signature.action

        severity = self._escalate(base, stability)
        return Classification(
            signature=signature,
            category=category,
            action=action,
            severity=severity,
            escalated=severity != base,
        )

    @staticmethod
    def _escalate(severity: Severity, stability: Optional[StabilitySnapshot]) -> Severity:
        if stability is None or stability.level is StabilityLevel.STABLE:
            return severity
        if stability.level is StabilityLevel.UNSTABLE:
            return severity.raised(ceiling=Severity.HIGH)
        return severity.raised()
