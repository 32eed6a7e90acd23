# ============================================================================
# crashguard -- Recovery Orchestrator (crashguard/core/orchestrator.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   The decision maker. Given a classified fault it:
#     1. Appends a FaultEvent to the ledger (ALWAYS, before anything else,
#        so even ignored or escalated faults count toward stability)
#     2. Branches on the signature's action:
#          ignore   -> handled, nothing else
#          log      -> report "logged", handled
#          recover  -> bounded retry of the bound strategy (see below)
#          escalate -> report "escalated", let the host crash
#        An unmatched fault the host marked fatal is reported "unhandled"
#        and also allowed to propagate.
#     3. Checks the cascading-failure guard: the same component faulting
#        3+ times in 5 minutes makes the recommended action "restart".
#     4. Stamps every report with recovery_attempts (this fingerprint) and
#        related_crashes (same category, last 5 minutes). A critical fault
#        or either count reaching 3 turns on crash recovery mode for 30s.
#
# RECOVERY ATTEMPT POLICY:
#   Faults are correlated by a FINGERPRINT: the first 100 characters of the
#   lowercased, whitespace-collapsed message + stack. Per fingerprint:
#     - attempts older than 5 minutes are forgotten
#     - if attempts in the horizon >= max_attempts -> "recovery_exhausted"
#       (logged and absorbed; no strategy call)
#     - otherwise record the attempt, sleep existing_attempts * 1s, then run
#       the strategy under its timeout
#     - success -> ledger event marked resolved, report "recovered"
#     - failure / timeout -> report "recovery_failed", still handled
#
# CONCURRENCY:
#   handle() is a coroutine. The only awaits are the backoff sleep and the
#   strategy itself. The ledger append and the attempt bookkeeping happen
#   before the first await, under threading locks, so two faults arriving
#   from different threads cannot both sneak past max_attempts.
# ============================================================================

from __future__ import annotations

import asyncio
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from crashguard.core.classifier import Classification, FaultClassifier, RawFault
from crashguard.core.config import RecoveryConfig
from crashguard.core.exceptions import SinkClosedError
from crashguard.core.ledger import FaultEvent, FaultLedger
from crashguard.core.runtime_flags import RuntimeFlags
from crashguard.core.signatures import FaultAction, Severity
from crashguard.core.stability import (
    STABLE_NORMAL,
    OperatingMode,
    StabilityAssessor,
    StabilityLevel,
    StabilitySnapshot,
)
from crashguard.core.strategies import RecoveryResult, StrategyRegistry
from crashguard.monitoring.logger import FaultLogEntry, RecoveryLogEntry, get_fault_logger
from crashguard.monitoring.reporting import QueuedReport, ReportingSink, ReportStatus


RECENT_WINDOW_SECONDS = 24 * 3600


class HandleOutcome(str, Enum):
    HANDLED = "handled"
    PROPAGATED = "propagated"


class RecommendedAction(str, Enum):
    CONTINUE = "continue"
    SAFE_MODE = "safe_mode"
    MINIMAL_MODE = "minimal_mode"
    RESTART = "restart"


@dataclass
class RecoveryAttemptRecord:
    """Attempt timestamps for one fingerprint."""
    fingerprint: str
    attempts: List[float] = field(default_factory=list)

    def count(self, now: float, horizon: float) -> int:
        cutoff = now - horizon
        return sum(1 for t in self.attempts if t >= cutoff)

    def add(self, timestamp: float) -> None:
        self.attempts.append(timestamp)

    def prune(self, now: float, horizon: float) -> None:
        cutoff = now - horizon
        self.attempts = [t for t in self.attempts if t >= cutoff]

    @property
    def last_attempt(self) -> Optional[float]:
        return self.attempts[-1] if self.attempts else None


@dataclass
class HandleResult:
    """What handle() decided for one fault."""
    outcome: HandleOutcome
    event: FaultEvent
    classification: Classification
    status: Optional[ReportStatus] = None
    recovery: Optional[RecoveryResult] = None
    cascade_detected: bool = False
    stability: StabilitySnapshot = STABLE_NORMAL

    @property
    def propagated(self) -> bool:
        return self.outcome is HandleOutcome.PROPAGATED


@dataclass
class FaultStatistics:
    total_faults: int
    lifetime_faults: int
    recent_faults: int
    resolved_faults: int
    critical_crashes: int
    by_category: Dict[str, int]
    most_frequent_category: Optional[str]
    average_recovery_ms: float
    level: str
    mode: str
    recommended_action: str
    cascade_components: List[str]
    queued_reports: int = 0
    dropped_reports: int = 0
    processed_reports: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


class RecoveryOrchestrator:
    """
    Owns the ledger and the recovery attempt table.

    Usage:
        orchestrator = RecoveryOrchestrator(classifier, ledger, assessor,
                                            registry, sink=sink)
        result = await orchestrator.process(raw)
        if result.propagated:
            ...  # hand the fault back to the host's default handler
    """

    def __init__(
        self,
        classifier: FaultClassifier,
        ledger: FaultLedger,
        assessor: StabilityAssessor,
        registry: StrategyRegistry,
        sink: Optional[ReportingSink] = None,
        flags: Optional[RuntimeFlags] = None,
        policy: Optional[RecoveryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.classifier = classifier
        self.ledger = ledger
        self.assessor = assessor
        self.registry = registry
        self.sink = sink
        self.flags = flags
        self.policy = policy if policy is not None else RecoveryConfig()
        self._clock = clock
        self._attempts: Dict[str, RecoveryAttemptRecord] = {}
        self._attempts_lock = threading.Lock()
        self._last_snapshot = STABLE_NORMAL
        self._logger = get_fault_logger("crashguard.orchestrator")

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def process(self, raw: RawFault) -> HandleResult:
        """Assess, classify against the current snapshot, handle."""
        snapshot = self.current_stability()
        classification = self.classifier.classify(raw, snapshot)
        return await self.handle(raw, classification)

    async def handle(self, raw: RawFault, classification: Classification) -> HandleResult:
        now = self._clock()
        event = self.ledger.record(FaultEvent(
            timestamp=now,
            category=classification.category,
            severity=classification.severity,
            component=raw.component,
            action=classification.action,
            source=raw.source.value,
            signature=classification.signature_name,
        ))
        cascade = self._cascade_for(raw.component, now)

        self._logger.info("fault_classified", **FaultLogEntry.build(
            event_id=event.event_id,
            category=classification.category.value,
            severity=classification.severity.label,
            action=classification.action.value,
            component=raw.component,
            source=raw.source.value,
            signature=classification.signature_name,
            escalated=classification.escalated,
        ))
        if cascade:
            self._logger.warning(
                "cascading_failure_detected",
                component=raw.component,
                threshold=self.policy.cascade_threshold,
                window_s=self.policy.cascade_window,
            )

        action = classification.action
        recovery: Optional[RecoveryResult] = None
        status: Optional[ReportStatus] = None
        outcome = HandleOutcome.HANDLED

        if action is FaultAction.IGNORE:
            pass
        elif action is FaultAction.ESCALATE:
            status = ReportStatus.ESCALATED
            outcome = HandleOutcome.PROPAGATED
            if self.flags is not None:
                self.flags.enter_crash_recovery(self.policy.crash_recovery_seconds)
        elif not classification.matched and raw.fatal:
            status = ReportStatus.UNHANDLED
            outcome = HandleOutcome.PROPAGATED
        elif action is FaultAction.RECOVER:
            status, recovery = await self._recover(raw, classification, event)
        else:
            status = ReportStatus.LOGGED

        snapshot = self._refresh_stability()
        if status is not None:
            attempts, related = self._crash_pattern(raw, classification, now)
            self._report(raw, classification, status, event, snapshot, attempts, related)

        return HandleResult(
            outcome=outcome,
            event=event,
            classification=classification,
            status=status,
            recovery=recovery,
            cascade_detected=cascade,
            stability=snapshot,
        )

    async def _recover(
        self, raw: RawFault, classification: Classification, event: FaultEvent
    ) -> Tuple[ReportStatus, Optional[RecoveryResult]]:
        signature = classification.signature
        strategy_id = signature.recovery_strategy_id
        max_attempts = signature.max_attempts or self.policy.default_max_attempts
        fingerprint = self.fingerprint(raw)
        now = self._clock()

        with self._attempts_lock:
            self._prune_attempts(now)
            record = self._attempts.setdefault(fingerprint, RecoveryAttemptRecord(fingerprint))
            existing = record.count(now, self.policy.attempt_horizon)
            exhausted = existing >= max_attempts
            if not exhausted:
                record.add(now)

        if exhausted:
            self._logger.warning(
                "recovery_exhausted",
                strategy_id=strategy_id,
                attempts=existing,
                max_attempts=max_attempts,
                event_id=event.event_id,
            )
            return ReportStatus.RECOVERY_EXHAUSTED, None

        delay = existing * self.policy.base_delay
        if delay > 0:
            await asyncio.sleep(delay)

        result = await self.registry.run(strategy_id, default_timeout=self.policy.strategy_timeout)
        entry = RecoveryLogEntry.build(
            strategy_id=strategy_id,
            status=result.status.value,
            attempt=existing + 1,
            max_attempts=max_attempts,
            latency_ms=result.latency_ms,
            error=result.error,
        )

        if result.succeeded:
            self.ledger.mark_resolved(event.event_id)
            self._logger.info("recovery_succeeded", event_id=event.event_id, **entry)
            return ReportStatus.RECOVERED, result

        self._logger.warning("recovery_failed", event_id=event.event_id, **entry)
        return ReportStatus.RECOVERY_FAILED, result

    def _report(
        self,
        raw: RawFault,
        classification: Classification,
        status: ReportStatus,
        event: FaultEvent,
        snapshot: StabilitySnapshot,
        recovery_attempts: int = 0,
        related_crashes: int = 0,
    ) -> None:
        if self.sink is None:
            return
        try:
            self.sink.submit(QueuedReport(
                raw=raw,
                classification=classification,
                status=status,
                event_id=event.event_id,
                stability=snapshot,
                recovery_attempts=recovery_attempts,
                related_crashes=related_crashes,
            ))
        except SinkClosedError:
            self._logger.warning("report_discarded_sink_closed", event_id=event.event_id)

    def _crash_pattern(
        self, raw: RawFault, classification: Classification, now: float
    ) -> Tuple[int, int]:
        """
        (recovery attempts for this fingerprint, same-category faults in the
        crash pattern window). A critical fault, or either count reaching
        crash_pattern_threshold, puts the host into crash recovery mode.
        """
        record = self.attempt_record(raw)
        attempts = record.count(now, self.policy.attempt_horizon) if record else 0
        related = self.ledger.count_by_category(
            self.policy.crash_pattern_window, now
        ).get(classification.category, 0)

        threshold = self.policy.crash_pattern_threshold
        if (classification.severity is Severity.CRITICAL
                or attempts >= threshold or related >= threshold):
            self._logger.error(
                "critical_crash_pattern",
                category=classification.category.value,
                severity=classification.severity.label,
                recovery_attempts=attempts,
                related_crashes=related,
            )
            if self.flags is not None:
                self.flags.enter_crash_recovery(self.policy.crash_recovery_seconds)
        return attempts, related

    # ------------------------------------------------------------------
    # Fingerprints and attempts
    # ------------------------------------------------------------------

    def fingerprint(self, raw: RawFault) -> str:
        normalised = " ".join(f"{raw.message} {raw.stack}".split()).lower()
        return normalised[: self.policy.fingerprint_length]

    def attempt_record(self, raw: RawFault) -> Optional[RecoveryAttemptRecord]:
        with self._attempts_lock:
            return self._attempts.get(self.fingerprint(raw))

    def _prune_attempts(self, now: float) -> None:
        horizon = self.policy.attempt_horizon
        stale = []
        for key, record in self._attempts.items():
            record.prune(now, horizon)
            if not record.attempts:
                stale.append(key)
        for key in stale:
            del self._attempts[key]

    # ------------------------------------------------------------------
    # Stability and recommendations
    # ------------------------------------------------------------------

    def current_stability(self, now: Optional[float] = None) -> StabilitySnapshot:
        return self.assessor.assess(self.ledger, now)

    def _refresh_stability(self) -> StabilitySnapshot:
        snapshot = self.current_stability()
        previous = self._last_snapshot
        if snapshot != previous:
            log = self._logger.warning if snapshot.level.rank < previous.level.rank else self._logger.info
            log(
                "stability_changed",
                previous_level=previous.level.value,
                previous_mode=previous.mode.value,
                level=snapshot.level.value,
                mode=snapshot.mode.value,
            )
            self._last_snapshot = snapshot
        return snapshot

    def _cascade_for(self, component: str, now: float) -> bool:
        count = self.ledger.count_by_component(component, self.policy.cascade_window, now)
        return count >= self.policy.cascade_threshold

    def cascade_components(self, now: Optional[float] = None) -> List[str]:
        """Components currently over the cascading-failure threshold."""
        recent = self.ledger.window(self.policy.cascade_window, now)
        counts = Counter(e.component for e in recent)
        return [c for c, n in counts.items() if n >= self.policy.cascade_threshold]

    def recommended_action(self, now: Optional[float] = None) -> RecommendedAction:
        snapshot = self.current_stability(now)
        if self.cascade_components(now):
            return RecommendedAction.RESTART
        if snapshot.level is StabilityLevel.CRITICAL:
            return RecommendedAction.MINIMAL_MODE
        critical = sum(1 for e in self.ledger.events() if e.severity is Severity.CRITICAL)
        if critical >= self.policy.restart_critical_threshold:
            return RecommendedAction.RESTART
        if snapshot.level is StabilityLevel.UNSTABLE or snapshot.mode is OperatingMode.SAFE:
            return RecommendedAction.SAFE_MODE
        return RecommendedAction.CONTINUE

    # ------------------------------------------------------------------
    # Manual controls
    # ------------------------------------------------------------------

    def clear_history(self) -> None:
        """Reset ledger and attempt table; stability goes back to stable/normal."""
        self.ledger.clear()
        with self._attempts_lock:
            self._attempts.clear()
        self._last_snapshot = STABLE_NORMAL
        self._logger.info("fault_history_cleared")

    def get_statistics(self, now: Optional[float] = None) -> FaultStatistics:
        now = self._clock() if now is None else now
        events = self.ledger.events()
        recent = self.ledger.window(RECENT_WINDOW_SECONDS, now)
        latencies = [e.resolution_latency_ms for e in events
                     if e.resolved and e.resolution_latency_ms is not None]
        top = self.ledger.most_frequent_category(now=now)
        snapshot = self.current_stability(now)

        return FaultStatistics(
            total_faults=len(events),
            lifetime_faults=self.ledger.total_recorded,
            recent_faults=len(recent),
            resolved_faults=sum(1 for e in events if e.resolved),
            critical_crashes=sum(1 for e in events if e.severity is Severity.CRITICAL),
            by_category={c.value: n for c, n in self.ledger.count_by_category(now=now).items()},
            most_frequent_category=top.value if top else None,
            average_recovery_ms=round(sum(latencies) / len(latencies), 2) if latencies else 0.0,
            level=snapshot.level.value,
            mode=snapshot.mode.value,
            recommended_action=self.recommended_action(now).value,
            cascade_components=self.cascade_components(now),
            queued_reports=self.sink.queue_size if self.sink else 0,
            dropped_reports=self.sink.dropped_reports if self.sink else 0,
            processed_reports=self.sink.processed_reports if self.sink else 0,
        )
