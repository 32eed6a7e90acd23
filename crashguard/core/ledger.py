# ============================================================================
# crashguard -- Fault Ledger (crashguard/core/ledger.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   The engine's short-term memory. Every classified fault becomes one
#   FaultEvent appended here, and the stability assessor, the cascading
#   failure guard and get_statistics() all read from it.
#
# HOW IT WORKS:
#   - Circular buffer (deque with maxlen): when full, the OLDEST event
#     falls off. O(1) append, no unbounded growth.
#   - Events are never deleted one by one; the only mutation after append
#     is mark_resolved(), which flips resolved=True once.
#   - Every query is a linear scan over at most `capacity` events with a
#     caller-chosen recency window (10 minutes for stability, 24 hours for
#     statistics). With capacity ~100 that is cheaper than any index.
#   - Thread-safe: ingress hooks can fire on any thread.
# ============================================================================

from __future__ import annotations

import threading
import time
import uuid
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional

from crashguard.core.signatures import FaultAction, FaultCategory, Severity


DEFAULT_CAPACITY = 100


@dataclass
class FaultEvent:
    """
    One classified fault, as remembered by the ledger.

    timestamp:             time.time() when the fault was classified
    category / severity:   from the Classification
    component:             originating component or context label
    action:                the signature action that was applied
    source:                FaultSource value of the raw fault
    signature:             matched signature name (None if unmatched)
    resolved:              True once a recovery strategy succeeded
    resolution_latency_ms: time from fault to successful recovery
    """
    timestamp: float
    category: FaultCategory
    severity: Severity
    component: str = "unknown"
    action: FaultAction = FaultAction.LOG
    source: str = "other"
    signature: Optional[str] = None
    resolved: bool = False
    resolution_latency_ms: Optional[float] = None
    event_id: str = field(default_factory=lambda: f"fault_{uuid.uuid4().hex[:12]}")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary for JSON serialization."""
        data = asdict(self)
        data["category"] = self.category.value
        data["severity"] = self.severity.label
        data["action"] = self.action.value
        return data


class FaultLedger:
    """
    Bounded, append-only log of FaultEvents with rolling aggregates.

    Usage:
        ledger = FaultLedger(capacity=100)
        ledger.record(event)
        recent = ledger.window(600)             # last 10 minutes
        counts = ledger.count_by_category(86400)
        top = ledger.most_frequent_category()
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        clock: Callable[[], float] = time.time,
    ):
        if capacity < 1:
            raise ValueError("ledger capacity must be >= 1")
        self._buffer: deque = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._clock = clock
        self._total_recorded = 0

    @property
    def capacity(self) -> int:
        return self._buffer.maxlen

    @property
    def size(self) -> int:
        """Current number of events in the buffer."""
        return len(self._buffer)

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def total_recorded(self) -> int:
        """Events ever recorded, including the ones evicted since."""
        return self._total_recorded

    def record(self, event: FaultEvent) -> FaultEvent:
        with self._lock:
            self._buffer.append(event)
            self._total_recorded += 1
        return event

    def events(self) -> List[FaultEvent]:
        """Snapshot of all retained events, oldest first."""
        with self._lock:
            return list(self._buffer)

    def window(self, seconds: Optional[float], now: Optional[float] = None) -> List[FaultEvent]:
        """
        Events no older than ``seconds`` (oldest first).

        seconds=None means the whole buffer.
        """
        if seconds is None:
            return self.events()
        now = self._clock() if now is None else now
        cutoff = now - seconds
        with self._lock:
            return [e for e in self._buffer if e.timestamp >= cutoff]

    def count_by_category(
        self, seconds: Optional[float] = None, now: Optional[float] = None
    ) -> Dict[FaultCategory, int]:
        return dict(Counter(e.category for e in self.window(seconds, now)))

    def count_by_component(
        self, component: str, seconds: Optional[float] = None, now: Optional[float] = None
    ) -> int:
        return sum(1 for e in self.window(seconds, now) if e.component == component)

    def most_frequent_category(
        self, seconds: Optional[float] = None, now: Optional[float] = None
    ) -> Optional[FaultCategory]:
        """
        Category with the most events in the window, or None when empty.

        Ties go to the category seen first, so the answer is stable for a
        given buffer.
        """
        counts = Counter(e.category for e in self.window(seconds, now))
        if not counts:
            return None
        return counts.most_common(1)[0][0]

    def mark_resolved(self, event_id: str, latency_ms: Optional[float] = None) -> bool:
        """
        Flip an event to resolved and record the recovery latency.

        Returns False if the event was already evicted or already resolved.
        """
        with self._lock:
            for event in self._buffer:
                if event.event_id == event_id:
                    if event.resolved:
                        return False
                    event.resolved = True
                    if latency_ms is None:
                        latency_ms = (self._clock() - event.timestamp) * 1000.0
                    event.resolution_latency_ms = round(max(latency_ms, 0.0), 2)
                    return True
        return False

    def clear(self) -> None:
        """Drop every event. Used by the manual reset control and tests."""
        with self._lock:
            self._buffer.clear()
            self._total_recorded = 0
