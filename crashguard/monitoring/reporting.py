# ============================================================================
# crashguard -- Fault Reporting Sink (crashguard/monitoring/reporting.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   The outbox for fault reports. The orchestrator drops a report in; a
#   single consumer takes them out one at a time, oldest first, and hands
#   each to every registered handler (telemetry backend, analytics, a test
#   spy...).
#
# GUARANTEES:
#   - submit() never blocks on handlers: it enriches the report, appends it
#     to a queue and returns.
#   - FIFO, one report at a time, never reordered. Only one consumer can
#     drain at any moment (worker thread OR an inline drain(), never both).
#   - A handler that raises is logged and skipped; the next handler and
#     the next report still run.
#   - The queue is bounded (default 100). On overflow the OLDEST report is
#     dropped and counted, so the sink itself can never leak memory.
#
# ENRICHMENT:
#   Before a report is considered submitted it gets a device/runtime
#   context: platform, python version, process memory (psutil), locale,
#   the RuntimeFlags state and how long the session has been running.
# ============================================================================

from __future__ import annotations

import locale
import os
import platform
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import psutil

from crashguard.core.classifier import Classification, RawFault
from crashguard.core.exceptions import SinkClosedError
from crashguard.core.runtime_flags import RuntimeFlags
from crashguard.core.signatures import Severity
from crashguard.core.stability import StabilitySnapshot
from crashguard.monitoring.logger import get_fault_logger


DEFAULT_MAX_QUEUE = 100


class ReportStatus(str, Enum):
    """Why a report was sent. Mirrors the orchestrator's branch."""
    LOGGED = "logged"
    RECOVERED = "recovered"
    RECOVERY_FAILED = "recovery_failed"
    RECOVERY_EXHAUSTED = "recovery_exhausted"
    ESCALATED = "escalated"
    UNHANDLED = "unhandled"


@dataclass
class QueuedReport:
    """A fully enriched fault payload waiting for the consumer."""
    raw: RawFault
    classification: Classification
    status: ReportStatus
    event_id: Optional[str] = None
    stability: Optional[StabilitySnapshot] = None
    context: Dict[str, Any] = field(default_factory=dict)
    submitted_at: float = 0.0
    sequence: int = 0
    recovery_attempts: int = 0
    related_crashes: int = 0

    @property
    def severity(self) -> Severity:
        return self.classification.severity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "event_id": self.event_id,
            "status": self.status.value,
            "message": self.raw.message,
            "stack": self.raw.stack,
            "source": self.raw.source.value,
            "fatal": self.raw.fatal,
            "component": self.raw.component,
            "exception_type": self.raw.exception_type,
            "category": self.classification.category.value,
            "severity": self.classification.severity.label,
            "signature": self.classification.signature_name,
            "escalated": self.classification.escalated,
            "recovery_attempts": self.recovery_attempts,
            "related_crashes": self.related_crashes,
            "stability": self.stability.to_dict() if self.stability else None,
            "context": self.context,
            "submitted_at": self.submitted_at,
        }


ReportHandler = Callable[[QueuedReport], None]


# ============================================================================
# RUNTIME CONTEXT
# ============================================================================

def memory_trend(percent: float) -> str:
    """System memory usage bucket used in reports."""
    if percent > 90:
        return "critical_high"
    if percent > 70:
        return "high"
    if percent > 50:
        return "medium"
    return "normal"


class RuntimeContextCollector:
    """
    Gathers the device/runtime half of every report.

    Each lookup is wrapped so a failing lookup turns into "unknown" instead of
    losing the report.
    """

    def __init__(self, flags: Optional[RuntimeFlags] = None, clock: Callable[[], float] = time.time):
        self.flags = flags
        self._clock = clock
        self._session_start = clock()

    def collect(self) -> Dict[str, Any]:
        context: Dict[str, Any] = {
            "platform": platform.system() or "unknown",
            "platform_release": platform.release(),
            "python_version": platform.python_version(),
            "pid": os.getpid(),
            "session_duration_s": round(self._clock() - self._session_start, 3),
        }
        context.update(self._memory())
        context["locale"] = self._locale()
        if self.flags is not None:
            context["resilience_mode"] = self.flags.resilience_mode
            context["bridge_state"] = self.flags.bridge_state
            context["safe_locale"] = self.flags.safe_locale
            context["crash_recovering"] = self.flags.crash_recovering
        return context

    @staticmethod
    def _memory() -> Dict[str, Any]:
        try:
            rss_mb = psutil.Process(os.getpid()).memory_info().rss / (1024 * 1024)
            percent = psutil.virtual_memory().percent
        except (psutil.Error, OSError):
            return {"memory_rss_mb": None, "memory_trend": "unknown"}
        return {
            "memory_rss_mb": round(rss_mb, 1),
            "memory_percent": percent,
            "memory_trend": memory_trend(percent),
        }

    @staticmethod
    def _locale() -> str:
        try:
            lang, encoding = locale.getlocale()
        except ValueError:
            return "unknown"
        if not lang:
            return "C"
        return f"{lang}.{encoding}" if encoding else lang


# ============================================================================
# REPORTING SINK
# ============================================================================

class ReportingSink:
    """
    Ordered, single-consumer, bounded fault report queue.

    Usage:
        sink = ReportingSink(max_queue=100)
        sink.add_handler(send_to_telemetry)
        sink.start()                 # background consumer thread
        sink.submit(report)          # returns immediately
        sink.flush(timeout=2.0)      # wait until delivered
        sink.close()

    Without start(), call drain() to deliver inline (handy in tests).
    """

    def __init__(
        self,
        max_queue: int = DEFAULT_MAX_QUEUE,
        context_provider: Optional[Callable[[], Dict[str, Any]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        if max_queue < 1:
            raise ValueError("max_queue must be >= 1")
        self._queue: deque = deque(maxlen=max_queue)
        self._cond = threading.Condition()
        self._drain_lock = threading.Lock()
        self._handlers: List[ReportHandler] = []
        self._handlers_lock = threading.Lock()
        self._context_provider = context_provider
        self._clock = clock
        self._worker: Optional[threading.Thread] = None
        self._stopping = False
        self._closed = False
        self._in_flight = 0
        self._sequence = 0
        self._dropped = 0
        self._processed = 0
        self._handler_failures = 0
        self._logger = get_fault_logger("crashguard.reporting")

    # -- handler registration ------------------------------------------------

    def add_handler(self, handler: ReportHandler) -> None:
        with self._handlers_lock:
            if handler not in self._handlers:
                self._handlers.append(handler)

    def remove_handler(self, handler: ReportHandler) -> bool:
        with self._handlers_lock:
            try:
                self._handlers.remove(handler)
            except ValueError:
                return False
        return True

    @property
    def handler_count(self) -> int:
        with self._handlers_lock:
            return len(self._handlers)

    # -- producer side -------------------------------------------------------

    def submit(self, report: QueuedReport) -> QueuedReport:
        """
        Enrich and enqueue. Returns the enriched report.

        Enrichment happens here, on the caller's thread, so a report is
        fully built before it takes its place in the FIFO.
        """
        if self._closed:
            raise SinkClosedError()

        context = dict(report.context)
        if self._context_provider is not None:
            try:
                collected = self._context_provider()
            except Exception as e:
                collected = {"context_error": f"{type(e).__name__}: {e}"}
            for key, value in collected.items():
                context.setdefault(key, value)

        with self._cond:
            if self._closed:
                raise SinkClosedError()
            self._sequence += 1
            enriched = replace(
                report,
                context=context,
                submitted_at=self._clock(),
                sequence=self._sequence,
            )
            if len(self._queue) == self._queue.maxlen:
                self._dropped += 1
                dropped = self._queue[0]
                self._logger.warning(
                    "report_dropped_queue_full",
                    dropped_sequence=dropped.sequence,
                    queue_size=len(self._queue),
                )
            self._queue.append(enriched)
            self._cond.notify_all()
        return enriched

    # -- consumer side -------------------------------------------------------

    def start(self) -> None:
        """Start the background consumer thread (idempotent)."""
        if self._closed:
            raise SinkClosedError()
        if self._worker is not None and self._worker.is_alive():
            return
        self._stopping = False
        self._worker = threading.Thread(
            target=self._run, name="crashguard-report-sink", daemon=True,
        )
        self._worker.start()

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._cond.wait()
                if self._stopping and not self._queue:
                    return
            self.drain()

    def drain(self, timeout: Optional[float] = None) -> int:
        """
        Deliver every queued report, oldest first. Returns how many were
        delivered. Safe to call from any thread; only one drain runs at once.

        timeout bounds the wait for another consumer to finish; when it
        expires nothing is delivered and 0 is returned.
        """
        delivered = 0
        if timeout is None:
            acquired = self._drain_lock.acquire()
        elif timeout <= 0:
            acquired = self._drain_lock.acquire(blocking=False)
        else:
            acquired = self._drain_lock.acquire(timeout=timeout)
        if not acquired:
            return 0
        try:
            while True:
                with self._cond:
                    if not self._queue:
                        break
                    report = self._queue.popleft()
                    self._in_flight += 1
                try:
                    self._deliver(report)
                    delivered += 1
                finally:
                    with self._cond:
                        self._in_flight -= 1
                        self._processed += 1
                        self._cond.notify_all()
        finally:
            self._drain_lock.release()
        return delivered

    def _deliver(self, report: QueuedReport) -> None:
        self._log_report(report)

        with self._handlers_lock:
            handlers = list(self._handlers)

        for handler in handlers:
            try:
                callback = getattr(handler, "on_report", handler)
                callback(report)
            except Exception as e:
                self._handler_failures += 1
                self._logger.error(
                    "report_handler_failed",
                    handler=getattr(handler, "__name__", type(handler).__name__),
                    sequence=report.sequence,
                    error=f"{type(e).__name__}: {e}",
                )

    def _log_report(self, report: QueuedReport) -> None:
        fields = dict(
            sequence=report.sequence,
            status=report.status.value,
            category=report.classification.category.value,
            severity=report.severity.label,
            signature=report.classification.signature_name,
            component=report.raw.component,
            message=report.raw.message[:200],
        )
        if report.severity is Severity.CRITICAL:
            self._logger.error("critical_fault_report", **fields)
        elif report.severity is Severity.HIGH:
            self._logger.error("high_severity_fault_report", **fields)
        else:
            self._logger.warning("fault_report", **fields)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the queue is empty and nothing is in flight.

        Drains inline when no worker is running. Returns False on timeout.
        """
        if not self.running:
            self.drain()
            return True

        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._queue or self._in_flight:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._cond.wait(remaining)
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """
        Refuse new reports, stop the worker, deliver what is queued.

        timeout bounds the whole call (worker join plus final drain). A
        handler still running past it keeps its thread; reports it has not
        reached stay queued and are counted in the close log entry.
        """
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._stopping = True
            self._cond.notify_all()

        deadline = None if timeout is None else time.monotonic() + timeout
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        remaining = None if deadline is None else deadline - time.monotonic()
        self.drain(remaining)

        undelivered = self.queue_size
        if undelivered:
            self._logger.warning("report_sink_closed_with_pending", undelivered=undelivered)

    # -- introspection -------------------------------------------------------

    @property
    def queue_size(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def dropped_reports(self) -> int:
        return self._dropped

    @property
    def processed_reports(self) -> int:
        return self._processed

    @property
    def handler_failures(self) -> int:
        return self._handler_failures

    @property
    def closed(self) -> bool:
        return self._closed
