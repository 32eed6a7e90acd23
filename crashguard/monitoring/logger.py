# ============================================================================
# crashguard -- Structured Logger (crashguard/monitoring/logger.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   One place that decides how crashguard writes logs. Every classification,
#   recovery attempt and delivered report becomes a single JSON line, so a
#   crash storm can be replayed afterwards with jq instead of by reading
#   free text.
#
# LOG FILE TYPES:
#   - app_YYYY-MM-DD.log:   engine lifecycle, ingress install/uninstall
#   - fault_YYYY-MM-DD.log: classified faults, recovery outcomes, reports
#
# HOW TO USE (from other code):
#   from crashguard.monitoring.logger import get_fault_logger
#   log = get_fault_logger("crashguard.orchestrator")
#   log.warning("recovery_failed", strategy_id="locale_fallback", attempt=2)
#
#   Event names are snake_case; everything else goes in key=value fields.
#
# DEPENDENCIES:
#   - structlog: structured logging that renders JSON
#   - Python's built-in logging module (structlog routes through it, so
#     file handlers and levels are plain logging objects)
# ============================================================================

import sys
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import structlog


LOG_TYPES = ("app", "fault")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _processor_chain() -> List[Any]:
    """structlog processors, applied in order to every event dict."""
    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(sort_keys=True),
    ]


# ============================================================================
# LOGGER CONFIGURATION
# ============================================================================

class LoggerSetup:
    """
    Owns the log directory and the per-logger file handlers.

    structlog is configured once per process. File handlers are attached
    lazily, one per (logger name, log type), because engines are built
    and torn down many times in a test run.
    """

    def __init__(self, log_dir: str = "logs", console_level: int = logging.WARNING):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.console_level = console_level
        self._attached: Dict[str, logging.Handler] = {}
        self._ready = False

    def setup(self) -> None:
        if self._ready:
            return

        # Console gets warnings and up; files get everything
        logging.basicConfig(
            format="%(message)s",
            stream=sys.stderr,
            level=self.console_level,
        )
        structlog.configure(
            processors=_processor_chain(),
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            wrapper_class=structlog.stdlib.BoundLogger,
            cache_logger_on_first_use=True,
        )
        self._ready = True

    def log_path(self, log_type: str) -> Path:
        return self.log_dir / f"{log_type}_{datetime.now():%Y-%m-%d}.log"

    def get_logger(self, name: str) -> structlog.stdlib.BoundLogger:
        self.setup()
        return structlog.get_logger(name)

    def get_file_logger(self, name: str, log_type: str = "app") -> structlog.stdlib.BoundLogger:
        """Logger whose records also land in <log_type>_YYYY-MM-DD.log."""
        if log_type not in LOG_TYPES:
            raise ValueError(f"log_type must be one of {LOG_TYPES}, got {log_type!r}")
        self.setup()

        key = f"{name}:{log_type}"
        if key not in self._attached:
            handler = logging.FileHandler(self.log_path(log_type), encoding="utf-8")
            handler.setFormatter(logging.Formatter("%(message)s"))
            stdlib_logger = logging.getLogger(name)
            stdlib_logger.addHandler(handler)
            stdlib_logger.setLevel(logging.DEBUG)
            self._attached[key] = handler

        return structlog.get_logger(name)


# ============================================================================
# MODULE-LEVEL SETUP
# ============================================================================

_logger_setup: Optional[LoggerSetup] = None


def initialize_logging(log_dir: str = "logs") -> LoggerSetup:
    """
    First call wins: later calls (a second engine, a test helper) reuse the
    existing setup and its log directory.
    """
    global _logger_setup
    if _logger_setup is None:
        _logger_setup = LoggerSetup(log_dir)
        _logger_setup.setup()
    return _logger_setup


def _current_setup() -> LoggerSetup:
    return _logger_setup if _logger_setup is not None else initialize_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return _current_setup().get_logger(name)


def get_app_logger(name: str = "app") -> structlog.stdlib.BoundLogger:
    """Lifecycle logger (app_YYYY-MM-DD.log)."""
    return _current_setup().get_file_logger(name, "app")


def get_fault_logger(name: str = "fault") -> structlog.stdlib.BoundLogger:
    """Fault pipeline logger (fault_YYYY-MM-DD.log)."""
    return _current_setup().get_file_logger(name, "fault")


# ============================================================================
# LOG ENTRY BUILDERS
# ============================================================================
# The orchestrator logs the same shapes from several branches. Building
# the dicts here keeps the field names identical across events, which is
# what makes `jq 'select(.category=="locale")'` work on the fault log.
# ============================================================================

class FaultLogEntry:

    @staticmethod
    def build(
        event_id: str,
        category: str,
        severity: str,
        action: str,
        component: str,
        source: str,
        signature: Optional[str] = None,
        escalated: bool = False,
    ) -> Dict[str, Any]:
        return {
            "event_id": event_id,
            "category": category,
            "severity": severity,
            "action": action,
            "component": component,
            "source": source,
            "signature": signature,
            "escalated": escalated,
            "observed_at": _now_iso(),
        }


class RecoveryLogEntry:
    """One recovery attempt: which strategy, which try, how it went."""

    @staticmethod
    def build(
        strategy_id: str,
        status: str,
        attempt: int,
        max_attempts: int,
        latency_ms: float,
        error: Optional[str] = None,
    ) -> Dict[str, Any]:
        entry = {
            "strategy_id": strategy_id,
            "status": status,
            "attempt": f"{attempt}/{max_attempts}",
            "latency_ms": round(latency_ms, 2),
            "observed_at": _now_iso(),
        }
        if error:
            entry["error"] = error
        return entry
