# ============================================================================
# crashguard -- Fault Engine (crashguard/core/engine.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   Wires every piece together so the rest of the app deals with ONE
#   object:
#
#     catalog -> classifier -> orchestrator -> reporting sink
#                     ledger + assessor + strategies + runtime flags
#                     feature gate (reads the same ledger)
#                     ingress hooks (feed the pipeline)
#
#   Nothing here makes decisions; it only builds the components from a
#   Config and forwards calls.
#
# USAGE:
#   from crashguard.core.config import load_config
#   from crashguard.core.engine import init_engine
#
#   engine = init_engine(load_config("."))
#   engine.install_hooks()                        # sys + threading
#   engine.add_handler(send_to_telemetry)
#
#   try:
#       risky()
#   except Exception as e:
#       engine.report_exception(e, component="settings_screen")
#
#   if engine.is_allowed("voice_recognition"):
#       start_listening()
#
# SYNC vs ASYNC:
#   process(raw) is a coroutine. report_exception()/dispatch() are plain
#   functions: with no event loop running in the calling thread they run
#   the pipeline to completion with asyncio.run(); inside a running loop
#   they schedule a task and return None.
# ============================================================================

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Callable, Dict, Optional, Set

from crashguard.core.classifier import FaultClassifier, FaultSource, RawFault
from crashguard.core.config import Config
from crashguard.core.exceptions import StrategyNotRegisteredError
from crashguard.core.feature_gate import FeatureGate, rules_from_config
from crashguard.core.ingress import DiagnosticLogHandler, FaultIngress, component_of
from crashguard.core.ledger import FaultLedger
from crashguard.core.orchestrator import HandleResult, RecommendedAction, RecoveryOrchestrator
from crashguard.core.runtime_flags import RuntimeFlags
from crashguard.core.signatures import SignatureCatalog, default_catalog
from crashguard.core.stability import StabilitySnapshot
from crashguard.core.strategies import StrategyRegistry, register_default_strategies
from crashguard.monitoring.logger import get_app_logger, initialize_logging
from crashguard.monitoring.reporting import ReportHandler, ReportingSink, RuntimeContextCollector


class FaultEngine:
    """
    The single entry point for fault handling in a process.

    Args:
        config:             Config (defaults if None)
        registry:           StrategyRegistry with app-specific strategies;
                            built-in flag-setting strategies fill the gaps
        flags:              RuntimeFlags shared with the rest of the app
        catalog:            SignatureCatalog (built-in if None)
        clock:              time source (tests pass a fake)
        register_defaults:  add the built-in strategies for missing ids
        strict_strategies:  raise at startup when a RECOVER signature names
                            a strategy nobody registered
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        registry: Optional[StrategyRegistry] = None,
        flags: Optional[RuntimeFlags] = None,
        catalog: Optional[SignatureCatalog] = None,
        clock: Callable[[], float] = time.time,
        register_defaults: bool = True,
        strict_strategies: bool = True,
    ):
        self.config = config if config is not None else Config()
        initialize_logging(self.config.logging.log_dir)
        self._logger = get_app_logger("crashguard.engine")
        self._clock = clock

        self.flags = flags if flags is not None else RuntimeFlags(clock=clock)
        self.catalog = catalog if catalog is not None else default_catalog()
        self.registry = registry if registry is not None else StrategyRegistry()
        if register_defaults:
            register_default_strategies(self.registry, self.flags)

        if strict_strategies:
            for signature in self.catalog:
                strategy_id = signature.recovery_strategy_id
                if strategy_id and strategy_id not in self.registry:
                    raise StrategyNotRegisteredError(strategy_id, signature=signature.name)

        self.classifier = FaultClassifier(self.catalog)
        self.ledger = FaultLedger(capacity=self.config.ledger.capacity, clock=clock)
        self.assessor = self.config.stability.build_assessor()

        reporting = self.config.reporting
        context = None
        if reporting.enrich_context:
            context = RuntimeContextCollector(self.flags, clock=clock).collect
        self.sink = ReportingSink(
            max_queue=reporting.max_queue,
            context_provider=context,
            clock=clock,
        )
        if reporting.start_worker:
            self.sink.start()

        self.orchestrator = RecoveryOrchestrator(
            classifier=self.classifier,
            ledger=self.ledger,
            assessor=self.assessor,
            registry=self.registry,
            sink=self.sink,
            flags=self.flags,
            policy=self.config.recovery,
            clock=clock,
        )
        self.gate = FeatureGate(
            rules=rules_from_config(self.config.features.rules),
            snapshot_source=self.orchestrator.current_stability,
        )
        self.ingress = FaultIngress(self.dispatch, self.process)
        self._pending: Set[asyncio.Task] = set()

        self._logger.info(
            "fault_engine_initialized",
            signatures=len(self.catalog),
            strategies=self.registry.ids(),
            ledger_capacity=self.ledger.capacity,
            worker=self.sink.running,
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def process(self, raw: RawFault) -> HandleResult:
        return await self.orchestrator.process(raw)

    def dispatch(self, raw: RawFault) -> Optional[HandleResult]:
        """Run the pipeline from synchronous code (see SYNC vs ASYNC above)."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        if loop is None:
            return asyncio.run(self.orchestrator.process(raw))

        task = loop.create_task(self.orchestrator.process(raw))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return None

    def report_exception(
        self,
        exc: BaseException,
        component: Optional[str] = None,
        fatal: bool = False,
        source: FaultSource = FaultSource.SYNCHRONOUS_EXCEPTION,
    ) -> Optional[HandleResult]:
        """Classify and handle a caught exception."""
        raw = RawFault.from_exception(
            exc,
            source=source,
            fatal=fatal,
            component=component or component_of(exc.__traceback__),
            timestamp=self._clock(),
        )
        return self.dispatch(raw)

    # ------------------------------------------------------------------
    # Ingress
    # ------------------------------------------------------------------

    def install_hooks(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> FaultIngress:
        self.ingress.install()
        if loop is not None:
            self.ingress.install_asyncio(loop)
        return self.ingress

    def log_handler(self) -> DiagnosticLogHandler:
        """A logging.Handler that turns crash-signature log lines into faults."""
        return DiagnosticLogHandler(self.catalog, self.dispatch)

    # ------------------------------------------------------------------
    # Queries and controls
    # ------------------------------------------------------------------

    def is_allowed(self, feature: str) -> bool:
        return self.gate.is_allowed(feature)

    def current_stability(self) -> StabilitySnapshot:
        return self.orchestrator.current_stability()

    def recommended_action(self) -> RecommendedAction:
        return self.orchestrator.recommended_action()

    def add_handler(self, handler: ReportHandler) -> None:
        self.sink.add_handler(handler)

    def remove_handler(self, handler: ReportHandler) -> bool:
        return self.sink.remove_handler(handler)

    def clear_history(self) -> None:
        self.orchestrator.clear_history()

    def get_statistics(self) -> Dict[str, Any]:
        return self.orchestrator.get_statistics().to_dict()

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self.sink.flush(timeout)

    def shutdown(self, timeout: float = 5.0) -> None:
        """Restore hooks and deliver any queued reports."""
        self.ingress.uninstall()
        self.sink.close(timeout)
        self._logger.info(
            "fault_engine_shutdown",
            processed_reports=self.sink.processed_reports,
            dropped_reports=self.sink.dropped_reports,
        )


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

_engine: Optional[FaultEngine] = None
_engine_lock = threading.Lock()


def init_engine(config: Optional[Config] = None, **kwargs) -> FaultEngine:
    """
    Initialize the global fault engine (call once at startup).

    A previously initialized engine is shut down first so its hooks and
    worker thread do not linger.
    """
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.shutdown()
        _engine = FaultEngine(config, **kwargs)
    return _engine


def get_engine() -> Optional[FaultEngine]:
    """The global engine, or None if init_engine() was never called."""
    return _engine


def shutdown_engine() -> None:
    global _engine
    with _engine_lock:
        if _engine is not None:
            _engine.shutdown()
            _engine = None


def report_exception(exc: BaseException, **kwargs) -> Optional[HandleResult]:
    """
    Report to the global engine; no-op before init_engine().

        from crashguard.core.engine import report_exception
        report_exception(e, component="player")
    """
    if _engine is not None:
        return _engine.report_exception(exc, **kwargs)
    return None
