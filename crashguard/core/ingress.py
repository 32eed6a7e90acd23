# ============================================================================
# crashguard -- Fault Ingress Adapters (crashguard/core/ingress.py)
# ============================================================================
#
# WHAT THIS FILE DOES (plain English):
#   Plugs the fault pipeline into the places Python reports failures:
#
#     sys.excepthook            uncaught exception on the main thread
#     threading.excepthook      uncaught exception in any other thread
#     loop exception handler    asyncio task failed and nobody awaited it
#                               (the Python equivalent of an unhandled
#                               promise rejection)
#     DiagnosticLogHandler      a log line that matches a native crash
#                               signature (console interception)
#
#   Each adapter turns what it receives into a RawFault, runs it through
#   the pipeline, and only calls the PREVIOUS handler when the pipeline
#   says the fault should propagate. Absorbed faults stop here.
#
# SAFETY RULES:
#   - If the pipeline itself blows up, the fault goes to the previous
#     handler unchanged. crashguard must never hide a crash it failed to
#     process.
#   - KeyboardInterrupt / SystemExit are never classified.
#   - uninstall() puts every original hook back.
#   - The log handler ignores crashguard's own loggers (reports quote
#     crash text and would otherwise feed themselves back in).
# ============================================================================

from __future__ import annotations

import asyncio
import logging
import sys
import threading
from types import TracebackType
from typing import Any, Callable, Dict, Optional, Set

from crashguard.core.classifier import FaultSource, RawFault
from crashguard.core.exceptions import IngressAlreadyInstalledError
from crashguard.core.signatures import SignatureCatalog
from crashguard.monitoring.logger import get_app_logger

# Returns the HandleResult, or None when the fault was scheduled on a
# running loop and its outcome is not known yet.
Dispatcher = Callable[[RawFault], Optional[Any]]
AsyncDispatcher = Callable[[RawFault], Any]

_NEVER_CLASSIFY = (KeyboardInterrupt, SystemExit)


def component_of(tb: Optional[TracebackType], default: str = "unknown") -> str:
    """Module name of the innermost traceback frame."""
    if tb is None:
        return default
    while tb.tb_next is not None:
        tb = tb.tb_next
    return tb.tb_frame.f_globals.get("__name__", default) or default


def _propagates(result: Optional[Any]) -> bool:
    # Unknown outcome (scheduled) counts as "not absorbed yet"
    return result is None or getattr(result, "propagated", True)


class FaultIngress:
    """
    Installs and removes the process-level hooks.

    Usage:
        ingress = FaultIngress(engine.dispatch, engine.process)
        ingress.install()                      # sys + threading hooks
        ingress.install_asyncio(loop)          # per event loop
        ...
        ingress.uninstall()
    """

    def __init__(self, dispatch: Dispatcher, process: Optional[AsyncDispatcher] = None):
        self._dispatch = dispatch
        self._process = process
        self._prev_sys_hook = None
        self._prev_thread_hook = None
        self._loops: Dict[asyncio.AbstractEventLoop, Optional[Callable]] = {}
        self._tasks: Set[asyncio.Task] = set()
        self._installed = False
        self._lock = threading.Lock()
        self._logger = get_app_logger("crashguard.ingress")

    @property
    def installed(self) -> bool:
        return self._installed

    # ------------------------------------------------------------------
    # sys / threading hooks
    # ------------------------------------------------------------------

    def install(self) -> None:
        with self._lock:
            if self._installed:
                raise IngressAlreadyInstalledError("sys.excepthook")
            self._prev_sys_hook = sys.excepthook
            self._prev_thread_hook = threading.excepthook
            sys.excepthook = self._sys_hook
            threading.excepthook = self._thread_hook
            self._installed = True
        self._logger.info("ingress_installed", hooks=["sys.excepthook", "threading.excepthook"])

    def uninstall(self) -> None:
        with self._lock:
            if self._installed:
                sys.excepthook = self._prev_sys_hook
                threading.excepthook = self._prev_thread_hook
                self._prev_sys_hook = None
                self._prev_thread_hook = None
                self._installed = False
            loops = list(self._loops.items())
            self._loops.clear()
        for loop, previous in loops:
            if not loop.is_closed():
                loop.set_exception_handler(previous)
        self._logger.info("ingress_uninstalled")

    def _run(self, raw: RawFault) -> bool:
        """Dispatch and report whether the host should see the fault."""
        try:
            return _propagates(self._dispatch(raw))
        except Exception as e:
            self._logger.error(
                "ingress_pipeline_failed",
                source=raw.source.value,
                error=f"{type(e).__name__}: {e}",
            )
            return True

    def _sys_hook(self, exc_type, exc, tb) -> None:
        previous = self._prev_sys_hook or sys.__excepthook__
        if exc is None or isinstance(exc, _NEVER_CLASSIFY):
            previous(exc_type, exc, tb)
            return
        raw = RawFault.from_exception(
            exc,
            source=FaultSource.SYNCHRONOUS_EXCEPTION,
            fatal=True,
            component=component_of(tb),
        )
        if self._run(raw):
            previous(exc_type, exc, tb)

    def _thread_hook(self, args) -> None:
        previous = self._prev_thread_hook or threading.__excepthook__
        exc = args.exc_value
        if exc is None or isinstance(exc, _NEVER_CLASSIFY):
            previous(args)
            return
        thread_name = args.thread.name if args.thread is not None else "thread"
        raw = RawFault.from_exception(
            exc,
            source=FaultSource.SYNCHRONOUS_EXCEPTION,
            fatal=False,
            component=component_of(args.exc_traceback, default=thread_name),
        )
        if self._run(raw):
            previous(args)

    # ------------------------------------------------------------------
    # asyncio
    # ------------------------------------------------------------------

    def install_asyncio(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Wrap the loop's exception handler. Call from inside the loop or pass it."""
        loop = loop or asyncio.get_running_loop()
        with self._lock:
            if loop in self._loops:
                raise IngressAlreadyInstalledError("asyncio exception handler")
            self._loops[loop] = loop.get_exception_handler()
        loop.set_exception_handler(self._loop_handler)

    def uninstall_asyncio(self, loop: asyncio.AbstractEventLoop) -> None:
        with self._lock:
            if loop not in self._loops:
                return
            previous = self._loops.pop(loop)
        loop.set_exception_handler(previous)

    def _chain_loop(self, loop, context: Dict[str, Any]) -> None:
        previous = self._loops.get(loop)
        if previous is not None:
            previous(loop, context)
        else:
            loop.default_exception_handler(context)

    def _loop_handler(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        exc = context.get("exception")
        if isinstance(exc, _NEVER_CLASSIFY):
            self._chain_loop(loop, context)
            return

        if exc is not None:
            raw = RawFault.from_exception(
                exc,
                source=FaultSource.PROMISE_REJECTION,
                component=component_of(exc.__traceback__),
            )
        else:
            raw = RawFault(
                message=str(context.get("message") or "unhandled asyncio error"),
                source=FaultSource.PROMISE_REJECTION,
            )

        # Task.__del__ reports unretrieved exceptions during garbage
        # collection, often after run_until_complete() has returned. A task
        # created then would never run, so a stopped loop is handled inline.
        if self._process is None or not loop.is_running():
            if self._run(raw):
                self._chain_loop(loop, context)
            return

        async def _handle() -> None:
            try:
                result = await self._process(raw)
            except Exception as e:
                self._logger.error(
                    "ingress_pipeline_failed",
                    source=raw.source.value,
                    error=f"{type(e).__name__}: {e}",
                )
                result = None
            if _propagates(result):
                self._chain_loop(loop, context)

        task = loop.create_task(_handle())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class DiagnosticLogHandler(logging.Handler):
    """
    logging.Handler that feeds crash-signature log lines into the pipeline.

    Attach it to whatever logger receives native/bridge console output:

        handler = DiagnosticLogHandler(engine.catalog, engine.dispatch)
        logging.getLogger("bridge").addHandler(handler)

    Only signatures flagged scan_logs are checked, so ordinary log noise
    ("audio started") never becomes a fault.
    """

    IGNORED_PREFIXES = ("crashguard",)

    def __init__(self, catalog: SignatureCatalog, dispatch: Dispatcher, level=logging.NOTSET):
        super().__init__(level)
        self.catalog = catalog
        self._dispatch = dispatch
        self._local = threading.local()

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(self.IGNORED_PREFIXES):
            return
        if getattr(self._local, "busy", False):
            return
        try:
            text = record.getMessage()
            if record.exc_text:
                text = f"{text}\n{record.exc_text}"
            if not self.catalog.matches_log_line(text):
                return
            self._local.busy = True
            try:
                self._dispatch(RawFault(
                    message=text[:1000],
                    stack="",
                    source=FaultSource.BRIDGE_LOG,
                    component=record.name,
                ))
            finally:
                self._local.busy = False
        except Exception:
            self.handleError(record)
