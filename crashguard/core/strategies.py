# ============================================================================
# crashguard -- Recovery Strategies (crashguard/core/strategies.py)
# ============================================================================
#
# WHAT THIS FILE DOES:
#   1. StrategyRegistry: maps a recovery_strategy_id (named by a signature)
#      to an async function that tries to fix the fault and returns True or
#      False. Other subsystems register their own implementations here.
#   2. RecoveryResult: an explicit SUCCESS / FAILURE / TIMEOUT value. The
#      orchestrator branches on this instead of on exceptions. A strategy that
#      raises or hangs ends up in a FAILURE or TIMEOUT result.
#   3. register_default_strategies(): baseline implementations that only
#      flip RuntimeFlags. Used when no specialised locale or audio service
#      is wired in.
#
# STRATEGY CONTRACT:
#   - async (a plain function returning bool is tolerated)
#   - idempotent: running it twice is the same as running it once
#   - returns True on success; raising counts as failure
# ============================================================================

from __future__ import annotations

import asyncio
import gc
import inspect
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Union

from crashguard.core.exceptions import DuplicateStrategyError, StrategyNotRegisteredError
from crashguard.core.runtime_flags import RuntimeFlags


StrategyFn = Callable[[], Union[Awaitable[bool], bool]]


class RecoveryStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class RecoveryResult:
    strategy_id: str
    status: RecoveryStatus
    latency_ms: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status is RecoveryStatus.SUCCESS


class StrategyRegistry:
    """
    recovery_strategy_id -> async callable.

    Usage:
        registry = StrategyRegistry()
        registry.register("locale_fallback", my_locale_fix, timeout=2.0)
        result = await registry.run("locale_fallback", default_timeout=5.0)
    """

    def __init__(self):
        self._strategies: Dict[str, StrategyFn] = {}
        self._timeouts: Dict[str, float] = {}

    def register(
        self,
        strategy_id: str,
        fn: StrategyFn,
        timeout: Optional[float] = None,
        replace: bool = False,
    ) -> None:
        if strategy_id in self._strategies and not replace:
            raise DuplicateStrategyError(strategy_id)
        self._strategies[strategy_id] = fn
        if timeout is not None:
            self._timeouts[strategy_id] = timeout
        else:
            self._timeouts.pop(strategy_id, None)

    def unregister(self, strategy_id: str) -> None:
        self._strategies.pop(strategy_id, None)
        self._timeouts.pop(strategy_id, None)

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies

    def ids(self) -> List[str]:
        return list(self._strategies)

    def get(self, strategy_id: str) -> StrategyFn:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise StrategyNotRegisteredError(strategy_id) from None

    def timeout_for(self, strategy_id: str, default: float) -> float:
        return self._timeouts.get(strategy_id, default)

    async def run(self, strategy_id: str, default_timeout: float = 5.0) -> RecoveryResult:
        """
        Run one strategy under its timeout and fold every outcome into a
        RecoveryResult. Never raises (except CancelledError, which belongs
        to the caller).
        """
        started = time.monotonic()

        def _elapsed() -> float:
            return (time.monotonic() - started) * 1000.0

        if strategy_id not in self._strategies:
            return RecoveryResult(
                strategy_id, RecoveryStatus.FAILURE, 0.0,
                error=f"strategy '{strategy_id}' is not registered",
            )

        fn = self._strategies[strategy_id]
        timeout = self.timeout_for(strategy_id, default_timeout)

        async def _invoke() -> bool:
            outcome = fn()
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return bool(outcome)

        try:
            ok = await asyncio.wait_for(_invoke(), timeout=timeout)
        except asyncio.TimeoutError:
            return RecoveryResult(
                strategy_id, RecoveryStatus.TIMEOUT, _elapsed(),
                error=f"timed out after {timeout:.1f}s",
            )
        except Exception as e:
            return RecoveryResult(
                strategy_id, RecoveryStatus.FAILURE, _elapsed(),
                error=f"{type(e).__name__}: {e}",
            )

        status = RecoveryStatus.SUCCESS if ok else RecoveryStatus.FAILURE
        error = None if ok else "strategy returned False"
        return RecoveryResult(strategy_id, status, _elapsed(), error=error)


# ============================================================================
# DEFAULT STRATEGIES
# ============================================================================
# Each one sets RuntimeFlags and returns True. Specialised subsystems
# (a real locale validator, an accessibility manager, the audio stack)
# replace them with register(..., replace=True).
# ============================================================================

def _locale_fallback(flags: RuntimeFlags) -> StrategyFn:
    async def locale_fallback() -> bool:
        flags.enable_safe_locale()
        # ICU crashes tend to come with corrupted string buffers
        flags.enable_safe_string_processing()
        return True
    return locale_fallback


def _safe_string_processing(flags: RuntimeFlags) -> StrategyFn:
    async def safe_string_processing() -> bool:
        flags.enable_safe_string_processing()
        gc.collect()
        return True
    return safe_string_processing


def _bridge_isolation(flags: RuntimeFlags) -> StrategyFn:
    async def bridge_isolation() -> bool:
        flags.enable_bridge_isolation(recovery_seconds=10.0)
        return True
    return bridge_isolation


def _accessibility_bypass(flags: RuntimeFlags) -> StrategyFn:
    async def accessibility_bypass() -> bool:
        flags.enable_accessibility_bypass()
        return True
    return accessibility_bypass


def _audio_reset(flags: RuntimeFlags) -> StrategyFn:
    async def audio_reset() -> bool:
        flags.request_audio_reset()
        return True
    return audio_reset


DEFAULT_STRATEGY_FACTORIES = {
    "locale_fallback": _locale_fallback,
    "safe_string_processing": _safe_string_processing,
    "bridge_isolation": _bridge_isolation,
    "accessibility_bypass": _accessibility_bypass,
    "audio_reset": _audio_reset,
}


def register_default_strategies(
    registry: StrategyRegistry,
    flags: RuntimeFlags,
    replace: bool = False,
) -> StrategyRegistry:
    """
    Register the flag-setting baseline for every built-in strategy id.

    Ids already present are left alone unless replace=True, so a caller can
    register its own locale strategy first and still fill in the rest here.
    """
    for strategy_id, factory in DEFAULT_STRATEGY_FACTORIES.items():
        if strategy_id in registry and not replace:
            continue
        registry.register(strategy_id, factory(flags), replace=replace)
    return registry
