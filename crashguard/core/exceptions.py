# ===========================================================================
# crashguard -- TYPED EXCEPTIONS
# ===========================================================================
# FILE: crashguard/core/exceptions.py
#
# WHAT THIS IS:
#   Custom error types for crashguard. These are SETUP errors: a broken
#   signature table, a strategy id nobody registered, a sink used after
#   close. The runtime fault pipeline itself never raises into the host --
#   a fault handler that throws would turn one crash into two.
#
# HOW IT'S USED:
#   try:
#       engine = FaultEngine(config, registry=registry)
#   except StrategyNotRegisteredError as e:
#       print(e, "--", e.fix_suggestion)
#   except CrashGuardError as e:
#       print(e.to_dict())
#
# ERROR CODES:
#   CAT-xxx   signature catalog problems
#   REC-xxx   recovery strategy registry problems
#   SINK-xxx  reporting sink problems
#   ING-xxx   ingress hook installation problems
#   CONF-xxx  configuration values
# ===========================================================================

from __future__ import annotations


class CrashGuardError(Exception):
    """
    Base class for all crashguard errors.

    Attributes:
        fix_suggestion (str | None): Human-readable fix instruction.
        error_code (str | None): Machine-readable code like "CAT-001".
    """

    def __init__(self, message, fix_suggestion=None, error_code=None):
        self.fix_suggestion = fix_suggestion
        self.error_code = error_code
        super().__init__(message)

    def to_dict(self):
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": str(self),
            "fix_suggestion": self.fix_suggestion,
        }


# ---------------------------------------------------------------------------
# SIGNATURE CATALOG ERRORS (CAT-xxx)
# ---------------------------------------------------------------------------

class InvalidSignatureError(CrashGuardError):
    """
    A fault signature definition is unusable.

    WHEN YOU'LL SEE THIS:
      - The pattern is not a valid regular expression
      - action is "recover" but no recovery_strategy_id was given
      - max_attempts is zero or negative
    """
    def __init__(self, message=None, name=None):
        detail = f" (signature '{name}')" if name else ""
        super().__init__(
            message or f"Fault signature is invalid.{detail}",
            fix_suggestion=(
                "Check the signature pattern compiles and that recover "
                "signatures name a recovery strategy."
            ),
            error_code="CAT-001",
        )


class DuplicateSignatureError(CrashGuardError):
    """Two signatures in one catalog share a name."""
    def __init__(self, name):
        super().__init__(
            f"Fault signature '{name}' is registered twice.",
            fix_suggestion="Give every signature in the catalog a unique name.",
            error_code="CAT-002",
        )


# ---------------------------------------------------------------------------
# RECOVERY STRATEGY ERRORS (REC-xxx)
# ---------------------------------------------------------------------------

class StrategyNotRegisteredError(CrashGuardError):
    """
    A signature refers to a recovery strategy id missing from the registry.

    Raised by FaultEngine at construction time so the gap is found at
    startup, not on the first crash that needs the strategy.
    """
    def __init__(self, strategy_id, signature=None):
        self.strategy_id = strategy_id
        detail = f" (used by signature '{signature}')" if signature else ""
        super().__init__(
            f"Recovery strategy '{strategy_id}' is not registered.{detail}",
            fix_suggestion=(
                "Register the strategy with StrategyRegistry.register() or "
                "call register_default_strategies() before building the engine."
            ),
            error_code="REC-001",
        )


class DuplicateStrategyError(CrashGuardError):
    """A strategy id was registered twice without replace=True."""
    def __init__(self, strategy_id):
        self.strategy_id = strategy_id
        super().__init__(
            f"Recovery strategy '{strategy_id}' is already registered.",
            fix_suggestion="Pass replace=True to override an existing strategy.",
            error_code="REC-002",
        )


# ---------------------------------------------------------------------------
# REPORTING SINK ERRORS (SINK-xxx)
# ---------------------------------------------------------------------------

class SinkClosedError(CrashGuardError):
    """submit() was called after the reporting sink was closed."""
    def __init__(self, message=None):
        super().__init__(
            message or "Reporting sink is closed.",
            fix_suggestion="Create a new ReportingSink or stop submitting after shutdown().",
            error_code="SINK-001",
        )


# ---------------------------------------------------------------------------
# INGRESS ERRORS (ING-xxx)
# ---------------------------------------------------------------------------

class IngressAlreadyInstalledError(CrashGuardError):
    """
    The ingress hooks are already installed.

    Installing twice would chain the engine to itself and report every
    fault two times.
    """
    def __init__(self, hook="sys.excepthook"):
        super().__init__(
            f"Fault ingress already installed on {hook}.",
            fix_suggestion="Call uninstall() before installing again.",
            error_code="ING-001",
        )


# ---------------------------------------------------------------------------
# CONFIGURATION ERRORS (CONF-xxx)
# ---------------------------------------------------------------------------

class ConfigValueError(CrashGuardError):
    """A configuration value cannot be turned into a usable setting."""
    def __init__(self, message=None):
        super().__init__(
            message or "Configuration value is invalid.",
            fix_suggestion="Compare config/default_config.yaml with the documented sections.",
            error_code="CONF-001",
        )
