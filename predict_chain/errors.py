"""
Error kinds raised by the market core.

Every error carries a human-readable ``reason``. ``retryable`` tells the
reconciler whether a failed ledger submission may be attempted again;
only ledger transient failures are.
"""


class MarketError(Exception):
    """Base class for all market core errors."""

    retryable = False

    def __init__(self, reason: str = ""):
        super().__init__(reason or self.__class__.__name__)
        self.reason = reason or self.__class__.__name__


# ==============================================================================
# ARITHMETIC
# ==============================================================================

class ArithmeticOverflow(MarketError):
    """A fixed-point result or intermediate exceeded its bound."""


class DivisionByZero(MarketError):
    """Fixed-point division by zero."""


class DomainError(MarketError):
    """Input outside the domain of a math or pricing function."""


class ConvergenceError(MarketError):
    """Budget search hit its iteration cap without converging."""


class NumericalInvariantError(MarketError):
    """A computation produced a value that should be impossible (e.g. negative cost)."""


# ==============================================================================
# MARKET / TRADING
# ==============================================================================

class InvalidStateTransition(MarketError):
    """A lifecycle transition was requested whose guard does not hold."""


class InsufficientShares(MarketError):
    """Sell or payout requested more shares than are held."""


class InsufficientLiquidity(MarketError):
    """Nothing is left to withdraw once unclaimed winnings are reserved."""


class SlippageExceeded(MarketError):
    """Executed price moved past the caller's limit."""


class MarketNotFound(MarketError):
    """No market exists with the given id."""


class Unauthorized(MarketError):
    """The sender is not allowed to perform this action."""


# ==============================================================================
# VOTING / COMMITS
# ==============================================================================

class DuplicateVoter(MarketError):
    """The voter already has a ballot counted in this tally."""


class StaleCommitIntent(MarketError):
    """A commit intent no longer matches the market it targets."""


class LedgerError(MarketError):
    """Base class for ledger submission failures."""


class LedgerTransientError(LedgerError):
    """Temporary ledger failure (timeout, paused, unavailable); safe to retry."""

    retryable = True


class LedgerPermanentError(LedgerError):
    """The ledger rejected the instruction and will keep rejecting it."""


# ==============================================================================
# CONFIGURATION
# ==============================================================================

class ConfigError(MarketError, ValueError):
    """Configuration failed validation at load time."""
