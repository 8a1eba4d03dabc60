"""
Exception types raised by ledger clients and the settlement core.

Ledger clients raise subclasses of :class:`LedgerError`.  The
orchestrator distinguishes a *refusal* (the ledger evaluated the
conditional update and declined it, so nothing was applied) from every
other failure, where the outcome at the ledger is unknown.  Business
outcomes such as an insufficient balance are never raised out of
``SettlementOrchestrator.execute``; they come back as a
``SettlementResult``.
"""

from __future__ import annotations

from typing import Optional


class SettlementError(Exception):
    """Base class for all settlement errors."""


class ConfigurationError(SettlementError):
    """Raised when the runtime configuration cannot be used."""


class InvalidTransition(SettlementError):
    """Raised when a trade is moved to a state it cannot reach."""


class LedgerError(SettlementError):
    """A ledger call failed."""

    def __init__(self, message: str, *, ledger: Optional[str] = None) -> None:
        super().__init__(message)
        self.ledger = ledger


class LedgerRejected(LedgerError):
    """The ledger refused a conditional update; no state was changed.

    ``reason`` carries the matching rejection reason value (for example
    ``"InsufficientStock"``) when the ledger reports one.
    """

    def __init__(
        self,
        message: str,
        *,
        reason: Optional[str] = None,
        ledger: Optional[str] = None,
    ) -> None:
        super().__init__(message, ledger=ledger)
        self.reason = reason


class LedgerUnavailable(LedgerError):
    """Transport or server failure; the call may or may not have applied."""


class LedgerTimeout(LedgerError):
    """The call did not complete within its deadline."""
