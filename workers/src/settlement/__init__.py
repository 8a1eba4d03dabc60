"""
Settlement package for the trading simulator.

This package settles buy and sell trades across the independent stock,
wallet, order and position ledgers.  The entry point is
:class:`SettlementOrchestrator`, which validates a trade, runs its ledger
mutations as a saga and compensates committed steps when a later one
fails.  ``worker_main`` wires the orchestrator into a long-running
worker process.
"""

from .errors import (  # noqa: F401
    LedgerError,
    LedgerRejected,
    LedgerTimeout,
    LedgerUnavailable,
    SettlementError,
)
from .models import SettlementResult, TradeRequest  # noqa: F401
from .orchestrator import SettlementOrchestrator  # noqa: F401
