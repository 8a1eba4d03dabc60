"""
Ledger clients used by the settlement orchestrator.

This package provides the abstract ledger interfaces, in-memory paper
ledgers for simulation and tests, and REST clients for the trading
backend with rate limiting and retry logic.  The database-backed ledgers
live in :mod:`settlement.services.db_ledger`.
"""

from .base import LedgerSet  # noqa: F401
from .http_ledger import HttpLedgerClient, http_ledger_set  # noqa: F401
from .paper_ledger import paper_ledger_set  # noqa: F401
