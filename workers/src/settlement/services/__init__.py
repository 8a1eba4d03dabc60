"""Service layer for the settlement worker.

This package exposes the modular services the worker process runs around
the orchestrator: the event bus, audit log, reconciliation queue,
database ledgers, metrics, alerting and the settlement worker pool.
"""

from .event_bus import EventBus  # noqa: F401
from .event_store import EventStore  # noqa: F401
from .reconciliation import ReconciliationQueue  # noqa: F401
from .settlement_service import SettlementService  # noqa: F401
