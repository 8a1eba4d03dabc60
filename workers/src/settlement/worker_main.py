"""
Entry point for the settlement worker.

This module reads :class:`SettlementConfig` from the environment, builds
the ledgers for the configured ``LEDGER_MODE`` and runs the settlement
worker pool together with the metrics and alert services.  Each service
runs as its own task for the lifetime of the container.

If any task exits unexpectedly the others are cancelled, the exception
is logged and the process ends.
"""

import asyncio
import logging
from typing import Optional, Tuple

from .clients.base import LedgerSet
from .clients.http_ledger import HttpLedgerClient, http_ledger_set
from .clients.paper_ledger import paper_ledger_set
from .config import SettlementConfig
from .orchestrator import SettlementOrchestrator
from .services.alert_service import AlertService
from .services.db_ledger import DatabaseLedgerStore
from .services.event_bus import EventBus
from .services.event_store import EventStore
from .services.metrics_service import MetricsService
from .services.reconciliation import ReconciliationQueue
from .services.settlement_service import SettlementService


async def build_ledgers(
    config: SettlementConfig,
) -> Tuple[LedgerSet, Optional[DatabaseLedgerStore]]:
    """Return the ledger set for ``config.ledger_mode`` and the DB store, if any."""
    if config.ledger_mode == "http":
        return http_ledger_set(HttpLedgerClient.from_config(config)), None
    if config.ledger_mode == "db":
        store = DatabaseLedgerStore.from_uri(config.state_store_uri)
        await store.init_db()
        return store.ledger_set(), store
    return paper_ledger_set(), None


def build_service(
    config: SettlementConfig, ledgers: LedgerSet, event_bus: EventBus
) -> SettlementService:
    event_store = EventStore(config.event_store_path) if config.event_store_path else None
    orchestrator = SettlementOrchestrator.from_config(
        ledgers,
        config,
        event_bus=event_bus,
        event_store=event_store,
        reconciliation=ReconciliationQueue(config.reconciliation_queue_path, event_bus),
    )
    return SettlementService(orchestrator, workers=config.workers)


async def main() -> None:
    """Run the settlement services concurrently until one of them exits."""
    config = SettlementConfig.from_env()
    logging.basicConfig(level=config.log_level)
    logger = logging.getLogger(__name__)

    ledgers, store = await build_ledgers(config)
    event_bus = EventBus()
    service = build_service(config, ledgers, event_bus)
    metrics = MetricsService(event_bus, port=config.prometheus_port)
    alerts = AlertService(event_bus)

    tasks = [
        asyncio.create_task(service.run()),
        asyncio.create_task(metrics.run()),
        asyncio.create_task(alerts.run()),
    ]
    logger.info("Settlement worker started (ledger mode %s)", config.ledger_mode)
    done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    for task in pending:
        task.cancel()
    for task in done:
        exc = task.exception()
        if exc:
            logger.exception("Settlement task raised an exception", exc_info=exc)
    if store is not None:
        await store.dispose()
    logger.info("Settlement worker exiting")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
