"""
Operator-facing reconciliation queue.

Trades whose compensation failed end in ``needs_reconciliation``: some
ledger writes are committed and could not be undone automatically.  The
queue makes each case durable (one JSON line per case, written through
:class:`EventStore`) and announces it on the event bus as
``reconciliation_needed`` so that alerting can notify support.

Cases are never retried from here.  An operator works the queue and
fixes the listed ledgers by hand.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..models import SettlementResult, TradeRequest
from .event_store import EventStore

logger = logging.getLogger(__name__)

EVENT_TYPE = "reconciliation_needed"


class ReconciliationQueue:
    def __init__(self, path: str, event_bus: Any = None) -> None:
        self._store = EventStore(path)
        self.event_bus = event_bus

    @property
    def path(self) -> str:
        return self._store.path

    @staticmethod
    def build_case(request: TradeRequest, result: SettlementResult) -> Dict[str, Any]:
        return {
            "request_id": request.request_id,
            "user_id": request.user_id,
            "asset_id": request.asset_id,
            "symbol": request.symbol,
            "side": request.side.value,
            "quantity": request.quantity,
            "unit_price": request.unit_price,
            "total": request.total,
            "payment_method": request.payment_method.value,
            "reason": result.reason,
            "committed_steps": list(result.committed_steps),
            "failed_compensations": list(result.failed_compensations),
        }

    async def submit(self, request: TradeRequest, result: SettlementResult) -> Dict[str, Any]:
        case = self.build_case(request, result)
        await self._store.log(EVENT_TYPE, case)
        logger.error(
            "Reconciliation case %s queued: failed compensations %s",
            request.request_id,
            case["failed_compensations"],
        )
        if self.event_bus is not None:
            await self.event_bus.publish(EVENT_TYPE, case)
        return case

    async def pending(self, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Return queued cases, optionally only those of ``user_id``."""
        cases = [entry["data"] for entry in await self._store.read_all()]
        if user_id is not None:
            cases = [c for c in cases if c["user_id"] == user_id]
        return cases
