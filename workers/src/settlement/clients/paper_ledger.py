"""
In-memory ledgers for paper trading.

These ledgers keep stock, wallets, orders and positions in process
memory.  Each one serialises its own mutations with an ``asyncio.Lock``
so the conditional checks (stock floor, no overdraft, no over-sell) are
evaluated atomically, exactly as a real ledger's compare-and-swap would.
An optional ``latency`` makes every call yield to the event loop first,
which lets concurrent trades interleave the way network calls would.

Nothing here is persisted; restart the process and the ledgers are
empty.  Use :func:`paper_ledger_set` to build a matching set.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..errors import LedgerRejected
from ..idempotency import IdempotencyRegistry
from ..models import (
    MONEY_EPSILON,
    QUANTITY_EPSILON,
    OrderRecord,
    PositionDelta,
    PositionRecord,
    RejectionReason,
    StockRecord,
    WalletRecord,
    merge_position,
)
from .base import (
    CardPaymentGateway,
    LedgerSet,
    OrderLog,
    PositionStore,
    StockLedger,
    WalletLedger,
)


class _KeyedLedger:
    """Shared idempotency handling for the paper ledgers."""

    name = "ledger"

    def __init__(self, latency: float = 0.0) -> None:
        self.latency = latency
        self._lock = asyncio.Lock()
        self._keys = IdempotencyRegistry()

    async def _pause(self) -> None:
        # Simulate network latency
        await asyncio.sleep(self.latency)

    def _refuse_voided(self, key: str) -> None:
        if self._keys.is_voided(key):
            raise LedgerRejected(f"{self.name}: key {key[:12]} was compensated", ledger=self.name)

    def _voids(self, compensates: Optional[str]) -> bool:
        """Void ``compensates`` if it never applied; return True when voided."""
        if compensates is None or self._keys.was_applied(compensates):
            return False
        self._keys.void(compensates)
        return True

    def _remember(self, key: str, outcome: Any) -> Any:
        self._keys.record(key, outcome)
        return outcome


class PaperStockLedger(_KeyedLedger, StockLedger):
    name = "stock"

    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self._available: Dict[str, float] = {}

    def set_stock(self, asset_id: str, quantity: float) -> None:
        self._available[asset_id] = quantity

    async def read(self, asset_id: str) -> Optional[StockRecord]:
        await self._pause()
        async with self._lock:
            if asset_id not in self._available:
                return None
            return StockRecord(asset_id=asset_id, available_quantity=self._available[asset_id])

    async def apply_delta(
        self,
        asset_id: str,
        delta: float,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> StockRecord:
        await self._pause()
        async with self._lock:
            if self._keys.is_replay(idempotency_key):
                return self._keys.outcome(idempotency_key)
            self._refuse_voided(idempotency_key)
            current = self._available.get(asset_id, 0.0)
            if self._voids(compensates):
                return self._remember(
                    idempotency_key, StockRecord(asset_id=asset_id, available_quantity=current)
                )
            if asset_id not in self._available:
                raise LedgerRejected(
                    f"unknown asset {asset_id}",
                    reason=RejectionReason.INSUFFICIENT_STOCK.value,
                    ledger=self.name,
                )
            if current + delta < -QUANTITY_EPSILON:
                raise LedgerRejected(
                    f"asset {asset_id} has {current} available, cannot apply {delta}",
                    reason=RejectionReason.INSUFFICIENT_STOCK.value,
                    ledger=self.name,
                )
            self._available[asset_id] = max(0.0, current + delta)
            return self._remember(
                idempotency_key,
                StockRecord(asset_id=asset_id, available_quantity=self._available[asset_id]),
            )


class PaperWalletLedger(_KeyedLedger, WalletLedger):
    name = "wallet"

    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self._balances: Dict[str, float] = {}
        # Wallet transaction history (deposits and withdrawals)
        self.transactions: List[Dict[str, Any]] = []

    def set_balance(self, user_id: str, balance: float) -> None:
        self._balances[user_id] = balance

    async def read(self, user_id: str) -> Optional[WalletRecord]:
        await self._pause()
        async with self._lock:
            if user_id not in self._balances:
                return None
            return WalletRecord(user_id=user_id, balance=self._balances[user_id])

    async def apply_delta(
        self,
        user_id: str,
        delta: float,
        *,
        idempotency_key: str,
        payment_method: str = "wallet",
        compensates: Optional[str] = None,
    ) -> WalletRecord:
        await self._pause()
        async with self._lock:
            if self._keys.is_replay(idempotency_key):
                return self._keys.outcome(idempotency_key)
            self._refuse_voided(idempotency_key)
            current = self._balances.get(user_id, 0.0)
            if self._voids(compensates):
                return self._remember(idempotency_key, WalletRecord(user_id=user_id, balance=current))
            if current + delta < -MONEY_EPSILON:
                raise LedgerRejected(
                    f"wallet {user_id} balance {current:.2f} cannot cover {-delta:.2f}",
                    reason=RejectionReason.INSUFFICIENT_FUNDS.value,
                    ledger=self.name,
                )
            self._balances[user_id] = max(0.0, current + delta)
            self.transactions.append(
                {
                    "id": f"tx-{uuid.uuid4().hex[:12]}",
                    "userId": user_id,
                    "type": "deposit" if delta >= 0 else "withdrawal",
                    "amount": abs(delta),
                    "paymentMethod": payment_method,
                    "status": "completed",
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                }
            )
            return self._remember(
                idempotency_key, WalletRecord(user_id=user_id, balance=self._balances[user_id])
            )


class PaperOrderLog(_KeyedLedger, OrderLog):
    name = "order"

    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self._orders: Dict[str, OrderRecord] = {}

    @property
    def records(self) -> List[OrderRecord]:
        return list(self._orders.values())

    async def read(self, order_id: str) -> Optional[OrderRecord]:
        await self._pause()
        async with self._lock:
            return self._orders.get(order_id)

    async def append(
        self,
        record: OrderRecord,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        await self._pause()
        async with self._lock:
            if self._keys.is_replay(idempotency_key):
                return self._keys.outcome(idempotency_key)
            self._refuse_voided(idempotency_key)
            if self._voids(compensates):
                return self._remember(idempotency_key, None)
            if record.id in self._orders:
                raise LedgerRejected(f"order {record.id} already exists", ledger=self.name)
            self._orders[record.id] = record
            return self._remember(idempotency_key, record)


class PaperPositionStore(_KeyedLedger, PositionStore):
    name = "position"

    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        self._positions: Dict[Tuple[str, str], PositionRecord] = {}

    def set_position(self, record: PositionRecord) -> None:
        self._positions[(record.user_id, record.asset_id)] = record

    async def read(self, user_id: str, asset_id: str) -> Optional[PositionRecord]:
        await self._pause()
        async with self._lock:
            return self._positions.get((user_id, asset_id))

    async def list_positions(self, user_id: str) -> List[PositionRecord]:
        async with self._lock:
            return [p for (uid, _), p in self._positions.items() if uid == user_id]

    async def apply_delta(
        self,
        user_id: str,
        asset_id: str,
        delta: PositionDelta,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> Optional[PositionRecord]:
        await self._pause()
        async with self._lock:
            if self._keys.is_replay(idempotency_key):
                return self._keys.outcome(idempotency_key)
            self._refuse_voided(idempotency_key)
            current = self._positions.get((user_id, asset_id))
            if self._voids(compensates):
                return self._remember(idempotency_key, current)
            updated = merge_position(current, user_id, asset_id, delta)
            if updated is None:
                self._positions.pop((user_id, asset_id), None)
            else:
                self._positions[(user_id, asset_id)] = updated
            return self._remember(idempotency_key, updated)


class PaperCardGateway(_KeyedLedger, CardPaymentGateway):
    """Card processor stand-in that approves every charge."""

    name = "card"

    def __init__(self, latency: float = 0.0) -> None:
        super().__init__(latency)
        # payment reference -> (user_id, amount)
        self.charges: Dict[str, Tuple[str, float]] = {}

    async def charge(self, user_id: str, amount: float, *, idempotency_key: str) -> str:
        await self._pause()
        async with self._lock:
            if self._keys.is_replay(idempotency_key):
                return self._keys.outcome(idempotency_key)
            self._refuse_voided(idempotency_key)
            reference = f"ch-{idempotency_key[:16]}"
            self.charges[reference] = (user_id, amount)
            return self._remember(idempotency_key, reference)

    async def refund(
        self, user_id: str, amount: float, *, idempotency_key: str, compensates: str
    ) -> None:
        await self._pause()
        async with self._lock:
            if self._keys.is_replay(idempotency_key):
                return None
            if self._voids(compensates):
                self._remember(idempotency_key, None)
                return None
            self.charges.pop(self._keys.outcome(compensates), None)
            self._remember(idempotency_key, None)
            return None


def paper_ledger_set(latency: float = 0.0, *, with_card: bool = True) -> LedgerSet:
    """Build a fresh set of paper ledgers sharing the same latency."""
    return LedgerSet(
        stock=PaperStockLedger(latency),
        wallet=PaperWalletLedger(latency),
        orders=PaperOrderLog(latency),
        positions=PaperPositionStore(latency),
        card_gateway=PaperCardGateway(latency) if with_card else None,
    )
