"""
Narrow ledger interfaces consumed by the settlement orchestrator.

Each resource (stock, wallet, orders, positions) is owned by a ledger
exposing a read and a conditional, idempotency-keyed delta.  The
orchestrator never writes a value it computed from an earlier read; it
only sends deltas and lets the ledger enforce its floor.

Contract shared by all implementations:

* Re-sending an ``idempotency_key`` that was already applied returns the
  first outcome and changes nothing.
* A call made with ``compensates=K`` undoes K when K was applied.  When K
  was never applied it marks K void, so a late delivery of K is refused,
  and changes nothing else.
* A refused conditional update raises :class:`LedgerRejected`.  Transport
  failures raise :class:`LedgerUnavailable` or :class:`LedgerTimeout`.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Optional

from ..models import (
    OrderRecord,
    PositionDelta,
    PositionRecord,
    StockRecord,
    WalletRecord,
)


class StockLedger(abc.ABC):
    """Available tradable quantity per asset."""

    @abc.abstractmethod
    async def read(self, asset_id: str) -> Optional[StockRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def apply_delta(
        self,
        asset_id: str,
        delta: float,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> StockRecord:
        """Add ``delta`` (negative to decrement) unless the result would be negative."""
        raise NotImplementedError


class WalletLedger(abc.ABC):
    """Cash balance per user."""

    @abc.abstractmethod
    async def read(self, user_id: str) -> Optional[WalletRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def apply_delta(
        self,
        user_id: str,
        delta: float,
        *,
        idempotency_key: str,
        payment_method: str = "wallet",
        compensates: Optional[str] = None,
    ) -> WalletRecord:
        """Credit (positive) or debit (negative) the wallet; debits never overdraw."""
        raise NotImplementedError


class OrderLog(abc.ABC):
    """Append-only record of executed trades and their reversals."""

    @abc.abstractmethod
    async def read(self, order_id: str) -> Optional[OrderRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def append(
        self,
        record: OrderRecord,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        """Write ``record``.

        Returns ``None`` only for a reversal whose original was never
        written (the original key is voided instead).
        """
        raise NotImplementedError


class PositionStore(abc.ABC):
    """Holdings per (user, asset)."""

    @abc.abstractmethod
    async def read(self, user_id: str, asset_id: str) -> Optional[PositionRecord]:
        raise NotImplementedError

    @abc.abstractmethod
    async def apply_delta(
        self,
        user_id: str,
        asset_id: str,
        delta: PositionDelta,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> Optional[PositionRecord]:
        """Merge or reduce the position; ``None`` means it was deleted."""
        raise NotImplementedError


class CardPaymentGateway(abc.ABC):
    """External card processor used for card-paid buys."""

    @abc.abstractmethod
    async def charge(self, user_id: str, amount: float, *, idempotency_key: str) -> str:
        """Charge the user's card on file and return a payment reference."""
        raise NotImplementedError

    @abc.abstractmethod
    async def refund(
        self, user_id: str, amount: float, *, idempotency_key: str, compensates: str
    ) -> None:
        raise NotImplementedError


@dataclass
class LedgerSet:
    """The four ledgers (and optional card gateway) a settlement touches."""

    stock: StockLedger
    wallet: WalletLedger
    orders: OrderLog
    positions: PositionStore
    card_gateway: Optional[CardPaymentGateway] = None
