"""
Domain models for trade settlement using Pydantic.

These models describe the trade request handed to the orchestrator, the
snapshots returned by each ledger, and the terminal result of a
settlement.  Monetary amounts and quantities are floats; quantities
within ``QUANTITY_EPSILON`` of zero are treated as zero so that fully
liquidated crypto positions are removed rather than left as dust.
Balances are compared with ``MONEY_EPSILON`` so that a purchase costing
exactly the balance is not refused over float rounding.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import LedgerRejected

QUANTITY_EPSILON = 1e-9
# Tolerance for float rounding when a total is compared against a balance
MONEY_EPSILON = 1e-9


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PaymentMethod(str, Enum):
    WALLET = "wallet"
    CARD = "card"


class AssetType(str, Enum):
    STOCK = "stock"
    CRYPTO = "crypto"


class RejectionReason(str, Enum):
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    INSUFFICIENT_STOCK = "InsufficientStock"
    INSUFFICIENT_HOLDINGS = "InsufficientHoldings"
    INVALID_QUANTITY = "InvalidQuantity"
    PAYMENT_METHOD_UNAVAILABLE = "PaymentMethodUnavailable"
    LEDGER_UNAVAILABLE = "LedgerUnavailable"


class StepName(str, Enum):
    STOCK = "stock"
    ORDER = "order"
    POSITION = "position"
    WALLET = "wallet"
    CARD = "card"


class SettlementState(str, Enum):
    VALIDATING = "validating"
    COMMITTING = "committing"
    SETTLED = "settled"
    REJECTED = "rejected"
    COMPENSATING = "compensating"
    REVERTED = "reverted"
    STUCK_NEEDS_RECONCILIATION = "stuck_needs_reconciliation"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_request_id() -> str:
    return uuid.uuid4().hex


class TradeRequest(BaseModel):
    """A buy or sell submitted by the checkout or sell flow.

    Quantity and price are snapshotted here and never re-read while the
    trade settles.  ``request_id`` seeds every idempotency key issued for
    the trade.
    """

    model_config = ConfigDict(frozen=True)

    request_id: str = Field(default_factory=_new_request_id)
    user_id: str
    asset_id: str
    symbol: str
    asset_type: AssetType = AssetType.STOCK
    side: Side
    quantity: float = Field(..., description="Units to trade; validated by the orchestrator")
    unit_price: float = Field(
        ..., gt=0, allow_inf_nan=False, description="Price per unit at submission"
    )
    payment_method: PaymentMethod = PaymentMethod.WALLET
    submitted_at: datetime = Field(default_factory=_utcnow)

    @property
    def total(self) -> float:
        return self.quantity * self.unit_price


class StockRecord(BaseModel):
    asset_id: str
    available_quantity: float = Field(..., ge=0)


class WalletRecord(BaseModel):
    user_id: str
    balance: float = Field(..., ge=0)


class OrderRecord(BaseModel):
    """An executed trade or the reversal of one.  Never updated once written."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    asset_id: str
    symbol: str
    asset_type: AssetType
    side: Side
    kind: Literal["trade", "reversal"] = "trade"
    quantity: float
    price: float
    total: float
    fees: float = 0.0
    status: Literal["completed", "failed"] = "completed"
    reverses: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class PositionRecord(BaseModel):
    user_id: str
    asset_id: str
    symbol: str
    asset_type: AssetType
    quantity: float = Field(..., ge=0)
    average_cost: float = Field(..., ge=0)


class PositionDelta(BaseModel):
    """Signed change to a holding.

    A positive ``quantity`` merges a purchase at ``unit_price`` into the
    position.  A negative ``quantity`` without a price sells units and
    keeps the average cost.  A negative ``quantity`` with a price undoes a
    purchase made at that price.
    """

    quantity: float
    unit_price: Optional[float] = None
    symbol: str
    asset_type: AssetType


def merge_position(
    current: Optional[PositionRecord],
    user_id: str,
    asset_id: str,
    delta: PositionDelta,
) -> Optional[PositionRecord]:
    """Return the position after ``delta``, or ``None`` when it is liquidated.

    Raises :class:`LedgerRejected` if the delta would take the quantity
    below zero.
    """
    held = current.quantity if current else 0.0
    cost = current.average_cost if current else 0.0
    new_quantity = held + delta.quantity
    if new_quantity < -QUANTITY_EPSILON:
        raise LedgerRejected(
            f"position {user_id}/{asset_id} holds {held}, cannot apply {delta.quantity}",
            reason=RejectionReason.INSUFFICIENT_HOLDINGS.value,
            ledger="position",
        )
    if new_quantity <= QUANTITY_EPSILON:
        return None
    if delta.quantity > 0:
        price = delta.unit_price if delta.unit_price is not None else cost
        new_cost = (held * cost + delta.quantity * price) / new_quantity
    elif delta.unit_price is not None:
        new_cost = max(0.0, (held * cost + delta.quantity * delta.unit_price) / new_quantity)
    else:
        new_cost = cost
    return PositionRecord(
        user_id=user_id,
        asset_id=asset_id,
        symbol=current.symbol if current else delta.symbol,
        asset_type=current.asset_type if current else delta.asset_type,
        quantity=new_quantity,
        average_cost=new_cost,
    )


class SettlementResult(BaseModel):
    """Terminal outcome of one trade."""

    status: Literal["settled", "rejected", "reverted", "needs_reconciliation"]
    request_id: str
    order_id: Optional[str] = None
    reason: Optional[str] = None
    committed_steps: List[str] = Field(default_factory=list)
    failed_compensations: List[str] = Field(default_factory=list)
    states: List[SettlementState] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == "settled"

    def to_response(self) -> Dict[str, Any]:
        """Return the payload shape handed back to the checkout and sell flows."""
        if self.status == "settled":
            return {"status": "settled", "orderId": self.order_id}
        if self.status in ("rejected", "reverted"):
            return {"status": self.status, "reason": self.reason}
        return {
            "status": "needs_reconciliation",
            "committedSteps": list(self.committed_steps),
            "failedCompensations": list(self.failed_compensations),
        }
