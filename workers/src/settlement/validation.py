"""Pre-commit checks for a trade request.

All checks run against read-only snapshots taken just before the saga
starts.  Nothing is locked between the check and the commit, so a check
passing here does not guarantee the ledger will accept the delta; the
ledger's own conditional update is the final word.
"""

from __future__ import annotations

import math
from typing import Optional

from .models import (
    MONEY_EPSILON,
    QUANTITY_EPSILON,
    AssetType,
    PaymentMethod,
    PositionRecord,
    RejectionReason,
    Side,
    StockRecord,
    TradeRequest,
    WalletRecord,
)


def check_quantity(request: TradeRequest) -> Optional[RejectionReason]:
    """Quantity and price must be positive and finite; equities trade in whole units."""
    quantity = request.quantity
    if not math.isfinite(quantity) or quantity <= 0:
        return RejectionReason.INVALID_QUANTITY
    if request.asset_type == AssetType.STOCK and not float(quantity).is_integer():
        return RejectionReason.INVALID_QUANTITY
    # Requests built with model_construct skip field validation
    if not math.isfinite(request.unit_price) or request.unit_price <= 0:
        return RejectionReason.INVALID_QUANTITY
    return None


def validate_trade(
    request: TradeRequest,
    *,
    wallet: Optional[WalletRecord] = None,
    stock: Optional[StockRecord] = None,
    position: Optional[PositionRecord] = None,
    card_available: bool = False,
) -> Optional[RejectionReason]:
    """Return the first failing check for ``request``, or ``None`` if it may proceed.

    Missing snapshots count as zero: no wallet means no balance, an
    unknown asset has no stock and no position means nothing to sell.
    """
    reason = check_quantity(request)
    if reason is not None:
        return reason
    if request.side == Side.BUY:
        if request.payment_method == PaymentMethod.WALLET:
            balance = wallet.balance if wallet else 0.0
            if request.total > balance + MONEY_EPSILON:
                return RejectionReason.INSUFFICIENT_FUNDS
        elif not card_available:
            return RejectionReason.PAYMENT_METHOD_UNAVAILABLE
        available = stock.available_quantity if stock else 0.0
        if request.quantity > available + QUANTITY_EPSILON:
            return RejectionReason.INSUFFICIENT_STOCK
        return None
    owned = position.quantity if position else 0.0
    if request.quantity > owned + QUANTITY_EPSILON:
        return RejectionReason.INSUFFICIENT_HOLDINGS
    return None
