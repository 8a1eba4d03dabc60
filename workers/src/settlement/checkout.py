"""
Cart checkout on top of the settlement orchestrator.

A cart holds several buys by one user.  Before anything is written the
whole cart is checked against one snapshot of the wallet and of each
asset's stock: an empty cart, a wallet-paid total above the balance or
an item (summed per asset) above the available stock refuses the
checkout with no results.  The snapshot is not a lock, so each item is
then settled as its own trade, one after another; the first item that
does not settle stops the checkout and the remaining items are left
untouched in the cart.  Items already settled stay settled: a cart is
not a transaction.

:func:`user_message` turns a :class:`SettlementResult` into the text the
client shows.  A result is only ever described as successful when it is
``settled``.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .clients.base import LedgerSet
from .errors import LedgerError
from .models import (
    MONEY_EPSILON,
    QUANTITY_EPSILON,
    PaymentMethod,
    RejectionReason,
    SettlementResult,
    Side,
    TradeRequest,
)
from .validation import check_quantity

logger = logging.getLogger(__name__)

RETRY_MESSAGE = "Trade failed, please retry."
RECONCILIATION_MESSAGE = "Your trade could not be completed. Support has been notified."
EMPTY_CART = "EmptyCart"

_REJECTION_MESSAGES = {
    EMPTY_CART: "Your cart is empty.",
    RejectionReason.INSUFFICIENT_FUNDS.value: "Insufficient wallet balance for this purchase.",
    RejectionReason.INSUFFICIENT_STOCK.value: "Not enough units of this asset are available.",
    RejectionReason.INSUFFICIENT_HOLDINGS.value: "You do not own enough units to sell.",
    RejectionReason.INVALID_QUANTITY.value: "Please enter a valid quantity.",
    RejectionReason.PAYMENT_METHOD_UNAVAILABLE.value: "This payment method is not available.",
}


def user_message(result: SettlementResult) -> str:
    """Return the user-visible message for ``result``."""
    if result.status == "settled":
        return f"Trade completed (order {result.order_id})."
    if result.status == "needs_reconciliation":
        return RECONCILIATION_MESSAGE
    if result.status == "rejected":
        # LedgerUnavailable and unknown reasons are transient: ask for a retry
        return _REJECTION_MESSAGES.get(result.reason or "", RETRY_MESSAGE)
    return RETRY_MESSAGE


@dataclass
class CheckoutReport:
    results: List[SettlementResult] = field(default_factory=list)
    # Items that were never submitted: all of them on a refused cart,
    # otherwise those after the first item that did not settle
    skipped: List[TradeRequest] = field(default_factory=list)
    # Set when the cart was refused before any item was settled
    rejection: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.rejection is None and not self.skipped and all(r.succeeded for r in self.results)

    @property
    def failure(self) -> Optional[SettlementResult]:
        for result in self.results:
            if not result.succeeded:
                return result
        return None

    @property
    def message(self) -> str:
        if self.rejection is not None:
            return _REJECTION_MESSAGES.get(self.rejection, RETRY_MESSAGE)
        failure = self.failure
        if failure is None:
            return f"Purchase completed: {len(self.results)} item(s) settled."
        return user_message(failure)


class CheckoutService:
    """Check a cart as a whole, then settle every item in order."""

    def __init__(self, settler: Any, ledgers: Optional[LedgerSet] = None) -> None:
        # Anything with ``async execute(request)`` or ``async settle(request)``
        self._settle = getattr(settler, "settle", None) or settler.execute
        if ledgers is None:
            orchestrator = getattr(settler, "orchestrator", settler)
            ledgers = getattr(orchestrator, "ledgers", None)
        self.ledgers = ledgers

    async def precheck(self, items: Sequence[TradeRequest]) -> Optional[str]:
        """Return why the whole cart must be refused, or ``None``.

        Only reads are made.  Without ledgers the cart is checked for
        emptiness and quantities only.
        """
        if not items:
            return EMPTY_CART
        for item in items:
            reason = check_quantity(item)
            if reason is not None:
                return reason.value
        if self.ledgers is None:
            return None

        user_id = items[0].user_id
        wallet_total = sum(i.total for i in items if i.payment_method == PaymentMethod.WALLET)
        card_items = any(i.payment_method == PaymentMethod.CARD for i in items)
        wanted: Dict[str, float] = defaultdict(float)
        for item in items:
            wanted[item.asset_id] += item.quantity
        try:
            if wallet_total > 0:
                wallet = await self.ledgers.wallet.read(user_id)
                balance = wallet.balance if wallet else 0.0
                if wallet_total > balance + MONEY_EPSILON:
                    return RejectionReason.INSUFFICIENT_FUNDS.value
            if card_items and self.ledgers.card_gateway is None:
                return RejectionReason.PAYMENT_METHOD_UNAVAILABLE.value
            for asset_id, quantity in wanted.items():
                stock = await self.ledgers.stock.read(asset_id)
                available = stock.available_quantity if stock else 0.0
                if quantity > available + QUANTITY_EPSILON:
                    return RejectionReason.INSUFFICIENT_STOCK.value
        except LedgerError as exc:
            logger.warning("Cart snapshot read failed for %s: %s", user_id, exc)
            return RejectionReason.LEDGER_UNAVAILABLE.value
        return None

    async def checkout(self, items: Sequence[TradeRequest]) -> CheckoutReport:
        for item in items:
            if item.side != Side.BUY:
                raise ValueError(f"cart item {item.request_id} is not a buy")
            if item.user_id != items[0].user_id:
                raise ValueError(f"cart item {item.request_id} belongs to another user")

        report = CheckoutReport()
        rejection = await self.precheck(items)
        if rejection is not None:
            report.rejection = rejection
            report.skipped = list(items)
            logger.info("Checkout refused (%s); %d item(s) left in cart", rejection, len(items))
            return report

        for index, item in enumerate(items):
            result = await self._settle(item)
            report.results.append(result)
            if not result.succeeded:
                report.skipped = list(items[index + 1 :])
                logger.warning(
                    "Checkout stopped at %s (%s: %s); %d item(s) left in cart",
                    item.symbol,
                    result.status,
                    result.reason,
                    len(report.skipped),
                )
                break
        return report
