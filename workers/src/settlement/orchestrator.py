"""
Settlement orchestrator.

The orchestrator turns one :class:`TradeRequest` into the ordered ledger
mutations that settle it and reports a single terminal
:class:`SettlementResult`.  The backing ledgers only offer per-resource
atomicity, so a trade is run as a saga:

* buy:  stock decrement, order record, position merge, wallet debit
  (or card charge)
* sell: order record, wallet credit, stock increment, position
  decrement-or-delete

Preconditions are checked first against read-only snapshots.  A failed
check ends the trade as ``rejected`` without any write.  If a mutation
fails after earlier ones committed, the committed steps are compensated
in reverse order: stock and wallet get the opposite delta, the position
gets the inverse adjustment and the order log gets a linked ``reversal``
record (orders are immutable).  When every compensation succeeds the
trade ends ``reverted``; when any compensation fails it ends
``needs_reconciliation`` and is handed to the operator queue.

The orchestrator keeps no state between calls.  Concurrent trades run
independently and rely on each ledger's conditional update for
consistency.  Once a trade is submitted it cannot be cancelled:
cancelling the awaiting task is ignored, the saga runs to a terminal
state and the caller still receives its result.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from .clients.base import LedgerSet
from .config import SettlementConfig
from .errors import InvalidTransition, LedgerError
from .idempotency import COMPENSATE, FORWARD, derive_key, order_id_for
from .models import (
    OrderRecord,
    PaymentMethod,
    PositionDelta,
    PositionRecord,
    RejectionReason,
    SettlementResult,
    SettlementState,
    Side,
    StepName,
    TradeRequest,
)
from .saga import ForwardOutcome, Saga, SagaStep
from .validation import check_quantity, validate_trade

logger = logging.getLogger(__name__)

_TRANSITIONS: Dict[SettlementState, FrozenSet[SettlementState]] = {
    SettlementState.VALIDATING: frozenset({SettlementState.COMMITTING, SettlementState.REJECTED}),
    # A first step refused by its ledger leaves no side effects: rejected.
    SettlementState.COMMITTING: frozenset(
        {SettlementState.SETTLED, SettlementState.COMPENSATING, SettlementState.REJECTED}
    ),
    SettlementState.COMPENSATING: frozenset(
        {SettlementState.REVERTED, SettlementState.STUCK_NEEDS_RECONCILIATION}
    ),
}


class TradeStateMachine:
    """Tracks the lifecycle of one trade and refuses illegal transitions."""

    def __init__(self, request_id: str) -> None:
        self.request_id = request_id
        self.state = SettlementState.VALIDATING
        self.history: List[SettlementState] = [self.state]

    @property
    def terminal(self) -> bool:
        return self.state not in _TRANSITIONS

    def advance(self, new_state: SettlementState) -> None:
        allowed = _TRANSITIONS.get(self.state, frozenset())
        if new_state not in allowed:
            raise InvalidTransition(
                f"trade {self.request_id}: {self.state.value} -> {new_state.value} not allowed"
            )
        logger.debug("Trade %s: %s -> %s", self.request_id, self.state.value, new_state.value)
        self.state = new_state
        self.history.append(new_state)


class SettlementOrchestrator:
    """Validate and settle trades against a :class:`LedgerSet`."""

    def __init__(
        self,
        ledgers: LedgerSet,
        *,
        step_timeout: float = 15.0,
        compensation_attempts: int = 3,
        backoff_min: float = 0.5,
        backoff_max: float = 8.0,
        event_bus: Any = None,
        event_store: Any = None,
        reconciliation: Any = None,
    ) -> None:
        self.ledgers = ledgers
        self.step_timeout = step_timeout
        self.compensation_attempts = compensation_attempts
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self.event_bus = event_bus
        self.event_store = event_store
        self.reconciliation = reconciliation

    @classmethod
    def from_config(
        cls, ledgers: LedgerSet, config: SettlementConfig, **kwargs: Any
    ) -> "SettlementOrchestrator":
        return cls(
            ledgers,
            step_timeout=config.step_timeout,
            compensation_attempts=config.compensation_max_attempts,
            backoff_min=config.compensation_backoff_min,
            backoff_max=config.compensation_backoff_max,
            **kwargs,
        )

    async def execute(self, request: TradeRequest) -> SettlementResult:
        """Settle ``request`` and return its terminal result.

        Cancelling the awaiting task does not interrupt the settlement;
        the result is still produced and returned.
        """
        task = asyncio.ensure_future(self._settle(request))
        while True:
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                if task.cancelled():
                    raise
                logger.warning(
                    "Cancellation ignored for trade %s; settlement continues", request.request_id
                )

    def request_cancel(self, request_id: str) -> bool:
        """Submitted trades are not cancellable; always returns ``False``."""
        logger.info("Cancel request for trade %s ignored", request_id)
        return False

    async def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self.event_store is None:
            return
        try:
            await self.event_store.log(event_type, data)
        except Exception as exc:
            # Audit failures must not change the outcome of a trade
            logger.warning("Failed to record %s event: %s", event_type, exc)

    async def _read(self, call: Any) -> Any:
        return await asyncio.wait_for(call, timeout=self.step_timeout)

    async def _snapshot(
        self, request: TradeRequest
    ) -> Tuple[Optional[RejectionReason], Optional[PositionRecord]]:
        """Read the snapshots the checks need and run :func:`validate_trade`."""
        reason = check_quantity(request)
        if reason is not None:
            return reason, None
        wallet = stock = position = None
        try:
            if request.side == Side.BUY:
                if request.payment_method == PaymentMethod.WALLET:
                    wallet = await self._read(self.ledgers.wallet.read(request.user_id))
                stock = await self._read(self.ledgers.stock.read(request.asset_id))
            else:
                position = await self._read(
                    self.ledgers.positions.read(request.user_id, request.asset_id)
                )
        except (LedgerError, asyncio.TimeoutError) as exc:
            logger.warning("Snapshot read failed for trade %s: %s", request.request_id, exc)
            return RejectionReason.LEDGER_UNAVAILABLE, None
        reason = validate_trade(
            request,
            wallet=wallet,
            stock=stock,
            position=position,
            card_available=self.ledgers.card_gateway is not None,
        )
        return reason, position

    @staticmethod
    def _keys(request: TradeRequest, step: StepName) -> Tuple[str, str]:
        return derive_key(request, step.value, FORWARD), derive_key(request, step.value, COMPENSATE)

    @staticmethod
    def _order_records(
        request: TradeRequest, order_key: str, reversal_key: str
    ) -> Tuple[OrderRecord, OrderRecord]:
        order_id = order_id_for(order_key)
        fields = dict(
            user_id=request.user_id,
            asset_id=request.asset_id,
            symbol=request.symbol,
            asset_type=request.asset_type,
            side=request.side,
            quantity=request.quantity,
            price=request.unit_price,
            total=request.total,
        )
        trade = OrderRecord(id=order_id, kind="trade", status="completed", **fields)
        reversal = OrderRecord(
            id=order_id_for(reversal_key),
            kind="reversal",
            status="failed",
            reverses=order_id,
            **fields,
        )
        return trade, reversal

    def _stock_step(self, request: TradeRequest, delta: float) -> SagaStep:
        key, undo_key = self._keys(request, StepName.STOCK)
        stock = self.ledgers.stock
        return SagaStep(
            StepName.STOCK.value,
            lambda: stock.apply_delta(request.asset_id, delta, idempotency_key=key),
            lambda: stock.apply_delta(
                request.asset_id, -delta, idempotency_key=undo_key, compensates=key
            ),
        )

    def _order_step(self, request: TradeRequest) -> SagaStep:
        key, undo_key = self._keys(request, StepName.ORDER)
        trade, reversal = self._order_records(request, key, undo_key)
        orders = self.ledgers.orders
        return SagaStep(
            StepName.ORDER.value,
            lambda: orders.append(trade, idempotency_key=key),
            lambda: orders.append(reversal, idempotency_key=undo_key, compensates=key),
        )

    def _wallet_step(self, request: TradeRequest, delta: float, payment_method: str) -> SagaStep:
        key, undo_key = self._keys(request, StepName.WALLET)
        wallet = self.ledgers.wallet
        return SagaStep(
            StepName.WALLET.value,
            lambda: wallet.apply_delta(
                request.user_id, delta, idempotency_key=key, payment_method=payment_method
            ),
            lambda: wallet.apply_delta(
                request.user_id,
                -delta,
                idempotency_key=undo_key,
                payment_method="reversal",
                compensates=key,
            ),
        )

    def _card_step(self, request: TradeRequest) -> SagaStep:
        key, undo_key = self._keys(request, StepName.CARD)
        gateway = self.ledgers.card_gateway
        return SagaStep(
            StepName.CARD.value,
            lambda: gateway.charge(request.user_id, request.total, idempotency_key=key),
            lambda: gateway.refund(
                request.user_id, request.total, idempotency_key=undo_key, compensates=key
            ),
        )

    def _position_step(
        self, request: TradeRequest, forward: PositionDelta, backward: PositionDelta
    ) -> SagaStep:
        key, undo_key = self._keys(request, StepName.POSITION)
        positions = self.ledgers.positions
        return SagaStep(
            StepName.POSITION.value,
            lambda: positions.apply_delta(
                request.user_id, request.asset_id, forward, idempotency_key=key
            ),
            lambda: positions.apply_delta(
                request.user_id,
                request.asset_id,
                backward,
                idempotency_key=undo_key,
                compensates=key,
            ),
        )

    def build_steps(
        self, request: TradeRequest, position: Optional[PositionRecord] = None
    ) -> List[SagaStep]:
        """Return the fixed mutation sequence for ``request``.

        ``position`` is the pre-trade snapshot; a sell uses its average
        cost to restore the holding if the sell has to be undone.
        """
        def delta(quantity: float, price: Optional[float]) -> PositionDelta:
            return PositionDelta(
                quantity=quantity,
                unit_price=price,
                symbol=request.symbol,
                asset_type=request.asset_type,
            )

        if request.side == Side.BUY:
            if request.payment_method == PaymentMethod.CARD:
                payment = self._card_step(request)
            else:
                payment = self._wallet_step(request, -request.total, "wallet")
            return [
                self._stock_step(request, -request.quantity),
                self._order_step(request),
                self._position_step(
                    request,
                    delta(request.quantity, request.unit_price),
                    delta(-request.quantity, request.unit_price),
                ),
                payment,
            ]
        restore_price = position.average_cost if position else request.unit_price
        return [
            self._order_step(request),
            self._wallet_step(request, request.total, "sale"),
            self._stock_step(request, request.quantity),
            self._position_step(
                request,
                delta(-request.quantity, None),
                delta(request.quantity, restore_price),
            ),
        ]

    def _saga(self, steps: List[SagaStep], request: TradeRequest) -> Saga:
        async def on_event(event_type: str, data: Dict[str, Any]) -> None:
            await self._emit(event_type, {"request_id": request.request_id, **data})

        return Saga(
            steps,
            step_timeout=self.step_timeout,
            compensation_attempts=self.compensation_attempts,
            backoff_min=self.backoff_min,
            backoff_max=self.backoff_max,
            on_event=on_event,
        )

    @staticmethod
    def _failure_reason(forward: ForwardOutcome) -> str:
        failure = forward.failure
        if failure.rejection_reason:
            return failure.rejection_reason
        return f"{type(failure.error).__name__} at {failure.step}"

    async def _settle(self, request: TradeRequest) -> SettlementResult:
        started = time.monotonic()
        machine = TradeStateMachine(request.request_id)
        await self._emit("trade_submitted", request.model_dump(mode="json"))

        reason, position = await self._snapshot(request)
        if reason is not None:
            machine.advance(SettlementState.REJECTED)
            result = SettlementResult(
                status="rejected", request_id=request.request_id, reason=reason.value
            )
            return await self._finish(request, result, machine, started)

        machine.advance(SettlementState.COMMITTING)
        saga = self._saga(self.build_steps(request, position), request)
        forward = await saga.run_forward()

        if forward.failure is None:
            machine.advance(SettlementState.SETTLED)
            order_key, _ = self._keys(request, StepName.ORDER)
            result = SettlementResult(
                status="settled",
                request_id=request.request_id,
                order_id=order_id_for(order_key),
                committed_steps=[s.name for s in forward.committed],
            )
            return await self._finish(request, result, machine, started)

        to_undo = forward.to_compensate
        if not to_undo:
            # The first step was refused outright; nothing to undo
            machine.advance(SettlementState.REJECTED)
            result = SettlementResult(
                status="rejected",
                request_id=request.request_id,
                reason=self._failure_reason(forward),
            )
            return await self._finish(request, result, machine, started)

        machine.advance(SettlementState.COMPENSATING)
        committed = [s.name for s in to_undo]
        failed = await saga.compensate(to_undo)
        if not failed:
            machine.advance(SettlementState.REVERTED)
            result = SettlementResult(
                status="reverted",
                request_id=request.request_id,
                reason=self._failure_reason(forward),
                committed_steps=committed,
            )
        else:
            machine.advance(SettlementState.STUCK_NEEDS_RECONCILIATION)
            result = SettlementResult(
                status="needs_reconciliation",
                request_id=request.request_id,
                reason=self._failure_reason(forward),
                committed_steps=committed,
                failed_compensations=failed,
            )
        return await self._finish(request, result, machine, started)

    async def _finish(
        self,
        request: TradeRequest,
        result: SettlementResult,
        machine: TradeStateMachine,
        started: float,
    ) -> SettlementResult:
        result.states = list(machine.history)
        duration = time.monotonic() - started
        if result.status == "settled":
            logger.info(
                "Settled %s %s %s x%s @ %s (order %s)",
                request.user_id,
                request.side.value,
                request.symbol,
                request.quantity,
                request.unit_price,
                result.order_id,
            )
        elif result.status == "needs_reconciliation":
            logger.error(
                "Trade %s needs manual reconciliation: committed=%s failed_compensations=%s",
                request.request_id,
                result.committed_steps,
                result.failed_compensations,
            )
        else:
            logger.warning(
                "Trade %s %s: %s", request.request_id, result.status, result.reason
            )
        event = {
            "request_id": request.request_id,
            "user_id": request.user_id,
            "asset_id": request.asset_id,
            "side": request.side.value,
            "status": result.status,
            "reason": result.reason,
            "order_id": result.order_id,
            "committed_steps": result.committed_steps,
            "failed_compensations": result.failed_compensations,
            "duration_seconds": duration,
        }
        await self._emit("settlement_result", event)
        if self.event_bus is not None:
            await self.event_bus.publish("settlement_result", event)
        if result.status == "needs_reconciliation" and self.reconciliation is not None:
            try:
                await self.reconciliation.submit(request, result)
            except Exception:
                logger.exception(
                    "Could not enqueue trade %s for reconciliation", request.request_id
                )
        return result
