"""Partial-commit failures, compensation and reconciliation."""

from __future__ import annotations

import pytest

from settlement.errors import LedgerRejected, LedgerTimeout, LedgerUnavailable
from settlement.idempotency import derive_key
from settlement.models import SettlementState
from settlement.services.reconciliation import ReconciliationQueue

from tests.helpers.fake_bus import FakeBus
from tests.helpers.flaky import COMPENSATE, FORWARD, FlakyLedger


@pytest.mark.asyncio
async def test_failed_wallet_debit_reverts_trade(ledgers, make_request, make_orchestrator) -> None:
    ledgers.wallet = FlakyLedger(ledgers.wallet).fail_forward(LedgerUnavailable("503"))
    result = await make_orchestrator(ledgers).execute(make_request(quantity=2, unit_price=40.0))

    assert result.status == "reverted"
    assert result.reason == "LedgerUnavailable at wallet"
    assert result.to_response() == {"status": "reverted", "reason": "LedgerUnavailable at wallet"}
    assert result.states == [
        SettlementState.VALIDATING,
        SettlementState.COMMITTING,
        SettlementState.COMPENSATING,
        SettlementState.REVERTED,
    ]
    assert (await ledgers.stock.read("AAPL")).available_quantity == 5
    assert (await ledgers.wallet.read("alice")).balance == pytest.approx(100.0)
    assert await ledgers.positions.read("alice", "AAPL") is None
    trade, reversal = ledgers.orders.records
    assert trade.kind == "trade"
    assert reversal.kind == "reversal"
    assert reversal.status == "failed"
    assert reversal.reverses == trade.id


@pytest.mark.asyncio
async def test_refused_wallet_debit_does_not_compensate_wallet(
    ledgers, make_request, make_orchestrator
) -> None:
    ledgers.wallet = FlakyLedger(ledgers.wallet).fail_forward(
        LedgerRejected("balance changed", reason="InsufficientFunds")
    )
    result = await make_orchestrator(ledgers).execute(make_request())

    assert result.status == "reverted"
    assert result.reason == "InsufficientFunds"
    assert result.committed_steps == ["stock", "order", "position"]
    assert ledgers.wallet.count("apply_delta", COMPENSATE) == 0
    assert (await ledgers.stock.read("AAPL")).available_quantity == 5


@pytest.mark.asyncio
async def test_refused_first_step_is_a_rejection(ledgers, make_request, make_orchestrator) -> None:
    ledgers.stock = FlakyLedger(ledgers.stock).fail_forward(
        LedgerRejected("sold out", reason="InsufficientStock")
    )
    result = await make_orchestrator(ledgers).execute(make_request())

    assert result.status == "rejected"
    assert result.reason == "InsufficientStock"
    assert result.states[-1] == SettlementState.REJECTED
    assert ledgers.orders.records == []


@pytest.mark.asyncio
async def test_timeout_after_commit_is_undone(ledgers, make_request, make_orchestrator) -> None:
    ledgers.wallet = FlakyLedger(ledgers.wallet).stall_forward(1.0, after_apply=True)
    result = await make_orchestrator(ledgers, step_timeout=0.05).execute(make_request())

    assert result.status == "reverted"
    assert result.reason == "LedgerTimeout at wallet"
    assert (await ledgers.wallet.read("alice")).balance == pytest.approx(100.0)
    assert (await ledgers.stock.read("AAPL")).available_quantity == 5


@pytest.mark.asyncio
async def test_timeout_before_commit_voids_late_delivery(
    ledgers, make_request, make_orchestrator
) -> None:
    wallet = ledgers.wallet
    ledgers.wallet = FlakyLedger(wallet).stall_forward(1.0, after_apply=False)
    request = make_request()
    result = await make_orchestrator(ledgers, step_timeout=0.05).execute(request)

    assert result.status == "reverted"
    assert (await wallet.read("alice")).balance == pytest.approx(100.0)
    # The original debit arriving late is refused
    with pytest.raises(LedgerRejected):
        await wallet.apply_delta("alice", -request.total, idempotency_key=derive_key(request, "wallet"))
    assert (await wallet.read("alice")).balance == pytest.approx(100.0)


@pytest.mark.asyncio
async def test_compensation_is_retried(ledgers, make_request, make_orchestrator) -> None:
    ledgers.wallet = FlakyLedger(ledgers.wallet).fail_forward(LedgerRejected("no"))
    ledgers.stock = FlakyLedger(ledgers.stock).fail_compensation(LedgerTimeout("slow"), times=2)
    result = await make_orchestrator(ledgers, compensation_attempts=3).execute(make_request())

    assert result.status == "reverted"
    assert ledgers.stock.count("apply_delta", COMPENSATE) == 3
    assert (await ledgers.stock.read("AAPL")).available_quantity == 5


@pytest.mark.asyncio
async def test_failed_compensation_needs_reconciliation(
    ledgers, make_request, make_orchestrator, tmp_path
) -> None:
    bus = FakeBus()
    queue = ReconciliationQueue(str(tmp_path / "reconciliation.jsonl"), event_bus=bus)
    ledgers.wallet = FlakyLedger(ledgers.wallet).fail_forward(LedgerRejected("no"))
    ledgers.stock = FlakyLedger(ledgers.stock).fail_compensation(
        LedgerUnavailable("stock service down"), times=10
    )
    orchestrator = make_orchestrator(
        ledgers, compensation_attempts=3, event_bus=bus, reconciliation=queue
    )
    request = make_request()
    result = await orchestrator.execute(request)

    assert result.status == "needs_reconciliation"
    assert result.committed_steps == ["stock", "order", "position"]
    assert result.failed_compensations == ["stock"]
    assert result.to_response() == {
        "status": "needs_reconciliation",
        "committedSteps": ["stock", "order", "position"],
        "failedCompensations": ["stock"],
    }
    assert ledgers.stock.count("apply_delta", COMPENSATE) == 3
    assert ledgers.stock.count("apply_delta", FORWARD) == 1
    # Other compensations still ran
    assert await ledgers.positions.read("alice", "AAPL") is None
    assert [o.kind for o in ledgers.orders.records] == ["trade", "reversal"]
    assert (await ledgers.stock.read("AAPL")).available_quantity == 3

    cases = await queue.pending()
    assert len(cases) == 1
    assert cases[0]["request_id"] == request.request_id
    assert cases[0]["failed_compensations"] == ["stock"]
    assert len(bus.of_type("reconciliation_needed")) == 1
    assert bus.of_type("settlement_result")[0]["status"] == "needs_reconciliation"


@pytest.mark.asyncio
async def test_card_charge_failure_refunds(ledgers, make_request, make_orchestrator) -> None:
    gateway = ledgers.card_gateway
    ledgers.card_gateway = FlakyLedger(gateway).fail_forward(
        LedgerUnavailable("gateway timeout"), after_apply=True
    )
    result = await make_orchestrator(ledgers).execute(make_request(payment_method="card"))

    assert result.status == "reverted"
    assert ledgers.card_gateway.count("refund", COMPENSATE) == 1
    assert gateway.charges == {}
    assert (await ledgers.stock.read("AAPL")).available_quantity == 5
