"""Concurrent trades rely on the ledgers' conditional updates."""

from __future__ import annotations

import asyncio

import pytest

from settlement.clients.paper_ledger import paper_ledger_set
from settlement.errors import LedgerUnavailable
from settlement.models import PositionRecord

from tests.helpers.flaky import FORWARD, FlakyLedger


@pytest.mark.asyncio
async def test_concurrent_buys_never_oversell(make_request, make_orchestrator) -> None:
    ledgers = paper_ledger_set(latency=0.001)
    ledgers.stock.set_stock("AAPL", 5)
    users = [f"user-{i}" for i in range(10)]
    for user in users:
        ledgers.wallet.set_balance(user, 100.0)
    orchestrator = make_orchestrator(ledgers)

    results = await asyncio.gather(
        *(orchestrator.execute(make_request(user_id=u, quantity=1, unit_price=10.0)) for u in users)
    )

    settled = [r for r in results if r.status == "settled"]
    assert len(settled) == 5
    assert all(r.reason == "InsufficientStock" for r in results if r.status != "settled")
    assert (await ledgers.stock.read("AAPL")).available_quantity == 0
    assert len(ledgers.orders.records) == 5


@pytest.mark.asyncio
async def test_concurrent_buys_by_one_user_never_overdraw(make_request, make_orchestrator) -> None:
    ledgers = paper_ledger_set(latency=0.001)
    ledgers.stock.set_stock("AAPL", 10)
    ledgers.wallet.set_balance("alice", 100.0)
    orchestrator = make_orchestrator(ledgers)

    results = await asyncio.gather(
        *(orchestrator.execute(make_request(quantity=1, unit_price=40.0)) for _ in range(3))
    )

    statuses = sorted(r.status for r in results)
    assert statuses.count("settled") == 2
    assert set(statuses) <= {"settled", "rejected", "reverted"}
    assert (await ledgers.wallet.read("alice")).balance == pytest.approx(20.0)
    assert (await ledgers.stock.read("AAPL")).available_quantity == 8
    position = await ledgers.positions.read("alice", "AAPL")
    assert position.quantity == 2
    assert position.average_cost == pytest.approx(40.0)


@pytest.mark.asyncio
async def test_mixed_trades_leave_position_equal_to_settled_quantities(
    make_request, make_orchestrator
) -> None:
    ledgers = paper_ledger_set(latency=0.001)
    ledgers.stock.set_stock("AAPL", 5)
    ledgers.wallet.set_balance("alice", 1000.0)
    ledgers.positions.set_position(
        PositionRecord(
            user_id="alice",
            asset_id="AAPL",
            symbol="AAPL",
            asset_type="stock",
            quantity=5,
            average_cost=30.0,
        )
    )
    # The first two wallet movements fail, so two trades are reverted
    wallet = FlakyLedger(ledgers.wallet).fail_forward(LedgerUnavailable("wallet down"), times=2)
    ledgers.wallet = wallet
    orchestrator = make_orchestrator(ledgers)
    requests = [
        make_request(side="buy", quantity=1, unit_price=40.0),
        make_request(side="sell", quantity=2, unit_price=45.0),
        make_request(side="buy", quantity=2, unit_price=35.0),
        make_request(side="sell", quantity=1, unit_price=50.0),
        make_request(side="sell", quantity=1, unit_price=42.0),
        make_request(side="buy", quantity=1, unit_price=38.0),
    ]

    results = await asyncio.gather(*(orchestrator.execute(r) for r in requests))

    statuses = [r.status for r in results]
    assert statuses.count("reverted") == 2
    assert set(statuses) == {"settled", "reverted"}
    signed = sum(
        r.quantity if r.side.value == "buy" else -r.quantity
        for r, result in zip(requests, results)
        if result.status == "settled"
    )
    position = await ledgers.positions.read("alice", "AAPL")
    assert position.quantity == pytest.approx(5 + signed)
    assert (await ledgers.stock.read("AAPL")).available_quantity == pytest.approx(5 - signed)
    assert wallet.count("apply_delta", FORWARD) == 6
