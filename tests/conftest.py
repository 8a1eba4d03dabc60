"""Pytest configuration and shared fixtures.

The test suite imports the ``settlement`` package from ``workers/src``.
When pytest is executed as an installed script, neither the repository
root nor ``workers/src`` is automatically added to ``sys.path``.  This
file ensures both are available during test collection, so that tests
can import ``settlement`` and the ``tests.helpers`` modules without
installing the package.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any, Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "workers" / "src"

for path in (str(SRC), str(ROOT)):
    if path not in sys.path:
        sys.path.insert(0, path)

from settlement.clients.paper_ledger import paper_ledger_set  # noqa: E402
from settlement.models import TradeRequest  # noqa: E402
from settlement.orchestrator import SettlementOrchestrator  # noqa: E402


@pytest.fixture
def ledgers():
    """Fresh paper ledgers: AAPL with 5 units in stock, alice with $100."""
    ledger_set = paper_ledger_set()
    ledger_set.stock.set_stock("AAPL", 5)
    ledger_set.wallet.set_balance("alice", 100.0)
    return ledger_set


@pytest.fixture
def make_request() -> Callable[..., TradeRequest]:
    def _make(**overrides: Any) -> TradeRequest:
        fields = dict(
            user_id="alice",
            asset_id="AAPL",
            symbol="AAPL",
            side="buy",
            quantity=2,
            unit_price=40.0,
        )
        fields.update(overrides)
        return TradeRequest(**fields)

    return _make


@pytest.fixture
def make_orchestrator():
    """Build an orchestrator with no compensation backoff, so retries run instantly."""

    def _make(ledger_set, **kwargs: Any) -> SettlementOrchestrator:
        kwargs.setdefault("step_timeout", 1.0)
        kwargs.setdefault("compensation_attempts", 3)
        kwargs.setdefault("backoff_min", 0)
        kwargs.setdefault("backoff_max", 0)
        return SettlementOrchestrator(ledger_set, **kwargs)

    return _make
