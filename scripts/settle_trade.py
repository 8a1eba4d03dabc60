#!/usr/bin/env python
"""
Settle a single trade from the command line.

By default the trade runs against fresh paper ledgers seeded from the
``--stock``, ``--balance`` and ``--holding`` flags, which makes it easy
to try out buy and sell scenarios:

.. code-block:: bash

    python scripts/settle_trade.py --user alice --asset AAPL --side buy \\
        --quantity 2 --price 40 --stock 5 --balance 100

With ``--configured`` the ledgers come from the environment
(``LEDGER_MODE``, ``LEDGER_BASE_URL``, ``STATE_STORE_URI``...) instead
and the seeding flags are ignored.  The result is printed as JSON in
the shape returned to the client.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

from settlement.checkout import user_message
from settlement.clients.paper_ledger import paper_ledger_set
from settlement.config import SettlementConfig
from settlement.models import AssetType, PaymentMethod, PositionRecord, Side, TradeRequest
from settlement.orchestrator import SettlementOrchestrator
from settlement.worker_main import build_ledgers


def parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Settle one trade.")
    ap.add_argument("--user", required=True, help="User id")
    ap.add_argument("--asset", required=True, help="Asset id")
    ap.add_argument("--symbol", help="Ticker symbol (defaults to the asset id)")
    ap.add_argument("--type", choices=[t.value for t in AssetType], default="stock")
    ap.add_argument("--side", choices=[s.value for s in Side], required=True)
    ap.add_argument("--quantity", type=float, required=True)
    ap.add_argument("--price", type=float, required=True)
    ap.add_argument("--payment", choices=[p.value for p in PaymentMethod], default="wallet")
    ap.add_argument("--configured", action="store_true", help="Use the ledgers from the environment")
    ap.add_argument("--stock", type=float, default=0.0, help="Paper: available stock of the asset")
    ap.add_argument("--balance", type=float, default=0.0, help="Paper: wallet balance of the user")
    ap.add_argument("--holding", type=float, default=0.0, help="Paper: units the user already holds")
    ap.add_argument("--cost", type=float, default=None, help="Paper: average cost of the holding")
    return ap.parse_args()


async def main_async(args: argparse.Namespace) -> int:
    request = TradeRequest(
        user_id=args.user,
        asset_id=args.asset,
        symbol=args.symbol or args.asset,
        asset_type=args.type,
        side=args.side,
        quantity=args.quantity,
        unit_price=args.price,
        payment_method=args.payment,
    )
    store = None
    if args.configured:
        config = SettlementConfig.from_env()
        ledgers, store = await build_ledgers(config)
        orchestrator = SettlementOrchestrator.from_config(ledgers, config)
    else:
        ledgers = paper_ledger_set()
        ledgers.stock.set_stock(args.asset, args.stock)
        ledgers.wallet.set_balance(args.user, args.balance)
        if args.holding > 0:
            ledgers.positions.set_position(
                PositionRecord(
                    user_id=args.user,
                    asset_id=args.asset,
                    symbol=request.symbol,
                    asset_type=request.asset_type,
                    quantity=args.holding,
                    average_cost=args.cost if args.cost is not None else args.price,
                )
            )
        orchestrator = SettlementOrchestrator(ledgers)
    try:
        result = await orchestrator.execute(request)
    finally:
        if store is not None:
            await store.dispose()
    print(json.dumps(result.to_response(), indent=2))
    print(user_message(result))
    return 0 if result.succeeded else 1


def main() -> None:
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "WARNING"))
    raise SystemExit(asyncio.run(main_async(parse_args())))


if __name__ == "__main__":
    main()
