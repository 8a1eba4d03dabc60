"""Integration tests for the HTTP ledgers against an in-process backend.

The fake backend below implements the subset of the trading API the
ledgers use, including ``Idempotency-Key`` deduplication and the
``compensates`` convention, on top of an :mod:`aiohttp.web` application.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from settlement.clients.http_ledger import HttpLedgerClient, http_ledger_set, position_from_payload
from settlement.errors import LedgerError, LedgerRejected, LedgerTimeout
from settlement.models import PositionDelta, merge_position
from settlement.orchestrator import SettlementOrchestrator

# (status, JSON body or None for an empty response)
Reply = Tuple[int, Optional[Any]]


def _respond(reply: Reply) -> web.Response:
    status, body = reply
    if body is None:
        return web.Response(status=status)
    return web.json_response(body, status=status)


def _refusal(reason: Optional[str]) -> Reply:
    return 409, {"error": "refused", "reason": reason}


class FakeBackend:
    def __init__(self) -> None:
        self.base_url = ""
        self.stock: Dict[str, float] = {"AAPL": 5}
        self.balances: Dict[str, float] = {"alice": 100.0}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.applied: Dict[str, Reply] = {}
        self.voided: set = set()
        self.requests: List[Dict[str, Any]] = []
        # Number of upcoming requests answered with 503 before processing
        self.fail_next = 0
        self.delay = 0.0
        # When set, the balance is reset to this value just before a withdrawal
        self.drain_to: Optional[float] = None

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self.middleware])
        app.router.add_get("/api/assets/{asset_id}", self.get_asset)
        app.router.add_post("/api/assets/{asset_id}/stock", self.adjust_stock)
        app.router.add_get("/api/wallet/{user_id}/balance", self.get_balance)
        app.router.add_post("/api/wallet/{user_id}/{action}", self.move_funds)
        app.router.add_get("/api/orders/{order_id}", self.get_order)
        app.router.add_post("/api/orders", self.create_order)
        app.router.add_get("/api/portfolio/{user_id}", self.get_portfolio)
        app.router.add_post("/api/portfolio/{user_id}/adjust", self.adjust_portfolio)
        app.router.add_get("/api/broken", self.broken)
        return app

    @web.middleware
    async def middleware(self, request: web.Request, handler: Any) -> web.StreamResponse:
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "auth": request.headers.get("Authorization"),
                "key": request.headers.get("Idempotency-Key"),
            }
        )
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_next > 0:
            self.fail_next -= 1
            return web.json_response({"error": "unavailable"}, status=503)
        return await handler(request)

    async def _keyed(
        self,
        request: web.Request,
        apply: Callable[[Dict[str, Any]], Reply],
        current: Callable[[], Reply],
    ) -> web.Response:
        key = request.headers["Idempotency-Key"]
        body = await request.json()
        if key in self.applied:
            return _respond(self.applied[key])
        if key in self.voided:
            return _respond(_refusal(None))
        compensates = body.pop("compensates", None)
        if compensates is not None and compensates not in self.applied:
            self.voided.add(compensates)
            reply = current()
        else:
            reply = apply(body)
            if reply[0] == 409:
                return _respond(reply)
        self.applied[key] = reply
        return _respond(reply)

    async def get_asset(self, request: web.Request) -> web.Response:
        asset_id = request.match_info["asset_id"]
        if asset_id not in self.stock:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response({"_id": asset_id, "availableStock": self.stock[asset_id]})

    async def adjust_stock(self, request: web.Request) -> web.Response:
        asset_id = request.match_info["asset_id"]

        def apply(body: Dict[str, Any]) -> Reply:
            value = self.stock.get(asset_id, 0) + body["delta"]
            if value < body.get("floor", 0):
                return _refusal("InsufficientStock")
            self.stock[asset_id] = value
            return 200, {"availableStock": value}

        return await self._keyed(
            request, apply, lambda: (200, {"availableStock": self.stock.get(asset_id, 0)})
        )

    async def get_balance(self, request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]
        if user_id not in self.balances:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response({"balance": self.balances[user_id]})

    async def move_funds(self, request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]
        withdraw = request.match_info["action"] == "withdraw"
        if withdraw and self.drain_to is not None:
            self.balances[user_id] = self.drain_to

        def apply(body: Dict[str, Any]) -> Reply:
            amount = -body["amount"] if withdraw else body["amount"]
            value = self.balances.get(user_id, 0.0) + amount
            if value < 0:
                return _refusal("InsufficientFunds")
            self.balances[user_id] = value
            return 200, {"balance": value}

        return await self._keyed(
            request, apply, lambda: (200, {"balance": self.balances.get(user_id, 0.0)})
        )

    async def get_order(self, request: web.Request) -> web.Response:
        order = self.orders.get(request.match_info["order_id"])
        if order is None:
            return web.json_response({"error": "not found"}, status=404)
        return web.json_response(order)

    async def create_order(self, request: web.Request) -> web.Response:
        def apply(body: Dict[str, Any]) -> Reply:
            self.orders[body["_id"]] = body
            return 201, body

        return await self._keyed(request, apply, lambda: (204, None))

    async def get_portfolio(self, request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]
        return web.json_response([p for p in self.positions.values() if p["userId"] == user_id])

    async def adjust_portfolio(self, request: web.Request) -> web.Response:
        user_id = request.match_info["user_id"]

        def apply(body: Dict[str, Any]) -> Reply:
            slot = f"{user_id}/{body['assetId']}"
            existing = self.positions.get(slot)
            current = position_from_payload(user_id, existing) if existing else None
            delta = PositionDelta(
                quantity=body["delta"],
                unit_price=body.get("price"),
                symbol=body["symbol"],
                asset_type=body["type"],
            )
            try:
                updated = merge_position(current, user_id, body["assetId"], delta)
            except LedgerRejected as exc:
                return _refusal(exc.reason)
            if updated is None:
                self.positions.pop(slot, None)
                return 204, None
            self.positions[slot] = {
                "userId": user_id,
                "assetId": updated.asset_id,
                "symbol": updated.symbol,
                "type": updated.asset_type.value,
                "quantity": updated.quantity,
                "averageCost": updated.average_cost,
            }
            return 200, self.positions[slot]

        return await self._keyed(request, apply, lambda: (204, None))

    async def broken(self, request: web.Request) -> web.Response:
        return web.json_response({"error": "bad request"}, status=400)


@pytest.fixture
async def backend():
    fake = FakeBackend()
    server = TestServer(fake.app())
    await server.start_server()
    fake.base_url = str(server.make_url("/api"))
    yield fake
    await server.close()


def _client(backend: FakeBackend, **kwargs: Any) -> HttpLedgerClient:
    kwargs.setdefault("backoff_min", 0)
    kwargs.setdefault("backoff_max", 0)
    return HttpLedgerClient(backend.base_url, "test-token", **kwargs)


def _orchestrator(backend: FakeBackend) -> SettlementOrchestrator:
    return SettlementOrchestrator(http_ledger_set(_client(backend)), backoff_min=0, backoff_max=0)


@pytest.mark.asyncio
async def test_reads_map_payloads_and_missing_resources(backend) -> None:
    ledgers = http_ledger_set(_client(backend))
    assert (await ledgers.stock.read("AAPL")).available_quantity == 5
    assert await ledgers.stock.read("MSFT") is None
    assert (await ledgers.wallet.read("alice")).balance == pytest.approx(100.0)
    assert await ledgers.wallet.read("bob") is None
    assert await ledgers.positions.read("alice", "AAPL") is None
    assert backend.requests[0]["auth"] == "Bearer test-token"


@pytest.mark.asyncio
async def test_transport_failures_are_retried_with_same_key(backend) -> None:
    ledgers = http_ledger_set(_client(backend, retry_attempts=3))
    backend.fail_next = 2
    record = await ledgers.stock.apply_delta("AAPL", -2, idempotency_key="key-1")

    assert record.available_quantity == 3
    posts = [r for r in backend.requests if r["method"] == "POST"]
    assert len(posts) == 3
    assert {r["key"] for r in posts} == {"key-1"}


@pytest.mark.asyncio
async def test_replayed_key_is_applied_once(backend) -> None:
    ledgers = http_ledger_set(_client(backend))
    await ledgers.wallet.apply_delta("alice", -30.0, idempotency_key="key-1")
    record = await ledgers.wallet.apply_delta("alice", -30.0, idempotency_key="key-1")
    assert record.balance == pytest.approx(70.0)
    assert backend.balances["alice"] == pytest.approx(70.0)


@pytest.mark.asyncio
async def test_refusal_is_not_retried(backend) -> None:
    ledgers = http_ledger_set(_client(backend, retry_attempts=3))
    with pytest.raises(LedgerRejected) as excinfo:
        await ledgers.wallet.apply_delta("alice", -500.0, idempotency_key="key-1")
    assert excinfo.value.reason == "InsufficientFunds"
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_client_errors_are_not_retried(backend) -> None:
    client = _client(backend, retry_attempts=3)
    with pytest.raises(LedgerError):
        await client.get("/broken")
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_slow_backend_times_out(backend) -> None:
    backend.delay = 0.5
    client = _client(backend, retry_attempts=1, request_timeout=0.05)
    with pytest.raises(LedgerTimeout):
        await client.get("/assets/AAPL")


@pytest.mark.asyncio
async def test_buy_settles_over_http(backend, make_request) -> None:
    orchestrator = _orchestrator(backend)
    result = await orchestrator.execute(make_request(quantity=2, unit_price=40.0))

    assert result.status == "settled"
    assert backend.stock["AAPL"] == 3
    assert backend.balances["alice"] == pytest.approx(20.0)
    assert backend.orders[result.order_id]["total"] == pytest.approx(80.0)
    assert backend.positions["alice/AAPL"]["quantity"] == 2
    assert all(r["key"] for r in backend.requests if r["method"] == "POST")
    order = await orchestrator.ledgers.orders.read(result.order_id)
    assert order.kind == "trade"


@pytest.mark.asyncio
async def test_refused_debit_is_compensated_over_http(backend, make_request) -> None:
    # The balance drops between the snapshot and the debit
    backend.drain_to = 10.0
    result = await _orchestrator(backend).execute(make_request(quantity=2, unit_price=40.0))

    assert result.status == "reverted"
    assert result.reason == "InsufficientFunds"
    assert backend.stock["AAPL"] == 5
    assert "alice/AAPL" not in backend.positions
    assert sorted(o["kind"] for o in backend.orders.values()) == ["reversal", "trade"]
