"""
HTTP ledger clients with rate limiting, timeouts and idempotent retries.

This module talks to the trading backend's REST API, which owns the
asset, wallet, order and portfolio collections.  Every mutating request
carries an ``Idempotency-Key`` header; the backend deduplicates on it,
so transport failures are retried with the same key.  Conditional
refusals (HTTP 409/422) are never retried.

Endpoints used (relative to ``base_url``):

* ``GET  /assets/{asset_id}`` and ``POST /assets/{asset_id}/stock``
* ``GET  /wallet/{user_id}/balance``, ``POST /wallet/{user_id}/deposit``
  and ``POST /wallet/{user_id}/withdraw``
* ``GET  /orders/{order_id}`` and ``POST /orders``
* ``GET  /portfolio/{user_id}`` and ``POST /portfolio/{user_id}/adjust``

Compensating calls add ``"compensates": <original key>`` to the body.
A ``204 No Content`` answer means the backend voided the original key or
deleted the resource (a fully sold position).
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import ClientResponse
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..config import SettlementConfig
from ..errors import LedgerError, LedgerRejected, LedgerTimeout, LedgerUnavailable
from ..models import (
    OrderRecord,
    PositionDelta,
    PositionRecord,
    StockRecord,
    WalletRecord,
)
from .base import LedgerSet, OrderLog, PositionStore, StockLedger, WalletLedger

logger = logging.getLogger(__name__)

_NO_CONTENT = object()


class HttpLedgerClient:
    """Asynchronous REST client shared by the HTTP ledgers."""

    def __init__(
        self,
        base_url: str = "http://localhost:3001/api",
        api_token: str = "",
        *,
        request_timeout: float = 5.0,
        max_requests_per_minute: int = 600,
        retry_attempts: int = 3,
        backoff_min: float = 0.5,
        backoff_max: float = 4.0,
    ) -> None:
        """Construct the HTTP client.

        Args:
            base_url: Trading backend API root.
            api_token: Bearer token sent on every request; omitted when empty.
            request_timeout: Total timeout for one HTTP request, in seconds.
            max_requests_per_minute: Maximum number of REST requests per minute.
            retry_attempts: Attempts per call for transport failures.
            backoff_min: Minimum wait between attempts, in seconds.
            backoff_max: Maximum wait between attempts, in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.api_token = api_token
        self.request_timeout = request_timeout
        self.retry_attempts = max(1, retry_attempts)
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        # Token bucket to enforce the per-minute request limit
        self.max_requests_per_minute = max_requests_per_minute
        self.tokens = max_requests_per_minute
        self._token_lock = asyncio.Lock()
        self._last_refill = time.monotonic()
        self._token_interval = (
            60.0 / max_requests_per_minute if max_requests_per_minute > 0 else 60.0
        )

    @classmethod
    def from_config(cls, config: SettlementConfig) -> "HttpLedgerClient":
        return cls(
            config.ledger_base_url,
            config.ledger_api_token,
            request_timeout=config.call_timeout,
            max_requests_per_minute=config.max_requests_per_minute,
            retry_attempts=config.retry_attempts,
        )

    def _headers(self, idempotency_key: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _acquire_token(self) -> None:
        """Wait until a request token is available based on the token bucket."""
        while True:
            async with self._token_lock:
                now = time.monotonic()
                elapsed = now - self._last_refill
                if elapsed > 0 and self.max_requests_per_minute > 0:
                    new_tokens = int(elapsed / self._token_interval)
                    if new_tokens > 0:
                        self.tokens = min(self.max_requests_per_minute, self.tokens + new_tokens)
                        self._last_refill = now
                if self.tokens > 0:
                    self.tokens -= 1
                    return
            await asyncio.sleep(self._token_interval)

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Any:
        await self._acquire_token()
        url = f"{self.base_url}{path}"
        body = json.dumps(payload) if payload is not None else None
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(
                    method, url, headers=self._headers(idempotency_key), data=body
                ) as resp:
                    if method == "GET" and resp.status == 404:
                        return None
                    await self._handle_response_errors(resp, path)
                    if resp.status == 204:
                        return _NO_CONTENT
                    return await resp.json()
        except asyncio.TimeoutError as exc:
            raise LedgerTimeout(f"{method} {path} timed out after {self.request_timeout}s") from exc
        except aiohttp.ClientError as exc:
            raise LedgerUnavailable(f"{method} {path} failed: {exc}") from exc

    @staticmethod
    async def _handle_response_errors(resp: ClientResponse, path: str) -> None:
        if resp.status < 400:
            return
        # Avoid logging full response bodies; truncate to prevent leakage
        text = await resp.text()
        truncated = text[:200] if text else ""
        if resp.status in (409, 422):
            reason = None
            try:
                reason = json.loads(text).get("reason")
            except (ValueError, AttributeError):
                pass
            raise LedgerRejected(f"{path} refused: {truncated}", reason=reason)
        logger.error("Ledger API error %s on %s: %s", resp.status, path, truncated)
        if resp.status >= 500 or resp.status == 429:
            raise LedgerUnavailable(f"Ledger API error {resp.status}")
        raise LedgerError(f"Ledger API error {resp.status}")

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(min=self.backoff_min, max=self.backoff_max),
            retry=retry_if_exception_type((LedgerUnavailable, LedgerTimeout)),
            reraise=True,
        )

    async def get(self, path: str) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await self._request("GET", path)

    async def post(self, path: str, payload: Dict[str, Any], idempotency_key: str) -> Any:
        async for attempt in self._retrying():
            with attempt:
                return await self._request("POST", path, payload, idempotency_key)


def _with_compensates(payload: Dict[str, Any], compensates: Optional[str]) -> Dict[str, Any]:
    if compensates is not None:
        payload["compensates"] = compensates
    return payload


def order_to_payload(record: OrderRecord) -> Dict[str, Any]:
    return {
        "_id": record.id,
        "userId": record.user_id,
        "assetId": record.asset_id,
        "symbol": record.symbol,
        "type": record.asset_type.value,
        "side": record.side.value,
        "kind": record.kind,
        "quantity": record.quantity,
        "price": record.price,
        "total": record.total,
        "fees": record.fees,
        "status": record.status,
        "reverses": record.reverses,
        "timestamp": record.timestamp.isoformat(),
    }


def order_from_payload(data: Dict[str, Any]) -> OrderRecord:
    return OrderRecord(
        id=data.get("_id") or data["id"],
        user_id=data["userId"],
        asset_id=data["assetId"],
        symbol=data.get("symbol", ""),
        asset_type=data.get("type", "stock"),
        side=data["side"],
        kind=data.get("kind", "trade"),
        quantity=data["quantity"],
        price=data["price"],
        total=data["total"],
        fees=data.get("fees", 0.0),
        status=data.get("status", "completed"),
        reverses=data.get("reverses"),
        timestamp=data["timestamp"],
    )


def position_from_payload(user_id: str, data: Dict[str, Any]) -> PositionRecord:
    return PositionRecord(
        user_id=user_id,
        asset_id=data["assetId"],
        symbol=data.get("symbol", ""),
        asset_type=data.get("type", "stock"),
        quantity=data["quantity"],
        average_cost=data.get("averageCost", data.get("buyPrice", 0.0)),
    )


class HttpStockLedger(StockLedger):
    def __init__(self, client: HttpLedgerClient) -> None:
        self.client = client

    async def read(self, asset_id: str) -> Optional[StockRecord]:
        data = await self.client.get(f"/assets/{asset_id}")
        if data is None:
            return None
        return StockRecord(asset_id=asset_id, available_quantity=data.get("availableStock", 0))

    async def apply_delta(
        self,
        asset_id: str,
        delta: float,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> StockRecord:
        payload = _with_compensates({"delta": delta, "floor": 0}, compensates)
        data = await self.client.post(f"/assets/{asset_id}/stock", payload, idempotency_key)
        return StockRecord(asset_id=asset_id, available_quantity=data["availableStock"])


class HttpWalletLedger(WalletLedger):
    def __init__(self, client: HttpLedgerClient) -> None:
        self.client = client

    async def read(self, user_id: str) -> Optional[WalletRecord]:
        data = await self.client.get(f"/wallet/{user_id}/balance")
        if data is None:
            return None
        return WalletRecord(user_id=user_id, balance=data.get("balance", 0))

    async def apply_delta(
        self,
        user_id: str,
        delta: float,
        *,
        idempotency_key: str,
        payment_method: str = "wallet",
        compensates: Optional[str] = None,
    ) -> WalletRecord:
        action = "deposit" if delta >= 0 else "withdraw"
        payload = _with_compensates(
            {"amount": abs(delta), "paymentMethod": payment_method}, compensates
        )
        data = await self.client.post(f"/wallet/{user_id}/{action}", payload, idempotency_key)
        return WalletRecord(user_id=user_id, balance=data["balance"])


class HttpOrderLog(OrderLog):
    def __init__(self, client: HttpLedgerClient) -> None:
        self.client = client

    async def read(self, order_id: str) -> Optional[OrderRecord]:
        data = await self.client.get(f"/orders/{order_id}")
        return order_from_payload(data) if data is not None else None

    async def append(
        self,
        record: OrderRecord,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> Optional[OrderRecord]:
        payload = _with_compensates(order_to_payload(record), compensates)
        data = await self.client.post("/orders", payload, idempotency_key)
        if data is _NO_CONTENT:
            return None
        return order_from_payload(data)


class HttpPositionStore(PositionStore):
    def __init__(self, client: HttpLedgerClient) -> None:
        self.client = client

    async def list_positions(self, user_id: str) -> List[PositionRecord]:
        data = await self.client.get(f"/portfolio/{user_id}")
        return [position_from_payload(user_id, item) for item in data or []]

    async def read(self, user_id: str, asset_id: str) -> Optional[PositionRecord]:
        for position in await self.list_positions(user_id):
            if position.asset_id == asset_id:
                return position
        return None

    async def apply_delta(
        self,
        user_id: str,
        asset_id: str,
        delta: PositionDelta,
        *,
        idempotency_key: str,
        compensates: Optional[str] = None,
    ) -> Optional[PositionRecord]:
        payload = _with_compensates(
            {
                "assetId": asset_id,
                "symbol": delta.symbol,
                "type": delta.asset_type.value,
                "delta": delta.quantity,
                "price": delta.unit_price,
            },
            compensates,
        )
        data = await self.client.post(f"/portfolio/{user_id}/adjust", payload, idempotency_key)
        if data is _NO_CONTENT:
            return None
        return position_from_payload(user_id, data)


def http_ledger_set(client: HttpLedgerClient) -> LedgerSet:
    """Build the four HTTP ledgers over one shared client.

    The card path has no HTTP collaborator; card-paid buys are rejected
    unless a gateway is attached to the returned set.
    """
    return LedgerSet(
        stock=HttpStockLedger(client),
        wallet=HttpWalletLedger(client),
        orders=HttpOrderLog(client),
        positions=HttpPositionStore(client),
    )
