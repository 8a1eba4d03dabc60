from __future__ import annotations

import asyncio
import logging
from typing import List, Tuple

from ..models import SettlementResult, TradeRequest
from ..orchestrator import SettlementOrchestrator

logger = logging.getLogger(__name__)

QueueItem = Tuple[TradeRequest, "asyncio.Future[SettlementResult]"]


class SettlementService:
    """Queue in front of the orchestrator, drained by a pool of workers.

    Each worker settles one trade at a time; running several workers lets
    independent trades settle concurrently.
    """

    def __init__(self, orchestrator: SettlementOrchestrator, workers: int = 4) -> None:
        self.orchestrator = orchestrator
        self.workers = max(1, workers)
        self.queue: "asyncio.Queue[QueueItem]" = asyncio.Queue()

    async def submit(self, request: TradeRequest) -> "asyncio.Future[SettlementResult]":
        """Enqueue ``request``; the returned future resolves to its result."""
        future: "asyncio.Future[SettlementResult]" = asyncio.get_running_loop().create_future()
        await self.queue.put((request, future))
        return future

    async def settle(self, request: TradeRequest) -> SettlementResult:
        future = await self.submit(request)
        return await future

    async def worker_loop(self, worker_id: int = 0) -> None:
        while True:
            request, future = await self.queue.get()
            try:
                result = await self.orchestrator.execute(request)
            except Exception as exc:
                logger.exception("Worker %d failed to settle trade %s", worker_id, request.request_id)
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self.queue.task_done()

    async def run(self) -> None:
        """Run the worker pool until cancelled."""
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self.worker_loop(i)) for i in range(self.workers)
        ]
        logger.info("Settlement service started with %d workers", self.workers)
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                task.cancel()
