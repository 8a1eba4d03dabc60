"""
Sequential saga runner.

A saga is a fixed list of steps, each pairing a forward action with the
compensating action that semantically undoes it.  Forward actions run
strictly one after another; the first failure stops the forward path.
Compensation then walks the steps that (may have) committed in reverse
order, retrying each a bounded number of times with exponential backoff.

A step counts as possibly committed unless its ledger explicitly refused
it (:class:`LedgerRejected`).  Timeouts and transport failures leave the
outcome unknown, so the step is compensated; ledgers treat compensation
of a key that never applied as a no-op.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from .errors import LedgerRejected, LedgerTimeout

logger = logging.getLogger(__name__)

Action = Callable[[], Awaitable[Any]]


@dataclass
class SagaStep:
    name: str
    action: Action
    compensation: Action


@dataclass
class StepFailure:
    step: str
    error: BaseException
    # True when the ledger may have applied the step despite the error
    ambiguous: bool

    @property
    def rejection_reason(self) -> Optional[str]:
        if isinstance(self.error, LedgerRejected):
            return self.error.reason
        return None


@dataclass
class ForwardOutcome:
    committed: List[SagaStep] = field(default_factory=list)
    failure: Optional[StepFailure] = None
    results: Dict[str, Any] = field(default_factory=dict)
    # Set only when the failed step may have applied
    uncertain_step: Optional[SagaStep] = None

    @property
    def to_compensate(self) -> List[SagaStep]:
        """Steps to undo: every committed step plus an uncertain failed one."""
        if self.uncertain_step is None:
            return list(self.committed)
        return list(self.committed) + [self.uncertain_step]


class Saga:
    """Run steps in order and undo them in reverse on failure."""

    def __init__(
        self,
        steps: List[SagaStep],
        *,
        step_timeout: float = 15.0,
        compensation_attempts: int = 3,
        backoff_min: float = 0.5,
        backoff_max: float = 8.0,
        on_event: Optional[Callable[[str, Dict[str, Any]], Awaitable[None]]] = None,
    ) -> None:
        self.steps = steps
        self.step_timeout = step_timeout
        self.compensation_attempts = max(1, compensation_attempts)
        self.backoff_min = backoff_min
        self.backoff_max = backoff_max
        self._on_event = on_event

    async def _emit(self, event_type: str, data: Dict[str, Any]) -> None:
        if self._on_event is not None:
            await self._on_event(event_type, data)

    async def _call(self, step: SagaStep, action: Action) -> Any:
        try:
            return await asyncio.wait_for(action(), timeout=self.step_timeout)
        except asyncio.TimeoutError as exc:
            raise LedgerTimeout(
                f"step {step.name} exceeded {self.step_timeout}s", ledger=step.name
            ) from exc

    async def run_forward(self) -> ForwardOutcome:
        outcome = ForwardOutcome()
        for step in self.steps:
            try:
                outcome.results[step.name] = await self._call(step, step.action)
            except Exception as exc:
                ambiguous = not isinstance(exc, LedgerRejected)
                outcome.failure = StepFailure(step=step.name, error=exc, ambiguous=ambiguous)
                if ambiguous:
                    outcome.uncertain_step = step
                logger.warning(
                    "Step %s failed (%s: %s); outcome %s",
                    step.name,
                    type(exc).__name__,
                    exc,
                    "unknown" if ambiguous else "refused",
                )
                await self._emit(
                    "step_failed",
                    {"step": step.name, "error": str(exc), "ambiguous": ambiguous},
                )
                return outcome
            outcome.committed.append(step)
            await self._emit("step_committed", {"step": step.name})
        return outcome

    async def compensate(self, steps: List[SagaStep]) -> List[str]:
        """Undo ``steps`` in reverse order; return the names that could not be undone."""
        failed: List[str] = []
        for step in reversed(steps):
            retrying = AsyncRetrying(
                stop=stop_after_attempt(self.compensation_attempts),
                wait=wait_exponential(min=self.backoff_min, max=self.backoff_max),
                reraise=True,
            )
            try:
                async for attempt in retrying:
                    with attempt:
                        if attempt.retry_state.attempt_number > 1:
                            logger.info(
                                "Retrying compensation of %s (attempt %d/%d)",
                                step.name,
                                attempt.retry_state.attempt_number,
                                self.compensation_attempts,
                            )
                        await self._call(step, step.compensation)
            except Exception as exc:
                logger.error(
                    "Compensation of %s failed after %d attempts: %s",
                    step.name,
                    self.compensation_attempts,
                    exc,
                )
                failed.append(step.name)
                await self._emit("compensation_failed", {"step": step.name, "error": str(exc)})
                continue
            await self._emit("compensation_applied", {"step": step.name})
        return failed
