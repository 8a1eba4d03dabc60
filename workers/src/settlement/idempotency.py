"""
Idempotency keys for ledger mutations.

Every mutating ledger call carries a key derived from the trade request,
the step and the phase (``forward`` or ``compensate``).  Retrying a call
with the same key must not apply it twice, so the key is a pure function
of its inputs.

:class:`IdempotencyRegistry` is the bookkeeping a ledger needs to honour
those keys: it remembers the outcome of each applied key and which keys
were voided by a compensation that arrived before (or instead of) the
original call.
"""

from __future__ import annotations

import hashlib
from typing import Any, Dict, Optional, Set

from .models import TradeRequest

FORWARD = "forward"
COMPENSATE = "compensate"


def derive_key(request: TradeRequest, step: str, phase: str = FORWARD) -> str:
    """Return the idempotency key for one step of a trade."""
    material = "|".join(
        [
            request.request_id,
            request.user_id,
            request.asset_id,
            request.side.value,
            repr(request.quantity),
            repr(request.unit_price),
            step,
            phase,
        ]
    )
    return hashlib.sha256(material.encode()).hexdigest()


def order_id_for(key: str) -> str:
    """Deterministic order id for the order written under ``key``."""
    return f"tx-{key[:20]}"


class IdempotencyRegistry:
    """Track applied and voided keys for a single ledger."""

    def __init__(self) -> None:
        self._applied: Dict[str, Any] = {}
        self._voided: Set[str] = set()

    def outcome(self, key: str) -> Any:
        """Return what applying ``key`` produced the first time."""
        return self._applied[key]

    def is_replay(self, key: str) -> bool:
        return key in self._applied

    def record(self, key: str, outcome: Any) -> None:
        self._applied[key] = outcome

    def was_applied(self, key: Optional[str]) -> bool:
        return key is not None and key in self._applied

    def void(self, key: str) -> None:
        self._voided.add(key)

    def is_voided(self, key: str) -> bool:
        return key in self._voided
