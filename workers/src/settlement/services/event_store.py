"""Append-only audit log of settlement events in JSON Lines format.

Each call to ``log`` appends one line holding the event type, a UTC
timestamp and the payload.  File writes are performed via
``asyncio.to_thread`` to avoid blocking the event loop.

Set ``EVENT_STORE_PATH`` to enable the audit log.  The orchestrator
records trade submissions, every committed or failed step, every
compensation and the terminal result, which is enough to replay what
happened to a trade during an investigation.
"""

from __future__ import annotations

import asyncio
import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List


class EventStore:
    """Append-only JSON Lines event logger."""

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._lock = asyncio.Lock()

    async def log(self, event_type: str, data: Dict[str, Any]) -> None:
        """Append an event to the log file.

        Args:
            event_type: A string identifying the type of event.
            data: A dictionary of event data.  Must be JSON serializable.
        """
        entry = {
            "type": event_type,
            "ts": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        line = json.dumps(entry, ensure_ascii=False) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append_to_file, line)

    async def read_all(self) -> List[Dict[str, Any]]:
        """Return every logged event, oldest first."""
        async with self._lock:
            return await asyncio.to_thread(self._read_file)

    def _append_to_file(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def _read_file(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
