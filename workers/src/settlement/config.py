"""
Runtime configuration for the settlement workers.

All settings come from environment variables, read once by
:meth:`SettlementConfig.from_env`.  Boolean flags follow the worker
convention: anything other than ``false``, ``0`` or ``no`` is true.

``LEDGER_MODE`` selects the ledger backend:

* ``paper`` – in-memory ledgers (default; nothing is persisted).
* ``http`` – the trading backend's REST API at ``LEDGER_BASE_URL``.
* ``db`` – the SQLAlchemy store at ``STATE_STORE_URI``.

The bearer token for ``http`` mode is read from ``LEDGER_API_TOKEN``; if
that is empty, from the file named by ``LEDGER_API_TOKEN_FILE``.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

LEDGER_MODES = ("paper", "http", "db")


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() not in ("false", "0", "no")


def _load_token() -> str:
    token = os.environ.get("LEDGER_API_TOKEN", "")
    if token:
        return token
    token_path = os.environ.get("LEDGER_API_TOKEN_FILE")
    if token_path and os.path.exists(token_path):
        with open(token_path, "r", encoding="utf-8") as f:
            logger.debug("Loaded ledger API token from %s", token_path)
            return f.read().strip()
    return ""


@dataclass
class SettlementConfig:
    ledger_mode: str = "paper"
    ledger_base_url: str = "http://localhost:3001/api"
    ledger_api_token: str = ""
    # Per-request HTTP timeout, in seconds
    call_timeout: float = 5.0
    # Deadline for one saga step including transport retries
    step_timeout: float = 15.0
    max_requests_per_minute: int = 600
    # Transport-level attempts per ledger call (same idempotency key each time)
    retry_attempts: int = 3
    compensation_max_attempts: int = 3
    compensation_backoff_min: float = 0.5
    compensation_backoff_max: float = 8.0
    state_store_uri: Optional[str] = None
    event_store_path: Optional[str] = None
    reconciliation_queue_path: str = "reconciliation_queue.jsonl"
    prometheus_port: Optional[int] = None
    workers: int = 4
    alerts_enabled: bool = False
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "SettlementConfig":
        mode = os.environ.get("LEDGER_MODE", "paper").lower()
        if mode not in LEDGER_MODES:
            raise ConfigurationError(f"LEDGER_MODE must be one of {LEDGER_MODES}, got {mode!r}")
        uri = os.environ.get("STATE_STORE_URI") or None
        if mode == "db" and not uri:
            raise ConfigurationError("LEDGER_MODE=db requires STATE_STORE_URI")
        port = os.environ.get("PROMETHEUS_PORT")
        try:
            return cls(
                ledger_mode=mode,
                ledger_base_url=os.environ.get("LEDGER_BASE_URL", "http://localhost:3001/api"),
                ledger_api_token=_load_token(),
                call_timeout=float(os.environ.get("LEDGER_CALL_TIMEOUT", "5")),
                step_timeout=float(os.environ.get("LEDGER_STEP_TIMEOUT", "15")),
                max_requests_per_minute=int(
                    os.environ.get("LEDGER_MAX_REQUESTS_PER_MINUTE", "600")
                ),
                retry_attempts=int(os.environ.get("LEDGER_RETRY_ATTEMPTS", "3")),
                compensation_max_attempts=int(os.environ.get("COMPENSATION_MAX_ATTEMPTS", "3")),
                compensation_backoff_min=float(os.environ.get("COMPENSATION_BACKOFF_MIN", "0.5")),
                compensation_backoff_max=float(os.environ.get("COMPENSATION_BACKOFF_MAX", "8")),
                state_store_uri=uri,
                event_store_path=os.environ.get("EVENT_STORE_PATH") or None,
                reconciliation_queue_path=os.environ.get(
                    "RECONCILIATION_QUEUE_PATH", "reconciliation_queue.jsonl"
                ),
                prometheus_port=int(port) if port else None,
                workers=int(os.environ.get("SETTLEMENT_WORKERS", "4")),
                alerts_enabled=_env_flag("ALERT_ENABLE", "false"),
                log_level=os.environ.get("LOG_LEVEL", "INFO"),
            )
        except ValueError as exc:
            raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc
