"""
Alert Service
=============

This service subscribes to ``reconciliation_needed`` events on the
internal event bus and notifies support that a trade is stuck with
partially committed ledger writes.  Each alert lists the trade, the
steps that committed and the compensations that failed, which is what
an operator needs to repair the ledgers by hand.

Configuration
-------------

``ALERT_ENABLE``
    Set to ``true``/``1``/``yes`` to enable alerting.  If not set, the
    service still consumes events but only logs them.

``SLACK_BOT_TOKEN`` / ``SLACK_CHANNEL_ID``
    Credentials for Slack notifications.  ``SLACK_ALERT_CHANNEL``
    overrides the channel.  Without both a token and a channel, alerts
    are written to the log at WARNING.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Optional

from slack_sdk import WebClient

from .reconciliation import EVENT_TYPE

logger = logging.getLogger(__name__)


def format_alert(case: Dict[str, Any]) -> str:
    return (
        f"Trade {case.get('request_id')} needs manual reconciliation: "
        f"{case.get('side')} {case.get('quantity')} {case.get('symbol')} "
        f"for user {case.get('user_id')} (total {float(case.get('total') or 0):.2f}). "
        f"Committed: {', '.join(case.get('committed_steps') or []) or 'none'}. "
        f"Failed compensations: {', '.join(case.get('failed_compensations') or []) or 'none'}."
    )


class AlertService:
    """Subscribe to reconciliation cases and send Slack alerts."""

    def __init__(self, event_bus: Any) -> None:
        self.event_bus = event_bus
        self.enabled = os.getenv("ALERT_ENABLE", "false").lower() in {"true", "1", "yes"}
        self.slack_token = os.getenv("SLACK_BOT_TOKEN")
        self.slack_channel = os.getenv("SLACK_ALERT_CHANNEL") or os.getenv("SLACK_CHANNEL_ID")
        self.client: Optional[WebClient] = None
        if self.enabled and self.slack_token:
            self.client = WebClient(token=self.slack_token)
        if self.enabled and not (self.slack_token and self.slack_channel):
            logger.warning(
                "Alerts enabled but no Slack token/channel provided; falling back to console logging"
            )

    async def _send_slack_message(self, text: str) -> None:
        """Send a message to Slack if configured; otherwise log."""
        if self.client and self.slack_channel:
            try:
                await asyncio.to_thread(
                    self.client.chat_postMessage, channel=self.slack_channel, text=text
                )
                logger.info("Sent Slack alert: %s", text)
                return
            except Exception as exc:
                logger.error("Failed to send Slack alert: %s", exc)
        logger.warning("ALERT: %s", text)

    async def run(self) -> None:
        """Listen for reconciliation cases and alert on each one."""
        if self.event_bus is None:
            logger.error("AlertService requires an event bus")
            return
        logger.info(
            "AlertService started; enabled=%s, slack_channel=%s", self.enabled, self.slack_channel
        )
        async for case in self.event_bus.subscribe(EVENT_TYPE):
            if not isinstance(case, dict):
                continue
            text = format_alert(case)
            if not self.enabled:
                logger.info("Reconciliation case (alerts disabled): %s", text)
                continue
            await self._send_slack_message(text)
