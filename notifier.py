"""Alert delivery: message formatting and notification sinks.

WebhookSink posts to a webhook endpoint with provider-specific payload
formatting; MemorySink keeps deliveries in memory for tests and dry runs.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

import requests

from models import BudgetAlert, DailyDigest, DealAlert, PriceAlert, ReorderAlert

logger = logging.getLogger(__name__)

RETRY_DELAYS = (1, 3, 9)


class NotificationSink(Protocol):
    def deliver(self, title: str, body: str, target_key: str) -> bool:
        """Deliver one message. Returns True if it was sent."""
        ...


def _default_name(product_id: str) -> str:
    return product_id


def format_alert(alert, product_name: Callable[[str], str] = _default_name) -> tuple[str, str, str]:
    """Map an alert to (title, body, target_key)."""
    if isinstance(alert, DealAlert):
        body = (
            f"{product_name(alert.product_id)} is {alert.discount_percentage:.0f}% off at "
            f"{alert.retailer.name}: ${alert.current_price:.2f} (was ${alert.previous_price:.2f})"
        )
        return "Major Price Drop!", body, f"deal:{alert.product_id}"
    if isinstance(alert, PriceAlert):
        return "Target Price Met!", alert.message, f"target:{alert.product_id}"
    if isinstance(alert, ReorderAlert):
        body = (
            f"{product_name(alert.product_id)} is running low "
            f"({alert.current_quantity} of {alert.preferred_quantity} left)"
        )
        return "Time to Restock", body, f"restock:{alert.product_id}"
    if isinstance(alert, BudgetAlert):
        return "Budget Alert", alert.message, f"budget:{alert.threshold_key}"
    raise TypeError(f"not an alert: {alert!r}")


def format_expiring_deal(alert: DealAlert, remaining, product_name: Callable[[str], str] = _default_name
                         ) -> tuple[str, str, str]:
    minutes = max(int(remaining.total_seconds() // 60), 1)
    if minutes >= 60 and minutes % 60 == 0:
        hours = minutes // 60
        left = f"{hours} hour" + ("s" if hours != 1 else "")
    else:
        left = f"{minutes} minute" + ("s" if minutes != 1 else "")
    body = f"{product_name(alert.product_id)} deal expires in {left}. Save ${alert.savings:.2f}"
    return "Deal Expiring Soon!", body, f"expiring:{alert.product_id}"


def format_digest(digest: DailyDigest) -> tuple[str, str, str]:
    parts = [f"{digest.deal_count} deals worth ${digest.total_savings:.2f}"]
    if digest.urgent_deals:
        parts.append(f"{digest.urgent_deals} expiring soon")
    if digest.restock_reminders:
        parts.append(f"{digest.restock_reminders} items to restock")
    return "Your Daily Shopping Digest", ", ".join(parts), "digest"


# ── Webhook ────────────────────────────────────────────────────

def _canonical_event(event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "schema_version": 1,
        "data": data,
    }


def _format_discord(event: dict[str, Any]) -> dict[str, Any]:
    data = event["data"]
    content = f"**{data.get('title', '')}**\n{data.get('body', '')}"
    return {"content": content[:1900]}


def _format_google_chat(event: dict[str, Any]) -> dict[str, Any]:
    data = event["data"]
    return {"text": f"*{data.get('title', '')}*\n{data.get('body', '')}"}


def _format_payload(provider: str, event: dict[str, Any]) -> dict[str, Any]:
    if provider == "discord":
        return _format_discord(event)
    if provider == "google_chat":
        return _format_google_chat(event)
    return event


class WebhookSink:
    """Posts each message to a webhook, retrying with increasing delays."""

    def __init__(self, url: str, provider: str = "generic", timeout: float = 5,
                 delays=RETRY_DELAYS, sleep: Callable[[float], None] = time.sleep,
                 session: Optional[requests.Session] = None):
        self.url = url.strip()
        self.provider = (provider or "generic").strip().lower()
        self.timeout = timeout
        self.delays = tuple(delays)
        self.sleep = sleep
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings) -> Optional["WebhookSink"]:
        """A sink for the configured webhook, or None when webhooks are off."""
        if not settings.webhook_enabled or not (settings.webhook_url or "").strip():
            return None
        return cls(settings.webhook_url, settings.webhook_provider)

    def deliver(self, title: str, body: str, target_key: str) -> bool:
        event = _canonical_event("notification", {"title": title, "body": body, "target": target_key})
        payload = _format_payload(self.provider, event)

        for idx in range(len(self.delays) + 1):
            try:
                resp = self.session.post(self.url, json=payload, timeout=self.timeout)
                resp.raise_for_status()
                return True
            except requests.RequestException as e:
                if idx >= len(self.delays):
                    logger.warning(f"Webhook delivery failed for {target_key}: {e}")
                    return False
                self.sleep(self.delays[idx])
        return False


class MemorySink:
    """Records deliveries instead of sending them."""

    def __init__(self):
        self.deliveries: list[tuple[str, str, str]] = []
        self._lock = threading.Lock()

    def deliver(self, title: str, body: str, target_key: str) -> bool:
        with self._lock:
            self.deliveries.append((title, body, target_key))
        return True
