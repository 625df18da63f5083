"""Configuration defaults for the price intelligence engine.

Runtime-configurable settings are stored in the key-value store under
SETTINGS_KEY. These defaults are used when nothing has been saved yet.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from datetime import time, timedelta
from typing import Optional

logger = logging.getLogger(__name__)

# Database path
DB_PATH = os.environ.get("DB_PATH", "engine.db")

# AI generation endpoint (opaque to the engine; see generator.MessagesClient)
AI_API_URL = os.environ.get("AI_API_URL", "https://api.anthropic.com/v1/messages")
AI_API_KEY = os.environ.get("AI_API_KEY", "")
AI_MODEL = os.environ.get("AI_MODEL", "claude-sonnet-4-5")

SETTINGS_KEY = "settings"

# ── Defaults ───────────────────────────────────────────────────

DEFAULT_SETTINGS = {
    # Batch runs at 03:00 local time when no run has been recorded,
    # then every batch_period_hours after the last completed run.
    "batch_run_hour": 3,
    "batch_run_minute": 0,
    "batch_period_hours": 24,
    "tick_minutes": 15,
    "cache_ttl_hours": 24,
    # Past expiry an entry is only a fallback; past expiry + grace it is evicted.
    "stale_grace_hours": 168,
    "generation_timeout_seconds": 120.0,
    "max_workers": 4,
    "price_drop_threshold_pct": 15.0,
    "drop_window_days": None,
    "deal_expiry_hours": 48,
    "urgent_window_hours": 24,
    # A deal about to expire is announced once this long before its expiry.
    "deal_expiring_notice_minutes": 60,
    "min_confidence": 0.5,
    "recommendation_limit": 10,
    "history_snapshot_size": 30,
    "budget_thresholds": [0.8, 1.0],
    "scheduler_enabled": True,
    "webhook_enabled": False,
    "webhook_url": "",
    "webhook_provider": "generic",
}


@dataclass
class Settings:
    """Explicit configuration object handed to the engine and scheduler."""
    batch_run_hour: int = DEFAULT_SETTINGS["batch_run_hour"]
    batch_run_minute: int = DEFAULT_SETTINGS["batch_run_minute"]
    batch_period_hours: float = DEFAULT_SETTINGS["batch_period_hours"]
    tick_minutes: float = DEFAULT_SETTINGS["tick_minutes"]
    cache_ttl_hours: float = DEFAULT_SETTINGS["cache_ttl_hours"]
    stale_grace_hours: float = DEFAULT_SETTINGS["stale_grace_hours"]
    generation_timeout_seconds: Optional[float] = DEFAULT_SETTINGS["generation_timeout_seconds"]
    max_workers: int = DEFAULT_SETTINGS["max_workers"]
    price_drop_threshold_pct: float = DEFAULT_SETTINGS["price_drop_threshold_pct"]
    drop_window_days: Optional[float] = DEFAULT_SETTINGS["drop_window_days"]
    deal_expiry_hours: Optional[float] = DEFAULT_SETTINGS["deal_expiry_hours"]
    urgent_window_hours: float = DEFAULT_SETTINGS["urgent_window_hours"]
    deal_expiring_notice_minutes: float = DEFAULT_SETTINGS["deal_expiring_notice_minutes"]
    min_confidence: float = DEFAULT_SETTINGS["min_confidence"]
    recommendation_limit: int = DEFAULT_SETTINGS["recommendation_limit"]
    history_snapshot_size: int = DEFAULT_SETTINGS["history_snapshot_size"]
    budget_thresholds: list = field(default_factory=lambda: list(DEFAULT_SETTINGS["budget_thresholds"]))
    scheduler_enabled: bool = DEFAULT_SETTINGS["scheduler_enabled"]
    webhook_enabled: bool = DEFAULT_SETTINGS["webhook_enabled"]
    webhook_url: str = DEFAULT_SETTINGS["webhook_url"]
    webhook_provider: str = DEFAULT_SETTINGS["webhook_provider"]

    @property
    def batch_run_at(self) -> time:
        return time(self.batch_run_hour, self.batch_run_minute)

    @property
    def batch_period(self) -> timedelta:
        return timedelta(hours=self.batch_period_hours)

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(hours=self.cache_ttl_hours)

    @property
    def stale_grace(self) -> timedelta:
        return timedelta(hours=self.stale_grace_hours)

    @property
    def drop_window(self) -> Optional[timedelta]:
        if self.drop_window_days is None:
            return None
        return timedelta(days=self.drop_window_days)

    @property
    def deal_expiry(self) -> Optional[timedelta]:
        if self.deal_expiry_hours is None:
            return None
        return timedelta(hours=self.deal_expiry_hours)

    @property
    def urgent_window(self) -> timedelta:
        return timedelta(hours=self.urgent_window_hours)

    @property
    def deal_expiring_notice(self) -> timedelta:
        return timedelta(minutes=self.deal_expiring_notice_minutes)

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Build settings from a dict, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    @classmethod
    def load(cls, store) -> "Settings":
        """Load settings from the key-value store, falling back to defaults."""
        raw = store.get(SETTINGS_KEY)
        if raw is None:
            return cls()
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Stored settings are unreadable, using defaults: {e}")
            return cls()
        return cls.from_dict(data)

    def save(self, store):
        store.put(SETTINGS_KEY, json.dumps(asdict(self), sort_keys=True).encode("utf-8"))

    def update(self, store, **changes) -> "Settings":
        """Apply changes, persist them, and return the new settings."""
        merged = {**asdict(self), **changes}
        updated = Settings.from_dict(merged)
        updated.save(store)
        return updated
