"""Price engine facade: the interface the presentation layer talks to.

Mutating calls validate and apply synchronously in the caller, run the rule
engine over the change, and deliver any new alerts. Recommendation
generation goes through the cache and batch scheduler.
"""

import copy
import logging
import threading
from datetime import datetime
from typing import Callable, Iterable, Optional

import events
import rules
from aggregator import daily_digest, decode_payload, local_recommendations, merge, rank
from cache import KeyState, RecommendationCache
from config import Settings
from db import MemoryStore
from errors import InvalidInput
from generator import GenerationCapability, budget_generator, product_generator, restock_generator
from inventory import InventoryBook, estimated_run_out_date, stock_level
from ledger import LedgerBook, LedgerDelta
from models import (
    AIRecommendation,
    Budget,
    BudgetThreshold,
    DailyDigest,
    DealAlert,
    InventoryItem,
    PricePoint,
    Product,
    ProductCategory,
    ReorderAlert,
    TrackingItem,
    alert_id,
    alert_to_dict,
)
from notifier import NotificationSink, format_alert, format_digest, format_expiring_deal
from scheduler import BUDGET_KEY, RESTOCK_KEY, BatchScheduler, local_now, product_key
from tracker import TrackingRegistry

logger = logging.getLogger(__name__)


def _category(value) -> ProductCategory:
    try:
        return ProductCategory(value)
    except ValueError:
        raise InvalidInput(f"unknown category {value!r}") from None


class PriceEngine:
    def __init__(self, store=None, capability: Optional[GenerationCapability] = None,
                 sink: Optional[NotificationSink] = None, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime] = local_now,
                 is_entitled: Callable[[], bool] = lambda: True):
        self.store = store if store is not None else MemoryStore()
        self.settings = settings or Settings.load(self.store)
        self.capability = capability
        self.sink = sink
        self.clock = clock
        self.events = events.EventStream()

        self.ledgers = LedgerBook(self.settings.drop_window)
        self.tracking = TrackingRegistry()
        self.inventory = InventoryBook()
        self.alert_log = rules.AlertLog()
        self.rule_config = rules.RuleConfig.from_settings(self.settings)
        self._budget: Optional[Budget] = None
        self._budget_lock = threading.Lock()
        self._expiring_sent: set[str] = set()
        self._expiring_lock = threading.Lock()

        self.cache = RecommendationCache(
            self.store,
            ttl=self.settings.cache_ttl,
            stale_grace=self.settings.stale_grace,
            timeout=self.settings.generation_timeout_seconds,
            max_workers=self.settings.max_workers,
            clock=clock,
            event_stream=self.events,
        )
        self.scheduler = BatchScheduler(
            self.store, self.cache, self._batch_jobs, self.settings,
            is_entitled=is_entitled, clock=clock, event_stream=self.events,
            on_tick=self.check_expiring_deals,
        )
        self.events.subscribe(self._on_batch_completed, [events.BATCH_COMPLETED])

    # ── Catalog and prices ─────────────────────────────────────

    def register_product(self, product: Product) -> Product:
        return self.ledgers.register_product(product)

    def _product_name(self, product_id: str) -> str:
        try:
            return self.ledgers.product(product_id).name
        except KeyError:
            return product_id

    def record_price(self, product_id: str, point: PricePoint) -> Optional[LedgerDelta]:
        """Append an observation and evaluate price rules. None for a replayed point."""
        delta = self.ledgers.append(product_id, point)
        if delta is None:
            return None

        if self.tracking.is_tracked(product_id):
            history = self.ledgers.snapshot(product_id, self.settings.history_snapshot_size)
            self.tracking.mark_checked(product_id, point.timestamp, history)

        evaluation = rules.evaluate(
            delta=delta,
            tracking=self.tracking.snapshot(),
            config=self.rule_config,
            product_name=self._product_name,
        )
        self._raise(evaluation.alerts)
        return delta

    # ── Tracking ───────────────────────────────────────────────

    def start_tracking(self, product_id: str, target_price: Optional[float] = None) -> TrackingItem:
        self.ledgers.product(product_id)
        return self.tracking.start(product_id, self.clock(), target_price)

    def stop_tracking(self, tracking_id: str) -> TrackingItem:
        """Deactivate tracking and abandon any refresh for the product."""
        item = self.tracking.stop(tracking_id)
        if not self.tracking.is_tracked(item.product_id):
            self.cache.cancel(product_key(item.product_id))
        return item

    # ── Budget ─────────────────────────────────────────────────

    def set_budget(self, monthly_limit: float, category_limits: Optional[dict] = None,
                   thresholds: Optional[Iterable[BudgetThreshold]] = None) -> Budget:
        """Configure the budget. Default thresholds apply to the total and each category limit."""
        limits = {_category(c): float(v) for c, v in (category_limits or {}).items()}
        if thresholds is None:
            fractions = self.settings.budget_thresholds
            thresholds = [BudgetThreshold(t) for t in fractions]
            thresholds += [BudgetThreshold(t, category=c) for c in limits for t in fractions]
        budget = Budget(monthly_limit=monthly_limit, category_limits=limits, thresholds=list(thresholds))
        with self._budget_lock:
            self._budget = budget
            return copy.deepcopy(budget)

    def budget(self) -> Optional[Budget]:
        with self._budget_lock:
            return copy.deepcopy(self._budget)

    def record_budget_spend(self, category, amount: float) -> list:
        """Add spending and return the budget alerts it raised."""
        category = _category(category)
        with self._budget_lock:
            if self._budget is None:
                raise InvalidInput("no budget configured")
            self._budget.add_spend(category, amount)
            change = rules.BudgetChange(copy.deepcopy(self._budget), self.clock(), category)
            evaluation = rules.evaluate(budget_change=change)
            self._budget.mark_fired(evaluation.fired_thresholds)
        return self._raise(evaluation.alerts)

    def rollover_budget_period(self):
        with self._budget_lock:
            if self._budget is None:
                raise InvalidInput("no budget configured")
            self._budget.rollover()
        logger.info("Budget period rolled over")

    # ── Inventory ──────────────────────────────────────────────

    def add_inventory_item(self, item: InventoryItem) -> InventoryItem:
        self.ledgers.product(item.product_id)
        self._inventory_changed(self.inventory.add(item, self.clock()))
        return item

    def record_purchase(self, product_id: str, quantity: int) -> InventoryItem:
        change = self.inventory.record_purchase(product_id, quantity, self.clock())
        self._inventory_changed(change)
        return change.item

    def record_consumption(self, product_id: str, quantity: int) -> InventoryItem:
        change = self.inventory.record_consumption(product_id, quantity, self.clock())
        self._inventory_changed(change)
        return change.item

    def _inventory_changed(self, change):
        self._raise(rules.evaluate(inventory_changes=[change]).alerts)

    def inventory_status(self) -> list[dict]:
        now = self.clock()
        status = []
        for item in self.inventory.items():
            run_out = estimated_run_out_date(item, now)
            level = stock_level(item)
            status.append({
                "product_id": item.product_id,
                "current_quantity": item.current_quantity,
                "preferred_quantity": item.preferred_quantity,
                "stock_level": level.value,
                "color": level.color,
                "needs_reorder": item.needs_reorder,
                "estimated_run_out": run_out.isoformat() if run_out else None,
            })
        return status

    # ── Alerts ─────────────────────────────────────────────────

    def _raise(self, alerts: list) -> list:
        fresh = self.alert_log.add(alerts)
        for alert in fresh:
            self.events.publish(events.ALERT_RAISED, alert_to_dict(alert))
            self._deliver(*format_alert(alert, self._product_name))
        return fresh

    def _deliver(self, title: str, body: str, target_key: str):
        if self.sink is None:
            return
        try:
            sent = self.sink.deliver(title, body, target_key)
        except Exception as e:
            logger.warning(f"Notification delivery failed for {target_key}: {e}")
            sent = False
        if not sent:
            self.events.publish(events.DELIVERY_FAILED, {"target": target_key, "title": title})

    def alerts(self, unread_only: bool = False) -> list:
        return self.alert_log.all(unread_only)

    def alert_is_read(self, alert) -> bool:
        return self.alert_log.is_read(alert)

    def mark_alert_read(self, alert_id: str):
        return self.alert_log.mark_read(alert_id)

    def clear_read_alerts(self) -> int:
        cleared = self.alert_log.clear_read()
        if cleared:
            logger.info(f"Cleared {cleared} read alerts")
        return cleared

    def check_expiring_deals(self, now: Optional[datetime] = None) -> list:
        """Prune expired deals, then announce each deal about to expire once."""
        now = now or self.clock()
        pruned = self.alert_log.prune_expired(now)
        if pruned:
            logger.info(f"Pruned {pruned} expired deals")
        notice = self.settings.deal_expiring_notice
        announced = []
        for alert in self.alert_log.all():
            if not isinstance(alert, DealAlert) or alert.expiry_date is None:
                continue
            remaining = alert.expiry_date - now
            if remaining > notice:
                continue
            key = alert_id(alert)
            with self._expiring_lock:
                if key in self._expiring_sent:
                    continue
                self._expiring_sent.add(key)
            self._deliver(*format_expiring_deal(alert, remaining, self._product_name))
            announced.append(alert)
        with self._expiring_lock:
            live = {alert_id(a) for a in self.alert_log.all()}
            self._expiring_sent &= live
        return announced

    def _active_alerts(self, now: datetime) -> list:
        """Current alerts: the latest unexpired deal per product and restock
        reminders for items that still need reordering."""
        deals: dict[str, DealAlert] = {}
        reorders: dict[str, ReorderAlert] = {}
        others = []
        for alert in self.alert_log.all():
            if isinstance(alert, DealAlert):
                if alert.expiry_date is None or alert.expiry_date > now:
                    deals[alert.product_id] = alert
            elif isinstance(alert, ReorderAlert):
                reorders[alert.product_id] = alert
            else:
                others.append(alert)
        current = {i.product_id: i for i in self.inventory.items()}
        restock = [a for pid, a in reorders.items() if pid in current and current[pid].needs_reorder]
        return list(deals.values()) + restock + others

    def subscribe(self, listener, event_types=None):
        return self.events.subscribe(listener, event_types)

    # ── Read models ────────────────────────────────────────────

    def get_dashboard_digest(self) -> DailyDigest:
        now = self.clock()
        stale = any(self.cache.state(key) == KeyState.STALE for key in self.cache.keys())
        return daily_digest(self._active_alerts(now), now, self.settings.urgent_window, stale=stale)

    def get_recommendations(self, limit: Optional[int] = None) -> list[AIRecommendation]:
        """Cached AI output merged with locally scored deals and restocks, ranked."""
        now = self.clock()
        ai = []
        for key in self.cache.keys():
            if key.startswith("product:") and not self.tracking.is_tracked(key[len("product:"):]):
                continue
            result = self.cache.get(key)
            if result is not None:
                ai.extend(decode_payload(result.payload))
        local = local_recommendations(self._active_alerts(now), self.inventory.items(), now,
                                      self.settings.urgent_window)
        if limit is None:
            limit = self.settings.recommendation_limit
        return rank(merge(ai, local), limit, self.settings.min_confidence)

    # ── Batch ──────────────────────────────────────────────────

    def _batch_jobs(self) -> dict:
        """Cache key -> generator for one batch, over a snapshot of current state."""
        if self.capability is None:
            logger.info("No AI capability configured; batch has nothing to refresh")
            return {}
        jobs = {}
        for item in self.tracking.snapshot():
            key = product_key(item.product_id)
            if key in jobs:
                continue
            product = self.ledgers.product(item.product_id)
            history = self.ledgers.snapshot(item.product_id, self.settings.history_snapshot_size)
            jobs[key] = product_generator(self.capability, product, history, self.clock)
        budget = self.budget()
        if budget is not None:
            jobs[BUDGET_KEY] = budget_generator(self.capability, budget, self.clock)
        items = self.inventory.items()
        if items:
            jobs[RESTOCK_KEY] = restock_generator(self.capability, items, self._product_name, self.clock)
        return jobs

    def run_batch(self, wait: bool = True) -> dict:
        return self.scheduler.run_batch(wait=wait)

    def _on_batch_completed(self, event):
        self._deliver(*format_digest(self.get_dashboard_digest()))

    def start(self):
        self.scheduler.start()

    def stop(self):
        self.scheduler.stop()
        self.cache.shutdown()
