"""Rule engine: turns ledger deltas, inventory changes and budget spend into alerts.

The check functions are pure. State that must survive between evaluations
(budget fired flags, previous reorder state) travels in the inputs, and
threshold flags to set are returned for the budget owner to apply. AlertLog
is the one stateful piece: the deduplicated record of what has fired.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from config import Settings
from inventory import InventoryChange, stock_level
from ledger import LedgerDelta
from errors import UnknownEntity
from models import (
    Alert,
    Budget,
    BudgetAlert,
    DealAlert,
    PriceAlert,
    ProductCategory,
    ReorderAlert,
    TrackingItem,
    alert_id,
)


@dataclass(frozen=True)
class RuleConfig:
    price_drop_threshold_pct: float = 15.0
    deal_expiry: Optional[timedelta] = timedelta(hours=48)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RuleConfig":
        return cls(
            price_drop_threshold_pct=settings.price_drop_threshold_pct,
            deal_expiry=settings.deal_expiry,
        )


@dataclass(frozen=True)
class BudgetChange:
    """A budget after a spend update. `budget` must be a private copy."""
    budget: Budget
    timestamp: datetime
    category: Optional[ProductCategory] = None


@dataclass
class Evaluation:
    alerts: list = field(default_factory=list)
    fired_thresholds: list = field(default_factory=list)


def _default_name(product_id: str) -> str:
    return product_id


def _tracked(tracking: Iterable[TrackingItem], product_id: str) -> list[TrackingItem]:
    return [t for t in tracking if t.product_id == product_id and t.is_active]


def check_target_price(delta: LedgerDelta, tracking: Iterable[TrackingItem],
                       product_name: Callable[[str], str] = _default_name) -> list[PriceAlert]:
    """One alert per observation at or below a tracked target price."""
    point = delta.point
    targets = [t.target_price for t in _tracked(tracking, delta.product_id) if t.target_price is not None]
    if not targets:
        return []
    target = max(targets)
    if point.total_price > target:
        return []
    return [PriceAlert(
        product_id=delta.product_id,
        price=point,
        target_price=target,
        message=f"Target price met! {product_name(delta.product_id)} is now ${point.total_price:.2f}",
        timestamp=point.timestamp,
    )]


def check_significant_drop(delta: LedgerDelta, tracking: Iterable[TrackingItem],
                           config: RuleConfig) -> list[DealAlert]:
    """A deal when the new total is far enough below the previous lowest."""
    if not delta.is_drop or not _tracked(tracking, delta.product_id):
        return []
    if round(delta.drop_percentage, 6) < config.price_drop_threshold_pct:
        return []

    point = delta.point
    previous = delta.previous_lowest.total_price
    current = point.total_price
    discount = max((previous - current) / previous * 100, 0.0)
    expiry = point.timestamp + config.deal_expiry if config.deal_expiry is not None else None
    return [DealAlert(
        product_id=delta.product_id,
        retailer=point.retailer,
        current_price=round(current, 2),
        previous_price=round(previous, 2),
        discount_percentage=round(discount, 2),
        alert_date=point.timestamp,
        observed_at=point.timestamp,
        expiry_date=expiry,
    )]


def check_reorder(change: InventoryChange) -> list[ReorderAlert]:
    """Edge-triggered: only the false -> true transition of needs_reorder fires."""
    if not change.became_low:
        return []
    item = change.item
    return [ReorderAlert(
        product_id=item.product_id,
        current_quantity=item.current_quantity,
        preferred_quantity=item.preferred_quantity,
        stock_level=stock_level(item),
        timestamp=change.timestamp,
    )]


def check_budget(change: BudgetChange) -> list[BudgetAlert]:
    """One alert per unfired threshold that utilization has reached."""
    budget = change.budget
    alerts = []
    for t in budget.thresholds:
        if t.fired:
            continue
        if t.category is None:
            utilization = budget.utilization
            spending = budget.current_month_spending
            limit = budget.monthly_limit
        else:
            if t.category not in budget.category_limits:
                continue
            utilization = budget.category_utilization(t.category)
            spending = budget.category_spending.get(t.category, 0.0)
            limit = budget.category_limits[t.category]
        if utilization < t.threshold:
            continue
        scope = f"{t.category.value} budget" if t.category else "monthly budget"
        alerts.append(BudgetAlert(
            threshold_key=t.key,
            threshold=t.threshold,
            utilization=round(utilization, 4),
            spending=round(spending, 2),
            limit=limit,
            message=t.message or f"You've used {utilization:.0%} of your {scope} (${spending:.2f} of ${limit:.2f})",
            timestamp=change.timestamp,
            category=t.category,
        ))
    return alerts


def evaluate(delta: Optional[LedgerDelta] = None,
             inventory_changes: Iterable[InventoryChange] = (),
             budget_change: Optional[BudgetChange] = None,
             tracking: Iterable[TrackingItem] = (),
             config: RuleConfig = RuleConfig(),
             product_name: Callable[[str], str] = _default_name) -> Evaluation:
    """Run every rule over the given inputs."""
    tracking = list(tracking)
    result = Evaluation()

    if delta is not None:
        result.alerts.extend(check_target_price(delta, tracking, product_name))
        result.alerts.extend(check_significant_drop(delta, tracking, config))

    for change in inventory_changes:
        result.alerts.extend(check_reorder(change))

    if budget_change is not None:
        budget_alerts = check_budget(budget_change)
        result.alerts.extend(budget_alerts)
        result.fired_thresholds.extend(a.threshold_key for a in budget_alerts)

    return result


class AlertLog:
    """Alerts raised so far, deduplicated by (scope, rule, observation time).

    Read alerts can be cleared and expired deals pruned; both forget the
    dedupe keys too so the log stays bounded.
    """

    def __init__(self):
        self._alerts: dict[str, Alert] = {}
        self._read: set[str] = set()
        self._lock = threading.Lock()

    def add(self, alerts: Iterable[Alert]) -> list[Alert]:
        """Store alerts and return only the ones not seen before."""
        fresh = []
        with self._lock:
            for alert in alerts:
                key = alert_id(alert)
                if key in self._alerts:
                    continue
                self._alerts[key] = alert
                fresh.append(alert)
        return fresh

    def all(self, unread_only: bool = False) -> list[Alert]:
        with self._lock:
            return [a for k, a in self._alerts.items() if not (unread_only and k in self._read)]

    def is_read(self, alert: Alert) -> bool:
        with self._lock:
            return alert_id(alert) in self._read

    def mark_read(self, key: str) -> Alert:
        with self._lock:
            try:
                alert = self._alerts[key]
            except KeyError:
                raise UnknownEntity(f"unknown alert {key!r}") from None
            self._read.add(key)
            return alert

    def clear_read(self) -> int:
        with self._lock:
            return self._remove(list(self._read))

    def prune_expired(self, now: datetime) -> int:
        """Drop deals whose expiry has passed."""
        with self._lock:
            expired = [
                k for k, a in self._alerts.items()
                if isinstance(a, DealAlert) and a.expiry_date is not None and a.expiry_date <= now
            ]
            return self._remove(expired)

    def _remove(self, keys: list[str]) -> int:
        for key in keys:
            self._alerts.pop(key, None)
            self._read.discard(key)
        return len(keys)

    def __len__(self) -> int:
        return len(self._alerts)
