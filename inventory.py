"""Stock levels, run-out forecasting, and the household inventory book."""

import dataclasses
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from errors import InvalidQuantity, UnknownEntity
from models import InventoryItem, StockLevel


def stock_level(item: InventoryItem) -> StockLevel:
    """Four fixed bands over current/preferred quantity."""
    ratio = item.current_quantity / item.preferred_quantity
    if ratio <= 0.25:
        return StockLevel.CRITICAL
    if ratio <= 0.5:
        return StockLevel.LOW
    if ratio <= 0.75:
        return StockLevel.MEDIUM
    return StockLevel.GOOD


def estimated_run_out_date(item: InventoryItem, now: datetime) -> Optional[datetime]:
    """Forecast when the item runs out, or None without consumption data.

    With a recorded purchase the forecast is purchase date + consumption days;
    otherwise it is projected from `now` using the current stock ratio. The
    two paths can disagree for the same item.
    """
    if item.average_consumption_days is None:
        return None
    if item.last_purchase_date is not None:
        return item.last_purchase_date + timedelta(days=item.average_consumption_days)
    days_left = (item.current_quantity * item.average_consumption_days) // item.preferred_quantity
    return now + timedelta(days=days_left)


@dataclass(frozen=True)
class InventoryChange:
    """An inventory mutation, carrying the reorder state before it."""
    item: InventoryItem
    previously_needed_reorder: bool
    timestamp: datetime

    @property
    def became_low(self) -> bool:
        return self.item.needs_reorder and not self.previously_needed_reorder


class InventoryBook:
    """Current inventory, one item per product. Items are never implicitly removed."""

    def __init__(self):
        self._items: dict[str, InventoryItem] = {}
        self._lock = threading.Lock()

    def get(self, product_id: str) -> InventoryItem:
        try:
            return self._items[product_id]
        except KeyError:
            raise UnknownEntity(f"no inventory item for {product_id!r}") from None

    def items(self) -> list[InventoryItem]:
        with self._lock:
            return list(self._items.values())

    def add(self, item: InventoryItem, when: datetime) -> InventoryChange:
        """Add or replace the item for its product."""
        with self._lock:
            previous = self._items.get(item.product_id)
            self._items[item.product_id] = item
        was_low = previous.needs_reorder if previous is not None else False
        return InventoryChange(item, was_low, when)

    def record_purchase(self, product_id: str, quantity: int, when: datetime) -> InventoryChange:
        if quantity <= 0:
            raise InvalidQuantity(f"purchased quantity must be > 0, got {quantity}")
        with self._lock:
            current = self.get(product_id)
            updated = dataclasses.replace(
                current,
                current_quantity=current.current_quantity + quantity,
                last_purchase_date=when,
            )
            self._items[product_id] = updated
        return InventoryChange(updated, current.needs_reorder, when)

    def record_consumption(self, product_id: str, quantity: int, when: datetime) -> InventoryChange:
        if quantity <= 0:
            raise InvalidQuantity(f"consumed quantity must be > 0, got {quantity}")
        with self._lock:
            current = self.get(product_id)
            if quantity > current.current_quantity:
                raise InvalidQuantity(
                    f"cannot consume {quantity} of {product_id!r}, only {current.current_quantity} left"
                )
            updated = dataclasses.replace(current, current_quantity=current.current_quantity - quantity)
            self._items[product_id] = updated
        return InventoryChange(updated, current.needs_reorder, when)
