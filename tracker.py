"""Tracking registry: the set of watched products and their target prices."""

import dataclasses
import logging
import threading
from datetime import datetime
from typing import Optional

from errors import UnknownEntity
from models import TrackingItem, validate_target_price

logger = logging.getLogger(__name__)


class TrackingRegistry:
    """Mutable set of tracking items, read by the rule engine as a snapshot."""

    def __init__(self):
        self._items: dict[str, TrackingItem] = {}
        self._lock = threading.Lock()

    def start(self, product_id: str, now: datetime,
              target_price: Optional[float] = None) -> TrackingItem:
        """Start tracking a product. An already active item gets the new target."""
        validate_target_price(target_price)
        with self._lock:
            for item in self._items.values():
                if item.product_id == product_id and item.is_active:
                    item.target_price = target_price
                    logger.info(f"Updated tracking {item.tracking_id} for {product_id}")
                    return dataclasses.replace(item)
            item = TrackingItem(product_id=product_id, start_date=now, target_price=target_price)
            self._items[item.tracking_id] = item
            logger.info(f"Started tracking {product_id} as {item.tracking_id}")
            return dataclasses.replace(item)

    def stop(self, tracking_id: str) -> TrackingItem:
        """Deactivate a tracking item. It is kept for history."""
        with self._lock:
            item = self._get(tracking_id)
            item.is_active = False
            logger.info(f"Stopped tracking {item.product_id} ({tracking_id})")
            return dataclasses.replace(item)

    def update_target_price(self, tracking_id: str, target_price: Optional[float]) -> TrackingItem:
        validate_target_price(target_price)
        with self._lock:
            item = self._get(tracking_id)
            item.target_price = target_price
            return dataclasses.replace(item)

    def get(self, tracking_id: str) -> TrackingItem:
        with self._lock:
            return dataclasses.replace(self._get(tracking_id))

    def _get(self, tracking_id: str) -> TrackingItem:
        try:
            return self._items[tracking_id]
        except KeyError:
            raise UnknownEntity(f"unknown tracking item {tracking_id!r}") from None

    def is_tracked(self, product_id: str) -> bool:
        with self._lock:
            return any(i.product_id == product_id and i.is_active for i in self._items.values())

    def mark_checked(self, product_id: str, when: datetime, history: tuple):
        """Record a price check and refresh the read-only history snapshot."""
        with self._lock:
            for item in self._items.values():
                if item.product_id == product_id and item.is_active:
                    item.last_checked = when
                    item.history = history

    def snapshot(self, active_only: bool = True) -> list[TrackingItem]:
        """Copies of the tracking items; mutating them does not touch the registry."""
        with self._lock:
            return [
                dataclasses.replace(item)
                for item in self._items.values()
                if item.is_active or not active_only
            ]
