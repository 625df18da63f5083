"""Per-product price history: append-only, ordered by observation time."""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional

from errors import InvalidPrice, UnknownEntity
from models import PricePoint, Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerDelta:
    """Result of one successful append, handed to the rule engine."""
    product_id: str
    point: PricePoint
    previous_lowest: Optional[PricePoint]

    @property
    def is_drop(self) -> bool:
        return (
            self.previous_lowest is not None
            and self.point.total_price < self.previous_lowest.total_price
        )

    @property
    def drop_percentage(self) -> float:
        """Percent below the previous lowest, 0 when there is no drop."""
        if not self.is_drop or self.previous_lowest.total_price <= 0:
            return 0.0
        previous = self.previous_lowest.total_price
        return (previous - self.point.total_price) / previous * 100


def _lowest(points: Iterable[PricePoint]) -> Optional[PricePoint]:
    return min(points, key=lambda p: (p.total_price, p.timestamp), default=None)


def _highest(points: Iterable[PricePoint]) -> Optional[PricePoint]:
    return min(points, key=lambda p: (-p.total_price, p.timestamp), default=None)


class PriceLedger:
    """Ordered price observations for one product.

    Out-of-order observations are rejected rather than reordered so the
    history stays monotonic for trend analysis.
    """

    def __init__(self, product_id: str, drop_window: Optional[timedelta] = None):
        self.product_id = product_id
        self.drop_window = drop_window
        self._points: list[PricePoint] = []
        self._ids: set[str] = set()

    def __len__(self) -> int:
        return len(self._points)

    @property
    def last(self) -> Optional[PricePoint]:
        return self._points[-1] if self._points else None

    def append(self, point: PricePoint) -> Optional[LedgerDelta]:
        """Record an observation. Returns None when the point was already recorded."""
        if point.point_id in self._ids:
            logger.debug(f"Ignoring replayed point {point.point_id} for {self.product_id}")
            return None
        if point.price < 0:
            raise InvalidPrice(f"price must be >= 0, got {point.price!r}")
        last = self.last
        if last is not None and point.timestamp < last.timestamp:
            raise InvalidPrice(
                f"observation at {point.timestamp.isoformat()} precedes last recorded "
                f"{last.timestamp.isoformat()} for {self.product_id}"
            )

        previous_lowest = _lowest(self._window(point.timestamp))
        self._points.append(point)
        self._ids.add(point.point_id)
        return LedgerDelta(self.product_id, point, previous_lowest)

    def _window(self, now: datetime) -> list[PricePoint]:
        if self.drop_window is None:
            return self._points
        cutoff = now - self.drop_window
        return [p for p in self._points if p.timestamp >= cutoff]

    def lowest(self) -> Optional[PricePoint]:
        return _lowest(self._points)

    def highest(self) -> Optional[PricePoint]:
        return _highest(self._points)

    def average(self) -> float:
        if not self._points:
            return 0.0
        return sum(p.total_price for p in self._points) / len(self._points)

    def snapshot(self, limit: Optional[int] = None) -> tuple:
        """Read-only view of the latest `limit` points (all when None)."""
        if limit is None:
            return tuple(self._points)
        if limit <= 0:
            return ()
        return tuple(self._points[-limit:])

    def prune(self, keep_last: Optional[int] = None, before: Optional[datetime] = None) -> int:
        """Retention policy: drop points older than `before` and/or beyond `keep_last`."""
        kept = self._points
        if before is not None:
            kept = [p for p in kept if p.timestamp >= before]
        if keep_last is not None:
            kept = kept[-keep_last:] if keep_last > 0 else []
        removed = len(self._points) - len(kept)
        if removed:
            self._points = list(kept)
            self._ids = {p.point_id for p in self._points}
            logger.info(f"Pruned {removed} price points for {self.product_id}")
        return removed


class LedgerBook:
    """The product table plus one ledger per product."""

    def __init__(self, drop_window: Optional[timedelta] = None):
        self.drop_window = drop_window
        self._products: dict[str, Product] = {}
        self._ledgers: dict[str, PriceLedger] = {}
        self._lock = threading.Lock()

    def register_product(self, product: Product) -> Product:
        """Add a product to the table. Re-registering keeps the first copy."""
        with self._lock:
            existing = self._products.get(product.product_id)
            if existing is not None:
                return existing
            self._products[product.product_id] = product
            self._ledgers[product.product_id] = PriceLedger(product.product_id, self.drop_window)
            return product

    def product(self, product_id: str) -> Product:
        try:
            return self._products[product_id]
        except KeyError:
            raise UnknownEntity(f"unknown product {product_id!r}") from None

    def products(self) -> list[Product]:
        with self._lock:
            return list(self._products.values())

    def ledger(self, product_id: str) -> PriceLedger:
        try:
            return self._ledgers[product_id]
        except KeyError:
            raise UnknownEntity(f"unknown product {product_id!r}") from None

    def append(self, product_id: str, point: PricePoint) -> Optional[LedgerDelta]:
        with self._lock:
            return self.ledger(product_id).append(point)

    def snapshot(self, product_id: str, limit: Optional[int] = None) -> tuple:
        with self._lock:
            return self.ledger(product_id).snapshot(limit)
