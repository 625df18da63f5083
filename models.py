"""Data classes for the price intelligence engine."""

import math
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from errors import InvalidInput, InvalidPrice, InvalidQuantity


def _new_id() -> str:
    return uuid.uuid4().hex


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def from_iso(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def as_utc_if_naive(value: datetime) -> datetime:
    """Naive timestamps are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ── Catalog ────────────────────────────────────────────────────

class ProductCategory(str, Enum):
    ELECTRONICS = "electronics"
    GROCERIES = "groceries"
    CLOTHING = "clothing"
    HOME = "home_garden"
    BEAUTY = "beauty"
    SPORTS = "sports"
    TOYS = "toys"
    FOOD = "food"
    HEALTH = "health"
    BOOKS = "books"
    OTHER = "other"


@dataclass(frozen=True, eq=False)
class Product:
    """A catalog product. Equality and hashing use the identifier only."""
    product_id: str
    name: str
    category: ProductCategory = ProductCategory.OTHER
    description: str = ""
    brand: Optional[str] = None
    barcode: Optional[str] = None
    image_url: Optional[str] = None

    def __eq__(self, other):
        if not isinstance(other, Product):
            return NotImplemented
        return self.product_id == other.product_id

    def __hash__(self):
        return hash(self.product_id)


@dataclass(frozen=True)
class Retailer:
    retailer_id: str
    name: str
    website_url: str = ""
    logo_url: Optional[str] = None


KNOWN_RETAILERS = {
    r.retailer_id: r for r in (
        Retailer("amazon", "Amazon", "https://amazon.com"),
        Retailer("target", "Target", "https://target.com"),
        Retailer("walmart", "Walmart", "https://walmart.com"),
        Retailer("bestbuy", "Best Buy", "https://bestbuy.com"),
        Retailer("costco", "Costco", "https://costco.com"),
        Retailer("ebay", "eBay", "https://ebay.com"),
    )
}


def lookup_retailer(retailer_id: str) -> Retailer:
    """Return a known retailer, or a bare one named after its id."""
    return KNOWN_RETAILERS.get(retailer_id) or Retailer(retailer_id, retailer_id)


# ── Prices ─────────────────────────────────────────────────────

@dataclass(frozen=True)
class PricePoint:
    """One price observation at one retailer."""
    retailer: Retailer
    price: float
    timestamp: datetime
    in_stock: bool = True
    shipping_cost: Optional[float] = None
    url: Optional[str] = None
    point_id: str = field(default_factory=_new_id)

    def __post_init__(self):
        if self.price is None or math.isnan(self.price) or self.price < 0:
            raise InvalidPrice(f"price must be >= 0, got {self.price!r}")
        if not isinstance(self.timestamp, datetime):
            raise InvalidPrice(f"timestamp must be a datetime, got {self.timestamp!r}")
        object.__setattr__(self, "timestamp", as_utc_if_naive(self.timestamp))

    @property
    def total_price(self) -> float:
        return self.price + max(self.shipping_cost or 0.0, 0.0)


# ── Inventory ──────────────────────────────────────────────────

class StockLevel(str, Enum):
    CRITICAL = "critical"
    LOW = "low"
    MEDIUM = "medium"
    GOOD = "good"

    @property
    def color(self) -> str:
        return {
            StockLevel.CRITICAL: "red",
            StockLevel.LOW: "orange",
            StockLevel.MEDIUM: "yellow",
            StockLevel.GOOD: "green",
        }[self]


@dataclass(frozen=True)
class InventoryItem:
    """Household stock of one product. Replaced, not mutated, on each event."""
    product_id: str
    current_quantity: int
    preferred_quantity: int
    reorder_threshold: int
    average_consumption_days: Optional[int] = None
    last_purchase_date: Optional[datetime] = None
    auto_reorder: bool = False

    def __post_init__(self):
        if self.current_quantity < 0:
            raise InvalidQuantity(f"current_quantity must be >= 0, got {self.current_quantity}")
        if self.preferred_quantity <= 0:
            raise InvalidQuantity(f"preferred_quantity must be > 0, got {self.preferred_quantity}")
        if self.reorder_threshold < 0:
            raise InvalidQuantity(f"reorder_threshold must be >= 0, got {self.reorder_threshold}")
        if self.average_consumption_days is not None and self.average_consumption_days <= 0:
            raise InvalidQuantity(
                f"average_consumption_days must be > 0, got {self.average_consumption_days}"
            )

    @property
    def needs_reorder(self) -> bool:
        return self.current_quantity <= self.reorder_threshold


# ── Tracking ───────────────────────────────────────────────────

@dataclass
class TrackingItem:
    """A watched product. Deactivated rather than deleted when tracking stops."""
    product_id: str
    start_date: datetime
    target_price: Optional[float] = None
    is_active: bool = True
    last_checked: Optional[datetime] = None
    history: tuple = ()
    tracking_id: str = field(default_factory=_new_id)

    def __post_init__(self):
        validate_target_price(self.target_price)


def validate_target_price(target_price: Optional[float]):
    if target_price is not None and not target_price > 0:
        raise InvalidPrice(f"target_price must be > 0, got {target_price!r}")


# ── Budget ─────────────────────────────────────────────────────

@dataclass
class BudgetThreshold:
    """Fires once per period when utilization reaches `threshold` (a fraction)."""
    threshold: float
    message: str = ""
    category: Optional[ProductCategory] = None
    fired: bool = False

    @property
    def key(self) -> str:
        scope = self.category.value if self.category else "total"
        return f"{scope}:{self.threshold:g}"


@dataclass
class Budget:
    monthly_limit: float
    category_limits: dict = field(default_factory=dict)
    category_spending: dict = field(default_factory=dict)
    current_month_spending: float = 0.0
    thresholds: list = field(default_factory=list)

    def __post_init__(self):
        if not self.monthly_limit > 0:
            raise InvalidInput(f"monthly_limit must be > 0, got {self.monthly_limit!r}")
        if self.current_month_spending < 0:
            raise InvalidInput("current_month_spending must be >= 0")
        for category, limit in self.category_limits.items():
            if not limit > 0:
                raise InvalidInput(f"limit for {category} must be > 0, got {limit!r}")

    @property
    def remaining(self) -> float:
        return self.monthly_limit - self.current_month_spending

    @property
    def utilization(self) -> float:
        return self.current_month_spending / self.monthly_limit

    @property
    def is_over_budget(self) -> bool:
        return self.current_month_spending > self.monthly_limit

    def category_utilization(self, category: ProductCategory) -> float:
        limit = self.category_limits.get(category, 0)
        if limit <= 0:
            return 0.0
        return self.category_spending.get(category, 0.0) / limit

    def add_spend(self, category: ProductCategory, amount: float):
        if amount is None or math.isnan(amount) or amount < 0:
            raise InvalidInput(f"spend amount must be >= 0, got {amount!r}")
        self.current_month_spending += amount
        self.category_spending[category] = self.category_spending.get(category, 0.0) + amount

    def mark_fired(self, keys):
        keys = set(keys)
        for t in self.thresholds:
            if t.key in keys:
                t.fired = True

    def rollover(self):
        """Start a new monthly period."""
        self.current_month_spending = 0.0
        self.category_spending = {}
        for t in self.thresholds:
            t.fired = False


# ── Alerts ─────────────────────────────────────────────────────

class AlertKind(str, Enum):
    DEAL = "deal"
    TARGET_PRICE = "target_price"
    REORDER = "reorder"
    BUDGET = "budget"


class DealType(str, Enum):
    PRICE_DROP = "price_drop"
    FLASH_SALE = "flash_sale"
    COUPON = "coupon"
    BUNDLE = "bundle"
    SEASONAL = "seasonal"


@dataclass(frozen=True)
class DealAlert:
    product_id: str
    retailer: Retailer
    current_price: float
    previous_price: float
    discount_percentage: float
    alert_date: datetime
    observed_at: datetime
    expiry_date: Optional[datetime] = None
    deal_type: DealType = DealType.PRICE_DROP
    kind: AlertKind = field(default=AlertKind.DEAL, init=False)

    @property
    def savings(self) -> float:
        return round(self.previous_price - self.current_price, 2)

    @property
    def dedupe_key(self) -> tuple:
        return (self.product_id, self.kind.value, self.observed_at.isoformat())


@dataclass(frozen=True)
class PriceAlert:
    product_id: str
    price: PricePoint
    target_price: float
    message: str
    timestamp: datetime
    kind: AlertKind = field(default=AlertKind.TARGET_PRICE, init=False)

    @property
    def dedupe_key(self) -> tuple:
        return (self.product_id, self.kind.value, self.price.timestamp.isoformat())


@dataclass(frozen=True)
class ReorderAlert:
    product_id: str
    current_quantity: int
    preferred_quantity: int
    stock_level: StockLevel
    timestamp: datetime
    kind: AlertKind = field(default=AlertKind.REORDER, init=False)

    @property
    def dedupe_key(self) -> tuple:
        return (self.product_id, self.kind.value, self.timestamp.isoformat())


@dataclass(frozen=True)
class BudgetAlert:
    threshold_key: str
    threshold: float
    utilization: float
    spending: float
    limit: float
    message: str
    timestamp: datetime
    category: Optional[ProductCategory] = None
    kind: AlertKind = field(default=AlertKind.BUDGET, init=False)

    @property
    def dedupe_key(self) -> tuple:
        return (self.threshold_key, self.kind.value, self.timestamp.isoformat())


Alert = Union[DealAlert, PriceAlert, ReorderAlert, BudgetAlert]


def alert_id(alert: Alert) -> str:
    """Stable identifier derived from the dedupe key."""
    return uuid.uuid5(uuid.NAMESPACE_URL, "|".join(alert.dedupe_key)).hex


def alert_to_dict(alert: Alert) -> dict[str, Any]:
    """Flatten an alert for JSON output."""
    data = asdict(alert)
    data["alert_id"] = alert_id(alert)
    data["kind"] = alert.kind.value
    for key, value in list(data.items()):
        if isinstance(value, datetime):
            data[key] = value.isoformat()
        elif isinstance(value, Enum):
            data[key] = value.value
    if isinstance(alert, DealAlert):
        data["savings"] = alert.savings
    if isinstance(alert, PriceAlert):
        data["price"] = {
            "retailer_id": alert.price.retailer.retailer_id,
            "price": alert.price.price,
            "total_price": alert.price.total_price,
            "timestamp": alert.price.timestamp.isoformat(),
        }
    return data


# ── Recommendations ────────────────────────────────────────────

class RecommendationType(str, Enum):
    PRICE_DROP = "price_drop"
    STOCK_UP = "stock_up"
    ALTERNATIVE = "alternative"
    TIMING = "timing"
    BUDGET_OPTIMIZATION = "budget_optimization"


@dataclass(frozen=True)
class BuyWindow:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class AIRecommendation:
    product_id: Optional[str]
    reason: str
    confidence: float
    type: RecommendationType
    created_at: datetime
    potential_savings: Optional[float] = None
    buy_window: Optional[BuyWindow] = None
    source: str = "ai"
    recommendation_id: str = field(default_factory=_new_id)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise InvalidInput(f"confidence must be within [0, 1], got {self.confidence!r}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "recommendation_id": self.recommendation_id,
            "product_id": self.product_id,
            "reason": self.reason,
            "confidence": self.confidence,
            "type": self.type.value,
            "created_at": self.created_at.isoformat(),
            "potential_savings": self.potential_savings,
            "buy_window": {
                "start": self.buy_window.start.isoformat(),
                "end": self.buy_window.end.isoformat(),
            } if self.buy_window else None,
            "source": self.source,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "AIRecommendation":
        window = d.get("buy_window")
        return AIRecommendation(
            product_id=d.get("product_id"),
            reason=d["reason"],
            confidence=float(d["confidence"]),
            type=RecommendationType(d["type"]),
            created_at=datetime.fromisoformat(d["created_at"]),
            potential_savings=d.get("potential_savings"),
            buy_window=BuyWindow(
                datetime.fromisoformat(window["start"]),
                datetime.fromisoformat(window["end"]),
            ) if window else None,
            source=d.get("source", "ai"),
            recommendation_id=d.get("recommendation_id") or _new_id(),
        )


# ── Cache and digest ───────────────────────────────────────────

@dataclass(frozen=True)
class CacheEntry:
    key: str
    generated_at: datetime
    expires_at: datetime
    payload: Any

    def is_stale(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "generated_at": self.generated_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "payload": self.payload,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> "CacheEntry":
        return CacheEntry(
            key=d["key"],
            generated_at=datetime.fromisoformat(d["generated_at"]),
            expires_at=datetime.fromisoformat(d["expires_at"]),
            payload=d.get("payload"),
        )


@dataclass(frozen=True)
class DailyDigest:
    """Dashboard summary over the current alert set."""
    deal_count: int
    total_savings: float
    urgent_deals: int
    restock_reminders: int
    generated_at: datetime
    stale: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "deal_count": self.deal_count,
            "total_savings": self.total_savings,
            "urgent_deals": self.urgent_deals,
            "restock_reminders": self.restock_reminders,
            "generated_at": self.generated_at.isoformat(),
            "stale": self.stale,
        }
