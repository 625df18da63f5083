"""FastAPI JSON API for the price intelligence engine."""

import dataclasses
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
import db
from config import Settings
from engine import PriceEngine
from errors import InvalidInput, UnknownEntity
from generator import MessagesClient
from models import InventoryItem, PricePoint, Product, ProductCategory, alert_to_dict, lookup_retailer
from notifier import WebhookSink

logger = logging.getLogger(__name__)


def build_engine() -> PriceEngine:
    """Engine over the configured SQLite store, AI endpoint and webhook."""
    store = db.SqliteStore(config.DB_PATH)
    settings = Settings.load(store)
    capability = MessagesClient() if config.AI_API_KEY else None
    if capability is None:
        logger.warning("AI_API_KEY is not set; recommendations will be rule-based only")
    return PriceEngine(store, capability=capability, sink=WebhookSink.from_settings(settings),
                       settings=settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine()
    engine: PriceEngine = app.state.engine
    if engine.settings.scheduler_enabled:
        engine.start()
    yield
    engine.stop()
    app.state.engine = None


app = FastAPI(title="Price Intelligence Engine", lifespan=lifespan)


def get_engine(request: Request) -> PriceEngine:
    return request.app.state.engine


@app.exception_handler(InvalidInput)
async def invalid_input_handler(request: Request, exc: InvalidInput):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(UnknownEntity)
async def unknown_entity_handler(request: Request, exc: UnknownEntity):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


def _tracking_dict(item) -> dict:
    return {
        "tracking_id": item.tracking_id,
        "product_id": item.product_id,
        "target_price": item.target_price,
        "is_active": item.is_active,
        "start_date": item.start_date.isoformat(),
        "last_checked": item.last_checked.isoformat() if item.last_checked else None,
        "history_size": len(item.history),
    }


def _point_dict(point: Optional[PricePoint]) -> Optional[dict]:
    if point is None:
        return None
    return {
        "point_id": point.point_id,
        "retailer_id": point.retailer.retailer_id,
        "price": point.price,
        "shipping_cost": point.shipping_cost,
        "total_price": point.total_price,
        "in_stock": point.in_stock,
        "timestamp": point.timestamp.isoformat(),
    }


def _budget_dict(budget) -> dict:
    return {
        "monthly_limit": budget.monthly_limit,
        "current_month_spending": round(budget.current_month_spending, 2),
        "remaining": round(budget.remaining, 2),
        "utilization": round(budget.utilization, 4),
        "is_over_budget": budget.is_over_budget,
        "category_limits": {c.value: v for c, v in budget.category_limits.items()},
        "category_spending": {c.value: round(v, 2) for c, v in budget.category_spending.items()},
        "thresholds": [{"key": t.key, "threshold": t.threshold, "fired": t.fired} for t in budget.thresholds],
    }


# ── API: Products and prices ───────────────────────────────────

class ProductCreate(BaseModel):
    product_id: str
    name: str
    category: ProductCategory = ProductCategory.OTHER
    description: str = ""
    brand: Optional[str] = None
    barcode: Optional[str] = None


@app.post("/api/products")
def api_register_product(data: ProductCreate, request: Request):
    product = get_engine(request).register_product(Product(**data.model_dump()))
    return {"product_id": product.product_id, "name": product.name, "category": product.category.value}


@app.get("/api/products")
def api_list_products(request: Request):
    return [
        {"product_id": p.product_id, "name": p.name, "category": p.category.value, "brand": p.brand}
        for p in get_engine(request).ledgers.products()
    ]


class PriceObservation(BaseModel):
    retailer_id: str
    price: float
    shipping_cost: Optional[float] = None
    in_stock: bool = True
    url: Optional[str] = None
    timestamp: Optional[datetime] = None
    point_id: Optional[str] = None


@app.post("/api/prices/{product_id}")
def api_record_price(product_id: str, data: PriceObservation, request: Request):
    engine = get_engine(request)
    extra = {"point_id": data.point_id} if data.point_id else {}
    point = PricePoint(
        retailer=lookup_retailer(data.retailer_id),
        price=data.price,
        timestamp=data.timestamp or engine.clock(),
        in_stock=data.in_stock,
        shipping_cost=data.shipping_cost,
        url=data.url,
        **extra,
    )
    delta = engine.record_price(product_id, point)
    if delta is None:
        return {"recorded": False}
    return {
        "recorded": True,
        "point": _point_dict(delta.point),
        "previous_lowest": _point_dict(delta.previous_lowest),
        "is_drop": delta.is_drop,
        "drop_percentage": round(delta.drop_percentage, 2),
    }


@app.get("/api/prices/{product_id}")
def api_price_history(product_id: str, request: Request, limit: Optional[int] = None):
    ledger = get_engine(request).ledgers.ledger(product_id)
    return {
        "product_id": product_id,
        "lowest": _point_dict(ledger.lowest()),
        "highest": _point_dict(ledger.highest()),
        "average": round(ledger.average(), 2),
        "points": [_point_dict(p) for p in ledger.snapshot(limit)],
    }


# ── API: Dashboard ─────────────────────────────────────────────

@app.get("/api/digest")
def api_digest(request: Request):
    return get_engine(request).get_dashboard_digest().to_dict()


@app.get("/api/recommendations")
def api_recommendations(request: Request, limit: Optional[int] = None):
    return [r.to_dict() for r in get_engine(request).get_recommendations(limit)]


@app.get("/api/alerts")
def api_alerts(request: Request, kind: Optional[str] = None, unread: bool = False):
    engine = get_engine(request)
    alerts = []
    for alert in engine.alerts(unread_only=unread):
        data = alert_to_dict(alert)
        if kind and data["kind"] != kind:
            continue
        data["read"] = engine.alert_is_read(alert)
        alerts.append(data)
    return alerts


@app.post("/api/alerts/{alert_id}/read")
def api_mark_alert_read(request: Request, alert_id: str):
    alert = get_engine(request).mark_alert_read(alert_id)
    return {**alert_to_dict(alert), "read": True}


@app.delete("/api/alerts/read")
def api_clear_read_alerts(request: Request):
    return {"cleared": get_engine(request).clear_read_alerts()}


@app.get("/api/events")
def api_events(request: Request, event_type: Optional[str] = None, limit: int = 50):
    return [e.to_dict() for e in get_engine(request).events.recent(event_type, limit)]


# ── API: Tracking ──────────────────────────────────────────────

class TrackingCreate(BaseModel):
    product_id: str
    target_price: Optional[float] = None


@app.post("/api/tracking")
def api_start_tracking(data: TrackingCreate, request: Request):
    return _tracking_dict(get_engine(request).start_tracking(data.product_id, data.target_price))


@app.get("/api/tracking")
def api_list_tracking(request: Request, active_only: bool = True):
    return [_tracking_dict(i) for i in get_engine(request).tracking.snapshot(active_only)]


@app.delete("/api/tracking/{tracking_id}")
def api_stop_tracking(tracking_id: str, request: Request):
    return _tracking_dict(get_engine(request).stop_tracking(tracking_id))


# ── API: Budget ────────────────────────────────────────────────

class BudgetConfig(BaseModel):
    monthly_limit: float
    category_limits: dict[str, float] = {}


class BudgetSpend(BaseModel):
    category: str = ProductCategory.OTHER.value
    amount: float


@app.put("/api/budget")
def api_set_budget(data: BudgetConfig, request: Request):
    return _budget_dict(get_engine(request).set_budget(data.monthly_limit, data.category_limits))


@app.get("/api/budget")
def api_get_budget(request: Request):
    budget = get_engine(request).budget()
    if budget is None:
        raise HTTPException(status_code=404, detail="No budget configured")
    return _budget_dict(budget)


@app.post("/api/budget/spend")
def api_budget_spend(data: BudgetSpend, request: Request):
    alerts = get_engine(request).record_budget_spend(data.category, data.amount)
    return {"alerts": [alert_to_dict(a) for a in alerts]}


@app.post("/api/budget/rollover")
def api_budget_rollover(request: Request):
    engine = get_engine(request)
    engine.rollover_budget_period()
    return _budget_dict(engine.budget())


# ── API: Inventory ─────────────────────────────────────────────

class InventoryCreate(BaseModel):
    product_id: str
    current_quantity: int
    preferred_quantity: int
    reorder_threshold: int
    average_consumption_days: Optional[int] = None
    auto_reorder: bool = False


class QuantityChange(BaseModel):
    quantity: int


@app.get("/api/inventory")
def api_inventory(request: Request):
    return get_engine(request).inventory_status()


@app.post("/api/inventory")
def api_add_inventory(data: InventoryCreate, request: Request):
    item = get_engine(request).add_inventory_item(InventoryItem(**data.model_dump()))
    return {"product_id": item.product_id, "needs_reorder": item.needs_reorder}


@app.post("/api/inventory/{product_id}/purchase")
def api_purchase(product_id: str, data: QuantityChange, request: Request):
    item = get_engine(request).record_purchase(product_id, data.quantity)
    return {"product_id": item.product_id, "current_quantity": item.current_quantity,
            "needs_reorder": item.needs_reorder}


@app.post("/api/inventory/{product_id}/consume")
def api_consume(product_id: str, data: QuantityChange, request: Request):
    item = get_engine(request).record_consumption(product_id, data.quantity)
    return {"product_id": item.product_id, "current_quantity": item.current_quantity,
            "needs_reorder": item.needs_reorder}


# ── API: Settings and scheduler ────────────────────────────────

@app.get("/api/settings")
def api_get_settings(request: Request):
    return dataclasses.asdict(get_engine(request).settings)


@app.get("/api/scheduler/status")
def api_scheduler_status(request: Request):
    return get_engine(request).scheduler.get_status()


@app.post("/api/scheduler/trigger")
def api_scheduler_trigger(request: Request):
    result = get_engine(request).scheduler.trigger_now()
    if "error" in result:
        raise HTTPException(status_code=409, detail=result["error"])
    return result
