"""Recommendation aggregation: daily digest, local scoring, merge and ranking."""

import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from inventory import estimated_run_out_date, stock_level
from models import (
    AIRecommendation,
    BuyWindow,
    DailyDigest,
    DealAlert,
    InventoryItem,
    RecommendationType,
    ReorderAlert,
    StockLevel,
)

logger = logging.getLogger(__name__)


def daily_digest(alerts: Iterable, now: datetime,
                 urgent_window: timedelta = timedelta(hours=24),
                 stale: bool = False) -> DailyDigest:
    """Summarize an alert set. Urgent deals expire within the window and have not expired yet."""
    deals = []
    restock = 0
    for alert in alerts:
        if isinstance(alert, DealAlert):
            deals.append(alert)
        elif isinstance(alert, ReorderAlert):
            restock += 1

    urgent = sum(
        1 for d in deals
        if d.expiry_date is not None and now < d.expiry_date <= now + urgent_window
    )
    return DailyDigest(
        deal_count=len(deals),
        total_savings=round(sum(d.savings for d in deals), 2),
        urgent_deals=urgent,
        restock_reminders=restock,
        generated_at=now,
        stale=stale,
    )


def rank(recommendations: Iterable[AIRecommendation], limit: Optional[int],
         min_confidence: float = 0.5) -> list[AIRecommendation]:
    """Drop low-confidence items, order by confidence then savings, cap at limit."""
    eligible = [r for r in recommendations if r.confidence >= min_confidence]
    eligible.sort(key=lambda r: (
        -r.confidence,
        r.potential_savings is None,
        -(r.potential_savings or 0.0),
    ))
    if limit is None:
        return eligible
    return eligible[:max(limit, 0)]


# ── Local scoring ──────────────────────────────────────────────

_STOCK_WEIGHT = {
    StockLevel.CRITICAL: 0.4,
    StockLevel.LOW: 0.25,
    StockLevel.MEDIUM: 0.1,
    StockLevel.GOOD: 0.0,
}


def score_deal(deal: DealAlert, now: datetime,
               urgent_window: timedelta = timedelta(hours=24)) -> float:
    """Confidence for a detected deal, reproducible from the alert alone."""
    score = 0.5
    # Discount up to 50% (0-0.3)
    score += min(deal.discount_percentage / 50, 1.0) * 0.3
    # Absolute savings up to $100 (0-0.1)
    score += min(max(deal.savings, 0.0) / 100, 1.0) * 0.1
    # Expiring soon (0.1)
    if deal.expiry_date is not None and now < deal.expiry_date <= now + urgent_window:
        score += 0.1
    return round(min(score, 1.0), 4)


def score_restock(item: InventoryItem, now: datetime) -> float:
    score = 0.5 + _STOCK_WEIGHT[stock_level(item)]
    run_out = estimated_run_out_date(item, now)
    if run_out is not None and run_out <= now + timedelta(days=3):
        score += 0.1
    return round(min(score, 1.0), 4)


def local_recommendations(alerts: Iterable, inventory: Iterable[InventoryItem], now: datetime,
                          urgent_window: timedelta = timedelta(hours=24)) -> list[AIRecommendation]:
    """Recommendations derived from live deals and low inventory, without the AI."""
    recs = []
    for alert in alerts:
        if not isinstance(alert, DealAlert):
            continue
        if alert.expiry_date is not None and alert.expiry_date <= now:
            continue
        recs.append(AIRecommendation(
            product_id=alert.product_id,
            reason=(
                f"{alert.discount_percentage:.0f}% off at {alert.retailer.name}: "
                f"${alert.current_price:.2f} (was ${alert.previous_price:.2f})"
            ),
            confidence=score_deal(alert, now, urgent_window),
            type=RecommendationType.PRICE_DROP,
            created_at=alert.observed_at,
            potential_savings=alert.savings,
            buy_window=BuyWindow(alert.observed_at, alert.expiry_date) if alert.expiry_date else None,
            source="rules",
            recommendation_id=f"rules:deal:{alert.product_id}:{alert.observed_at.isoformat()}",
        ))

    for item in inventory:
        if not item.needs_reorder:
            continue
        run_out = estimated_run_out_date(item, now)
        recs.append(AIRecommendation(
            product_id=item.product_id,
            reason=f"Running low: {item.current_quantity} of {item.preferred_quantity} left",
            confidence=score_restock(item, now),
            type=RecommendationType.STOCK_UP,
            created_at=now,
            buy_window=BuyWindow(now, run_out) if run_out is not None and run_out > now else None,
            source="rules",
            recommendation_id=f"rules:restock:{item.product_id}",
        ))
    return recs


# ── Merge ──────────────────────────────────────────────────────

def decode_payload(payload) -> list[AIRecommendation]:
    """Turn a cached payload back into recommendations, skipping bad items."""
    recs = []
    for item in payload or []:
        try:
            recs.append(AIRecommendation.from_dict(item))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed cached recommendation: {e}")
    return recs


def merge(ai: Iterable[AIRecommendation], local: Iterable[AIRecommendation]) -> list[AIRecommendation]:
    """One recommendation per (product, type): the newest wins, AI on ties.

    Recommendations without a product (budget advice) are all kept.
    """
    chosen: dict[tuple, AIRecommendation] = {}
    unscoped = []
    for rec in list(ai) + list(local):
        if rec.product_id is None:
            unscoped.append(rec)
            continue
        key = (rec.product_id, rec.type)
        current = chosen.get(key)
        if current is None or rec.created_at > current.created_at:
            chosen[key] = rec
    return list(chosen.values()) + unscoped
