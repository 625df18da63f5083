from datetime import timedelta

from aggregator import (
    daily_digest,
    decode_payload,
    local_recommendations,
    merge,
    rank,
    score_deal,
    score_restock,
)
from models import (
    AIRecommendation,
    DealAlert,
    InventoryItem,
    RecommendationType,
    ReorderAlert,
    StockLevel,
    lookup_retailer,
)
from conftest import T0


def _deal(current=199.99, previous=249.99, discount=20.0, expiry_hours=48, product_id="p-1", at=T0):
    return DealAlert(
        product_id=product_id,
        retailer=lookup_retailer("amazon"),
        current_price=current,
        previous_price=previous,
        discount_percentage=discount,
        alert_date=at,
        observed_at=at,
        expiry_date=at + timedelta(hours=expiry_hours) if expiry_hours is not None else None,
    )


def _rec(confidence, savings=None, product_id=None, rec_type=RecommendationType.TIMING, at=T0, source="ai"):
    return AIRecommendation(product_id, "reason", confidence, rec_type, at,
                            potential_savings=savings, source=source)


class TestDailyDigest:
    def test_counts_and_savings(self):
        alerts = [
            _deal(),
            _deal(current=80.0, previous=100.0, expiry_hours=12, product_id="p-2"),
            ReorderAlert("p-3", 1, 8, StockLevel.CRITICAL, T0),
        ]
        digest = daily_digest(alerts, T0)
        assert digest.deal_count == 2
        assert digest.total_savings == 70.0
        assert digest.urgent_deals == 1
        assert digest.restock_reminders == 1
        assert digest.generated_at == T0

    def test_expired_deal_not_urgent(self):
        digest = daily_digest([_deal(expiry_hours=1)], T0 + timedelta(hours=2))
        assert digest.urgent_deals == 0

    def test_empty(self):
        digest = daily_digest([], T0, stale=True)
        assert (digest.deal_count, digest.total_savings, digest.stale) == (0, 0.0, True)


class TestRank:
    def test_floor_order_and_limit(self):
        recs = [_rec(0.4), _rec(0.7, 5.0), _rec(0.9), _rec(0.7, 20.0), _rec(0.7)]
        ranked = rank(recs, limit=3)
        assert [(r.confidence, r.potential_savings) for r in ranked] == [(0.9, None), (0.7, 20.0), (0.7, 5.0)]

    def test_missing_savings_last(self):
        ranked = rank([_rec(0.7), _rec(0.7, 1.0)], limit=None)
        assert [r.potential_savings for r in ranked] == [1.0, None]

    def test_zero_limit(self):
        assert rank([_rec(0.9)], limit=0) == []

    def test_custom_floor(self):
        assert len(rank([_rec(0.3), _rec(0.2)], limit=10, min_confidence=0.25)) == 1


class TestScoring:
    def test_deal_score_is_reproducible_and_bounded(self):
        deal = _deal()
        assert score_deal(deal, T0) == score_deal(deal, T0)
        assert 0.5 <= score_deal(deal, T0) <= 1.0

    def test_bigger_discount_scores_higher(self):
        small = _deal(current=90.0, previous=100.0, discount=10.0)
        big = _deal(current=50.0, previous=100.0, discount=50.0)
        assert score_deal(big, T0) > score_deal(small, T0)

    def test_expiring_deal_scores_higher(self):
        assert score_deal(_deal(expiry_hours=6), T0) > score_deal(_deal(expiry_hours=72), T0)

    def test_restock_score_follows_stock_level(self):
        critical = InventoryItem("p-1", 1, 8, 2)
        medium = InventoryItem("p-1", 6, 8, 6)
        assert score_restock(critical, T0) > score_restock(medium, T0)


class TestLocalAndMerge:
    def test_local_recommendations(self):
        items = [InventoryItem("p-2", 1, 8, 2), InventoryItem("p-3", 8, 8, 2)]
        recs = local_recommendations([_deal(), _deal(product_id="p-9", expiry_hours=-1)], items, T0)
        assert [(r.product_id, r.type) for r in recs] == [
            ("p-1", RecommendationType.PRICE_DROP),
            ("p-2", RecommendationType.STOCK_UP),
        ]
        assert all(r.source == "rules" for r in recs)
        assert recs[0].potential_savings == 50.0

    def test_newer_recommendation_supersedes(self):
        old_local = _rec(0.6, product_id="p-1", rec_type=RecommendationType.PRICE_DROP, source="rules")
        new_ai = _rec(0.8, product_id="p-1", rec_type=RecommendationType.PRICE_DROP,
                      at=T0 + timedelta(hours=1))
        other = _rec(0.9, product_id="p-2")
        budget = _rec(0.7, rec_type=RecommendationType.BUDGET_OPTIMIZATION)
        merged = merge([new_ai, other, budget], [old_local])
        assert new_ai in merged and other in merged and budget in merged
        assert old_local not in merged

    def test_ai_wins_ties(self):
        ai = _rec(0.6, product_id="p-1", source="ai")
        local = _rec(0.9, product_id="p-1", source="rules")
        assert merge([ai], [local]) == [ai]

    def test_decode_skips_malformed(self):
        good = _rec(0.8, product_id="p-1").to_dict()
        decoded = decode_payload([good, {"reason": "missing fields"}])
        assert len(decoded) == 1
        assert decoded[0].recommendation_id == good["recommendation_id"]
