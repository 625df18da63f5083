import copy
from datetime import timedelta

import pytest

import rules
from inventory import InventoryChange
from ledger import PriceLedger
from models import (
    Budget,
    BudgetThreshold,
    DealAlert,
    InventoryItem,
    PriceAlert,
    ProductCategory,
    ReorderAlert,
    TrackingItem,
    alert_id,
)
from errors import UnknownEntity
from conftest import T0


def _drop_delta(make_point, before=249.99, after=199.99):
    ledger = PriceLedger("p-1")
    ledger.append(make_point(before, T0))
    return ledger.append(make_point(after, T0 + timedelta(days=1)))


def _tracking(target=None, active=True):
    return [TrackingItem("p-1", T0, target_price=target, is_active=active)]


class TestSignificantDrop:
    def test_twenty_percent_drop_on_tracked_product(self, make_point):
        alerts = rules.check_significant_drop(_drop_delta(make_point), _tracking(), rules.RuleConfig())
        assert len(alerts) == 1
        deal = alerts[0]
        assert isinstance(deal, DealAlert)
        assert deal.discount_percentage == 20.0
        assert deal.savings == 50.0
        assert deal.expiry_date == deal.alert_date + timedelta(hours=48)

    def test_untracked_product_ignored(self, make_point):
        assert rules.check_significant_drop(_drop_delta(make_point), [], rules.RuleConfig()) == []

    def test_inactive_tracking_ignored(self, make_point):
        delta = _drop_delta(make_point)
        assert rules.check_significant_drop(delta, _tracking(active=False), rules.RuleConfig()) == []

    def test_below_threshold(self, make_point):
        delta = _drop_delta(make_point, before=100.0, after=90.0)
        assert rules.check_significant_drop(delta, _tracking(), rules.RuleConfig()) == []

    def test_exact_threshold_fires(self, make_point):
        delta = _drop_delta(make_point, before=100.0, after=85.0)
        assert len(rules.check_significant_drop(delta, _tracking(), rules.RuleConfig())) == 1

    def test_configurable_threshold(self, make_point):
        delta = _drop_delta(make_point, before=100.0, after=90.0)
        config = rules.RuleConfig(price_drop_threshold_pct=5.0)
        assert len(rules.check_significant_drop(delta, _tracking(), config)) == 1

    def test_no_expiry_when_disabled(self, make_point):
        config = rules.RuleConfig(deal_expiry=None)
        deal = rules.check_significant_drop(_drop_delta(make_point), _tracking(), config)[0]
        assert deal.expiry_date is None


class TestTargetPrice:
    def test_met(self, make_point):
        alerts = rules.check_target_price(_drop_delta(make_point), _tracking(target=200.0),
                                          lambda pid: "Headphones")
        assert len(alerts) == 1
        assert isinstance(alerts[0], PriceAlert)
        assert alerts[0].message == "Target price met! Headphones is now $199.99"

    def test_not_met(self, make_point):
        assert rules.check_target_price(_drop_delta(make_point), _tracking(target=150.0)) == []

    def test_no_target(self, make_point):
        assert rules.check_target_price(_drop_delta(make_point), _tracking()) == []


class TestReorder:
    def _change(self, current, was_low):
        return InventoryChange(InventoryItem("p-1", current, 8, 2), was_low, T0)

    def test_transition_fires(self):
        alerts = rules.check_reorder(self._change(2, False))
        assert len(alerts) == 1
        assert isinstance(alerts[0], ReorderAlert)

    def test_already_low_does_not_fire(self):
        assert rules.check_reorder(self._change(1, True)) == []

    def test_not_low(self):
        assert rules.check_reorder(self._change(5, False)) == []


class TestBudget:
    def _budget(self, spent=0.0):
        budget = Budget(1000.0, thresholds=[BudgetThreshold(0.8), BudgetThreshold(1.0)])
        budget.add_spend(ProductCategory.GROCERIES, spent)
        return budget

    def test_crossing_fires_once(self):
        budget = self._budget(750.0)
        assert rules.check_budget(rules.BudgetChange(copy.deepcopy(budget), T0)) == []

        budget.add_spend(ProductCategory.GROCERIES, 70.0)
        evaluation = rules.evaluate(budget_change=rules.BudgetChange(copy.deepcopy(budget), T0))
        assert len(evaluation.alerts) == 1
        assert evaluation.fired_thresholds == ["total:0.8"]
        budget.mark_fired(evaluation.fired_thresholds)

        budget.add_spend(ProductCategory.GROCERIES, 30.0)
        assert rules.check_budget(rules.BudgetChange(copy.deepcopy(budget), T0)) == []

    def test_rollover_rearms(self):
        budget = self._budget(820.0)
        evaluation = rules.evaluate(budget_change=rules.BudgetChange(copy.deepcopy(budget), T0))
        budget.mark_fired(evaluation.fired_thresholds)
        budget.rollover()
        assert budget.current_month_spending == 0.0
        budget.add_spend(ProductCategory.GROCERIES, 900.0)
        assert len(rules.check_budget(rules.BudgetChange(copy.deepcopy(budget), T0))) == 1

    def test_jump_past_several_thresholds(self):
        budget = self._budget(1200.0)
        alerts = rules.check_budget(rules.BudgetChange(budget, T0))
        assert [a.threshold for a in alerts] == [0.8, 1.0]
        assert budget.is_over_budget

    def test_category_threshold(self):
        budget = Budget(
            1000.0,
            category_limits={ProductCategory.FOOD: 100.0},
            thresholds=[BudgetThreshold(0.8, category=ProductCategory.FOOD)],
        )
        budget.add_spend(ProductCategory.FOOD, 85.0)
        alerts = rules.check_budget(rules.BudgetChange(budget, T0, ProductCategory.FOOD))
        assert len(alerts) == 1
        assert alerts[0].threshold_key == "food:0.8"
        assert "food budget" in alerts[0].message

    def test_negative_spend_rejected(self):
        with pytest.raises(ValueError):
            self._budget().add_spend(ProductCategory.OTHER, -5.0)


class TestAlertLog:
    def test_duplicates_dropped(self, make_point):
        delta = _drop_delta(make_point)
        log = rules.AlertLog()
        first = rules.evaluate(delta=delta, tracking=_tracking()).alerts
        assert len(log.add(first)) == 1
        again = rules.evaluate(delta=delta, tracking=_tracking()).alerts
        assert log.add(again) == []
        assert len(log) == 1

    def _deals(self, make_point):
        ledger = PriceLedger("p-1")
        ledger.append(make_point(249.99, T0))
        alerts = []
        for day, price in ((1, 199.99), (2, 149.99)):
            delta = ledger.append(make_point(price, T0 + timedelta(days=day)))
            alerts += rules.evaluate(delta=delta, tracking=_tracking()).alerts
        return alerts

    def test_mark_read_and_clear(self, make_point):
        log = rules.AlertLog()
        first, second = log.add(self._deals(make_point))
        assert log.mark_read(alert_id(first)) is first
        assert log.is_read(first)
        assert log.all(unread_only=True) == [second]

        assert log.clear_read() == 1
        assert log.all() == [second]
        assert log.clear_read() == 0
        with pytest.raises(UnknownEntity):
            log.mark_read(alert_id(first))

    def test_unknown_alert(self):
        with pytest.raises(UnknownEntity):
            rules.AlertLog().mark_read("missing")

    def test_prune_expired_deals(self, make_point):
        log = rules.AlertLog()
        first, second = log.add(self._deals(make_point))
        assert log.prune_expired(first.expiry_date - timedelta(seconds=1)) == 0
        assert log.prune_expired(first.expiry_date) == 1
        assert log.all() == [second]
