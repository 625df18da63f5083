from datetime import timedelta

import pytest

from errors import InvalidInput, InvalidPrice, UnknownEntity
from ledger import LedgerBook, PriceLedger
from models import Product
from conftest import T0


class TestPricePoint:
    def test_negative_price_rejected(self, make_point):
        with pytest.raises(InvalidPrice):
            make_point(-1.0, T0)

    def test_nan_price_rejected(self, make_point):
        with pytest.raises(InvalidInput):
            make_point(float("nan"), T0)

    def test_total_includes_shipping(self, make_point):
        assert make_point(10.0, T0, shipping=2.5).total_price == 12.5

    def test_negative_shipping_clamped(self, make_point):
        assert make_point(10.0, T0, shipping=-3.0).total_price == 10.0


    def test_naive_timestamp_is_utc(self, make_point):
        point = make_point(10.0, T0.replace(tzinfo=None))
        assert point.timestamp == T0
        assert point.timestamp.tzinfo is not None

    def test_timestamp_must_be_datetime(self, make_point):
        with pytest.raises(InvalidPrice):
            make_point(10.0, "2026-03-10T12:00:00")


class TestPriceLedger:
    def test_empty_ledger(self):
        ledger = PriceLedger("p-1")
        assert ledger.lowest() is None
        assert ledger.highest() is None
        assert ledger.average() == 0.0
        assert ledger.snapshot() == ()

    def test_lowest_highest_average_use_total(self, make_point):
        ledger = PriceLedger("p-1")
        ledger.append(make_point(100.0, T0, shipping=20.0))
        ledger.append(make_point(110.0, T0 + timedelta(hours=1)))
        ledger.append(make_point(90.0, T0 + timedelta(hours=2), shipping=5.0))
        assert ledger.lowest().total_price == 95.0
        assert ledger.highest().total_price == 120.0
        assert ledger.average() == pytest.approx((120.0 + 110.0 + 95.0) / 3)

    def test_ties_broken_by_earliest_timestamp(self, make_point):
        ledger = PriceLedger("p-1")
        first = make_point(50.0, T0, retailer="amazon")
        second = make_point(50.0, T0 + timedelta(hours=1), retailer="target")
        ledger.append(first)
        ledger.append(second)
        assert ledger.lowest() is first
        assert ledger.highest() is first

    def test_naive_and_aware_points_mix(self, make_point):
        ledger = PriceLedger("p-1")
        ledger.append(make_point(20.0, T0))
        delta = ledger.append(make_point(15.0, (T0 + timedelta(hours=1)).replace(tzinfo=None)))
        assert delta.is_drop
        assert ledger.lowest().timestamp == T0 + timedelta(hours=1)

    def test_out_of_order_rejected_and_unchanged(self, make_point):
        ledger = PriceLedger("p-1")
        ledger.append(make_point(50.0, T0))
        with pytest.raises(InvalidPrice):
            ledger.append(make_point(40.0, T0 - timedelta(seconds=1)))
        assert len(ledger) == 1
        assert ledger.lowest().price == 50.0

    def test_equal_timestamp_accepted(self, make_point):
        ledger = PriceLedger("p-1")
        ledger.append(make_point(50.0, T0))
        assert ledger.append(make_point(45.0, T0)) is not None
        assert len(ledger) == 2

    def test_replayed_point_is_noop(self, make_point):
        ledger = PriceLedger("p-1")
        point = make_point(50.0, T0, point_id="obs-1")
        assert ledger.append(point) is not None
        assert ledger.append(point) is None
        assert len(ledger) == 1

    def test_delta_reports_drop_against_previous_lowest(self, make_point):
        ledger = PriceLedger("p-1")
        assert ledger.append(make_point(249.99, T0)).previous_lowest is None
        delta = ledger.append(make_point(199.99, T0 + timedelta(days=1)))
        assert delta.is_drop
        assert delta.previous_lowest.price == 249.99
        assert delta.drop_percentage == pytest.approx(20.0, abs=0.01)

    def test_price_increase_is_not_drop(self, make_point):
        ledger = PriceLedger("p-1")
        ledger.append(make_point(100.0, T0))
        delta = ledger.append(make_point(120.0, T0 + timedelta(hours=1)))
        assert not delta.is_drop
        assert delta.drop_percentage == 0.0

    def test_drop_window_limits_previous_lowest(self, make_point):
        ledger = PriceLedger("p-1", drop_window=timedelta(days=7))
        ledger.append(make_point(50.0, T0))
        ledger.append(make_point(100.0, T0 + timedelta(days=10)))
        delta = ledger.append(make_point(90.0, T0 + timedelta(days=11)))
        assert delta.previous_lowest.price == 100.0
        assert delta.is_drop

    def test_snapshot_is_immutable_tail(self, make_point):
        ledger = PriceLedger("p-1")
        for i in range(5):
            ledger.append(make_point(10.0 + i, T0 + timedelta(hours=i)))
        snap = ledger.snapshot(2)
        assert isinstance(snap, tuple)
        assert [p.price for p in snap] == [13.0, 14.0]
        assert ledger.snapshot(0) == ()

    def test_prune_keep_last_and_before(self, make_point):
        ledger = PriceLedger("p-1")
        for i in range(5):
            ledger.append(make_point(10.0 + i, T0 + timedelta(days=i)))
        assert ledger.prune(before=T0 + timedelta(days=1)) == 1
        assert ledger.prune(keep_last=2) == 2
        assert [p.price for p in ledger.snapshot()] == [13.0, 14.0]

    def test_pruned_point_can_be_recorded_again(self, make_point):
        ledger = PriceLedger("p-1")
        old = make_point(10.0, T0, point_id="old")
        ledger.append(old)
        ledger.append(make_point(11.0, T0 + timedelta(days=1)))
        ledger.prune(keep_last=1)
        assert "old" not in {p.point_id for p in ledger.snapshot()}


class TestLedgerBook:
    def test_register_is_idempotent(self):
        book = LedgerBook()
        first = book.register_product(Product("p-1", "Kettle"))
        again = book.register_product(Product("p-1", "Renamed Kettle"))
        assert again is first
        assert [p.name for p in book.products()] == ["Kettle"]

    def test_unknown_product(self, make_point):
        book = LedgerBook()
        with pytest.raises(UnknownEntity):
            book.product("nope")
        with pytest.raises(UnknownEntity):
            book.append("nope", make_point(1.0, T0))

    def test_product_equality_by_id(self):
        assert Product("p-1", "A") == Product("p-1", "B")
        assert len({Product("p-1", "A"), Product("p-1", "B")}) == 1
