from datetime import date
from decimal import Decimal

import pytest

from models import SplitType
from periods import (
    TimeFrame,
    bills_in_month,
    calculate_monthly_member_bills,
    distribute_payment,
    filter_bills_by_time_frame,
    time_frame_range,
    unpaid_bills_for_member,
)


# ========== Monthly summaries ==========

def test_bills_in_month_filters_by_due_date(make_bill):
    oct_bill = make_bill(due_date=date(2026, 10, 31))
    nov_bill = make_bill(due_date=date(2026, 11, 1))
    old_oct = make_bill(due_date=date(2025, 10, 15))
    assert bills_in_month([oct_bill, nov_bill, old_oct], 10, 2026) == [oct_bill]


def test_bills_in_month_rejects_bad_month(make_bill):
    with pytest.raises(ValueError):
        bills_in_month([make_bill()], 13, 2026)


def test_monthly_summary_per_member(make_bill, members):
    bills = [
        make_bill(name="Internet", amount=80, due_date=date(2026, 10, 20), paid_contributions={"a": 40}),
        make_bill(name="Water", amount=60, due_date=date(2026, 10, 5), paid_by="b", is_paid=True),
        make_bill(name="November", amount=500, due_date=date(2026, 11, 5)),
    ]
    alice, bob = calculate_monthly_member_bills(bills, members, 10, 2026)

    assert (alice.member_id, alice.member_name) == ("a", "Alice")
    assert alice.total_share == Decimal("70.00")
    assert alice.amount_paid == Decimal("40.00")
    assert alice.remaining == Decimal("30.00")
    assert [line.bill_name for line in alice.bill_breakdown] == ["Water", "Internet"]
    water = alice.bill_breakdown[0]
    assert (water.share, water.paid, water.remaining, water.is_paid) == (
        Decimal("30.00"), Decimal("0.00"), Decimal("30.00"), True)

    # Bob paid all of Water, so only his Internet share is left
    assert bob.total_share == Decimal("70.00")
    assert bob.amount_paid == Decimal("60.00")
    assert bob.remaining == Decimal("10.00")


def test_monthly_summary_skips_bills_without_a_share(make_bill, members):
    bill = make_bill(split_type=SplitType.CUSTOM, custom_splits={"a": 100}, due_date=date(2026, 10, 1))
    alice, bob = calculate_monthly_member_bills([bill], members, 10, 2026)
    assert len(alice.bill_breakdown) == 1
    assert bob.bill_breakdown == []
    assert bob.total_share == Decimal("0.00")


def test_monthly_summary_rounds_lines(make_bill, three_members):
    bill = make_bill(amount=100, due_date=date(2026, 10, 1))
    summaries = calculate_monthly_member_bills([bill], three_members, 10, 2026)
    assert [s.total_share for s in summaries] == [Decimal("33.33")] * 3


# ========== Unpaid queue and pay-down ==========

def test_unpaid_bills_oldest_first(make_bill, members):
    newer = make_bill(name="newer", due_date=date(2026, 12, 1))
    older = make_bill(name="older", due_date=date(2025, 1, 1), paid_contributions={"a": 20})
    paid = make_bill(name="paid", due_date=date(2024, 1, 1), paid_by="b", is_paid=True)
    done = make_bill(name="mine done", due_date=date(2024, 6, 1), paid_contributions={"a": 50})

    unpaid = unpaid_bills_for_member([newer, older, paid, done], members, "a")
    assert [u.bill.name for u in unpaid] == ["older", "newer"]
    assert unpaid[0].share == Decimal("50")
    assert unpaid[0].paid == Decimal("20")
    assert unpaid[0].remaining == Decimal("30")


def test_unpaid_bills_for_member_without_share(make_bill, members):
    bill = make_bill(split_type=SplitType.CUSTOM, custom_splits={"a": 100})
    assert unpaid_bills_for_member([bill], members, "b") == []


def test_distribute_payment_greedy_oldest_first(make_bill, members):
    bills = [
        make_bill(name="first", amount=60, due_date=date(2026, 1, 1)),
        make_bill(name="second", amount=100, due_date=date(2026, 2, 1)),
        make_bill(name="third", amount=40, due_date=date(2026, 3, 1)),
    ]
    unpaid = unpaid_bills_for_member(bills, members, "a")

    result = distribute_payment(unpaid, 60)
    assert [(a.bill_name, a.remaining, a.paying) for a in result.allocations] == [
        ("first", Decimal("30.00"), Decimal("30.00")),
        ("second", Decimal("50.00"), Decimal("30.00")),
    ]
    assert result.unallocated == Decimal("0.00")


def test_distribute_payment_reports_leftover(make_bill, members):
    unpaid = unpaid_bills_for_member([make_bill(amount=60)], members, "a")
    result = distribute_payment(unpaid, "45.50")
    assert [a.paying for a in result.allocations] == [Decimal("30.00")]
    assert result.unallocated == Decimal("15.50")


@pytest.mark.parametrize("amount", [0, -5])
def test_distribute_payment_requires_positive_amount(amount):
    with pytest.raises(ValueError):
        distribute_payment([], amount)


# ========== Time frames ==========

TODAY = date(2026, 10, 17)


@pytest.mark.parametrize("frame, expected", [
    (TimeFrame.THIS_MONTH, (date(2026, 10, 1), date(2026, 10, 31))),
    (TimeFrame.LAST_MONTH, (date(2026, 9, 1), date(2026, 9, 30))),
    (TimeFrame.THIS_QUARTER, (date(2026, 10, 1), date(2026, 12, 31))),
    (TimeFrame.THIS_YEAR, (date(2026, 1, 1), date(2026, 12, 31))),
    (TimeFrame.ALL_TIME, (date(2000, 1, 1), date(2100, 12, 31))),
])
def test_time_frame_range(frame, expected):
    assert time_frame_range(frame, TODAY) == expected


def test_last_month_in_january_wraps_year():
    assert time_frame_range(TimeFrame.LAST_MONTH, date(2027, 1, 10)) == (date(2026, 12, 1), date(2026, 12, 31))


def test_filter_bills_by_time_frame_is_inclusive(make_bill):
    first = make_bill(due_date=date(2026, 10, 1))
    last = make_bill(due_date=date(2026, 10, 31))
    outside = make_bill(due_date=date(2026, 11, 1))
    assert filter_bills_by_time_frame([first, last, outside], TimeFrame.THIS_MONTH, TODAY) == [first, last]
