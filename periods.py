import calendar
import logging
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from compute import ZERO, compute_shares, get_contributions, round2, to_dec
from config import EPSILON
from models import (
    Bill,
    Member,
    MemberMonthlySummary,
    MonthlyBillLine,
    PaymentAllocation,
    PaymentDistribution,
    UnpaidBill,
)

logger = logging.getLogger(__name__)


class TimeFrame(str, Enum):
    THIS_MONTH = "this_month"
    LAST_MONTH = "last_month"
    THIS_QUARTER = "this_quarter"
    THIS_YEAR = "this_year"
    ALL_TIME = "all_time"


def _month_end(year: int, month: int) -> date:
    return date(year, month, calendar.monthrange(year, month)[1])


def time_frame_range(frame: TimeFrame, today: Optional[date] = None) -> Tuple[date, date]:
    """Inclusive (start, end) calendar dates for `frame` relative to `today`."""
    today = today or date.today()
    if frame == TimeFrame.THIS_MONTH:
        return date(today.year, today.month, 1), _month_end(today.year, today.month)
    if frame == TimeFrame.LAST_MONTH:
        year, month = (today.year - 1, 12) if today.month == 1 else (today.year, today.month - 1)
        return date(year, month, 1), _month_end(year, month)
    if frame == TimeFrame.THIS_QUARTER:
        first = (today.month - 1) // 3 * 3 + 1
        return date(today.year, first, 1), _month_end(today.year, first + 2)
    if frame == TimeFrame.THIS_YEAR:
        return date(today.year, 1, 1), date(today.year, 12, 31)
    return date(2000, 1, 1), date(2100, 12, 31)


def filter_bills_by_time_frame(bills: Iterable[Bill], frame: TimeFrame, today: Optional[date] = None) -> List[Bill]:
    start, end = time_frame_range(frame, today)
    return [b for b in bills if start <= b.due_date <= end]


def bills_in_month(bills: Iterable[Bill], month: int, year: int) -> List[Bill]:
    """month is 1-12"""
    if not 1 <= month <= 12:
        raise ValueError(f"month must be 1-12, got {month}")
    return [b for b in bills if b.due_date.year == year and b.due_date.month == month]


def calculate_monthly_member_bills(
    bills: Iterable[Bill],
    members: List[Member],
    month: int,
    year: int,
    tolerance: Decimal = EPSILON,
) -> List[MemberMonthlySummary]:
    """
    For each member, their share / paid / remaining on every bill due in the month.
    Bills where the member's share is negligible are left out.
    """
    month_bills = bills_in_month(bills, month, year)
    # shares and contributions do not depend on the member, compute once per bill
    per_bill = [(b, compute_shares(b, members), get_contributions(b)) for b in month_bills]

    summaries = []
    for member in members:
        total_share = ZERO
        amount_paid = ZERO
        lines = []
        for bill, shares, contributions in per_bill:
            share = shares.get(member.id, ZERO)
            paid = contributions.get(member.id, ZERO)
            if share <= tolerance:
                continue
            total_share += share
            amount_paid += paid
            lines.append(MonthlyBillLine(
                bill_id=bill.id,
                bill_name=bill.name,
                share=round2(share),
                paid=round2(paid),
                remaining=round2(max(ZERO, share - paid)),
                due_date=bill.due_date,
                is_paid=bill.is_paid,
            ))
        lines.sort(key=lambda line: line.due_date)
        summaries.append(MemberMonthlySummary(
            member_id=member.id,
            member_name=member.name,
            total_share=round2(total_share),
            amount_paid=round2(amount_paid),
            remaining=round2(max(ZERO, total_share - amount_paid)),
            bill_breakdown=lines,
        ))
    return summaries


def unpaid_bills_for_member(
    bills: Iterable[Bill],
    members: List[Member],
    member_id: str,
    tolerance: Decimal = EPSILON,
) -> List[UnpaidBill]:
    """All bills, any month, where `member_id` still owes part of their share; oldest due first."""
    result = []
    for bill in bills:
        if bill.is_paid:
            continue
        share = compute_shares(bill, members).get(member_id, ZERO)
        paid = get_contributions(bill).get(member_id, ZERO)
        remaining = max(ZERO, share - paid)
        if remaining > tolerance:
            result.append(UnpaidBill(bill=bill, share=share, paid=paid, remaining=remaining))
    result.sort(key=lambda u: u.bill.due_date)
    return result


def distribute_payment(unpaid: List[UnpaidBill], amount, tolerance: Decimal = EPSILON) -> PaymentDistribution:
    """
    Spread a lump-sum payment across unpaid bills in the given order (oldest first),
    filling each bill's remaining share before moving to the next.
    """
    amount = to_dec(amount)
    if amount <= 0:
        raise ValueError(f"Payment amount must be positive, got {amount}")

    left = amount
    allocations = []
    for entry in unpaid:
        if left <= tolerance:
            break
        paying = min(left, entry.remaining)
        allocations.append(PaymentAllocation(
            bill_id=entry.bill.id,
            bill_name=entry.bill.name,
            remaining=round2(entry.remaining),
            paying=round2(paying),
        ))
        left -= paying

    unallocated = round2(max(ZERO, left))
    if unallocated > tolerance:
        logger.info("Payment of %s exceeds outstanding shares; %s unallocated", amount, unallocated)
    return PaymentDistribution(allocations=allocations, unallocated=unallocated)
