"""
Payment recording and member credit.

Everything here is a pure transform: a bill (and roster) goes in, an updated
copy of the bill plus the credit movements it implies comes out. The caller
persists both.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from compute import ZERO, compute_shares, get_contributions, has_payer, round2, sum_values, to_dec
from config import EPSILON
from models import Bill, CoverageAllocation, Member, PaymentOutcome, utc_now

logger = logging.getLogger(__name__)

COVER_ALL = "_cover_all"
CREDIT_CHOICE = "_credit"


# ============== Coverage ==============
def build_coverage_allocations(
    shares: Mapping[str, Decimal],
    payments: Mapping[str, Decimal],
    covering: Optional[Mapping[str, str]] = None,
    tolerance: Decimal = EPSILON,
    payers: Optional[Iterable[str]] = None,
) -> List[CoverageAllocation]:
    """
    Turn each payer's excess over their own share into explicit coverage.
    payments: what each member has effectively put toward the bill so far.
    payers: who may cover others (default: everyone in payments).
    covering maps payer -> member id to cover, COVER_ALL (default) to spread over
    everyone still short, or CREDIT_CHOICE to keep the excess as credit.
    Shortfalls already covered by an earlier payer are not covered twice.
    """
    covering = covering or {}
    outstanding = {
        pid: max(ZERO, to_dec(share) - to_dec(payments.get(pid, 0)))
        for pid, share in shares.items()
    }
    allocations = []

    for payer_id in (payers if payers is not None else payments):
        excess = to_dec(payments.get(payer_id, 0)) - to_dec(shares.get(payer_id, 0))
        if excess <= tolerance:
            continue
        choice = covering.get(payer_id) or COVER_ALL
        if choice == CREDIT_CHOICE:
            continue

        if choice != COVER_ALL:
            cover = min(excess, outstanding.get(choice, ZERO))
            if cover > tolerance:
                allocations.append(CoverageAllocation(payer_id=payer_id, covered_id=choice, amount=round2(cover)))
                outstanding[choice] -= cover
            continue

        shortfalls = [
            (pid, short) for pid, short in outstanding.items()
            if pid != payer_id and short > tolerance
        ]
        total_shortfall = sum((s for _, s in shortfalls), ZERO)
        if total_shortfall <= tolerance:
            continue
        for pid, short in shortfalls:
            if excess >= total_shortfall - tolerance:
                cover = short
            else:
                cover = excess * short / total_shortfall
            if cover > tolerance:
                allocations.append(CoverageAllocation(payer_id=payer_id, covered_id=pid, amount=round2(cover)))
                outstanding[pid] -= cover
    return allocations


def _add_maps(base: Optional[Mapping[str, Decimal]], extra: Mapping[str, Decimal]) -> Dict[str, Decimal]:
    merged = {pid: to_dec(v) for pid, v in (base or {}).items()}
    for pid, amount in extra.items():
        merged[pid] = merged.get(pid, ZERO) + to_dec(amount)
    return merged


# ============== Recording payments ==============
def record_payment(
    bill: Bill,
    members: List[Member],
    payments: Mapping[str, Decimal],
    credit_used: Optional[Mapping[str, Decimal]] = None,
    covering: Optional[Mapping[str, str]] = None,
    paid_date: Optional[date] = None,
    tolerance: Decimal = EPSILON,
) -> PaymentOutcome:
    """
    Record one payment event on `bill`.
    payments: member -> cash paid now; credit_used: member -> own credit applied now.
    Contributions (cash + credit) are merged into any earlier partial payment.
    Excess over a payer's share covers other members (see build_coverage_allocations);
    whatever is left uncovered becomes that payer's credit.
    """
    if bill.is_paid:
        raise ValueError(f"Bill {bill.id} is already paid")
    roster = {m.id: m for m in members}
    credit_used = {pid: to_dec(v) for pid, v in (credit_used or {}).items() if to_dec(v) != 0}
    payments = {pid: to_dec(v) for pid, v in payments.items()}

    for pid, amount in list(payments.items()) + list(credit_used.items()):
        if pid not in roster:
            raise ValueError(f"Unknown member '{pid}'")
        if amount < 0:
            raise ValueError(f"Payment amounts must not be negative ({pid}: {amount})")
    for pid, amount in credit_used.items():
        available = to_dec(roster[pid].credit)
        if amount > available + tolerance:
            raise ValueError(f"{roster[pid].name} has only {round2(available)} credit, cannot use {amount}")

    event = _add_maps(payments, credit_used)
    event = {pid: amount for pid, amount in event.items() if amount > 0}
    if not event:
        raise ValueError("Payment must include a positive amount")

    amount = to_dec(bill.amount)
    shares = compute_shares(bill, members)
    paid_on = paid_date or date.today()

    single_payer = (
        len(event) == 1
        and not credit_used
        and not has_payer(bill)
        and abs(next(iter(event.values())) - amount) <= tolerance
    )
    if single_payer:
        paid_by = next(iter(event))
        contributions = None
        final_contributions = {paid_by: amount}
    else:
        paid_by = None
        contributions = _add_maps(get_contributions(bill) if has_payer(bill) else {}, event)
        final_contributions = contributions

    credit_earned = {pid: to_dec(v) for pid, v in (bill.credit_earned or {}).items()}
    # what each member has put toward their own share once earlier coverage and credit are moved
    effective = {pid: paid - credit_earned.get(pid, ZERO) for pid, paid in final_contributions.items()}
    for c in bill.coverage_allocations or []:
        effective[c.payer_id] = effective.get(c.payer_id, ZERO) - to_dec(c.amount)
        effective[c.covered_id] = effective.get(c.covered_id, ZERO) + to_dec(c.amount)

    new_coverage = build_coverage_allocations(shares, effective, covering, tolerance, payers=list(event))
    coverage = list(bill.coverage_allocations or []) + new_coverage
    merged_credit_used = _add_maps(bill.credit_used, credit_used) if credit_used else bill.credit_used
    credit_changes: Dict[str, Decimal] = {pid: -v for pid, v in credit_used.items()}

    for c in new_coverage:
        effective[c.payer_id] -= c.amount
    for pid in event:
        overpaid = effective.get(pid, ZERO) - shares.get(pid, ZERO)
        if overpaid > tolerance:
            earned = round2(overpaid)
            credit_earned[pid] = credit_earned.get(pid, ZERO) + earned
            credit_changes[pid] = credit_changes.get(pid, ZERO) + earned
            logger.info("Member %s earns %s credit on bill %s", pid, earned, bill.id)

    is_paid = sum_values(final_contributions) >= amount - tolerance
    dates = dict(bill.contribution_dates or {})
    dates.update({pid: paid_on for pid in event})

    updated = bill.model_copy(update={
        "paid_by": paid_by,
        "paid_contributions": contributions,
        "contribution_dates": dates,
        "coverage_allocations": coverage or None,
        "credit_used": merged_credit_used,
        "credit_earned": credit_earned or None,
        "is_paid": is_paid,
        "paid_date": paid_on if is_paid else bill.paid_date,
        "updated_at": utc_now(),
    })
    return PaymentOutcome(bill=updated, credit_changes=credit_changes, is_partial=not is_paid)


def mark_unpaid(bill: Bill) -> PaymentOutcome:
    """Undo every payment on the bill: credit used is given back, credit earned is taken away."""
    credit_changes: Dict[str, Decimal] = {}
    for pid, amount in (bill.credit_used or {}).items():
        credit_changes[pid] = credit_changes.get(pid, ZERO) + to_dec(amount)
    for pid, amount in (bill.credit_earned or {}).items():
        credit_changes[pid] = credit_changes.get(pid, ZERO) - to_dec(amount)

    updated = bill.model_copy(update={
        "is_paid": False,
        "paid_by": None,
        "paid_contributions": None,
        "contribution_dates": None,
        "credit_used": None,
        "credit_earned": None,
        "coverage_allocations": None,
        "paid_date": None,
        "updated_at": utc_now(),
    })
    return PaymentOutcome(bill=updated, credit_changes=credit_changes, is_partial=False)


def apply_member_payment(
    bill: Bill,
    member_id: str,
    amount,
    paid_date: Optional[date] = None,
    tolerance: Decimal = EPSILON,
) -> PaymentOutcome:
    """Add `amount` to member_id's contribution on `bill` (one slice of a pay-down)."""
    amount = to_dec(amount)
    if amount <= 0:
        raise ValueError(f"Payment amount must be positive, got {amount}")
    if bill.is_paid:
        raise ValueError(f"Bill {bill.id} is already paid")

    contributions = _add_maps(get_contributions(bill) if has_payer(bill) else {}, {member_id: amount})
    is_paid = sum_values(contributions) >= to_dec(bill.amount) - tolerance
    paid_on = paid_date or date.today()
    dates = dict(bill.contribution_dates or {})
    dates[member_id] = paid_on

    updated = bill.model_copy(update={
        "paid_by": None,
        "paid_contributions": contributions,
        "contribution_dates": dates,
        "is_paid": is_paid,
        "paid_date": paid_on if is_paid else bill.paid_date,
        "updated_at": utc_now(),
    })
    return PaymentOutcome(bill=updated, is_partial=not is_paid)


# ============== Credit ledger ==============
def add_credit(current, amount) -> Decimal:
    amount = to_dec(amount)
    if amount < 0:
        raise ValueError("Use use_credit to reduce credit")
    return round2(to_dec(current) + amount)


def use_credit(current, amount) -> Decimal:
    amount = to_dec(amount)
    if amount < 0:
        raise ValueError("Use add_credit to increase credit")
    return round2(max(ZERO, to_dec(current) - amount))


def set_credit(amount) -> Decimal:
    return round2(max(ZERO, to_dec(amount)))


def apply_credit_changes(credits: Mapping[str, Decimal], changes: Mapping[str, Decimal]) -> Dict[str, Decimal]:
    """New credit balance for every member named in `changes`; never below zero."""
    updated = {}
    for pid, delta in changes.items():
        current = credits.get(pid, ZERO)
        delta = to_dec(delta)
        updated[pid] = add_credit(current, delta) if delta >= 0 else use_credit(current, -delta)
    return updated
