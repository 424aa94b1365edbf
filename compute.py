import logging
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional

from config import EPSILON
from models import Bill, BillStatus, Member, MemberBalance, BalanceDetail, PaymentStatus, SplitType

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def to_dec(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    if x is None:
        return ZERO
    return Decimal(str(x))


def round2(d: Decimal) -> Decimal:
    return to_dec(d).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def sum_values(m: Mapping[str, Decimal]) -> Decimal:
    return sum((to_dec(v) for v in m.values()), ZERO)


class PaymentMode(str, Enum):
    UNPAID = "unpaid"
    SINGLE_PAYER = "single_payer"   # legacy paid_by covers the whole bill
    MULTI_PAYER = "multi_payer"     # paid_contributions is authoritative
    COVERED = "covered"             # coverage_allocations decide who owes whom


def payment_mode(bill: Bill) -> PaymentMode:
    if bill.coverage_allocations:
        return PaymentMode.COVERED
    if bill.paid_contributions:
        return PaymentMode.MULTI_PAYER
    if bill.paid_by:
        return PaymentMode.SINGLE_PAYER
    return PaymentMode.UNPAID


def has_payer(bill: Bill) -> bool:
    return payment_mode(bill) != PaymentMode.UNPAID


def is_settleable(bill: Bill) -> bool:
    """
    Bills that take part in balances and settlements: marked paid with a payer,
    or carrying at least one positive contribution (partial payment).
    """
    mode = payment_mode(bill)
    if mode == PaymentMode.UNPAID:
        return False
    if bill.is_paid:
        return True
    return any(to_dec(v) > 0 for v in (bill.paid_contributions or {}).values())


# ============== Share calculator ==============
def compute_shares(bill: Bill, members: List[Member]) -> Dict[str, Decimal]:
    """
    Each member's share of `bill` under its split_type.
      mortgage   -> member.mortgage_share verbatim (bill amount ignored)
      even       -> amount / number of members
      percentage -> custom_splits[id] / 100 * amount, 0 for members not listed
      custom     -> custom_splits used as absolute amounts
      items      -> each item divided evenly among its assignees
    Returns: dict member_id -> share (Decimal, unrounded)
    """
    amount = to_dec(bill.amount)
    split = bill.split_type

    if split == SplitType.MORTGAGE:
        return {m.id: to_dec(m.mortgage_share) for m in members}

    if split == SplitType.EVEN:
        if not members:
            return {}
        per = amount / len(members)
        return {m.id: per for m in members}

    if split == SplitType.PERCENTAGE:
        if not bill.custom_splits:
            logger.warning("Bill %s uses percentage split without custom_splits; no shares", bill.id)
            return {}
        return {
            m.id: to_dec(bill.custom_splits.get(m.id, 0)) / 100 * amount
            for m in members
        }

    if split == SplitType.CUSTOM:
        if not bill.custom_splits:
            logger.warning("Bill %s uses custom split without custom_splits; no shares", bill.id)
            return {}
        return {pid: to_dec(v) for pid, v in bill.custom_splits.items()}

    if split == SplitType.ITEMS:
        if not bill.items:
            logger.warning("Bill %s uses items split without items; no shares", bill.id)
            return {}
        shares = {m.id: ZERO for m in members}
        for item in bill.items:
            if not item.assigned_to:
                continue
            per = to_dec(item.amount) / len(item.assigned_to)
            for pid in item.assigned_to:
                shares[pid] = shares.get(pid, ZERO) + per
        return shares

    logger.warning("Bill %s has unknown split_type %r", bill.id, split)
    return {}


# ============== Contribution extractor ==============
def get_contributions(bill: Bill) -> Dict[str, Decimal]:
    """
    Amount each member actually paid toward `bill`.
    paid_contributions wins when present (already includes credit applied);
    otherwise a legacy paid_by pays the whole amount; otherwise nothing.
    """
    if bill.paid_contributions:
        return {pid: to_dec(v) for pid, v in bill.paid_contributions.items()}
    if bill.paid_by:
        return {bill.paid_by: to_dec(bill.amount)}
    return {}


def total_paid(bill: Bill) -> Decimal:
    return sum_values(get_contributions(bill))


def remaining_amount(bill: Bill) -> Decimal:
    return max(ZERO, to_dec(bill.amount) - total_paid(bill))


def is_fully_paid(bill: Bill, tolerance: Decimal = EPSILON) -> bool:
    return total_paid(bill) >= to_dec(bill.amount) - tolerance


def net_positions(bill: Bill, members: List[Member], effective: bool = False) -> Dict[str, Decimal]:
    """
    share - paid for each roster member; positive owes, negative is owed.
    With effective=True, credit the payer earned from this bill is not counted
    as paid, since that money went to their own credit balance.
    """
    shares = compute_shares(bill, members)
    contributions = get_contributions(bill)
    credit_earned = bill.credit_earned or {}
    nets = {}
    for m in members:
        paid = contributions.get(m.id, ZERO)
        if effective:
            paid -= to_dec(credit_earned.get(m.id, 0))
        nets[m.id] = shares.get(m.id, ZERO) - paid
    return nets


# ============== Payment status ==============
def bill_payment_status(bill: Bill, today: Optional[date] = None, tolerance: Decimal = EPSILON) -> PaymentStatus:
    """Status is re-derived on every call; only is_paid is trusted from storage."""
    amount = to_dec(bill.amount)
    paid = total_paid(bill)
    fully_paid = is_fully_paid(bill, tolerance)
    remaining = max(ZERO, amount - paid)

    if bill.is_paid:
        status = BillStatus.PAID
    elif paid > 0 and paid < amount - tolerance:
        status = BillStatus.PARTIAL
    elif bill.due_date < (today or date.today()):
        status = BillStatus.OVERDUE
    else:
        status = BillStatus.PENDING

    return PaymentStatus(status=status, total_paid=paid, remaining=remaining, is_fully_paid=fully_paid)


# ============== Balance aggregator ==============
def bill_balance_deltas(bill: Bill, members: List[Member], tolerance: Decimal = EPSILON) -> Optional[Dict[str, Decimal]]:
    """
    How one paid or partially paid bill moves each person's balance.
    Returns None when the bill does not count (unpaid, nothing paid, no shares).
    """
    if not is_settleable(bill):
        return None
    shares = compute_shares(bill, members)
    contributions = get_contributions(bill)
    paid = sum_values(contributions)
    shares_total = sum_values(shares)
    if paid < tolerance or shares_total < tolerance:
        logger.debug("Skipping bill %s: paid=%s shares=%s", bill.id, paid, shares_total)
        return None

    # a half-paid bill only creates half the proportional debt
    paid_ratio = min(paid / shares_total, Decimal("1"))

    deltas: Dict[str, Decimal] = {}
    for pid, share in shares.items():
        deltas[pid] = share * paid_ratio - contributions.get(pid, ZERO)
    # payers with no share are owed back in full
    for pid, amount in contributions.items():
        if pid not in shares:
            deltas[pid] = deltas.get(pid, ZERO) - amount
    return deltas


def compute_balances(bills: Iterable[Bill], members: List[Member], tolerance: Decimal = EPSILON) -> Dict[str, Decimal]:
    """
    Net balance per person across all paid / partially paid bills.
    returns net: member_id -> net (positive means they owe; negative means they are owed)
    """
    net = {m.id: ZERO for m in members}
    for bill in bills:
        deltas = bill_balance_deltas(bill, members, tolerance)
        if deltas is None:
            continue
        for pid, delta in deltas.items():
            net[pid] = net.get(pid, ZERO) + delta
    # round nets
    for k in net:
        net[k] = round2(net[k])
    return net


def member_balances(bills: Iterable[Bill], members: List[Member], tolerance: Decimal = EPSILON) -> List[MemberBalance]:
    bills = list(bills)
    net = compute_balances(bills, members, tolerance)
    details: Dict[str, List[BalanceDetail]] = {m.id: [] for m in members}
    for bill in bills:
        deltas = bill_balance_deltas(bill, members, tolerance)
        if deltas is None:
            continue
        for pid, delta in deltas.items():
            if pid in details and abs(delta) > tolerance:
                details[pid].append(BalanceDetail(bill_id=bill.id, bill_name=bill.name, amount=round2(delta)))
    return [
        MemberBalance(person_id=m.id, person_name=m.name, owes=net[m.id], details=details[m.id])
        for m in members
    ]
