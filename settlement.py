import logging
from collections import defaultdict
from decimal import Decimal
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from compute import (
    ZERO,
    PaymentMode,
    compute_shares,
    get_contributions,
    is_settleable,
    net_positions,
    payment_mode,
    round2,
    sum_values,
    to_dec,
)
from config import EPSILON
from models import Bill, Member, Settlement, SettlementBreakdown, SettlementRecord

logger = logging.getLogger(__name__)


class BillDebt(NamedTuple):
    """One debtor -> creditor amount attributed to a single bill, at full precision."""
    debtor_id: str
    creditor_id: str
    amount: Decimal
    bill: Bill
    their_share: Decimal

    def breakdown(self) -> SettlementBreakdown:
        return SettlementBreakdown(
            bill_id=self.bill.id,
            bill_name=self.bill.name,
            category=self.bill.category,
            due_date=self.bill.due_date,
            total_amount=round2(self.bill.amount),
            their_share=round2(self.their_share),
            creditor_paid=round2(self.amount),
        )


def attribute_bill_debts(bill: Bill, members: List[Member], tolerance: Decimal = EPSILON) -> List[BillDebt]:
    """
    Who owes whom on a single bill.

    Explicit coverage allocations are authoritative: covered owes payer the
    covered amount and nothing is inferred. Without coverage, a fully paid bill
    spreads each debtor's shortfall over the overpayers in proportion to how much
    each one overpaid. Partially paid bills without coverage yield nothing.
    """
    if not is_settleable(bill):
        return []
    shares = compute_shares(bill, members)

    if payment_mode(bill) == PaymentMode.COVERED:
        debts = []
        for coverage in bill.coverage_allocations:
            amount = to_dec(coverage.amount)
            if amount > tolerance:
                debts.append(BillDebt(
                    debtor_id=coverage.covered_id,
                    creditor_id=coverage.payer_id,
                    amount=amount,
                    bill=bill,
                    their_share=shares.get(coverage.covered_id, ZERO),
                ))
        return debts

    paid = sum_values(get_contributions(bill))
    shares_total = sum_values(shares)
    if paid < tolerance or shares_total < tolerance:
        return []
    if paid < shares_total - tolerance:
        logger.debug("Bill %s not fully paid (%s of %s); no inferred debts", bill.id, paid, shares_total)
        return []

    nets = net_positions(bill, members, effective=True)
    debtors = [m for m in members if nets[m.id] > tolerance]
    creditors = [m for m in members if nets[m.id] < -tolerance]
    total_owed = sum((-nets[c.id] for c in creditors), ZERO)
    if total_owed < tolerance:
        return []

    debts = []
    for debtor in debtors:
        debtor_owes = nets[debtor.id]
        for creditor in creditors:
            proportion = -nets[creditor.id] / total_owed
            amount = debtor_owes * proportion
            if amount > tolerance:
                debts.append(BillDebt(
                    debtor_id=debtor.id,
                    creditor_id=creditor.id,
                    amount=amount,
                    bill=bill,
                    their_share=shares.get(debtor.id, ZERO),
                ))
    return debts


def settled_between(records: Optional[Iterable[SettlementRecord]]) -> Dict[Tuple[str, str], Decimal]:
    """Forgiven or outside-paid totals per (from_id, to_id); both types reduce debt equally."""
    totals: Dict[Tuple[str, str], Decimal] = defaultdict(lambda: ZERO)
    for r in records or []:
        totals[(r.from_id, r.to_id)] += to_dec(r.amount)
    return totals


def _settlement(debtor: Member, creditor: Member, net: Decimal, owed: List[BillDebt],
                offset: List[BillDebt], forgiven: Decimal, tolerance: Decimal) -> Settlement:
    return Settlement(
        from_id=debtor.id,
        to_id=creditor.id,
        from_name=debtor.name,
        to_name=creditor.name,
        amount=round2(net),
        breakdown=[d.breakdown() for d in owed],
        offset_breakdown=[d.breakdown() for d in offset] if offset else None,
        gross_owed=round2(sum((d.amount for d in owed), ZERO)),
        gross_offset=round2(sum((d.amount for d in offset), ZERO)) if offset else None,
        forgiven=round2(forgiven) if forgiven > tolerance else None,
    )


def calculate_settlements_with_breakdown(
    bills: Iterable[Bill],
    members: List[Member],
    settlement_records: Optional[Iterable[SettlementRecord]] = None,
    tolerance: Decimal = EPSILON,
) -> List[Settlement]:
    """
    Net settlements between members with per-bill provenance.
    A owes B $50 on one bill and B owes A $20 on another -> A owes B $30,
    less whatever B has forgiven or A has paid outside the app.
    """
    roster = {m.id for m in members}
    debts: Dict[Tuple[str, str], List[BillDebt]] = defaultdict(list)
    for bill in bills:
        for debt in attribute_bill_debts(bill, members, tolerance):
            if debt.debtor_id not in roster or debt.creditor_id not in roster:
                logger.debug("Ignoring debt on bill %s outside the roster: %s -> %s",
                             bill.id, debt.debtor_id, debt.creditor_id)
                continue
            if debt.debtor_id == debt.creditor_id:
                continue
            debts[(debt.debtor_id, debt.creditor_id)].append(debt)

    settled = settled_between(settlement_records)

    settlements = []
    for a in members:
        for b in members:
            if a.id >= b.id:  # each pair once
                continue
            a_owes_b = debts.get((a.id, b.id), [])
            b_owes_a = debts.get((b.id, a.id), [])
            total_a_owes_b = sum((d.amount for d in a_owes_b), ZERO)
            total_b_owes_a = sum((d.amount for d in b_owes_a), ZERO)
            forgiven_a_to_b = settled.get((a.id, b.id), ZERO)
            forgiven_b_to_a = settled.get((b.id, a.id), ZERO)

            net = (total_a_owes_b - forgiven_a_to_b) - (total_b_owes_a - forgiven_b_to_a)
            if abs(net) <= tolerance:
                continue
            if net > 0:
                settlements.append(_settlement(a, b, net, a_owes_b, b_owes_a, forgiven_a_to_b, tolerance))
            else:
                settlements.append(_settlement(b, a, -net, b_owes_a, a_owes_b, forgiven_b_to_a, tolerance))
    return settlements


def calculate_settlements(
    bills: Iterable[Bill],
    members: List[Member],
    settlement_records: Optional[Iterable[SettlementRecord]] = None,
    tolerance: Decimal = EPSILON,
) -> List[Tuple[str, str, Decimal]]:
    """(debtor_id, creditor_id, amount) without breakdowns."""
    return [
        (s.from_id, s.to_id, s.amount)
        for s in calculate_settlements_with_breakdown(bills, members, settlement_records, tolerance)
    ]
