import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends
from pydantic import BaseModel
from sqlmodel import Session, select, SQLModel, create_engine

from compute import bill_payment_status, member_balances
from config import DATABASE_URL, DEFAULT_MEMBERS, LOG_LEVEL, SEED_MEMBERS
from models import (
    Bill,
    BillCreate,
    BillRecord,
    Member,
    MemberBalance,
    MemberCreate,
    MemberMonthlySummary,
    MemberUpdate,
    PaymentDistribution,
    PaymentOutcome,
    PaymentStatus,
    Settlement,
    SettlementRecord,
    SettlementRecordBase,
    UnpaidBill,
    utc_now,
)
from payments import (
    add_credit,
    apply_credit_changes,
    apply_member_payment,
    mark_unpaid,
    record_payment,
    set_credit,
    use_credit,
)
from periods import (
    TimeFrame,
    calculate_monthly_member_bills,
    distribute_payment,
    filter_bills_by_time_frame,
    unpaid_bills_for_member,
)
from settlement import calculate_settlements_with_breakdown

logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, connect_args=connect_args)

app = FastAPI(title="Household Bill Ledger API")


def create_db_and_tables():
    SQLModel.metadata.create_all(engine)


def seed_members(session: Session):
    if session.exec(select(Member)).first() is not None:
        return
    for m in DEFAULT_MEMBERS:
        session.add(Member(**m))
    session.commit()
    logger.info("Seeded %d default members", len(DEFAULT_MEMBERS))


@app.on_event("startup")
def on_startup():
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_db_and_tables()
    if SEED_MEMBERS:
        with Session(engine) as session:
            seed_members(session)


def get_session():
    with Session(engine) as session:
        yield session


# ========== Request bodies ==========
class AmountIn(BaseModel):
    amount: Decimal


class PaymentIn(BaseModel):
    payments: Dict[str, Decimal] = {}      # member -> cash paid now
    credit_used: Dict[str, Decimal] = {}   # member -> own credit applied now
    covering: Dict[str, str] = {}          # payer -> member id, "_cover_all" or "_credit"
    paid_date: Optional[date] = None


class PayDownIn(BaseModel):
    amount: Decimal
    apply: bool = False
    paid_date: Optional[date] = None


# ========== Snapshot helpers ==========
def list_members_db(session: Session) -> List[Member]:
    return session.exec(select(Member)).all()


def list_bills_db(session: Session) -> List[Bill]:
    return [r.to_bill() for r in session.exec(select(BillRecord)).all()]


def get_member_or_404(session: Session, member_id: str) -> Member:
    member = session.get(Member, member_id)
    if member is None:
        raise HTTPException(status_code=404, detail=f"Member '{member_id}' not found")
    return member


def get_bill_record_or_404(session: Session, bill_id: str) -> BillRecord:
    record = session.get(BillRecord, bill_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Bill '{bill_id}' not found")
    return record


def save_bill(session: Session, record: BillRecord, bill: Bill):
    record.sqlmodel_update(BillRecord.columns_from(bill))
    session.add(record)


def apply_member_credit(session: Session, members: List[Member], changes: Dict[str, Decimal]):
    if not changes:
        return
    credits = {m.id: m.credit for m in members}
    updated = apply_credit_changes(credits, changes)
    for m in members:
        if m.id in updated:
            m.credit = updated[m.id]
            session.add(m)


# ========== Member endpoints ==========
@app.get("/members", response_model=List[Member])
def list_members(session: Session = Depends(get_session)):
    return list_members_db(session)


@app.post("/members", response_model=Member)
def create_member(payload: MemberCreate, session: Session = Depends(get_session)):
    member_id = payload.member_id()
    if session.get(Member, member_id) is not None:
        raise HTTPException(status_code=400, detail=f"Member '{member_id}' already exists")
    member = Member(id=member_id, **payload.model_dump(exclude={"id"}))
    session.add(member)
    session.commit()
    session.refresh(member)
    logger.info("Created member %s", member.id)
    return member


@app.patch("/members/{member_id}", response_model=Member)
def update_member(member_id: str, payload: MemberUpdate, session: Session = Depends(get_session)):
    member = get_member_or_404(session, member_id)
    member.sqlmodel_update(payload.model_dump(exclude_unset=True))
    session.add(member)
    session.commit()
    session.refresh(member)
    return member


@app.delete("/members/{member_id}")
def delete_member(member_id: str, session: Session = Depends(get_session)):
    member = get_member_or_404(session, member_id)
    session.delete(member)
    session.commit()
    logger.info("Deleted member %s", member_id)
    return {"success": True}


@app.post("/members/{member_id}/credit/add", response_model=Member)
def add_member_credit(member_id: str, payload: AmountIn, session: Session = Depends(get_session)):
    member = get_member_or_404(session, member_id)
    try:
        member.credit = add_credit(member.credit, payload.amount)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    session.add(member)
    session.commit()
    session.refresh(member)
    return member


@app.post("/members/{member_id}/credit/use", response_model=Member)
def use_member_credit(member_id: str, payload: AmountIn, session: Session = Depends(get_session)):
    member = get_member_or_404(session, member_id)
    try:
        member.credit = use_credit(member.credit, payload.amount)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    session.add(member)
    session.commit()
    session.refresh(member)
    return member


@app.put("/members/{member_id}/credit", response_model=Member)
def set_member_credit(member_id: str, payload: AmountIn, session: Session = Depends(get_session)):
    member = get_member_or_404(session, member_id)
    member.credit = set_credit(payload.amount)
    session.add(member)
    session.commit()
    session.refresh(member)
    return member


# ========== Bill endpoints ==========
@app.get("/bills", response_model=List[Bill])
def list_bills(time_frame: Optional[TimeFrame] = None, session: Session = Depends(get_session)):
    bills = list_bills_db(session)
    if time_frame is not None:
        bills = filter_bills_by_time_frame(bills, time_frame)
    return bills


@app.post("/bills", response_model=Bill)
def create_bill(payload: BillCreate, session: Session = Depends(get_session)):
    bill = Bill(**payload.model_dump())
    session.add(BillRecord.from_bill(bill))
    session.commit()
    logger.info("Created bill %s (%s %s)", bill.id, bill.name, bill.amount)
    return bill


@app.get("/bills/{bill_id}", response_model=Bill)
def get_bill(bill_id: str, session: Session = Depends(get_session)):
    return get_bill_record_or_404(session, bill_id).to_bill()


@app.put("/bills/{bill_id}", response_model=Bill)
def update_bill(bill_id: str, payload: BillCreate, session: Session = Depends(get_session)):
    record = get_bill_record_or_404(session, bill_id)
    bill = Bill(id=bill_id, created_at=record.created_at, updated_at=utc_now(), **payload.model_dump())
    save_bill(session, record, bill)
    session.commit()
    return bill


@app.delete("/bills/{bill_id}")
def delete_bill(bill_id: str, session: Session = Depends(get_session)):
    record = get_bill_record_or_404(session, bill_id)
    session.delete(record)
    session.commit()
    logger.info("Deleted bill %s", bill_id)
    return {"success": True}


@app.delete("/bills")
def delete_old_bills(before: date, session: Session = Depends(get_session)):
    old = session.exec(select(BillRecord).where(BillRecord.due_date < before)).all()
    for record in old:
        session.delete(record)
    session.commit()
    logger.info("Deleted %d bills due before %s", len(old), before)
    return {"deleted": len(old)}


@app.get("/bills/{bill_id}/status", response_model=PaymentStatus)
def get_bill_status(bill_id: str, session: Session = Depends(get_session)):
    return bill_payment_status(get_bill_record_or_404(session, bill_id).to_bill())


@app.post("/bills/{bill_id}/pay", response_model=PaymentOutcome)
def pay_bill(bill_id: str, payload: PaymentIn, session: Session = Depends(get_session)):
    record = get_bill_record_or_404(session, bill_id)
    members = list_members_db(session)
    try:
        outcome = record_payment(
            record.to_bill(),
            members,
            payload.payments,
            credit_used=payload.credit_used,
            covering=payload.covering,
            paid_date=payload.paid_date,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    save_bill(session, record, outcome.bill)
    apply_member_credit(session, members, outcome.credit_changes)
    session.commit()
    logger.info("Recorded %s payment on bill %s", "partial" if outcome.is_partial else "full", bill_id)
    return outcome


@app.post("/bills/{bill_id}/unpay", response_model=PaymentOutcome)
def unpay_bill(bill_id: str, session: Session = Depends(get_session)):
    record = get_bill_record_or_404(session, bill_id)
    outcome = mark_unpaid(record.to_bill())
    save_bill(session, record, outcome.bill)
    apply_member_credit(session, list_members_db(session), outcome.credit_changes)
    session.commit()
    logger.info("Marked bill %s unpaid", bill_id)
    return outcome


# ========== Settlement record endpoints ==========
@app.get("/settlement-records", response_model=List[SettlementRecord])
def list_settlement_records(session: Session = Depends(get_session)):
    return session.exec(select(SettlementRecord).order_by(SettlementRecord.created_at.desc())).all()


@app.post("/settlement-records", response_model=SettlementRecord)
def create_settlement_record(payload: SettlementRecordBase, session: Session = Depends(get_session)):
    if payload.from_id == payload.to_id:
        raise HTTPException(status_code=400, detail="A member cannot settle with themselves")
    record = SettlementRecord(**payload.model_dump())
    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info("Recorded %s of %s from %s to %s", record.type.value, record.amount, record.from_id, record.to_id)
    return record


@app.delete("/settlement-records/{record_id}")
def delete_settlement_record(record_id: str, session: Session = Depends(get_session)):
    record = session.get(SettlementRecord, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Settlement record '{record_id}' not found")
    session.delete(record)
    session.commit()
    return {"success": True}


@app.delete("/settlement-records")
def clear_settlement_records(session: Session = Depends(get_session)):
    for record in session.exec(select(SettlementRecord)).all():
        session.delete(record)
    session.commit()
    logger.info("Cleared all settlement records")
    return {"success": True}


# ========== Computed views ==========
@app.get("/balances", response_model=List[MemberBalance])
def balances(session: Session = Depends(get_session)):
    return member_balances(list_bills_db(session), list_members_db(session))


@app.get("/settlements", response_model=List[Settlement])
def settlements(session: Session = Depends(get_session)):
    records = session.exec(select(SettlementRecord)).all()
    return calculate_settlements_with_breakdown(list_bills_db(session), list_members_db(session), records)


@app.get("/monthly", response_model=List[MemberMonthlySummary])
def monthly(month: int, year: int, session: Session = Depends(get_session)):
    try:
        return calculate_monthly_member_bills(list_bills_db(session), list_members_db(session), month, year)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/members/{member_id}/monthly", response_model=MemberMonthlySummary)
def member_monthly(member_id: str, month: int, year: int, session: Session = Depends(get_session)):
    get_member_or_404(session, member_id)
    for summary in monthly(month, year, session):
        if summary.member_id == member_id:
            return summary
    raise HTTPException(status_code=404, detail=f"Member '{member_id}' not found")


@app.get("/members/{member_id}/unpaid", response_model=List[UnpaidBill])
def member_unpaid(member_id: str, session: Session = Depends(get_session)):
    get_member_or_404(session, member_id)
    return unpaid_bills_for_member(list_bills_db(session), list_members_db(session), member_id)


@app.post("/members/{member_id}/pay-down", response_model=PaymentDistribution)
def member_pay_down(member_id: str, payload: PayDownIn, session: Session = Depends(get_session)):
    """Spread a lump sum over the member's oldest unpaid bills; with apply=true, record it."""
    get_member_or_404(session, member_id)
    unpaid = unpaid_bills_for_member(list_bills_db(session), list_members_db(session), member_id)
    try:
        distribution = distribute_payment(unpaid, payload.amount)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if payload.apply:
        for allocation in distribution.allocations:
            record = get_bill_record_or_404(session, allocation.bill_id)
            outcome = apply_member_payment(record.to_bill(), member_id, allocation.paying, payload.paid_date)
            save_bill(session, record, outcome.bill)
        session.commit()
        logger.info("Member %s paid %s across %d bills", member_id, payload.amount, len(distribution.allocations))
    return distribution
