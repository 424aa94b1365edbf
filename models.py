import uuid
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import model_validator
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ============== Enumerations ==============
class SplitType(str, Enum):
    MORTGAGE = "mortgage"
    EVEN = "even"
    PERCENTAGE = "percentage"
    CUSTOM = "custom"
    ITEMS = "items"


class BillCategory(str, Enum):
    MORTGAGE = "mortgage"
    UTILITY = "utility"
    INSURANCE = "insurance"
    SUBSCRIPTION = "subscription"
    GROCERIES = "groceries"
    INTERNET = "internet"
    TRANSPORTATION = "transportation"
    MEDICAL = "medical"
    OTHER = "other"


class BillFrequency(str, Enum):
    ONCE = "once"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"


class BillStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PARTIAL = "partial"
    OVERDUE = "overdue"


class SettlementType(str, Enum):
    FORGIVEN = "forgiven"  # wiped away by the creditor
    PAID = "paid"          # settled outside the app


# ============== Members ==============
class MemberBase(SQLModel):
    name: str
    mortgage_share: Decimal = Field(default=Decimal("0"), ge=0)
    default_split_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    email: Optional[str] = None
    venmo_handle: Optional[str] = None


class Member(MemberBase, table=True):
    id: str = Field(primary_key=True)
    # Overpayment credit, usable only against this member's own bills
    credit: Decimal = Field(default=Decimal("0"))
    created_at: datetime = Field(default_factory=utc_now)


class MemberCreate(MemberBase):
    id: Optional[str] = None

    def member_id(self) -> str:
        return self.id or "-".join(self.name.lower().split())


class MemberUpdate(SQLModel):
    name: Optional[str] = None
    mortgage_share: Optional[Decimal] = Field(default=None, ge=0)
    default_split_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    email: Optional[str] = None
    venmo_handle: Optional[str] = None


# ============== Bills ==============
class ReceiptItem(SQLModel):
    id: str = Field(default_factory=new_id)
    name: str
    amount: Decimal = Field(ge=0)
    assigned_to: List[str] = Field(default_factory=list)


class CoverageAllocation(SQLModel):
    """payer_id paid `amount` extra specifically to cover covered_id's shortfall."""
    payer_id: str
    covered_id: str
    amount: Decimal


class BillBase(SQLModel):
    name: str
    amount: Decimal = Field(gt=0)
    due_date: date
    category: BillCategory = BillCategory.OTHER
    split_type: SplitType = SplitType.EVEN
    paid_by: Optional[str] = None  # legacy single payer
    paid_contributions: Optional[Dict[str, Decimal]] = None  # multi-payer, includes credit applied
    contribution_dates: Optional[Dict[str, date]] = None
    credit_used: Optional[Dict[str, Decimal]] = None
    credit_earned: Optional[Dict[str, Decimal]] = None
    coverage_allocations: Optional[List[CoverageAllocation]] = None
    paid_date: Optional[date] = None
    is_paid: bool = False
    recurring: bool = False
    frequency: BillFrequency = BillFrequency.ONCE
    custom_splits: Optional[Dict[str, Decimal]] = None  # amount or percentage, per split_type
    items: Optional[List[ReceiptItem]] = None
    notes: Optional[str] = None


class Bill(BillBase):
    id: str = Field(default_factory=new_id)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class BillCreate(BillBase):
    """Bill as submitted by a client; rejects bills whose split cannot be computed."""

    @model_validator(mode="after")
    def check_split_data(self):
        if self.split_type in (SplitType.PERCENTAGE, SplitType.CUSTOM) and not self.custom_splits:
            raise ValueError(f"split_type '{self.split_type.value}' requires custom_splits")
        if self.split_type == SplitType.PERCENTAGE:
            for member_id, pct in self.custom_splits.items():
                if pct < 0 or pct > 100:
                    raise ValueError(f"percentage for '{member_id}' must be between 0 and 100, got {pct}")
        if self.split_type == SplitType.CUSTOM:
            if any(v < 0 for v in self.custom_splits.values()):
                raise ValueError("custom split amounts must not be negative")
        if self.split_type == SplitType.ITEMS and not self.items:
            raise ValueError("split_type 'items' requires at least one item")
        return self


JSON_FIELDS = (
    "paid_contributions",
    "contribution_dates",
    "credit_used",
    "credit_earned",
    "coverage_allocations",
    "custom_splits",
    "items",
)


class BillRecord(SQLModel, table=True):
    """Persisted bill. Maps and lists live in JSON columns as plain strings/numbers."""
    __tablename__ = "bill"

    id: str = Field(default_factory=new_id, primary_key=True)
    name: str
    amount: Decimal
    due_date: date = Field(index=True)
    category: BillCategory = BillCategory.OTHER
    split_type: SplitType = SplitType.EVEN
    paid_by: Optional[str] = None
    paid_date: Optional[date] = None
    is_paid: bool = False
    recurring: bool = False
    frequency: BillFrequency = BillFrequency.ONCE
    notes: Optional[str] = None
    paid_contributions: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    contribution_dates: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    credit_used: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    credit_earned: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    coverage_allocations: Optional[list] = Field(default=None, sa_column=Column(JSON))
    custom_splits: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    items: Optional[list] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @staticmethod
    def columns_from(bill: Bill) -> dict:
        data = bill.model_dump(exclude=set(JSON_FIELDS))
        data.update(bill.model_dump(mode="json", include=set(JSON_FIELDS)))
        return data

    @classmethod
    def from_bill(cls, bill: Bill) -> "BillRecord":
        return cls(**cls.columns_from(bill))

    def to_bill(self) -> Bill:
        return Bill.model_validate(self.model_dump())


# ============== Settlement records (forgiveness / outside payments) ==============
class SettlementRecordBase(SQLModel):
    from_id: str  # debtor
    to_id: str    # creditor who forgave or was paid
    amount: Decimal = Field(gt=0)
    type: SettlementType = SettlementType.FORGIVEN
    note: Optional[str] = None


class SettlementRecord(SettlementRecordBase, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    created_at: datetime = Field(default_factory=utc_now)


# ============== Engine results ==============
class PaymentStatus(SQLModel):
    status: BillStatus
    total_paid: Decimal
    remaining: Decimal
    is_fully_paid: bool


class BalanceDetail(SQLModel):
    bill_id: str
    bill_name: str
    amount: Decimal  # positive = owes on this bill


class MemberBalance(SQLModel):
    person_id: str
    person_name: str
    owes: Decimal  # positive = owes money, negative = owed money
    details: List[BalanceDetail] = Field(default_factory=list)


class SettlementBreakdown(SQLModel):
    bill_id: str
    bill_name: str
    category: BillCategory
    due_date: date
    total_amount: Decimal
    their_share: Decimal    # what the debtor owed on this bill
    creditor_paid: Decimal  # what the creditor paid toward the debtor's share


class Settlement(SQLModel):
    from_id: str
    to_id: str
    from_name: str
    to_name: str
    amount: Decimal
    breakdown: List[SettlementBreakdown] = Field(default_factory=list)
    # bills going the other direction, netted out
    offset_breakdown: Optional[List[SettlementBreakdown]] = None
    gross_owed: Optional[Decimal] = None
    gross_offset: Optional[Decimal] = None
    forgiven: Optional[Decimal] = None


class MonthlyBillLine(SQLModel):
    bill_id: str
    bill_name: str
    share: Decimal
    paid: Decimal
    remaining: Decimal
    due_date: date
    is_paid: bool


class MemberMonthlySummary(SQLModel):
    member_id: str
    member_name: str
    total_share: Decimal
    amount_paid: Decimal
    remaining: Decimal
    bill_breakdown: List[MonthlyBillLine] = Field(default_factory=list)


class UnpaidBill(SQLModel):
    bill: Bill
    share: Decimal
    paid: Decimal
    remaining: Decimal


class PaymentAllocation(SQLModel):
    bill_id: str
    bill_name: str
    remaining: Decimal  # member's outstanding amount on the bill before this payment
    paying: Decimal


class PaymentDistribution(SQLModel):
    allocations: List[PaymentAllocation] = Field(default_factory=list)
    unallocated: Decimal = Decimal("0")


class PaymentOutcome(SQLModel):
    bill: Bill
    credit_changes: Dict[str, Decimal] = Field(default_factory=dict)  # member -> signed credit delta
    is_partial: bool = False
