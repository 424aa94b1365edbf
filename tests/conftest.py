from datetime import date
from decimal import Decimal

import pytest

from models import Bill, Member, SplitType


@pytest.fixture
def members():
    return [
        Member(id="a", name="Alice", mortgage_share=Decimal("1300")),
        Member(id="b", name="Bob", mortgage_share=Decimal("700")),
    ]


@pytest.fixture
def three_members():
    return [
        Member(id="a", name="Alice", mortgage_share=Decimal("500")),
        Member(id="b", name="Bob", mortgage_share=Decimal("500")),
        Member(id="c", name="Cara", mortgage_share=Decimal("500")),
    ]


@pytest.fixture
def make_bill():
    """Factory for bills with sensible defaults: $100, split evenly, due 2026-10-01, unpaid."""
    counter = {"n": 0}

    def _make(**kwargs):
        counter["n"] += 1
        data = {
            "id": f"bill-{counter['n']}",
            "name": f"Bill {counter['n']}",
            "amount": Decimal("100"),
            "due_date": date(2026, 10, 1),
            "split_type": SplitType.EVEN,
        }
        data.update(kwargs)
        return Bill(**data)

    return _make
