from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import AccountType, BudgetPeriod, TransactionType, User
from schemas import AccountIn, AlertLevel, BudgetIn, TransactionIn
from services import (
    AccountService,
    BudgetService,
    ConflictError,
    NotFoundError,
    TransactionService,
    alert_level,
    percent_used,
)


NOW = datetime(2024, 3, 17, 15, 0)


def _user(session: Session, name: str) -> User:
    user = User(username=name, email=f"{name}@ledger.io", password_hash="x")
    session.add(user)
    session.commit()
    return user


def _spend(session, user_id, account_id, amount, category="Food", when=None, kind=None):
    TransactionService(session, user_id).create(
        TransactionIn(
            account_id=account_id,
            amount=Decimal(amount),
            type=kind or TransactionType.expense,
            category=category,
            date=when or datetime(2024, 3, 5, 12, 0),
        )
    )


def test_alert_thresholds() -> None:
    assert alert_level(Decimal("0.6999")) == AlertLevel.ok
    assert alert_level(Decimal("0.70")) == AlertLevel.warning
    assert alert_level(Decimal("0.8999")) == AlertLevel.warning
    assert alert_level(Decimal("0.90")) == AlertLevel.danger
    assert alert_level(Decimal("1.5")) == AlertLevel.danger


def test_zero_budget_ratio() -> None:
    assert percent_used(Decimal("0"), Decimal("0")) == Decimal("0")
    assert percent_used(Decimal("0.01"), Decimal("0")) == Decimal("1")
    assert percent_used(Decimal("25"), Decimal("100")) == Decimal("0.25")


def test_spend_counts_only_window_category_and_expenses() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        bob = _user(session, "bob")
        accounts = AccountService(session, alice.id)
        cash = accounts.create(AccountIn(name="Cash", type=AccountType.asset))
        card = accounts.create(AccountIn(name="Card", type=AccountType.liability))
        bob_cash = AccountService(session, bob.id).create(
            AccountIn(name="Cash", type=AccountType.asset)
        )

        _spend(session, alice.id, cash.id, "30")
        _spend(session, alice.id, card.id, "25")
        # previous month
        _spend(session, alice.id, cash.id, "500", when=datetime(2024, 2, 28, 12, 0))
        _spend(session, alice.id, cash.id, "500", category="Travel")
        _spend(session, alice.id, cash.id, "500", kind=TransactionType.income)
        _spend(session, bob.id, bob_cash.id, "500")

        budgets = BudgetService(session, alice.id)
        budget = budgets.create(
            BudgetIn(category="Food", amount=Decimal("100"), period=BudgetPeriod.monthly)
        )
        status = budgets.status(budget, now=NOW)
        assert status.spent == Decimal("55")
        assert status.remaining == Decimal("45")
        assert status.percent_used == pytest.approx(55.0)
        assert status.alert_level == AlertLevel.ok
        assert status.window.start == datetime(2024, 3, 1)


def test_alerts_list_budgets_at_or_above_seventy_percent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        cash = AccountService(session, alice.id).create(
            AccountIn(name="Cash", type=AccountType.asset)
        )
        budgets = BudgetService(session, alice.id)
        for category in ("Food", "Travel", "Office"):
            budgets.create(
                BudgetIn(
                    category=category, amount=Decimal("100"), period=BudgetPeriod.monthly
                )
            )
        _spend(session, alice.id, cash.id, "70", category="Food")
        _spend(session, alice.id, cash.id, "90", category="Travel")
        _spend(session, alice.id, cash.id, "69.99", category="Office")

        by_category = {s.budget.category: s for s in budgets.statuses(now=NOW)}
        assert by_category["Food"].alert_level == AlertLevel.warning
        assert by_category["Travel"].alert_level == AlertLevel.danger
        assert by_category["Office"].alert_level == AlertLevel.ok

        alerts = budgets.alerts(now=NOW)
        assert sorted(s.budget.category for s in alerts) == ["Food", "Travel"]


def test_budget_crud_and_uniqueness() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _user(session, "alice")
        bob = _user(session, "bob")
        budgets = BudgetService(session, alice.id)
        monthly = budgets.create(
            BudgetIn(category="Food", amount=Decimal("100"), period=BudgetPeriod.monthly)
        )
        budgets.create(
            BudgetIn(category="Food", amount=Decimal("20"), period=BudgetPeriod.weekly)
        )
        with pytest.raises(ConflictError):
            budgets.create(
                BudgetIn(
                    category="Food", amount=Decimal("5"), period=BudgetPeriod.monthly
                )
            )

        assert len(budgets.list_all()) == 2
        assert [b.period for b in budgets.list_all(BudgetPeriod.weekly)] == [
            BudgetPeriod.weekly
        ]

        assert budgets.update_amount(monthly.id, Decimal("250")).amount == Decimal("250")

        with pytest.raises(NotFoundError):
            BudgetService(session, bob.id).get(monthly.id)

        budgets.delete(monthly.id)
        with pytest.raises(NotFoundError):
            budgets.get(monthly.id)


def test_budget_amounts_are_whole_cents() -> None:
    with pytest.raises(ValueError):
        BudgetIn(category="Food", amount=Decimal("10.005"), period=BudgetPeriod.monthly)
    assert BudgetIn(
        category="Food", amount=Decimal("10.05"), period=BudgetPeriod.monthly
    ).amount == Decimal("10.05")
