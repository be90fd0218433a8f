from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import TransactionType, User
from schemas import (
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    BudgetService,
    CategoryService,
    ConflictError,
    NotFoundError,
    TransactionService,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def make_user(session: Session, email: str = "ana@example.com") -> User:
    user = User(name="Ana", email=email)
    session.add(user)
    session.commit()
    return user


def expense(session, user_id, category_id, amount, when):
    return TransactionService(session, user_id).create(
        TransactionIn(
            amount=Decimal(amount),
            type=TransactionType.expense,
            description="test",
            date=when,
            category_id=category_id,
        )
    )


def test_spent_and_remaining_for_month():
    with make_session() as session:
        user = make_user(session)
        groceries = CategoryService(session, user.id).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        budgets = BudgetService(session, user.id)
        budget = budgets.create(
            BudgetIn(amount=Decimal("500"), month=2, year=2026, category_id=groceries.id)
        )
        assert budget.spent == Decimal("0")
        assert budget.remaining == Decimal("500")

        expense(session, user.id, groceries.id, "150", datetime(2026, 2, 3, 10, 0))
        expense(session, user.id, groceries.id, "85", datetime(2026, 2, 10, 18, 30))
        expense(session, user.id, groceries.id, "120", datetime(2026, 2, 17, 9, 15))

        progress = budgets.get(budget.budget.id)
        assert progress.spent == Decimal("355")
        assert progress.remaining == Decimal("145")
        assert progress.remaining == progress.budget.amount - progress.spent


def test_spent_ignores_other_months_categories_types_and_users():
    with make_session() as session:
        user = make_user(session)
        other = make_user(session, "bo@example.com")
        categories = CategoryService(session, user.id)
        groceries = categories.create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        transport = categories.create(
            CategoryIn(name="Transport", type=TransactionType.expense)
        )
        other_groceries = CategoryService(session, other.id).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )

        budget = BudgetService(session, user.id).create(
            BudgetIn(amount=Decimal("100"), month=3, year=2026, category_id=groceries.id)
        )

        # Inside the month, including both calendar edges.
        expense(session, user.id, groceries.id, "10", datetime(2026, 3, 1, 0, 0))
        expense(session, user.id, groceries.id, "20", datetime(2026, 3, 31, 23, 59, 59))
        # Outside the month.
        expense(session, user.id, groceries.id, "40", datetime(2026, 2, 28, 23, 59))
        expense(session, user.id, groceries.id, "80", datetime(2026, 4, 1, 0, 0))
        # Different category and different user.
        expense(session, user.id, transport.id, "5", datetime(2026, 3, 10))
        expense(session, other.id, other_groceries.id, "7", datetime(2026, 3, 10))

        progress = BudgetService(session, user.id).get(budget.budget.id)
        assert progress.spent == Decimal("30")
        assert progress.remaining == Decimal("70")


def test_remaining_goes_negative_when_overspent():
    with make_session() as session:
        user = make_user(session)
        fun = CategoryService(session, user.id).create(
            CategoryIn(name="Fun", type=TransactionType.expense)
        )
        budgets = BudgetService(session, user.id)
        created = budgets.create(
            BudgetIn(amount=Decimal("50"), month=12, year=2025, category_id=fun.id)
        )
        expense(session, user.id, fun.id, "75.50", datetime(2025, 12, 31, 22, 0))

        progress = budgets.get(created.budget.id)
        assert progress.spent == Decimal("75.50")
        assert progress.remaining == Decimal("-25.50")


def test_duplicate_budget_for_same_month_conflicts():
    with make_session() as session:
        user = make_user(session)
        groceries = CategoryService(session, user.id).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        budgets = BudgetService(session, user.id)
        budgets.create(
            BudgetIn(amount=Decimal("500"), month=2, year=2026, category_id=groceries.id)
        )
        with pytest.raises(ConflictError):
            budgets.create(
                BudgetIn(
                    amount=Decimal("300"), month=2, year=2026, category_id=groceries.id
                )
            )

        # Next month is a separate budget.
        budgets.create(
            BudgetIn(amount=Decimal("300"), month=3, year=2026, category_id=groceries.id)
        )


def test_budget_for_foreign_category_is_not_found():
    with make_session() as session:
        owner = make_user(session)
        intruder = make_user(session, "eve@example.com")
        groceries = CategoryService(session, owner.id).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        with pytest.raises(NotFoundError):
            BudgetService(session, intruder.id).create(
                BudgetIn(
                    amount=Decimal("10"), month=1, year=2026, category_id=groceries.id
                )
            )

        budget = BudgetService(session, owner.id).create(
            BudgetIn(amount=Decimal("10"), month=1, year=2026, category_id=groceries.id)
        )
        with pytest.raises(NotFoundError):
            BudgetService(session, intruder.id).get(budget.budget.id)
        with pytest.raises(NotFoundError):
            BudgetService(session, intruder.id).delete(budget.budget.id)


def test_update_recomputes_remaining_and_list_filters():
    with make_session() as session:
        user = make_user(session)
        categories = CategoryService(session, user.id)
        groceries = categories.create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        transport = categories.create(
            CategoryIn(name="Transport", type=TransactionType.expense)
        )
        budgets = BudgetService(session, user.id)
        jan = budgets.create(
            BudgetIn(amount=Decimal("100"), month=1, year=2026, category_id=groceries.id)
        )
        budgets.create(
            BudgetIn(amount=Decimal("60"), month=2, year=2026, category_id=groceries.id)
        )
        budgets.create(
            BudgetIn(amount=Decimal("40"), month=2, year=2026, category_id=transport.id)
        )
        budgets.create(
            BudgetIn(amount=Decimal("90"), month=2, year=2025, category_id=transport.id)
        )
        expense(session, user.id, groceries.id, "30", datetime(2026, 1, 15))

        updated = budgets.update(jan.budget.id, BudgetUpdate(amount=Decimal("250")))
        assert updated.spent == Decimal("30")
        assert updated.remaining == Decimal("220")

        all_budgets = budgets.list()
        assert [(p.budget.year, p.budget.month) for p in all_budgets] == [
            (2026, 2),
            (2026, 2),
            (2026, 1),
            (2025, 2),
        ]
        assert len(budgets.list(month=2)) == 3
        assert len(budgets.list(month=2, year=2026)) == 2
        assert len(budgets.list(year=2025)) == 1


def test_deleting_category_removes_its_budgets():
    with make_session() as session:
        user = make_user(session)
        categories = CategoryService(session, user.id)
        groceries = categories.create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        budgets = BudgetService(session, user.id)
        budgets.create(
            BudgetIn(amount=Decimal("100"), month=1, year=2026, category_id=groceries.id)
        )

        categories.delete(groceries.id)
        assert budgets.list() == []


def test_offset_dates_are_stored_as_utc_and_count_toward_that_month():
    with make_session() as session:
        user = make_user(session)
        groceries = CategoryService(session, user.id).create(
            CategoryIn(name="Groceries", type=TransactionType.expense)
        )
        budgets = BudgetService(session, user.id)
        february = budgets.create(
            BudgetIn(amount=Decimal("100"), month=2, year=2026, category_id=groceries.id)
        )
        january = budgets.create(
            BudgetIn(amount=Decimal("100"), month=1, year=2026, category_id=groceries.id)
        )

        # 23:30 at UTC-5 on Jan 31 is 04:30 UTC on Feb 1.
        txns = TransactionService(session, user.id)
        txn = txns.create(
            TransactionIn.model_validate(
                {
                    "amount": "40",
                    "type": "EXPENSE",
                    "date": "2026-01-31T23:30:00-05:00",
                    "categoryId": groceries.id,
                }
            )
        )
        assert txn.date == datetime(2026, 2, 1, 4, 30)
        assert budgets.get(february.budget.id).spent == Decimal("40")
        assert budgets.get(january.budget.id).spent == Decimal("0")

        # Moving it back across the boundary through an update.
        txns.update(
            txn.id,
            TransactionUpdate.model_validate({"date": "2026-02-01T02:00:00+03:00"}),
        )
        assert txns.get(txn.id).date == datetime(2026, 1, 31, 23, 0)
        assert budgets.get(february.budget.id).spent == Decimal("0")
        assert budgets.get(january.budget.id).spent == Decimal("40")
