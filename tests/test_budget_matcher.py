from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from ledger import (
    BudgetMatcher,
    ConflictError,
    NotFoundError,
    TransactionSnapshot,
    category_type_for,
)
from models import Budget, Category, CategoryType, TransactionType
from schemas import BudgetIn, BudgetUpdateIn, CategoryIn, TransactionIn
from services import BudgetService, CategoryService, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _expense(amount_cents: int, on: date, **overrides) -> TransactionIn:
    payload = {
        "date": on,
        "type": TransactionType.expense,
        "amount_cents": amount_cents,
        "description": "Expense",
    }
    payload.update(overrides)
    return TransactionIn(**payload)


def _budgets(session: Session) -> list[Budget]:
    return session.scalars(select(Budget).order_by(Budget.start_date)).all()


def test_expense_without_budget_auto_creates_month_budget() -> None:
    with make_session() as session:
        txn, warnings = TransactionService(session).create(
            _expense(90_000, date(2025, 4, 12), category="Rent")
        )

        assert warnings == []
        rent = session.get(Category, txn.category_id)
        assert rent.name == "Rent"
        assert rent.type == CategoryType.expense

        [budget] = _budgets(session)
        assert budget.category_id == rent.id
        assert budget.amount_cents == 90_000
        assert budget.spent_cents == 90_000
        assert budget.is_auto_created is True
        assert budget.start_date == date(2025, 4, 1)
        assert budget.end_date == date(2025, 4, 30)
        assert budget.description == "Auto-created budget for Rent"


def test_matching_budget_accumulates_spent_without_raising_amount() -> None:
    with make_session() as session:
        food = CategoryService(session).create(CategoryIn(name="Food"))
        budget = BudgetService(session).create(
            BudgetIn(
                category_id=food.id,
                amount_cents=20_000,
                start_date=date(2025, 3, 1),
                end_date=date(2025, 3, 31),
            )
        )
        txns = TransactionService(session)
        txns.create(_expense(5_000, date(2025, 3, 2), category_id=food.id))
        txns.create(_expense(30_000, date(2025, 3, 20), category="food"))

        session.refresh(budget)
        assert budget.spent_cents == 35_000
        assert budget.amount_cents == 20_000
        assert len(_budgets(session)) == 1


def test_income_does_not_touch_budgets() -> None:
    with make_session() as session:
        txn, _ = TransactionService(session).create(
            TransactionIn(
                date=date(2025, 3, 1),
                type=TransactionType.income,
                amount_cents=300_000,
                description="Salary",
                category="Salary",
            )
        )
        assert session.get(Category, txn.category_id).type == CategoryType.income
        assert _budgets(session) == []


def test_update_moves_spent_to_new_period() -> None:
    with make_session() as session:
        txns = TransactionService(session)
        txn, _ = txns.create(_expense(4_000, date(2025, 3, 15), category="Fuel"))
        [march] = _budgets(session)

        txns.update(txn.id, _expense(6_000, date(2025, 4, 2), category="Fuel"))

        session.refresh(march)
        assert march.spent_cents == 0
        april = [b for b in _budgets(session) if b.start_date == date(2025, 4, 1)]
        assert len(april) == 1
        assert april[0].spent_cents == 6_000


def test_delete_reverses_spent() -> None:
    with make_session() as session:
        txns = TransactionService(session)
        first, _ = txns.create(_expense(1_500, date(2025, 5, 1), category="Coffee"))
        txns.create(_expense(500, date(2025, 5, 3), category="Coffee"))
        [budget] = _budgets(session)

        txns.delete(first.id)

        session.refresh(budget)
        assert budget.spent_cents == 500


def test_bookkeeping_failure_is_returned_as_warning() -> None:
    with make_session() as session:
        snapshot = TransactionSnapshot(
            id=7,
            user_id=1,
            account_id=None,
            category_id=999,
            amount_cents=1_000,
            type=TransactionType.expense,
            date=date(2025, 1, 5),
        )
        warnings = BudgetMatcher(session, user_id=1).on_create(snapshot)
        assert len(warnings) == 1
        assert "transaction 7" in warnings[0]
        assert _budgets(session) == []


def test_unknown_category_id_is_rejected() -> None:
    with make_session() as session:
        with pytest.raises(NotFoundError):
            TransactionService(session).create(
                _expense(1_000, date(2025, 1, 1), category_id=123)
            )


def test_recalculate_repairs_drift_and_is_idempotent() -> None:
    with make_session() as session:
        txns = TransactionService(session)
        txns.create(_expense(2_000, date(2025, 6, 1), category="Books"))
        txns.create(_expense(3_000, date(2025, 6, 9), category="Books"))
        [budget] = _budgets(session)
        budget.spent_cents = 123_456
        session.commit()

        budgets = BudgetService(session)
        assert budgets.recalculate() == 1
        session.refresh(budget)
        assert budget.spent_cents == 5_000

        assert budgets.recalculate() == 1
        session.refresh(budget)
        assert budget.spent_cents == 5_000


def test_recalculate_respects_window() -> None:
    with make_session() as session:
        txns = TransactionService(session)
        txns.create(_expense(1_000, date(2025, 1, 10), category="Gym"))
        txns.create(_expense(1_000, date(2025, 2, 10), category="Gym"))
        for budget in _budgets(session):
            budget.spent_cents = 0
        session.commit()

        count = BudgetService(session).recalculate(date(2025, 2, 1), date(2025, 2, 28))

        assert count == 1
        january, february = _budgets(session)
        assert january.spent_cents == 0
        assert february.spent_cents == 1_000


def test_recalculate_all_users_covers_every_owner() -> None:
    with make_session() as session:
        TransactionService(session, user_id=1).create(
            _expense(1_000, date(2025, 1, 10), category="Gym")
        )
        TransactionService(session, user_id=2).create(
            _expense(2_000, date(2025, 1, 10), category="Gym")
        )
        assert BudgetService.recalculate_all_users(session) == 2


def test_manual_budget_starts_with_existing_spend() -> None:
    with make_session() as session:
        TransactionService(session).create(
            _expense(2_500, date(2025, 7, 3), category="Pets")
        )
        pets = session.scalar(select(Category).where(Category.name == "Pets"))
        budget = BudgetService(session).create(
            BudgetIn(
                category_id=pets.id,
                amount_cents=10_000,
                start_date=date(2025, 7, 1),
                end_date=date(2025, 7, 15),
            )
        )
        assert budget.spent_cents == 2_500


def test_duplicate_budget_period_conflicts() -> None:
    with make_session() as session:
        TransactionService(session).create(
            _expense(900, date(2025, 8, 3), category="Music")
        )
        music = session.scalar(select(Category).where(Category.name == "Music"))
        with pytest.raises(ConflictError):
            BudgetService(session).create(
                BudgetIn(
                    category_id=music.id,
                    amount_cents=1_000,
                    start_date=date(2025, 8, 1),
                    end_date=date(2025, 8, 31),
                )
            )


def test_budget_update_changes_amount_only() -> None:
    with make_session() as session:
        TransactionService(session).create(
            _expense(900, date(2025, 8, 3), category="Music")
        )
        [budget] = _budgets(session)
        updated = BudgetService(session).update(
            budget.id, BudgetUpdateIn(amount_cents=5_000)
        )
        assert updated.amount_cents == 5_000
        assert updated.spent_cents == 900


def test_category_in_use_cannot_be_deleted() -> None:
    with make_session() as session:
        txn, _ = TransactionService(session).create(
            _expense(900, date(2025, 8, 3), category="Music")
        )
        with pytest.raises(ConflictError):
            CategoryService(session).delete(txn.category_id)


def test_unused_category_delete_removes_its_budgets() -> None:
    with make_session() as session:
        txns = TransactionService(session)
        txn, _ = txns.create(_expense(900, date(2025, 8, 3), category="Music"))
        category_id = txn.category_id
        txns.delete(txn.id)

        CategoryService(session).delete(category_id)

        assert _budgets(session) == []
        assert session.get(Category, category_id) is None


def test_category_names_are_unique_case_insensitively() -> None:
    with make_session() as session:
        categories = CategoryService(session)
        categories.create(CategoryIn(name="Travel"))
        with pytest.raises(ConflictError):
            categories.create(CategoryIn(name="travel"))


@pytest.mark.parametrize(
    "declared, expected",
    [
        ("income", CategoryType.income),
        ("SAVING", CategoryType.saving),
        ("investment", CategoryType.investment),
        ("expense", CategoryType.expense),
        ("transfer", CategoryType.expense),
        (None, CategoryType.expense),
    ],
)
def test_category_type_inference(declared, expected) -> None:
    assert category_type_for(declared) == expected


def test_switching_expense_to_income_releases_budget() -> None:
    with make_session() as session:
        txns = TransactionService(session)
        txn, _ = txns.create(_expense(7_500, date(2025, 9, 4), category="Refunds"))
        [budget] = _budgets(session)
        assert budget.spent_cents == 7_500

        txns.update(
            txn.id,
            _expense(7_500, date(2025, 10, 4), category="Refunds", type=TransactionType.income),
        )

        session.refresh(budget)
        assert budget.spent_cents == 0
        assert _budgets(session) == [budget]


def test_bulk_delete_reverses_shared_budget_once_per_transaction() -> None:
    with make_session() as session:
        txns = TransactionService(session)
        first, _ = txns.create(_expense(1_000, date(2025, 3, 1), category="Food"))
        second, _ = txns.create(_expense(2_000, date(2025, 3, 9), category="Food"))
        third, _ = txns.create(_expense(4_000, date(2025, 3, 20), category="Food"))
        txns.create(_expense(500, date(2025, 3, 21), category="Food"))
        txns.create(_expense(900, date(2025, 3, 21), category="Fuel"))
        food, fuel = sorted(_budgets(session), key=lambda b: b.spent_cents, reverse=True)
        assert food.spent_cents == 7_500

        count, warnings = txns.bulk_delete([first.id, second.id, third.id])

        assert count == 3
        assert warnings == []
        session.refresh(food)
        session.refresh(fuel)
        assert food.spent_cents == 500
        assert fuel.spent_cents == 900


def test_budget_write_failure_does_not_lose_transaction(monkeypatch) -> None:
    def broken_auto_budget(self, category_id, on_date, amount_cents, spent_cents):
        self.session.add(
            Budget(
                user_id=self.user_id,
                category_id=None,
                amount_cents=amount_cents,
                spent_cents=spent_cents,
                start_date=on_date,
                end_date=on_date,
            )
        )
        self.session.flush()

    monkeypatch.setattr(BudgetMatcher, "create_auto_budget", broken_auto_budget)

    with make_session() as session:
        txns = TransactionService(session)
        txn, warnings = txns.create(_expense(1_200, date(2025, 2, 2), category="Taxi"))

        assert len(warnings) == 1
        assert f"transaction {txn.id}" in warnings[0]
        assert txns.get(txn.id).amount_cents == 1_200
        assert _budgets(session) == []
