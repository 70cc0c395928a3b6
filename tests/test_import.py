from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from csv_utils import parse_amount, parse_csv, sanitize_csv_value
from database import Base
from ledger import BudgetMatcher
from models import (
    MAX_AMOUNT_CENTS,
    Budget,
    Category,
    CategoryType,
    Transaction,
    TransactionType,
)
from schemas import AccountIn, BudgetIn, CategoryIn
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ImportCoordinator,
)


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def food_row(amount: str, day: int = 5) -> dict:
    return {
        "date": f"2025-03-{day:02d}",
        "amount": amount,
        "type": "expense",
        "category": "Food",
        "description": "Market",
    }


def test_import_accumulates_spent_and_only_raises_amount_when_exceeded() -> None:
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
        importer = ImportCoordinator(session)

        created, warnings = importer.import_rows([food_row("30"), food_row("40", 9)])
        assert len(created) == 2
        assert warnings == []
        session.refresh(budget)
        assert budget.spent_cents == 7_000
        assert budget.amount_cents == 20_000

        importer.import_rows([food_row("500", 20)])
        session.refresh(budget)
        assert budget.spent_cents == 57_000
        assert budget.amount_cents == 50_000


def test_import_groups_rows_into_one_auto_budget_per_month() -> None:
    with make_session() as session:
        rows = [
            {"date": "2025-04-02", "amount": "-10.00", "category": "Groceries"},
            {"date": "2025-04-20", "amount": "-15.50", "category": "groceries"},
            {"date": "2025-05-01", "amount": "-4", "category": "Groceries"},
        ]
        created, warnings = ImportCoordinator(session).import_rows(rows)

        assert warnings == []
        assert [t.type for t in created] == [TransactionType.expense] * 3
        assert [t.amount_cents for t in created] == [1_000, 1_550, 400]
        budgets = session.scalars(select(Budget).order_by(Budget.start_date)).all()
        assert [(b.start_date, b.amount_cents, b.spent_cents) for b in budgets] == [
            (date(2025, 4, 1), 2_550, 2_550),
            (date(2025, 5, 1), 400, 400),
        ]
        assert all(b.is_auto_created for b in budgets)
        assert len(session.scalars(select(Category)).all()) == 1


def test_bad_rows_are_skipped_and_reported() -> None:
    with make_session() as session:
        rows = [
            {"date": "2025-02-01", "amount": "abc", "category": "Misc"},
            {"date": "2025-02-02", "amount": None, "category": "Misc"},
            {"date": "2025-02-03", "amount": "nan", "category": "Misc"},
            {"date": "not-a-date", "amount": "5", "category": "Misc"},
            {"date": "2025-02-04", "amount": "-12.30", "category": "Misc"},
        ]
        created, warnings = ImportCoordinator(session).import_rows(rows)

        assert len(created) == 1
        assert created[0].amount_cents == 1_230
        assert len(warnings) == 4
        assert [w.split(":")[0] for w in warnings] == ["Row 1", "Row 2", "Row 3", "Row 4"]
        assert len(session.scalars(select(Transaction)).all()) == 1


def test_missing_fields_get_defaults_and_sign_sets_type() -> None:
    with make_session() as session:
        created, _ = ImportCoordinator(session).import_rows(
            [{"amount": "1200"}, {"amount": -3, "description": "  "}]
        )

        salary, spend = created
        assert salary.type == TransactionType.income
        assert salary.amount_cents == 120_000
        assert salary.description == "Imported Transaction"
        assert spend.type == TransactionType.expense
        assert spend.amount_cents == 300
        uncategorized = session.get(Category, salary.category_id)
        assert uncategorized.name == "Uncategorized"
        assert spend.category_id == uncategorized.id
        assert isinstance(salary.date, date)


def test_declared_saving_type_creates_saving_category() -> None:
    with make_session() as session:
        created, _ = ImportCoordinator(session).import_rows(
            [{"date": "2025-01-31", "amount": "100", "type": "saving", "category": "ETF"}]
        )
        [txn] = created
        assert txn.type == TransactionType.expense
        assert session.get(Category, txn.category_id).type == CategoryType.saving


def test_import_adjusts_balances_and_tolerates_unknown_accounts() -> None:
    with make_session() as session:
        account = AccountService(session).create(
            AccountIn(name="Checking", balance_cents=10_000)
        )
        rows = [
            {"date": "2025-03-01", "amount": "-20", "account_id": account.id},
            {"date": "2025-03-02", "amount": "50", "account_id": account.id},
            {"date": "2025-03-03", "amount": "-1", "account_id": 404},
        ]
        created, warnings = ImportCoordinator(session).import_rows(rows)

        assert len(created) == 3
        assert created[2].account_id is None
        assert warnings == ["Row 3: account 404 not found; imported without account"]
        session.refresh(account)
        assert account.balance_cents == 13_000


def test_import_csv_feeds_coordinator() -> None:
    content = (
        "Date,Amount,Description,Type,Category\n"
        "2025-03-04,\"12,50\",Bakery,expense,Food\n"
        "04.03.2025,1000,Salary,income,Salary\n"
        "bad-date,5,Oops,expense,Food\n"
    )
    with make_session() as session:
        created, warnings = ImportCoordinator(session).import_csv(content)

        assert [t.description for t in created] == ["Bakery", "Salary"]
        assert created[0].amount_cents == 1_250
        assert created[1].date == date(2025, 3, 4)
        assert len(warnings) == 1
        assert warnings[0].startswith("Row 3:")


def test_parse_csv_reads_optional_columns() -> None:
    rows, errors = parse_csv(
        "Date,Amount,Memo,Vendor,Purchaser,Note,Account\n"
        "2025-01-02,-3.20,Coffee,Cafe Blau,Sam,oat milk,7\n"
    )
    assert errors == []
    [row] = rows
    assert row.description == "Coffee"
    assert row.vendor == "Cafe Blau"
    assert row.purchaser == "Sam"
    assert row.note == "oat milk"
    assert row.account_id == 7
    assert row.type is None


@pytest.mark.parametrize(
    "raw, cents",
    [
        ("12.34", 1_234),
        ("12,34", 1_234),
        ("1.234,56", 123_456),
        ("€ 7", 700),
        ("-5.5", -550),
        (3, 300),
        (2.25, 225),
    ],
)
def test_parse_amount_accepts_common_formats(raw, cents) -> None:
    assert parse_amount(raw, allow_negative=True) == cents


@pytest.mark.parametrize("raw", ["", "abc", "inf", "-Infinity", "nan", None, True])
def test_parse_amount_rejects_invalid_values(raw) -> None:
    with pytest.raises(ValueError):
        parse_amount(raw, allow_negative=True)


def test_parse_amount_rejects_negative_by_default() -> None:
    with pytest.raises(ValueError):
        parse_amount("-1")


def test_sanitize_csv_value_neutralizes_formulas() -> None:
    assert sanitize_csv_value("=SUM(A1:A2)") == "\t=SUM(A1:A2)"
    assert sanitize_csv_value("Groceries") == "Groceries"


@pytest.mark.parametrize("huge", ["1e30", "1e20", "-99999999999999999999"])
def test_out_of_range_amount_skips_only_that_row(huge) -> None:
    with make_session() as session:
        created, warnings = ImportCoordinator(session).import_rows(
            [food_row("10", 1), food_row(huge, 2), food_row("20", 3)]
        )

        assert [t.amount_cents for t in created] == [1_000, 2_000]
        assert len(warnings) == 1
        assert warnings[0].startswith("Row 2:")
        assert "out of range" in warnings[0]
        [budget] = session.scalars(select(Budget)).all()
        assert budget.spent_cents == 3_000
        assert len(session.scalars(select(Transaction)).all()) == 2


def test_parse_amount_caps_magnitude() -> None:
    assert parse_amount(str(MAX_AMOUNT_CENTS // 100)) == MAX_AMOUNT_CENTS
    with pytest.raises(ValueError):
        parse_amount("1e30")
    with pytest.raises(ValueError):
        parse_amount(str(MAX_AMOUNT_CENTS))


def test_import_budget_failure_keeps_rows(monkeypatch) -> None:
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
        created, warnings = ImportCoordinator(session).import_rows(
            [food_row("12"), food_row("8", 6)]
        )

        assert len(created) == 2
        assert len(warnings) == 1
        assert "not updated" in warnings[0]
        assert len(session.scalars(select(Transaction)).all()) == 2
        assert session.scalars(select(Budget)).all() == []
