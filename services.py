from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Any, Optional, Sequence, Union

from pydantic import ValidationError
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from csv_utils import export_transactions, parse_amount, parse_csv
from ledger import (
    BalanceTracker,
    BudgetMatcher,
    ConflictError,
    ImportRowError,
    NotFoundError,
    TransactionSnapshot,
    category_type_for,
)
from models import (
    Account,
    Budget,
    Category,
    Goal,
    Transaction,
    TransactionType,
)
from networth import NetWorthReconstructor
from periods import (
    Period,
    local_today,
    month_end,
    month_key,
    month_start,
    trailing_months,
)
from schemas import (
    AccountIn,
    AccountUpdateIn,
    BudgetIn,
    BudgetUpdateIn,
    CategoryIn,
    GoalIn,
    GoalUpdateIn,
    ImportRow,
    TransactionIn,
)


logger = logging.getLogger(__name__)

DEFAULT_IMPORT_CATEGORY = "Uncategorized"
DEFAULT_IMPORT_DESCRIPTION = "Imported Transaction"


def get_current_user_id() -> int:
    return 1


@dataclass
class TransactionFilters:
    type: Optional[TransactionType] = None
    category_id: Optional[int] = None
    account_id: Optional[int] = None
    query: Optional[str] = None
    min_amount_cents: Optional[int] = None
    max_amount_cents: Optional[int] = None


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name, Account.id)
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError(f"Account with ID {account_id} not found")
        return account

    def create(self, data: AccountIn) -> Account:
        account = Account(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            balance_cents=data.balance_cents,
            institution=data.institution,
            account_number=data.account_number,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        logger.info(
            f"account_created: user_id={self.user_id} account_id={account.id} "
            f"opening_balance_cents={account.balance_cents}"
        )
        return account

    def update(self, account_id: int, data: AccountUpdateIn) -> Account:
        account = self.get(account_id)
        changes = data.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] is not None:
            changes["name"] = changes["name"].strip()
        for field, value in changes.items():
            setattr(account, field, value)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        detached = self.session.execute(
            update(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.account_id == account.id,
            )
            .values(account_id=None)
        ).rowcount
        self.session.delete(account)
        self.session.commit()
        logger.info(
            f"account_deleted: user_id={self.user_id} account_id={account_id} "
            f"detached_transactions={detached}"
        )


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.name)
        )
        return self.session.scalars(stmt).all()

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError(f"Category with ID {category_id} not found")
        return category

    def _find_by_name(self, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == name.strip().lower(),
            )
        )

    def create(self, data: CategoryIn) -> Category:
        if self._find_by_name(data.name):
            raise ConflictError("Category with this name already exists")
        category = Category(
            user_id=self.user_id,
            name=data.name.strip(),
            type=data.type,
            description=data.description,
            is_default=data.is_default,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def find_or_create(self, name: str, declared_type: Optional[str] = None) -> Category:
        category = BudgetMatcher(self.session, self.user_id).find_or_create_category(
            name, category_type_for(declared_type)
        )
        self.session.commit()
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.get(category_id)
        existing = self._find_by_name(name)
        if existing and existing.id != category.id:
            raise ConflictError("Category with this name already exists")
        category.name = name.strip()
        self.session.commit()
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        in_use = int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.user_id == self.user_id,
                    Transaction.category_id == category.id,
                )
            ).scalar_one()
            or 0
        )
        if in_use:
            raise ConflictError(
                f"Category '{category.name}' is used by {in_use} transactions"
            )
        self.session.execute(
            delete(Budget).where(
                Budget.user_id == self.user_id, Budget.category_id == category.id
            )
        )
        self.session.delete(category)
        self.session.commit()


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> list[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.user_id == self.user_id)
            .order_by(Budget.start_date.desc(), Budget.category_id, Budget.id)
        )
        if start is not None:
            stmt = stmt.where(Budget.end_date >= start)
        if end is not None:
            stmt = stmt.where(Budget.start_date <= end)
        return self.session.scalars(stmt).all()

    def get(self, budget_id: int) -> Budget:
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise NotFoundError(f"Budget with ID {budget_id} not found")
        return budget

    def create(self, data: BudgetIn) -> Budget:
        matcher = BudgetMatcher(self.session, self.user_id)
        category = matcher.resolve_category(data.category_id, None, None)
        existing = self.session.scalar(
            select(Budget).where(
                Budget.user_id == self.user_id,
                Budget.category_id == category.id,
                Budget.start_date == data.start_date,
                Budget.end_date == data.end_date,
            )
        )
        if existing:
            raise ConflictError(
                f"A budget for '{category.name}' already covers this period"
            )
        budget = Budget(
            user_id=self.user_id,
            category_id=category.id,
            amount_cents=data.amount_cents,
            spent_cents=matcher.spent_for(category.id, data.start_date, data.end_date),
            start_date=data.start_date,
            end_date=data.end_date,
            is_auto_created=False,
            description=data.description,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def update(self, budget_id: int, data: BudgetUpdateIn) -> Budget:
        budget = self.get(budget_id)
        if data.amount_cents is not None:
            budget.amount_cents = data.amount_cents
        if data.description is not None:
            budget.description = data.description
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        budget = self.get(budget_id)
        self.session.delete(budget)
        self.session.commit()

    def recalculate(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> int:
        count = BudgetMatcher(self.session, self.user_id).recalculate(start, end)
        self.session.commit()
        logger.info(
            f"budgets_recalculated: user_id={self.user_id} start={start} end={end} "
            f"count={count}"
        )
        return count

    @staticmethod
    def recalculate_all_users(session: Session) -> int:
        user_ids = session.scalars(select(Budget.user_id).distinct()).all()
        total = 0
        for user_id in user_ids:
            total += BudgetService(session, user_id).recalculate()
        return total


class TransactionService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _require_account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFoundError(f"Account with ID {account_id} not found")
        return account

    def _resolve_category_id(
        self, matcher: BudgetMatcher, data: TransactionIn
    ) -> tuple[Optional[int], list[str]]:
        if data.category_id is not None:
            return matcher.resolve_category(data.category_id, None, None).id, []
        if not data.category:
            return None, []
        try:
            category = matcher.resolve_category(None, data.category, data.type.value)
        except (SQLAlchemyError, ValueError) as exc:
            logger.exception(
                f"category_resolve_failed: user_id={self.user_id} name={data.category!r}"
            )
            return None, [f"Category '{data.category}' could not be resolved: {exc}"]
        return (category.id if category else None), []

    def create(self, data: TransactionIn) -> tuple[Transaction, list[str]]:
        if data.account_id is not None:
            self._require_account(data.account_id)
        matcher = BudgetMatcher(self.session, self.user_id)
        category_id, warnings = self._resolve_category_id(matcher, data)

        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=category_id,
            date=data.date,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description.strip(),
            vendor=data.vendor,
            purchaser=data.purchaser,
            note=data.note,
        )
        self.session.add(txn)
        self.session.flush()

        snapshot = TransactionSnapshot.of(txn)
        warnings.extend(BalanceTracker(self.session, self.user_id).on_create(snapshot))
        warnings.extend(matcher.on_create(snapshot))
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_created: user_id={self.user_id} transaction_id={txn.id} "
            f"type={txn.type.value} amount_cents={txn.amount_cents} "
            f"account_id={txn.account_id} warnings={len(warnings)}"
        )
        return txn, warnings

    def get(self, transaction_id: int) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError(f"Transaction with ID {transaction_id} not found")
        return txn

    def update(
        self, transaction_id: int, data: TransactionIn
    ) -> tuple[Transaction, list[str]]:
        txn = self.get(transaction_id)
        if data.account_id is not None:
            self._require_account(data.account_id)
        old = TransactionSnapshot.of(txn)

        matcher = BudgetMatcher(self.session, self.user_id)
        category_id, warnings = self._resolve_category_id(matcher, data)

        txn.date = data.date
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.account_id = data.account_id
        txn.category_id = category_id
        txn.description = data.description.strip()
        txn.vendor = data.vendor
        txn.purchaser = data.purchaser
        txn.note = data.note
        self.session.flush()

        new = TransactionSnapshot.of(txn)
        warnings.extend(BalanceTracker(self.session, self.user_id).on_update(old, new))
        warnings.extend(matcher.on_update(old, new))
        self.session.commit()
        self.session.refresh(txn)
        logger.info(
            f"transaction_updated: user_id={self.user_id} transaction_id={txn.id} "
            f"account_id={old.account_id}->{new.account_id} "
            f"amount_cents={old.amount_cents}->{new.amount_cents} warnings={len(warnings)}"
        )
        return txn, warnings

    def delete(self, transaction_id: int) -> list[str]:
        txn = self.get(transaction_id)
        old = TransactionSnapshot.of(txn)
        self.session.delete(txn)
        self.session.flush()

        warnings = BalanceTracker(self.session, self.user_id).on_delete(old)
        warnings.extend(BudgetMatcher(self.session, self.user_id).on_delete(old))
        self.session.commit()
        logger.info(
            f"transaction_deleted: user_id={self.user_id} transaction_id={transaction_id} "
            f"warnings={len(warnings)}"
        )
        return warnings

    def bulk_delete(
        self, transaction_ids: Optional[Sequence[int]] = None
    ) -> tuple[int, list[str]]:
        """Delete the given transactions, or every transaction of the user when
        ``transaction_ids`` is None, applying one balance write per account."""
        stmt = select(Transaction).where(Transaction.user_id == self.user_id)
        if transaction_ids is not None:
            stmt = stmt.where(Transaction.id.in_(list(transaction_ids)))
        snapshots = [TransactionSnapshot.of(t) for t in self.session.scalars(stmt)]
        if transaction_ids is not None:
            missing = set(transaction_ids) - {s.id for s in snapshots}
            if missing:
                raise NotFoundError(
                    f"Transactions not found: {', '.join(str(i) for i in sorted(missing))}"
                )
        if not snapshots:
            return 0, []

        self.session.execute(
            delete(Transaction).where(
                Transaction.user_id == self.user_id,
                Transaction.id.in_([s.id for s in snapshots]),
            )
        )
        warnings = BalanceTracker(self.session, self.user_id).on_bulk_delete(snapshots)
        warnings.extend(
            BudgetMatcher(self.session, self.user_id).on_bulk_delete(snapshots)
        )
        self.session.commit()
        logger.info(
            f"transactions_bulk_deleted: user_id={self.user_id} count={len(snapshots)} "
            f"warnings={len(warnings)}"
        )
        return len(snapshots), warnings

    def _filtered(self, stmt, period: Optional[Period], filters: TransactionFilters):
        stmt = stmt.where(Transaction.user_id == self.user_id)
        if period is not None:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if filters.type:
            stmt = stmt.where(Transaction.type == filters.type)
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.account_id:
            stmt = stmt.where(Transaction.account_id == filters.account_id)
        if filters.min_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents >= filters.min_amount_cents)
        if filters.max_amount_cents is not None:
            stmt = stmt.where(Transaction.amount_cents <= filters.max_amount_cents)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.vendor, "")).like(like),
                )
            )
        return stmt

    def list(
        self,
        period: Optional[Period],
        filters: TransactionFilters,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = self._filtered(
            select(Transaction).options(joinedload(Transaction.category)),
            period,
            filters,
        )
        stmt = (
            stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def count(self, period: Optional[Period], filters: TransactionFilters) -> int:
        stmt = self._filtered(select(func.count(Transaction.id)), period, filters)
        return int(self.session.execute(stmt).scalar_one() or 0)

    def list_by_range(
        self, start: date, end: date, category_id: Optional[int] = None
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(start, end),
            )
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        if category_id is not None:
            stmt = stmt.where(Transaction.category_id == category_id)
        return self.session.scalars(stmt).all()

    def unique_categories(self) -> list[str]:
        stmt = (
            select(Category.name)
            .join(Transaction, Transaction.category_id == Category.id)
            .where(Transaction.user_id == self.user_id)
            .distinct()
            .order_by(Category.name)
        )
        return list(self.session.scalars(stmt).all())

    def export_csv(self, period: Optional[Period], filters: TransactionFilters) -> str:
        stmt = self._filtered(
            select(Transaction).options(joinedload(Transaction.category)),
            period,
            filters,
        ).order_by(Transaction.date.asc(), Transaction.id.asc())
        return export_transactions(self.session.scalars(stmt).all())


class ImportCoordinator:
    """Bulk ingestion of normalized rows.

    A bad row is skipped and reported, never fatal to the batch. Balances are
    adjusted per row; budgets get one consolidated pass at the end, which is
    also the only path allowed to raise an existing budget's amount.
    """

    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def import_csv(self, content: str) -> tuple[list[Transaction], list[str]]:
        rows, errors = parse_csv(content)
        for error in errors:
            logger.warning(f"import_csv_row_invalid: user_id={self.user_id} {error}")
        created, warnings = self.import_rows(rows)
        return created, errors + warnings

    def import_rows(
        self, rows: Sequence[Union[ImportRow, dict[str, Any]]]
    ) -> tuple[list[Transaction], list[str]]:
        matcher = BudgetMatcher(self.session, self.user_id)
        balances = BalanceTracker(self.session, self.user_id)
        known_accounts = set(
            self.session.scalars(
                select(Account.id).where(Account.user_id == self.user_id)
            ).all()
        )
        today = local_today()
        created: list[Transaction] = []
        warnings: list[str] = []

        for idx, row in enumerate(rows, start=1):
            try:
                txn = self._build(idx, row, matcher, known_accounts, today, warnings)
            except ImportRowError as exc:
                logger.warning(
                    f"import_row_skipped: user_id={self.user_id} row={idx} reason={exc}"
                )
                warnings.append(f"Row {idx}: {exc}")
                continue
            self.session.add(txn)
            self.session.flush()
            warnings.extend(balances.on_create(TransactionSnapshot.of(txn)))
            created.append(txn)

        warnings.extend(self._provision_budgets(matcher, created))
        self.session.commit()
        logger.info(
            f"import_finished: user_id={self.user_id} rows={len(rows)} "
            f"imported={len(created)} warnings={len(warnings)}"
        )
        return created, warnings

    def _build(
        self,
        idx: int,
        row: Union[ImportRow, dict[str, Any]],
        matcher: BudgetMatcher,
        known_accounts: set[int],
        today: date,
        warnings: list[str],
    ) -> Transaction:
        if not isinstance(row, ImportRow):
            try:
                row = ImportRow.model_validate(row)
            except ValidationError as exc:
                first = exc.errors()[0]
                field = ".".join(str(part) for part in first["loc"]) or "row"
                raise ImportRowError(f"{field}: {first['msg']}") from exc
        try:
            cents = parse_amount(row.amount, allow_negative=True)
        except ValueError as exc:
            raise ImportRowError(f"invalid amount {row.amount!r}: {exc}") from exc

        declared = (row.type or "").strip().lower()
        if not declared:
            declared = "income" if cents >= 0 else "expense"
        txn_type = (
            TransactionType.income if declared == "income" else TransactionType.expense
        )

        category_name = (row.category or "").strip() or DEFAULT_IMPORT_CATEGORY
        try:
            category = matcher.find_or_create_category(
                category_name, category_type_for(declared)
            )
        except (SQLAlchemyError, ValueError) as exc:
            raise ImportRowError(
                f"category '{category_name}' could not be resolved: {exc}"
            ) from exc

        account_id = row.account_id
        if account_id is not None and account_id not in known_accounts:
            warnings.append(
                f"Row {idx}: account {account_id} not found; imported without account"
            )
            account_id = None

        return Transaction(
            user_id=self.user_id,
            account_id=account_id,
            category_id=category.id,
            date=row.date or today,
            type=txn_type,
            amount_cents=abs(cents),
            description=(row.description or "").strip() or DEFAULT_IMPORT_DESCRIPTION,
            vendor=row.vendor,
            purchaser=row.purchaser,
            note=row.note,
        )

    def _provision_budgets(
        self, matcher: BudgetMatcher, created: Sequence[Transaction]
    ) -> list[str]:
        spent: dict[tuple[int, date], int] = defaultdict(int)
        largest: dict[tuple[int, date], int] = defaultdict(int)
        for txn in created:
            if txn.type != TransactionType.expense or txn.category_id is None:
                continue
            key = (txn.category_id, month_start(txn.date))
            amount = abs(txn.amount_cents)
            spent[key] += amount
            largest[key] = max(largest[key], amount)

        warnings: list[str] = []
        for (category_id, period_start), total in sorted(spent.items()):
            largest_row = largest[(category_id, period_start)]
            try:
                with self.session.begin_nested():
                    budget = matcher.find_budget(category_id, period_start)
                    if budget:
                        budget.spent_cents = budget.spent_cents + total
                        if largest_row > budget.amount_cents:
                            logger.info(
                                f"budget_amount_raised: user_id={self.user_id} "
                                f"budget_id={budget.id} from={budget.amount_cents} "
                                f"to={largest_row}"
                            )
                            budget.amount_cents = largest_row
                    else:
                        matcher.create_auto_budget(
                            category_id, period_start, total, total
                        )
            except (SQLAlchemyError, ValueError) as exc:
                logger.exception(
                    f"import_budget_failed: user_id={self.user_id} "
                    f"category_id={category_id} period={month_key(period_start)}"
                )
                warnings.append(
                    f"Budget for category {category_id} in {month_key(period_start)} "
                    f"not updated: {exc}"
                )
        return warnings


class GoalService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Goal]:
        stmt = (
            select(Goal)
            .where(Goal.user_id == self.user_id)
            .order_by(Goal.target_date.asc(), Goal.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, goal_id: int) -> Goal:
        goal = self.session.get(Goal, goal_id)
        if not goal or goal.user_id != self.user_id:
            raise NotFoundError(f"Goal #{goal_id} not found")
        return goal

    def create(self, data: GoalIn) -> Goal:
        goal = Goal(
            user_id=self.user_id,
            name=data.name.strip(),
            target_amount_cents=data.target_amount_cents,
            current_amount_cents=data.current_amount_cents,
            target_date=data.target_date,
            category=data.category,
        )
        self.session.add(goal)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def update(self, goal_id: int, data: GoalUpdateIn) -> Goal:
        goal = self.get(goal_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(goal, field, value)
        self.session.commit()
        self.session.refresh(goal)
        return goal

    def delete(self, goal_id: int) -> None:
        goal = self.get(goal_id)
        self.session.delete(goal)
        self.session.commit()

    def contribute(self, goal_id: int, amount_cents: int) -> Goal:
        if amount_cents <= 0:
            raise ValueError("Contribution must be positive")
        goal = self.get(goal_id)
        goal.current_amount_cents = goal.current_amount_cents + amount_cents
        self.session.commit()
        self.session.refresh(goal)
        return goal


class ReportService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def _window(self, months: int, today: date) -> tuple[list[date], date, date]:
        if months < 1:
            raise ValueError("months must be at least 1")
        month_starts = trailing_months(today, months)
        return month_starts, month_starts[0], month_end(today)

    def net_worth_trend(
        self, months: Optional[int] = None, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        if months is None:
            months = get_settings().net_worth_months
        today = today or local_today()
        balances = self.session.scalars(
            select(Account.balance_cents).where(Account.user_id == self.user_id)
        ).all()
        rows = self.session.execute(
            select(
                Transaction.id,
                Transaction.user_id,
                Transaction.account_id,
                Transaction.category_id,
                Transaction.amount_cents,
                Transaction.type,
                Transaction.date,
            ).where(
                Transaction.user_id == self.user_id,
                Transaction.account_id.is_not(None),
            )
        ).all()
        snapshots = [
            TransactionSnapshot(
                id=row.id,
                user_id=row.user_id,
                account_id=row.account_id,
                category_id=row.category_id,
                amount_cents=int(row.amount_cents),
                type=row.type,
                date=row.date,
            )
            for row in rows
        ]
        logger.info(
            f"net_worth_trend: user_id={self.user_id} months={months} "
            f"accounts={len(balances)} transactions={len(snapshots)}"
        )
        return NetWorthReconstructor(balances, snapshots).series(months, today)

    def monthly_spending_by_category(
        self, months: int = 6, *, today: Optional[date] = None
    ) -> dict[str, dict[str, int]]:
        month_starts, start, end = self._window(months, today or local_today())
        rows = self.session.execute(
            select(Transaction.date, Category.name, Transaction.amount_cents)
            .outerjoin(Category, Transaction.category_id == Category.id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
            )
        ).all()
        out: dict[str, dict[str, int]] = {month_key(m): {} for m in month_starts}
        for row in rows:
            bucket = out[month_key(row.date)]
            name = row.name or DEFAULT_IMPORT_CATEGORY
            bucket[name] = bucket.get(name, 0) + int(row.amount_cents)
        return out

    def income_vs_expenses(
        self, months: int = 12, *, today: Optional[date] = None
    ) -> list[dict[str, object]]:
        month_starts, start, end = self._window(months, today or local_today())
        rows = self.session.execute(
            select(Transaction.date, Transaction.type, Transaction.amount_cents).where(
                Transaction.user_id == self.user_id,
                Transaction.date.between(start, end),
            )
        ).all()
        income: dict[str, int] = defaultdict(int)
        expense: dict[str, int] = defaultdict(int)
        for row in rows:
            key = month_key(row.date)
            if row.type == TransactionType.income:
                income[key] += int(row.amount_cents)
            else:
                expense[key] += int(row.amount_cents)
        return [
            {
                "month": month_key(m),
                "income_cents": income[month_key(m)],
                "expense_cents": expense[month_key(m)],
                "net_cents": income[month_key(m)] - expense[month_key(m)],
            }
            for m in month_starts
        ]
