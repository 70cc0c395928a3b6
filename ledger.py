from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import date
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Account, Budget, Category, CategoryType, Transaction, TransactionType
from periods import month_bounds


logger = logging.getLogger(__name__)


class NotFoundError(ValueError):
    pass


class ConflictError(ValueError):
    pass


class ImportRowError(ValueError):
    pass


@dataclass(frozen=True)
class TransactionSnapshot:
    """Immutable copy of the ledger-relevant fields of one transaction."""

    id: Optional[int]
    user_id: int
    account_id: Optional[int]
    category_id: Optional[int]
    amount_cents: int
    type: TransactionType
    date: date

    @classmethod
    def of(cls, txn: Transaction) -> "TransactionSnapshot":
        return cls(
            id=txn.id,
            user_id=txn.user_id,
            account_id=txn.account_id,
            category_id=txn.category_id,
            amount_cents=int(txn.amount_cents),
            type=TransactionType(txn.type),
            date=txn.date,
        )


def signed_effect(txn: TransactionSnapshot) -> int:
    if txn.type == TransactionType.income:
        return txn.amount_cents
    return -txn.amount_cents


def category_type_for(declared_type: Optional[str]) -> CategoryType:
    value = (declared_type or "").strip().lower()
    if value == "income":
        return CategoryType.income
    if value == "saving":
        return CategoryType.saving
    if value == "investment":
        return CategoryType.investment
    return CategoryType.expense


def auto_budget_description(category_name: str) -> str:
    return f"Auto-created budget for {category_name}"


class BalanceTracker:
    """Keeps Account.balance_cents in step with transaction mutations.

    Every method takes explicit snapshots so reversals are always computed
    from the pre-mutation state. Missing accounts are skipped and reported
    as warnings instead of failing the ledger write.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def on_create(self, txn: TransactionSnapshot) -> list[str]:
        if txn.account_id is None:
            return []
        return self._apply({txn.account_id: signed_effect(txn)})

    def on_update(
        self, old: TransactionSnapshot, new: TransactionSnapshot
    ) -> list[str]:
        deltas: dict[int, int] = defaultdict(int)
        if old.account_id is not None:
            deltas[old.account_id] -= signed_effect(old)
        if new.account_id is not None:
            deltas[new.account_id] += signed_effect(new)
        return self._apply(deltas)

    def on_delete(self, txn: TransactionSnapshot) -> list[str]:
        if txn.account_id is None:
            return []
        return self._apply({txn.account_id: -signed_effect(txn)})

    def on_bulk_delete(self, txns: Iterable[TransactionSnapshot]) -> list[str]:
        deltas: dict[int, int] = defaultdict(int)
        for txn in txns:
            if txn.account_id is not None:
                deltas[txn.account_id] -= signed_effect(txn)
        return self._apply(deltas)

    def _apply(self, deltas: dict[int, int]) -> list[str]:
        warnings: list[str] = []
        for account_id, delta in sorted(deltas.items()):
            if delta == 0:
                continue
            warning = self._adjust(account_id, delta)
            if warning:
                warnings.append(warning)
        return warnings

    def _adjust(self, account_id: int, delta: int) -> Optional[str]:
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.user_id == self.user_id)
            .values(balance_cents=Account.balance_cents + delta)
        )
        if not result.rowcount:
            logger.warning(
                f"balance_adjust_skipped: user_id={self.user_id} "
                f"account_id={account_id} delta={delta} reason=missing_account"
            )
            return f"Account {account_id} not found; balance not adjusted"
        logger.debug(
            f"balance_adjust: user_id={self.user_id} account_id={account_id} delta={delta}"
        )
        return None


class BudgetMatcher:
    """Attaches expense transactions to budgets and maintains their spent total.

    Bookkeeping here is best-effort: failures are logged and returned as
    warnings so the owning transaction write still goes through. The only
    place spent is derived from scratch is ``recalculate``.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def find_or_create_category(
        self, name: str, category_type: CategoryType
    ) -> Category:
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Category name cannot be empty")
        existing = self.session.scalar(
            select(Category).where(
                Category.user_id == self.user_id,
                func.lower(Category.name) == clean_name.lower(),
            )
        )
        if existing:
            return existing
        category = Category(
            user_id=self.user_id,
            name=clean_name,
            type=category_type,
            is_default=False,
        )
        self.session.add(category)
        self.session.flush()
        logger.info(
            f"category_created: user_id={self.user_id} category_id={category.id} "
            f"name={clean_name!r} type={category_type.value}"
        )
        return category

    def resolve_category(
        self,
        category_id: Optional[int],
        category_name: Optional[str],
        declared_type: Optional[str],
    ) -> Optional[Category]:
        if category_id is not None:
            category = self.session.get(Category, category_id)
            if not category or category.user_id != self.user_id:
                raise NotFoundError(f"Category with ID {category_id} not found")
            return category
        if category_name and category_name.strip():
            return self.find_or_create_category(
                category_name, category_type_for(declared_type)
            )
        return None

    def find_budget(self, category_id: int, on_date: date) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .where(
                Budget.user_id == self.user_id,
                Budget.category_id == category_id,
                Budget.start_date <= on_date,
                Budget.end_date >= on_date,
            )
            .order_by(Budget.start_date.desc(), Budget.id.asc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def create_auto_budget(
        self, category_id: int, on_date: date, amount_cents: int, spent_cents: int
    ) -> Budget:
        category = self.session.get(Category, category_id)
        if not category or category.user_id != self.user_id:
            raise NotFoundError(f"Category with ID {category_id} not found")
        start, end = month_bounds(on_date)
        budget = Budget(
            user_id=self.user_id,
            category_id=category_id,
            amount_cents=amount_cents,
            spent_cents=spent_cents,
            start_date=start,
            end_date=end,
            is_auto_created=True,
            description=auto_budget_description(category.name),
        )
        self.session.add(budget)
        self.session.flush()
        logger.info(
            f"budget_auto_created: user_id={self.user_id} budget_id={budget.id} "
            f"category_id={category_id} period={start.isoformat()}..{end.isoformat()} "
            f"amount_cents={amount_cents}"
        )
        return budget

    def on_create(self, txn: TransactionSnapshot) -> list[str]:
        if txn.type != TransactionType.expense or txn.category_id is None:
            return []
        try:
            amount = abs(txn.amount_cents)
            with self.session.begin_nested():
                budget = self.find_budget(txn.category_id, txn.date)
                if budget:
                    self._add_spent(budget.id, amount)
                else:
                    self.create_auto_budget(txn.category_id, txn.date, amount, amount)
        except (SQLAlchemyError, ValueError) as exc:
            logger.exception(
                f"budget_record_failed: user_id={self.user_id} transaction_id={txn.id}"
            )
            return [f"Budget not updated for transaction {txn.id}: {exc}"]
        return []

    def on_delete(self, txn: TransactionSnapshot) -> list[str]:
        return self.on_bulk_delete([txn])

    def on_update(
        self, old: TransactionSnapshot, new: TransactionSnapshot
    ) -> list[str]:
        warnings = self.on_delete(old)
        warnings.extend(self.on_create(new))
        return warnings

    def on_bulk_delete(self, txns: Iterable[TransactionSnapshot]) -> list[str]:
        warnings: list[str] = []
        decrements: dict[int, int] = defaultdict(int)
        for txn in txns:
            if txn.type != TransactionType.expense or txn.category_id is None:
                continue
            try:
                budget = self.find_budget(txn.category_id, txn.date)
            except SQLAlchemyError as exc:
                logger.exception(
                    f"budget_lookup_failed: user_id={self.user_id} transaction_id={txn.id}"
                )
                warnings.append(f"Budget not updated for transaction {txn.id}: {exc}")
                continue
            if budget:
                decrements[budget.id] += abs(txn.amount_cents)
        for budget_id, amount in sorted(decrements.items()):
            try:
                with self.session.begin_nested():
                    self._add_spent(budget_id, -amount)
            except SQLAlchemyError as exc:
                logger.exception(
                    f"budget_reverse_failed: user_id={self.user_id} budget_id={budget_id}"
                )
                warnings.append(f"Budget {budget_id} not updated: {exc}")
        return warnings

    def _add_spent(self, budget_id: int, delta: int) -> None:
        self.session.execute(
            update(Budget)
            .where(Budget.id == budget_id, Budget.user_id == self.user_id)
            .values(spent_cents=Budget.spent_cents + delta)
        )
        logger.debug(
            f"budget_spent_adjust: user_id={self.user_id} budget_id={budget_id} delta={delta}"
        )

    def spent_for(self, category_id: int, start: date, end: date) -> int:
        return int(
            self.session.execute(
                select(
                    func.coalesce(func.sum(func.abs(Transaction.amount_cents)), 0)
                ).where(
                    Transaction.user_id == self.user_id,
                    Transaction.type == TransactionType.expense,
                    Transaction.category_id == category_id,
                    Transaction.date.between(start, end),
                )
            ).scalar_one()
            or 0
        )

    def recalculate(
        self, start: Optional[date] = None, end: Optional[date] = None
    ) -> int:
        if start and end and start > end:
            raise ValueError("Start date must be before end date")
        stmt = select(Budget).where(Budget.user_id == self.user_id)
        if start is not None:
            stmt = stmt.where(Budget.end_date >= start)
        if end is not None:
            stmt = stmt.where(Budget.start_date <= end)
        budgets = self.session.scalars(stmt.order_by(Budget.id)).all()
        for budget in budgets:
            spent = self.spent_for(budget.category_id, budget.start_date, budget.end_date)
            if spent != budget.spent_cents:
                logger.info(
                    f"budget_recalculated: user_id={self.user_id} budget_id={budget.id} "
                    f"cached={budget.spent_cents} actual={spent}"
                )
            budget.spent_cents = spent
        self.session.flush()
        return len(budgets)
