"""Aggregate read queries over the transaction ledger.

Every query takes an explicit :class:`Scope`; a global view has to be asked
for with :meth:`Scope.everyone`.
Rows come back as frozen dataclasses; driver failures surface as
:class:`LedgerUnavailable`.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from functools import wraps
from typing import Optional

from sqlalchemy import extract, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Category, Transaction, TransactionType
from periods import DateRange


class LedgerUnavailable(RuntimeError):
    pass


@dataclass(frozen=True)
class Scope:
    kind: str
    user_id: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in ("user", "global"):
            raise ValueError(f"Unknown scope: {self.kind}")
        if self.kind == "user" and self.user_id is None:
            raise ValueError("User scope requires a user id")
        if self.kind == "global" and self.user_id is not None:
            raise ValueError("Global scope cannot carry a user id")

    @classmethod
    def for_user(cls, user_id: int) -> "Scope":
        return cls("user", user_id)

    @classmethod
    def everyone(cls) -> "Scope":
        return cls("global")

    @property
    def is_global(self) -> bool:
        return self.kind == "global"


@dataclass(frozen=True)
class KindTotal:
    type: TransactionType
    total_cents: int
    count: int


@dataclass(frozen=True)
class CategoryKindTotal:
    category_id: Optional[int]
    category_name: Optional[str]
    category_color: Optional[str]
    type: TransactionType
    total_cents: int
    count: int


@dataclass(frozen=True)
class MonthKindTotal:
    month: int
    type: TransactionType
    total_cents: int


@dataclass(frozen=True)
class YearMonthKindTotal:
    year: int
    month: int
    type: TransactionType
    total_cents: int


@dataclass(frozen=True)
class RecentTransactionRow:
    id: int
    type: TransactionType
    amount_cents: int
    description: Optional[str]
    date: date
    category_name: Optional[str]
    category_color: Optional[str]


@dataclass(frozen=True)
class CategoryStatRow:
    category_id: Optional[int]
    category_name: Optional[str]
    category_color: Optional[str]
    type: TransactionType
    total_cents: int
    count: int
    average_cents: float
    min_cents: int
    max_cents: int


def _ledger_call(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise LedgerUnavailable(f"{fn.__name__} failed: {exc}") from exc

    return wrapper


class LedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    @staticmethod
    def _scoped(stmt, scope: Scope, date_range: Optional[DateRange] = None):
        if not scope.is_global:
            stmt = stmt.where(Transaction.user_id == scope.user_id)
        if date_range is not None:
            stmt = stmt.where(Transaction.date.between(date_range.start, date_range.end))
        return stmt

    @_ledger_call
    def sum_by_kind(
        self, scope: Scope, date_range: Optional[DateRange]
    ) -> list[KindTotal]:
        stmt = select(
            Transaction.type,
            func.sum(Transaction.amount_cents).label("total"),
            func.count(Transaction.id).label("txn_count"),
        ).group_by(Transaction.type)
        rows = self.session.execute(self._scoped(stmt, scope, date_range)).all()
        return [
            KindTotal(
                type=row.type,
                total_cents=int(row.total or 0),
                count=int(row.txn_count),
            )
            for row in rows
        ]

    @_ledger_call
    def sum_by_category_and_kind(
        self, scope: Scope, date_range: Optional[DateRange]
    ) -> list[CategoryKindTotal]:
        total = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name.label("category_name"),
                Category.color.label("category_color"),
                Transaction.type,
                total,
                func.count(Transaction.id).label("txn_count"),
            )
            .select_from(Transaction)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .group_by(Category.id, Category.name, Category.color, Transaction.type)
            .order_by(total.desc(), Transaction.type, Category.name)
        )
        rows = self.session.execute(self._scoped(stmt, scope, date_range)).all()
        return [
            CategoryKindTotal(
                category_id=row.category_id,
                category_name=row.category_name,
                category_color=row.category_color,
                type=row.type,
                total_cents=int(row.total or 0),
                count=int(row.txn_count),
            )
            for row in rows
        ]

    @_ledger_call
    def sum_by_month_and_kind(self, scope: Scope, year: int) -> list[MonthKindTotal]:
        month = extract("month", Transaction.date).label("month")
        stmt = (
            select(month, Transaction.type, func.sum(Transaction.amount_cents).label("total"))
            .where(Transaction.date.between(date(year, 1, 1), date(year, 12, 31)))
            .group_by(month, Transaction.type)
            .order_by(month)
        )
        rows = self.session.execute(self._scoped(stmt, scope)).all()
        return [
            MonthKindTotal(
                month=int(row.month), type=row.type, total_cents=int(row.total or 0)
            )
            for row in rows
        ]

    @_ledger_call
    def sum_by_year_month_and_kind(
        self, scope: Scope, since: date
    ) -> list[YearMonthKindTotal]:
        year = extract("year", Transaction.date).label("year")
        month = extract("month", Transaction.date).label("month")
        stmt = (
            select(
                year,
                month,
                Transaction.type,
                func.sum(Transaction.amount_cents).label("total"),
            )
            .where(Transaction.date >= since)
            .group_by(year, month, Transaction.type)
            .order_by(year, month)
        )
        rows = self.session.execute(self._scoped(stmt, scope)).all()
        return [
            YearMonthKindTotal(
                year=int(row.year),
                month=int(row.month),
                type=row.type,
                total_cents=int(row.total or 0),
            )
            for row in rows
        ]

    @_ledger_call
    def recent_transactions(
        self, scope: Scope, limit: int = 5
    ) -> list[RecentTransactionRow]:
        stmt = (
            select(
                Transaction.id,
                Transaction.type,
                Transaction.amount_cents,
                Transaction.description,
                Transaction.date,
                Category.name.label("category_name"),
                Category.color.label("category_color"),
            )
            .outerjoin(Category, Category.id == Transaction.category_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit)
        )
        rows = self.session.execute(self._scoped(stmt, scope)).all()
        return [
            RecentTransactionRow(
                id=row.id,
                type=row.type,
                amount_cents=int(row.amount_cents),
                description=row.description,
                date=row.date,
                category_name=row.category_name,
                category_color=row.category_color,
            )
            for row in rows
        ]

    @_ledger_call
    def category_stats(
        self, scope: Scope, date_range: Optional[DateRange]
    ) -> list[CategoryStatRow]:
        total = func.sum(Transaction.amount_cents).label("total")
        stmt = (
            select(
                Category.id.label("category_id"),
                Category.name.label("category_name"),
                Category.color.label("category_color"),
                Transaction.type,
                total,
                func.count(Transaction.id).label("txn_count"),
                func.avg(Transaction.amount_cents).label("average"),
                func.min(Transaction.amount_cents).label("min_amount"),
                func.max(Transaction.amount_cents).label("max_amount"),
            )
            .select_from(Transaction)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .group_by(Category.id, Category.name, Category.color, Transaction.type)
            .order_by(total.desc(), Transaction.type, Category.name)
        )
        rows = self.session.execute(self._scoped(stmt, scope, date_range)).all()
        return [
            CategoryStatRow(
                category_id=row.category_id,
                category_name=row.category_name,
                category_color=row.category_color,
                type=row.type,
                total_cents=int(row.total or 0),
                count=int(row.txn_count),
                average_cents=float(row.average or 0),
                min_cents=int(row.min_amount or 0),
                max_cents=int(row.max_amount or 0),
            )
            for row in rows
        ]
