from __future__ import annotations

import calendar
import logging
import math
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from cache import CacheAside, InvalidationCoordinator, NullCacheStore
from cache_keys import (
    analytics_key,
    categories_key,
    category_analytics_key,
    global_analytics_key,
    transaction_list_key,
    trends_key,
)
from config import get_settings
from ledger import LedgerStore, Scope
from models import (
    DEFAULT_CATEGORY_COLOR,
    Category,
    Transaction,
    TransactionType,
    User,
    UserRole,
)
from periods import add_months, resolve_date_filter, today_local
from schemas import (
    AdminTransactionIn,
    AdminTransactionListQuery,
    AdminTransactionOut,
    AnalyticsQuery,
    AnalyticsResult,
    AnalyticsSummary,
    CategoryAnalyticsItem,
    CategoryBreakdownItem,
    CategoryIn,
    CategoryOut,
    CategoryUpdate,
    MonthlyTrendItem,
    Pagination,
    ProfileUpdate,
    RecentTransactionItem,
    RoleUpdate,
    SpendingTrendItem,
    SystemStats,
    TransactionIn,
    TransactionListQuery,
    TransactionOut,
    TransactionUpdate,
    TrendsQuery,
)

logger = logging.getLogger(__name__)

UNCATEGORIZED = "Uncategorized"
UNCATEGORIZED_COLOR = "#6B7280"
RECENT_LIMIT = 5


class NotFoundError(ValueError):
    pass


def cents_to_units(cents: int) -> float:
    return cents / 100


def units_to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def _disabled_cache() -> CacheAside:
    return CacheAside(NullCacheStore())


def _disabled_invalidator() -> InvalidationCoordinator:
    return InvalidationCoordinator(NullCacheStore())


class AnalyticsEngine:
    """Builds analytics payloads from ledger aggregates.

    The monthly trend always covers the current calendar year, whatever
    period the rest of the payload is filtered to.
    """

    def __init__(self, ledger: LedgerStore, today: Optional[date] = None) -> None:
        self.ledger = ledger
        self._today = today

    @property
    def today(self) -> date:
        return self._today or today_local()

    def dashboard(self, scope: Scope, query: AnalyticsQuery) -> AnalyticsResult:
        date_range = resolve_date_filter(query.period, query.year, query.month)

        totals = {row.type: row for row in self.ledger.sum_by_kind(scope, date_range)}
        income = totals.get(TransactionType.income)
        expense = totals.get(TransactionType.expense)
        income_cents = income.total_cents if income else 0
        expense_cents = expense.total_cents if expense else 0
        net_cents = income_cents - expense_cents
        savings_rate = (
            round(net_cents / income_cents * 100, 2) if income_cents > 0 else 0.0
        )
        summary = AnalyticsSummary(
            total_income=cents_to_units(income_cents),
            total_expenses=cents_to_units(expense_cents),
            net_income=cents_to_units(net_cents),
            savings_rate=savings_rate,
            income_count=income.count if income else 0,
            expense_count=expense.count if expense else 0,
        )

        breakdown = [
            CategoryBreakdownItem(
                category=row.category_name or UNCATEGORIZED,
                color=row.category_color or UNCATEGORIZED_COLOR,
                type=row.type,
                total=cents_to_units(row.total_cents),
                count=row.count,
            )
            for row in self.ledger.sum_by_category_and_kind(scope, date_range)
        ]

        return AnalyticsResult(
            summary=summary,
            category_breakdown=breakdown,
            monthly_trends=self.monthly_trend(scope, self.today.year),
            recent_transactions=self.recent(scope),
        )

    def monthly_trend(self, scope: Scope, year: int) -> list[MonthlyTrendItem]:
        income = {m: 0 for m in range(1, 13)}
        expenses = {m: 0 for m in range(1, 13)}
        for row in self.ledger.sum_by_month_and_kind(scope, year):
            if row.type == TransactionType.income:
                income[row.month] += row.total_cents
            else:
                expenses[row.month] += row.total_cents
        return [
            MonthlyTrendItem(
                month=m,
                month_name=calendar.month_abbr[m],
                income=cents_to_units(income[m]),
                expenses=cents_to_units(expenses[m]),
                net=cents_to_units(income[m] - expenses[m]),
            )
            for m in range(1, 13)
        ]

    def recent(self, scope: Scope, limit: int = RECENT_LIMIT) -> list[RecentTransactionItem]:
        return [
            RecentTransactionItem(
                id=row.id,
                type=row.type,
                amount=cents_to_units(row.amount_cents),
                description=row.description,
                date=row.date,
                category=row.category_name or UNCATEGORIZED,
                color=row.category_color or UNCATEGORIZED_COLOR,
            )
            for row in self.ledger.recent_transactions(scope, limit)
        ]

    def category_analytics(
        self, scope: Scope, query: AnalyticsQuery
    ) -> list[CategoryAnalyticsItem]:
        date_range = resolve_date_filter(query.period, query.year, query.month)
        return [
            CategoryAnalyticsItem(
                id=row.category_id,
                name=row.category_name or UNCATEGORIZED,
                color=row.category_color or UNCATEGORIZED_COLOR,
                type=row.type,
                total=cents_to_units(row.total_cents),
                count=row.count,
                average=round(row.average_cents / 100, 2),
                min_amount=cents_to_units(row.min_cents),
                max_amount=cents_to_units(row.max_cents),
            )
            for row in self.ledger.category_stats(scope, date_range)
        ]

    def spending_trends(self, scope: Scope, months: int) -> list[SpendingTrendItem]:
        since = add_months(self.today.replace(day=1), -months)
        buckets: dict[tuple[int, int], dict[str, int]] = {}
        for row in self.ledger.sum_by_year_month_and_kind(scope, since):
            bucket = buckets.setdefault((row.year, row.month), {"income": 0, "expense": 0})
            bucket[row.type.value] += row.total_cents
        return [
            SpendingTrendItem(
                month=f"{year:04d}-{month:02d}",
                month_name=f"{calendar.month_abbr[month]} {year}",
                income=cents_to_units(bucket["income"]),
                expenses=cents_to_units(bucket["expense"]),
                net=cents_to_units(bucket["income"] - bucket["expense"]),
            )
            for (year, month), bucket in sorted(buckets.items())
        ]


class AnalyticsService:
    def __init__(
        self,
        session: Session,
        cache: Optional[CacheAside] = None,
        *,
        today: Optional[date] = None,
    ) -> None:
        self.engine = AnalyticsEngine(LedgerStore(session), today=today)
        self.cache = cache or _disabled_cache()
        self.settings = get_settings()

    def user_analytics(self, user_id: int, query: AnalyticsQuery) -> tuple[dict, bool]:
        key = analytics_key(user_id, query.period, query.year, query.month)
        return self.cache.get_or_compute(
            key,
            self.settings.analytics_ttl_secs,
            lambda: self.engine.dashboard(Scope.for_user(user_id), query).model_dump(
                by_alias=True, mode="json"
            ),
        )

    def global_analytics(self, query: AnalyticsQuery) -> tuple[dict, bool]:
        key = global_analytics_key(query.period, query.year, query.month)
        return self.cache.get_or_compute(
            key,
            self.settings.global_analytics_ttl_secs,
            lambda: self.engine.dashboard(Scope.everyone(), query).model_dump(
                by_alias=True, mode="json"
            ),
        )

    def category_analytics(
        self, user_id: int, query: AnalyticsQuery
    ) -> tuple[list, bool]:
        key = category_analytics_key(user_id, query.period, query.year, query.month)

        def compute() -> list:
            items = self.engine.category_analytics(Scope.for_user(user_id), query)
            return [item.model_dump(by_alias=True, mode="json") for item in items]

        return self.cache.get_or_compute(key, self.settings.analytics_ttl_secs, compute)

    def spending_trends(self, user_id: int, query: TrendsQuery) -> tuple[list, bool]:
        key = trends_key(user_id, query.months)

        def compute() -> list:
            items = self.engine.spending_trends(Scope.for_user(user_id), query.months)
            return [item.model_dump(by_alias=True, mode="json") for item in items]

        return self.cache.get_or_compute(key, self.settings.analytics_ttl_secs, compute)


class CategoryService:
    def __init__(
        self,
        session: Session,
        cache: Optional[CacheAside] = None,
        invalidator: Optional[InvalidationCoordinator] = None,
    ) -> None:
        self.session = session
        self.cache = cache or _disabled_cache()
        self.invalidator = invalidator or _disabled_invalidator()
        self.settings = get_settings()

    def list_all(self, kind: Optional[TransactionType] = None) -> tuple[list, bool]:
        def compute() -> list:
            stmt = select(Category).order_by(Category.name, Category.id)
            if kind is not None:
                stmt = stmt.where(Category.type == kind)
            return [
                CategoryOut.model_validate(c).model_dump(mode="json")
                for c in self.session.scalars(stmt).all()
            ]

        return self.cache.get_or_compute(
            categories_key(kind), self.settings.categories_ttl_secs, compute
        )

    def get(self, category_id: int) -> Category:
        category = self.session.get(Category, category_id)
        if not category:
            raise NotFoundError("Category not found")
        return category

    def _ensure_unique(
        self, name: str, kind: TransactionType, exclude_id: Optional[int] = None
    ) -> None:
        stmt = select(Category.id).where(
            Category.type == kind, func.lower(Category.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Category.id != exclude_id)
        if self.session.scalar(stmt) is not None:
            raise ValueError("Category with this name already exists")

    def _usage_count(self, category_id: int) -> int:
        return int(
            self.session.execute(
                select(func.count(Transaction.id)).where(
                    Transaction.category_id == category_id
                )
            ).scalar_one()
        )

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        self._ensure_unique(name, data.type)
        category = Category(
            name=name,
            type=data.type,
            color=data.color or DEFAULT_CATEGORY_COLOR,
            icon=data.icon,
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        logger.info(f"category_created: id={category.id} type={category.type.value}")
        self.invalidator.on_category_mutated()
        return category

    def update(self, category_id: int, data: CategoryUpdate) -> Category:
        category = self.get(category_id)
        name = data.name.strip() if data.name is not None else category.name
        kind = data.type or category.type
        if data.name is not None or data.type is not None:
            self._ensure_unique(name, kind, exclude_id=category.id)
        if kind != category.type and self._usage_count(category.id) > 0:
            raise ValueError("Cannot change the type of a category used by transactions")

        category.name = name
        category.type = kind
        if data.color is not None:
            category.color = data.color
        if data.icon is not None:
            category.icon = data.icon
        self.session.commit()
        self.session.refresh(category)
        logger.info(f"category_updated: id={category.id}")
        self.invalidator.on_category_mutated(rewrites_ledger_views=True)
        return category

    def delete(self, category_id: int) -> None:
        category = self.get(category_id)
        if self._usage_count(category.id) > 0:
            raise ValueError("Cannot delete category that is being used by transactions")
        self.session.delete(category)
        self.session.commit()
        logger.info(f"category_deleted: id={category_id}")
        self.invalidator.on_category_mutated()


class _TransactionWriter:
    def __init__(
        self,
        session: Session,
        cache: Optional[CacheAside] = None,
        invalidator: Optional[InvalidationCoordinator] = None,
    ) -> None:
        self.session = session
        self.cache = cache or _disabled_cache()
        self.invalidator = invalidator or _disabled_invalidator()
        self.settings = get_settings()

    def _check_category(
        self, category_id: Optional[int], txn_type: TransactionType
    ) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if not category:
            raise ValueError("Invalid category")
        if category.type != txn_type:
            raise ValueError("Category type does not match transaction type")

    def _insert(self, user_id: int, data: TransactionIn) -> Transaction:
        self._check_category(data.category_id, data.type)
        txn = Transaction(
            user_id=user_id,
            type=data.type,
            amount_cents=units_to_cents(data.amount),
            description=data.description,
            date=data.date,
            category_id=data.category_id,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_created: id={txn.id} user_id={txn.user_id}")
        self.invalidator.on_transaction_mutated(txn.user_id)
        return txn

    def _apply_update(self, txn: Transaction, data: TransactionUpdate) -> Transaction:
        new_type = data.type or txn.type
        new_category_id = (
            data.category_id if data.category_id is not None else txn.category_id
        )
        self._check_category(new_category_id, new_type)

        txn.type = new_type
        txn.category_id = new_category_id
        if data.amount is not None:
            txn.amount_cents = units_to_cents(data.amount)
        if data.description is not None:
            txn.description = data.description
        if data.date is not None:
            txn.date = data.date
        self.session.commit()
        self.session.refresh(txn)
        logger.info(f"transaction_updated: id={txn.id} user_id={txn.user_id}")
        self.invalidator.on_transaction_mutated(txn.user_id)
        return txn

    def _remove(self, txn: Transaction) -> None:
        txn_id, owner_id = txn.id, txn.user_id
        self.session.delete(txn)
        self.session.commit()
        logger.info(f"transaction_deleted: id={txn_id} user_id={owner_id}")
        self.invalidator.on_transaction_mutated(owner_id)

    @staticmethod
    def _apply_filters(stmt, query: TransactionListQuery, *search_columns):
        if query.type:
            stmt = stmt.where(Transaction.type == query.type)
        if query.category_id:
            stmt = stmt.where(Transaction.category_id == query.category_id)
        if query.start_date:
            stmt = stmt.where(Transaction.date >= query.start_date)
        if query.end_date:
            stmt = stmt.where(Transaction.date <= query.end_date)
        if query.search:
            like = f"%{query.search.lower()}%"
            stmt = stmt.where(
                or_(*(func.lower(func.coalesce(col, "")).like(like) for col in search_columns))
            )
        return stmt

    @staticmethod
    def _ordering(query: TransactionListQuery):
        column = {
            "date": Transaction.date,
            "amount": Transaction.amount_cents,
            "created_at": Transaction.created_at,
            "description": Transaction.description,
        }[query.sort_by]
        if query.sort_order == "asc":
            return column.asc(), Transaction.id.asc()
        return column.desc(), Transaction.id.desc()

    @staticmethod
    def _pagination(query: TransactionListQuery, total_count: int) -> dict:
        total_pages = math.ceil(total_count / query.limit)
        return Pagination(
            current_page=query.page,
            total_pages=total_pages,
            total_count=total_count,
            limit=query.limit,
            has_next=query.page < total_pages,
            has_prev=query.page > 1,
        ).model_dump(by_alias=True)


def serialize_transaction(txn: Transaction) -> dict:
    category = txn.category
    return TransactionOut(
        id=txn.id,
        user_id=txn.user_id,
        type=txn.type,
        amount=cents_to_units(txn.amount_cents),
        description=txn.description,
        date=txn.date,
        created_at=txn.created_at,
        category_id=txn.category_id,
        category_name=category.name if category else None,
        category_color=category.color if category else None,
    ).model_dump(mode="json")


class TransactionService(_TransactionWriter):
    """Transactions owned by a single user."""

    def __init__(
        self,
        session: Session,
        user_id: int,
        cache: Optional[CacheAside] = None,
        invalidator: Optional[InvalidationCoordinator] = None,
    ) -> None:
        super().__init__(session, cache, invalidator)
        self.user_id = user_id

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFoundError("Transaction not found")
        return txn

    def list_page(self, query: TransactionListQuery) -> tuple[dict, bool]:
        def compute() -> dict:
            base = (
                select(Transaction)
                .outerjoin(Category, Category.id == Transaction.category_id)
                .where(Transaction.user_id == self.user_id)
            )
            base = self._apply_filters(base, query, Transaction.description, Category.name)
            total_count = int(
                self.session.execute(
                    select(func.count()).select_from(base.subquery())
                ).scalar_one()
            )
            stmt = (
                base.order_by(*self._ordering(query))
                .offset((query.page - 1) * query.limit)
                .limit(query.limit)
            )
            return {
                "transactions": [
                    serialize_transaction(txn) for txn in self.session.scalars(stmt).all()
                ],
                "pagination": self._pagination(query, total_count),
            }

        key = transaction_list_key(self.user_id, query.model_dump(mode="json"))
        return self.cache.get_or_compute(
            key, self.settings.transactions_ttl_secs, compute
        )

    def create(self, data: TransactionIn) -> Transaction:
        return self._insert(self.user_id, data)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        return self._apply_update(self.get(transaction_id), data)

    def delete(self, transaction_id: int) -> None:
        self._remove(self.get(transaction_id))


class AdminTransactionService(_TransactionWriter):
    """Cross-user transaction management; invalidation targets the owner."""

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list_all(self, query: AdminTransactionListQuery) -> dict:
        base = (
            select(Transaction, User.username, User.email)
            .join(User, User.id == Transaction.user_id)
            .outerjoin(Category, Category.id == Transaction.category_id)
        )
        if query.user_id:
            base = base.where(Transaction.user_id == query.user_id)
        base = self._apply_filters(
            base,
            query,
            Transaction.description,
            Category.name,
            User.username,
            User.email,
        )
        total_count = int(
            self.session.execute(
                select(func.count()).select_from(base.subquery())
            ).scalar_one()
        )
        stmt = (
            base.order_by(*self._ordering(query))
            .offset((query.page - 1) * query.limit)
            .limit(query.limit)
        )
        items = []
        for txn, username, email in self.session.execute(stmt).all():
            row = serialize_transaction(txn)
            items.append(
                AdminTransactionOut(**row, username=username, email=email).model_dump(
                    mode="json"
                )
            )
        return {"transactions": items, "pagination": self._pagination(query, total_count)}

    def create_for(self, data: AdminTransactionIn) -> Transaction:
        if not self.session.get(User, data.user_id):
            raise ValueError("Target user not found")
        return self._insert(data.user_id, data)

    def update(self, transaction_id: int, data: TransactionUpdate) -> Transaction:
        return self._apply_update(self.get(transaction_id), data)

    def delete(self, transaction_id: int) -> None:
        self._remove(self.get(transaction_id))


class UserService:
    def __init__(
        self,
        session: Session,
        invalidator: Optional[InvalidationCoordinator] = None,
    ) -> None:
        self.session = session
        self.invalidator = invalidator or _disabled_invalidator()

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def list_all(self) -> list[User]:
        stmt = select(User).order_by(User.created_at.desc(), User.id.desc())
        return list(self.session.scalars(stmt).all())

    def upsert(
        self,
        username: str,
        email: str,
        role: UserRole,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User:
        user = self.session.scalar(select(User).where(User.email == email))
        if user is None:
            user = User(email=email)
            self.session.add(user)
        user.username = username
        user.role = role
        user.first_name = first_name
        user.last_name = last_name
        self.session.flush()
        return user

    def update_profile(self, user_id: int, data: ProfileUpdate) -> User:
        user = self.get(user_id)
        if data.email is not None:
            taken = self.session.scalar(
                select(User.id).where(
                    func.lower(User.email) == data.email, User.id != user.id
                )
            )
            if taken is not None:
                raise ValueError("Email already taken")
            user.email = data.email
        if data.first_name is not None:
            user.first_name = data.first_name
        if data.last_name is not None:
            user.last_name = data.last_name
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_profile_updated: id={user.id}")
        return user

    def update_role(self, user_id: int, data: RoleUpdate) -> User:
        user = self.get(user_id)
        user.role = data.role
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_role_updated: id={user.id} role={user.role.value}")
        return user

    def delete(self, user_id: int, acting_user_id: int) -> None:
        """Remove a user together with every transaction they own."""
        if user_id == acting_user_id:
            raise ValueError("Cannot delete your own account")
        user = self.get(user_id)
        self.session.delete(user)
        self.session.commit()
        logger.info(f"user_deleted: id={user_id}")
        self.invalidator.on_transaction_mutated(user_id)

    def system_stats(self) -> dict:
        def count(column) -> int:
            return int(self.session.execute(select(func.count(column))).scalar_one())

        return SystemStats(
            total_users=count(User.id),
            total_transactions=count(Transaction.id),
            total_categories=count(Category.id),
        ).model_dump(by_alias=True)
