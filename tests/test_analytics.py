from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from database import Base
from ledger import LedgerStore, LedgerUnavailable, Scope
from models import Category, Transaction, TransactionType, User, UserRole
from schemas import AnalyticsQuery, TrendsQuery
from services import AnalyticsEngine, AnalyticsService

TODAY = date(2025, 6, 15)


def _user(session: Session, username: str) -> User:
    user = User(username=username, email=f"{username}@example.com", role=UserRole.user)
    session.add(user)
    session.flush()
    return user


def _category(session: Session, name: str, kind: TransactionType, color: str) -> Category:
    category = Category(name=name, type=kind, color=color)
    session.add(category)
    session.flush()
    return category


def _txn(
    session: Session,
    user: User,
    kind: TransactionType,
    cents: int,
    when: date,
    category=None,
    description=None,
) -> Transaction:
    txn = Transaction(
        user_id=user.id,
        type=kind,
        amount_cents=cents,
        date=when,
        category_id=category.id if category else None,
        description=description,
    )
    session.add(txn)
    session.flush()
    return txn


def _march_ledger(session: Session) -> User:
    user = _user(session, "alice")
    food = _category(session, "Food", TransactionType.expense, "#EF4444")
    salary = _category(session, "Salary", TransactionType.income, "#10B981")
    _txn(session, user, TransactionType.expense, 3000, date(2025, 3, 4), food)
    _txn(session, user, TransactionType.expense, 7000, date(2025, 3, 18), food)
    _txn(session, user, TransactionType.income, 50000, date(2025, 3, 1), salary)
    session.commit()
    return user


def test_march_totals_for_the_year() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _march_ledger(session)
        data, from_cache = AnalyticsService(session, today=TODAY).user_analytics(
            user.id, AnalyticsQuery(period="year", year=2025)
        )

        assert from_cache is False
        assert data["summary"] == {
            "totalIncome": 500.0,
            "totalExpenses": 100.0,
            "netIncome": 400.0,
            "savingsRate": 80.0,
            "incomeCount": 1,
            "expenseCount": 2,
        }
        march = data["monthlyTrends"][2]
        assert march == {
            "month": 3,
            "monthName": "Mar",
            "income": 500.0,
            "expenses": 100.0,
            "net": 400.0,
        }


def test_monthly_trend_has_twelve_zero_filled_slots() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _march_ledger(session)
        trend = AnalyticsEngine(LedgerStore(session), today=TODAY).monthly_trend(
            Scope.for_user(user.id), 2025
        )

        assert [item.month for item in trend] == list(range(1, 13))
        assert all(
            item.income == item.expenses == item.net == 0
            for item in trend
            if item.month != 3
        )
        assert trend[2].net == 400.0


def test_trend_follows_current_year_not_filter() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _march_ledger(session)
        _txn(session, user, TransactionType.income, 10000, date(2024, 3, 1))
        session.commit()

        data, _ = AnalyticsService(session, today=TODAY).user_analytics(
            user.id, AnalyticsQuery(period="year", year=2024)
        )

        assert data["summary"]["totalIncome"] == 100.0
        assert data["monthlyTrends"][2]["income"] == 500.0


def test_savings_rate_is_zero_without_income() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session, "bob")
        _txn(session, user, TransactionType.expense, 1234, date(2025, 5, 2))
        session.commit()

        data, _ = AnalyticsService(session, today=TODAY).user_analytics(
            user.id, AnalyticsQuery()
        )

        assert data["summary"]["savingsRate"] == 0.0
        assert data["summary"]["netIncome"] == -12.34


def test_savings_rate_rounds_to_two_places() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session, "carol")
        _txn(session, user, TransactionType.income, 30000, date(2025, 5, 1))
        _txn(session, user, TransactionType.expense, 10000, date(2025, 5, 2))
        session.commit()

        data, _ = AnalyticsService(session, today=TODAY).user_analytics(
            user.id, AnalyticsQuery()
        )

        assert data["summary"]["savingsRate"] == 66.67


@pytest.mark.parametrize(
    ("query", "income"),
    [
        (AnalyticsQuery(period="month", year=2025, month=3), 500.0),
        (AnalyticsQuery(period="month", year=2025, month=4), 0.0),
        (AnalyticsQuery(period="year", year=2025, month=4), 500.0),
        (AnalyticsQuery(period="year", year=2024), 100.0),
        (AnalyticsQuery(), 600.0),
    ],
)
def test_period_filters(query: AnalyticsQuery, income: float) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _march_ledger(session)
        _txn(session, user, TransactionType.income, 10000, date(2024, 12, 31))
        session.commit()

        data, _ = AnalyticsService(session, today=TODAY).user_analytics(user.id, query)

        assert data["summary"]["totalIncome"] == income


def test_uncategorized_rows_are_grouped() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _march_ledger(session)
        _txn(session, user, TransactionType.expense, 500, date(2025, 4, 1))
        _txn(session, user, TransactionType.expense, 250, date(2025, 4, 2))
        session.commit()

        data, _ = AnalyticsService(session, today=TODAY).user_analytics(
            user.id, AnalyticsQuery()
        )

        breakdown = {
            (item["category"], item["type"]): item for item in data["categoryBreakdown"]
        }
        assert breakdown[("Uncategorized", "expense")]["total"] == 7.5
        assert breakdown[("Uncategorized", "expense")]["count"] == 2
        assert breakdown[("Uncategorized", "expense")]["color"] == "#6B7280"
        assert breakdown[("Food", "expense")]["total"] == 100.0
        assert breakdown[("Salary", "income")]["color"] == "#10B981"
        totals = [item["total"] for item in data["categoryBreakdown"]]
        assert totals == sorted(totals, reverse=True)


def test_recent_transactions_are_limited_and_newest_first() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _user(session, "dave")
        for day in range(1, 9):
            _txn(
                session,
                user,
                TransactionType.expense,
                100 * day,
                date(2025, 2, day),
                description=f"day {day}",
            )
        session.commit()

        data, _ = AnalyticsService(session, today=TODAY).user_analytics(
            user.id, AnalyticsQuery()
        )

        recent = data["recentTransactions"]
        assert [item["description"] for item in recent] == [
            "day 8",
            "day 7",
            "day 6",
            "day 5",
            "day 4",
        ]
        assert recent[0]["date"] == "2025-02-08"
        assert recent[0]["category"] == "Uncategorized"


def test_user_scope_excludes_other_users_and_global_includes_them() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        alice = _march_ledger(session)
        eve = _user(session, "eve")
        _txn(session, eve, TransactionType.income, 20000, date(2025, 3, 9))
        session.commit()

        service = AnalyticsService(session, today=TODAY)
        mine, _ = service.user_analytics(alice.id, AnalyticsQuery())
        everyone, _ = service.global_analytics(AnalyticsQuery())

        assert mine["summary"]["totalIncome"] == 500.0
        assert everyone["summary"]["totalIncome"] == 700.0
        assert everyone["monthlyTrends"][2]["income"] == 700.0
        assert len(everyone["recentTransactions"]) == 4


def test_scope_validation() -> None:
    with pytest.raises(ValueError):
        Scope("user")
    with pytest.raises(ValueError):
        Scope("global", 3)
    with pytest.raises(ValueError):
        Scope("team", 3)
    assert Scope.everyone().is_global
    assert not Scope.for_user(3).is_global


def test_category_analytics_reports_stats() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _march_ledger(session)

        data, _ = AnalyticsService(session, today=TODAY).category_analytics(
            user.id, AnalyticsQuery(period="month", year=2025, month=3)
        )

        food = next(item for item in data if item["name"] == "Food")
        assert food == {
            "id": food["id"],
            "name": "Food",
            "color": "#EF4444",
            "type": "expense",
            "total": 100.0,
            "count": 2,
            "average": 50.0,
            "minAmount": 30.0,
            "maxAmount": 70.0,
        }
        assert data[0]["name"] == "Salary"


def test_spending_trends_cover_requested_window() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user = _march_ledger(session)
        _txn(session, user, TransactionType.income, 10000, date(2024, 12, 31))
        _txn(session, user, TransactionType.expense, 2500, date(2025, 6, 1))
        session.commit()

        service = AnalyticsService(session, today=TODAY)
        six, _ = service.spending_trends(user.id, TrendsQuery())
        twelve, _ = service.spending_trends(user.id, TrendsQuery(months=12))

        assert [item["month"] for item in six] == ["2024-12", "2025-03", "2025-06"]
        assert six[0]["monthName"] == "Dec 2024"
        assert six[1] == {
            "month": "2025-03",
            "monthName": "Mar 2025",
            "income": 500.0,
            "expenses": 100.0,
            "net": 400.0,
        }
        assert six[2]["net"] == -25.0
        assert len(twelve) == 3

        three, _ = service.spending_trends(user.id, TrendsQuery(months=3))
        assert [item["month"] for item in three] == ["2025-03", "2025-06"]


def test_trends_window_is_bounded() -> None:
    with pytest.raises(ValueError):
        TrendsQuery(months=0)
    with pytest.raises(ValueError):
        TrendsQuery(months=61)


def test_storage_failure_surfaces_as_ledger_unavailable(
    cache, fake_redis, monkeypatch
) -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        user_id = _march_ledger(session).id

        def locked(*args, **kwargs):
            raise OperationalError("SELECT", {}, Exception("database is locked"))

        monkeypatch.setattr(session, "execute", locked)

        with pytest.raises(LedgerUnavailable, match="sum_by_kind failed"):
            AnalyticsService(session, cache, today=TODAY).user_analytics(
                user_id, AnalyticsQuery()
            )
        assert fake_redis.data == {}
