from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import Budget, Category, Expense, User
from services import BudgetService, ValidationError


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    session.add(User(id=1, currency="EUR"))
    session.commit()
    return session


def add_category(session: Session, name: str) -> Category:
    category = Category(user_id=1, name=name)
    session.add(category)
    session.flush()
    return category


def add_budget(
    session: Session, category: Category, cents: int, *, month: int = 1, year: int = 2025, user_id: int = 1
) -> Budget:
    budget = Budget(
        user_id=user_id,
        category_id=category.id,
        month=month,
        year=year,
        amount_cents=cents,
    )
    session.add(budget)
    session.flush()
    return budget


def add_expense(
    session: Session, category: Category, cents: int, on: date, *, user_id: int = 1
) -> None:
    session.add(
        Expense(
            user_id=user_id,
            category_id=category.id,
            description="Spend",
            date=on,
            amount_cents=cents,
        )
    )
    session.flush()


def test_over_budget_category_arithmetic() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        add_budget(session, food, 10_000)
        add_expense(session, food, 4_000, date(2025, 1, 3))
        add_expense(session, food, 7_000, date(2025, 1, 20))
        session.commit()

        service = BudgetService(session)
        overview = service.overview(1, 2025)

        assert overview.budget_count == 1
        [row] = overview.categories
        assert row.category_name == "Food"
        assert row.spent_cents == 11_000
        assert row.remaining_cents == -1_000
        assert row.percentage_used == Decimal("110")
        assert row.is_over_budget is True
        assert row.is_near_limit is False
        assert row.expense_count == 2
        assert overview.total_budget_cents == 10_000
        assert overview.total_spent_cents == 11_000
        assert overview.total_remaining_cents == -1_000
        assert overview.over_budget_count == 1
        assert overview.percentage_used == 110
        assert overview.is_over_budget is True
        assert overview.near_limit_categories == 0
        assert overview.currency == "EUR"
        assert overview.currency_symbol == "€"

        alerts = service.alerts(1, 2025)
        assert [c.category_name for c in alerts.over_budget] == ["Food"]
        assert alerts.near_limit == []
        assert alerts.total_alerts == 1


def test_month_without_budgets_is_zeroed() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        add_expense(session, food, 5_000, date(2025, 1, 3))
        session.commit()

        overview = BudgetService(session).overview(1, 2025)

        assert overview.budget_count == 0
        assert overview.total_budget_cents == 0
        assert overview.total_spent_cents == 0
        assert overview.percentage_used == 0
        assert overview.categories == []


def test_near_limit_and_rounding() -> None:
    with make_session() as session:
        rent = add_category(session, "Rent")
        travel = add_category(session, "Travel")
        books = add_category(session, "Books")
        add_budget(session, rent, 10_000)
        add_budget(session, travel, 30_000)
        add_budget(session, books, 5_000)
        add_expense(session, rent, 10_000, date(2025, 1, 1))
        add_expense(session, travel, 10_000, date(2025, 1, 15))
        add_expense(session, books, 3_999, date(2025, 1, 31))
        session.commit()

        service = BudgetService(session)
        overview = service.overview(1, 2025)
        by_name = {c.category_name: c for c in overview.categories}

        assert by_name["Rent"].percentage_used == Decimal("100.00")
        assert by_name["Rent"].is_over_budget is False
        assert by_name["Rent"].is_near_limit is True
        assert by_name["Travel"].percentage_used == Decimal("33.33")
        assert by_name["Travel"].is_near_limit is False
        assert by_name["Books"].percentage_used == Decimal("79.98")
        assert by_name["Books"].is_near_limit is False
        assert overview.near_limit_categories == 1
        assert overview.total_spent_cents == 23_999
        # 23999 / 45000 = 53.33 %
        assert overview.percentage_used == 53

        alerts = service.alerts(1, 2025)
        assert alerts.over_budget == []
        assert [c.category_name for c in alerts.near_limit] == ["Rent"]


def test_zero_budget_reports_zero_percent() -> None:
    with make_session() as session:
        gifts = add_category(session, "Gifts")
        add_budget(session, gifts, 0)
        add_expense(session, gifts, 500, date(2025, 1, 9))
        session.commit()

        overview = BudgetService(session).overview(1, 2025)

        [row] = overview.categories
        assert row.percentage_used == Decimal("0")
        assert row.is_over_budget is True
        assert overview.percentage_used == 0


def test_only_expenses_inside_the_month_count() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        add_budget(session, food, 10_000, month=2)
        add_expense(session, food, 100, date(2025, 1, 31))
        add_expense(session, food, 200, date(2025, 2, 1))
        add_expense(session, food, 300, date(2025, 2, 28))
        add_expense(session, food, 400, date(2025, 3, 1))
        session.commit()

        [row] = BudgetService(session).overview(2, 2025).categories

        assert row.spent_cents == 500
        assert row.expense_count == 2


def test_unbudgeted_categories_and_other_users_are_ignored() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        fun = add_category(session, "Fun")
        add_budget(session, food, 10_000)
        add_expense(session, food, 1_000, date(2025, 1, 5))
        add_expense(session, fun, 9_000, date(2025, 1, 5))
        add_expense(session, food, 5_000, date(2025, 1, 5), user_id=2)
        add_budget(session, fun, 1_000, user_id=2)
        session.commit()

        overview = BudgetService(session).overview(1, 2025)

        assert [c.category_name for c in overview.categories] == ["Food"]
        assert overview.total_spent_cents == 1_000
        assert overview.total_budget_cents == 10_000


def test_categories_sorted_by_ordinal_name() -> None:
    with make_session() as session:
        for name in ["groceries", "Rent", "Food"]:
            add_budget(session, add_category(session, name), 1_000)
        session.commit()

        overview = BudgetService(session).overview(1, 2025)

        assert [c.category_name for c in overview.categories] == [
            "Food",
            "Rent",
            "groceries",
        ]


def test_budget_with_missing_category_is_excluded() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        add_budget(session, food, 10_000)
        session.add(
            Budget(user_id=1, category_id=999, month=1, year=2025, amount_cents=5_000)
        )
        session.commit()

        overview = BudgetService(session).overview(1, 2025)

        assert overview.budget_count == 1
        assert overview.total_budget_cents == 10_000
        assert [c.category_name for c in overview.categories] == ["Food"]


def test_overview_exposes_budget_provenance() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        budget = add_budget(session, food, 9_000)
        budget.amount_original_cents = 10_000
        budget.currency_original = "USD"
        budget.conversion_rate = Decimal("0.9")
        session.commit()

        [row] = BudgetService(session).overview(1, 2025).categories

        assert row.budget_original_cents == 10_000
        assert row.budget_original_currency == "USD"
        assert row.budget_conversion_rate == Decimal("0.9")


def test_overview_defaults_to_current_month() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        add_budget(session, food, 10_000, month=4, year=2025)
        session.commit()

        overview = BudgetService(session).overview(today=date(2025, 4, 18))

        assert (overview.period.month, overview.period.year) == (4, 2025)
        assert overview.budget_count == 1


def test_trends_for_empty_months_are_oldest_first() -> None:
    with make_session() as session:
        points = BudgetService(session).trends(3, today=date(2025, 2, 10))

        assert [(p.year, p.month) for p in points] == [(2024, 12), (2025, 1), (2025, 2)]
        assert all(p.total_budget_cents == 0 for p in points)
        assert all(p.total_spent_cents == 0 for p in points)
        assert points[0].month_name == "December 2024"


def test_trends_collect_each_month_and_summarize() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        add_budget(session, food, 10_000, month=1)
        add_budget(session, food, 20_000, month=2)
        add_expense(session, food, 12_000, date(2025, 1, 10))
        add_expense(session, food, 5_000, date(2025, 2, 10))
        session.commit()

        service = BudgetService(session)
        points = service.trends(2, today=date(2025, 2, 15))

        assert [p.total_budget_cents for p in points] == [10_000, 20_000]
        assert [p.over_budget_count for p in points] == [1, 0]
        assert [p.percentage_used for p in points] == [120, 25]
        assert [p.category_count for p in points] == [1, 1]

        summary = service.trends_summary(points)
        assert summary.periods_analyzed == 2
        assert summary.average_monthly_budget_cents == 15_000
        assert summary.average_spending_cents == 8_500


@pytest.mark.parametrize("periods_back", [0, -2, True, 2.5])
def test_trends_require_positive_integer(periods_back) -> None:
    with make_session() as session:
        with pytest.raises(ValidationError):
            BudgetService(session).trends(periods_back, today=date(2025, 2, 10))


def test_monthly_total_sums_budgets() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        rent = add_category(session, "Rent")
        add_budget(session, food, 10_000, month=5)
        add_budget(session, rent, 80_000, month=5)
        add_budget(session, rent, 70_000, month=6)
        session.commit()

        total = BudgetService(session).monthly_total(5, 2025)

        assert total["total_budget_cents"] == 90_000
        assert total["category_count"] == 2


def test_near_limit_threshold_is_inclusive() -> None:
    with make_session() as session:
        books = add_category(session, "Books")
        add_budget(session, books, 5_000)
        add_expense(session, books, 4_000, date(2025, 1, 12))
        session.commit()

        service = BudgetService(session)
        [row] = service.overview(1, 2025).categories

        assert row.percentage_used == Decimal("80.00")
        assert row.is_near_limit is True
        assert [c.category_name for c in service.alerts(1, 2025).near_limit] == ["Books"]


def test_explicit_user_zero_is_not_the_current_user() -> None:
    with make_session() as session:
        food = add_category(session, "Food")
        add_budget(session, food, 10_000)
        session.commit()

        service = BudgetService(session, 0)

        assert service.user_id == 0
        assert service.overview(1, 2025).budget_count == 0
